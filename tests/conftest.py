from datetime import date

import pytest
from django.contrib.auth.models import User
from django.utils import timezone

from aggregation.models import (
    AggregationMethod, AggregationRule, OrganizationalUnit, Report, ReportField,
    ReportFieldValue, ReportPeriod,
)


@pytest.fixture
def user(db):
    return User.objects.create_user(username='manager', password='secret')


@pytest.fixture
def approver(db):
    return User.objects.create_user(username='director', password='secret')


@pytest.fixture
def period(db):
    return ReportPeriod.objects.create(
        name='January 2026', start_date=date(2026, 1, 1), end_date=date(2026, 1, 31)
    )


@pytest.fixture
def org(db):
    """
    University
      Engineering
        Team A, Team B, Team C (leaves)
    """
    root = OrganizationalUnit.objects.create(name='University', level=OrganizationalUnit.Level.ROOT)
    dept = OrganizationalUnit.objects.create(
        name='Engineering', level=OrganizationalUnit.Level.DEPARTMENT, parent=root
    )
    teams = [
        OrganizationalUnit.objects.create(
            name=f'Team {letter}', level=OrganizationalUnit.Level.TEAM, parent=dept, sort_order=i
        )
        for i, letter in enumerate('ABC', start=1)
    ]

    class Org:
        pass

    org = Org()
    org.root = root
    org.dept = dept
    org.team_a, org.team_b, org.team_c = teams
    return org


@pytest.fixture
def fields(db):
    class Fields:
        pass

    f = Fields()
    f.budget = ReportField.objects.create(key='budget', label='Budget', field_type='numeric')
    f.score = ReportField.objects.create(key='score', label='Score', field_type='numeric')
    f.headcount = ReportField.objects.create(key='headcount', label='Headcount', field_type='numeric')
    f.highlights = ReportField.objects.create(key='highlights', label='Highlights')
    return f


@pytest.fixture
def make_rule(db):
    def _make_rule(field, method=AggregationMethod.SUM, **kwargs):
        kwargs.setdefault('name', f'{field.label} {method}')
        return AggregationRule.objects.create(report_field=field, method=method, **kwargs)
    return _make_rule


@pytest.fixture
def submit(db, period):
    """Submit a leaf report: submit(team, budget='10.1', ...) keyed by field key"""
    def _submit(unit, report_period=None, status='submitted', **values):
        report, _ = Report.objects.get_or_create(
            organizational_unit=unit,
            report_period=report_period or period,
            defaults={'status': status, 'submitted_at': timezone.now()},
        )
        for key, value in values.items():
            field = ReportField.objects.get(key=key)
            ReportFieldValue.objects.update_or_create(
                report=report, report_field=field, defaults={'value': value}
            )
        return report
    return _submit
