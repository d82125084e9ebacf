import threading
from types import SimpleNamespace

import pytest

from aggregation import services
from aggregation.models import AggregatedValue, AggregationMethod, ReportFieldValue
from aggregation.signals import aggregate_marked_stale
from aggregation.staleness import StalenessTracker

Status = AggregatedValue.Status


def edit(report, key, value):
    field_value = ReportFieldValue.objects.get(report=report, report_field__key=key)
    field_value.value = value
    field_value.save()


@pytest.fixture
def budget_rollup(org, period, fields, make_rule, submit):
    rule = make_rule(fields.budget)
    reports = {
        'a': submit(org.team_a, budget='10'),
        'b': submit(org.team_b, budget='20'),
        'c': submit(org.team_c, budget='30'),
    }
    dept = services.compute(rule.id, org.dept.id, period.id)
    root = services.compute(rule.id, org.root.id, period.id)
    return rule, reports, dept, root


@pytest.mark.django_db
class TestMarking:

    def test_leaf_edit_marks_ancestors_stale_without_touching_value(self, budget_rollup):
        rule, reports, dept, root = budget_rollup
        assert dept.status == Status.CURRENT
        assert root.value == '60.00'

        edit(reports['a'], 'budget', '15')

        dept.refresh_from_db()
        root.refresh_from_db()
        assert dept.status == Status.STALE
        assert dept.value == '60.00'
        assert root.status == Status.STALE
        assert root.value == '60.00'
        assert dept.needs_recomputation

    def test_signal_lists_marked_rows(self, budget_rollup):
        rule, reports, dept, root = budget_rollup
        received = []

        def listener(sender, aggregated_value_ids, reason, **kwargs):
            received.append(set(aggregated_value_ids))

        aggregate_marked_stale.connect(listener)
        try:
            edit(reports['b'], 'budget', '25')
        finally:
            aggregate_marked_stale.disconnect(listener)

        assert received == [{dept.id, root.id}]

    def test_draft_edits_are_ignored(self, org, period, fields, make_rule, submit):
        rule = make_rule(fields.budget)
        submit(org.team_a, budget='1')
        draft = submit(org.team_b, budget='2', status='draft')
        dept = services.compute(rule.id, org.dept.id, period.id)

        edit(draft, 'budget', '3')

        dept.refresh_from_db()
        assert dept.status == Status.CURRENT

    def test_report_status_change_marks_stale(self, org, period, fields, make_rule, submit):
        rule = make_rule(fields.budget)
        submit(org.team_a, budget='1')
        draft = submit(org.team_b, budget='2', status='draft')
        dept = services.compute(rule.id, org.dept.id, period.id)

        draft.status = 'submitted'
        draft.save()

        dept.refresh_from_db()
        assert dept.status == Status.STALE

    def test_weight_field_edit_marks_weighted_average_stale(self, org, period, fields, make_rule, submit):
        rule = make_rule(fields.score, AggregationMethod.WEIGHTED_AVERAGE, weight_field_key='headcount')
        report = submit(org.team_a, score='80', headcount='2')
        submit(org.team_b, score='90', headcount='3')
        dept = services.compute(rule.id, org.dept.id, period.id)

        edit(report, 'headcount', '4')

        dept.refresh_from_db()
        assert dept.status == Status.STALE

    def test_changed_value_invalidates_parent(self, budget_rollup):
        rule, reports, dept, root = budget_rollup
        ReportFieldValue.objects.filter(report=reports['a']).update(value='50')

        services.compute(rule.id, dept.organizational_unit_id, dept.report_period_id)

        root.refresh_from_db()
        assert root.status == Status.STALE

    def test_first_computation_invalidates_computed_parent(self, org, period, fields, make_rule, submit):
        rule = make_rule(fields.budget, auto_aggregate=False)
        submit(org.team_a, budget='10')
        submit(org.team_b, budget='20')

        root = services.compute(rule.id, org.root.id, period.id)
        assert root.status != Status.STALE
        assert not AggregatedValue.objects.filter(aggregation_rule=rule, organizational_unit=org.dept).exists()

        services.compute(rule.id, org.dept.id, period.id)

        root.refresh_from_db()
        assert root.status == Status.STALE


@pytest.mark.django_db
class TestManualOverride:

    def test_override_is_sticky(self, budget_rollup, user):
        rule, reports, dept, root = budget_rollup
        tracker = StalenessTracker()
        tracker.set_manual_override(dept, value='100', user=user, reason='audited figure')

        edit(reports['a'], 'budget', '11')
        recomputed = services.compute(rule.id, dept.organizational_unit_id, dept.report_period_id)
        summary = tracker.sweep()

        dept.refresh_from_db()
        assert recomputed.status == Status.MANUAL_OVERRIDE
        assert dept.status == Status.MANUAL_OVERRIDE
        assert dept.value == '100'
        assert dept.aggregation_details['manual_override']['reason'] == 'audited figure'
        assert dept.id not in [failure['id'] for failure in summary['failed']]

    def test_override_marks_parent_stale(self, budget_rollup, user):
        rule, reports, dept, root = budget_rollup
        StalenessTracker().set_manual_override(dept, value='100', user=user)
        root.refresh_from_db()
        assert root.status == Status.STALE

    def test_reenable_then_sweep_recomputes(self, budget_rollup, user):
        rule, reports, dept, root = budget_rollup
        tracker = StalenessTracker()
        tracker.set_manual_override(dept, value='100', user=user)

        released = tracker.reenable(dept)
        assert released.status == Status.STALE

        tracker.sweep()
        dept.refresh_from_db()
        root.refresh_from_db()
        assert dept.status == Status.CURRENT
        assert dept.value == '60.00'
        assert root.value == '60.00'


@pytest.mark.django_db
class TestSweep:

    def test_sweep_recomputes_bottom_up(self, budget_rollup, period):
        rule, reports, dept, root = budget_rollup
        edit(reports['a'], 'budget', '15')

        summary = StalenessTracker().sweep(period_id=period.id)

        dept.refresh_from_db()
        root.refresh_from_db()
        assert summary['levels'] == 2
        assert summary['computed'] == 2
        assert summary['failed'] == []
        assert dept.value == '65.00'
        assert root.value == '65.00'
        assert root.status == Status.CURRENT

    def test_sweep_computes_seeded_rows(self, org, period, fields, make_rule, submit):
        rule = make_rule(fields.budget)
        submit(org.team_a, budget='4')

        seeded = AggregatedValue.objects.get(aggregation_rule=rule, organizational_unit=org.dept)
        assert seeded.value == ''
        assert seeded.needs_recomputation

        StalenessTracker().sweep()

        root = AggregatedValue.objects.get(aggregation_rule=rule, organizational_unit=org.root)
        assert root.value == '4.00'
        assert root.is_complete is False

    def test_failing_row_does_not_block_siblings(self, budget_rollup, fields, make_rule, period):
        rule, reports, dept, root = budget_rollup
        broken = make_rule(fields.score, AggregationMethod.WEIGHTED_AVERAGE, weight_field_key='fte')
        broken_row = AggregatedValue.objects.create(
            aggregation_rule=broken, report_period=period,
            organizational_unit=dept.organizational_unit, status=Status.STALE,
        )
        edit(reports['c'], 'budget', '35')

        summary = StalenessTracker().sweep(period_id=period.id)

        dept.refresh_from_db()
        assert dept.value == '65.00'
        assert [failure['id'] for failure in summary['failed']] == [broken_row.id]
        assert "'fte' does not exist" in summary['failed'][0]['error']

    def test_unchanged_child_leaves_parent_current(self, budget_rollup):
        rule, reports, dept, root = budget_rollup
        StalenessTracker().mark_stale(dept)

        summary = StalenessTracker().sweep()

        dept.refresh_from_db()
        root.refresh_from_db()
        assert summary['levels'] == 1
        assert dept.status == Status.CURRENT
        assert root.status == Status.CURRENT
        assert root.value == '60.00'

    def test_parent_invalidated_during_sweep_is_recomputed(self, budget_rollup):
        rule, reports, dept, root = budget_rollup
        # Queryset update skips the receivers, so only dept is stale going in
        ReportFieldValue.objects.filter(report=reports['a']).update(value='50')
        StalenessTracker().mark_stale(dept)
        root.refresh_from_db()
        assert root.status == Status.CURRENT

        summary = StalenessTracker().sweep()

        dept.refresh_from_db()
        root.refresh_from_db()
        assert summary['levels'] == 2
        assert dept.value == '100.00'
        assert root.value == '100.00'
        assert root.status == Status.CURRENT


@pytest.mark.django_db(transaction=True)
class TestThreadedSweep:

    def test_worker_pool_rolls_up_to_the_root(self, budget_rollup, period):
        rule, reports, dept, root = budget_rollup
        edit(reports['b'], 'budget', '45')

        summary = StalenessTracker().sweep(period_id=period.id, max_workers=4)

        dept.refresh_from_db()
        root.refresh_from_db()
        assert summary['failed'] == []
        assert summary['computed'] == 2
        assert dept.value == '85.00'
        assert root.value == '85.00'
        assert root.status == Status.CURRENT

    def test_levels_finish_before_parents_start(self, org, period, fields, make_rule):
        rules = [make_rule(fields.budget), make_rule(fields.score)]
        for rule in rules:
            for unit in [org.dept, org.root]:
                AggregatedValue.objects.create(
                    aggregation_rule=rule, report_period=period, organizational_unit=unit, status=Status.STALE,
                )
        calls = []

        class RecordingComputer:
            def compute(self, rule, org_unit_id, period_id):
                calls.append((org_unit_id, threading.current_thread().name))
                return SimpleNamespace(status=Status.CURRENT)

        summary = StalenessTracker().sweep(max_workers=4, computer=RecordingComputer())

        units = [unit_id for unit_id, _ in calls]
        assert units == [org.dept.id, org.dept.id, org.root.id, org.root.id]
        assert threading.main_thread().name not in {name for _, name in calls}
        assert summary['levels'] == 2
        assert summary['computed'] == 4
