"""
Field value store: the read-only view of report data the engine consumes
Backed by the hosting application's ORM models
"""
from collections import namedtuple

from aggregation.conf import get_setting
from aggregation.models import OrganizationalUnit, Report, ReportField, ReportFieldValue
from aggregation.values import format_plain, is_empty, parse_number


FieldValue = namedtuple('FieldValue', ['raw', 'numeric', 'is_empty'])

EMPTY_VALUE = FieldValue(raw='', numeric=None, is_empty=True)


class OrmFieldValueStore:
    """Reads org hierarchy, submitted reports and field values through the ORM"""

    def get_field_value(self, report_id, field_id):
        field_value = ReportFieldValue.objects.filter(
            report_id=report_id,
            report_field_id=field_id
        ).first()
        if field_value is None:
            return EMPTY_VALUE

        raw = field_value.value or ''
        numeric = field_value.numeric_value
        if numeric is None:
            numeric = parse_number(raw)
        elif is_empty(raw):
            raw = format_plain(numeric)
        return FieldValue(raw=raw, numeric=numeric, is_empty=is_empty(raw) and numeric is None)

    def get_children(self, org_unit_id):
        """Active immediate children, ordered by sort order then id"""
        return list(
            OrganizationalUnit.objects.filter(parent_id=org_unit_id, is_active=True)
            .order_by('sort_order', 'id')
            .values_list('id', flat=True)
        )

    def get_expected_leaves(self, org_unit_id, period_id):
        """
        Leaf units expected to report for the period

        Every active leaf below the unit is expected; a hosting application
        with per-period assignments can override this.
        """
        expected = set()
        pending = [org_unit_id]
        while pending:
            unit_id = pending.pop()
            children = self.get_children(unit_id)
            if not children and unit_id != org_unit_id:
                expected.add(unit_id)
            pending.extend(children)
        return expected

    def get_submitted_report(self, org_unit_id, period_id):
        """Id of the unit's submitted report for the period, or None"""
        return Report.objects.filter(
            organizational_unit_id=org_unit_id,
            report_period_id=period_id,
            status__in=get_setting('SUBMITTED_REPORT_STATUSES'),
        ).values_list('id', flat=True).first()

    def get_field_by_key(self, key):
        return ReportField.objects.filter(key=key).first()
