"""
Public entry points of the aggregation engine, keyed by record ids
"""
from aggregation.amendments import AmendmentResolver
from aggregation.engine import RollupComputer
from aggregation.exceptions import ConfigurationError
from aggregation.models import AggregatedValue, AggregationRule


def compute(rule_id, org_unit_id, period_id, computed_by=None):
    """Compute(ruleId, orgUnitId, periodId) -> AggregatedValue"""
    try:
        rule = AggregationRule.objects.get(pk=rule_id)
    except AggregationRule.DoesNotExist:
        raise ConfigurationError(f'Aggregation rule {rule_id} does not exist')
    return RollupComputer().compute(rule, org_unit_id, period_id, computed_by=computed_by)


def get_display_value(aggregated_value_id):
    aggregated_value = AggregatedValue.objects.get(pk=aggregated_value_id)
    return AmendmentResolver().display_value(aggregated_value)


def create_amendment(aggregated_value_id, amended_by, **fields):
    aggregated_value = AggregatedValue.objects.get(pk=aggregated_value_id)
    return AmendmentResolver().create_amendment(aggregated_value, amended_by, **fields)


def approve_amendment(amendment_id, approved_by=None, comments=''):
    return AmendmentResolver().approve(amendment_id, approved_by=approved_by, comments=comments)


def reject_amendment(amendment_id, approved_by=None, comments=''):
    return AmendmentResolver().reject(amendment_id, approved_by=approved_by, comments=comments)
