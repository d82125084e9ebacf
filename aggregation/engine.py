"""
Rollup computer
Aggregates one rule for one org unit and period from its immediate children
"""
import logging

from django.db import transaction
from django.utils import timezone

from aggregation import methods
from aggregation.exceptions import ConfigurationError, FormulaError, InsufficientData
from aggregation.models import AggregatedValue, AggregationMethod, AmendmentType, ManagerAmendment
from aggregation.rules import RuleCatalog
from aggregation.signals import aggregate_computed
from aggregation.sources import OrmFieldValueStore
from aggregation.staleness import StalenessTracker

logger = logging.getLogger(__name__)

Status = AggregatedValue.Status


class RollupComputer:
    """
    Level-by-level rollup: a parent aggregates its children's stored
    aggregates rather than every leaf below it, so recomputation stays
    incremental and fan-in stays bounded.
    """

    def __init__(self, store=None, catalog=None, tracker=None):
        self.store = store or OrmFieldValueStore()
        self.catalog = catalog or RuleCatalog()
        self.tracker = tracker or StalenessTracker()

    def compute(self, rule, org_unit_id, period_id, computed_by=None):
        """
        Compute and persist the aggregate for (rule, org unit, period)

        Args:
            rule: AggregationRule
            org_unit_id: target (non-leaf) organizational unit
            period_id: ReportPeriod id
            computed_by: User who triggered it, None for automatic runs

        Returns:
            AggregatedValue (Current, Error or Pending; ManualOverride rows are returned untouched)

        Raises:
            ConfigurationError: invalid rule or unusable weight field
        """
        if not rule.is_active:
            raise ConfigurationError(f"Aggregation rule '{rule.name}' is not active")
        self.catalog.validate(rule)

        with transaction.atomic():
            aggregate, created = AggregatedValue.objects.get_or_create(
                aggregation_rule=rule,
                report_period_id=period_id,
                organizational_unit_id=org_unit_id,
            )
            # Single writer per row
            aggregate = AggregatedValue.objects.select_for_update().get(pk=aggregate.pk)
            if aggregate.status == Status.MANUAL_OVERRIDE:
                logger.info("Aggregate %s is a manual override, not recomputing", aggregate.pk)
                return aggregate

            previous = _outcome(aggregate)

            present, missing = self._gather_children(rule, org_unit_id, period_id)
            result, error = self._apply_method(rule, aggregate, present)

            aggregate.computed_at = timezone.now()
            aggregate.computed_by = computed_by
            aggregate.missing_sources = missing

            if error is not None:
                aggregate.value = ''
                aggregate.numeric_value = None
                aggregate.source_count = 0
                aggregate.source_report_ids = []
                aggregate.status = Status.ERROR
                aggregate.is_complete = False
                aggregate.aggregation_details = {
                    'method': rule.method,
                    'error_type': error.__class__.__name__,
                    'error': str(error),
                    'present_units': [child.org_unit_id for child in present],
                }
                logger.warning(
                    "Aggregate %s (rule %s, unit %s, period %s) in error: %s",
                    aggregate.pk, rule.pk, org_unit_id, period_id, error
                )
            else:
                aggregate.value = result.value
                aggregate.numeric_value = result.numeric
                aggregate.source_count = result.source_count
                aggregate.source_report_ids = _flatten_report_ids(result.contributors)
                aggregate.status = result.status
                aggregate.is_complete = not missing
                details = {
                    'method': rule.method,
                    'contributing_units': [child.org_unit_id for child in result.contributors],
                }
                details.update(result.details)
                aggregate.aggregation_details = details
                logger.info(
                    "Computed aggregate %s (rule %s, unit %s, period %s): %r from %s source(s)",
                    aggregate.pk, rule.pk, org_unit_id, period_id, aggregate.value, aggregate.source_count
                )

            aggregate.save()

            # Also covers a first computation under an already computed parent
            if _outcome(aggregate) != previous:
                self.tracker.invalidate_parent(aggregate)

        aggregate_computed.send(sender=self.__class__, aggregated_value=aggregate, created=created)
        return aggregate

    def compute_subtree(self, rule, org_unit_id, period_id, computed_by=None):
        """
        Compute a unit and every non-leaf unit below it, children first

        Returns:
            AggregatedValue for org_unit_id
        """
        levels = []
        frontier = [org_unit_id]
        while frontier:
            parents = [unit_id for unit_id in frontier if self.store.get_children(unit_id)]
            if parents:
                levels.append(parents)
            frontier = [child for unit_id in parents for child in self.store.get_children(unit_id)]

        result = None
        for level in reversed(levels):
            for unit_id in level:
                result = self.compute(rule, unit_id, period_id, computed_by=computed_by)
        return result

    def _apply_method(self, rule, aggregate, present):
        """Run the method; data problems come back as an error, never raised"""
        if len(present) < rule.min_source_values:
            return None, InsufficientData(
                f'{len(present)} source value(s) present, {rule.min_source_values} required'
            )

        summary = None
        if rule.method == AggregationMethod.MANUAL_SYNTHESIS:
            summary = self._executive_summary(aggregate)

        try:
            return methods.aggregate(rule, present, executive_summary=summary), None
        except (InsufficientData, FormulaError) as e:
            return None, e

    def _executive_summary(self, aggregate):
        amendment = ManagerAmendment.objects.filter(
            aggregated_value=aggregate,
            amendment_type=AmendmentType.EXECUTIVE_SUMMARY,
            is_active=True,
        ).order_by('-created_at', '-id').first()
        if amendment is None:
            return None
        return amendment.executive_summary or amendment.annotation

    # -----------------------------------------------------------------------
    # Gathering child values
    # -----------------------------------------------------------------------

    def _gather_children(self, rule, org_unit_id, period_id):
        """
        Split the unit's immediate children into present inputs and missing ids

        Returns:
            (list of ChildInput, list of missing expected org unit ids)
        """
        expected = self.store.get_expected_leaves(org_unit_id, period_id)
        weight_field = self._weight_field(rule)

        present = []
        missing = []
        for child_id in self.store.get_children(org_unit_id):
            if self.store.get_children(child_id):
                child_input, child_missing = self._aggregate_input(rule, child_id, period_id, weight_field)
                is_expected = bool(self.store.get_expected_leaves(child_id, period_id))
            else:
                child_input, child_missing = self._leaf_input(rule, child_id, period_id, weight_field)
                is_expected = child_id in expected

            if child_input is not None:
                present.append(child_input)
            elif is_expected:
                missing.append(child_id)
            for unit_id in child_missing:
                if unit_id not in missing:
                    missing.append(unit_id)
        return present, missing

    def _leaf_input(self, rule, child_id, period_id, weight_field):
        report_id = self.store.get_submitted_report(child_id, period_id)
        if report_id is None:
            return None, []

        field_value = self.store.get_field_value(report_id, rule.report_field_id)
        weight = None
        if weight_field is not None:
            weight = self.store.get_field_value(report_id, weight_field.id).numeric

        return methods.ChildInput(
            org_unit_id=child_id,
            is_leaf=True,
            raw=field_value.raw,
            numeric=field_value.numeric,
            is_empty=field_value.is_empty,
            report_ids=[report_id],
            weight=weight,
            details={},
        ), []

    def _aggregate_input(self, rule, child_id, period_id, weight_field):
        child = AggregatedValue.objects.filter(
            aggregation_rule=rule,
            report_period_id=period_id,
            organizational_unit_id=child_id,
        ).first()
        if child is None or child.status == Status.ERROR:
            return None, []
        if child.status == Status.PENDING and not child.value:
            # Never computed, or a synthesis still waiting for its summary
            return None, list(child.missing_sources or [])

        weight = None
        if weight_field is not None:
            weight = self._aggregated_weight(weight_field, child_id, period_id)

        return methods.ChildInput(
            org_unit_id=child_id,
            is_leaf=False,
            raw=child.value,
            numeric=child.numeric_value,
            is_empty=not child.value and child.numeric_value is None,
            report_ids=list(child.source_report_ids or []),
            weight=weight,
            details=child.aggregation_details or {},
        ), list(child.missing_sources or [])

    def _weight_field(self, rule):
        if rule.method != AggregationMethod.WEIGHTED_AVERAGE:
            return None
        weight_field = self.store.get_field_by_key(rule.weight_field_key)
        if weight_field is None:
            raise ConfigurationError(f"Weight field '{rule.weight_field_key}' does not exist")
        return weight_field

    def _aggregated_weight(self, weight_field, child_id, period_id):
        """A non-leaf child's weight is its own rollup of the weight field"""
        weight_rule = self.catalog.resolve_rule(weight_field.id)
        weight_aggregate = AggregatedValue.objects.filter(
            aggregation_rule=weight_rule,
            report_period_id=period_id,
            organizational_unit_id=child_id,
        ).exclude(status=Status.ERROR).first()
        if weight_aggregate is None:
            return None
        return weight_aggregate.numeric_value


def _outcome(aggregate):
    """What a parent reads from this row; a Stale -> Current refresh alone is no change"""
    return aggregate.value, aggregate.numeric_value, aggregate.status == Status.ERROR


def _flatten_report_ids(children):
    report_ids = []
    for child in children:
        for report_id in child.report_ids:
            if report_id not in report_ids:
                report_ids.append(report_id)
    return report_ids
