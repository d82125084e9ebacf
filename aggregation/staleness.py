"""
Staleness tracker
Marks aggregates Stale when their source reports change and runs the
bottom-up recomputation sweep. Marking never recomputes inline.
"""
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed

from django.db import connection, transaction
from django.db.models import Q
from django.utils import timezone

from aggregation.conf import get_setting
from aggregation.models import AggregatedValue, AggregationMethod, AggregationRule, ReportField
from aggregation.signals import aggregate_marked_stale, manual_override_changed
from aggregation.values import parse_number

logger = logging.getLogger(__name__)

Status = AggregatedValue.Status


class StalenessTracker:
    """Keeps AggregatedValue status in step with source report edits"""

    def mark_field_changed(self, field_value):
        """A single report field was entered or edited"""
        report = field_value.report
        if report.status not in get_setting('SUBMITTED_REPORT_STATUSES'):
            # Draft values are not read by rollups
            return 0
        return self.mark_report_changed(report, field_ids=[field_value.report_field_id])

    def mark_report_changed(self, report, field_ids=None):
        """
        Mark every aggregate built on this report Stale

        Walks the report unit's ancestors: rollups compose level by level, so
        every ancestor aggregate of an affected field depends on the report.
        Active auto-aggregate rules get a Pending row seeded at ancestors that
        have none yet, so the next sweep computes them.

        Args:
            report: Report that changed (status or field values)
            field_ids: fields that changed; None means all of the report's fields

        Returns:
            int: number of aggregates marked stale
        """
        if field_ids is None:
            field_ids = list(report.field_values.values_list('report_field_id', flat=True))
        if not field_ids:
            return 0

        ancestor_ids = [unit.id for unit in report.organizational_unit.ancestors()]
        if not ancestor_ids:
            return 0

        field_keys = list(ReportField.objects.filter(id__in=field_ids).values_list('key', flat=True))
        rules = AggregationRule.objects.filter(
            Q(report_field_id__in=field_ids)
            | Q(method=AggregationMethod.WEIGHTED_AVERAGE, weight_field_key__in=field_keys)
        )

        if report.status in get_setting('SUBMITTED_REPORT_STATUSES'):
            self._seed_pending(rules, ancestor_ids, report.report_period_id)

        return self._mark(
            AggregatedValue.objects.filter(
                aggregation_rule__in=rules,
                report_period_id=report.report_period_id,
                organizational_unit_id__in=ancestor_ids,
            ),
            reason=f'report {report.pk} changed',
        )

    def mark_stale(self, aggregated_value, reason='manual'):
        """Mark one aggregate for recomputation (no-op under ManualOverride)"""
        return self._mark(AggregatedValue.objects.filter(pk=aggregated_value.pk), reason=reason)

    def invalidate_parent(self, aggregated_value):
        """The aggregate's value changed, so its parent's rollup is out of date"""
        parent_id = aggregated_value.organizational_unit.parent_id
        if parent_id is None:
            return 0
        return self._mark(
            AggregatedValue.objects.filter(
                aggregation_rule_id=aggregated_value.aggregation_rule_id,
                report_period_id=aggregated_value.report_period_id,
                organizational_unit_id=parent_id,
            ),
            reason=f'child aggregate {aggregated_value.pk} changed',
        )

    def needs_recomputation(self, aggregated_value):
        return aggregated_value.needs_recomputation

    def _mark(self, queryset, reason):
        # ManualOverride is sticky; Stale rows stay as they are
        queryset = queryset.exclude(status__in=[Status.MANUAL_OVERRIDE, Status.STALE])
        ids = list(queryset.values_list('id', flat=True))
        if not ids:
            return 0
        count = AggregatedValue.objects.filter(id__in=ids).exclude(
            status=Status.MANUAL_OVERRIDE
        ).update(status=Status.STALE, updated_at=timezone.now())
        logger.info("Marked %s aggregate(s) stale: %s", count, reason)
        aggregate_marked_stale.send(sender=self.__class__, aggregated_value_ids=ids, reason=reason)
        return count

    def _seed_pending(self, rules, unit_ids, period_id):
        for rule in rules.filter(is_active=True, auto_aggregate=True):
            for unit_id in unit_ids:
                AggregatedValue.objects.get_or_create(
                    aggregation_rule=rule,
                    report_period_id=period_id,
                    organizational_unit_id=unit_id,
                    defaults={'status': Status.PENDING, 'is_complete': False},
                )

    # -----------------------------------------------------------------------
    # Manual override (administrative action outside the engine)
    # -----------------------------------------------------------------------

    @transaction.atomic
    def set_manual_override(self, aggregated_value, value=None, user=None, reason=''):
        """Pin an aggregate; the tracker and sweeps leave it alone until re-enabled"""
        locked = AggregatedValue.objects.select_for_update().get(pk=aggregated_value.pk)
        previous = locked.status
        locked.status = Status.MANUAL_OVERRIDE
        if value is not None:
            locked.value = str(value)
            locked.numeric_value = parse_number(value)
        details = dict(locked.aggregation_details or {})
        details['manual_override'] = {
            'by': user.pk if user else None,
            'at': timezone.now().isoformat(),
            'reason': reason,
        }
        locked.aggregation_details = details
        locked.save()
        logger.info("Aggregate %s pinned as manual override", locked.pk)
        manual_override_changed.send(
            sender=self.__class__, aggregated_value=locked, previous_status=previous
        )
        self.invalidate_parent(locked)
        return locked

    @transaction.atomic
    def reenable(self, aggregated_value):
        """Release a manual override; the next sweep recomputes the aggregate"""
        locked = AggregatedValue.objects.select_for_update().get(pk=aggregated_value.pk)
        if locked.status != Status.MANUAL_OVERRIDE:
            return locked
        locked.status = Status.STALE
        locked.save(update_fields=['status', 'updated_at'])
        logger.info("Aggregate %s released from manual override", locked.pk)
        manual_override_changed.send(
            sender=self.__class__, aggregated_value=locked, previous_status=Status.MANUAL_OVERRIDE
        )
        return locked

    # -----------------------------------------------------------------------
    # Sweep
    # -----------------------------------------------------------------------

    def sweep(self, period_id=None, max_workers=None, computer=None):
        """
        Recompute every aggregate needing it, deepest hierarchy level first

        A level finishes completely before the next one starts, since a
        parent reads its children's settled values. Candidates are queried
        again after each level so parents invalidated by that level are
        picked up in the same sweep. Within a level rows are independent and
        may run on a thread pool. A failing row is logged and recorded; it
        never stops its siblings.

        Returns:
            dict: {'levels', 'computed', 'errors', 'failed'}
        """
        if computer is None:
            from aggregation.engine import RollupComputer
            computer = RollupComputer()
        if max_workers is None:
            max_workers = get_setting('SWEEP_MAX_WORKERS')

        depth_cache = {}
        summary = {'levels': 0, 'computed': 0, 'errors': 0, 'failed': []}
        below = None
        while True:
            levels = self._candidates_by_depth(period_id, depth_cache)
            if below is not None:
                levels = {depth: ids for depth, ids in levels.items() if depth < below}
            if not levels:
                break
            depth = max(levels)
            below = depth
            ids = levels[depth]
            summary['levels'] += 1
            logger.info("Sweeping %s aggregate(s) at depth %s", len(ids), depth)
            if max_workers <= 1:
                outcomes = [self._recompute(computer, pk) for pk in ids]
            else:
                outcomes = []
                with ThreadPoolExecutor(max_workers=max_workers) as executor:
                    futures = [executor.submit(self._recompute_in_thread, computer, pk) for pk in ids]
                    for future in as_completed(futures):
                        outcomes.append(future.result())

            for pk, status, error in outcomes:
                if error is not None:
                    summary['failed'].append({'id': pk, 'error': error})
                    continue
                summary['computed'] += 1
                if status == Status.ERROR:
                    summary['errors'] += 1

        logger.info(
            "Sweep finished: %s computed, %s in error, %s failed",
            summary['computed'], summary['errors'], len(summary['failed'])
        )
        return summary

    def _candidates_by_depth(self, period_id, depth_cache):
        candidates = AggregatedValue.objects.filter(
            Q(status=Status.STALE) | Q(is_complete=False),
            aggregation_rule__is_active=True,
        ).exclude(status=Status.MANUAL_OVERRIDE).select_related('organizational_unit')
        if period_id is not None:
            candidates = candidates.filter(report_period_id=period_id)

        levels = defaultdict(list)
        for aggregate in candidates.order_by('pk'):
            unit = aggregate.organizational_unit
            if unit.id not in depth_cache:
                depth_cache[unit.id] = unit.depth()
            levels[depth_cache[unit.id]].append(aggregate.pk)
        return levels

    def _recompute(self, computer, pk):
        try:
            aggregate = AggregatedValue.objects.select_related('aggregation_rule').get(pk=pk)
            result = computer.compute(
                aggregate.aggregation_rule,
                aggregate.organizational_unit_id,
                aggregate.report_period_id,
            )
            return pk, result.status, None
        except Exception as e:
            logger.exception("Recomputing aggregate %s failed", pk)
            return pk, None, str(e)

    def _recompute_in_thread(self, computer, pk):
        try:
            return self._recompute(computer, pk)
        finally:
            # Worker threads own their connection
            connection.close()
