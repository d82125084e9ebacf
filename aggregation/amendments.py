"""
Amendment resolver
Layers manager annotations and corrections over computed aggregates and
gates numeric corrections behind approval
"""
import logging

from django.db import transaction
from django.utils import timezone

from aggregation.exceptions import ConcurrencyConflict
from aggregation.models import (
    AggregatedValue, AmendmentType, AmendmentVisibility, ApprovalStatus, ManagerAmendment,
)
from aggregation.signals import amendment_approved, amendment_created, amendment_rejected
from aggregation.staleness import StalenessTracker
from aggregation.values import format_plain, parse_number

logger = logging.getLogger(__name__)


class AmendmentResolver:
    """
    Correction lifecycle: Pending -> Approved (active, visible)
                                  -> Rejected (inactive, invisible)
    Resolved corrections are never edited; a new figure is a new record.
    """

    def __init__(self, tracker=None):
        self.tracker = tracker or StalenessTracker()

    def display_value(self, aggregated_value):
        """
        Value to show for an aggregate

        An approved active correction wins. While a newer correction awaits
        approval, the approved one it replaced stays on display. Other
        amendment types never change the figure.
        """
        if not aggregated_value.has_amendment:
            return aggregated_value.value

        correction = self.active_correction(aggregated_value)
        if correction is None:
            return aggregated_value.value
        if correction.approval_status == ApprovalStatus.APPROVED:
            return correction.amended_value
        if correction.approval_status == ApprovalStatus.PENDING:
            fallback = correction.supersedes
            if fallback is not None and fallback.approval_status == ApprovalStatus.APPROVED:
                return fallback.amended_value
        return aggregated_value.value

    def active_correction(self, aggregated_value):
        return ManagerAmendment.objects.filter(
            aggregated_value=aggregated_value,
            amendment_type=AmendmentType.CORRECTION,
            is_active=True,
        ).select_related('supersedes').first()

    def create_amendment(self, aggregated_value, amended_by, amendment_type=AmendmentType.ANNOTATION,
                         annotation='', amended_value=None, amended_numeric_value=None,
                         justification='', title='', executive_summary='',
                         visibility=AmendmentVisibility.SAME_LEVEL, supporting_data=None):
        """
        Record a manager amendment

        A new Correction takes over the active slot as Pending; the one it
        displaces is deactivated and linked via replaced_by.

        Raises:
            ValueError: invalid amendment type or value fields
        """
        if amendment_type not in AmendmentType.values:
            raise ValueError(f"Unknown amendment type '{amendment_type}'")
        if visibility not in AmendmentVisibility.values:
            raise ValueError(f"Unknown visibility '{visibility}'")

        is_correction = amendment_type == AmendmentType.CORRECTION
        if is_correction:
            amended_value, amended_numeric_value = _correction_values(amended_value, amended_numeric_value)
        elif amended_value not in (None, '') or amended_numeric_value not in (None, ''):
            raise ValueError('Only corrections may carry an amended value')

        with transaction.atomic():
            # Serialize against other amendment operations on the same aggregate
            locked = AggregatedValue.objects.select_for_update().get(pk=aggregated_value.pk)

            previous = None
            on_display = None
            if is_correction:
                previous = ManagerAmendment.objects.select_for_update().filter(
                    aggregated_value=locked,
                    amendment_type=AmendmentType.CORRECTION,
                    is_active=True,
                ).first()
                if previous is not None:
                    on_display = _approved_on_display(previous)
                    # Free the active slot before the new row claims it
                    previous.is_active = False
                    previous.save(update_fields=['is_active', 'updated_at'])

            amendment = ManagerAmendment.objects.create(
                aggregated_value=locked,
                amended_by=amended_by,
                amendment_type=amendment_type,
                title=title,
                amended_value=amended_value or '',
                amended_numeric_value=amended_numeric_value,
                annotation=annotation,
                justification=justification,
                executive_summary=executive_summary,
                supporting_data=supporting_data or {},
                visibility=visibility,
                is_active=True,
                approval_status=ApprovalStatus.PENDING if is_correction else '',
                supersedes=on_display,
            )

            if previous is not None:
                previous.replaced_by = amendment
                previous.save(update_fields=['replaced_by', 'updated_at'])

            if not locked.has_amendment:
                locked.has_amendment = True
                locked.save(update_fields=['has_amendment', 'updated_at'])

        aggregated_value.has_amendment = True
        logger.info(
            "%s amendment %s created on aggregate %s by %s",
            amendment_type, amendment.pk, locked.pk, amended_by
        )

        if amendment_type == AmendmentType.EXECUTIVE_SUMMARY:
            # A synthesis rollup picks the summary up on its next computation
            self.tracker.mark_stale(locked, reason=f'executive summary {amendment.pk}')

        amendment_created.send(sender=self.__class__, amendment=amendment)
        return amendment

    def approve(self, amendment_id, approved_by=None, comments=''):
        """
        Approve a pending correction, making it the displayed value

        Raises:
            ConcurrencyConflict: the correction was superseded or already resolved
        """
        with transaction.atomic():
            amendment = self._lock_pending_correction(amendment_id)
            amendment.approval_status = ApprovalStatus.APPROVED
            amendment.approved_by = approved_by
            amendment.approved_at = timezone.now()
            amendment.approval_comments = comments
            amendment.save()

        logger.info("Correction %s approved by %s", amendment.pk, approved_by)
        amendment_approved.send(sender=self.__class__, amendment=amendment)
        return amendment

    def reject(self, amendment_id, approved_by=None, comments=''):
        """
        Reject a pending correction; the display reverts to the approved
        correction it replaced, or to the computed value

        Raises:
            ConcurrencyConflict: the correction was superseded or already resolved
        """
        with transaction.atomic():
            amendment = self._lock_pending_correction(amendment_id)
            amendment.approval_status = ApprovalStatus.REJECTED
            amendment.is_active = False
            amendment.approved_by = approved_by
            amendment.approved_at = timezone.now()
            amendment.approval_comments = comments
            amendment.save()

            restored = amendment.supersedes
            if restored is not None and restored.approval_status == ApprovalStatus.APPROVED:
                restored.is_active = True
                restored.save(update_fields=['is_active', 'updated_at'])

        logger.info("Correction %s rejected by %s", amendment.pk, approved_by)
        amendment_rejected.send(sender=self.__class__, amendment=amendment)
        return amendment

    def _lock_pending_correction(self, amendment_id):
        amendment = ManagerAmendment.objects.get(pk=amendment_id)
        AggregatedValue.objects.select_for_update().get(pk=amendment.aggregated_value_id)
        # Re-read under the parent lock
        amendment = ManagerAmendment.objects.select_for_update().select_related(
            'supersedes'
        ).get(pk=amendment_id)

        if not amendment.is_correction:
            raise ValueError(f'Amendment {amendment_id} is not a correction and needs no approval')
        if amendment.approval_status != ApprovalStatus.PENDING:
            raise ConcurrencyConflict(
                f'Correction {amendment_id} is already {amendment.approval_status.lower()}'
            )
        if not amendment.is_active:
            raise ConcurrencyConflict(
                f'Correction {amendment_id} was superseded by correction {amendment.replaced_by_id}'
            )
        return amendment


def _correction_values(amended_value, amended_numeric_value):
    """Fill in whichever of the string/numeric forms is missing"""
    if amended_numeric_value not in (None, ''):
        number = parse_number(amended_numeric_value)
        if number is None:
            raise ValueError(f"Amended numeric value '{amended_numeric_value}' is not a number")
        amended_numeric_value = number
        if amended_value in (None, ''):
            amended_value = format_plain(amended_numeric_value)
    elif amended_value not in (None, ''):
        amended_value = str(amended_value)
        amended_numeric_value = parse_number(amended_value)
    else:
        raise ValueError('A correction needs an amended value')
    return amended_value, amended_numeric_value


def _approved_on_display(correction):
    """The approved correction visible while `correction` holds the active slot"""
    if correction.approval_status == ApprovalStatus.APPROVED:
        return correction
    fallback = correction.supersedes
    if fallback is not None and fallback.approval_status == ApprovalStatus.APPROVED:
        return fallback
    return None
