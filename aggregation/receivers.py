"""
Report edits mark dependent aggregates stale; recomputation is left to the sweep
"""
from django.db.models.signals import post_save
from django.dispatch import receiver

from aggregation.models import Report, ReportFieldValue
from aggregation.staleness import StalenessTracker


@receiver(post_save, sender=ReportFieldValue)
def field_value_saved(sender, instance, raw=False, **kwargs):
    if raw:
        # Fixture loading
        return
    StalenessTracker().mark_field_changed(instance)


@receiver(post_save, sender=Report)
def report_saved(sender, instance, raw=False, created=False, **kwargs):
    if raw or created:
        return
    StalenessTracker().mark_report_changed(instance)
