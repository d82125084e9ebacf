"""
Django management command to run the staleness sweep.

Usage:
    python manage.py recompute_aggregates [--period ID] [--workers N]
"""

from django.core.management.base import BaseCommand, CommandError

from aggregation.models import ReportPeriod
from aggregation.staleness import StalenessTracker


class Command(BaseCommand):
    help = 'Recompute stale and incomplete aggregates, deepest hierarchy level first'

    def add_arguments(self, parser):
        parser.add_argument(
            '--period',
            type=int,
            help='Only sweep aggregates of this report period id'
        )
        parser.add_argument(
            '--workers',
            type=int,
            help='Threads per hierarchy level (default: AGGREGATION SWEEP_MAX_WORKERS)'
        )

    def handle(self, *args, **options):
        period_id = options.get('period')
        workers = options.get('workers')

        if period_id is not None and not ReportPeriod.objects.filter(pk=period_id).exists():
            raise CommandError(f'Report period {period_id} does not exist')
        if workers is not None and workers < 1:
            raise CommandError('--workers must be at least 1')

        summary = StalenessTracker().sweep(period_id=period_id, max_workers=workers)

        self.stdout.write(self.style.SUCCESS(
            f"Swept {summary['levels']} level(s): {summary['computed']} recomputed, "
            f"{summary['errors']} in error"
        ))
        for failure in summary['failed']:
            self.stdout.write(self.style.ERROR(f"  Aggregate {failure['id']}: {failure['error']}"))
