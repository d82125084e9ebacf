"""
Django management command to export aggregated values with their display values.

Usage:
    python manage.py export_aggregates --period ID [--output FILE]
"""

import pandas as pd
from django.core.management.base import BaseCommand, CommandError

from aggregation.amendments import AmendmentResolver
from aggregation.models import AggregatedValue, ReportPeriod


class Command(BaseCommand):
    help = 'Export the aggregates of a report period to CSV'

    def add_arguments(self, parser):
        parser.add_argument(
            '--period',
            type=int,
            required=True,
            help='Report period id'
        )
        parser.add_argument(
            '--output',
            type=str,
            help='CSV file to write (default: stdout)'
        )

    def handle(self, *args, **options):
        try:
            period = ReportPeriod.objects.get(pk=options['period'])
        except ReportPeriod.DoesNotExist:
            raise CommandError(f"Report period {options['period']} does not exist")

        resolver = AmendmentResolver()
        aggregates = AggregatedValue.objects.filter(report_period=period).select_related(
            'aggregation_rule', 'organizational_unit'
        ).order_by('aggregation_rule__name', 'organizational_unit__sort_order', 'organizational_unit_id')

        rows = [
            {
                'rule': aggregate.aggregation_rule.name,
                'method': aggregate.aggregation_rule.method,
                'org_unit': aggregate.organizational_unit.name,
                'org_unit_id': aggregate.organizational_unit_id,
                'value': aggregate.value,
                'display_value': resolver.display_value(aggregate),
                'status': aggregate.status,
                'source_count': aggregate.source_count,
                'is_complete': aggregate.is_complete,
                'missing_sources': ';'.join(str(unit_id) for unit_id in aggregate.missing_sources or []),
                'has_amendment': aggregate.has_amendment,
            }
            for aggregate in aggregates
        ]
        df = pd.DataFrame(rows, columns=[
            'rule', 'method', 'org_unit', 'org_unit_id', 'value', 'display_value', 'status',
            'source_count', 'is_complete', 'missing_sources', 'has_amendment',
        ])

        output = options.get('output')
        if output:
            df.to_csv(output, index=False)
            self.stdout.write(self.style.SUCCESS(f'Exported {len(df)} aggregate(s) for {period.name} to {output}'))
        else:
            self.stdout.write(df.to_csv(index=False))
