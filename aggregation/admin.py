import csv

from django.contrib import admin, messages
from django.http import HttpResponse

from aggregation.amendments import AmendmentResolver
from aggregation.exceptions import ConcurrencyConflict, ConfigurationError
from aggregation.models import (
    AggregatedValue, AggregationRule, ManagerAmendment, OrganizationalUnit, Report,
    ReportField, ReportFieldValue, ReportPeriod,
)
from aggregation.rules import RuleCatalog
from aggregation.staleness import StalenessTracker


@admin.register(OrganizationalUnit)
class OrganizationalUnitAdmin(admin.ModelAdmin):
    list_display = ['name', 'code', 'level', 'parent', 'sort_order', 'is_active']
    list_filter = ['level', 'is_active']
    search_fields = ['name', 'code']
    list_editable = ['sort_order', 'is_active']


@admin.register(ReportPeriod)
class ReportPeriodAdmin(admin.ModelAdmin):
    list_display = ['name', 'start_date', 'end_date', 'is_active']
    list_filter = ['is_active']


@admin.register(ReportField)
class ReportFieldAdmin(admin.ModelAdmin):
    list_display = ['key', 'label', 'field_type', 'is_active']
    list_filter = ['field_type', 'is_active']
    search_fields = ['key', 'label']


class ReportFieldValueInline(admin.TabularInline):
    model = ReportFieldValue
    extra = 0
    fields = ['report_field', 'value', 'numeric_value', 'was_pre_populated']


@admin.register(Report)
class ReportAdmin(admin.ModelAdmin):
    list_display = ['organizational_unit', 'report_period', 'status', 'submitted_at']
    list_filter = ['status', 'report_period']
    search_fields = ['organizational_unit__name']
    inlines = [ReportFieldValueInline]


@admin.register(AggregationRule)
class AggregationRuleAdmin(admin.ModelAdmin):
    list_display = ['name', 'report_field', 'method', 'priority', 'auto_aggregate', 'is_active']
    list_filter = ['method', 'is_active', 'auto_aggregate']
    search_fields = ['name', 'report_field__key', 'report_field__label']
    actions = ['activate_rules', 'deactivate_rules']

    fieldsets = (
        ('Rule', {
            'fields': ('report_field', 'name', 'description', 'method', 'priority', 'auto_aggregate', 'is_active')
        }),
        ('Numeric', {
            'fields': ('weight_field_key', 'custom_formula', 'decimal_precision', 'display_format',
                       'include_empty_values', 'min_source_values')
        }),
        ('Text', {
            'fields': ('text_aggregation_mode', 'max_text_items', 'text_separator')
        }),
    )

    def save_model(self, request, obj, form, change):
        if obj.is_active:
            try:
                RuleCatalog().activate(obj)
                return
            except ConfigurationError as e:
                obj.is_active = False
                self.message_user(request, f'Saved inactive: {e}', level=messages.WARNING)
        super().save_model(request, obj, form, change)

    def has_delete_permission(self, request, obj=None):
        # Rules with computed values can only be deactivated
        if obj is not None and obj.aggregated_values.exists():
            return False
        return super().has_delete_permission(request, obj)

    def activate_rules(self, request, queryset):
        catalog = RuleCatalog()
        activated = 0
        for rule in queryset:
            try:
                catalog.activate(rule)
                activated += 1
            except ConfigurationError as e:
                self.message_user(request, f'{rule.name}: {e}', level=messages.ERROR)
        if activated:
            self.message_user(request, f'Activated {activated} rule(s)')
    activate_rules.short_description = 'Validate and activate selected rules'

    def deactivate_rules(self, request, queryset):
        catalog = RuleCatalog()
        for rule in queryset:
            catalog.deactivate(rule)
        self.message_user(request, f'Deactivated {queryset.count()} rule(s)')
    deactivate_rules.short_description = 'Deactivate selected rules'


@admin.register(AggregatedValue)
class AggregatedValueAdmin(admin.ModelAdmin):
    list_display = [
        'aggregation_rule', 'organizational_unit', 'report_period', 'value',
        'status', 'source_count', 'is_complete', 'has_amendment', 'computed_at'
    ]
    list_filter = ['status', 'is_complete', 'has_amendment', 'report_period', 'aggregation_rule']
    search_fields = ['aggregation_rule__name', 'organizational_unit__name']
    readonly_fields = [
        'aggregation_rule', 'report_period', 'organizational_unit', 'value', 'numeric_value',
        'source_count', 'source_report_ids', 'aggregation_details', 'status', 'has_amendment',
        'is_complete', 'missing_sources', 'computed_at', 'computed_by', 'created_at', 'updated_at'
    ]
    actions = ['mark_stale', 'recompute_now', 'release_manual_override', 'export_as_csv']

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def mark_stale(self, request, queryset):
        tracker = StalenessTracker()
        marked = sum(tracker.mark_stale(aggregate, reason=f'admin {request.user}') for aggregate in queryset)
        self.message_user(request, f'Marked {marked} aggregate(s) stale')
    mark_stale.short_description = 'Mark selected for recomputation'

    def recompute_now(self, request, queryset):
        from aggregation.engine import RollupComputer
        computer = RollupComputer()
        errors = 0
        for aggregate in queryset.select_related('aggregation_rule'):
            try:
                result = computer.compute(
                    aggregate.aggregation_rule,
                    aggregate.organizational_unit_id,
                    aggregate.report_period_id,
                    computed_by=request.user,
                )
            except ConfigurationError as e:
                self.message_user(request, f'{aggregate}: {e}', level=messages.ERROR)
                continue
            if result.status == AggregatedValue.Status.ERROR:
                errors += 1
        self.message_user(request, f'Recomputed {queryset.count()} aggregate(s), {errors} in error')
    recompute_now.short_description = 'Recompute selected now'

    def release_manual_override(self, request, queryset):
        tracker = StalenessTracker()
        released = 0
        for aggregate in queryset.filter(status=AggregatedValue.Status.MANUAL_OVERRIDE):
            tracker.reenable(aggregate)
            released += 1
        self.message_user(request, f'Released {released} manual override(s)')
    release_manual_override.short_description = 'Release manual override'

    def export_as_csv(self, request, queryset):
        response = HttpResponse(content_type='text/csv')
        response['Content-Disposition'] = 'attachment; filename="aggregates_export.csv"'

        resolver = AmendmentResolver()
        writer = csv.writer(response)
        writer.writerow([
            'Rule', 'Method', 'Org Unit', 'Period', 'Value', 'Display Value',
            'Status', 'Sources', 'Complete', 'Missing', 'Computed At'
        ])
        for aggregate in queryset.select_related('aggregation_rule', 'organizational_unit', 'report_period'):
            writer.writerow([
                aggregate.aggregation_rule.name,
                aggregate.aggregation_rule.get_method_display(),
                aggregate.organizational_unit.name,
                aggregate.report_period.name,
                aggregate.value,
                resolver.display_value(aggregate),
                aggregate.get_status_display(),
                aggregate.source_count,
                'Yes' if aggregate.is_complete else 'No',
                ', '.join(str(unit_id) for unit_id in aggregate.missing_sources or []),
                aggregate.computed_at.strftime('%d/%m/%Y %H:%M') if aggregate.computed_at else '',
            ])
        return response
    export_as_csv.short_description = 'Export selected aggregates to CSV'


@admin.register(ManagerAmendment)
class ManagerAmendmentAdmin(admin.ModelAdmin):
    list_display = [
        'aggregated_value', 'amendment_type', 'title', 'amended_value',
        'approval_status', 'is_active', 'amended_by', 'created_at'
    ]
    list_filter = ['amendment_type', 'approval_status', 'is_active', 'visibility']
    search_fields = ['title', 'annotation', 'justification']
    readonly_fields = [
        'aggregated_value', 'amended_by', 'amendment_type', 'amended_value', 'amended_numeric_value',
        'is_active', 'approval_status', 'approved_by', 'approved_at', 'replaced_by', 'supersedes',
        'created_at', 'updated_at'
    ]
    actions = ['approve_corrections', 'reject_corrections']

    def has_add_permission(self, request):
        # Amendments go through the resolver so the active slot stays consistent
        return False

    def _resolve(self, request, queryset, action, verb):
        done = 0
        for amendment in queryset:
            try:
                action(amendment.pk, approved_by=request.user, comments=f'{verb} in admin')
                done += 1
            except (ConcurrencyConflict, ValueError) as e:
                self.message_user(request, f'Amendment {amendment.pk}: {e}', level=messages.WARNING)
        self.message_user(request, f'{verb} {done} correction(s)')

    def approve_corrections(self, request, queryset):
        self._resolve(request, queryset, AmendmentResolver().approve, 'Approved')
    approve_corrections.short_description = 'Approve selected corrections'

    def reject_corrections(self, request, queryset):
        self._resolve(request, queryset, AmendmentResolver().reject, 'Rejected')
    reject_corrections.short_description = 'Reject selected corrections'
