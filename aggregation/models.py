"""
Models for the Aggregation & Amendment Resolution Engine
Rolls report field values up the organizational hierarchy and layers
manager amendments on top of the computed figures
"""
from django.db import models
from django.db.models import Q
from django.contrib.auth.models import User


# ---------------------------------------------------------------------------
# Hosting application records read by the engine
# ---------------------------------------------------------------------------

class OrganizationalUnit(models.Model):
    """Node in the organizational hierarchy (Campus, Department, Team, ...)"""

    class Level(models.IntegerChoices):
        ROOT = 0, 'Root / Organization'
        CAMPUS = 1, 'Campus'
        FACULTY = 2, 'Faculty / Division'
        DEPARTMENT = 3, 'Department'
        SECTOR = 4, 'Sector / Section'
        TEAM = 5, 'Team / Unit'

    name = models.CharField(max_length=200)
    code = models.CharField(max_length=50, blank=True)
    level = models.IntegerField(choices=Level.choices, default=Level.DEPARTMENT)
    parent = models.ForeignKey(
        'self', null=True, blank=True, on_delete=models.PROTECT, related_name='children'
    )
    sort_order = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['sort_order', 'id']

    def __str__(self):
        if self.level == self.Level.ROOT:
            return self.name
        return f"{self.name} ({self.get_level_display()})"

    def depth(self):
        """Distance from the root of the hierarchy"""
        depth = 0
        node = self
        while node.parent_id is not None:
            depth += 1
            node = node.parent
        return depth

    def ancestors(self):
        """Parent, grandparent, ... up to the root"""
        chain = []
        node = self.parent
        while node is not None:
            chain.append(node)
            node = node.parent
        return chain


class ReportPeriod(models.Model):
    """Reporting period, e.g. 'January 2026' or 'Q1 2026'"""
    name = models.CharField(max_length=100)
    start_date = models.DateField()
    end_date = models.DateField()
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-start_date']

    def __str__(self):
        return self.name


class ReportField(models.Model):
    """A field on a report template"""

    FIELD_TYPE_CHOICES = [
        ('text', 'Text'),
        ('numeric', 'Numeric'),
        ('date', 'Date'),
        ('dropdown', 'Dropdown'),
        ('checkbox', 'Checkbox'),
    ]

    key = models.CharField(max_length=50, unique=True)
    label = models.CharField(max_length=200)
    field_type = models.CharField(max_length=20, choices=FIELD_TYPE_CHOICES, default='text')
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['label']

    def __str__(self):
        return self.label


class Report(models.Model):
    """One org unit's report for one period"""

    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('submitted', 'Submitted'),
        ('under_review', 'Under Review'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
    ]

    organizational_unit = models.ForeignKey(
        OrganizationalUnit, on_delete=models.PROTECT, related_name='reports'
    )
    report_period = models.ForeignKey(ReportPeriod, on_delete=models.PROTECT, related_name='reports')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    submitted_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ['organizational_unit', 'report_period']

    def __str__(self):
        return f"{self.organizational_unit.name} - {self.report_period.name}"


class ReportFieldValue(models.Model):
    """Value entered for one field of one report"""
    report = models.ForeignKey(Report, on_delete=models.CASCADE, related_name='field_values')
    report_field = models.ForeignKey(ReportField, on_delete=models.PROTECT, related_name='values')

    value = models.TextField(blank=True, default='')
    numeric_value = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    was_pre_populated = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ['report', 'report_field']

    def __str__(self):
        return f"{self.report_field.key} = {self.value}"


# ---------------------------------------------------------------------------
# Aggregation records
# ---------------------------------------------------------------------------

class AggregationMethod(models.TextChoices):
    # Numeric methods
    SUM = 'Sum', 'Sum'
    AVERAGE = 'Average', 'Average'
    WEIGHTED_AVERAGE = 'WeightedAverage', 'Weighted Average'
    MIN = 'Min', 'Minimum'
    MAX = 'Max', 'Maximum'
    COUNT = 'Count', 'Count'
    PERCENTAGE = 'Percentage', 'Percentage'
    CUSTOM = 'Custom', 'Custom Formula'

    # Textual methods
    CONCATENATE = 'Concatenate', 'Concatenate'
    SELECT_FIRST = 'SelectFirst', 'Select First'
    SELECT_LAST = 'SelectLast', 'Select Last'
    SELECT_MOST_COMMON = 'SelectMostCommon', 'Most Common'
    MANUAL_SYNTHESIS = 'ManualSynthesis', 'Manual Synthesis'


NUMERIC_METHODS = frozenset({
    AggregationMethod.SUM, AggregationMethod.AVERAGE, AggregationMethod.WEIGHTED_AVERAGE,
    AggregationMethod.MIN, AggregationMethod.MAX, AggregationMethod.COUNT,
    AggregationMethod.PERCENTAGE, AggregationMethod.CUSTOM,
})

TEXT_METHODS = frozenset({
    AggregationMethod.CONCATENATE, AggregationMethod.SELECT_FIRST, AggregationMethod.SELECT_LAST,
    AggregationMethod.SELECT_MOST_COMMON, AggregationMethod.MANUAL_SYNTHESIS,
})


class TextAggregationMode(models.TextChoices):
    BULLET_LIST = 'BulletList', 'Bullet List'
    NUMBERED_LIST = 'NumberedList', 'Numbered List'
    COMMA_SEPARATED = 'CommaSeparated', 'Comma Separated'
    NEW_LINE_SEPARATED = 'NewLineSeparated', 'New Line Separated'
    PARAGRAPH = 'Paragraph', 'Paragraph'


class AggregationRule(models.Model):
    """
    How a report field is rolled up from lower hierarchy levels.
    When several active rules target one field, the lowest priority wins.
    """
    report_field = models.ForeignKey(
        ReportField, on_delete=models.PROTECT, related_name='aggregation_rules'
    )
    name = models.CharField(max_length=100)
    description = models.CharField(max_length=500, blank=True)

    method = models.CharField(
        max_length=30, choices=AggregationMethod.choices, default=AggregationMethod.SUM
    )

    # Method parameters
    weight_field_key = models.CharField(max_length=50, blank=True)  # WeightedAverage only
    custom_formula = models.CharField(max_length=500, blank=True)  # Custom, or Percentage predicate
    text_aggregation_mode = models.CharField(
        max_length=30, choices=TextAggregationMode.choices, blank=True
    )
    max_text_items = models.IntegerField(null=True, blank=True)
    text_separator = models.CharField(max_length=20, blank=True)
    include_empty_values = models.BooleanField(default=False)
    min_source_values = models.IntegerField(default=1)
    decimal_precision = models.IntegerField(default=2)
    display_format = models.CharField(max_length=50, blank=True)  # e.g. '{:,.2f}'

    auto_aggregate = models.BooleanField(default=True)
    priority = models.IntegerField(default=100)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['report_field', 'priority', 'id']
        indexes = [
            models.Index(fields=['report_field', 'is_active', 'priority']),
        ]

    def __str__(self):
        return f"{self.name} ({self.get_method_display()})"

    @property
    def is_numeric_method(self):
        return self.method in NUMERIC_METHODS

    @property
    def is_text_method(self):
        return self.method in TEXT_METHODS

    @property
    def requires_weight_field(self):
        return self.method == AggregationMethod.WEIGHTED_AVERAGE

    @property
    def requires_custom_formula(self):
        return self.method == AggregationMethod.CUSTOM


class AggregatedValue(models.Model):
    """
    Rolled-up value of one rule for one org unit and period.
    Refreshed in place on every recomputation, never deleted.
    """

    class Status(models.TextChoices):
        PENDING = 'Pending', 'Pending'
        CURRENT = 'Current', 'Current'
        STALE = 'Stale', 'Stale'
        ERROR = 'Error', 'Error'
        MANUAL_OVERRIDE = 'ManualOverride', 'Manual Override'

    aggregation_rule = models.ForeignKey(
        AggregationRule, on_delete=models.PROTECT, related_name='aggregated_values'
    )
    report_period = models.ForeignKey(
        ReportPeriod, on_delete=models.PROTECT, related_name='aggregated_values'
    )
    organizational_unit = models.ForeignKey(
        OrganizationalUnit, on_delete=models.PROTECT, related_name='aggregated_values'
    )

    value = models.TextField(blank=True, default='')
    numeric_value = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)

    # Drill-down
    source_count = models.IntegerField(default=0)
    source_report_ids = models.JSONField(default=list, blank=True)
    aggregation_details = models.JSONField(default=dict, blank=True)

    status = models.CharField(max_length=30, choices=Status.choices, default=Status.PENDING)
    has_amendment = models.BooleanField(default=False)

    # Completeness
    is_complete = models.BooleanField(default=True)
    missing_sources = models.JSONField(default=list, blank=True)

    computed_at = models.DateTimeField(null=True, blank=True)
    computed_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='computed_aggregates'
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-computed_at']
        constraints = [
            models.UniqueConstraint(
                fields=['aggregation_rule', 'report_period', 'organizational_unit'],
                name='unique_aggregate_per_rule_period_unit',
            ),
        ]
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['report_period', 'organizational_unit']),
        ]

    def __str__(self):
        return f"{self.aggregation_rule.name} @ {self.organizational_unit.name} ({self.report_period.name})"

    @property
    def is_stale(self):
        return self.status == self.Status.STALE

    @property
    def is_pending(self):
        return self.status == self.Status.PENDING

    @property
    def needs_recomputation(self):
        return self.is_stale or not self.is_complete


class AmendmentType(models.TextChoices):
    ANNOTATION = 'Annotation', 'Annotation'
    CORRECTION = 'Correction', 'Correction'
    EXECUTIVE_SUMMARY = 'ExecutiveSummary', 'Executive Summary'
    CONTEXTUAL_NOTE = 'ContextualNote', 'Contextual Note'
    HIGHLIGHT = 'Highlight', 'Highlight'
    WARNING = 'Warning', 'Warning'


class AmendmentVisibility(models.TextChoices):
    PRIVATE = 'Private', 'Private (Only Me)'
    SAME_LEVEL = 'SameLevel', 'Same Level'
    UPWARD_ONLY = 'UpwardOnly', 'Upward Only'
    DOWNWARD_ONLY = 'DownwardOnly', 'Downward Only'
    ALL_LEVELS = 'AllLevels', 'All Levels'


class ApprovalStatus(models.TextChoices):
    PENDING = 'Pending', 'Pending Approval'
    APPROVED = 'Approved', 'Approved'
    REJECTED = 'Rejected', 'Rejected'


class ManagerAmendment(models.Model):
    """
    Manager annotation or correction layered on an aggregated value.
    Only Corrections carry an amended value and go through approval.
    """
    aggregated_value = models.ForeignKey(
        AggregatedValue, on_delete=models.PROTECT, related_name='amendments'
    )
    amended_by = models.ForeignKey(User, on_delete=models.PROTECT, related_name='amendments')

    amendment_type = models.CharField(
        max_length=30, choices=AmendmentType.choices, default=AmendmentType.ANNOTATION
    )
    title = models.CharField(max_length=200, blank=True)

    # Corrections only
    amended_value = models.TextField(blank=True)
    amended_numeric_value = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)

    annotation = models.TextField(blank=True)
    justification = models.TextField(blank=True)
    executive_summary = models.TextField(blank=True)
    supporting_data = models.JSONField(default=dict, blank=True)

    visibility = models.CharField(
        max_length=30, choices=AmendmentVisibility.choices, default=AmendmentVisibility.SAME_LEVEL
    )

    is_active = models.BooleanField(default=True)

    # Approval workflow (Corrections only)
    approval_status = models.CharField(max_length=20, choices=ApprovalStatus.choices, blank=True)
    approved_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='approved_amendments'
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    approval_comments = models.CharField(max_length=500, blank=True)

    # Versioning
    replaced_by = models.ForeignKey(
        'self', null=True, blank=True, on_delete=models.SET_NULL, related_name='+'
    )
    supersedes = models.ForeignKey(
        'self', null=True, blank=True, on_delete=models.SET_NULL, related_name='+'
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['aggregated_value'],
                condition=Q(is_active=True, amendment_type='Correction'),
                name='one_active_correction_per_value',
            ),
        ]
        indexes = [
            models.Index(fields=['aggregated_value', 'amendment_type', 'is_active']),
        ]

    def __str__(self):
        return f"{self.get_amendment_type_display()} on {self.aggregated_value_id}"

    @property
    def is_correction(self):
        return self.amendment_type == AmendmentType.CORRECTION

    @property
    def is_summary(self):
        return self.amendment_type == AmendmentType.EXECUTIVE_SUMMARY

    @property
    def requires_approval(self):
        return self.is_correction and self.approval_status == ApprovalStatus.PENDING

    @property
    def is_approved(self):
        return self.approval_status == ApprovalStatus.APPROVED
