"""
Aggregation rule catalog
Resolves the one rule that governs a field and validates rule configuration
"""
import logging
from decimal import Decimal

from django.db import transaction

from aggregation.conf import get_setting
from aggregation.exceptions import ConfigurationError, FormulaError
from aggregation.formula import Formula
from aggregation.models import AggregationMethod, AggregationRule, TextAggregationMode

logger = logging.getLogger(__name__)


class RuleCatalog:
    """Lookup and validation of AggregationRule records"""

    def resolve_rule(self, field_id):
        """
        Return the active rule with the lowest priority for a field

        Raises:
            ConfigurationError: no active rule, or active rules tie on priority
        """
        rules = list(
            AggregationRule.objects.filter(report_field_id=field_id, is_active=True)
            .order_by('priority', 'id')
        )
        if not rules:
            raise ConfigurationError(f'No active aggregation rule for field {field_id}')

        priorities = [rule.priority for rule in rules]
        if len(set(priorities)) != len(priorities):
            tied = sorted({p for p in priorities if priorities.count(p) > 1})
            raise ConfigurationError(
                f'Active aggregation rules for field {field_id} tie on priority {tied}'
            )
        return rules[0]

    def validate(self, rule):
        """
        Check method-specific invariants before a rule is activated or used

        Raises:
            ConfigurationError: listing every problem found
        """
        errors = []

        if rule.method not in AggregationMethod.values:
            errors.append(f"Unknown aggregation method '{rule.method}'")
        if rule.method == AggregationMethod.WEIGHTED_AVERAGE and not rule.weight_field_key:
            errors.append('WeightedAverage requires a weight field key')
        if rule.method == AggregationMethod.CUSTOM and not (rule.custom_formula or '').strip():
            errors.append('Custom method requires a formula')
        elif (rule.custom_formula or '').strip():
            # Syntax only; unknown names and arithmetic failures surface per computation
            try:
                Formula(rule.custom_formula)
            except FormulaError as e:
                errors.append(f"Invalid formula '{rule.custom_formula}': {e}")
        if rule.text_aggregation_mode and rule.text_aggregation_mode not in TextAggregationMode.values:
            errors.append(f"Unknown text aggregation mode '{rule.text_aggregation_mode}'")

        max_precision = get_setting('MAX_DECIMAL_PRECISION')
        if rule.decimal_precision is None or not 0 <= rule.decimal_precision <= max_precision:
            errors.append(f'Decimal precision must be between 0 and {max_precision}')
        if rule.max_text_items is not None and rule.max_text_items < 1:
            errors.append('Max text items must be at least 1')
        if rule.min_source_values is None or rule.min_source_values < 0:
            errors.append('Min source values cannot be negative')

        if rule.display_format:
            try:
                rule.display_format.format(Decimal(0))
            except (IndexError, KeyError, TypeError, ValueError) as e:
                errors.append(f"Invalid display format '{rule.display_format}': {e}")

        if errors:
            raise ConfigurationError('; '.join(errors))
        return True

    @transaction.atomic
    def activate(self, rule):
        """Validate and activate a rule, refusing a priority tie on the same field"""
        self.validate(rule)

        clash = AggregationRule.objects.select_for_update().filter(
            report_field_id=rule.report_field_id,
            is_active=True,
            priority=rule.priority,
        ).exclude(pk=rule.pk)
        if clash.exists():
            raise ConfigurationError(
                f"Rule '{clash.first().name}' is already active on this field with priority {rule.priority}"
            )

        rule.is_active = True
        rule.save()
        logger.info("Activated aggregation rule %s (%s, priority %s)", rule.pk, rule.method, rule.priority)
        return rule

    def deactivate(self, rule):
        rule.is_active = False
        rule.save(update_fields=['is_active', 'updated_at'])
        logger.info("Deactivated aggregation rule %s", rule.pk)
        return rule
