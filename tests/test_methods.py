from decimal import Decimal

import pytest

from aggregation import methods
from aggregation.exceptions import ConfigurationError, FormulaError, InsufficientData
from aggregation.models import AggregatedValue, AggregationMethod, AggregationRule, TextAggregationMode
from aggregation.values import parse_number


def leaf(unit_id, raw, weight=None):
    raw = '' if raw is None else str(raw)
    return methods.ChildInput(
        org_unit_id=unit_id,
        is_leaf=True,
        raw=raw,
        numeric=parse_number(raw),
        is_empty=raw.strip() == '',
        report_ids=[100 + unit_id],
        weight=None if weight is None else Decimal(weight),
        details={},
    )


def rolled_up(unit_id, value, details=None, weight=None):
    return methods.ChildInput(
        org_unit_id=unit_id,
        is_leaf=False,
        raw=value,
        numeric=parse_number(value),
        is_empty=False,
        report_ids=[200 + unit_id],
        weight=None if weight is None else Decimal(weight),
        details=details or {},
    )


def rule(method, **kwargs):
    return AggregationRule(name='test', method=method, **kwargs)


class TestNumericMethods:

    def test_sum_excludes_empty_values(self):
        result = methods.aggregate(rule(AggregationMethod.SUM), [leaf(1, '10.1'), leaf(2, '20.25'), leaf(3, '')])
        assert result.value == '30.35'
        assert result.numeric == Decimal('30.35')
        assert result.source_count == 2
        assert [c.org_unit_id for c in result.contributors] == [1, 2]

    def test_average_counts_empty_as_zero_when_included(self):
        children = [leaf(1, '10'), leaf(2, '20'), leaf(3, '')]
        assert methods.aggregate(rule(AggregationMethod.AVERAGE), children).value == '15.00'
        included = rule(AggregationMethod.AVERAGE, include_empty_values=True)
        result = methods.aggregate(included, children)
        assert result.value == '10.00'
        assert result.source_count == 3

    def test_average_of_nothing_is_insufficient(self):
        with pytest.raises(InsufficientData):
            methods.aggregate(rule(AggregationMethod.AVERAGE), [leaf(1, '')])

    def test_min_max(self):
        children = [leaf(1, '7'), leaf(2, '3.5'), leaf(3, '12')]
        assert methods.aggregate(rule(AggregationMethod.MIN, decimal_precision=1), children).value == '3.5'
        assert methods.aggregate(rule(AggregationMethod.MAX, decimal_precision=0), children).value == '12'

    def test_weighted_average(self):
        result = methods.aggregate(
            rule(AggregationMethod.WEIGHTED_AVERAGE, weight_field_key='headcount'),
            [leaf(1, '80', weight=2), leaf(2, '90', weight=3)],
        )
        assert result.value == '86.00'
        assert result.details['weight_total'] == '5'

    def test_weighted_average_skips_children_without_weight(self):
        result = methods.aggregate(
            rule(AggregationMethod.WEIGHTED_AVERAGE, weight_field_key='headcount'),
            [leaf(1, '80', weight=2), leaf(2, '10')],
        )
        assert result.value == '80.00'
        assert result.source_count == 1

    def test_weighted_average_zero_weights(self):
        with pytest.raises(InsufficientData, match='weights is zero'):
            methods.aggregate(
                rule(AggregationMethod.WEIGHTED_AVERAGE, weight_field_key='headcount'),
                [leaf(1, '80', weight=0), leaf(2, '90', weight=0)],
            )

    def test_count_composes_child_counts(self):
        count = rule(AggregationMethod.COUNT)
        assert methods.aggregate(count, [leaf(1, 'x'), leaf(2, ''), leaf(3, 'y')]).value == '2'
        assert methods.aggregate(count, [rolled_up(1, '2'), rolled_up(2, '3')]).value == '5'

    def test_percentage_default_predicate(self):
        result = methods.aggregate(
            rule(AggregationMethod.PERCENTAGE, decimal_precision=1),
            [leaf(1, 'yes'), leaf(2, 'no'), leaf(3, 'done')],
        )
        assert result.value == '66.7'
        assert result.details == {'numerator': 2, 'denominator': 3}

    def test_percentage_with_predicate_formula(self):
        result = methods.aggregate(
            rule(AggregationMethod.PERCENTAGE, custom_formula='value >= 90'),
            [leaf(1, '95'), leaf(2, '80'), leaf(3, '90'), leaf(4, '70')],
        )
        assert result.value == '50.00'

    def test_percentage_composes_from_children(self):
        # 1 of 3 and 3 of 5 is 4 of 8, not the mean of 33.33 and 60
        result = methods.aggregate(
            rule(AggregationMethod.PERCENTAGE),
            [
                rolled_up(1, '33.33', details={'numerator': 1, 'denominator': 3}),
                rolled_up(2, '60.00', details={'numerator': 3, 'denominator': 5}),
            ],
        )
        assert result.value == '50.00'

    def test_custom_formula(self):
        result = methods.aggregate(
            rule(AggregationMethod.CUSTOM, custom_formula='SUM / COUNT * 100'),
            [leaf(1, '1'), leaf(2, '2')],
        )
        assert result.value == '150.00'
        assert result.details['formula'] == 'SUM / COUNT * 100'

    def test_custom_formula_failure_is_a_formula_error(self):
        with pytest.raises(FormulaError):
            methods.aggregate(
                rule(AggregationMethod.CUSTOM, custom_formula='SUM / (COUNT - 2)'),
                [leaf(1, '1'), leaf(2, '2')],
            )

    def test_unrenderable_display_format_is_a_formula_error(self):
        with pytest.raises(FormulaError, match='cannot render'):
            methods.aggregate(
                rule(AggregationMethod.SUM, display_format='{:d}'),
                [leaf(1, '1'), leaf(2, '2')],
            )

    def test_unknown_method(self):
        with pytest.raises(ConfigurationError):
            methods.aggregate(rule('Median'), [leaf(1, '1')])


class TestTextMethods:

    def test_concatenate_with_limit(self):
        result = methods.aggregate(
            rule(AggregationMethod.CONCATENATE, text_aggregation_mode=TextAggregationMode.COMMA_SEPARATED,
                 max_text_items=2),
            [leaf(1, 'A'), leaf(2, 'B'), leaf(3, 'C')],
        )
        assert result.value == 'A, B (+1 more)'
        assert result.details['hidden_items'] == 1

    def test_concatenate_lists(self):
        children = [leaf(1, 'First'), leaf(2, 'Second')]
        bullets = methods.aggregate(
            rule(AggregationMethod.CONCATENATE, text_aggregation_mode=TextAggregationMode.BULLET_LIST), children
        )
        assert bullets.value == '• First\n• Second'
        numbered = methods.aggregate(
            rule(AggregationMethod.CONCATENATE, text_aggregation_mode=TextAggregationMode.NUMBERED_LIST), children
        )
        assert numbered.value == '1. First\n2. Second'

    def test_concatenate_custom_separator(self):
        result = methods.aggregate(
            rule(AggregationMethod.CONCATENATE, text_separator=' | '),
            [leaf(1, 'A'), leaf(2, ''), leaf(3, 'C')],
        )
        assert result.value == 'A | C'

    def test_select_first_and_last(self):
        children = [leaf(1, ''), leaf(2, 'middle'), leaf(3, 'end')]
        assert methods.aggregate(rule(AggregationMethod.SELECT_FIRST), children).value == 'middle'
        assert methods.aggregate(rule(AggregationMethod.SELECT_LAST), children).value == 'end'

    @pytest.mark.parametrize('values, expected', [
        (['x', 'y', 'x'], 'x'),
        (['x', 'y'], 'x'),
        (['y', 'x', 'x', 'y'], 'y'),
    ])
    def test_select_most_common_breaks_ties_by_first_seen(self, values, expected):
        children = [leaf(i, v) for i, v in enumerate(values, start=1)]
        for _ in range(3):
            assert methods.aggregate(rule(AggregationMethod.SELECT_MOST_COMMON), children).value == expected

    def test_select_from_nothing(self):
        with pytest.raises(InsufficientData):
            methods.aggregate(rule(AggregationMethod.SELECT_FIRST), [leaf(1, '')])

    def test_manual_synthesis_waits_for_summary(self):
        children = [leaf(1, 'notes')]
        pending = methods.aggregate(rule(AggregationMethod.MANUAL_SYNTHESIS), children)
        assert pending.status == AggregatedValue.Status.PENDING
        assert pending.value == ''

        done = methods.aggregate(rule(AggregationMethod.MANUAL_SYNTHESIS), children, executive_summary='All good')
        assert done.status == AggregatedValue.Status.CURRENT
        assert done.value == 'All good'
