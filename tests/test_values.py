from decimal import Decimal

import pytest

from aggregation.exceptions import FormulaError
from aggregation.formula import Formula
from aggregation.values import format_number, format_plain, is_truthy, parse_number, round_half_even


class TestParsing:

    def test_parse_number_strips_currency_and_separators(self):
        assert parse_number('$1,234.50') == Decimal('1234.50')
        assert parse_number('45%') == Decimal('45')

    def test_parse_number_rejects_text_and_empties(self):
        assert parse_number('n/a') is None
        assert parse_number('   ') is None
        assert parse_number(None) is None
        assert parse_number('NaN') is None

    def test_truthy_values(self):
        assert is_truthy('Yes')
        assert is_truthy('1')
        assert not is_truthy('0')
        assert not is_truthy('no')


class TestRounding:

    def test_round_half_even(self):
        assert round_half_even(Decimal('2.345'), 2) == Decimal('2.34')
        assert round_half_even(Decimal('2.355'), 2) == Decimal('2.36')
        assert round_half_even(Decimal('0.5'), 0) == Decimal('0')
        assert round_half_even(Decimal('1.5'), 0) == Decimal('2')

    def test_no_negative_zero(self):
        assert format_number(round_half_even(Decimal('-0.001'), 2), 2) == '0.00'

    def test_display_format(self):
        assert format_number(Decimal('1234.50'), 2, '{:,.2f}') == '1,234.50'

    def test_format_plain(self):
        assert format_plain(Decimal('99.0000000000')) == '99'
        assert format_plain(Decimal('12.50')) == '12.5'


class TestFormula:

    def test_aggregate_variables(self):
        variables = {'SUM': Decimal(30), 'COUNT': Decimal(3), 'MAX': Decimal(15), 'MIN': Decimal(5)}
        assert Formula('SUM / COUNT * 100').evaluate_number(variables) == Decimal(1000)
        assert Formula('MAX - MIN').evaluate_number(variables) == Decimal(10)

    def test_function_calls_over_values(self):
        variables = {'values': [Decimal(2), Decimal(4)]}
        assert Formula('SUM(value) / COUNT(*)').evaluate_number(variables) == Decimal(3)
        assert Formula('ROUND(AVG(values) * 1.15, 1)').evaluate_number(variables) == Decimal('3.4')
        assert Formula('values[1]').evaluate_number(variables) == Decimal(4)

    def test_assignment_prefix_is_ignored(self):
        assert Formula('Total = SUM + 1').evaluate_number({'SUM': Decimal(1)}) == Decimal(2)

    def test_predicate(self):
        formula = Formula('value >= 90 and value < 100')
        assert formula.evaluate_predicate({'value': Decimal(95)})
        assert not formula.evaluate_predicate({'value': Decimal(85)})

    def test_division_by_zero(self):
        with pytest.raises(FormulaError, match='Division by zero'):
            Formula('SUM / (COUNT - 2)').evaluate_number({'SUM': Decimal(5), 'COUNT': Decimal(2)})

    @pytest.mark.parametrize('expression', [
        '__import__("os").system("ls")',
        'SUM.__class__',
        'open("x")',
        '[x for x in values]',
        'lambda: 1',
        '"text"',
    ])
    def test_rejects_anything_outside_the_sandbox(self, expression):
        with pytest.raises(FormulaError):
            Formula(expression).evaluate({'SUM': Decimal(1), 'values': []})

    def test_unknown_name(self):
        with pytest.raises(FormulaError, match="Unknown name 'TOTAL'"):
            Formula('TOTAL * 2').evaluate({'SUM': Decimal(1)})

    def test_undefined_for_empty_value_set(self):
        with pytest.raises(FormulaError):
            Formula('AVG * 2').evaluate({'AVG': None})

    def test_syntax_error(self):
        with pytest.raises(FormulaError, match='syntax'):
            Formula('SUM +* 2')

    def test_huge_exponent_rejected(self):
        with pytest.raises(FormulaError, match='Exponent'):
            Formula('SUM ** 1000000').evaluate({'SUM': Decimal(10)})
