"""
Sandboxed evaluator for Custom aggregation formulas

Formulas are parsed with `ast` and walked node by node; nothing is passed to
eval(). Only arithmetic, comparisons, boolean operators, indexing into
`values` and a closed set of aggregate functions are allowed, e.g.

    SUM / COUNT * 100
    MAX - MIN
    ROUND(AVG(values) * 1.1, 1)
    SUM(value) / COUNT(*) * 100
"""
import ast
import operator
import re
from decimal import Decimal, InvalidOperation

from aggregation.conf import get_setting
from aggregation.exceptions import FormulaError


# Fixed variable set available to Custom formulas
CUSTOM_VARIABLES = ('SUM', 'AVG', 'COUNT', 'MIN', 'MAX', 'values')

_ASSIGNMENT_PREFIX = re.compile(r'^\s*[A-Za-z_]\w*\s*=(?!=)')
# 'COUNT(*)' and 'SUM(value)' read as applying to the whole value list
_WHOLE_LIST_ARGUMENT = re.compile(r'\b(SUM|AVG|COUNT|MIN|MAX)\(\s*(\*|value|values)\s*\)')

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_MAX_EXPONENT = 100


def _as_list(args):
    if len(args) == 1 and isinstance(args[0], list):
        return args[0]
    return list(args)


def _fn_sum(*args):
    return sum(_as_list(args), Decimal(0))


def _fn_count(*args):
    return Decimal(len(_as_list(args)))


def _fn_avg(*args):
    items = _as_list(args)
    if not items:
        raise FormulaError('AVG of an empty list')
    return sum(items, Decimal(0)) / len(items)


def _fn_min(*args):
    items = _as_list(args)
    if not items:
        raise FormulaError('MIN of an empty list')
    return min(items)


def _fn_max(*args):
    items = _as_list(args)
    if not items:
        raise FormulaError('MAX of an empty list')
    return max(items)


def _fn_abs(value):
    return abs(value)


def _fn_round(value, places=Decimal(0)):
    return round(value, int(places))


FUNCTIONS = {
    'SUM': _fn_sum,
    'AVG': _fn_avg,
    'COUNT': _fn_count,
    'MIN': _fn_min,
    'MAX': _fn_max,
    'ABS': _fn_abs,
    'ROUND': _fn_round,
}


class Formula:
    """A parsed, validated expression ready to evaluate against variables"""

    def __init__(self, expression):
        if not expression or not expression.strip():
            raise FormulaError('Formula is empty')
        max_length = get_setting('FORMULA_MAX_LENGTH')
        if len(expression) > max_length:
            raise FormulaError(f'Formula longer than {max_length} characters')

        self.expression = expression
        normalized = _ASSIGNMENT_PREFIX.sub('', expression, count=1)
        normalized = _WHOLE_LIST_ARGUMENT.sub(r'\1(values)', normalized)
        try:
            self.tree = ast.parse(normalized.strip(), mode='eval')
        except SyntaxError as e:
            raise FormulaError(f'Invalid formula syntax: {e.msg}') from e

    def evaluate(self, variables):
        """
        Evaluate against a mapping of names to Decimal (or list of Decimal)

        Raises:
            FormulaError: unknown names, disallowed syntax, division by zero
        """
        try:
            return self._eval(self.tree.body, variables)
        except FormulaError:
            raise
        except ZeroDivisionError as e:
            raise FormulaError('Division by zero') from e
        except (InvalidOperation, ArithmeticError) as e:
            # Decimal traps 0/0 as InvalidOperation
            raise FormulaError(f'Arithmetic error: {e.__class__.__name__}') from e
        except (TypeError, IndexError, ValueError) as e:
            raise FormulaError(f'Cannot evaluate formula: {e}') from e

    def evaluate_number(self, variables):
        result = self.evaluate(variables)
        if isinstance(result, bool) or not isinstance(result, Decimal):
            raise FormulaError('Formula did not produce a number')
        if not result.is_finite():
            raise FormulaError('Formula produced a non-finite number')
        return result

    def evaluate_predicate(self, variables):
        return bool(self.evaluate(variables))

    def _eval(self, node, variables):
        if isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise FormulaError(f'Unsupported literal {node.value!r}')
            return Decimal(str(node.value))

        if isinstance(node, ast.Name):
            if node.id not in variables:
                raise FormulaError(f"Unknown name '{node.id}'")
            value = variables[node.id]
            if value is None:
                raise FormulaError(f"'{node.id}' is undefined for an empty value set")
            return value

        if isinstance(node, ast.BinOp):
            op = _BINARY_OPERATORS.get(type(node.op))
            if op is None:
                raise FormulaError(f'Unsupported operator {type(node.op).__name__}')
            left = self._number(self._eval(node.left, variables))
            right = self._number(self._eval(node.right, variables))
            if op is operator.pow and abs(right) > _MAX_EXPONENT:
                raise FormulaError('Exponent too large')
            return op(left, right)

        if isinstance(node, ast.UnaryOp):
            if isinstance(node.op, ast.Not):
                return not self._eval(node.operand, variables)
            op = _UNARY_OPERATORS.get(type(node.op))
            if op is None:
                raise FormulaError(f'Unsupported operator {type(node.op).__name__}')
            return op(self._number(self._eval(node.operand, variables)))

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, variables)
            for op_node, comparator in zip(node.ops, node.comparators):
                op = _COMPARISONS.get(type(op_node))
                if op is None:
                    raise FormulaError(f'Unsupported comparison {type(op_node).__name__}')
                right = self._eval(comparator, variables)
                if not op(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.BoolOp):
            results = [self._eval(v, variables) for v in node.values]
            if isinstance(node.op, ast.And):
                return all(results)
            return any(results)

        if isinstance(node, ast.Subscript):
            target = self._eval(node.value, variables)
            if not isinstance(target, list):
                raise FormulaError('Only the values list can be indexed')
            index = self._number(self._eval(node.slice, variables))
            return target[int(index)]

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                raise FormulaError('Only SUM, AVG, COUNT, MIN, MAX, ABS and ROUND may be called')
            if node.keywords:
                raise FormulaError('Keyword arguments are not supported')
            args = [self._eval(arg, variables) for arg in node.args]
            return FUNCTIONS[node.func.id](*args)

        raise FormulaError(f'Unsupported expression element {type(node).__name__}')

    @staticmethod
    def _number(value):
        if isinstance(value, bool) or not isinstance(value, Decimal):
            raise FormulaError('Expected a number')
        return value
