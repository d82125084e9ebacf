"""
Aggregation method dispatch

Each handler folds the values of an org unit's present children into one
result. Handlers are pure: they never touch the database. Problems that
prevent a meaningful value raise InsufficientData or FormulaError, which the
rollup computer persists as Error status.
"""
from collections import namedtuple, OrderedDict
from decimal import Decimal

from aggregation.conf import get_setting
from aggregation.exceptions import ConfigurationError, FormulaError, InsufficientData
from aggregation.formula import Formula
from aggregation.models import AggregatedValue, AggregationMethod, TextAggregationMode
from aggregation.values import format_number, is_truthy, round_half_even


# One child's contribution, in stable child order
ChildInput = namedtuple('ChildInput', [
    'org_unit_id',
    'is_leaf',
    'raw',          # entered value (leaf) or aggregated value string
    'numeric',      # Decimal or None
    'is_empty',
    'report_ids',   # drill-down report ids behind this child
    'weight',       # WeightedAverage only
    'details',      # child's aggregation_details (non-leaf children)
])

MethodResult = namedtuple('MethodResult', [
    'value', 'numeric', 'source_count', 'contributors', 'status', 'details',
])


def aggregate(rule, children, executive_summary=None):
    """
    Apply the rule's method to the present children

    Args:
        rule: AggregationRule
        children: list of ChildInput, already in stable order
        executive_summary: text of the active ExecutiveSummary amendment (ManualSynthesis)

    Returns:
        MethodResult
    """
    handler = _DISPATCH.get(rule.method)
    if handler is None:
        raise ConfigurationError(f"Unknown aggregation method '{rule.method}'")
    if rule.method == AggregationMethod.MANUAL_SYNTHESIS:
        return handler(rule, children, executive_summary)
    return handler(rule, children)


# ---------------------------------------------------------------------------
# Numeric methods
# ---------------------------------------------------------------------------

def _numeric_inputs(rule, children):
    """Children with a usable number; empty/non-numeric count as 0 only if the rule says so"""
    used = []
    for child in children:
        number = child.numeric
        if number is None:
            if not rule.include_empty_values:
                continue
            number = Decimal(0)
        used.append((child, number))
    return used


def _numeric_result(rule, number, used, details=None, precision=None):
    if precision is None:
        precision = rule.decimal_precision
    rounded = round_half_even(number, precision)
    try:
        value = format_number(rounded, precision, rule.display_format)
    except (IndexError, KeyError, TypeError, ValueError) as e:
        raise FormulaError(f"Display format '{rule.display_format}' cannot render {rounded}: {e}") from e
    return MethodResult(
        value=value,
        numeric=rounded,
        source_count=len(used),
        contributors=[child for child, _ in used],
        status=AggregatedValue.Status.CURRENT,
        details=details or {},
    )


def _require_values(used, label):
    if not used:
        raise InsufficientData(f'No numeric values to {label}')


def _sum(rule, children):
    used = _numeric_inputs(rule, children)
    total = sum((number for _, number in used), Decimal(0))
    return _numeric_result(rule, total, used)


def _average(rule, children):
    used = _numeric_inputs(rule, children)
    _require_values(used, 'average')
    total = sum((number for _, number in used), Decimal(0))
    return _numeric_result(rule, total / len(used), used)


def _min(rule, children):
    used = _numeric_inputs(rule, children)
    _require_values(used, 'compare')
    return _numeric_result(rule, min(number for _, number in used), used)


def _max(rule, children):
    used = _numeric_inputs(rule, children)
    _require_values(used, 'compare')
    return _numeric_result(rule, max(number for _, number in used), used)


def _count(rule, children):
    # A non-leaf child contributes the count it already rolled up
    used = []
    for child in children:
        if child.is_leaf:
            if child.is_empty and not rule.include_empty_values:
                continue
            used.append((child, Decimal(1)))
        elif child.numeric is not None:
            used.append((child, child.numeric))
    total = sum((number for _, number in used), Decimal(0))
    return _numeric_result(rule, total, used, precision=0)


def _weighted_average(rule, children):
    used = []
    weighted_total = Decimal(0)
    weight_total = Decimal(0)
    for child, number in _numeric_inputs(rule, children):
        # No weight, no contribution, even when empties are included
        if child.weight is None:
            continue
        used.append((child, number))
        weighted_total += number * child.weight
        weight_total += child.weight
    _require_values(used, 'weight')
    if weight_total == 0:
        raise InsufficientData('Sum of weights is zero')
    return _numeric_result(
        rule, weighted_total / weight_total, used,
        details={'weight_total': str(weight_total)},
    )


def _percentage(rule, children):
    predicate = Formula(rule.custom_formula) if rule.custom_formula else None

    used = []
    numerator = 0
    denominator = 0
    for child in children:
        if not child.is_leaf:
            # Compose exactly from the child's own numerator/denominator
            child_den = (child.details or {}).get('denominator')
            if child_den is None:
                continue
            used.append((child, None))
            numerator += int(child.details.get('numerator', 0))
            denominator += int(child_den)
            continue

        if child.is_empty and not rule.include_empty_values:
            continue
        used.append((child, None))
        denominator += 1
        if child.is_empty:
            continue
        if predicate is not None:
            satisfied = child.numeric is not None and predicate.evaluate_predicate({'value': child.numeric})
        else:
            satisfied = is_truthy(child.raw)
        if satisfied:
            numerator += 1

    if denominator == 0:
        raise InsufficientData('No values to compute a percentage over')
    ratio = Decimal(numerator) / Decimal(denominator) * 100
    return _numeric_result(
        rule, ratio, used,
        details={'numerator': numerator, 'denominator': denominator},
    )


def _custom(rule, children):
    used = _numeric_inputs(rule, children)
    numbers = [number for _, number in used]
    total = sum(numbers, Decimal(0))
    variables = {
        'SUM': total,
        'AVG': total / len(numbers) if numbers else None,
        'COUNT': Decimal(len(numbers)),
        'MIN': min(numbers) if numbers else None,
        'MAX': max(numbers) if numbers else None,
        'values': numbers,
    }
    result = Formula(rule.custom_formula).evaluate_number(variables)
    return _numeric_result(rule, result, used, details={'formula': rule.custom_formula})


# ---------------------------------------------------------------------------
# Text methods
# ---------------------------------------------------------------------------

def _text_inputs(rule, children):
    used = []
    for child in children:
        text = (child.raw or '').strip()
        if not text and not rule.include_empty_values:
            continue
        used.append((child, text))
    return used


def _text_result(text, used, details=None):
    return MethodResult(
        value=text,
        numeric=None,
        source_count=len(used),
        contributors=[child for child, _ in used],
        status=AggregatedValue.Status.CURRENT,
        details=details or {},
    )


def _concatenate(rule, children):
    used = _text_inputs(rule, children)
    texts = [text for _, text in used]
    mode = rule.text_aggregation_mode or TextAggregationMode.COMMA_SEPARATED

    limit = rule.max_text_items or len(texts)
    shown = texts[:limit]
    hidden = len(texts) - len(shown)

    if mode == TextAggregationMode.BULLET_LIST:
        separator = '\n'
        shown = [f'• {text}' for text in shown]
    elif mode == TextAggregationMode.NUMBERED_LIST:
        separator = '\n'
        shown = [f'{i}. {text}' for i, text in enumerate(shown, start=1)]
    elif mode == TextAggregationMode.NEW_LINE_SEPARATED:
        separator = '\n'
    elif mode == TextAggregationMode.PARAGRAPH:
        separator = rule.text_separator or ' '
    else:
        separator = rule.text_separator or ', '

    joined = separator.join(shown)
    if hidden > 0:
        more = get_setting('MORE_ITEMS_TEMPLATE').format(count=hidden)
        joiner = '\n' if '\n' in separator else ' '
        joined = f'{joined}{joiner}{more}' if joined else more

    return _text_result(joined, used, details={'mode': mode, 'hidden_items': hidden})


def _select_first(rule, children):
    used = _text_inputs(rule, children)
    if not used:
        raise InsufficientData('No text values to select from')
    return _text_result(used[0][1], used)


def _select_last(rule, children):
    used = _text_inputs(rule, children)
    if not used:
        raise InsufficientData('No text values to select from')
    return _text_result(used[-1][1], used)


def _select_most_common(rule, children):
    used = _text_inputs(rule, children)
    if not used:
        raise InsufficientData('No text values to select from')

    # Insertion order breaks ties: first encountered wins
    counts = OrderedDict()
    for _, text in used:
        counts[text] = counts.get(text, 0) + 1
    best = max(counts.values())
    winner = next(text for text, count in counts.items() if count == best)
    return _text_result(winner, used, details={'occurrences': best})


def _manual_synthesis(rule, children, executive_summary):
    used = _text_inputs(rule, children)
    if not executive_summary:
        return MethodResult(
            value='',
            numeric=None,
            source_count=len(used),
            contributors=[child for child, _ in used],
            status=AggregatedValue.Status.PENDING,
            details={'awaiting': 'ExecutiveSummary'},
        )
    return _text_result(executive_summary, used, details={'synthesized': True})


_DISPATCH = {
    AggregationMethod.SUM: _sum,
    AggregationMethod.AVERAGE: _average,
    AggregationMethod.WEIGHTED_AVERAGE: _weighted_average,
    AggregationMethod.MIN: _min,
    AggregationMethod.MAX: _max,
    AggregationMethod.COUNT: _count,
    AggregationMethod.PERCENTAGE: _percentage,
    AggregationMethod.CUSTOM: _custom,
    AggregationMethod.CONCATENATE: _concatenate,
    AggregationMethod.SELECT_FIRST: _select_first,
    AggregationMethod.SELECT_LAST: _select_last,
    AggregationMethod.SELECT_MOST_COMMON: _select_most_common,
    AggregationMethod.MANUAL_SYNTHESIS: _manual_synthesis,
}
