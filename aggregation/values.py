"""
Parsing and formatting helpers shared by the rollup computer and resolver
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN


TRUTHY_WORDS = {'true', 'yes', 'y', 'x', 'done', 'complete', 'completed', 'met', 'achieved'}


def is_empty(raw):
    return raw is None or str(raw).strip() == ''


def to_decimal(value):
    """Convert int/float/Decimal to Decimal without binary float noise"""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def parse_number(raw):
    """
    Parse an entered value into a Decimal

    Tolerates currency symbols, thousands separators and a trailing percent
    sign. Returns None for empty or non-numeric input.
    """
    if is_empty(raw):
        return None
    if isinstance(raw, (int, float, Decimal)) and not isinstance(raw, bool):
        number = to_decimal(raw)
    else:
        clean = str(raw).replace('$', '').replace(',', '').replace('%', '').strip()
        try:
            number = Decimal(clean)
        except (InvalidOperation, ValueError):
            return None
    if not number.is_finite():
        return None
    return number


def round_half_even(value, precision):
    """Round to `precision` decimal places, banker's rounding"""
    exponent = Decimal(1).scaleb(-precision)
    rounded = value.quantize(exponent, rounding=ROUND_HALF_EVEN)
    if rounded == 0:
        # Avoid '-0.00'
        rounded = abs(rounded)
    return rounded


def format_number(value, precision, display_format=''):
    """Render a rounded numeric result as the stored string value"""
    if display_format:
        return display_format.format(value)
    return f"{value:.{precision}f}"


def format_plain(value):
    """Shortest exact rendering, e.g. Decimal('99.0000') -> '99'"""
    normalized = value.normalize()
    if normalized == 0:
        return '0'
    return format(normalized, 'f')


def is_truthy(raw):
    """Default predicate for the Percentage method"""
    number = parse_number(raw)
    if number is not None:
        return number != 0
    return str(raw).strip().lower() in TRUTHY_WORDS
