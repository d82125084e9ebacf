"""
Engine settings with defaults, overridable via settings.AGGREGATION
"""
from django.conf import settings


DEFAULTS = {
    'MAX_DECIMAL_PRECISION': 8,
    'SWEEP_MAX_WORKERS': 1,
    'FORMULA_MAX_LENGTH': 500,
    'MORE_ITEMS_TEMPLATE': '(+{count} more)',
    'SUBMITTED_REPORT_STATUSES': ['submitted', 'under_review', 'approved'],
}


def get_setting(name):
    """Return an AGGREGATION setting, falling back to the engine default"""
    overrides = getattr(settings, 'AGGREGATION', {}) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
