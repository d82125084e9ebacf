"""
Error taxonomy for the aggregation engine

Only ConfigurationError and ConcurrencyConflict ever reach callers.
InsufficientData and FormulaError are raised inside the method layer and
persisted by the rollup computer as Error status.
"""


class AggregationError(Exception):
    """Base class for aggregation engine errors"""


class ConfigurationError(AggregationError):
    """Missing, invalid or ambiguous aggregation rule"""


class InsufficientData(AggregationError):
    """Fewer usable source values than the rule requires"""


class FormulaError(AggregationError):
    """Custom formula could not be evaluated, or a result could not be rendered"""


class ConcurrencyConflict(AggregationError):
    """Amendment operation against a superseded or already resolved record"""
