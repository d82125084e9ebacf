"""
Audit-worthy events emitted by the aggregation engine
Persisting them is left to the hosting application
"""
from django.dispatch import Signal


# kwargs: aggregated_value, created
aggregate_computed = Signal()

# kwargs: aggregated_value_ids, reason
aggregate_marked_stale = Signal()

# kwargs: aggregated_value, previous_status
manual_override_changed = Signal()

# kwargs: amendment
amendment_created = Signal()
amendment_approved = Signal()
amendment_rejected = Signal()
