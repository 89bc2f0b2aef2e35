"""
Prometheus metrics: transitions applied and rejected, notifications enqueued, items made obsolete.
"""
from prometheus_client import Counter

transitions_total = Counter(
    "transitions_total",
    "Total transitions committed (including cascaded ones)",
    ["subject_kind", "event"],
)
transitions_rejected_total = Counter(
    "transitions_rejected_total",
    "Total trigger attempts rejected because the event was not permitted",
    ["subject_kind", "event"],
)
notifications_enqueued_total = Counter(
    "notifications_enqueued_total",
    "Total work-complete notification messages handed to the queue",
)
items_marked_obsolete_total = Counter(
    "items_marked_obsolete_total",
    "Total items permanently excluded from workflow",
)
