"""
Archival item/order workflow: two coupled state machines with an append-only transition history.
"""
from circa.catalog import CatalogSync
from circa.engine import TransitionEngine, TransitionNotPermitted
from circa.item_lifecycle import InvalidObsoleteRequest
from circa.models import (
    Item,
    ItemMembership,
    Order,
    OrderVariant,
    RequestContext,
    SubjectKind,
    Transition,
    TransitionMetadata,
)
from circa.store import LockTimeout, MemoryStore, Store, SubjectNotFound

__all__ = [
    "CatalogSync",
    "InvalidObsoleteRequest",
    "Item",
    "ItemMembership",
    "LockTimeout",
    "MemoryStore",
    "Order",
    "OrderVariant",
    "RequestContext",
    "Store",
    "SubjectKind",
    "SubjectNotFound",
    "Transition",
    "TransitionEngine",
    "TransitionMetadata",
    "TransitionNotPermitted",
]
