"""
Contract for the external catalog-sync collaborator consulted before an item is made obsolete.
"""
from typing import Protocol

from circa.models import Item


class CatalogSync(Protocol):
    async def eligible_for_obsolete(self, item: Item) -> bool:
        """True when no catalog record still resolves to this item (it was re-processed away)."""
        ...
