from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field


class ChannelVariant(BaseModel):
    """A sellable variant as the channel knows it."""
    sku: Optional[str] = None
    variant_id: str
    inventory_item_id: Optional[str] = None
    title: Optional[str] = None
    quantity: Optional[int] = None
    product_id: Optional[str] = None


class InventoryItemInfo(BaseModel):
    inventory_item_id: Optional[str] = None
    quantity: Optional[int] = None


class CandidateProduct(BaseModel):
    """A channel product returned by a catalog search, used for fuzzy matching."""
    product_id: str
    title: str = ""
    variants: List[ChannelVariant] = Field(default_factory=list)


class ChannelClient(ABC):
    """
    Read-only lookups against the sales channel.

    Implementations raise TransientExternalError for retriable failures and
    PermanentExternalError for everything that will not succeed on retry.
    """

    name = "channel"

    @abstractmethod
    async def lookup_by_keys(self, keys: Sequence[str]) -> Dict[str, ChannelVariant]:
        """Bulk lookup of variants by variant key. Keys with no match are absent."""
        pass

    @abstractmethod
    async def lookup_inventory_item(self, variant_id: str) -> InventoryItemInfo:
        """Resolve the inventory item behind a known variant"""
        pass

    @property
    def supports_search(self) -> bool:
        return False

    async def search_products(self, query: str) -> List[CandidateProduct]:
        """Catalog search for fuzzy matching. Optional capability."""
        raise NotImplementedError(f"{type(self).__name__} does not support product search")

    async def close(self) -> None:
        pass
