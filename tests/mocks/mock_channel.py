from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from stocksync.integrations.base import CandidateProduct, ChannelClient, ChannelVariant, InventoryItemInfo


class MockChannel(ChannelClient):
    """In-memory channel that records every call and can be told to fail."""

    name = "mock"

    def __init__(
        self,
        variants: Optional[Dict[str, ChannelVariant]] = None,
        inventory_items: Optional[Dict[str, InventoryItemInfo]] = None,
        products: Optional[List[CandidateProduct]] = None,
        search_enabled: bool = False,
    ):
        self.variants: Dict[str, ChannelVariant] = dict(variants or {})
        self.inventory_items: Dict[str, InventoryItemInfo] = dict(inventory_items or {})
        self.products: List[CandidateProduct] = list(products or [])
        self.search_enabled = search_enabled

        self.lookup_calls: List[List[str]] = []  # Track calls for testing
        self.inventory_calls: List[str] = []
        self.search_calls: List[str] = []

        # Exceptions raised by the next calls, consumed in order
        self.lookup_failures: List[Exception] = []
        self.inventory_failures: List[Exception] = []
        self.before_lookup: Optional[Callable[[List[str]], Awaitable[None]]] = None

    def add_variant(self, sku: str, variant_id: str, inventory_item_id: Optional[str] = None,
                    quantity: Optional[int] = None, title: Optional[str] = None) -> ChannelVariant:
        variant = ChannelVariant(
            sku=sku,
            variant_id=variant_id,
            inventory_item_id=inventory_item_id,
            quantity=quantity,
            title=title,
        )
        self.variants[sku] = variant
        return variant

    @property
    def supports_search(self) -> bool:
        return self.search_enabled

    async def lookup_by_keys(self, keys: Sequence[str]) -> Dict[str, ChannelVariant]:
        self.lookup_calls.append(list(keys))
        if self.before_lookup:
            await self.before_lookup(list(keys))
        if self.lookup_failures:
            raise self.lookup_failures.pop(0)
        wanted = {key.lower() for key in keys}
        return {sku: variant for sku, variant in self.variants.items() if sku.lower() in wanted}

    async def lookup_inventory_item(self, variant_id: str) -> InventoryItemInfo:
        self.inventory_calls.append(variant_id)
        if self.inventory_failures:
            raise self.inventory_failures.pop(0)
        return self.inventory_items.get(variant_id, InventoryItemInfo())

    async def search_products(self, query: str) -> List[CandidateProduct]:
        self.search_calls.append(query)
        needle = query.lower()
        return [
            product for product in self.products
            if needle in product.title.lower()
            or any(needle in (variant.sku or "").lower() for variant in product.variants)
        ]

    def clear_history(self):
        """Clear test history"""
        self.lookup_calls = []
        self.inventory_calls = []
        self.search_calls = []
