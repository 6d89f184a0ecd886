# stocksync.integrations.shopify

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from stocksync.core.config import get_settings
from stocksync.core.exceptions import ChannelAPIError, PermanentExternalError, TransientExternalError
from stocksync.core.utils import chunked
from stocksync.integrations.base import CandidateProduct, ChannelClient, ChannelVariant, InventoryItemInfo

logger = logging.getLogger(__name__)


VARIANT_FIELDS = """
    id
    sku
    title
    inventoryQuantity
    inventoryItem { id }
"""

LOOKUP_VARIANTS_QUERY = """
query LookupVariants($first: Int!, $query: String!, $after: String) {
  productVariants(first: $first, query: $query, after: $after) {
    edges {
      node {
        %s
        product { id title }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
""" % VARIANT_FIELDS

INVENTORY_ITEM_QUERY = """
query VariantInventoryItem($id: ID!) {
  productVariant(id: $id) {
    id
    inventoryQuantity
    inventoryItem { id }
  }
}
"""

SEARCH_PRODUCTS_QUERY = """
query SearchProducts($first: Int!, $query: String!) {
  products(first: $first, query: $query) {
    edges {
      node {
        id
        title
        variants(first: 100) {
          edges { node { %s } }
        }
      }
    }
  }
}
""" % VARIANT_FIELDS


class ShopifyChannelClient(ChannelClient):
    """
    Read-only Shopify Admin GraphQL client used to resolve channel identifiers.

    Error mapping:
    - timeouts, network errors, 429 and 5xx -> TransientExternalError
    - THROTTLED GraphQL errors -> TransientExternalError (status 429)
    - other 4xx -> PermanentExternalError
    - any other GraphQL errors -> ChannelAPIError
    """

    name = "shopify"

    # Keys combined into one `sku:A OR sku:B` search, keeps the query string short
    KEYS_PER_QUERY = 50
    SEARCH_RESULT_LIMIT = 10

    def __init__(self, settings=None, safety_buffer_percentage: float = 0.25):
        settings = settings or get_settings()
        self.store_domain = settings.SHOPIFY_SHOP_URL
        self.admin_api_token = settings.SHOPIFY_ADMIN_API_ACCESS_TOKEN
        self.api_version = settings.SHOPIFY_API_VERSION
        self.page_size = settings.SHOPIFY_LOOKUP_PAGE_SIZE
        self.timeout = settings.EXTERNAL_CALL_TIMEOUT

        if not self.store_domain or not self.admin_api_token:
            raise ValueError(
                "SHOPIFY_SHOP_URL and SHOPIFY_ADMIN_API_ACCESS_TOKEN must be set in .env or as environment variables."
            )

        self.graphql_url = f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"
        self.headers = {
            "X-Shopify-Access-Token": self.admin_api_token,
            "Content-Type": "application/json",
        }

        # Throttle status, refreshed from every response
        self.max_available_points = 1000.0
        self.currently_available_points = self.max_available_points
        self.restore_rate = 50.0
        self.safety_buffer_percentage = safety_buffer_percentage

        logger.info(f"ShopifyChannelClient initialized for {self.store_domain} (API {self.api_version})")

    @property
    def supports_search(self) -> bool:
        return True

    # --- Infrastructure ---

    def _update_throttle_status(self, extensions: Optional[dict]) -> None:
        if not extensions or "cost" not in extensions:
            return
        throttle = extensions["cost"].get("throttleStatus") or {}
        self.max_available_points = float(throttle.get("maximumAvailable", self.max_available_points))
        self.currently_available_points = float(throttle.get("currentlyAvailable", self.currently_available_points))
        self.restore_rate = float(throttle.get("restoreRate", self.restore_rate))

    async def _wait_for_points(self, estimated_cost: int) -> None:
        required = estimated_cost + self.max_available_points * self.safety_buffer_percentage
        if self.currently_available_points >= required:
            return
        wait_time = (required - self.currently_available_points) / self.restore_rate if self.restore_rate > 0 else 10
        wait_time = max(wait_time, 0) + 0.5
        logger.info(
            f"Shopify rate limit approaching: {self.currently_available_points:.0f} points available, "
            f"waiting {wait_time:.2f}s"
        )
        await asyncio.sleep(wait_time)
        self.currently_available_points = min(
            self.max_available_points,
            self.currently_available_points + self.restore_rate * wait_time,
        )

    async def _make_request(self, query: str, variables: Optional[dict] = None, estimated_cost: int = 10) -> Dict:
        """
        Make a GraphQL request to Shopify.

        Returns:
            Dict: the `data` member of the response

        Raises:
            TransientExternalError, PermanentExternalError, ChannelAPIError
        """
        await self._wait_for_points(estimated_cost)

        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.graphql_url, headers=self.headers, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"Shopify request timed out: {e}")
            raise TransientExternalError(f"Request timed out: {e}")
        except httpx.RequestError as e:
            logger.warning(f"Shopify network error: {e}")
            raise TransientExternalError(f"Network error: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            if response.status_code == 429:
                self.currently_available_points = 0
            logger.warning(f"Shopify API error {response.status_code}: {response.text[:200]}")
            raise TransientExternalError(f"Shopify returned {response.status_code}", status_code=response.status_code)
        if response.status_code >= 400:
            logger.error(f"Shopify API error {response.status_code}: {response.text[:200]}")
            raise PermanentExternalError(
                f"Shopify rejected the request ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            response_data = response.json()
        except ValueError:
            raise ChannelAPIError([{"message": "Failed to decode JSON response", "response_text": response.text[:200]}])

        self._update_throttle_status(response_data.get("extensions"))

        errors = response_data.get("errors")
        if errors:
            if any((error.get("extensions") or {}).get("code") == "THROTTLED" for error in errors):
                self.currently_available_points = 0
                raise TransientExternalError("Shopify throttled the query", status_code=429)
            raise ChannelAPIError(errors)

        return response_data.get("data") or {}

    # --- Lookups ---

    @staticmethod
    def _sku_query(keys: Sequence[str]) -> str:
        quoted = []
        for key in keys:
            escaped = key.replace("\\", "\\\\").replace('"', '\\"')
            quoted.append(f'sku:"{escaped}"')
        return " OR ".join(quoted)

    @staticmethod
    def _to_variant(node: dict, product: Optional[dict] = None) -> ChannelVariant:
        product = product if product is not None else (node.get("product") or {})
        return ChannelVariant(
            sku=node.get("sku"),
            variant_id=node["id"],
            inventory_item_id=(node.get("inventoryItem") or {}).get("id"),
            title=node.get("title"),
            quantity=node.get("inventoryQuantity"),
            product_id=product.get("id"),
        )

    async def lookup_by_keys(self, keys: Sequence[str]) -> Dict[str, ChannelVariant]:
        """Bulk variant lookup by SKU. Returns {sku as stored on Shopify: variant}."""
        found: Dict[str, ChannelVariant] = {}
        wanted = [key for key in keys if key]

        for group in chunked(wanted, self.KEYS_PER_QUERY):
            after = None
            while True:
                variables = {"first": self.page_size, "query": self._sku_query(group), "after": after}
                data = await self._make_request(LOOKUP_VARIANTS_QUERY, variables, estimated_cost=self.page_size // 5 + 2)
                connection = data.get("productVariants") or {}

                for edge in connection.get("edges", []):
                    node = edge.get("node") or {}
                    sku = node.get("sku")
                    # First match wins when a SKU is duplicated on the channel
                    if sku and sku not in found:
                        found[sku] = self._to_variant(node)

                page_info = connection.get("pageInfo") or {}
                if not page_info.get("hasNextPage"):
                    break
                after = page_info.get("endCursor")

        logger.debug(f"Shopify lookup: {len(found)} of {len(wanted)} keys matched")
        return found

    async def lookup_inventory_item(self, variant_id: str) -> InventoryItemInfo:
        data = await self._make_request(INVENTORY_ITEM_QUERY, {"id": variant_id}, estimated_cost=2)
        node = data.get("productVariant")
        if not node:
            return InventoryItemInfo()
        return InventoryItemInfo(
            inventory_item_id=(node.get("inventoryItem") or {}).get("id"),
            quantity=node.get("inventoryQuantity"),
        )

    async def search_products(self, query: str) -> List[CandidateProduct]:
        variables = {"first": self.SEARCH_RESULT_LIMIT, "query": query}
        data = await self._make_request(SEARCH_PRODUCTS_QUERY, variables, estimated_cost=50)

        products = []
        for edge in (data.get("products") or {}).get("edges", []):
            node = edge.get("node") or {}
            variants = [
                self._to_variant(variant_edge["node"], product=node)
                for variant_edge in (node.get("variants") or {}).get("edges", [])
                if variant_edge.get("node")
            ]
            products.append(CandidateProduct(product_id=node["id"], title=node.get("title") or "", variants=variants))
        return products
