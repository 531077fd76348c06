"""
Shopify Admin API Client

Thin GraphQL client used for:
  - order lookups during RMA intake (webhook enrichment, customer form ownership check)
  - catalog writes behind the idempotency gateway (product create / sync)

Reads retry with exponential backoff. Writes are never retried here: a
duplicate product create is exactly what the gateway exists to prevent.
"""

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from core.config import get_settings

ORDER_GID_PREFIX = "gid://shopify/Order/"
PRODUCT_GID_PREFIX = "gid://shopify/Product/"

FETCH_ORDER_BY_ID_QUERY = """
query fetchOrderById($id: ID!) {
  order(id: $id) {
    id
    name
    legacyResourceId
    processedAt
    displayFinancialStatus
    displayFulfillmentStatus
    email
    phone
    customer { id firstName lastName email phone }
    lineItems(first: 100) {
      edges { node { id name quantity sku variant { id sku barcode } } }
    }
  }
}
"""

FETCH_ORDERS_QUERY = """
query fetchOrders($first: Int!, $query: String) {
  orders(first: $first, query: $query, sortKey: PROCESSED_AT, reverse: true) {
    edges {
      node {
        id
        name
        legacyResourceId
        processedAt
        email
        phone
        customer { id firstName lastName email phone }
        lineItems(first: 10) {
          edges { node { id name sku variant { id sku barcode } } }
        }
      }
    }
  }
}
"""

CREATE_PRODUCT_MUTATION = """
mutation productCreate($input: ProductInput!) {
  productCreate(input: $input) {
    product { id title handle status }
    userErrors { field message }
  }
}
"""

UPDATE_PRODUCT_MUTATION = """
mutation productUpdate($input: ProductInput!) {
  productUpdate(input: $input) {
    product { id title handle status updatedAt }
    userErrors { field message }
  }
}
"""


class ShopifyAPIError(Exception):
    """Shopify answered, but with GraphQL errors or mutation userErrors."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []


def to_order_gid(order_id: str | int) -> str:
    value = str(order_id).strip()
    if value.startswith("gid://"):
        return value
    return f"{ORDER_GID_PREFIX}{value}"


def to_product_gid(product_id: str | int) -> str:
    value = str(product_id).strip()
    if value.startswith("gid://"):
        return value
    return f"{PRODUCT_GID_PREFIX}{value}"


def normalize_order_query(order_number: str) -> str:
    trimmed = order_number.strip()
    if not trimmed or trimmed.startswith("#"):
        return trimmed
    return f"#{trimmed}"


class ShopifyClient:
    """Client for Shopify Admin GraphQL interactions."""

    def __init__(self, store_domain: str, access_token: str, api_version: str = "2024-10"):
        self.store_domain = store_domain.strip().removeprefix("https://").rstrip("/")
        self.access_token = access_token
        self.api_version = api_version
        self.headers = {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls) -> "ShopifyClient":
        settings = get_settings()
        return cls(
            settings.shopify_store_domain,
            settings.shopify_access_token,
            settings.shopify_api_version,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.store_domain and self.access_token)

    @property
    def graphql_url(self) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"

    async def _graphql(self, query: str, variables: dict) -> dict:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                self.graphql_url,
                headers=self.headers,
                json={"query": query, "variables": variables},
            )
            response.raise_for_status()
            payload = response.json()
        if payload.get("errors"):
            raise ShopifyAPIError("Shopify GraphQL request failed", payload["errors"])
        return payload.get("data") or {}

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def fetch_order(self, order_id: str | int) -> dict | None:
        """Fetch a single order with customer and line items."""
        data = await self._graphql(FETCH_ORDER_BY_ID_QUERY, {"id": to_order_gid(order_id)})
        return data.get("order")

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def find_order(self, order_number: str, email: str) -> dict | None:
        """Return the order matching both name and email, or None."""
        query = f"name:{normalize_order_query(order_number)} email:{email.strip().lower()}"
        data = await self._graphql(FETCH_ORDERS_QUERY, {"first": 10, "query": query})
        edges = (data.get("orders") or {}).get("edges") or []
        return edges[0]["node"] if edges else None

    async def create_product(self, product: dict) -> dict:
        """Create a product. Always created as DRAFT."""
        data = await self._graphql(CREATE_PRODUCT_MUTATION, {"input": {**product, "status": "DRAFT"}})
        result = data.get("productCreate") or {}
        if result.get("userErrors"):
            raise ShopifyAPIError("Shopify productCreate rejected the input", result["userErrors"])
        return result.get("product") or {}

    async def update_product(self, product_id: str | int, fields: dict) -> dict:
        data = await self._graphql(
            UPDATE_PRODUCT_MUTATION,
            {"input": {**fields, "id": to_product_gid(product_id)}},
        )
        result = data.get("productUpdate") or {}
        if result.get("userErrors"):
            raise ShopifyAPIError("Shopify productUpdate rejected the input", result["userErrors"])
        return result.get("product") or {}


def order_customer_name(order: dict) -> str | None:
    customer = order.get("customer") or {}
    name = " ".join(part for part in (customer.get("firstName"), customer.get("lastName")) if part)
    return name or None


def order_line_items(order: dict) -> list[dict]:
    """Flatten GraphQL line item edges into {id, name, sku, serial, qty} rows."""
    rows = []
    for edge in (order.get("lineItems") or {}).get("edges") or []:
        node = edge.get("node") or {}
        variant = node.get("variant") or {}
        rows.append(
            {
                "id": node.get("id"),
                "name": node.get("name"),
                "sku": node.get("sku") or variant.get("sku"),
                "serial": variant.get("barcode"),
                "qty": node.get("quantity"),
            }
        )
    return rows
