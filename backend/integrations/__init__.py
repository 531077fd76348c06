"""
Platform clients package.

Outbound clients for the commerce and marketing platforms the service desk talks to:
  - Shopify   (Admin GraphQL: order lookups for warranty checks, catalog writes)
  - Klaviyo   (templates and draft campaigns)

Return webhook payload parsing lives in integrations.shopify_returns.

Usage:
    from integrations import ShopifyClient

    shopify = ShopifyClient.from_settings()
    order = await shopify.find_order("#1001", "customer@example.com")
"""

from integrations.klaviyo import KlaviyoAPIError, KlaviyoClient
from integrations.shopify import ShopifyAPIError, ShopifyClient

__all__ = [
    "KlaviyoAPIError",
    "KlaviyoClient",
    "ShopifyAPIError",
    "ShopifyClient",
]
