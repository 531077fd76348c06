"""Tests for the Shopify and Klaviyo client helpers (no network)."""

from integrations import KlaviyoClient, ShopifyClient
from integrations.shopify import (
    normalize_order_query,
    order_customer_name,
    order_line_items,
    to_order_gid,
    to_product_gid,
)


class TestShopifyHelpers:
    def test_gid_normalization(self):
        assert to_order_gid(5550001) == "gid://shopify/Order/5550001"
        assert to_order_gid("gid://shopify/Order/1") == "gid://shopify/Order/1"
        assert to_product_gid(" 42 ") == "gid://shopify/Product/42"

    def test_order_query_gets_hash_prefix(self):
        assert normalize_order_query("1001") == "#1001"
        assert normalize_order_query("#1001") == "#1001"

    def test_order_rows(self):
        order = {
            "customer": {"firstName": "Ada", "lastName": None},
            "lineItems": {
                "edges": [
                    {"node": {"id": "li-1", "name": "Tablet", "quantity": 2, "variant": {"sku": "TAB", "barcode": "SN9"}}}
                ]
            },
        }
        assert order_customer_name(order) == "Ada"
        assert order_line_items(order) == [{"id": "li-1", "name": "Tablet", "sku": "TAB", "serial": "SN9", "qty": 2}]

    def test_configuration(self):
        client = ShopifyClient("https://shop.myshopify.com/", "token", "2024-10")
        assert client.is_configured
        assert client.graphql_url == "https://shop.myshopify.com/admin/api/2024-10/graphql.json"
        assert not ShopifyClient("", "").is_configured


class TestKlaviyoClient:
    def test_sender_config_validation(self):
        client = KlaviyoClient("pk_test", from_email="not-an-email", from_label="Shop")
        assert client.missing_sender_config() == [
            "KLAVIYO_DEFAULT_FROM_EMAIL (invalid email format)",
            "KLAVIYO_DEFAULT_REPLY_TO_EMAIL",
        ]

    def test_complete_sender_config(self):
        client = KlaviyoClient(
            "pk_test",
            from_email="hello@shop.test",
            from_label="Shop",
            reply_to_email="support@shop.test",
        )
        assert client.is_configured
        assert client.missing_sender_config() == []
