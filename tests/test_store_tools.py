"""
Function-calling tool tests.

Tools never raise: every failure must come back as an error payload the model
can relay to the customer.
"""

import pytest

from storefront.store_tools import STORE_TOOLS, StoreToolbox, negotiate_discount


@pytest.fixture
def toolbox(shop, sessions):
    return StoreToolbox(shop, sessions, "sess-1")


def _invoice_args(**overrides):
    args = {
        "productId": "prod_001",
        "quantity": 1.0,
        "customerName": "Rahim Uddin",
        "customerPhone": "01712345678",
        "customerAddress": "House 5, Road 2, Dhanmondi",
        "customerCity": "Dhaka",
    }
    args.update(overrides)
    return args


class TestNegotiation:
    @pytest.mark.parametrize(
        "max_discount, requested, counter, expected",
        [
            (15, 10, 0, (10, True)),
            (15, 15, 0, (15, True)),
            (15, 25, 0, (10, False)),
            (15, 25, 12, (12, False)),
            (15, 25, 40, (15, False)),
            (5, 20, 0, (5, False)),
        ],
    )
    def test_negotiate_discount(self, max_discount, requested, counter, expected):
        assert negotiate_discount(max_discount, requested, counter) == expected

    def test_negotiated_discount_is_remembered(self, toolbox, sessions):
        result = toolbox.execute("negotiate_price", {"productId": "prod_001", "requestedDiscount": 30})
        assert result["success"] is True
        assert result["accepted"] is False
        assert result["discountPercent"] == 10
        assert result["discountedPrice"] == 4499
        assert sessions.get_negotiated_discounts("sess-1") == {"prod_001": 10}

    def test_negotiate_unknown_product(self, toolbox):
        assert toolbox.execute("negotiate_price", {"productId": "nope"})["success"] is False


class TestInventoryCheck:
    def test_lookup_by_id(self, toolbox):
        result = toolbox.execute("inventory_check", {"productId": "prod_002"})
        assert result["found"] is True
        assert result["product"]["name"] == "Smart Watch Pro"
        assert result["product"]["maxDiscount"] == 12

    def test_unknown_id(self, toolbox):
        assert toolbox.execute("inventory_check", {"productId": "prod_404"})["found"] is False

    def test_query_search(self, toolbox):
        result = toolbox.execute("inventory_check", {"query": "electronics"})
        assert result["count"] == 2
        assert {item["id"] for item in result["products"]} == {"prod_001", "prod_002"}

    def test_no_matches(self, toolbox):
        result = toolbox.execute("inventory_check", {"query": "refrigerator"})
        assert result["found"] is False
        assert result["products"] == []


class TestCreateInvoice:
    def test_creates_order_with_negotiated_discount(self, toolbox, shop, sessions):
        sessions.set_negotiated_discount("sess-1", "prod_001", 12)
        result = toolbox.execute("create_invoice", _invoice_args())
        assert result["success"] is True
        invoice = result["invoice"]
        assert invoice["discountPercent"] == 12
        assert invoice["customer"]["city"] == "Dhaka"
        assert invoice["sessionId"] == "sess-1"
        assert shop.get_product("prod_001").stock == 49
        assert [order.id for order in toolbox.created_orders] == [result["orderId"]]

    def test_explicit_discount_is_capped(self, toolbox):
        result = toolbox.execute("create_invoice", _invoice_args(discountPercent=60))
        assert result["invoice"]["discountPercent"] == 15

    def test_repeat_call_in_same_request_reuses_order(self, toolbox, shop):
        first = toolbox.execute("create_invoice", _invoice_args())
        second = toolbox.execute("create_invoice", _invoice_args())
        assert first["orderId"] == second["orderId"]
        assert len(shop.list_orders()) == 1
        assert len(toolbox.created_orders) == 1

    def test_out_of_stock(self, toolbox, shop):
        result = toolbox.execute("create_invoice", _invoice_args(productId="prod_003", quantity=5))
        assert result["success"] is False
        assert "Only 2 units" in result["error"]
        assert shop.list_orders() == []

    def test_missing_customer_details(self, toolbox, shop):
        result = toolbox.execute("create_invoice", _invoice_args(customerAddress=""))
        assert result["success"] is False
        assert shop.list_orders() == []

    def test_unknown_product(self, toolbox):
        result = toolbox.execute("create_invoice", _invoice_args(productId="prod_999"))
        assert result == {"success": False, "error": "Product not found"}


class TestDispatch:
    def test_unknown_tool(self, toolbox):
        result = toolbox.execute("delete_everything", {})
        assert result["success"] is False
        assert "Unknown tool" in result["error"]

    def test_handler_crash_becomes_error_payload(self, toolbox, shop, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(shop, "search_products", _boom)
        result = toolbox.execute("inventory_check", {"query": "watch"})
        assert result == {"success": False, "error": "Failed to run inventory_check"}

    def test_save_preference(self, toolbox, sessions):
        result = toolbox.execute("save_customer_preference", {"preferenceType": "category", "value": "Electronics"})
        assert result["success"] is True
        assert sessions.get_preferences("sess-1") == {"category": "Electronics"}
        assert toolbox.execute("save_customer_preference", {"value": "x"})["success"] is False

    def test_declarations_cover_every_tool(self, toolbox):
        names = {decl["name"] for decl in STORE_TOOLS[0]["function_declarations"]}
        assert names == {"inventory_check", "create_invoice", "negotiate_price", "save_customer_preference"}
