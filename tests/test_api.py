"""
HTTP tests for the storefront API via FastAPI's TestClient.

Layer 1: chat endpoint with the deterministic fallback (no model key)
Layer 2: chat endpoint with a scripted completion client and tool calls
Layer 3: catalog, order, and session read routes
"""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeCompletionClient

from storefront.app import create_app


@pytest.fixture
def client(settings, shop, sessions):
    app = create_app(settings=settings, shop=shop, sessions=sessions)
    return TestClient(app)


def _chat(client, message, history=None, session_id=None):
    payload = {"message": message}
    if history is not None:
        payload["conversationHistory"] = history
    if session_id is not None:
        payload["sessionId"] = session_id
    response = client.post("/api/chat", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


# ============================================================================
# Layer 1: fallback chat
# ============================================================================

class TestChatFallback:
    @pytest.mark.parametrize("payload", [{}, {"message": ""}, {"message": "   "}])
    def test_blank_message_is_rejected(self, client, payload):
        response = client.post("/api/chat", json=payload)
        assert response.status_code == 400
        assert response.json()["detail"] == "Message is required"

    def test_hello_returns_greeting(self, client):
        body = _chat(client, "hello", history=[])
        assert "Premium Wireless Headphones" in body["message"]
        assert body["stage"] == "GREETING"
        assert body["sessionId"]
        assert body["messageId"]
        assert "order" not in body
        assert "awaitingApproval" not in body

    def test_full_order_flow_from_stored_session(self, client, shop):
        session_id = "flow-1"
        replies = [
            _chat(client, "Tell me about the Premium Wireless Headphones", session_id=session_id),
            _chat(client, "yes", session_id=session_id),
            _chat(client, "Rahim Uddin", session_id=session_id),
            _chat(client, "my number is 01712345678", session_id=session_id),
        ]
        assert replies[0]["stage"] == "PRODUCT_DISCUSSION"
        assert "full name" in replies[1]["message"]
        assert "phone number" in replies[2]["message"]
        assert "delivery address" in replies[3]["message"]

        final = _chat(client, "House 5, Road 2, Dhanmondi, Dhaka", session_id=session_id)
        assert "Your order has been placed" in final["message"]
        assert "৳4,499" in final["message"]
        assert final["awaitingApproval"] is True
        order = final["order"]
        assert order["discountPercent"] == 10
        assert order["finalAmount"] == 4499
        assert order["customer"]["phone"] == "01712345678"
        assert shop.get_product("prod_001").stock == 49

        after = _chat(client, "thanks!", session_id=session_id)
        assert after["stage"] == "ORDER_CONFIRMED"
        assert after["message"].startswith("You're welcome!")
        assert "order" not in after
        assert len(shop.list_orders()) == 1

    def test_explicit_history_is_used(self, client):
        history = [
            {"role": "user", "content": "I like the Smart Watch Pro"},
            {"role": "assistant", "content": "To place your order for **Smart Watch Pro**, may I have your full name?"},
            {"role": "system", "content": "ignored"},
        ]
        body = _chat(client, "Karim Ahmed", history=history)
        assert body["stage"] == "COLLECTING_ORDER"
        assert "Karim Ahmed" in body["message"]
        assert "phone number" in body["message"]

    def test_out_of_stock_order_is_reported(self, client, shop):
        history = [
            {"role": "customer", "content": "Leather Laptop Bag"},
            {"role": "assistant", "content": "To place your order for **Leather Laptop Bag**, may I have your full name?"},
            {"role": "customer", "content": "Rahim Uddin"},
            {"role": "assistant", "content": "Thanks, Rahim Uddin! What's your phone number?"},
            {"role": "customer", "content": "01712345678"},
            {"role": "assistant", "content": "Almost done! Please share your delivery address."},
        ]
        first = _chat(client, "Banani, Dhaka", history=history)
        second = _chat(client, "Banani, Dhaka", history=history)
        assert "order" in first and "order" in second
        third = _chat(client, "Banani, Dhaka", history=history)
        assert "out of stock" in third["message"]
        assert "order" not in third
        assert shop.get_product("prod_003").stock == 0

    def test_turns_are_recorded_in_session(self, client, sessions):
        body = _chat(client, "hello")
        messages = sessions.get_messages(body["sessionId"])
        assert [turn.role for turn in messages] == ["customer", "assistant"]
        assert messages[1].content == body["message"]

    def test_step_logs_are_returned_and_stored(self, client, sessions):
        body = _chat(client, "hello", session_id="s-logs")
        logs = body["stepLogs"]
        assert [entry["step"] for entry in logs] == ["catalog_load", "state_inference", "generation", "finalize"]
        assert logs[0]["detail"] == "3 products"
        assert logs[1]["detail"] == "GREETING"
        assert logs[2]["detail"] == "fallback"
        assert all(entry["status"] == "success" for entry in logs)

        stored = sessions.get_messages("s-logs")
        assert stored[0].step_logs is None
        assert stored[1].step_logs == logs

    def test_order_turn_logs_order_intake(self, client):
        history = [
            {"role": "customer", "content": "Smart Watch Pro"},
            {"role": "assistant", "content": "To place your order for **Smart Watch Pro**, may I have your full name?"},
            {"role": "customer", "content": "Karim Ahmed"},
            {"role": "assistant", "content": "Thanks, Karim Ahmed! What's your phone number?"},
            {"role": "customer", "content": "01812345678"},
            {"role": "assistant", "content": "Almost done! Please share your delivery address."},
        ]
        body = _chat(client, "Road 7, Gulshan", history=history)
        intake = body["stepLogs"][3]
        assert intake == {"step": "order_intake", "detail": body["order"]["id"], "status": "success"}
        assert body["stepLogs"][-1]["detail"] == "1 orders"

    def test_session_is_registered_when_pipeline_fails(self, settings, shop, sessions, monkeypatch):
        app = create_app(settings=settings, shop=shop, sessions=sessions)

        def _fail(*args, **kwargs):
            raise RuntimeError("pipeline down")

        monkeypatch.setattr(app.state.agent, "handle_message", _fail)
        client = TestClient(app, raise_server_exceptions=False)
        response = client.post("/api/chat", json={"message": "hello", "sessionId": "s-fail"})
        assert response.status_code == 500
        assert sessions.has_session("s-fail")
        assert sessions.get_messages("s-fail") == []
        assert sessions.list_sessions()[0].title == "New Chat"


# ============================================================================
# Layer 2: model-backed chat
# ============================================================================

class TestChatWithModel:
    def test_tool_created_order_is_returned(self, settings, shop, sessions):
        fake = FakeCompletionClient(
            [
                [
                    ("negotiate_price", {"productId": "prod_002", "requestedDiscount": 12}),
                    (
                        "create_invoice",
                        {
                            "productId": "prod_002",
                            "customerName": "Karim Ahmed",
                            "customerPhone": "01812345678",
                            "customerAddress": "Road 7, Gulshan",
                            "customerCity": "Dhaka",
                        },
                    ),
                ]
            ],
            after_tools="✅ Your order has been placed!",
        )
        client = TestClient(create_app(settings=settings, shop=shop, sessions=sessions, client=fake))
        body = _chat(client, "Yes, confirm my Smart Watch Pro order", session_id="ai-1")

        assert body["message"] == "✅ Your order has been placed!"
        assert body["awaitingApproval"] is True
        assert body["order"]["productId"] == "prod_002"
        assert body["order"]["discountPercent"] == 12
        assert body["order"]["finalPrice"] == 7919
        assert shop.get_product("prod_002").stock == 29
        assert fake.tool_results[0]["accepted"] is True

    def test_model_failure_returns_apology(self, settings, shop, sessions):
        fake = FakeCompletionClient([ConnectionError("network down")])
        client = TestClient(create_app(settings=settings, shop=shop, sessions=sessions, client=fake))
        body = _chat(client, "hello")
        assert "try again" in body["message"]
        assert "order" not in body

    def test_stored_history_is_sent_to_model(self, settings, shop, sessions):
        sessions.add_message("ai-2", "customer", "Smart Watch Pro?")
        sessions.add_message("ai-2", "assistant", "It's ৳8,999.")
        fake = FakeCompletionClient(["Sure!"])
        client = TestClient(create_app(settings=settings, shop=shop, sessions=sessions, client=fake))
        _chat(client, "any discount?", session_id="ai-2")
        assert fake.calls[0]["history"] == [
            {"role": "user", "text": "Smart Watch Pro?"},
            {"role": "model", "text": "It's ৳8,999."},
        ]
        assert "active_product: Smart Watch Pro" in fake.calls[0]["system_instruction"]


# ============================================================================
# Layer 3: read routes
# ============================================================================

class TestReadRoutes:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok", "ai_enabled": False}

    def test_products(self, client):
        products = client.get("/api/products").json()
        assert [item["id"] for item in products] == ["prod_001", "prod_002", "prod_003"]
        assert products[0]["maxDiscountPercent"] == 15
        assert [item["id"] for item in client.get("/api/products", params={"q": "bag"}).json()] == ["prod_003"]

    def test_product_lookup(self, client):
        assert client.get("/api/products/prod_002").json()["name"] == "Smart Watch Pro"
        assert client.get("/api/products/missing").status_code == 404

    def test_orders(self, client):
        assert client.get("/api/orders").json() == []
        assert client.get("/api/orders/ORD-1").status_code == 404

    def test_sessions(self, client):
        body = _chat(client, "hello", session_id="s-read")
        listing = client.get("/api/sessions").json()
        assert listing[0]["sessionId"] == body["sessionId"]
        detail = client.get("/api/sessions/s-read").json()
        assert len(detail["messages"]) == 2
        assert client.get("/api/sessions/unknown").status_code == 404
