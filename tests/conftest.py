"""Pytest configuration for storefront tests."""

from dataclasses import replace

import pytest

from storefront.config import load_settings
from storefront.models import ChatTurn, Product
from storefront.session_store import SessionStore
from storefront.shop_store import ShopStore


class FakeCompletionClient:
    """Scripted stand-in for the Gemini client.

    Each entry of ``script`` is either a reply string, an exception to raise, or a
    list of (tool_name, args) calls to run through the executor before replying
    with ``after_tools``.
    """

    def __init__(self, script=None, after_tools="Done!"):
        self.script = list(script or [])
        self.after_tools = after_tools
        self.calls = []
        self.tool_results = []

    def complete(self, system_instruction, history, message, tools=None, tool_executor=None):
        self.calls.append(
            {
                "system_instruction": system_instruction,
                "history": history,
                "message": message,
                "tools": tools,
            }
        )
        step = self.script.pop(0) if self.script else "Hello from the model"
        if isinstance(step, Exception):
            raise step
        if isinstance(step, list):
            for name, args in step:
                self.tool_results.append(tool_executor(name, args))
            return self.after_tools
        return step


@pytest.fixture
def catalog():
    return [
        Product(
            id="prod_001",
            name="Premium Wireless Headphones",
            description="Noise cancelling over-ear headphones",
            price=4999,
            stock=50,
            category="Electronics",
            max_discount_percent=15,
        ),
        Product(
            id="prod_002",
            name="Smart Watch Pro",
            description="Fitness tracking smart watch",
            price=8999,
            stock=30,
            category="Electronics",
            max_discount_percent=12,
        ),
        Product(
            id="prod_003",
            name="Leather Laptop Bag",
            description="Genuine leather bag for 15 inch laptops",
            price=3499,
            stock=2,
            category="Accessories",
            max_discount_percent=5,
        ),
    ]


@pytest.fixture
def settings(tmp_path, monkeypatch):
    for key in ("GEMINI_API_KEY", "AI_FALLBACK_ON_ERROR", "CONVERSATION_POLICY_PATH", "STORE_NAME"):
        monkeypatch.delenv(key, raising=False)
    base = load_settings()
    return replace(
        base,
        store_name="AI Store",
        store_data_path=tmp_path / "store.json",
        sessions_path=tmp_path / "sessions.json",
    )


@pytest.fixture
def shop(tmp_path, catalog) -> ShopStore:
    return ShopStore(tmp_path / "store.json", seed_products=catalog)


@pytest.fixture
def sessions(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "sessions.json", max_sessions=50)


def turns(*pairs):
    """Build ChatTurns from (role, content) pairs."""
    return [ChatTurn(role=role, content=content) for role, content in pairs]


NAME_QUESTION = "To place your order for **Premium Wireless Headphones**, may I have your full name?"
