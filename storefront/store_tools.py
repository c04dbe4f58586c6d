"""Store operations the chat model can invoke through function calling.

Four tools are exposed: inventory_check, create_invoice, negotiate_price and
save_customer_preference. Every tool returns a JSON-able dict and never raises;
failures come back as {"success": False, "error": ...} so the model can explain
them to the customer.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .models import CustomerInfo, Order, OrderDraft, Product
from .session_store import SessionStore
from .shop_store import OutOfStockError, ProductNotFoundError, ShopStore, StoreError
from .utils import cap_discount, discounted_price, format_price

logger = logging.getLogger("storefront.tools")

DEFAULT_COUNTER_OFFER = 10
INVENTORY_RESULT_LIMIT = 5

INVENTORY_CHECK_DECLARATION = {
    "name": "inventory_check",
    "description": (
        "Check product inventory, get product details, or search products by name or category. "
        "Use when a customer asks about products, prices, availability, or wants to browse."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "query": {"type": "STRING", "description": "Search text for product name, category, or keywords"},
            "productId": {"type": "STRING", "description": "Specific product ID, e.g. prod_001"},
            "checkStock": {"type": "BOOLEAN", "description": "Whether to include stock availability"},
        },
    },
}

CREATE_INVOICE_DECLARATION = {
    "name": "create_invoice",
    "description": (
        "Create an order/invoice once the customer confirms the purchase and has given "
        "name, phone, address, and city. Call it once per confirmed purchase."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "productId": {"type": "STRING", "description": "ID of the product to order"},
            "quantity": {"type": "NUMBER", "description": "Number of items (default 1)"},
            "discountPercent": {"type": "NUMBER", "description": "Discount percentage, capped per product"},
            "customerName": {"type": "STRING", "description": "Customer full name"},
            "customerPhone": {"type": "STRING", "description": "Customer mobile number"},
            "customerAddress": {"type": "STRING", "description": "Delivery address"},
            "customerCity": {"type": "STRING", "description": "Delivery city"},
            "paymentMethod": {"type": "STRING", "description": "cod, bkash, or online"},
        },
        "required": ["productId", "customerName", "customerPhone", "customerAddress", "customerCity"],
    },
}

NEGOTIATE_PRICE_DECLARATION = {
    "name": "negotiate_price",
    "description": (
        "Handle a discount request or bargaining. The accepted or counter-offered discount "
        "is remembered for this chat and used when the invoice is created."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "productId": {"type": "STRING", "description": "Product ID being negotiated"},
            "requestedDiscount": {"type": "NUMBER", "description": "Discount percentage the customer asks for"},
            "counterOffer": {"type": "NUMBER", "description": "Your counter-offer percentage"},
            "reason": {"type": "STRING", "description": "Reason for the decision"},
        },
        "required": ["productId"],
    },
}

SAVE_PREFERENCE_DECLARATION = {
    "name": "save_customer_preference",
    "description": "Remember a customer preference such as a favourite category, price range, or brand.",
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "preferenceType": {"type": "STRING", "description": "category, price_range, brand, or interest"},
            "value": {"type": "STRING", "description": "The preference value"},
        },
        "required": ["preferenceType", "value"],
    },
}

STORE_TOOLS = [
    {
        "function_declarations": [
            INVENTORY_CHECK_DECLARATION,
            CREATE_INVOICE_DECLARATION,
            NEGOTIATE_PRICE_DECLARATION,
            SAVE_PREFERENCE_DECLARATION,
        ]
    }
]


class StoreToolbox:
    """Per-request executor for the model's tool calls."""

    def __init__(
        self,
        shop: ShopStore,
        sessions: SessionStore,
        session_id: str,
        currency: str = "BDT",
    ) -> None:
        self._shop = shop
        self._sessions = sessions
        self._session_id = session_id
        self._currency = currency
        self._invoice_keys: Dict[Tuple[str, int, str], Order] = {}
        self.created_orders: List[Order] = []
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "inventory_check": self.inventory_check,
            "create_invoice": self.create_invoice,
            "negotiate_price": self.negotiate_price,
            "save_customer_preference": self.save_customer_preference,
        }

    def execute(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        """Purpose: Dispatch one model tool call to its handler.
        Inputs/Outputs: Inputs are the tool name and its args; output is the JSON-able
            payload handed back to the model as the function response.
        Side Effects / State: Whatever the handler does (orders, discounts, preferences).
        Dependencies: Passed to GeminiClient.complete as the tool executor.
        Failure Modes: Unknown tools and handler crashes become error payloads;
            nothing raises into the model loop.
        If Removed: The model can declare tool calls but none would run.
        Testing Notes: Call with an unknown name and with a handler that raises.
        """
        # Route by name; every failure is reported back to the model.
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("session=%s unknown tool=%s", self._session_id, name)
            return {"success": False, "error": f"Unknown tool: {name}"}
        try:
            return handler(args or {})
        except Exception:
            logger.exception("session=%s tool=%s failed", self._session_id, name)
            return {"success": False, "error": f"Failed to run {name}"}

    def inventory_check(self, args: Dict[str, Any]) -> Dict[str, Any]:
        product_id = _as_str(args.get("productId"))
        if product_id:
            product = self._shop.get_product(product_id)
            if product is None:
                return {"found": False, "message": "Product not found"}
            return {"found": True, "product": self._product_payload(product, detailed=True)}

        query = _as_str(args.get("query"))
        matches = self._shop.search_products(query, limit=INVENTORY_RESULT_LIMIT)
        return {
            "found": bool(matches),
            "count": len(matches),
            "products": [self._product_payload(product) for product in matches],
            "message": f"Found {len(matches)} products" if matches else "No products found matching your query",
        }

    def create_invoice(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Purpose: Create an order from a model tool call and decrement stock.
        Inputs/Outputs: Input is the tool args; output is an invoice payload.
        Side Effects / State: Commits an order through ShopStore and records it on
            created_orders for the chat response.
        Failure Modes: Unknown product, missing customer fields, and insufficient stock
            return error payloads. A repeat call with the same product, quantity, and
            phone inside one request returns the first order instead of a second one.
        If Removed: Model-driven chats can never place an order.
        """
        # Resolve the product, build a draft, dedupe, then commit.
        product_id = _as_str(args.get("productId"))
        product = self._shop.get_product(product_id) if product_id else None
        if product is None:
            return {"success": False, "error": "Product not found"}

        quantity = max(1, _as_int(args.get("quantity"), 1))
        requested = args.get("discountPercent")
        if requested is None:
            requested = self._sessions.get_negotiated_discounts(self._session_id).get(product.id, 0)
        discount = cap_discount(_as_int(requested, 0), product.max_discount_percent)

        phone = _as_str(args.get("customerPhone"))
        key = (product.id, quantity, phone)
        if key in self._invoice_keys:
            order = self._invoice_keys[key]
            logger.info("session=%s duplicate invoice call order=%s", self._session_id, order.id)
            return self._invoice_payload(order)

        try:
            draft = OrderDraft(
                product_id=product.id,
                quantity=quantity,
                discount_percent=discount,
                customer=CustomerInfo(
                    name=_as_str(args.get("customerName")),
                    phone=phone,
                    address=_as_str(args.get("customerAddress")),
                    city=_as_str(args.get("customerCity")),
                ),
                payment_method=_as_str(args.get("paymentMethod")) or "cod",
                session_id=self._session_id,
            )
            order = self._shop.commit_order(draft)
        except OutOfStockError as exc:
            return {
                "success": False,
                "error": f"Only {exc.product.stock} units of {exc.product.name} are in stock",
            }
        except (ProductNotFoundError, ValidationError):
            return {"success": False, "error": "Product not found or order details invalid"}
        except StoreError as exc:
            return {"success": False, "error": str(exc) or "Failed to create invoice"}

        self._invoice_keys[key] = order
        self.created_orders.append(order)
        return self._invoice_payload(order)

    def negotiate_price(self, args: Dict[str, Any]) -> Dict[str, Any]:
        product_id = _as_str(args.get("productId"))
        product = self._shop.get_product(product_id) if product_id else None
        if product is None:
            return {"success": False, "error": "Product not found"}

        offer = negotiate_discount(
            product.max_discount_percent,
            _as_int(args.get("requestedDiscount"), 0),
            _as_int(args.get("counterOffer"), 0),
        )
        discount, accepted = offer
        price = discounted_price(product.price, discount)
        shown = format_price(price, self._currency)
        if accepted:
            message = f"Great! I can offer you {discount}% off on {product.name}. That brings the price down to {shown}!"
        else:
            message = f"The best I can offer is {discount}% off, bringing the price to {shown}. Would that work for you?"

        self._sessions.set_negotiated_discount(self._session_id, product.id, discount)
        logger.info(
            "session=%s negotiated product=%s discount=%s accepted=%s",
            self._session_id,
            product.id,
            discount,
            accepted,
        )
        return {
            "success": True,
            "productId": product.id,
            "productName": product.name,
            "originalPrice": product.price,
            "discountPercent": discount,
            "discountedPrice": price,
            "accepted": accepted,
            "message": message,
        }

    def save_customer_preference(self, args: Dict[str, Any]) -> Dict[str, Any]:
        key = _as_str(args.get("preferenceType"))
        value = _as_str(args.get("value"))
        if not key or not value:
            return {"success": False, "error": "preferenceType and value are required"}
        self._sessions.set_preference(self._session_id, key, value)
        return {"success": True, "message": f"Noted! I'll remember you prefer {value} in {key}."}

    def _product_payload(self, product: Product, detailed: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": product.id,
            "name": product.name,
            "price": product.price,
            "stock": product.stock,
            "category": product.category,
            "available": product.available,
        }
        if detailed:
            payload.update(
                {
                    "description": product.description,
                    "currency": product.currency,
                    "maxDiscount": product.max_discount_percent,
                }
            )
        return payload

    def _invoice_payload(self, order: Order) -> Dict[str, Any]:
        return {
            "success": True,
            "orderId": order.id,
            "invoice": order.to_wire(),
            "message": f"Order {order.id} created successfully! Total: {format_price(order.final_amount, self._currency)}",
        }


def negotiate_discount(max_discount: int, requested: int, counter_offer: int = 0) -> Tuple[int, bool]:
    """Return (discount_percent, accepted) for a negotiation round.

    A request within the cap is accepted as-is. Otherwise the model's counter-offer
    is used (capped), or a default counter of 10% (capped) when none was given.
    """
    if requested <= max_discount:
        return cap_discount(requested, max_discount), True
    if counter_offer > 0:
        return cap_discount(counter_offer, max_discount), False
    return cap_discount(DEFAULT_COUNTER_OFFER, max_discount), False


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_int(value: Any, default: int) -> int:
    # Gemini sends NUMBER args as floats.
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return default
