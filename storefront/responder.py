"""Reply generation for the sales chat.

Two backends share one entry point. With a completion client configured, the
catalog, store policies, and the tracked state are rendered into a system
instruction and the model answers (optionally calling store tools). Without a
client, a deterministic decision table over the tracked stage and a few keyword
sets produces canned replies and, once delivery details are complete, an order
action for the caller to commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import Settings
from .conversation_state import DEFAULT_POLICY, ConversationPolicy, ConversationState, Stage
from .gemini_client import CompletionClient, ToolExecutor
from .models import ChatTurn, CustomerInfo, OrderDraft, Product
from .prompt_loader import load_prompt, render_prompt
from .store_tools import STORE_TOOLS
from .utils import cap_discount, discounted_price, format_price, message_has_any, normalize_text

logger = logging.getLogger("storefront.responder")

APOLOGY_REPLY = "I apologize, I'm having a moment. Could you please try again? 🙏"
EMPTY_AI_REPLY = "Thanks for your message! Could you tell me a bit more about what you're looking for?"
THANKS_REPLY = "You're welcome! 😊 Is there anything else I can help you with?"
# Must not contain field-request phrases, or the tracker starts collecting with no product.
ORDER_INSTRUCTIONS_REPLY = (
    "Great! 🛒 To place an order, just tell me which product you'd like. "
    "After that I'll ask for your details (name, phone and address) and complete your purchase!"
)
SYSTEM_PROMPT_FILE = "sales_system.txt"

FIELD_QUESTIONS = {
    "name": "To place your order for **{product}**, may I have your full name?",
    "phone": "Thanks{greeting}! What's your phone number? (e.g. 01712345678)",
    "address": "Almost done! Please share your delivery address (house, road, area, city).",
}


@dataclass
class OrderAction:
    """Order the caller should commit once the reply is accepted."""
    product_id: str
    quantity: int
    discount_percent: int
    customer: CustomerInfo

    def to_draft(self, session_id: Optional[str] = None) -> OrderDraft:
        return OrderDraft(
            product_id=self.product_id,
            quantity=self.quantity,
            discount_percent=self.discount_percent,
            customer=self.customer,
            session_id=session_id,
        )


@dataclass
class GeneratedReply:
    reply_text: str
    order_action: Optional[OrderAction] = None
    backend: str = "fallback"


class ResponseGenerator:
    """Produce a reply from the tracked state via the model or the fallback table."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[CompletionClient] = None,
        policy: Optional[ConversationPolicy] = None,
        prompts_dir: Optional[Path] = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._policy = policy or DEFAULT_POLICY
        self._prompts_dir = prompts_dir or settings.prompts_dir

    @property
    def ai_enabled(self) -> bool:
        return self._client is not None

    def generate(
        self,
        user_message: str,
        state: ConversationState,
        catalog: Sequence[Product],
        history: Sequence[ChatTurn] = (),
        negotiated_discounts: Optional[Dict[str, int]] = None,
        tool_executor: Optional[ToolExecutor] = None,
    ) -> GeneratedReply:
        """Purpose: Produce the assistant reply for one customer message.
        Inputs/Outputs: Inputs are the message, the inferred state, the catalog, prior
            turns (without the current message), the session's negotiated discounts,
            and an optional tool executor; output is a GeneratedReply.
        Side Effects / State: The model path may run tools through tool_executor.
        Failure Modes: Any completion error becomes APOLOGY_REPLY, or the fallback
            reply when fallback_on_ai_error is set. Never raises for model errors.
        Testing Notes: Without a client every branch of the fallback table is reachable.
        """
        discounts = negotiated_discounts or {}
        if self._client is None:
            return self.fallback_reply(user_message, state, catalog, discounts)

        try:
            reply = self._client.complete(
                self.build_system_instruction(state, catalog),
                self._history_contents(history),
                user_message,
                tools=STORE_TOOLS if tool_executor else None,
                tool_executor=tool_executor,
            )
        except Exception:
            logger.exception("completion failed stage=%s", state.stage.value)
            if self._settings.fallback_on_ai_error:
                return self.fallback_reply(user_message, state, catalog, discounts)
            return GeneratedReply(reply_text=APOLOGY_REPLY, backend="error")
        return GeneratedReply(reply_text=reply.strip() or EMPTY_AI_REPLY, backend="ai")

    def build_system_instruction(self, state: ConversationState, catalog: Sequence[Product]) -> str:
        template = load_prompt(self._prompts_dir / SYSTEM_PROMPT_FILE)
        return render_prompt(
            template,
            {
                "STORE_NAME": self._settings.store_name,
                "CATALOG": render_catalog(catalog, self._settings.currency),
                "DEFAULT_DISCOUNT": str(self._settings.default_discount_percent),
                "STATE": state.summary(),
            },
        )

    def _history_contents(self, history: Sequence[ChatTurn]) -> List[Dict[str, str]]:
        window = self._settings.history_window
        recent = list(history)[-window:] if window > 0 else list(history)
        return [
            {"role": "model" if turn.role == "assistant" else "user", "text": turn.content}
            for turn in recent
            if turn.content
        ]

    def fallback_reply(
        self,
        user_message: str,
        state: ConversationState,
        catalog: Sequence[Product],
        negotiated_discounts: Optional[Dict[str, int]] = None,
    ) -> GeneratedReply:
        """Purpose: Deterministic decision table used when no model is configured.
        Inputs/Outputs: Inputs are the message, state, catalog, and negotiated discounts;
            output is a GeneratedReply, with an OrderAction when details are complete.
        Side Effects / State: None; the caller commits any returned OrderAction.
        Failure Modes: None; an empty catalog yields generic prompts.
        If Removed: Chat without a Gemini key has no replies and no order intake.
        Testing Notes: Each branch below maps to one row of the table, checked in order.
        """
        # Rows: collecting, affirmative, price, purchase, greeting, catalog, thanks, nudge.
        policy = self._policy
        normalized = normalize_text(user_message)
        product = state.active_product
        currency = self._settings.currency
        discounts = negotiated_discounts or {}

        if state.stage is Stage.COLLECTING_ORDER:
            if product is None:
                return GeneratedReply(ask_for_product_text(catalog))
            missing = state.missing_fields(policy.ask_order)
            if not missing:
                discount = self._discount_for(product, discounts)
                action = OrderAction(
                    product_id=product.id,
                    quantity=1,
                    discount_percent=discount,
                    customer=CustomerInfo(
                        name=state.collected_fields["name"],
                        phone=state.collected_fields["phone"],
                        address=state.collected_fields["address"],
                    ),
                )
                return GeneratedReply(render_confirmation(product, action, currency), order_action=action)
            return GeneratedReply(field_question(missing[0], product, state.collected_fields.get("name")))

        if state.stage is Stage.PRODUCT_DISCUSSION and product and message_has_any(
            normalized, policy.affirmative_keywords
        ):
            return GeneratedReply("Wonderful choice! 🛒 " + field_question("name", product))

        if product and message_has_any(normalized, policy.price_keywords):
            discount = self._discount_for(product, discounts)
            final = discounted_price(product.price, discount)
            return GeneratedReply(
                f"**{product.name}** is priced at {format_price(product.price, currency)}. "
                f"I can offer you {discount}% off, so it's just {format_price(final, currency)}! "
                "Would you like to order it?"
            )

        if product and message_has_any(normalized, policy.purchase_keywords):
            return GeneratedReply("Wonderful choice! 🛒 " + field_question("name", product))

        if message_has_any(normalized, policy.greeting_keywords):
            return GeneratedReply(greeting_text(self._settings.store_name, catalog, currency))

        if message_has_any(normalized, policy.catalog_keywords):
            return GeneratedReply(
                catalog_listing_text(catalog, self._settings.catalog_preview_limit, currency)
            )

        if message_has_any(normalized, policy.purchase_keywords):
            return GeneratedReply(ORDER_INSTRUCTIONS_REPLY)

        if message_has_any(normalized, policy.thanks_keywords):
            return GeneratedReply(THANKS_REPLY)

        if product is None:
            return GeneratedReply(ask_for_product_text(catalog))

        discount = self._discount_for(product, discounts)
        return GeneratedReply(
            f"**{product.name}** is available for {format_price(product.price, currency)}, and right now "
            f"I can give you {discount}% off ({format_price(discounted_price(product.price, discount), currency)}). "
            "Would you like to order it? 😊"
        )

    def _discount_for(self, product: Product, negotiated: Dict[str, int]) -> int:
        requested = negotiated.get(product.id, self._settings.default_discount_percent)
        return cap_discount(requested, product.max_discount_percent)


def render_catalog(catalog: Sequence[Product], currency: str = "BDT") -> str:
    """Render the catalog block embedded in the system instruction."""
    if not catalog:
        return "No products currently available."
    lines = []
    for product in catalog:
        stock = f"{product.stock} in stock" if product.available else "Out of stock"
        lines.append(
            f"• {product.name} (ID: {product.id}) - {format_price(product.price, currency)} - {stock} - "
            f"Category: {product.category} - Max discount: {product.max_discount_percent}%\n"
            f"  Description: {product.description}"
        )
    return "\n\n".join(lines)


def field_question(field_name: str, product: Product, name: Optional[str] = None) -> str:
    template = FIELD_QUESTIONS[field_name]
    greeting = f", {name}" if name else ""
    return template.format(product=product.name, greeting=greeting)


def render_confirmation(product: Product, action: OrderAction, currency: str = "BDT") -> str:
    final = discounted_price(product.price, action.discount_percent)
    customer = action.customer
    return (
        "✅ Your order has been placed!\n\n"
        f"**{product.name}** x{action.quantity}\n"
        f"Price: {format_price(product.price, currency)}\n"
        f"Discount: {action.discount_percent}%\n"
        f"Final price: {format_price(final, currency)}\n\n"
        f"Name: {customer.name}\n"
        f"Phone: {customer.phone}\n"
        f"Address: {customer.address}\n\n"
        "The store will review it shortly and you'll pay cash on delivery. Thank you for shopping with us! 🙏"
    )


def greeting_text(store_name: str, catalog: Sequence[Product], currency: str = "BDT") -> str:
    if not catalog:
        return f"Hello! 👋 Welcome to {store_name}! How can I help you today?"
    top = catalog[0]
    return (
        f"Hello! 👋 Welcome to {store_name}! Our customer favourite right now is "
        f"**{top.name}** at {format_price(top.price, currency)}. How can I help you today?"
    )


def catalog_listing_text(catalog: Sequence[Product], limit: int, currency: str = "BDT") -> str:
    if not catalog:
        return "We're currently updating our catalog. Please check back soon!"
    lines = [
        f"• **{product.name}** - {format_price(product.price, currency)} "
        f"({'In stock' if product.available else 'Out of stock'})"
        for product in list(catalog)[:limit]
    ]
    return "Here are some of our products:\n\n" + "\n".join(lines) + "\n\nWould you like more details about any of these?"


def ask_for_product_text(catalog: Sequence[Product]) -> str:
    # No product names here: the tracker would treat them as a mention.
    if not catalog:
        return "Which product are you looking for? Tell me its name and I'll check it for you."
    return (
        "Which product are you interested in? Tell me the product name, "
        f"or ask me to show our products ({len(catalog)} available)."
    )
