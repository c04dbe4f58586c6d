"""Conversation-state tracker for the sales chat.

The tracker replays the whole chat history on every turn and derives three
things from it: the funnel stage, the product under discussion, and the
delivery fields the customer has already typed. Nothing is persisted; the
history is the only source of truth.

Stage transitions are driven by a ConversationPolicy (trigger phrases, the
phone pattern, field order) so locales can change the wording without touching
the replay logic. The default policy carries English and Bengali phrases.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from .models import ChatTurn, Product
from .utils import mask_contact_value, message_has_any, normalize_text

logger = logging.getLogger("storefront.state")


class Stage(str, Enum):
    GREETING = "GREETING"
    BROWSING = "BROWSING"
    PRODUCT_DISCUSSION = "PRODUCT_DISCUSSION"
    COLLECTING_ORDER = "COLLECTING_ORDER"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"


@dataclass(frozen=True)
class ConversationPolicy:
    """Locale-dependent data that drives the tracker and the canned replies."""
    name_triggers: Tuple[str, ...] = (
        "your name",
        "full name",
        "আপনার নাম",
        "নাম বলুন",
    )
    phone_triggers: Tuple[str, ...] = (
        "phone number",
        "mobile number",
        "contact number",
        "ফোন নম্বর",
        "মোবাইল নম্বর",
    )
    address_triggers: Tuple[str, ...] = (
        "delivery address",
        "shipping address",
        "your address",
        "ডেলিভারি ঠিকানা",
        "আপনার ঠিকানা",
    )
    confirmation_phrases: Tuple[str, ...] = (
        "order has been placed",
        "order is confirmed",
        "order confirmed",
        "অর্ডারটি নিশ্চিত",
        "অর্ডার কনফার্ম",
    )
    browse_phrases: Tuple[str, ...] = (
        "here are some of our products",
        "আমাদের কিছু পণ্য",
    )
    greeting_keywords: Tuple[str, ...] = (
        "hello",
        "hi",
        "hey",
        "salam",
        "assalamualaikum",
        "হ্যালো",
        "আসসালামু আলাইকুম",
        "নমস্কার",
    )
    affirmative_keywords: Tuple[str, ...] = (
        "yes",
        "yeah",
        "yep",
        "ok",
        "okay",
        "sure",
        "i want",
        "i'll take",
        "হ্যাঁ",
        "ঠিক আছে",
        "নিবো",
    )
    price_keywords: Tuple[str, ...] = (
        "price",
        "cost",
        "how much",
        "discount",
        "offer",
        "দাম",
        "ছাড়",
        "ডিসকাউন্ট",
    )
    catalog_keywords: Tuple[str, ...] = (
        "show",
        "products",
        "catalog",
        "what do you have",
        "পণ্য",
        "প্রোডাক্ট",
    )
    # Separators are allowed only between the digits of the candidate itself.
    phone_pattern: str = r"(?<!\d)(?:\+?88)?(01[3-9](?:[\s-]?\d){8})(?!\d)"
    purchase_keywords: Tuple[str, ...] = (
        "buy",
        "order",
        "purchase",
        "কিনতে",
        "অর্ডার",
    )
    thanks_keywords: Tuple[str, ...] = (
        "thank",
        "thanks",
        "thank you",
        "ধন্যবাদ",
    )
    text_field_order: Tuple[str, ...] = ("name", "address")
    ask_order: Tuple[str, ...] = ("name", "phone", "address")
    min_text_length: int = 2

    def field_triggers(self) -> Dict[str, Tuple[str, ...]]:
        return {
            "name": self.name_triggers,
            "phone": self.phone_triggers,
            "address": self.address_triggers,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ConversationPolicy":
        """Build a policy from a JSON-like dict; unknown keys are ignored."""
        known = {item.name for item in fields(cls)}
        kwargs: Dict[str, object] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if isinstance(value, list):
                value = tuple(str(entry) for entry in value)
            kwargs[key] = value
        return cls(**kwargs)


DEFAULT_POLICY = ConversationPolicy()


def load_policy(path: Optional[Path]) -> ConversationPolicy:
    """Purpose: Load a conversation policy from JSON, or return the default one.
    Inputs/Outputs: Input is an optional path; output is a ConversationPolicy.
    Failure Modes: A missing file falls back to the default policy; malformed
        JSON raises json.JSONDecodeError at startup.
    """
    if not path:
        return DEFAULT_POLICY
    if not path.exists():
        logger.warning("policy file missing path=%s using=default", path)
        return DEFAULT_POLICY
    data = json.loads(path.read_text(encoding="utf-8-sig"))
    return ConversationPolicy.from_dict(data if isinstance(data, dict) else {})


@lru_cache(maxsize=16)
def _compile(pattern: str) -> Pattern[str]:
    return re.compile(pattern)


@dataclass
class ConversationState:
    """Derived view of a conversation; rebuilt from history on every turn.

    ask_order is copied from the tracker's policy so the summary and the
    missing-field checks follow the same field order the replies ask in.
    """
    stage: Stage = Stage.GREETING
    active_product: Optional[Product] = None
    collected_fields: Dict[str, str] = field(default_factory=dict)
    ask_order: Tuple[str, ...] = DEFAULT_POLICY.ask_order

    def missing_fields(self, order: Optional[Sequence[str]] = None) -> List[str]:
        return [name for name in (order or self.ask_order) if not self.collected_fields.get(name)]

    def has_all_fields(self, order: Optional[Sequence[str]] = None) -> bool:
        return not self.missing_fields(order)

    def summary(self) -> str:
        """Purpose: Render the state as plain lines for the model's system instruction.
        Inputs/Outputs: No inputs; output is one "key: value" line per fact, with
            delivery fields listed in ask_order.
        Side Effects / State: None.
        Dependencies: Injected into the <<STATE>> placeholder of the sales prompt.
        Failure Modes: None; missing fields render as "not provided".
        If Removed: The model loses track of which delivery fields are still owed.
        Testing Notes: A custom ask_order changes the line order.
        """
        # Fixed header lines first, then one line per delivery field.
        product = self.active_product
        lines = [
            f"stage: {self.stage.value}",
            f"active_product: {product.name} (ID: {product.id})" if product else "active_product: none",
        ]
        for key in self.ask_order:
            value = self.collected_fields.get(key)
            lines.append(f"{key}: {value if value else 'not provided'}")
        return "\n".join(lines)

    def to_log(self) -> Dict[str, object]:
        safe = dict(self.collected_fields)
        if safe.get("phone"):
            safe["phone"] = mask_contact_value(safe["phone"])
        return {
            "stage": self.stage.value,
            "active_product": self.active_product.id if self.active_product else None,
            "fields": safe,
        }


class ConversationStateTracker:
    """Forward-replay state machine over chat history."""

    def __init__(self, policy: Optional[ConversationPolicy] = None) -> None:
        self._policy = policy or DEFAULT_POLICY

    @property
    def policy(self) -> ConversationPolicy:
        return self._policy

    def infer(self, history: Iterable[ChatTurn], catalog: Sequence[Product]) -> ConversationState:
        """Purpose: Infer stage, active product, and collected fields from history.
        Inputs/Outputs: Inputs are chronological ChatTurns and the catalog in store
            order; output is a fresh ConversationState.
        Side Effects / State: None; inputs are not mutated, so repeated calls on the
            same history return equal states.
        Dependencies: ConversationPolicy for triggers, phone pattern and field order.
        Failure Modes: None; unknown text simply leaves the state unchanged.
        If Removed: Stage-aware replies and fallback order intake stop working.
        Testing Notes: Last product mention wins; a phone number anywhere in a
            customer turn fills the phone slot; other text fills name, then address.
        """
        # Replay every turn in order; assistant wording moves the stage.
        state = ConversationState(ask_order=self._policy.ask_order)
        # Set once an order is confirmed so the next collecting run starts clean.
        sequence_closed = False

        for turn in history:
            text = turn.content or ""
            normalized = normalize_text(text)

            product = self._match_product(normalized, catalog)
            if product is not None:
                state.active_product = product
                state.stage = Stage.PRODUCT_DISCUSSION

            if turn.role == "assistant":
                next_stage = self._assistant_transition(normalized)
                if next_stage is Stage.COLLECTING_ORDER and sequence_closed:
                    state.collected_fields = {}
                    sequence_closed = False
                if next_stage is Stage.ORDER_CONFIRMED:
                    sequence_closed = True
                if next_stage is not None:
                    state.stage = next_stage
                continue

            if state.stage is Stage.COLLECTING_ORDER:
                self._collect_field(text, state)

        return state

    def extract_phone(self, text: str) -> Optional[str]:
        """Purpose: Return the national mobile number found anywhere in text, if any.
        Inputs/Outputs: Input is raw customer text; output is the digits of the
            first match with spaces and hyphens removed, or None.
        Failure Modes: None; text without a match returns None.
        Testing Notes: Digits next to the number ("House 12 01712345678") are
            not joined to it.
        """
        if not text:
            return None
        match = _compile(self._policy.phone_pattern).search(text)
        if not match:
            return None
        value = match.group(1) if match.groups() and match.group(1) else match.group(0)
        return re.sub(r"[\s\-]", "", value)

    def _match_product(self, normalized: str, catalog: Sequence[Product]) -> Optional[Product]:
        # Catalog order decides ties: every hit overwrites the previous one.
        matched: Optional[Product] = None
        if not normalized:
            return None
        for product in catalog:
            name = normalize_text(product.name)
            if name and name in normalized:
                matched = product
        return matched

    def _assistant_transition(self, normalized: str) -> Optional[Stage]:
        policy = self._policy
        if message_has_any(normalized, policy.confirmation_phrases):
            return Stage.ORDER_CONFIRMED
        for triggers in policy.field_triggers().values():
            if message_has_any(normalized, triggers):
                return Stage.COLLECTING_ORDER
        if message_has_any(normalized, policy.browse_phrases):
            return Stage.BROWSING
        return None

    def _collect_field(self, text: str, state: ConversationState) -> None:
        phone = self.extract_phone(text)
        if phone:
            state.collected_fields["phone"] = phone
            return
        value = text.strip()
        if len(value) <= self._policy.min_text_length or _is_numeric(value):
            return
        for slot in self._policy.text_field_order:
            if not state.collected_fields.get(slot):
                state.collected_fields[slot] = value
                return


def _is_numeric(value: str) -> bool:
    digits = re.sub(r"[\s+\-()]", "", value)
    return digits.isdigit()


def infer_state(
    history: Iterable[ChatTurn],
    catalog: Sequence[Product],
    policy: Optional[ConversationPolicy] = None,
) -> ConversationState:
    """Convenience wrapper around ConversationStateTracker.infer."""
    return ConversationStateTracker(policy).infer(history, catalog)
