from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model that speaks camelCase on the wire and snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class ChatTurn(WireModel):
    """One message of a conversation, with pipeline step logs on stored assistant turns."""
    role: Literal["customer", "assistant"]
    content: str
    timestamp: Optional[str] = None
    step_logs: Optional[List[Dict[str, str]]] = None

    @field_validator("role", mode="before")
    @classmethod
    def _map_user_role(cls, value: Any) -> Any:
        # The storefront widget labels customer turns as "user".
        if isinstance(value, str) and value.strip().lower() == "user":
            return "customer"
        return value


class Product(WireModel):
    """Catalog record. The core only reads it, except for stock on order commit."""
    id: str
    name: str
    description: str = ""
    price: int = Field(ge=0)
    stock: int = Field(default=0, ge=0)
    category: str = ""
    max_discount_percent: int = Field(
        default=15,
        ge=0,
        le=100,
        alias="maxDiscountPercent",
        validation_alias=AliasChoices("maxDiscountPercent", "maxDiscount", "max_discount_percent"),
    )
    currency: str = "BDT"
    image: str = ""

    @property
    def available(self) -> bool:
        return self.stock > 0


class CustomerInfo(WireModel):
    name: str
    phone: str
    address: str
    city: str = ""


class OrderDraft(WireModel):
    """Input of the atomic order commit at the storage boundary."""
    product_id: str
    quantity: int = Field(default=1, ge=1)
    discount_percent: int = Field(default=0, ge=0, le=100)
    customer: CustomerInfo
    payment_method: str = "cod"
    session_id: Optional[str] = None


class Order(WireModel):
    """Persisted order. Immutable once created, apart from the approval workflow."""
    id: str
    product_id: str
    product_name: str
    quantity: int
    original_price: int
    discount_percent: int
    final_price: int
    total_amount: int
    discount_amount: int
    final_amount: int
    customer: CustomerInfo
    status: str = "pending_approval"
    payment_method: str = "cod"
    session_id: Optional[str] = None
    created_at: str


class ChatRequest(WireModel):
    """Request payload for the chat API."""
    message: Optional[str] = None
    conversation_history: List[ChatTurn] = Field(default_factory=list)
    session_id: Optional[str] = None

    @field_validator("conversation_history", mode="before")
    @classmethod
    def _drop_system_turns(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [
            turn
            for turn in value
            if not (isinstance(turn, dict) and str(turn.get("role", "")).lower() == "system")
        ]


class ChatResponse(WireModel):
    """Response payload returned by the chat API."""
    message: str
    message_id: str
    session_id: str
    stage: str
    order: Optional[Order] = None
    awaiting_approval: Optional[bool] = None
    step_logs: List[Dict[str, str]] = Field(default_factory=list)


class SessionSummary(WireModel):
    """Lightweight session summary for the dashboard inbox."""
    session_id: str
    title: str
    updated_at: float
