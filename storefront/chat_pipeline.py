"""Sales chat pipeline: state inference, reply generation, and order intake.

Step contracts:
    Catalog Load:
        Reads the catalog from the store; a failing read leaves an empty catalog.
    State Inference:
        Replays prior turns plus the current message through the tracker.
    Generation:
        Produces reply_text via the model (with store tools) or the fallback table.
    Order Intake:
        Commits the fallback's order action atomically; tool-created orders are
        picked up from the toolbox. Store failures become a polite reply.
    Finalize:
        Logs the outcome for the session.

Every step appends one entry to ChatContext.step_logs; the chat route returns
them in the response and stores them on the assistant turn.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .conversation_state import ConversationState, ConversationStateTracker
from .models import ChatTurn, Order, Product
from .pipeline_runtime import PipelineStep, StepRunner
from .responder import OrderAction, ResponseGenerator
from .session_store import SessionStore
from .shop_store import OutOfStockError, ShopStore, StoreError
from .store_tools import StoreToolbox

logger = logging.getLogger("storefront.chat")

ORDER_FAILED_REPLY = (
    "Sorry, I couldn't place your order just now. Please try again in a moment, "
    "or contact the store and we'll sort it out. 🙏"
)


@dataclass
class ChatContext:
    """Mutable context passed through each pipeline step."""
    session_id: str
    user_message: str
    history: List[ChatTurn]
    catalog: List[Product] = field(default_factory=list)
    state: ConversationState = field(default_factory=ConversationState)
    negotiated_discounts: Dict[str, int] = field(default_factory=dict)
    reply_text: str = ""
    backend: str = ""
    order_action: Optional[OrderAction] = None
    orders: List[Order] = field(default_factory=list)
    toolbox: Optional[StoreToolbox] = None
    step_logs: List[Dict[str, str]] = field(default_factory=list)

    @property
    def order(self) -> Optional[Order]:
        return self.orders[-1] if self.orders else None

    def log(self, event: str, detail: str, status: str = "success") -> None:
        # Details carry counts and ids only; customer contact data stays out.
        self.step_logs.append({"step": event, "detail": detail, "status": status})


class SalesChatAgent:
    def __init__(
        self,
        shop: ShopStore,
        sessions: SessionStore,
        tracker: ConversationStateTracker,
        responder: ResponseGenerator,
        currency: str = "BDT",
    ) -> None:
        """Purpose: Wire the store, session store, tracker, and responder into a pipeline.
        Inputs/Outputs: Collaborators are passed in; no return value.
        Side Effects / State: Builds a StepRunner with the ordered steps.
        Testing Notes: Build with tmp-path stores and a fake completion client.
        """
        self._shop = shop
        self._sessions = sessions
        self._tracker = tracker
        self._responder = responder
        self._currency = currency
        self._runner = StepRunner(
            steps=[
                PipelineStep("catalog_load", self._step_catalog_load),
                PipelineStep("state_inference", self._step_state_inference),
                PipelineStep("generation", self._step_generation),
                PipelineStep(
                    "order_intake",
                    self._step_order_intake,
                    skip_if=lambda ctx: ctx.order_action is None and not (ctx.toolbox and ctx.toolbox.created_orders),
                ),
                PipelineStep("finalize", self._step_finalize, always_run=True),
            ]
        )

    def handle_message(self, session_id: Optional[str], user_message: str, history: List[ChatTurn]) -> ChatContext:
        """Purpose: Run the full pipeline for one customer message.
        Inputs/Outputs: Inputs are session_id, the message, and prior turns (the
            current message excluded); output is the populated ChatContext.
        Side Effects / State: May commit an order and update negotiated discounts or
            preferences; does not append chat turns (the API layer does).
        Failure Modes: Model and store errors are converted to replies; other
            exceptions propagate.
        If Removed: The chat route has no way to produce a reply.
        Testing Notes: Check context.step_logs for the steps that ran.
        """
        # Build a fresh context and run every step against it.
        context = ChatContext(
            session_id=session_id or uuid.uuid4().hex,
            user_message=user_message,
            history=list(history),
        )
        logger.info("session=%s question=%s", context.session_id, user_message)
        records = self._runner.run(context)
        logger.info(
            "session=%s steps=%s",
            context.session_id,
            " ".join(f"{record.name}:{record.status}" for record in records),
        )
        return context

    def _step_catalog_load(self, context: ChatContext) -> None:
        try:
            context.catalog = self._shop.list_products()
        except StoreError:
            logger.exception("session=%s step=catalog_load failed", context.session_id)
            context.catalog = []
        context.negotiated_discounts = self._sessions.get_negotiated_discounts(context.session_id)
        context.log("catalog_load", f"{len(context.catalog)} products")

    def _step_state_inference(self, context: ChatContext) -> None:
        turns = context.history + [ChatTurn(role="customer", content=context.user_message)]
        context.state = self._tracker.infer(turns, context.catalog)
        context.log("state_inference", context.state.stage.value)
        logger.info(
            "session=%s step=state_inference state=%s",
            context.session_id,
            json.dumps(context.state.to_log(), ensure_ascii=True),
        )

    def _step_generation(self, context: ChatContext) -> None:
        executor = None
        if self._responder.ai_enabled:
            context.toolbox = StoreToolbox(self._shop, self._sessions, context.session_id, currency=self._currency)
            executor = context.toolbox.execute
        reply = self._responder.generate(
            context.user_message,
            context.state,
            context.catalog,
            history=context.history,
            negotiated_discounts=context.negotiated_discounts,
            tool_executor=executor,
        )
        context.reply_text = reply.reply_text
        context.order_action = reply.order_action
        context.backend = reply.backend
        context.log("generation", reply.backend)
        logger.info("session=%s step=generation route=%s", context.session_id, reply.backend)

    def _step_order_intake(self, context: ChatContext) -> None:
        if context.toolbox and context.toolbox.created_orders:
            context.orders.extend(context.toolbox.created_orders)
        action = context.order_action
        if action is None:
            context.log("order_intake", ",".join(order.id for order in context.orders))
            return
        try:
            order = self._shop.commit_order(action.to_draft(context.session_id))
        except OutOfStockError as exc:
            context.reply_text = (
                f"Sorry, **{exc.product.name}** is out of stock right now "
                f"({exc.product.stock} left). Would you like to look at something else?"
            )
            context.log("order_intake", "out_of_stock", status="error")
            logger.warning("session=%s step=order_intake out_of_stock product=%s", context.session_id, action.product_id)
            return
        except StoreError:
            context.reply_text = ORDER_FAILED_REPLY
            context.log("order_intake", "store_error", status="error")
            logger.exception("session=%s step=order_intake failed", context.session_id)
            return
        context.orders.append(order)
        context.log("order_intake", order.id)

    def _step_finalize(self, context: ChatContext) -> None:
        context.log("finalize", f"{len(context.orders)} orders")
        logger.info(
            "session=%s answer=%s orders=%s",
            context.session_id,
            context.reply_text,
            [order.id for order in context.orders],
        )
