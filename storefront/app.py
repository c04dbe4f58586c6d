from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request

from .chat_pipeline import SalesChatAgent
from .config import Settings, load_settings
from .conversation_state import ConversationStateTracker, load_policy
from .gemini_client import CompletionClient, GeminiClient
from .models import ChatRequest, ChatResponse, Order, Product, SessionSummary
from .responder import ResponseGenerator
from .session_store import SessionStore
from .shop_store import ShopStore, load_seed_products

BASE_DIR = Path(__file__).resolve().parent
ENV_PATH = BASE_DIR.parent / ".env"

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("storefront").setLevel(log_level)
logger = logging.getLogger("storefront.api")


def create_app(
    settings: Optional[Settings] = None,
    shop: Optional[ShopStore] = None,
    sessions: Optional[SessionStore] = None,
    client: Optional[CompletionClient] = None,
) -> FastAPI:
    """Purpose: Build the FastAPI app with its store, session store, and chat agent.
    Inputs/Outputs: Optional overrides for every collaborator; returns a FastAPI app.
    Side Effects / State: Loads .env when settings are not given; seeds the store
        file with the bundled catalog on first run.
    Dependencies: GeminiClient is only built when GEMINI_API_KEY is configured,
        otherwise replies come from the deterministic fallback.
    Failure Modes: A malformed policy file raises at startup.
    If Removed: There is no server to run.
    Testing Notes: Pass tmp-path stores and a fake client to isolate tests.
    """
    # Load .env only when the caller did not inject settings.
    if settings is None:
        if ENV_PATH.exists():
            load_dotenv(ENV_PATH, override=True)
        settings = load_settings()
    if shop is None:
        shop = ShopStore(settings.store_data_path, seed_products=load_seed_products())
    if sessions is None:
        sessions = SessionStore(settings.sessions_path, max_sessions=settings.max_sessions)
    if client is None and settings.ai_enabled:
        client = GeminiClient(settings)

    policy = load_policy(settings.policy_path)
    responder = ResponseGenerator(settings, client=client, policy=policy)
    agent = SalesChatAgent(
        shop=shop,
        sessions=sessions,
        tracker=ConversationStateTracker(policy),
        responder=responder,
        currency=settings.currency,
    )
    logger.info("storefront ready ai_enabled=%s products=%s", responder.ai_enabled, len(shop.list_products()))

    app = FastAPI(title=f"{settings.store_name} Sales Chat")
    app.state.settings = settings
    app.state.shop = shop
    app.state.sessions = sessions
    app.state.agent = agent
    _register_routes(app)
    return app


def get_shop(request: Request) -> ShopStore:
    return request.app.state.shop


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_agent(request: Request) -> SalesChatAgent:
    return request.app.state.agent


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    def health(request: Request) -> dict:
        settings: Settings = request.app.state.settings
        return {"status": "ok", "ai_enabled": settings.ai_enabled}

    @app.post("/api/chat", response_model=ChatResponse, response_model_exclude_none=True)
    def chat(
        payload: ChatRequest,
        agent: SalesChatAgent = Depends(get_agent),
        sessions: SessionStore = Depends(get_sessions),
    ) -> ChatResponse:
        """Purpose: Handle one customer chat message.
        Inputs/Outputs: Input is ChatRequest; output is ChatResponse with the reply and
            any order created on this turn.
        Side Effects / State: Registers the session, then appends both turns (the
            assistant turn carries the step logs); may commit an order.
        Failure Modes: A blank message is rejected with 400 before the pipeline runs.
            Pipeline errors surface as 500 with the session already registered.
        If Removed: The storefront widget has no chat endpoint.
        """
        # Validate, register the session, run the pipeline, then persist both turns.
        message = (payload.message or "").strip()
        if not message:
            raise HTTPException(status_code=400, detail="Message is required")

        session_id = payload.session_id or uuid.uuid4().hex
        history = payload.conversation_history
        if not history and payload.session_id:
            history = sessions.get_messages(session_id)
        sessions.ensure_session(session_id)

        context = agent.handle_message(session_id, message, history)

        sessions.add_message(session_id, "customer", message)
        sessions.add_message(session_id, "assistant", context.reply_text, step_logs=context.step_logs)
        order = context.order
        return ChatResponse(
            message=context.reply_text,
            message_id=uuid.uuid4().hex,
            session_id=session_id,
            stage=context.state.stage.value,
            order=order,
            awaiting_approval=True if order else None,
            step_logs=context.step_logs,
        )

    @app.get("/api/products", response_model=List[Product])
    def list_products(q: Optional[str] = None, shop: ShopStore = Depends(get_shop)) -> List[Product]:
        if q:
            return shop.search_products(q, limit=50)
        return shop.list_products()

    @app.get("/api/products/{product_id}", response_model=Product)
    def get_product(product_id: str, shop: ShopStore = Depends(get_shop)) -> Product:
        product = shop.get_product(product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        return product

    @app.get("/api/orders", response_model=List[Order])
    def list_orders(shop: ShopStore = Depends(get_shop)) -> List[Order]:
        return shop.list_orders()

    @app.get("/api/orders/{order_id}", response_model=Order)
    def get_order(order_id: str, shop: ShopStore = Depends(get_shop)) -> Order:
        order = shop.get_order(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return order

    @app.get("/api/sessions", response_model=List[SessionSummary])
    def list_sessions(sessions: SessionStore = Depends(get_sessions)) -> List[SessionSummary]:
        return sessions.list_sessions()

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: str, sessions: SessionStore = Depends(get_sessions)) -> dict:
        if not sessions.has_session(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {
            "sessionId": session_id,
            "messages": [turn.to_wire() for turn in sessions.get_messages(session_id)],
            "negotiatedDiscounts": sessions.get_negotiated_discounts(session_id),
            "preferences": sessions.get_preferences(session_id),
        }


def main() -> None:
    import uvicorn

    uvicorn.run(
        "storefront.app:create_app",
        factory=True,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
