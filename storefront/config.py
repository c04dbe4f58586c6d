from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for the store, the chat model, and runtime limits."""
    gemini_api_key: str
    gemini_model: str
    gemini_temperature: float
    gemini_max_output_tokens: int
    gemini_timeout_sec: float
    store_name: str
    currency: str
    default_discount_percent: int
    history_window: int
    catalog_preview_limit: int
    max_tool_rounds: int
    fallback_on_ai_error: bool
    store_data_path: Path
    sessions_path: Path
    max_sessions: int
    prompts_dir: Path
    policy_path: Optional[Path]

    @property
    def ai_enabled(self) -> bool:
        return bool(self.gemini_api_key)


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Expects .env to be loaded already (create_app does it).
    Failure Modes: Non-numeric values for numeric keys raise ValueError.
    If Removed: Nothing can be configured; every collaborator needs its values.
    Testing Notes: Verify defaults and overrides via monkeypatched environment.
    """
    # Data files default to the package's data directory.
    data_dir = (BASE_DIR / "data").resolve()
    store_path = os.getenv("STORE_DATA_PATH")
    sessions_path = os.getenv("SESSIONS_PATH")
    policy_path = os.getenv("CONVERSATION_POLICY_PATH")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", "").strip(),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
        gemini_temperature=float(os.getenv("GEMINI_TEMPERATURE", "0.7")),
        gemini_max_output_tokens=int(os.getenv("GEMINI_MAX_OUTPUT_TOKENS", "1024")),
        gemini_timeout_sec=float(os.getenv("GEMINI_TIMEOUT_SEC", "30")),
        store_name=os.getenv("STORE_NAME", "AI Store"),
        currency=os.getenv("STORE_CURRENCY", "BDT"),
        default_discount_percent=int(os.getenv("DEFAULT_DISCOUNT_PERCENT", "10")),
        history_window=int(os.getenv("HISTORY_WINDOW", "10")),
        catalog_preview_limit=int(os.getenv("CATALOG_PREVIEW_LIMIT", "3")),
        max_tool_rounds=int(os.getenv("MAX_TOOL_ROUNDS", "4")),
        fallback_on_ai_error=_env_flag("AI_FALLBACK_ON_ERROR"),
        store_data_path=Path(store_path) if store_path else data_dir / "store.json",
        sessions_path=Path(sessions_path) if sessions_path else data_dir / "sessions.json",
        max_sessions=int(os.getenv("MAX_SESSIONS", "200")),
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        policy_path=Path(policy_path) if policy_path else None,
    )
