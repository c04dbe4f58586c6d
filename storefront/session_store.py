from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .models import ChatTurn, SessionSummary

logger = logging.getLogger("storefront.sessions")

DEFAULT_TITLE = "New Chat"
TITLE_LENGTH = 48


@dataclass
class _SessionRecord:
    summary: SessionSummary
    turns: List[ChatTurn] = field(default_factory=list)
    discounts: Dict[str, int] = field(default_factory=dict)
    preferences: Dict[str, str] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.model_dump(),
            "turns": [turn.model_dump() for turn in self.turns],
            "negotiatedDiscounts": self.discounts,
            "preferences": self.preferences,
        }

    @classmethod
    def from_json(cls, session_id: str, data: Dict[str, Any]) -> "_SessionRecord":
        summary = data.get("summary") or {"session_id": session_id, "title": DEFAULT_TITLE, "updated_at": 0.0}
        return cls(
            summary=SessionSummary.model_validate(summary),
            turns=[ChatTurn.model_validate(turn) for turn in data.get("turns", [])],
            discounts={str(k): int(v) for k, v in (data.get("negotiatedDiscounts") or {}).items()},
            preferences={str(k): str(v) for k, v in (data.get("preferences") or {}).items()},
        )


class SessionStore:
    """Chat sessions kept in memory and mirrored to one JSON file.

    Besides the transcript, each session remembers the discounts negotiated
    per product and any preferences the customer shared, so later turns (and
    the invoice tool) can reuse them.
    """

    def __init__(self, path: Optional[Path] = None, max_sessions: Optional[int] = None) -> None:
        self._path = path
        self._max_sessions = max_sessions
        self._records: Dict[str, _SessionRecord] = {}
        self._load()

    def _load(self) -> None:
        """Purpose: Load persisted sessions from disk into memory.
        Inputs/Outputs: Reads self._path; no return value.
        Side Effects / State: Replaces the in-memory records; prunes and rewrites
            the file when it holds more than max_sessions.
        Dependencies: Uses json.loads and _SessionRecord.from_json.
        Failure Modes: A corrupt file is logged and ignored; the store starts empty.
        If Removed: Chat history and negotiated discounts vanish on restart.
        Testing Notes: Write a file, build a new store on the same path, compare.
        """
        # Missing file means a fresh store.
        if not self._path or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            records = {
                session_id: _SessionRecord.from_json(session_id, data)
                for session_id, data in raw.get("sessions", {}).items()
            }
        except (json.JSONDecodeError, ValidationError, AttributeError, TypeError, ValueError):
            logger.exception("session file unreadable path=%s", self._path)
            return
        self._records = records
        if self._prune_sessions():
            self._persist()

    def _persist(self) -> None:
        """Purpose: Mirror every session record to the JSON file.
        Inputs/Outputs: Writes to self._path; no return value.
        Side Effects / State: Creates the parent directory when needed.
        Failure Modes: IO errors propagate to the caller.
        If Removed: Nothing survives a restart.
        """
        # In-memory stores (no path) skip the write.
        if not self._path:
            return
        payload = {"sessions": {session_id: record.to_json() for session_id, record in self._records.items()}}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def _record(self, session_id: str) -> _SessionRecord:
        record = self._records.get(session_id)
        if record is None:
            record = _SessionRecord(
                summary=SessionSummary(session_id=session_id, title=DEFAULT_TITLE, updated_at=time.time())
            )
            self._records[session_id] = record
        return record

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        step_logs: Optional[List[Dict[str, str]]] = None,
    ) -> ChatTurn:
        """Purpose: Append a turn to a session, creating the session if needed.
        Inputs/Outputs: role is "customer" or "assistant"; step_logs are the pipeline
            logs for an assistant turn. Returns the stored ChatTurn.
        Side Effects / State: The first customer line becomes the inbox title; the
            store is pruned and written to disk.
        Dependencies: Called by the chat route once per turn.
        Failure Modes: IO errors from the JSON write propagate.
        If Removed: Sessions never gain history and stored-session chats start blank.
        Testing Notes: Reload from the same path to check persistence.
        """
        # Append, retitle, prune, then mirror to disk.
        now = time.time()
        record = self._record(session_id)
        turn = ChatTurn(
            role=role,
            content=content,
            timestamp=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
            step_logs=step_logs,
        )
        record.turns.append(turn)
        record.summary.updated_at = now
        if role == "customer" and record.summary.title == DEFAULT_TITLE:
            first_line = next((line for line in content.strip().splitlines() if line.strip()), "")
            record.summary.title = first_line[:TITLE_LENGTH] or DEFAULT_TITLE
        self._prune_sessions()
        self._persist()
        return turn

    def list_sessions(self) -> List[SessionSummary]:
        """Inbox view, most recently active first."""
        return [record.summary for record in self._by_recency()]

    def get_messages(self, session_id: str) -> List[ChatTurn]:
        """Chronological turns for a session; unknown sessions give an empty list."""
        record = self._records.get(session_id)
        return list(record.turns) if record else []

    def has_session(self, session_id: str) -> bool:
        return session_id in self._records

    def ensure_session(self, session_id: str) -> None:
        """Purpose: Register a session before its first turn is processed.
        Inputs/Outputs: Input is session_id; no return value.
        Side Effects / State: Creates an empty "New Chat" record and writes the file
            when the session is new; existing sessions are left untouched.
        Failure Modes: IO errors from the JSON write propagate.
        If Removed: A turn whose pipeline fails leaves no trace in the inbox.
        """
        if session_id in self._records:
            return
        self._record(session_id)
        self._prune_sessions()
        self._persist()

    def get_negotiated_discounts(self, session_id: str) -> Dict[str, int]:
        record = self._records.get(session_id)
        return dict(record.discounts) if record else {}

    def set_negotiated_discount(self, session_id: str, product_id: str, discount_percent: int) -> None:
        self._record(session_id).discounts[product_id] = int(discount_percent)
        self._persist()

    def get_preferences(self, session_id: str) -> Dict[str, str]:
        record = self._records.get(session_id)
        return dict(record.preferences) if record else {}

    def set_preference(self, session_id: str, key: str, value: str) -> None:
        self._record(session_id).preferences[key] = value
        self._persist()

    def _by_recency(self) -> List[_SessionRecord]:
        return sorted(self._records.values(), key=lambda record: record.summary.updated_at, reverse=True)

    def _prune_sessions(self) -> bool:
        """Drop the least recently active sessions beyond max_sessions; True if any went."""
        limit = self._max_sessions
        if not limit or limit <= 0 or len(self._records) <= limit:
            return False
        for record in self._by_recency()[limit:]:
            del self._records[record.summary.session_id]
        return True
