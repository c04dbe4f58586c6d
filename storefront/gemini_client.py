from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import google.generativeai as genai

from .config import Settings

logger = logging.getLogger("storefront.gemini")

DEFAULT_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_ONLY_HIGH"},
]

# Executes a tool by name with model-supplied args; returns a JSON-able payload.
ToolExecutor = Callable[[str, Dict[str, Any]], Dict[str, Any]]


class CompletionClient:
    """Interface of the external text-completion service.

    history entries are {"role": "user" | "model", "text": str} in chronological
    order. Implementations raise on any failure; callers decide how to degrade.
    """

    def complete(
        self,
        system_instruction: str,
        history: List[Dict[str, str]],
        message: str,
        tools: Optional[list] = None,
        tool_executor: Optional[ToolExecutor] = None,
    ) -> str:
        raise NotImplementedError


class GeminiClient(CompletionClient):
    """Thin wrapper around the Gemini SDK with chat history and function calling."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK for chat completions.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK global API key.
        Failure Modes: Raises ValueError if the API key or model name is missing.
        If Removed: create_app has no model backend to offer.
        Testing Notes: Only constructed when GEMINI_API_KEY is set; tests use a fake client.
        """
        # Fail fast on missing credentials before touching the SDK.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._model_name = _normalize_model_name(settings.gemini_model)
        if not self._model_name:
            raise ValueError("Gemini model name is required")
        self._generation_config = {
            "temperature": settings.gemini_temperature,
            "max_output_tokens": settings.gemini_max_output_tokens,
        }
        self._request_options = {"timeout": settings.gemini_timeout_sec}
        self._max_tool_rounds = settings.max_tool_rounds

    def complete(
        self,
        system_instruction: str,
        history: List[Dict[str, str]],
        message: str,
        tools: Optional[list] = None,
        tool_executor: Optional[ToolExecutor] = None,
    ) -> str:
        """Purpose: Send one customer message with prior turns and return the reply text.
        Inputs/Outputs: Inputs are the system instruction, role-tagged history, the new
            message, optional tool declarations and an executor; output is text.
        Side Effects / State: Tool calls requested by the model run through tool_executor,
            which may create orders or update the session.
        Dependencies: genai.GenerativeModel.start_chat / ChatSession.send_message.
        Failure Modes: SDK, network, quota, and timeout errors propagate to the caller.
        If Removed: Every chat falls back to the deterministic replies.
        Testing Notes: Exercise with a fake CompletionClient; this class needs a live key.
        """
        # One model per call: the system instruction carries per-turn state.
        model = genai.GenerativeModel(
            self._model_name,
            system_instruction=system_instruction,
            tools=tools or None,
            generation_config=self._generation_config,
            safety_settings=DEFAULT_SAFETY_SETTINGS,
        )
        contents = [
            {"role": entry["role"], "parts": [entry["text"]]}
            for entry in history
            if entry.get("text")
        ]
        chat = model.start_chat(history=contents, enable_automatic_function_calling=False)
        response = chat.send_message(message, request_options=self._request_options)

        for _ in range(self._max_tool_rounds):
            calls = _function_calls(response)
            if not calls or tool_executor is None:
                break
            parts = []
            for name, args in calls:
                logger.info("tool_call name=%s", name)
                payload = tool_executor(name, args)
                parts.append(
                    genai.protos.Part(
                        function_response=genai.protos.FunctionResponse(name=name, response=payload)
                    )
                )
            response = chat.send_message(
                genai.protos.Content(role="user", parts=parts),
                request_options=self._request_options,
            )

        return _response_text(response)


def _function_calls(response: Any) -> List[tuple]:
    """Collect (name, args) pairs for function calls in the first candidate."""
    calls = []
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return calls
    for part in candidates[0].content.parts:
        call = getattr(part, "function_call", None)
        if call is not None and call.name:
            calls.append((call.name, {key: _plain(value) for key, value in call.args.items()}))
    return calls


def _plain(value: Any) -> Any:
    # proto map/list composites -> plain Python values
    if hasattr(value, "items"):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)) or type(value).__name__ == "RepeatedComposite":
        return [_plain(item) for item in value]
    return value


def _response_text(response: Any) -> str:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return ""
    texts = [part.text for part in candidates[0].content.parts if getattr(part, "text", "")]
    return "\n".join(texts).strip()


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip a "models/" prefix and whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
