"""
Mapping between the client wire formats (OpenAI chat completions, Anthropic
messages) and the Gemini generateContent schema.

Everything here is pure: no I/O, no key handling.
"""

import itertools
import logging
import os
import time
from typing import Any, NamedTuple, Optional

from errors import InvalidRequest

logger = logging.getLogger(__name__)

OPENAI = "openai"
ANTHROPIC = "anthropic"

ACCEPTED_ROLES = {
    OPENAI: frozenset({"system", "user", "assistant"}),
    ANTHROPIC: frozenset({"user", "assistant"}),
}

GEMINI_MODEL_PRO = os.environ.get("GEMINI_MODEL_PRO", "gemini-2.5-pro")
GEMINI_MODEL_FLASH = os.environ.get("GEMINI_MODEL_FLASH", "gemini-2.5-flash")
GEMINI_MODEL_DEFAULT = os.environ.get("GEMINI_MODEL_DEFAULT", "gemini-2.0-flash")

MODEL_SELECTION = os.environ.get("MODEL_SELECTION", "heuristic").lower()
if MODEL_SELECTION not in ("heuristic", "fixed"):
    logger.warning(f"MODEL_SELECTION: unknown policy '{MODEL_SELECTION}', using 'heuristic'")
    MODEL_SELECTION = "heuristic"


class ChatMessage(NamedTuple):
    role: str
    content: str


# ─────────────────────────────────────────────────────────────────────────────
# Identifiers
# ─────────────────────────────────────────────────────────────────────────────

_id_counter = itertools.count()


def unix_now() -> int:
    return int(time.time())


def new_id(prefix: str) -> str:
    """Wall-clock id, unique within this process (not globally)."""
    return f"{prefix}{int(time.time() * 1000)}{next(_id_counter) % 10000:04d}"


# ─────────────────────────────────────────────────────────────────────────────
# Client request → internal messages
# ─────────────────────────────────────────────────────────────────────────────

def message_text(content: Any) -> str:
    """Text of a message: plain string, or an Anthropic list of text blocks joined."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    texts = []
    for block in content:
        if isinstance(block, str):
            texts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text", "")
            if isinstance(text, str):
                texts.append(text)

    return "".join(texts)


def normalize_messages(messages: Any, api_format: str) -> list[ChatMessage]:
    """
    Validate a client message list and convert it to ChatMessage tuples.

    Roles the client format does not define are dropped. Order is preserved.
    """
    if not isinstance(messages, list):
        raise InvalidRequest("Messages array is required", api_format)

    accepted = ACCEPTED_ROLES[api_format]
    result = []
    for i, msg in enumerate(messages):
        if not isinstance(msg, dict):
            raise InvalidRequest(f"messages[{i}] must be an object", api_format)
        role = msg.get("role")
        if role not in accepted:
            logger.warning(f"Ignoring message {i} with unsupported role {role!r} for {api_format} format")
            continue
        result.append(ChatMessage(role, message_text(msg.get("content"))))

    return result


def select_model(requested_model: Optional[str]) -> str:
    """Pick the Gemini model for a client model name."""
    if MODEL_SELECTION == "fixed":
        return GEMINI_MODEL_DEFAULT
    if isinstance(requested_model, str) and "flash" in requested_model.lower():
        return GEMINI_MODEL_FLASH
    return GEMINI_MODEL_PRO


# ─────────────────────────────────────────────────────────────────────────────
# Internal messages → Gemini request
# ─────────────────────────────────────────────────────────────────────────────

def generation_config(max_tokens: Optional[int] = None, temperature: Optional[float] = None) -> dict:
    """Only parameters the client actually sent are included."""
    config: dict[str, Any] = {}
    if max_tokens is not None:
        config["maxOutputTokens"] = max_tokens
    if temperature is not None:
        config["temperature"] = temperature
    return config


def to_gemini_request(
    messages: list[ChatMessage],
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
    system: Optional[str] = None,
) -> dict:
    """Structured-turn request body for :generateContent."""
    request: dict[str, Any] = {
        "contents": [
            {
                "role": "model" if msg.role == "assistant" else "user",
                "parts": [{"text": msg.content}],
            }
            for msg in messages
        ]
    }

    if system:
        request["systemInstruction"] = {"parts": [{"text": system}]}

    config = generation_config(max_tokens, temperature)
    if config:
        request["generationConfig"] = config

    return request


def to_transcript(messages: list[ChatMessage]) -> str:
    """Flatten the conversation into one "role: content" prompt."""
    return "\n".join(f"{msg.role}: {msg.content}" for msg in messages)


# ─────────────────────────────────────────────────────────────────────────────
# Gemini response → client response
# ─────────────────────────────────────────────────────────────────────────────

_ABSENT = object()


def _get_path(doc: Any, *path: Any) -> Any:
    """Walk dict keys / list indexes; return _ABSENT at the first missing level."""
    current = doc
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or not -len(current) <= step < len(current):
                return _ABSENT
            current = current[step]
        else:
            if not isinstance(current, dict) or step not in current:
                return _ABSENT
            current = current[step]
    return current


def extract_text(raw: Any) -> str:
    """Text of the first part of the first candidate, or "" if there is none."""
    text = _get_path(raw, "candidates", 0, "content", "parts", 0, "text")
    if text is _ABSENT or not isinstance(text, str):
        return ""
    return text


def to_openai_response(text: str, model: str) -> dict:
    # usage is not tracked; counts are placeholders
    return {
        "id": new_id("chatcmpl-"),
        "object": "chat.completion",
        "created": unix_now(),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def to_anthropic_response(text: str, model: str) -> dict:
    return {
        "id": new_id("msg_"),
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": text}],
        "model": model,
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": 0, "output_tokens": 0},
    }


def from_gemini_response(raw: Any, model: str, api_format: str) -> dict:
    """Wrap a raw Gemini response in the client's envelope."""
    return build_response(extract_text(raw), model, api_format)


def build_response(text: str, model: str, api_format: str) -> dict:
    if api_format == ANTHROPIC:
        return to_anthropic_response(text, model)
    return to_openai_response(text, model)


# ─────────────────────────────────────────────────────────────────────────────
# Error envelopes
# ─────────────────────────────────────────────────────────────────────────────

def openai_error(message: str, error_type: str = "api_error") -> dict:
    return {
        "error": {
            "message": message,
            "type": error_type,
            "param": None,
            "code": None,
        }
    }


def anthropic_error(message: str, error_type: str = "api_error") -> dict:
    return {
        "type": "error",
        "error": {
            "type": error_type,
            "message": message,
        },
    }
