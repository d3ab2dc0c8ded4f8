"""
Streaming relay: turns upstream text increments into client SSE events.

Two upstream shapes feed this module:
- raw Gemini SSE (`streamGenerateContent?alt=sse`), decoded here by
  iter_sse_data_lines + iter_text_increments; payloads are cumulative
  snapshots by default and are converted to deltas
- SDK fragments, which are already deltas and go straight to relay()

Either way relay() frames each non-empty increment for the caller's format
and writes the terminal events only when the source finishes cleanly.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator

from format_translator import ANTHROPIC, extract_text, new_id, unix_now

logger = logging.getLogger(__name__)

SSE_DONE = "data: [DONE]\n\n"


# ─────────────────────────────────────────────────────────────────────────────
# SSE framing
# ─────────────────────────────────────────────────────────────────────────────

def sse_data(payload: Any) -> str:
    """A data-only SSE frame."""
    return f"data: {json.dumps(payload)}\n\n"


def sse_event(event: str, payload: Any) -> str:
    """A named SSE frame (Anthropic clients dispatch on the event name)."""
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


# ─────────────────────────────────────────────────────────────────────────────
# Mode A: raw SSE decoding
# ─────────────────────────────────────────────────────────────────────────────

async def iter_sse_data_lines(chunks: AsyncIterable[str]) -> AsyncIterator[str]:
    """
    Split a chunked text stream into lines and yield the payload of data lines.

    Lines may span chunk boundaries; comments and blank separators are skipped.
    """
    buffer = ""

    async for chunk in chunks:
        buffer += chunk

        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            line = line.rstrip("\r")

            if not line or line.startswith(":"):
                continue

            if line.startswith("data: "):
                yield line[6:]
            elif line.startswith("data:"):
                yield line[5:]

    # Trailing line without a newline
    line = buffer.rstrip("\r")
    if line.startswith("data: "):
        yield line[6:]
    elif line.startswith("data:"):
        yield line[5:]


class CumulativeTextDecoder:
    """Turns cumulative text snapshots into increments."""

    def __init__(self):
        self.accumulated_text = ""

    def feed(self, snapshot: str) -> str:
        increment = snapshot[len(self.accumulated_text):]
        self.accumulated_text = snapshot
        return increment


async def iter_text_increments(
    data_lines: AsyncIterable[str], cumulative: bool = True
) -> AsyncIterator[str]:
    """
    Decode Gemini SSE payloads into text increments.

    With cumulative=True each payload is a snapshot of all text so far and only
    the unseen suffix is yielded; otherwise the payload text is yielded as is.
    A malformed line is logged and skipped; the rest of the stream still flows.
    """
    decoder = CumulativeTextDecoder()

    async for data_line in data_lines:
        if data_line.strip() == "[DONE]":
            break

        try:
            payload = json.loads(data_line)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse SSE data: {data_line[:100]}... Error: {e}")
            continue

        snapshot = extract_text(payload)
        if not snapshot:
            continue

        increment = decoder.feed(snapshot) if cumulative else snapshot
        if increment:
            yield increment


# ─────────────────────────────────────────────────────────────────────────────
# Client framing
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class StreamState:
    """Per-call values echoed in every chunk of one stream."""

    model: str
    api_format: str
    chat_id: str = field(default_factory=lambda: new_id("chatcmpl-"))
    message_id: str = field(default_factory=lambda: new_id("msg_"))
    created: int = field(default_factory=unix_now)
    increments: int = 0


def openai_chunk(state: StreamState, content: Any = None, finish_reason: Any = None) -> dict:
    delta = {} if content is None else {"content": content}
    return {
        "id": state.chat_id,
        "object": "chat.completion.chunk",
        "created": state.created,
        "model": state.model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }


async def relay_openai(increments: AsyncIterable[str], state: StreamState) -> AsyncIterator[str]:
    async for text in increments:
        if not text:
            continue
        state.increments += 1
        yield sse_data(openai_chunk(state, text))

    yield sse_data(openai_chunk(state, finish_reason="stop"))
    yield SSE_DONE


async def relay_anthropic(increments: AsyncIterable[str], state: StreamState) -> AsyncIterator[str]:
    yield sse_event("message_start", {
        "type": "message_start",
        "message": {
            "id": state.message_id,
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": state.model,
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {"input_tokens": 0, "output_tokens": 0},
        },
    })
    yield sse_event("content_block_start", {
        "type": "content_block_start",
        "index": 0,
        "content_block": {"type": "text", "text": ""},
    })

    async for text in increments:
        if not text:
            continue
        state.increments += 1
        yield sse_event("content_block_delta", {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        })

    yield sse_event("content_block_stop", {"type": "content_block_stop", "index": 0})
    yield sse_event("message_delta", {
        "type": "message_delta",
        "delta": {"stop_reason": "end_turn", "stop_sequence": None},
        "usage": {"output_tokens": 0},
    })
    yield sse_event("message_stop", {"type": "message_stop"})
    yield SSE_DONE


def relay(increments: AsyncIterable[str], state: StreamState) -> AsyncIterator[str]:
    """
    Frame increments for state.api_format.

    An exception from `increments` propagates out before any terminal event.
    """
    if state.api_format == ANTHROPIC:
        return relay_anthropic(increments, state)
    return relay_openai(increments, state)
