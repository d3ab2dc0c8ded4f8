#!/usr/bin/env python3
"""Integration checks for a running proxy with real Gemini keys configured.

This script is intentionally framework-free (no pytest) so pytest never
collects it. It runs sequential checks and exits non-zero on the first failure.

Env vars:
- PROXY_BASE_URL   (default: http://127.0.0.1:3000)
- ADMIN_PASSWORD   (default: admin123)
- TEST_MODEL       (default: gemini-flash)
- STREAM_RUNS      (default: 5)
- STREAM_TIMEOUT_S (default: 90)
- READ_IDLE_TIMEOUT_S (default: 30)
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx


PROXY_BASE_URL = os.environ.get("PROXY_BASE_URL", "http://127.0.0.1:3000").rstrip("/")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "admin123")
TEST_MODEL = os.environ.get("TEST_MODEL", "gemini-flash")
STREAM_RUNS = int(os.environ.get("STREAM_RUNS", "5"))
STREAM_TIMEOUT_S = float(os.environ.get("STREAM_TIMEOUT_S", "90"))
READ_IDLE_TIMEOUT_S = float(os.environ.get("READ_IDLE_TIMEOUT_S", "30"))


def _url(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return f"{PROXY_BASE_URL}{path}"


async def wait_for_health(timeout_s: float = 20.0) -> None:
    deadline = time.time() + timeout_s
    last_err: Optional[str] = None

    async with httpx.AsyncClient(timeout=5.0) as client:
        while time.time() < deadline:
            try:
                r = await client.get(_url("/health"))
                if r.status_code == 200 and r.json().get("status") == "ok":
                    return
                last_err = f"health status_code={r.status_code} body={r.text[:200]!r}"
            except httpx.HTTPError as e:
                last_err = repr(e)
            await asyncio.sleep(0.3)

    raise AssertionError(f"Proxy not healthy at {PROXY_BASE_URL}. Last error: {last_err}")


@dataclass
class SSEEvent:
    event: Optional[str]
    data: Any


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[SSEEvent]:
    """Parse text/event-stream frames (optional event line + data lines)."""
    current_event: Optional[str] = None
    current_data_lines: list[str] = []

    async for line in response.aiter_lines():
        # SSE frames are separated by an empty line.
        if line == "":
            if current_data_lines:
                data_str = "\n".join(current_data_lines)
                try:
                    data_obj: Any = json.loads(data_str)
                except json.JSONDecodeError:
                    data_obj = data_str
                yield SSEEvent(event=current_event, data=data_obj)
            current_event = None
            current_data_lines = []
            continue

        if line.startswith("event:"):
            current_event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            current_data_lines.append(line[len("data:"):].lstrip())


async def post_json(path: str, payload: dict[str, Any], timeout_s: float = 60.0) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        return await client.post(_url(path), json=payload)


async def run_stream_request(path: str, payload: dict[str, Any]) -> tuple[list[SSEEvent], dict[str, str]]:
    """Run a streaming request and return (events, response_headers)."""
    timeout = httpx.Timeout(STREAM_TIMEOUT_S, connect=10.0, read=READ_IDLE_TIMEOUT_S, write=10.0, pool=10.0)

    async with httpx.AsyncClient(timeout=timeout) as client:
        async with client.stream("POST", _url(path), json=dict(payload, stream=True)) as resp:
            if resp.status_code != 200:
                body = await resp.aread()
                raise AssertionError(f"stream request failed: status={resp.status_code} body={body[:400]!r}")

            events = [ev async for ev in iter_sse_events(resp)]
            return events, dict(resp.headers)


def openai_payload(prompt: str) -> dict[str, Any]:
    return {"model": TEST_MODEL, "max_tokens": 256, "messages": [{"role": "user", "content": prompt}]}


def anthropic_payload(prompt: str, max_tokens: int = 256) -> dict[str, Any]:
    return {"model": TEST_MODEL, "max_tokens": max_tokens, "messages": [{"role": "user", "content": prompt}]}


def anthropic_text(events: list[SSEEvent]) -> str:
    return "".join(
        e.data["delta"]["text"]
        for e in events
        if isinstance(e.data, dict) and e.data.get("type") == "content_block_delta"
    )


def assert_no_repeated_prefix(text: str) -> None:
    """Re-sent cumulative snapshots show up as the opening words repeated."""
    head = text[:20]
    if len(head) == 20 and text.count(head) > 1:
        raise AssertionError(f"stream text repeats its opening: {text[:200]!r}")


async def step(name: str, fn) -> None:
    print(f"[TEST] {name} ...", flush=True)
    await fn()
    print(f"[OK]   {name}", flush=True)


async def main() -> int:
    print(f"proxy={PROXY_BASE_URL} model={TEST_MODEL} stream_runs={STREAM_RUNS}", flush=True)

    await step("1/8 health is ok", lambda: wait_for_health())

    async def _admin_list():
        r = await post_json("/admin/keys", {"password": ADMIN_PASSWORD}, timeout_s=10.0)
        assert r.status_code == 200, r.text
        data = r.json()
        assert data["total"] > 0, "no upstream keys configured"
        assert all(k["key"].endswith("...") for k in data["keys"]), data

    await step("2/8 admin key list is redacted", _admin_list)

    async def _openai_non_streaming():
        r = await post_json("/v1/chat/completions", openai_payload("Say: nonstream-ok"))
        assert r.status_code == 200, r.text[:400]
        choice = r.json()["choices"][0]
        assert choice["message"]["content"], choice
        assert choice["finish_reason"] == "stop", choice

    await step("3/8 non-streaming /v1/chat/completions works", _openai_non_streaming)

    async def _anthropic_non_streaming():
        r = await post_json("/v1/messages", anthropic_payload("Say: nonstream-ok"))
        assert r.status_code == 200, r.text[:400]
        data = r.json()
        assert data.get("type") == "message", data
        assert data["content"][0]["text"], data

    await step("4/8 non-streaming /v1/messages works", _anthropic_non_streaming)

    async def _missing_max_tokens():
        r = await post_json("/v1/messages", {"messages": [{"role": "user", "content": "hi"}]})
        assert r.status_code == 400, r.text
        assert r.json()["error"]["type"] == "invalid_request_error", r.text

    await step("5/8 missing max_tokens is rejected", _missing_max_tokens)

    async def _openai_streaming():
        events, hdrs = await run_stream_request("/v1/chat/completions", openai_payload("Count from 1 to 30."))
        assert events and events[-1].data == "[DONE]", events[-3:]
        chunks = [e.data for e in events[:-1]]
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop", chunks[-1]
        text = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
        assert text, "no content streamed"
        assert_no_repeated_prefix(text)
        assert hdrs.get("x-request-id"), hdrs

    await step("6/8 OpenAI stream ends with stop + [DONE]", _openai_streaming)

    async def _anthropic_streaming():
        events, _ = await run_stream_request("/v1/messages", anthropic_payload("Write 40 numbered items.", 1200))
        names = [e.event for e in events if e.event]
        assert names[:2] == ["message_start", "content_block_start"], names[:4]
        assert names[-1] == "message_stop", names[-3:]
        assert events[-1].data == "[DONE]", events[-1]
        text = anthropic_text(events)
        assert text, "no text_delta observed"
        assert_no_repeated_prefix(text)

    await step("7/8 Anthropic stream has framing + no repeated text", _anthropic_streaming)

    async def _repeat_runs():
        for i in range(1, STREAM_RUNS + 1):
            events, _ = await run_stream_request("/flash/v1/messages", anthropic_payload(f"run-{i}", 64))
            assert any(e.event == "message_stop" for e in events), f"run {i} did not finish"

    await step(f"8/8 {STREAM_RUNS} streams through /flash finish", _repeat_runs)

    print("ALL TESTS PASSED", flush=True)
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        raise SystemExit(130)
