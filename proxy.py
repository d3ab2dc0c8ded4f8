#!/usr/bin/env python3
"""
OpenAI / Anthropic → Gemini Proxy with API key rotation.

Accepts OpenAI chat completion and Anthropic messages requests, forwards them
to Gemini with the next key from a round-robin pool, and translates the
response (or SSE stream) back into the caller's format.
"""

import hmac
import logging
import os
import time
import uuid
from typing import AsyncIterator, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from errors import (
    AdminAuthError,
    InvalidRequest,
    NoKeysAvailable,
    ProxyError,
    ServiceUnavailable,
    UpstreamError,
)
from format_translator import (
    ANTHROPIC,
    GEMINI_MODEL_FLASH,
    GEMINI_MODEL_PRO,
    MODEL_SELECTION,
    OPENAI,
    anthropic_error,
    build_response,
    message_text,
    normalize_messages,
    openai_error,
    select_model,
)
from key_store import JsonKeyFile, KeyStore, mask_api_key
from stream_relay import StreamState, relay
from upstream import GenerationRequest, UpstreamClient, create_upstream_client

# Logging setup
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

PROXY_START_TIME = time.time()
PROXY_VERSION = "1.0.0"

# ─────────────────────────────────────────────────────────────────────────────
# Configuration from environment variables
# ─────────────────────────────────────────────────────────────────────────────

ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "admin123")
KEYS_FILE = os.environ.get("KEYS_FILE", os.path.join(".", "data", "api-keys.json"))

# "http" (raw REST + SSE) or "sdk" (google-genai)
UPSTREAM_MODE = os.environ.get("UPSTREAM_MODE", "http").lower()

DEFAULT_OPENAI_MODEL = "gpt-3.5-turbo"
DEFAULT_ANTHROPIC_MODEL = "claude-3-sonnet-20240229"

if ADMIN_PASSWORD == "admin123":
    logger.warning("ADMIN_PASSWORD not set - using the default admin password")

# ─────────────────────────────────────────────────────────────────────────────
# Prometheus Metrics
# ─────────────────────────────────────────────────────────────────────────────

request_counter = Counter(
    'proxy_requests_total',
    'Total number of requests',
    ['endpoint', 'status']
)

request_latency = Histogram(
    'proxy_request_duration_seconds',
    'Request latency in seconds',
    ['endpoint']
)

error_counter = Counter(
    'proxy_errors_total',
    'Total number of errors',
    ['endpoint', 'error_type']
)

key_dispense_counter = Counter(
    'proxy_key_dispenses_total',
    'Number of upstream keys handed out',
    ['format']
)


def record_request(endpoint: str, status: int, start_time: float) -> None:
    request_counter.labels(endpoint=endpoint, status=str(status)).inc()
    request_latency.labels(endpoint=endpoint).observe(time.time() - start_time)


# ─────────────────────────────────────────────────────────────────────────────
# Helper functions
# ─────────────────────────────────────────────────────────────────────────────

def get_or_generate_request_id(request: Request) -> str:
    """Get X-Request-Id from request headers or generate a new one."""
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    request.state.request_id = request_id
    return request_id


async def read_json_body(request: Request, api_format: Optional[str]) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise InvalidRequest(f"Invalid JSON: {e}", api_format) from e

    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object", api_format)
    return body


def optional_int(body: dict, name: str, api_format: str) -> Optional[int]:
    value = body.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidRequest(f"{name} must be a positive integer", api_format)
    return value


def optional_number(body: dict, name: str, api_format: str) -> Optional[float]:
    value = body.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequest(f"{name} must be a number", api_format)
    return value


def acquire_key(key_store: KeyStore, api_format: str) -> str:
    try:
        return key_store.next()
    except NoKeysAvailable as e:
        raise ServiceUnavailable("No API keys configured", api_format) from e


# ─────────────────────────────────────────────────────────────────────────────
# Dispatch: non-streaming and streaming
# ─────────────────────────────────────────────────────────────────────────────

async def stream_events(
    upstream: UpstreamClient,
    generation: GenerationRequest,
    api_key: str,
    state: StreamState,
    endpoint: str,
    request_id: str,
    start_time: float,
) -> AsyncIterator[str]:
    """
    Relay upstream increments to the client.

    On any error the stream simply ends: headers are already sent, so no
    terminal event is written and nothing is retried.
    """
    increments = upstream.generate_stream(generation, api_key)
    events = relay(increments, state)
    completed = False
    try:
        async for event in events:
            yield event
        completed = True
        record_request(endpoint, 200, start_time)
        logger.info(
            f"Stream finished | increments={state.increments} request_id={request_id}"
        )
    except UpstreamError as e:
        error_counter.labels(endpoint=endpoint, error_type='upstream_error').inc()
        record_request(endpoint, 500, start_time)
        logger.error(f"Upstream stream error: {e} | request_id={request_id}")
    except Exception:
        error_counter.labels(endpoint=endpoint, error_type='streaming_error').inc()
        record_request(endpoint, 500, start_time)
        logger.exception(f"Streaming error: request_id={request_id}")
    finally:
        if not completed:
            logger.info(
                f"Stream closed early | increments={state.increments} request_id={request_id}"
            )
        await events.aclose()
        aclose = getattr(increments, "aclose", None)
        if aclose is not None:
            await aclose()


async def dispatch(
    request: Request,
    *,
    api_format: str,
    client_model: str,
    generation: GenerationRequest,
    stream: bool,
    start_time: float,
) -> Response:
    request_id = get_or_generate_request_id(request)
    endpoint = request.url.path
    key_store: KeyStore = request.app.state.key_store
    upstream: UpstreamClient = request.app.state.upstream

    api_key = acquire_key(key_store, api_format)
    key_dispense_counter.labels(format=api_format).inc()

    logger.info(
        f"{endpoint} | model={client_model} -> {generation.model} stream={stream} "
        f"messages={len(generation.messages)} key={mask_api_key(api_key)} "
        f"mode={upstream.mode} request_id={request_id}"
    )

    if stream:
        state = StreamState(model=client_model, api_format=api_format)
        return StreamingResponse(
            stream_events(upstream, generation, api_key, state, endpoint, request_id, start_time),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                "X-Request-Id": request_id,
            },
        )

    try:
        text = await upstream.generate(generation, api_key)
    except UpstreamError as e:
        logger.error(f"Error proxying to Gemini: {e} | request_id={request_id}")
        e.api_format = api_format
        raise
    except Exception as e:
        logger.exception(f"Unexpected upstream failure: request_id={request_id}")
        error = UpstreamError(f"Unexpected error: {e}")
        error.api_format = api_format
        raise error from e

    record_request(endpoint, 200, start_time)
    return JSONResponse(
        content=build_response(text, client_model, api_format),
        headers={"X-Request-Id": request_id},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Client-facing endpoints
# ─────────────────────────────────────────────────────────────────────────────

router = APIRouter()


@router.post("/v1/chat/completions")
async def v1_chat_completions(request: Request):
    """OpenAI Chat Completions API endpoint."""
    start_time = time.time()
    request.state.api_format = OPENAI
    get_or_generate_request_id(request)

    body = await read_json_body(request, OPENAI)
    messages = normalize_messages(body.get("messages"), OPENAI)

    max_tokens = optional_int(body, "max_tokens", OPENAI)
    if max_tokens is None:
        max_tokens = optional_int(body, "max_completion_tokens", OPENAI)
    temperature = optional_number(body, "temperature", OPENAI)

    client_model = body.get("model") or DEFAULT_OPENAI_MODEL
    generation = GenerationRequest(
        model=select_model(client_model),
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature,
    )

    return await dispatch(
        request,
        api_format=OPENAI,
        client_model=client_model,
        generation=generation,
        stream=bool(body.get("stream", False)),
        start_time=start_time,
    )


async def handle_anthropic_messages(request: Request, bound_model: Optional[str] = None) -> Response:
    """
    Anthropic Messages API.

    bound_model pins the Gemini model (the /pro and /flash routes); otherwise it
    is picked from the client model name.
    """
    start_time = time.time()
    request.state.api_format = ANTHROPIC
    get_or_generate_request_id(request)

    body = await read_json_body(request, ANTHROPIC)
    messages = normalize_messages(body.get("messages"), ANTHROPIC)

    if not body.get("max_tokens"):
        raise InvalidRequest("max_tokens is required", ANTHROPIC)
    max_tokens = optional_int(body, "max_tokens", ANTHROPIC)
    temperature = optional_number(body, "temperature", ANTHROPIC)

    client_model = body.get("model") or DEFAULT_ANTHROPIC_MODEL
    generation = GenerationRequest(
        model=bound_model or select_model(client_model),
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature,
        system=message_text(body.get("system")) or None,
    )

    return await dispatch(
        request,
        api_format=ANTHROPIC,
        client_model=client_model,
        generation=generation,
        stream=bool(body.get("stream", False)),
        start_time=start_time,
    )


@router.post("/v1/messages")
async def v1_messages(request: Request):
    return await handle_anthropic_messages(request)


@router.post("/pro/v1/messages")
async def pro_v1_messages(request: Request):
    return await handle_anthropic_messages(request, bound_model=GEMINI_MODEL_PRO)


@router.post("/flash/v1/messages")
async def flash_v1_messages(request: Request):
    return await handle_anthropic_messages(request, bound_model=GEMINI_MODEL_FLASH)


# ─────────────────────────────────────────────────────────────────────────────
# Admin endpoints
# ─────────────────────────────────────────────────────────────────────────────

async def read_admin_body(request: Request) -> dict:
    """Parse the body and check the shared admin password."""
    get_or_generate_request_id(request)
    body = await read_json_body(request, None)

    password = body.get("password")
    expected = request.app.state.admin_password
    # Constant-time comparison to prevent timing attacks
    if not isinstance(password, str) or not hmac.compare_digest(password.encode(), expected.encode()):
        logger.warning(
            f"Admin authentication failed | path={request.url.path} "
            f"client_ip={request.client.host if request.client else 'unknown'}"
        )
        raise AdminAuthError("Invalid password")
    return body


@router.post("/admin/keys")
async def admin_list_keys(request: Request):
    await read_admin_body(request)
    return JSONResponse(
        content=request.app.state.key_store.list(),
        headers={"X-Request-Id": request.state.request_id},
    )


@router.post("/admin/keys/add")
async def admin_add_key(request: Request):
    body = await read_admin_body(request)
    total = request.app.state.key_store.add(body.get("apiKey"))
    return JSONResponse(
        content={"message": "API key added successfully", "total": total},
        headers={"X-Request-Id": request.state.request_id},
    )


@router.post("/admin/keys/delete")
async def admin_delete_key(request: Request):
    body = await read_admin_body(request)
    total = request.app.state.key_store.remove(body.get("keyIndex"))
    return JSONResponse(
        content={"message": "API key deleted successfully", "total": total},
        headers={"X-Request-Id": request.state.request_id},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Service endpoints
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/health")
async def health(request: Request):
    """Health check with a config summary (no secrets)."""
    key_store: KeyStore = request.app.state.key_store
    return {
        "status": "ok",
        "uptime_seconds": int(time.time() - PROXY_START_TIME),
        "version": PROXY_VERSION,
        "config_summary": {
            "upstream_mode": request.app.state.upstream.mode,
            "model_selection": MODEL_SELECTION,
            "models": {"pro": GEMINI_MODEL_PRO, "flash": GEMINI_MODEL_FLASH},
            "api_keys_count": key_store.total,
        },
    }


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/")
async def root(request: Request):
    """Root endpoint with API info."""
    request_id = get_or_generate_request_id(request)

    return JSONResponse(
        content={
            "name": "OpenAI/Anthropic to Gemini Proxy",
            "version": PROXY_VERSION,
            "endpoints": {
                "/v1/chat/completions": "OpenAI Chat Completions API (POST)",
                "/v1/messages": "Anthropic Messages API (POST)",
                "/pro/v1/messages": "Anthropic Messages API, pro model (POST)",
                "/flash/v1/messages": "Anthropic Messages API, flash model (POST)",
                "/admin/keys": "List keys (POST, requires password)",
                "/admin/keys/add": "Add key (POST, requires password)",
                "/admin/keys/delete": "Delete key (POST, requires password)",
                "/health": "Health check (GET)",
                "/metrics": "Prometheus metrics (GET)",
            },
        },
        headers={"X-Request-Id": request_id},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Error handler - format-appropriate envelopes
# ─────────────────────────────────────────────────────────────────────────────

async def proxy_error_handler(request: Request, exc: ProxyError):
    request_id = get_or_generate_request_id(request)
    api_format = exc.api_format or getattr(request.state, "api_format", None)

    if api_format == ANTHROPIC:
        content = anthropic_error(exc.message, exc.error_type)
    elif api_format == OPENAI:
        content = openai_error(exc.message, exc.error_type)
    else:
        content = {"error": exc.message}

    endpoint = request.url.path
    error_counter.labels(endpoint=endpoint, error_type=type(exc).__name__).inc()
    request_counter.labels(endpoint=endpoint, status=str(exc.status_code)).inc()
    if exc.status_code >= 500:
        logger.warning(f"{endpoint} -> {exc.status_code}: {exc.message} | request_id={request_id}")

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers={"X-Request-Id": request_id},
    )


# ─────────────────────────────────────────────────────────────────────────────
# App factory
# ─────────────────────────────────────────────────────────────────────────────

def create_app(
    key_store: Optional[KeyStore] = None,
    upstream: Optional[UpstreamClient] = None,
    admin_password: str = ADMIN_PASSWORD,
) -> FastAPI:
    if key_store is None:
        key_store = KeyStore(JsonKeyFile(KEYS_FILE))
        key_store.load()
    if upstream is None:
        upstream = create_upstream_client(UPSTREAM_MODE)

    app = FastAPI(title="OpenAI/Anthropic to Gemini Proxy", version=PROXY_VERSION)
    app.state.key_store = key_store
    app.state.upstream = upstream
    app.state.admin_password = admin_password
    app.add_exception_handler(ProxyError, proxy_error_handler)
    app.include_router(router)

    logger.info(
        f"Proxy ready: {key_store.total} key(s), upstream_mode={upstream.mode}, "
        f"model_selection={MODEL_SELECTION}"
    )
    return app


app = create_app()


# ─────────────────────────────────────────────────────────────────────────────
# Main entry point
# ─────────────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "3000"))
    host = os.environ.get("HOST", "0.0.0.0")

    uvicorn.run(app, host=host, port=port)
