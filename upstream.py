"""
Gemini upstream clients.

Two interchangeable integrations, selected with UPSTREAM_MODE:
- "http": raw REST calls with httpx; streaming reads the SSE body and decodes it
  in stream_relay
- "sdk":  the google-genai SDK; the conversation is flattened into a single
  transcript and streamed fragments are already deltas
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from errors import UpstreamError
from format_translator import ChatMessage, extract_text, to_gemini_request, to_transcript
from stream_relay import iter_sse_data_lines, iter_text_increments

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = os.environ.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta").rstrip("/")

# Cumulative snapshots (default) vs. plain deltas in the raw SSE stream
UPSTREAM_CUMULATIVE_STREAM = os.environ.get("UPSTREAM_CUMULATIVE_STREAM", "true").lower() == "true"

# Unset means no timeout
_timeout_raw = os.environ.get("UPSTREAM_TIMEOUT_S", "")
UPSTREAM_TIMEOUT_S: Optional[float] = None
if _timeout_raw:
    try:
        UPSTREAM_TIMEOUT_S = float(_timeout_raw)
        if UPSTREAM_TIMEOUT_S <= 0:
            logger.warning(f"UPSTREAM_TIMEOUT_S={_timeout_raw} is not positive, disabling timeout")
            UPSTREAM_TIMEOUT_S = None
    except ValueError:
        logger.warning(f"UPSTREAM_TIMEOUT_S: invalid value '{_timeout_raw}', disabling timeout")


@dataclass
class GenerationRequest:
    model: str
    messages: list[ChatMessage]
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    system: Optional[str] = None


class UpstreamClient(ABC):
    """Generate text with one API key, whole or as a lazy sequence of increments."""

    mode = ""

    @abstractmethod
    async def generate(self, request: GenerationRequest, api_key: str) -> str:
        ...

    @abstractmethod
    def generate_stream(self, request: GenerationRequest, api_key: str) -> AsyncIterator[str]:
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Raw HTTP + SSE
# ─────────────────────────────────────────────────────────────────────────────

class GeminiHttpClient(UpstreamClient):
    mode = "http"

    def __init__(
        self,
        base_url: str = GEMINI_BASE_URL,
        timeout: Optional[float] = UPSTREAM_TIMEOUT_S,
        cumulative: bool = UPSTREAM_CUMULATIVE_STREAM,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cumulative = cumulative
        # Tests swap in httpx.MockTransport
        self.transport = transport

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": api_key,
        }

    def _url(self, model: str, method: str) -> str:
        return f"{self.base_url}/models/{model}:{method}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    @staticmethod
    def _body(request: GenerationRequest) -> dict:
        return to_gemini_request(
            request.messages,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            system=request.system,
        )

    async def generate(self, request: GenerationRequest, api_key: str) -> str:
        try:
            async with self._client() as client:
                resp = await client.post(
                    self._url(request.model, "generateContent"),
                    headers=self._headers(api_key),
                    json=self._body(request),
                )
        except httpx.RequestError as e:
            raise UpstreamError(f"Request failed: {e}") from e

        if not resp.is_success:
            raise UpstreamError(resp.text, resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(f"Malformed upstream body: {e}", resp.status_code) from e

        return extract_text(data)

    async def generate_stream(self, request: GenerationRequest, api_key: str) -> AsyncIterator[str]:
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    self._url(request.model, "streamGenerateContent"),
                    params={"alt": "sse"},
                    headers=self._headers(api_key),
                    json=self._body(request),
                ) as response:
                    if not response.is_success:
                        error_body = await response.aread()
                        raise UpstreamError(error_body.decode("utf-8", errors="replace"), response.status_code)

                    data_lines = iter_sse_data_lines(response.aiter_text())
                    async for increment in iter_text_increments(data_lines, cumulative=self.cumulative):
                        yield increment
        except httpx.RequestError as e:
            raise UpstreamError(f"Stream failed: {e}") from e


# ─────────────────────────────────────────────────────────────────────────────
# google-genai SDK
# ─────────────────────────────────────────────────────────────────────────────

class GeminiSdkClient(UpstreamClient):
    mode = "sdk"

    def __init__(self, client_factory: Callable[..., Any] = genai.Client):
        self.client_factory = client_factory

    @staticmethod
    def _config(request: GenerationRequest) -> Optional[genai_types.GenerateContentConfig]:
        kwargs: dict[str, Any] = {}
        if request.max_tokens is not None:
            kwargs["max_output_tokens"] = request.max_tokens
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.system:
            kwargs["system_instruction"] = request.system
        return genai_types.GenerateContentConfig(**kwargs) if kwargs else None

    async def generate(self, request: GenerationRequest, api_key: str) -> str:
        client = self.client_factory(api_key=api_key)
        try:
            response = await client.aio.models.generate_content(
                model=request.model,
                contents=to_transcript(request.messages),
                config=self._config(request),
            )
        except genai_errors.APIError as e:
            raise UpstreamError(str(e), getattr(e, "code", None)) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Request failed: {e}") from e
        finally:
            await client.aio.aclose()

        return response.text or ""

    async def generate_stream(self, request: GenerationRequest, api_key: str) -> AsyncIterator[str]:
        client = self.client_factory(api_key=api_key)
        try:
            stream = await client.aio.models.generate_content_stream(
                model=request.model,
                contents=to_transcript(request.messages),
                config=self._config(request),
            )
            async for chunk in stream:
                if chunk.text:
                    yield chunk.text
        except genai_errors.APIError as e:
            raise UpstreamError(str(e), getattr(e, "code", None)) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Stream failed: {e}") from e
        finally:
            # also runs when the consumer closes the generator early
            await client.aio.aclose()


def create_upstream_client(mode: str) -> UpstreamClient:
    mode = (mode or "http").lower()
    if mode == "sdk":
        return GeminiSdkClient()
    if mode != "http":
        logger.warning(f"UPSTREAM_MODE: unknown mode '{mode}', using 'http'")
    return GeminiHttpClient()
