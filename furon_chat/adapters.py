"""
Protocol Adapters
=================

Turn a provider's streaming HTTP response into normalized token callbacks.

One adapter per wire format:
- OpenAI-compatible: bearer auth, ``choices[0].delta.content``, ``[DONE]`` sentinel
- Anthropic: ``x-api-key`` auth, separate system field, ``content_block_delta`` events
- Gemini: ``key``/``alt=sse`` query params, ``model`` role, ``systemInstruction``
- Legacy: OpenAI-like framing where non-JSON data lines are literal text

Contract shared by every adapter: ``stream()`` never raises. A run ends in
exactly one of ``on_complete(full_text)`` or ``on_error(exc)``. Retrying is
the caller's business.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum, auto
from types import MappingProxyType
from typing import Any

import httpx

from .providers import (
    DEFAULT_REGISTRY,
    OPENROUTER_PROVIDERS,
    ApiFormat,
    CustomModel,
    ProviderRegistry,
    coerce_custom_format,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=10.0)
MAX_OUTPUT_TOKENS = 4096
ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_ERROR_MESSAGES: Mapping[int, str] = MappingProxyType(
    {
        401: "Invalid API key",
        429: "Rate limit exceeded. Please wait and try again.",
        403: "Access forbidden. Check your API key permissions.",
    }
)

GEMINI_ERROR_MESSAGES: Mapping[int, str] = MappingProxyType(
    {
        400: "Invalid request. Check your API key.",
        403: "Access forbidden. Check your API key.",
        429: "Rate limit exceeded. Please wait and try again.",
    }
)

_KEY_PATTERN = re.compile(
    r"(sk-|sk-ant-|AIza|api[_-]?key[=:]\s*|bearer\s+)[a-zA-Z0-9\-_]{10,}",
    flags=re.IGNORECASE,
)


def sanitize_for_logging(text: str | None, max_len: int = 200) -> str:
    """Sanitize text for safe logging (no sensitive data)"""
    if not text:
        return ""
    sanitized = _KEY_PATTERN.sub("[REDACTED]", text[:max_len])
    return sanitized + ("..." if len(text) > max_len else "")


class ProviderError(Exception):
    """A failed provider call, carrying the user-facing message"""

    RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if retryable is None:
            retryable = status_code in self.RETRYABLE_STATUS
        self.retryable = retryable


@dataclass(frozen=True)
class ChatMessage:
    """A single chat turn sent to a provider"""

    role: str  # 'user', 'assistant', 'system'
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def coerce(cls, message: ChatMessage | Mapping[str, Any]) -> ChatMessage:
        if isinstance(message, ChatMessage):
            return message
        return cls(role=str(message["role"]), content=str(message["content"]))


def _noop(*_args: Any) -> None:
    return None


@dataclass
class StreamCallbacks:
    """Hooks invoked while a response streams in"""

    on_token: Callable[[str], None] = _noop
    on_complete: Callable[[str], None] = _noop
    on_error: Callable[[Exception], None] = _noop


@dataclass(frozen=True)
class EndpointConfig:
    """Where to send a request and which extra headers to attach"""

    base_url: str
    extra_headers: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )


class SSELineBuffer:
    """
    Carry-over buffer for newline-delimited event framing.

    Network reads can end anywhere, including mid-line or mid-JSON. feed()
    only returns complete lines and keeps the trailing fragment for the
    next read; flush() hands back whatever is left once the body ends.
    """

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, text: str) -> list[str]:
        self._pending += text
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return lines

    def flush(self) -> list[str]:
        pending, self._pending = self._pending, ""
        return [pending] if pending else []


class StreamState(Enum):
    """Lifecycle of a single streamed request"""

    INIT = auto()
    SENDING = auto()
    STREAMING = auto()
    DONE = auto()
    ERROR = auto()


TERMINAL_STATES = frozenset({StreamState.DONE, StreamState.ERROR})


@dataclass
class StreamSession:
    """Per-request state, owned by one adapter invocation"""

    full_text: str = ""
    buffer: SSELineBuffer = field(default_factory=SSELineBuffer)
    state: StreamState = StreamState.INIT
    tokens: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: StreamState) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Stream already finished ({self.state.name})")
        logger.debug("Stream state %s -> %s", self.state.name, state.name)
        self.state = state

    def emit(self, fragment: str, callbacks: StreamCallbacks) -> None:
        self.full_text += fragment
        self.tokens += 1
        callbacks.on_token(fragment)


def _dig(obj: Any, *path: str | int) -> Any:
    """Walk a parsed JSON value, returning None on any shape mismatch."""
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        else:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
    return obj


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _report_error(callbacks: StreamCallbacks, exc: Exception) -> None:
    try:
        callbacks.on_error(exc)
    except Exception:
        logger.exception("on_error callback raised")


class StreamAdapter(ABC):
    """Abstract base class for wire-format adapters"""

    wire_format: ApiFormat
    error_messages: Mapping[int, str] = DEFAULT_ERROR_MESSAGES

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | float | None = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = client
        self.timeout = timeout

    @abstractmethod
    def endpoint_url(self, base_url: str, model: str) -> str:
        """Full request URL for a base URL, with or without the path suffix."""

    @abstractmethod
    def build_headers(self, credential: str) -> dict[str, str]:
        pass

    @abstractmethod
    def build_body(self, model: str, messages: list[ChatMessage]) -> dict[str, Any]:
        pass

    @abstractmethod
    def extract_text(self, event: Any) -> str | None:
        """Incremental text carried by one decoded event, if any."""

    def build_params(self, credential: str) -> dict[str, str] | None:
        return None

    def error_field(self, payload: Any) -> str | None:
        message = _dig(payload, "error", "message")
        if message is None and isinstance(_dig(payload, "error"), str):
            message = payload["error"]
        return _text(message)

    def error_message(self, status_code: int, body: str) -> str:
        """User-facing message for a failed HTTP response."""
        try:
            message = self.error_field(json.loads(body))
        except ValueError:
            message = None
        if message:
            return message
        return self.error_messages.get(status_code, f"API Error ({status_code})")

    @staticmethod
    def extract_data(line: str) -> str | None:
        """Payload of a ``data:`` line; None for blanks, comments and other fields."""
        trimmed = line.strip()
        if not trimmed or trimmed.startswith(":"):
            return None
        if not trimmed.startswith("data:"):
            return None
        data = trimmed[5:]
        return data[1:] if data.startswith(" ") else data

    def parse_data(self, data: str) -> str | None:
        try:
            event = json.loads(data)
        except ValueError:
            # A chunk boundary can split a payload; not fatal
            return None
        return self.extract_text(event)

    async def stream(
        self,
        endpoint: EndpointConfig,
        credential: str,
        model: str,
        messages: Iterable[ChatMessage | Mapping[str, Any]],
        callbacks: StreamCallbacks,
    ) -> None:
        """
        POST one streaming request and feed the callbacks.

        Never raises: every failure is delivered through callbacks.on_error.
        """
        session = StreamSession()
        try:
            await self._run(
                session,
                endpoint,
                credential,
                model,
                [ChatMessage.coerce(m) for m in messages],
                callbacks,
            )
        except ProviderError as exc:
            self._fail(session, callbacks, exc)
        except httpx.TimeoutException as exc:
            self._fail(
                session,
                callbacks,
                ProviderError(f"Timeout error: {exc}", retryable=True),
            )
        except httpx.RequestError as exc:
            self._fail(
                session,
                callbacks,
                ProviderError(f"Connection error: {exc}", retryable=True),
            )
        except Exception as exc:
            self._fail(session, callbacks, exc)

    def _fail(
        self, session: StreamSession, callbacks: StreamCallbacks, exc: Exception
    ) -> None:
        if session.is_terminal:
            # on_complete itself raised; the stream already finished
            logger.exception("Callback raised after %s stream completed", self.wire_format.value)
            return
        session.transition(StreamState.ERROR)
        logger.warning(
            "%s stream failed: %s",
            self.wire_format.value,
            sanitize_for_logging(str(exc)),
        )
        _report_error(callbacks, exc)

    async def _run(
        self,
        session: StreamSession,
        endpoint: EndpointConfig,
        credential: str,
        model: str,
        messages: list[ChatMessage],
        callbacks: StreamCallbacks,
    ) -> None:
        url = self.endpoint_url(endpoint.base_url, model)
        headers = {
            "Content-Type": "application/json",
            **self.build_headers(credential),
            **endpoint.extra_headers,
        }
        body = self.build_body(model, messages)

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            session.transition(StreamState.SENDING)
            logger.debug("POST %s (model=%s)", url, model)
            async with client.stream(
                "POST",
                url,
                headers=headers,
                params=self.build_params(credential),
                json=body,
                timeout=self.timeout,
            ) as response:
                if not response.is_success:
                    raw = await response.aread()
                    error_body = raw.decode("utf-8", errors="replace")
                    logger.warning(
                        "HTTP %s from %s: %s",
                        response.status_code,
                        self.wire_format.value,
                        sanitize_for_logging(error_body),
                    )
                    raise ProviderError(
                        self.error_message(response.status_code, error_body),
                        status_code=response.status_code,
                    )

                if response.headers.get("content-length") == "0":
                    raise ProviderError("No response body")

                session.transition(StreamState.STREAMING)
                async for text in response.aiter_text():
                    for line in session.buffer.feed(text):
                        self._handle_line(line, session, callbacks)
                for line in session.buffer.flush():
                    self._handle_line(line, session, callbacks)
        finally:
            if self._client is None:
                await client.aclose()

        session.transition(StreamState.DONE)
        logger.debug(
            "%s stream complete: %d fragments, %d chars",
            self.wire_format.value,
            session.tokens,
            len(session.full_text),
        )
        callbacks.on_complete(session.full_text)

    def _handle_line(
        self, line: str, session: StreamSession, callbacks: StreamCallbacks
    ) -> None:
        data = self.extract_data(line)
        if data is None:
            return
        fragment = self.parse_data(data)
        if fragment:
            session.emit(fragment, callbacks)


class OpenAICompatibleAdapter(StreamAdapter):
    """OpenAI chat-completions streaming (also xAI, DeepSeek, Qwen, Kimi, Mistral, ...)"""

    wire_format = ApiFormat.OPENAI
    DONE_SENTINEL = "[DONE]"

    def endpoint_url(self, base_url: str, model: str) -> str:
        trimmed = base_url.rstrip("/")
        if trimmed.endswith("/chat/completions"):
            return trimmed
        return f"{trimmed}/chat/completions"

    def build_headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    def build_body(self, model: str, messages: list[ChatMessage]) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
        }

    def error_field(self, payload: Any) -> str | None:
        return super().error_field(payload) or _text(_dig(payload, "message"))

    def parse_data(self, data: str) -> str | None:
        if data == self.DONE_SENTINEL:
            return None
        return super().parse_data(data)

    def extract_text(self, event: Any) -> str | None:
        return _text(_dig(event, "choices", 0, "delta", "content"))


class AnthropicAdapter(StreamAdapter):
    """Anthropic Messages API streaming"""

    wire_format = ApiFormat.ANTHROPIC

    def endpoint_url(self, base_url: str, model: str) -> str:
        trimmed = base_url.rstrip("/")
        if trimmed.endswith("/messages"):
            return trimmed
        if trimmed.endswith("/v1"):
            return f"{trimmed}/messages"
        return f"{trimmed}/v1/messages"

    def build_headers(self, credential: str) -> dict[str, str]:
        return {
            "x-api-key": credential,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def build_body(self, model: str, messages: list[ChatMessage]) -> dict[str, Any]:
        system = next((m.content for m in messages if m.role == "system"), "")
        return {
            "model": model,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "system": system,
            "messages": [m.to_dict() for m in messages if m.role != "system"],
            "stream": True,
        }

    def extract_text(self, event: Any) -> str | None:
        event_type = _dig(event, "type")
        if event_type == "error":
            error_type = _dig(event, "error", "type")
            raise ProviderError(
                _text(_dig(event, "error", "message")) or "Stream error",
                retryable=error_type in {"overloaded_error", "rate_limit_error"},
            )
        if event_type != "content_block_delta":
            return None
        return _text(_dig(event, "delta", "text"))


class GeminiAdapter(StreamAdapter):
    """Google Gemini streamGenerateContent over SSE"""

    wire_format = ApiFormat.GEMINI
    error_messages = GEMINI_ERROR_MESSAGES
    METHOD = "streamGenerateContent"

    def endpoint_url(self, base_url: str, model: str) -> str:
        trimmed = base_url.rstrip("/")
        if trimmed.endswith(f":{self.METHOD}"):
            return trimmed
        if trimmed.endswith("/v1beta"):
            return f"{trimmed}/models/{model}:{self.METHOD}"
        return f"{trimmed}/v1beta/models/{model}:{self.METHOD}"

    def build_headers(self, credential: str) -> dict[str, str]:
        # The key travels as a query parameter
        return {}

    def build_params(self, credential: str) -> dict[str, str]:
        return {"key": credential, "alt": "sse"}

    def build_body(self, model: str, messages: list[ChatMessage]) -> dict[str, Any]:
        system = next((m for m in messages if m.role == "system"), None)
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in messages
                if m.role != "system"
            ],
            "generationConfig": {"maxOutputTokens": MAX_OUTPUT_TOKENS},
        }
        if system is not None:
            body["systemInstruction"] = {"parts": [{"text": system.content}]}
        return body

    def extract_text(self, event: Any) -> str | None:
        return _text(_dig(event, "candidates", 0, "content", "parts", 0, "text"))


class LegacyAdapter(OpenAICompatibleAdapter):
    """
    Loosely OpenAI-shaped streaming used by Gab AI.

    Non-JSON data lines that do not look like a JSON object are passed
    through as literal tokens. This can hide protocol errors from servers
    that send plain-text diagnostics, but it is how these endpoints deliver
    text.
    """

    wire_format = ApiFormat.LEGACY

    def build_body(self, model: str, messages: list[ChatMessage]) -> dict[str, Any]:
        # The endpoint serves a single model and rejects the field
        return {"messages": [m.to_dict() for m in messages], "stream": True}

    def parse_data(self, data: str) -> str | None:
        if data == self.DONE_SENTINEL:
            return None
        try:
            event = json.loads(data)
        except ValueError:
            if data and not data.startswith("{"):
                return data
            return None
        return self.extract_text(event)

    def extract_text(self, event: Any) -> str | None:
        return super().extract_text(event) or _text(_dig(event, "content"))


ADAPTERS: Mapping[ApiFormat, type[StreamAdapter]] = MappingProxyType(
    {
        ApiFormat.OPENAI: OpenAICompatibleAdapter,
        ApiFormat.ANTHROPIC: AnthropicAdapter,
        ApiFormat.GEMINI: GeminiAdapter,
        ApiFormat.LEGACY: LegacyAdapter,
    }
)


def adapter_for(
    api_format: ApiFormat,
    client: httpx.AsyncClient | None = None,
    timeout: httpx.Timeout | float | None = DEFAULT_TIMEOUT,
) -> StreamAdapter:
    return ADAPTERS[api_format](client=client, timeout=timeout)


async def stream_chat(
    provider_id: str,
    credential: str,
    model: str,
    messages: Iterable[ChatMessage | Mapping[str, Any]],
    callbacks: StreamCallbacks,
    *,
    registry: ProviderRegistry = DEFAULT_REGISTRY,
    client: httpx.AsyncClient | None = None,
    timeout: httpx.Timeout | float | None = DEFAULT_TIMEOUT,
    referer: str | None = None,
) -> None:
    """
    Stream a chat completion from a built-in provider.

    Never raises; unknown providers and HTTP failures go to on_error.
    """
    provider = registry.get_provider(provider_id)
    if provider is None:
        _report_error(callbacks, ProviderError(f"Unknown provider: {provider_id}"))
        return

    headers = dict(provider.extra_headers)
    if referer and provider.id in OPENROUTER_PROVIDERS:
        headers.setdefault("HTTP-Referer", referer)

    adapter = adapter_for(provider.wire_format, client=client, timeout=timeout)
    await adapter.stream(
        EndpointConfig(base_url=provider.base_url, extra_headers=headers),
        credential,
        f"{provider.model_prefix}{model}",
        messages,
        callbacks,
    )


async def stream_custom_model(
    custom_model: CustomModel,
    messages: Iterable[ChatMessage | Mapping[str, Any]],
    callbacks: StreamCallbacks,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: httpx.Timeout | float | None = DEFAULT_TIMEOUT,
) -> None:
    """
    Stream from a user-defined endpoint.

    The adapter is picked from custom_model.api_format only. Never raises.
    """
    adapter = adapter_for(
        coerce_custom_format(custom_model.api_format), client=client, timeout=timeout
    )
    await adapter.stream(
        EndpointConfig(base_url=custom_model.base_url),
        custom_model.api_key,
        custom_model.model_id,
        messages,
        callbacks,
    )
