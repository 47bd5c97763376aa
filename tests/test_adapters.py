"""
Tests for the protocol adapters
===============================

Every stream runs against httpx.MockTransport.
"""

import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from furon_chat.adapters import (
    AnthropicAdapter,
    ChatMessage,
    EndpointConfig,
    GeminiAdapter,
    LegacyAdapter,
    OpenAICompatibleAdapter,
    ProviderError,
    SSELineBuffer,
    StreamCallbacks,
    StreamSession,
    StreamState,
    adapter_for,
    sanitize_for_logging,
    stream_chat,
    stream_custom_model,
)
from furon_chat.providers import DEFAULT_REGISTRY, ApiFormat, CustomModel
from tests.helpers import (
    FakeServer,
    Recorder,
    chunked,
    openai_delta,
    sse,
    stream_response,
)

MESSAGES = [
    ChatMessage(role="system", content="Be brief."),
    ChatMessage(role="user", content="Hi"),
    ChatMessage(role="assistant", content="Hello!"),
    ChatMessage(role="user", content="How are you?"),
]


class TestSSELineBuffer:
    """Test line framing across arbitrary chunk boundaries"""

    def test_holds_back_partial_line(self):
        """Only complete lines come out of feed()"""
        buffer = SSELineBuffer()
        assert buffer.feed('data: {"a"') == []
        assert buffer.pending == 'data: {"a"'
        assert buffer.feed(": 1}\ndata: x") == ['data: {"a": 1}']
        assert buffer.pending == "data: x"

    def test_multiple_lines_in_one_chunk(self):
        """A chunk with several newlines yields every complete line"""
        buffer = SSELineBuffer()
        assert buffer.feed("a\n\nb\nc") == ["a", "", "b"]
        assert buffer.pending == "c"

    def test_flush_returns_remainder_once(self):
        """The trailing fragment is handed back at end of stream"""
        buffer = SSELineBuffer()
        buffer.feed("data: tail")
        assert buffer.flush() == ["data: tail"]
        assert buffer.flush() == []

    def test_flush_empty(self):
        """Nothing pending means nothing flushed"""
        assert SSELineBuffer().flush() == []


class TestStreamSession:
    """Test the per-stream state machine"""

    def test_terminal_states_are_final(self):
        """A finished session cannot move again"""
        session = StreamSession()
        session.transition(StreamState.SENDING)
        session.transition(StreamState.DONE)
        assert session.is_terminal
        with pytest.raises(RuntimeError):
            session.transition(StreamState.ERROR)

    def test_emit_accumulates(self):
        """Fragments are appended in order and forwarded"""
        recorder = Recorder()
        session = StreamSession()
        session.emit("a", recorder.callbacks)
        session.emit("b", recorder.callbacks)
        assert session.full_text == "ab"
        assert session.tokens == 2
        assert recorder.tokens == ["a", "b"]


class TestErrorClassification:
    """Test mapping of failed responses to user-facing messages"""

    def test_status_table_for_non_json(self):
        """Known statuses without a JSON body use the generic table"""
        adapter = OpenAICompatibleAdapter()
        assert adapter.error_message(401, "Unauthorized") == "Invalid API key"
        assert "Rate limit" in adapter.error_message(429, "slow down")
        assert adapter.error_message(403, "") == (
            "Access forbidden. Check your API key permissions."
        )

    def test_provider_message_wins(self):
        """A structured error message is passed through"""
        adapter = OpenAICompatibleAdapter()
        body = '{"error": {"message": "Model not found", "type": "invalid_request_error"}}'
        assert adapter.error_message(404, body) == "Model not found"

    def test_openai_top_level_message(self):
        """OpenAI-compatible servers may put the message at the top level"""
        adapter = OpenAICompatibleAdapter()
        assert adapter.error_message(400, '{"message": "Bad model"}') == "Bad model"

    def test_anthropic_ignores_top_level_message(self):
        """Only error.message counts for Anthropic"""
        adapter = AnthropicAdapter()
        assert adapter.error_message(401, '{"message": "nope"}') == "Invalid API key"

    def test_gemini_table(self):
        """Gemini has its own status table"""
        adapter = GeminiAdapter()
        assert adapter.error_message(400, "") == "Invalid request. Check your API key."
        assert adapter.error_message(403, "") == "Access forbidden. Check your API key."
        assert "Rate limit" in adapter.error_message(429, "")

    def test_unknown_status(self):
        """Anything else reports the status code"""
        assert OpenAICompatibleAdapter().error_message(418, "teapot") == "API Error (418)"

    def test_retryable_statuses(self):
        """429 and 5xx are retryable, auth failures are not"""
        assert ProviderError("x", status_code=429).retryable
        assert ProviderError("x", status_code=503).retryable
        assert not ProviderError("x", status_code=401).retryable
        assert not ProviderError("x").retryable
        assert ProviderError("x", retryable=True).retryable


class TestEndpointUrls:
    """Test URL construction tolerates already-suffixed bases"""

    def test_openai(self):
        """The chat completions path is appended once"""
        adapter = OpenAICompatibleAdapter()
        assert adapter.endpoint_url("https://api.x.ai/v1", "m") == (
            "https://api.x.ai/v1/chat/completions"
        )
        assert adapter.endpoint_url("https://api.x.ai/v1/", "m") == (
            "https://api.x.ai/v1/chat/completions"
        )
        assert adapter.endpoint_url("https://h/v1/chat/completions", "m") == (
            "https://h/v1/chat/completions"
        )

    def test_anthropic(self):
        """Messages path is added unless present"""
        adapter = AnthropicAdapter()
        assert adapter.endpoint_url("https://api.anthropic.com", "m") == (
            "https://api.anthropic.com/v1/messages"
        )
        assert adapter.endpoint_url("https://proxy/v1", "m") == "https://proxy/v1/messages"
        assert adapter.endpoint_url("https://proxy/v1/messages", "m") == (
            "https://proxy/v1/messages"
        )

    def test_gemini(self):
        """Model path is built from the model id"""
        adapter = GeminiAdapter()
        expected = (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            "gemini-1.5-pro:streamGenerateContent"
        )
        assert adapter.endpoint_url(
            "https://generativelanguage.googleapis.com", "gemini-1.5-pro"
        ) == expected
        assert adapter.endpoint_url(
            "https://generativelanguage.googleapis.com/v1beta", "gemini-1.5-pro"
        ) == expected
        assert adapter.endpoint_url(expected, "other") == expected


class TestRequestBodies:
    """Test per-protocol request shapes"""

    def test_openai_body(self):
        """Messages pass through unchanged with streaming on"""
        body = OpenAICompatibleAdapter().build_body("gpt-4o", MESSAGES)
        assert body["model"] == "gpt-4o"
        assert body["stream"] is True
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert len(body["messages"]) == 4

    def test_anthropic_separates_system(self):
        """The system prompt moves to its own field"""
        body = AnthropicAdapter().build_body("claude", MESSAGES)
        assert body["system"] == "Be brief."
        assert body["max_tokens"] == 4096
        assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]

    def test_gemini_roles_and_system_instruction(self):
        """Assistant turns become model turns"""
        body = GeminiAdapter().build_body("gemini", MESSAGES)
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["contents"][0]["parts"] == [{"text": "Hi"}]
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert body["generationConfig"] == {"maxOutputTokens": 4096}

    def test_gemini_without_system(self):
        """No system message means no systemInstruction field"""
        body = GeminiAdapter().build_body("gemini", MESSAGES[1:])
        assert "systemInstruction" not in body

    def test_legacy_omits_model(self):
        """The legacy endpoint gets no model field"""
        body = LegacyAdapter().build_body("gab-ai", MESSAGES)
        assert "model" not in body
        assert body["stream"] is True

    def test_messages_accept_dicts(self):
        """Plain role/content mappings are accepted"""
        assert ChatMessage.coerce({"role": "user", "content": "x"}) == ChatMessage("user", "x")


class TestOpenAIStreaming:
    """Test OpenAI-compatible streaming end to end"""

    BODY = sse(
        openai_delta("Hel"),
        openai_delta("lo, "),
        {"choices": [{"index": 0, "delta": {}}]},
        openai_delta("café ☕"),
        "[DONE]",
    )

    async def _run(self, server, adapter_cls=OpenAICompatibleAdapter, base_url="https://api.example/v1"):
        recorder = Recorder()
        async with server.client() as client:
            await adapter_cls(client=client).stream(
                EndpointConfig(base_url=base_url),
                "sk-test-key",
                "gpt-4o",
                MESSAGES,
                recorder.callbacks,
            )
        return recorder

    @pytest.mark.asyncio
    async def test_streams_tokens_and_completes(self):
        """Tokens arrive in order and the full text is reported once"""
        server = FakeServer(stream_response(self.BODY))
        recorder = await self._run(server)

        assert recorder.tokens == ["Hel", "lo, ", "café ☕"]
        assert recorder.completed == ["Hello, café ☕"]
        assert recorder.errors == []

        request = server.requests[0]
        assert str(request.url) == "https://api.example/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test-key"
        assert server.last_json["stream"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [1, 2, 5, 17, 64])
    async def test_chunk_boundaries_do_not_matter(self, size):
        """Splitting mid-line, mid-JSON or mid-character yields the same text"""
        server = FakeServer(
            lambda: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=chunked(self.BODY, size))
        )
        recorder = await self._run(server)

        assert recorder.completed == ["Hello, café ☕"]
        assert recorder.errors == []

    @pytest.mark.asyncio
    async def test_done_sentinel_is_ignored(self):
        """[DONE] is neither a token nor an error; completion comes at body end"""
        server = FakeServer(stream_response(sse(openai_delta("ok"), "[DONE]")))
        recorder = await self._run(server)

        assert recorder.tokens == ["ok"]
        assert recorder.completed == ["ok"]
        assert recorder.errors == []

    @pytest.mark.asyncio
    async def test_skips_comments_blank_and_malformed_lines(self):
        """Non-data lines and bad JSON are dropped without failing the stream"""
        body = (
            b": keep-alive\n\n"
            b"event: message\n"
            b"data: {not json\n\n"
            + sse(openai_delta("fine"))
            + b"id: 7\n\n"
        )
        server = FakeServer(stream_response(body))
        recorder = await self._run(server)

        assert recorder.completed == ["fine"]
        assert recorder.errors == []

    @pytest.mark.asyncio
    async def test_last_line_without_newline_is_processed(self):
        """The final fragment is flushed at end of body"""
        body = b'data: {"choices": [{"delta": {"content": "tail"}}]}'
        server = FakeServer(stream_response(body))
        recorder = await self._run(server)

        assert recorder.completed == ["tail"]

    @pytest.mark.asyncio
    async def test_rate_limit_reports_error_only(self):
        """429 goes to on_error and never to on_complete"""
        server = FakeServer(httpx.Response(429, text="Too Many Requests"))
        recorder = await self._run(server)

        assert recorder.tokens == []
        assert recorder.completed == []
        assert len(recorder.errors) == 1
        error = recorder.errors[0]
        assert isinstance(error, ProviderError)
        assert "Rate limit" in str(error)
        assert error.status_code == 429
        assert error.retryable

    @pytest.mark.asyncio
    async def test_json_error_body(self):
        """The provider's own error message is surfaced"""
        server = FakeServer(
            httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})
        )
        recorder = await self._run(server)

        assert str(recorder.errors[0]) == "Incorrect API key provided"

    @pytest.mark.asyncio
    async def test_empty_body_is_an_error(self):
        """A success response with no body is fatal"""
        server = FakeServer(httpx.Response(200, headers={"content-length": "0"}, content=b""))
        recorder = await self._run(server)

        assert recorder.completed == []
        assert str(recorder.errors[0]) == "No response body"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Transport failures are reported, not raised"""

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        recorder = Recorder()
        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            await OpenAICompatibleAdapter(client=client).stream(
                EndpointConfig(base_url="https://api.example/v1"),
                "k",
                "m",
                MESSAGES,
                recorder.callbacks,
            )

        assert recorder.completed == []
        assert str(recorder.errors[0]).startswith("Connection error")
        assert recorder.errors[0].retryable

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Timeouts are reported as such"""

        def hang(request):
            raise httpx.ReadTimeout("timed out", request=request)

        recorder = Recorder()
        async with httpx.AsyncClient(transport=httpx.MockTransport(hang)) as client:
            await OpenAICompatibleAdapter(client=client).stream(
                EndpointConfig(base_url="https://api.example/v1"),
                "k",
                "m",
                MESSAGES,
                recorder.callbacks,
            )

        assert str(recorder.errors[0]).startswith("Timeout error")

    @pytest.mark.asyncio
    async def test_token_callback_failure_becomes_error(self):
        """A raising on_token ends the stream through on_error"""
        server = FakeServer(stream_response(sse(openai_delta("a"), openai_delta("b"))))
        errors = []

        def boom(token):
            raise ValueError("ui exploded")

        async with server.client() as client:
            await OpenAICompatibleAdapter(client=client).stream(
                EndpointConfig(base_url="https://api.example/v1"),
                "k",
                "m",
                MESSAGES,
                StreamCallbacks(on_token=boom, on_error=errors.append),
            )

        assert len(errors) == 1
        assert isinstance(errors[0], ValueError)

    @pytest.mark.asyncio
    async def test_timeout_applies_to_shared_client(self):
        """A passed-in client still uses the adapter's timeout"""
        server = FakeServer(stream_response(sse(openai_delta("ok"))))
        recorder = Recorder()

        async with server.client() as client:
            adapter = OpenAICompatibleAdapter(
                client=client, timeout=httpx.Timeout(7.0, connect=3.0)
            )
            await adapter.stream(
                EndpointConfig(base_url="https://api.example/v1"),
                "k",
                "m",
                MESSAGES,
                recorder.callbacks,
            )

        assert recorder.completed == ["ok"]
        timeout = server.requests[0].extensions["timeout"]
        assert timeout["read"] == 7.0
        assert timeout["connect"] == 3.0


class TestAnthropicStreaming:
    """Test Anthropic event streams"""

    @pytest.mark.asyncio
    async def test_content_block_deltas(self):
        """Only content_block_delta text is emitted"""
        body = sse(
            {"type": "message_start", "message": {"id": "msg_1"}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " there"}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
            {"type": "message_stop"},
        )
        server = FakeServer(stream_response(body))
        recorder = Recorder()
        async with server.client() as client:
            await AnthropicAdapter(client=client).stream(
                EndpointConfig(base_url="https://api.anthropic.com"),
                "sk-ant-test",
                "claude-sonnet-4-20250514",
                MESSAGES,
                recorder.callbacks,
            )

        assert recorder.tokens == ["Hi", " there"]
        assert recorder.completed == ["Hi there"]

        request = server.requests[0]
        assert str(request.url) == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert "authorization" not in request.headers
        assert server.last_json["system"] == "Be brief."

    @pytest.mark.asyncio
    async def test_error_event(self):
        """An in-stream error event ends the stream with on_error"""
        body = sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "partial"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        server = FakeServer(stream_response(body))
        recorder = Recorder()
        async with server.client() as client:
            await AnthropicAdapter(client=client).stream(
                EndpointConfig(base_url="https://api.anthropic.com"),
                "k",
                "m",
                MESSAGES,
                recorder.callbacks,
            )

        assert recorder.tokens == ["partial"]
        assert recorder.completed == []
        assert str(recorder.errors[0]) == "Overloaded"
        assert recorder.errors[0].retryable


class TestGeminiStreaming:
    """Test Gemini SSE streams"""

    @pytest.mark.asyncio
    async def test_candidates_text_and_query_auth(self):
        """Key travels as a query parameter alongside alt=sse"""
        body = sse(
            {"candidates": [{"content": {"parts": [{"text": "Bon"}], "role": "model"}}]},
            {"candidates": [{"content": {"parts": [{"text": "jour"}], "role": "model"}}]},
            {"usageMetadata": {"totalTokenCount": 12}},
        )
        server = FakeServer(stream_response(body))
        recorder = Recorder()
        async with server.client() as client:
            await GeminiAdapter(client=client).stream(
                EndpointConfig(base_url="https://generativelanguage.googleapis.com"),
                "AIza-test",
                "gemini-1.5-pro",
                MESSAGES,
                recorder.callbacks,
            )

        assert recorder.completed == ["Bonjour"]
        request = server.requests[0]
        assert request.url.params["key"] == "AIza-test"
        assert request.url.params["alt"] == "sse"
        assert request.url.path == "/v1beta/models/gemini-1.5-pro:streamGenerateContent"
        assert "authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_forbidden(self):
        """Gemini 403 uses the Gemini wording"""
        server = FakeServer(httpx.Response(403, text="denied"))
        recorder = Recorder()
        async with server.client() as client:
            await GeminiAdapter(client=client).stream(
                EndpointConfig(base_url="https://generativelanguage.googleapis.com"),
                "k",
                "gemini-1.5-pro",
                MESSAGES,
                recorder.callbacks,
            )

        assert str(recorder.errors[0]) == "Access forbidden. Check your API key."


class TestLegacyStreaming:
    """Test the legacy format's raw-text fallback"""

    @pytest.mark.asyncio
    async def test_mixed_payloads(self):
        """Raw text, top-level content and choices deltas all count"""
        body = (
            b"data: Hello\n\n"
            b'data: {"content": " there"}\n\n'
            b'data: {"choices": [{"delta": {"content": "!"}}]}\n\n'
            b"data: {broken\n\n"
            b"data: [DONE]\n\n"
        )
        server = FakeServer(stream_response(body))
        recorder = Recorder()
        async with server.client() as client:
            await LegacyAdapter(client=client).stream(
                EndpointConfig(base_url="https://api.gab.ai/v1"),
                "k",
                "gab-ai",
                MESSAGES,
                recorder.callbacks,
            )

        assert recorder.tokens == ["Hello", " there", "!"]
        assert recorder.completed == ["Hello there!"]
        assert "model" not in server.last_json


class TestAdapterSelection:
    """Test adapter lookup and the provider-level entry points"""

    def test_adapter_for_each_format(self):
        """Each wire format maps to its adapter"""
        assert isinstance(adapter_for(ApiFormat.OPENAI), OpenAICompatibleAdapter)
        assert isinstance(adapter_for(ApiFormat.ANTHROPIC), AnthropicAdapter)
        assert isinstance(adapter_for(ApiFormat.GEMINI), GeminiAdapter)
        assert isinstance(adapter_for(ApiFormat.LEGACY), LegacyAdapter)

    @pytest.mark.asyncio
    async def test_unknown_provider(self):
        """Unknown providers are reported through on_error"""
        recorder = Recorder()
        await stream_chat("nope", "k", "m", MESSAGES, recorder.callbacks)
        assert "Unknown provider: nope" in str(recorder.errors[0])
        assert recorder.completed == []

    @pytest.mark.asyncio
    async def test_meta_prefix_and_referer(self):
        """Meta models go through OpenRouter with the llama prefix"""
        server = FakeServer(stream_response(sse(openai_delta("ok"))))
        recorder = Recorder()
        async with server.client() as client:
            await stream_chat(
                "meta",
                "or-key",
                "llama-3.3-70b",
                MESSAGES,
                recorder.callbacks,
                client=client,
                referer="https://furon.example",
            )

        request = server.requests[0]
        assert str(request.url) == "https://openrouter.ai/api/v1/chat/completions"
        assert server.last_json["model"] == "meta-llama/llama-3.3-70b"
        assert request.headers["http-referer"] == "https://furon.example"

    @pytest.mark.asyncio
    async def test_registry_override(self):
        """A registry with overrides redirects the request"""
        registry = DEFAULT_REGISTRY.with_overrides(
            {"deepseek": {"baseUrl": "https://proxy.example/v1", "headers": {"X-Team": "lab"}}}
        )
        server = FakeServer(stream_response(sse(openai_delta("ok"))))
        recorder = Recorder()
        async with server.client() as client:
            await stream_chat(
                "deepseek",
                "k",
                "deepseek-chat",
                MESSAGES,
                recorder.callbacks,
                registry=registry,
                client=client,
            )

        request = server.requests[0]
        assert str(request.url) == "https://proxy.example/v1/chat/completions"
        assert request.headers["x-team"] == "lab"
        assert "http-referer" not in request.headers

    @pytest.mark.asyncio
    async def test_custom_model_uses_declared_format(self):
        """The format field decides the adapter, not the URL"""
        model = CustomModel.create(
            name="Proxy",
            base_url="https://api.anthropic.com",
            api_key="custom-key",
            model_id="my-model",
            api_format="openai",
        )
        server = FakeServer(stream_response(sse(openai_delta("ok"))))
        recorder = Recorder()
        async with server.client() as client:
            await stream_custom_model(model, MESSAGES, recorder.callbacks, client=client)

        request = server.requests[0]
        assert str(request.url) == "https://api.anthropic.com/chat/completions"
        assert request.headers["authorization"] == "Bearer custom-key"
        assert recorder.completed == ["ok"]

    @pytest.mark.asyncio
    async def test_custom_anthropic_model(self):
        """Anthropic-format custom endpoints use header auth"""
        model = CustomModel.create(
            name="Claude proxy",
            base_url="https://llm.internal/v1",
            api_key="proxy-key",
            model_id="claude-x",
            api_format="anthropic",
        )
        body = sse({"type": "content_block_delta", "delta": {"text": "yo"}})
        server = FakeServer(stream_response(body))
        recorder = Recorder()
        async with server.client() as client:
            await stream_custom_model(model, MESSAGES, recorder.callbacks, client=client)

        request = server.requests[0]
        assert str(request.url) == "https://llm.internal/v1/messages"
        assert request.headers["x-api-key"] == "proxy-key"
        assert recorder.completed == ["yo"]


class TestSanitizeForLogging:
    """Test log redaction"""

    def test_redacts_keys(self):
        """Key-like strings are redacted"""
        text = "failed with key sk-1234567890abcdefghij"
        sanitized = sanitize_for_logging(text)
        assert "1234567890abcdefghij" not in sanitized
        assert "[REDACTED]" in sanitized

    def test_truncates(self):
        """Long text is truncated with an ellipsis"""
        sanitized = sanitize_for_logging("x" * 300, max_len=50)
        assert len(sanitized) == 53
        assert sanitized.endswith("...")

    def test_empty(self):
        """None and empty strings become empty"""
        assert sanitize_for_logging(None) == ""
        assert sanitize_for_logging("") == ""
