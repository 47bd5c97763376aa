"""Shared fakes for streaming tests"""

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from furon_chat.adapters import StreamCallbacks

SSE_HEADERS = {"content-type": "text/event-stream"}


def sse(*events: Any) -> bytes:
    """Encode events as SSE data lines; str events are sent verbatim."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event, ensure_ascii=False)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode("utf-8")


def openai_delta(text: str) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


async def chunked(data: bytes, size: int) -> AsyncIterator[bytes]:
    for i in range(0, len(data), size):
        yield data[i : i + size]


class Recorder:
    """Collects everything a stream reports"""

    def __init__(self) -> None:
        self.tokens: list[str] = []
        self.completed: list[str] = []
        self.errors: list[Exception] = []

    @property
    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_token=self.tokens.append,
            on_complete=self.completed.append,
            on_error=self.errors.append,
        )


class FakeServer:
    """MockTransport handler that records requests and replays responses"""

    def __init__(self, *responses: Callable[[], httpx.Response] | httpx.Response) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            raise AssertionError(f"Unexpected request to {request.url}")
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        return response() if callable(response) else response

    @property
    def last_json(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def stream_response(body: bytes, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, headers=SSE_HEADERS, content=body)
