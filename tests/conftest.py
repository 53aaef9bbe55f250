import asyncio
import json
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import httpx
import pytest

from probe_lib import ProbeConfig

BASE_URL = "http://127.0.0.1:5273/v1"
SSE_HEADERS = {"content-type": "text/event-stream", "x-request-id": "req-1", "set-cookie": "secret"}


def completion_body(content: str = "hi") -> Dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1,
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def chunk_data(content: Optional[str], finish_reason: Optional[str] = None) -> str:
    return json.dumps(
        {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 1,
            "model": "test-model",
            "choices": [
                {
                    "index": 0,
                    "delta": {"content": content} if content is not None else {},
                    "finish_reason": finish_reason,
                }
            ],
        }
    )


def sse_event(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def sse_stream(tokens: Iterable[str], *, done: bool = True) -> List[bytes]:
    parts = [sse_event(chunk_data(t)) for t in tokens]
    if done:
        parts.append(sse_event(chunk_data(None, "stop")))
        parts.append(sse_event("[DONE]"))
    return parts


async def drip(parts: Iterable[bytes], *, delay_s: float = 0.0, stall_s: float = 0.0) -> AsyncIterator[bytes]:
    """Yield body parts with an optional delay between them, then optionally stall."""
    for part in parts:
        if delay_s:
            await asyncio.sleep(delay_s)
        yield part
    if stall_s:
        await asyncio.sleep(stall_s)


async def aiter_list(items: Iterable[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


class RecordingSource:
    """Async iterator over chunks that records whether aclose() was called."""

    def __init__(self, chunks: Iterable[Any]):
        self._chunks = list(chunks)
        self.closed = False

    def __aiter__(self) -> "RecordingSource":
        return self

    async def __anext__(self) -> Any:
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def cfg() -> ProbeConfig:
    return ProbeConfig(
        base_url=BASE_URL,
        model="test-model",
        api_key="test-key",
        request_timeout_ms=2_000,
        first_byte_timeout_ms=1_000,
        first_event_timeout_ms=1_000,
        max_tokens=32,
    )


@pytest.fixture
def fast_cfg() -> ProbeConfig:
    return ProbeConfig(
        base_url=BASE_URL,
        model="test-model",
        api_key="test-key",
        request_timeout_ms=1_500,
        first_byte_timeout_ms=100,
        first_event_timeout_ms=150,
        max_tokens=32,
    )


def chat_server(non_stream=None, stream=None, seen: Optional[List[httpx.Request]] = None) -> httpx.MockTransport:
    """
    MockTransport for {BASE_URL}/chat/completions; dispatches on the request's
    `stream` flag to the given async handlers.
    """

    async def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        assert request.url.path == "/v1/chat/completions"
        payload = json.loads(request.content)
        target = stream if payload.get("stream") else non_stream
        if target is None:
            return httpx.Response(404, json={"error": "no handler"})
        return await target(request)

    return httpx.MockTransport(handler)
