import asyncio
import hashlib
import json

import httpx
import pytest

from probe_lib import ModelMetadata, Outcome, probe_http_non_streaming, probe_http_streaming
from tests.conftest import SSE_HEADERS, chat_server, chunk_data, completion_body, drip, sse_stream


async def ok_completion(request):
    return httpx.Response(200, json=completion_body("hello there"))


async def ok_stream(request):
    return httpx.Response(200, headers=SSE_HEADERS, content=drip(sse_stream(["he", "llo"])))


# ---- non-streaming ----


@pytest.mark.asyncio
async def test_non_streaming_ok(cfg):
    seen = []
    result = await probe_http_non_streaming(cfg, transport=chat_server(non_stream=ok_completion, seen=seen))

    assert result.outcome == Outcome.OK
    assert result.http_status == 200
    assert result.token_preview == "hello there"
    assert result.chunk_count is None
    assert result.done_received is None
    assert result.timings.ttfb_ms is not None

    request = seen[0]
    assert request.headers["authorization"] == "Bearer test-key"
    payload = json.loads(request.content)
    assert payload["stream"] is False
    assert payload["max_tokens"] == 32
    assert result.payload_hash == hashlib.sha256(request.content).hexdigest()[:16]


@pytest.mark.asyncio
async def test_non_streaming_http_error(cfg):
    async def boom(request):
        return httpx.Response(500, json={"error": "model exploded"})

    result = await probe_http_non_streaming(cfg, transport=chat_server(non_stream=boom))
    assert result.outcome == Outcome.FAIL
    assert result.http_status == 500
    assert "model exploded" in result.error


@pytest.mark.asyncio
async def test_non_streaming_invalid_json(cfg):
    async def garbage(request):
        return httpx.Response(200, content=b"<html>nope</html>")

    result = await probe_http_non_streaming(cfg, transport=chat_server(non_stream=garbage))
    assert result.outcome == Outcome.FAIL
    assert "not valid JSON" in result.error


@pytest.mark.asyncio
async def test_non_streaming_missing_choices(cfg):
    async def empty(request):
        return httpx.Response(200, json={"id": "x"})

    result = await probe_http_non_streaming(cfg, transport=chat_server(non_stream=empty))
    assert result.outcome == Outcome.FAIL
    assert "choices" in result.error


@pytest.mark.asyncio
async def test_non_streaming_overall_timeout(fast_cfg):
    fast_cfg.request_timeout_ms = 100

    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json=completion_body())

    result = await probe_http_non_streaming(fast_cfg, transport=chat_server(non_stream=slow))
    assert result.outcome == Outcome.TIMEOUT
    assert result.timings.total_ms < 2_000


@pytest.mark.asyncio
async def test_connection_refused_is_error(cfg):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await probe_http_non_streaming(cfg, transport=httpx.MockTransport(refuse))
    assert result.outcome == Outcome.ERROR
    assert "ConnectError" in result.error
    assert result.http_status is None


# ---- streaming ----


@pytest.mark.asyncio
async def test_streaming_ok(cfg):
    seen = []
    result = await probe_http_streaming(cfg, transport=chat_server(stream=ok_stream, seen=seen))

    assert result.outcome == Outcome.OK
    assert result.done_received is True
    assert result.chunk_count == 4
    assert result.token_preview == "hello"
    assert result.headers["content-type"] == "text/event-stream"
    assert result.headers["x-request-id"] == "req-1"
    assert "set-cookie" not in result.headers
    assert result.timings.ttfb_ms <= result.timings.first_event_ms <= result.timings.total_ms
    assert seen[0].headers["accept"] == "text/event-stream"
    assert result.payload_hash == hashlib.sha256(seen[0].content).hexdigest()[:16]


@pytest.mark.asyncio
async def test_streaming_headers_then_silence(fast_cfg):
    async def stall(request):
        return httpx.Response(200, headers=SSE_HEADERS, content=drip([], stall_s=5))

    result = await probe_http_streaming(fast_cfg, transport=chat_server(stream=stall))

    assert result.outcome == Outcome.NO_FIRST_EVENT
    assert result.http_status == 200
    assert result.chunk_count == 0
    assert result.done_received is False
    assert result.timings.ttfb_ms is not None
    assert result.timings.first_event_ms is None
    assert result.timings.total_ms < 1_000
    assert "FIRST_EVENT_TIMEOUT" in result.error


@pytest.mark.asyncio
async def test_streaming_no_headers(fast_cfg):
    async def stall(request):
        await asyncio.sleep(5)
        return httpx.Response(200, headers=SSE_HEADERS, content=b"")

    result = await probe_http_streaming(fast_cfg, transport=chat_server(stream=stall))

    assert result.outcome == Outcome.NO_FIRST_BYTE
    assert result.http_status is None
    assert result.timings.ttfb_ms is None


@pytest.mark.asyncio
async def test_streaming_partial_then_stall_keeps_progress(fast_cfg):
    fast_cfg.request_timeout_ms = 300

    async def partial(request):
        parts = sse_stream(["a", "b", "c"], done=False)
        return httpx.Response(200, headers=SSE_HEADERS, content=drip(parts, stall_s=5))

    result = await probe_http_streaming(fast_cfg, transport=chat_server(stream=partial))

    assert result.outcome == Outcome.TIMEOUT
    assert result.chunk_count == 3
    assert result.done_received is False
    assert result.token_preview == "abc"


@pytest.mark.asyncio
async def test_streaming_ends_without_done(cfg):
    async def truncated(request):
        return httpx.Response(200, headers=SSE_HEADERS, content=drip(sse_stream(["a", "b"], done=False)))

    result = await probe_http_streaming(cfg, transport=chat_server(stream=truncated))
    assert result.outcome == Outcome.FAIL
    assert result.chunk_count == 2
    assert result.done_received is False


@pytest.mark.asyncio
async def test_streaming_empty_body(cfg):
    async def empty(request):
        return httpx.Response(200, headers=SSE_HEADERS, content=b"")

    result = await probe_http_streaming(cfg, transport=chat_server(stream=empty))
    assert result.outcome == Outcome.NO_FIRST_EVENT
    assert result.chunk_count == 0


@pytest.mark.asyncio
async def test_streaming_http_error(cfg):
    async def unavailable(request):
        return httpx.Response(503, text="loading model")

    result = await probe_http_streaming(cfg, transport=chat_server(stream=unavailable))
    assert result.outcome == Outcome.FAIL
    assert result.http_status == 503
    assert "loading model" in result.error


@pytest.mark.asyncio
async def test_streaming_tolerates_malformed_chunks(cfg):
    async def sloppy(request):
        parts = [b"data: {not json\n\n", b"data: 42\n\n"] + sse_stream(["ok"])
        return httpx.Response(200, headers=SSE_HEADERS, content=drip(parts))

    result = await probe_http_streaming(cfg, transport=chat_server(stream=sloppy))
    assert result.outcome == Outcome.OK
    assert result.token_preview == "ok"


@pytest.mark.asyncio
async def test_preview_is_capped(cfg):
    async def chatty(request):
        return httpx.Response(200, headers=SSE_HEADERS, content=drip(sse_stream(["x" * 150, "y" * 150])))

    result = await probe_http_streaming(cfg, transport=chat_server(stream=chatty))
    assert result.outcome == Outcome.OK
    assert len(result.token_preview) == 200


@pytest.mark.asyncio
async def test_result_dict_shape(cfg):
    result = await probe_http_streaming(cfg, transport=chat_server(stream=ok_stream))
    d = result.to_dict()
    assert d["probe"] == "http-streaming"
    assert d["outcome"] == "OK"
    assert d["doneReceived"] is True
    assert "error" not in d
    assert set(d["timings"]) == {"startMs", "endMs", "totalMs", "ttfbMs", "firstEventMs"}


@pytest.mark.asyncio
async def test_streaming_single_chunk_then_done(cfg):
    async def one_token(request):
        parts = [f"data: {chunk_data('hi')}\n\n".encode(), b"data: [DONE]\n\n"]
        return httpx.Response(200, headers=SSE_HEADERS, content=drip(parts))

    result = await probe_http_streaming(cfg, transport=chat_server(stream=one_token))
    assert result.outcome == Outcome.OK
    assert result.chunk_count == 2
    assert result.done_received is True
    assert result.token_preview == "hi"


@pytest.mark.asyncio
async def test_http_probes_consult_metadata(cfg):
    class Catalog:
        def __init__(self):
            self.asked = []

        def resolve_model_metadata(self, model_id):
            self.asked.append(model_id)
            return ModelMetadata(alias="test", resolved_id=model_id, variant_count=1)

    catalog = Catalog()
    transport = chat_server(non_stream=ok_completion, stream=ok_stream)
    assert (await probe_http_non_streaming(cfg, transport=transport, metadata=catalog)).outcome == Outcome.OK
    assert (await probe_http_streaming(cfg, transport=transport, metadata=catalog)).outcome == Outcome.OK
    assert catalog.asked == ["test-model", "test-model"]
