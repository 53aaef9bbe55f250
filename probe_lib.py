from __future__ import annotations

import asyncio
import codecs
import csv
import datetime as dt
import hashlib
import json
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

import httpx
import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionChunk

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
PREVIEW_CHARS = 200
ERROR_CHARS = 500
PAYLOAD_HASH_CHARS = 16
# The SDK's own deadline expires this much before the overall timer fires.
SDK_DEADLINE_MARGIN_MS = 250

# Prompt used by the diagnostic probes; designed to elicit multi-token output.
PROBE_MESSAGES: List[Dict[str, str]] = [
    {
        "role": "user",
        "content": "Explain the Fibonacci sequence in exactly three sentences. Be concise but complete.",
    },
]
BENCHMARK_MESSAGES: List[Dict[str, str]] = [
    {"role": "user", "content": "Count from 1 to 10, one number per line."},
]
BENCHMARK_MAX_TOKENS = 128

# Abort reasons; each timer tags the shared token with its own.
REASON_REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
REASON_FIRST_BYTE_TIMEOUT = "FIRST_BYTE_TIMEOUT"
REASON_FIRST_EVENT_TIMEOUT = "FIRST_EVENT_TIMEOUT"
REASON_ABORTED = "ABORTED"

PROBE_HTTP_NON_STREAMING = "http-non-streaming"
PROBE_HTTP_STREAMING = "http-streaming"
PROBE_SDK_NON_STREAMING = "sdk-non-streaming"
PROBE_SDK_STREAMING = "sdk-streaming"

_KEEP_HEADERS = (
    "content-type",
    "transfer-encoding",
    "x-request-id",
    "x-ratelimit-remaining",
    "server",
    "connection",
)


# ----------------------------
# Data models
# ----------------------------

class Outcome(str, Enum):
    OK = "OK"
    FAIL = "FAIL"
    TIMEOUT = "TIMEOUT"
    NO_FIRST_BYTE = "NO_FIRST_BYTE"
    NO_FIRST_EVENT = "NO_FIRST_EVENT"
    HANG = "HANG"
    ERROR = "ERROR"


class Verdict(str, Enum):
    BOTH_OK = "BOTH_OK"
    STREAM_ONLY_FAIL = "STREAM_ONLY_FAIL"
    NON_STREAM_FAIL = "NON_STREAM_FAIL"
    BOTH_FAIL = "BOTH_FAIL"


@dataclass
class ProbeConfig:
    base_url: str
    model: str
    api_key: str = "unused"

    request_timeout_ms: int = 30_000
    first_byte_timeout_ms: int = 10_000
    first_event_timeout_ms: int = 15_000

    max_tokens: int = 256

    # labels only; recorded in reports for the SDK probes
    sdk_provider_type: str = "openai"
    sdk_wire_api: str = "completions"

    def redacted(self) -> Dict[str, Any]:
        """Configuration snapshot for reports. The API key never leaves the process."""
        return {
            "baseUrl": self.base_url,
            "model": self.model,
            "sdkProviderType": self.sdk_provider_type,
            "sdkWireApi": self.sdk_wire_api,
            "requestTimeoutMs": self.request_timeout_ms,
            "firstByteTimeoutMs": self.first_byte_timeout_ms,
            "firstEventTimeoutMs": self.first_event_timeout_ms,
        }


@dataclass(frozen=True)
class ProbeTimings:
    start_ms: int
    end_ms: int
    total_ms: int
    ttfb_ms: Optional[int] = None
    first_event_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "startMs": self.start_ms,
                "endMs": self.end_ms,
                "totalMs": self.total_ms,
                "ttfbMs": self.ttfb_ms,
                "firstEventMs": self.first_event_ms,
            }
        )


@dataclass(frozen=True)
class SSEEvent:
    data: str
    timestamp: int  # epoch ms


@dataclass(frozen=True)
class ProbeResult:
    probe: str
    outcome: Outcome
    timings: ProbeTimings
    payload_hash: str
    http_status: Optional[int] = None
    headers: Optional[Dict[str, str]] = None
    chunk_count: Optional[int] = None
    done_received: Optional[bool] = None
    token_preview: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.OK

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "probe": self.probe,
                "outcome": self.outcome.value,
                "httpStatus": self.http_status,
                "headers": self.headers,
                "timings": self.timings.to_dict(),
                "chunkCount": self.chunk_count,
                "doneReceived": self.done_received,
                "tokenPreview": self.token_preview,
                "error": self.error,
                "payloadHash": self.payload_hash,
            }
        )


@dataclass(frozen=True)
class ModelBenchmarkEntry:
    model: str
    non_streaming_result: ProbeResult
    streaming_result: ProbeResult
    supports_streaming: bool
    verdict: Verdict

    @classmethod
    def from_results(cls, model: str, non_streaming: ProbeResult, streaming: ProbeResult) -> "ModelBenchmarkEntry":
        return cls(
            model=model,
            non_streaming_result=non_streaming,
            streaming_result=streaming,
            supports_streaming=streaming.ok,
            verdict=derive_verdict(non_streaming.outcome, streaming.outcome),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "nonStreamingResult": self.non_streaming_result.to_dict(),
            "streamingResult": self.streaming_result.to_dict(),
            "supportsStreaming": self.supports_streaming,
            "verdict": self.verdict.value,
        }


@dataclass(frozen=True)
class DiagnosticReport:
    timestamp: str
    config: Dict[str, Any]
    probes: Tuple[ProbeResult, ...]

    @property
    def passed(self) -> bool:
        return all(p.ok for p in self.probes)

    @property
    def summary(self) -> str:
        return summarize_probes(self.probes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "config": dict(self.config),
            "probes": [p.to_dict() for p in self.probes],
            "passed": self.passed,
            "summary": self.summary,
        }


@dataclass(frozen=True)
class BenchmarkReport:
    timestamp: str
    config: Dict[str, Any]
    entries: Tuple[ModelBenchmarkEntry, ...]

    @property
    def models_with_streaming(self) -> int:
        return sum(1 for e in self.entries if e.supports_streaming)

    @property
    def all_streaming(self) -> bool:
        return all(e.supports_streaming for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "config": dict(self.config),
            "totalModels": len(self.entries),
            "modelsWithStreaming": self.models_with_streaming,
            "modelsWithoutStreaming": len(self.entries) - self.models_with_streaming,
            "entries": [e.to_dict() for e in self.entries],
        }


@dataclass(frozen=True)
class ModelMetadata:
    alias: str
    resolved_id: str
    variant_count: int


class MetadataResolver(Protocol):
    def resolve_model_metadata(self, model_id: str) -> Optional[ModelMetadata]:
        ...


OnProbeStart = Callable[[str], Awaitable[None]]
OnProbeDone = Callable[[ProbeResult], Awaitable[None]]
OnModelStart = Callable[[int, str], Awaitable[None]]
OnModelDone = Callable[[int, ModelBenchmarkEntry], Awaitable[None]]


# ----------------------------
# Utilities
# ----------------------------

def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def _now_ms() -> int:
    return int(time.time() * 1000)


def truncate(s: str, n: int = ERROR_CHARS) -> str:
    return s if len(s) <= n else s[:n] + "…"


def join_url(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + path


def _drop_none(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {truncate(str(exc))}"


def _pick_headers(headers: Any) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key in _KEEP_HEADERS:
        val = headers.get(key)
        if val:
            out[key] = val
    return out


def make_payload(
    model: str,
    messages: Sequence[Dict[str, str]],
    *,
    stream: bool,
    max_tokens: int,
) -> Dict[str, Any]:
    return {
        "model": model,
        "messages": [dict(m) for m in messages],
        "stream": stream,
        "max_tokens": max_tokens,
    }


def encode_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def hash_payload(payload: Union[bytes, str, Dict[str, Any]]) -> str:
    """Truncated SHA-256 of the request body, logged instead of the body itself."""
    if isinstance(payload, dict):
        payload = encode_payload(payload)
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:PAYLOAD_HASH_CHARS]


def _request_headers(api_key: Optional[str], *, stream: bool) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if stream:
        headers["Accept"] = "text/event-stream"
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _http_timeout(cfg: ProbeConfig) -> httpx.Timeout:
    # Backstop only; the probe's own timers end the request first.
    return httpx.Timeout(cfg.request_timeout_ms / 1000.0)


# ----------------------------
# Timing
# ----------------------------

class Timer:
    """
    Stopwatch for one probe invocation. Starts on construction.
    Marks are first-call-wins; snapshot() stops the timer, so repeated
    snapshots return identical timings.
    """

    def __init__(self) -> None:
        self._start_ms = _now_ms()
        self._t0 = time.perf_counter()
        self._ttfb_ms: Optional[int] = None
        self._first_event_ms: Optional[int] = None
        self._total_ms: Optional[int] = None

    def _elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._t0) * 1000)

    @property
    def stopped(self) -> bool:
        return self._total_ms is not None

    @property
    def ttfb_ms(self) -> Optional[int]:
        return self._ttfb_ms

    @property
    def first_event_ms(self) -> Optional[int]:
        return self._first_event_ms

    def mark_ttfb(self) -> None:
        if self._ttfb_ms is None and not self.stopped:
            self._ttfb_ms = self._elapsed_ms()

    def mark_first_event(self) -> None:
        if self._first_event_ms is None and not self.stopped:
            self._first_event_ms = self._elapsed_ms()

    def stop(self) -> int:
        if self._total_ms is None:
            self._total_ms = self._elapsed_ms()
        return self._total_ms

    def snapshot(self) -> ProbeTimings:
        total = self.stop()
        return ProbeTimings(
            start_ms=self._start_ms,
            end_ms=self._start_ms + total,
            total_ms=total,
            ttfb_ms=self._ttfb_ms,
            first_event_ms=self._first_event_ms,
        )


# ----------------------------
# Cancellation
# ----------------------------

class StreamCancelled(Exception):
    def __init__(self, reason: str):
        super().__init__(f"aborted: {reason}")
        self.reason = reason


class CancelToken:
    """
    One per probe invocation. Shared by the request task, the SSE reader and
    every timer; the first cancel() wins and its reason is kept.
    """

    def __init__(self) -> None:
        self.reason: Optional[str] = None
        self._task: Optional[asyncio.Future] = None
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def bind(self, task: asyncio.Future) -> None:
        self._task = task

    def cancel(self, reason: str) -> bool:
        if self.reason is not None:
            return False
        if self._task is not None and self._task.done():
            return False
        self.reason = reason
        if self._task is not None:
            self._task.cancel(reason)
        return True

    def arm(self, delay_ms: int, reason: str) -> None:
        loop = asyncio.get_running_loop()
        self.disarm(reason)
        self._timers[reason] = loop.call_later(max(0, delay_ms) / 1000.0, self.cancel, reason)

    def disarm(self, reason: str) -> None:
        handle = self._timers.pop(reason, None)
        if handle is not None:
            handle.cancel()

    def armed(self, reason: str) -> bool:
        return reason in self._timers

    def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def raise_if_cancelled(self) -> None:
        if self.reason is not None:
            raise StreamCancelled(self.reason)


async def run_with_timers(
    token: CancelToken,
    body: Awaitable[None],
    timers: Sequence[Tuple[int, str]],
) -> None:
    """
    Run `body` as its own task bound to `token`, with each (delay_ms, reason)
    timer armed at start. A timer-driven cancel surfaces as StreamCancelled;
    cancellation from outside the probe propagates unchanged.
    """
    task = asyncio.ensure_future(body)
    token.bind(task)
    for delay_ms, reason in timers:
        token.arm(delay_ms, reason)
    try:
        await task
    except asyncio.CancelledError:
        if token.reason is None:
            raise
        raise StreamCancelled(token.reason) from None
    finally:
        token.close()


# ----------------------------
# SSE decoding
# ----------------------------

def _data_payloads(segment: str) -> List[str]:
    out: List[str] = []
    for line in segment.split("\n"):
        if not line.startswith("data:"):
            # event:, id:, retry: and ":" comments carry nothing we need
            continue
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        out.append(payload)
    return out


async def iter_sse_events(
    source: AsyncIterator[Union[bytes, str]],
    token: Optional[CancelToken] = None,
) -> AsyncIterator[SSEEvent]:
    """
    Incrementally decode a chunked SSE body into events.

    Chunks may split events, lines or UTF-8 sequences anywhere. A final
    `data:` line without a trailing blank line is still emitted at end of
    stream. `[DONE]` is passed through like any other payload. The source is
    closed on every exit path.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    try:
        if token is not None:
            token.raise_if_cancelled()
        async for chunk in source:
            if token is not None:
                token.raise_if_cancelled()
            buffer += chunk if isinstance(chunk, str) else decoder.decode(chunk)
            buffer = buffer.replace("\r\n", "\n")
            *segments, buffer = buffer.split("\n\n")
            for segment in segments:
                for data in _data_payloads(segment):
                    if token is not None:
                        token.raise_if_cancelled()
                    yield SSEEvent(data=data, timestamp=_now_ms())

        buffer = (buffer + decoder.decode(b"", final=True)).replace("\r\n", "\n")
        for data in _data_payloads(buffer):
            if token is not None:
                token.raise_if_cancelled()
            yield SSEEvent(data=data, timestamp=_now_ms())
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()


# ----------------------------
# Outcome classification
# ----------------------------

@dataclass(frozen=True)
class ProbeSignals:
    streaming: bool
    abort_reason: Optional[str] = None
    http_status: Optional[int] = None
    chunk_count: int = 0
    done_received: bool = False
    body_ok: bool = False
    network_error: bool = False
    protocol_error: bool = False
    # client mechanisms that may give up on their own without a reason tag
    hang_prone: bool = False


def classify_outcome(s: ProbeSignals) -> Outcome:
    if s.abort_reason == REASON_FIRST_BYTE_TIMEOUT:
        return Outcome.NO_FIRST_BYTE
    if s.abort_reason == REASON_FIRST_EVENT_TIMEOUT:
        return Outcome.NO_FIRST_EVENT
    if s.abort_reason == REASON_REQUEST_TIMEOUT:
        return Outcome.TIMEOUT
    if s.abort_reason is not None:
        if s.chunk_count > 0:
            return Outcome.TIMEOUT
        return Outcome.HANG if s.hang_prone else Outcome.TIMEOUT

    if s.network_error:
        return Outcome.ERROR
    if s.http_status is not None and not (200 <= s.http_status < 300):
        return Outcome.FAIL
    if s.protocol_error:
        return Outcome.FAIL

    if s.streaming:
        if s.done_received:
            return Outcome.OK
        if s.chunk_count > 0:
            return Outcome.FAIL
        return Outcome.NO_FIRST_EVENT
    return Outcome.OK if s.body_ok else Outcome.FAIL


def derive_verdict(non_streaming: Outcome, streaming: Outcome) -> Verdict:
    ns_ok = non_streaming == Outcome.OK
    s_ok = streaming == Outcome.OK
    if ns_ok and s_ok:
        return Verdict.BOTH_OK
    if ns_ok:
        return Verdict.STREAM_ONLY_FAIL
    if s_ok:
        return Verdict.NON_STREAM_FAIL
    return Verdict.BOTH_FAIL


def summarize_probes(probes: Sequence[ProbeResult]) -> str:
    if all(p.ok for p in probes):
        return "ALL_PASSED"
    non_stream_ok = any(p.probe == PROBE_HTTP_NON_STREAMING and p.ok for p in probes)
    stream_stalled = any(
        p.probe in (PROBE_HTTP_STREAMING, PROBE_SDK_STREAMING)
        and p.outcome in (Outcome.HANG, Outcome.NO_FIRST_EVENT, Outcome.TIMEOUT)
        for p in probes
    )
    if non_stream_ok and stream_stalled:
        return "STREAMING_HANG"
    return "FAILED"


# ----------------------------
# Probes
# ----------------------------

@dataclass
class _ProbeState:
    """Mutable progress of one invocation; survives cancellation of the request task."""

    http_status: Optional[int] = None
    headers: Optional[Dict[str, str]] = None
    chunk_count: int = 0
    done_received: bool = False
    body_ok: bool = False
    abort_reason: Optional[str] = None
    network_error: bool = False
    protocol_error: bool = False
    error: Optional[str] = None
    preview_parts: List[str] = field(default_factory=list)

    def on_response(self, timer: Timer, status: int, headers: Any) -> None:
        timer.mark_ttfb()
        self.http_status = status
        self.headers = _pick_headers(headers)

    def on_event(self, timer: Timer, token: CancelToken) -> None:
        self.chunk_count += 1
        if self.chunk_count == 1:
            timer.mark_first_event()
            token.disarm(REASON_FIRST_EVENT_TIMEOUT)

    def preview(self) -> Optional[str]:
        if not self.preview_parts:
            return None
        return "".join(self.preview_parts)[:PREVIEW_CHARS]

    def signals(self, *, streaming: bool, hang_prone: bool = False) -> ProbeSignals:
        return ProbeSignals(
            streaming=streaming,
            abort_reason=self.abort_reason,
            http_status=self.http_status,
            chunk_count=self.chunk_count,
            done_received=self.done_received,
            body_ok=self.body_ok,
            network_error=self.network_error,
            protocol_error=self.protocol_error,
            hang_prone=hang_prone,
        )


def _finish(
    probe: str,
    state: _ProbeState,
    timer: Timer,
    payload_hash: str,
    *,
    streaming: bool,
    hang_prone: bool = False,
) -> ProbeResult:
    timings = timer.snapshot()
    outcome = classify_outcome(state.signals(streaming=streaming, hang_prone=hang_prone))
    result = ProbeResult(
        probe=probe,
        outcome=outcome,
        timings=timings,
        payload_hash=payload_hash,
        http_status=state.http_status,
        headers=state.headers,
        chunk_count=state.chunk_count if streaming else None,
        done_received=state.done_received if streaming else None,
        token_preview=state.preview(),
        error=truncate(state.error) if state.error else None,
    )
    log = logger.info if outcome == Outcome.OK else logger.warning
    log(
        "[%s] outcome=%s status=%s chunks=%s done=%s total=%sms%s",
        probe,
        outcome.value,
        state.http_status,
        result.chunk_count,
        result.done_received,
        timings.total_ms,
        f" error={result.error}" if result.error else "",
    )
    return result


def _record_delta(state: _ProbeState, data: str) -> None:
    # Malformed intermediate chunks are tolerated; only silence is diagnostic.
    try:
        parsed = json.loads(data)
    except ValueError:
        return
    if not isinstance(parsed, dict):
        return
    choices = parsed.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if isinstance(content, str) and content:
        state.preview_parts.append(content)


def _record_completion(state: _ProbeState, raw: bytes) -> None:
    try:
        data = json.loads(raw)
    except ValueError:
        state.protocol_error = True
        state.error = "Response body is not valid JSON"
        return
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices:
        state.error = "Response JSON missing 'choices' array"
        return
    state.body_ok = True
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str) and content:
        state.preview_parts.append(content)


async def _error_text(resp: httpx.Response) -> str:
    try:
        raw = await resp.aread()
    except httpx.HTTPError:
        return "(unable to read body)"
    return truncate(raw.decode("utf-8", errors="replace"), 300)


def _record_http_failure(state: _ProbeState, exc: Exception) -> None:
    if isinstance(exc, StreamCancelled):
        state.abort_reason = exc.reason
        state.error = str(exc)
    elif isinstance(exc, httpx.TimeoutException):
        state.abort_reason = REASON_ABORTED
        state.error = _describe(exc)
    else:
        state.network_error = True
        state.error = _describe(exc)


def _log_metadata(probe: str, model: str, metadata: Optional[MetadataResolver]) -> None:
    """Best-effort catalog lookup for the log; never affects the result."""
    if metadata is None:
        return
    try:
        resolved = metadata.resolve_model_metadata(model)
    except Exception:
        logger.debug("[%s] metadata lookup failed for %s", probe, model, exc_info=True)
        return
    if resolved is not None:
        logger.info(
            '[%s] catalog: alias="%s" id="%s" variants=%d',
            probe,
            resolved.alias,
            resolved.resolved_id,
            resolved.variant_count,
        )


async def probe_http_non_streaming(
    cfg: ProbeConfig,
    *,
    messages: Optional[Sequence[Dict[str, str]]] = None,
    max_tokens: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    metadata: Optional[MetadataResolver] = None,
) -> ProbeResult:
    """POST {base}/chat/completions with stream:false over a plain httpx client."""
    probe = PROBE_HTTP_NON_STREAMING
    url = join_url(cfg.base_url, "/chat/completions")
    body = encode_payload(
        make_payload(cfg.model, messages or PROBE_MESSAGES, stream=False, max_tokens=max_tokens or cfg.max_tokens)
    )
    payload_hash = hash_payload(body)
    timer = Timer()
    token = CancelToken()
    state = _ProbeState()
    logger.info("[%s] POST %s model=%s (payload hash: %s)", probe, url, cfg.model, payload_hash)
    _log_metadata(probe, cfg.model, metadata)

    async def request() -> None:
        async with httpx.AsyncClient(transport=transport, timeout=_http_timeout(cfg)) as client:
            async with client.stream(
                "POST", url, headers=_request_headers(cfg.api_key, stream=False), content=body
            ) as resp:
                state.on_response(timer, resp.status_code, resp.headers)
                if resp.is_error:
                    state.error = f"HTTP {resp.status_code}: {await _error_text(resp)}"
                    return
                raw = await resp.aread()
                token.close()
                _record_completion(state, raw)

    try:
        await run_with_timers(token, request(), [(cfg.request_timeout_ms, REASON_REQUEST_TIMEOUT)])
    except Exception as exc:
        _record_http_failure(state, exc)
    return _finish(probe, state, timer, payload_hash, streaming=False)


async def probe_http_streaming(
    cfg: ProbeConfig,
    *,
    messages: Optional[Sequence[Dict[str, str]]] = None,
    max_tokens: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    metadata: Optional[MetadataResolver] = None,
) -> ProbeResult:
    """
    POST {base}/chat/completions with stream:true and decode the SSE body by hand.

    Three timers race the request: overall, first byte (disarmed when headers
    arrive) and first event (disarmed on the first decoded event). Only
    `data: [DONE]` counts as a clean end of stream.
    """
    probe = PROBE_HTTP_STREAMING
    url = join_url(cfg.base_url, "/chat/completions")
    body = encode_payload(
        make_payload(cfg.model, messages or PROBE_MESSAGES, stream=True, max_tokens=max_tokens or cfg.max_tokens)
    )
    payload_hash = hash_payload(body)
    timer = Timer()
    token = CancelToken()
    state = _ProbeState()
    logger.info("[%s] POST %s stream=true model=%s (payload hash: %s)", probe, url, cfg.model, payload_hash)
    _log_metadata(probe, cfg.model, metadata)

    async def request() -> None:
        async with httpx.AsyncClient(transport=transport, timeout=_http_timeout(cfg)) as client:
            async with client.stream(
                "POST", url, headers=_request_headers(cfg.api_key, stream=True), content=body
            ) as resp:
                token.disarm(REASON_FIRST_BYTE_TIMEOUT)
                state.on_response(timer, resp.status_code, resp.headers)
                logger.info(
                    "[%s] headers: %s content-type=%s (ttfb %sms)",
                    probe,
                    resp.status_code,
                    resp.headers.get("content-type", "n/a"),
                    timer.ttfb_ms,
                )
                if resp.is_error:
                    token.disarm(REASON_FIRST_EVENT_TIMEOUT)
                    state.error = f"HTTP {resp.status_code}: {await _error_text(resp)}"
                    return

                async with aclosing(iter_sse_events(resp.aiter_bytes(), token)) as events:
                    async for event in events:
                        state.on_event(timer, token)
                        if state.chunk_count == 1:
                            logger.info("[%s] first event at %sms", probe, timer.first_event_ms)
                        if event.data == DONE_SENTINEL:
                            state.done_received = True
                            break
                        _record_delta(state, event.data)
                token.close()

    try:
        await run_with_timers(
            token,
            request(),
            [
                (cfg.request_timeout_ms, REASON_REQUEST_TIMEOUT),
                (cfg.first_byte_timeout_ms, REASON_FIRST_BYTE_TIMEOUT),
                (cfg.first_event_timeout_ms, REASON_FIRST_EVENT_TIMEOUT),
            ],
        )
    except Exception as exc:
        _record_http_failure(state, exc)
    return _finish(probe, state, timer, payload_hash, streaming=True)


# ----------------------------
# SDK probes
# ----------------------------

def sdk_deadline_s(cfg: ProbeConfig) -> float:
    """
    Timeout handed to the SDK client. It expires just before REQUEST_TIMEOUT,
    so a stalled SDK call reports its own timeout (HANG) instead of our tag.
    """
    ms = max(cfg.request_timeout_ms - SDK_DEADLINE_MARGIN_MS, cfg.request_timeout_ms // 2)
    return ms / 1000.0


def _sdk_client(cfg: ProbeConfig, transport: Optional[httpx.AsyncBaseTransport]) -> AsyncOpenAI:
    http_client = httpx.AsyncClient(transport=transport) if transport is not None else None
    return AsyncOpenAI(
        api_key=cfg.api_key or "unused",
        base_url=cfg.base_url,
        timeout=sdk_deadline_s(cfg),
        max_retries=0,
        http_client=http_client,
    )


def _record_sdk_failure(state: _ProbeState, exc: Exception) -> None:
    if isinstance(exc, StreamCancelled):
        state.abort_reason = exc.reason
        state.error = str(exc)
    elif isinstance(exc, (openai.APITimeoutError, httpx.TimeoutException)):
        # The SDK gave up on its own deadline; there is no reason tag to tell why.
        state.abort_reason = REASON_ABORTED
        state.error = _describe(exc)
    elif isinstance(exc, openai.APIStatusError):
        state.http_status = exc.status_code
        state.headers = _pick_headers(exc.response.headers)
        state.error = f"HTTP {exc.status_code}: {truncate(exc.message, 300)}"
    elif isinstance(exc, openai.APIConnectionError):
        state.network_error = True
        state.error = _describe(exc)
    elif isinstance(exc, openai.APIError):
        state.protocol_error = True
        state.error = _describe(exc)
    elif isinstance(exc, ValueError):
        # json.JSONDecodeError from parsing a malformed body
        state.protocol_error = True
        state.error = _describe(exc)
    else:
        state.network_error = True
        state.error = _describe(exc)


def _record_sdk_chunk(state: _ProbeState, data: str) -> None:
    try:
        chunk = ChatCompletionChunk.model_validate_json(data)
    except ValueError:
        logger.debug("skipping unparseable chunk: %s", truncate(data, 80))
        return
    if not chunk.choices:
        return
    content = chunk.choices[0].delta.content
    if content:
        state.preview_parts.append(content)


async def probe_sdk_non_streaming(
    cfg: ProbeConfig,
    *,
    messages: Optional[Sequence[Dict[str, str]]] = None,
    max_tokens: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    metadata: Optional[MetadataResolver] = None,
) -> ProbeResult:
    probe = PROBE_SDK_NON_STREAMING
    payload = make_payload(cfg.model, messages or PROBE_MESSAGES, stream=False, max_tokens=max_tokens or cfg.max_tokens)
    payload_hash = hash_payload(payload)
    timer = Timer()
    token = CancelToken()
    state = _ProbeState()
    logger.info(
        "[%s] openai SDK via %s provider=%s wire=%s model=%s (payload hash: %s)",
        probe,
        cfg.base_url,
        cfg.sdk_provider_type,
        cfg.sdk_wire_api,
        cfg.model,
        payload_hash,
    )
    _log_metadata(probe, cfg.model, metadata)

    async def request() -> None:
        client = _sdk_client(cfg, transport)
        try:
            raw = await client.chat.completions.with_raw_response.create(
                model=payload["model"],
                messages=payload["messages"],
                stream=False,
                max_tokens=payload["max_tokens"],
            )
            token.close()
            state.on_response(timer, raw.status_code, raw.headers)
            completion = raw.parse()
            choices = getattr(completion, "choices", None)
            if not choices:
                state.error = "Response missing 'choices'"
                return
            state.body_ok = True
            message = getattr(choices[0], "message", None)
            content = getattr(message, "content", None)
            if isinstance(content, str) and content:
                state.preview_parts.append(content)
        finally:
            await client.close()

    try:
        await run_with_timers(token, request(), [(cfg.request_timeout_ms, REASON_REQUEST_TIMEOUT)])
    except Exception as exc:
        _record_sdk_failure(state, exc)
    return _finish(probe, state, timer, payload_hash, streaming=False, hang_prone=True)


async def probe_sdk_streaming(
    cfg: ProbeConfig,
    *,
    messages: Optional[Sequence[Dict[str, str]]] = None,
    max_tokens: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    metadata: Optional[MetadataResolver] = None,
) -> ProbeResult:
    """
    chat.completions.create(stream=True) through the openai SDK.

    The SDK sends the request and maps error statuses. The body is decoded
    from `stream.response` rather than by iterating the AsyncStream, which
    drops `[DONE]` and gives up on the first chunk that is not valid JSON.
    Each event is validated as a `ChatCompletionChunk`; invalid ones still
    count but add nothing to the preview.
    """
    probe = PROBE_SDK_STREAMING
    payload = make_payload(cfg.model, messages or PROBE_MESSAGES, stream=True, max_tokens=max_tokens or cfg.max_tokens)
    payload_hash = hash_payload(payload)
    timer = Timer()
    token = CancelToken()
    state = _ProbeState()
    logger.info(
        "[%s] openai SDK streaming via %s provider=%s wire=%s model=%s (payload hash: %s)",
        probe,
        cfg.base_url,
        cfg.sdk_provider_type,
        cfg.sdk_wire_api,
        cfg.model,
        payload_hash,
    )
    _log_metadata(probe, cfg.model, metadata)

    async def request() -> None:
        client = _sdk_client(cfg, transport)
        try:
            stream = await client.chat.completions.create(
                model=payload["model"],
                messages=payload["messages"],
                stream=True,
                max_tokens=payload["max_tokens"],
            )
            token.disarm(REASON_FIRST_BYTE_TIMEOUT)
            state.on_response(timer, stream.response.status_code, stream.response.headers)
            try:
                async with aclosing(iter_sse_events(stream.response.aiter_bytes(), token)) as events:
                    async for event in events:
                        state.on_event(timer, token)
                        if state.chunk_count == 1:
                            logger.info("[%s] first chunk at %sms", probe, timer.first_event_ms)
                        if event.data == DONE_SENTINEL:
                            state.done_received = True
                            break
                        _record_sdk_chunk(state, event.data)
                token.close()
            finally:
                await stream.close()
        finally:
            await client.close()

    try:
        await run_with_timers(
            token,
            request(),
            [
                (cfg.request_timeout_ms, REASON_REQUEST_TIMEOUT),
                (cfg.first_byte_timeout_ms, REASON_FIRST_BYTE_TIMEOUT),
                (cfg.first_event_timeout_ms, REASON_FIRST_EVENT_TIMEOUT),
            ],
        )
    except Exception as exc:
        _record_sdk_failure(state, exc)
    return _finish(probe, state, timer, payload_hash, streaming=True, hang_prone=True)


ProbeFn = Callable[..., Awaitable[ProbeResult]]

DEFAULT_PROBES: Tuple[Tuple[str, ProbeFn], ...] = (
    (PROBE_HTTP_NON_STREAMING, probe_http_non_streaming),
    (PROBE_HTTP_STREAMING, probe_http_streaming),
    (PROBE_SDK_NON_STREAMING, probe_sdk_non_streaming),
    (PROBE_SDK_STREAMING, probe_sdk_streaming),
)


# ----------------------------
# Runners
# ----------------------------

def _unhandled_result(probe: str, exc: Exception) -> ProbeResult:
    return ProbeResult(
        probe=probe,
        outcome=Outcome.ERROR,
        timings=Timer().snapshot(),
        payload_hash="unknown",
        error=_describe(exc),
    )


async def run_diagnostics(
    cfg: ProbeConfig,
    *,
    probes: Optional[Sequence[Tuple[str, ProbeFn]]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    metadata: Optional[MetadataResolver] = None,
    on_probe_start: Optional[OnProbeStart] = None,
    on_probe_done: Optional[OnProbeDone] = None,
) -> DiagnosticReport:
    """
    Run each probe once against cfg.model, strictly one after another.
    Returns: DiagnosticReport with results in probe order.
    """
    results: List[ProbeResult] = []
    for name, fn in probes or DEFAULT_PROBES:
        if on_probe_start:
            await on_probe_start(name)
        try:
            result = await fn(cfg, transport=transport, metadata=metadata)
        except Exception as e:
            logger.exception("[%s] unhandled error", name)
            result = _unhandled_result(name, e)
        results.append(result)
        if on_probe_done:
            await on_probe_done(result)
    return DiagnosticReport(timestamp=now_utc_iso(), config=cfg.redacted(), probes=tuple(results))


async def run_model_benchmark(
    cfg: ProbeConfig,
    model: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ModelBenchmarkEntry:
    model_cfg = replace(cfg, model=model)
    non_streaming = await probe_http_non_streaming(
        model_cfg, messages=BENCHMARK_MESSAGES, max_tokens=BENCHMARK_MAX_TOKENS, transport=transport
    )
    streaming = await probe_http_streaming(
        model_cfg, messages=BENCHMARK_MESSAGES, max_tokens=BENCHMARK_MAX_TOKENS, transport=transport
    )
    return ModelBenchmarkEntry.from_results(model, non_streaming, streaming)


async def run_benchmark_suite(
    cfg: ProbeConfig,
    models: Sequence[str],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    on_model_start: Optional[OnModelStart] = None,
    on_model_done: Optional[OnModelDone] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> BenchmarkReport:
    """
    Non-streaming + streaming probe per model, sequentially. Models are never
    probed concurrently: on a single-tenant local service contention would
    look like a streaming failure.
    """
    entries: List[ModelBenchmarkEntry] = []
    for i, model in enumerate(models):
        if should_stop and should_stop():
            logger.info("Stop requested; %d of %d models benchmarked", i, len(models))
            break
        if on_model_start:
            await on_model_start(i, model)
        entry = await run_model_benchmark(cfg, model, transport=transport)
        entries.append(entry)
        if on_model_done:
            await on_model_done(i, entry)
    config = {k: v for k, v in cfg.redacted().items() if k != "model"}
    return BenchmarkReport(timestamp=now_utc_iso(), config=config, entries=tuple(entries))


# ----------------------------
# Persistence
# ----------------------------

def write_report(report: Union[DiagnosticReport, BenchmarkReport], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def benchmark_csv_row(entry: ModelBenchmarkEntry, timestamp_utc: str) -> Dict[str, Any]:
    ns = entry.non_streaming_result
    s = entry.streaming_result
    return {
        "timestamp_utc": timestamp_utc,
        "model": entry.model,
        "verdict": entry.verdict.value,
        "supports_streaming": entry.supports_streaming,
        "nonstream_outcome": ns.outcome.value,
        "nonstream_total_ms": ns.timings.total_ms,
        "stream_outcome": s.outcome.value,
        "stream_total_ms": s.timings.total_ms,
        "stream_ttfb_ms": s.timings.ttfb_ms if s.timings.ttfb_ms is not None else "",
        "stream_first_event_ms": s.timings.first_event_ms if s.timings.first_event_ms is not None else "",
        "stream_chunks": s.chunk_count if s.chunk_count is not None else "",
        "stream_done": bool(s.done_received),
        "stream_error": s.error or "",
    }


def append_csv(path: Path, row_dict: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    write_header = not path.exists() or path.stat().st_size == 0
    with path.open("a", newline="", encoding="utf-8") as f:
        # preserve deterministic column order
        writer = csv.DictWriter(f, fieldnames=list(row_dict.keys()))
        if write_header:
            writer.writeheader()
        writer.writerow(row_dict)
