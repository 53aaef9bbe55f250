import csv
import json

import httpx
import pytest

from probe_lib import (
    BENCHMARK_MAX_TOKENS,
    Outcome,
    ProbeResult,
    Timer,
    Verdict,
    append_csv,
    benchmark_csv_row,
    run_benchmark_suite,
    run_diagnostics,
    write_report,
)
from tests.conftest import SSE_HEADERS, chat_server, completion_body, drip, sse_stream


async def ok_completion(request):
    return httpx.Response(200, json=completion_body("1\n2\n3"))


async def ok_stream(request):
    return httpx.Response(200, headers=SSE_HEADERS, content=drip(sse_stream(["1", "\n2"])))


def _fake_probe(name, calls, outcome=Outcome.OK):
    async def probe(cfg, *, transport=None, metadata=None):
        calls.append(name)
        return ProbeResult(probe=name, outcome=outcome, timings=Timer().snapshot(), payload_hash="f" * 16)

    return probe


@pytest.mark.asyncio
async def test_diagnostics_run_in_order_and_report_callbacks(cfg):
    calls, done = [], []
    probes = [(n, _fake_probe(n, calls)) for n in ("a", "b", "c")]

    async def on_done(result):
        done.append(result.probe)

    report = await run_diagnostics(cfg, probes=probes, on_probe_done=on_done)

    assert calls == ["a", "b", "c"]
    assert done == ["a", "b", "c"]
    assert [p.probe for p in report.probes] == ["a", "b", "c"]
    assert report.passed


@pytest.mark.asyncio
async def test_diagnostics_record_unexpected_raise_as_error(cfg):
    calls = []

    async def explode(cfg, *, transport=None, metadata=None):
        raise RuntimeError("kaboom")

    probes = [("a", _fake_probe("a", calls)), ("boom", explode), ("c", _fake_probe("c", calls))]
    report = await run_diagnostics(cfg, probes=probes)

    assert calls == ["a", "c"]
    failed = report.probes[1]
    assert failed.outcome == Outcome.ERROR
    assert failed.payload_hash == "unknown"
    assert "kaboom" in failed.error
    assert not report.passed
    assert report.summary == "FAILED"


@pytest.mark.asyncio
async def test_full_diagnostics_against_healthy_server(cfg):
    transport = chat_server(non_stream=ok_completion, stream=ok_stream)
    report = await run_diagnostics(cfg, transport=transport)

    assert [p.probe for p in report.probes] == [
        "http-non-streaming",
        "http-streaming",
        "sdk-non-streaming",
        "sdk-streaming",
    ]
    assert all(p.outcome == Outcome.OK for p in report.probes), [p.to_dict() for p in report.probes]

    d = report.to_dict()
    assert d["passed"] is True
    assert d["summary"] == "ALL_PASSED"
    assert "apiKey" not in d["config"]
    assert "test-key" not in json.dumps(d)


@pytest.mark.asyncio
async def test_streaming_hang_summary(fast_cfg):
    async def stall(request):
        return httpx.Response(200, headers=SSE_HEADERS, content=drip([], stall_s=5))

    transport = chat_server(non_stream=ok_completion, stream=stall)
    report = await run_diagnostics(fast_cfg, transport=transport)

    outcomes = {p.probe: p.outcome for p in report.probes}
    assert outcomes["http-non-streaming"] == Outcome.OK
    assert outcomes["http-streaming"] == Outcome.NO_FIRST_EVENT
    assert outcomes["sdk-streaming"] == Outcome.NO_FIRST_EVENT
    assert report.summary == "STREAMING_HANG"


def _per_model_server(stalling_models, seen):
    async def handler(request):
        payload = json.loads(request.content)
        seen.append(payload)
        if not payload["stream"]:
            return httpx.Response(200, json=completion_body("1"))
        if payload["model"] in stalling_models:
            return httpx.Response(200, headers=SSE_HEADERS, content=drip([], stall_s=5))
        return httpx.Response(200, headers=SSE_HEADERS, content=drip(sse_stream(["1"])))

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_benchmark_suite_verdicts(fast_cfg):
    seen, started, finished = [], [], []

    async def on_start(i, model):
        started.append((i, model))

    async def on_done(i, entry):
        finished.append((i, entry.model))

    report = await run_benchmark_suite(
        fast_cfg,
        ["good", "stuck"],
        transport=_per_model_server({"stuck"}, seen),
        on_model_start=on_start,
        on_model_done=on_done,
    )

    assert started == [(0, "good"), (1, "stuck")]
    assert finished == [(0, "good"), (1, "stuck")]
    good, stuck = report.entries
    assert good.verdict == Verdict.BOTH_OK and good.supports_streaming
    assert stuck.verdict == Verdict.STREAM_ONLY_FAIL and not stuck.supports_streaming
    assert stuck.streaming_result.outcome == Outcome.NO_FIRST_EVENT

    # per-model requests use the benchmark prompt, never the diagnostic one
    assert [p["model"] for p in seen] == ["good", "good", "stuck", "stuck"]
    assert all(p["max_tokens"] == BENCHMARK_MAX_TOKENS for p in seen)
    assert "Count from 1 to 10" in seen[0]["messages"][0]["content"]

    d = report.to_dict()
    assert d["totalModels"] == 2
    assert d["modelsWithStreaming"] == 1
    assert d["modelsWithoutStreaming"] == 1
    assert "model" not in d["config"]
    assert d["entries"][1]["verdict"] == "STREAM_ONLY_FAIL"
    assert not report.all_streaming


@pytest.mark.asyncio
async def test_benchmark_suite_stops_between_models(cfg):
    seen = []
    stop = {"now": False}

    async def on_done(i, entry):
        stop["now"] = True

    report = await run_benchmark_suite(
        cfg,
        ["m1", "m2", "m3"],
        transport=_per_model_server(set(), seen),
        on_model_done=on_done,
        should_stop=lambda: stop["now"],
    )
    assert [e.model for e in report.entries] == ["m1"]


@pytest.mark.asyncio
async def test_write_report_and_csv(cfg, tmp_path):
    report = await run_benchmark_suite(cfg, ["m1"], transport=_per_model_server(set(), []))

    out = write_report(report, tmp_path / "nested" / "benchmark.json")
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["entries"][0]["model"] == "m1"
    assert data["entries"][0]["streamingResult"]["doneReceived"] is True

    csv_path = tmp_path / "rows.csv"
    row = benchmark_csv_row(report.entries[0], "2026-01-01T00:00:00Z")
    append_csv(csv_path, row)
    append_csv(csv_path, row)
    with csv_path.open(newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 2
    assert rows[0]["model"] == "m1"
    assert rows[0]["verdict"] == "BOTH_OK"
