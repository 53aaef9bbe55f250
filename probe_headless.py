from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from probe_discovery import (
    CatalogError,
    ServiceHandle,
    detect_service,
    format_model_table,
    resolve_model_id,
    version_info,
)
from probe_lib import (
    BenchmarkReport,
    DiagnosticReport,
    ModelBenchmarkEntry,
    Outcome,
    ProbeConfig,
    ProbeResult,
    append_csv,
    benchmark_csv_row,
    now_utc_iso,
    run_benchmark_suite,
    run_diagnostics,
    write_report,
)

logger = logging.getLogger(__name__)

_STOP_REQUESTED = False

EXIT_OK = 0
EXIT_PROBE_FAILED = 1
EXIT_FATAL = 2
EXIT_STOPPED = 130

_INT_SETTINGS = {
    "request_timeout_ms": ("REQUEST_TIMEOUT_MS", 30_000),
    "first_byte_timeout_ms": ("FIRST_BYTE_TIMEOUT_MS", 10_000),
    "first_event_timeout_ms": ("FIRST_EVENT_TIMEOUT_MS", 15_000),
    "max_tokens": ("MAX_TOKENS", 256),
}
_STR_SETTINGS = {
    "base_url": ("BASE_URL", ""),
    "model": ("MODEL", ""),
    "api_key": ("API_KEY", "unused"),
    "sdk_provider_type": ("SDK_PROVIDER_TYPE", "openai"),
    "sdk_wire_api": ("SDK_WIRE_API", "completions"),
    "status_cmd": ("SERVICE_STATUS_CMD", ""),
}

_OUTCOME_MARK = {
    Outcome.OK: "PASS",
    Outcome.FAIL: "FAIL",
    Outcome.TIMEOUT: "TIMEOUT",
    Outcome.NO_FIRST_BYTE: "NO_FIRST_BYTE",
    Outcome.NO_FIRST_EVENT: "NO_FIRST_EVENT",
    Outcome.HANG: "HANG",
    Outcome.ERROR: "ERROR",
}


def _say(msg: str) -> None:
    print(f"[{now_utc_iso()}] {msg}", flush=True)


def _request_stop(signum: int, _frame: Any) -> None:
    global _STOP_REQUESTED
    _STOP_REQUESTED = True
    _say(f"Received signal {signum}; will stop after current model.")


def _register_signals() -> None:
    for name in ("SIGINT", "SIGTERM", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            signal.signal(sig, _request_stop)
        except (OSError, ValueError):
            logger.debug("Cannot install handler for %s", name)


# ----------------------------
# Configuration
# ----------------------------

def _load_config(path: Path) -> Dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Config {path} must contain a JSON object")
    unknown = [k for k in data if k not in _INT_SETTINGS and k not in _STR_SETTINGS and k != "models"]
    if unknown:
        raise ValueError(f"Config has unknown keys: {', '.join(sorted(unknown))}")
    return data


def _as_int(key: str, raw: Any) -> int:
    try:
        val = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None
    if val <= 0:
        raise ValueError(f"{key} must be positive, got {val}")
    return val


def resolve_settings(
    args: argparse.Namespace,
    env: Mapping[str, str],
    file_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Layered settings: built-in defaults < environment < --config file < flags.
    Numbers are validated here so a bad value fails before any probe runs.
    """
    file_config = file_config or {}
    settings: Dict[str, Any] = {}
    for key, (env_key, default) in {**_STR_SETTINGS, **_INT_SETTINGS}.items():
        val: Any = default
        if env.get(env_key):
            val = env[env_key]
        if key in file_config:
            val = file_config[key]
        flag = getattr(args, key, None)
        if flag not in (None, ""):
            val = flag
        settings[key] = val

    for key in _INT_SETTINGS:
        settings[key] = _as_int(key, settings[key])
    settings["base_url"] = str(settings["base_url"]).strip().rstrip("/")
    settings["model"] = str(settings["model"]).strip()

    models = getattr(args, "models", None) or file_config.get("models") or []
    if isinstance(models, str):
        models = models.split(",")
    settings["models"] = [str(m).strip() for m in models if str(m).strip()]
    return settings


def probe_config_from_settings(settings: Dict[str, Any], base_url: str, model: str) -> ProbeConfig:
    return ProbeConfig(
        base_url=base_url,
        model=model,
        api_key=settings["api_key"],
        request_timeout_ms=settings["request_timeout_ms"],
        first_byte_timeout_ms=settings["first_byte_timeout_ms"],
        first_event_timeout_ms=settings["first_event_timeout_ms"],
        max_tokens=settings["max_tokens"],
        sdk_provider_type=settings["sdk_provider_type"],
        sdk_wire_api=settings["sdk_wire_api"],
    )


def _resolve_base_url(settings: Dict[str, Any]) -> Optional[str]:
    if settings["base_url"]:
        return settings["base_url"]
    _say("BASE_URL not set; detecting local service...")
    info = detect_service(command=settings["status_cmd"] or None)
    if not info.running or not info.base_url:
        print(f"Could not detect a running service: {info.raw_output or 'no output'}", file=sys.stderr)
        return None
    _say(f"Detected service at {info.base_url}")
    return info.base_url


# ----------------------------
# Printers
# ----------------------------

def _print_banner(settings: Dict[str, Any]) -> None:
    versions = version_info(settings["status_cmd"] or None)
    parts = [f"{k}={v}" for k, v in versions.items() if v]
    _say("streamprobe " + " ".join(parts))


def _probe_line(result: ProbeResult) -> str:
    t = result.timings
    bits = [
        f"{_OUTCOME_MARK[result.outcome]:<14}",
        f"{result.probe:<20}",
        f"total={t.total_ms}ms",
    ]
    if t.ttfb_ms is not None:
        bits.append(f"ttfb={t.ttfb_ms}ms")
    if t.first_event_ms is not None:
        bits.append(f"first_event={t.first_event_ms}ms")
    if result.chunk_count is not None:
        bits.append(f"chunks={result.chunk_count}")
    if result.http_status is not None:
        bits.append(f"status={result.http_status}")
    if result.error:
        bits.append(f"error={result.error}")
    return " ".join(bits)


def print_diagnostic_summary(report: DiagnosticReport) -> None:
    print("", flush=True)
    print(f"Diagnostics for {report.config.get('model')} @ {report.config.get('baseUrl')}", flush=True)
    for result in report.probes:
        print("  " + _probe_line(result), flush=True)
        if result.token_preview:
            print(f"      preview: {result.token_preview[:80]!r}", flush=True)
    print(f"Summary: {report.summary}", flush=True)


def print_benchmark_summary(report: BenchmarkReport) -> None:
    print("", flush=True)
    print(f"  {'Model':<40} {'Non-stream':<15} {'Stream':<15} Verdict", flush=True)
    print("  " + "─" * 84, flush=True)
    for e in report.entries:
        print(
            f"  {e.model:<40} {e.non_streaming_result.outcome.value:<15} "
            f"{e.streaming_result.outcome.value:<15} {e.verdict.value}",
            flush=True,
        )
    total = len(report.entries)
    print(
        f"Streaming OK: {report.models_with_streaming}/{total}; "
        f"without streaming: {total - report.models_with_streaming}",
        flush=True,
    )


# ----------------------------
# Commands
# ----------------------------

async def run_diagnose(settings: Dict[str, Any], out_path: Path) -> int:
    base_url = _resolve_base_url(settings)
    if not base_url:
        return EXIT_FATAL

    async with ServiceHandle(base_url, settings["api_key"]) as service:
        model = settings["model"]
        try:
            catalog = await service.models()
        except CatalogError as e:
            if not model:
                print(f"Fatal: cannot pick a model: {e}", file=sys.stderr)
                return EXIT_FATAL
            _say(f"Catalog unavailable ({e}); using model as given")
            catalog = []

        if not model:
            if not catalog:
                print("Fatal: catalog is empty and MODEL is not set", file=sys.stderr)
                return EXIT_FATAL
            model = catalog[0].id
            _say(f"MODEL not set; using first catalog model {model}")
        elif catalog:
            model, changed = resolve_model_id(model, catalog)
            if changed:
                _say(f"Resolved model {settings['model']} -> {model}")

        cfg = probe_config_from_settings(settings, base_url, model)
        _say(f"Diagnostics started. base_url={base_url} model={model}")

        async def on_probe_start(name: str) -> None:
            _say(f"probe {name} ...")

        async def on_probe_done(result: ProbeResult) -> None:
            _say(f"probe {result.probe} -> {result.outcome.value} total={result.timings.total_ms}ms")

        report = await run_diagnostics(
            cfg,
            metadata=service,
            on_probe_start=on_probe_start,
            on_probe_done=on_probe_done,
        )

    write_report(report, out_path)
    print_diagnostic_summary(report)
    _say(f"Report written to {out_path}")
    return EXIT_OK if report.passed else EXIT_PROBE_FAILED


async def run_benchmark(settings: Dict[str, Any], out_path: Path, csv_path: Optional[Path]) -> int:
    base_url = _resolve_base_url(settings)
    if not base_url:
        return EXIT_FATAL

    async with ServiceHandle(base_url, settings["api_key"]) as service:
        try:
            catalog = await service.models()
        except CatalogError as e:
            print(f"Fatal: {e}", file=sys.stderr)
            return EXIT_FATAL

    models: List[str] = []
    for requested in settings["models"]:
        model_id, _changed = resolve_model_id(requested, catalog)
        models.append(model_id)
    if not models:
        models = [m.id for m in catalog]
    models = list(dict.fromkeys(models))
    if not models:
        print("Fatal: no models to benchmark", file=sys.stderr)
        return EXIT_FATAL

    cfg = probe_config_from_settings(settings, base_url, model="")
    started_at = time.time()
    _say(f"Benchmark started. models={len(models)} base_url={base_url}")

    async def on_model_start(i: int, model: str) -> None:
        _say(f"[{i + 1}/{len(models)}] Starting model={model}")

    async def on_model_done(i: int, entry: ModelBenchmarkEntry) -> None:
        if csv_path is not None:
            append_csv(csv_path, benchmark_csv_row(entry, now_utc_iso()))
        _say(
            f"[{i + 1}/{len(models)}] Done model={entry.model} "
            f"nonstream={entry.non_streaming_result.outcome.value} "
            f"stream={entry.streaming_result.outcome.value} verdict={entry.verdict.value}"
        )

    report = await run_benchmark_suite(
        cfg,
        models,
        on_model_start=on_model_start,
        on_model_done=on_model_done,
        should_stop=lambda: _STOP_REQUESTED,
    )

    write_report(report, out_path)
    print_benchmark_summary(report)
    elapsed = time.time() - started_at
    _say(f"Benchmark complete. models_done={len(report.entries)}/{len(models)}, elapsed={elapsed:.1f}s")
    _say(f"Report written to {out_path}")

    if len(report.entries) < len(models):
        return EXIT_STOPPED
    return EXIT_OK if report.all_streaming else EXIT_PROBE_FAILED


async def run_models(settings: Dict[str, Any]) -> int:
    base_url = _resolve_base_url(settings)
    if not base_url:
        return EXIT_FATAL
    async with ServiceHandle(base_url, settings["api_key"]) as service:
        try:
            catalog = await service.models()
        except CatalogError as e:
            print(f"Fatal: {e}", file=sys.stderr)
            return EXIT_FATAL
    print(format_model_table(catalog), flush=True)
    return EXIT_OK


# ----------------------------
# Entry point
# ----------------------------

def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help="JSON file with settings (overrides environment)")
    p.add_argument("--base-url", dest="base_url", help="Service base URL including /v1")
    p.add_argument("--api-key", dest="api_key")
    p.add_argument("--request-timeout-ms", dest="request_timeout_ms", type=int)
    p.add_argument("--first-byte-timeout-ms", dest="first_byte_timeout_ms", type=int)
    p.add_argument("--first-event-timeout-ms", dest="first_event_timeout_ms", type=int)
    p.add_argument("--max-tokens", dest="max_tokens", type=int)
    p.add_argument("--status-cmd", dest="status_cmd", help="Command that prints the service status")
    p.add_argument("-v", "--verbose", action="store_true", help="Log probe internals")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="streamprobe",
        description="Diagnose streaming behavior of an OpenAI-compatible chat endpoint",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_diag = sub.add_parser("diagnose", help="Run the four probes against one model")
    _add_common_args(p_diag)
    p_diag.add_argument("--model")
    p_diag.add_argument("--sdk-provider-type", dest="sdk_provider_type")
    p_diag.add_argument("--sdk-wire-api", dest="sdk_wire_api")
    p_diag.add_argument("--out", default="report.json")

    p_bench = sub.add_parser("benchmark", help="Streaming vs non-streaming for every catalog model")
    _add_common_args(p_bench)
    p_bench.add_argument("--models", help="Comma-separated subset of models (default: whole catalog)")
    p_bench.add_argument("--out", default="benchmark-report.json")
    p_bench.add_argument("--csv", help="Append one row per model to this CSV file")

    p_models = sub.add_parser("models", help="List the service's model catalog")
    _add_common_args(p_models)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        file_config: Dict[str, Any] = {}
        if args.config:
            cfg_path = Path(args.config).expanduser().resolve()
            if not cfg_path.exists():
                print(f"Config not found: {cfg_path}", file=sys.stderr)
                return EXIT_FATAL
            file_config = _load_config(cfg_path)
        settings = resolve_settings(args, os.environ, file_config)
        _print_banner(settings)

        if args.command == "diagnose":
            return asyncio.run(run_diagnose(settings, Path(args.out)))
        if args.command == "benchmark":
            _register_signals()
            csv_path = Path(args.csv) if args.csv else None
            return asyncio.run(run_benchmark(settings, Path(args.out), csv_path))
        return asyncio.run(run_models(settings))
    except Exception as exc:
        logger.debug("Fatal error", exc_info=True)
        print(f"Fatal: {type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    raise SystemExit(main())
