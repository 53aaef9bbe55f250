from __future__ import annotations

import argparse
import os
import time
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from rich.text import Text
from textual import on
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import (
    Button,
    DataTable,
    Footer,
    Header,
    Label,
    LoadingIndicator,
    RichLog,
    SelectionList,
    Static,
)

from probe_discovery import CatalogError, ServiceHandle, detect_service
from probe_headless import probe_config_from_settings, resolve_settings
from probe_lib import (
    ModelBenchmarkEntry,
    Outcome,
    ProbeResult,
    Verdict,
    append_csv,
    benchmark_csv_row,
    now_utc_iso,
    run_benchmark_suite,
    run_diagnostics,
    write_report,
)

load_dotenv()


class StreamProbeTUI(App):
    CSS = """
    Screen { layout: vertical; }
    #setup { height: 1fr; border: solid green; padding: 1; }
    #model_row { height: 10; }
    #results { height: 1fr; }
    #log { height: 8; }
    DataTable { height: 1fr; }
    .hidden { display: none; }
    """

    BINDINGS = [("q", "quit", "Quit"), ("s", "stop", "Stop after current model")]

    def __init__(self, settings: Dict[str, object]):
        super().__init__()
        self.settings = settings
        self.base_url: str = str(settings["base_url"])
        self.benchmark_json = Path(os.getenv("BENCHMARK_REPORT", "benchmark-report.json"))
        self.diagnostic_json = Path(os.getenv("DIAGNOSTIC_REPORT", "report.json"))
        self.benchmark_csv = Path(os.getenv("BENCHMARK_CSV", "benchmark.csv"))

        self.service: Optional[ServiceHandle] = None
        self.models: List[str] = []
        self.row_keys: Dict[str, str] = {}
        self._stop_requested = False
        self._busy = False
        self.table_col_keys = {
            "model": "model",
            "state": "state",
            "nonstream": "nonstream",
            "stream": "stream",
            "ttfb": "ttfb",
            "first_event": "first_event",
            "chunks": "chunks",
            "verdict": "verdict",
            "updated": "last_update",
        }

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        with Vertical(id="setup"):
            yield Label(f"BASE_URL: {self.base_url or '(auto-detect)'}", id="base_url_label")
            yield Label("Model selection (default all):")
            with Horizontal(id="model_row"):
                yield SelectionList(id="model_select")
            with Horizontal(id="controls"):
                yield Button("Select All", id="select_all")
                yield Button("Select None", id="select_none")
                yield Button("Run Benchmark", id="run", variant="success")
                yield Button("Diagnose Highlighted", id="diagnose", variant="primary")
            yield Static("Status: idle", id="status_text")
            with Horizontal(id="load_models_row", classes="hidden"):
                yield LoadingIndicator(id="load_models_spinner")
                yield Label("Loading models…")

        with Vertical(id="results"):
            table = DataTable(id="bench_table")
            table.add_column("Model", key=self.table_col_keys["model"])
            table.add_column("State", key=self.table_col_keys["state"])
            table.add_column("Non-stream", key=self.table_col_keys["nonstream"])
            table.add_column("Stream", key=self.table_col_keys["stream"])
            table.add_column("TTFB", key=self.table_col_keys["ttfb"])
            table.add_column("First event", key=self.table_col_keys["first_event"])
            table.add_column("Chunks", key=self.table_col_keys["chunks"])
            table.add_column("Verdict", key=self.table_col_keys["verdict"])
            table.add_column("Last update", key=self.table_col_keys["updated"])
            yield table
            yield RichLog(id="log", wrap=True, highlight=False, max_lines=500)
        yield Footer()

    # ---- helpers ----

    def _set_status(self, text: str) -> None:
        self.query_one("#status_text", Static).update(f"Status: {text}")

    def _log_message(self, message: str) -> None:
        msg = message.strip().replace("\n", " ")
        if len(msg) > 300:
            msg = msg[:297] + "..."
        self.query_one("#log", RichLog).write(f"[{now_utc_iso()}] {msg}")

    def _set_loading_models(self, loading: bool) -> None:
        row = self.query_one("#load_models_row", Horizontal)
        if loading:
            row.remove_class("hidden")
        else:
            row.add_class("hidden")

    def _selected_models(self) -> List[str]:
        return [str(v) for v in self.query_one("#model_select", SelectionList).selected]

    def _highlighted_model(self) -> Optional[str]:
        sel = self.query_one("#model_select", SelectionList)
        if sel.highlighted is None:
            return None
        return str(sel.get_option_at_index(sel.highlighted).value)

    def _safe_update_cell(self, row_key: str, column: str, value: object) -> None:
        table = self.query_one("#bench_table", DataTable)
        try:
            table.update_cell(row_key, self.table_col_keys[column], value)
        except Exception as e:
            self.log.warning("Skipping update for row=%s col=%s: %s", row_key, column, e)

    def _outcome_render(self, outcome: Outcome) -> object:
        if outcome == Outcome.OK:
            return Text(outcome.value, style="green")
        if outcome in (Outcome.HANG, Outcome.NO_FIRST_EVENT, Outcome.NO_FIRST_BYTE):
            return Text(outcome.value, style="bold yellow")
        return Text(outcome.value, style="bold red")

    def _verdict_render(self, verdict: Verdict) -> object:
        if verdict == Verdict.BOTH_OK:
            return Text(verdict.value, style="green")
        if verdict == Verdict.STREAM_ONLY_FAIL:
            return Text(verdict.value, style="bold yellow")
        return Text(verdict.value, style="bold red")

    def _state_render(self, state: str) -> object:
        if state == "running":
            return Text(state, style="yellow")
        if state == "done":
            return Text(state, style="green")
        if state == "pending":
            return Text(state, style="dim")
        return state

    def _refresh_table(self, models: List[str]) -> None:
        table = self.query_one("#bench_table", DataTable)
        table.clear()
        self.row_keys.clear()
        for m in models:
            table.add_row(m, self._state_render("pending"), "", "", "", "", "", "", "", key=m)
            self.row_keys[m] = m

    # ---- lifecycle ----

    async def on_mount(self) -> None:
        self.run_worker(self.load_models(), name="load_models", group="catalog", exclusive=True)

    async def on_unmount(self) -> None:
        if self.service is not None:
            await self.service.aclose()

    async def load_models(self) -> None:
        self._set_loading_models(True)
        try:
            if not self.base_url:
                self._set_status("Detecting service…")
                info = detect_service(command=str(self.settings["status_cmd"]) or None)
                if not info.base_url:
                    self._set_status("No running service detected; set BASE_URL")
                    self._log_message(f"Service detection failed: {info.raw_output}")
                    return
                self.base_url = info.base_url
                self.query_one("#base_url_label", Label).update(f"BASE_URL: {self.base_url}")

            self._set_status("Fetching models…")
            self.service = await ServiceHandle(self.base_url, str(self.settings["api_key"])).open()
            try:
                catalog = await self.service.models()
            except CatalogError as e:
                self.log.error("Failed to fetch models", exc_info=True)
                self._set_status(f"Failed to fetch models: {e}")
                self._log_message(f"Failed to fetch models: {e}")
                return
        finally:
            self._set_loading_models(False)

        self.models = list(dict.fromkeys(m.id for m in catalog))
        sel = self.query_one("#model_select", SelectionList)
        sel.clear_options()
        sel.add_options([(m, m, True) for m in self.models])
        self._refresh_table(self.models)
        self._set_status(f"Loaded {len(self.models)} models")
        self._log_message(f"Loaded {len(self.models)} models from {self.base_url}")

    # ---- controls ----

    @on(Button.Pressed, "#select_all")
    def select_all(self) -> None:
        self.query_one("#model_select", SelectionList).select_all()

    @on(Button.Pressed, "#select_none")
    def select_none(self) -> None:
        self.query_one("#model_select", SelectionList).deselect_all()

    @on(SelectionList.SelectedChanged, "#model_select")
    def on_model_selection_changed(self) -> None:
        if not self._busy:
            self._refresh_table(self._selected_models())

    def action_stop(self) -> None:
        if self._busy:
            self._stop_requested = True
            self._set_status("Stop requested; finishing current model…")

    @on(Button.Pressed, "#run")
    def run_pressed(self) -> None:
        models = self._selected_models()
        if self._busy:
            return
        if not self.base_url or self.service is None:
            self._set_status("Service not connected.")
            return
        if not models:
            self._set_status("No models selected.")
            return
        self._busy = True
        self._stop_requested = False
        self.run_worker(self._run_benchmark(models), name="benchmark", group="probes", exclusive=True)

    @on(Button.Pressed, "#diagnose")
    def diagnose_pressed(self) -> None:
        model = self._highlighted_model()
        if self._busy:
            return
        if not self.base_url or self.service is None:
            self._set_status("Service not connected.")
            return
        if not model:
            self._set_status("No model highlighted.")
            return
        self._busy = True
        self.run_worker(self._run_diagnostics(model), name="diagnostics", group="probes", exclusive=True)

    # ---- workers ----

    async def _run_benchmark(self, models: List[str]) -> None:
        self._refresh_table(models)
        self._set_status(f"Benchmarking {len(models)} models…")
        started = time.time()

        async def on_model_start(i: int, model: str) -> None:
            self._safe_update_cell(model, "state", self._state_render("running"))
            self._set_status(f"[{i + 1}/{len(models)}] {model}")

        async def on_model_done(i: int, entry: ModelBenchmarkEntry) -> None:
            s = entry.streaming_result
            self._safe_update_cell(entry.model, "state", self._state_render("done"))
            self._safe_update_cell(entry.model, "nonstream", self._outcome_render(entry.non_streaming_result.outcome))
            self._safe_update_cell(entry.model, "stream", self._outcome_render(s.outcome))
            self._safe_update_cell(entry.model, "ttfb", f"{s.timings.ttfb_ms}ms" if s.timings.ttfb_ms is not None else "--")
            self._safe_update_cell(
                entry.model,
                "first_event",
                f"{s.timings.first_event_ms}ms" if s.timings.first_event_ms is not None else "--",
            )
            self._safe_update_cell(entry.model, "chunks", str(s.chunk_count or 0))
            self._safe_update_cell(entry.model, "verdict", self._verdict_render(entry.verdict))
            self._safe_update_cell(entry.model, "updated", time.strftime("%H:%M:%S"))
            append_csv(self.benchmark_csv, benchmark_csv_row(entry, now_utc_iso()))
            if s.error:
                self._log_message(f"{entry.model}: stream {s.outcome.value}: {s.error}")

        try:
            cfg = probe_config_from_settings(self.settings, self.base_url, model="")
            report = await run_benchmark_suite(
                cfg,
                models,
                on_model_start=on_model_start,
                on_model_done=on_model_done,
                should_stop=lambda: self._stop_requested,
            )
            write_report(report, self.benchmark_json)
            self._set_status(
                f"Complete: streaming OK for {report.models_with_streaming}/{len(report.entries)} models "
                f"in {time.time() - started:.1f}s"
            )
            self._log_message(f"Benchmark report written to {self.benchmark_json}")
        except Exception as e:
            self.log.error("Benchmark failed", exc_info=True)
            self._set_status(f"Benchmark failed: {type(e).__name__}: {e}")
        finally:
            self._busy = False

    async def _run_diagnostics(self, model: str) -> None:
        self._set_status(f"Diagnosing {model}…")

        async def on_probe_start(name: str) -> None:
            self._log_message(f"{model}: {name} …")

        async def on_probe_done(result: ProbeResult) -> None:
            t = result.timings
            detail = f" ({result.error})" if result.error else ""
            self._log_message(
                f"{model}: {result.probe} -> {result.outcome.value} total={t.total_ms}ms "
                f"ttfb={t.ttfb_ms} first_event={t.first_event_ms}{detail}"
            )

        try:
            cfg = probe_config_from_settings(self.settings, self.base_url, model)
            report = await run_diagnostics(
                cfg,
                metadata=self.service,
                on_probe_start=on_probe_start,
                on_probe_done=on_probe_done,
            )
            write_report(report, self.diagnostic_json)
            self._set_status(f"{model}: {report.summary}")
            self._log_message(f"Diagnostic report written to {self.diagnostic_json}")
        except Exception as e:
            self.log.error("Diagnostics failed", exc_info=True)
            self._set_status(f"Diagnostics failed: {type(e).__name__}: {e}")
        finally:
            self._busy = False


def main() -> None:
    settings = resolve_settings(argparse.Namespace(), os.environ)
    StreamProbeTUI(settings).run()


if __name__ == "__main__":
    main()
