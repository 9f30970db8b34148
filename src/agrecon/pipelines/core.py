from __future__ import annotations

import os
import signal
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import typer
from tqdm import tqdm

from agrecon.calibration.errors import CalibrationError
from agrecon.calibration.resolver import CalibrationResolver, Resolution
from agrecon.calibration.store import load_store
from agrecon.config.load import load_config
from agrecon.config.schemas import Config, ReconstructionCfg
from agrecon.io.event_store import count_events, iter_raw_events, list_runs
from agrecon.io.recon_store import write_failed_run, write_init, write_run
from agrecon.physics.calibrator import build_event
from agrecon.physics.events import EventDiagnostics, RawEvent
from agrecon.reconstruction.vertex import ReconstructedVertex, reconstruct

Candidates = Tuple[ReconstructedVertex, ...]


@dataclass
class RunResult:
    """Vertex candidates of one run, in event order."""
    run: int
    event_ids: List[int] = field(default_factory=list)
    candidates: List[Candidates] = field(default_factory=list)
    diagnostics: EventDiagnostics = field(default_factory=EventDiagnostics)
    resolution: Optional[Resolution] = None
    cancelled: bool = False

    @property
    def n_events(self) -> int:
        return len(self.event_ids)


@dataclass
class PipelineResult:
    output_path: Optional[Path]
    runs: Dict[int, RunResult] = field(default_factory=dict)
    failed_runs: Dict[int, str] = field(default_factory=dict)
    cancelled: bool = False


class PipelineCancelled(Exception):
    """Raised by process_run when cancellation was requested; carries the events finished so far."""

    def __init__(self, partial: RunResult):
        super().__init__(f"run {partial.run} cancelled after {partial.n_events} event(s)")
        self.partial = partial


def _n_workers(workers) -> int:
    if workers == "auto":
        return max(1, os.cpu_count() or 1)
    if isinstance(workers, int):
        return max(0, workers)
    raise ValueError("workers must be int or 'auto'")


def process_event(
    raw: RawEvent,
    resolution: Resolution,
    cfg: ReconstructionCfg,
) -> Tuple[Candidates, EventDiagnostics]:
    """Calibrate, place and reconstruct one event."""
    event = build_event(raw, resolution.geometry, resolution.calibration)
    candidates = reconstruct(event, cfg)
    return tuple(candidates), candidates.diagnostics


def process_run(
    run: int,
    events: Iterable[RawEvent],
    resolution: Resolution,
    cfg: Config,
    *,
    cancel: Optional[threading.Event] = None,
    total: Optional[int] = None,
) -> RunResult:
    """
    Reconstruct every event of a run on a thread pool.

    Workers share ``resolution`` read-only. Each worker checks ``cancel``
    before starting an event; once it is set, events not yet started are
    abandoned and PipelineCancelled is raised with the events finished so
    far, still in event order. An exception inside one event is counted as
    "event_error" in the run diagnostics and the event yields no candidates.
    """
    cancel = cancel or threading.Event()
    workers = _n_workers(cfg.run.workers)
    diag_level = cfg.run.diagnostics_level
    rcfg = cfg.reconstruction

    done: Dict[int, Tuple[int, Candidates, EventDiagnostics]] = {}
    errors = 0

    def _work(index: int, raw: RawEvent):
        if cancel.is_set():
            return index, None
        try:
            cands, diag = process_event(raw, resolution, rcfg)
        except Exception as exc:
            if diag_level >= 2:
                print(f"[run {run}] event {raw.event_id} failed: {exc!r}")
            diag = EventDiagnostics(samples_in=len(raw.samples))
            diag.inc("event_error")
            cands = ()
        return index, (raw.event_id, cands, diag)

    pbar = tqdm(total=total, desc=f"run {run}", unit="event") if cfg.run.progress else None

    if workers == 0:
        for index, raw in enumerate(events):
            index, res = _work(index, raw)
            if res is None:
                break
            done[index] = res
            if pbar:
                pbar.update(1)
    else:
        # Bounded number of events in flight; the source is read lazily.
        window = max(1, workers * 8)
        source = iter(enumerate(events))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"run{run}") as ex:
            while not cancel.is_set():
                batch = [ex.submit(_work, i, raw) for i, raw in _take(source, window)]
                if not batch:
                    break
                for fut in as_completed(batch):
                    if fut.cancelled():
                        continue
                    index, res = fut.result()
                    if res is not None:
                        done[index] = res
                        if pbar:
                            pbar.update(1)
                    if cancel.is_set():
                        for f in batch:
                            f.cancel()
    if pbar:
        pbar.close()

    result = RunResult(run=run, resolution=resolution)
    # Keep only the unbroken prefix of finished events so the output stays in order.
    index = 0
    while index in done:
        event_id, cands, diag = done[index]
        result.event_ids.append(event_id)
        result.candidates.append(cands)
        result.diagnostics.add(diag)
        errors += diag.reasons.get("event_error", 0)
        index += 1

    if errors and diag_level >= 1:
        print(f"[run {run}] {errors} event(s) raised during reconstruction")
    if cancel.is_set():
        result.cancelled = True
        raise PipelineCancelled(result)
    return result


def _take(source, n: int) -> List[Tuple[int, RawEvent]]:
    out = []
    for item in source:
        out.append(item)
        if len(out) >= n:
            break
    return out


def _make_resolver(cfg: Config) -> CalibrationResolver:
    store = load_store(cfg.store.path)
    if cfg.run.diagnostics_level >= 1:
        print(f"[store] {store.name!r}: {len(store)} record(s), version {store.version}")
    return CalibrationResolver(
        store,
        families=cfg.store.families,
        simulation_fallback=cfg.store.simulation_fallback,
    )


def run_pipeline(
    cfg_path: str,
    *,
    workers: Optional[int] = None,
    runs: Optional[List[int]] = None,
    store_version: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
) -> PipelineResult:
    """
    Orchestrate the full pipeline from a TOML config file.

    CLI flags (--workers/--run/--store-version) override the corresponding
    config fields when not None.

    Runs whose calibration cannot be resolved are written to /failed_runs
    and skipped; the remaining runs are still processed. When ``cancel`` is
    set the current run is written with what was finished, marked
    cancelled, and no further runs are started.

    Returns
    -------
    PipelineResult with the path to the written HDF5 file.
    """
    cfg = load_config(cfg_path)

    # ---- apply CLI overrides on top of TOML ----
    if workers is not None:
        cfg.run.workers = workers
    if runs:
        cfg.run.runs = list(runs)
    if store_version is not None:
        cfg.store.version = store_version

    diag_level = cfg.run.diagnostics_level
    cancel = cancel or threading.Event()

    if diag_level >= 1:
        print(f"[run] config = {cfg_path}")
        print(f"[run] input={cfg.io.input_path} -> output={cfg.io.output_path}")
        print(f"[run] workers={cfg.run.workers} families={cfg.store.families}")

    resolver = _make_resolver(cfg)

    available = list_runs(cfg.io.input_path)
    selected = sorted(cfg.run.runs) if cfg.run.runs is not None else available
    if diag_level >= 1:
        print(f"[pipeline] {len(selected)} run(s) selected, {len(available)} in input")

    out_path = Path(cfg.io.output_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    result = PipelineResult(output_path=out_path)

    f = write_init(str(out_path), cfg_path)
    try:
        for run in selected:
            if cancel.is_set():
                result.cancelled = True
                break

            if run not in available:
                msg = f"run {run} not found in {cfg.io.input_path}"
                write_failed_run(f, run, "missing_run", msg)
                result.failed_runs[run] = msg
                if diag_level >= 1:
                    print(f"[pipeline] Skipping run {run}: {msg}")
                continue

            try:
                resolution = resolver.resolve(run, cfg.store.version)
            except CalibrationError as exc:
                write_failed_run(f, run, type(exc).__name__, str(exc))
                result.failed_runs[run] = str(exc)
                if diag_level >= 1:
                    print(f"[pipeline] Skipping run {run}: {exc}")
                continue

            if diag_level >= 1:
                tag = " (simulation, unit gains)" if resolution.simulated else ""
                print(f"[store] run {run}: {', '.join(resolution.sources)} "
                      f"@ version {resolution.store_version}{tag}")
                for warning in resolution.diagnostics:
                    print(f"[store] WARNING {warning}")

            n_events = count_events(cfg.io.input_path, run)
            if cfg.run.max_events is not None:
                n_events = min(n_events, cfg.run.max_events)
            events = iter_raw_events(cfg.io.input_path, run, max_events=cfg.run.max_events)
            try:
                run_result = process_run(run, events, resolution, cfg, cancel=cancel, total=n_events)
            except PipelineCancelled as stop:
                run_result = stop.partial
                result.cancelled = True
                if diag_level >= 1:
                    print(f"[pipeline] {stop}")
            finally:
                events.close()

            write_run(
                f,
                run,
                run_result.event_ids,
                run_result.candidates,
                run_result.diagnostics,
                store_version=resolution.store_version,
                sources=resolution.sources,
                warnings=[str(w) for w in resolution.diagnostics],
                cancelled=run_result.cancelled,
            )
            result.runs[run] = run_result

            if diag_level >= 1:
                d = run_result.diagnostics
                n_vtx = sum(1 for c in run_result.candidates if c)
                print(f"[pipeline] run {run}: {run_result.n_events} events, {n_vtx} with a vertex, "
                      f"unmapped={d.unmapped} dead={d.dead} out_of_range={d.out_of_range} "
                      f"failures={d.reconstruction_failures}")
                if diag_level >= 2 and d.reasons:
                    print(f"[pipeline] run {run} reasons: {dict(sorted(d.reasons.items()))}")
            if result.cancelled:
                break
    finally:
        f.close()

    if diag_level >= 1 and result.failed_runs:
        print(f"[pipeline] {len(result.failed_runs)} run(s) failed: {sorted(result.failed_runs)}")
    return result


# ---------------------------------------------------------------------------
# CLI entry points
# ---------------------------------------------------------------------------

app = typer.Typer(help="ALPHA-g vertex reconstruction (agrecon.pipelines.core)")


@app.command()
def main(
    cfg_path: str = typer.Argument(
        ...,
        help="Path to TOML config file",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        "-j",
        help="Override [run].workers (0 = single-threaded)",
    ),
    run: Optional[List[int]] = typer.Option(
        None,
        "--run",
        "-r",
        help="Process only this run; repeat for several. Overrides [run].runs",
    ),
    store_version: Optional[int] = typer.Option(
        None,
        "--store-version",
        help="Resolve calibrations as of this store version; overrides [store].version",
    ),
):
    """
    Reconstruct vertices for the runs in a config. Ctrl-C stops after the events in flight.
    """
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        result = run_pipeline(
            cfg_path,
            workers=workers,
            runs=run or None,
            store_version=store_version,
            cancel=cancel,
        )
    finally:
        signal.signal(signal.SIGINT, previous)
    if result.cancelled:
        typer.echo("cancelled; partial results written", err=True)
    typer.echo(str(result.output_path))


store_app = typer.Typer(help="Inspect calibration store resolution")


@store_app.command()
def resolve(
    cfg_path: str = typer.Argument(..., help="Path to TOML config file"),
    run: int = typer.Argument(..., help="Run number to resolve"),
    store_version: Optional[int] = typer.Option(
        None, "--store-version", help="Store version (default: [store].version or latest)"
    ),
):
    """Show which geometry and calibration records a run resolves to."""
    cfg = load_config(cfg_path)
    cfg.run.diagnostics_level = 0
    resolver = _make_resolver(cfg)
    version = store_version if store_version is not None else cfg.store.version
    try:
        resolution = resolver.resolve(run, version)
    except CalibrationError as exc:
        typer.echo(f"run {run}: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"run {run} @ store version {resolution.store_version}")
    for source in resolution.sources:
        typer.echo(f"  {source}")
    typer.echo(f"  channels: {len(resolution.geometry)} mapped, {len(resolution.calibration)} calibrated")
    if resolution.simulated:
        typer.echo("  simulation run: unit gains")
    for warning in resolution.diagnostics:
        typer.echo(f"  WARNING {warning}")


if __name__ == "__main__":
    app()
