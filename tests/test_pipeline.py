import threading

import numpy as np
import pytest
from typer.testing import CliRunner

from agrecon.calibration.resolver import CalibrationResolver
from agrecon.calibration.store import load_store
from agrecon.config.load import load_config
from agrecon.io.event_store import iter_raw_events, write_raw_events
from agrecon.io.recon_store import read_failed_runs, read_vertices
from agrecon.pipelines.core import PipelineCancelled, process_run, run_pipeline, store_app
from agrecon.sim.synth import synth_annihilations

GOOD_RUN = 9500
UNCALIBRATED_RUN = 12000


@pytest.fixture
def workspace(tmp_path, store_dir, detector_map, detector_calibration):
    events = synth_annihilations(
        12, detector_map, detector_calibration, rng=np.random.default_rng(5)
    )
    raw = [e.raw for e in events]
    write_raw_events(tmp_path / "raw.h5", {GOOD_RUN: raw, UNCALIBRATED_RUN: raw[:2]})
    cfg = tmp_path / "recon.toml"
    cfg.write_text(
        "[run]\nworkers = 2\nprogress = false\ndiagnostics_level = 0\n\n"
        '[io]\ninput_path = "raw.h5"\noutput_path = "out/vertices.h5"\n\n'
        '[store]\npath = "store"\nversion = 1\n'
    )
    return cfg, events


def test_pipeline_end_to_end(workspace):
    cfg, events = workspace
    result = run_pipeline(str(cfg))

    assert not result.cancelled
    assert set(result.runs) == {GOOD_RUN}
    assert set(result.failed_runs) == {UNCALIBRATED_RUN}

    run = result.runs[GOOD_RUN]
    assert run.event_ids == list(range(12))
    assert run.diagnostics.samples_in == sum(len(e.raw.samples) for e in events)
    assert run.diagnostics.out_of_range == 0 and run.diagnostics.unmapped == 0

    found = [c[0] for c in run.candidates if c]
    assert len(found) >= 8
    errors = [
        np.linalg.norm(np.array([v.x_mm, v.y_mm, v.z_mm]) - events[i].vertex_mm)
        for i, v in enumerate(c[0] if c else None for c in run.candidates)
        if v is not None
    ]
    assert np.median(errors) < 15.0

    cols = read_vertices(result.output_path, GOOD_RUN)
    assert len(cols["event_id"]) == sum(len(c) for c in run.candidates)
    assert read_failed_runs(result.output_path)[UNCALIBRATED_RUN]["reason"] == "NoCalibrationAvailable"


def test_thread_pool_matches_serial(workspace):
    cfg, _ = workspace
    serial = run_pipeline(str(cfg), workers=0).runs[GOOD_RUN]
    pooled = run_pipeline(str(cfg), workers=4).runs[GOOD_RUN]
    assert pooled.event_ids == serial.event_ids
    assert pooled.candidates == serial.candidates
    assert pooled.diagnostics == serial.diagnostics


def test_run_selection_and_store_version(workspace):
    cfg, _ = workspace
    result = run_pipeline(str(cfg), runs=[UNCALIBRATED_RUN, 1], store_version=2)
    assert result.runs == {}
    assert set(result.failed_runs) == {1, UNCALIBRATED_RUN}


def test_cancel_between_events(workspace):
    cfg_path, _ = workspace
    cfg = load_config(cfg_path)
    cfg.run.workers = 0
    resolution = CalibrationResolver(load_store(cfg.store.path)).resolve(GOOD_RUN)
    cancel = threading.Event()

    def source():
        for i, raw in enumerate(iter_raw_events(cfg.io.input_path, GOOD_RUN)):
            if i == 3:
                cancel.set()
            yield raw

    with pytest.raises(PipelineCancelled) as stop:
        process_run(GOOD_RUN, source(), resolution, cfg, cancel=cancel)
    partial = stop.value.partial
    assert partial.cancelled
    assert partial.event_ids == [0, 1, 2]

    # the shared resolution is untouched and still usable
    cancel.clear()
    full = process_run(GOOD_RUN, iter_raw_events(cfg.io.input_path, GOOD_RUN), resolution, cfg, cancel=cancel)
    assert full.candidates[:3] == partial.candidates


def test_cancelled_pipeline_stops(workspace):
    cfg, _ = workspace
    cancel = threading.Event()
    cancel.set()
    result = run_pipeline(str(cfg), cancel=cancel)
    assert result.cancelled
    assert result.runs == {} and result.failed_runs == {}


def test_store_cli(workspace):
    cfg, _ = workspace
    runner = CliRunner()
    ok = runner.invoke(store_app, [str(cfg), str(GOOD_RUN)])
    assert ok.exit_code == 0
    assert "wire-gain-a" in ok.output and "pad-gain-a" in ok.output

    miss = runner.invoke(store_app, [str(cfg), str(UNCALIBRATED_RUN)])
    assert miss.exit_code == 1


def test_unreadable_table_fails_only_its_run(workspace, store_dir):
    cfg, _ = workspace
    (store_dir / "pad_gain_a.npz").write_bytes(b"not a zip file at all")
    result = run_pipeline(str(cfg))
    assert result.runs == {}
    assert set(result.failed_runs) == {GOOD_RUN, UNCALIBRATED_RUN}
    failed = read_failed_runs(result.output_path)
    assert failed[GOOD_RUN]["reason"] == "CorruptCalibration"
    assert failed[UNCALIBRATED_RUN]["reason"] == "NoCalibrationAvailable"
