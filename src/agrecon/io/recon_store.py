from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import h5py
import numpy as np

from agrecon.config.load import json_dumps, snapshot_config_toml
from agrecon.physics.events import EventDiagnostics
from agrecon.reconstruction.vertex import ReconstructedVertex

FORMAT_VERSION = "1.0"

_KIND_CODE = {"pair": 0, "axis": 1}


def write_init(path: str | Path, cfg_path: Optional[str | Path] = None) -> h5py.File:
    f = h5py.File(str(path), "w")
    # Root attrs
    f.attrs["format_version"] = FORMAT_VERSION
    f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
    f.attrs["software"] = "ag-recon 0.1.0"
    if cfg_path is not None:
        f.attrs["config_text"] = snapshot_config_toml(cfg_path)
    f.require_group("runs")
    return f


def _replace_or_create(grp: h5py.Group, name: str, data: np.ndarray) -> None:
    if name in grp:
        del grp[name]
    if data.size:
        grp.create_dataset(name, data=data, compression="gzip")
    else:
        grp.create_dataset(name, data=data)


def write_run(
    f: h5py.File,
    run: int,
    event_ids: Sequence[int],
    candidates: Sequence[Sequence[ReconstructedVertex]],
    diagnostics: EventDiagnostics,
    *,
    store_version: int,
    sources: Sequence[str] = (),
    warnings: Sequence[str] = (),
    cancelled: bool = False,
) -> None:
    """
    Store the vertex candidates of one run.

    Layout:

    /runs/<run>/vertices/event_id   (M,) int64   owning event of each candidate
    /runs/<run>/vertices/rank       (M,) uint16  0 = best candidate of its event
    /runs/<run>/vertices/xyz_mm     (M,3) float64
    /runs/<run>/vertices/quality    (M,) float64 lower is better
    /runs/<run>/vertices/t_ns       (M,) float64
    /runs/<run>/vertices/n_tracks   (M,) uint8
    /runs/<run>/vertices/kind       (M,) uint8   0=pair, 1=axis
    /runs/<run>/events/event_id     (N,) int64   every processed event
    /runs/<run>/events/n_candidates (N,) uint16

    Run-level diagnostics and the calibration provenance go into the attrs of
    /runs/<run>.
    """
    grp = f.require_group("runs")
    key = str(int(run))
    if key in grp:
        del grp[key]
    g = grp.create_group(key)
    g.attrs["run_number"] = int(run)
    g.attrs["store_version"] = int(store_version)
    g.attrs["sources"] = json_dumps(list(sources))
    g.attrs["warnings"] = json_dumps(list(warnings))
    g.attrs["diagnostics"] = json_dumps(diagnostics.as_dict())
    g.attrs["cancelled"] = bool(cancelled)

    rows: List[tuple] = []
    n_cand = np.zeros(len(event_ids), dtype=np.uint16)
    for i, (eid, cands) in enumerate(zip(event_ids, candidates)):
        n_cand[i] = len(cands)
        for rank, v in enumerate(cands):
            rows.append((eid, rank, v))

    M = len(rows)
    ev_id = np.empty(M, dtype=np.int64)
    rank = np.empty(M, dtype=np.uint16)
    xyz = np.empty((M, 3), dtype=np.float64)
    quality = np.empty(M, dtype=np.float64)
    t_ns = np.empty(M, dtype=np.float64)
    n_tracks = np.empty(M, dtype=np.uint8)
    kind = np.empty(M, dtype=np.uint8)
    for k, (eid, r, v) in enumerate(rows):
        ev_id[k] = eid
        rank[k] = r
        xyz[k] = (v.x_mm, v.y_mm, v.z_mm)
        quality[k] = v.quality
        t_ns[k] = v.t_ns
        n_tracks[k] = v.n_tracks
        kind[k] = _KIND_CODE.get(v.kind, 255)

    vg = g.require_group("vertices")
    _replace_or_create(vg, "event_id", ev_id)
    _replace_or_create(vg, "rank", rank)
    _replace_or_create(vg, "xyz_mm", xyz)
    _replace_or_create(vg, "quality", quality)
    _replace_or_create(vg, "t_ns", t_ns)
    _replace_or_create(vg, "n_tracks", n_tracks)
    _replace_or_create(vg, "kind", kind)

    eg = g.require_group("events")
    _replace_or_create(eg, "event_id", np.asarray(event_ids, dtype=np.int64))
    _replace_or_create(eg, "n_candidates", n_cand)


def write_failed_run(f: h5py.File, run: int, reason: str, error: str) -> None:
    """Record a run that could not be processed under /failed_runs/<run>."""
    grp = f.require_group("failed_runs")
    key = str(int(run))
    if key in grp:
        del grp[key]
    g = grp.create_group(key)
    g.attrs["run_number"] = int(run)
    g.attrs["reason"] = reason
    g.attrs["error"] = error


def read_vertices(path: str | Path, run: int) -> Dict[str, np.ndarray]:
    """All vertex columns of one run as arrays."""
    with h5py.File(str(path), "r") as f:
        runs = f["runs"]
        if str(int(run)) not in runs:
            raise KeyError(f"run {run} not found in /runs of {path}")
        vg = runs[str(int(run))]["vertices"]
        return {name: np.array(vg[name]) for name in vg.keys()}


def read_failed_runs(path: str | Path) -> Dict[int, Dict[str, str]]:
    with h5py.File(str(path), "r") as f:
        if "failed_runs" not in f:
            return {}
        return {
            int(k): {"reason": str(g.attrs["reason"]), "error": str(g.attrs["error"])}
            for k, g in f["failed_runs"].items()
        }
