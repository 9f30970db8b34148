from __future__ import annotations
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import h5py
import numpy as np

from agrecon.detector.channels import FAMILIES, ChannelId
from agrecon.physics.events import RawEvent
from agrecon.physics.hits import RawSample

FORMAT_VERSION = "1.0"

# family code stored per sample
_FAMILY_CODE = {name: i for i, name in enumerate(FAMILIES)}


def _flatten_samples(events: Sequence[RawEvent]) -> Tuple[np.ndarray, np.ndarray, Dict[str, np.ndarray]]:
    """
    Variable-length events -> CSR columns.

    Returns:
      event_id : (N_events,) int64
      event_ptr: (N_events+1,) int64, samples of event i are [ptr[i], ptr[i+1])
      cols     : dict of flat per-sample arrays
    """
    n_events = len(events)
    ptr = np.zeros(n_events + 1, dtype=np.int64)
    for i, ev in enumerate(events):
        ptr[i + 1] = ptr[i] + len(ev.samples)

    M = int(ptr[-1])
    family = np.empty(M, dtype=np.uint8)
    board = np.empty(M, dtype="S2")
    connector = np.empty(M, dtype=np.uint8)
    tap = np.empty(M, dtype=np.uint8)
    amplitude = np.empty(M, dtype=np.float64)
    time_ns = np.empty(M, dtype=np.float64)

    w = 0
    for ev in events:
        for s in ev.samples:
            ch = s.channel
            family[w] = _FAMILY_CODE[ch.family]
            board[w] = ch.board.encode("ascii")
            connector[w] = ch.connector
            tap[w] = ch.tap
            amplitude[w] = s.amplitude
            time_ns[w] = s.time_ns
            w += 1

    event_id = np.fromiter((ev.event_id for ev in events), dtype=np.int64, count=n_events)
    cols = {
        "family": family, "board": board, "connector": connector, "tap": tap,
        "amplitude": amplitude, "time_ns": time_ns,
    }
    return event_id, ptr, cols


def _create_column(g: h5py.Group, name: str, arr: np.ndarray) -> None:
    # gzip needs a chunked layout, which an empty column cannot have
    if arr.size:
        g.create_dataset(name, data=arr, compression="gzip")
    else:
        g.create_dataset(name, data=arr)


def write_raw_events(
    path: str | Path,
    runs: Dict[int, Sequence[RawEvent]],
    *,
    mode: str = "a",
) -> None:
    """
    Write decoded samples per run.

    Layout:

    /runs/<run>/event_id   (N_events,)   int64
    /runs/<run>/event_ptr  (N_events+1,) int64   CSR pointers into the sample columns
    /runs/<run>/family     (M,) uint8    0=awb, 1=pwb
    /runs/<run>/board      (M,) S2
    /runs/<run>/connector  (M,) uint8
    /runs/<run>/tap        (M,) uint8
    /runs/<run>/amplitude  (M,) float64  ADC counts
    /runs/<run>/time_ns    (M,) float64

    An existing group for the same run is replaced.
    """
    with h5py.File(str(path), mode) as f:
        f.attrs["format_version"] = FORMAT_VERSION
        root = f.require_group("runs")
        for run, events in runs.items():
            key = str(int(run))
            if key in root:
                del root[key]
            g = root.create_group(key)
            g.attrs["run_number"] = int(run)
            event_id, ptr, cols = _flatten_samples(list(events))
            g.create_dataset("event_id", data=event_id)
            g.create_dataset("event_ptr", data=ptr, dtype="i8")
            for name, arr in cols.items():
                _create_column(g, name, arr)


def list_runs(path: str | Path) -> List[int]:
    """Run numbers present in a raw event file, ascending."""
    with h5py.File(str(path), "r") as f:
        if "runs" not in f:
            return []
        return sorted(int(k) for k in f["runs"].keys())


def count_events(path: str | Path, run: int) -> int:
    with h5py.File(str(path), "r") as f:
        return int(f["runs"][str(int(run))]["event_id"].shape[0])


def iter_raw_events(
    path: str | Path,
    run: int,
    *,
    max_events: Optional[int] = None,
    chunk_events: int = 1024,
) -> Iterator[RawEvent]:
    """
    Yield the raw events of one run in file order.

    Samples are read from disk ``chunk_events`` events at a time, so a run
    never has to fit in memory. The file stays open while the generator is
    alive; each call is a fresh, single pass.
    """
    with h5py.File(str(path), "r") as f:
        runs = f.get("runs")
        if runs is None or str(int(run)) not in runs:
            raise KeyError(f"run {run} not found in {path}")
        g = runs[str(int(run))]
        event_id = g["event_id"][...]
        ptr = g["event_ptr"][...]
        n = len(event_id) if max_events is None else min(len(event_id), max_events)

        for lo in range(0, n, chunk_events):
            hi = min(lo + chunk_events, n)
            a, b = int(ptr[lo]), int(ptr[hi])
            family = g["family"][a:b]
            board = g["board"][a:b]
            connector = g["connector"][a:b]
            tap = g["tap"][a:b]
            amplitude = g["amplitude"][a:b]
            time_ns = g["time_ns"][a:b]
            for i in range(lo, hi):
                samples = []
                for k in range(int(ptr[i]) - a, int(ptr[i + 1]) - a):
                    ch = ChannelId(
                        FAMILIES[int(family[k])],
                        board[k].decode("ascii"),
                        int(connector[k]),
                        int(tap[k]),
                    )
                    samples.append(RawSample(ch, float(amplitude[k]), float(time_ns[k])))
                yield RawEvent(int(event_id[i]), samples, {"run": int(run), "index": i})
