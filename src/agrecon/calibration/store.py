# src/agrecon/calibration/store.py
"""
agrecon.calibration.store

Versioned collection of geometry and calibration records.

Every record carries a run validity interval (and optionally a unix-time
interval), a publication timestamp, and the store version at which it was
published. The store is append-only: publishing never edits or removes an
existing record, so any answer computed for store version V stays valid once
later versions exist. Corrections are published as new records that name the
records they ``supersede``.

Record payloads (GeometryMap / CalibrationSet) are produced by a zero-argument
loader and are only read when a resolver first needs them.

On-disk layout (see load_store)
-------------------------------
<store>/manifest.toml
<store>/*.npz            per-channel tables referenced by [[calibration]] entries
"""
from __future__ import annotations
import threading
import zipfile
from bisect import bisect_right
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from itertools import accumulate
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, Literal, Optional, Tuple, TypeVar

import numpy as np

from agrecon.calibration.constants import CalibrationSet, RunInterval
from agrecon.calibration.errors import CorruptCalibration
from agrecon.detector.channels import ChannelId, ChannelIdError, parse_channel
from agrecon.geometry.maps import GeometryMapError, build_map

Kind = Literal["geometry", "calibration"]
Axis = Literal["run", "time"]
T = TypeVar("T")


@dataclass(frozen=True)
class StoreRecord:
    """
    One versioned store entry.

    ``loader`` returns the payload: a GeometryMap for kind="geometry", a
    CalibrationSet for kind="calibration".
    """
    id: str
    kind: Kind
    family: str
    runs: RunInterval
    published: datetime
    loader: Callable[[], Any] = field(compare=False, repr=False)
    times: Optional[RunInterval] = None
    supersedes: Tuple[str, ...] = ()
    store_version: int = 0
    source: str = ""

    def interval(self, axis: Axis) -> Optional[RunInterval]:
        return self.runs if axis == "run" else self.times

    def load(self) -> Any:
        return self.loader()


def geometry_record(
    id: str,
    family: str,
    runs: RunInterval,
    published: datetime,
    geometry,
    **kw,
) -> StoreRecord:
    """Record wrapping an in-memory GeometryMap (or a loader for one)."""
    loader = geometry if callable(geometry) else (lambda: geometry)
    return StoreRecord(id, "geometry", family, runs, published, loader, **kw)


def calibration_record(
    id: str,
    family: str,
    runs: RunInterval,
    published: datetime,
    calibration,
    **kw,
) -> StoreRecord:
    """Record wrapping an in-memory CalibrationSet (or a loader for one)."""
    loader = calibration if callable(calibration) else (lambda: calibration)
    return StoreRecord(id, "calibration", family, runs, published, loader, **kw)


class IntervalIndex(Generic[T]):
    """
    Ordered sequence of (interval, item) pairs answering "which intervals
    contain this point" with a binary search.

    Pairs are sorted by interval start. ``_max_end[i]`` is the largest end
    among pairs 0..i, so the backwards scan from the bisection point stops as
    soon as no earlier interval can reach the query point.
    """

    __slots__ = ("_pairs", "_starts", "_max_end")

    def __init__(self, pairs: Iterable[Tuple[RunInterval, T]] = ()):
        self._pairs: List[Tuple[RunInterval, T]] = sorted(
            pairs, key=lambda p: (p[0].start, p[0].upper)
        )
        self._starts = [iv.start for iv, _ in self._pairs]
        self._max_end = list(accumulate((iv.upper for iv, _ in self._pairs), max))

    def covering(self, point: float) -> List[T]:
        out: List[T] = []
        j = bisect_right(self._starts, point) - 1
        while j >= 0 and self._max_end[j] > point:
            iv, item = self._pairs[j]
            if iv.contains(point):
                out.append(item)
            j -= 1
        return out

    def __len__(self) -> int:
        return len(self._pairs)


class CalibrationStore:
    """
    Append-only, versioned store of geometry and calibration records.

    ``publish`` assigns the next store version unless the record already
    carries one, which must be newer than the current version: a published
    version never changes. Records passed to the constructor are loaded as a
    batch and may share a version. Indices are rebuilt and swapped in as
    whole objects, so concurrent readers see either the old or the new index,
    never a partial one.
    """

    def __init__(self, records: Iterable[StoreRecord] = (), *, name: str = "store"):
        self.name = name
        self._records: List[StoreRecord] = []
        self._by_id: Dict[str, StoreRecord] = {}
        self._superseded_at: Dict[str, int] = {}
        self._indices: Dict[Tuple[str, str, str], IntervalIndex[StoreRecord]] = {}
        self._version = 0
        self._lock = threading.Lock()
        with self._lock:
            for rec in records:
                self._append(rec, reopen=True)

    # ---- writing ----------------------------------------------------------

    def publish(self, record: StoreRecord) -> StoreRecord:
        with self._lock:
            return self._append(record, reopen=False)

    def _append(self, record: StoreRecord, *, reopen: bool) -> StoreRecord:
        # caller holds self._lock; reopen lets a batch load share the current version
        if record.id in self._by_id:
            raise ValueError(f"Record id {record.id!r} already published")
        unknown = [rid for rid in record.supersedes if rid not in self._by_id]
        if unknown:
            raise ValueError(f"Record {record.id!r} supersedes unknown records {unknown}")
        version = record.store_version or self._version + 1
        stale = version < self._version if reopen else (self._records and version <= self._version)
        if stale:
            raise ValueError(
                f"Record {record.id!r} has store version {version}, "
                f"not newer than the current version {self._version}"
            )
        rec = replace(record, store_version=version)
        self._records.append(rec)
        self._by_id[rec.id] = rec
        for rid in rec.supersedes:
            prev = self._superseded_at.get(rid)
            self._superseded_at[rid] = version if prev is None else min(prev, version)
        for axis in ("run", "time"):
            if rec.interval(axis) is not None:
                self._reindex(rec.kind, rec.family, axis)
        self._version = max(self._version, version)
        return rec

    def _reindex(self, kind: str, family: str, axis: str) -> None:
        pairs = [
            (r.interval(axis), r)
            for r in self._records
            if r.kind == kind and r.family == family and r.interval(axis) is not None
        ]
        self._indices[(kind, family, axis)] = IntervalIndex(pairs)

    # ---- reading ----------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    @property
    def records(self) -> Tuple[StoreRecord, ...]:
        return tuple(self._records)

    def get(self, record_id: str) -> StoreRecord:
        return self._by_id[record_id]

    def families(self, kind: Kind) -> List[str]:
        return sorted({r.family for r in self._records if r.kind == kind})

    def is_visible(self, record: StoreRecord, version: int) -> bool:
        if record.store_version > version:
            return False
        superseded = self._superseded_at.get(record.id)
        return superseded is None or superseded > version

    def covering(
        self,
        kind: Kind,
        family: str,
        point: float,
        *,
        version: Optional[int] = None,
        axis: Axis = "run",
    ) -> List[StoreRecord]:
        """Records visible at ``version`` whose interval on ``axis`` contains ``point``."""
        version = self._version if version is None else version
        index = self._indices.get((kind, family, axis))
        if index is None:
            return []
        return [r for r in index.covering(point) if self.is_visible(r, version)]

    def latest(self, kind: Kind, family: str, *, version: Optional[int] = None) -> Optional[StoreRecord]:
        """Visible record of this kind/family with the latest validity start."""
        version = self._version if version is None else version
        visible = [
            r for r in self._records
            if r.kind == kind and r.family == family and self.is_visible(r, version)
        ]
        if not visible:
            return None
        return max(visible, key=lambda r: (r.runs.start, r.published, r.store_version))

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"CalibrationStore(name={self.name!r}, records={len(self)}, version={self.version})"


# ---------------------------------------------------------------------------
# On-disk store
# ---------------------------------------------------------------------------

def load_npz_table(
    path: str | Path,
    family: str,
    *,
    validity: RunInterval,
    label: str = "",
) -> CalibrationSet:
    """
    Read a per-channel calibration table.

    Channels are given either as a ``channel`` array of 'family:board:connector:tap'
    strings, or as ``board`` / ``connector`` / ``tap`` columns (family taken
    from the record). Gains come from ``gain`` (or ``gains``), offsets from
    ``time_offset_ns`` (or ``t0_ns``), defaulting to zero.
    """
    p = Path(path)
    try:
        channels, gain, offset = _read_table(p, family)
    except (OSError, ValueError, zipfile.BadZipFile) as exc:
        raise CorruptCalibration(f"{p.name}: unreadable table ({exc})") from exc

    if gain.size != len(channels) or (offset is not None and offset.size != gain.size):
        raise CorruptCalibration(
            f"{p.name}: column lengths differ ({len(channels)} channels, {gain.size} gains)"
        )

    wrong = [ch for ch in channels if ch.family != family]
    if wrong:
        raise CorruptCalibration(
            f"{p.name}: {len(wrong)} channel(s) do not belong to family {family!r}", wrong
        )
    return CalibrationSet.from_arrays(
        channels, gain, offset, validity=validity, label=label or p.stem
    )


def _read_table(p: Path, family: str):
    with np.load(p, allow_pickle=False) as z:
        keys = set(z.files)

        try:
            if "channel" in keys:
                channels = [parse_channel(str(s)) for s in z["channel"]]
            elif {"board", "connector", "tap"} <= keys:
                boards = z["board"]
                connectors = z["connector"].astype(np.int64)
                taps = z["tap"].astype(np.int64)
                channels = [
                    ChannelId(family, _board_str(b), int(c), int(t))
                    for b, c, t in zip(boards, connectors, taps)
                ]
            else:
                channels = None
        except ChannelIdError as exc:
            raise CorruptCalibration(f"{p.name}: bad channel entry ({exc})") from exc
        if channels is None:
            raise CorruptCalibration(
                f"Could not find channel columns in {p.name}. Expected 'channel' or "
                f"'board'/'connector'/'tap'. Found keys: {sorted(keys)}"
            )

        gain = None
        for gk in ("gain", "gains"):
            if gk in keys:
                gain = z[gk].astype(np.float64)
                break
        if gain is None:
            raise CorruptCalibration(f"No gain column in {p.name}. Found keys: {sorted(keys)}")

        offset = None
        for ok in ("time_offset_ns", "t0_ns"):
            if ok in keys:
                offset = z[ok].astype(np.float64)
                break
    return channels, gain, offset


def _board_str(b) -> str:
    if isinstance(b, bytes):
        b = b.decode()
    s = str(b)
    return s.zfill(2) if s.isdigit() else s


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def load_store(path: str | Path) -> CalibrationStore:
    """
    Build a CalibrationStore from ``<path>/manifest.toml`` (or a manifest path).

    Tables are resolved relative to the manifest's directory and read lazily.
    Entries without an explicit ``store_version`` belong to version 1.
    """
    from agrecon.config.load import load_manifest

    p = Path(path)
    manifest_path = p / "manifest.toml" if p.is_dir() else p
    base = manifest_path.parent
    manifest = load_manifest(manifest_path)

    records: List[StoreRecord] = []
    for g in manifest.geometry:
        runs = RunInterval(*g.runs)
        dead = [parse_channel(s) for s in g.dead]
        layout = g.layout

        def _geometry_loader(family=g.family, layout=layout, dead=tuple(dead), rid=g.id):
            try:
                return build_map(family, layout, dead=dead)
            except (KeyError, GeometryMapError) as exc:
                raise CorruptCalibration(f"Geometry record {rid!r}: {exc}") from exc

        records.append(
            StoreRecord(
                id=g.id,
                kind="geometry",
                family=g.family,
                runs=runs,
                published=_aware(g.published),
                loader=_geometry_loader,
                times=RunInterval(*g.times) if g.times else None,
                supersedes=tuple(g.supersedes),
                store_version=g.store_version or 1,
                source=str(manifest_path),
            )
        )

    for c in manifest.calibration:
        runs = RunInterval(*c.runs)
        table = Path(c.table)
        if not table.is_absolute():
            table = (base / table).resolve()

        def _table_loader(table=table, family=c.family, runs=runs, label=c.label or c.id):
            if not table.exists():
                raise CorruptCalibration(f"Calibration table {table} does not exist")
            return load_npz_table(table, family, validity=runs, label=label)

        records.append(
            StoreRecord(
                id=c.id,
                kind="calibration",
                family=c.family,
                runs=runs,
                published=_aware(c.published),
                loader=_table_loader,
                times=RunInterval(*c.times) if c.times else None,
                supersedes=tuple(c.supersedes),
                store_version=c.store_version or 1,
                source=str(table),
            )
        )

    # Publish in version order so supersession targets exist first
    records.sort(key=lambda r: (r.store_version, r.published))
    return CalibrationStore(records, name=manifest.name)
