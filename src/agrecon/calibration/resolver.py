# src/agrecon/calibration/resolver.py
from __future__ import annotations
import copy
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple, Union

from agrecon.calibration.constants import CalibrationSet, RunInterval
from agrecon.calibration.errors import (
    AmbiguousCalibration,
    CalibrationError,
    CorruptCalibration,
    MissingMap,
    NoCalibrationAvailable,
)
from agrecon.calibration.store import Axis, CalibrationStore, Kind, StoreRecord
from agrecon.detector.channels import FAMILIES
from agrecon.detector.layout import SIMULATION_RUN
from agrecon.geometry.maps import GeometryMap, merge_maps


class FillOnceCache:
    """
    Key -> value cache where each key is computed at most once.

    Reads of filled keys take no lock. The first reader of a missing key takes
    that key's lock and runs the factory; concurrent readers of the same key
    wait on the lock and then see the stored value. Entries are never removed.
    If the factory raises, nothing is stored and the next reader retries.
    """

    __slots__ = ("_values", "_locks", "_guard")

    def __init__(self):
        self._values: Dict[Hashable, Any] = {}
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._guard = threading.Lock()

    def get_or_fill(self, key: Hashable, factory: Callable[[], Any]) -> Any:
        try:
            return self._values[key]
        except KeyError:
            pass
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            if key in self._values:
                return self._values[key]
            value = factory()
            self._values[key] = value
        with self._guard:
            self._locks.pop(key, None)
        return value

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)


@dataclass(frozen=True)
class Resolution:
    """
    Geometry and calibration selected for one query point.

    Unpacks as ``geometry, calibration = resolution``.
    """
    point: float
    axis: Axis
    store_version: int
    geometry: GeometryMap
    calibration: CalibrationSet
    sources: Tuple[str, ...]
    diagnostics: Tuple[AmbiguousCalibration, ...] = ()
    simulated: bool = False

    @property
    def run(self) -> Optional[int]:
        return int(self.point) if self.axis == "run" else None

    @property
    def is_ambiguous(self) -> bool:
        return bool(self.diagnostics)

    def __iter__(self) -> Iterator[Any]:
        yield self.geometry
        yield self.calibration


class CalibrationResolver:
    """
    Select the GeometryMap and CalibrationSet valid for a run (or unix time)
    as seen by a given store version.

    For each family in ``families`` exactly one geometry record and one
    calibration record must cover the query point:

    - none: NoCalibrationAvailable (raised by ``resolve``, returned by
      ``try_resolve``); the simulation run falls back to unit gains when
      ``simulation_fallback`` is set;
    - several: the most recently published wins and an AmbiguousCalibration
      diagnostic is attached to the Resolution.

    Results, including misses, are cached per (axis, point, store_version).
    """

    def __init__(
        self,
        store: CalibrationStore,
        *,
        families: Sequence[str] = FAMILIES,
        simulation_fallback: bool = True,
    ):
        unknown = [f for f in families if f not in FAMILIES]
        if unknown or not families:
            raise ValueError(f"families must be a non-empty subset of {FAMILIES}, got {families}")
        self.store = store
        self.families = tuple(families)
        self.simulation_fallback = simulation_fallback
        self._resolutions = FillOnceCache()
        self._payloads = FillOnceCache()

    # ---- public API --------------------------------------------------------

    def resolve(self, run: int, store_version: Optional[int] = None) -> Resolution:
        return self._resolve("run", int(run), store_version)

    def resolve_time(
        self,
        timestamp: Union[float, datetime],
        store_version: Optional[int] = None,
    ) -> Resolution:
        if isinstance(timestamp, datetime):
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            timestamp = timestamp.timestamp()
        return self._resolve("time", float(timestamp), store_version)

    def try_resolve(
        self, run: int, store_version: Optional[int] = None
    ) -> Union[Resolution, NoCalibrationAvailable]:
        """Like resolve, but returns the NoCalibrationAvailable value instead of raising it."""
        try:
            return self.resolve(run, store_version)
        except NoCalibrationAvailable as miss:
            return miss

    def is_cached(self, run: int, store_version: Optional[int] = None) -> bool:
        version = self.store.version if store_version is None else store_version
        return ("run", int(run), version) in self._resolutions

    # ---- internals ---------------------------------------------------------

    def _resolve(self, axis: Axis, point: float, store_version: Optional[int]) -> Resolution:
        version = self.store.version if store_version is None else int(store_version)
        if not 0 <= version <= self.store.version:
            raise ValueError(
                f"Store version {version} outside [0, {self.store.version}] for {self.store.name!r}"
            )
        value = self._resolutions.get_or_fill(
            (axis, point, version), lambda: self._compute(axis, point, version)
        )
        if isinstance(value, CalibrationError):
            # the cached instance is shared; raise a copy
            miss = copy.copy(value)
            miss.__cause__ = value.__cause__
            raise miss
        return value

    def _compute(self, axis: Axis, point: float, version: int) -> Union[Resolution, CalibrationError]:
        try:
            return self._build(axis, point, version)
        except CalibrationError as exc:
            return exc

    def _build(self, axis: Axis, point: float, version: int) -> Resolution:
        geometries: List[GeometryMap] = []
        calibrations: List[CalibrationSet] = []
        sources: List[str] = []
        diagnostics: List[AmbiguousCalibration] = []
        simulated = False

        for family in self.families:
            grec, gdiag = self._pick("geometry", family, axis, point, version)
            if grec is None:
                raise NoCalibrationAvailable(
                    point, axis=axis, store_version=version, family=family, kind="geometry"
                )
            try:
                geometry = self._payload(grec)
            except MissingMap as exc:
                raise NoCalibrationAvailable(
                    point, axis=axis, store_version=version, family=family, kind="geometry"
                ) from exc
            geometries.append(geometry)
            sources.append(grec.id)
            if gdiag is not None:
                diagnostics.append(gdiag)

            crec, cdiag = self._pick("calibration", family, axis, point, version)
            if crec is None:
                if self.simulation_fallback and axis == "run" and point == SIMULATION_RUN:
                    calibrations.append(
                        CalibrationSet.unit(
                            geometry.live_channels(),
                            validity=RunInterval(SIMULATION_RUN),
                            label=f"{family}-simulation",
                        )
                    )
                    simulated = True
                    continue
                raise NoCalibrationAvailable(
                    point, axis=axis, store_version=version, family=family, kind="calibration"
                )
            calibrations.append(self._payload(crec))
            sources.append(crec.id)
            if cdiag is not None:
                diagnostics.append(cdiag)

        try:
            geometry = geometries[0] if len(geometries) == 1 else merge_maps(*geometries)
            calibration = (
                calibrations[0] if len(calibrations) == 1 else CalibrationSet.merge(*calibrations)
            )
        except ValueError as exc:
            raise CorruptCalibration(
                f"Records {sources} cannot be combined for {axis} {point}: {exc}"
            ) from exc

        return Resolution(
            point=point,
            axis=axis,
            store_version=version,
            geometry=geometry,
            calibration=calibration,
            sources=tuple(sources),
            diagnostics=tuple(diagnostics),
            simulated=simulated,
        )

    def _pick(
        self, kind: Kind, family: str, axis: Axis, point: float, version: int
    ) -> Tuple[Optional[StoreRecord], Optional[AmbiguousCalibration]]:
        recs = self.store.covering(kind, family, point, version=version, axis=axis)
        if not recs:
            return None, None
        recs = sorted(recs, key=lambda r: (r.published, r.store_version), reverse=True)
        chosen = recs[0]
        if len(recs) == 1:
            return chosen, None
        return chosen, AmbiguousCalibration(
            point=point,
            axis=axis,
            family=family,
            kind=kind,
            chosen=chosen.id,
            candidates=tuple(r.id for r in recs),
            published=tuple(r.published for r in recs),
        )

    def _payload(self, record: StoreRecord) -> Any:
        return self._payloads.get_or_fill(record.id, record.load)
