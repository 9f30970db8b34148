# src/agrecon/calibration/constants.py
from __future__ import annotations
import math
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Sequence

import numpy as np

from agrecon.calibration.errors import CorruptCalibration
from agrecon.detector.channels import ChannelId


@dataclass(frozen=True, slots=True)
class RunInterval:
    """Half-open validity interval [start, end); ``end=None`` means open-ended."""
    start: float
    end: Optional[float] = None

    def __post_init__(self) -> None:
        if self.end is not None and not self.end > self.start:
            raise ValueError(f"Empty interval [{self.start}, {self.end})")

    def contains(self, point: float) -> bool:
        return self.start <= point and (self.end is None or point < self.end)

    def overlaps(self, other: "RunInterval") -> bool:
        lo = max(self.start, other.start)
        ends = [e for e in (self.end, other.end) if e is not None]
        return not ends or lo < min(ends)

    @property
    def upper(self) -> float:
        return math.inf if self.end is None else self.end

    def __str__(self) -> str:
        return f"[{self.start}, {'inf' if self.end is None else self.end})"


ALWAYS = RunInterval(0)


@dataclass(frozen=True, slots=True)
class CalibrationConstants:
    gain: float
    time_offset_ns: float = 0.0

    @property
    def is_valid(self) -> bool:
        return (
            math.isfinite(self.gain)
            and self.gain > 0.0
            and math.isfinite(self.time_offset_ns)
        )


class CalibrationSet:
    """
    Immutable per-channel calibration constants valid over ``validity``.

    Every gain must be finite and strictly positive and every offset finite;
    anything else is treated as corrupted input and raises CorruptCalibration
    listing the offending channels. Channels simply absent from the table are
    legal (dead or uncalibrated) and surface later as OutOfRange.
    """

    __slots__ = ("label", "validity", "_constants", "_row", "_gain", "_offset")

    def __init__(
        self,
        constants: Mapping[ChannelId, CalibrationConstants],
        *,
        validity: RunInterval = ALWAYS,
        label: str = "",
    ):
        bad = sorted(ch for ch, c in constants.items() if not c.is_valid)
        if bad:
            raise CorruptCalibration(
                f"Calibration {label or '<unnamed>'}: {len(bad)} channel(s) with "
                f"non-positive or non-finite constants, e.g. {bad[0]} -> {constants[bad[0]]}",
                channels=bad,
            )
        ordered = sorted(constants)
        self.label = label
        self.validity = validity
        self._constants = MappingProxyType({ch: constants[ch] for ch in ordered})
        self._row: Mapping[ChannelId, int] = MappingProxyType(
            {ch: i for i, ch in enumerate(ordered)}
        )
        gain = np.array([constants[ch].gain for ch in ordered], dtype=np.float64)
        offset = np.array([constants[ch].time_offset_ns for ch in ordered], dtype=np.float64)
        gain.flags.writeable = False
        offset.flags.writeable = False
        self._gain = gain
        self._offset = offset

    # ---- construction helpers --------------------------------------------

    @classmethod
    def from_arrays(
        cls,
        channels: Sequence[ChannelId],
        gain: Sequence[float],
        time_offset_ns: Optional[Sequence[float]] = None,
        *,
        validity: RunInterval = ALWAYS,
        label: str = "",
    ) -> "CalibrationSet":
        gain = np.asarray(gain, dtype=np.float64)
        if time_offset_ns is None:
            time_offset_ns = np.zeros_like(gain)
        offset = np.asarray(time_offset_ns, dtype=np.float64)
        if not (len(channels) == gain.size == offset.size):
            raise ValueError(
                f"Length mismatch: {len(channels)} channels, {gain.size} gains, "
                f"{offset.size} offsets"
            )
        table: Dict[ChannelId, CalibrationConstants] = {}
        for ch, g, t0 in zip(channels, gain, offset):
            if ch in table:
                raise CorruptCalibration(f"Channel {ch} listed twice in {label!r}", [ch])
            table[ch] = CalibrationConstants(float(g), float(t0))
        return cls(table, validity=validity, label=label)

    @classmethod
    def unit(
        cls,
        channels: Iterable[ChannelId],
        *,
        validity: RunInterval = ALWAYS,
        label: str = "unit",
    ) -> "CalibrationSet":
        """Gain 1, zero offset for every channel (simulation)."""
        return cls(
            {ch: CalibrationConstants(1.0, 0.0) for ch in channels},
            validity=validity,
            label=label,
        )

    @classmethod
    def merge(cls, *sets: "CalibrationSet", label: Optional[str] = None) -> "CalibrationSet":
        """
        Union of sets over disjoint channels. The merged validity is the
        intersection of the inputs' validities.
        """
        table: Dict[ChannelId, CalibrationConstants] = {}
        start, end = 0.0, None
        for cs in sets:
            overlap = table.keys() & cs._constants.keys()
            if overlap:
                raise ValueError(
                    f"Cannot merge calibration sets: {len(overlap)} shared channel(s), "
                    f"e.g. {min(overlap)}"
                )
            table.update(cs._constants)
            start = max(start, cs.validity.start)
            if cs.validity.end is not None:
                end = cs.validity.end if end is None else min(end, cs.validity.end)
        if end is not None and end <= start:
            raise ValueError("Cannot merge calibration sets with disjoint validities")
        return cls(
            table,
            validity=RunInterval(start, end),
            label=label or "+".join(cs.label for cs in sets),
        )

    # ---- access -----------------------------------------------------------

    def get(self, channel: ChannelId) -> Optional[CalibrationConstants]:
        return self._constants.get(channel)

    def __getitem__(self, channel: ChannelId) -> CalibrationConstants:
        return self._constants[channel]

    def __contains__(self, channel: object) -> bool:
        return channel in self._constants

    def __len__(self) -> int:
        return len(self._constants)

    def __iter__(self) -> Iterator[ChannelId]:
        return iter(self._constants)

    def items(self):
        return self._constants.items()

    def rows(self, channels: Sequence[ChannelId]) -> np.ndarray:
        """Row index into gains/offsets per channel, -1 where absent."""
        return np.fromiter(
            (self._row.get(ch, -1) for ch in channels), dtype=np.int64, count=len(channels)
        )

    @property
    def gains(self) -> np.ndarray:
        return self._gain

    @property
    def time_offsets_ns(self) -> np.ndarray:
        return self._offset

    @property
    def families(self) -> frozenset:
        return frozenset(ch.family for ch in self._constants)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CalibrationSet):
            return NotImplemented
        return self.validity == other.validity and dict(self._constants) == dict(
            other._constants
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"CalibrationSet(label={self.label!r}, channels={len(self)}, "
            f"validity={self.validity})"
        )
