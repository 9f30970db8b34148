# src/agrecon/calibration/errors.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Tuple


def _rebuild(cls, args, kwargs):
    return cls(*args, **kwargs)


class CalibrationError(Exception):
    """Base class for run-level calibration/geometry failures."""


class NoCalibrationAvailable(CalibrationError):
    """
    No record in the store covers the queried run (or timestamp).

    Carries the query so a batch job can report the run and move on.
    Two instances compare equal when they describe the same miss.
    """

    def __init__(
        self,
        point: float,
        *,
        axis: str = "run",
        store_version: int = 0,
        family: Optional[str] = None,
        kind: str = "calibration",
    ):
        what = f"{family} {kind}" if family else kind
        super().__init__(
            f"No {what} covers {axis} {point} (store version {store_version})"
        )
        self.point = point
        self.axis = axis
        self.store_version = store_version
        self.family = family
        self.kind = kind

    @property
    def run(self) -> Optional[int]:
        return int(self.point) if self.axis == "run" else None

    def _key(self) -> tuple:
        return (self.point, self.axis, self.store_version, self.family, self.kind)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NoCalibrationAvailable):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __reduce__(self):
        point, axis, store_version, family, kind = self._key()
        return _rebuild, (
            type(self),
            (point,),
            {"axis": axis, "store_version": store_version, "family": family, "kind": kind},
        )


class CorruptCalibration(CalibrationError):
    """Calibration data violates its invariants (e.g. gain <= 0)."""

    def __init__(self, message: str, channels: Sequence = ()):
        super().__init__(message)
        self.channels = tuple(channels)

    def __reduce__(self):
        return _rebuild, (type(self), self.args, {"channels": self.channels})


class MissingMap(CalibrationError):
    """No board layout exists for the requested run."""

    def __init__(self, run_number: int, family: str):
        super().__init__(f"No {family} board layout for run {run_number}")
        self.run_number = run_number
        self.family = family

    def __reduce__(self):
        return _rebuild, (type(self), (self.run_number, self.family), {})


@dataclass(frozen=True)
class AmbiguousCalibration:
    """
    Warning-level diagnostic: several records cover the same query point.

    ``chosen`` is the most recently published record id; ``candidates`` lists
    every covering record id, newest first.
    """
    point: float
    axis: str
    family: str
    kind: str
    chosen: str
    candidates: Tuple[str, ...]
    published: Tuple[datetime, ...] = ()

    def __str__(self) -> str:
        return (
            f"ambiguous {self.family} {self.kind} at {self.axis} {self.point}: "
            f"{len(self.candidates)} records overlap {list(self.candidates)}, "
            f"using {self.chosen!r}"
        )
