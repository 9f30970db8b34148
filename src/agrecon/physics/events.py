# src/agrecon/physics/events.py
from __future__ import annotations
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Literal, Sequence, Tuple

from agrecon.detector.channels import ChannelId
from .hits import CalibratedHit, RawSample


# --- Per-channel / per-event conditions --------------------------------------
# These are values, not exceptions: they are recovered where they occur and
# only counted in EventDiagnostics.

@dataclass(frozen=True, slots=True)
class UnmappedChannel:
    """Calibrated channel with no usable geometry entry (absent or known dead)."""
    channel: ChannelId
    status: Literal["unmapped", "dead"] = "unmapped"


@dataclass(frozen=True, slots=True)
class OutOfRange:
    """
    Raw sample that could not be calibrated.

    reason: "missing_constants" | "dead_channel" | "non_finite"
    """
    channel: ChannelId
    reason: str


@dataclass(frozen=True, slots=True)
class ReconstructionFailure:
    """No consistent trajectory for an event; reason e.g. "no_tracks"."""
    reason: str
    detail: str = ""


@dataclass(slots=True)
class EventDiagnostics:
    samples_in: int = 0
    hits_out: int = 0
    out_of_range: int = 0
    unmapped: int = 0
    dead: int = 0
    unmatched_wires: int = 0
    spacepoints: int = 0
    tracks: int = 0
    reconstruction_failures: int = 0
    reasons: Dict[str, int] = field(default_factory=dict)

    def inc(self, reason: str, n: int = 1) -> None:
        self.reasons[reason] = self.reasons.get(reason, 0) + n

    def add(self, other: "EventDiagnostics") -> None:
        """Accumulate another event's counters (run-level totals)."""
        for f in fields(self):
            if f.name == "reasons":
                continue
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))
        for reason, n in other.reasons.items():
            self.inc(reason, n)

    def as_dict(self) -> Dict[str, int]:
        out = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "reasons"}
        out.update({f"reason.{k}": v for k, v in sorted(self.reasons.items())})
        return out


@dataclass(slots=True)
class RawEvent:
    """Decoded samples of one trigger, straight from the event source."""
    event_id: int
    samples: Sequence[RawSample]
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Event:
    """
    Calibrated hits sharing one trigger.

    Hits are kept ordered by (drift_time_ns, channel); diagnostics count the
    samples dropped while building the event and, later, reconstruction
    failures.
    """
    event_id: int
    hits: Tuple[CalibratedHit, ...] = ()
    diagnostics: EventDiagnostics = field(default_factory=EventDiagnostics)
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.hits = tuple(sorted(self.hits, key=lambda h: (h.drift_time_ns, h.channel)))

    def __len__(self) -> int:
        return len(self.hits)

    def family_hits(self, family: str) -> List[CalibratedHit]:
        return [h for h in self.hits if h.channel.family == family]

    @property
    def wire_hits(self) -> List[CalibratedHit]:
        return self.family_hits("awb")

    @property
    def pad_hits(self) -> List[CalibratedHit]:
        return self.family_hits("pwb")
