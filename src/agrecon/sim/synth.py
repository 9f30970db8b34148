from __future__ import annotations
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from ..calibration.constants import CalibrationSet
from ..config.schemas import ReconstructionCfg
from ..detector.channels import ChannelId
from ..detector.layout import (
    ANODE_WIRES_RADIUS_MM,
    DETECTOR_LENGTH_MM,
    INNER_CATHODE_RADIUS_MM,
    PAD_PITCH_PHI,
    PAD_PITCH_Z_MM,
    TPC_PAD_ROWS,
    WIRE_PITCH_PHI,
)
from ..geometry.maps import GeometryMap, Site
from ..physics.events import RawEvent
from ..physics.hits import RawSample
from ..reconstruction.spacepoints import drift_time_ns


@dataclass
class SynthEvent:
    raw: RawEvent
    vertex_mm: np.ndarray
    directions: List[np.ndarray] = field(default_factory=list)


def _site_index(geometry: GeometryMap) -> Dict[Site, ChannelId]:
    return {pos.site: ch for ch, pos in geometry.entries.items()}


def track_crossings(
    vertex_mm: np.ndarray,
    direction: np.ndarray,
    step_mm: float = 4.0,
) -> List[np.ndarray]:
    """
    Points where a straight track from ``vertex_mm`` crosses the cylinders
    r = r_inner + step/2, r_inner + 3 step/2, ... inside the drift region.
    """
    d = np.asarray(direction, dtype=float)
    d = d / np.linalg.norm(d)
    v = np.asarray(vertex_mm, dtype=float)
    a = d[0] ** 2 + d[1] ** 2
    if a < 1e-12:
        return []
    b = 2.0 * (v[0] * d[0] + v[1] * d[1])
    c0 = v[0] ** 2 + v[1] ** 2
    out = []
    r = INNER_CATHODE_RADIUS_MM + 0.5 * step_mm
    while r < ANODE_WIRES_RADIUS_MM:
        disc = b * b - 4.0 * a * (c0 - r * r)
        if disc >= 0.0:
            s = (-b + np.sqrt(disc)) / (2.0 * a)
            if s > 0.0:
                p = v + s * d
                if abs(p[2]) < 0.5 * DETECTOR_LENGTH_MM:
                    out.append(p)
        r += step_mm
    return out


def synth_event(
    event_id: int,
    vertex_mm: Sequence[float],
    directions: Sequence[Sequence[float]],
    geometry: GeometryMap,
    calibration: CalibrationSet,
    cfg: ReconstructionCfg | None = None,
    charge: float = 1000.0,
    step_mm: float = 4.0,
) -> SynthEvent:
    """
    Raw samples for straight tracks leaving ``vertex_mm``.

    Each drift-region crossing produces one anode-wire pulse (nearest wire in
    phi) and one pad pulse (pad under the crossing) at the drift time of its
    radius. Amplitudes and times are de-calibrated with ``calibration`` so
    that calibrating them returns ``charge`` and the true drift time. Sites
    without a live, calibrated channel are skipped.
    """
    cfg = cfg or ReconstructionCfg()
    sites = _site_index(geometry)
    samples: List[RawSample] = []
    v = np.asarray(vertex_mm, dtype=float)

    def _emit(site, t_ns: float) -> None:
        ch = sites.get(site)
        if ch is None or ch in geometry.dead:
            return
        k = calibration.get(ch)
        if k is None:
            return
        samples.append(RawSample(ch, charge / k.gain, t_ns + k.time_offset_ns))

    for d in directions:
        for p in track_crossings(v, np.asarray(d, dtype=float), step_mm=step_mm):
            r = float(np.hypot(p[0], p[1]))
            phi = float(np.arctan2(p[1], p[0]) % (2.0 * np.pi))
            t = drift_time_ns(r, cfg)
            wire = int(phi // WIRE_PITCH_PHI)
            column = int(phi // PAD_PITCH_PHI)
            row = int((p[2] + 0.5 * DETECTOR_LENGTH_MM) // PAD_PITCH_Z_MM)
            row = min(max(row, 0), TPC_PAD_ROWS - 1)
            _emit(("awb", wire), t)
            _emit(("pwb", (column, row)), t)

    return SynthEvent(RawEvent(event_id, samples), v, [np.asarray(d, dtype=float) for d in directions])


# Each placed azimuth excludes at most 60 degrees, so six always fit.
MAX_SYNTH_TRACKS = 6


def synth_annihilations(
    n_events: int,
    geometry: GeometryMap,
    calibration: CalibrationSet,
    n_tracks: int = 2,
    vertex_sigma_mm: Tuple[float, float] = (5.0, 200.0),
    rng: np.random.Generator | None = None,
    cfg: ReconstructionCfg | None = None,
) -> List[SynthEvent]:
    """
    Toy annihilations: vertex near the axis (gaussian in x, y with sigma
    vertex_sigma_mm[0], in z with vertex_sigma_mm[1]), ``n_tracks`` straight
    tracks with azimuths at least 30 degrees apart. At most MAX_SYNTH_TRACKS
    tracks per event.
    """
    if not 1 <= n_tracks <= MAX_SYNTH_TRACKS:
        raise ValueError(f"n_tracks must be in [1, {MAX_SYNTH_TRACKS}], got {n_tracks}")
    rng = rng or np.random.default_rng()
    events: List[SynthEvent] = []
    for i in range(n_events):
        sxy, sz = vertex_sigma_mm
        vtx = np.array([rng.normal(0, sxy), rng.normal(0, sxy), rng.normal(0, sz)])
        phis: List[float] = []
        while len(phis) < n_tracks:
            phi = rng.uniform(0, 2 * np.pi)
            if all(abs((phi - q + np.pi) % (2 * np.pi) - np.pi) > np.radians(30) for q in phis):
                phis.append(phi)
        dirs = []
        for phi in phis:
            cos_t = rng.uniform(-0.6, 0.6)
            sin_t = np.sqrt(1.0 - cos_t * cos_t)
            dirs.append(np.array([sin_t * np.cos(phi), sin_t * np.sin(phi), cos_t]))
        events.append(synth_event(i, vtx, dirs, geometry, calibration, cfg=cfg))
    return events
