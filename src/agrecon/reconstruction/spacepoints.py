# src/agrecon/reconstruction/spacepoints.py
from __future__ import annotations
from typing import List, Optional, Sequence

import numpy as np

from agrecon.config.schemas import ReconstructionCfg
from agrecon.detector.layout import (
    ANODE_WIRES_RADIUS_MM,
    INNER_CATHODE_RADIUS_MM,
    PAD_PITCH_Z_MM,
)
from agrecon.physics.events import Event, EventDiagnostics
from agrecon.physics.hits import CalibratedHit, SpacePoint


def drift_radius_mm(drift_time_ns: float, cfg: ReconstructionCfg) -> Optional[float]:
    """
    Linear drift model: electrons drift outwards to the anode at constant
    speed, so r = r_anode - v * t. Returns None when t falls outside the
    drift region [inner cathode, anode].
    """
    if drift_time_ns < 0.0:
        return None
    r = ANODE_WIRES_RADIUS_MM - cfg.drift_velocity_mm_per_ns * drift_time_ns
    if r < INNER_CATHODE_RADIUS_MM:
        return None
    return float(r)


def drift_time_ns(r_mm: float, cfg: ReconstructionCfg) -> float:
    """Inverse of drift_radius_mm."""
    return float((ANODE_WIRES_RADIUS_MM - r_mm) / cfg.drift_velocity_mm_per_ns)


def _dphi(a: np.ndarray | float, b: float) -> np.ndarray:
    d = np.asarray(a) - b
    return np.abs((d + np.pi) % (2.0 * np.pi) - np.pi)


def _pad_z(pads: Sequence[CalibratedHit], cfg: ReconstructionCfg) -> Optional[float]:
    """Charge-weighted z of the pads around the highest-charge pad."""
    if not pads:
        return None
    peak = max(pads, key=lambda h: (h.charge, -h.drift_time_ns))
    window = (cfg.pad_cluster_rows + 0.5) * PAD_PITCH_Z_MM
    near = [h for h in pads if abs(h.position.z_mm - peak.position.z_mm) <= window]
    q = np.array([max(h.charge, 0.0) for h in near], dtype=np.float64)
    z = np.array([h.position.z_mm for h in near], dtype=np.float64)
    if q.sum() <= 0.0:
        return float(peak.position.z_mm)
    return float(np.dot(q, z) / q.sum())


def form_spacepoints(
    event: Event,
    cfg: ReconstructionCfg | None = None,
    diagnostics: EventDiagnostics | None = None,
) -> List[SpacePoint]:
    """
    Combine anode-wire and cathode-pad hits into 3D points.

    Each wire hit gives phi (wire position) and r (drift time). It is matched
    to the pad hits whose column lies within ``phi_match_rad`` of the wire and
    whose drift time lies within ``match_window_ns``; the pads set z. Wire
    hits without a drift radius or without matching pads are counted in
    ``diagnostics`` and skipped.
    """
    if cfg is None:
        cfg = ReconstructionCfg()
    if diagnostics is None:
        diagnostics = event.diagnostics

    wires = event.wire_hits
    pads = event.pad_hits
    if not wires:
        return []

    pad_phi = np.array([h.position.phi for h in pads], dtype=np.float64)
    pad_t = np.array([h.drift_time_ns for h in pads], dtype=np.float64)

    points: List[SpacePoint] = []
    for w in wires:
        r = drift_radius_mm(w.drift_time_ns, cfg)
        if r is None:
            diagnostics.unmatched_wires += 1
            diagnostics.inc("drift_out_of_range")
            continue
        if pads:
            sel = (_dphi(pad_phi, w.position.phi) <= cfg.phi_match_rad) & (
                np.abs(pad_t - w.drift_time_ns) <= cfg.match_window_ns
            )
            matched = [pads[i] for i in np.flatnonzero(sel)]
        else:
            matched = []
        z = _pad_z(matched, cfg)
        if z is None:
            diagnostics.unmatched_wires += 1
            diagnostics.inc("no_matching_pad")
            continue
        points.append(SpacePoint(r, w.position.phi, z, w.drift_time_ns, w.charge))

    diagnostics.spacepoints += len(points)
    return points
