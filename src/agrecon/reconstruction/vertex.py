# src/agrecon/reconstruction/vertex.py
from __future__ import annotations
from collections.abc import Sequence as SequenceABC
from dataclasses import dataclass
from itertools import combinations
from typing import List, Optional, Sequence, Tuple

import numpy as np

from agrecon.config.schemas import ReconstructionCfg
from agrecon.detector.layout import DETECTOR_LENGTH_MM
from agrecon.physics.events import Event, EventDiagnostics, ReconstructionFailure
from agrecon.physics.hits import SpacePoint
from .spacepoints import form_spacepoints
from .track_finding import cluster_spacepoints


@dataclass(frozen=True, slots=True, eq=False)
class TrackFit:
    """
    Straight-line fit to one cluster of space points.

    centroid: mean point [mm]
    direction: unit vector, oriented away from the axis
    rms_mm: rms perpendicular distance of the points to the line
    t_ns: earliest drift time in the cluster
    """
    centroid: np.ndarray
    direction: np.ndarray
    rms_mm: float
    t_ns: float
    n_points: int


@dataclass(frozen=True, slots=True)
class ReconstructedVertex:
    """
    Annihilation-vertex candidate.

    quality: distance-like figure of merit [mm], lower is better
    kind: "pair" (closest approach of two tracks) or "axis" (single track
          extrapolated to the beam axis)
    tracks: indices of the tracks used
    """
    x_mm: float
    y_mm: float
    z_mm: float
    quality: float
    t_ns: float
    n_tracks: int
    kind: str
    tracks: Tuple[int, ...] = ()

    @property
    def r_mm(self) -> float:
        return float(np.hypot(self.x_mm, self.y_mm))


def fit_track(points: Sequence[SpacePoint]) -> Optional[TrackFit]:
    """Principal-axis line fit; None for fewer than two distinct points."""
    if len(points) < 2:
        return None
    xyz = np.stack([p.xyz() for p in points], axis=0)
    centroid = xyz.mean(axis=0)
    d = xyz - centroid
    _, s, vt = np.linalg.svd(d, full_matrices=False)
    if s[0] <= 0.0:
        return None
    direction = vt[0]
    if direction[:2] @ centroid[:2] < 0.0:
        direction = -direction
    along = d @ direction
    perp = d - np.outer(along, direction)
    rms = float(np.sqrt(np.mean(np.sum(perp * perp, axis=1))))
    return TrackFit(
        centroid=centroid,
        direction=direction,
        rms_mm=rms,
        t_ns=float(min(p.t_ns for p in points)),
        n_points=len(points),
    )


def _perp_distance(track: TrackFit, point: np.ndarray) -> float:
    d = point - track.centroid
    return float(np.linalg.norm(d - (d @ track.direction) * track.direction))


def merge_collinear(
    clusters: Sequence[Sequence[SpacePoint]],
    cfg: ReconstructionCfg | None = None,
) -> List[List[SpacePoint]]:
    """
    Join clusters that lie on one line: direction within
    ``min_opening_angle_rad`` and each centroid within ``merge_distance_mm``
    of the other's line. Catches a track split over neighbouring Hough bins
    and the two halves of a back-to-back pair.
    """
    if cfg is None:
        cfg = ReconstructionCfg()
    cos_min = np.cos(cfg.min_opening_angle_rad)
    merged = [list(c) for c in clusters]
    changed = True
    while changed:
        changed = False
        fits = [fit_track(c) for c in merged]
        for i, j in combinations(range(len(merged)), 2):
            a, b = fits[i], fits[j]
            if a is None or b is None:
                continue
            if abs(float(a.direction @ b.direction)) < cos_min:
                continue
            if max(_perp_distance(a, b.centroid), _perp_distance(b, a.centroid)) > cfg.merge_distance_mm:
                continue
            merged[i] = merged[i] + merged[j]
            del merged[j]
            changed = True
            break
    return merged


def closest_approach(
    a: TrackFit, b: TrackFit, min_angle_rad: float = 0.0
) -> Optional[Tuple[np.ndarray, float]]:
    """
    Midpoint and distance of closest approach of two lines; None when they
    are (nearly) parallel, i.e. closer than ``min_angle_rad`` in direction.
    """
    w0 = a.centroid - b.centroid
    cos_ab = float(a.direction @ b.direction)
    denom = 1.0 - cos_ab * cos_ab
    if denom < max(1e-9, np.sin(min_angle_rad) ** 2):
        return None
    d = float(a.direction @ w0)
    e = float(b.direction @ w0)
    s = (cos_ab * e - d) / denom
    t = (e - cos_ab * d) / denom
    pa = a.centroid + s * a.direction
    pb = b.centroid + t * b.direction
    return 0.5 * (pa + pb), float(np.linalg.norm(pa - pb))


def axis_approach(track: TrackFit) -> Optional[Tuple[np.ndarray, float]]:
    """Point of a line closest to the z axis and its distance; None if parallel to it."""
    c, d = track.centroid, track.direction
    dxy2 = float(d[0] * d[0] + d[1] * d[1])
    if dxy2 < 1e-12:
        return None
    s = -float(c[0] * d[0] + c[1] * d[1]) / dxy2
    p = c + s * d
    return p, float(np.hypot(p[0], p[1]))


class VertexCandidates(SequenceABC):
    """
    Vertex candidates of one event, best first.

    Nothing is paired or ranked until the candidates are first needed; after
    that the ranked tuple is kept, so every iteration yields the same finite
    sequence. Order: quality ascending, ties broken by earliest drift time.
    """

    def __init__(
        self,
        event_id: int,
        tracks: Sequence[TrackFit] = (),
        diagnostics: EventDiagnostics | None = None,
        cfg: ReconstructionCfg | None = None,
        failures: Sequence[ReconstructionFailure] = (),
    ):
        self.event_id = event_id
        self.tracks = tuple(tracks)
        self._diagnostics = diagnostics if diagnostics is not None else EventDiagnostics()
        self._cfg = cfg or ReconstructionCfg()
        self._failures: List[ReconstructionFailure] = list(failures)
        self._ranked: Optional[Tuple[ReconstructedVertex, ...]] = None

    def _candidates(self) -> Tuple[ReconstructedVertex, ...]:
        if self._ranked is None:
            self._ranked = self._rank()
        return self._ranked

    def _rank(self) -> Tuple[ReconstructedVertex, ...]:
        if not self.tracks:
            return ()
        cfg = self._cfg
        half_length = 0.5 * DETECTOR_LENGTH_MM
        found: List[ReconstructedVertex] = []

        if len(self.tracks) == 1:
            trk = self.tracks[0]
            res = axis_approach(trk)
            if res is not None:
                p, dist = res
                found.append(
                    ReconstructedVertex(
                        float(p[0]), float(p[1]), float(p[2]),
                        quality=dist + trk.rms_mm, t_ns=trk.t_ns,
                        n_tracks=1, kind="axis", tracks=(0,),
                    )
                )
        else:
            for i, j in combinations(range(len(self.tracks)), 2):
                a, b = self.tracks[i], self.tracks[j]
                res = closest_approach(a, b, cfg.min_opening_angle_rad)
                if res is None:
                    continue
                p, dca = res
                if dca > cfg.max_dca_mm:
                    continue
                found.append(
                    ReconstructedVertex(
                        float(p[0]), float(p[1]), float(p[2]),
                        quality=dca + a.rms_mm + b.rms_mm, t_ns=min(a.t_ns, b.t_ns),
                        n_tracks=2, kind="pair", tracks=(i, j),
                    )
                )

        accepted = [
            v for v in found
            if np.isfinite(v.quality)
            and v.r_mm <= cfg.max_vertex_radius_mm
            and abs(v.z_mm) <= half_length
        ]
        if not accepted:
            self._fail("no_vertex", f"{len(self.tracks)} track(s), {len(found)} raw candidate(s)")
            return ()
        accepted.sort(key=lambda v: (v.quality, v.t_ns, v.tracks))
        return tuple(accepted)

    def _fail(self, reason: str, detail: str = "") -> None:
        self._failures.append(ReconstructionFailure(reason, detail))
        self._diagnostics.reconstruction_failures += 1
        self._diagnostics.inc(reason)

    # ---- Sequence protocol -------------------------------------------------

    def __getitem__(self, i):
        return self._candidates()[i]

    def __len__(self) -> int:
        return len(self._candidates())

    def __iter__(self):
        return iter(self._candidates())

    def __repr__(self) -> str:
        state = "pending" if self._ranked is None else f"{len(self._ranked)} candidate(s)"
        return f"VertexCandidates(event_id={self.event_id}, tracks={len(self.tracks)}, {state})"

    @property
    def best(self) -> Optional[ReconstructedVertex]:
        c = self._candidates()
        return c[0] if c else None

    @property
    def diagnostics(self) -> EventDiagnostics:
        self._candidates()
        return self._diagnostics

    @property
    def failures(self) -> Tuple[ReconstructionFailure, ...]:
        self._candidates()
        return tuple(self._failures)


def reconstruct(event: Event, cfg: ReconstructionCfg | None = None) -> VertexCandidates:
    """
    Event -> vertex candidates.

    An event without hits gives an empty result and no failure. An event
    whose hits do not form space points, tracks or a vertex gives an empty
    result and one reconstruction failure ("no_spacepoints", "no_tracks" or
    "no_vertex") in the event diagnostics. Never raises for event content.
    """
    if cfg is None:
        cfg = ReconstructionCfg()
    diag = event.diagnostics
    if not event.hits:
        return VertexCandidates(event.event_id, (), diag, cfg)

    candidates = VertexCandidates(event.event_id, (), diag, cfg)
    with np.errstate(divide="ignore", invalid="ignore"):
        points = form_spacepoints(event, cfg, diag)
        if not points:
            candidates._fail("no_spacepoints", f"{len(event.hits)} hit(s)")
            return candidates

        clustering = cluster_spacepoints(points, cfg)
        clusters = merge_collinear(clustering.clusters, cfg)
        tracks = [t for t in (fit_track(c) for c in clusters) if t is not None]
    diag.tracks += len(tracks)
    if not tracks:
        candidates._fail("no_tracks", f"{len(points)} space point(s)")
        return candidates

    return VertexCandidates(event.event_id, tracks, diag, cfg)
