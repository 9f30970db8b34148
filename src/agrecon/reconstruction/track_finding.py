# src/agrecon/reconstruction/track_finding.py
"""
Group space points into track candidates.

Seen from the x-y plane a track is a circle (a line at high momentum). The
conformal transformation

    u = x / (x^2 + y^2),   v = y / (x^2 + y^2)

maps circles and lines through the origin onto straight lines, so tracks
coming from close to the axis (annihilations in the trap) become lines in
(u, v), found here with a Hough transform over rho = u cos(theta) + v sin(theta).

A Hough line can still hold several tracks: two back-to-back tracks share a
line but leave a gap across the inner cathode, and tracks at different z share
a projection. Each Hough candidate is therefore reduced to its largest set of
points connected by steps of at most ``max_distance_mm``.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set, Tuple

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from agrecon.config.schemas import ReconstructionCfg
from agrecon.physics.hits import SpacePoint

Bin = Tuple[int, int]  # (theta_bin, rho_bin)


@dataclass
class ClusteringResult:
    clusters: List[List[SpacePoint]] = field(default_factory=list)
    remainder: List[SpacePoint] = field(default_factory=list)


def conformal_uv(points: Sequence[SpacePoint]) -> Tuple[np.ndarray, np.ndarray]:
    r = np.array([p.r_mm for p in points], dtype=np.float64)
    phi = np.array([p.phi for p in points], dtype=np.float64)
    # x / r^2 = cos(phi) / r
    return np.cos(phi) / r, np.sin(phi) / r


class HoughAccumulator:
    """
    Hough-space accumulator that remembers which points voted for each bin,
    so the points behind a bin can be removed (and re-added) exactly.
    """

    def __init__(self, u: np.ndarray, v: np.ndarray, rho_bins: int, theta_bins: int):
        self.rho_max = float(np.max(np.hypot(u, v)))
        self.rho_bins = rho_bins
        self.theta_bins = theta_bins
        self.votes: Dict[Bin, Set[int]] = {}
        self._bins = [self._point_bins(ui, vi) for ui, vi in zip(u, v)]

    def _point_bins(self, u: float, v: float) -> Set[Bin]:
        """All bins a point votes for while theta sweeps a full turn."""
        delta_rho = self.rho_max / self.rho_bins
        theta = np.arange(self.theta_bins + 1) * (2.0 * np.pi / self.theta_bins)
        rho = u * np.cos(theta) + v * np.sin(theta)
        # Negative rho saturates to bin 0: a sign change votes down to (and
        # including) bin 0, stretches that stay negative vote for nothing since
        # they duplicate positive-rho bins at theta + pi.
        rho_bin = np.maximum(np.floor(rho / delta_rho), 0).astype(np.int64)
        positive = rho >= 0.0

        bins: Set[Bin] = set()
        for k in range(1, self.theta_bins + 1):
            if positive[k] or positive[k - 1]:
                lo, hi = sorted((int(rho_bin[k - 1]), int(rho_bin[k])))
                for b in range(lo, hi + 1):
                    bins.add((k - 1, b))
        return bins

    def add(self, i: int) -> None:
        for b in self._bins[i]:
            self.votes.setdefault(b, set()).add(i)

    def remove(self, i: int) -> None:
        for b in self._bins[i]:
            voters = self.votes.get(b)
            if voters is not None:
                voters.discard(i)

    def most_popular(self) -> List[int]:
        """Point indices behind the fullest bin (ties: lowest bin); [] if empty."""
        if not self.votes:
            return []
        _, voters = max(
            self.votes.items(), key=lambda kv: (len(kv[1]), -kv[0][0], -kv[0][1])
        )
        return sorted(voters)


def largest_cluster(indices: Sequence[int], xyz: np.ndarray, max_distance: float) -> List[int]:
    """
    Largest subset of ``indices`` whose points are all reachable from each
    other through steps no longer than ``max_distance``.
    """
    if len(indices) == 0:
        return []
    idx = np.asarray(indices, dtype=np.int64)
    if idx.size == 1:
        return [int(idx[0])]
    tree = cKDTree(xyz[idx])
    pairs = np.asarray(
        tree.query_pairs(max_distance, output_type="ndarray"), dtype=np.int64
    ).reshape(-1, 2)
    n = idx.size
    graph = coo_matrix(
        (np.ones(len(pairs), dtype=np.int8), (pairs[:, 0], pairs[:, 1])), shape=(n, n)
    )
    _, labels = connected_components(graph, directed=False)
    sizes = np.bincount(labels)
    keep = labels == int(np.argmax(sizes))
    return sorted(int(i) for i in idx[keep])


def cluster_spacepoints(
    points: Sequence[SpacePoint],
    cfg: ReconstructionCfg | None = None,
) -> ClusteringResult:
    if cfg is None:
        cfg = ReconstructionCfg()
    points = [p for p in points if p.r_mm > 0.0]
    if not points:
        return ClusteringResult([], [])

    u, v = conformal_uv(points)
    xyz = np.stack([p.xyz() for p in points], axis=0)
    acc = HoughAccumulator(u, v, cfg.rho_bins, cfg.theta_bins)
    for i in range(len(points)):
        acc.add(i)

    def best_cluster() -> List[int]:
        # Take the largest connected set behind the fullest bin, pull it out
        # of the accumulator, and repeat while that makes the set grow.
        # The accumulator is left without the returned points.
        prev: List[int] = []
        while True:
            best = largest_cluster(acc.most_popular(), xyz, cfg.max_distance_mm)
            if len(best) <= len(prev):
                break
            for i in best:
                acc.remove(i)
            for i in prev:
                acc.add(i)
            prev = best
        return prev

    clusters: List[List[int]] = []
    while len(clusters) < cfg.max_clusters:
        cluster = best_cluster()
        if len(cluster) < cfg.min_points_per_cluster:
            break
        clusters.append(cluster)

    used = {i for c in clusters for i in c}
    return ClusteringResult(
        clusters=[[points[i] for i in c] for c in clusters],
        remainder=[p for i, p in enumerate(points) if i not in used],
    )
