import numpy as np
import pytest

from agrecon.config.schemas import ReconstructionCfg
from agrecon.physics.calibrator import build_event
from agrecon.physics.events import Event, RawEvent
from agrecon.reconstruction.spacepoints import drift_radius_mm, drift_time_ns, form_spacepoints
from agrecon.reconstruction.track_finding import cluster_spacepoints
from agrecon.reconstruction.vertex import VertexCandidates, reconstruct
from agrecon.sim.synth import synth_annihilations, synth_event

VERTEX = (2.0, -1.5, 40.0)
DIRECTIONS = (
    (np.cos(0.3), np.sin(0.3), 0.2),
    (np.cos(2.4), np.sin(2.4), -0.35),
)


def _event(raw: RawEvent, detector_map, detector_calibration) -> Event:
    return build_event(raw, detector_map, detector_calibration)


def test_drift_model():
    cfg = ReconstructionCfg()
    assert drift_radius_mm(0.0, cfg) == 182.0
    assert drift_radius_mm(drift_time_ns(120.0, cfg), cfg) == pytest.approx(120.0)
    assert drift_radius_mm(-1.0, cfg) is None
    assert drift_radius_mm(drift_time_ns(100.0, cfg), cfg) is None


def test_empty_event_has_no_candidates():
    cands = reconstruct(Event(1))
    assert len(cands) == 0
    assert list(cands) == []
    assert cands.best is None
    assert cands.failures == ()
    assert cands.diagnostics.reconstruction_failures == 0


def test_pads_without_wires_fail(detector_map, detector_calibration):
    synth = synth_event(3, VERTEX, DIRECTIONS, detector_map, detector_calibration)
    pads_only = RawEvent(3, [s for s in synth.raw.samples if s.channel.family == "pwb"])
    event = _event(pads_only, detector_map, detector_calibration)
    assert len(event) > 0

    cands = reconstruct(event)
    assert len(cands) == 0
    assert [f.reason for f in cands.failures] == ["no_spacepoints"]
    assert event.diagnostics.reconstruction_failures == 1


def test_synthetic_tracks_give_spacepoints(detector_map, detector_calibration):
    synth = synth_event(4, VERTEX, DIRECTIONS, detector_map, detector_calibration)
    event = _event(synth.raw, detector_map, detector_calibration)
    assert event.diagnostics.out_of_range == 0 and event.diagnostics.unmapped == 0

    points = form_spacepoints(event)
    # 18 drift-region crossings per track, one wire and one pad each
    assert len(points) == 36
    assert all(109.0 <= p.r_mm <= 182.0 for p in points)

    clustering = cluster_spacepoints(points)
    assert len(clustering.clusters) >= 2
    assert sum(len(c) for c in clustering.clusters) + len(clustering.remainder) == len(points)


def test_two_track_vertex(detector_map, detector_calibration):
    synth = synth_event(5, VERTEX, DIRECTIONS, detector_map, detector_calibration)
    cands = reconstruct(_event(synth.raw, detector_map, detector_calibration))

    assert isinstance(cands, VertexCandidates)
    assert len(cands) >= 1
    best = cands.best
    assert best.kind == "pair"
    assert np.linalg.norm(np.array([best.x_mm, best.y_mm, best.z_mm]) - synth.vertex_mm) < 15.0
    assert cands.failures == ()


def test_candidates_restartable_and_ordered(detector_map, detector_calibration):
    synth = synth_event(6, VERTEX, DIRECTIONS + ((np.cos(4.2), np.sin(4.2), 0.1),),
                        detector_map, detector_calibration)
    cands = reconstruct(_event(synth.raw, detector_map, detector_calibration))

    first = list(cands)
    assert first == list(cands)
    assert cands[0] == first[0] and len(cands) == len(first)
    keys = [(c.quality, c.t_ns) for c in first]
    assert keys == sorted(keys)


def test_single_track_axis_candidate(detector_map, detector_calibration):
    synth = synth_event(7, (0.0, 0.0, -300.0), DIRECTIONS[:1], detector_map, detector_calibration)
    cands = reconstruct(_event(synth.raw, detector_map, detector_calibration))
    best = cands.best
    assert best is not None and best.kind == "axis" and best.n_tracks == 1
    assert abs(best.z_mm - (-300.0)) < 15.0
    assert best.r_mm < 10.0


def test_hits_without_track_fail(detector_map, detector_calibration):
    # two isolated crossings are too few for a track
    synth = synth_event(8, VERTEX, DIRECTIONS[:1], detector_map, detector_calibration, step_mm=40.0)
    cands = reconstruct(_event(synth.raw, detector_map, detector_calibration))
    assert len(cands) == 0
    assert [f.reason for f in cands.failures] == ["no_tracks"]


def test_generator_reproducible(detector_map, detector_calibration):
    a = synth_annihilations(3, detector_map, detector_calibration, rng=np.random.default_rng(11))
    b = synth_annihilations(3, detector_map, detector_calibration, rng=np.random.default_rng(11))
    assert [len(e.raw.samples) for e in a] == [len(e.raw.samples) for e in b]
    np.testing.assert_array_equal(a[2].vertex_mm, b[2].vertex_mm)


def test_generator_track_count_bounds(detector_map, detector_calibration):
    for bad in (0, 12):
        with pytest.raises(ValueError):
            synth_annihilations(1, detector_map, detector_calibration, n_tracks=bad)
    (event,) = synth_annihilations(
        1, detector_map, detector_calibration, n_tracks=6, rng=np.random.default_rng(2)
    )
    assert len(event.directions) == 6
