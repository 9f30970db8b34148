import h5py
import json
import numpy as np
import pytest

from agrecon.detector.channels import ChannelId
from agrecon.io.event_store import count_events, iter_raw_events, list_runs, write_raw_events
from agrecon.io.recon_store import read_failed_runs, read_vertices, write_failed_run, write_init, write_run
from agrecon.physics.events import EventDiagnostics, RawEvent
from agrecon.physics.hits import RawSample
from agrecon.reconstruction.vertex import ReconstructedVertex


def _events():
    a, p = ChannelId.awb("09", 3), ChannelId.pwb("46", 2, 70)
    return [
        RawEvent(10, [RawSample(a, 12.5, 300.0), RawSample(p, 40.0, 310.0), RawSample(a, 7.0, 900.0)]),
        RawEvent(11, []),
        RawEvent(12, [RawSample(p, 1.0, 2.0)]),
    ]


def test_raw_events_file(tmp_path):
    path = tmp_path / "raw.h5"
    events = _events()
    write_raw_events(path, {9500: events, 9400: events[:1]})

    assert list_runs(path) == [9400, 9500]
    assert count_events(path, 9500) == 3
    back = list(iter_raw_events(path, 9500, chunk_events=2))
    assert [e.event_id for e in back] == [10, 11, 12]
    assert [list(e.samples) for e in back] == [list(e.samples) for e in events]
    assert back[1].meta == {"run": 9500, "index": 1}
    assert len(list(iter_raw_events(path, 9500, max_events=2))) == 2

    # rewriting a run replaces it
    write_raw_events(path, {9400: events})
    assert count_events(path, 9400) == 3
    with pytest.raises(KeyError):
        next(iter_raw_events(path, 1))


def test_recon_output(tmp_path):
    path = tmp_path / "out.h5"
    v1 = ReconstructedVertex(1.0, 2.0, 3.0, quality=0.5, t_ns=100.0, n_tracks=2, kind="pair", tracks=(0, 1))
    v2 = ReconstructedVertex(0.0, 0.0, 9.0, quality=2.0, t_ns=50.0, n_tracks=1, kind="axis", tracks=(0,))
    diag = EventDiagnostics(samples_in=4, unmapped=1)
    diag.inc("unmapped_channel")

    f = write_init(path)
    write_run(f, 9500, [1, 2, 3], [(v1, v2), (), (v2,)], diag, store_version=2, sources=["a", "b"])
    write_failed_run(f, 9600, "NoCalibrationAvailable", "No calibration covers run 9600")
    f.close()

    cols = read_vertices(path, 9500)
    np.testing.assert_array_equal(cols["event_id"], [1, 1, 3])
    np.testing.assert_array_equal(cols["rank"], [0, 1, 0])
    np.testing.assert_array_equal(cols["kind"], [0, 1, 1])
    np.testing.assert_allclose(cols["xyz_mm"][0], [1.0, 2.0, 3.0])
    np.testing.assert_allclose(cols["quality"], [0.5, 2.0, 2.0])

    with h5py.File(path, "r") as h:
        g = h["runs/9500"]
        assert g.attrs["store_version"] == 2
        assert json.loads(g.attrs["sources"]) == ["a", "b"]
        d = json.loads(g.attrs["diagnostics"])
        assert d["unmapped"] == 1 and d["reason.unmapped_channel"] == 1
        np.testing.assert_array_equal(g["events/n_candidates"][...], [2, 0, 1])

    assert read_failed_runs(path)[9600]["reason"] == "NoCalibrationAvailable"
