from pathlib import Path

import numpy as np
import pytest

from agrecon.calibration.constants import CalibrationSet, RunInterval
from agrecon.geometry.maps import build_awb_map, build_pwb_map, merge_maps


@pytest.fixture(scope="session")
def detector_map():
    """Full TPC: Alpha16 layout 2724 + PadWing layout 4418."""
    return merge_maps(build_awb_map("awb-2724"), build_pwb_map("pwb-4418"))


@pytest.fixture(scope="session")
def detector_calibration(detector_map):
    # non-trivial constants so raw -> calibrated is not the identity
    chans = detector_map.live_channels()
    return CalibrationSet.from_arrays(
        chans,
        np.full(len(chans), 1.5),
        np.full(len(chans), 10.0),
        validity=RunInterval(9000, 10000),
        label="test",
    )


MANIFEST = """\
name = "test-store"

[[geometry]]
id = "awb-2724"
family = "awb"
layout = "awb-2724"
runs = [2724]
published = 2022-01-10T00:00:00Z

[[geometry]]
id = "pwb-4418"
family = "pwb"
runs = [4418]
published = 2022-08-01T00:00:00Z

[[calibration]]
id = "wire-gain-a"
family = "awb"
runs = [9000, 10000]
published = 2023-01-01T00:00:00Z
table = "wire_gain_a.npz"

[[calibration]]
id = "pad-gain-a"
family = "pwb"
runs = [9000, 10000]
published = 2023-01-01T00:00:00Z
table = "pad_gain_a.npz"

[[calibration]]
id = "wire-gain-b"
family = "awb"
runs = [9000, 10000]
published = 2023-06-01T00:00:00Z
store_version = 2
supersedes = ["wire-gain-a"]
table = "wire_gain_b.npz"
"""


def _save_table(path: Path, channels, gain: float, t0: float) -> None:
    np.savez(
        path,
        channel=np.array([str(ch) for ch in channels]),
        gain=np.full(len(channels), gain),
        time_offset_ns=np.full(len(channels), t0),
    )


@pytest.fixture
def store_dir(tmp_path, detector_map):
    """On-disk store: v1 wire gain 1.5, v2 supersedes it with 2.0; pads 1.5 throughout."""
    d = tmp_path / "store"
    d.mkdir()
    wires = [ch for ch in detector_map.live_channels() if ch.family == "awb"]
    pads = [ch for ch in detector_map.live_channels() if ch.family == "pwb"]
    _save_table(d / "wire_gain_a.npz", wires, 1.5, 10.0)
    _save_table(d / "wire_gain_b.npz", wires, 2.0, 10.0)
    _save_table(d / "pad_gain_a.npz", pads, 1.5, 10.0)
    (d / "manifest.toml").write_text(MANIFEST)
    return d
