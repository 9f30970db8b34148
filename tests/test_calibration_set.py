import math

import numpy as np
import pytest

from agrecon.calibration.constants import CalibrationConstants, CalibrationSet, RunInterval
from agrecon.calibration.errors import CorruptCalibration
from agrecon.detector.channels import ChannelId

A = ChannelId.awb("09", 0)
B = ChannelId.awb("09", 1)
P = ChannelId.pwb("12", 0, 0)


def test_invalid_constants_are_corrupt():
    for bad in (0.0, -1.0, math.nan, math.inf):
        with pytest.raises(CorruptCalibration) as exc:
            CalibrationSet({A: CalibrationConstants(1.0), B: CalibrationConstants(bad)})
        assert exc.value.channels == (B,)
    with pytest.raises(CorruptCalibration):
        CalibrationSet({A: CalibrationConstants(1.0, math.nan)})


def test_from_arrays_and_rows():
    cs = CalibrationSet.from_arrays([B, A], [2.0, 3.0], [1.0, 0.5], validity=RunInterval(100, 200))
    assert cs[A] == CalibrationConstants(3.0, 0.5)
    assert cs.get(P) is None
    np.testing.assert_array_equal(cs.rows([A, P, B]), [0, -1, 1])
    np.testing.assert_array_equal(cs.gains, [3.0, 2.0])
    with pytest.raises(ValueError):
        cs.gains[0] = 1.0
    with pytest.raises(CorruptCalibration):
        CalibrationSet.from_arrays([A, A], [1.0, 1.0])


def test_merge_families():
    wires = CalibrationSet.from_arrays([A, B], [2.0, 2.0], validity=RunInterval(100, 200))
    pads = CalibrationSet.unit([P], validity=RunInterval(150))
    both = CalibrationSet.merge(wires, pads)
    assert len(both) == 3
    assert both.families == frozenset({"awb", "pwb"})
    assert both.validity == RunInterval(150, 200)
    with pytest.raises(ValueError):
        CalibrationSet.merge(wires, wires)
    with pytest.raises(ValueError):
        CalibrationSet.merge(wires, CalibrationSet.unit([P], validity=RunInterval(300)))


def test_run_interval():
    iv = RunInterval(100, 200)
    assert iv.contains(100) and iv.contains(199) and not iv.contains(200)
    assert RunInterval(150).contains(10**9)
    assert iv.overlaps(RunInterval(199)) and not iv.overlaps(RunInterval(200, 300))
    with pytest.raises(ValueError):
        RunInterval(5, 5)
