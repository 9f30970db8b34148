import math

import numpy as np

from agrecon.calibration.constants import CalibrationConstants, CalibrationSet
from agrecon.detector.channels import ChannelId
from agrecon.geometry.maps import GeometryMap, build_awb_map
from agrecon.physics.calibrator import build_event, calibrate, calibrate_samples
from agrecon.physics.events import OutOfRange, RawEvent
from agrecon.physics.hits import CalibratedSample, RawSample

WIRE_42 = ChannelId.awb("10", 10)


def _calibration(channels, gain=2.0, t0=0.0):
    return CalibrationSet({ch: CalibrationConstants(gain, t0) for ch in channels})


def test_calibrate_exact():
    ch = ChannelId.awb("09", 0)
    out = calibrate(RawSample(ch, 10.0, 5.0), _calibration([ch]))
    assert out == CalibratedSample(ch, 20.0, 5.0)

    out = calibrate(RawSample(ch, 3.0, 100.0), _calibration([ch], gain=0.1, t0=12.5))
    assert out.charge == 3.0 * 0.1
    assert out.drift_time_ns == 100.0 - 12.5


def test_out_of_range_reasons():
    ch, other = ChannelId.awb("09", 0), ChannelId.awb("09", 1)
    cal = _calibration([ch])
    assert calibrate(RawSample(other, 1.0, 1.0), cal) == OutOfRange(other, "missing_constants")
    assert calibrate(RawSample(ch, math.nan, 1.0), cal).reason == "non_finite"
    geometry = build_awb_map("awb-2724", dead=[other])
    assert calibrate(RawSample(other, 1.0, 1.0), cal, geometry).reason == "dead_channel"


def test_vectorised_matches_scalar():
    rng = np.random.default_rng(3)
    chans = [ChannelId.awb("09", i) for i in range(32)]
    cal = CalibrationSet.from_arrays(chans[:30], rng.uniform(0.5, 2.0, 30), rng.uniform(-5, 5, 30))
    samples = [
        RawSample(chans[i], float(a), float(t))
        for i, a, t in zip(rng.integers(0, 32, 200), rng.uniform(0, 4000, 200), rng.uniform(0, 5000, 200))
    ]
    charge, drift, ok = calibrate_samples(samples, cal)
    for i, s in enumerate(samples):
        scalar = calibrate(s, cal)
        if ok[i]:
            assert (scalar.charge, scalar.drift_time_ns) == (charge[i], drift[i])
        else:
            assert isinstance(scalar, OutOfRange)
            assert math.isnan(charge[i]) and math.isnan(drift[i])


def test_unmapped_channel_is_counted_not_kept():
    full = build_awb_map("awb-2724")
    assert full.position(WIRE_42).index == 42
    geometry = GeometryMap({ch: p for ch, p in full.entries.items() if ch != WIRE_42})
    cal = _calibration(full.entries)

    raw = RawEvent(7, [
        RawSample(ChannelId.awb("09", 1), 5.0, 300.0),
        RawSample(WIRE_42, 8.0, 100.0),
        RawSample(ChannelId.awb("09", 0), 4.0, 200.0),
    ])
    event = build_event(raw, geometry, cal)

    assert [h.channel for h in event.hits] == [ChannelId.awb("09", 0), ChannelId.awb("09", 1)]
    assert [h.drift_time_ns for h in event.hits] == [200.0, 300.0]
    assert event.diagnostics.unmapped == 1
    assert event.diagnostics.reasons == {"unmapped_channel": 1}
    # the dropped channel still calibrates
    assert calibrate(raw.samples[1], cal).charge == 16.0


def test_build_event_counts_every_drop():
    dead = ChannelId.awb("09", 2)
    geometry = build_awb_map("awb-2724", dead=[dead])
    cal = _calibration([ChannelId.awb("09", 0), dead])
    raw = RawEvent(1, [
        RawSample(ChannelId.awb("09", 0), 1.0, 1.0),
        RawSample(dead, 1.0, 1.0),
        RawSample(ChannelId.awb("09", 3), 1.0, 1.0),
        RawSample(ChannelId.awb("09", 0), math.inf, 1.0),
    ])
    event = build_event(raw, geometry, cal)
    d = event.diagnostics
    assert len(event) == 1
    assert (d.samples_in, d.hits_out, d.dead, d.out_of_range, d.unmapped) == (4, 1, 1, 2, 0)
    assert d.reasons == {"dead_channel": 1, "missing_constants": 1, "non_finite": 1}

    empty = build_event(RawEvent(2, []), geometry, cal)
    assert len(empty) == 0 and empty.diagnostics.samples_in == 0
