# src/agrecon/physics/calibrator.py
from __future__ import annotations
import math
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from agrecon.calibration.constants import CalibrationSet
from agrecon.geometry.maps import GeometryMap
from .events import Event, EventDiagnostics, OutOfRange, RawEvent, UnmappedChannel
from .hits import CalibratedHit, CalibratedSample, RawSample


def calibrate(
    sample: RawSample,
    calibration: CalibrationSet,
    geometry: Optional[GeometryMap] = None,
) -> Union[CalibratedSample, OutOfRange]:
    """
    Apply gain and timing offset to one raw sample.

      charge        = amplitude * gain
      drift_time_ns = time_ns - time_offset_ns

    A channel without constants is never zero-filled: it comes back as
    OutOfRange, labelled "dead_channel" when ``geometry`` lists it dead and
    "missing_constants" otherwise. Arithmetic is plain IEEE float64, the same
    as calibrate_samples.
    """
    amplitude = float(sample.amplitude)
    time_ns = float(sample.time_ns)
    if not (math.isfinite(amplitude) and math.isfinite(time_ns)):
        return OutOfRange(sample.channel, "non_finite")

    constants = calibration.get(sample.channel)
    if constants is None:
        if geometry is not None and geometry.lookup(sample.channel).is_dead:
            return OutOfRange(sample.channel, "dead_channel")
        return OutOfRange(sample.channel, "missing_constants")

    return CalibratedSample(
        sample.channel,
        amplitude * constants.gain,
        time_ns - constants.time_offset_ns,
    )


def calibrate_samples(
    samples: Sequence[RawSample],
    calibration: CalibrationSet,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Vectorised calibrate over a whole event.

    Returns (charge, drift_time_ns, ok) float64/float64/bool arrays aligned
    with ``samples``; entries with ok=False are NaN.
    """
    n = len(samples)
    amplitude = np.fromiter((s.amplitude for s in samples), dtype=np.float64, count=n)
    time_ns = np.fromiter((s.time_ns for s in samples), dtype=np.float64, count=n)
    rows = calibration.rows([s.channel for s in samples])

    ok = (rows >= 0) & np.isfinite(amplitude) & np.isfinite(time_ns)
    charge = np.full(n, np.nan, dtype=np.float64)
    drift = np.full(n, np.nan, dtype=np.float64)
    r = rows[ok]
    charge[ok] = amplitude[ok] * calibration.gains[r]
    drift[ok] = time_ns[ok] - calibration.time_offsets_ns[r]
    return charge, drift, ok


def locate(
    calibrated: CalibratedSample,
    geometry: GeometryMap,
) -> Union[CalibratedHit, UnmappedChannel]:
    """Attach the physical position; unmapped and dead channels are returned as UnmappedChannel."""
    found = geometry.lookup(calibrated.channel)
    if found.is_mapped:
        return CalibratedHit(
            calibrated.channel, found.position, calibrated.charge, calibrated.drift_time_ns
        )
    return UnmappedChannel(calibrated.channel, "dead" if found.is_dead else "unmapped")


def build_event(
    raw: RawEvent,
    geometry: GeometryMap,
    calibration: CalibrationSet,
) -> Event:
    """
    Calibrate and place every sample of a raw event.

    Samples that cannot be calibrated or placed are dropped from the event
    and counted in its diagnostics; nothing here raises for bad channels.
    """
    diag = EventDiagnostics(samples_in=len(raw.samples))
    if not raw.samples:
        return Event(raw.event_id, (), diag, dict(raw.meta))

    charge, drift, ok = calibrate_samples(raw.samples, calibration)
    hits: List[CalibratedHit] = []
    for i, sample in enumerate(raw.samples):
        if ok[i]:
            result = locate(
                CalibratedSample(sample.channel, float(charge[i]), float(drift[i])), geometry
            )
        else:
            result = calibrate(sample, calibration, geometry)

        if isinstance(result, CalibratedHit):
            hits.append(result)
        elif isinstance(result, UnmappedChannel):
            if result.status == "dead":
                diag.dead += 1
                diag.inc("dead_channel")
            else:
                diag.unmapped += 1
                diag.inc("unmapped_channel")
        else:
            diag.out_of_range += 1
            diag.inc(result.reason)

    diag.hits_out = len(hits)
    return Event(raw.event_id, tuple(hits), diag, dict(raw.meta))
