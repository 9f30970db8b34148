from __future__ import annotations
from dataclasses import dataclass

import numpy as np

from agrecon.detector.channels import ChannelId
from agrecon.geometry.maps import PhysicalPosition


@dataclass(frozen=True, slots=True)
class RawSample:
    """
    One channel's decoded reading for one event.

    amplitude: raw pulse amplitude [ADC counts]
    time_ns: raw signal time relative to the trigger [ns]
    """
    channel: ChannelId
    amplitude: float
    time_ns: float


@dataclass(frozen=True, slots=True)
class CalibratedSample:
    """Raw sample after gain and timing-offset correction, not yet placed."""
    channel: ChannelId
    charge: float
    drift_time_ns: float


@dataclass(frozen=True, slots=True)
class CalibratedHit:
    """
    Calibrated measurement at a physical read-out site.

    charge: amplitude * gain
    drift_time_ns: raw time - channel time offset
    """
    channel: ChannelId
    position: PhysicalPosition
    charge: float
    drift_time_ns: float

    @property
    def family(self) -> str:
        return self.channel.family


@dataclass(frozen=True, slots=True)
class SpacePoint:
    """
    Reconstructed ionisation point (cylindrical coordinates, mm / rad / ns).

    phi and r come from the anode wire and its drift time, z from the pads.
    """
    r_mm: float
    phi: float
    z_mm: float
    t_ns: float
    charge: float = 0.0

    @property
    def x_mm(self) -> float:
        return float(self.r_mm * np.cos(self.phi))

    @property
    def y_mm(self) -> float:
        return float(self.r_mm * np.sin(self.phi))

    def xyz(self) -> np.ndarray:
        return np.array([self.x_mm, self.y_mm, self.z_mm], dtype=np.float64)
