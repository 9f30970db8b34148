# src/agrecon/detector/layout.py
"""
Detector constants and run-dependent board layouts of the radial TPC.

Lengths are in mm. The TPC is a cylinder along z centred on z = 0:

  inner cathode  r = 109 mm
  anode wires    r = 182 mm   (256 wires, uniform in phi)
  cathode pads   r = 190 mm   (32 columns in phi x 576 rows in z)

Ionisation electrons drift outwards from where the track crossed the drift
region towards the anode wires; the induced signal on the pads gives z.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from agrecon.calibration.errors import MissingMap

INNER_CATHODE_RADIUS_MM = 109.0
ANODE_WIRES_RADIUS_MM = 182.0
CATHODE_PADS_RADIUS_MM = 190.0
DETECTOR_LENGTH_MM = 2304.0

TPC_ANODE_WIRES = 256
TPC_PAD_COLUMNS = 32
TPC_PAD_ROWS = 576

PWB_COLUMNS = 8
PWB_ROWS = 8
PADS_COLUMNS_PER_PWB = TPC_PAD_COLUMNS // PWB_COLUMNS  # 4, one per AFTER chip
PADS_ROWS_PER_PWB = TPC_PAD_ROWS // PWB_ROWS  # 72

PAD_PITCH_Z_MM = DETECTOR_LENGTH_MM / TPC_PAD_ROWS  # 4 mm
PAD_PITCH_PHI = 2.0 * np.pi / TPC_PAD_COLUMNS
WIRE_PITCH_PHI = 2.0 * np.pi / TPC_ANODE_WIRES

# Run number used by simulation output; it is later than any real run.
SIMULATION_RUN = 2**32 - 1


@dataclass(frozen=True)
class BoardLayout:
    """
    Board placement valid from ``first_run`` until superseded by the next layout.

    For PWB, ``boards[column][row]`` is the board name at that TPC position.
    For AWB, ``boards`` is a flat sequence; board ``i`` reads wires
    ``32*i .. 32*i + 31``.
    """
    name: str
    family: str
    first_run: int
    boards: Tuple

    def board_names(self) -> list[str]:
        if self.family == "pwb":
            return [b for column in self.boards for b in column]
        return list(self.boards)


# First index is column, second index is row.
PADWING_BOARDS_4418 = (
    ("12", "13", "14", "02", "11", "17", "18", "19"),
    ("20", "21", "22", "23", "24", "25", "26", "27"),
    ("46", "29", "08", "77", "10", "33", "34", "35"),
    ("36", "37", "01", "39", "76", "41", "42", "40"),
    ("44", "49", "07", "78", "03", "04", "45", "15"),
    ("52", "53", "54", "55", "56", "57", "58", "05"),
    ("60", "00", "06", "63", "64", "65", "66", "67"),
    ("68", "69", "70", "71", "72", "73", "74", "75"),
)

ALPHA16_BOARDS_2724 = ("09", "10", "11", "12", "13", "14", "15", "16")

PWB_LAYOUTS: tuple[BoardLayout, ...] = (
    BoardLayout("pwb-4418", "pwb", 4418, PADWING_BOARDS_4418),
)
AWB_LAYOUTS: tuple[BoardLayout, ...] = (
    BoardLayout("awb-2724", "awb", 2724, ALPHA16_BOARDS_2724),
)

_LAYOUTS = {lay.name: lay for lay in PWB_LAYOUTS + AWB_LAYOUTS}


def layout_by_name(name: str) -> BoardLayout:
    try:
        return _LAYOUTS[name]
    except KeyError:
        raise KeyError(f"Unknown board layout {name!r}. Known: {sorted(_LAYOUTS)}") from None


def layout_for_run(family: str, run_number: int) -> BoardLayout:
    """Latest layout whose first_run <= run_number; MissingMap if none."""
    layouts: Sequence[BoardLayout] = PWB_LAYOUTS if family == "pwb" else AWB_LAYOUTS
    chosen = None
    for lay in layouts:
        if lay.first_run <= run_number:
            chosen = lay
    if chosen is None:
        raise MissingMap(run_number, family)
    return chosen


def wire_phi(wire: int) -> float:
    return (wire + 0.5) * WIRE_PITCH_PHI


def pad_phi(column: int) -> float:
    return (column + 0.5) * PAD_PITCH_PHI


def pad_z_mm(row: int) -> float:
    return -0.5 * DETECTOR_LENGTH_MM + (row + 0.5) * PAD_PITCH_Z_MM
