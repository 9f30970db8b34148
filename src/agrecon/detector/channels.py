# src/agrecon/detector/channels.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Literal

Family = Literal["awb", "pwb"]
FAMILIES: tuple[Family, ...] = ("awb", "pwb")

# Channels per connector (Alpha16 ADC32 connector) / per AFTER chip (PWB)
AWB_CONNECTORS = 2
AWB_TAPS = 16
PWB_CONNECTORS = 4
PWB_TAPS = 72

_BASE32_DIGITS = "0123456789ABCDEFGHIJKLMNOPQRSTUV"


class ChannelIdError(ValueError):
    """Raised when a channel identifier cannot be built from its parts."""


@dataclass(frozen=True, order=True, slots=True)
class ChannelId:
    """
    One electronics channel.

    family    : "awb" (anode wires, Alpha16) or "pwb" (cathode pads, PadWing)
    board     : two-character board name, e.g. "09"
    connector : ADC32 connector (0-1) or PWB AFTER chip (0-3)
    tap       : channel within the connector (0-15 or 0-71)

    Ordering is lexicographic over (family, board, connector, tap), which is
    what gives maps and tables a deterministic iteration order.
    """
    family: str
    board: str
    connector: int
    tap: int

    def __post_init__(self) -> None:
        if self.family not in FAMILIES:
            raise ChannelIdError(f"Unknown channel family {self.family!r}")
        if len(self.board) != 2 or not self.board.isdigit():
            raise ChannelIdError(f"Board name must be two digits, got {self.board!r}")
        n_conn, n_taps = _limits(self.family)
        if not 0 <= self.connector < n_conn:
            raise ChannelIdError(
                f"{self.family} connector {self.connector} outside [0, {n_conn})"
            )
        if not 0 <= self.tap < n_taps:
            raise ChannelIdError(f"{self.family} tap {self.tap} outside [0, {n_taps})")

    @classmethod
    def awb(cls, board: str, channel: int) -> "ChannelId":
        """Build an anode-wire channel from a flat ADC32 channel number (0-31)."""
        if not 0 <= channel < AWB_CONNECTORS * AWB_TAPS:
            raise ChannelIdError(f"ADC32 channel {channel} outside [0, 32)")
        return cls("awb", board, channel // AWB_TAPS, channel % AWB_TAPS)

    @classmethod
    def pwb(cls, board: str, chip: int, pad: int) -> "ChannelId":
        return cls("pwb", board, chip, pad)

    @property
    def adc_channel(self) -> int:
        """Flat channel number within the board."""
        _, n_taps = _limits(self.family)
        return self.connector * n_taps + self.tap

    def __str__(self) -> str:
        return f"{self.family}:{self.board}:{self.connector}:{self.tap}"


def _limits(family: str) -> tuple[int, int]:
    if family == "awb":
        return AWB_CONNECTORS, AWB_TAPS
    return PWB_CONNECTORS, PWB_TAPS


def parse_bank_name(name: str) -> ChannelId:
    """
    Parse an Alpha16 anode-wire bank name into a ChannelId.

    Anode-wire banks look like "C09F": a literal 'C', the two-digit board
    name, and the ADC32 channel as a single base-32 digit (0-9, A-V).
    Barrel-veto banks ('B' prefix) are not TPC channels and are rejected.
    """
    if (
        len(name) != 4
        or not name.isalnum()
        or any(c.islower() for c in name)
    ):
        raise ChannelIdError(f"Bank name {name!r} does not match the Alpha16 pattern")
    if name[0] == "B":
        raise ChannelIdError(f"Bank {name!r} holds barrel-veto data, not a TPC channel")
    if name[0] != "C":
        raise ChannelIdError(f"Bank name {name!r} does not match the Alpha16 pattern")

    board = name[1:3]
    digit = name[3]
    if digit not in _BASE32_DIGITS:
        raise ChannelIdError(f"Unknown ADC32 channel digit {digit!r} in {name!r}")
    return ChannelId.awb(board, _BASE32_DIGITS.index(digit))


def parse_channel(text: str) -> ChannelId:
    """Inverse of str(ChannelId): 'family:board:connector:tap'."""
    parts = text.split(":")
    if len(parts) != 4:
        raise ChannelIdError(f"Expected 'family:board:connector:tap', got {text!r}")
    family, board, connector, tap = parts
    try:
        return ChannelId(family, board, int(connector), int(tap))
    except ValueError as exc:
        if isinstance(exc, ChannelIdError):
            raise
        raise ChannelIdError(f"Non-integer connector/tap in {text!r}") from exc
