# src/agrecon/geometry/maps.py
from __future__ import annotations
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Literal, Mapping, Optional, Tuple, Union

import numpy as np

from agrecon.detector.channels import ChannelId
from agrecon.detector.layout import (
    ANODE_WIRES_RADIUS_MM,
    CATHODE_PADS_RADIUS_MM,
    PADS_COLUMNS_PER_PWB,
    PADS_ROWS_PER_PWB,
    BoardLayout,
    layout_by_name,
    layout_for_run,
    pad_phi,
    pad_z_mm,
    wire_phi,
)

LookupStatus = Literal["mapped", "dead", "unmapped"]
Site = Tuple[str, Union[int, Tuple[int, int]]]


class GeometryMapError(ValueError):
    """Inconsistent geometry map (e.g. two channels on one physical site)."""


@dataclass(frozen=True, slots=True)
class PhysicalPosition:
    """
    Physical read-out site of a channel.

    index : wire number (awb) or (pad_column, pad_row) (pwb)
    r_mm, phi : cylindrical coordinates of the wire / pad centre
    z_mm : pad centre along the axis; None for wires (they span the TPC)
    """
    family: str
    index: Union[int, Tuple[int, int]]
    r_mm: float
    phi: float
    z_mm: Optional[float] = None

    @property
    def site(self) -> Site:
        return (self.family, self.index)

    @property
    def x_mm(self) -> float:
        return float(self.r_mm * np.cos(self.phi))

    @property
    def y_mm(self) -> float:
        return float(self.r_mm * np.sin(self.phi))


@dataclass(frozen=True, slots=True)
class MapLookup:
    """Tri-state lookup result; ``position`` is only guaranteed when mapped."""
    channel: ChannelId
    status: LookupStatus
    position: Optional[PhysicalPosition] = None

    @property
    def is_mapped(self) -> bool:
        return self.status == "mapped"

    @property
    def is_dead(self) -> bool:
        return self.status == "dead"

    @property
    def is_unmapped(self) -> bool:
        return self.status == "unmapped"


class GeometryMap:
    """
    Immutable ChannelId -> PhysicalPosition lookup for one detector configuration.

    Partial maps are fine: channels may be absent (``unmapped``) or listed in
    ``dead`` (``dead``, with or without a known position). Two channels may
    only share a physical site if that site is listed in ``shared_sites``
    (redundant read-out).
    """

    __slots__ = ("name", "_entries", "_dead", "_shared")

    def __init__(
        self,
        entries: Mapping[ChannelId, PhysicalPosition],
        *,
        dead: Iterable[ChannelId] = (),
        shared_sites: Iterable[Site] = (),
        name: str = "custom",
    ):
        shared = frozenset(shared_sites)
        owners: Dict[Site, ChannelId] = {}
        collisions = []
        for ch in sorted(entries):
            pos = entries[ch]
            if pos.family != ch.family:
                raise GeometryMapError(
                    f"Channel {ch} ({ch.family}) mapped to a {pos.family} site {pos.index}"
                )
            site = pos.site
            if site in owners and site not in shared:
                collisions.append((owners[site], ch, site))
            owners.setdefault(site, ch)
        if collisions:
            first = collisions[0]
            raise GeometryMapError(
                f"{len(collisions)} channel(s) collide on a physical site, "
                f"e.g. {first[0]} and {first[1]} on {first[2]}"
            )

        self.name = name
        self._entries = MappingProxyType({ch: entries[ch] for ch in sorted(entries)})
        self._dead = frozenset(dead)
        self._shared = shared

    # ---- lookup -----------------------------------------------------------

    def lookup(self, channel: ChannelId) -> MapLookup:
        pos = self._entries.get(channel)
        if channel in self._dead:
            return MapLookup(channel, "dead", pos)
        if pos is None:
            return MapLookup(channel, "unmapped")
        return MapLookup(channel, "mapped", pos)

    def position(self, channel: ChannelId) -> Optional[PhysicalPosition]:
        """Position of a live, mapped channel; None otherwise."""
        res = self.lookup(channel)
        return res.position if res.is_mapped else None

    # ---- container protocol ----------------------------------------------

    @property
    def entries(self) -> Mapping[ChannelId, PhysicalPosition]:
        return self._entries

    @property
    def dead(self) -> frozenset:
        return self._dead

    @property
    def shared_sites(self) -> frozenset:
        return self._shared

    @property
    def families(self) -> frozenset:
        return frozenset(ch.family for ch in self._entries) | frozenset(
            ch.family for ch in self._dead
        )

    def live_channels(self) -> list[ChannelId]:
        return [ch for ch in self._entries if ch not in self._dead]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ChannelId]:
        return iter(self._entries)

    def __contains__(self, channel: object) -> bool:
        return channel in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GeometryMap):
            return NotImplemented
        return (
            dict(self._entries) == dict(other._entries)
            and self._dead == other._dead
            and self._shared == other._shared
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"GeometryMap(name={self.name!r}, channels={len(self._entries)}, "
            f"dead={len(self._dead)})"
        )

    def with_dead(self, dead: Iterable[ChannelId]) -> "GeometryMap":
        return GeometryMap(
            self._entries,
            dead=self._dead | frozenset(dead),
            shared_sites=self._shared,
            name=self.name,
        )


# ---------------------------------------------------------------------------
# Builders from board layouts
# ---------------------------------------------------------------------------

def _as_layout(layout: Union[BoardLayout, str, int], family: str) -> BoardLayout:
    if isinstance(layout, BoardLayout):
        lay = layout
    elif isinstance(layout, str):
        lay = layout_by_name(layout)
    else:
        lay = layout_for_run(family, int(layout))
    if lay.family != family:
        raise GeometryMapError(f"Layout {lay.name!r} is {lay.family}, expected {family}")
    return lay


def build_awb_map(
    layout: Union[BoardLayout, str, int],
    *,
    dead: Iterable[ChannelId] = (),
) -> GeometryMap:
    """Anode-wire map: board slot i reads wires 32*i .. 32*i + 31."""
    lay = _as_layout(layout, "awb")
    entries: Dict[ChannelId, PhysicalPosition] = {}
    for slot, board in enumerate(lay.boards):
        for channel in range(32):
            wire = slot * 32 + channel
            entries[ChannelId.awb(board, channel)] = PhysicalPosition(
                "awb", wire, ANODE_WIRES_RADIUS_MM, wire_phi(wire)
            )
    return GeometryMap(entries, dead=dead, name=lay.name)


def build_pwb_map(
    layout: Union[BoardLayout, str, int],
    *,
    dead: Iterable[ChannelId] = (),
) -> GeometryMap:
    """
    Cathode-pad map. PWB at TPC (column, row) covers pad columns
    4*column .. 4*column + 3 (one per AFTER chip) and pad rows
    72*row .. 72*row + 71 (one per chip channel).
    """
    lay = _as_layout(layout, "pwb")
    entries: Dict[ChannelId, PhysicalPosition] = {}
    for col, column in enumerate(lay.boards):
        for row, board in enumerate(column):
            for chip in range(PADS_COLUMNS_PER_PWB):
                pad_col = col * PADS_COLUMNS_PER_PWB + chip
                phi = pad_phi(pad_col)
                for pad in range(PADS_ROWS_PER_PWB):
                    pad_row = row * PADS_ROWS_PER_PWB + pad
                    entries[ChannelId.pwb(board, chip, pad)] = PhysicalPosition(
                        "pwb", (pad_col, pad_row), CATHODE_PADS_RADIUS_MM, phi, pad_z_mm(pad_row)
                    )
    return GeometryMap(entries, dead=dead, name=lay.name)


def build_map(family: str, layout: Union[BoardLayout, str, int], *, dead=()) -> GeometryMap:
    if family == "awb":
        return build_awb_map(layout, dead=dead)
    if family == "pwb":
        return build_pwb_map(layout, dead=dead)
    raise GeometryMapError(f"Unknown family {family!r}")


def merge_maps(*maps: GeometryMap, name: Optional[str] = None) -> GeometryMap:
    """Join maps covering disjoint channels (typically one per family)."""
    entries: Dict[ChannelId, PhysicalPosition] = {}
    dead: set = set()
    shared: set = set()
    for gm in maps:
        overlap = entries.keys() & gm.entries.keys()
        if overlap:
            raise GeometryMapError(
                f"Cannot merge maps: {len(overlap)} channel(s) appear twice, "
                f"e.g. {min(overlap)}"
            )
        entries.update(gm.entries)
        dead |= gm.dead
        shared |= gm.shared_sites
    return GeometryMap(
        entries,
        dead=dead,
        shared_sites=shared,
        name=name or "+".join(gm.name for gm in maps),
    )
