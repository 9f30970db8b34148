import numpy as np
import pytest

from agrecon.calibration.errors import MissingMap
from agrecon.detector.channels import ChannelId
from agrecon.detector.layout import (
    ANODE_WIRES_RADIUS_MM,
    TPC_ANODE_WIRES,
    TPC_PAD_COLUMNS,
    TPC_PAD_ROWS,
    layout_for_run,
    wire_phi,
)
from agrecon.geometry.maps import (
    GeometryMap,
    GeometryMapError,
    PhysicalPosition,
    build_awb_map,
    build_pwb_map,
    merge_maps,
)


def _wire(i: int) -> PhysicalPosition:
    return PhysicalPosition("awb", i, ANODE_WIRES_RADIUS_MM, wire_phi(i))


def test_tri_state_lookup():
    live, dead, absent = ChannelId.awb("09", 0), ChannelId.awb("09", 1), ChannelId.awb("09", 2)
    gm = GeometryMap({live: _wire(0), dead: _wire(1)}, dead=[dead])

    assert gm.lookup(live).is_mapped and gm.lookup(live).position.index == 0
    assert gm.lookup(dead).is_dead
    assert gm.lookup(absent).is_unmapped and gm.lookup(absent).position is None
    assert gm.position(dead) is None
    assert gm.live_channels() == [live]


def test_site_collision_needs_shared_site():
    a, b = ChannelId.awb("09", 0), ChannelId.awb("10", 0)
    with pytest.raises(GeometryMapError):
        GeometryMap({a: _wire(7), b: _wire(7)})
    gm = GeometryMap({a: _wire(7), b: _wire(7)}, shared_sites=[("awb", 7)])
    assert gm.position(a) == gm.position(b)


def test_family_mismatch_rejected():
    with pytest.raises(GeometryMapError):
        GeometryMap({ChannelId.pwb("12", 0, 0): _wire(0)})


def test_awb_layout_covers_every_wire():
    gm = build_awb_map("awb-2724")
    assert len(gm) == TPC_ANODE_WIRES
    wires = sorted(pos.index for pos in gm.entries.values())
    assert wires == list(range(TPC_ANODE_WIRES))
    assert gm.position(ChannelId.awb("09", 0)).index == 0
    assert gm.position(ChannelId.awb("10", 10)).index == 42
    assert gm.position(ChannelId.awb("16", 31)).index == 255


def test_pwb_layout_covers_every_pad():
    gm = build_pwb_map(4418)
    assert len(gm) == TPC_PAD_COLUMNS * TPC_PAD_ROWS
    assert len({pos.index for pos in gm.entries.values()}) == len(gm)

    first = gm.position(ChannelId.pwb("12", 0, 0))
    assert first.index == (0, 0)
    np.testing.assert_allclose(first.z_mm, -1150.0)
    # board "13" sits in column 0, row 1
    assert gm.position(ChannelId.pwb("13", 1, 5)).index == (1, 77)
    last = gm.position(ChannelId.pwb("75", 3, 71))
    assert last.index == (31, 575)
    np.testing.assert_allclose(last.z_mm, 1150.0)


def test_no_layout_before_first_run():
    with pytest.raises(MissingMap):
        build_pwb_map(4417)
    with pytest.raises(MissingMap):
        layout_for_run("awb", 100)
    assert layout_for_run("pwb", 11084).name == "pwb-4418"


def test_merge_and_with_dead():
    awb = build_awb_map("awb-2724")
    pwb = build_pwb_map("pwb-4418")
    merged = merge_maps(awb, pwb)
    assert len(merged) == len(awb) + len(pwb)
    assert merged.families == frozenset({"awb", "pwb"})
    with pytest.raises(GeometryMapError):
        merge_maps(awb, awb)

    ch = ChannelId.awb("11", 3)
    masked = merged.with_dead([ch])
    assert masked.lookup(ch).is_dead
    assert merged.lookup(ch).is_mapped
    assert masked != merged
