import pytest

from agrecon.detector.channels import ChannelId, ChannelIdError, parse_bank_name, parse_channel


def test_awb_flat_channel_split():
    ch = ChannelId.awb("09", 31)
    assert (ch.connector, ch.tap) == (1, 15)
    assert ch.adc_channel == 31
    assert str(ch) == "awb:09:1:15"


def test_bank_names():
    assert parse_bank_name("C09F") == ChannelId.awb("09", 15)
    assert parse_bank_name("C160") == ChannelId.awb("16", 0)
    assert parse_bank_name("C12V") == ChannelId.awb("12", 31)
    for bad in ("B09F", "c09f", "C09", "C09FF", "C0xF", "C09W"):
        with pytest.raises(ChannelIdError):
            parse_bank_name(bad)


def test_invalid_parts_rejected():
    with pytest.raises(ChannelIdError):
        ChannelId("awb", "09", 2, 0)
    with pytest.raises(ChannelIdError):
        ChannelId("pwb", "09", 0, 72)
    with pytest.raises(ChannelIdError):
        ChannelId("tdc", "09", 0, 0)
    with pytest.raises(ChannelIdError):
        ChannelId("awb", "9", 0, 0)
    # ChannelIdError is a ValueError
    with pytest.raises(ValueError):
        ChannelId.awb("09", 32)


def test_parse_channel_and_ordering():
    ch = ChannelId.pwb("46", 3, 71)
    assert parse_channel(str(ch)) == ch
    with pytest.raises(ChannelIdError):
        parse_channel("pwb:46:x:1")
    chans = [ChannelId.pwb("01", 0, 0), ChannelId.awb("10", 0), ChannelId.awb("09", 5)]
    assert sorted(chans) == [ChannelId.awb("09", 5), ChannelId.awb("10", 0), ChannelId.pwb("01", 0, 0)]
    assert len({ChannelId.awb("09", 5), ChannelId.awb("09", 5)}) == 1
