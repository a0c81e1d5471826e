import sys

import pytest

from canutils.isotp import (
    CAN_ISOTP_CHK_PAD_DATA,
    CAN_ISOTP_CHK_PAD_LEN,
    CAN_ISOTP_EXTEND_ADDR,
    FlowControlOptions,
    IsoTpOptions,
    LinkLayerOptions,
    open_isotp_socket,
    parse_ext_address,
    parse_link_layer,
    parse_padding,
    parse_padding_check,
)


def test_ext_address_single():
    assert parse_ext_address("12") == (0x12, None)


def test_ext_address_pair():
    assert parse_ext_address("12:34") == (0x12, 0x34)


def test_ext_address_wraps_to_byte():
    assert parse_ext_address("0x1ff") == (0xFF, None)


def test_ext_address_invalid():
    with pytest.raises(ValueError):
        parse_ext_address("zz")


@pytest.mark.parametrize(
    "text, expected",
    [("AA", (0xAA, None)), ("AA:55", (0xAA, 0x55)), (":55", (None, 0x55)), ("AA:zz", (0xAA, None))],
)
def test_padding(text, expected):
    assert parse_padding(text) == expected


@pytest.mark.parametrize("text", ["", "zz", ":", ":zz"])
def test_padding_invalid(text):
    with pytest.raises(ValueError):
        parse_padding(text)


def test_padding_check_modes():
    assert parse_padding_check("l") == CAN_ISOTP_CHK_PAD_LEN
    assert parse_padding_check("c") == CAN_ISOTP_CHK_PAD_DATA
    assert parse_padding_check("all") == CAN_ISOTP_CHK_PAD_LEN | CAN_ISOTP_CHK_PAD_DATA


def test_padding_check_invalid():
    with pytest.raises(ValueError, match="unknown padding check option 'q'"):
        parse_padding_check("q")


def test_link_layer():
    assert parse_link_layer("72:64:1") == LinkLayerOptions(72, 64, 1)


def test_link_layer_wraps():
    assert parse_link_layer("256:8:0").mtu == 0


@pytest.mark.parametrize("text", ["72:64", "", "a:b:c", "72;64;1"])
def test_link_layer_invalid(text):
    with pytest.raises(ValueError):
        parse_link_layer(text)


def test_options_layout():
    opts = IsoTpOptions(
        flags=CAN_ISOTP_EXTEND_ADDR,
        frame_txtime=1000,
        ext_address=0x11,
        txpad_content=0x22,
        rxpad_content=0x33,
        rx_ext_address=0x44,
    )
    raw = opts.to_bytes()
    assert len(raw) == 12
    assert int.from_bytes(raw[:4], sys.byteorder) == CAN_ISOTP_EXTEND_ADDR
    assert int.from_bytes(raw[4:8], sys.byteorder) == 1000
    assert raw[8:] == bytes([0x11, 0x22, 0x33, 0x44])


def test_force_stmin_not_encoded():
    plain = IsoTpOptions(flags=CAN_ISOTP_EXTEND_ADDR)
    forced = IsoTpOptions(flags=CAN_ISOTP_EXTEND_ADDR, force_tx_stmin=500, force_rx_stmin=700)
    assert plain.to_bytes() == forced.to_bytes()


def test_flow_control_and_link_layer_bytes():
    assert FlowControlOptions(1, 2, 3).to_bytes() == bytes([1, 2, 3])
    assert LinkLayerOptions(72, 64, 1).to_bytes() == bytes([72, 64, 1])


def test_open_unknown_interface():
    with pytest.raises(OSError):
        open_isotp_socket("nosuchcan0", 0x123, 0x321, IsoTpOptions(), FlowControlOptions(), None)