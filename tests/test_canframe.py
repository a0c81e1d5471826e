import struct
import sys

import pytest

from canutils.canframe import (
    CAN_EFF_FLAG,
    CAN_EFF_MASK,
    CAN_MTU,
    CANFD_MTU,
    CAN_RTR_FLAG,
    CAN_SFF_MASK,
    CanFilter,
    CanFrame,
    interface_index,
    pack_filters,
    parse_can_id,
    single_id_filter,
)


def test_classic_wire_layout():
    raw = CanFrame(0x123, b"\x11\x22").to_bytes()
    expected = (0x123).to_bytes(4, sys.byteorder) + bytes([2, 0, 0, 0]) + b"\x11\x22" + bytes(6)
    assert raw == expected
    assert len(raw) == CAN_MTU


def test_classic_round_trip():
    frame = CanFrame(0x7FF, b"\x01\x02\x03\x04\x05\x06\x07\x08")
    assert CanFrame.from_bytes(frame.to_bytes()) == frame


def test_fd_round_trip_keeps_flags():
    frame = CanFrame(0x18FEDF55 | CAN_EFF_FLAG, bytes(range(20)), flags=1, fd=True)
    raw = frame.to_bytes()
    assert len(raw) == CANFD_MTU
    decoded = CanFrame.from_bytes(raw)
    assert decoded == frame
    assert decoded.len == 20
    assert decoded.mtu == CANFD_MTU


def test_from_bytes_rejects_odd_length():
    with pytest.raises(ValueError):
        CanFrame.from_bytes(bytes(10))


def test_classic_payload_limit():
    with pytest.raises(ValueError):
        CanFrame(0x1, bytes(9))


def test_parse_can_id_standard_and_extended():
    assert parse_can_id("123") == 0x123
    assert parse_can_id("00000123") == 0x123 | CAN_EFF_FLAG
    assert parse_can_id("0x7ff") == 0x7FF


def test_single_id_filter_standard():
    assert single_id_filter(0x123) == CanFilter(0x123, CAN_SFF_MASK | CAN_EFF_FLAG | CAN_RTR_FLAG)


def test_single_id_filter_extended():
    flt = single_id_filter(0x12345678 | CAN_EFF_FLAG)
    assert flt.can_id == 0x12345678 | CAN_EFF_FLAG
    assert flt.can_mask == CAN_EFF_MASK | CAN_EFF_FLAG | CAN_RTR_FLAG


def test_filter_encoding_round_trip():
    flt = CanFilter(0x321, CAN_SFF_MASK)
    assert struct.unpack("=II", flt.to_bytes()) == (0x321, CAN_SFF_MASK)


def test_pack_filters_concatenates():
    a = CanFilter(1, 2)
    b = CanFilter(3, 4)
    assert pack_filters([a, b]) == a.to_bytes() + b.to_bytes()


def test_interface_index_unknown():
    with pytest.raises(OSError):
        interface_index("nosuchcan99")