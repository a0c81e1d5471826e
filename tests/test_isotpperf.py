import pytest

from canutils.canframe import CanFrame
from canutils.isotpperf import (
    NUMBAR,
    PduProgress,
    format_stmin,
    getdigits,
    main,
    render_bar,
)

SRC = 0x123
DST = 0x321


@pytest.mark.parametrize("value", [0, 1, 9, 10, 99, 100, 4294966, 12345678])
def test_getdigits_matches_decimal_length(value):
    assert getdigits(value) == len(str(value))


def test_format_stmin_variants():
    assert format_stmin(0x10) == "STmin: 16 msec)"
    assert format_stmin(0xF5) == "STmin:500 usec)"
    assert format_stmin(0x90) == "STmin: invalid   )"


def test_render_bar_half():
    bar = render_bar(5, 10, 2)
    assert bar.count("X") == NUMBAR // 2
    assert bar.count(".") == NUMBAR - NUMBAR // 2
    assert bar.endswith("|  5/10 ")


def test_render_bar_full():
    bar = render_bar(7, 7, 1)
    assert bar.count("X") == NUMBAR
    assert bar.startswith(" 100% |")


def test_single_frame_completes():
    progress = PduProgress(SRC, DST)
    out = progress.feed(CanFrame(SRC, b"\x03\xAA\xBB\xCC"), 5.0)
    assert out.endswith("\n")
    assert "CAN2.0" in out
    assert " : 3 byte in (no time available)" in out
    assert progress.rcvlen == 0


def test_invalid_single_frame_ignored():
    progress = PduProgress(SRC, DST)
    assert progress.feed(CanFrame(SRC, b"\x07\x01"), 1.0) == ""


def test_wrong_sequence_number_not_counted():
    progress = PduProgress(SRC, DST)
    progress.feed(CanFrame(SRC, b"\x10\x0A\x01\x02\x03\x04\x05\x06"), 1.0)
    out = progress.feed(CanFrame(SRC, b"\x22\x07\x08\x09\x0A"), 1.1)
    assert " 6/10 " in out
    assert "\n" not in out


def test_oversized_first_frame_rejected():
    progress = PduProgress(SRC, DST)
    out = progress.feed(CanFrame(SRC, b"\x10\x00\xFF\xFF\xFF\xFF"), 1.0)
    assert "is more than ~4.2 MB - ignoring PDU" in out
    assert progress.rcvlen == 0


def test_extended_address_mismatch_ignored():
    progress = PduProgress(SRC, DST, ext=0x55)
    assert progress.feed(CanFrame(SRC, b"\x44\x02\x01\x02"), 1.0) == ""
    out = progress.feed(CanFrame(SRC, b"\x55\x02\x01\x02"), 1.0)
    assert out.endswith("\n")


def test_main_without_arguments_prints_usage(capsys):
    assert main([]) == 0
    assert "Usage:" in capsys.readouterr().err


def test_main_missing_destination(capsys):
    assert main(["-s", "123", "can0"]) == 0
    assert "Usage:" in capsys.readouterr().err


def test_main_unknown_option(capsys):
    assert main(["-Z"]) == 1
    assert "Unknown option" in capsys.readouterr().err