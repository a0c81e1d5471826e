from canutils.canframe import CAN_EFF_FLAG, CAN_EFF_MASK, CAN_SFF_MASK, CanFilter
from canutils.cansequence import SequenceChecker, main, sequence_filter


def test_continuous_sequence_has_no_gaps():
    checker = SequenceChecker()
    events = [checker.feed(v) for v in (5, 6, 7, 8)]
    assert all(e.missing == 0 for e in events)
    assert checker.drop_count == 0


def test_first_value_initialises():
    checker = SequenceChecker()
    event = checker.feed(200)
    assert event.missing == 0
    assert event.counter == 200


def test_gap_is_reported():
    checker = SequenceChecker()
    checker.feed(10)
    event = checker.feed(13)
    assert event.missing > 0
    assert (event.received - event.expected) & 0xFF == event.missing
    assert event.expected == 11
    assert event.incident == 1
    follow = checker.feed(14)
    assert follow.missing == 0
    assert follow.incident == 1


def test_incidents_accumulate():
    checker = SequenceChecker()
    checker.feed(0)
    checker.feed(5)
    event = checker.feed(9)
    assert event.incident == 2
    assert checker.drop_count == 2


def test_wrap_around():
    checker = SequenceChecker()
    event = checker.feed(255)
    assert event.wrap == 0
    nxt = checker.feed(0)
    assert nxt.missing == 0
    assert nxt.wrap is None


def test_filter_standard():
    assert sequence_filter(2, False) == CanFilter(2, CAN_SFF_MASK | CAN_EFF_FLAG)


def test_filter_extended():
    flt = sequence_filter(2, True)
    assert flt == CanFilter(2 | CAN_EFF_FLAG, CAN_EFF_MASK | CAN_EFF_FLAG)


def test_filter_masks_identifier():
    assert sequence_filter(0xFFFF, False).can_id == 0xFFFF & CAN_SFF_MASK


def test_help_exits_zero(capsys):
    assert main(["-h"]) == 0
    assert "rising sequence number" in capsys.readouterr().err


def test_unknown_option_fails(capsys):
    assert main(["--version"]) == 1
    assert "Usage:" in capsys.readouterr().err