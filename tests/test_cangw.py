import struct

import pytest

from canutils.cangw import (
    AF_CAN,
    NLM_F_ACK,
    NLM_F_DUMP,
    NLM_F_REQUEST,
    NLMSG_DONE,
    NLMSG_ERROR,
    RTM_GETROUTE,
    RTM_NEWROUTE,
    Command,
    GatewayRequest,
    describe_rules,
    encode_attribute,
    iter_messages,
    main,
)
from canutils.gwrules import (
    CGW_CRC8PRF_SFFID_XOR,
    CGW_DELETED,
    CGW_DROPPED,
    CGW_FLAGS_CAN_ECHO,
    CGW_FLAGS_CAN_SRC_TSTAMP,
    CGW_HANDLED,
    CGW_LIM_HOPS,
    CGW_TYPE_CAN_CAN,
    parse_crc8,
    parse_crc8_profile,
    parse_fdmod,
    parse_filter,
    parse_mod,
    parse_xor,
)

MOD_TEXT = "SET:IL:333.4.1122334455667788"


def _message(msg_type, payload):
    return struct.pack("=IHHII", 16 + len(payload), msg_type, 0, 0, 0) + payload


def _rule(attrs, family=AF_CAN, flags=0):
    body = struct.pack("=BBH", family, CGW_TYPE_CAN_CAN, flags) + b"".join(attrs)
    return _message(RTM_NEWROUTE, body)


def test_encode_attribute_pads_to_four_bytes():
    raw = encode_attribute(CGW_LIM_HOPS, b"\x05")
    assert raw == struct.pack("=HH", 5, CGW_LIM_HOPS) + b"\x05\0\0\0"
    assert len(raw) % 4 == 0


def test_add_request_header():
    data = GatewayRequest(Command.ADD, 3, 4).to_bytes()
    messages = list(iter_messages(data))
    assert len(messages) == 1
    assert messages[0].msg_type == RTM_NEWROUTE
    assert messages[0].flags == NLM_F_REQUEST | NLM_F_ACK
    assert struct.unpack_from("=I", data)[0] == len(data)


def test_list_request_is_a_dump():
    message = next(iter_messages(GatewayRequest(Command.LIST).to_bytes()))
    assert message.msg_type == RTM_GETROUTE
    assert message.flags & NLM_F_DUMP == NLM_F_DUMP


def test_flush_ignores_interfaces():
    assert GatewayRequest(Command.FLUSH, 3, 4).to_bytes() == GatewayRequest(
        Command.FLUSH
    ).to_bytes()


def test_request_too_long_raises():
    mods = [parse_fdmod("AND:I:1.0.0." + "00" * 64) for _ in range(20)]
    with pytest.raises(ValueError):
        GatewayRequest(Command.ADD, 1, 2, modifications=mods).to_bytes()


def test_describe_round_trip_of_request():
    request = GatewayRequest(
        Command.ADD,
        flags=CGW_FLAGS_CAN_ECHO | CGW_FLAGS_CAN_SRC_TSTAMP,
        filter=parse_filter("123:C00007FF"),
        uid=0x1F,
        limit_hops=3,
        modifications=[parse_mod(MOD_TEXT)],
    )
    lines, finished = describe_rules(request.to_bytes(), "/usr/bin/cangw")
    assert finished is False
    assert len(lines) == 1
    line = lines[0]
    assert line.startswith("cangw -A -s (null) -d (null) -e -t ")
    assert "-f 123:C00007FF " in line
    assert parse_mod(MOD_TEXT).describe() in line
    assert "-u 1F " in line
    assert "-l 3 " in line
    assert line.endswith("# 0 handled 0 dropped 0 deleted")


def test_describe_checksums_round_trip():
    crc8 = parse_crc8_profile("3:", parse_crc8("0:6:7:00:00:" + "00" * 256))
    xor = parse_xor("0:6:7:AA")
    request = GatewayRequest(
        Command.ADD, crc8=crc8, xor=xor, modifications=[parse_mod(MOD_TEXT)]
    )
    lines, _ = describe_rules(request.to_bytes(), "cangw")
    assert crc8.describe() in lines[0]
    assert xor.describe() in lines[0]
    assert f"-p {CGW_CRC8PRF_SFFID_XOR}: " in lines[0]


def test_describe_counters():
    attrs = [
        encode_attribute(CGW_HANDLED, struct.pack("=I", 7)),
        encode_attribute(CGW_DROPPED, struct.pack("=I", 1)),
        encode_attribute(CGW_DELETED, struct.pack("=I", 2)),
    ]
    lines, _ = describe_rules(_rule(attrs), "cangw")
    assert lines[0].endswith("# 7 handled 1 dropped 2 deleted")


def test_done_message_finishes_dump():
    data = _rule([]) + _message(NLMSG_DONE, b"\0" * 4)
    lines, finished = describe_rules(data, "cangw")
    assert finished is True
    assert len(lines) == 1


def test_error_message_finishes_dump():
    assert describe_rules(_message(NLMSG_ERROR, b"\0" * 4), "cangw") == (["NLMSG_ERROR"], True)


def test_unknown_attribute_raises():
    with pytest.raises(ValueError, match="Unknown attribute 99!"):
        describe_rules(_rule([encode_attribute(99, b"\0\0\0\0")]), "cangw")


def test_unknown_family_raises():
    with pytest.raises(ValueError, match="unknown family"):
        describe_rules(_rule([], family=2), "cangw")


def test_iter_messages_stops_at_truncated_message():
    data = _rule([]) + _rule([]) + b"\x40\0\0\0\x18\0"
    assert len(list(iter_messages(data))) == 2


def test_main_without_command_fails():
    assert main([]) == 1


def test_main_add_needs_interfaces():
    assert main(["-A"]) == 1


def test_main_help_succeeds():
    assert main(["-?"]) == 0


def test_main_rejects_classic_mod_in_fd_mode(capsys):
    assert main(["-L", "-X", "-m", MOD_TEXT]) == 1
    assert "No -m modifications allowed in CAN FD mode!" in capsys.readouterr().out


def test_main_checksum_needs_modification(capsys):
    assert main(["-L", "-x", "1:2:3:4"]) == 1
    assert "-c or -x can only be used in conjunction with -m/-M" in capsys.readouterr().out


def test_main_rejects_zero_hops(capsys):
    assert main(["-L", "-l", "0"]) == 1
    assert "Bad hop limit definition '0'." in capsys.readouterr().out


def test_main_rejects_bad_filter(capsys):
    assert main(["-L", "-f", "zz"]) == 1
    assert "Bad filter definition 'zz'." in capsys.readouterr().out