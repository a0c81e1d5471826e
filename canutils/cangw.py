"""Manage the CAN netlink gateway: add, delete, flush and list routing rules."""

from __future__ import annotations

import getopt
import os
import re
import socket
import struct
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator, NamedTuple

from canutils.canframe import CanFilter, _strtoul16
from canutils.gwrules import (
    CGW_CRC8PRF_16U8,
    CGW_CRC8PRF_1U8,
    CGW_CRC8PRF_SFFID_XOR,
    CGW_CS_CRC8,
    CGW_CS_XOR,
    CGW_DELETED,
    CGW_DROPPED,
    CGW_DST_IF,
    CGW_FDMOD_AND,
    CGW_FDMOD_SET,
    CGW_FILTER,
    CGW_FLAGS_CAN_ECHO,
    CGW_FLAGS_CAN_FD,
    CGW_FLAGS_CAN_IIF_TX_OK,
    CGW_FLAGS_CAN_SRC_TSTAMP,
    CGW_HANDLED,
    CGW_LIM_HOPS,
    CGW_MOD_AND,
    CGW_MOD_FUNCS,
    CGW_MOD_SET,
    CGW_MOD_UID,
    CGW_SRC_IF,
    CGW_TYPE_CAN_CAN,
    MOD_INSTRUCTIONS,
    Crc8Checksum,
    Modification,
    RuleParseError,
    XorChecksum,
    describe_filter,
    parse_crc8,
    parse_crc8_profile,
    parse_fdmod,
    parse_filter,
    parse_mod,
    parse_xor,
)

PROGRAM = "cangw"

AF_CAN = 29
AF_NETLINK = getattr(socket, "AF_NETLINK", 16)
NETLINK_ROUTE = 0

NLMSG_ERROR = 2
NLMSG_DONE = 3
RTM_NEWROUTE = 24
RTM_DELROUTE = 25
RTM_GETROUTE = 26

NLM_F_REQUEST = 0x001
NLM_F_ACK = 0x004
NLM_F_DUMP = 0x300

REQUEST_LIMIT = 16 + 4 + 1500
RECV_BUFSIZE = 8192

_NLMSGHDR = struct.Struct("=IHHII")
_RTCANMSG = struct.Struct("=BBH")
_RTATTR = struct.Struct("=HH")
_U32 = struct.Struct("=I")
_S32 = struct.Struct("=i")
_FILTER = struct.Struct("=II")

_HOPS = re.compile(r"\s*([+-]?)([0-9]+)")

_SKIPPED_IN_DESCRIPTION = {CGW_SRC_IF, CGW_DST_IF, CGW_HANDLED, CGW_DROPPED, CGW_DELETED}
_DESCRIBED = (
    {CGW_FILTER, CGW_MOD_UID, CGW_LIM_HOPS, CGW_CS_XOR, CGW_CS_CRC8}
    | set(range(CGW_MOD_AND, CGW_MOD_SET + 1))
    | set(range(CGW_FDMOD_AND, CGW_FDMOD_SET + 1))
)


def _align(length: int) -> int:
    return (length + 3) & ~3


class Command(Enum):
    """Gateway operation requested on the command line."""

    ADD = "add"
    DEL = "del"
    FLUSH = "flush"
    LIST = "list"

    @property
    def message_type(self) -> int:
        return {
            Command.ADD: RTM_NEWROUTE,
            Command.DEL: RTM_DELROUTE,
            Command.FLUSH: RTM_DELROUTE,
            Command.LIST: RTM_GETROUTE,
        }[self]

    @property
    def message_flags(self) -> int:
        if self is Command.LIST:
            return NLM_F_REQUEST | NLM_F_DUMP
        return NLM_F_REQUEST | NLM_F_ACK


class NetlinkMessage(NamedTuple):
    """One netlink message header with its payload."""

    msg_type: int
    flags: int
    seq: int
    pid: int
    payload: bytes


def encode_attribute(attr_type: int, payload: bytes) -> bytes:
    """Encode a netlink route attribute, padded to four bytes."""
    length = _RTATTR.size + len(payload)
    raw = _RTATTR.pack(length, attr_type) + bytes(payload)
    return raw.ljust(_align(length), b"\0")


@dataclass
class GatewayRequest:
    """A netlink request for the CAN gateway."""

    command: Command
    src_ifindex: int = 0
    dst_ifindex: int = 0
    flags: int = 0
    filter: CanFilter | None = None
    crc8: Crc8Checksum | None = None
    xor: XorChecksum | None = None
    uid: int = 0
    limit_hops: int = 0
    modifications: list[Modification] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        """Encode the complete netlink message; raises ValueError if too long."""
        src, dst = self.src_ifindex, self.dst_ifindex
        if self.command is Command.FLUSH:
            src = dst = 0  # interface index 0 removes all entries
        attrs = [
            encode_attribute(CGW_SRC_IF, _U32.pack(src & 0xFFFFFFFF)),
            encode_attribute(CGW_DST_IF, _U32.pack(dst & 0xFFFFFFFF)),
        ]
        if self.filter is not None:
            attrs.append(encode_attribute(CGW_FILTER, self.filter.to_bytes()))
        if self.crc8 is not None:
            attrs.append(encode_attribute(CGW_CS_CRC8, self.crc8.to_bytes()))
        if self.xor is not None:
            attrs.append(encode_attribute(CGW_CS_XOR, self.xor.to_bytes()))
        if self.uid:
            attrs.append(encode_attribute(CGW_MOD_UID, _U32.pack(self.uid & 0xFFFFFFFF)))
        if self.limit_hops:
            attrs.append(encode_attribute(CGW_LIM_HOPS, bytes([self.limit_hops & 0xFF])))
        ordered = [m for m in self.modifications if not m.fd] + [
            m for m in self.modifications if m.fd
        ]
        attrs.extend(encode_attribute(m.attr_type, m.to_bytes()) for m in ordered)

        body = _RTCANMSG.pack(AF_CAN, CGW_TYPE_CAN_CAN, self.flags & 0xFFFF)
        length = _NLMSGHDR.size + len(body)
        for attr in attrs:
            if length + len(attr) > REQUEST_LIMIT:
                raise ValueError(f"message exceeded bound of {REQUEST_LIMIT}")
            length += len(attr)
        header = _NLMSGHDR.pack(
            length, self.command.message_type, self.command.message_flags, 0, 0
        )
        return header + body + b"".join(attrs)


def iter_messages(data: bytes) -> Iterator[NetlinkMessage]:
    """Yield the complete netlink messages held in a receive buffer."""
    offset = 0
    remaining = len(data)
    while remaining >= _NLMSGHDR.size:
        length, msg_type, flags, seq, pid = _NLMSGHDR.unpack_from(data, offset)
        if length < _NLMSGHDR.size or length > remaining:
            return
        yield NetlinkMessage(
            msg_type, flags, seq, pid, bytes(data[offset + _NLMSGHDR.size : offset + length])
        )
        step = _align(length)
        offset += step
        remaining -= step


def _iter_attributes(payload: bytes) -> Iterator[tuple[int, bytes]]:
    offset = _align(_RTCANMSG.size)
    remaining = len(payload) - offset
    while remaining >= _RTATTR.size:
        length, attr_type = _RTATTR.unpack_from(payload, offset)
        if length < _RTATTR.size or length > remaining:
            return
        yield attr_type, payload[offset + _RTATTR.size : offset + length]
        step = _align(length)
        offset += step
        remaining -= step


def _ifname(index: int) -> str:
    try:
        return socket.if_indextoname(index)
    except (OSError, ValueError, OverflowError):
        return "(null)"


def _describe_attribute(attr_type: int, data: bytes) -> str:
    if attr_type == CGW_FILTER:
        return describe_filter(*_FILTER.unpack_from(data))
    if CGW_MOD_AND <= attr_type <= CGW_MOD_SET:
        mod = Modification.from_bytes(data)
        return replace(mod, instruction=MOD_INSTRUCTIONS[attr_type - CGW_MOD_AND]).describe()
    if CGW_FDMOD_AND <= attr_type <= CGW_FDMOD_SET:
        mod = Modification.from_bytes(data, fd=True)
        return replace(mod, instruction=MOD_INSTRUCTIONS[attr_type - CGW_FDMOD_AND]).describe()
    if attr_type == CGW_MOD_UID:
        return f"-u {_U32.unpack_from(data)[0]:X} "
    if attr_type == CGW_LIM_HOPS:
        return f"-l {data[0]} "
    if attr_type == CGW_CS_XOR:
        return XorChecksum.from_bytes(data).describe()
    if attr_type == CGW_CS_CRC8:
        return Crc8Checksum.from_bytes(data).describe()
    return ""


def _describe_rule(payload: bytes, program: str) -> str:
    family, gwtype, flags = _RTCANMSG.unpack_from(payload)
    if family != AF_CAN:
        raise ValueError(f"received msg from unknown family {family}")
    if gwtype != CGW_TYPE_CAN_CAN:
        raise ValueError(f"received msg with unknown gwtype {gwtype}")

    attributes = list(_iter_attributes(payload))
    src = dst = handled = dropped = deleted = 0
    for attr_type, data in attributes:
        if attr_type == CGW_SRC_IF:
            src = _U32.unpack_from(data)[0]
        elif attr_type == CGW_DST_IF:
            dst = _U32.unpack_from(data)[0]
        elif attr_type == CGW_HANDLED:
            handled = _S32.unpack_from(data)[0]
        elif attr_type == CGW_DROPPED:
            dropped = _S32.unpack_from(data)[0]
        elif attr_type == CGW_DELETED:
            deleted = _S32.unpack_from(data)[0]
        elif attr_type not in _DESCRIBED:
            raise ValueError(f"Unknown attribute {attr_type}!")

    parts = [f"{os.path.basename(program)} -A ", f"-s {_ifname(src)} ", f"-d {_ifname(dst)} "]
    for flag, option in (
        (CGW_FLAGS_CAN_FD, "-X "),
        (CGW_FLAGS_CAN_ECHO, "-e "),
        (CGW_FLAGS_CAN_SRC_TSTAMP, "-t "),
        (CGW_FLAGS_CAN_IIF_TX_OK, "-i "),
    ):
        if flags & flag:
            parts.append(option)
    for attr_type, data in attributes:
        if attr_type not in _SKIPPED_IN_DESCRIPTION:
            parts.append(_describe_attribute(attr_type, data))
    parts.append(f"# {handled} handled {dropped} dropped {deleted} deleted")
    return "".join(parts)


def describe_rules(data: bytes, program: str) -> tuple[list[str], bool]:
    """Describe the rules of a dump buffer as command lines.

    Returns the lines and whether the dump has ended (done or error
    message). Raises ValueError on messages that cannot be described.
    """
    lines: list[str] = []
    for message in iter_messages(data):
        if message.msg_type == NLMSG_ERROR:
            lines.append("NLMSG_ERROR")
            return lines, True
        if message.msg_type == NLMSG_DONE:
            return lines, True
        lines.append(_describe_rule(message.payload, program))
    return lines, False


def _usage() -> str:
    prg = PROGRAM
    return (
        f"{prg} - manage PF_CAN netlink gateway.\n"
        f"\nUsage: {prg} [options]\n\n"
        "Commands:\n"
        "          -A  (add a new rule)\n"
        "          -D  (delete a rule)\n"
        "          -F  (flush / delete all rules)\n"
        "          -L  (list all rules)\n"
        "Mandatory:\n"
        "          -s <src_dev>  (source netdevice)\n"
        "          -d <dst_dev>  (destination netdevice)\n"
        "Options:\n"
        "          -X  (this is a CAN FD rule)\n"
        "          -t  (preserve src_dev rx timestamp)\n"
        "          -e  (echo sent frames - recommended on vcanx)\n"
        "          -i  (allow to route to incoming interface)\n"
        "          -u <uid>  (user defined modification identifier)\n"
        "          -l <hops>  (limit the number of frame hops / routings)\n"
        "          -f <filter>  (set CAN filter)\n"
        "          -m <mod>  (set Classical CAN frame modifications)\n"
        "          -M <MOD>  (set CAN FD frame modifications)\n"
        "          -x <from_idx>:<to_idx>:<result_idx>:<init_xor_val>  (XOR checksum)\n"
        "          -c <from>:<to>:<result>:<init_val>:<xor_val>:<crctab[256]>  (CRC8 cs)\n"
        "          -p <profile>:[<profile_data>]  (CRC8 checksum profile & parameters)\n"
        "\nValues are given and expected in hexadecimal values. Leading 0s can be omitted.\n"
        "\n"
        "<filter> is a <value><mask> CAN identifier filter:\n"
        "  <can_id>:<can_mask>  (matches when <received_can_id> & mask == can_id & mask)\n"
        "  <can_id>~<can_mask>  (matches when <received_can_id> & mask != can_id & mask)\n"
        "\n"
        "<mod> is a Classical CAN frame modification instruction consisting of\n"
        "<instruction>:<can_frame-elements>:<can_id>.<can_dlc>.<can_data>\n"
        "  <instruction>  is one of 'AND' 'OR' 'XOR' 'SET'\n"
        "  <can_frame-elements>  is _one_ or _more_ of 'I'dentifier 'L'ength 'D'ata\n"
        "  <can_id>  is an u32 value containing the CAN Identifier\n"
        "  <can_dlc>  is an u8 value containing the data length code in hex (0 .. F)\n"
        "  <can_data>  is always eight(!) u8 values containing the CAN frames data\n"
        "\n"
        "<MOD> is a CAN FD frame modification instruction consisting of\n"
        "<instruction>:<canfd_frame-elements>:<can_id>.<flags>.<len>.<can_data>\n"
        "  <instruction>  is one of 'AND' 'OR' 'XOR' 'SET'\n"
        "  <canfd_frame-elements>  is _one_ or _more_ of 'I'd 'F'lags 'L'ength 'D'ata\n"
        "  <can_id>  is an u32 value containing the CAN FD Identifier\n"
        "  <flags>  is an u8 value containing CAN FD flags (CANFD_BRS, CANFD_ESI)\n"
        "  <len>  is an u8 value containing the data length in hex (0 .. 40)\n"
        "  <can_data>  is always 64(!) u8 values containing the CAN FD frames data\n"
        "The max. four modifications are performed in the order AND -> OR -> XOR -> SET\n"
        "\n"
        "Supported CRC 8 profiles:\n"
        f" Profile '{CGW_CRC8PRF_1U8}' (1U8)        add one additional u8 value\n"
        f" Profile '{CGW_CRC8PRF_16U8}' (16U8)       add u8 value from table[16] indexed by "
        "(data[1] & 0xF)\n"
        f" Profile '{CGW_CRC8PRF_SFFID_XOR}' (SFFID_XOR)  add u8 value (can_id & 0xFF) ^ "
        "(can_id >> 8 & 0xFF)\n"
        "\n"
        "Examples:\n"
        f"{prg} -A -s can0 -d vcan3 -e -f 123:C00007FF -m SET:IL:333.4.1122334455667788\n"
        "\n"
    )


def _parse_hops(text: str) -> int:
    match = _HOPS.match(text)
    if not match:
        raise ValueError(f"Bad hop limit definition '{text}'.")
    value = int(match.group(2))
    if match.group(1) == "-":
        value = -value
    value &= 0xFF
    if not value:
        raise ValueError(f"Bad hop limit definition '{text}'.")
    return value


def _transact(request: GatewayRequest) -> int:
    data = request.to_bytes()
    try:
        sock = socket.socket(AF_NETLINK, socket.SOCK_RAW, NETLINK_ROUTE)
    except OSError as exc:
        print(f"netlink socket: {exc.strerror or exc}", file=sys.stderr)
        return 1
    with sock:
        try:
            sock.sendto(data, (0, 0))
        except OSError as exc:
            print(f"netlink sendto: {exc.strerror or exc}", file=sys.stderr)
            return 1

        if request.command is not Command.LIST:
            try:
                answer = sock.recv(RECV_BUFSIZE)
            except OSError as exc:
                print(f"netlink recv: {exc.strerror or exc}", file=sys.stderr)
                return 1
            message = next(iter_messages(answer), None)
            if message is None or message.msg_type != NLMSG_ERROR:
                kind = message.msg_type if message else 0
                print(f"unexpected netlink answer of type {kind}", file=sys.stderr)
                return 1
            err = _S32.unpack_from(message.payload)[0]
            if err < 0:
                print(f"netlink error {err} ({os.strerror(abs(err))})", file=sys.stderr)
            return err

        while True:
            try:
                answer = sock.recv(RECV_BUFSIZE)
            except OSError as exc:
                print(f"netlink recv: {exc.strerror or exc}", file=sys.stderr)
                return 1
            try:
                lines, finished = describe_rules(answer, PROGRAM)
            except ValueError as exc:
                print(exc)
                return 1
            for line in lines:
                print(line)
            if finished:
                return 0


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        opts, rest = getopt.gnu_getopt(args, "ADFLs:d:Xteiu:l:f:c:p:x:m:M:?")
    except getopt.GetoptError as exc:
        print(f"{PROGRAM}: {exc}", file=sys.stderr)
        print(_usage(), file=sys.stderr, end="")
        return 0

    command: Command | None = None
    request = GatewayRequest(Command.LIST)
    crc8 = Crc8Checksum()
    have_crc8 = False
    mods: list[Modification] = []
    fdmods: list[Modification] = []
    commands = {"-A": Command.ADD, "-D": Command.DEL, "-F": Command.FLUSH, "-L": Command.LIST}
    flag_options = {
        "-X": CGW_FLAGS_CAN_FD,
        "-t": CGW_FLAGS_CAN_SRC_TSTAMP,
        "-e": CGW_FLAGS_CAN_ECHO,
        "-i": CGW_FLAGS_CAN_IIF_TX_OK,
    }

    for opt, value in opts:
        try:
            if opt in commands:
                if command is None:
                    command = commands[opt]
            elif opt in ("-s", "-d"):
                try:
                    index = socket.if_nametoindex(value)
                except OSError as exc:
                    which = "src" if opt == "-s" else "dst"
                    print(f"{which} if_nametoindex: {exc.strerror or exc}", file=sys.stderr)
                    return 1
                if opt == "-s":
                    request.src_ifindex = index
                else:
                    request.dst_ifindex = index
            elif opt in flag_options:
                request.flags |= flag_options[opt]
            elif opt == "-u":
                request.uid = _strtoul16(value) & 0xFFFFFFFF
            elif opt == "-l":
                request.limit_hops = _parse_hops(value)
            elif opt == "-f":
                request.filter = parse_filter(value)
            elif opt == "-x":
                request.xor = parse_xor(value)
            elif opt == "-c":
                parsed = parse_crc8(value)
                crc8 = replace(parsed, profile=crc8.profile, profile_data=crc8.profile_data)
                have_crc8 = True
            elif opt == "-p":
                crc8 = parse_crc8_profile(value, crc8)
            elif opt == "-m":
                if len(mods) < CGW_MOD_FUNCS:
                    mods.append(parse_mod(value))
            elif opt == "-M":
                if len(fdmods) < CGW_MOD_FUNCS:
                    fdmods.append(parse_fdmod(value))
            elif opt == "-?":
                print(_usage(), file=sys.stderr, end="")
                return 0
        except (RuleParseError, ValueError) as exc:
            print(exc)
            return 1

    if rest or command is None:
        print(_usage(), file=sys.stderr, end="")
        return 1
    if command in (Command.ADD, Command.DEL) and not (
        request.src_ifindex and request.dst_ifindex
    ):
        print(_usage(), file=sys.stderr, end="")
        return 1
    if request.flags & CGW_FLAGS_CAN_FD:
        if mods:
            print("No -m modifications allowed in CAN FD mode!")
            return 1
    elif fdmods:
        print("No -M modifications allowed in Classic CAN mode!")
        return 1
    if not mods and not fdmods and (have_crc8 or request.xor is not None):
        print("-c or -x can only be used in conjunction with -m/-M")
        return 1

    request.command = command
    request.crc8 = crc8 if have_crc8 else None
    request.modifications = mods + fdmods
    try:
        return _transact(request)
    except ValueError as exc:
        print(f"addattr_l: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())