"""Send or check CAN frames carrying a rising sequence number."""

from __future__ import annotations

import getopt
import itertools
import re
import select
import signal
import socket
import struct
import sys
from dataclasses import dataclass, field
from typing import Iterable

from canutils.canframe import (
    CAN_EFF_FLAG,
    CAN_EFF_MASK,
    CAN_ERR_FLAG,
    CAN_ERR_MASK,
    CAN_MTU,
    CAN_RAW,
    CAN_RAW_ERR_FILTER,
    CAN_RAW_FILTER,
    CAN_SFF_MASK,
    PF_CAN,
    SOL_CAN_RAW,
    CanFilter,
    CanFrame,
    open_raw_socket,
)

CAN_ID_DEFAULT = 2
SEQUENCE_MASK = 0xFF
SO_RXQ_OVFL = getattr(socket, "SO_RXQ_OVFL", 40)
PROGRAM = "cansequence"

_C_ULONG = re.compile(r"\s*(?:0[xX]([0-9a-fA-F]+)|(0[0-7]*)|([1-9][0-9]*))")


@dataclass(frozen=True)
class SequenceEvent:
    """Outcome of checking one received sequence number."""

    counter: int
    received: int
    missing: int
    incident: int
    wrap: int | None

    @property
    def expected(self) -> int:
        return self.counter & SEQUENCE_MASK


@dataclass
class SequenceChecker:
    """Tracks received sequence numbers and reports gaps."""

    sequence: int = 0
    drop_count: int = 0
    wraps: int = 0
    _started: bool = field(default=False, init=False, repr=False)

    def feed(self, value: int) -> SequenceEvent:
        received = value & SEQUENCE_MASK
        if not self._started:
            self._started = True
            self.sequence = received
        counter = self.sequence
        missing = (received - counter) & SEQUENCE_MASK
        if missing:
            self.drop_count += 1
            self.sequence = received
        self.sequence = (self.sequence + 1) & 0xFFFFFFFF
        wrap = None
        if not self.sequence & SEQUENCE_MASK:
            wrap = self.wraps
            self.wraps += 1
        return SequenceEvent(counter, received, missing, self.drop_count, wrap)


def sequence_filter(can_id: int, extended: bool) -> CanFilter:
    """Receive filter for the sequence identifier."""
    if extended:
        flt_id = (can_id & CAN_EFF_MASK) | CAN_EFF_FLAG
        mask = CAN_EFF_MASK
    else:
        flt_id = can_id & CAN_SFF_MASK
        mask = CAN_SFF_MASK
    return CanFilter(flt_id, mask | CAN_EFF_FLAG)


class _Stopped(Exception):
    pass


def _strtoul(text: str) -> int:
    match = _C_ULONG.match(text)
    if not match:
        return 0
    hexa, octal, dec = match.groups()
    if hexa is not None:
        value = int(hexa, 16)
    elif octal is not None:
        value = int(octal, 8)
    else:
        value = int(dec)
    return min(value, (1 << 64) - 1)


def _usage() -> str:
    return (
        f"Usage: {PROGRAM} [<can-interface>] [Options]\n"
        "\n"
        "cansequence sends CAN messages with a rising sequence number as payload.\n"
        "When the -r option is given, cansequence expects to receive these messages\n"
        "and prints an error message if a wrong sequence number is encountered.\n"
        "The main purpose of this program is to test the reliability of CAN links.\n"
        "\n"
        "Options:\n"
        " -e, --extended\t\tsend extended frame\n"
        f" -i, --identifier=ID\tCAN Identifier (default = {CAN_ID_DEFAULT})\n"
        "     --loop=COUNT\tsend message COUNT times\n"
        " -p, --poll\t\tuse poll(2) to wait for buffer space while sending\n"
        " -q, --quit <num>\tquit if <num> wrong sequences are encountered\n"
        " -r, --receive\t\twork as receiver\n"
        " -v, --verbose\t\tbe verbose (twice to be even more verbose\n"
        " -h, --help\t\tthis help\n"
        "     --version\t\tprint version information and exit\n"
    )


def _normalise_quit(args: list[str]) -> list[str]:
    out = []
    for pos, arg in enumerate(args):
        if arg == "--":
            return out + args[pos:]
        if arg in ("-q", "--quit"):
            out.append("--quit=1")
        elif arg.startswith("-q") and not arg.startswith("--"):
            out.append("--quit=" + arg[2:])
        else:
            out.append(arg)
    return out


def _iterations(count: int | None) -> Iterable[int]:
    return itertools.count() if count is None else range(count)


def _overflow_from(ancdata) -> int:
    for level, kind, data in ancdata:
        if level != socket.SOL_SOCKET:
            break
        if kind == SO_RXQ_OVFL and len(data) >= 4:
            return struct.unpack("=I", data[:4])[0]
    return 0


def _receive(sock, flt: CanFilter, count, quit_after: int, verbose: int) -> int:
    try:
        sock.setsockopt(socket.SOL_SOCKET, SO_RXQ_OVFL, 1)
    except OSError as exc:
        print(
            f"setsockopt() SO_RXQ_OVFL not supported by your Linux Kernel: {exc.strerror}",
            file=sys.stderr,
        )
    sock.setsockopt(SOL_CAN_RAW, CAN_RAW_ERR_FILTER, struct.pack("=I", CAN_ERR_MASK))
    sock.setsockopt(SOL_CAN_RAW, CAN_RAW_FILTER, flt.to_bytes())

    checker = SequenceChecker()
    overflow_old = 0
    ancsize = socket.CMSG_SPACE(16) + socket.CMSG_SPACE(4)
    for _ in _iterations(count):
        raw, ancdata, _flags, _addr = sock.recvmsg(CAN_MTU, ancsize)
        frame = CanFrame.from_bytes(raw)
        if frame.can_id & CAN_ERR_FLAG:
            payload = " ".join(f"{b:02x}" for b in frame.data.ljust(8, b"\0"))
            print(
                f"sequence CNT: {checker.sequence:6d}, ERRORFRAME {frame.can_id:7x}   {payload}",
                file=sys.stderr,
            )
            continue
        event = checker.feed(frame.data[0] if frame.data else 0)
        if event.missing:
            overflow = _overflow_from(ancdata)
            overflow_delta = (overflow - overflow_old) & 0xFFFFFFFF
            print(
                f"sequence CNT: {event.counter:6d}, RX: {event.received:6d}    "
                f"expected: {event.expected:3d}    missing: {event.missing:4d}    "
                f"skt overfl d: {overflow_delta:4d} a: {overflow:4d}    "
                f"delta: {(event.missing - overflow_delta) & 0xFFFFFFFF:3d}    "
                f"incident: {event.incident}",
                file=sys.stderr,
            )
            if event.incident == quit_after:
                return 1
            overflow_old = overflow
        elif verbose > 1:
            print(f"sequence CNT: {event.counter:6d}, RX: {event.received:6d}")
        if verbose and event.wrap is not None:
            print(f"sequence wrap around ({event.wrap})")
    return 0


def _write_frame(sock, payload: bytes, use_poll: bool) -> None:
    while True:
        try:
            sock.send(payload)
            return
        except OSError as exc:
            if exc.errno != 105 or not use_poll:  # ENOBUFS
                raise
            poller = select.poll()
            poller.register(sock, select.POLLOUT)
            poller.poll(1000)


def _send(sock, can_id: int, count, use_poll: bool, verbose: int) -> int:
    sock.setsockopt(SOL_CAN_RAW, CAN_RAW_FILTER, b"")
    value = 0
    sequence = 0
    wraps = 0
    for _ in _iterations(count):
        if verbose > 1:
            print(f"sending frame. sequence number: {sequence}")
        _write_frame(sock, CanFrame(can_id, bytes([value])).to_bytes(), use_poll)
        value = (value + 1) & 0xFF
        sequence = (sequence + 1) & 0xFF
        if verbose and not sequence:
            print(f"sequence wrap around ({wraps})")
            wraps += 1
    return 0


def _on_signal(signo, frame):
    raise _Stopped


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        opts, rest = getopt.gnu_getopt(
            _normalise_quit(args),
            "ei:prvh",
            ["extended", "identifier=", "loop=", "poll", "quit=", "receive", "verbose", "help"],
        )
    except getopt.GetoptError as exc:
        print(f"{PROGRAM}: {exc}", file=sys.stderr)
        print(_usage(), file=sys.stderr, end="")
        return 1

    extended = receive = use_poll = False
    can_id = CAN_ID_DEFAULT
    count: int | None = None
    quit_after = 0
    verbose = 0
    for opt, value in opts:
        if opt in ("-e", "--extended"):
            extended = True
        elif opt in ("-i", "--identifier"):
            can_id = _strtoul(value) & 0xFFFFFFFF
        elif opt in ("-r", "--receive"):
            receive = True
        elif opt == "--loop":
            count = _strtoul(value) & 0xFFFFFFFF
        elif opt in ("-p", "--poll"):
            use_poll = True
        elif opt == "--quit":
            quit_after = _strtoul(value) & 0xFFFFFFFF
        elif opt in ("-v", "--verbose"):
            verbose += 1
        elif opt in ("-h", "--help"):
            print(_usage(), file=sys.stderr, end="")
            return 0

    interface = rest[0] if rest else "can0"
    flt = sequence_filter(can_id, extended)
    print(f"interface = {interface}, family = {PF_CAN}, type = {socket.SOCK_RAW}, proto = {CAN_RAW}")

    handled = [signal.SIGINT, signal.SIGTERM] + ([signal.SIGHUP] if hasattr(signal, "SIGHUP") else [])
    previous = {signo: signal.signal(signo, _on_signal) for signo in handled}
    try:
        with open_raw_socket(interface) as sock:
            if receive:
                return _receive(sock, flt, count, quit_after, verbose)
            return _send(sock, flt.can_id, count, use_poll, verbose)
    except _Stopped:
        return 0
    except OSError as exc:
        print(f"{PROGRAM}: {exc.strerror or exc}", file=sys.stderr)
        return 1
    finally:
        for signo, handler in previous.items():
            signal.signal(signo, handler)


if __name__ == "__main__":
    raise SystemExit(main())