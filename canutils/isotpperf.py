"""Visualise ISO 15765-2 transfer progress and throughput."""

from __future__ import annotations

import getopt
import sys
from dataclasses import dataclass, field

from canutils.canframe import (
    CAN_MTU,
    CAN_RAW_FILTER,
    CANFD_BRS,
    CANFD_MAX_DLEN,
    CANFD_MTU,
    SOL_CAN_RAW,
    CanFrame,
    interface_index,
    open_raw_socket,
    pack_filters,
    parse_can_id,
    single_id_filter,
)

PERCENTRES = 2
NUMBAR = 100 // PERCENTRES
PROGRAM = "isotpperf"
_FFLEN_LIMIT = 0xFFFFFFFF // 1000


def getdigits(value: int) -> int:
    """Number of decimal digits of a non-negative value."""
    digits = 1
    while value > 9:
        digits += 1
        value //= 10
    return digits


def render_bar(received: int, total: int, digits: int) -> str:
    """Progress line: percentage, bar graph and byte counts."""
    percent = received * 100 // total
    filled = min(percent, 100) // PERCENTRES
    bar = "X" * filled + "." * (NUMBAR - filled)
    return f" {percent:3d}% |{bar}| {received:{digits}d}/{total} "


def format_stmin(stmin: int) -> str:
    """Describe a flow control STmin value."""
    if stmin < 0x80:
        return f"STmin:{stmin:3d} msec)"
    if 0xF0 < stmin < 0xFA:
        return f"STmin:{(stmin & 0xF) * 100:3d} usec)"
    return "STmin: invalid   )"


@dataclass
class PduProgress:
    """Follows one ISO-TP PDU at a time and renders its progress."""

    src: int
    dst: int
    ext: int | None = None
    rx_ext: int | None = None
    fflen: int = field(default=0, init=False)
    rcvlen: int = field(default=0, init=False)
    digits: int = field(default=0, init=False)
    bs: int = field(default=0, init=False)
    stmin: int = field(default=0, init=False)
    brs: int = field(default=0, init=False)
    ll_dl: int = field(default=0, init=False)
    last_sn: int = field(default=0, init=False)
    canfd: bool = field(default=True, init=False)
    start: float = field(default=0.0, init=False)

    def _reset(self) -> None:
        self.fflen = self.rcvlen = 0

    def _timeout_text(self) -> str:
        if not self.rcvlen:
            return ""
        self._reset()
        return "\r" + f"{' (transmission timed out)':<78}"

    def _begin(self, frame: CanFrame, timestamp: float) -> None:
        self.digits = getdigits(self.fflen)
        self.brs = frame.flags & CANFD_BRS
        self.start = timestamp
        self.canfd = frame.fd

    def feed(self, frame: CanFrame, timestamp: float) -> str:
        """Process a received frame; return the text to display."""
        if self.rcvlen and frame.fd != self.canfd:
            return ""
        data = frame.data.ljust(CANFD_MAX_DLEN + 8, b"\0")
        ext = 0 if self.ext is None else 1
        if self.ext is not None and data[0] != self.ext:
            return ""

        if frame.can_id == self.dst:
            rx = 0 if self.rx_ext is None else 1
            if self.rx_ext is not None and data[0] != self.rx_ext:
                return ""
            if data[rx] & 0xF0 != 0x30:
                return ""
            self.bs = data[rx + 1]
            self.stmin = data[rx + 2]

        n_pci = data[ext]
        kind = n_pci & 0xF0
        if kind == 0x00:
            if n_pci & 0xF:
                length, datidx = n_pci & 0xF, ext + 1
            else:
                length, datidx = data[ext + 1], ext + 2
            self.fflen = self.rcvlen = length
            if frame.len < self.rcvlen + datidx:
                self._reset()
            self._begin(frame, timestamp)
            self.ll_dl = max(frame.len, 8)
        elif kind == 0x10:
            fflen = ((n_pci & 0x0F) << 8) + data[ext + 1]
            if fflen:
                datidx = ext + 2
            else:
                fflen = int.from_bytes(data[ext + 2 : ext + 6], "big")
                datidx = ext + 6
            self.fflen = fflen
            if fflen >= _FFLEN_LIMIT:
                self._reset()
                return f"fflen {fflen} is more than ~4.2 MB - ignoring PDU\n"
            received = frame.len - datidx
            self.rcvlen = received if received >= 0 else fflen
            self.last_sn = 0
            self._begin(frame, timestamp)
            self.ll_dl = frame.len
        elif kind == 0x20 and self.rcvlen:
            sn = n_pci & 0x0F
            if sn == (self.last_sn + 1) & 0xF:
                self.last_sn = sn
                self.rcvlen += frame.len - (ext + 1)

        if not self.rcvlen:
            return ""
        if not self.fflen:
            self._reset()
            return ""
        self.rcvlen = min(self.rcvlen, self.fflen)
        out = "\r" + render_bar(self.rcvlen, self.fflen, self.digits)
        if self.rcvlen >= self.fflen:
            out += self._summary(timestamp)
            self._reset()
        return out

    def _summary(self, timestamp: float) -> str:
        mode = "CAN-FD" if self.canfd else "CAN2.0"
        text = (
            f"\r{mode} {self.ll_dl:02d}{'*' if self.brs else ' '} "
            f"(BS:{self.bs:2d} # {format_stmin(self.stmin)} : {self.fflen} byte in "
        )
        elapsed = max(round((timestamp - self.start) * 1_000_000), 0)
        sec, usec = divmod(elapsed, 1_000_000)
        msec = sec * 1000 + usec // 1000
        if msec:
            text += f"{sec}.{usec:06d}s => {self.fflen * 1000 // msec} byte/s"
        else:
            text += "(no time available)     "
        return text + "\n"


def _usage() -> str:
    return (
        f"{PROGRAM} - ISO15765-2 protocol performance visualisation.\n"
        f"\nUsage: {PROGRAM} [options] <CAN interface>\n"
        "Options:\n"
        "         -s <can_id>  (source can_id. Use 8 digits for extended IDs)\n"
        "         -d <can_id>  (destination can_id. Use 8 digits for extended IDs)\n"
        "         -x <addr>    (extended addressing mode)\n"
        "         -X <addr>    (extended addressing mode (rx addr))\n"
        "\nCAN IDs and addresses are given and expected in hexadecimal values.\n"
        "\n"
    )


def _run(interface: str, progress: PduProgress) -> int:
    import time

    try:
        interface_index(interface)
    except OSError as exc:
        print(f"if_nametoindex: {exc.strerror or exc}", file=sys.stderr)
        return 1
    try:
        sock = open_raw_socket(interface, True)
    except OSError as exc:
        print(f"bind: {exc.strerror or exc}", file=sys.stderr)
        return 1
    with sock:
        filters = [single_id_filter(progress.src), single_id_filter(progress.dst)]
        sock.setsockopt(SOL_CAN_RAW, CAN_RAW_FILTER, pack_filters(filters))
        sock.settimeout(1.0)
        while True:
            try:
                raw = sock.recv(CANFD_MTU)
            except TimeoutError:
                text = progress._timeout_text()
                if text:
                    sys.stdout.write(text)
                    sys.stdout.flush()
                continue
            except OSError as exc:
                print(f"read: {exc.strerror or exc}", file=sys.stderr)
                return 1
            if len(raw) not in (CAN_MTU, CANFD_MTU):
                print(f"read: incomplete CAN frame {CANFD_MTU} {len(raw)}", file=sys.stderr)
                return 1
            sys.stdout.write(progress.feed(CanFrame.from_bytes(raw), time.time()))
            sys.stdout.flush()


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        opts, rest = getopt.gnu_getopt(args, "s:d:x:X:?")
    except getopt.GetoptError as exc:
        print(f"Unknown option {exc.opt}", file=sys.stderr)
        print(_usage(), file=sys.stderr, end="")
        return 1

    src = dst = None
    ext = rx_ext = None
    for opt, value in opts:
        if opt == "-s":
            src = parse_can_id(value)
        elif opt == "-d":
            dst = parse_can_id(value)
        elif opt == "-x":
            ext = parse_can_id(value) & 0xFF
        elif opt == "-X":
            rx_ext = parse_can_id(value) & 0xFF
        elif opt == "-?":
            print(_usage(), file=sys.stderr, end="")
            return 0

    if len(rest) != 1 or src is None or dst is None:
        print(_usage(), file=sys.stderr, end="")
        return 0

    try:
        return _run(rest[0], PduProgress(src, dst, ext, rx_ext))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())