"""Send one ISO-TP PDU read from standard input or generated."""

from __future__ import annotations

import getopt
import sys

from canutils.canframe import parse_can_id
from canutils.isotp import (
    BUFSIZE,
    CAN_ISOTP_FORCE_TXSTMIN,
    CAN_ISOTP_SF_BROADCAST,
    CAN_ISOTP_WAIT_TX_DONE,
    NO_CAN_ID,
    IsoTpOptions,
    LinkLayerOptions,
    _apply_common_option,
    _scan_hex,
    _strtoul10,
    open_isotp_socket,
)

PROGRAM = "isotpsend"


def read_hex_bytes(text: str, limit: int) -> bytes:
    """Read hex values from ``text`` until one fails to parse or ``limit`` is hit."""
    values = bytearray()
    pos = 0
    while len(values) < limit:
        found = _scan_hex(text, pos)
        if found is None:
            break
        value, pos = found
        values.append(value & 0xFF)
    return bytes(values)


def fixed_payload(length: int) -> bytes:
    """Generated test payload of ``length`` bytes counting 1..255."""
    return bytes((index % 0xFF) + 1 for index in range(length))


def _usage() -> str:
    return (
        f"\nUsage: {PROGRAM} [options] <CAN interface>\n"
        "Options:\n"
        "         -s <can_id>  (source can_id. Use 8 digits for extended IDs)\n"
        "         -d <can_id>  (destination can_id. Use 8 digits for extended IDs)\n"
        "         -x <addr>[:<rxaddr>]  (extended addressing / opt. separate rxaddr)\n"
        "         -p [tx]:[rx]  (set and enable tx/rx padding bytes)\n"
        "         -P <mode>     (check rx padding for (l)ength (c)ontent (a)ll)\n"
        "         -t <time ns>  (frame transmit time (N_As) in nanosecs)\n"
        "         -f <time ns>  (ignore FC and force local tx stmin value in nanosecs)\n"
        "         -D <len>      (send a fixed PDU with len bytes - no STDIN data)\n"
        "         -b            (block until the PDU transmission is completed)\n"
        "         -S            (SF broadcast mode for functional addressing)\n"
        "         -L <mtu>:<tx_dl>:<tx_flags>  (link layer options for CAN FD)\n"
        "\nCAN IDs and addresses are given and expected in hexadecimal values.\n"
        "The pdu data is expected on STDIN in space separated ASCII hex values.\n"
        "\n"
    )


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        opts, rest = getopt.gnu_getopt(args, "s:d:x:p:P:t:f:D:bSL:?")
    except getopt.GetoptError as exc:
        print(f"{PROGRAM}: {exc}", file=sys.stderr)
        print(_usage(), file=sys.stderr, end="")
        return 0

    tx_id = rx_id = NO_CAN_ID
    options = IsoTpOptions()
    link = LinkLayerOptions()
    datalen = 0
    for opt, value in opts:
        try:
            if _apply_common_option(opt, value, options, link):
                continue
        except ValueError as exc:
            print(exc)
            print(_usage(), file=sys.stderr, end="")
            return 0
        if opt == "-s":
            tx_id = parse_can_id(value)
        elif opt == "-d":
            rx_id = parse_can_id(value)
        elif opt == "-t":
            options.frame_txtime = _strtoul10(value) & 0xFFFFFFFF
        elif opt == "-f":
            options.flags |= CAN_ISOTP_FORCE_TXSTMIN
            options.force_tx_stmin = _strtoul10(value) & 0xFFFFFFFF
        elif opt == "-D":
            datalen = _strtoul10(value)
            if not datalen or datalen >= BUFSIZE:
                print(_usage(), file=sys.stderr, end="")
                return 0
        elif opt == "-b":
            options.flags |= CAN_ISOTP_WAIT_TX_DONE
        elif opt == "-S":
            options.flags |= CAN_ISOTP_SF_BROADCAST
        elif opt == "-?":
            print(_usage(), file=sys.stderr, end="")
            return 0

    broadcast = bool(options.flags & CAN_ISOTP_SF_BROADCAST)
    if len(rest) != 1 or tx_id == NO_CAN_ID or (rx_id == NO_CAN_ID and not broadcast):
        print(_usage(), file=sys.stderr, end="")
        return 1

    try:
        sock = open_isotp_socket(rest[0], tx_id, rx_id, options, None, link)
    except OSError as exc:
        print(f"{PROGRAM}: {exc.strerror or exc}", file=sys.stderr)
        return 1

    with sock:
        if datalen:
            payload = fixed_payload(datalen)
        else:
            payload = read_hex_bytes(sys.stdin.read(), BUFSIZE)
        try:
            sent = sock.send(payload)
        except OSError as exc:
            print(f"write: {exc.strerror or exc}", file=sys.stderr)
            return 1
        if sent != len(payload):
            print(f"wrote only {sent} from {len(payload)} byte", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())