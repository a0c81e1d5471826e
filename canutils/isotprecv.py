"""Receive ISO-TP PDUs and print them as hex bytes."""

from __future__ import annotations

import getopt
import sys

from canutils.canframe import parse_can_id
from canutils.isotp import (
    BUFSIZE,
    CAN_ISOTP_FORCE_RXSTMIN,
    NO_CAN_ID,
    FlowControlOptions,
    IsoTpOptions,
    LinkLayerOptions,
    _apply_common_option,
    _strtoul10,
    open_isotp_socket,
)

PROGRAM = "isotprecv"


def format_pdu(data: bytes) -> str:
    """Render a PDU as space separated upper case hex values."""
    return "".join(f"{byte:02X} " for byte in data)


def _usage() -> str:
    return (
        f"\nUsage: {PROGRAM} [options] <CAN interface>\n"
        "Options:\n"
        "         -s <can_id>   (source can_id. Use 8 digits for extended IDs)\n"
        "         -d <can_id>   (destination can_id. Use 8 digits for extended IDs)\n"
        "         -x <addr>[:<rxaddr>]  (extended addressing / opt. separate rxaddr)\n"
        "         -p [tx]:[rx]  (set and enable tx/rx padding bytes)\n"
        "         -P <mode>     (check rx padding for (l)ength (c)ontent (a)ll)\n"
        "         -b <bs>       (blocksize. 0 = off)\n"
        "         -m <val>      (STmin in ms/ns. See spec.)\n"
        "         -f <time ns>  (force rx stmin value in nanosecs)\n"
        "         -w <num>      (max. wait frame transmissions.)\n"
        "         -l            (loop: do not exit after pdu reception.)\n"
        "         -L <mtu>:<tx_dl>:<tx_flags>  (link layer options for CAN FD)\n"
        "\nCAN IDs and addresses are given and expected in hexadecimal values.\n"
        "The pdu data is written on STDOUT in space separated ASCII hex values.\n"
        "\n"
    )


def _receive(sock, loop: bool) -> None:
    while True:
        try:
            data = sock.recv(BUFSIZE)
        except OSError:
            data = b""
        line = format_pdu(data) if 0 < len(data) < BUFSIZE else ""
        sys.stdout.write(line + "\n")
        sys.stdout.flush()
        if not loop:
            return


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        opts, rest = getopt.gnu_getopt(args, "s:d:x:p:P:b:m:w:f:lL:?")
    except getopt.GetoptError as exc:
        print(f"{PROGRAM}: {exc}", file=sys.stderr)
        print(_usage(), file=sys.stderr, end="")
        return 0

    tx_id = rx_id = NO_CAN_ID
    options = IsoTpOptions()
    fc_options = FlowControlOptions()
    link = LinkLayerOptions()
    loop = False
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
        elif opt == "-b":
            fc_options.bs = parse_can_id(value) & 0xFF
        elif opt == "-m":
            fc_options.stmin = parse_can_id(value) & 0xFF
        elif opt == "-w":
            fc_options.wftmax = parse_can_id(value) & 0xFF
        elif opt == "-f":
            options.flags |= CAN_ISOTP_FORCE_RXSTMIN
            options.force_rx_stmin = _strtoul10(value) & 0xFFFFFFFF
        elif opt == "-l":
            loop = True
        elif opt == "-?":
            print(_usage(), file=sys.stderr, end="")
            return 0

    if len(rest) != 1 or tx_id == NO_CAN_ID or rx_id == NO_CAN_ID:
        print(_usage(), file=sys.stderr, end="")
        return 1

    try:
        sock = open_isotp_socket(rest[0], tx_id, rx_id, options, fc_options, link)
    except OSError as exc:
        print(f"{PROGRAM}: {exc.strerror or exc}", file=sys.stderr)
        return 1
    try:
        with sock:
            _receive(sock, loop)
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())