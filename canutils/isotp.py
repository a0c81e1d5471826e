"""ISO 15765-2 (ISO-TP) socket options, option parsing and socket setup."""

from __future__ import annotations

import re
import socket
import struct
from dataclasses import dataclass

from canutils.canframe import PF_CAN, interface_index

CAN_ISOTP = getattr(socket, "CAN_ISOTP", 6)
SOL_CAN_BASE = 100
SOL_CAN_ISOTP = SOL_CAN_BASE + CAN_ISOTP

CAN_ISOTP_OPTS = 1
CAN_ISOTP_RECV_FC = 2
CAN_ISOTP_TX_STMIN = 3
CAN_ISOTP_RX_STMIN = 4
CAN_ISOTP_LL_OPTS = 5

CAN_ISOTP_LISTEN_MODE = 0x001
CAN_ISOTP_EXTEND_ADDR = 0x002
CAN_ISOTP_TX_PADDING = 0x004
CAN_ISOTP_RX_PADDING = 0x008
CAN_ISOTP_CHK_PAD_LEN = 0x010
CAN_ISOTP_CHK_PAD_DATA = 0x020
CAN_ISOTP_HALF_DUPLEX = 0x040
CAN_ISOTP_FORCE_TXSTMIN = 0x080
CAN_ISOTP_FORCE_RXSTMIN = 0x100
CAN_ISOTP_RX_EXT_ADDR = 0x200
CAN_ISOTP_WAIT_TX_DONE = 0x400
CAN_ISOTP_SF_BROADCAST = 0x800

NO_CAN_ID = 0xFFFFFFFF
BUFSIZE = 5000

_OPTIONS = struct.Struct("=IIBBBB")
_THREE_BYTES = struct.Struct("=BBB")
_U32 = struct.Struct("=I")

_HEX = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_DEC = re.compile(r"\s*([+-]?)([0-9]+)")
_ULONG_MAX = (1 << 64) - 1


@dataclass
class IsoTpOptions:
    """General ISO-TP socket options plus forced STmin values."""

    flags: int = 0
    frame_txtime: int = 0
    ext_address: int = 0
    txpad_content: int = 0
    rxpad_content: int = 0
    rx_ext_address: int = 0
    force_tx_stmin: int = 0
    force_rx_stmin: int = 0

    def to_bytes(self) -> bytes:
        """Encode the kernel's option structure (without the STmin values)."""
        return _OPTIONS.pack(
            self.flags & 0xFFFFFFFF,
            self.frame_txtime & 0xFFFFFFFF,
            self.ext_address & 0xFF,
            self.txpad_content & 0xFF,
            self.rxpad_content & 0xFF,
            self.rx_ext_address & 0xFF,
        )


@dataclass
class FlowControlOptions:
    """Flow control parameters sent by a receiver."""

    bs: int = 0
    stmin: int = 0
    wftmax: int = 0

    def to_bytes(self) -> bytes:
        return _THREE_BYTES.pack(self.bs & 0xFF, self.stmin & 0xFF, self.wftmax & 0xFF)


@dataclass
class LinkLayerOptions:
    """Link layer settings for CAN FD transfers."""

    mtu: int = 0
    tx_dl: int = 0
    tx_flags: int = 0

    def to_bytes(self) -> bytes:
        return _THREE_BYTES.pack(self.mtu & 0xFF, self.tx_dl & 0xFF, self.tx_flags & 0xFF)


def _scan(pattern: re.Pattern, text: str, pos: int) -> tuple[int, int] | None:
    match = pattern.match(text, pos)
    if not match:
        return None
    base = 16 if pattern is _HEX else 10
    value = min(int(match.group(2), base), _ULONG_MAX)
    if match.group(1) == "-":
        value = -value & _ULONG_MAX
    return value, match.end()


def _scan_hex(text: str, pos: int = 0) -> tuple[int, int] | None:
    """Scan one hex number at ``pos``; returns (value, end) or None."""
    return _scan(_HEX, text, pos)


def _strtoul10(text: str) -> int:
    """Decimal conversion with the lenience of strtoul()."""
    found = _scan(_DEC, text, 0)
    return found[0] if found else 0


def _scan_separated(pattern: re.Pattern, text: str, count: int) -> list[int]:
    values: list[int] = []
    pos = 0
    while len(values) < count:
        if values:
            if not text.startswith(":", pos):
                break
            pos += 1
        found = _scan(pattern, text, pos)
        if found is None:
            break
        value, pos = found
        values.append(value & 0xFF)
    return values


def parse_ext_address(text: str) -> tuple[int, int | None]:
    """Parse ``<addr>[:<rxaddr>]``; the rx address is None when absent."""
    values = _scan_separated(_HEX, text, 2)
    if not values:
        raise ValueError(f"incorrect extended addr values '{text}'.")
    return values[0], values[1] if len(values) > 1 else None


def parse_padding(text: str) -> tuple[int | None, int | None]:
    """Parse ``[tx]:[rx]`` padding bytes; missing parts are None."""
    values = _scan_separated(_HEX, text, 2)
    if len(values) == 2:
        return values[0], values[1]
    if len(values) == 1:
        return values[0], None
    if text.startswith(":"):
        found = _scan_hex(text, 1)
        if found is not None:
            return None, found[0] & 0xFF
    raise ValueError(f"incorrect padding values '{text}'.")


def parse_padding_check(text: str) -> int:
    """Translate a padding check mode (l, c or a) into option flags."""
    mode = text[:1]
    if mode == "l":
        return CAN_ISOTP_CHK_PAD_LEN
    if mode == "c":
        return CAN_ISOTP_CHK_PAD_DATA
    if mode == "a":
        return CAN_ISOTP_CHK_PAD_LEN | CAN_ISOTP_CHK_PAD_DATA
    raise ValueError(f"unknown padding check option '{mode}'.")


def parse_link_layer(text: str) -> LinkLayerOptions:
    """Parse ``<mtu>:<tx_dl>:<tx_flags>`` in decimal."""
    values = _scan_separated(_DEC, text, 3)
    if len(values) != 3:
        raise ValueError(f"unknown link layer options '{text}'.")
    return LinkLayerOptions(*values)


def _apply_common_option(
    opt: str, value: str, options: IsoTpOptions, link: LinkLayerOptions
) -> bool:
    """Apply an addressing, padding or link layer option; False if not one."""
    if opt == "-x":
        ext, rx_ext = parse_ext_address(value)
        options.ext_address = ext
        options.flags |= CAN_ISOTP_EXTEND_ADDR
        if rx_ext is not None:
            options.rx_ext_address = rx_ext
            options.flags |= CAN_ISOTP_RX_EXT_ADDR
    elif opt == "-p":
        tx_pad, rx_pad = parse_padding(value)
        if tx_pad is not None:
            options.txpad_content = tx_pad
            options.flags |= CAN_ISOTP_TX_PADDING
        if rx_pad is not None:
            options.rxpad_content = rx_pad
            options.flags |= CAN_ISOTP_RX_PADDING
    elif opt == "-P":
        options.flags |= parse_padding_check(value)
    elif opt == "-L":
        parsed = parse_link_layer(value)
        link.mtu, link.tx_dl, link.tx_flags = parsed.mtu, parsed.tx_dl, parsed.tx_flags
    else:
        return False
    return True


def open_isotp_socket(
    interface: str,
    tx_id: int,
    rx_id: int,
    options: IsoTpOptions | None = None,
    fc_options: FlowControlOptions | None = None,
    ll_options: LinkLayerOptions | None = None,
) -> socket.socket:
    """Open and bind an ISO-TP socket; raises OSError on failure."""
    options = options or IsoTpOptions()
    sock = socket.socket(PF_CAN, socket.SOCK_DGRAM, CAN_ISOTP)
    try:
        try:
            sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_OPTS, options.to_bytes())
        except OSError:
            pass
        if fc_options is not None:
            try:
                sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_RECV_FC, fc_options.to_bytes())
            except OSError:
                pass
        if ll_options is not None and ll_options.tx_dl:
            sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_LL_OPTS, ll_options.to_bytes())
        if options.flags & CAN_ISOTP_FORCE_TXSTMIN:
            try:
                sock.setsockopt(
                    SOL_CAN_ISOTP,
                    CAN_ISOTP_TX_STMIN,
                    _U32.pack(options.force_tx_stmin & 0xFFFFFFFF),
                )
            except OSError:
                pass
        if options.flags & CAN_ISOTP_FORCE_RXSTMIN:
            try:
                sock.setsockopt(
                    SOL_CAN_ISOTP,
                    CAN_ISOTP_RX_STMIN,
                    _U32.pack(options.force_rx_stmin & 0xFFFFFFFF),
                )
            except OSError:
                pass
        interface_index(interface)
        sock.bind((interface, rx_id & 0xFFFFFFFF, tx_id & 0xFFFFFFFF))
    except BaseException:
        sock.close()
        raise
    return sock