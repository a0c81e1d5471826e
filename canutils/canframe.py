"""CAN frames, receive filters and raw CAN socket helpers."""

from __future__ import annotations

import re
import socket
import struct
from dataclasses import dataclass
from typing import Iterable

CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_ERR_FLAG = 0x20000000
CAN_INV_FILTER = 0x20000000

CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF
CAN_ERR_MASK = 0x1FFFFFFF

CANFD_BRS = 0x01
CANFD_ESI = 0x02

CAN_MAX_DLEN = 8
CANFD_MAX_DLEN = 64
CAN_MTU = 16
CANFD_MTU = 72

PF_CAN = 29
CAN_RAW = 1
SOL_CAN_RAW = 101
CAN_RAW_FILTER = 1
CAN_RAW_ERR_FILTER = 2
CAN_RAW_LOOPBACK = 3
CAN_RAW_FD_FRAMES = 5

ANY_INTERFACE = "any"

_CLASSIC = struct.Struct("=IBBBB8s")
_FD = struct.Struct("=IBBBB64s")
_FILTER = struct.Struct("=II")

_HEX_NUMBER = re.compile(r"\s*(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]*)")
_ULONG_MAX = (1 << 64) - 1


@dataclass
class CanFrame:
    """A Classical CAN or CAN FD frame."""

    can_id: int
    data: bytes = b""
    flags: int = 0
    fd: bool = False

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        limit = CANFD_MAX_DLEN if self.fd else CAN_MAX_DLEN
        if len(self.data) > limit:
            raise ValueError(f"payload of {len(self.data)} bytes exceeds {limit}")

    @property
    def len(self) -> int:
        return len(self.data)

    @property
    def mtu(self) -> int:
        return CANFD_MTU if self.fd else CAN_MTU

    def to_bytes(self) -> bytes:
        """Encode the frame in the kernel's socket layout."""
        can_id = self.can_id & 0xFFFFFFFF
        if self.fd:
            return _FD.pack(can_id, len(self.data), self.flags & 0xFF, 0, 0, self.data)
        return _CLASSIC.pack(can_id, len(self.data), 0, 0, 0, self.data)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CanFrame":
        """Decode a frame of CAN_MTU or CANFD_MTU bytes."""
        if len(raw) == CAN_MTU:
            can_id, length, _pad, _res, _len8, data = _CLASSIC.unpack(raw)
            return cls(can_id, data[: min(length, CAN_MAX_DLEN)])
        if len(raw) == CANFD_MTU:
            can_id, length, flags, _res0, _res1, data = _FD.unpack(raw)
            return cls(can_id, data[: min(length, CANFD_MAX_DLEN)], flags, True)
        raise ValueError(f"incomplete CAN frame of {len(raw)} bytes")


@dataclass(frozen=True)
class CanFilter:
    """A CAN identifier/mask receive filter."""

    can_id: int
    can_mask: int

    def to_bytes(self) -> bytes:
        return _FILTER.pack(self.can_id & 0xFFFFFFFF, self.can_mask & 0xFFFFFFFF)


def _strtoul16(text: str) -> int:
    match = _HEX_NUMBER.match(text)
    digits = match.group(1) if match else ""
    if not digits:
        return 0
    return min(int(digits, 16), _ULONG_MAX) & 0xFFFFFFFF


def parse_can_id(text: str) -> int:
    """Parse a hex CAN id; more than seven characters mark an extended id."""
    value = _strtoul16(text)
    if len(text) > 7:
        value |= CAN_EFF_FLAG
    return value


def single_id_filter(can_id: int) -> CanFilter:
    """Build a filter that passes exactly one SFF or EFF identifier."""
    if can_id & CAN_EFF_FLAG:
        return CanFilter(
            can_id & (CAN_EFF_MASK | CAN_EFF_FLAG),
            CAN_EFF_MASK | CAN_EFF_FLAG | CAN_RTR_FLAG,
        )
    return CanFilter(can_id & CAN_SFF_MASK, CAN_SFF_MASK | CAN_EFF_FLAG | CAN_RTR_FLAG)


def pack_filters(filters: Iterable[CanFilter]) -> bytes:
    """Encode filters as the array CAN_RAW_FILTER expects."""
    return b"".join(f.to_bytes() for f in filters)


def interface_index(name: str) -> int:
    """Return the index of a network interface; raises OSError if unknown."""
    return socket.if_nametoindex(name)


def open_raw_socket(interface: str, fd_frames: bool = False) -> socket.socket:
    """Open a CAN_RAW socket bound to ``interface`` ("any" for all)."""
    sock = socket.socket(PF_CAN, socket.SOCK_RAW, CAN_RAW)
    try:
        if fd_frames:
            try:
                sock.setsockopt(SOL_CAN_RAW, CAN_RAW_FD_FRAMES, 1)
            except OSError:
                pass
        sock.bind(("" if interface == ANY_INTERFACE else interface,))
    except BaseException:
        sock.close()
        raise
    return sock