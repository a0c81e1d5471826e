"""Gateway rule elements: filters, frame modifications and checksums.

Each element can be parsed from its command line notation, encoded as a
netlink attribute payload, decoded again and described in the notation
that parses back to it.
"""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass, field, replace

from canutils.canframe import CAN_INV_FILTER, CanFilter

# netlink attribute types of a gateway rule
CGW_UNSPEC = 0
CGW_MOD_AND = 1
CGW_MOD_OR = 2
CGW_MOD_XOR = 3
CGW_MOD_SET = 4
CGW_CS_XOR = 5
CGW_CS_CRC8 = 6
CGW_HANDLED = 7
CGW_DROPPED = 8
CGW_SRC_IF = 9
CGW_DST_IF = 10
CGW_FILTER = 11
CGW_DELETED = 12
CGW_LIM_HOPS = 13
CGW_MOD_UID = 14
CGW_FDMOD_AND = 15
CGW_FDMOD_OR = 16
CGW_FDMOD_XOR = 17
CGW_FDMOD_SET = 18

CGW_TYPE_CAN_CAN = 1

CGW_FLAGS_CAN_ECHO = 0x01
CGW_FLAGS_CAN_SRC_TSTAMP = 0x02
CGW_FLAGS_CAN_IIF_TX_OK = 0x04
CGW_FLAGS_CAN_FD = 0x08

CGW_MOD_FUNCS = 4

CGW_MOD_ID = 0x01
CGW_MOD_DLC = 0x02
CGW_MOD_LEN = CGW_MOD_DLC
CGW_MOD_DATA = 0x04
CGW_MOD_FLAGS = 0x08

CGW_CRC8PRF_UNSPEC = 0
CGW_CRC8PRF_1U8 = 1
CGW_CRC8PRF_16U8 = 2
CGW_CRC8PRF_SFFID_XOR = 3

MOD_INSTRUCTIONS = ("AND", "OR", "XOR", "SET")

_MOD = struct.Struct("=IBBBB8sB")
_FDMOD = struct.Struct("=IBBBB64sB")
_CS_XOR = struct.Struct("=bbbB")
_CS_CRC8 = struct.Struct("=bbbBB256sB20s")

CGW_MODATTR_LEN = _MOD.size
CGW_FDMODATTR_LEN = _FDMOD.size
CGW_CS_XOR_LEN = _CS_XOR.size
CGW_CS_CRC8_LEN = _CS_CRC8.size

_CLASSIC_ELEMENTS = {"I": CGW_MOD_ID, "L": CGW_MOD_DLC, "D": CGW_MOD_DATA}
_FD_ELEMENTS = {"I": CGW_MOD_ID, "F": CGW_MOD_FLAGS, "L": CGW_MOD_LEN, "D": CGW_MOD_DATA}

_NUMBER = {
    16: re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)"),
    10: re.compile(r"\s*([+-]?)([0-9]+)"),
}
_WORD = re.compile(r"\s*(\S+)")


class RuleParseError(ValueError):
    """A rule element could not be parsed; ``code`` numbers the failed step."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


def _scan(text: str, pos: int, base: int) -> tuple[int, int] | None:
    match = _NUMBER[base].match(text, pos)
    if not match:
        return None
    value = int(match.group(2), base)
    if match.group(1) == "-":
        value = -value
    return value, match.end()


def _scan_width(text: str, pos: int, width: int, base: int) -> tuple[int, int] | None:
    """Scan a number of at most ``width`` characters after blanks."""
    while pos < len(text) and text[pos].isspace():
        pos += 1
    found = _scan(text[pos : pos + width], 0, base)
    if found is None:
        return None
    value, end = found
    return value, pos + end


def _scan_sequence(text: str, bases: tuple[int, ...], sep: str) -> tuple[list[int], int]:
    """Scan numbers separated by ``sep``; stops at the first mismatch."""
    values: list[int] = []
    pos = 0
    for base in bases:
        if values:
            if not text.startswith(sep, pos):
                break
            pos += len(sep)
        found = _scan(text, pos, base)
        if found is None:
            break
        value, pos = found
        values.append(value)
    return values, pos


def _scan_word(text: str, pos: int, width: int) -> str | None:
    match = _WORD.match(text, pos)
    return match.group(1)[:width] if match else None


def _u8(value: int) -> int:
    return value & 0xFF


def _s8(value: int) -> int:
    return ((value + 0x80) & 0xFF) - 0x80


def _hex(data: bytes) -> str:
    return data.hex().upper()


def hex_bytes(text: str, count: int) -> bytes:
    """Decode ``count`` bytes given as two hex characters each."""
    values = bytearray()
    for index in range(count):
        pos = index * 2
        if pos >= len(text):
            raise RuleParseError(f"missing hex values in '{text}'")
        found = _scan_width(text, pos, 2, 16)
        if found is None:
            raise RuleParseError(f"bad hex value in '{text}'")
        values.append(_u8(found[0]))
    return bytes(values)


@dataclass
class Modification:
    """A Classical CAN (``fd`` False) or CAN FD frame modification."""

    instruction: str
    modtype: int
    can_id: int
    length: int
    data: bytes
    flags: int = 0
    fd: bool = False

    @property
    def attr_type(self) -> int:
        """Netlink attribute type carrying this modification."""
        if self.instruction not in MOD_INSTRUCTIONS:
            raise ValueError(f"unknown modification instruction '{self.instruction}'")
        base = CGW_FDMOD_AND if self.fd else CGW_MOD_AND
        return base + MOD_INSTRUCTIONS.index(self.instruction)

    def to_bytes(self) -> bytes:
        """Encode the frame followed by the modification type byte."""
        can_id = self.can_id & 0xFFFFFFFF
        if self.fd:
            return _FDMOD.pack(
                can_id, _u8(self.length), _u8(self.flags), 0, 0, bytes(self.data), _u8(self.modtype)
            )
        return _MOD.pack(can_id, _u8(self.length), 0, 0, 0, bytes(self.data), _u8(self.modtype))

    @classmethod
    def from_bytes(cls, raw: bytes, fd: bool = False) -> "Modification":
        """Decode an attribute payload; the instruction is left empty.

        The instruction travels in the attribute type, not the payload.
        """
        layout = _FDMOD if fd else _MOD
        if len(raw) < layout.size:
            raise ValueError(f"modification attribute of {len(raw)} bytes is too short")
        can_id, length, flags, _res0, _res1, data, modtype = layout.unpack_from(raw)
        return cls("", modtype, can_id, length, data, flags if fd else 0, fd)

    def describe(self) -> str:
        """Command line notation of this modification."""
        if self.fd:
            letters = "".join(ch for ch, bit in _FD_ELEMENTS.items() if self.modtype & bit)
            data = bytes(self.data).ljust(64, b"\0")[:64]
            return (
                f"-M {self.instruction}:{letters}:{self.can_id:03X}.{self.flags:X}."
                f"{self.length:X}.{_hex(data)} "
            )
        letters = "".join(ch for ch, bit in _CLASSIC_ELEMENTS.items() if self.modtype & bit)
        data = bytes(self.data).ljust(8, b"\0")[:8]
        return f"-m {self.instruction}:{letters}:{self.can_id:03X}.{self.length:X}.{_hex(data)} "


@dataclass
class XorChecksum:
    """XOR checksum over a range of payload bytes."""

    from_idx: int
    to_idx: int
    result_idx: int
    init_xor_val: int

    def to_bytes(self) -> bytes:
        return _CS_XOR.pack(
            _s8(self.from_idx), _s8(self.to_idx), _s8(self.result_idx), _u8(self.init_xor_val)
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> "XorChecksum":
        if len(raw) < _CS_XOR.size:
            raise ValueError(f"XOR checksum attribute of {len(raw)} bytes is too short")
        return cls(*_CS_XOR.unpack_from(raw))

    def describe(self) -> str:
        return f"-x {self.from_idx}:{self.to_idx}:{self.result_idx}:{self.init_xor_val:02X} "


@dataclass
class Crc8Checksum:
    """CRC8 checksum with lookup table and optional profile."""

    from_idx: int = 0
    to_idx: int = 0
    result_idx: int = 0
    init_crc_val: int = 0
    final_xor_val: int = 0
    crctab: bytes = field(default_factory=lambda: bytes(256))
    profile: int = CGW_CRC8PRF_UNSPEC
    profile_data: bytes = field(default_factory=lambda: bytes(20))

    def to_bytes(self) -> bytes:
        return _CS_CRC8.pack(
            _s8(self.from_idx),
            _s8(self.to_idx),
            _s8(self.result_idx),
            _u8(self.init_crc_val),
            _u8(self.final_xor_val),
            bytes(self.crctab),
            _u8(self.profile),
            bytes(self.profile_data),
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Crc8Checksum":
        if len(raw) < _CS_CRC8.size:
            raise ValueError(f"CRC8 checksum attribute of {len(raw)} bytes is too short")
        return cls(*_CS_CRC8.unpack_from(raw))

    def _describe_profile(self) -> str:
        data = bytes(self.profile_data).ljust(20, b"\0")
        text = f"-p {self.profile}:"
        if self.profile == CGW_CRC8PRF_1U8:
            text += f"{data[0]:02X}"
        elif self.profile == CGW_CRC8PRF_16U8:
            text += _hex(data[:16])
        elif self.profile != CGW_CRC8PRF_SFFID_XOR:
            text += f"<unknown profile #{self.profile}>"
        return text + " "

    def describe(self) -> str:
        table = bytes(self.crctab).ljust(256, b"\0")[:256]
        text = (
            f"-c {self.from_idx}:{self.to_idx}:{self.result_idx}:"
            f"{self.init_crc_val:02X}:{self.final_xor_val:02X}:{_hex(table)} "
        )
        if self.profile != CGW_CRC8PRF_UNSPEC:
            text += self._describe_profile()
        return text


def _mod_error(text: str, code: int) -> RuleParseError:
    return RuleParseError(f"Problem {code} with modification definition '{text}'.", code)


def _parse_modification(text: str, fd: bool) -> Modification:
    head, sep, rest = text.partition(":")
    if not sep or not 0 < len(head) <= 3:
        raise _mod_error(text, 1)
    for instruction in MOD_INSTRUCTIONS:
        if text.startswith(instruction):
            break
    else:
        raise _mod_error(text, 2)

    elements, sep, tail = rest.partition(":")
    if not sep or not 0 < len(elements) <= (4 if fd else 3):
        raise _mod_error(text, 3)
    letters = _FD_ELEMENTS if fd else _CLASSIC_ELEMENTS
    modtype = 0
    for char in elements:
        if char not in letters:
            raise _mod_error(text, 4)
        modtype |= letters[char]

    bases = (16, 16, 16) if fd else (16, 16)
    dlen = 64 if fd else 8
    values, pos = _scan_sequence(tail, bases, ".")
    word = None
    if len(values) == len(bases) and tail.startswith(".", pos):
        word = _scan_word(tail, pos + 1, dlen * 2)
    if word is None:
        raise _mod_error(text, 5)
    if len(word) != dlen * 2:
        raise _mod_error(text, 6)
    try:
        data = hex_bytes(word, dlen)
    except RuleParseError:
        raise _mod_error(text, 7) from None

    can_id = values[0] & 0xFFFFFFFF
    if fd:
        return Modification(instruction, modtype, can_id, _u8(values[2]), data, _u8(values[1]), True)
    return Modification(instruction, modtype, can_id, _u8(values[1]), data)


def parse_mod(text: str) -> Modification:
    """Parse ``<instr>:<elements>:<can_id>.<dlc>.<16 hex chars>``."""
    return _parse_modification(text, False)


def parse_fdmod(text: str) -> Modification:
    """Parse ``<instr>:<elements>:<can_id>.<flags>.<len>.<128 hex chars>``."""
    return _parse_modification(text, True)


def parse_filter(text: str) -> CanFilter:
    """Parse ``<can_id>:<mask>`` or the inverted ``<can_id>~<mask>``."""
    for sep, extra in ((":", 0), ("~", CAN_INV_FILTER)):
        values, _pos = _scan_sequence(text, (16, 16), sep)
        if len(values) == 2:
            can_id = (values[0] & 0xFFFFFFFF) | extra
            return CanFilter(can_id, values[1] & 0xFFFFFFFF)
    raise RuleParseError(f"Bad filter definition '{text}'.")


def describe_filter(can_id: int, can_mask: int) -> str:
    """Command line notation of a filter."""
    if can_id & CAN_INV_FILTER:
        return f"-f {can_id & ~CAN_INV_FILTER & 0xFFFFFFFF:03X}~{can_mask:X} "
    return f"-f {can_id:03X}:{can_mask:X} "


def parse_xor(text: str) -> XorChecksum:
    """Parse ``<from>:<to>:<result>:<init_xor_val>``."""
    values, _pos = _scan_sequence(text, (10, 10, 10, 16), ":")
    if len(values) != 4:
        raise RuleParseError(f"Bad XOR checksum definition '{text}'.")
    return XorChecksum(_s8(values[0]), _s8(values[1]), _s8(values[2]), _u8(values[3]))


def parse_crc8(text: str) -> Crc8Checksum:
    """Parse ``<from>:<to>:<result>:<init>:<xor>:<512 hex chars>``."""
    error = RuleParseError(f"Bad CRC8 checksum definition '{text}'.")
    values, pos = _scan_sequence(text, (10, 10, 10, 16, 16), ":")
    if len(values) != 5 or not text.startswith(":", pos):
        raise error
    table = _scan_word(text, pos + 1, 512)
    if table is None or len(table) != 512:
        raise error
    try:
        crctab = hex_bytes(table, 256)
    except RuleParseError:
        raise error from None
    return Crc8Checksum(
        _s8(values[0]), _s8(values[1]), _s8(values[2]), _u8(values[3]), _u8(values[4]), crctab
    )


def parse_crc8_profile(text: str, checksum: Crc8Checksum) -> Crc8Checksum:
    """Return ``checksum`` with the profile ``<profile>:[<profile_data>]`` applied."""
    error = RuleParseError(f"Bad CRC8 profile definition '{text}'.")
    found = _scan(text, 0, 10)
    if found is None:
        raise error
    profile, pos = _u8(found[0]), found[1]
    data = bytearray(bytes(checksum.profile_data).ljust(20, b"\0")[:20])

    if profile == CGW_CRC8PRF_1U8:
        if not text.startswith(":", pos):
            raise error
        value = _scan_width(text, pos + 1, 2, 16)
        if value is None:
            raise error
        data[0] = _u8(value[0])
    elif profile == CGW_CRC8PRF_16U8:
        colon = text.find(":")
        tail = text[colon:] if colon >= 0 else ""
        if len(tail) != 33:
            raise error
        try:
            data[:16] = hex_bytes(tail[1:], 16)
        except RuleParseError:
            raise error from None
    elif profile != CGW_CRC8PRF_SFFID_XOR:
        raise error
    return replace(checksum, profile=profile, profile_data=bytes(data))