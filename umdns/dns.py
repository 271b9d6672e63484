"""DNS wire format: constants, name compression, packet building and parsing."""

from __future__ import annotations

import struct
from collections.abc import MutableMapping
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Optional

FLAG_RESPONSE = 0x8000
FLAG_AUTHORITATIVE = 0x0400

CLASS_FLUSH = 0x8000
CLASS_UNICAST = 0x8000
CLASS_IN = 0x0001

MCAST_ADDR = "224.0.0.251"
MCAST_ADDR6 = "ff02::fb"
MCAST_PORT = 5353

MAX_NAME_LEN = 8096
MAX_DATA_LEN = 8096
MAX_PACKET_LEN = 9000

C_DNS_SD = "_services._dns-sd._udp.local"

_MAX_WIRE_NAME = 255
_MAX_LABEL = 63
_POINTER_LIMIT = 0x4000
_SPECIAL = b'".;\\()@$'

_HEADER = struct.Struct("!6H")
_SRV = struct.Struct("!3H")
_QUESTION = struct.Struct("!HH")
_ANSWER = struct.Struct("!HHIH")


class RRType(IntEnum):
    A = 0x0001
    PTR = 0x000C
    TXT = 0x0010
    AAAA = 0x001C
    SRV = 0x0021
    ANY = 0x00FF


class DnsFormatError(ValueError):
    """Raised for malformed DNS names or packets."""


def is_compressed(octet: int) -> bool:
    return octet & 0xC0 == 0xC0


def type_string(rtype: int) -> str:
    """Return the mnemonic of a record type, or ``"N/A"``."""
    try:
        return RRType(rtype).name
    except ValueError:
        return "N/A"


@dataclass
class DnsHeader:
    id: int = 0
    flags: int = 0
    questions: int = 0
    answers: int = 0
    authority: int = 0
    additional: int = 0

    SIZE: ClassVar[int] = _HEADER.size

    def pack(self) -> bytes:
        return _HEADER.pack(
            self.id & 0xFFFF,
            self.flags & 0xFFFF,
            self.questions & 0xFFFF,
            self.answers & 0xFFFF,
            self.authority & 0xFFFF,
            self.additional & 0xFFFF,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "DnsHeader":
        if len(data) < cls.SIZE:
            raise DnsFormatError("packet shorter than a DNS header")
        return cls(*_HEADER.unpack_from(data))

    @property
    def is_response(self) -> bool:
        return bool(self.flags & FLAG_RESPONSE)


@dataclass
class Question:
    name: str
    rtype: int
    rclass: int = CLASS_IN

    @property
    def unicast(self) -> bool:
        return bool(self.rclass & CLASS_UNICAST)


@dataclass
class Answer:
    name: str
    rtype: int
    rclass: int
    ttl: int
    rdata: bytes
    rdata_offset: int = 0

    @property
    def flush(self) -> bool:
        return bool(self.rclass & CLASS_FLUSH)

    @property
    def record_class(self) -> int:
        return self.rclass & ~CLASS_FLUSH


@dataclass
class SrvData:
    priority: int = 0
    weight: int = 0
    port: int = 0

    SIZE: ClassVar[int] = _SRV.size

    def pack(self) -> bytes:
        return _SRV.pack(self.priority & 0xFFFF, self.weight & 0xFFFF, self.port & 0xFFFF)

    @classmethod
    def unpack(cls, data: bytes) -> "SrvData":
        if len(data) < cls.SIZE:
            raise DnsFormatError("SRV data too short")
        return cls(*_SRV.unpack_from(data))


def _text_to_labels(name: str) -> list[bytes]:
    data = name.encode("utf-8")
    if data in (b"", b"."):
        return []
    labels: list[bytes] = []
    current = bytearray()
    pos = 0
    while pos < len(data):
        char = data[pos]
        pos += 1
        if char == 0x5C:
            if pos >= len(data):
                raise DnsFormatError(f"dangling escape in {name!r}")
            char = data[pos]
            if 0x30 <= char <= 0x39:
                digits = data[pos:pos + 3]
                if len(digits) < 3 or not digits.isdigit():
                    raise DnsFormatError(f"bad numeric escape in {name!r}")
                value = int(digits)
                if value > 255:
                    raise DnsFormatError(f"numeric escape out of range in {name!r}")
                current.append(value)
                pos += 3
            else:
                current.append(char)
                pos += 1
        elif char == 0x2E:
            if not current:
                raise DnsFormatError(f"empty label in {name!r}")
            labels.append(bytes(current))
            current = bytearray()
        else:
            current.append(char)
        if len(current) > _MAX_LABEL:
            raise DnsFormatError(f"label too long in {name!r}")
    if current:
        labels.append(bytes(current))
    if sum(len(label) + 1 for label in labels) + 1 > _MAX_WIRE_NAME:
        raise DnsFormatError(f"name too long: {name!r}")
    return labels


def _suffix_key(labels: list[bytes]) -> tuple[bytes, ...]:
    return tuple(label.lower() for label in labels)


def _encode_name(
    name: str, pointers: Optional[MutableMapping[tuple[bytes, ...], int]]
) -> tuple[bytes, list[bytes], int]:
    """Encode ``name``; return the bytes, its labels and how many were written literally."""
    labels = _text_to_labels(name)
    out = bytearray()
    for index, label in enumerate(labels):
        if pointers:
            target = pointers.get(_suffix_key(labels[index:]))
            if target is not None:
                out += struct.pack("!H", 0xC000 | target)
                return bytes(out), labels, index
        out.append(len(label))
        out += label
    out.append(0)
    return bytes(out), labels, len(labels)


def compress_name(
    name: str, pointers: Optional[MutableMapping[tuple[bytes, ...], int]] = None
) -> bytes:
    """Encode a dotted name in wire format.

    ``pointers`` maps lower-cased label suffixes to packet offsets; a known
    suffix is replaced by a compression pointer.
    """
    return _encode_name(name, pointers)[0]


def _label_text(label: bytes) -> str:
    parts = []
    for octet in label:
        if octet in _SPECIAL:
            parts.append("\\" + chr(octet))
        elif 0x20 < octet < 0x7F:
            parts.append(chr(octet))
        else:
            parts.append(f"\\{octet:03d}")
    return "".join(parts)


def expand_name(packet: bytes, offset: int) -> tuple[str, int]:
    """Decode the possibly compressed name at ``offset``.

    Returns the dotted name and the number of bytes it occupies at ``offset``.
    """
    end = len(packet)
    labels: list[bytes] = []
    visited: set[int] = set()
    consumed: Optional[int] = None
    wire = 0
    pos = offset
    while True:
        if pos < 0 or pos >= end:
            raise DnsFormatError("name runs past end of packet")
        length = packet[pos]
        kind = length & 0xC0
        if kind == 0:
            if length == 0:
                if consumed is None:
                    consumed = pos + 1 - offset
                break
            if pos + 1 + length > end:
                raise DnsFormatError("label runs past end of packet")
            if wire + length + 1 >= _MAX_WIRE_NAME:
                raise DnsFormatError("expanded name too long")
            labels.append(packet[pos + 1:pos + 1 + length])
            wire += length + 1
            pos += length + 1
        elif kind == 0xC0:
            if pos + 1 >= end:
                raise DnsFormatError("truncated compression pointer")
            target = ((length & 0x3F) << 8) | packet[pos + 1]
            if consumed is None:
                consumed = pos + 2 - offset
            if target in visited or target >= end:
                raise DnsFormatError("bad compression pointer")
            visited.add(target)
            pos = target
        else:
            raise DnsFormatError("unsupported label type")
    return ".".join(_label_text(label) for label in labels), consumed


def scan_name(packet: bytes, offset: int) -> int:
    """Return the length of the wire name at ``offset`` without following pointers.

    The root name and names not terminated inside the packet are rejected.
    """
    remaining = len(packet) - offset
    pos = offset
    consumed = 0
    while remaining > 0 and packet[pos] != 0:
        length = packet[pos]
        if is_compressed(length):
            return consumed + 2
        if length + 1 > remaining:
            raise DnsFormatError("label runs past end of packet")
        remaining -= length + 1
        consumed += length + 1
        pos += length + 1
    if remaining <= 0 or consumed == 0 or packet[pos] != 0:
        raise DnsFormatError("bad name")
    return consumed + 1


class PacketBuilder:
    """Assembles an outgoing DNS packet with name compression."""

    DATA_SIZE: ClassVar[int] = MAX_PACKET_LEN - DnsHeader.SIZE

    def __init__(self) -> None:
        self.header = DnsHeader()
        self._body = bytearray()
        self._question_classes: list[int] = []
        self._pointers: dict[tuple[bytes, ...], int] = {}

    def __len__(self) -> int:
        return DnsHeader.SIZE + len(self._body)

    def _remember(self, labels: list[bytes], literal: int, base: int) -> None:
        pos = base
        for index in range(literal):
            if pos < _POINTER_LIMIT:
                self._pointers.setdefault(_suffix_key(labels[index:]), pos)
            pos += len(labels[index]) + 1

    def _append_record(self, name: str, fixed: bytes) -> Optional[int]:
        """Append name and fixed part; return the body offset of the fixed part."""
        if len(self._body) + MAX_NAME_LEN > self.DATA_SIZE:
            return None
        try:
            encoded, labels, literal = _encode_name(name, self._pointers)
        except DnsFormatError:
            return None
        if len(self._body) + len(encoded) + len(fixed) > self.DATA_SIZE:
            return None
        self._remember(labels, literal, DnsHeader.SIZE + len(self._body))
        self._body += encoded
        fixed_offset = len(self._body)
        self._body += fixed
        return fixed_offset

    def add_question(self, name: str, rtype: int) -> bool:
        """Add a question of class IN; False if the name is invalid or there is no room."""
        fixed_offset = self._append_record(name, _QUESTION.pack(rtype & 0xFFFF, CLASS_IN))
        if fixed_offset is None:
            return False
        self._question_classes.append(fixed_offset + 2)
        self.header.questions += 1
        return True

    def add_answer(self, name: str, rtype: int, rdata: bytes, ttl: int) -> bool:
        """Add an answer record of class IN; False if it cannot be added."""
        self.header.flags |= FLAG_RESPONSE | FLAG_AUTHORITATIVE
        rdata = bytes(rdata)
        if len(rdata) > 0xFFFF:
            return False
        fixed = _ANSWER.pack(rtype & 0xFFFF, CLASS_IN, ttl & 0xFFFFFFFF, len(rdata)) + rdata
        if self._append_record(name, fixed) is None:
            return False
        self.header.answers += 1
        return True

    def set_multicast(self, multicast: bool) -> None:
        """Clear (multicast) or set (unicast) the unicast-response bit of every question."""
        for offset in self._question_classes:
            (rclass,) = struct.unpack_from("!H", self._body, offset)
            if multicast:
                rclass &= ~CLASS_UNICAST
            else:
                rclass |= CLASS_UNICAST
            struct.pack_into("!H", self._body, offset, rclass & 0xFFFF)

    def to_bytes(self) -> bytes:
        return self.header.pack() + bytes(self._body)


class PacketReader:
    """Sequential reader over a received DNS packet."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def read_header(self) -> DnsHeader:
        header = DnsHeader.unpack(self.data[self.offset:])
        self.offset += DnsHeader.SIZE
        return header

    def read_name(self) -> str:
        length = scan_name(self.data, self.offset)
        name, _ = expand_name(self.data, self.offset)
        if length > self.remaining:
            raise DnsFormatError("name runs past end of packet")
        self.offset += length
        return name

    def read_question(self) -> Question:
        name = self.read_name()
        if self.remaining < _QUESTION.size:
            raise DnsFormatError("truncated question")
        rtype, rclass = _QUESTION.unpack_from(self.data, self.offset)
        self.offset += _QUESTION.size
        return Question(name, rtype, rclass)

    def read_answer(self) -> Answer:
        name = self.read_name()
        if self.remaining < _ANSWER.size:
            raise DnsFormatError("truncated resource record")
        rtype, rclass, ttl, rdlength = _ANSWER.unpack_from(self.data, self.offset)
        self.offset += _ANSWER.size
        if rdlength > self.remaining:
            raise DnsFormatError("record data runs past end of packet")
        rdata_offset = self.offset
        rdata = self.data[rdata_offset:rdata_offset + rdlength]
        self.offset += rdlength
        return Answer(name, rtype, rclass, ttl, rdata, rdata_offset)