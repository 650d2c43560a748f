"""Identify protocol messages and their length-delimited wire encoding."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Iterator, Optional

# A signed peer record is sent separately if the full message exceeds this size.
LEGACY_ID_SIZE = 2 * 1024
# Largest single message accepted when reading an identify response.
SIGNED_ID_SIZE = 8 * 1024
# Largest number of parts an identify response may be split into.
MAX_MESSAGES = 10

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_BYTES = 2
_WIRE_FIXED32 = 5


def _uvarint(number: int) -> bytes:
    out = bytearray()
    while True:
        low = number & 0x7F
        number >>= 7
        if number:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _read_uvarint(data: bytes, offset: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise ValueError("truncated varint")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, offset
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


def _bytes_field(number: int, value: bytes) -> bytes:
    return _uvarint(number << 3 | _WIRE_BYTES) + _uvarint(len(value)) + value


def _iter_fields(data: bytes) -> Iterator[tuple[int, bytes]]:
    """Yield (field number, value) for length-delimited fields, skipping others."""
    offset = 0
    while offset < len(data):
        key, offset = _read_uvarint(data, offset)
        number, wire = key >> 3, key & 7
        if number == 0:
            raise ValueError("invalid field number 0")
        if wire == _WIRE_VARINT:
            _, offset = _read_uvarint(data, offset)
            continue
        if wire == _WIRE_FIXED64:
            offset += 8
        elif wire == _WIRE_FIXED32:
            offset += 4
        elif wire == _WIRE_BYTES:
            length, offset = _read_uvarint(data, offset)
            if offset + length > len(data):
                raise ValueError("truncated field")
            yield number, bytes(data[offset : offset + length])
            offset += length
            continue
        else:
            raise ValueError(f"unsupported wire type {wire}")
        if offset > len(data):
            raise ValueError("truncated field")


@dataclass
class Delta:
    """Protocols added and removed since the last update sent to a peer."""

    added_protocols: list[str] = field(default_factory=list)
    rm_protocols: list[str] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        out = b"".join(_bytes_field(1, p.encode("utf-8")) for p in self.added_protocols)
        return out + b"".join(_bytes_field(2, p.encode("utf-8")) for p in self.rm_protocols)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Delta":
        delta = cls()
        for number, value in _iter_fields(data):
            if number == 1:
                delta.added_protocols.append(value.decode("utf-8"))
            elif number == 2:
                delta.rm_protocols.append(value.decode("utf-8"))
        return delta


@dataclass
class IdentifyMessage:
    """An identify message; unset optional fields are None."""

    protocols: list[str] = field(default_factory=list)
    observed_addr: Optional[bytes] = None
    listen_addrs: list[bytes] = field(default_factory=list)
    public_key: Optional[bytes] = None
    protocol_version: Optional[str] = None
    agent_version: Optional[str] = None
    delta: Optional[Delta] = None
    signed_peer_record: Optional[bytes] = None

    def merge(self, other: "IdentifyMessage") -> None:
        """Merge ``other`` into this message: lists are extended, set fields overwrite."""
        self.protocols.extend(other.protocols)
        self.listen_addrs.extend(other.listen_addrs)
        for name in ("observed_addr", "public_key", "protocol_version", "agent_version", "signed_peer_record"):
            value = getattr(other, name)
            if value is not None:
                setattr(self, name, value)
        if other.delta is not None:
            if self.delta is None:
                self.delta = Delta(list(other.delta.added_protocols), list(other.delta.rm_protocols))
            else:
                self.delta.added_protocols.extend(other.delta.added_protocols)
                self.delta.rm_protocols.extend(other.delta.rm_protocols)

    def to_bytes(self) -> bytes:
        parts = []
        if self.public_key is not None:
            parts.append(_bytes_field(1, self.public_key))
        parts.extend(_bytes_field(2, addr) for addr in self.listen_addrs)
        parts.extend(_bytes_field(3, proto.encode("utf-8")) for proto in self.protocols)
        if self.observed_addr is not None:
            parts.append(_bytes_field(4, self.observed_addr))
        if self.protocol_version is not None:
            parts.append(_bytes_field(5, self.protocol_version.encode("utf-8")))
        if self.agent_version is not None:
            parts.append(_bytes_field(6, self.agent_version.encode("utf-8")))
        if self.delta is not None:
            parts.append(_bytes_field(7, self.delta.to_bytes()))
        if self.signed_peer_record is not None:
            parts.append(_bytes_field(8, self.signed_peer_record))
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "IdentifyMessage":
        message = cls()
        for number, value in _iter_fields(data):
            if number == 1:
                message.public_key = value
            elif number == 2:
                message.listen_addrs.append(value)
            elif number == 3:
                message.protocols.append(value.decode("utf-8"))
            elif number == 4:
                message.observed_addr = value
            elif number == 5:
                message.protocol_version = value.decode("utf-8")
            elif number == 6:
                message.agent_version = value.decode("utf-8")
            elif number == 7:
                message.delta = Delta.from_bytes(value)
            elif number == 8:
                message.signed_peer_record = value
        return message

    def size(self) -> int:
        """Encoded size in bytes, without the length prefix."""
        return len(self.to_bytes())

    def to_delimited(self) -> bytes:
        """The encoded message preceded by its length as a varint."""
        body = self.to_bytes()
        return _uvarint(len(body)) + body

    @classmethod
    def parse_delimited(cls, data: bytes, max_size: int = SIGNED_ID_SIZE) -> list["IdentifyMessage"]:
        """Decode a sequence of length-delimited messages, each at most ``max_size`` bytes."""
        messages = []
        offset = 0
        while offset < len(data):
            length, offset = _read_uvarint(data, offset)
            if length > max_size:
                raise ValueError(f"message of {length} bytes exceeds limit of {max_size}")
            if offset + length > len(data):
                raise ValueError("truncated message")
            messages.append(cls.from_bytes(data[offset : offset + length]))
            offset += length
        return messages


def read_all_messages(messages: Iterable[IdentifyMessage]) -> IdentifyMessage:
    """Merge the parts of a chunked identify response into one message.

    Raises ValueError if the response holds MAX_MESSAGES parts or more.
    """
    final = IdentifyMessage()
    for count, message in enumerate(messages, 1):
        final.merge(message)
        if count >= MAX_MESSAGES:
            raise ValueError("too many parts")
    return final


def chunk_identify_message(message: IdentifyMessage, signed_record: Optional[bytes]) -> list[IdentifyMessage]:
    """Split a response so that peers with small read limits still get the unsigned part.

    The signed record goes into the message itself unless that makes it larger
    than LEGACY_ID_SIZE, in which case it follows in a message of its own.
    """
    full = replace(message, signed_peer_record=signed_record)
    if signed_record is None or full.size() <= LEGACY_ID_SIZE:
        return [full]
    return [replace(message, signed_peer_record=None), IdentifyMessage(signed_peer_record=signed_record)]