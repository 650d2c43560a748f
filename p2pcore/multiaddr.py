"""Self-describing network addresses in their string and binary forms."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

P_IP4 = 4
P_TCP = 6
P_DCCP = 33
P_IP6 = 41
P_IP6ZONE = 42
P_DNS = 53
P_DNS4 = 54
P_DNS6 = 55
P_DNSADDR = 56
P_SCTP = 132
P_UDP = 273
P_P2P_CIRCUIT = 290
P_UDT = 301
P_UTP = 302
P_P2P = 421
P_HTTPS = 443
P_QUIC = 460
P_WS = 477
P_WSS = 478
P_HTTP = 480

SIZE_VARIABLE = -1


class MultiaddrError(ValueError):
    """Raised for malformed or unsupported multiaddrs."""


def _encode_uvarint(number: int) -> bytes:
    out = bytearray()
    while True:
        low = number & 0x7F
        number >>= 7
        if number:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _decode_uvarint(data: bytes, offset: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise MultiaddrError("truncated varint")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, offset
        shift += 7
        if shift > 63:
            raise MultiaddrError("varint too long")


_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _b58encode(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, rem = divmod(number, 58)
        digits.append(_B58_ALPHABET[rem])
    padding = len(data) - len(data.lstrip(b"\0"))
    return "1" * padding + "".join(reversed(digits))


def _b58decode(text: str) -> bytes:
    number = 0
    for char in text:
        index = _B58_ALPHABET.find(char)
        if index < 0:
            raise MultiaddrError(f"invalid base58 character {char!r}")
        number = number * 58 + index
    body = number.to_bytes((number.bit_length() + 7) // 8, "big")
    padding = len(text) - len(text.lstrip("1"))
    return b"\0" * padding + body


def _ip_codec(cls: type, width: int) -> tuple[Callable[[str], bytes], Callable[[bytes], str]]:
    def to_bytes(text: str) -> bytes:
        try:
            return cls(text).packed
        except ValueError as exc:
            raise MultiaddrError(f"invalid IP address {text!r}") from exc

    def to_string(raw: bytes) -> str:
        if len(raw) != width:
            raise MultiaddrError(f"invalid IP address length {len(raw)}")
        return str(cls(raw))

    return to_bytes, to_string


def _port_to_bytes(text: str) -> bytes:
    if not text.isdecimal():
        raise MultiaddrError(f"invalid port {text!r}")
    port = int(text)
    if port > 0xFFFF:
        raise MultiaddrError(f"port {port} out of range")
    return port.to_bytes(2, "big")


def _port_to_string(raw: bytes) -> str:
    if len(raw) != 2:
        raise MultiaddrError("invalid port length")
    return str(int.from_bytes(raw, "big"))


def _text_to_bytes(text: str) -> bytes:
    if not text or "/" in text:
        raise MultiaddrError(f"invalid text value {text!r}")
    return text.encode("utf-8")


def _text_to_string(raw: bytes) -> str:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MultiaddrError("invalid utf-8 value") from exc
    if not text or "/" in text:
        raise MultiaddrError(f"invalid text value {text!r}")
    return text


def _p2p_to_bytes(text: str) -> bytes:
    if not text:
        raise MultiaddrError("empty peer id")
    return _b58decode(text)


def _p2p_to_string(raw: bytes) -> str:
    if not raw:
        raise MultiaddrError("empty peer id")
    return _b58encode(raw)


@dataclass(frozen=True)
class Protocol:
    """A multiaddr protocol: its name, code and value size in bits."""

    name: str
    code: int
    size: int
    _encode: Optional[Callable[[str], bytes]] = field(default=None, repr=False, compare=False)
    _decode: Optional[Callable[[bytes], str]] = field(default=None, repr=False, compare=False)

    @property
    def vcode(self) -> bytes:
        """The protocol code as an unsigned varint."""
        return _encode_uvarint(self.code)

    @property
    def takes_value(self) -> bool:
        return self.size != 0

    def value_to_bytes(self, text: str) -> bytes:
        """Encode a value given in string form."""
        if self._encode is None:
            raise MultiaddrError(f"protocol {self.name} takes no value")
        return self._encode(text)

    def value_to_string(self, raw: bytes) -> str:
        """Decode a value given in binary form."""
        if self._decode is None:
            raise MultiaddrError(f"protocol {self.name} takes no value")
        return self._decode(raw)


_IP4 = _ip_codec(ipaddress.IPv4Address, 4)
_IP6 = _ip_codec(ipaddress.IPv6Address, 16)
_PORT = (_port_to_bytes, _port_to_string)
_TEXT = (_text_to_bytes, _text_to_string)
_P2P = (_p2p_to_bytes, _p2p_to_string)

_PROTOCOLS = [
    Protocol("ip4", P_IP4, 32, *_IP4),
    Protocol("tcp", P_TCP, 16, *_PORT),
    Protocol("dccp", P_DCCP, 16, *_PORT),
    Protocol("ip6", P_IP6, 128, *_IP6),
    Protocol("ip6zone", P_IP6ZONE, SIZE_VARIABLE, *_TEXT),
    Protocol("dns", P_DNS, SIZE_VARIABLE, *_TEXT),
    Protocol("dns4", P_DNS4, SIZE_VARIABLE, *_TEXT),
    Protocol("dns6", P_DNS6, SIZE_VARIABLE, *_TEXT),
    Protocol("dnsaddr", P_DNSADDR, SIZE_VARIABLE, *_TEXT),
    Protocol("sctp", P_SCTP, 16, *_PORT),
    Protocol("udp", P_UDP, 16, *_PORT),
    Protocol("p2p-circuit", P_P2P_CIRCUIT, 0),
    Protocol("udt", P_UDT, 0),
    Protocol("utp", P_UTP, 0),
    Protocol("p2p", P_P2P, SIZE_VARIABLE, *_P2P),
    Protocol("https", P_HTTPS, 0),
    Protocol("quic", P_QUIC, 0),
    Protocol("ws", P_WS, 0),
    Protocol("wss", P_WSS, 0),
    Protocol("http", P_HTTP, 0),
]

_BY_CODE = {proto.code: proto for proto in _PROTOCOLS}
_BY_NAME = {proto.name: proto for proto in _PROTOCOLS}
_BY_NAME["ipfs"] = _BY_CODE[P_P2P]


@dataclass(frozen=True)
class Component:
    """A single protocol/value pair of a multiaddr."""

    protocol: Protocol
    raw_value: bytes = b""

    @property
    def value(self) -> str:
        """The value in its string form, or an empty string if there is none."""
        if not self.protocol.takes_value:
            return ""
        return self.protocol.value_to_string(self.raw_value)

    def to_bytes(self) -> bytes:
        out = self.protocol.vcode
        if self.protocol.size == SIZE_VARIABLE:
            out += _encode_uvarint(len(self.raw_value))
        return out + self.raw_value

    def __str__(self) -> str:
        if self.protocol.takes_value:
            return f"/{self.protocol.name}/{self.value}"
        return f"/{self.protocol.name}"


def _parse_string(text: str) -> tuple[Component, ...]:
    parts = text.rstrip("/").split("/")
    if parts[0] != "":
        raise MultiaddrError(f"multiaddr must begin with '/': {text!r}")
    parts = parts[1:]
    if not parts:
        raise MultiaddrError("empty multiaddr")
    components = []
    tokens = iter(parts)
    for name in tokens:
        proto = _BY_NAME.get(name)
        if proto is None:
            raise MultiaddrError(f"unknown protocol {name!r}")
        if not proto.takes_value:
            components.append(Component(proto))
            continue
        value = next(tokens, None)
        if value is None:
            raise MultiaddrError(f"unexpected end of multiaddr after {name!r}")
        components.append(Component(proto, proto.value_to_bytes(value)))
    return tuple(components)


def _parse_bytes(data: bytes) -> tuple[Component, ...]:
    if not data:
        raise MultiaddrError("empty multiaddr")
    components = []
    offset = 0
    while offset < len(data):
        code, offset = _decode_uvarint(data, offset)
        proto = _BY_CODE.get(code)
        if proto is None:
            raise MultiaddrError(f"unknown protocol code {code}")
        if proto.size == SIZE_VARIABLE:
            length, offset = _decode_uvarint(data, offset)
        else:
            length = proto.size // 8
        if offset + length > len(data):
            raise MultiaddrError(f"truncated value for {proto.name}")
        raw = bytes(data[offset : offset + length])
        offset += length
        component = Component(proto, raw)
        _ = component.value  # validate
        components.append(component)
    return tuple(components)


class Multiaddr:
    """An immutable multiaddr, built from its string or binary form."""

    __slots__ = ("_components", "_bytes")

    def __init__(self, addr: Union[str, bytes, "Multiaddr"]):
        if isinstance(addr, Multiaddr):
            components = addr._components
        elif isinstance(addr, str):
            components = _parse_string(addr)
        elif isinstance(addr, (bytes, bytearray, memoryview)):
            components = _parse_bytes(bytes(addr))
        else:
            raise TypeError(f"cannot build a multiaddr from {type(addr).__name__}")
        self._components = components
        self._bytes = b"".join(c.to_bytes() for c in components)

    @classmethod
    def from_string(cls, text: str) -> "Multiaddr":
        if not isinstance(text, str):
            raise TypeError("expected a string")
        return cls(text)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Multiaddr":
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError("expected bytes")
        return cls(bytes(data))

    @classmethod
    def _from_components(cls, components: tuple[Component, ...]) -> "Multiaddr":
        instance = cls.__new__(cls)
        instance._components = components
        instance._bytes = b"".join(c.to_bytes() for c in components)
        return instance

    def to_bytes(self) -> bytes:
        return self._bytes

    def components(self) -> list[Component]:
        return list(self._components)

    def protocols(self) -> list[Protocol]:
        return [c.protocol for c in self._components]

    def value_for_protocol(self, code: int) -> str:
        """Return the value of the first component with the given code."""
        for component in self._components:
            if component.protocol.code == code:
                return component.value
        raise MultiaddrError(f"protocol {code} not found in {self}")

    def split_first(self) -> tuple[Component, Union["Multiaddr", None]]:
        """Split off the first component; the rest is None if nothing remains."""
        first, *rest = self._components
        return first, (Multiaddr._from_components(tuple(rest)) if rest else None)

    def _zoneless(self) -> tuple[Component, ...]:
        components = self._components
        while components and components[0].protocol.code == P_IP6ZONE:
            components = components[1:]
        return components

    def to_ip(self) -> IPAddress:
        """Return the leading IP address, skipping any IPv6 zone."""
        components = self._zoneless()
        if components and components[0].protocol.code in (P_IP4, P_IP6):
            return ipaddress.ip_address(components[0].raw_value)
        raise MultiaddrError(f"{self} does not start with an IP address")

    def is_ip_loopback(self) -> bool:
        components = self._zoneless()
        if not components or components[0].protocol.code not in (P_IP4, P_IP6):
            return False
        ip = ipaddress.ip_address(components[0].raw_value)
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            return ip.ipv4_mapped.is_loopback
        return ip.is_loopback

    def __bytes__(self) -> bytes:
        return self._bytes

    def __str__(self) -> str:
        return "".join(str(c) for c in self._components)

    def __repr__(self) -> str:
        return f"Multiaddr({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Multiaddr):
            return NotImplemented
        return self._bytes == other._bytes

    def __hash__(self) -> int:
        return hash(self._bytes)