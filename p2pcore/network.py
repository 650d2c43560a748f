"""Enumerations shared by the networking components."""

from __future__ import annotations

from enum import IntEnum


class _LabelledEnum(IntEnum):
    """Integer enum whose string form is the CamelCase member name."""

    def __str__(self) -> str:
        return "".join(part.capitalize() for part in self.name.split("_"))


class Direction(_LabelledEnum):
    """Which side opened a connection or stream."""

    UNKNOWN = 0
    INBOUND = 1
    OUTBOUND = 2


class Reachability(_LabelledEnum):
    """How reachable the local node is from the public network."""

    UNKNOWN = 0
    PUBLIC = 1
    PRIVATE = 2


class NATDeviceType(_LabelledEnum):
    """The kind of NAT the local node appears to sit behind."""

    UNKNOWN = 0
    CONE = 1
    SYMMETRIC = 2


class NATTransportProtocol(_LabelledEnum):
    """Transport protocol that a NAT classification applies to."""

    UDP = 0
    TCP = 1

    def __str__(self) -> str:
        return self.name


class Connectedness(_LabelledEnum):
    """State of the local node's connection to a peer."""

    NOT_CONNECTED = 0
    CONNECTED = 1
    CAN_CONNECT = 2
    CANNOT_CONNECT = 3