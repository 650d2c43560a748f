"""Connection gating: block peers, IP addresses and subnets, optionally persisted."""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Iterator, Optional, Protocol, Union

from .multiaddr import Multiaddr, MultiaddrError
from .network import Direction

log = logging.getLogger("p2pcore.conngater")

_NAMESPACE = "/libp2p/net/conngater"
_KEY_PEER = "/peer/"
_KEY_ADDR = "/addr/"
_KEY_SUBNET = "/subnet/"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class _ConnMultiaddrs(Protocol):
    remote_multiaddr: Optional[Multiaddr]


class MapDatastore:
    """A simple in-memory key/value datastore."""

    def __init__(self) -> None:
        self._values: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._values[key] = bytes(value)

    def get(self, key: str) -> bytes:
        with self._lock:
            return self._values[key]

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def query(self, prefix: str) -> Iterator[tuple[str, bytes]]:
        """Yield (key, value) pairs whose key starts with prefix, in key order."""
        with self._lock:
            entries = sorted((k, v) for k, v in self._values.items() if k.startswith(prefix))
        yield from entries

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)


def _normalize_ip(ip: Union[str, bytes, IPAddress]) -> IPAddress:
    addr = ip if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)) else ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def _normalize_subnet(subnet: Union[str, IPNetwork]) -> IPNetwork:
    if isinstance(subnet, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return subnet
    return ipaddress.ip_network(subnet, strict=False)


class BasicConnectionGater:
    """Access control on incoming and outgoing connections.

    If a datastore is given, rules are loaded from it and every change is
    written back to it. Active connections are never closed by a block.
    """

    def __init__(self, datastore: Optional[MapDatastore] = None):
        self._lock = threading.RLock()
        self._blocked_peers: set[str] = set()
        self._blocked_addrs: set[IPAddress] = set()
        self._blocked_subnets: dict[str, IPNetwork] = {}
        self._ds = datastore
        if datastore is not None:
            self._load_rules()

    def _key(self, kind: str, name: str) -> str:
        return f"{_NAMESPACE}{kind}{name}"

    def _load_rules(self) -> None:
        assert self._ds is not None
        for _, value in self._ds.query(_NAMESPACE + _KEY_PEER):
            self._blocked_peers.add(value.decode("utf-8"))
        for _, value in self._ds.query(_NAMESPACE + _KEY_ADDR):
            self._blocked_addrs.add(_normalize_ip(value))
        for _, value in self._ds.query(_NAMESPACE + _KEY_SUBNET):
            text = value.decode("utf-8", errors="replace")
            try:
                subnet = _normalize_subnet(text)
            except ValueError:
                log.error("error parsing CIDR subnet: %s", text)
                raise
            self._blocked_subnets[text] = subnet

    def block_peer(self, peer_id: str) -> None:
        if self._ds is not None:
            self._ds.put(self._key(_KEY_PEER, peer_id), peer_id.encode("utf-8"))
        with self._lock:
            self._blocked_peers.add(peer_id)

    def unblock_peer(self, peer_id: str) -> None:
        if self._ds is not None:
            self._ds.delete(self._key(_KEY_PEER, peer_id))
        with self._lock:
            self._blocked_peers.discard(peer_id)

    def list_blocked_peers(self) -> list[str]:
        with self._lock:
            return list(self._blocked_peers)

    def block_addr(self, ip: Union[str, IPAddress]) -> None:
        addr = _normalize_ip(ip)
        if self._ds is not None:
            self._ds.put(self._key(_KEY_ADDR, str(addr)), addr.packed)
        with self._lock:
            self._blocked_addrs.add(addr)

    def unblock_addr(self, ip: Union[str, IPAddress]) -> None:
        addr = _normalize_ip(ip)
        if self._ds is not None:
            self._ds.delete(self._key(_KEY_ADDR, str(addr)))
        with self._lock:
            self._blocked_addrs.discard(addr)

    def list_blocked_addrs(self) -> list[IPAddress]:
        with self._lock:
            return list(self._blocked_addrs)

    def block_subnet(self, subnet: Union[str, IPNetwork]) -> None:
        net = _normalize_subnet(subnet)
        text = str(net)
        if self._ds is not None:
            self._ds.put(self._key(_KEY_SUBNET, text), text.encode("utf-8"))
        with self._lock:
            self._blocked_subnets[text] = net

    def unblock_subnet(self, subnet: Union[str, IPNetwork]) -> None:
        text = str(_normalize_subnet(subnet))
        if self._ds is not None:
            self._ds.delete(self._key(_KEY_SUBNET, text))
        with self._lock:
            self._blocked_subnets.pop(text, None)

    def list_blocked_subnets(self) -> list[IPNetwork]:
        with self._lock:
            return list(self._blocked_subnets.values())

    def _addr_allowed(self, addr: Optional[Multiaddr]) -> bool:
        if addr is None:
            log.warning("no multiaddr to check")
            return True
        try:
            ip = _normalize_ip(addr.to_ip())
        except MultiaddrError as exc:
            log.warning("error converting multiaddr to IP addr: %s", exc)
            return True
        with self._lock:
            if ip in self._blocked_addrs:
                return False
            return not any(
                net.version == ip.version and ip in net for net in self._blocked_subnets.values()
            )

    def intercept_peer_dial(self, peer_id: str) -> bool:
        with self._lock:
            return peer_id not in self._blocked_peers

    def intercept_addr_dial(self, peer_id: str, addr: Multiaddr) -> bool:
        # blocked peers were already filtered by intercept_peer_dial
        return self._addr_allowed(addr)

    def intercept_accept(self, conn_addrs: _ConnMultiaddrs) -> bool:
        return self._addr_allowed(conn_addrs.remote_multiaddr)

    def intercept_secured(self, direction: Direction, peer_id: str, conn_addrs: _ConnMultiaddrs) -> bool:
        if direction == Direction.OUTBOUND:
            # already filtered by the dial interceptors
            return True
        with self._lock:
            return peer_id not in self._blocked_peers

    def intercept_upgraded(self, conn: object) -> tuple[bool, int]:
        return True, 0