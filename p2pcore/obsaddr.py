"""Tracking of our own addresses as observed by the peers we connect to."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from .multiaddr import P_TCP, P_UDP, Multiaddr, MultiaddrError
from .network import Direction, NATDeviceType, NATTransportProtocol, Reachability

log = logging.getLogger("p2pcore.identify")

# How many distinct observers must report an address before it is advertised.
ACTIVATION_THRESH = 4

# How often (seconds) stale observations and addresses are cleaned up.
GC_INTERVAL = 10 * 60.0

# Default lifetime (seconds) of an observed address without new sightings.
OWN_OBSERVED_ADDR_TTL = 30 * 60.0

# Maximum number of observed addresses returned per IP/transport group.
MAX_OBSERVED_ADDRS_PER_IP_AND_TRANSPORT = 2

NATCallback = Callable[[NATTransportProtocol, NATDeviceType], Any]


@dataclass
class Observation:
    """One observer's latest sighting of an address."""

    seen_time: float
    # Stays true once any inbound connection made this observation.
    inbound: bool = False


@dataclass(eq=False)
class ObservedAddr:
    """An address of ours as reported by other peers."""

    addr: Multiaddr
    seen_by: dict[bytes, Observation] = field(default_factory=dict)
    last_seen: float = 0.0
    num_inbound: int = 0

    def activated(self) -> bool:
        """True once enough distinct observers have reported this address."""
        return len(self.seen_by) >= ACTIVATION_THRESH

    def group_key(self) -> bytes:
        """The address with all TCP/UDP ports zeroed, used to group observations."""
        key = bytearray()
        for component in self.addr.components():
            proto = component.protocol
            if proto.code in (P_TCP, P_UDP):
                key += proto.vcode
                key += b"\0\0"
            else:
                key += component.to_bytes()
        return bytes(key)


def observer_group(addr: Multiaddr) -> bytes:
    """The part of a remote address that identifies a distinct observer.

    This is the leading component, in practice the IP address, so that peers
    behind the same IP count as a single observer.
    """
    first, _ = addr.split_first()
    return first.to_bytes()


def _has_consistent_transport(addr: Multiaddr, green: Iterable[Multiaddr]) -> bool:
    codes = [p.code for p in addr.protocols()]
    return any(codes == [p.code for p in other.protocols()] for other in green)


class ObservedAddrManager:
    """Collects the addresses peers observe us at and decides which to advertise.

    The host must provide ``addrs()`` and a ``network`` with
    ``interface_listen_addresses()``, ``listen_addresses()`` and
    ``conns_to_peer(peer_id)``. Connections must provide ``remote_peer``,
    ``local_multiaddr``, ``remote_multiaddr`` and ``direction``.

    ``on_nat_device_type_changed(transport, nat_type)`` is called whenever the
    inferred NAT type changes while our reachability is private. A background
    thread runs garbage collection and refreshes observations from live
    connections until :meth:`close` is called.
    """

    def __init__(self, host: Any, on_nat_device_type_changed: Optional[NATCallback] = None):
        self._host = host
        self._on_nat_changed = on_nat_device_type_changed
        self._lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        self._active_lock = threading.Lock()
        self._active_conns: dict[Any, Multiaddr] = {}
        self._addrs: dict[bytes, list[ObservedAddr]] = {}
        self._ttl = OWN_OBSERVED_ADDR_TTL
        self._reachability = Reachability.UNKNOWN
        self._tcp_nat_type = NATDeviceType.UNKNOWN
        self._udp_nat_type = NATDeviceType.UNKNOWN
        self._closed = False
        # refresh every ttl/2 so observations from live connections are kept
        self._refresh_at = time.monotonic() + self._ttl / 2
        self._worker = threading.Thread(target=self._run, name="observed-addrs", daemon=True)
        self._worker.start()

    def __enter__(self) -> "ObservedAddrManager":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def ttl(self) -> float:
        with self._lock:
            return self._ttl

    @ttl.setter
    def ttl(self, value: float) -> None:
        with self._wakeup:
            self._ttl = value
            self._refresh_at = time.monotonic() + value / 2
            self._wakeup.notify_all()

    def addrs_for(self, addr: Multiaddr) -> list[Multiaddr]:
        """Activated observed addresses for the given local listen address."""
        with self._lock:
            observed = self._addrs.get(addr.to_bytes())
            if not observed:
                return []
            return self._filter(observed)

    def addrs(self) -> list[Multiaddr]:
        """All activated observed addresses."""
        with self._lock:
            everything = [oa for group in self._addrs.values() for oa in group]
            return self._filter(everything)

    def _filter(self, observed: list[ObservedAddr]) -> list[Multiaddr]:
        now = time.monotonic()
        groups: dict[bytes, list[ObservedAddr]] = {}
        for oa in observed:
            if now - oa.last_seen <= self._ttl and oa.activated():
                groups.setdefault(oa.group_key(), []).append(oa)

        result: list[Multiaddr] = []
        for members in groups.values():
            # inbound observations win; ties go to the most observers
            members.sort(key=lambda oa: (-oa.num_inbound, -len(oa.seen_by)))
            result.extend(oa.addr for oa in members[:MAX_OBSERVED_ADDRS_PER_IP_AND_TRANSPORT])
        return result

    def set_reachability(self, reachability: Reachability) -> None:
        with self._lock:
            self._reachability = reachability

    def record(self, conn: Any, observed: Multiaddr) -> None:
        """Record that the peer on ``conn`` sees us at ``observed``, if the sighting is useful."""
        if self._closed:
            log.debug("dropping address observation %s: manager closed", observed)
            return

        if observed.is_ip_loopback():
            return

        network = self._host.network
        try:
            iface_addrs = network.interface_listen_addresses()
        except OSError as exc:
            log.info("failed to get interface listen addrs: %s", exc)
            return

        # Only observations on connections from one of our listen addresses are
        # useful: ephemeral dial ports do not map to what others can reach.
        local = conn.local_multiaddr
        if local not in iface_addrs and local not in network.listen_addresses():
            return

        if not _has_consistent_transport(observed, self._host.addrs()):
            log.debug(
                "observed multiaddr %s from %s doesn't match the transports of any announced address",
                observed,
                conn.remote_multiaddr,
            )
            return

        log.debug("added own observed listen addr %s", observed)
        with self._lock:
            self._record_observation(conn, observed)
            if self._reachability == Reachability.PRIVATE:
                self._emit_all_nat_types()
        self._add_conn(conn, observed)

    def _record_observation(self, conn: Any, observed: Multiaddr) -> None:
        now = time.monotonic()
        observer = observer_group(conn.remote_multiaddr)
        local = conn.local_multiaddr.to_bytes()
        inbound = conn.direction == Direction.INBOUND

        entries = self._addrs.setdefault(local, [])
        for oa in entries:
            if oa.addr == observed:
                previous = oa.seen_by.get(observer)
                was_inbound = previous is not None and previous.inbound
                if inbound and not was_inbound:
                    oa.num_inbound += 1
                # an outbound sighting never downgrades an inbound one
                oa.seen_by[observer] = Observation(now, inbound or was_inbound)
                oa.last_seen = now
                return

        oa = ObservedAddr(observed, {observer: Observation(now, inbound)}, now, 1 if inbound else 0)
        entries.append(oa)

    def _add_conn(self, conn: Any, observed: Multiaddr) -> None:
        # Only track connections the network still has, so that a disconnect
        # processed in the meantime does not leak the connection.
        with self._active_lock:
            if any(c is conn for c in self._host.network.conns_to_peer(conn.remote_peer)):
                self._active_conns[conn] = observed

    def disconnected(self, conn: Any) -> None:
        """Forget a closed connection so its observation is no longer refreshed."""
        with self._active_lock:
            self._active_conns.pop(conn, None)

    def refresh(self) -> None:
        """Re-record the latest observation of every live connection."""
        with self._active_lock:
            recycled = list(self._active_conns.items())
        with self._wakeup:
            for conn, observed in recycled:
                self._record_observation(conn, observed)
            self._refresh_at = time.monotonic() + self._ttl / 2
            self._wakeup.notify_all()

    def gc(self) -> None:
        """Drop expired sightings and addresses not seen within the TTL."""
        with self._lock:
            now = time.monotonic()
            for local in list(self._addrs):
                alive = []
                for oa in self._addrs[local]:
                    for observer, ob in list(oa.seen_by.items()):
                        if now - ob.seen_time > self._ttl * ACTIVATION_THRESH:
                            del oa.seen_by[observer]
                            if ob.inbound:
                                oa.num_inbound -= 1
                    if now - oa.last_seen <= self._ttl:
                        alive.append(oa)
                if alive:
                    self._addrs[local] = alive
                else:
                    del self._addrs[local]

    def _emit_all_nat_types(self) -> None:
        everything = [oa for group in self._addrs.values() for oa in group]
        changed, nat_type = self._emit_specific_nat_type(
            everything, P_TCP, NATTransportProtocol.TCP, self._tcp_nat_type
        )
        if changed:
            self._tcp_nat_type = nat_type
        changed, nat_type = self._emit_specific_nat_type(
            everything, P_UDP, NATTransportProtocol.UDP, self._udp_nat_type
        )
        if changed:
            self._udp_nat_type = nat_type

    def _emit_specific_nat_type(
        self,
        observed: list[ObservedAddr],
        proto_code: int,
        transport: NATTransportProtocol,
        current: NATDeviceType,
    ) -> tuple[bool, NATDeviceType]:
        now = time.monotonic()
        observers: set[bytes] = set()
        count = 0

        for oa in observed:
            try:
                oa.addr.value_for_protocol(proto_code)
            except MultiaddrError:
                continue

            fresh = now - oa.last_seen <= self._ttl
            # an activated address means we are behind a cone NAT
            if fresh and oa.activated():
                if current != NATDeviceType.CONE:
                    self._emit_nat(transport, NATDeviceType.CONE)
                    return True, NATDeviceType.CONE
                return False, NATDeviceType.UNKNOWN

            # an outbound-only address seen by exactly one peer
            if fresh and oa.num_inbound == 0 and len(oa.seen_by) == 1:
                count += 1
                observers.update(oa.seen_by)

        # different peers seeing a different address each: most likely symmetric NAT
        if count >= ACTIVATION_THRESH and len(observers) >= ACTIVATION_THRESH:
            if current != NATDeviceType.SYMMETRIC:
                self._emit_nat(transport, NATDeviceType.SYMMETRIC)
                return True, NATDeviceType.SYMMETRIC

        return False, NATDeviceType.UNKNOWN

    def _emit_nat(self, transport: NATTransportProtocol, nat_type: NATDeviceType) -> None:
        if self._on_nat_changed is not None:
            self._on_nat_changed(transport, nat_type)

    def _run(self) -> None:
        next_gc = time.monotonic() + GC_INTERVAL
        with self._wakeup:
            while not self._closed:
                now = time.monotonic()
                if now >= next_gc:
                    self.gc()
                    next_gc = now + GC_INTERVAL
                if now >= self._refresh_at:
                    self.refresh()
                timeout = min(next_gc, self._refresh_at) - time.monotonic()
                if timeout > 0:
                    self._wakeup.wait(timeout)

    def close(self) -> None:
        """Stop the background worker. Further observations are ignored."""
        with self._wakeup:
            self._closed = True
            self._wakeup.notify_all()
        if self._worker is not threading.current_thread():
            self._worker.join()