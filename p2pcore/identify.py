"""The identify service: exchange addresses, protocols and keys with connected peers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .messages import (
    IdentifyMessage,
    SIGNED_ID_SIZE,
    Delta,
    chunk_identify_message,
    read_all_messages,
)
from .multiaddr import Multiaddr, MultiaddrError
from .network import Connectedness, NATDeviceType, NATTransportProtocol
from .obsaddr import ObservedAddrManager
from .peer_loop import ID_DELTA, ID_PUSH, IdentifySnapshot, PeerHandler

log = logging.getLogger("p2pcore.identify")

ID = "/ipfs/id/1.0.0"
LIBP2P_VERSION = "ipfs/0.1.0"
CLIENT_VERSION = "p2pcore"

# Read timeout (seconds) on every incoming identify-family stream.
STREAM_READ_TIMEOUT = 60.0
# Largest delta message accepted.
DELTA_MAX_SIZE = 2048

# Address lifetimes in seconds, as used by the peerstore.
TEMP_ADDR_TTL = 2 * 60.0
RECENTLY_CONNECTED_ADDR_TTL = 10 * 60.0
CONNECTED_ADDR_TTL = float(2**62)

__all__ = [
    "ID",
    "ID_DELTA",
    "ID_PUSH",
    "IDService",
    "has_consistent_transport",
    "PeerIdentificationCompleted",
    "PeerIdentificationFailed",
    "PeerProtocolsUpdated",
    "NATDeviceTypeChanged",
]


@dataclass(frozen=True)
class PeerIdentificationCompleted:
    peer: str


@dataclass(frozen=True)
class PeerIdentificationFailed:
    peer: str
    reason: BaseException


@dataclass(frozen=True)
class PeerProtocolsUpdated:
    peer: str
    added: tuple[str, ...]
    removed: tuple[str, ...]


@dataclass(frozen=True)
class NATDeviceTypeChanged:
    transport: NATTransportProtocol
    nat_type: NATDeviceType


def has_consistent_transport(addr: Multiaddr, green: Iterable[Multiaddr]) -> bool:
    """True if ``addr`` has the same protocol stack as any address in ``green``."""
    codes = [p.code for p in addr.protocols()]
    return any(codes == [p.code for p in other.protocols()] for other in green)


class IDService:
    """Tells connected peers about us and records what they tell us about themselves.

    The host provides ``id``, ``addrs()``, ``mux.protocols()``, ``peerstore``,
    ``network`` and ``set_stream_handler(protocol, handler)``. Connections
    provide ``remote_peer``, ``local_peer``, ``local_multiaddr``,
    ``remote_multiaddr``, ``direction``, ``new_stream(protocol)`` and
    ``close()``. Streams provide ``conn``, ``read_all(timeout)``, ``write``,
    ``close()`` and ``reset()``.

    Events are passed to every callable in ``listeners``.
    """

    def __init__(self, host: Any, user_agent: Optional[str] = None, disable_signed_peer_record: bool = False):
        self.host = host
        self.user_agent = user_agent or CLIENT_VERSION
        self.disable_signed_peer_record = disable_signed_peer_record
        self.listeners: list[Callable[[object], Any]] = []
        self._conns_lock = threading.Lock()
        self._conns: dict[Any, threading.Event] = {}
        self._addr_lock = threading.Lock()
        self._handlers_lock = threading.RLock()
        self._handlers: dict[str, PeerHandler] = {}
        self._closed = False
        self._observed = ObservedAddrManager(
            host, lambda transport, nat: self._emit(NATDeviceTypeChanged(transport, nat))
        )
        host.set_stream_handler(ID_DELTA, self.delta_handler)
        host.set_stream_handler(ID, self.send_identify_resp)
        host.set_stream_handler(ID_PUSH, self.push_handler)
        notify = getattr(host.network, "notify", None)
        if notify is not None:
            notify(self)

    def __enter__(self) -> "IDService":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _emit(self, event: object) -> None:
        for listener in list(self.listeners):
            listener(event)

    def _connected_to(self, peer_id: str) -> bool:
        return self.host.network.connectedness(peer_id) == Connectedness.CONNECTED

    def close(self) -> None:
        """Stop all peer workers and the observed address manager. Idempotent."""
        with self._handlers_lock:
            if self._closed:
                return
            self._closed = True
            handlers = list(self._handlers.values())
        for handler in handlers:
            handler.stop()
        self._observed.close()

    def own_observed_addrs(self) -> list[Multiaddr]:
        return self._observed.addrs()

    def observed_addrs_for(self, local: Multiaddr) -> list[Multiaddr]:
        return self._observed.addrs_for(local)

    def identify_conn(self, conn: Any) -> None:
        """Identify ``conn`` and wait until that has finished."""
        self.identify_wait(conn).wait()

    def identify_wait(self, conn: Any) -> threading.Event:
        """Start identifying ``conn`` if needed; the event is set when it is done."""
        with self._conns_lock:
            done = self._conns.get(conn)
            if done is None:
                done = threading.Event()
                self._conns[conn] = done
                threading.Thread(target=self._identify, args=(conn, done), daemon=True).start()
        return done

    def _remove_conn(self, conn: Any) -> None:
        with self._conns_lock:
            self._conns.pop(conn, None)

    def _identify(self, conn: Any, done: threading.Event) -> None:
        error: Optional[BaseException] = None
        try:
            try:
                stream = conn.new_stream(ID)
            except Exception as exc:
                log.debug("error opening identify stream: %s", exc)
                conn.close()
                self._remove_conn(conn)
                raise
            self.handle_identify_response(stream)
        except Exception as exc:
            error = exc
        finally:
            done.set()
            if error is None:
                self._emit(PeerIdentificationCompleted(conn.remote_peer))
            else:
                self._emit(PeerIdentificationFailed(conn.remote_peer, error))

    # Peer handler management

    def _peer_handler(self, peer_id: str) -> Optional[PeerHandler]:
        with self._handlers_lock:
            if self._closed:
                return None
            handler = self._handlers.get(peer_id)
            if handler is None and self._connected_to(peer_id):
                handler = PeerHandler(peer_id, self)
                handler.start(lambda: self._handler_exited(peer_id))
                self._handlers[peer_id] = handler
            return handler

    def _handler_exited(self, peer_id: str) -> None:
        with self._handlers_lock:
            handler = self._handlers.get(peer_id)
            if handler is None:
                return
            if not self._closed and self._connected_to(peer_id) and not handler.running:
                # reconnected before the old worker finished; keep pushing to it
                handler.start(lambda: self._handler_exited(peer_id))
            else:
                del self._handlers[peer_id]

    def local_addresses_updated(self) -> None:
        """Our addresses changed: push to every peer."""
        with self._handlers_lock:
            handlers = list(self._handlers.values())
        for handler in handlers:
            handler.notify_push()

    def local_protocols_updated(self) -> None:
        """Our protocols changed: send deltas to every peer."""
        with self._handlers_lock:
            handlers = list(self._handlers.values())
        for handler in handlers:
            handler.notify_delta()

    # Stream handlers

    def send_identify_resp(self, stream: Any) -> None:
        """Answer an identify request with the snapshot last sent to that peer."""
        try:
            conn = stream.conn
            handler = self._peer_handler(conn.remote_peer)
            if handler is None:
                stream.reset()
                return
            message = self.create_base_identify_response(conn, handler.snapshot)
            record = None if self.disable_signed_peer_record else handler.snapshot.record
            for part in chunk_identify_message(message, record):
                stream.write(part.to_delimited())
            log.debug("%s sent message to %s", ID, conn.remote_peer)
        finally:
            stream.close()

    def handle_identify_response(self, stream: Any) -> None:
        """Read a full identify message from ``stream`` and apply it."""
        try:
            data = stream.read_all(STREAM_READ_TIMEOUT)
            message = read_all_messages(IdentifyMessage.parse_delimited(data, SIGNED_ID_SIZE))
        except Exception as exc:
            log.warning("error reading identify message: %s", exc)
            stream.reset()
            raise
        try:
            self.consume_message(message, stream.conn)
        finally:
            stream.close()

    def push_handler(self, stream: Any) -> None:
        try:
            self.handle_identify_response(stream)
        except Exception:
            pass

    def delta_handler(self, stream: Any) -> None:
        try:
            data = stream.read_all(STREAM_READ_TIMEOUT)
            messages = IdentifyMessage.parse_delimited(data, DELTA_MAX_SIZE)
            if len(messages) != 1:
                raise ValueError(f"expected one delta message, got {len(messages)}")
        except Exception as exc:
            log.warning("error reading identify message: %s", exc)
            stream.reset()
            return
        try:
            delta = messages[0].delta
            if delta is None:
                return
            peer_id = stream.conn.remote_peer
            try:
                self.consume_delta(peer_id, delta)
            except Exception as exc:
                stream.reset()
                log.warning("delta update from peer %s failed: %s", peer_id, exc)
        finally:
            stream.close()

    # Building and consuming messages

    def get_snapshot(self) -> IdentifySnapshot:
        record = None
        if not self.disable_signed_peer_record:
            get_record = getattr(self.host.peerstore, "get_peer_record", None)
            if get_record is not None:
                record = get_record(self.host.id)
        return IdentifySnapshot(
            protocols=tuple(self.host.mux.protocols()),
            addrs=tuple(self.host.addrs()),
            record=record,
        )

    def create_base_identify_response(self, conn: Any, snapshot: IdentifySnapshot) -> IdentifyMessage:
        remote, local = conn.remote_multiaddr, conn.local_multiaddr
        via_loopback = local.is_ip_loopback() or remote.is_ip_loopback()
        message = IdentifyMessage(
            protocols=list(snapshot.protocols),
            observed_addr=remote.to_bytes(),
            listen_addrs=[a.to_bytes() for a in snapshot.addrs if via_loopback or not a.is_ip_loopback()],
            protocol_version=LIBP2P_VERSION,
            agent_version=self.user_agent,
        )
        peerstore = self.host.peerstore
        own_key = peerstore.pub_key(self.host.id)
        if own_key is None:
            if peerstore.priv_key(self.host.id) is not None:
                log.error("did not have own public key in peerstore")
        else:
            message.public_key = own_key
        return message

    def consume_message(self, message: IdentifyMessage, conn: Any) -> None:
        """Store what the peer on ``conn`` told us about itself."""
        peer_id = conn.remote_peer
        peerstore = self.host.peerstore
        peerstore.set_protocols(peer_id, *message.protocols)

        if message.observed_addr is not None:
            try:
                self._observed.record(conn, Multiaddr.from_bytes(message.observed_addr))
            except MultiaddrError as exc:
                log.debug("error parsing received observed addr: %s", exc)

        listen_addrs = []
        for raw in message.listen_addrs:
            try:
                listen_addrs.append(Multiaddr.from_bytes(raw))
            except MultiaddrError:
                log.debug("%s failed to parse multiaddr from %s", ID, peer_id)

        with self._addr_lock:
            ttl = CONNECTED_ADDR_TTL if self._connected_to(peer_id) else RECENTLY_CONNECTED_ADDR_TTL
            for old in (RECENTLY_CONNECTED_ADDR_TTL, CONNECTED_ADDR_TTL):
                peerstore.update_addrs(peer_id, old, TEMP_ADDR_TTL)
            consume_record = getattr(peerstore, "consume_peer_record", None)
            if consume_record is not None and message.signed_peer_record:
                try:
                    consume_record(message.signed_peer_record, ttl)
                except Exception as exc:
                    log.debug("error adding signed addrs to peerstore: %s", exc)
            else:
                peerstore.add_addrs(peer_id, listen_addrs, ttl)
            peerstore.update_addrs(peer_id, TEMP_ADDR_TTL, 0)

        peerstore.put(peer_id, "ProtocolVersion", message.protocol_version or "")
        peerstore.put(peer_id, "AgentVersion", message.agent_version or "")
        self._consume_public_key(conn, message.public_key)

    def _consume_public_key(self, conn: Any, key: Optional[bytes]) -> None:
        remote = conn.remote_peer
        if key is None:
            log.debug("did not receive public key for remote peer %s", remote)
            return
        peerstore = self.host.peerstore
        derive = getattr(self.host, "peer_id_from_public_key", None)
        if derive is not None:
            try:
                derived = derive(key)
            except Exception as exc:
                log.debug("cannot get peer id from key of %s: %s", remote, exc)
                return
            if derived != remote:
                if remote == "" and derived != "":
                    peerstore.add_pub_key(remote, key)
                else:
                    log.error("received key for remote peer %s mismatch: %s", remote, derived)
                return
        current = peerstore.pub_key(remote)
        if current is None:
            peerstore.add_pub_key(remote, key)
        elif current != key:
            log.error("identify got a different key for %s", remote)

    def consume_delta(self, peer_id: str, delta: Delta) -> None:
        peerstore = self.host.peerstore
        peerstore.add_protocols(peer_id, *delta.added_protocols)
        peerstore.remove_protocols(peer_id, *delta.rm_protocols)
        self._emit(PeerProtocolsUpdated(peer_id, tuple(delta.added_protocols), tuple(delta.rm_protocols)))

    # Network notifications

    def connected(self, conn: Any) -> None:
        self.identify_wait(conn)

    def disconnected(self, conn: Any) -> None:
        self._remove_conn(conn)
        self._observed.disconnected(conn)
        peer_id = conn.remote_peer
        with self._addr_lock:
            if self._connected_to(peer_id):
                return
            with self._handlers_lock:
                handler = self._handlers.get(peer_id)
            if handler is not None:
                handler.stop()
            self.host.peerstore.update_addrs(peer_id, CONNECTED_ADDR_TTL, RECENTLY_CONNECTED_ADDR_TTL)