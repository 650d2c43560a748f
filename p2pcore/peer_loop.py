"""Per-peer workers that push identify updates to a connected peer."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Sequence

from .messages import Delta, IdentifyMessage, chunk_identify_message
from .multiaddr import Multiaddr

log = logging.getLogger("p2pcore.identify")

ID_PUSH = "/ipfs/id/push/1.0.0"
ID_DELTA = "/p2p/id/delta/1.0.0"

_POLL_INTERVAL = 0.05


class ProtocolNotSupportedError(Exception):
    """The remote peer supports none of the requested protocols."""


@dataclass(frozen=True)
class IdentifySnapshot:
    """What we last told a peer: protocols, addresses and the encoded signed record."""

    protocols: tuple[str, ...] = ()
    addrs: tuple[Multiaddr, ...] = ()
    record: Optional[bytes] = None


class PeerHandler:
    """Sends identify push and delta messages to one peer from a background thread.

    The service must provide ``host`` (with ``mux.protocols()``,
    ``network.conns_to_peer(peer_id)``, ``peerstore.supports_protocols(peer_id,
    *protos)`` and ``new_stream(peer_id, *protocols)``), ``get_snapshot()``,
    ``identify_wait(conn)`` returning an event, and
    ``create_base_identify_response(conn, snapshot)``.
    """

    def __init__(self, peer_id: str, service: Any):
        self.peer_id = peer_id
        self._service = service
        self._snapshot_lock = threading.Lock()
        self._snapshot: IdentifySnapshot = service.get_snapshot()
        self._cond = threading.Condition()
        self._push_pending = False
        self._delta_pending = False
        self._cancel: Optional[threading.Event] = None

    @property
    def snapshot(self) -> IdentifySnapshot:
        with self._snapshot_lock:
            return self._snapshot

    @property
    def running(self) -> bool:
        with self._cond:
            return self._cancel is not None

    def start(self, on_exit: Optional[Callable[[], Any]]) -> None:
        """Start the worker; ``on_exit`` runs once it has stopped."""
        with self._cond:
            if self._cancel is not None:
                raise RuntimeError("peer handler already running")
            cancel = threading.Event()
            self._cancel = cancel
        threading.Thread(
            target=self._loop, args=(cancel, on_exit), name=f"identify-{self.peer_id}", daemon=True
        ).start()

    def stop(self) -> None:
        """Stop the worker. Does nothing if it is not running."""
        with self._cond:
            if self._cancel is not None:
                self._cancel.set()
                self._cancel = None
                self._cond.notify_all()

    def notify_push(self) -> bool:
        """Ask for a push; False if one is already pending and this one is dropped."""
        with self._cond:
            if self._push_pending:
                log.debug("dropping addr updated message for %s as buffer full", self.peer_id)
                return False
            self._push_pending = True
            self._cond.notify_all()
            return True

    def notify_delta(self) -> bool:
        """Ask for a delta; False if one is already pending and this one is dropped."""
        with self._cond:
            if self._delta_pending:
                log.debug("dropping protocol updated message for %s as buffer full", self.peer_id)
                return False
            self._delta_pending = True
            self._cond.notify_all()
            return True

    def _loop(self, cancel: threading.Event, on_exit: Optional[Callable[[], Any]]) -> None:
        try:
            while True:
                with self._cond:
                    while not (cancel.is_set() or self._push_pending or self._delta_pending):
                        self._cond.wait()
                    if cancel.is_set():
                        return
                    if self._push_pending:
                        self._push_pending = False
                        action, kind = self._send_push, "Push"
                    else:
                        self._delta_pending = False
                        action, kind = self._send_delta, "Delta"
                try:
                    action(cancel)
                except Exception as exc:  # a failed update must not end the worker
                    log.warning("failed to send Identify %s to %s: %s", kind, self.peer_id, exc)
        finally:
            if on_exit is not None:
                on_exit()

    def _current_cancel(self) -> threading.Event:
        with self._cond:
            return self._cancel if self._cancel is not None else threading.Event()

    def _wait_identified(self, cancel: threading.Event) -> bool:
        """Wait for identify to finish on every connection to the peer."""
        for conn in self._service.host.network.conns_to_peer(self.peer_id):
            done = self._service.identify_wait(conn)
            while not done.wait(_POLL_INTERVAL):
                if cancel.is_set():
                    return False
        return True

    def next_delta(self) -> Delta:
        """Diff the host's protocols against the snapshot, and update the snapshot."""
        current = list(self._service.host.mux.protocols())
        with self._snapshot_lock:
            old = self._snapshot.protocols
            self._snapshot = replace(self._snapshot, protocols=tuple(current))
        old_set, current_set = set(old), set(current)
        added = [p for p in dict.fromkeys(current) if p not in old_set]
        removed = [p for p in dict.fromkeys(old) if p not in current_set]
        return Delta(added, removed)

    def peer_supports_protos(self, protos: Sequence[str]) -> bool:
        """True if the peer supports at least one of ``protos``, or if that is unknown."""
        return self._supports(protos, self._current_cancel())

    def _supports(self, protos: Sequence[str], cancel: threading.Event) -> bool:
        if not self._wait_identified(cancel):
            return False
        try:
            supported = self._service.host.peerstore.supports_protocols(self.peer_id, *protos)
        except Exception:  # unknown support: let protocol negotiation decide
            return True
        return bool(supported)

    def _open_stream(self, protos: Sequence[str], cancel: threading.Event) -> Any:
        if not self._wait_identified(cancel):
            raise ConnectionAbortedError("peer handler stopped")
        if not self._supports(protos, cancel):
            raise ProtocolNotSupportedError(f"{self.peer_id} supports none of {list(protos)}")
        return self._service.host.new_stream(self.peer_id, *protos)

    def send_push(self) -> None:
        """Send our full identify state to the peer, if it speaks the push protocol."""
        self._send_push(self._current_cancel())

    def _send_push(self, cancel: threading.Event) -> None:
        try:
            stream = self._open_stream([ID_PUSH], cancel)
        except ProtocolNotSupportedError:
            log.debug("not sending push as %s does not support protocol", self.peer_id)
            return
        try:
            snapshot = self._service.get_snapshot()
            with self._snapshot_lock:
                self._snapshot = snapshot
            message = self._service.create_base_identify_response(stream.conn, snapshot)
            for part in chunk_identify_message(message, snapshot.record):
                stream.write(part.to_delimited())
        except Exception:
            stream.reset()
            raise
        finally:
            stream.close()

    def send_delta(self) -> None:
        """Send the protocol changes since the last update, falling back to a push."""
        self._send_delta(self._current_cancel())

    def _send_delta(self, cancel: threading.Event) -> None:
        if not self._supports([ID_DELTA], cancel):
            log.debug("will send push as %s does not support delta", self.peer_id)
            self._send_push(cancel)
            return

        delta = self.next_delta()
        if not delta.added_protocols and not delta.rm_protocols:
            return

        stream = self._open_stream([ID_DELTA], cancel)
        try:
            stream.write(IdentifyMessage(delta=delta).to_delimited())
        except Exception:
            stream.reset()
            raise
        finally:
            stream.close()
        log.debug("sent identify update to %s", self.peer_id)