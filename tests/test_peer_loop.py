import queue
import threading
import time

import pytest

from p2pcore.messages import IdentifyMessage
from p2pcore.peer_loop import (
    ID_DELTA,
    ID_PUSH,
    IdentifySnapshot,
    PeerHandler,
    ProtocolNotSupportedError,
)


class FakeMux:
    def __init__(self, protocols):
        self.handlers = list(protocols)

    def protocols(self):
        return list(self.handlers)


class FakePeerstore:
    def __init__(self):
        self.protos = {}
        self.broken = False

    def add_protocols(self, peer_id, *protos):
        self.protos.setdefault(peer_id, set()).update(protos)

    def remove_protocols(self, peer_id, *protos):
        self.protos.setdefault(peer_id, set()).difference_update(protos)

    def supports_protocols(self, peer_id, *protos):
        if self.broken:
            raise KeyError(peer_id)
        known = self.protos.get(peer_id, set())
        return [p for p in protos if p in known]


class FakeNetwork:
    def __init__(self):
        self.conns = {}

    def conns_to_peer(self, peer_id):
        return list(self.conns.get(peer_id, []))


class FakeStream:
    def __init__(self, protocol, fail_write=False):
        self.protocol = protocol
        self.conn = object()
        self.data = bytearray()
        self.closed = False
        self.was_reset = False
        self.fail_write = fail_write

    def write(self, data):
        if self.fail_write:
            raise OSError("broken pipe")
        self.data += data

    def close(self):
        self.closed = True

    def reset(self):
        self.was_reset = True


class FakeHost:
    def __init__(self, protocols):
        self.mux = FakeMux(protocols)
        self.peerstore = FakePeerstore()
        self.network = FakeNetwork()
        self.streams = []
        self.fail_write = False

    def new_stream(self, peer_id, *protocols):
        stream = FakeStream(protocols[0], self.fail_write)
        self.streams.append(stream)
        return stream


class FakeService:
    def __init__(self, protocols=("/ipfs/id/1.0.0", ID_PUSH, ID_DELTA)):
        self.host = FakeHost(protocols)
        self.identified = {}

    def get_snapshot(self):
        return IdentifySnapshot(protocols=tuple(self.host.mux.protocols()))

    def identify_wait(self, conn):
        return self.identified.setdefault(conn, threading.Event())

    def create_base_identify_response(self, conn, snapshot):
        return IdentifyMessage(protocols=list(snapshot.protocols), protocol_version="ipfs/0.1.0")


def test_make_apply_delta():
    service = FakeService()
    handler = PeerHandler("self", service)
    handler.start(lambda: None)
    try:
        m1 = handler.next_delta()
        assert m1.added_protocols == []

        service.host.mux.handlers.append("p1")
        m2 = handler.next_delta()
        assert m2.added_protocols == ["p1"]
        assert m2.rm_protocols == []

        service.host.mux.handlers.extend(["p2", "p3"])
        m3 = handler.next_delta()
        assert sorted(m3.added_protocols) == ["p2", "p3"]
        assert m3.rm_protocols == []

        service.host.mux.handlers.remove("p3")
        m4 = handler.next_delta()
        assert m4.added_protocols == []
        assert m4.rm_protocols == ["p3"]

        service.host.mux.handlers.remove("p2")
        service.host.mux.handlers.remove("p1")
        m5 = handler.next_delta()
        assert m5.added_protocols == []
        assert sorted(m5.rm_protocols) == ["p1", "p2"]
    finally:
        handler.stop()


def test_next_delta_updates_snapshot():
    service = FakeService()
    handler = PeerHandler("self", service)
    service.host.mux.handlers.append("new")
    handler.next_delta()
    assert "new" in handler.snapshot.protocols


def test_handler_close():
    handler = PeerHandler("self", FakeService())
    closed = queue.Queue()
    handler.start(lambda: closed.put(True))

    handler.stop()
    assert closed.get(timeout=1) is True
    assert not handler.running

    handler.stop()
    time.sleep(0.02)
    assert closed.empty()


def test_start_twice_raises():
    handler = PeerHandler("self", FakeService())
    handler.start(None)
    try:
        with pytest.raises(RuntimeError):
            handler.start(None)
    finally:
        handler.stop()


def test_restart_after_stop():
    handler = PeerHandler("self", FakeService())
    exits = queue.Queue()
    handler.start(lambda: exits.put(1))
    handler.stop()
    assert exits.get(timeout=1) == 1
    handler.start(lambda: exits.put(2))
    assert handler.running
    handler.stop()
    assert exits.get(timeout=1) == 2


def test_peer_supports_proto():
    service = FakeService()
    handler = PeerHandler("test", service)
    service.host.peerstore.add_protocols("test", "test")
    assert handler.peer_supports_protos(["test"]) is True
    assert handler.peer_supports_protos(["random"]) is False

    service.host.peerstore.remove_protocols("test", "test")
    assert handler.peer_supports_protos(["test"]) is False


def test_peer_supports_proto_on_peerstore_error():
    service = FakeService()
    service.host.peerstore.broken = True
    handler = PeerHandler("test", service)
    assert handler.peer_supports_protos(["anything"]) is True


def test_supports_waits_for_identify():
    service = FakeService()
    conn = object()
    service.host.network.conns["remote"] = [conn]
    service.host.peerstore.add_protocols("remote", "x")
    handler = PeerHandler("remote", service)
    results = queue.Queue()
    worker = threading.Thread(target=lambda: results.put(handler.peer_supports_protos(["x"])))
    worker.start()
    time.sleep(0.1)
    assert results.empty()
    service.identify_wait(conn).set()
    worker.join(timeout=1)
    assert results.get(timeout=1) is True

    supported = handler.peer_supports_protos(["x"])
    assert supported is True
    unsupported = handler.peer_supports_protos(["y"])
    assert unsupported is False


def test_send_delta_writes_changes():
    service = FakeService()
    service.host.peerstore.add_protocols("remote", ID_DELTA, ID_PUSH)
    handler = PeerHandler("remote", service)
    service.host.mux.handlers.append("foo")

    handler.send_delta()

    assert len(service.host.streams) == 1
    stream = service.host.streams[0]
    assert stream.protocol == ID_DELTA
    assert stream.closed
    messages = IdentifyMessage.parse_delimited(bytes(stream.data))
    assert len(messages) == 1
    assert messages[0].delta.added_protocols == ["foo"]
    assert messages[0].delta.rm_protocols == []


def test_send_delta_without_changes_sends_nothing():
    service = FakeService()
    service.host.peerstore.add_protocols("remote", ID_DELTA)
    handler = PeerHandler("remote", service)
    handler.send_delta()
    assert service.host.streams == []


def test_send_delta_falls_back_to_push():
    service = FakeService()
    service.host.peerstore.add_protocols("remote", ID_PUSH)
    handler = PeerHandler("remote", service)
    service.host.mux.handlers.append("rand")

    handler.send_delta()

    assert [s.protocol for s in service.host.streams] == [ID_PUSH]
    messages = IdentifyMessage.parse_delimited(bytes(service.host.streams[0].data))
    assert "rand" in messages[0].protocols
    assert "rand" in handler.snapshot.protocols


def test_send_push_when_not_supported_is_silent():
    service = FakeService()
    service.host.peerstore.add_protocols("remote", "/other")
    handler = PeerHandler("remote", service)
    handler.send_push()
    assert service.host.streams == []


def test_open_stream_requires_support():
    service = FakeService()
    service.host.peerstore.add_protocols("remote", "/other")
    handler = PeerHandler("remote", service)
    with pytest.raises(ProtocolNotSupportedError):
        handler._open_stream([ID_DELTA], threading.Event())


def test_send_push_write_failure_resets_stream():
    service = FakeService()
    service.host.peerstore.add_protocols("remote", ID_PUSH)
    service.host.fail_write = True
    handler = PeerHandler("remote", service)
    with pytest.raises(OSError):
        handler.send_push()
    stream = service.host.streams[0]
    assert stream.was_reset
    assert stream.closed


def test_notify_push_drops_when_pending():
    handler = PeerHandler("remote", FakeService())
    assert handler.notify_push() is True
    assert handler.notify_push() is False
    assert handler.notify_delta() is True
    assert handler.notify_delta() is False


def test_loop_sends_push_on_notify():
    service = FakeService()
    service.host.peerstore.add_protocols("remote", ID_PUSH)
    handler = PeerHandler("remote", service)
    handler.start(None)
    try:
        handler.notify_push()
        deadline = time.monotonic() + 2
        while not service.host.streams and time.monotonic() < deadline:
            time.sleep(0.01)
        assert [s.protocol for s in service.host.streams] == [ID_PUSH]
    finally:
        handler.stop()