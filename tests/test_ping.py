import pytest

from p2pcore.ping import ID, PING_SIZE, PingResult, PingService, ping, ping_once


class EchoStream:
    def __init__(self, corrupt=False):
        self.buffer = b""
        self.corrupt = corrupt
        self.was_reset = False

    def write(self, data):
        self.buffer += bytes(reversed(data)) if self.corrupt else data

    def read_exactly(self, n, timeout):
        if len(self.buffer) < n:
            raise EOFError
        out, self.buffer = self.buffer[:n], self.buffer[n:]
        return out

    def reset(self):
        self.was_reset = True


class Peerstore:
    def __init__(self):
        self.latency = {}

    def record_latency(self, peer_id, rtt):
        self.latency[peer_id] = rtt


class Host:
    def __init__(self, stream=None, fail=False):
        self.stream = stream or EchoStream()
        self.fail = fail
        self.peerstore = Peerstore()
        self.handlers = {}

    def set_stream_handler(self, proto, handler):
        self.handlers[proto] = handler

    def new_stream(self, peer_id, proto):
        if self.fail:
            raise ConnectionError("no route")
        return self.stream


def test_ping_once_returns_rtt():
    assert ping_once(EchoStream()) >= 0


def test_ping_once_detects_bad_echo():
    with pytest.raises(ValueError):
        ping_once(EchoStream(corrupt=True))


def test_ping_five_times_records_latency():
    host = Host()
    service = PingService(host)
    results = service.ping("peer")
    got = [next(results) for _ in range(5)]
    assert all(r.error is None for r in got)
    assert "peer" in host.peerstore.latency
    results.close()
    assert host.stream.was_reset


def test_ping_stream_failure_yields_single_error():
    results = list(ping(Host(fail=True), "peer"))
    assert len(results) == 1
    assert isinstance(results[0].error, ConnectionError)


def test_handler_registered_and_echoes():
    host = Host()
    service = PingService(host)
    assert host.handlers[ID] == service.ping_handler

    class Recorded:
        def __init__(self):
            self.incoming = b"a" * PING_SIZE + b"b" * PING_SIZE
            self.written = []
            self.was_reset = False

        def read_exactly(self, n, timeout):
            if len(self.incoming) < n:
                raise EOFError
            out, self.incoming = self.incoming[:n], self.incoming[n:]
            return out

        def write(self, data):
            self.written.append(data)

        def reset(self):
            self.was_reset = True

    stream = Recorded()
    service.ping_handler(stream)
    assert stream.written == [b"a" * PING_SIZE, b"b" * PING_SIZE]
    assert stream.was_reset


def test_result_defaults():
    assert PingResult() == PingResult(rtt=0.0, error=None)