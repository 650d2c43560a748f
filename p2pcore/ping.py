"""The ping protocol: echo random payloads to measure round-trip time."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Iterator, Optional

log = logging.getLogger("p2pcore.ping")

PING_SIZE = 32
ID = "/ipfs/ping/1.0.0"
PING_TIMEOUT = 60.0


@dataclass(frozen=True)
class PingResult:
    """Either a round-trip time in seconds or the error that ended the attempt."""

    rtt: float = 0.0
    error: Optional[BaseException] = None


def ping_once(stream: Any) -> float:
    """Send one random payload and wait for the echo; return the RTT in seconds."""
    payload = os.urandom(PING_SIZE)
    before = time.monotonic()
    stream.write(payload)
    echoed = stream.read_exactly(PING_SIZE, PING_TIMEOUT)
    if echoed != payload:
        raise ValueError("ping packet was incorrect!")
    return time.monotonic() - before


def ping(host: Any, peer_id: str) -> Iterator[PingResult]:
    """Ping ``peer_id`` repeatedly, yielding one result per attempt.

    The stream is reset when the generator is closed.
    """
    try:
        stream = host.new_stream(peer_id, ID)
    except Exception as exc:
        yield PingResult(error=exc)
        return
    try:
        while True:
            try:
                rtt = ping_once(stream)
            except Exception as exc:
                yield PingResult(error=exc)
                continue
            host.peerstore.record_latency(peer_id, rtt)
            yield PingResult(rtt=rtt)
    finally:
        stream.reset()


class PingService:
    """Answers pings on the host and pings other peers."""

    def __init__(self, host: Any):
        self.host = host
        host.set_stream_handler(ID, self.ping_handler)

    def ping_handler(self, stream: Any) -> None:
        """Echo payloads until the stream fails or stays quiet for PING_TIMEOUT."""
        try:
            while True:
                payload = stream.read_exactly(PING_SIZE, PING_TIMEOUT)
                stream.write(payload)
        except Exception as exc:
            log.debug("ping handler finished: %s", exc)
        finally:
            stream.reset()

    def ping(self, peer_id: str) -> Iterator[PingResult]:
        return ping(self.host, peer_id)