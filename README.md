# p2pcore

Building blocks for peer-to-peer hosts, written in plain Python with no
third-party dependencies.

## What is inside

- `p2pcore.multiaddr`: self-describing network addresses. `Multiaddr` converts
  between text such as `/ip4/1.2.3.4/tcp/1234` and its binary form
  (`from_string`, `from_bytes`, `to_bytes`) and offers `components()`,
  `protocols()`, `value_for_protocol(code)`, `split_first()`, `to_ip()` and
  `is_ip_loopback()`. Malformed input raises `MultiaddrError`.
- `p2pcore.network`: enumerations shared by the other modules: `Direction`,
  `Connectedness`, `Reachability`, `NATDeviceType` and `NATTransportProtocol`.
- `p2pcore.conngater`: `BasicConnectionGater` blocks peers, IP addresses and
  subnets and answers `intercept_peer_dial`, `intercept_addr_dial`,
  `intercept_accept`, `intercept_secured` and `intercept_upgraded`. Given a
  `MapDatastore` (or any object with the same `put`, `delete` and `query`
  methods) it loads its rules from it and writes every change back.
- `p2pcore.obsaddr`: `ObservedAddrManager` collects the addresses other peers
  report seeing us at, returns the ones worth advertising (`addrs()`,
  `addrs_for(local)`), cleans up stale sightings (`gc()`), re-records live
  connections (`refresh()`), and, while reachability is set to
  `Reachability.PRIVATE`, calls an optional callback when it concludes we sit
  behind a cone or symmetric NAT. It runs a background thread until `close()`
  is called (it is also a context manager).
- `p2pcore.messages`: the identify message (`IdentifyMessage`, `Delta`) with
  its binary encoding, length-delimited framing (`to_delimited`,
  `parse_delimited`), merging of multi-part responses (`read_all_messages`)
  and splitting off a large signed record (`chunk_identify_message`).
- `p2pcore.peer_loop`: `PeerHandler`, the per-peer background worker that
  sends identify pushes and protocol deltas (`notify_push`, `notify_delta`,
  `next_delta`, `send_push`, `send_delta`).
- `p2pcore.identify`: `IDService`, the identify protocol itself, and
  `has_consistent_transport`. Events (`PeerIdentificationCompleted`,
  `PeerIdentificationFailed`, `PeerProtocolsUpdated`, `NATDeviceTypeChanged`)
  are passed to every callable in `IDService.listeners`.
- `p2pcore.ping`: `PingService`, the `ping(host, peer_id)` generator of
  `PingResult`s, and `ping_once(stream)` for a single round trip.

## Installation

```
pip install .
```

## Connection gating

```python
import ipaddress

from p2pcore.conngater import BasicConnectionGater, MapDatastore
from p2pcore.multiaddr import Multiaddr

store = MapDatastore()
gater = BasicConnectionGater(store)

gater.block_peer("A")
gater.block_addr(ipaddress.ip_address("1.2.3.4"))
gater.block_subnet(ipaddress.ip_network("10.0.0.0/8"))

gater.intercept_peer_dial("A")                                                  # False
gater.intercept_addr_dial("B", Multiaddr.from_string("/ip4/1.2.3.4/tcp/1234"))  # False
gater.intercept_addr_dial("B", Multiaddr.from_string("/ip4/2.3.4.5/tcp/1234"))  # True

# A new gater on the same store picks up the same rules.
restored = BasicConnectionGater(store)
restored.list_blocked_peers()  # ["A"]
```

## Multiaddrs and transport matching

```python
from p2pcore.identify import has_consistent_transport
from p2pcore.multiaddr import Multiaddr

tcp = Multiaddr.from_string("/ip4/1.2.3.4/tcp/1234")
str(tcp.to_ip())                    # "1.2.3.4"
Multiaddr.from_bytes(tcp.to_bytes()) == tcp  # True

others = [Multiaddr.from_string("/ip4/5.6.7.8/tcp/4001")]
has_consistent_transport(tcp, others)  # True
```

## Identify messages

```python
from p2pcore.messages import IdentifyMessage, read_all_messages

message = IdentifyMessage(protocols=["/ipfs/ping/1.0.0"], agent_version="p2pcore")
wire = message.to_delimited()
parts = IdentifyMessage.parse_delimited(wire)
read_all_messages(parts).agent_version  # "p2pcore"
```

## What the package does not do

There is no transport, host or peerstore here. `IDService`,
`ObservedAddrManager`, `PeerHandler` and `PingService` work on host,
network, connection and stream objects that you supply; the methods each one
expects are listed in its docstring. Nothing opens sockets, and there is no
command-line program. Public keys and signed peer records are passed through
as bytes: the package does not create, sign or verify them itself, and
checks a received key against the peer id only if the host offers
`peer_id_from_public_key`.

## Running the tests

```
pip install .[test]
pytest
```