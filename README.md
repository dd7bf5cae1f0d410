# pcapscenario

`pcapscenario` reads packet captures of electric-vehicle charging sessions
(Ethernet / IPv6 / TCP, optionally TLS 1.3), follows one TCP session and
hands its payloads to your code. It also provides the pieces to pair
decoded requests with their responses and to gather them into a JSON
scenario document that a charging simulator can replay.

## Modules

- `pcapscenario.packets` — `read_pcap(path)` opens a classic pcap file
  (microsecond or nanosecond timestamps, either byte order) and returns an
  iterator of `PcapRecord(timestamp, length, data)`. `EtherHeader`,
  `Ip6Header`, `TcpHeader` and `UdpHeader` decode frame layers with
  `from_bytes(buffer, offset)`; `Ip6Header.proto` gives an `IpProto`.
  `read_uint16` / `read_uint24` decode big-endian integers. Malformed input
  raises `PacketError`.
- `pcapscenario.tls` — `load_key_log(path)` reads a key-log file and
  returns two lists of `PskMasterKey` (client and server application
  traffic keys, from `CLIENT_TRAFFIC_SECRET_0` / `SERVER_TRAFFIC_SECRET_0`
  lines), sorted by client random. `TlsSession` tracks the client and
  server hellos, derives keys with `hkdf_expand_label` and decrypts
  application records with `application_data()` for the AES-GCM, AES-CCM
  and ChaCha20-Poly1305 TLS 1.3 suites. Failures raise `TlsError`.
- `pcapscenario.capture` — `PcapHandle` walks a capture (or any iterable
  of `PcapRecord`), ignores non-IPv6 frames and UDP, follows the first TCP
  session (optionally only one whose destination port is `tcp_port`) and
  calls `callback(pkg_count, payload, timestamp, context)` for each data
  segment. With `key_log` given, TLS records are decrypted first and only
  the plaintext is passed on once both sides have changed cipher. An empty
  payload signals a TCP FIN; an empty payload with `pkg_count == 0` signals
  the end of the capture. `run()` returns the number of packets seen;
  `max_count` limits it.
- `pcapscenario.transactions` — `ProtocolLogger.log_message()` opens a
  transaction for a request and completes it with the expected response;
  an unexpected response raises `ScenarioError`. `CompactMode` (`none`,
  `basic`, `strong`, parsed with `CompactMode.from_label`) selects how the
  response is recorded and how repeats are folded.
- `pcapscenario.scenario` — `ScenarioLog` holds the transactions of the
  current session; `session_close()` turns them into a scenario and
  `import_close()` wraps all scenarios into the final document.
  `compact_transactions()` folds consecutive repeats into one transaction
  with a `retry` entry: `basic` folds on verb and query, `strong` on verb
  alone, `none` keeps everything.

## Usage

Looking at the TCP ports of a capture:

```python
from pcapscenario.packets import EtherHeader, Ip6Header, IpProto, TcpHeader, read_pcap

for record in read_pcap("session.pcap"):
    ether = EtherHeader.from_bytes(record.data, 0)
    ip = Ip6Header.from_bytes(record.data, ether.size)
    if ip.proto is IpProto.TCP:
        tcp = TcpHeader.from_bytes(record.data, ether.size + ip.size)
        print(tcp.source_port, "->", tcp.destination_port)
```

Collecting the payloads of a TLS session:

```python
from pcapscenario.capture import PcapHandle

payloads = []

def on_payload(pkg_count, payload, timestamp, context):
    if payload:
        context.append((pkg_count, payload))

handle = PcapHandle(
    "session.pcap",
    key_log="keys.log",
    callback=on_payload,
    context=payloads,
    tcp_port=15118,
)
handle.run()
```

Building a scenario document from decoded messages:

```python
import json
from pcapscenario.scenario import ScenarioLog
from pcapscenario.transactions import CompactMode

log = ScenarioLog(pkg_start=1, protocol="iso2")
log.logger.log_message(log.transactions, CompactMode.BASIC, 10, 0,
                       "session_setup_req", {"id": "evcc-01"}, "session_setup_res")
log.logger.log_message(log.transactions, CompactMode.BASIC, 11, 12,
                       "session_setup_res", {"rcode": "ok"})
log.session_close("captures/session-01.pcap", CompactMode.BASIC)
document = log.import_close("captures/session-01.pcap", CompactMode.BASIC)
print(json.dumps(document, indent=2))
```

The scenario uid is the capture's base name up to its first dot
(`short_scenario_name`) followed by the scenario number, here
`session-01:1`.

## What it does not do

- It does not decode V2G/EXI messages (DIN 70121, ISO 15118-2, supported
  application protocol). The payloads from `PcapHandle` are raw bytes;
  turning them into message labels and bodies for `ProtocolLogger` is up to
  the caller.
- It has no command-line tool and does not write files; the document from
  `import_close()` is a plain dict to serialise as you like.
- Only classic pcap files are read (not pcapng), and only IPv6 over
  Ethernet is followed.

## Errors

Problems are reported as exceptions: `PacketError` for malformed files or
frames, `TlsError` for key-log, handshake or decryption failures,
`CaptureError` for capture-level problems, and `ScenarioError` for message
sequences that cannot be turned into a scenario (an unexpected response, a
missing `rcode` in `strong` mode, an empty session).