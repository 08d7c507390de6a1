# aprstation

Building blocks for an APRS station or iGate.

| Module | What it holds |
| --- | --- |
| `aprstation.records` | Frozen dataclasses for the rows the store returns (`Station`, `Message`, `Conversation`, `Bulletin`, `LoggedPacket`, `PacketPosition`, `PacketCounts`, `TopSource`, `StorageStats`) and the `Source` enum (`RF`, `IS`, `TX`). |
| `aprstation.store` | `Store`: a SQLite store for heard stations, logged packets, position trails and persistent counters. |
| `aprstation.messages` | `MessageLog`: the APRS message log on top of a `Store`. It handles conversations, the ack/rej lifecycle, bulletins and search. |
| `aprstation.tnc` | Finds serial TTYs under `/dev` and manages Bluetooth TNCs: it scans, pairs, binds and releases RFCOMM devices. |
| `aprstation.tlscert` | Loads or generates a self-signed ECDSA P-256 certificate and gives its SHA-256 fingerprint. |
| `aprstation.webhook_match` | The packet types (`Frame`, `Decoded`, `Packet`), the `Webhook` filter configuration, `match`, `classify` and the JSON payload builder `build_body`. |
| `aprstation.webhook` | `WebhookManager`: delivers matching packets to HTTP endpoints from a worker pool, with retries and per-endpoint status. |

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Store and messages

`Store(path)` creates the parent directory and the schema if needed. It opens
the database in WAL mode. A single handle is safe to share between threads, and
it works as a context manager. Times are stored as whole Unix seconds and come
back as UTC `datetime` objects.

```python
from datetime import datetime, timedelta, timezone
from aprstation.store import Store
from aprstation.messages import MessageLog
from aprstation.records import Message, Source

with Store("/var/lib/aprstation/db.sqlite") as store:
    now = datetime.now(timezone.utc)
    store.upsert_heard("N0CALL-9", now, "WIDE1-1", "!4903.50N/07201.75W>",
                       "APRS", Source.RF, 49.058, -72.029, "/>", "mobile")
    store.log_packet(now, "N0CALL-9", "APRS", "WIDE1-1", "!4903.50N/07201.75W>",
                     Source.RF, "N0CALL-9>APRS,WIDE1-1:!4903.50N/07201.75W>",
                     49.058, -72.029)

    for station in store.heard_since(now - timedelta(hours=1), "n0call"):
        print(station.callsign, station.position, station.pkt_count)
    print(store.count_packets_since(None))        # all time
    print(store.heard_on_rf("n0call-9", now - timedelta(hours=1)))

    log = MessageLog(store)
    row_id = log.log(Message(time=now, direction="out", source="N0CALL",
                             dest="N0CALL-7", body="ping", msg_id="1",
                             state="pending"))
    log.mark_ack("n0call", "n0call-7", "1")       # returns row_id
    for conv in log.conversations("N0CALL"):
        print(conv.peer, conv.count, conv.last_body)
```

Some details of the store and the message log:

- `upsert_heard` stores callsigns in upper case. It counts packets per
  station, and it updates the RF-heard time only for `Source.RF`.
- `MessageLog.log` stores callsigns in upper case. It stores an empty state as
  `acked`.
- `mark_ack` and `mark_rej` match the newest unacknowledged outbound message,
  ignoring case. They return its id, or `0` if nothing matches.
- `get` raises `KeyError` for an unknown id.
- `with_peer` returns a thread oldest first. `latest_bulletins` returns the
  newest body per (source, dest) for `BLN*`, `NWS-*`, `NWS_*`, `SKY*` and
  `CWA-*` addressees.
- `prune(cutoff)` deletes old stations, messages and packets in one
  transaction, and returns the number of rows removed.
- `save_counters` rejects negative values with `ValueError`. It clamps values
  to the signed 64-bit maximum.

## TLS certificate

```python
from aprstation.tlscert import load_or_generate, regenerate

pair = load_or_generate("/var/lib/aprstation/tls")
print(pair.cert_path, pair.key_path, pair.fingerprint)
```

`load_or_generate` writes `cert.pem` (mode 0644) and `key.pem` (mode 0600),
each through a temporary file, fsync and rename. The certificate is valid for
ten years. Its names are `localhost`, `127.0.0.1`, `::1` and the host name.
`regenerate` removes the existing pair and creates a new one. `fingerprint(der)`
returns the lowercase hex SHA-256 of a DER certificate.

## Webhooks

```python
from aprstation.webhook_match import Webhook, sample_test_packet, match, build_body
from aprstation.webhook import WebhookManager

hook = Webhook(name="ha", url="http://localhost:8123/api/webhook/aprs",
               enabled=True, source="rf", types=("position",),
               header_name="Authorization", header_value="Bearer token")
print(match(hook, sample_test_packet()))      # True
print(build_body(sample_test_packet()))

manager = WebhookManager([hook])
status_code = manager.send_test(hook)
print(status_code, manager.snapshot())
```

All of a webhook's filters must match:

- `source`: `rf`, `is` or `both`. An empty value means both.
- `include_tx`: our own transmissions fire only when this is set.
- `types`: see `webhook_match.TYPES`.
- `callsigns` and `to_callsigns`: a trailing `*` makes a prefix wildcard, and
  case is ignored.
- `match_text`: used with `match_mode` (`contains` or `equals`) and
  `match_case`. It only ever matches messages.

For gated third-party packets, the originator is used as the source. The
payload then names the relay in `relayed_by`.

`WebhookManager` delivery:

- `run(packets, stop)` dispatches packets from any iterable to four worker
  threads, through a queue of 256 jobs. When the queue is full, the job is
  dropped and counted as a failure.
- Each job is tried up to three times, waiting 1 s and then 2 s between tries.
- `send_test` makes a single attempt. It raises `ValueError` when no URL is
  set, and `requests.RequestException` on transport errors.
- `snapshot()` returns an `EndpointStatus` per webhook name.

## Bluetooth TNCs

```python
from aprstation import tnc

for serial in tnc.list_serial():
    print(serial.path, serial.label, serial.kind)

tnc.pair("00:00:00:00:00:01")
channel = tnc.discover_spp_channel("00:00:00:00:00:01")
device = tnc.choose_rfcomm_for("00:00:00:00:00:01")
bound = tnc.bind("00:00:00:00:00:01", channel)
print(tnc.current_rfcomm_mac(bound))
tnc.release(bound)
```

These functions run `bluetoothctl`, `rfkill`, `rfcomm`, `sdptool` and
`bt-agent`, so they need the BlueZ tools and bluez-tools. Failures raise
`tnc.TncError`. When all 32 RFCOMM slots are taken, they raise
`tnc.NoFreeRfcommError`.

## What this package does not do

- It does not decode APRS information fields. The caller fills in `Packet`
  and `Decoded` (the position, message fields and so on). The one exception is
  `sample_test_packet()`, which comes with its fields already set.
- It does not talk to a TNC. `aprstation.tnc` only finds, pairs and binds
  devices; it does not read or write KISS frames, and it does not connect to
  APRS-IS.
- It has no command-line program, web interface or server. `WebhookManager.run`
  takes any iterable of packets instead of a packet bus.