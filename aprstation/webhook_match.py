"""Webhook filters and the JSON payload delivered to receivers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .records import Source

# Every value classify() can return, in settings-page order.
TYPES = ("position", "weather", "telemetry", "message", "object", "status", "other")


@dataclass(frozen=True)
class Frame:
    """A received or transmitted AX.25 frame."""

    src: str
    dest: str
    info: str = ""
    path: tuple[str, ...] = ()
    origin: Source | None = None
    rx_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def tnc2(self) -> str:
        """The frame in TNC2 text form: ``SRC>DEST,PATH:info``."""
        head = ",".join([f"{self.src}>{self.dest}", *self.path])
        return f"{head}:{self.info}"


@dataclass(frozen=True)
class Decoded:
    """The APRS fields decoded from a frame's information field."""

    lat: float | None = None
    lon: float | None = None
    symbol: str = ""
    comment: str = ""
    speed: int = -1
    course: int = -1
    altitude: int = 0
    is_message: bool = False
    is_ack: bool = False
    is_rej: bool = False
    msg_to: str = ""
    msg_body: str = ""
    msg_id: str = ""
    msg_orig_src: str = ""
    weather: Any = None
    is_telemetry: bool = False
    object_name: str = ""


@dataclass(frozen=True)
class Packet:
    """A frame together with its decoded contents."""

    frame: Frame
    decoded: Decoded = field(default_factory=Decoded)


@dataclass(frozen=True)
class Webhook:
    """An operator-configured outbound endpoint and its filters.

    ``source`` is ``rf``, ``is`` or ``both`` (empty means both).
    ``match_mode`` is ``contains`` (the default) or ``equals``.
    """

    name: str = ""
    url: str = ""
    enabled: bool = False
    source: str = ""
    include_tx: bool = False
    types: tuple[str, ...] = ()
    callsigns: tuple[str, ...] = ()
    to_callsigns: tuple[str, ...] = ()
    match_text: str = ""
    match_mode: str = "contains"
    match_case: bool = False
    header_name: str = ""
    header_value: str = ""
    insecure_skip_tls: bool = False


def _origin_str(origin: Source | None) -> str:
    return {Source.RF: "rf", Source.IS: "is", Source.TX: "tx"}.get(origin, "")


def match(webhook: Webhook, packet: Packet) -> bool:
    """Whether ``packet`` should fire ``webhook``; all filters AND together."""
    if not _source_matches(webhook, _origin_str(packet.frame.origin)):
        return False
    if webhook.types and classify(packet) not in webhook.types:
        return False
    if webhook.callsigns and not callsign_matches(webhook.callsigns, effective_source(packet)):
        return False
    # Non-message packets have no addressee, so a To filter scopes to messages.
    if webhook.to_callsigns and not callsign_matches(
        webhook.to_callsigns, packet.decoded.msg_to
    ):
        return False
    return _text_matches(webhook, packet)


def _source_matches(webhook: Webhook, origin: str) -> bool:
    # Our own transmissions fire only on opt-in, whatever the selector says.
    if origin == "tx":
        return webhook.include_tx
    if webhook.source in ("", "both"):
        return True
    return webhook.source == origin


def _text_matches(webhook: Webhook, packet: Packet) -> bool:
    if not webhook.match_text:
        return True
    if not packet.decoded.is_message:
        return False
    body = packet.decoded.msg_body
    want = webhook.match_text
    if not webhook.match_case:
        body, want = body.lower(), want.lower()
    if webhook.match_mode == "equals":
        return body == want
    return want in body


def callsign_matches(patterns, src: str) -> bool:
    """Whether ``src`` matches any pattern; a trailing ``*`` is a prefix
    wildcard. Case-insensitive."""
    up = src.strip().upper()
    for pattern in patterns:
        p = pattern.strip().upper()
        if not p:
            continue
        if p.endswith("*"):
            if up.startswith(p[:-1]):
                return True
        elif p == up:
            return True
    return False


def classify(packet: Packet) -> str:
    """Bucket a packet into one of :data:`TYPES`."""
    d = packet.decoded
    if d.is_message and not d.is_ack and not d.is_rej:
        return "message"
    if d.weather is not None:
        return "weather"
    if d.is_telemetry:
        return "telemetry"
    if d.object_name:
        return "object"
    if d.lat is not None and d.lon is not None:
        return "position"
    if packet.frame.info.startswith(">"):
        return "status"
    return "other"


def effective_source(packet: Packet) -> str:
    """The originating station: the third-party originator when the frame
    was gated by a relay, else the AX.25 source."""
    return packet.decoded.msg_orig_src or packet.frame.src


def build_body(packet: Packet, test: bool = False) -> bytes:
    """The JSON payload for ``packet``; absent optional fields are omitted."""
    d = packet.decoded
    f = packet.frame
    rx = f.rx_at if f.rx_at.tzinfo else f.rx_at.replace(tzinfo=timezone.utc)
    body: dict[str, Any] = {
        "time": rx.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "source": effective_source(packet),
        "dest": f.dest,
    }
    if f.path:
        body["path"] = list(f.path)
    body["origin"] = _origin_str(f.origin)
    if d.msg_orig_src and d.msg_orig_src.casefold() != f.src.casefold():
        body["relayed_by"] = f.src
    body["type"] = classify(packet)
    if d.lat is not None:
        body["lat"] = d.lat
    if d.lon is not None:
        body["lon"] = d.lon
    if d.symbol:
        body["symbol"] = d.symbol
    if d.comment:
        body["comment"] = d.comment
    if d.speed >= 0:
        body["speed_mph"] = d.speed
    if d.course >= 0:
        body["course_deg"] = d.course
    if d.altitude != 0:
        body["altitude_ft"] = d.altitude
    if d.is_message and not d.is_ack and not d.is_rej:
        msg = {"to": d.msg_to, "body": d.msg_body, "id": d.msg_id}
        body["message"] = {k: v for k, v in msg.items() if v}
    body["raw"] = f.tnc2()
    if test:
        body["test"] = True
    # Literal '<', '>' and '&': this is an application/json body, never HTML.
    return json.dumps(body, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def sample_test_packet() -> Packet:
    """A representative position packet for test deliveries."""
    frame = Frame(
        src="N0CALL-9",
        dest="APRS",
        path=("WIDE1-1",),
        info="!4903.50N/07201.75W>aprstation webhook test",
        origin=Source.RF,
        rx_at=datetime.now(timezone.utc),
    )
    decoded = Decoded(
        lat=49 + 3.50 / 60,
        lon=-(72 + 1.75 / 60),
        symbol="/>",
        comment="aprstation webhook test",
    )
    return Packet(frame=frame, decoded=decoded)