"""Row types returned by the station store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Source(str, Enum):
    """Where a packet came from: received on RF, from APRS-IS, or sent by us."""

    RF = "RF"
    IS = "IS"
    TX = "TX"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Station:
    """A row from the stations table."""

    callsign: str
    last_seen: datetime
    last_path: str = ""
    last_info: str = ""
    last_dest: str = ""
    last_source: str = ""
    last_seen_rf: datetime | None = None
    lat: float | None = None
    lon: float | None = None
    symbol: str = ""
    comment: str = ""
    pkt_count: int = 0

    @property
    def position(self) -> tuple[float, float] | None:
        """The (lat, lon) pair, or None when the station has no known position."""
        if self.lat is None or self.lon is None:
            return None
        return (self.lat, self.lon)


@dataclass(frozen=True)
class PacketCounts:
    """Per-source-kind packet counts for the stats page."""

    rf: int = 0
    is_: int = 0
    tx: int = 0
    total: int = 0


@dataclass(frozen=True)
class TopSource:
    """One (callsign, count) pair for the loudest-stations view."""

    source: str
    count: int


@dataclass(frozen=True)
class StorageStats:
    """Summary of the packets table; times are None when the table is empty."""

    total_packets: int = 0
    oldest_time: datetime | None = None
    newest_time: datetime | None = None


@dataclass(frozen=True)
class PacketPosition:
    """A lean position row used to build trails."""

    source: str
    lat: float
    lon: float
    time: datetime


@dataclass(frozen=True)
class LoggedPacket:
    """One row from the packets table."""

    id: int
    time: datetime
    source: str
    dest: str = ""
    path: str = ""
    info: str = ""
    src_kind: str = ""
    raw: str = ""


@dataclass(frozen=True)
class Message:
    """A sent or received APRS message.

    ``state`` is the lifecycle of an outgoing message: pending, acked,
    failed, cancelled or rejected. An empty state is stored as ``acked``.
    """

    time: datetime
    direction: str
    source: str
    dest: str
    body: str
    msg_id: str = ""
    via_rf: bool = False
    via_is: bool = False
    acked: bool = False
    raw: str = ""
    state: str = ""
    attempts: int = 0
    id: int = 0


@dataclass(frozen=True)
class Conversation:
    """Chat-list summary of all messages exchanged with one peer."""

    peer: str
    last_time: datetime
    last_body: str
    last_dir: str
    last_acked: bool
    count: int


@dataclass(frozen=True)
class Bulletin:
    """The latest bulletin body for one (source, dest) pair."""

    source: str
    dest: str
    body: str
    time: datetime