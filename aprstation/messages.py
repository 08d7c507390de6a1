"""APRS message log: sent and received messages, acks, threads and bulletins."""

from __future__ import annotations

import math
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone

from .records import Bulletin, Conversation, Message
from .store import Store

_FULL_COLUMNS = """id, ts, direction, source, dest, body, COALESCE(msg_id,''),
    via_rf, via_is, acked, COALESCE(raw,''), state, attempts"""

_FIND_OUTBOUND = """SELECT id FROM messages
    WHERE direction='out' AND UPPER(source)=UPPER(?) AND UPPER(dest)=UPPER(?)
      AND UPPER(msg_id)=UPPER(?) AND state IN ('pending','acked') AND acked=0
    ORDER BY id DESC LIMIT 1"""

_BULLETINS = r"""
WITH bulletins AS (
    SELECT source, dest, ts, body
    FROM messages
    WHERE direction='in' AND ts >= ?
      AND (UPPER(dest) LIKE 'BLN%' OR UPPER(dest) LIKE 'NWS-%' OR UPPER(dest) LIKE 'NWS\_%' ESCAPE '\'
           OR UPPER(dest) LIKE 'SKY%' OR UPPER(dest) LIKE 'CWA-%')
)
SELECT source, dest, MAX(ts) AS last_ts,
    (SELECT body FROM bulletins b2
      WHERE b2.source=bulletins.source AND b2.dest=bulletins.dest
      ORDER BY ts DESC LIMIT 1) AS body
FROM bulletins
GROUP BY source, dest
ORDER BY last_ts DESC
LIMIT ?"""

_CONVERSATIONS = """
WITH paired AS (
    SELECT
        CASE WHEN direction='out' THEN dest ELSE source END AS peer,
        ts, direction, body, acked
    FROM messages
    WHERE (direction='out' AND source=?) OR (direction='in' AND dest=?)
)
SELECT peer,
       MAX(ts) AS last_ts,
       (SELECT body      FROM paired p2 WHERE p2.peer = paired.peer ORDER BY ts DESC LIMIT 1),
       (SELECT direction FROM paired p3 WHERE p3.peer = paired.peer ORDER BY ts DESC LIMIT 1),
       (SELECT acked     FROM paired p4 WHERE p4.peer = paired.peer ORDER BY ts DESC LIMIT 1),
       COUNT(*) AS n
FROM paired
GROUP BY peer
ORDER BY last_ts DESC"""


def _unix(t: datetime) -> int:
    return math.floor(t.timestamp())


def _from_unix(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _full_row(r: tuple) -> Message:
    return Message(
        id=r[0],
        time=_from_unix(r[1]),
        direction=r[2],
        source=r[3],
        dest=r[4],
        body=r[5],
        msg_id=r[6],
        via_rf=bool(r[7]),
        via_is=bool(r[8]),
        acked=bool(r[9]),
        raw=r[10],
        state=r[11],
        attempts=r[12],
    )


class MessageLog:
    """Message operations on top of a :class:`Store`.

    Callsigns are stored uppercase so conversation grouping and ack matching
    do not depend on the case a relay or operator supplied.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._store.transaction() as conn:
            return conn.execute(sql, params).fetchall()

    def log(self, message: Message) -> int:
        """Store a message and return its row id.

        An empty state is stored as ``acked``; outbound messages with
        retries should pass ``pending``.
        """
        m = replace(
            message,
            source=message.source.upper(),
            dest=message.dest.upper(),
            state=message.state or "acked",
        )
        with self._store.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO messages (ts, direction, source, dest, body, msg_id, via_rf,
                       via_is, acked, raw, state, attempts)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    _unix(m.time),
                    m.direction,
                    m.source,
                    m.dest,
                    m.body,
                    m.msg_id,
                    int(m.via_rf),
                    int(m.via_is),
                    int(m.acked),
                    m.raw,
                    m.state,
                    m.attempts,
                ),
            )
            return cur.lastrowid

    def merge_via(
        self, source: str, dest: str, body: str, via_rf: bool, via_is: bool
    ) -> None:
        """OR the via flags onto the newest inbound row matching
        (source, dest, body)."""
        if not via_rf and not via_is:
            return
        with self._store.transaction() as conn:
            conn.execute(
                """UPDATE messages
                   SET via_rf = via_rf | ?, via_is = via_is | ?
                   WHERE id = (
                       SELECT id FROM messages
                       WHERE direction = 'in' AND source = ? AND dest = ? AND body = ?
                       ORDER BY id DESC LIMIT 1
                   )""",
                (int(via_rf), int(via_is), source, dest, body),
            )

    def set_state(self, message_id: int, state: str, attempts: int) -> None:
        """Update the retry lifecycle of an outgoing message, keeping the
        ``acked`` flag in step with the state."""
        with self._store.transaction() as conn:
            conn.execute(
                "UPDATE messages SET state=?, attempts=?, acked=? WHERE id=?",
                (state, attempts, int(state == "acked"), message_id),
            )

    def get(self, message_id: int) -> Message:
        """Return one message by id; raises KeyError if there is none."""
        rows = self._fetchall(
            f"SELECT {_FULL_COLUMNS} FROM messages WHERE id=?", (message_id,)
        )
        if not rows:
            raise KeyError(message_id)
        return _full_row(rows[0])

    def _mark(self, source: str, dest: str, msg_id: str, state: str) -> int:
        with self._store.transaction() as conn:
            row = conn.execute(_FIND_OUTBOUND, (source, dest, msg_id)).fetchone()
            if row is None:
                return 0
            conn.execute(
                "UPDATE messages SET acked=1, state=? WHERE id=?", (state, row[0])
            )
            return row[0]

    def mark_ack(self, source: str, dest: str, msg_id: str) -> int:
        """Mark the newest unacked outbound match acked; returns its id or 0."""
        return self._mark(source, dest, msg_id, "acked")

    def mark_rej(self, source: str, dest: str, msg_id: str) -> int:
        """Mark the newest unacked outbound match rejected; returns its id or 0."""
        return self._mark(source, dest, msg_id, "rejected")

    def search(self, query: str, limit: int = 50) -> list[Message]:
        """Messages whose body contains ``query`` (case-insensitive), newest first."""
        q = query.strip()
        if not q:
            return []
        if limit <= 0 or limit > 200:
            limit = 50
        rows = self._fetchall(
            """SELECT id, ts, source, dest, COALESCE(msg_id,''), body, direction, acked
               FROM messages WHERE body LIKE ? ORDER BY ts DESC LIMIT ?""",
            (f"%{q}%", limit),
        )
        return [
            Message(
                id=r[0],
                time=_from_unix(r[1]),
                source=r[2],
                dest=r[3],
                msg_id=r[4],
                body=r[5],
                direction=r[6],
                acked=bool(r[7]),
            )
            for r in rows
        ]

    def conversations(self, me: str) -> list[Conversation]:
        """One summary per peer that exchanged messages with ``me``, newest first."""
        if not me:
            return []
        me = me.upper()
        rows = self._fetchall(_CONVERSATIONS, (me, me))
        return [
            Conversation(
                peer=peer,
                last_time=_from_unix(ts),
                last_body=body,
                last_dir=direction,
                last_acked=bool(acked),
                count=n,
            )
            for peer, ts, body, direction, acked, n in rows
        ]

    def latest_bulletins(self, since: datetime, limit: int = 200) -> list[Bulletin]:
        """The newest bulletin per (source, dest) received since ``since``."""
        if limit <= 0 or limit > 500:
            limit = 200
        rows = self._fetchall(_BULLETINS, (_unix(since), limit))
        return [
            Bulletin(source=s, dest=d, body=body, time=_from_unix(ts))
            for s, d, ts, body in rows
        ]

    def with_peer(self, me: str, peer: str, limit: int = 500) -> list[Message]:
        """The thread between ``me`` and ``peer``, oldest first."""
        if limit <= 0 or limit > 1000:
            limit = 500
        if not me or not peer:
            return []
        me, peer = me.upper(), peer.upper()
        try:
            rows = self._fetchall(
                f"""SELECT {_FULL_COLUMNS} FROM messages
                    WHERE (direction='out' AND source=? AND dest=?)
                       OR (direction='in'  AND source=? AND dest=?)
                    ORDER BY id DESC LIMIT ?""",
                (me, peer, peer, me, limit),
            )
        except sqlite3.Error:
            raise
        return [_full_row(r) for r in reversed(rows)]