"""
Durable outbox using async SQLite for publishes the bus did not accept.

Reliable messages (QoS >= 1) that fail to publish are written here with
their topic, QoS and retain flag and replayed later by the flush loop. Rows
are deleted only after the replay publish succeeds. The outbox survives
process restarts because it is backed by a SQLite database file in WAL mode.

Operations:
- enqueue(topic, payload, qos, retain): INSERT one message row.
- peek(n): SELECT up to n oldest rows (FIFO).
- ack(rowids): DELETE only the specified rows.
- count(): SELECT COUNT(*) of pending messages.
- close(): Close the underlying database connection.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-03-02: Store topic/qos/retain per row for bus replay
- 2026-02-24: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import aiosqlite

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS outbox (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    topic TEXT NOT NULL,
    payload TEXT NOT NULL,
    qos INTEGER NOT NULL,
    retain INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INSERT_SQL = """\
INSERT INTO outbox (topic, payload, qos, retain) VALUES (?, ?, ?, ?);
"""

_PEEK_SQL = """\
SELECT rowid, topic, payload, qos, retain
FROM outbox
ORDER BY rowid ASC
LIMIT ?;
"""

_COUNT_SQL = "SELECT COUNT(*) FROM outbox;"


@dataclass(frozen=True, slots=True)
class SpooledMessage:
    """A message waiting in the outbox.

    Attributes:
        rowid: Outbox row id, passed back to :meth:`Spool.ack`.
        topic: Bus topic.
        payload: Serialised JSON payload.
        qos: MQTT QoS level.
        retain: Broker retain flag.
    """

    rowid: int
    topic: str
    payload: str
    qos: int
    retain: bool


class Spool:
    """Durable local async FIFO outbox backed by a SQLite database.

    Payloads are stored as opaque TEXT; the caller serialises them.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with Spool(path="/data/outbox.db") as spool:
            await spool.enqueue("devices/7/status", '{"status": "online"}', 1, True)
            rows = await spool.peek(10)
            await spool.ack([row.rowid for row in rows])
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection, enable WAL and create the table."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> Spool:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, topic: str, payload: str, qos: int, retain: bool) -> None:
        """Append a message to the outbox.

        Args:
            topic: Bus topic to replay to.
            payload: JSON string.
            qos: MQTT QoS level.
            retain: Broker retain flag.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        await self._db.execute(_INSERT_SQL, (topic, payload, int(qos), int(retain)))
        await self._db.commit()

    async def peek(self, n: int) -> list[SpooledMessage]:
        """Return up to *n* oldest pending messages without removing them.

        Args:
            n: Maximum number of rows to return.

        Returns:
            Messages ordered oldest first. Empty when the outbox is empty
            or n < 1.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        if n < 1:
            return []
        cursor = await self._db.execute(_PEEK_SQL, (n,))
        rows = await cursor.fetchall()
        return [
            SpooledMessage(
                rowid=row[0],
                topic=row[1],
                payload=row[2],
                qos=row[3],
                retain=bool(row[4]),
            )
            for row in rows
        ]

    async def ack(self, rowids: list[int]) -> None:
        """Delete replayed rows from the outbox.

        Nonexistent rowids are ignored. An empty list is a no-op.

        Args:
            rowids: Row ids to delete.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        if not rowids:
            return
        placeholders = ",".join("?" for _ in rowids)
        sql = f"DELETE FROM outbox WHERE rowid IN ({placeholders});"  # noqa: S608
        await self._db.execute(sql, rowids)
        await self._db.commit()

    async def count(self) -> int:
        """Return the number of pending messages."""
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        cursor = await self._db.execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return row[0]
