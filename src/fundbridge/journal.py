"""Journal of transactions the chain accepted on behalf of a request.

A submission is recorded before its status is pushed back and acknowledged once
the push succeeds. The engine consults it before submitting so that a failed
status push is retried on its own instead of submitting the transaction twice.
"""

import asyncio
import logging
import sqlite3
import time
from collections import deque
from pathlib import Path
from typing import Protocol

import fundbridge.constants as C
from fundbridge.models import Submission

log = logging.getLogger("fundbridge.journal")


class Journal(Protocol):
    async def record(self, s: Submission) -> None: ...
    async def get(self, request_id: int, kind: C.TxKind) -> Submission | None: ...
    async def acknowledge(self, request_id: int, kind: C.TxKind) -> None: ...
    async def recent(self, limit: int = 50) -> list[Submission]: ...


class InMemoryJournal:
    """Process-lifetime journal. Forgets everything on restart."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[tuple[int, str], Submission] = {}
        self._order: deque[tuple[int, str]] = deque(maxlen=5000)

    async def record(self, s: Submission) -> None:
        key = (s.request_id, str(s.kind))
        async with self._lock:
            if not s.submitted_at:
                s.submitted_at = time.time()
            self._records[key] = s
            self._order.append(key)

    async def get(self, request_id: int, kind: C.TxKind) -> Submission | None:
        async with self._lock:
            return self._records.get((request_id, str(kind)))

    async def acknowledge(self, request_id: int, kind: C.TxKind) -> None:
        async with self._lock:
            rec = self._records.get((request_id, str(kind)))
            if rec is not None:
                rec.acknowledged = True

    async def recent(self, limit: int = 50) -> list[Submission]:
        async with self._lock:
            out, seen = [], set()
            for key in reversed(self._order):
                if key in seen:
                    continue
                seen.add(key)
                out.append(self._records[key])
                if len(out) >= limit:
                    break
            return out


class SQLiteJournal:
    """Persistent journal backed by SQLite."""

    def __init__(self, db_path: str | Path = "fundbridge.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS submissions (
                    request_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    tx_hash TEXT NOT NULL,
                    target TEXT NOT NULL,
                    amount INTEGER NOT NULL DEFAULT 0,
                    nonce INTEGER,
                    submitted_at REAL NOT NULL,
                    acknowledged INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (request_id, kind)
                );
                CREATE INDEX IF NOT EXISTS idx_sub_time ON submissions(submitted_at);
                """
            )
            conn.commit()
            log.debug(f"SQLite journal initialized at {self.db_path}")
        finally:
            conn.close()

    @staticmethod
    def _row(row: tuple) -> Submission:
        request_id, kind, tx_hash, target, amount, nonce, submitted_at, acknowledged = row
        return Submission(
            request_id=request_id,
            kind=C.TxKind(kind),
            tx_hash=tx_hash,
            target=target,
            amount=amount,
            nonce=nonce,
            submitted_at=submitted_at,
            acknowledged=bool(acknowledged),
        )

    async def record(self, s: Submission) -> None:
        if not s.submitted_at:
            s.submitted_at = time.time()
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT INTO submissions (request_id, kind, tx_hash, target, amount, nonce, submitted_at, acknowledged)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(request_id, kind) DO UPDATE SET
                        tx_hash = excluded.tx_hash,
                        target = excluded.target,
                        amount = excluded.amount,
                        nonce = excluded.nonce,
                        submitted_at = excluded.submitted_at,
                        acknowledged = excluded.acknowledged
                    """,
                    (s.request_id, str(s.kind), s.tx_hash, s.target, s.amount, s.nonce, s.submitted_at, int(s.acknowledged)),
                )
                conn.commit()
            finally:
                conn.close()

    async def get(self, request_id: int, kind: C.TxKind) -> Submission | None:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                cursor = conn.execute(
                    "SELECT request_id, kind, tx_hash, target, amount, nonce, submitted_at, acknowledged "
                    "FROM submissions WHERE request_id = ? AND kind = ?",
                    (request_id, str(kind)),
                )
                row = cursor.fetchone()
                return self._row(row) if row else None
            finally:
                conn.close()

    async def acknowledge(self, request_id: int, kind: C.TxKind) -> None:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute(
                    "UPDATE submissions SET acknowledged = 1 WHERE request_id = ? AND kind = ?",
                    (request_id, str(kind)),
                )
                conn.commit()
            finally:
                conn.close()

    async def recent(self, limit: int = 50) -> list[Submission]:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                cursor = conn.execute(
                    "SELECT request_id, kind, tx_hash, target, amount, nonce, submitted_at, acknowledged "
                    "FROM submissions ORDER BY submitted_at DESC LIMIT ?",
                    (limit,),
                )
                return [self._row(row) for row in cursor.fetchall()]
            finally:
                conn.close()


def open_journal(path: str | None) -> Journal:
    if not path:
        return InMemoryJournal()
    return SQLiteJournal(path)
