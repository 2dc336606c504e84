"""
Judgment ledger: append-only history of judgments per entity.

The current classification of an entity is always derived from the newest
entry; there is no mutable "current state" anywhere else. Entries are never
updated or deleted.
"""

import asyncio
import sqlite3
from collections import defaultdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import structlog

from spine.domain.errors import (
    ConcurrentEvaluationConflict,
    LedgerAppendFailure,
    LedgerReadFailure,
)
from spine.domain.models import Judgment, LedgerEntry

logger = structlog.get_logger(__name__)


class JudgmentLedger(Protocol):
    """
    Storage for emitted judgments.

    ``append`` must raise ConcurrentEvaluationConflict when the judgment was not
    composed against the current head, and LedgerAppendFailure when the entry
    could not be persisted. ``history`` raises LedgerReadFailure when storage
    cannot be read.
    """

    async def append(self, judgment: Judgment) -> LedgerEntry: ...

    async def history(self, entity_id: str, limit: int | None = None) -> list[LedgerEntry]: ...

    async def latest(self, entity_id: str) -> LedgerEntry | None: ...


class InMemoryJudgmentLedger:
    """Process-local ledger. Lost on restart; used for tests and single-process runs."""

    def __init__(self) -> None:
        self._entries: dict[str, list[LedgerEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="judgment_ledger", backend="memory")

    async def append(self, judgment: Judgment) -> LedgerEntry:
        async with self._lock:
            entries = self._entries[judgment.entity_id]
            head = entries[-1] if entries else None
            head_sequence = head.sequence if head else 0
            if judgment.based_on_sequence != head_sequence:
                raise ConcurrentEvaluationConflict(
                    judgment.entity_id, judgment.based_on_sequence, head_sequence
                )
            entry = LedgerEntry(
                sequence=head_sequence + 1,
                entity_id=judgment.entity_id,
                judgment=judgment,
                previous_classification=head.classification if head else None,
                appended_at=datetime.now(UTC),
            )
            entries.append(entry)

        self.logger.debug(
            "ledger_entry_appended", entity_id=entry.entity_id, sequence=entry.sequence
        )
        return entry

    async def history(self, entity_id: str, limit: int | None = None) -> list[LedgerEntry]:
        """Entries for an entity, newest first."""
        entries = list(reversed(self._entries.get(entity_id, [])))
        return entries[:limit] if limit is not None else entries

    async def latest(self, entity_id: str) -> LedgerEntry | None:
        entries = self._entries.get(entity_id)
        return entries[-1] if entries else None

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())


_SCHEMA = """
CREATE TABLE IF NOT EXISTS judgment_ledger (
    entity_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    classification TEXT NOT NULL,
    previous_classification TEXT,
    evaluated_at TEXT NOT NULL,
    appended_at TEXT NOT NULL,
    judgment TEXT NOT NULL,
    PRIMARY KEY (entity_id, sequence)
)
"""


class SqliteJudgmentLedger:
    """
    Durable ledger on SQLite.

    The (entity_id, sequence) primary key is the final guard against two
    processes appending on the same head: the losing insert is reported as a
    ConcurrentEvaluationConflict so the engine re-evaluates.
    """

    def __init__(self, path: str | Path, timeout_seconds: float = 5.0) -> None:
        self.path = str(path)
        self.timeout_seconds = timeout_seconds
        self.logger = logger.bind(component="judgment_ledger", backend="sqlite", path=self.path)
        conn = self._connect()
        try:
            conn.execute(_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=self.timeout_seconds)

    async def append(self, judgment: Judgment) -> LedgerEntry:
        try:
            entry = await asyncio.to_thread(self._append_sync, judgment)
        except ConcurrentEvaluationConflict:
            raise
        except sqlite3.Error as e:
            self.logger.error("ledger_append_failed", entity_id=judgment.entity_id, error=str(e))
            raise LedgerAppendFailure(judgment.entity_id, str(e)) from e

        self.logger.debug(
            "ledger_entry_appended", entity_id=entry.entity_id, sequence=entry.sequence
        )
        return entry

    def _append_sync(self, judgment: Judgment) -> LedgerEntry:
        conn = self._connect()
        try:
            # BEGIN IMMEDIATE takes the write lock before the head is read
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT sequence, classification FROM judgment_ledger "
                "WHERE entity_id = ? ORDER BY sequence DESC LIMIT 1",
                (judgment.entity_id,),
            ).fetchone()
            head_sequence = row[0] if row else 0
            if judgment.based_on_sequence != head_sequence:
                conn.execute("ROLLBACK")
                raise ConcurrentEvaluationConflict(
                    judgment.entity_id, judgment.based_on_sequence, head_sequence
                )
            entry = LedgerEntry(
                sequence=head_sequence + 1,
                entity_id=judgment.entity_id,
                judgment=judgment,
                previous_classification=row[1] if row else None,
                appended_at=datetime.now(UTC),
            )
            try:
                conn.execute(
                    "INSERT INTO judgment_ledger VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        entry.entity_id,
                        entry.sequence,
                        entry.classification.value,
                        entry.previous_classification.value
                        if entry.previous_classification
                        else None,
                        entry.evaluated_at.isoformat(),
                        entry.appended_at.isoformat(),
                        judgment.model_dump_json(),
                    ),
                )
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                raise ConcurrentEvaluationConflict(
                    judgment.entity_id, judgment.based_on_sequence, head_sequence + 1
                ) from None
            conn.execute("COMMIT")
            return entry
        finally:
            conn.close()

    def _history_sync(self, entity_id: str, limit: int | None) -> list[LedgerEntry]:
        query = (
            "SELECT sequence, previous_classification, appended_at, judgment "
            "FROM judgment_ledger WHERE entity_id = ? ORDER BY sequence DESC"
        )
        params: tuple = (entity_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (entity_id, limit)
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [
            LedgerEntry(
                sequence=sequence,
                entity_id=entity_id,
                judgment=Judgment.model_validate_json(payload),
                previous_classification=previous,
                appended_at=datetime.fromisoformat(appended_at),
            )
            for sequence, previous, appended_at, payload in rows
        ]

    async def history(self, entity_id: str, limit: int | None = None) -> list[LedgerEntry]:
        """Entries for an entity, newest first."""
        try:
            return await asyncio.to_thread(self._history_sync, entity_id, limit)
        except sqlite3.Error as e:
            self.logger.error("ledger_read_failed", entity_id=entity_id, error=str(e))
            raise LedgerReadFailure(entity_id, str(e)) from e

    async def latest(self, entity_id: str) -> LedgerEntry | None:
        entries = await self.history(entity_id, limit=1)
        return entries[0] if entries else None
