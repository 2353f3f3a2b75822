"""Ledger persistence interfaces and concrete adapters."""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import sqlite3
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Protocol

from agent_router.types import ContributionKind, InteractionType, LedgerEntry

GENESIS_HASH = "0" * 64


def chain_link(previous_hash: str, content_hash: str) -> str:
    return hashlib.sha256(f"{previous_hash}:{content_hash}".encode("utf-8")).hexdigest()


class LedgerStore(Protocol):
    """Append-only entry storage.

    `append` assigns the per-scope sequence number and chain link; it must do
    so atomically with respect to other appends on the same store.
    """

    async def append(self, entry: LedgerEntry) -> str:
        """Persist a new entry and return its id."""

    async def get(self, entry_id: str) -> LedgerEntry | None:
        """Load one entry, or None when absent."""

    async def scan(self, scope: str) -> list[LedgerEntry]:
        """All entries of a scope in append order."""

    async def mark_verified(self, entry_id: str) -> bool:
        """Set the verified flag. Payload and hashes are untouched."""


class InMemoryLedgerStore:
    """Deterministic ledger store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._entries: dict[str, LedgerEntry] = {}
        self._scopes: dict[str, list[str]] = {}

    async def append(self, entry: LedgerEntry) -> str:
        if entry.entry_id in self._entries:
            raise ValueError(f"Ledger entry already exists: {entry.entry_id}")
        ids = self._scopes.setdefault(entry.scope, [])
        previous = self._entries[ids[-1]].chain_hash if ids else GENESIS_HASH
        stored = replace(
            entry,
            payload=copy.deepcopy(entry.payload),
            sequence=len(ids) + 1,
            previous_hash=previous,
            chain_hash=chain_link(previous, entry.content_hash),
        )
        self._entries[entry.entry_id] = stored
        ids.append(entry.entry_id)
        return entry.entry_id

    async def get(self, entry_id: str) -> LedgerEntry | None:
        return self._entries.get(entry_id)

    async def scan(self, scope: str) -> list[LedgerEntry]:
        return [self._entries[entry_id] for entry_id in self._scopes.get(scope, [])]

    async def mark_verified(self, entry_id: str) -> bool:
        entry = self._entries.get(entry_id)
        if entry is None:
            return False
        self._entries[entry_id] = replace(entry, verified=True)
        return True


class SqliteLedgerStore:
    """SQLite-backed store. Blocking calls run in a worker thread."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._ensure_table()

    async def append(self, entry: LedgerEntry) -> str:
        return await asyncio.to_thread(self._append, entry)

    async def get(self, entry_id: str) -> LedgerEntry | None:
        return await asyncio.to_thread(self._get, entry_id)

    async def scan(self, scope: str) -> list[LedgerEntry]:
        return await asyncio.to_thread(self._scan, scope)

    async def mark_verified(self, entry_id: str) -> bool:
        return await asyncio.to_thread(self._mark_verified, entry_id)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    entry_id TEXT PRIMARY KEY,
                    scope TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    interaction_type TEXT NOT NULL,
                    contribution_kind TEXT NOT NULL,
                    source TEXT NOT NULL,
                    target TEXT,
                    summary TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    impact_score REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    verified INTEGER NOT NULL DEFAULT 0,
                    previous_hash TEXT NOT NULL,
                    chain_hash TEXT NOT NULL,
                    UNIQUE (scope, sequence)
                )
                """
            )
        finally:
            conn.close()

    def _append(self, entry: LedgerEntry) -> str:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT sequence, chain_hash FROM ledger_entries WHERE scope = ? "
                "ORDER BY sequence DESC LIMIT 1",
                (entry.scope,),
            ).fetchone()
            sequence = (row["sequence"] if row else 0) + 1
            previous = row["chain_hash"] if row else GENESIS_HASH
            conn.execute(
                "INSERT INTO ledger_entries VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.entry_id,
                    entry.scope,
                    sequence,
                    entry.interaction_type.value,
                    entry.contribution_kind.value,
                    entry.source,
                    entry.target,
                    entry.summary,
                    json.dumps(entry.payload, ensure_ascii=False, sort_keys=True, default=str),
                    entry.content_hash,
                    entry.impact_score,
                    entry.created_at.isoformat(),
                    int(entry.verified),
                    previous,
                    chain_link(previous, entry.content_hash),
                ),
            )
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return entry.entry_id

    def _get(self, entry_id: str) -> LedgerEntry | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM ledger_entries WHERE entry_id = ?", (entry_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_entry(row) if row else None

    def _scan(self, scope: str) -> list[LedgerEntry]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM ledger_entries WHERE scope = ? ORDER BY sequence", (scope,)
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_entry(row) for row in rows]

    def _mark_verified(self, entry_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE ledger_entries SET verified = 1 WHERE entry_id = ?", (entry_id,)
            )
            return cur.rowcount > 0
        finally:
            conn.close()


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        scope=row["scope"],
        interaction_type=InteractionType(row["interaction_type"]),
        contribution_kind=ContributionKind(row["contribution_kind"]),
        source=row["source"],
        target=row["target"],
        summary=row["summary"],
        payload=json.loads(row["payload"]),
        content_hash=row["content_hash"],
        impact_score=row["impact_score"],
        created_at=datetime.fromisoformat(row["created_at"]),
        verified=bool(row["verified"]),
        sequence=row["sequence"],
        previous_hash=row["previous_hash"],
        chain_hash=row["chain_hash"],
    )
