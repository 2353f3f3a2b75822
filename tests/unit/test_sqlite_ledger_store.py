import json
import sqlite3

import pytest

from agent_router.ledger.ledger import AttributionLedger, EntryDraft
from agent_router.ledger.store import GENESIS_HASH, SqliteLedgerStore
from agent_router.types import ContributionKind, InteractionType


def _draft(content: str) -> EntryDraft:
    return EntryDraft(
        scope="team",
        interaction_type=InteractionType.HUMAN_INPUT,
        contribution_kind=ContributionKind.HUMAN_INPUT,
        source="dana",
        payload={"content": content, "tags": ["ops"]},
    )


@pytest.mark.asyncio
async def test_entries_survive_reopen_and_verify(tmp_path) -> None:
    db = tmp_path / "ledger.db"
    ledger = AttributionLedger(SqliteLedgerStore(db))

    ids = [await ledger.record(_draft(f"note {idx}")) for idx in range(3)]
    reopened = AttributionLedger(SqliteLedgerStore(db))

    entries = await reopened.get_attributions("team")
    report = await reopened.verify_chain("team")

    assert [entry.entry_id for entry in entries] == ids
    assert [entry.sequence for entry in entries] == [1, 2, 3]
    assert entries[0].previous_hash == GENESIS_HASH
    assert entries[0].interaction_type is InteractionType.HUMAN_INPUT
    assert entries[0].payload == {"content": "note 0", "tags": ["ops"]}
    assert report.valid is True
    assert (await reopened.verify(ids[2])).valid is True


@pytest.mark.asyncio
async def test_tampered_row_is_detected(tmp_path) -> None:
    db = tmp_path / "ledger.db"
    ledger = AttributionLedger(SqliteLedgerStore(db))
    entry_id = await ledger.record(_draft("original"))

    with sqlite3.connect(db) as conn:
        conn.execute(
            "UPDATE ledger_entries SET payload = ? WHERE entry_id = ?",
            (json.dumps({"content": "forged", "tags": ["ops"]}), entry_id),
        )

    result = await ledger.verify(entry_id)

    assert result.valid is False
    assert result.finding == "integrity-violation"


@pytest.mark.asyncio
async def test_mark_verified_persists(tmp_path) -> None:
    store = SqliteLedgerStore(tmp_path / "ledger.db")
    ledger = AttributionLedger(store)
    entry_id = await ledger.record(_draft("approved"))

    assert await ledger.mark_verified(entry_id) is True
    assert (await store.get(entry_id)).verified is True
    assert await store.mark_verified("missing") is False
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_failed_append_leaves_store_usable(tmp_path) -> None:
    store = SqliteLedgerStore(tmp_path / "ledger.db")
    ledger = AttributionLedger(store)
    entry_id = await ledger.record(_draft("first"))
    duplicate = await store.get(entry_id)

    with pytest.raises(sqlite3.IntegrityError):
        await store.append(duplicate)

    second = await ledger.record(_draft("second"))
    assert (await ledger.verify_chain("team")).entries_checked == 2
    assert (await store.get(second)).sequence == 2


@pytest.mark.asyncio
async def test_certificate_round_trips_through_sqlite(tmp_path) -> None:
    ledger = AttributionLedger(SqliteLedgerStore(tmp_path / "ledger.db"))
    await ledger.record(_draft("one"))

    certificate = await ledger.generate_certificate("team", "dana")
    result = await ledger.verify_certificate(certificate.certificate_id)

    assert certificate.contribution_count == 1
    assert result.valid is True
