"""Attribution ledger: hash-verified, append-only record of every contribution."""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from agent_router.config import LedgerConfig
from agent_router.errors import IntegrityViolationError
from agent_router.ledger.store import GENESIS_HASH, LedgerStore, chain_link
from agent_router.types import ContributionKind, InteractionType, LedgerEntry, as_utc, utcnow

logger = logging.getLogger("agent_router.ledger")

INTEGRITY_VIOLATION = "integrity-violation"
CERTIFICATE_ISSUER = "ledger"

_SUMMARY_CHARS = 160


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


@dataclass(slots=True)
class EntryDraft:
    """Caller-supplied part of a ledger entry; hashes and ids are derived."""

    scope: str
    interaction_type: InteractionType
    contribution_kind: ContributionKind
    source: str
    payload: dict[str, Any]
    target: str | None = None
    summary: str = ""


@dataclass(slots=True)
class VerificationResult:
    entry_id: str
    valid: bool
    stored_hash: str = ""
    computed_hash: str = ""
    finding: str | None = None
    reason: str = ""


@dataclass(slots=True)
class ChainReport:
    scope: str
    valid: bool
    entries_checked: int
    broken_at: str | None = None
    reason: str = ""


@dataclass(slots=True)
class AttributionFilter:
    interaction_type: InteractionType | None = None
    contribution_kind: ContributionKind | None = None
    source: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")
        if self.since is not None:
            self.since = as_utc(self.since)
        if self.until is not None:
            self.until = as_utc(self.until)


@dataclass(slots=True)
class LedgerStats:
    scope: str
    total_entries: int
    counts_by_type: dict[str, int] = field(default_factory=dict)
    counts_by_source: dict[str, int] = field(default_factory=dict)
    total_impact: float = 0.0
    average_impact: float = 0.0
    cost_savings: float = 0.0
    verified_entries: int = 0


@dataclass(slots=True)
class ContributionStats:
    """One contributor's share of a scope."""

    scope: str
    source: str
    total_contributions: int = 0
    counts_by_kind: dict[str, int] = field(default_factory=dict)
    total_tokens: int = 0
    total_impact: float = 0.0
    first_contribution_at: datetime | None = None
    last_contribution_at: datetime | None = None


@dataclass(slots=True)
class ContributionCertificate:
    certificate_id: str
    scope: str
    source: str
    contribution_count: int
    contribution_kinds: list[str]
    total_tokens: int
    total_impact: float
    issued_at: datetime
    content_hash: str


@dataclass(slots=True)
class CertificateVerification:
    certificate_id: str
    valid: bool
    reason: str = ""
    live_count: int | None = None
    certificate: ContributionCertificate | None = None


@dataclass(slots=True)
class ContextStatistics:
    scope: str
    period_days: int
    total_document_usages: int = 0
    total_code_usages: int = 0
    queries_with_context: int = 0
    usage_by_type: dict[str, int] = field(default_factory=dict)
    top_documents: list[dict[str, Any]] = field(default_factory=list)


class ImpactScorer:
    """Bounded [0, max_impact] weight per entry, from kind plus routing bonuses."""

    def __init__(self, config: LedgerConfig | None = None) -> None:
        self.config = config or LedgerConfig()

    def score(self, kind: ContributionKind, payload: dict[str, Any]) -> float:
        cfg = self.config
        base = cfg.base_scores.get(kind.value, 0.0)
        bonus = 0.0
        if kind is ContributionKind.ROUTING_DECISION:
            complexity = str(payload.get("complexity", ""))
            bonus += cfg.complexity_bonus.get(complexity, 0.0)
            consulted = len(payload.get("backends_used") or [])
            bonus += max(consulted - 1, 0) * cfg.per_backend_bonus
            bonus = min(bonus, cfg.max_bonus)
        return round(min(max(base + bonus, 0.0), cfg.max_impact), 2)


class AttributionLedger:
    """Records contributions and verifies their integrity.

    Every entry stores the SHA-256 of its canonical payload. Verification
    recomputes that hash from what is stored; a mismatch is reported as an
    integrity violation and the entry is left exactly as found.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        config: LedgerConfig | None = None,
        impact_scorer: ImpactScorer | None = None,
    ) -> None:
        self.store = store
        self.config = config or LedgerConfig()
        self.impact_scorer = impact_scorer or ImpactScorer(self.config)

    async def record(self, draft: EntryDraft) -> str:
        payload = json.loads(canonical_json(draft.payload))
        digest = content_hash(payload)
        entry = LedgerEntry(
            entry_id=str(uuid.uuid4()),
            scope=draft.scope,
            interaction_type=draft.interaction_type,
            contribution_kind=draft.contribution_kind,
            source=draft.source,
            target=draft.target,
            summary=(draft.summary or _summarize(payload))[:_SUMMARY_CHARS],
            payload=payload,
            content_hash=digest,
            impact_score=self.impact_scorer.score(draft.contribution_kind, payload),
            created_at=utcnow(),
        )
        entry_id = await self.store.append(entry)
        logger.info(
            "Ledger entry recorded: id=%s scope=%s type=%s source=%s hash=%s",
            entry_id,
            entry.scope,
            entry.interaction_type.value,
            entry.source,
            digest,
        )
        return entry_id

    async def get(self, entry_id: str) -> LedgerEntry:
        entry = await self.store.get(entry_id)
        if entry is None:
            raise KeyError(f"Ledger entry not found: {entry_id}")
        return entry

    async def verify(self, entry_id: str) -> VerificationResult:
        entry = await self.store.get(entry_id)
        if entry is None:
            return VerificationResult(entry_id=entry_id, valid=False, reason="Entry not found")

        computed = content_hash(entry.payload)
        if computed != entry.content_hash:
            logger.warning(
                "Ledger integrity violation: id=%s stored=%s computed=%s",
                entry_id,
                entry.content_hash,
                computed,
            )
            return VerificationResult(
                entry_id=entry_id,
                valid=False,
                stored_hash=entry.content_hash,
                computed_hash=computed,
                finding=INTEGRITY_VIOLATION,
                reason="Content hash mismatch - possible tampering",
            )
        return VerificationResult(
            entry_id=entry_id, valid=True, stored_hash=entry.content_hash, computed_hash=computed
        )

    async def require_intact(self, entry_id: str) -> LedgerEntry:
        result = await self.verify(entry_id)
        if result.finding == INTEGRITY_VIOLATION:
            raise IntegrityViolationError(entry_id, result.stored_hash, result.computed_hash)
        return await self.get(entry_id)

    async def verify_chain(self, scope: str) -> ChainReport:
        """Walk a scope in order, checking payload hashes and chain links."""
        entries = await self.store.scan(scope)
        previous = GENESIS_HASH
        for checked, entry in enumerate(entries, start=1):
            if content_hash(entry.payload) != entry.content_hash:
                reason = "Content hash mismatch"
            elif entry.previous_hash != previous:
                reason = "Previous-hash link broken"
            elif chain_link(previous, entry.content_hash) != entry.chain_hash:
                reason = "Chain hash mismatch"
            else:
                previous = entry.chain_hash
                continue
            logger.warning("Ledger chain broken in scope %s at %s: %s", scope, entry.entry_id, reason)
            return ChainReport(
                scope=scope, valid=False, entries_checked=checked, broken_at=entry.entry_id, reason=reason
            )
        return ChainReport(scope=scope, valid=True, entries_checked=len(entries))

    async def mark_verified(self, entry_id: str) -> bool:
        """External verification hook (e.g. after anchoring). Only sets the flag."""
        result = await self.verify(entry_id)
        if not result.valid:
            return False
        return await self.store.mark_verified(entry_id)

    async def get_attributions(
        self,
        scope: str,
        filters: AttributionFilter | None = None,
    ) -> list[LedgerEntry]:
        filters = filters or AttributionFilter()
        entries = await self.store.scan(scope)
        selected = [entry for entry in entries if _matches(entry, filters)]
        if filters.limit == 0:
            return []
        if filters.limit is not None:
            selected = selected[-filters.limit :]
        return selected

    async def get_stats(self, scope: str) -> LedgerStats:
        entries = await self.store.scan(scope)
        stats = LedgerStats(scope=scope, total_entries=len(entries))
        if not entries:
            return stats

        for entry in entries:
            key = entry.interaction_type.value
            stats.counts_by_type[key] = stats.counts_by_type.get(key, 0) + 1
            stats.counts_by_source[entry.source] = stats.counts_by_source.get(entry.source, 0) + 1
            stats.total_impact += entry.impact_score
            stats.cost_savings += float(entry.payload.get("cost_savings", 0.0) or 0.0)
            stats.verified_entries += int(entry.verified)

        stats.total_impact = round(stats.total_impact, 2)
        stats.average_impact = round(stats.total_impact / len(entries), 2)
        stats.cost_savings = round(stats.cost_savings, 6)
        return stats

    async def export_for_anchoring(self, scope: str) -> list[dict[str, Any]]:
        """Block-style records suitable for anchoring in an external system."""
        return [
            {
                "block_number": entry.sequence,
                "timestamp": entry.created_at.isoformat(),
                "entry_id": entry.entry_id,
                "source": entry.source,
                "target": entry.target,
                "interaction_type": entry.interaction_type.value,
                "content_hash": entry.content_hash,
                "previous_hash": entry.previous_hash,
                "chain_hash": entry.chain_hash,
            }
            for entry in await self.store.scan(scope)
        ]

    async def get_contribution_stats(self, scope: str, source: str) -> ContributionStats:
        stats = ContributionStats(scope=scope, source=source)
        for entry in await self.store.scan(scope):
            if entry.source != source or entry.contribution_kind is ContributionKind.CERTIFICATE:
                continue
            kind = entry.contribution_kind.value
            stats.total_contributions += 1
            stats.counts_by_kind[kind] = stats.counts_by_kind.get(kind, 0) + 1
            stats.total_tokens += int(entry.payload.get("input_tokens", 0) or 0)
            stats.total_tokens += int(entry.payload.get("output_tokens", 0) or 0)
            stats.total_impact += entry.impact_score
            if stats.first_contribution_at is None:
                stats.first_contribution_at = entry.created_at
            stats.last_contribution_at = entry.created_at
        stats.total_impact = round(stats.total_impact, 2)
        return stats

    async def generate_certificate(self, scope: str, source: str) -> ContributionCertificate:
        """Attest a contributor's record as of now, stored as a ledger entry.

        The certificate stays valid only while the live contribution count
        still equals the attested one.
        """
        stats = await self.get_contribution_stats(scope, source)
        certificate_id = await self.record(
            EntryDraft(
                scope=scope,
                interaction_type=InteractionType.DECISION,
                contribution_kind=ContributionKind.CERTIFICATE,
                source=CERTIFICATE_ISSUER,
                target=source,
                summary=f"Contribution certificate for {source}: {stats.total_contributions} contributions",
                payload={
                    "source": source,
                    "contribution_count": stats.total_contributions,
                    "contribution_kinds": sorted(stats.counts_by_kind),
                    "total_tokens": stats.total_tokens,
                    "total_impact": stats.total_impact,
                },
            )
        )
        return _certificate_from(await self.get(certificate_id))

    async def verify_certificate(self, certificate_id: str) -> CertificateVerification:
        entry = await self.store.get(certificate_id)
        if entry is None or entry.contribution_kind is not ContributionKind.CERTIFICATE:
            return CertificateVerification(certificate_id, valid=False, reason="Certificate not found")

        certificate = _certificate_from(entry)
        if not (await self.verify(certificate_id)).valid:
            return CertificateVerification(
                certificate_id, valid=False, reason="Certificate hash mismatch", certificate=certificate
            )

        live = await self.get_contribution_stats(entry.scope, certificate.source)
        if live.total_contributions != certificate.contribution_count:
            logger.warning(
                "Certificate %s outdated: attested=%d live=%d",
                certificate_id,
                certificate.contribution_count,
                live.total_contributions,
            )
            return CertificateVerification(
                certificate_id,
                valid=False,
                reason="Contribution count mismatch",
                live_count=live.total_contributions,
                certificate=certificate,
            )
        return CertificateVerification(
            certificate_id, valid=True, live_count=live.total_contributions, certificate=certificate
        )

    async def get_context_statistics(
        self,
        scope: str,
        *,
        days: int = 7,
        now: datetime | None = None,
        top: int = 10,
    ) -> ContextStatistics:
        """Context items injected into answered queries over the last `days`."""
        since = (as_utc(now) if now is not None else utcnow()) - timedelta(days=days)
        stats = ContextStatistics(scope=scope, period_days=days)
        documents: Counter[str] = Counter()
        for entry in await self.store.scan(scope):
            if entry.contribution_kind is not ContributionKind.ROUTING_DECISION or entry.created_at < since:
                continue
            if entry.payload.get("status") != "succeeded":
                continue
            items = (entry.payload.get("context") or {}).get("items") or []
            if items:
                stats.queries_with_context += 1
            for item in items:
                usage = str(item.get("usage_type", ""))
                stats.usage_by_type[usage] = stats.usage_by_type.get(usage, 0) + 1
                if item.get("kind") == "code":
                    stats.total_code_usages += 1
                else:
                    stats.total_document_usages += 1
                    documents[str(item.get("item_id"))] += 1
        stats.top_documents = [
            {"item_id": item_id, "usage_count": count} for item_id, count in documents.most_common(top)
        ]
        return stats


def _certificate_from(entry: LedgerEntry) -> ContributionCertificate:
    payload = entry.payload
    return ContributionCertificate(
        certificate_id=entry.entry_id,
        scope=entry.scope,
        source=str(payload.get("source", entry.target or "")),
        contribution_count=int(payload.get("contribution_count", 0)),
        contribution_kinds=list(payload.get("contribution_kinds", [])),
        total_tokens=int(payload.get("total_tokens", 0)),
        total_impact=float(payload.get("total_impact", 0.0)),
        issued_at=entry.created_at,
        content_hash=entry.content_hash,
    )


def _matches(entry: LedgerEntry, filters: AttributionFilter) -> bool:
    if filters.interaction_type is not None and entry.interaction_type is not filters.interaction_type:
        return False
    if filters.contribution_kind is not None and entry.contribution_kind is not filters.contribution_kind:
        return False
    if filters.source is not None and entry.source != filters.source:
        return False
    if filters.since is not None and entry.created_at < filters.since:
        return False
    if filters.until is not None and entry.created_at > filters.until:
        return False
    return True


def _summarize(payload: dict[str, Any]) -> str:
    for key in ("summary", "content", "text", "answer", "query"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return " ".join(value.split())
    return canonical_json(payload)
