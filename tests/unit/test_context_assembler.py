import asyncio
from datetime import datetime, timezone

from agent_router.context.assembler import (
    ContextAssembler,
    InMemoryCorpus,
    format_context,
    select_within_budget,
)
from agent_router.context.scorer import RelevanceScorer
from agent_router.types import ItemKind, KnowledgeItem, Message, ScoredItem

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FailingCorpus:
    async def candidates(self, scope: str, limit: int) -> list[KnowledgeItem]:
        raise RuntimeError("corpus offline")


def _scored(item_id: str, score: float, tokens: int, kind: ItemKind = ItemKind.DOCUMENT) -> ScoredItem:
    return ScoredItem(
        item=KnowledgeItem(item_id=item_id, title=item_id, text="x", kind=kind),
        score=score,
        token_cost=tokens,
    )


def test_budget_plan_splits_token_limit() -> None:
    assembler = ContextAssembler(RelevanceScorer(), None, token_limits={"local": 1000, "cloud": 2000})

    plan = assembler.plan("local")

    assert (plan.conversation, plan.context, plan.response) == (400, 450, 150)
    assert assembler.token_limit(["cloud", "local"]) == 1000
    assert assembler.token_limit("unknown") == 16_000


def test_greedy_selection_skips_items_that_overflow() -> None:
    ranked = [_scored("big", 9.0, 300), _scored("mid", 8.0, 200), _scored("small", 7.0, 100, ItemKind.CODE)]

    bundle = select_within_budget(ranked, 450)

    assert [entry.item.item_id for entry in bundle.items] == ["big", "small"]
    assert bundle.tokens_used == 400
    assert bundle.included_by_kind == {"document": 1, "code": 1}


def test_assemble_never_exceeds_context_budget() -> None:
    corpus = InMemoryCorpus()
    for idx in range(5):
        corpus.add("team", KnowledgeItem(item_id=f"doc-{idx}", title=f"Alpha {idx}", text="alpha " * 100))
    assembler = ContextAssembler(RelevanceScorer(), corpus, token_limits={"local": 1000})

    bundle = asyncio.run(assembler.assemble("alpha", scope="team", backend_ids="local", now=NOW))

    assert bundle.token_budget == 450
    assert bundle.tokens_used <= bundle.token_budget
    assert len(bundle.items) == 3
    scores = [entry.score for entry in bundle.items]
    assert scores == sorted(scores, reverse=True)


def test_corpus_failure_yields_empty_bundle_with_budget() -> None:
    assembler = ContextAssembler(RelevanceScorer(), FailingCorpus(), token_limits={"local": 1000})

    bundle = asyncio.run(assembler.assemble("anything", scope="team", backend_ids="local"))

    assert bundle.is_empty
    assert bundle.tokens_used == 0
    assert bundle.token_budget == 450


def test_missing_corpus_yields_empty_bundle() -> None:
    assembler = ContextAssembler(RelevanceScorer(), None)

    bundle = asyncio.run(assembler.assemble("anything"))

    assert bundle.is_empty


def test_trim_history_keeps_most_recent_messages() -> None:
    assembler = ContextAssembler(RelevanceScorer(), None, token_limits={"local": 100})
    history = [Message(role="user", content=f"{idx}" * 80) for idx in range(3)]

    trimmed = assembler.trim_history(history, "local")

    assert [message.content[0] for message in trimmed] == ["1", "2"]


def test_format_context_truncates_and_groups_by_kind() -> None:
    doc = ScoredItem(
        item=KnowledgeItem(item_id="spec", title="Design Notes", text="d" * 1200),
        score=12.0,
        token_cost=300,
    )
    code = ScoredItem(
        item=KnowledgeItem(
            item_id="code",
            title="worker",
            text="print('hi')",
            path="jobs/worker.py",
            repository="acme/jobs",
            kind=ItemKind.CODE,
        ),
        score=8.0,
        token_cost=3,
    )
    bundle = select_within_budget([doc, code], 1000)

    rendered = format_context(bundle)

    assert rendered.startswith("## Available Knowledge Base")
    assert "**Design Notes** (Relevance: 12.0)" in rendered
    assert "d" * 1000 + "..." in rendered
    assert "**jobs/worker.py** (acme/jobs)" in rendered
    assert "```py" in rendered
    assert "1 documents and 1 code files (303 tokens)" in rendered
    assert format_context(select_within_budget([], 10)) == ""


def test_naive_access_times_do_not_break_assembly() -> None:
    corpus = InMemoryCorpus()
    corpus.add(
        "team",
        KnowledgeItem(item_id="doc", title="Alpha", text="alpha", last_accessed_at=datetime(2026, 3, 1, 11, 0)),
    )
    assembler = ContextAssembler(RelevanceScorer(), corpus, token_limits={"local": 1000})

    bundle = asyncio.run(assembler.assemble("alpha", scope="team", backend_ids="local", now=NOW))

    assert [entry.score for entry in bundle.items] == [4.5]
