import pytest

from fakes import FakeAPI, FakeEngine, make_incidents
from incident_triage.cancellation import AnalysisCancelled, CancelToken
from incident_triage.categorization import ClassificationAccumulator, categorize_incidents, run_categorization
from incident_triage.documents import CATEGORIZATIONS
from incident_triage.engines import CategorizationError, build_result
from incident_triage.models import (
    BatchEvent,
    Classification,
    CompleteEvent,
    ErrorEvent,
    InitEvent,
    Progress,
    TaxonomyType,
    TokenUsage,
)


class ScriptedSource:
    """Replays a fixed list of stream events."""

    def __init__(self, events):
        self.events = events
        self.closed = False

    async def stream_categorization(self, categorization_type, incidents):
        try:
            for event in self.events:
                yield event
        finally:
            self.closed = True


def batch_event(ids, processed, total, category="DoS"):
    classifications = [Classification(id=i, category=category) for i in ids]
    return BatchEvent(
        data=build_result(classifications, "CERT", "fake-model", TokenUsage.from_counts(10, 5)),
        progress=Progress(processed=processed, total=total, percentage=processed * 100 // total),
        usage=TokenUsage.from_counts(10, 5),
    )


async def test_aggregates_all_batches():
    incidents = make_incidents(25)
    progress = []

    outcome = await run_categorization(
        FakeAPI(incidents), TaxonomyType.CERT, incidents, on_progress=lambda p, text: progress.append((p, text))
    )

    assert outcome.completed
    assert len(outcome.result.classifications) == 25
    assert outcome.result.total_incidents == 25
    assert outcome.result.model == "fake-model"
    assert outcome.usage == TokenUsage(prompt_tokens=30, completion_tokens=15, total_tokens=45)
    assert outcome.result.usage == outcome.usage
    assert progress == [
        (40, "Categorizing with CERT: 10 of 25"),
        (80, "Categorizing with CERT: 20 of 25"),
        (100, "Categorizing with CERT: 25 of 25"),
    ]


def test_accumulator_ignores_repeated_ids():
    accumulator = ClassificationAccumulator()
    first = [Classification(id="a", category="DoS"), Classification(id="b", category="Web")]

    assert accumulator.add(first) == first
    assert accumulator.add(first) == []
    assert accumulator.add([Classification(id="a", category="Scan")]) == []
    assert [c.category for c in accumulator.classifications] == ["DoS", "Web"]


async def test_replayed_batch_is_counted_once():
    event = batch_event(["INC-0", "INC-1"], 2, 2)
    source = ScriptedSource([InitEvent(total=2, batch_size=10), event, event, CompleteEvent()])

    outcome = await run_categorization(source, "cert", make_incidents(2))

    assert [c.id for c in outcome.result.classifications] == ["INC-0", "INC-1"]
    assert outcome.result.category_counts[0].count == 2


async def test_error_event_raises():
    source = ScriptedSource([
        InitEvent(total=20, batch_size=10),
        batch_event(["INC-0"], 10, 20),
        ErrorEvent(message="CategorizationError: model unavailable"),
    ])

    with pytest.raises(CategorizationError, match="model unavailable"):
        await run_categorization(source, "cert", make_incidents(20))
    assert source.closed


async def test_completed_stream_without_batches_gives_empty_result():
    source = ScriptedSource([InitEvent(total=0, batch_size=10), CompleteEvent(total_tokens_global=TokenUsage())])

    outcome = await run_categorization(source, "nist", [])

    assert outcome.completed
    assert outcome.result.classifications == []
    assert outcome.result.categorization_type == "NIST"


async def test_stream_without_outcome_is_a_failure():
    with pytest.raises(CategorizationError, match="Categorization LLM failed"):
        await run_categorization(ScriptedSource([InitEvent(total=1, batch_size=10)]), "llm", make_incidents(1))


async def test_truncated_stream_keeps_partial_result(caplog):
    source = ScriptedSource([InitEvent(total=20, batch_size=10), batch_event(["INC-0", "INC-1"], 10, 20)])

    outcome = await run_categorization(source, "cert", make_incidents(20))

    assert not outcome.completed
    assert len(outcome.result.classifications) == 2
    assert "before completion" in caplog.text


async def test_cancellation_stops_consuming_events():
    incidents = make_incidents(25)
    engine = FakeEngine()
    token = CancelToken()

    def cancel_after_first_batch(progress, text):
        token.cancel()

    with pytest.raises(AnalysisCancelled):
        await run_categorization(
            FakeAPI(incidents, engine), "cert", incidents, token, on_progress=cancel_after_first_batch
        )

    assert len(engine.calls) == 1


async def test_standalone_run_is_saved_with_usage_and_timing(repository):
    api = FakeAPI(make_incidents(15))

    run = await categorize_incidents(api, "nist", repository, "analyst@example.com")

    assert api.stream_calls == ["nist"]
    assert run.outcome.completed
    assert run.processing_time >= 0
    [(key, document)] = repository.store.documents(CATEGORIZATIONS)
    assert key == run.saved_id
    assert document["userEmail"] == "analyst@example.com"
    assert document["categorizationType"] == "NIST"
    assert document["totalIncidents"] == 15
    assert document["categoryCounts"] == [{"category": "CAT 0", "count": 15}]
    assert document["tokenUsage"] == {"promptTokens": 20, "completionTokens": 10, "totalTokens": 30}
    assert document["processingTime"] == pytest.approx(run.processing_time, abs=0.001)
    assert "usage" not in document


async def test_standalone_run_without_repository_is_not_saved():
    progress = []

    run = await categorize_incidents(FakeAPI(make_incidents(3)), "cert", on_progress=lambda p, _: progress.append(p))

    assert run.saved_id is None
    assert run.outcome.result.total_incidents == 3
    assert progress == [100]


async def test_standalone_run_needs_incidents(repository):
    with pytest.raises(LookupError):
        await categorize_incidents(FakeAPI([]), "llm", repository, "a@b.c")
    assert repository.store.documents(CATEGORIZATIONS) == []


async def test_failed_standalone_run_saves_nothing(repository):
    api = FakeAPI(make_incidents(3), fail_types={"cert"})

    with pytest.raises(CategorizationError):
        await categorize_incidents(api, "cert", repository, "a@b.c")
    assert repository.store.documents(CATEGORIZATIONS) == []


async def test_standalone_run_requires_user_to_save(repository):
    with pytest.raises(ValueError):
        await categorize_incidents(FakeAPI(make_incidents(2)), "cert", repository, None)
