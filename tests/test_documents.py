import pytest

from fakes import make_incidents
from incident_triage.documents import CATEGORIZATIONS, RESULTS, SOLUTIONS, DocumentStore, ResultNotFoundError
from incident_triage.engines import build_result
from incident_triage.models import (
    CategorizationReview,
    Classification,
    IncidentAnalysis,
    IncidentEvaluation,
    RecommendationReview,
    TaxonomyType,
    TicketRecommendation,
    TokenUsage,
)


def sample_run():
    incidents = make_incidents(2)
    cert = build_result(
        [Classification(id="INC-0", category="Scan", reason="sweep"), Classification(id="INC-1", category="DoS")],
        "CERT",
        "claude-haiku-4-5",
        TokenUsage.from_counts(200, 40),
    )
    analyses = [
        IncidentAnalysis(
            incident=incidents[0],
            cert_category="Scan",
            cert_reason="sweep",
            recommendation=TicketRecommendation(
                id="REC-1",
                ticket_id="INC-0",
                recommendation="Block the scanner",
                timestamp="2024-05-01T12:00:00Z",
                confidence=0.85,
                usage=TokenUsage.from_counts(100, 300),
            ),
        ),
        IncidentAnalysis(incident=incidents[1], cert_category="DoS"),
    ]
    return incidents, analyses, {TaxonomyType.CERT: cert}


def evaluation_for(incident_id, rating, cert_correct):
    return IncidentEvaluation(
        incident_id=incident_id,
        evaluator_email="reviewer@example.com",
        evaluation_timestamp="2024-05-02T09:00:00Z",
        categorization=CategorizationReview(cert_correct=cert_correct),
        recommendation=RecommendationReview(rating=rating),
    )


def test_document_store_crud(tmp_path):
    store = DocumentStore(tmp_path)

    key = store.add("things", {"name": "a", "meta": {"size": 1}})
    assert store.exists("things", key)
    assert store.get("things", key) == {"name": "a", "meta": {"size": 1}}

    updated = store.update("things", key, {"meta.size": 2, "meta.tags.first": "x"})
    assert updated == {"name": "a", "meta": {"size": 2, "tags": {"first": "x"}}}
    assert store.get("things", key) == updated

    assert store.documents("things") == [(key, updated)]
    assert store.delete("things", key)
    assert not store.delete("things", key)
    assert store.get("things", key) is None
    assert store.documents("missing") == []


def test_update_of_missing_document_raises(tmp_path):
    with pytest.raises(KeyError):
        DocumentStore(tmp_path).update("things", "nope", {"a": 1})


def test_save_results_requires_user(repository):
    _, analyses, categorizations = sample_run()

    with pytest.raises(ValueError):
        repository.save_results(analyses, categorizations, 2, "")


def test_saved_results_carry_summary(repository):
    _, analyses, categorizations = sample_run()

    analysis_id = repository.save_results(analyses, categorizations, 10, "analyst@example.com")

    [document] = repository.recent()
    assert document.analysis_id == analysis_id
    assert analysis_id.startswith("ANL-")
    assert document.total_incidents == 2
    assert document.incident_count == 10
    assert document.model == "claude-haiku-4-5"
    assert document.incidents[0].recommendation_text == "Block the scanner"
    assert document.incidents[1].recommendation_id is None

    summary = document.summary
    assert summary.total_categorized == 1
    assert summary.total_recommendations == 1
    assert summary.success_rate == 50
    assert [(c.category, c.count) for c in summary.categories_by_type.cert] == [("Scan", 1), ("DoS", 1)]
    assert summary.recommendation_tokens.average_tokens_per_recommendation == 400
    assert summary.categorization_tokens.total.total_tokens == 240
    assert summary.total_tokens_and_costs.total_tokens.total_tokens == 640
    assert summary.evaluation_stats is None


def test_stored_document_uses_wire_names(repository):
    _, analyses, categorizations = sample_run()
    repository.save_results(analyses, categorizations, 2, "analyst@example.com")

    [(_, raw)] = repository.store.documents(RESULTS)

    assert raw["userEmail"] == "analyst@example.com"
    assert set(raw["summary"]["totalTokensAndCosts"]["estimatedCosts"]) == {"USD", "BRL"}


def test_recent_is_newest_first(repository):
    for timestamp in ("2024-05-01T00:00:00Z", "2024-05-03T00:00:00Z", "2024-05-02T00:00:00Z"):
        repository.store.add(RESULTS, {
            "analysisId": f"ANL-{timestamp[:10]}",
            "timestamp": timestamp,
            "userEmail": "a@b.c",
            "totalIncidents": 0,
            "incidentCount": 0,
            "model": "m",
            "incidents": [],
            "summary": {"totalCategorized": 0, "totalRecommendations": 0, "successRate": 0, "categoriesByType": {}},
        })

    assert [d.analysis_id for d in repository.recent(limit=2)] == ["ANL-2024-05-03", "ANL-2024-05-02"]


def test_evaluations_update_stats(repository):
    _, analyses, categorizations = sample_run()
    repository.save_results(analyses, categorizations, 2, "analyst@example.com")
    doc_id = repository.recent()[0].id

    repository.save_evaluation(doc_id, "INC-0", evaluation_for("INC-0", 4, True))
    document = repository.save_evaluation(doc_id, "INC-1", evaluation_for("INC-1", 2, None))

    stats = document.summary.evaluation_stats
    assert stats.total_evaluations == 2
    assert stats.average_recommendation_rating == 3.0
    assert (stats.categorization_accuracy.cert.correct, stats.categorization_accuracy.cert.total) == (1, 1)
    assert stats.categorization_accuracy.nist.total == 0
    assert document.incidents[0].evaluation.recommendation.rating == 4

    repository.delete_evaluation(doc_id, "INC-0")
    document = repository.delete_evaluation(doc_id, "INC-1")
    assert document.summary.evaluation_stats is None
    assert all(r.evaluation is None for r in document.incidents)


def test_load_rebuilds_results(repository):
    incidents, analyses, categorizations = sample_run()
    repository.save_results(analyses, categorizations, 2, "analyst@example.com")
    document = repository.recent()[0]

    loaded = repository.load(document, incidents[:1])

    assert loaded.analysis_id == document.analysis_id
    assert loaded.results[0].incident == incidents[0]
    assert loaded.results[0].recommendation.recommendation == "Block the scanner"
    assert loaded.results[1].incident.content == ""
    assert loaded.results[1].recommendation is None
    cert = loaded.categorizations[TaxonomyType.CERT]
    assert [c.id for c in cert.classifications] == ["INC-0", "INC-1"]
    assert cert.usage.total_tokens == 240
    assert set(loaded.categorizations) == {TaxonomyType.CERT}


def test_delete_missing_analysis(repository):
    with pytest.raises(ResultNotFoundError):
        repository.delete("missing")
    with pytest.raises(ResultNotFoundError):
        repository.save_evaluation("missing", "INC-0", evaluation_for("INC-0", 1, False))


def test_save_categorization_keeps_token_usage(repository):
    _, _, categorizations = sample_run()
    cert = categorizations[TaxonomyType.CERT]

    key = repository.save_categorization(cert, "analyst@example.com", processing_time=1.23456)

    document = repository.store.get(CATEGORIZATIONS, key)
    assert document["userEmail"] == "analyst@example.com"
    assert document["tokenUsage"]["totalTokens"] == 240
    assert document["processingTime"] == 1.235
    assert [c["id"] for c in document["classifications"]] == ["INC-0", "INC-1"]
    assert document["timestamp"].endswith("Z")


def test_save_categorization_requires_user(repository):
    _, _, categorizations = sample_run()

    with pytest.raises(ValueError):
        repository.save_categorization(categorizations[TaxonomyType.CERT], "")


def test_save_solution(repository):
    _, analyses, _ = sample_run()
    recommendation = analyses[0].recommendation

    key = repository.save_solution(recommendation)

    document = repository.store.get(SOLUTIONS, key)
    assert document["ticketId"] == "INC-0"
    assert document["recommendationId"] == "REC-1"
    assert document["recommendation"] == "Block the scanner"
    assert document["confidence"] == 0.85
    assert document["originalTimestamp"] == "2024-05-01T12:00:00Z"
    assert document["timestamp"] != document["originalTimestamp"]
