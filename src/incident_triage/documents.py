"""File-backed document store for analysis results and evaluations."""
import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .models import (
    AnalyzedIncidentRecord,
    CategorizationResult,
    Classification,
    Incident,
    IncidentAnalysis,
    IncidentEvaluation,
    ResultsAnalysisDocument,
    TaxonomyType,
    TicketRecommendation,
    TokenUsage,
)
from .summary import build_summary, evaluation_stats

logger = logging.getLogger(__name__)

RESULTS = "results"
CATEGORIZATIONS = "categorizations"
SOLUTIONS = "solutions"


class ResultNotFoundError(LookupError):
    """No stored analysis has the requested id."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_analysis_id() -> str:
    return f"ANL-{int(time.time() * 1000):x}-{secrets.token_hex(3)}".upper()


class DocumentStore:
    """JSON documents grouped in collections: <root>/<collection>/<key>.json"""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str, key: str) -> Path:
        return self.root / collection / f"{key}.json"

    def add(self, collection: str, document: dict) -> str:
        """Store a new document under a generated key."""
        key = uuid.uuid4().hex
        self.set(collection, key, document)
        return key

    def set(self, collection: str, key: str, document: dict) -> None:
        """Write a document under a given key, replacing any previous one."""
        path = self._path(collection, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")

    def get(self, collection: str, key: str) -> dict | None:
        path = self._path(collection, key)
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
        return None

    def exists(self, collection: str, key: str) -> bool:
        return self._path(collection, key).exists()

    def update(self, collection: str, key: str, changes: dict) -> dict:
        """Apply field changes in place; dotted keys address nested fields."""
        document = self.get(collection, key)
        if document is None:
            raise KeyError(f"{collection}/{key}")

        for field, value in changes.items():
            *parents, leaf = field.split(".")
            target = document
            for parent in parents:
                target = target.setdefault(parent, {})
            target[leaf] = value

        self.set(collection, key, document)
        return document

    def delete(self, collection: str, key: str) -> bool:
        """Remove a document; False when it did not exist."""
        path = self._path(collection, key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def documents(self, collection: str) -> list[tuple[str, dict]]:
        """All (key, document) pairs of a collection."""
        directory = self.root / collection
        if not directory.exists():
            return []
        return [
            (path.stem, json.loads(path.read_text(encoding="utf-8")))
            for path in sorted(directory.glob("*.json"))
        ]


@dataclass
class LoadedAnalysis:
    """A stored analysis rebuilt into in-memory results."""
    analysis_id: str
    results: list[IncidentAnalysis]
    categorizations: dict[TaxonomyType, CategorizationResult]


def _record_for(analysis: IncidentAnalysis) -> AnalyzedIncidentRecord:
    recommendation = analysis.recommendation
    return AnalyzedIncidentRecord(
        id=analysis.incident.id,
        cert_category=analysis.cert_category,
        cert_reason=analysis.cert_reason,
        llm_category=analysis.llm_category,
        llm_reason=analysis.llm_reason,
        nist_category=analysis.nist_category,
        nist_reason=analysis.nist_reason,
        recommendation_id=recommendation.id if recommendation else None,
        recommendation_text=recommendation.recommendation if recommendation else None,
        recommendation_timestamp=recommendation.timestamp if recommendation else None,
        recommendation_usage=recommendation.usage if recommendation else None,
    )


class ResultsRepository:
    """Analysis runs and their human evaluations."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def save_results(
        self,
        analyses: list[IncidentAnalysis],
        categorizations: dict[TaxonomyType, CategorizationResult],
        requested_count: int,
        user_email: str,
    ) -> str:
        """Persist a finished run and return its analysis id."""
        if not user_email:
            raise ValueError("An authenticated user is required to save results")

        model_id = next((r.model for r in categorizations.values() if r is not None), "unknown")
        document = ResultsAnalysisDocument(
            analysis_id=new_analysis_id(),
            timestamp=_now_iso(),
            user_email=user_email,
            total_incidents=len(analyses),
            incident_count=requested_count,
            model=model_id,
            incidents=[_record_for(a) for a in analyses],
            summary=build_summary(analyses, categorizations, model_id),
        )
        key = self.store.add(RESULTS, document.to_wire())
        logger.info("Results saved as %s (%s)", key, document.analysis_id)
        return document.analysis_id

    def save_categorization(
        self,
        result: CategorizationResult,
        user_email: str,
        usage: TokenUsage | None = None,
        processing_time: float | None = None,
    ) -> str:
        """Persist a standalone categorization run and return its document key."""
        if not user_email:
            raise ValueError("An authenticated user is required to save categorizations")

        document = result.to_wire()
        document.pop("usage", None)
        document.update({"userEmail": user_email, "timestamp": _now_iso()})
        usage = usage or result.usage
        if usage is not None:
            document["tokenUsage"] = usage.to_wire()
        if processing_time is not None:
            document["processingTime"] = round(processing_time, 3)
        key = self.store.add(CATEGORIZATIONS, document)
        logger.info("%s categorization saved as %s", result.categorization_type, key)
        return key

    def save_solution(self, recommendation: TicketRecommendation) -> str:
        """Persist a recommendation accepted as the solution of its ticket."""
        key = self.store.add(SOLUTIONS, {
            "ticketId": recommendation.ticket_id,
            "recommendationId": recommendation.id,
            "recommendation": recommendation.recommendation,
            "confidence": recommendation.confidence,
            "timestamp": _now_iso(),
            "originalTimestamp": recommendation.timestamp,
        })
        logger.info("Solution for %s saved as %s", recommendation.ticket_id, key)
        return key

    def get(self, doc_id: str) -> ResultsAnalysisDocument | None:
        """Stored analysis by document key, or None."""
        data = self.store.get(RESULTS, doc_id)
        if data is None:
            return None
        return ResultsAnalysisDocument.model_validate({**data, "id": doc_id})

    def recent(self, limit: int = 10) -> list[ResultsAnalysisDocument]:
        """Most recent analyses first."""
        documents = [
            ResultsAnalysisDocument.model_validate({**data, "id": key})
            for key, data in self.store.documents(RESULTS)
        ]
        documents.sort(key=lambda d: d.timestamp, reverse=True)
        return documents[:limit]

    def delete(self, doc_id: str) -> None:
        """Delete a stored analysis; raises ResultNotFoundError when missing."""
        if not self.store.delete(RESULTS, doc_id):
            raise ResultNotFoundError(doc_id)

    def _require(self, doc_id: str) -> ResultsAnalysisDocument:
        document = self.get(doc_id)
        if document is None:
            raise ResultNotFoundError(doc_id)
        return document

    def _write_evaluations(self, doc_id: str, records: list[AnalyzedIncidentRecord]) -> ResultsAnalysisDocument:
        stats = evaluation_stats(r.evaluation for r in records if r.evaluation is not None)
        self.store.update(
            RESULTS,
            doc_id,
            {
                "incidents": [r.to_wire() for r in records],
                "summary.evaluationStats": stats.to_wire() if stats else None,
            },
        )
        return self._require(doc_id)

    def save_evaluation(self, doc_id: str, incident_id: str, evaluation: IncidentEvaluation) -> ResultsAnalysisDocument:
        """Attach an evaluation to one incident and refresh the evaluation stats."""
        document = self._require(doc_id)
        records = [
            r.model_copy(update={"evaluation": evaluation}) if r.id == incident_id else r
            for r in document.incidents
        ]
        return self._write_evaluations(doc_id, records)

    def delete_evaluation(self, doc_id: str, incident_id: str) -> ResultsAnalysisDocument:
        """Remove the evaluation of one incident and refresh the evaluation stats."""
        document = self._require(doc_id)
        records = [
            r.model_copy(update={"evaluation": None}) if r.id == incident_id else r
            for r in document.incidents
        ]
        return self._write_evaluations(doc_id, records)

    def load(self, document: ResultsAnalysisDocument, incidents: Iterable[Incident]) -> LoadedAnalysis:
        """Rebuild analysis results, filling incident contents from the given incidents."""
        known = {incident.id: incident for incident in incidents}
        results = []
        for record in document.incidents:
            incident = known.get(record.id) or Incident(
                id=record.id, content="", timestamp=_now_iso(), source="unknown"
            )
            recommendation = None
            if record.recommendation_text:
                recommendation = TicketRecommendation(
                    id=record.recommendation_id or "",
                    ticket_id=record.id,
                    recommendation=record.recommendation_text,
                    timestamp=record.recommendation_timestamp or _now_iso(),
                    confidence=0.85,
                    usage=record.recommendation_usage,
                )
            results.append(IncidentAnalysis(
                incident=incident,
                cert_category=record.cert_category,
                cert_reason=record.cert_reason,
                llm_category=record.llm_category,
                llm_reason=record.llm_reason,
                nist_category=record.nist_category,
                nist_reason=record.nist_reason,
                recommendation=recommendation,
                evaluation=record.evaluation,
            ))

        return LoadedAnalysis(
            analysis_id=document.analysis_id,
            results=results,
            categorizations=self._rebuild_categorizations(document),
        )

    @staticmethod
    def _rebuild_categorizations(document: ResultsAnalysisDocument) -> dict[TaxonomyType, CategorizationResult]:
        summary = document.summary
        tokens = summary.categorization_tokens
        rebuilt = {}
        for taxonomy_type in TaxonomyType:
            key = taxonomy_type.value
            counts = getattr(summary.categories_by_type, key)
            if not counts:
                continue
            classifications = [
                Classification(
                    id=record.id,
                    category=getattr(record, f"{key}_category"),
                    reason=getattr(record, f"{key}_reason") or "",
                )
                for record in document.incidents
                if getattr(record, f"{key}_category")
            ]
            rebuilt[taxonomy_type] = CategorizationResult(
                classifications=classifications,
                total_incidents=document.total_incidents,
                total_categories=len(counts),
                category_counts=counts,
                model=document.model,
                categorization_type=taxonomy_type.label,
                usage=(getattr(tokens, key) if tokens else None) or TokenUsage(),
            )
        return rebuilt
