"""LLM-backed engines: batch classification, recommendations and grounded chat."""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable

from pydantic import ValidationError

from .client import APIClient, parse_json
from .models import (
    CategorizationResult,
    Classification,
    Incident,
    ScoredIncident,
    TicketRecommendation,
    TokenUsage,
)
from .prompts import CHAT_SYSTEM_PROMPT, RECOMMEND_PROMPT, RECOMMEND_SYSTEM_PROMPT
from .store import IncidentStore
from .summary import category_histogram
from .taxonomies import Taxonomy

logger = logging.getLogger(__name__)

RECOMMENDATION_CONFIDENCE = 0.85
CHAT_SEARCH_TOP_K = 1000
CHAT_RELATIVE_THRESHOLD = 0.85
CHAT_MAX_DOCUMENTS = 100


class CategorizationError(RuntimeError):
    """The classification engine failed for a batch."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_recommendation_id() -> str:
    return f"REC-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def filter_classifications(
    classifications: Iterable[Classification],
    batch_ids: Iterable[str],
) -> list[Classification]:
    """Keep classifications whose id belongs to the batch, first occurrence only."""
    allowed = set(batch_ids)
    seen: set[str] = set()
    accepted = []
    for classification in classifications:
        if classification.id in allowed and classification.id not in seen:
            seen.add(classification.id)
            accepted.append(classification)
    return accepted


def build_result(
    classifications: list[Classification],
    categorization_type: str,
    model: str,
    usage: TokenUsage | None = None,
) -> CategorizationResult:
    """Categorization result with its category histogram."""
    counts = category_histogram(classifications)
    return CategorizationResult(
        classifications=list(classifications),
        total_incidents=len(classifications),
        total_categories=len(counts),
        category_counts=counts,
        model=model,
        categorization_type=categorization_type,
        usage=usage,
    )


def _classification_items(data) -> list:
    if isinstance(data, dict):
        items = data.get("classifications", [])
    else:
        items = data
    return items if isinstance(items, list) else []


class Classifier:
    """Classification engine: one LLM call per batch of incidents."""

    def __init__(self, api_client: APIClient):
        self.api = api_client

    @property
    def model(self) -> str:
        return self.api.model

    async def classify(self, batch: list[Incident], taxonomy: Taxonomy) -> CategorizationResult:
        """Classify a batch under the taxonomy.

        Items that do not validate or name a category outside the taxonomy are
        dropped. Ids are not checked against the batch here; the stream
        producer filters them.
        """
        try:
            response = await self.api.call(taxonomy.build_prompt(batch), max_tokens=4000, temperature=0.1)
            data = parse_json(response.text)
        except Exception as e:
            logger.error("Batch categorization failed (%s): %s", taxonomy.label, e)
            raise CategorizationError(
                f"Failed to categorize incident batch ({taxonomy.label}): {e}"
            ) from e

        timestamps = {incident.id: incident.timestamp for incident in batch}
        candidates = []
        for item in _classification_items(data):
            try:
                classification = Classification.model_validate(item)
            except ValidationError:
                continue
            if not taxonomy.accepts(classification):
                continue
            if not classification.timestamp:
                classification.timestamp = timestamps.get(classification.id, "")
            candidates.append(classification)

        return build_result(candidates, taxonomy.label, self.model, response.usage)


class Recommender:
    """Recommendation engine: remediation advice for a single incident."""

    def __init__(self, api_client: APIClient):
        self.api = api_client

    async def recommend(self, incident_content: str) -> tuple[str, TokenUsage]:
        """Free-form recommendation text for incident content, with its usage."""
        response = await self.api.call(
            RECOMMEND_PROMPT.format(incident_content=incident_content),
            system=RECOMMEND_SYSTEM_PROMPT,
            temperature=0.7,
        )
        return response.text, response.usage

    async def generate_ticket_recommendation(self, incident: Incident) -> TicketRecommendation:
        """Recommendation for a stored incident."""
        text, usage = await self.recommend(incident.content)
        return TicketRecommendation(
            id=new_recommendation_id(),
            ticket_id=incident.id,
            recommendation=text,
            timestamp=now_iso(),
            confidence=RECOMMENDATION_CONFIDENCE,
            usage=usage,
        )

    async def stream_ticket_recommendation(self, incident: Incident) -> AsyncIterator[dict]:
        """Metadata first, then text deltas, then usage; an error event on failure."""
        yield {
            "type": "metadata",
            "id": new_recommendation_id(),
            "ticketId": incident.id,
            "timestamp": now_iso(),
            "confidence": RECOMMENDATION_CONFIDENCE,
        }
        try:
            async for chunk in self.api.stream(
                RECOMMEND_PROMPT.format(incident_content=incident.content),
                system=RECOMMEND_SYSTEM_PROMPT,
            ):
                if chunk.usage is not None:
                    yield {"type": "finish", "usage": chunk.usage.to_wire()}
                elif chunk.text:
                    yield {"type": "text", "text": chunk.text}
        except Exception as e:
            logger.exception("Recommendation stream failed for %s", incident.id)
            yield {"type": "error", "message": str(e) or "Unknown error"}


class ContextChat:
    """Chat answers grounded in the incidents most similar to the question."""

    def __init__(self, store: IncidentStore, api_client: APIClient):
        self.store = store
        self.api = api_client

    def search_relevant_documents(self, query: str) -> list[ScoredIncident]:
        """Incidents scoring at least 85% of the best match, at most 100 of them."""
        matches = sorted(self.store.search(query, CHAT_SEARCH_TOP_K), key=lambda m: m.score, reverse=True)
        if not matches:
            return []
        threshold = matches[0].score * CHAT_RELATIVE_THRESHOLD
        return [m for m in matches if m.score >= threshold][:CHAT_MAX_DOCUMENTS]

    async def stream_answer(self, prompt: str) -> AsyncIterator[dict]:
        """Metadata event with the context used, then the streamed answer."""
        relevant = self.search_relevant_documents(prompt)
        logger.info("Relevant docs: %d", len(relevant))

        yield {
            "type": "metadata",
            "contextUtilization": relevant[0].score * 100 if relevant else 0,
            "similarityScores": [
                {
                    "documentId": doc.id,
                    "similarity": doc.score,
                    "incident": {"id": doc.id, "timestamp": doc.timestamp, "source": doc.source or ""},
                }
                for doc in relevant
            ],
        }

        context = "\n\n".join(doc.content for doc in relevant)
        try:
            async for chunk in self.api.stream(prompt, system=CHAT_SYSTEM_PROMPT.format(context=context)):
                if chunk.usage is not None:
                    yield {"type": "finish", "usage": chunk.usage.to_wire()}
                elif chunk.text:
                    yield {"type": "text", "text": chunk.text}
        except Exception as e:
            logger.exception("Chat stream failed")
            yield {"type": "error", "message": str(e) or "Unknown error"}
