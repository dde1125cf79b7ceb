"""Batch stream producer for the categorization endpoint."""
import logging
from typing import AsyncIterator, Protocol

from .engines import build_result, filter_classifications
from .models import (
    BatchEvent,
    CategorizationResult,
    CompleteEvent,
    ErrorEvent,
    Incident,
    InitEvent,
    Progress,
    TaxonomyType,
    TokenUsage,
)
from .taxonomies import Taxonomy, get_taxonomy
from .usage import percentage

logger = logging.getLogger(__name__)

BATCH_SIZE = 10


class ClassificationEngine(Protocol):
    model: str

    async def classify(self, batch: list[Incident], taxonomy: Taxonomy) -> CategorizationResult: ...


def validated_result(result: CategorizationResult, batch: list[Incident]) -> CategorizationResult:
    """Restrict an engine result to unique ids of the batch and recompute its stats."""
    classifications = filter_classifications(
        result.classifications, (incident.id for incident in batch)
    )
    return build_result(classifications, result.categorization_type, result.model, result.usage)


async def categorization_stream(
    incidents: list[Incident],
    categorization_type: "TaxonomyType | str",
    engine: ClassificationEngine,
    batch_size: int = BATCH_SIZE,
) -> AsyncIterator[InitEvent | BatchEvent | CompleteEvent | ErrorEvent]:
    """Classify incidents batch by batch, yielding stream events as they happen.

    Yields one ``init``, one ``batch`` per processed batch, then a single
    terminal ``complete`` carrying the cumulative usage, or ``error`` when the
    taxonomy is unknown or the engine fails. Batches are strictly sequential.
    """
    total = len(incidents)
    yield InitEvent(total=total, batch_size=batch_size)

    accumulated = TokenUsage()
    processed = 0
    try:
        taxonomy = get_taxonomy(categorization_type)
        for start in range(0, total, batch_size):
            batch = incidents[start:start + batch_size]
            result = validated_result(await engine.classify(batch, taxonomy), batch)

            processed += len(batch)
            usage = result.usage or TokenUsage()
            accumulated = accumulated + usage
            logger.info(
                "%s batch done: %d/%d incidents (%d classified)",
                taxonomy.label, processed, total, len(result.classifications),
            )
            yield BatchEvent(
                data=result,
                progress=Progress(processed=processed, total=total, percentage=percentage(processed, total)),
                usage=usage,
            )
    except Exception as e:
        logger.error("Categorization stream failed: %s", e)
        yield ErrorEvent(message=f"{type(e).__name__}: {e}")
        return

    yield CompleteEvent(total_tokens_global=accumulated)
