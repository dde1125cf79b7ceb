"""Client-side consumption of categorization streams and standalone categorization runs."""
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable, Protocol

from . import config
from .cancellation import CancelToken
from .documents import ResultsRepository
from .engines import CategorizationError, build_result
from .models import (
    BatchEvent,
    CategorizationResult,
    Classification,
    CompleteEvent,
    ErrorEvent,
    Incident,
    InitEvent,
    TaxonomyType,
    TokenUsage,
)
from .taxonomies import get_taxonomy
from .usage import percentage

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class CategorizationStreamSource(Protocol):
    def stream_categorization(
        self, categorization_type: TaxonomyType, incidents: list[Incident]
    ) -> AsyncIterator: ...


class ClassificationAccumulator:
    """Classifications gathered across batches, unique by incident id."""

    def __init__(self):
        self.classifications: list[Classification] = []
        self._ids: set[str] = set()

    def __len__(self) -> int:
        return len(self.classifications)

    def add(self, classifications: Iterable[Classification]) -> list[Classification]:
        """Append classifications for ids not seen yet; return the ones added."""
        added = []
        for classification in classifications:
            if classification.id in self._ids:
                continue
            self._ids.add(classification.id)
            self.classifications.append(classification)
            added.append(classification)
        return added


@dataclass
class CategorizationOutcome:
    result: CategorizationResult
    usage: TokenUsage
    completed: bool


async def run_categorization(
    source: CategorizationStreamSource,
    categorization_type: "TaxonomyType | str",
    incidents: list[Incident],
    token: CancelToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> CategorizationOutcome:
    """Consume a categorization stream into one aggregated result.

    Each ``batch`` event replaces the current snapshot with everything
    accumulated so far; ``error`` raises ``CategorizationError``. The token is
    checked before every event and raises ``AnalysisCancelled`` once set.
    """
    taxonomy = get_taxonomy(categorization_type)
    total = len(incidents)
    accumulator = ClassificationAccumulator()
    accumulated = TokenUsage()
    result: CategorizationResult | None = None
    completed = False

    async with aclosing(source.stream_categorization(taxonomy.type, incidents)) as events:
        async for event in events:
            if token is not None:
                token.raise_if_cancelled()

            if isinstance(event, InitEvent):
                continue

            if isinstance(event, BatchEvent):
                accumulator.add(event.data.classifications)
                if event.usage is not None:
                    accumulated = accumulated + event.usage

                if on_progress is not None:
                    on_progress(
                        percentage(len(accumulator), total),
                        f"Categorizing with {taxonomy.label}: {len(accumulator)} of {total}",
                    )
                result = build_result(
                    accumulator.classifications,
                    event.data.categorization_type,
                    event.data.model,
                    accumulated,
                )
            elif isinstance(event, CompleteEvent):
                completed = True
            elif isinstance(event, ErrorEvent):
                raise CategorizationError(event.message)

            # a cancel requested while handling this event must not pull the next batch
            if token is not None:
                token.raise_if_cancelled()

    if result is None:
        if not completed:
            raise CategorizationError(f"Categorization {taxonomy.label} failed")
        result = build_result([], taxonomy.label, config.MODEL, accumulated)
    elif not completed:
        logger.warning("%s stream ended before completion, keeping partial result", taxonomy.label)

    return CategorizationOutcome(result=result, usage=accumulated, completed=completed)


class IncidentSource(CategorizationStreamSource, Protocol):
    async def search_incidents(self) -> list[Incident]: ...


@dataclass
class CategorizationRun:
    """A standalone categorization of every stored incident."""
    outcome: CategorizationOutcome
    processing_time: float
    saved_id: str | None = None


async def categorize_incidents(
    api: IncidentSource,
    categorization_type: "TaxonomyType | str",
    repository: ResultsRepository | None = None,
    user_email: str | None = None,
    token: CancelToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> CategorizationRun:
    """Categorize all incidents under one taxonomy and save the finished run."""
    incidents = await api.search_incidents()
    if not incidents:
        raise LookupError("No incidents found to categorize")

    started = time.monotonic()
    outcome = await run_categorization(api, categorization_type, incidents, token, on_progress)
    processing_time = time.monotonic() - started
    logger.info(
        "%s categorization of %d incidents took %.2fs (%d tokens)",
        outcome.result.categorization_type,
        len(incidents),
        processing_time,
        outcome.usage.total_tokens,
    )

    run = CategorizationRun(outcome=outcome, processing_time=processing_time)
    if repository is not None and outcome.completed:
        run.saved_id = repository.save_categorization(
            outcome.result, user_email or "", outcome.usage, processing_time
        )
    return run
