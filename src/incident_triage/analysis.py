"""Full analysis runs: fetch, categorize three ways, recommend, persist."""
import asyncio
import logging
from functools import partial
from typing import Callable, Protocol

from .cancellation import AnalysisCancelled, CancelToken, is_cancellation
from .categorization import CategorizationStreamSource, run_categorization
from .documents import ResultsRepository
from .models import (
    AnalysisStep,
    CategorizationResult,
    Incident,
    IncidentAnalysis,
    IncidentEvaluation,
    ResultsAnalysisDocument,
    StepStatus,
    TaxonomyType,
    TicketRecommendation,
    TokenUsage,
)
from .usage import percentage

logger = logging.getLogger(__name__)

ANALYSIS_STEPS = (
    ("fetch", "Fetching most recent incidents"),
    ("cert", "Categorizing with CERT"),
    ("llm", "Categorizing with LLM"),
    ("nist", "Categorizing with NIST"),
    ("recommendations", "Generating recommendations"),
    ("complete", "Analysis complete"),
)


class AnalysisInProgressError(RuntimeError):
    """start_analysis was called while another run is still going."""


class AnalysisAPI(CategorizationStreamSource, Protocol):
    async def search_incidents(self) -> list[Incident]: ...

    async def recommend(self, ticket_id: str) -> TicketRecommendation: ...


def _uncancel_current_task() -> None:
    task = asyncio.current_task()
    if task is not None and hasattr(task, "uncancel"):
        task.uncancel()


class AnalysisOrchestrator:
    """Runs analyses as single cancellable units with per-step status.

    Categorization failures mark their own step as ``error`` and the run goes
    on with the remaining taxonomies; any other failure stops the run and
    leaves later steps pending. Cancellation is never reported as an error.
    """

    def __init__(
        self,
        api: AnalysisAPI,
        repository: ResultsRepository | None = None,
        user_email: str | None = None,
        on_update: Callable[["AnalysisOrchestrator"], None] | None = None,
    ):
        self.api = api
        self.repository = repository
        self.user_email = user_email
        self.on_update = on_update
        self._token: CancelToken | None = None
        self._reset()

    def _reset(self) -> None:
        self.steps: list[AnalysisStep] = []
        self.current_step = ""
        self.results: list[IncidentAnalysis] = []
        self.categorizations: dict[TaxonomyType, CategorizationResult] = {}
        self.categorization_tokens: dict[TaxonomyType, TokenUsage] = {}
        self.saved_result_id: str | None = None
        self.is_loaded_from_history = False
        self.error: str | None = None
        self.save_error: str | None = None

    @property
    def running(self) -> bool:
        return self._token is not None

    def step(self, step_id: str) -> AnalysisStep:
        """Current state of one step by id."""
        return next(step for step in self.steps if step.id == step_id)

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)

    def _update_step(
        self,
        step_id: str,
        status: StepStatus,
        progress: int | None = None,
        progress_text: str | None = None,
    ) -> None:
        self.steps = [
            step.model_copy(update={"status": status, "progress": progress, "progress_text": progress_text})
            if step.id == step_id else step
            for step in self.steps
        ]
        self._notify()

    def _begin(self, step_id: str, progress: int | None = None, progress_text: str | None = None) -> None:
        self.current_step = step_id
        self._update_step(step_id, StepStatus.PROCESSING, progress, progress_text)

    def cancel_analysis(self) -> None:
        """Request cancellation of the running analysis, if any."""
        if self._token is not None:
            logger.info("Cancelling analysis")
            self._token.cancel()

    async def start_analysis(self, incident_count: int = 100) -> list[IncidentAnalysis]:
        """Run a full analysis over the first ``incident_count`` incidents."""
        if self._token is not None:
            raise AnalysisInProgressError("An analysis is already running")

        token = CancelToken()
        token.bind(asyncio.current_task())
        self._token = token
        self._reset()
        self.steps = [AnalysisStep(id=step_id, name=name) for step_id, name in ANALYSIS_STEPS]
        self._notify()

        try:
            await self._run(incident_count, token)
        except asyncio.CancelledError:
            if not token.cancelled:
                raise
            _uncancel_current_task()
            logger.info("Analysis cancelled")
        except Exception as e:
            if is_cancellation(e, token):
                logger.info("Analysis cancelled")
            else:
                logger.exception("Analysis failed")
                self.error = str(e) or type(e).__name__
                if self.current_step:
                    self._update_step(self.current_step, StepStatus.ERROR)
        finally:
            self._token = None

        return self.results

    async def _run(self, incident_count: int, token: CancelToken) -> None:
        token.raise_if_cancelled()

        self._begin("fetch")
        incidents = await self.api.search_incidents()
        token.raise_if_cancelled()
        if not incidents:
            raise LookupError("No incidents found in the database")
        selected = incidents[:incident_count]
        self._update_step("fetch", StepStatus.COMPLETED)

        categorizations = await self._categorize_all(selected, token)
        token.raise_if_cancelled()
        self.categorizations = categorizations

        self._begin("recommendations", 0, f"Generating recommendations: 0 of {len(selected)}")
        results = await self._generate_recommendations(selected, categorizations, token)
        token.raise_if_cancelled()
        self.results = results

        self._update_step("recommendations", StepStatus.COMPLETED)
        self._update_step("complete", StepStatus.COMPLETED)
        self.current_step = "complete"

        if self.repository is not None and self.user_email and results and not token.cancelled:
            try:
                self.saved_result_id = self.repository.save_results(
                    results, categorizations, incident_count, self.user_email
                )
            except Exception as e:
                logger.error("Failed to save analysis results: %s", e)
                self.save_error = f"Failed to save results: {e}"
            self._notify()

    async def _categorize_all(
        self, incidents: list[Incident], token: CancelToken
    ) -> dict[TaxonomyType, CategorizationResult]:
        categorizations: dict[TaxonomyType, CategorizationResult] = {}

        for taxonomy_type in TaxonomyType:
            token.raise_if_cancelled()
            step_id = taxonomy_type.value
            self._begin(step_id, 0, f"Categorizing with {taxonomy_type.label}: 0 of {len(incidents)}")

            try:
                outcome = await run_categorization(
                    self.api,
                    taxonomy_type,
                    incidents,
                    token,
                    on_progress=partial(self._update_step, step_id, StepStatus.PROCESSING),
                )
            except Exception as e:
                if is_cancellation(e, token):
                    raise
                logger.error("%s categorization failed: %s", taxonomy_type.label, e)
                self._update_step(step_id, StepStatus.ERROR)
                continue

            categorizations[taxonomy_type] = outcome.result
            if outcome.completed:
                self.categorization_tokens[taxonomy_type] = outcome.usage
            self._update_step(step_id, StepStatus.COMPLETED)

        return categorizations

    async def _generate_recommendations(
        self,
        incidents: list[Incident],
        categorizations: dict[TaxonomyType, CategorizationResult],
        token: CancelToken,
    ) -> list[IncidentAnalysis]:
        by_type = {
            taxonomy_type: {c.id: c for c in result.classifications}
            for taxonomy_type, result in categorizations.items()
        }
        total = len(incidents)
        analyses = []

        for index, incident in enumerate(incidents, 1):
            token.raise_if_cancelled()

            recommendation = None
            try:
                recommendation = await self.api.recommend(incident.id)
            except Exception as e:
                if is_cancellation(e, token):
                    raise AnalysisCancelled() from e
                logger.error("Failed to generate recommendation for %s: %s", incident.id, e)

            fields = {}
            for taxonomy_type, classifications in by_type.items():
                classification = classifications.get(incident.id)
                if classification is not None:
                    fields[f"{taxonomy_type.value}_category"] = classification.category
                    fields[f"{taxonomy_type.value}_reason"] = classification.reason
            analyses.append(IncidentAnalysis(incident=incident, recommendation=recommendation, **fields))

            self._update_step(
                "recommendations",
                StepStatus.PROCESSING,
                percentage(index, total),
                f"Generating recommendations: {index} of {total}",
            )

        return analyses

    def _require_repository(self) -> ResultsRepository:
        if self.repository is None:
            raise RuntimeError("No results repository configured")
        return self.repository

    async def load_results_from_history(self, document: ResultsAnalysisDocument) -> None:
        """Show a stored analysis as the current one."""
        repository = self._require_repository()
        incidents = await self.api.search_incidents()
        loaded = repository.load(document, incidents)

        self.results = loaded.results
        self.categorizations = loaded.categorizations
        summary_tokens = document.summary.categorization_tokens
        self.categorization_tokens = {
            taxonomy_type: getattr(summary_tokens, taxonomy_type.value)
            for taxonomy_type in TaxonomyType
            if summary_tokens is not None and getattr(summary_tokens, taxonomy_type.value) is not None
        }
        self.saved_result_id = loaded.analysis_id
        self.is_loaded_from_history = True
        self._notify()

    def save_evaluation(self, doc_id: str, incident_id: str, evaluation: IncidentEvaluation) -> ResultsAnalysisDocument:
        """Store an evaluation and mirror it on the current results."""
        document = self._require_repository().save_evaluation(doc_id, incident_id, evaluation)
        self._apply_evaluation(document, incident_id, evaluation)
        return document

    def delete_evaluation(self, doc_id: str, incident_id: str) -> ResultsAnalysisDocument:
        """Remove an evaluation and clear it from the current results."""
        document = self._require_repository().delete_evaluation(doc_id, incident_id)
        self._apply_evaluation(document, incident_id, None)
        return document

    def _apply_evaluation(
        self, document: ResultsAnalysisDocument, incident_id: str, evaluation: IncidentEvaluation | None
    ) -> None:
        if self.saved_result_id != document.analysis_id:
            return
        self.results = [
            r.model_copy(update={"evaluation": evaluation}) if r.incident.id == incident_id else r
            for r in self.results
        ]
        self._notify()
