"""Incident analysis pipeline - full analysis runs and standalone categorization runs."""
import asyncio
import sys

import httpx

from . import config
from .analysis import AnalysisOrchestrator
from .api_client import TriageAPIClient
from .categorization import categorize_incidents
from .documents import DocumentStore, ResultsRepository
from .models import IncidentAnalysis, ResultsAnalysisDocument, StepStatus, TaxonomyType


def _step_printer():
    """on_update callback printing each step line once per change."""
    printed = {}

    def on_update(orchestrator: AnalysisOrchestrator) -> None:
        for step in orchestrator.steps:
            if step.status == StepStatus.PENDING:
                continue
            line = f"[{step.status.value}] {step.name}"
            if step.progress_text and step.status == StepStatus.PROCESSING:
                line += f" - {step.progress_text}"
            if printed.get(step.id) != line:
                printed[step.id] = line
                print(line)

    return on_update


def _report_to_markdown(results: list[IncidentAnalysis], document: ResultsAnalysisDocument | None) -> str:
    """Convert analysis results to markdown format."""
    lines = ["# Incident Analysis Report", ""]

    if document is not None:
        summary = document.summary
        lines.extend([
            f"**Analysis:** {document.analysis_id}",
            f"**Model:** {document.model}",
            f"**Incidents:** {document.total_incidents}",
            f"**Recommendation success rate:** {summary.success_rate}%",
            "",
        ])
        for taxonomy_type in TaxonomyType:
            counts = getattr(summary.categories_by_type, taxonomy_type.value)
            if counts:
                lines.append(f"## {taxonomy_type.label} categories")
                lines.extend(f"- {c.category}: {c.count}" for c in counts)
                lines.append("")
        if summary.total_tokens_and_costs:
            costs = summary.total_tokens_and_costs
            lines.extend([
                "## Tokens",
                f"- Total: {costs.total_tokens.total_tokens}",
                f"- Estimated cost: US$ {costs.estimated_costs.usd:.4f} / R$ {costs.estimated_costs.brl:.4f}",
                "",
            ])

    lines.append("## Incidents")
    for result in results:
        lines.extend([
            f"### {result.incident.id}",
            f"- **CERT:** {result.cert_category or 'N/A'}",
            f"- **LLM:** {result.llm_category or 'N/A'}",
            f"- **NIST:** {result.nist_category or 'N/A'}",
        ])
        if result.recommendation:
            lines.extend(["", result.recommendation.recommendation.strip()])
        lines.append("")

    return "\n".join(lines)


async def run_pipeline(incident_count: int = 100):
    """Run a full analysis against the configured triage API."""
    print("=== Incident Analysis Pipeline ===\n")

    repository = ResultsRepository(DocumentStore(config.DATA_DIR))
    async with TriageAPIClient(config.API_URL) as api:
        orchestrator = AnalysisOrchestrator(
            api,
            repository=repository,
            user_email=config.USER_EMAIL,
            on_update=_step_printer(),
        )
        results = await orchestrator.start_analysis(incident_count)

    if orchestrator.error:
        print(f"\nError: {orchestrator.error}")
        return
    if orchestrator.save_error:
        print(f"\nWarning: {orchestrator.save_error}")

    print(f"\n✓ Analysed {len(results)} incidents")
    for taxonomy_type, usage in orchestrator.categorization_tokens.items():
        print(f"  {taxonomy_type.label}: {usage.total_tokens} tokens")

    document = None
    if orchestrator.saved_result_id:
        document = next(
            (d for d in repository.recent(limit=50) if d.analysis_id == orchestrator.saved_result_id),
            None,
        )
        print(f"✓ Saved as {orchestrator.saved_result_id}")

    if results:
        reports_dir = config.DATA_DIR / "reports"
        reports_dir.mkdir(parents=True, exist_ok=True)
        md_file = reports_dir / f"report_{orchestrator.saved_result_id or 'unsaved'}.md"
        md_file.write_text(_report_to_markdown(results, document), encoding="utf-8")
        print(f"Full report: {md_file}")


async def run_categorize(
    categorization_type: str,
    client: httpx.AsyncClient | None = None,
    repository: ResultsRepository | None = None,
):
    """Categorize every stored incident under one taxonomy and save the run."""
    print(f"=== {categorization_type.upper()} Categorization ===\n")

    repository = repository or ResultsRepository(DocumentStore(config.DATA_DIR))

    def on_progress(progress: int, text: str) -> None:
        print(f"[{progress}%] {text}")

    async with TriageAPIClient(config.API_URL, client=client) as api:
        run = await categorize_incidents(
            api,
            categorization_type,
            repository=repository if config.USER_EMAIL else None,
            user_email=config.USER_EMAIL,
            on_progress=on_progress,
        )

    result = run.outcome.result
    print(f"\n✓ {result.total_incidents} incidents in {result.total_categories} categories")
    for count in result.category_counts:
        print(f"  {count.category}: {count.count}")
    print(f"  {run.outcome.usage.total_tokens} tokens in {run.processing_time:.1f}s")
    if run.saved_id:
        print(f"✓ Saved as {run.saved_id}")
    elif not config.USER_EMAIL:
        print("Not saved: set TRIAGE_USER_EMAIL to keep categorization runs")
    return run


if __name__ == "__main__":
    config.configure_logging()
    if len(sys.argv) > 2 and sys.argv[1] == "categorize":
        asyncio.run(run_categorize(sys.argv[2]))
    else:
        count = int(sys.argv[1]) if len(sys.argv) > 1 else 100
        asyncio.run(run_pipeline(count))
