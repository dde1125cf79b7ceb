"""Aggregate statistics for persisted analysis runs."""
from typing import Iterable

import pandas as pd

from .models import (
    AccuracyCount,
    AnalysisSummary,
    CategorizationAccuracy,
    CategorizationResult,
    CategorizationTokens,
    CategoriesByType,
    CategoryCount,
    Classification,
    EstimatedCosts,
    EvaluationStats,
    IncidentAnalysis,
    IncidentEvaluation,
    RecommendationTokens,
    TaxonomyType,
    TokenUsage,
    TotalTokensAndCosts,
)
from .usage import calculate_token_cost, round_half_up, sum_usage


def category_histogram(classifications: Iterable[Classification]) -> list[CategoryCount]:
    """Histogram of categories in first-seen order."""
    frame = pd.DataFrame([c.model_dump() for c in classifications], columns=["id", "category"])
    frame = frame[frame["category"].fillna("") != ""]
    if frame.empty:
        return []
    counts = frame.groupby("category", sort=False).size()
    return [CategoryCount(category=str(category), count=int(count)) for category, count in counts.items()]


def recommendation_tokens(analyses: Iterable[IncidentAnalysis]) -> RecommendationTokens | None:
    """Token totals and per-recommendation average, or None without usage."""
    rows = [
        a.recommendation.usage.model_dump()
        for a in analyses
        if a.recommendation is not None and a.recommendation.usage is not None
    ]
    if not rows:
        return None

    totals = pd.DataFrame(rows).sum()
    return RecommendationTokens(
        total_prompt_tokens=int(totals["prompt_tokens"]),
        total_completion_tokens=int(totals["completion_tokens"]),
        total_tokens=int(totals["total_tokens"]),
        average_tokens_per_recommendation=round_half_up(totals["total_tokens"] / len(rows)),
    )


def evaluation_stats(evaluations: Iterable[IncidentEvaluation]) -> EvaluationStats | None:
    """Average rating and per-taxonomy accuracy, or None without evaluations."""
    frame = pd.DataFrame(
        [
            {
                "rating": e.recommendation.rating,
                "cert": e.categorization.cert_correct,
                "llm": e.categorization.llm_correct,
                "nist": e.categorization.nist_correct,
            }
            for e in evaluations
        ],
        columns=["rating", "cert", "llm", "nist"],
    )
    if frame.empty:
        return None

    def accuracy(column: str) -> AccuracyCount:
        reviewed = frame[column].dropna()
        return AccuracyCount(correct=int(reviewed.eq(True).sum()), total=int(len(reviewed)))

    return EvaluationStats(
        total_evaluations=len(frame),
        average_recommendation_rating=float(frame["rating"].mean()),
        categorization_accuracy=CategorizationAccuracy(
            cert=accuracy("cert"), llm=accuracy("llm"), nist=accuracy("nist")
        ),
    )


def build_summary(
    analyses: list[IncidentAnalysis],
    categorizations: dict[TaxonomyType, CategorizationResult],
    model_id: str,
) -> AnalysisSummary:
    """Summary block stored with an analysis run."""
    cert = categorizations.get(TaxonomyType.CERT)
    llm = categorizations.get(TaxonomyType.LLM)
    nist = categorizations.get(TaxonomyType.NIST)

    rec_tokens = recommendation_tokens(analyses)
    categorization_total = sum_usage(r.usage for r in (cert, llm, nist) if r is not None)
    all_tokens = categorization_total
    if rec_tokens is not None:
        all_tokens = all_tokens + TokenUsage(
            prompt_tokens=rec_tokens.total_prompt_tokens,
            completion_tokens=rec_tokens.total_completion_tokens,
            total_tokens=rec_tokens.total_tokens,
        )
    cost_usd, cost_brl = calculate_token_cost(all_tokens, model_id)

    total_recommendations = sum(1 for a in analyses if a.recommendation is not None)
    return AnalysisSummary(
        total_categorized=sum(1 for r in (cert, llm, nist) if r is not None),
        total_recommendations=total_recommendations,
        success_rate=round_half_up(total_recommendations / len(analyses) * 100) if analyses else 0,
        categories_by_type=CategoriesByType(
            cert=category_histogram(cert.classifications) if cert else [],
            llm=category_histogram(llm.classifications) if llm else [],
            nist=category_histogram(nist.classifications) if nist else [],
        ),
        recommendation_tokens=rec_tokens,
        categorization_tokens=CategorizationTokens(
            cert=cert.usage if cert else None,
            llm=llm.usage if llm else None,
            nist=nist.usage if nist else None,
            total=categorization_total,
        ),
        total_tokens_and_costs=TotalTokensAndCosts(
            total_tokens=all_tokens,
            estimated_costs=EstimatedCosts(usd=cost_usd, brl=cost_brl),
        ),
    )
