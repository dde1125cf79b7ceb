"""Data models shared by the API, the stream protocol and the analysis runs."""
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """JSON-ready dict with camelCase keys and no null fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TaxonomyType(str, Enum):
    """Classification scheme selector, as sent in categorization requests."""
    CERT = "cert"
    LLM = "llm"
    NIST = "nist"

    @property
    def label(self) -> str:
        return self.value.upper()


CategorizationType = Literal["CERT", "LLM", "NIST"]


class Incident(WireModel):
    """Security incident as stored in the incident store."""
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    timestamp: str
    source: str | None = None


class ScoredIncident(Incident):
    """Incident returned by a similarity search."""
    score: float = 0.0

    def as_incident(self) -> Incident:
        return Incident(
            id=self.id, content=self.content, timestamp=self.timestamp, source=self.source
        )


class TokenUsage(WireModel):
    """LLM token accounting for one or more calls."""
    prompt_tokens: int = Field(0, ge=0)
    completion_tokens: int = Field(0, ge=0)
    total_tokens: int = Field(0, ge=0)

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "TokenUsage":
        """Usage whose total is the sum of both counts."""
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class Classification(WireModel):
    """Category assigned to one incident under one taxonomy."""
    id: str
    category: str
    reason: str = ""
    timestamp: str = ""


class CategoryCount(WireModel):
    category: str
    count: int


class CategorizationResult(WireModel):
    """Classifications for a set of incidents plus their category histogram."""
    classifications: list[Classification] = Field(default_factory=list)
    total_incidents: int = 0
    total_categories: int = 0
    category_counts: list[CategoryCount] = Field(default_factory=list)
    model: str
    categorization_type: CategorizationType
    usage: TokenUsage | None = None


class Progress(WireModel):
    processed: int
    total: int
    percentage: int


class InitEvent(WireModel):
    type: Literal["init"] = "init"
    total: int
    batch_size: int


class BatchEvent(WireModel):
    type: Literal["batch"] = "batch"
    data: CategorizationResult
    progress: Progress
    usage: TokenUsage | None = None


class CompleteEvent(WireModel):
    type: Literal["complete"] = "complete"
    total_tokens_global: TokenUsage | None = None


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    message: str


StreamEvent = Annotated[
    Union[InitEvent, BatchEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]
STREAM_EVENT = TypeAdapter(StreamEvent)


class CategorizationRequest(WireModel):
    """Body of a categorization stream request."""
    type: str = TaxonomyType.CERT.value
    incidents: list[Incident] = Field(default_factory=list)


class ChatMessage(WireModel):
    role: str
    content: str


class ChatRequest(WireModel):
    messages: list[ChatMessage] = Field(default_factory=list)


class NewIncidentRequest(WireModel):
    content: str


class SimilarityScore(WireModel):
    document_id: str
    similarity: float
    incident: Incident


class SearchMetrics(WireModel):
    total_found: int
    total_returned: int
    average_similarity: float


class SearchResponse(WireModel):
    results: list[SimilarityScore]
    metrics: SearchMetrics


class SimpleSearchResponse(WireModel):
    message: str
    data: list[Incident]


class TicketRecommendation(WireModel):
    """Remediation advice generated for one ticket."""
    id: str
    ticket_id: str
    recommendation: str
    timestamp: str
    confidence: float = Field(ge=0.0, le=1.0)
    usage: TokenUsage | None = None


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class AnalysisStep(WireModel):
    """One stage of an analysis run, as shown to the user."""
    id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    progress: int | None = None
    progress_text: str | None = None


class CategorizationReview(WireModel):
    comments: str = ""
    cert_correct: bool | None = None
    llm_correct: bool | None = None
    nist_correct: bool | None = None


class RecommendationReview(WireModel):
    comments: str = ""
    rating: int = Field(0, ge=0, le=5)


class IncidentEvaluation(WireModel):
    """Human review of one analysed incident."""
    incident_id: str
    evaluator_email: str
    evaluation_timestamp: str
    categorization: CategorizationReview = Field(default_factory=CategorizationReview)
    recommendation: RecommendationReview = Field(default_factory=RecommendationReview)


class IncidentAnalysis(WireModel):
    """One incident with its three categorizations and recommendation."""
    incident: Incident
    cert_category: str | None = None
    cert_reason: str | None = None
    llm_category: str | None = None
    llm_reason: str | None = None
    nist_category: str | None = None
    nist_reason: str | None = None
    recommendation: TicketRecommendation | None = None
    evaluation: IncidentEvaluation | None = None


class AnalyzedIncidentRecord(WireModel):
    """Flattened incident entry of a persisted analysis."""
    id: str
    cert_category: str | None = None
    cert_reason: str | None = None
    llm_category: str | None = None
    llm_reason: str | None = None
    nist_category: str | None = None
    nist_reason: str | None = None
    recommendation_id: str | None = None
    recommendation_text: str | None = None
    recommendation_timestamp: str | None = None
    recommendation_usage: TokenUsage | None = None
    evaluation: IncidentEvaluation | None = None


class CategoriesByType(WireModel):
    cert: list[CategoryCount] = Field(default_factory=list)
    llm: list[CategoryCount] = Field(default_factory=list)
    nist: list[CategoryCount] = Field(default_factory=list)


class RecommendationTokens(WireModel):
    total_prompt_tokens: int
    total_completion_tokens: int
    total_tokens: int
    average_tokens_per_recommendation: int


class CategorizationTokens(WireModel):
    cert: TokenUsage | None = None
    llm: TokenUsage | None = None
    nist: TokenUsage | None = None
    total: TokenUsage = Field(default_factory=TokenUsage)


class EstimatedCosts(WireModel):
    usd: float = Field(alias="USD")
    brl: float = Field(alias="BRL")


class TotalTokensAndCosts(WireModel):
    total_tokens: TokenUsage
    estimated_costs: EstimatedCosts


class AccuracyCount(WireModel):
    correct: int = 0
    total: int = 0


class CategorizationAccuracy(WireModel):
    cert: AccuracyCount = Field(default_factory=AccuracyCount)
    llm: AccuracyCount = Field(default_factory=AccuracyCount)
    nist: AccuracyCount = Field(default_factory=AccuracyCount)


class EvaluationStats(WireModel):
    total_evaluations: int
    average_recommendation_rating: float
    categorization_accuracy: CategorizationAccuracy


class AnalysisSummary(WireModel):
    total_categorized: int
    total_recommendations: int
    success_rate: int
    categories_by_type: CategoriesByType
    recommendation_tokens: RecommendationTokens | None = None
    categorization_tokens: CategorizationTokens | None = None
    total_tokens_and_costs: TotalTokensAndCosts | None = None
    evaluation_stats: EvaluationStats | None = None


class ResultsAnalysisDocument(WireModel):
    """Persisted outcome of one full analysis run."""
    id: str | None = None
    analysis_id: str
    timestamp: str
    user_email: str
    total_incidents: int
    incident_count: int
    model: str
    incidents: list[AnalyzedIncidentRecord]
    summary: AnalysisSummary
