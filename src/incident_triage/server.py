"""HTTP API: categorization and chat streams, incident search, tickets and solutions."""
import logging
from datetime import datetime, timezone
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from . import config
from .client import APIClient
from .documents import DocumentStore, ResultsRepository
from .engines import Classifier, ContextChat, Recommender
from .models import (
    CategorizationRequest,
    ChatRequest,
    NewIncidentRequest,
    SearchMetrics,
    SearchResponse,
    SimilarityScore,
    SimpleSearchResponse,
    TicketRecommendation,
)
from .producer import categorization_stream
from .sse import SSE_HEADERS, encode_event
from .store import DuplicateIncidentError, IncidentStore

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.4


class APIError(Exception):
    def __init__(self, status_code: int, error: str, message: str | None = None):
        super().__init__(message or error)
        self.status_code = status_code
        self.error = error
        self.message = message


def _error_response(status_code: int, error: str, message: str | None = None) -> JSONResponse:
    content = {"error": error}
    if message is not None:
        content["message"] = message
    return JSONResponse(status_code=status_code, content=content)


def _sse(events: AsyncIterator[BaseModel | dict]) -> StreamingResponse:
    async def frames():
        async for event in events:
            yield encode_event(event)

    return StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)


def create_app(
    store: IncidentStore,
    classifier: Classifier,
    recommender: Recommender,
    chat: ContextChat,
    repository: ResultsRepository | None = None,
) -> FastAPI:
    """Routes over the given store and engines; solutions need a repository."""
    app = FastAPI(title="Incident Triage API")

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        return _error_response(exc.status_code, exc.error, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error_response(400, "Invalid request", str(exc.errors()))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return _error_response(500, "Internal server error", str(exc) or "Unknown error")

    def require_incident(incident_id: str):
        incident = store.get_by_id(incident_id)
        if incident is None:
            raise APIError(404, "Ticket not found")
        return incident

    @app.get("/health")
    async def health():
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/api/ai/categorization/stream")
    async def categorize_stream(body: CategorizationRequest):
        logger.info("Categorization stream requested: %s, %d incidents", body.type, len(body.incidents))
        return _sse(categorization_stream(body.incidents, body.type, classifier))

    @app.post("/api/ai/chat/stream")
    async def chat_stream(body: ChatRequest):
        if not body.messages:
            raise APIError(400, "Messages are required")
        return _sse(chat.stream_answer(body.messages[-1].content))

    @app.get("/api/incidents/search")
    async def search_incidents(
        query: str | None = None,
        top_k: int = Query(5, alias="topK"),
        output_format: str = Query("detailed", alias="format"),
    ):
        if not query:
            incidents = store.list_all()
            if output_format == "simple":
                return SimpleSearchResponse(message="Incidents retrieved", data=incidents).to_wire()
            return SearchResponse(
                results=[
                    SimilarityScore(document_id=i.id, similarity=1, incident=i) for i in incidents
                ],
                metrics=SearchMetrics(
                    total_found=len(incidents), total_returned=len(incidents), average_similarity=1
                ),
            ).to_wire()

        matches = store.search(query, top_k)
        relevant = [m for m in matches if m.score >= SIMILARITY_THRESHOLD]
        if output_format == "simple":
            return SimpleSearchResponse(
                message="Search completed", data=[m.as_incident() for m in relevant]
            ).to_wire()

        return SearchResponse(
            results=[
                SimilarityScore(document_id=m.id, similarity=m.score, incident=m.as_incident())
                for m in relevant
            ],
            metrics=SearchMetrics(
                total_found=len(matches),
                total_returned=len(relevant),
                average_similarity=sum(m.score for m in relevant) / len(relevant) if relevant else 0,
            ),
        ).to_wire()

    @app.post("/api/incidents/incident")
    async def add_incident(body: NewIncidentRequest):
        try:
            incident = store.add_text(body.content)
        except DuplicateIncidentError as e:
            raise APIError(409, "Duplicate incident", str(e)) from e
        logger.info("Incident %s added", incident.id)
        return {"message": "Incident added", "data": incident.to_wire()}

    @app.get("/api/incidents/incident/{incident_id}")
    async def get_incident(incident_id: str):
        incident = store.get_by_id(incident_id)
        if incident is None:
            raise APIError(404, "Incident not found")
        return {"message": "Incident found", "data": incident.to_wire()}

    @app.get("/api/tickets")
    async def recent_tickets(limit: int = 10, offset: int = 0):
        # one extra row tells whether another page exists
        tickets = store.recent(limit + 1, offset)
        return {
            "tickets": [t.to_wire() for t in tickets[:limit]],
            "hasMore": len(tickets) > limit,
        }

    @app.post("/api/tickets/{ticket_id}/recommend")
    async def recommend_stream(ticket_id: str):
        incident = require_incident(ticket_id)
        return _sse(recommender.stream_ticket_recommendation(incident))

    @app.post("/api/tickets/{ticket_id}/recommend-sync")
    async def recommend_sync(ticket_id: str):
        incident = require_incident(ticket_id)
        try:
            recommendation = await recommender.generate_ticket_recommendation(incident)
        except Exception as e:
            logger.error("Recommendation failed for %s: %s", ticket_id, e)
            raise APIError(500, "Failed to generate recommendation", str(e)) from e
        return recommendation.to_wire()

    @app.post("/api/tickets/{ticket_id}/solutions")
    async def save_solution(ticket_id: str, body: TicketRecommendation):
        require_incident(ticket_id)
        if body.ticket_id != ticket_id:
            raise APIError(400, "Recommendation belongs to another ticket")
        if repository is None:
            raise APIError(503, "Solution storage is not configured")
        key = repository.save_solution(body)
        return {"message": "Solution saved", "id": key}

    @app.post("/api/tickets/database/delete-all")
    async def delete_all():
        return store.delete_all()

    return app


def build_app() -> FastAPI:
    """Application wired to the configured Anthropic model, a fresh store and the results directory."""
    api_client = APIClient()
    store = IncidentStore()
    return create_app(
        store,
        Classifier(api_client),
        Recommender(api_client),
        ContextChat(store, api_client),
        ResultsRepository(DocumentStore(config.DATA_DIR)),
    )


if __name__ == "__main__":
    config.configure_logging()
    uvicorn.run(build_app(), host=config.HOST, port=config.PORT)
