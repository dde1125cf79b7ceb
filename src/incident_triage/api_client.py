"""HTTP client for the triage API, including the categorization stream consumer."""
import logging
from typing import AsyncIterator

import httpx

from . import config
from .models import (
    STREAM_EVENT,
    CategorizationRequest,
    Incident,
    SimpleSearchResponse,
    TaxonomyType,
    TicketRecommendation,
)
from .sse import iter_events

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """The API could not be reached or answered with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TriageAPIClient:
    """Async client for the triage HTTP API.

    Requests carry no timeout by default; long categorization streams and
    recommendation calls are bounded only by cancellation.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url or config.API_URL,
            timeout=httpx.Timeout(timeout),
        )

    async def __aenter__(self) -> "TriageAPIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request_json(self, method: str, path: str, **kwargs) -> dict:
        """Send a request and return the JSON body; failures raise TransportError."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {path} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            message = data.get("message") or data.get("error") or f"Request failed ({response.status_code})"
            raise TransportError(str(message), response.status_code)
        return data

    async def search_incidents(self, query: str | None = None, top_k: int | None = None) -> list[Incident]:
        """Incidents from the search endpoint, all of them without a query."""
        params = {"format": "simple"}
        if query:
            params["query"] = query
        if top_k is not None:
            params["topK"] = str(top_k)
        data = await self.request_json("GET", "/api/incidents/search", params=params)
        return SimpleSearchResponse.model_validate(data).data

    async def recommend(self, ticket_id: str) -> TicketRecommendation:
        """Synchronous recommendation for one ticket."""
        data = await self.request_json("POST", f"/api/tickets/{ticket_id}/recommend-sync")
        return TicketRecommendation.model_validate(data)

    async def stream_categorization(
        self,
        categorization_type: "TaxonomyType | str",
        incidents: list[Incident],
    ) -> AsyncIterator:
        """Open a categorization stream and yield its typed events in arrival order."""
        if isinstance(categorization_type, TaxonomyType):
            categorization_type = categorization_type.value
        body = CategorizationRequest(type=categorization_type, incidents=incidents).to_wire()

        try:
            async with self._client.stream("POST", "/api/ai/categorization/stream", json=body) as response:
                if not response.is_success:
                    raise TransportError("Error connecting to the stream", response.status_code)
                async for event in iter_events(response.aiter_bytes(), STREAM_EVENT.validate_python):
                    yield event
        except httpx.HTTPError as e:
            raise TransportError(f"Stream connection failed: {e}") from e
