"""Test doubles for the LLM client, the classification engine and the triage API."""
import asyncio
import re

import numpy as np

from incident_triage.client import LLMChunk, LLMResponse
from incident_triage.engines import CategorizationError, build_result
from incident_triage.models import (
    Classification,
    ErrorEvent,
    Incident,
    TicketRecommendation,
    TokenUsage,
)
from incident_triage.producer import categorization_stream


def make_incidents(count: int, prefix: str = "INC") -> list[Incident]:
    return [
        Incident(
            id=f"{prefix}-{i}",
            content=f"incident {i}: suspicious traffic from host-{i} on port {1000 + i}",
            timestamp=f"2024-05-01T10:{i:02d}:00Z",
            source="test",
        )
        for i in range(count)
    ]


TOPICS = {
    "phishing": {"phishing", "email", "credential", "harvesting", "bank", "password", "impersonating", "message"},
    "dos": {"ddos", "denial", "service", "flooding", "syn", "saturating", "uplink", "packets"},
    "scan": {"port", "scan", "firewall", "sweep"},
    "web": {"sql", "injection", "web", "portal", "login", "form", "server"},
    "malware": {"malware", "beaconing", "c2", "domain"},
}


class TopicEmbedder:
    """Deterministic embedder counting keyword hits per security topic."""

    def __init__(self, topics=TOPICS):
        self.topics = list(topics.values())
        self.calls: list[list[str]] = []

    def embed(self, texts):
        payload = list(texts)
        self.calls.append(payload)
        vectors = np.zeros((len(payload), len(self.topics) + 1), dtype=np.float32)
        for row, text in enumerate(payload):
            words = re.findall(r"\w+", text.lower())
            for axis, vocabulary in enumerate(self.topics):
                vectors[row, axis] = sum(word in vocabulary for word in words)
            vectors[row, -1] = 0.1
        return vectors


class FakeLLM:
    """Scripted replacement for client.APIClient."""

    def __init__(self, responses=None, chunks=("Isolate", " the host."), model="claude-haiku-4-5"):
        self.model = model
        self.responses = list(responses or [])
        self.chunks = list(chunks)
        self.stream_error: Exception | None = None
        self.prompts: list[str] = []
        self.systems: list[str | None] = []

    async def call(self, prompt, system=None, max_tokens=4000, temperature=0.1):
        self.prompts.append(prompt)
        self.systems.append(system)
        response = self.responses.pop(0) if self.responses else "Recommended action."
        if isinstance(response, Exception):
            raise response
        return LLMResponse(text=response, usage=TokenUsage.from_counts(100, 20))

    async def stream(self, prompt, system=None, max_tokens=4000, temperature=0.7):
        self.prompts.append(prompt)
        self.systems.append(system)
        for text in self.chunks:
            yield LLMChunk(text=text)
        if self.stream_error is not None:
            raise self.stream_error
        yield LLMChunk(usage=TokenUsage.from_counts(50, 10))


class FakeEngine:
    """Classification engine labelling every incident with the first allowed category."""

    model = "fake-model"

    def __init__(self, fail_on_call: int | None = None, extra_ids=(), duplicate_first=False):
        self.fail_on_call = fail_on_call
        self.extra_ids = list(extra_ids)
        self.duplicate_first = duplicate_first
        self.calls: list[list[str]] = []

    async def classify(self, batch, taxonomy):
        self.calls.append([incident.id for incident in batch])
        if self.fail_on_call == len(self.calls):
            raise CategorizationError(f"Failed to categorize incident batch ({taxonomy.label}): boom")

        category = taxonomy.categories[0] if taxonomy.categories else "Suspicious traffic"
        classifications = [
            Classification(id=incident.id, category=category, reason="matched", timestamp=incident.timestamp)
            for incident in batch
        ]
        if self.duplicate_first and batch:
            classifications.append(Classification(id=batch[0].id, category="Outros", reason="again"))
        classifications += [Classification(id=i, category=category, reason="foreign") for i in self.extra_ids]
        return build_result(classifications, taxonomy.label, self.model, TokenUsage.from_counts(10, 5))


class FakeAPI:
    """In-memory triage API backed by the real stream producer."""

    def __init__(self, incidents, engine=None, fail_types=(), fail_recommend=(), search_error=None, engines=None):
        self.incidents = list(incidents)
        self.engine = engine or FakeEngine()
        self.engines = dict(engines or {})
        self.fail_types = set(fail_types)
        self.fail_recommend = set(fail_recommend)
        self.search_error = search_error
        self.recommend_hook = None
        self.stream_calls: list[str] = []
        self.recommended: list[str] = []

    async def search_incidents(self):
        if self.search_error is not None:
            raise self.search_error
        return list(self.incidents)

    async def stream_categorization(self, categorization_type, incidents):
        self.stream_calls.append(categorization_type.value)
        if categorization_type.value in self.fail_types:
            yield ErrorEvent(message="CategorizationError: upstream failure")
            return
        engine = self.engines.get(categorization_type.value, self.engine)
        async for event in categorization_stream(incidents, categorization_type, engine):
            yield event

    async def recommend(self, ticket_id):
        self.recommended.append(ticket_id)
        if self.recommend_hook is not None:
            await self.recommend_hook(ticket_id)
        if ticket_id in self.fail_recommend:
            raise RuntimeError(f"recommendation failed for {ticket_id}")
        await asyncio.sleep(0)
        return TicketRecommendation(
            id=f"REC-{ticket_id}",
            ticket_id=ticket_id,
            recommendation=f"Block the source of {ticket_id}",
            timestamp="2024-05-01T12:00:00Z",
            confidence=0.85,
            usage=TokenUsage.from_counts(40, 60),
        )
