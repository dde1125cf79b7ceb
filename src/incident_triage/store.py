"""Incident store with vector similarity search."""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Iterable, Iterator, Protocol

import numpy as np
from sentence_transformers import SentenceTransformer

from . import config
from .hash_cache import ContentHashCache
from .models import Incident, ScoredIncident

logger = logging.getLogger(__name__)


class DuplicateIncidentError(ValueError):
    """An incident with identical content is already stored."""


def new_incident_id() -> str:
    return f"INC-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class Embedder(Protocol):
    def embed(self, texts: Iterable[str]) -> np.ndarray: ...


class SentenceTransformerEmbedder:
    """Sentence-transformers encoder, loaded on first use."""

    def __init__(self, model_name: str | None = None, device: str = "cpu"):
        self.model_name = model_name or config.EMBEDDING_MODEL
        self.device = device
        self._model: SentenceTransformer | None = None

    def _get_model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info("Loading embedding model %s", self.model_name)
            self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    def embed(self, texts: Iterable[str]) -> np.ndarray:
        """Encode texts into a (n, dim) float32 matrix."""
        payload = list(texts)
        if not payload:
            return np.zeros((0, 0), dtype=np.float32)
        vectors = self._get_model().encode(payload, show_progress_bar=False)
        return np.asarray(vectors, dtype=np.float32)


class IncidentStore:
    """In-process vector index of incidents keyed by id."""

    def __init__(self, embedder: Embedder | None = None):
        self.embedder = embedder or SentenceTransformerEmbedder()
        self._incidents: dict[str, Incident] = {}
        self._ids: list[str] = []
        self._embeddings: np.ndarray | None = None
        self.hash_cache = ContentHashCache(self)

    def __len__(self) -> int:
        return len(self._incidents)

    def iter_contents(self) -> Iterator[str]:
        for incident in self._incidents.values():
            yield incident.content

    def _set_vector(self, incident_id: str, vector: np.ndarray) -> None:
        if self._embeddings is None:
            self._ids.append(incident_id)
            self._embeddings = vector[np.newaxis, :]
            return
        if vector.shape[0] != self._embeddings.shape[1]:
            raise ValueError("Embedding dimension mismatch with existing store")
        if incident_id in self._incidents:
            self._embeddings[self._ids.index(incident_id)] = vector
        else:
            self._ids.append(incident_id)
            self._embeddings = np.vstack([self._embeddings, vector])

    def upsert(self, incident: Incident, check_duplicate: bool = True) -> None:
        """Insert or replace an incident and its embedding."""
        existing = self._incidents.get(incident.id)
        same_content = existing is not None and existing.content == incident.content
        if check_duplicate and not same_content and self.hash_cache.is_duplicate(incident.content):
            raise DuplicateIncidentError(f"Duplicate incident content: {incident.id}")

        vector = self.embedder.embed([incident.content])[0]
        self._set_vector(incident.id, vector)
        self._incidents[incident.id] = incident
        self.hash_cache.add(incident.content)

    def add_text(self, content: str, source: str = "direct-input") -> Incident:
        """Store new incident text under a generated id."""
        incident = Incident(
            id=new_incident_id(),
            content=content,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            source=source,
        )
        self.upsert(incident)
        return incident

    def search(self, query: str, top_k: int = 5) -> list[ScoredIncident]:
        """Incidents most similar to the query by cosine score, best first."""
        if self._embeddings is None or top_k <= 0:
            return []
        vec = self.embedder.embed([query])[0]
        vec_norm = np.linalg.norm(vec)
        if vec_norm == 0:
            return []

        norms = np.linalg.norm(self._embeddings, axis=1)
        scores = (self._embeddings @ vec) / (norms * vec_norm + 1e-10)
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            ScoredIncident(**self._incidents[self._ids[i]].model_dump(), score=float(scores[i]))
            for i in order
        ]

    def list_all(self) -> list[Incident]:
        return list(self._incidents.values())

    def get_by_id(self, incident_id: str) -> Incident | None:
        """Incident by id, or None."""
        return self._incidents.get(incident_id)

    def recent(self, limit: int = 10, offset: int = 0) -> list[Incident]:
        """Incidents ordered by timestamp, most recent first."""
        ordered = sorted(self._incidents.values(), key=lambda i: i.timestamp, reverse=True)
        return ordered[offset:offset + limit]

    def delete_all(self) -> dict:
        """Drop every incident, embedding and cached content hash."""
        self._incidents.clear()
        self._ids.clear()
        self._embeddings = None
        self.hash_cache.clear()
        logger.info("All incidents and cached hashes deleted")
        return {"success": True, "message": "All records and cache were deleted"}
