"""Content-hash cache used to detect duplicate incidents."""
import hashlib
import logging
import time
from typing import Callable, Iterable, Protocol

logger = logging.getLogger(__name__)

CACHE_EXPIRY_SECONDS = 60 * 60


class ContentSource(Protocol):
    def iter_contents(self) -> Iterable[str]: ...


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ContentHashCache:
    """SHA-256 hashes of incident contents, refreshable from a backing store.

    The cache is owned by whoever needs duplicate detection and is handed the
    store it mirrors; there is no process-wide instance.
    """

    def __init__(
        self,
        source: ContentSource,
        expiry: float = CACHE_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.expiry = expiry
        self._clock = clock
        self._hashes: dict[str, float] = {}

    @classmethod
    def create(cls, source: ContentSource, **kwargs) -> "ContentHashCache":
        """Build a cache already synchronized with the source."""
        cache = cls(source, **kwargs)
        cache.sync_with_store()
        return cache

    def __len__(self) -> int:
        return len(self._hashes)

    def add(self, content: str) -> str:
        """Record content and return its hash."""
        digest = content_hash(content)
        self._hashes[digest] = self._clock()
        return digest

    def has(self, content: str) -> bool:
        """Whether the content hash is cached."""
        return content_hash(content) in self._hashes

    def cleanup(self) -> int:
        """Drop expired hashes and return how many were removed."""
        now = self._clock()
        expired = [h for h, added in self._hashes.items() if now - added > self.expiry]
        for digest in expired:
            del self._hashes[digest]
        return len(expired)

    def sync_with_store(self) -> None:
        """Replace the cached hashes with those of every content in the store."""
        self._hashes.clear()
        for content in self.source.iter_contents():
            if content:
                self.add(content)
        logger.debug("Hash cache synchronized: %d entries", len(self._hashes))

    def clear(self) -> None:
        """Forget every cached hash."""
        self._hashes.clear()

    def is_duplicate(self, content: str) -> bool:
        """Check the cache, then the store; new content is recorded."""
        if self.has(content):
            return True
        self.sync_with_store()
        if self.has(content):
            return True
        self.add(content)
        return False
