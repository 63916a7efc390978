from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from ..cache.memory import TTLCache
from ..core.errors import ProviderError
from .config import SEMANTIC_THRESHOLDS
from .scoring import cosine_similarity

logger = logging.getLogger("matching")


class TextEmbedder(Protocol):
    async def embed_text(self, text: str, prefix: Optional[str] = "query:") -> List[float]: ...


@dataclass(slots=True)
class SimilarResult:
    value: str
    similarity: float


def _normalize(text: str) -> str:
    return text.lower().strip()


class SemanticMatcher:
    """Compares short phrases (themes, moods) by embedding similarity.

    Exact and substring matches short-circuit without an embedding call.
    Phrase embeddings are kept in a bounded TTL cache; if embedding fails
    the pair is treated as unrelated.
    """

    def __init__(
        self,
        embedder: TextEmbedder | None = None,
        *,
        threshold: float = SEMANTIC_THRESHOLDS["similar"],
        cache_ttl_ms: int = 60 * 60 * 1000,
        max_cache_size: int = 1000,
    ) -> None:
        self.embedder = embedder
        self.threshold = threshold
        self._cache: TTLCache[str, List[float]] = TTLCache(max_entries=max_cache_size, ttl_ms=cache_ttl_ms)

    async def _embedding(self, text: str) -> Optional[List[float]]:
        key = _normalize(text)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        if self.embedder is None:
            return None
        try:
            embedding = await self.embedder.embed_text(text, prefix="query:")
        except ProviderError as exc:
            logger.warning("Phrase embedding failed for %r: %s", text, exc)
            return None
        self._cache.set(key, embedding)
        return embedding

    async def get_similarity(self, first: str, second: str) -> float:
        if self.embedder is None:
            return 0.0
        left, right = await asyncio.gather(self._embedding(first), self._embedding(second))
        if not left or not right:
            return 0.0
        return cosine_similarity(left, right)

    async def are_similar(self, first: str, second: str, threshold: float | None = None) -> bool:
        a, b = _normalize(first), _normalize(second)
        if a == b or a in b or b in a:
            return True
        similarity = await self.get_similarity(first, second)
        return similarity >= (self.threshold if threshold is None else threshold)

    async def find_similar(
        self, query: str, candidates: Sequence[str], threshold: float | None = None
    ) -> List[SimilarResult]:
        cutoff = self.threshold if threshold is None else threshold
        results = []
        for candidate in candidates:
            similarity = await self.get_similarity(query, candidate)
            if similarity >= cutoff:
                results.append(SimilarResult(value=candidate, similarity=similarity))
        results.sort(key=lambda item: item.similarity, reverse=True)
        return results

    async def count_matches(self, first: Sequence[str], second: Sequence[str], threshold: float | None = None) -> int:
        """Number of items in ``first`` with at least one similar item in ``second``."""
        count = 0
        for item in first:
            for other in second:
                if await self.are_similar(item, other, threshold):
                    count += 1
                    break
        return count

    async def compute_similarity_matrix(self, first: Sequence[str], second: Sequence[str]) -> List[List[float]]:
        return [[await self.get_similarity(item, other) for other in second] for item in first]
