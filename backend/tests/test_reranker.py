import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

import pytest

from songmatch.core.errors import ConfigError, RateLimitError
from songmatch.matching.config import RerankerConfig
from songmatch.matching.reranker import RerankerService
from songmatch.ml.ports import ProviderMetadata, RerankResponse, RerankScore
from songmatch.schemas.matching import MatchCandidate


@dataclass(slots=True)
class _StubReranker:
    scores: List[float] = field(default_factory=list)
    error: Optional[Exception] = None
    calls: List[List[str]] = field(default_factory=list)

    async def rerank(self, query, documents, *, top_k=None, timeout=None):
        self.calls.append(list(documents))
        if self.error is not None:
            raise self.error
        return RerankResponse(
            scores=[RerankScore(index=i, score=s) for i, s in enumerate(self.scores[: len(documents)])],
            model="qwen",
        )

    async def embed(self, text, *, prefix=None, timeout=None):  # pragma: no cover - unused here
        raise NotImplementedError

    async def embed_batch(self, texts, *, prefix=None, timeout=None):  # pragma: no cover - unused here
        raise NotImplementedError

    async def is_available(self) -> bool:
        return self.error is None

    def get_metadata(self) -> ProviderMetadata:  # pragma: no cover - unused here
        return ProviderMetadata(name="deepinfra", embedding_model="e5", embedding_dims=2, reranker_model="qwen")


def _candidates(*scores: float) -> List[MatchCandidate]:
    return [MatchCandidate(id=f"c{i}", score=score, document=f"doc {i}") for i, score in enumerate(scores)]


def test_blend_uses_configured_weight():
    provider = _StubReranker(scores=[1.0])
    result = asyncio.run(RerankerService(provider).rerank("query", _candidates(0.6)))
    assert result.reranked is True
    assert result.reranked_count == 1
    top = result.candidates[0]
    assert top.score == pytest.approx(0.68)
    assert top.metadata["rerank_score"] == 1.0
    assert top.metadata["original_score"] == 0.6


def test_rerank_reorders_and_passes_the_rest_through():
    provider = _StubReranker(scores=[0.0, 1.0])
    service = RerankerService(provider, RerankerConfig(top_n=2, min_score_threshold=0.3))
    result = asyncio.run(service.rerank("query", _candidates(0.9, 0.1, 0.8, 0.7)))

    # c1 is below the threshold and c3 overflows top_n; both follow in input order
    assert provider.calls == [["doc 0", "doc 2"]]
    assert [c.id for c in result.candidates] == ["c2", "c0", "c1", "c3"]
    assert result.candidates[0].score == pytest.approx(0.7 * 0.8 + 0.3)
    assert result.candidates[2].score == 0.1
    assert result.candidates[3].score == 0.7
    assert result.stats.original_top_score == 0.9
    assert result.stats.score_shift == pytest.approx(result.stats.rerank_top_score - 0.9)


def test_missing_rerank_index_scores_neutral():
    provider = _StubReranker(scores=[1.0])
    result = asyncio.run(RerankerService(provider).rerank("query", _candidates(0.5, 0.5)))
    by_id = {c.id: c for c in result.candidates}
    assert by_id["c1"].metadata["rerank_score"] == 0.5
    assert by_id["c1"].score == pytest.approx(0.5)


@pytest.mark.parametrize(
    "query, scores",
    [("", (0.9,)), ("   ", (0.9,)), ("query", (0.1, 0.05))],
)
def test_skipped_rerank_returns_input(query, scores):
    provider = _StubReranker(scores=[1.0, 1.0])
    candidates = _candidates(*scores)
    result = asyncio.run(RerankerService(provider).rerank(query, candidates))
    assert result.reranked is False
    assert result.candidates == candidates
    assert provider.calls == []


def test_empty_candidates():
    result = asyncio.run(RerankerService(_StubReranker()).rerank("query", []))
    assert result.candidates == []
    assert result.reranked is False


def test_provider_failure_degrades_to_original_order():
    provider = _StubReranker(error=RateLimitError("deepinfra", "rerank", retry_after_ms=1000))
    candidates = _candidates(0.9, 0.5)
    service = RerankerService(provider)
    result = asyncio.run(service.rerank("query", candidates))
    assert result.reranked is False
    assert result.candidates == candidates
    assert asyncio.run(service.is_available()) is False


def test_update_config_validates():
    service = RerankerService(_StubReranker())
    assert service.update_config(top_n=10).top_n == 10
    assert service.get_config().blend_weight == 0.3
    with pytest.raises(ConfigError):
        service.update_config(blend_weight=1.5)
