from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from pydantic import ValidationError

from ..core.errors import ConfigError, ProviderError
from ..ml.ports import MLProvider
from ..schemas.matching import MatchCandidate, RerankResult, RerankStats
from .config import RerankerConfig

logger = logging.getLogger("reranker")

MISSING_RERANK_SCORE = 0.5


def _skipped(candidates: Sequence[MatchCandidate]) -> RerankResult:
    top = candidates[0].score if candidates else 0.0
    return RerankResult(
        candidates=list(candidates),
        reranked=False,
        reranked_count=0,
        stats=RerankStats(original_top_score=top, rerank_top_score=top, score_shift=0.0),
    )


class RerankerService:
    """Second-pass ordering of the best candidates with a cross-encoder.

    Only candidates at or above ``min_score_threshold`` are eligible, and only
    the first ``top_n`` of those are sent to the provider. Reranked scores are
    blended into the original ones; everything else is returned untouched
    after the reranked block. Provider failures leave the input as it was.
    """

    def __init__(self, provider: MLProvider, config: RerankerConfig | None = None) -> None:
        self.provider = provider
        self.config = config or RerankerConfig()

    def blend(self, original: float, rerank: float) -> float:
        weight = self.config.blend_weight
        return (1.0 - weight) * original + weight * rerank

    async def rerank(self, query: str, candidates: Sequence[MatchCandidate]) -> RerankResult:
        if not candidates:
            return RerankResult()
        if not query or not query.strip():
            return _skipped(candidates)

        eligible = [index for index, candidate in enumerate(candidates) if candidate.score >= self.config.min_score_threshold]
        if not eligible:
            return _skipped(candidates)

        selected = eligible[: self.config.top_n]
        documents = [candidates[index].document for index in selected]
        try:
            response = await self.provider.rerank(query, documents, top_k=len(documents))
        except ProviderError as exc:
            logger.warning("Reranking skipped, provider failed: %s", exc)
            return _skipped(candidates)

        scores: Dict[int, float] = {item.index: item.score for item in response.scores}
        reranked: List[MatchCandidate] = []
        for position, index in enumerate(selected):
            candidate = candidates[index]
            rerank_score = scores.get(position, MISSING_RERANK_SCORE)
            metadata: Dict[str, Any] = {
                **candidate.metadata,
                "rerank_score": rerank_score,
                "original_score": candidate.score,
            }
            reranked.append(
                candidate.model_copy(update={"score": self.blend(candidate.score, rerank_score), "metadata": metadata})
            )
        reranked.sort(key=lambda item: item.score, reverse=True)

        chosen = set(selected)
        passthrough = [candidate for index, candidate in enumerate(candidates) if index not in chosen]
        ordered = reranked + passthrough

        original_top = candidates[0].score
        rerank_top = ordered[0].score
        logger.debug("Reranked %s of %s candidates", len(selected), len(candidates))
        return RerankResult(
            candidates=ordered,
            reranked=True,
            reranked_count=len(selected),
            stats=RerankStats(
                original_top_score=original_top,
                rerank_top_score=rerank_top,
                score_shift=rerank_top - original_top,
            ),
        )

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    def update_config(self, **changes: Any) -> RerankerConfig:
        try:
            self.config = RerankerConfig.model_validate({**self.config.model_dump(), **changes})
        except ValidationError as exc:
            raise ConfigError("reranker", str(exc)) from exc
        return self.config

    def get_config(self) -> RerankerConfig:
        return self.config.model_copy()
