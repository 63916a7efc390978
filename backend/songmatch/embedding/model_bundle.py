"""Model bundle: everything an embedding or match result depends on.

The bundle hash goes into every profile and match-context key, so changing the
embedding model, reranker, an algorithm version or the enrichment setup
invalidates every dependent cache entry without a migration. Old entries simply
stop matching.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field

from ..core.config import Settings, get_settings
from ..ml.ports import MLProvider
from .hashing import hash_model_bundle
from .versioning import (
    EMBEDDING_SCHEMA_VERSION,
    EXTRACTOR_VERSION,
    MATCHING_ALGO_VERSION,
    PLAYLIST_PROFILE_VERSION,
)

logger = logging.getLogger("embedding")

BUNDLE_FORMAT_VERSION = 1


class EmbeddingModelConfig(BaseModel):
    model: str
    dims: int
    provider: str
    is_instruction_tuned: bool = True


class RerankerModelConfig(BaseModel):
    model: str
    provider: str
    max_length: int = 8192


class AlgorithmVersions(BaseModel):
    extractor: int = EXTRACTOR_VERSION
    schema_version: int = EMBEDDING_SCHEMA_VERSION
    profile: int = PLAYLIST_PROFILE_VERSION
    matching: str = MATCHING_ALGO_VERSION

    def as_hash_input(self) -> dict:
        return {
            "extractor": self.extractor,
            "schema": self.schema_version,
            "profile": self.profile,
            "matching": self.matching,
        }


class EnrichmentConfig(BaseModel):
    genre_source: Literal["lastfm", "spotify", "combined"] = "lastfm"
    emotion_enabled: bool = False


class ModelBundle(BaseModel):
    embedding: EmbeddingModelConfig
    reranker: Optional[RerankerModelConfig] = None
    algorithms: AlgorithmVersions = Field(default_factory=AlgorithmVersions)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    version: int = BUNDLE_FORMAT_VERSION

    def hash_input(self) -> dict:
        return {
            "embedding": self.embedding.model_dump(),
            "reranker": self.reranker.model_dump() if self.reranker else None,
            "algorithms": self.algorithms.as_hash_input(),
            "enrichment": {
                "genreSource": self.enrichment.genre_source,
                "emotionEnabled": self.enrichment.emotion_enabled,
            },
            "version": self.version,
        }

    def hash(self) -> str:
        return hash_model_bundle(self.hash_input())


def get_active_model_bundle(provider: MLProvider, settings: Settings | None = None) -> ModelBundle:
    # Provider metadata errors propagate: a guessed model would poison every cache key.
    settings = settings or get_settings()
    metadata = provider.get_metadata()

    reranker = None
    if settings.rerank_enabled and metadata.reranker_model:
        reranker = RerankerModelConfig(model=metadata.reranker_model, provider=metadata.name)

    return ModelBundle(
        embedding=EmbeddingModelConfig(
            model=metadata.embedding_model,
            dims=metadata.embedding_dims,
            provider=metadata.name,
        ),
        reranker=reranker,
        enrichment=EnrichmentConfig(
            genre_source=settings.genre_source,
            emotion_enabled=settings.emotion_enabled,
        ),
    )


class ModelBundleResolver:
    def __init__(self, provider: MLProvider, settings: Settings | None = None) -> None:
        self.provider = provider
        self.settings = settings or get_settings()
        self._bundle: ModelBundle | None = None
        self._hash: str | None = None
        self._lock = asyncio.Lock()

    async def get_bundle(self) -> ModelBundle:
        await self.get_hash()
        assert self._bundle is not None
        return self._bundle

    async def get_hash(self) -> str:
        if self._hash is not None:
            return self._hash
        async with self._lock:
            if self._hash is None:
                bundle = get_active_model_bundle(self.provider, self.settings)
                self._bundle = bundle
                self._hash = bundle.hash()
                logger.info("Resolved model bundle %s (%s)", self._hash, bundle.embedding.model)
        return self._hash

    def reset(self) -> None:
        self._bundle = None
        self._hash = None
