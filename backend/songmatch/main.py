from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from .cache.redis import create_redis
from .core.config import Settings, get_settings
from .core.logging import setup_logging
from .db.repository import SqlAlchemyMatchingStore
from .db.session import create_engine, create_session_factory, init_db
from .embedding.model_bundle import ModelBundleResolver
from .embedding.service import EmbeddingService
from .matching.cache import MatchCachingService
from .matching.config import MatchCacheConfig, RerankerConfig
from .matching.reranker import RerankerService
from .matching.semantic import SemanticMatcher
from .matching.service import MatchingService
from .ml.http import HttpMLProvider
from .profiling.service import PlaylistProfilingService

logger = logging.getLogger("songmatch")


@dataclass(slots=True)
class MatchingCore:
    settings: Settings
    engine: AsyncEngine
    redis: Redis
    provider: HttpMLProvider
    store: SqlAlchemyMatchingStore
    bundle_resolver: ModelBundleResolver
    embeddings: EmbeddingService
    profiling: PlaylistProfilingService
    matching: MatchingService
    match_cache: MatchCachingService

    async def aclose(self) -> None:
        await self.provider.close()
        await self.redis.aclose()
        await self.engine.dispose()


def create_matching_core(settings: Settings | None = None) -> MatchingCore:
    """Wire providers, store and services from settings. Nothing connects until first use."""
    settings = settings or get_settings()
    engine = create_engine(settings)
    store = SqlAlchemyMatchingStore(create_session_factory(engine))
    redis = create_redis(settings)
    provider = HttpMLProvider.from_settings(settings)
    bundle_resolver = ModelBundleResolver(provider, settings)

    embeddings = EmbeddingService(provider, store, expected_dims=settings.embedding_dims)
    reranker = None
    if settings.rerank_enabled and settings.reranker_model:
        reranker = RerankerService(provider, RerankerConfig.from_settings(settings))
    matching = MatchingService(semantic_matcher=SemanticMatcher(embeddings), reranker=reranker)

    return MatchingCore(
        settings=settings,
        engine=engine,
        redis=redis,
        provider=provider,
        store=store,
        bundle_resolver=bundle_resolver,
        embeddings=embeddings,
        profiling=PlaylistProfilingService(embeddings, store, bundle_resolver),
        matching=matching,
        match_cache=MatchCachingService(
            matching,
            bundle_resolver,
            store=store,
            redis=redis,
            config=MatchCacheConfig.from_settings(settings),
            lock_ttl_seconds=settings.compute_lock_ttl_seconds,
        ),
    )


@asynccontextmanager
async def matching_core(settings: Settings | None = None) -> AsyncIterator[MatchingCore]:
    settings = settings or get_settings()
    setup_logging(settings.log_level, environment=settings.environment)
    core = create_matching_core(settings)
    await init_db(core.engine)
    logger.info("Matching core ready (%s, %s)", settings.ml_provider, settings.embedding_model)
    try:
        yield core
    finally:
        await core.aclose()
