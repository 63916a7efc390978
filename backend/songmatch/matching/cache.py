"""Two-tier cache for batch match results.

Entries are keyed by a match-context hash built from the candidate songs, the
playlist profiles, the effective matching config (including the reranker
setup and its inputs when reranking applies) and the model bundle. Any
change to one of those produces a new key, so stale results are never served;
they simply age out of the in-memory tier.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..cache.memory import CacheStats, SingleFlight, TTLCache
from ..cache.redis import acquire_lock, release_lock
from ..core.errors import DatabaseError
from ..db.repository import MatchingStore
from ..embedding.hashing import (
    hash_candidate_set,
    hash_match_context,
    hash_matching_config,
    hash_playlist_set,
    short_hash,
    stable_stringify,
)
from ..embedding.model_bundle import ModelBundleResolver
from ..schemas.matching import BatchMatchResult, BatchStats, MatchContextMeta, MatchResult
from ..schemas.profiles import MatchingPlaylistProfile
from ..schemas.songs import MatchingSong
from .config import MatchCacheConfig, MatchingConfig
from .service import MatchingService

logger = logging.getLogger("match_cache")


@dataclass(slots=True)
class CachedMatchEntry:
    context_hash: str
    matches: Dict[str, List[MatchResult]]
    failed: Dict[str, str]
    playlist_ids: FrozenSet[str]
    computed_at: float = field(default_factory=time.time)


def _song_content_hash(song: MatchingSong, embedding: Optional[Sequence[float]]) -> str:
    fingerprint = song.content_fingerprint()
    if embedding:
        fingerprint = short_hash(fingerprint + stable_stringify(list(embedding)))
    return fingerprint


def _copy_matches(matches: Mapping[str, List[MatchResult]]) -> Dict[str, List[MatchResult]]:
    return {song_id: [match.model_copy(deep=True) for match in results] for song_id, results in matches.items()}


def _from_cache(matches: Mapping[str, List[MatchResult]]) -> Dict[str, List[MatchResult]]:
    return {
        song_id: [match.model_copy(update={"from_cache": True}, deep=True) for match in results]
        for song_id, results in matches.items()
    }


class MatchCachingService:
    def __init__(
        self,
        matching_service: MatchingService,
        bundle_resolver: ModelBundleResolver,
        store: MatchingStore | None = None,
        redis: Redis | None = None,
        config: MatchCacheConfig | None = None,
        *,
        lock_ttl_seconds: int = 60,
    ) -> None:
        self.matching_service = matching_service
        self.bundle_resolver = bundle_resolver
        self.store = store
        self.redis = redis
        self.config = config or MatchCacheConfig()
        self.lock_ttl_seconds = lock_ttl_seconds
        self._cache: TTLCache[str, CachedMatchEntry] = TTLCache(
            max_entries=self.config.max_entries,
            ttl_ms=self.config.ttl_ms,
        )
        self._inflight: SingleFlight[str, BatchMatchResult] = SingleFlight()

    async def compute_context(
        self,
        songs: Sequence[MatchingSong],
        profiles: Sequence[MatchingPlaylistProfile],
        embeddings: Mapping[str, Sequence[float]],
        config: MatchingConfig,
        rerank_queries: Mapping[str, str] | None = None,
        rerank_documents: Mapping[str, str] | None = None,
    ) -> MatchContextMeta:
        candidate_set_hash = hash_candidate_set(
            [song.id for song in songs],
            [_song_content_hash(song, embeddings.get(song.id)) for song in songs],
        )
        playlist_set_hash = hash_playlist_set(
            [profile.playlist_id for profile in profiles],
            [profile.fingerprint() for profile in profiles],
        )
        config_input = config.hash_input()
        reranker = self.matching_service.reranker
        if reranker is not None and rerank_queries and rerank_documents:
            config_input["rerank"] = {
                "config": reranker.get_config().model_dump(),
                "queries": dict(rerank_queries),
                "documents": dict(rerank_documents),
            }
        config_hash = hash_matching_config(config_input)
        model_bundle_hash = await self.bundle_resolver.get_hash()
        bundle = await self.bundle_resolver.get_bundle()
        return MatchContextMeta(
            context_hash=hash_match_context(
                candidate_set_hash=candidate_set_hash,
                playlist_set_hash=playlist_set_hash,
                config_hash=config_hash,
                model_bundle_hash=model_bundle_hash,
            ),
            candidate_set_hash=candidate_set_hash,
            playlist_set_hash=playlist_set_hash,
            config_hash=config_hash,
            model_bundle_hash=model_bundle_hash,
            embedding_model=bundle.embedding.model,
            playlist_count=len(profiles),
            song_count=len(songs),
            weights=config.weights.model_dump(),
        )

    async def get_or_compute_matches(
        self,
        account_id: str | None,
        songs: Sequence[MatchingSong],
        profiles: Sequence[MatchingPlaylistProfile],
        embeddings: Mapping[str, Sequence[float]] | None = None,
        config: MatchingConfig | Mapping[str, Any] | None = None,
        *,
        rerank_queries: Mapping[str, str] | None = None,
        rerank_documents: Mapping[str, str] | None = None,
    ) -> BatchMatchResult:
        """Cached results for this exact context, computing them once on a miss.

        Every caller gets its own copy of the results.
        """
        embeddings = embeddings or {}
        effective = self.matching_service.config.with_overrides(config)
        meta = await self.compute_context(songs, profiles, embeddings, effective, rerank_queries, rerank_documents)

        entry = self._cache.get(meta.context_hash)
        if entry is not None:
            logger.debug("Match cache hit (memory) for %s", meta.context_hash)
            return self._cached_result(entry, len(songs))

        if account_id is not None and self.store is not None:
            entry = await self._load(account_id, meta, songs, profiles)
            if entry is not None:
                logger.debug("Match cache hit (store) for %s", meta.context_hash)
                self._cache.set(meta.context_hash, entry)
                return self._cached_result(entry, len(songs))

        logger.debug("Match cache miss for %s", meta.context_hash)
        result = await self._inflight.run(
            meta.context_hash,
            lambda: self._compute(
                account_id, meta, songs, profiles, embeddings, effective, rerank_queries, rerank_documents
            ),
        )
        return result.model_copy(deep=True)

    def _cached_result(self, entry: CachedMatchEntry, total: int) -> BatchMatchResult:
        matches = _from_cache(entry.matches)
        return BatchMatchResult(
            matches=matches,
            failed=dict(entry.failed),
            stats=BatchStats(
                total=total,
                matched=sum(1 for results in matches.values() if results),
                failed=len(entry.failed),
                cached=len(matches),
                computed=0,
            ),
        )

    async def _load(
        self,
        account_id: str,
        meta: MatchContextMeta,
        songs: Sequence[MatchingSong],
        profiles: Sequence[MatchingPlaylistProfile],
    ) -> Optional[CachedMatchEntry]:
        song_ids = [song.id for song in songs]
        try:
            context = await self.store.get_match_context(meta.context_hash, account_id)
            if context is None:
                return None
            stored = await self.store.get_match_results(context.id, song_ids)
        except DatabaseError as exc:
            logger.warning("Loading cached matches failed, recomputing: %s", exc)
            return None
        # a partially stored context is treated as missing
        if any(song_id not in stored for song_id in song_ids):
            return None
        return CachedMatchEntry(
            context_hash=meta.context_hash,
            matches={song_id: stored[song_id] for song_id in song_ids},
            failed={},
            playlist_ids=frozenset(profile.playlist_id for profile in profiles),
        )

    async def _compute(
        self,
        account_id: str | None,
        meta: MatchContextMeta,
        songs: Sequence[MatchingSong],
        profiles: Sequence[MatchingPlaylistProfile],
        embeddings: Mapping[str, Sequence[float]],
        config: MatchingConfig,
        rerank_queries: Mapping[str, str] | None = None,
        rerank_documents: Mapping[str, str] | None = None,
    ) -> BatchMatchResult:
        result = await self.matching_service.match_batch(
            songs,
            profiles,
            embeddings,
            config=config,
            rerank_queries=rerank_queries,
            rerank_documents=rerank_documents,
        )
        self._cache.set(
            meta.context_hash,
            CachedMatchEntry(
                context_hash=meta.context_hash,
                matches=_copy_matches(result.matches),
                failed=dict(result.failed),
                playlist_ids=frozenset(profile.playlist_id for profile in profiles),
            ),
        )
        if account_id is not None and self.store is not None:
            await self._persist(account_id, meta, result.matches)
        return result

    async def _persist(self, account_id: str, meta: MatchContextMeta, matches: Dict[str, List[MatchResult]]) -> None:
        locked = False
        try:
            if self.redis is not None:
                locked = await acquire_lock(self.redis, meta.context_hash, ttl=self.lock_ttl_seconds)
                if not locked:
                    logger.debug("Context %s is being stored by another worker", meta.context_hash)
                    return
            context = await self.store.create_match_context(meta, account_id)
            await self.store.insert_match_results(context.id, matches)
        except (DatabaseError, RedisError) as exc:
            logger.warning("Persisting matches for %s failed: %s", meta.context_hash, exc)
        finally:
            if locked:
                try:
                    await release_lock(self.redis, meta.context_hash)
                except RedisError as exc:
                    logger.warning("Releasing lock for %s failed: %s", meta.context_hash, exc)

    def invalidate_all(self) -> None:
        self._cache.clear()

    def invalidate_for_playlists(self, playlist_ids: Sequence[str]) -> int:
        targets = set(playlist_ids)
        stale = [key for key, entry in self._cache.items() if entry.playlist_ids & targets]
        for key in stale:
            self._cache.delete(key)
        if stale:
            logger.info("Invalidated %s cached match contexts for %s playlists", len(stale), len(targets))
        return len(stale)

    def get_stats(self) -> CacheStats:
        return self._cache.stats()
