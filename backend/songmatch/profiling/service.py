from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..core.errors import SongMatchError
from ..db.repository import MatchingStore
from ..embedding.hashing import hash_song_ids
from ..embedding.model_bundle import ModelBundleResolver
from ..embedding.service import EmbeddingService
from ..embedding.versioning import PROFILE_KIND
from ..schemas.matching import BatchProgress
from ..schemas.profiles import PlaylistProfile
from ..schemas.songs import AudioFeatures, MatchingSong
from .calculations import (
    AnalysisInput,
    calculate_audio_centroid,
    calculate_centroid,
    compute_emotion_distribution,
    compute_genre_distribution,
)

logger = logging.getLogger("profiling")


@dataclass(slots=True)
class ProfileRequest:
    playlist_id: str
    songs: Sequence[MatchingSong]


@dataclass(slots=True)
class ProfilingStats:
    total: int = 0
    cached: int = 0
    computed: int = 0
    failed: int = 0


@dataclass(slots=True)
class BatchProfilingResult:
    results: Dict[str, PlaylistProfile] = field(default_factory=dict)
    # playlist id -> failure reason
    errors: Dict[str, str] = field(default_factory=dict)
    stats: ProfilingStats = field(default_factory=ProfilingStats)


class PlaylistProfilingService:
    def __init__(
        self,
        embedding_service: EmbeddingService,
        store: MatchingStore | None,
        bundle_resolver: ModelBundleResolver,
    ) -> None:
        self.embedding_service = embedding_service
        self.store = store
        self.bundle_resolver = bundle_resolver

    async def get_profile(self, playlist_id: str) -> Optional[PlaylistProfile]:
        if self.store is None:
            return None
        profile = await self.store.get_profile(playlist_id)
        if profile is not None:
            profile.from_cache = True
        return profile

    async def compute_profile(
        self,
        playlist_id: str,
        songs: Sequence[MatchingSong],
        audio_features: Optional[Sequence[AudioFeatures | Mapping | None]] = None,
        analyses: Optional[Sequence[AnalysisInput]] = None,
        *,
        embeddings: Optional[Mapping[str, Sequence[float]]] = None,
        skip_cache: bool = False,
        skip_persist: bool = False,
    ) -> PlaylistProfile:
        """Build the playlist profile, reusing the stored one when its inputs are unchanged.

        A stored profile is reused only while both its content hash (the song
        set) and its model bundle hash match; there is no time-based expiry.
        """
        model_bundle_hash = await self.bundle_resolver.get_hash()
        song_ids = [song.id for song in songs]
        content_hash = hash_song_ids(song_ids)

        if not skip_cache and self.store is not None:
            stored = await self.store.get_profile(playlist_id)
            if (
                stored is not None
                and stored.content_hash == content_hash
                and stored.model_bundle_hash == model_bundle_hash
            ):
                logger.debug("Profile cache hit for playlist %s", playlist_id)
                stored.from_cache = True
                return stored

        if embeddings is None:
            embeddings = await self.embedding_service.get_embeddings(song_ids) if song_ids else {}
        vectors: List[Sequence[float]] = [embeddings[song_id] for song_id in song_ids if embeddings.get(song_id)]
        centroid = calculate_centroid(vectors)

        if audio_features is None:
            audio_features = [song.audio_features for song in songs]
        if analyses is None:
            analyses = [song.analysis if song.analysis is not None else song.raw_analysis for song in songs]

        profile = PlaylistProfile(
            playlist_id=playlist_id,
            kind=PROFILE_KIND,
            embedding=centroid or None,
            audio_centroid=calculate_audio_centroid(audio_features),
            genre_distribution=compute_genre_distribution(songs),
            emotion_distribution=compute_emotion_distribution(analyses),
            song_ids=song_ids,
            song_count=len(song_ids),
            content_hash=content_hash,
            model_bundle_hash=model_bundle_hash,
            from_cache=False,
        )

        if not skip_persist and self.store is not None:
            await self.store.upsert_profile(profile)
        logger.info(
            "Computed profile for playlist %s (%s songs, %s embedded)",
            playlist_id,
            len(song_ids),
            len(vectors),
        )
        return profile

    async def compute_profiles(
        self,
        items: Sequence[ProfileRequest],
        on_progress: Callable[[BatchProgress], None] | None = None,
    ) -> BatchProfilingResult:
        outcome = BatchProfilingResult(stats=ProfilingStats(total=len(items)))
        for done, item in enumerate(items, start=1):
            try:
                profile = await self.compute_profile(item.playlist_id, item.songs)
            except SongMatchError as exc:
                logger.warning("Profiling failed for playlist %s: %s", item.playlist_id, exc)
                outcome.errors[item.playlist_id] = str(exc)
                outcome.stats.failed += 1
            else:
                outcome.results[item.playlist_id] = profile
                if profile.from_cache:
                    outcome.stats.cached += 1
                else:
                    outcome.stats.computed += 1
            if on_progress is not None:
                on_progress(
                    BatchProgress(
                        done=done,
                        total=len(items),
                        succeeded=len(outcome.results),
                        failed=outcome.stats.failed,
                    )
                )
        return outcome

    async def invalidate_profile(self, playlist_id: str) -> None:
        if self.store is not None:
            await self.store.delete_profile(playlist_id)
            logger.info("Invalidated profile for playlist %s", playlist_id)
