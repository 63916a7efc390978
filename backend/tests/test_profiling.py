import asyncio
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pytest

from songmatch.core.config import Settings
from songmatch.core.errors import ProviderError
from songmatch.db.repository import StoredEmbedding
from songmatch.embedding.hashing import hash_song_ids
from songmatch.embedding.model_bundle import ModelBundleResolver
from songmatch.embedding.service import EmbeddingService
from songmatch.ml.ports import EmbeddingResult, ProviderMetadata, RerankResponse
from songmatch.profiling.calculations import (
    calculate_audio_centroid,
    calculate_centroid,
    compute_emotion_distribution,
    compute_genre_distribution,
)
from songmatch.profiling.service import PlaylistProfilingService, ProfileRequest
from songmatch.schemas.profiles import PlaylistProfile
from songmatch.schemas.songs import AudioFeatures, MatchingSong, SongAnalysis


@dataclass(slots=True)
class _StubProvider:
    embedding_model: str = "e5-large"
    fail_metadata: bool = False

    async def embed(self, text, *, prefix=None, timeout=None):  # pragma: no cover - unused here
        return EmbeddingResult(embedding=[0.0, 0.0], model=self.embedding_model, dims=2)

    async def embed_batch(self, texts, *, prefix=None, timeout=None):  # pragma: no cover - unused here
        return []

    async def rerank(self, query, documents, *, top_k=None, timeout=None):  # pragma: no cover - unused here
        return RerankResponse()

    async def is_available(self) -> bool:  # pragma: no cover - unused here
        return True

    def get_metadata(self) -> ProviderMetadata:
        if self.fail_metadata:
            raise ProviderError("deepinfra", "metadata", "unreachable")
        return ProviderMetadata(name="deepinfra", embedding_model=self.embedding_model, embedding_dims=2)


@dataclass(slots=True)
class _MemoryStore:
    profiles: Dict[str, PlaylistProfile] = field(default_factory=dict)
    embeddings: Dict[str, StoredEmbedding] = field(default_factory=dict)
    upserts: int = 0

    async def get_profile(self, playlist_id: str) -> Optional[PlaylistProfile]:
        stored = self.profiles.get(playlist_id)
        return stored.model_copy() if stored else None

    async def upsert_profile(self, profile: PlaylistProfile) -> None:
        self.upserts += 1
        self.profiles[profile.playlist_id] = profile.model_copy()

    async def delete_profile(self, playlist_id: str) -> None:
        self.profiles.pop(playlist_id, None)

    async def get_song_embeddings(self, song_ids: Sequence[str], *, kind: str = "full", model=None):
        return {song_id: self.embeddings[song_id] for song_id in song_ids if song_id in self.embeddings}

    async def upsert_song_embeddings(self, items, *, kind: str = "full") -> None:
        for item in items:
            self.embeddings[item.song_id] = item


def _song(song_id: str, *, genres: List[str], energy: float, mood: Optional[str] = None) -> MatchingSong:
    return MatchingSong(
        id=song_id,
        name=song_id,
        artists=["artist"],
        genres=genres,
        audio_features=AudioFeatures(energy=energy),
        analysis=SongAnalysis(dominant_mood=mood) if mood else None,
    )


def _service(store: _MemoryStore, provider: _StubProvider | None = None) -> PlaylistProfilingService:
    provider = provider or _StubProvider()
    settings = Settings(ml_api_key="test")
    return PlaylistProfilingService(
        EmbeddingService(provider, store),
        store,
        ModelBundleResolver(provider, settings),
    )


def test_calculate_centroid():
    assert calculate_centroid([[1, 2], [3, 4]]) == pytest.approx([2, 3])
    assert calculate_centroid([]) == []


def test_audio_centroid_skips_missing_and_nan():
    centroid = calculate_audio_centroid(
        [
            {"energy": 0.8, "tempo": 120},
            {"energy": 0.4, "tempo": math.nan},
            AudioFeatures(energy=None, valence=0.2),
            None,
        ]
    )
    assert centroid == pytest.approx({"energy": 0.6, "tempo": 120.0, "valence": 0.2})
    assert "danceability" not in centroid


def test_genre_distribution_counts_duplicates():
    songs = [
        _song("a", genres=["rock", "indie"], energy=0.5),
        _song("b", genres=["rock"], energy=0.5),
        _song("c", genres=["rock", "rock"], energy=0.5),
    ]
    assert compute_genre_distribution(songs) == {"rock": 4, "indie": 1}


def test_emotion_distribution_uses_every_mood_shape():
    analyses = [
        SongAnalysis(dominant_mood="happy"),
        {"emotional": {"dominant_mood": "happy"}},
        {"emotional_profile": {"dominant_mood": "sad"}},
        {"analysis": {"emotional": {"dominant_mood": "sad"}}},
        {"themes": ["no mood"]},
        None,
    ]
    assert compute_emotion_distribution(analyses) == {"happy": 2, "sad": 2}


async def _compute_and_reuse():
    store = _MemoryStore()
    store.embeddings = {
        "a": StoredEmbedding("a", [1.0, 0.0], "te_v1_x", "e5-large", 2),
        "b": StoredEmbedding("b", [0.0, 1.0], "te_v1_y", "e5-large", 2),
    }
    service = _service(store)
    songs = [
        _song("a", genres=["rock"], energy=0.8, mood="happy"),
        _song("b", genres=["rock", "punk"], energy=0.6, mood="happy"),
        _song("c", genres=["punk"], energy=0.4),
    ]

    first = await service.compute_profile("p1", songs)
    assert first.from_cache is False
    assert first.embedding == pytest.approx([0.5, 0.5])
    assert first.audio_centroid == pytest.approx({"energy": 0.6})
    assert first.genre_distribution == {"rock": 2, "punk": 2}
    assert first.emotion_distribution == {"happy": 2}
    assert first.song_ids == ["a", "b", "c"]
    assert first.content_hash == hash_song_ids(["c", "b", "a"])
    assert store.upserts == 1

    second = await service.compute_profile("p1", list(reversed(songs)))
    assert second.from_cache is True
    assert second.embedding == pytest.approx(first.embedding)
    assert store.upserts == 1

    changed = await service.compute_profile("p1", songs[:2])
    assert changed.from_cache is False
    assert store.upserts == 2

    forced = await service.compute_profile("p1", songs[:2], skip_cache=True, skip_persist=True)
    assert forced.from_cache is False
    assert store.upserts == 2


def test_profile_is_reused_until_songs_change():
    asyncio.run(_compute_and_reuse())


async def _bundle_change_invalidates():
    store = _MemoryStore()
    songs = [_song("a", genres=["rock"], energy=0.5)]
    await _service(store, _StubProvider(embedding_model="old")).compute_profile("p1", songs)
    profile = await _service(store, _StubProvider(embedding_model="new")).compute_profile("p1", songs)
    assert profile.from_cache is False
    assert store.upserts == 2


def test_model_bundle_change_invalidates_profile():
    asyncio.run(_bundle_change_invalidates())


async def _empty_playlist():
    store = _MemoryStore()
    profile = await _service(store).compute_profile("empty", [])
    assert profile.embedding is None
    assert profile.audio_centroid == {}
    assert profile.genre_distribution == {}
    assert profile.emotion_distribution == {}
    assert profile.song_count == 0


def test_empty_playlist_profile():
    asyncio.run(_empty_playlist())


async def _batch_with_failure():
    store = _MemoryStore()
    service = _service(store)
    songs = [_song("a", genres=["rock"], energy=0.5)]
    await service.compute_profile("p1", songs)

    progress = []
    result = await service.compute_profiles(
        [ProfileRequest("p1", songs), ProfileRequest("p2", songs)],
        on_progress=progress.append,
    )
    assert set(result.results) == {"p1", "p2"}
    assert result.stats.cached == 1
    assert result.stats.computed == 1
    assert [item.done for item in progress] == [1, 2]

    broken = _service(_MemoryStore(), _StubProvider(fail_metadata=True))
    failed = await broken.compute_profiles([ProfileRequest("p3", songs)])
    assert failed.stats.failed == 1
    assert "unreachable" in failed.errors["p3"]


def test_compute_profiles_reports_per_playlist():
    asyncio.run(_batch_with_failure())


async def _invalidate():
    store = _MemoryStore()
    service = _service(store)
    await service.compute_profile("p1", [_song("a", genres=["rock"], energy=0.5)])
    assert (await service.get_profile("p1")).from_cache is True
    await service.invalidate_profile("p1")
    assert await service.get_profile("p1") is None


def test_invalidate_profile():
    asyncio.run(_invalidate())
