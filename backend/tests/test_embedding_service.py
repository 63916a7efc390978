import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import pytest

from songmatch.core.errors import DimensionMismatchError, MissingAnalysisError
from songmatch.db.repository import StoredEmbedding
from songmatch.embedding.service import EmbeddingService, build_song_text
from songmatch.ml.ports import EmbeddingResult, ProviderMetadata, RerankResponse
from songmatch.schemas.songs import MatchingSong, SongAnalysis


@dataclass(slots=True)
class _CountingProvider:
    dims: int = 3
    calls: List[List[str]] = field(default_factory=list)

    def _vector(self, text: str) -> List[float]:
        return [float(len(text) % 7), 1.0, 0.5][: self.dims] + [0.0] * max(0, self.dims - 3)

    async def embed(self, text, *, prefix=None, timeout=None):
        self.calls.append([text])
        return EmbeddingResult(embedding=self._vector(text), model="e5-large", dims=self.dims)

    async def embed_batch(self, texts, *, prefix=None, timeout=None):
        self.calls.append(list(texts))
        return [EmbeddingResult(embedding=self._vector(text), model="e5-large", dims=self.dims) for text in texts]

    async def rerank(self, query, documents, *, top_k=None, timeout=None):  # pragma: no cover - unused here
        return RerankResponse()

    async def is_available(self) -> bool:  # pragma: no cover - unused here
        return True

    def get_metadata(self) -> ProviderMetadata:
        return ProviderMetadata(name="deepinfra", embedding_model="e5-large", embedding_dims=self.dims)


@dataclass(slots=True)
class _EmbeddingStore:
    rows: Dict[str, StoredEmbedding] = field(default_factory=dict)

    async def get_song_embeddings(self, song_ids: Sequence[str], *, kind: str = "full", model=None):
        return {song_id: self.rows[song_id] for song_id in song_ids if song_id in self.rows}

    async def upsert_song_embeddings(self, items, *, kind: str = "full") -> None:
        for item in items:
            self.rows[item.song_id] = item


def _song(song_id: str, analysed: bool = True) -> MatchingSong:
    return MatchingSong(
        id=song_id,
        name=f"Song {song_id}",
        artists=["Band"],
        genres=["shoegaze"],
        analysis=SongAnalysis(dominant_mood="dreamy", themes=["haze"], listening_contexts={"night": 0.9}) if analysed else None,
    )


def test_song_text_is_built_from_canonical_analysis():
    text = build_song_text(_song("1"))
    assert "Song 1 | Band | shoegaze" in text
    assert "haze" in text
    assert "dreamy" in text
    assert "night" in text
    with pytest.raises(MissingAnalysisError):
        build_song_text(_song("2", analysed=False))


def test_song_text_accepts_listening_contexts_as_a_mapping():
    song = MatchingSong(id="4", name="Lift", raw_analysis={"context": {"listening_contexts": {"workout": 0.9}}})
    assert "workout" in build_song_text(song)


async def _embed_and_reuse():
    provider = _CountingProvider()
    store = _EmbeddingStore()
    service = EmbeddingService(provider, store, expected_dims=3)

    vector = await service.embed_song(_song("1"))
    assert len(vector) == 3
    assert store.rows["1"].content_hash.startswith("te_v1_")

    again = await service.embed_song(_song("1"))
    assert again == vector
    assert len(provider.calls) == 1

    assert await service.get_embeddings(["1", "missing"]) == {"1": vector}


def test_embedding_reused_while_text_unchanged():
    asyncio.run(_embed_and_reuse())


async def _batch():
    provider = _CountingProvider()
    store = _EmbeddingStore()
    service = EmbeddingService(provider, store, expected_dims=3)
    await service.embed_song(_song("1"))

    result = await service.embed_batch([_song("1"), _song("2"), _song("3", analysed=False)])
    assert set(result.succeeded) == {"1", "2"}
    assert result.reused == 1
    assert "3" in result.failed
    # only the song without a stored embedding reaches the provider
    assert provider.calls[-1] == [build_song_text(_song("2"))]


def test_embed_batch_records_songs_without_analysis():
    asyncio.run(_batch())


async def _dimension_mismatch():
    service = EmbeddingService(_CountingProvider(dims=4), None, expected_dims=3)
    with pytest.raises(DimensionMismatchError) as excinfo:
        await service.embed_text("hello")
    assert excinfo.value.expected == 3
    assert excinfo.value.actual == 4


def test_dimension_mismatch_raises():
    asyncio.run(_dimension_mismatch())
