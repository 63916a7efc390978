from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from ..core.errors import DimensionMismatchError, MissingAnalysisError
from ..db.repository import MatchingStore, StoredEmbedding
from ..ml.ports import EmbedPrefix, MLProvider
from ..schemas.songs import MatchingSong
from .extractors import combine_vectorization_text, extract_song_analysis_only, extract_song_text
from .hashing import hash_track_content

logger = logging.getLogger("embedding")

EmbeddingKind = Literal["full", "analysis"]


@dataclass(slots=True)
class BatchEmbedResult:
    succeeded: Dict[str, List[float]] = field(default_factory=dict)
    # song id -> failure reason
    failed: Dict[str, str] = field(default_factory=dict)
    reused: int = 0


def _raw_analysis(song: MatchingSong) -> Optional[Dict[str, Any]]:
    if song.raw_analysis:
        return song.raw_analysis
    if song.analysis is None:
        return None
    # rebuild the payload shape the extractors read from the canonical analysis
    return {
        "themes": list(song.analysis.themes),
        "emotional": {"dominant_mood": song.analysis.dominant_mood},
        "context": {
            "listening_contexts": [
                {"context": name, "score": score} for name, score in song.analysis.listening_contexts.items()
            ]
        },
    }


def build_song_text(song: MatchingSong, kind: EmbeddingKind = "full") -> str:
    analysis = _raw_analysis(song)
    if analysis is None:
        raise MissingAnalysisError(song.id)
    if kind == "analysis":
        text = extract_song_analysis_only(analysis)
    else:
        text = extract_song_text(
            name=song.name,
            artists=song.artists,
            album_name=song.album_name,
            genres=song.genres,
            analysis=analysis,
        )
    return combine_vectorization_text(text)


class EmbeddingService:
    def __init__(
        self,
        provider: MLProvider,
        store: MatchingStore | None = None,
        expected_dims: int | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.expected_dims = expected_dims

    @property
    def model(self) -> str:
        return self.provider.get_metadata().embedding_model

    def _check_dims(self, vector: Sequence[float]) -> None:
        if self.expected_dims is not None and len(vector) != self.expected_dims:
            raise DimensionMismatchError(self.expected_dims, len(vector))

    async def embed_text(self, text: str, prefix: EmbedPrefix | None = "query:") -> List[float]:
        result = await self.provider.embed(text, prefix=prefix)
        self._check_dims(result.embedding)
        return list(result.embedding)

    async def _stored(self, song_ids: Sequence[str], kind: EmbeddingKind) -> Dict[str, StoredEmbedding]:
        if self.store is None:
            return {}
        return await self.store.get_song_embeddings(song_ids, kind=kind, model=self.model)

    async def embed_song(self, song: MatchingSong, kind: EmbeddingKind = "full") -> List[float]:
        text = build_song_text(song, kind)
        content_hash = hash_track_content(text)

        stored = (await self._stored([song.id], kind)).get(song.id)
        if stored is not None and stored.content_hash == content_hash:
            logger.debug("Reusing stored embedding for %s", song.id)
            return stored.embedding

        result = await self.provider.embed(text, prefix="passage:")
        self._check_dims(result.embedding)
        if self.store is not None:
            await self.store.upsert_song_embeddings(
                [
                    StoredEmbedding(
                        song_id=song.id,
                        embedding=list(result.embedding),
                        content_hash=content_hash,
                        model=self.model,
                        dims=len(result.embedding),
                    )
                ],
                kind=kind,
            )
        return list(result.embedding)

    async def embed_batch(self, songs: Sequence[MatchingSong], kind: EmbeddingKind = "full") -> BatchEmbedResult:
        outcome = BatchEmbedResult()
        pending: List[tuple[MatchingSong, str, str]] = []
        for song in songs:
            try:
                text = build_song_text(song, kind)
            except MissingAnalysisError as exc:
                outcome.failed[song.id] = str(exc)
                continue
            pending.append((song, text, hash_track_content(text)))

        stored = await self._stored([song.id for song, _, _ in pending], kind)
        to_embed: List[tuple[MatchingSong, str, str]] = []
        for song, text, content_hash in pending:
            existing = stored.get(song.id)
            if existing is not None and existing.content_hash == content_hash:
                outcome.succeeded[song.id] = existing.embedding
                outcome.reused += 1
            else:
                to_embed.append((song, text, content_hash))

        if to_embed:
            results = await self.provider.embed_batch([text for _, text, _ in to_embed], prefix="passage:")
            fresh: List[StoredEmbedding] = []
            for (song, _, content_hash), result in zip(to_embed, results):
                self._check_dims(result.embedding)
                outcome.succeeded[song.id] = list(result.embedding)
                fresh.append(
                    StoredEmbedding(
                        song_id=song.id,
                        embedding=list(result.embedding),
                        content_hash=content_hash,
                        model=self.model,
                        dims=len(result.embedding),
                    )
                )
            if self.store is not None:
                await self.store.upsert_song_embeddings(fresh, kind=kind)

        logger.info(
            "Embedded %s songs (%s reused, %s failed)",
            len(outcome.succeeded),
            outcome.reused,
            len(outcome.failed),
        )
        return outcome

    async def get_embeddings(self, song_ids: Sequence[str], kind: EmbeddingKind = "full") -> Dict[str, List[float]]:
        stored = await self._stored(song_ids, kind)
        return {song_id: item.embedding for song_id, item in stored.items() if item.embedding}
