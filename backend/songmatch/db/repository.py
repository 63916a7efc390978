from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import DatabaseError
from ..embedding.versioning import MATCHING_ALGO_VERSION
from ..schemas.matching import MatchContextMeta, MatchResult, ScoreFactors
from ..schemas.profiles import PlaylistProfile
from . import models

logger = logging.getLogger("db")


@dataclass(slots=True)
class StoredEmbedding:
    song_id: str
    embedding: List[float]
    content_hash: str
    model: str
    dims: int


@dataclass(slots=True)
class StoredMatchContext:
    id: int
    account_id: str
    context_hash: str
    model_bundle_hash: Optional[str]
    song_count: int
    playlist_count: int
    embedding_model: Optional[str] = None


def _vector_to_bytes(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _bytes_to_vector(raw: bytes | None) -> Optional[List[float]]:
    if not raw:
        return None
    return np.frombuffer(raw, dtype=np.float32).astype(float).tolist()


class MatchingStore(Protocol):
    async def get_profile(self, playlist_id: str) -> Optional[PlaylistProfile]: ...

    async def upsert_profile(self, profile: PlaylistProfile) -> None: ...

    async def delete_profile(self, playlist_id: str) -> None: ...

    async def get_song_embeddings(
        self, song_ids: Sequence[str], *, kind: str = "full", model: Optional[str] = None
    ) -> Dict[str, StoredEmbedding]: ...

    async def upsert_song_embeddings(self, items: Sequence[StoredEmbedding], *, kind: str = "full") -> None: ...

    async def get_match_context(self, context_hash: str, account_id: str) -> Optional[StoredMatchContext]: ...

    async def create_match_context(self, meta: MatchContextMeta, account_id: str) -> StoredMatchContext: ...

    async def get_match_results(self, context_id: int, song_ids: Sequence[str]) -> Dict[str, List[MatchResult]]: ...

    async def insert_match_results(self, context_id: int, matches: Dict[str, List[MatchResult]]) -> int: ...


def _profile_from_record(record: models.PlaylistProfileRecord) -> PlaylistProfile:
    return PlaylistProfile(
        playlist_id=record.playlist_id,
        kind=record.kind,
        embedding=_bytes_to_vector(record.embedding),
        audio_centroid=dict(record.audio_centroid or {}),
        genre_distribution=dict(record.genre_distribution or {}),
        emotion_distribution=dict(record.emotion_distribution or {}),
        song_ids=list(record.song_ids or []),
        song_count=record.song_count,
        content_hash=record.content_hash,
        model_bundle_hash=record.model_bundle_hash,
        from_cache=True,
    )


def _context_from_record(record: models.MatchContextRecord) -> StoredMatchContext:
    return StoredMatchContext(
        id=record.id,
        account_id=record.account_id,
        context_hash=record.context_hash,
        model_bundle_hash=record.embedding_version,
        song_count=record.song_count,
        playlist_count=record.playlist_count,
        embedding_model=record.embedding_model,
    )


class SqlAlchemyMatchingStore:
    """Postgres-backed store for profiles, song embeddings and match results."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_profile(self, playlist_id: str) -> Optional[PlaylistProfile]:
        try:
            async with self.session_factory() as session:
                record = await session.get(models.PlaylistProfileRecord, playlist_id)
                return _profile_from_record(record) if record else None
        except SQLAlchemyError as exc:
            raise DatabaseError("get_profile", str(exc)) from exc

    async def upsert_profile(self, profile: PlaylistProfile) -> None:
        try:
            async with self.session_factory() as session:
                record = await session.get(models.PlaylistProfileRecord, profile.playlist_id)
                if record is None:
                    record = models.PlaylistProfileRecord(playlist_id=profile.playlist_id)
                    session.add(record)
                record.kind = profile.kind
                record.model_bundle_hash = profile.model_bundle_hash
                record.content_hash = profile.content_hash
                record.dims = len(profile.embedding or [])
                record.embedding = _vector_to_bytes(profile.embedding) if profile.embedding else None
                record.audio_centroid = dict(profile.audio_centroid)
                record.genre_distribution = dict(profile.genre_distribution)
                record.emotion_distribution = dict(profile.emotion_distribution)
                record.song_ids = list(profile.song_ids)
                record.song_count = profile.song_count
                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseError("upsert_profile", str(exc)) from exc

    async def delete_profile(self, playlist_id: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    delete(models.PlaylistProfileRecord).where(models.PlaylistProfileRecord.playlist_id == playlist_id)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseError("delete_profile", str(exc)) from exc

    async def get_song_embeddings(
        self, song_ids: Sequence[str], *, kind: str = "full", model: Optional[str] = None
    ) -> Dict[str, StoredEmbedding]:
        if not song_ids:
            return {}
        stmt = select(models.SongEmbeddingRecord).where(
            models.SongEmbeddingRecord.song_id.in_(list(song_ids)),
            models.SongEmbeddingRecord.kind == kind,
        )
        if model is not None:
            stmt = stmt.where(models.SongEmbeddingRecord.model == model)
        try:
            async with self.session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise DatabaseError("get_song_embeddings", str(exc)) from exc

        found: Dict[str, StoredEmbedding] = {}
        for record in records:
            found[record.song_id] = StoredEmbedding(
                song_id=record.song_id,
                embedding=_bytes_to_vector(record.embedding) or [],
                content_hash=record.content_hash,
                model=record.model,
                dims=record.dims,
            )
        return found

    async def upsert_song_embeddings(self, items: Sequence[StoredEmbedding], *, kind: str = "full") -> None:
        if not items:
            return
        try:
            async with self.session_factory() as session:
                for item in items:
                    record = await session.get(models.SongEmbeddingRecord, (item.song_id, kind, item.model))
                    if record is None:
                        record = models.SongEmbeddingRecord(song_id=item.song_id, kind=kind, model=item.model)
                        session.add(record)
                    record.dims = item.dims
                    record.content_hash = item.content_hash
                    record.embedding = _vector_to_bytes(item.embedding)
                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseError("upsert_song_embeddings", str(exc)) from exc

    async def get_match_context(self, context_hash: str, account_id: str) -> Optional[StoredMatchContext]:
        stmt = select(models.MatchContextRecord).where(
            models.MatchContextRecord.context_hash == context_hash,
            models.MatchContextRecord.account_id == account_id,
        )
        try:
            async with self.session_factory() as session:
                record = (await session.execute(stmt)).scalar_one_or_none()
                return _context_from_record(record) if record else None
        except SQLAlchemyError as exc:
            raise DatabaseError("get_match_context", str(exc)) from exc

    async def _find_context(
        self, session: AsyncSession, context_hash: str, account_id: str
    ) -> Optional[models.MatchContextRecord]:
        stmt = select(models.MatchContextRecord).where(
            models.MatchContextRecord.context_hash == context_hash,
            models.MatchContextRecord.account_id == account_id,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def create_match_context(self, meta: MatchContextMeta, account_id: str) -> StoredMatchContext:
        try:
            async with self.session_factory() as session:
                existing = await self._find_context(session, meta.context_hash, account_id)
                if existing is not None:
                    return _context_from_record(existing)

                record = models.MatchContextRecord(
                    account_id=account_id,
                    algorithm_version=MATCHING_ALGO_VERSION,
                    embedding_model=meta.embedding_model,
                    embedding_version=meta.model_bundle_hash,
                    weights=dict(meta.weights),
                    config_hash=meta.config_hash,
                    playlist_set_hash=meta.playlist_set_hash,
                    candidate_set_hash=meta.candidate_set_hash,
                    context_hash=meta.context_hash,
                    playlist_count=meta.playlist_count,
                    song_count=meta.song_count,
                )
                session.add(record)
                try:
                    await session.commit()
                except IntegrityError:
                    # another writer created the same context first
                    await session.rollback()
                    existing = await self._find_context(session, meta.context_hash, account_id)
                    if existing is None:
                        raise
                    return _context_from_record(existing)
                return _context_from_record(record)
        except SQLAlchemyError as exc:
            raise DatabaseError("create_match_context", str(exc)) from exc

    async def get_match_results(self, context_id: int, song_ids: Sequence[str]) -> Dict[str, List[MatchResult]]:
        if not song_ids:
            return {}
        stmt = (
            select(models.MatchResultRecord)
            .where(
                models.MatchResultRecord.context_id == context_id,
                models.MatchResultRecord.song_id.in_(list(song_ids)),
            )
            .order_by(models.MatchResultRecord.song_id, models.MatchResultRecord.rank)
        )
        try:
            async with self.session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise DatabaseError("get_match_results", str(exc)) from exc

        results: Dict[str, List[MatchResult]] = {}
        for record in records:
            results.setdefault(record.song_id, []).append(
                MatchResult(
                    song_id=record.song_id,
                    playlist_id=record.playlist_id,
                    score=record.score,
                    rank=record.rank or 0,
                    confidence=record.confidence,
                    factors=ScoreFactors(**(record.factors or {})),
                    from_cache=True,
                )
            )
        return results

    async def insert_match_results(self, context_id: int, matches: Dict[str, List[MatchResult]]) -> int:
        rows = [match for song_matches in matches.values() for match in song_matches]
        if not rows:
            return 0
        try:
            async with self.session_factory() as session:
                existing_stmt = select(
                    models.MatchResultRecord.song_id, models.MatchResultRecord.playlist_id
                ).where(models.MatchResultRecord.context_id == context_id)
                existing = {(song_id, playlist_id) for song_id, playlist_id in (await session.execute(existing_stmt)).all()}

                inserted = 0
                for match in rows:
                    if (match.song_id, match.playlist_id) in existing:
                        continue
                    session.add(
                        models.MatchResultRecord(
                            context_id=context_id,
                            song_id=match.song_id,
                            playlist_id=match.playlist_id,
                            score=match.score,
                            rank=match.rank,
                            confidence=match.confidence,
                            factors=match.factors.model_dump(),
                        )
                    )
                    existing.add((match.song_id, match.playlist_id))
                    inserted += 1
                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseError("insert_match_results", str(exc)) from exc
        logger.debug("Stored %s match results for context %s", inserted, context_id)
        return inserted
