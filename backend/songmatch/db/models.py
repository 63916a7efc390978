from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, LargeBinary, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .base import Base


class PlaylistProfileRecord(Base):
    __tablename__ = "playlist_profiles"

    playlist_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    model_bundle_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    dims: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary)
    audio_centroid: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    genre_distribution: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    emotion_distribution: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    song_ids: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    song_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SongEmbeddingRecord(Base):
    __tablename__ = "song_embeddings"

    song_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), primary_key=True)
    model: Mapped[str] = mapped_column(String(255), primary_key=True)
    dims: Mapped[int] = mapped_column(Integer, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    embedding: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class MatchContextRecord(Base):
    __tablename__ = "match_contexts"
    __table_args__ = (UniqueConstraint("account_id", "context_hash"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    algorithm_version: Mapped[str] = mapped_column(String(32), nullable=False)
    embedding_model: Mapped[str | None] = mapped_column(String(255))
    embedding_version: Mapped[str | None] = mapped_column(String(64))
    weights: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    config_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    playlist_set_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    candidate_set_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    context_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    playlist_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    song_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    results: Mapped[list["MatchResultRecord"]] = relationship(back_populates="context", cascade="all, delete-orphan")


class MatchResultRecord(Base):
    __tablename__ = "match_results"
    __table_args__ = (UniqueConstraint("context_id", "song_id", "playlist_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    context_id: Mapped[int] = mapped_column(ForeignKey("match_contexts.id", ondelete="CASCADE"), nullable=False, index=True)
    song_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    playlist_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    factors: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    context: Mapped[MatchContextRecord] = relationship(back_populates="results")
