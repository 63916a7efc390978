from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ScoreFactors(BaseModel):
    vector: float = Field(0.0, ge=0.0, le=1.0)
    genre: float = Field(0.0, ge=0.0, le=1.0)
    audio: float = Field(0.0, ge=0.0, le=1.0)
    semantic: float = Field(0.0, ge=0.0, le=1.0)
    context: float = Field(0.0, ge=0.0, le=1.0)
    flow: float = Field(0.0, ge=0.0, le=1.0)


class MatchResult(BaseModel):
    song_id: str
    playlist_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    rank: int = 0
    factors: ScoreFactors = Field(default_factory=ScoreFactors)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    from_cache: bool = False


class BatchStats(BaseModel):
    total: int = 0
    matched: int = 0
    failed: int = 0
    cached: int = 0
    computed: int = 0


class BatchProgress(BaseModel):
    done: int
    total: int
    succeeded: int = 0
    failed: int = 0


class BatchMatchResult(BaseModel):
    matches: Dict[str, List[MatchResult]] = Field(default_factory=dict)
    # song id -> failure reason
    failed: Dict[str, str] = Field(default_factory=dict)
    stats: BatchStats = Field(default_factory=BatchStats)


class MatchCandidate(BaseModel):
    id: str
    score: float
    document: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RerankStats(BaseModel):
    original_top_score: float = 0.0
    rerank_top_score: float = 0.0
    score_shift: float = 0.0


class RerankResult(BaseModel):
    candidates: List[MatchCandidate] = Field(default_factory=list)
    reranked: bool = False
    reranked_count: int = 0
    stats: RerankStats = Field(default_factory=RerankStats)


class MatchContextMeta(BaseModel):
    """Hashes identifying one matching run; equal hashes mean reusable results."""

    context_hash: str
    candidate_set_hash: str
    playlist_set_hash: str
    config_hash: str
    model_bundle_hash: str
    embedding_model: Optional[str] = None
    playlist_count: int = 0
    song_count: int = 0
    weights: Dict[str, float] = Field(default_factory=dict)
