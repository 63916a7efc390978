from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.config import Settings
from ..core.errors import ConfigError


class MatchingWeights(BaseModel):
    vector: float = Field(0.25, ge=0.0)
    genre: float = Field(0.15, ge=0.0)
    audio: float = Field(0.25, ge=0.0)
    semantic: float = Field(0.15, ge=0.0)
    context: float = Field(0.15, ge=0.0)
    flow: float = Field(0.05, ge=0.0)


class AudioFeatureWeights(BaseModel):
    energy: float = Field(1.0, ge=0.0)
    valence: float = Field(1.0, ge=0.0)
    danceability: float = Field(0.8, ge=0.0)
    acousticness: float = Field(0.6, ge=0.0)
    instrumentalness: float = Field(0.5, ge=0.0)
    speechiness: float = Field(0.4, ge=0.0)
    liveness: float = Field(0.3, ge=0.0)
    tempo: float = Field(0.7, ge=0.0)
    loudness: float = Field(0.3, ge=0.0)


DEFAULT_MATCHING_WEIGHTS = MatchingWeights()
DEFAULT_AUDIO_FEATURE_WEIGHTS = AudioFeatureWeights()


class MatchingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    weights: MatchingWeights = Field(default_factory=MatchingWeights)
    audio_weights: AudioFeatureWeights = Field(default_factory=AudioFeatureWeights)
    min_score_threshold: float = Field(0.0, ge=0.0, le=1.0)
    max_results_per_song: Optional[int] = Field(None, ge=1)
    skip_vector_scoring: bool = False
    # early (vector + genre + audio) score a song must beat before themes, contexts and flow are scored
    deep_analysis_threshold: float = Field(0.1, ge=0.0, le=1.0)
    adaptive_weights: bool = True

    def with_overrides(self, overrides: "MatchingConfig | Mapping[str, Any] | None") -> "MatchingConfig":
        """Defaults plus overrides; nested weight maps merge key by key."""
        if overrides is None:
            return self
        if isinstance(overrides, MatchingConfig):
            changes = overrides.model_dump(exclude_unset=True)
        else:
            changes = dict(overrides)
        merged = self.model_dump()
        for key, value in changes.items():
            if key in ("weights", "audio_weights") and isinstance(value, Mapping):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        try:
            return MatchingConfig.model_validate(merged)
        except ValidationError as exc:
            raise ConfigError("matching", str(exc)) from exc

    def hash_input(self) -> Dict[str, Any]:
        return {
            "weights": self.weights.model_dump(),
            "audioWeights": self.audio_weights.model_dump(),
            "minScoreThreshold": self.min_score_threshold,
            "maxResultsPerSong": self.max_results_per_song,
            "deepAnalysisThreshold": self.deep_analysis_threshold,
            "adaptiveWeights": self.adaptive_weights,
            "skipVectorScoring": self.skip_vector_scoring,
        }


class RerankerConfig(BaseModel):
    top_n: int = Field(50, ge=1)
    blend_weight: float = Field(0.3, ge=0.0, le=1.0)
    min_score_threshold: float = Field(0.2, ge=0.0, le=1.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RerankerConfig":
        return cls(
            top_n=settings.rerank_top_n,
            blend_weight=settings.rerank_blend_weight,
            min_score_threshold=settings.rerank_min_score,
        )


class MatchCacheConfig(BaseModel):
    ttl_ms: int = Field(60 * 60 * 1000, gt=0)
    max_entries: int = Field(100, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatchCacheConfig":
        return cls(ttl_ms=settings.match_cache_ttl_ms, max_entries=settings.match_cache_max_entries)


@dataclass(frozen=True, slots=True)
class DataAvailability:
    has_embedding: bool
    has_genres: bool
    has_audio_features: bool
    has_analysis: bool
    has_recent_songs: bool

    def content_ratio(self) -> float:
        # recent songs describe the playlist, not the song, so they do not count here
        present = (self.has_embedding, self.has_genres, self.has_audio_features, self.has_analysis)
        return sum(present) / len(present)


def compute_adaptive_weights(base: MatchingWeights, availability: DataAvailability) -> MatchingWeights:
    """Move the weight of factors that cannot be scored onto the ones that can.

    Analysis-driven factors receive half a share and flow a quarter, so the
    redistributed weights are biased towards the content factors.
    """
    weights = base.model_dump()
    unavailable = 0.0
    available = 0

    def drop(*names: str) -> None:
        nonlocal unavailable
        for name in names:
            unavailable += weights[name]
            weights[name] = 0.0

    if availability.has_embedding:
        available += 1
    else:
        drop("vector")
    if availability.has_genres:
        available += 1
    else:
        drop("genre")
    if availability.has_audio_features:
        available += 1
    else:
        drop("audio")
    if availability.has_analysis:
        available += 2
    else:
        drop("semantic", "context")
    if availability.has_recent_songs:
        available += 1
    else:
        drop("flow")

    if available and unavailable > 0:
        share = unavailable / available
        for name, factor in (("vector", 1.0), ("genre", 1.0), ("audio", 1.0), ("semantic", 0.5), ("context", 0.5), ("flow", 0.25)):
            if weights[name] > 0:
                weights[name] += share * factor

    return MatchingWeights(**weights)


SEMANTIC_THRESHOLDS: Dict[str, float] = {
    "related": 0.5,
    "similar": 0.65,
    "very_similar": 0.8,
}

SCORE_TIERS: Dict[str, float] = {
    "excellent": 0.8,
    "good": 0.6,
    "fair": 0.4,
    "poor": 0.2,
}


def score_tier(score: float) -> str:
    for tier, floor in SCORE_TIERS.items():
        if score >= floor:
            return tier
    return "none"
