from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..embedding.hashing import short_hash, stable_stringify

AUDIO_FEATURE_KEYS = (
    "energy",
    "valence",
    "danceability",
    "acousticness",
    "instrumentalness",
    "speechiness",
    "liveness",
    "tempo",
    "loudness",
)


class AudioFeatures(BaseModel):
    energy: Optional[float] = None
    valence: Optional[float] = None
    danceability: Optional[float] = None
    acousticness: Optional[float] = None
    instrumentalness: Optional[float] = None
    speechiness: Optional[float] = None
    liveness: Optional[float] = None
    tempo: Optional[float] = None
    loudness: Optional[float] = None

    def present(self) -> Dict[str, float]:
        return {key: value for key in AUDIO_FEATURE_KEYS if (value := getattr(self, key)) is not None}


class SongAnalysis(BaseModel):
    """Canonical analysis shape consumed by profiling and scoring."""

    dominant_mood: Optional[str] = None
    themes: List[str] = Field(default_factory=list)
    listening_contexts: Dict[str, float] = Field(default_factory=dict)


class MatchingSong(BaseModel):
    id: str
    spotify_id: str = ""
    name: str = ""
    artists: List[str] = Field(default_factory=list)
    album_name: Optional[str] = None
    genres: Optional[List[str]] = None
    audio_features: Optional[AudioFeatures] = None
    analysis: Optional[SongAnalysis] = None
    # raw LLM analysis payload, only needed for embedding text extraction
    raw_analysis: Optional[Dict[str, Any]] = None

    def content_fingerprint(self) -> str:
        return short_hash(stable_stringify(self.model_dump(exclude={"raw_analysis"})))
