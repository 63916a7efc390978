from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..embedding.hashing import hash_playlist_profile, short_hash, stable_stringify
from ..embedding.versioning import PROFILE_KIND


class PlaylistProfile(BaseModel):
    playlist_id: str
    kind: str = PROFILE_KIND
    embedding: Optional[List[float]] = None
    audio_centroid: Dict[str, float] = Field(default_factory=dict)
    genre_distribution: Dict[str, int] = Field(default_factory=dict)
    emotion_distribution: Dict[str, int] = Field(default_factory=dict)
    song_ids: List[str] = Field(default_factory=list)
    song_count: int = 0
    content_hash: str
    model_bundle_hash: str
    from_cache: bool = False


class RecentSong(BaseModel):
    dominant_mood: Optional[str] = None
    energy: float
    valence: float


class MatchingPlaylistProfile(BaseModel):
    playlist_id: str
    embedding: Optional[List[float]] = None
    audio_centroid: Dict[str, float] = Field(default_factory=dict)
    genre_distribution: Dict[str, float] = Field(default_factory=dict)
    emotion_distribution: Dict[str, float] = Field(default_factory=dict)
    themes: Optional[List[str]] = None
    listening_contexts: Optional[Dict[str, float]] = None
    recent_songs: Optional[List[RecentSong]] = None
    profile_hash: Optional[str] = None

    @classmethod
    def from_profile(
        cls,
        profile: PlaylistProfile,
        *,
        themes: Optional[List[str]] = None,
        listening_contexts: Optional[Dict[str, float]] = None,
        recent_songs: Optional[List[RecentSong]] = None,
    ) -> "MatchingPlaylistProfile":
        return cls(
            playlist_id=profile.playlist_id,
            embedding=profile.embedding,
            audio_centroid=dict(profile.audio_centroid),
            genre_distribution={k: float(v) for k, v in profile.genre_distribution.items()},
            emotion_distribution={k: float(v) for k, v in profile.emotion_distribution.items()},
            themes=themes,
            listening_contexts=listening_contexts,
            recent_songs=recent_songs,
            profile_hash=hash_playlist_profile(profile.playlist_id, profile.song_ids, profile.audio_centroid),
        )

    def fingerprint(self) -> str:
        return short_hash(stable_stringify(self.model_dump()))
