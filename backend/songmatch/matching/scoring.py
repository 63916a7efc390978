from __future__ import annotations

from typing import Dict, Mapping, Optional, Sequence

import numpy as np

from ..schemas.profiles import RecentSong
from ..schemas.songs import AUDIO_FEATURE_KEYS, AudioFeatures
from .config import AudioFeatureWeights

# differences on these features are scaled into [0, 1] before scoring
FEATURE_SPANS: Dict[str, float] = {"tempo": 100.0, "loudness": 60.0}

THEME_MATCH_WEIGHT = 0.25
FLOW_WINDOW = 3

GOOD_MOOD_TRANSITIONS: Dict[str, tuple[str, ...]] = {
    "happy": ("euphoric", "nostalgic", "empowered", "relaxed", "cheerful"),
    "sad": ("melancholic", "nostalgic", "anxious", "contemplative", "bittersweet"),
    "angry": ("empowered", "anxious", "aggressive", "intense", "defiant"),
    "anxious": ("relaxed", "sad", "contemplative", "hopeful", "reflective"),
    "nostalgic": ("happy", "sad", "melancholic", "contemplative", "wistful"),
    "melancholic": ("sad", "nostalgic", "contemplative", "peaceful", "reflective"),
    "euphoric": ("happy", "empowered", "energetic", "celebratory", "joyful"),
    "relaxed": ("peaceful", "contemplative", "happy", "nostalgic", "calm"),
    "empowered": ("happy", "euphoric", "angry", "confident", "triumphant"),
    "contemplative": ("relaxed", "nostalgic", "melancholic", "peaceful", "thoughtful"),
    "peaceful": ("relaxed", "contemplative", "happy", "calm", "serene"),
    "energetic": ("euphoric", "empowered", "happy", "intense", "uplifting"),
}

RELATED_MOODS: Dict[str, tuple[str, ...]] = {
    "happy": ("joyful", "cheerful", "upbeat", "positive", "bright"),
    "sad": ("sorrowful", "mournful", "heartbroken", "gloomy", "downbeat"),
    "angry": ("furious", "frustrated", "aggressive", "intense", "fierce"),
    "anxious": ("nervous", "tense", "worried", "uneasy", "restless"),
    "nostalgic": ("reminiscent", "sentimental", "wistful", "longing", "yearning"),
    "melancholic": ("somber", "pensive", "mournful", "wistful", "bittersweet"),
    "euphoric": ("ecstatic", "elated", "blissful", "exuberant", "jubilant"),
    "relaxed": ("calm", "tranquil", "serene", "mellow", "laid-back"),
    "empowered": ("confident", "strong", "triumphant", "bold", "assertive"),
}


def _clamp(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def _normalize(text: str) -> str:
    return text.lower().strip()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def compute_vector_score(song_embedding: Optional[Sequence[float]], playlist_embedding: Optional[Sequence[float]]) -> float:
    if not song_embedding or not playlist_embedding:
        return 0.0
    # cosine is in [-1, 1]
    return _clamp((cosine_similarity(song_embedding, playlist_embedding) + 1.0) / 2.0)


def compute_genre_score(song_genres: Optional[Sequence[str]], genre_distribution: Mapping[str, float]) -> float:
    """Share of the playlist's genre mass that the song's genres cover.

    A playlist genre counts as covered when a song genre equals it or one
    contains the other, ignoring case.
    """
    if not song_genres or not genre_distribution:
        return 0.0
    normalized = [_normalize(genre) for genre in song_genres]
    matched = 0.0
    total = 0.0
    for genre, count in genre_distribution.items():
        total += count
        target = _normalize(genre)
        if any(song == target or target in song or song in target for song in normalized):
            matched += count
    if total <= 0:
        return 0.0
    return _clamp(matched / total)


def compute_audio_feature_score(
    song_features: AudioFeatures | Mapping[str, Optional[float]],
    centroid: Mapping[str, float],
    weights: AudioFeatureWeights,
) -> float:
    values = song_features.present() if isinstance(song_features, AudioFeatures) else song_features
    score = 0.0
    total_weight = 0.0
    for feature in AUDIO_FEATURE_KEYS:
        song_value = values.get(feature)
        centroid_value = centroid.get(feature)
        if song_value is None or centroid_value is None:
            continue
        weight = getattr(weights, feature)
        diff = abs(song_value - centroid_value) / FEATURE_SPANS.get(feature, 1.0)
        score += weight * max(0.0, 1.0 - diff)
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return _clamp(score / total_weight)


def compute_thematic_score(
    song_themes: Sequence[str],
    profile_themes: Sequence[str],
    theme_weight: float = THEME_MATCH_WEIGHT,
) -> float:
    if not song_themes or not profile_themes:
        return 0.0
    profile = [_normalize(theme) for theme in profile_themes]
    matches = 0
    for theme in song_themes:
        song_theme = _normalize(theme)
        if any(song_theme == other or other in song_theme or song_theme in other for other in profile):
            matches += 1
    return _clamp(matches * theme_weight)


def compute_context_score(song_contexts: Mapping[str, float], profile_contexts: Mapping[str, float]) -> float:
    if not song_contexts or not profile_contexts:
        return 0.0
    shared = [
        min(profile_score, song_contexts[context])
        for context, profile_score in profile_contexts.items()
        if song_contexts.get(context, 0) > 0
    ]
    if not shared:
        return 0.0
    return _clamp(sum(shared) / len(shared))


def score_mood_transition(source_mood: str, target_mood: str) -> float:
    source = _normalize(source_mood)
    target = _normalize(target_mood)
    if source == target:
        return 1.0
    if target in GOOD_MOOD_TRANSITIONS.get(source, ()):
        return 0.8
    if target in RELATED_MOODS.get(source, ()):
        return 0.6
    return 0.3


def compute_flow_score(
    song_mood: Optional[str],
    song_energy: Optional[float],
    song_valence: Optional[float],
    recent_songs: Sequence[RecentSong],
) -> float:
    """How naturally the song follows the playlist's most recent songs (0.5 is neutral)."""
    if not recent_songs:
        return 0.5

    scores = []
    for recent in recent_songs[-FLOW_WINDOW:]:
        combined = 0.0
        weight_sum = 0.0
        if song_mood and recent.dominant_mood:
            combined += score_mood_transition(recent.dominant_mood, song_mood) * 0.5
            weight_sum += 0.5
        if song_energy is not None:
            combined += max(0.0, 1.0 - abs(recent.energy - song_energy) * 0.5) * 0.3
            weight_sum += 0.3
        if song_valence is not None:
            combined += max(0.0, 1.0 - abs(recent.valence - song_valence) * 0.3) * 0.2
            weight_sum += 0.2
        if weight_sum > 0:
            scores.append(combined / weight_sum)

    if not scores:
        return 0.5
    return _clamp(sum(scores) / len(scores))
