from __future__ import annotations

import math
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from ..analysis.normalize import extract_dominant_mood
from ..schemas.songs import AUDIO_FEATURE_KEYS, AudioFeatures, MatchingSong, SongAnalysis

AnalysisInput = Union[SongAnalysis, Mapping[str, Any], None]
FeaturesInput = Union[AudioFeatures, Mapping[str, Any], None]


def calculate_centroid(vectors: Sequence[Sequence[float]]) -> List[float]:
    if not vectors:
        return []
    matrix = np.asarray(vectors, dtype=np.float64)
    return matrix.mean(axis=0).tolist()


def _feature_value(features: FeaturesInput, key: str) -> Optional[float]:
    if features is None:
        return None
    raw = getattr(features, key, None) if isinstance(features, AudioFeatures) else features.get(key)
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def calculate_audio_centroid(features: Iterable[FeaturesInput]) -> Dict[str, float]:
    """Per-feature mean over the songs that have that feature.

    Null and NaN values are skipped; a feature no song carries is left out of
    the result rather than reported as zero.
    """
    feature_list = list(features)
    centroid: Dict[str, float] = {}
    for key in AUDIO_FEATURE_KEYS:
        values = [value for item in feature_list if (value := _feature_value(item, key)) is not None]
        if values:
            centroid[key] = float(np.mean(values))
    return centroid


def compute_genre_distribution(songs: Iterable[MatchingSong | Sequence[str] | None]) -> Dict[str, int]:
    counts: Counter[str] = Counter()
    for song in songs:
        genres = song.genres if isinstance(song, MatchingSong) else song
        for genre in genres or []:
            if genre:
                counts[genre] += 1
    return dict(counts)


def _dominant_mood(analysis: AnalysisInput) -> Optional[str]:
    if analysis is None:
        return None
    if isinstance(analysis, SongAnalysis):
        return analysis.dominant_mood
    mood = analysis.get("dominant_mood")
    if isinstance(mood, str) and mood.strip():
        return mood.strip()
    return extract_dominant_mood(analysis)


def compute_emotion_distribution(analyses: Iterable[AnalysisInput]) -> Dict[str, int]:
    counts: Counter[str] = Counter()
    for analysis in analyses:
        mood = _dominant_mood(analysis)
        if mood:
            counts[mood] += 1
    return dict(counts)
