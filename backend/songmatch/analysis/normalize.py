from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..schemas.songs import SongAnalysis

# Older analysis payloads stored the emotional block under different keys.
# All three are still present in stored data, so all three are checked in order.
_MOOD_PATHS: Sequence[tuple[str, ...]] = (
    ("emotional", "dominant_mood"),
    ("emotional_profile", "dominant_mood"),
    ("analysis", "emotional", "dominant_mood"),
)


def _dig(mapping: Any, *path: str) -> Any:
    current: Any = mapping
    for step in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(step)
        if current is None:
            return None
    return current


def extract_dominant_mood(raw: Mapping[str, Any] | None) -> Optional[str]:
    if not raw:
        return None
    for path in _MOOD_PATHS:
        mood = _dig(raw, *path)
        if isinstance(mood, str) and mood.strip():
            return mood.strip()
    return None


def _themes(raw: Mapping[str, Any]) -> List[str]:
    entries = raw.get("themes")
    if entries is None:
        entries = _dig(raw, "analysis", "themes")
    themes: List[str] = []
    for entry in entries or []:
        if isinstance(entry, str):
            name = entry
        elif isinstance(entry, Mapping):
            name = entry.get("theme") or ""
        else:
            continue
        if name.strip():
            themes.append(name.strip())
    return themes


def _listening_contexts(raw: Mapping[str, Any]) -> Dict[str, float]:
    source = _dig(raw, "context", "listening_contexts")
    if source is None:
        source = raw.get("listening_contexts")

    contexts: Dict[str, float] = {}
    if isinstance(source, Mapping):
        for name, score in source.items():
            try:
                contexts[str(name)] = float(score)
            except (TypeError, ValueError):
                continue
    elif isinstance(source, list):
        for entry in source:
            if not isinstance(entry, Mapping) or not entry.get("context"):
                continue
            score = entry.get("score")
            try:
                contexts[str(entry["context"])] = 0.5 if score is None else float(score)
            except (TypeError, ValueError):
                continue
    return contexts


def normalize_song_analysis(raw: Mapping[str, Any] | None) -> Optional[SongAnalysis]:
    """Collapse a raw LLM analysis payload into the canonical ``SongAnalysis`` shape."""
    if not raw:
        return None
    return SongAnalysis(
        dominant_mood=extract_dominant_mood(raw),
        themes=_themes(raw),
        listening_contexts=_listening_contexts(raw),
    )
