from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence

SECTION_SEPARATOR = " | "


@dataclass(frozen=True, slots=True)
class VectorizationText:
    metadata: str
    analysis: str
    context: str


def intensity_to_text(intensity: str | float | int) -> str:
    if isinstance(intensity, str):
        return intensity
    # numeric intensities are on a 0-10 scale
    if intensity <= 2:
        return "very calm"
    if intensity <= 4:
        return "calm"
    if intensity <= 6:
        return "moderate"
    if intensity <= 8:
        return "energetic"
    return "very intense"


def get_top_listening_contexts(contexts: Mapping[str, Any] | Iterable[Mapping[str, Any]], limit: int) -> List[str]:
    """Accepts either a {context: score} mapping or a list of {context, score} entries."""
    if isinstance(contexts, Mapping):
        contexts = [{"context": name, "score": score} for name, score in contexts.items()]
    scored = []
    for entry in contexts:
        if not isinstance(entry, Mapping):
            continue
        name = entry.get("context")
        score = entry.get("score")
        try:
            score = 0.5 if score is None else float(score)
        except (TypeError, ValueError):
            continue
        if name and score > 0.4:
            scored.append((name, score))
    scored.sort(key=lambda item: item[1], reverse=True)
    return [name for name, _ in scored[:limit]]


def _theme_text(themes: Sequence[Any]) -> str:
    texts = []
    for entry in themes:
        if isinstance(entry, str):
            name, confidence = entry, 0.5
        else:
            name = entry.get("theme")
            confidence = entry.get("confidence")
            confidence = 0.5 if confidence is None else float(confidence)
        if not name:
            continue
        # confident themes are repeated for emphasis
        repeats = 2 if confidence > 0.7 else 1
        texts.append(" ".join([name] * repeats))
    return ", ".join(texts)


def _song_analysis_parts(analysis: Mapping[str, Any]) -> List[str]:
    parts: List[str] = []
    theme_text = _theme_text(analysis.get("themes") or [])
    if theme_text:
        parts.append(theme_text)
    if analysis.get("interpretation"):
        parts.append(analysis["interpretation"])

    musical = analysis.get("musical") or {}
    if musical.get("mood"):
        parts.append(musical["mood"])
    if musical.get("style"):
        parts.append(musical["style"])
    if musical.get("intensity"):
        parts.append(intensity_to_text(musical["intensity"]))

    emotional = analysis.get("emotional") or {}
    if emotional.get("dominant_mood"):
        parts.append(emotional["dominant_mood"])
    if emotional.get("mood_progression"):
        parts.append(emotional["mood_progression"])
    return parts


def _song_context_parts(analysis: Mapping[str, Any]) -> List[str]:
    ctx = analysis.get("context") or {}
    parts: List[str] = []
    top = get_top_listening_contexts(ctx.get("listening_contexts") or [], 5)
    if top:
        parts.append(", ".join(top))
    if ctx.get("best_moments"):
        parts.append(", ".join(ctx["best_moments"]))
    if ctx.get("ideal_audience"):
        parts.append(ctx["ideal_audience"])
    return parts


def extract_song_text(
    *,
    name: str,
    artists: Sequence[str],
    album_name: Optional[str] = None,
    genres: Optional[Sequence[str]] = None,
    analysis: Optional[Mapping[str, Any]] = None,
) -> VectorizationText:
    metadata = [name, ", ".join(artists)]
    if album_name:
        metadata.append(album_name)
    if genres:
        metadata.append(", ".join(genres))

    analysis_parts = _song_analysis_parts(analysis) if analysis else []
    context_parts = _song_context_parts(analysis) if analysis else []

    return VectorizationText(
        metadata=SECTION_SEPARATOR.join(metadata),
        analysis=SECTION_SEPARATOR.join(analysis_parts),
        context=SECTION_SEPARATOR.join(context_parts),
    )


def extract_song_analysis_only(analysis: Mapping[str, Any]) -> VectorizationText:
    return VectorizationText(
        metadata="",
        analysis=SECTION_SEPARATOR.join(_song_analysis_parts(analysis)),
        context=SECTION_SEPARATOR.join(_song_context_parts(analysis)),
    )


def extract_playlist_text(
    *,
    name: str,
    description: Optional[str] = None,
    analysis: Optional[Mapping[str, Any]] = None,
) -> VectorizationText:
    metadata = [name]
    if description:
        metadata.append(description)

    analysis_parts: List[str] = []
    context_parts: List[str] = []
    if analysis:
        if analysis.get("core_themes"):
            analysis_parts.append(", ".join(analysis["core_themes"]))
        mood = analysis.get("mood") or {}
        if mood.get("primary"):
            analysis_parts.append(mood["primary"])
        if mood.get("progression"):
            analysis_parts.append(mood["progression"])
        identity = analysis.get("musical_identity") or {}
        if identity.get("style"):
            analysis_parts.append(identity["style"])
        if identity.get("energy_profile"):
            analysis_parts.append(identity["energy_profile"])

        if analysis.get("target_audience"):
            context_parts.append(analysis["target_audience"])
        if analysis.get("listening_contexts"):
            context_parts.append(", ".join(analysis["listening_contexts"]))

    return VectorizationText(
        metadata=SECTION_SEPARATOR.join(metadata),
        analysis=SECTION_SEPARATOR.join(analysis_parts),
        context=SECTION_SEPARATOR.join(context_parts),
    )


def combine_vectorization_text(text: VectorizationText) -> str:
    return SECTION_SEPARATOR.join(part for part in (text.metadata, text.analysis, text.context) if part)
