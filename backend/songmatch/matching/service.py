from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..core.errors import MatchingError, SongMatchError
from ..schemas.matching import BatchMatchResult, BatchProgress, BatchStats, MatchCandidate, MatchResult, ScoreFactors
from ..schemas.profiles import MatchingPlaylistProfile
from ..schemas.songs import MatchingSong
from .config import DataAvailability, MatchingConfig, MatchingWeights, compute_adaptive_weights
from .reranker import RerankerService
from .scoring import (
    THEME_MATCH_WEIGHT,
    compute_audio_feature_score,
    compute_context_score,
    compute_flow_score,
    compute_genre_score,
    compute_thematic_score,
    compute_vector_score,
)
from .semantic import SemanticMatcher

logger = logging.getLogger("matching")

# score gap to the next result at which a match counts as fully decisive
DECISIVE_MARGIN = 0.25

ProgressCallback = Callable[[BatchProgress], None]


def _weighted_sum(factors: ScoreFactors, weights: MatchingWeights) -> float:
    return (
        factors.vector * weights.vector
        + factors.genre * weights.genre
        + factors.audio * weights.audio
        + factors.semantic * weights.semantic
        + factors.context * weights.context
        + factors.flow * weights.flow
    )


def _confidence(availability: float, margin: float) -> float:
    decisiveness = min(1.0, max(0.0, margin) / DECISIVE_MARGIN)
    return min(1.0, max(0.0, 0.5 * availability + 0.5 * decisiveness))


class MatchingService:
    def __init__(
        self,
        config: MatchingConfig | None = None,
        semantic_matcher: SemanticMatcher | None = None,
        reranker: RerankerService | None = None,
    ) -> None:
        self.config = config or MatchingConfig()
        self.semantic_matcher = semantic_matcher
        self.reranker = reranker

    async def _semantic_score(self, themes: Sequence[str], profile_themes: Sequence[str]) -> float:
        if self.semantic_matcher is None:
            return compute_thematic_score(themes, profile_themes)
        matches = await self.semantic_matcher.count_matches(themes, profile_themes)
        return min(1.0, matches * THEME_MATCH_WEIGHT)

    async def _score(
        self,
        song: MatchingSong,
        profile: MatchingPlaylistProfile,
        song_embedding: Optional[Sequence[float]],
        config: MatchingConfig,
    ) -> Tuple[MatchResult, float]:
        features = song.audio_features.present() if song.audio_features else {}
        availability = DataAvailability(
            has_embedding=bool(song_embedding) and bool(profile.embedding),
            has_genres=bool(song.genres),
            has_audio_features=bool(features) and bool(profile.audio_centroid),
            has_analysis=song.analysis is not None,
            has_recent_songs=bool(profile.recent_songs),
        )
        weights = compute_adaptive_weights(config.weights, availability) if config.adaptive_weights else config.weights

        vector = 0.0 if config.skip_vector_scoring else compute_vector_score(song_embedding, profile.embedding)
        genre = compute_genre_score(song.genres, profile.genre_distribution)
        audio = (
            compute_audio_feature_score(features, profile.audio_centroid, config.audio_weights)
            if availability.has_audio_features
            else 0.0
        )
        early = weights.vector * vector + weights.genre * genre + weights.audio * audio

        semantic = context = flow = 0.0
        analysis = song.analysis
        if analysis is not None and early > config.deep_analysis_threshold:
            if analysis.themes and profile.themes:
                semantic = await self._semantic_score(analysis.themes, profile.themes)
            if analysis.listening_contexts and profile.listening_contexts:
                context = compute_context_score(analysis.listening_contexts, profile.listening_contexts)
            if profile.recent_songs:
                flow = compute_flow_score(
                    analysis.dominant_mood,
                    features.get("energy"),
                    features.get("valence"),
                    profile.recent_songs,
                )

        factors = ScoreFactors(vector=vector, genre=genre, audio=audio, semantic=semantic, context=context, flow=flow)
        score = min(1.0, max(0.0, _weighted_sum(factors, weights)))
        result = MatchResult(song_id=song.id, playlist_id=profile.playlist_id, score=score, factors=factors)
        return result, availability.content_ratio()

    async def _rerank(
        self,
        scored: List[Tuple[MatchResult, float]],
        query: str,
        documents: Mapping[str, str],
    ) -> List[Tuple[MatchResult, float]]:
        candidates = [
            MatchCandidate(id=result.playlist_id, score=result.score, document=documents.get(result.playlist_id, ""))
            for result, _ in scored
        ]
        outcome = await self.reranker.rerank(query, candidates)
        if not outcome.reranked:
            return scored

        by_playlist = {result.playlist_id: (result, ratio) for result, ratio in scored}
        reordered = []
        for candidate in outcome.candidates:
            result, ratio = by_playlist[candidate.id]
            reordered.append((result.model_copy(update={"score": min(1.0, max(0.0, candidate.score))}), ratio))
        # blended scores can fall below candidates the reranker passed through
        reordered.sort(key=lambda item: item[0].score, reverse=True)
        return reordered

    async def match_song(
        self,
        song: MatchingSong,
        profiles: Sequence[MatchingPlaylistProfile],
        song_embedding: Optional[Sequence[float]] = None,
        *,
        config: MatchingConfig | None = None,
        rerank_query: str | None = None,
        rerank_documents: Mapping[str, str] | None = None,
    ) -> List[MatchResult]:
        """Rank ``profiles`` for ``song``, best first.

        Missing data scores zero on the affected factor rather than failing.
        Results under ``min_score_threshold`` are dropped, the rest are
        truncated to ``max_results_per_song`` and ranked from 1.
        """
        config = config or self.config
        if not profiles:
            return []

        scored: List[Tuple[MatchResult, float]] = []
        for profile in profiles:
            try:
                scored.append(await self._score(song, profile, song_embedding, config))
            except (TypeError, ValueError, ArithmeticError) as exc:
                raise MatchingError(str(exc), song_id=song.id, playlist_id=profile.playlist_id) from exc

        # stable: equal scores keep profile order
        scored.sort(key=lambda item: item[0].score, reverse=True)
        scored = [item for item in scored if item[0].score >= config.min_score_threshold]
        if config.max_results_per_song is not None:
            scored = scored[: config.max_results_per_song]

        if self.reranker is not None and rerank_query and rerank_documents:
            scored = await self._rerank(scored, rerank_query, rerank_documents)

        ranked: List[MatchResult] = []
        for position, (result, ratio) in enumerate(scored):
            next_score = scored[position + 1][0].score if position + 1 < len(scored) else 0.0
            ranked.append(
                result.model_copy(
                    update={"rank": position + 1, "confidence": _confidence(ratio, result.score - next_score)}
                )
            )
        return ranked

    async def match_batch(
        self,
        songs: Sequence[MatchingSong],
        profiles: Sequence[MatchingPlaylistProfile],
        embeddings: Mapping[str, Sequence[float]] | None = None,
        on_progress: ProgressCallback | None = None,
        *,
        config: MatchingConfig | None = None,
        rerank_queries: Mapping[str, str] | None = None,
        rerank_documents: Mapping[str, str] | None = None,
    ) -> BatchMatchResult:
        embeddings = embeddings or {}
        rerank_queries = rerank_queries or {}
        matches: Dict[str, List[MatchResult]] = {}
        failed: Dict[str, str] = {}

        for done, song in enumerate(songs, start=1):
            try:
                matches[song.id] = await self.match_song(
                    song,
                    profiles,
                    embeddings.get(song.id),
                    config=config,
                    rerank_query=rerank_queries.get(song.id),
                    rerank_documents=rerank_documents,
                )
            except SongMatchError as exc:
                logger.warning("Matching failed for song %s: %s", song.id, exc)
                failed[song.id] = str(exc)
            if on_progress is not None:
                on_progress(BatchProgress(done=done, total=len(songs), succeeded=len(matches), failed=len(failed)))

        stats = BatchStats(
            total=len(songs),
            matched=sum(1 for results in matches.values() if results),
            failed=len(failed),
            cached=0,
            computed=len(matches),
        )
        logger.info(
            "Matched %s songs against %s playlists (%s with matches, %s failed)",
            stats.total,
            len(profiles),
            stats.matched,
            stats.failed,
        )
        return BatchMatchResult(matches=matches, failed=failed, stats=stats)
