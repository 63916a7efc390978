from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.ext.compiler import compiles

pytest.importorskip("aiosqlite")

from songmatch.db.base import Base
from songmatch.db.repository import SqlAlchemyMatchingStore, StoredEmbedding
from songmatch.db.session import create_session_factory
from songmatch.schemas.matching import MatchContextMeta, MatchResult, ScoreFactors
from songmatch.schemas.profiles import PlaylistProfile


@compiles(JSONB, "sqlite")
def _compile_jsonb_to_sqlite(element, compiler, **kw):  # pragma: no cover - SQLite shim
    return "JSON"


async def _with_store(scenario):
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        await scenario(SqlAlchemyMatchingStore(create_session_factory(engine)))
    finally:
        await engine.dispose()


def _meta(context_hash: str = "ctx-1") -> MatchContextMeta:
    return MatchContextMeta(
        context_hash=context_hash,
        candidate_set_hash="cand",
        playlist_set_hash="plays",
        config_hash="conf",
        model_bundle_hash="bundle",
        playlist_count=2,
        song_count=1,
        weights={"vector": 0.25},
        embedding_model="e5-large",
    )


def _match(song_id: str, playlist_id: str, score: float, rank: int) -> MatchResult:
    return MatchResult(
        song_id=song_id,
        playlist_id=playlist_id,
        score=score,
        rank=rank,
        confidence=0.5,
        factors=ScoreFactors(genre=score),
    )


async def _profile_round_trip(store: SqlAlchemyMatchingStore) -> None:
    profile = PlaylistProfile(
        playlist_id="pl-1",
        embedding=[0.5, -0.25, 1.0],
        audio_centroid={"energy": 0.7},
        genre_distribution={"rock": 2},
        song_ids=["a", "b"],
        song_count=2,
        content_hash="content",
        model_bundle_hash="bundle",
    )
    await store.upsert_profile(profile)
    loaded = await store.get_profile("pl-1")
    assert loaded is not None
    assert loaded.from_cache is True
    assert loaded.embedding == pytest.approx([0.5, -0.25, 1.0])
    assert loaded.genre_distribution == {"rock": 2}
    assert loaded.song_ids == ["a", "b"]

    await store.upsert_profile(profile.model_copy(update={"embedding": None, "song_count": 0, "song_ids": []}))
    emptied = await store.get_profile("pl-1")
    assert emptied.embedding is None
    assert emptied.song_count == 0

    await store.delete_profile("pl-1")
    assert await store.get_profile("pl-1") is None


def test_profile_round_trip():
    asyncio.run(_with_store(_profile_round_trip))


async def _embeddings(store: SqlAlchemyMatchingStore) -> None:
    await store.upsert_song_embeddings(
        [
            StoredEmbedding(song_id="a", embedding=[0.1, 0.2], content_hash="h1", model="e5", dims=2),
            StoredEmbedding(song_id="b", embedding=[0.3, 0.4], content_hash="h2", model="e5", dims=2),
        ]
    )
    await store.upsert_song_embeddings(
        [StoredEmbedding(song_id="a", embedding=[0.9, 0.9], content_hash="h3", model="e5", dims=2)]
    )
    found = await store.get_song_embeddings(["a", "b", "missing"])
    assert set(found) == {"a", "b"}
    assert found["a"].content_hash == "h3"
    assert found["a"].embedding == pytest.approx([0.9, 0.9])
    assert await store.get_song_embeddings(["a"], model="other") == {}
    assert await store.get_song_embeddings(["a"], kind="analysis") == {}


def test_song_embeddings_upsert_and_filter():
    asyncio.run(_with_store(_embeddings))


async def _contexts(store: SqlAlchemyMatchingStore) -> None:
    first = await store.create_match_context(_meta(), "acct")
    again = await store.create_match_context(_meta(), "acct")
    assert first.id == again.id
    assert first.model_bundle_hash == "bundle"

    assert await store.get_match_context("ctx-1", "acct") is not None
    assert await store.get_match_context("ctx-1", "other") is None
    assert await store.get_match_context("ctx-2", "acct") is None


def test_match_context_creation_is_idempotent():
    asyncio.run(_with_store(_contexts))


async def _contexts_per_account(store: SqlAlchemyMatchingStore) -> None:
    mine = await store.create_match_context(_meta(), "acct")
    theirs = await store.create_match_context(_meta(), "other")
    assert mine.id != theirs.id
    assert theirs.account_id == "other"
    assert theirs.embedding_model == "e5-large"

    loaded = await store.get_match_context("ctx-1", "other")
    assert loaded is not None
    assert loaded.id == theirs.id
    assert loaded.embedding_model == "e5-large"


def test_accounts_get_their_own_match_context_for_the_same_hash():
    asyncio.run(_with_store(_contexts_per_account))


async def _results(store: SqlAlchemyMatchingStore) -> None:
    context = await store.create_match_context(_meta(), "acct")
    matches = {"s1": [_match("s1", "rock", 0.8, 1), _match("s1", "club", 0.4, 2)], "s2": []}
    assert await store.insert_match_results(context.id, matches) == 2
    assert await store.insert_match_results(context.id, matches) == 0

    loaded = await store.get_match_results(context.id, ["s1", "s2"])
    assert set(loaded) == {"s1"}
    assert [match.playlist_id for match in loaded["s1"]] == ["rock", "club"]
    assert [match.rank for match in loaded["s1"]] == [1, 2]
    assert loaded["s1"][0].factors.genre == pytest.approx(0.8)
    assert all(match.from_cache for match in loaded["s1"])


def test_match_results_insert_once_and_load_in_rank_order():
    asyncio.run(_with_store(_results))
