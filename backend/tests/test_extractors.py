import pytest

from songmatch.analysis.normalize import extract_dominant_mood, normalize_song_analysis
from songmatch.embedding.extractors import (
    VectorizationText,
    combine_vectorization_text,
    extract_playlist_text,
    extract_song_analysis_only,
    extract_song_text,
    get_top_listening_contexts,
    intensity_to_text,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ({"emotional": {"dominant_mood": "happy"}}, "happy"),
        ({"emotional_profile": {"dominant_mood": "sad"}}, "sad"),
        ({"analysis": {"emotional": {"dominant_mood": "nostalgic"}}}, "nostalgic"),
        ({"emotional": {"dominant_mood": "  "}, "emotional_profile": {"dominant_mood": "calm"}}, "calm"),
        ({"themes": ["love"]}, None),
        (None, None),
    ],
)
def test_extract_dominant_mood_fallbacks(raw, expected):
    assert extract_dominant_mood(raw) == expected


def test_normalize_song_analysis_accepts_both_shapes():
    analysis = normalize_song_analysis(
        {
            "themes": [{"theme": "heartbreak", "confidence": 0.9}, "summer"],
            "emotional": {"dominant_mood": "melancholic"},
            "context": {
                "listening_contexts": [
                    {"context": "late night", "score": 0.8},
                    {"context": "driving"},
                ]
            },
        }
    )
    assert analysis.dominant_mood == "melancholic"
    assert analysis.themes == ["heartbreak", "summer"]
    assert analysis.listening_contexts == {"late night": 0.8, "driving": 0.5}

    mapped = normalize_song_analysis({"listening_contexts": {"workout": 0.9}})
    assert mapped.listening_contexts == {"workout": 0.9}
    assert normalize_song_analysis({}) is None


@pytest.mark.parametrize(
    "value, expected",
    [(1, "very calm"), (2, "very calm"), (4, "calm"), (5.5, "moderate"), (8, "energetic"), (9, "very intense"), ("soft", "soft")],
)
def test_intensity_to_text(value, expected):
    assert intensity_to_text(value) == expected


def test_top_listening_contexts_filters_and_sorts():
    contexts = [
        {"context": "study", "score": 0.3},
        {"context": "party", "score": 0.9},
        {"context": "commute"},
        {"context": "gym", "score": 0.7},
    ]
    assert get_top_listening_contexts(contexts, 2) == ["party", "gym"]
    assert get_top_listening_contexts(contexts, 5) == ["party", "gym", "commute"]


def test_top_listening_contexts_accepts_a_score_mapping():
    contexts = {"workout": 0.9, "sleep": 0.2, "drive": "loud", "party": None}
    assert get_top_listening_contexts(contexts, 5) == ["workout", "party"]


def test_extract_song_text_sections():
    text = extract_song_text(
        name="Creep",
        artists=["Radiohead"],
        album_name="Pablo Honey",
        genres=["alternative rock"],
        analysis={
            "themes": [{"theme": "alienation", "confidence": 0.9}, {"theme": "desire", "confidence": 0.5}],
            "musical": {"mood": "brooding", "intensity": 7},
            "emotional": {"dominant_mood": "melancholic"},
            "context": {"listening_contexts": [{"context": "rainy day", "score": 0.8}]},
        },
    )
    assert text.metadata == "Creep | Radiohead | Pablo Honey | alternative rock"
    assert text.analysis == "alienation alienation, desire | brooding | energetic | melancholic"
    assert text.context == "rainy day"
    assert combine_vectorization_text(text) == " | ".join([text.metadata, text.analysis, text.context])


def test_analysis_only_text_has_no_metadata():
    text = extract_song_analysis_only({"interpretation": "a song about leaving"})
    assert text.analysis == "a song about leaving"
    assert text.metadata == ""
    assert combine_vectorization_text(text) == "a song about leaving"


def test_combine_skips_empty_sections():
    assert combine_vectorization_text(VectorizationText(metadata="a", analysis="", context="c")) == "a | c"


def test_extract_playlist_text():
    text = extract_playlist_text(
        name="Night Drive",
        description="synths after dark",
        analysis={
            "core_themes": ["nostalgia", "city"],
            "mood": {"primary": "wistful"},
            "listening_contexts": ["driving", "late night"],
        },
    )
    assert text.metadata == "Night Drive | synths after dark"
    assert text.analysis == "nostalgia, city | wistful"
    assert text.context == "driving, late night"
