from __future__ import annotations

# Bump any of these to invalidate cached embeddings, profiles and match results.
EXTRACTOR_VERSION = 1
EMBEDDING_SCHEMA_VERSION = 1
PLAYLIST_PROFILE_VERSION = 1
MATCHING_ALGO_VERSION = "matching_v2"

MODEL_BUNDLE_VERSION = (
    f"e{EXTRACTOR_VERSION}_s{EMBEDDING_SCHEMA_VERSION}_p{PLAYLIST_PROFILE_VERSION}_{MATCHING_ALGO_VERSION}"
)

PROFILE_KIND = "content_v1"
