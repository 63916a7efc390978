"""Content hashing for cache keys.

Every hash is a SHA-256 digest of ``stable_stringify`` output, prefixed with
its kind (and version, where the kind is versioned) so a stored key says what
produced it.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

import numpy as np

from .versioning import EXTRACTOR_VERSION, MATCHING_ALGO_VERSION, PLAYLIST_PROFILE_VERSION


def _dump_scalar(value: Any) -> str:
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return "null"
        # 1.0 and 1 must hash the same
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return json.dumps(value, ensure_ascii=False)


def stable_stringify(value: Any) -> str:
    """Deterministic JSON: sorted keys, ``None`` and missing values both become ``null``."""
    if value is None:
        return "null"
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    elif is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)

    if isinstance(value, Mapping):
        items = {str(k): v for k, v in value.items()}
        pairs = [
            f"{json.dumps(key, ensure_ascii=False)}:{stable_stringify(items[key])}" for key in sorted(items)
        ]
        return "{" + ",".join(pairs) + "}"
    if isinstance(value, np.ndarray):
        value = value.tolist()
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(item) for item in value) + "]"
    return _dump_scalar(value)


def stable_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def short_hash(content: str) -> str:
    return stable_hash(content)[:16]


TRACK_EMBEDDING = "te"
PLAYLIST_PROFILE = "pp"
MATCHING_CONFIG = "mc"
CANDIDATE_SET = "cs"
PLAYLIST_SET = "ps"
MATCH_CONTEXT = "ctx"
TRACK_GENRE = "tg"
MODEL_BUNDLE = "mb"

_NUMBERED_KINDS = {TRACK_EMBEDDING, PLAYLIST_PROFILE}

_PATTERNS: Sequence[re.Pattern[str]] = (
    re.compile(r"^(?P<kind>te|pp)_v(?P<version>\d+)_(?P<hash>[0-9a-f]+)$"),
    # the matching tag itself may contain underscores, so the digest anchors the split
    re.compile(r"^(?P<kind>mc)_(?P<version>.+)_(?P<hash>[0-9a-f]+)$"),
    re.compile(r"^(?P<kind>cs|ps|ctx|tg|mb)_(?P<hash>[0-9a-f]+)$"),
)


@dataclass(frozen=True, slots=True)
class HashKey:
    kind: str
    hash: str
    version: Optional[str] = None

    def format(self) -> str:
        if self.kind in _NUMBERED_KINDS:
            return f"{self.kind}_v{self.version}_{self.hash}"
        if self.version is not None:
            return f"{self.kind}_{self.version}_{self.hash}"
        return f"{self.kind}_{self.hash}"

    def __str__(self) -> str:
        return self.format()

    @classmethod
    def parse(cls, text: str) -> Optional["HashKey"]:
        for pattern in _PATTERNS:
            match = pattern.match(text)
            if match:
                groups = match.groupdict()
                return cls(kind=groups["kind"], hash=groups["hash"], version=groups.get("version"))
        return None


def parse_hash_prefix(text: str) -> Optional[HashKey]:
    return HashKey.parse(text)


def is_current_version(text: str) -> bool:
    key = HashKey.parse(text)
    if key is None:
        return False
    if key.kind == TRACK_EMBEDDING:
        return key.version == str(EXTRACTOR_VERSION)
    if key.kind == PLAYLIST_PROFILE:
        return key.version == str(PLAYLIST_PROFILE_VERSION)
    if key.kind == MATCHING_CONFIG:
        return key.version == MATCHING_ALGO_VERSION
    # unversioned kinds are always current
    return True


def hash_track_content(text: str) -> str:
    return HashKey(TRACK_EMBEDDING, short_hash(text), str(EXTRACTOR_VERSION)).format()


def hash_song_ids(song_ids: Iterable[str]) -> str:
    return short_hash(",".join(sorted(song_ids)))


def hash_playlist_profile(
    playlist_id: str,
    song_ids: Iterable[str],
    audio_centroid: Mapping[str, float] | None = None,
) -> str:
    rounded = {key: round(float(value), 4) for key, value in (audio_centroid or {}).items()}
    content = stable_stringify(
        {
            "playlistId": playlist_id,
            "songIds": sorted(song_ids),
            "audioCentroid": rounded,
        }
    )
    return HashKey(PLAYLIST_PROFILE, short_hash(content), str(PLAYLIST_PROFILE_VERSION)).format()


def hash_matching_config(config: Mapping[str, Any]) -> str:
    return HashKey(MATCHING_CONFIG, short_hash(stable_stringify(config)), MATCHING_ALGO_VERSION).format()


def hash_candidate_set(song_ids: Iterable[str], content_hashes: Iterable[str]) -> str:
    content = stable_stringify({"songIds": sorted(song_ids), "contentHashes": sorted(content_hashes)})
    return HashKey(CANDIDATE_SET, short_hash(content)).format()


def hash_playlist_set(playlist_ids: Iterable[str], profile_hashes: Iterable[str]) -> str:
    content = stable_stringify({"playlistIds": sorted(playlist_ids), "profileHashes": sorted(profile_hashes)})
    return HashKey(PLAYLIST_SET, short_hash(content)).format()


def hash_match_context(
    *,
    candidate_set_hash: str,
    playlist_set_hash: str,
    config_hash: str,
    model_bundle_hash: str | None = None,
) -> str:
    content = stable_stringify(
        {
            "candidateSetHash": candidate_set_hash,
            "playlistSetHash": playlist_set_hash,
            "configHash": config_hash,
            "modelBundleHash": model_bundle_hash,
        }
    )
    return HashKey(MATCH_CONTEXT, short_hash(content)).format()


def hash_track_genre(artist: str, album: str | None = None) -> str:
    content = stable_stringify(
        {
            "artist": artist.lower().strip(),
            "album": (album or "").lower().strip(),
        }
    )
    return HashKey(TRACK_GENRE, short_hash(content)).format()


def hash_model_bundle(bundle: Any) -> str:
    if hasattr(bundle, "hash_input"):
        data: Dict[str, Any] = bundle.hash_input()
    else:
        data = dict(bundle)
    embedding = data["embedding"]
    reranker = data.get("reranker")
    content = stable_stringify(
        {
            "embedding": {
                "model": embedding["model"],
                "dims": embedding["dims"],
                "provider": embedding["provider"],
            },
            "reranker": {"model": reranker["model"], "provider": reranker["provider"]} if reranker else None,
            "algorithms": data["algorithms"],
            "enrichment": data["enrichment"],
            "version": data["version"],
        }
    )
    return HashKey(MODEL_BUNDLE, short_hash(content)).format()
