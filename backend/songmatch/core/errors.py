from __future__ import annotations


class SongMatchError(Exception):
    pass


class ProviderError(SongMatchError):
    def __init__(self, provider: str, operation: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{provider} {operation} failed: {message}")
        self.provider = provider
        self.operation = operation
        self.status_code = status_code


class RateLimitError(ProviderError):
    def __init__(self, provider: str, operation: str, *, retry_after_ms: int | None = None) -> None:
        detail = "rate limit exceeded"
        if retry_after_ms is not None:
            detail = f"rate limit exceeded, retry after {retry_after_ms}ms"
        super().__init__(provider, operation, detail, status_code=429)
        self.retry_after_ms = retry_after_ms


class ProviderTimeoutError(ProviderError):
    def __init__(self, provider: str, operation: str, timeout_ms: int) -> None:
        super().__init__(provider, operation, f"timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class DimensionMismatchError(ProviderError):
    def __init__(self, expected: int, actual: int, *, provider: str = "embedding") -> None:
        super().__init__(provider, "embed", f"dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class DatabaseError(SongMatchError):
    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"database {operation} failed: {message}")
        self.operation = operation


class MissingAnalysisError(SongMatchError):
    def __init__(self, song_id: str) -> None:
        super().__init__(f"song {song_id} has no analysis")
        self.song_id = song_id


class ConfigError(SongMatchError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"configuration error: {field} - {message}")
        self.field = field


class MatchingError(SongMatchError):
    def __init__(self, message: str, *, song_id: str | None = None, playlist_id: str | None = None) -> None:
        super().__init__(message)
        self.song_id = song_id
        self.playlist_id = playlist_id
