from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import httpx

from ..core.config import Settings, get_settings
from ..core.errors import ConfigError, ProviderError, ProviderTimeoutError, RateLimitError
from .ports import EmbeddingResult, EmbedPrefix, ProviderMetadata, RerankResponse, RerankScore

logger = logging.getLogger("ml.provider")


def _retry_after_ms(response: httpx.Response) -> int | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return int(float(raw) * 1000)
    except ValueError:
        return None


@dataclass(slots=True)
class HttpMLProvider:
    """DeepInfra-compatible embedding and reranking client.

    Every request carries a timeout. Failures surface as typed provider errors;
    retrying is left to the caller, which gets ``retry_after_ms`` on rate limits.
    """

    api_key: str
    base_url: str = "https://api.deepinfra.com/v1"
    embedding_model: str = "intfloat/multilingual-e5-large-instruct"
    embedding_dims: int = 1024
    reranker_model: str | None = None
    name: str = "deepinfra"
    timeout: float = 15.0
    _client: httpx.AsyncClient | None = field(init=False, repr=False, default=None)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ConfigError("ml_api_key", "missing API key for ML provider")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            timeout=self.timeout,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "HttpMLProvider":
        settings = settings or get_settings()
        return cls(
            api_key=settings.ml_api_key,
            base_url=settings.ml_api_base,
            embedding_model=settings.embedding_model,
            embedding_dims=settings.embedding_dims,
            reranker_model=settings.reranker_model,
            name=settings.ml_provider,
            timeout=settings.http_timeout_seconds,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def get_metadata(self) -> ProviderMetadata:
        return ProviderMetadata(
            name=self.name,  # type: ignore[arg-type]
            embedding_model=self.embedding_model,
            embedding_dims=self.embedding_dims,
            reranker_model=self.reranker_model,
        )

    async def _post(self, operation: str, url: str, payload: Dict[str, Any], timeout: float | None) -> Dict[str, Any]:
        client = self._client
        if client is None:
            raise ProviderError(self.name, operation, "client closed")

        effective_timeout = timeout if timeout is not None else self.timeout
        try:
            response = await client.post(url.lstrip("/"), json=payload, timeout=effective_timeout)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.name, operation, int(effective_timeout * 1000)) from exc
        except httpx.RequestError as exc:
            raise ProviderError(self.name, operation, f"network error: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitError(self.name, operation, retry_after_ms=_retry_after_ms(response))
        if response.status_code >= 400:
            logger.error("%s %s -> %s %s", self.name, operation, response.status_code, response.text[:500])
            raise ProviderError(self.name, operation, response.text[:200], status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(self.name, operation, "malformed JSON response") from exc
        if not isinstance(data, dict):
            raise ProviderError(self.name, operation, "unexpected response shape")
        return data

    def _with_prefix(self, text: str, prefix: EmbedPrefix | None) -> str:
        return f"{prefix} {text}" if prefix else text

    async def embed(
        self,
        text: str,
        *,
        prefix: EmbedPrefix | None = None,
        timeout: float | None = None,
    ) -> EmbeddingResult:
        results = await self._embed("embed", [text], prefix=prefix, timeout=timeout)
        return results[0]

    async def embed_batch(
        self,
        texts: Sequence[str],
        *,
        prefix: EmbedPrefix | None = None,
        timeout: float | None = None,
    ) -> List[EmbeddingResult]:
        if not texts:
            return []
        return await self._embed("embed_batch", list(texts), prefix=prefix, timeout=timeout)

    async def _embed(
        self,
        operation: str,
        texts: List[str],
        *,
        prefix: EmbedPrefix | None,
        timeout: float | None,
    ) -> List[EmbeddingResult]:
        payload = {
            "model": self.embedding_model,
            "input": [self._with_prefix(text, prefix) for text in texts],
            "encoding_format": "float",
        }
        data = await self._post(operation, "/openai/embeddings", payload, timeout)
        rows = data.get("data")
        if not isinstance(rows, list) or len(rows) != len(texts):
            raise ProviderError(self.name, operation, "embedding count does not match input count")

        if not all(isinstance(row, dict) for row in rows):
            raise ProviderError(self.name, operation, "malformed response: embedding rows must be objects")

        results: List[EmbeddingResult] = []
        for row in sorted(rows, key=lambda r: r.get("index") or 0):
            vector = row.get("embedding")
            if not isinstance(vector, list):
                raise ProviderError(self.name, operation, "embedding missing from response")
            try:
                embedding = [float(v) for v in vector]
            except (TypeError, ValueError) as exc:
                raise ProviderError(self.name, operation, "malformed response: non-numeric embedding") from exc
            results.append(
                EmbeddingResult(
                    embedding=embedding,
                    model=data.get("model") or self.embedding_model,
                    dims=len(embedding),
                )
            )
        return results

    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        *,
        top_k: int | None = None,
        timeout: float | None = None,
    ) -> RerankResponse:
        if not self.reranker_model:
            raise ProviderError(self.name, "rerank", "no reranker model configured")
        if not documents:
            return RerankResponse(scores=[], model=self.reranker_model)

        payload = {"queries": [query], "documents": list(documents)}
        data = await self._post("rerank", f"/inference/{self.reranker_model}", payload, timeout)
        raw_scores = data.get("scores")
        if not isinstance(raw_scores, list):
            raise ProviderError(self.name, "rerank", "scores missing from response")

        try:
            scores = [RerankScore(index=i, score=float(s)) for i, s in enumerate(raw_scores)]
        except (TypeError, ValueError) as exc:
            raise ProviderError(self.name, "rerank", "malformed response: non-numeric score") from exc
        scores.sort(key=lambda s: s.score, reverse=True)
        if top_k:
            scores = scores[:top_k]
        return RerankResponse(scores=scores, model=self.reranker_model)

    async def is_available(self) -> bool:
        try:
            await self.embed("ping", timeout=min(self.timeout, 5.0))
        except ProviderError as exc:
            logger.warning("%s unavailable: %s", self.name, exc)
            return False
        return True
