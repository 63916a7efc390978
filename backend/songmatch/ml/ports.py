from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional, Protocol, Sequence

EmbedPrefix = Literal["query:", "passage:"]
ProviderName = Literal["deepinfra", "huggingface", "local"]


@dataclass(slots=True)
class ProviderMetadata:
    name: ProviderName
    embedding_model: str
    embedding_dims: int
    reranker_model: Optional[str] = None


@dataclass(slots=True)
class EmbeddingResult:
    embedding: List[float]
    model: str
    dims: int


@dataclass(slots=True)
class RerankScore:
    index: int
    score: float


@dataclass(slots=True)
class RerankResponse:
    scores: List[RerankScore] = field(default_factory=list)
    model: str = ""


class MLProvider(Protocol):
    async def embed(
        self,
        text: str,
        *,
        prefix: EmbedPrefix | None = None,
        timeout: float | None = None,
    ) -> EmbeddingResult: ...

    async def embed_batch(
        self,
        texts: Sequence[str],
        *,
        prefix: EmbedPrefix | None = None,
        timeout: float | None = None,
    ) -> List[EmbeddingResult]: ...

    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        *,
        top_k: int | None = None,
        timeout: float | None = None,
    ) -> RerankResponse: ...

    async def is_available(self) -> bool: ...

    def get_metadata(self) -> ProviderMetadata: ...
