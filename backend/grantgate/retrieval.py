from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Protocol, Sequence

import httpx


logger = logging.getLogger("grantgate.retrieval")


class RetrievalError(RuntimeError):
    """Raised when the similarity search collaborator cannot answer a query."""


@dataclass(frozen=True)
class RetrievedChunk:
    document_id: str
    document_name: str
    matched_text: str
    similarity: float
    page_number: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "document_id": self.document_id,
            "document_name": self.document_name,
            "matched_text": self.matched_text,
            "similarity": self.similarity,
            "page_number": self.page_number,
        }


@dataclass(frozen=True)
class RetrievalOutcome:
    chunks: list[RetrievedChunk] = field(default_factory=list)
    error: str | None = None

    @property
    def best(self) -> RetrievedChunk | None:
        if not self.chunks:
            return None
        return max(self.chunks, key=lambda chunk: chunk.similarity)


class Retriever(Protocol):
    async def retrieve(self, query_text: str, top_k: int) -> list[RetrievedChunk]:
        ...


def _clamp_similarity(value: object) -> float:
    try:
        score = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if score != score:
        return 0.0
    return max(0.0, min(1.0, score))


def parse_retrieval_payload(payload: object) -> list[RetrievedChunk]:
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        raise RetrievalError("Retrieval response is missing a 'results' list.")

    chunks: list[RetrievedChunk] = []
    for item in payload["results"]:
        if not isinstance(item, dict):
            continue
        document_id = str(item.get("document_id") or "").strip()
        if not document_id:
            continue
        page_number = item.get("page_number")
        chunks.append(
            RetrievedChunk(
                document_id=document_id,
                document_name=str(item.get("document_name") or document_id),
                matched_text=str(item.get("matched_text") or ""),
                similarity=_clamp_similarity(item.get("similarity")),
                page_number=page_number if isinstance(page_number, int) and page_number > 0 else None,
            )
        )
    return chunks


class HttpRetriever:
    """Similarity search over the organization's documents, served over HTTP.

    POSTs ``{"query": ..., "top_k": ...}`` and expects ``{"results": [...]}``.
    One ``httpx.AsyncClient`` serves every lookup so the fan-out reuses
    connections. It is created on first use and released by ``aclose``; a
    client passed in belongs to the caller and is never closed here.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    async def retrieve(self, query_text: str, top_k: int) -> list[RetrievedChunk]:
        body: dict[str, object] = {"query": query_text, "top_k": top_k}
        try:
            response = await self._get_client().post(self._base_url, json=body, headers=self._headers())
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise RetrievalError(f"Retrieval request failed: {exc}") from exc
        except ValueError as exc:
            raise RetrievalError("Retrieval response was not valid JSON.") from exc
        return parse_retrieval_payload(payload)


class UnavailableRetriever:
    """Stands in when no retrieval service is configured; every lookup fails."""

    async def retrieve(self, query_text: str, top_k: int) -> list[RetrievedChunk]:
        raise RetrievalError("Retrieval service is not configured (RETRIEVAL_URL is empty).")


async def _bounded_retrieve(
    retriever: Retriever,
    query_text: str,
    *,
    top_k: int,
    timeout_seconds: float,
    semaphore: asyncio.Semaphore,
) -> RetrievalOutcome:
    async with semaphore:
        try:
            chunks = await asyncio.wait_for(retriever.retrieve(query_text, top_k), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "retrieval_call_failed",
                extra={"event": "retrieval_call_failed", "reason": "timeout", "timeout_seconds": timeout_seconds},
            )
            return RetrievalOutcome(error=f"Retrieval timed out after {timeout_seconds:g}s.")
        except Exception as exc:
            logger.warning(
                "retrieval_call_failed",
                extra={"event": "retrieval_call_failed", "reason": type(exc).__name__, "error": str(exc)},
            )
            return RetrievalOutcome(error=str(exc) or type(exc).__name__)
    return RetrievalOutcome(chunks=list(chunks))


async def retrieve_many(
    retriever: Retriever,
    queries: Sequence[str],
    *,
    top_k: int,
    timeout_seconds: float,
    max_concurrency: int,
) -> list[RetrievalOutcome]:
    """Run every query with at most ``max_concurrency`` in flight.

    Results keep the order of ``queries``. A failed or timed-out lookup yields an
    outcome carrying ``error`` instead of raising. Cancelling the caller cancels
    every pending lookup.
    """
    if not queries:
        return []
    semaphore = asyncio.Semaphore(max(1, max_concurrency))
    return list(
        await asyncio.gather(
            *(
                _bounded_retrieve(
                    retriever,
                    query,
                    top_k=top_k,
                    timeout_seconds=timeout_seconds,
                    semaphore=semaphore,
                )
                for query in queries
            )
        )
    )


def build_retriever(*, retrieval_url: str, api_key: str = "", timeout_seconds: float = 5.0) -> Retriever:
    if not retrieval_url.strip():
        return UnavailableRetriever()
    return HttpRetriever(base_url=retrieval_url.strip(), api_key=api_key, timeout_seconds=timeout_seconds)
