import asyncio
from pathlib import Path

import pytest

from grantgate.config import GateConfig
from grantgate.db import Database
from grantgate.retrieval import RetrievalError, RetrievedChunk


class FakeRetriever:
    """Deterministic stand-in for the similarity search service.

    ``rules`` maps a substring of the query to the best similarity returned for
    it; the first matching rule wins. Queries matching nothing get ``default``
    (or no results when ``default`` is None).
    """

    def __init__(
        self,
        rules: dict[str, float] | None = None,
        *,
        default: float | None = None,
        fail_on: tuple[str, ...] = (),
        delay: float = 0.0,
        chunk_count: int = 1,
    ) -> None:
        self.rules = rules or {}
        self.default = default
        self.fail_on = fail_on
        self.delay = delay
        self.chunk_count = chunk_count
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def retrieve(self, query_text: str, top_k: int) -> list[RetrievedChunk]:
        self.calls.append(query_text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if any(needle in query_text for needle in self.fail_on):
                raise RetrievalError("search backend unavailable")
            score = self.default
            for needle, similarity in self.rules.items():
                if needle in query_text:
                    score = similarity
                    break
            if score is None:
                return []
            return [
                RetrievedChunk(
                    document_id=f"doc-{index + 1}",
                    document_name=f"Annual Report {index + 1}",
                    matched_text=query_text[:80],
                    similarity=round(score - index * 0.01, 4),
                    page_number=index + 1,
                )
                for index in range(min(self.chunk_count, top_k))
            ]
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_retriever():
    return FakeRetriever


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "gate.db")
    database.init_schema()
    return database


@pytest.fixture
def config() -> GateConfig:
    return GateConfig()


@pytest.fixture
def proposal(db: Database) -> dict[str, object]:
    return db.create_proposal(organization_id="org-1", title="Eastside Food Access", funder_name="Ford Foundation")
