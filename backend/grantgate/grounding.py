from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import math
import re

from grantgate.config import GateConfig
from grantgate.db import Database
from grantgate.errors import NotFoundError
from grantgate.markup import has_placeholder, strip_markup
from grantgate.retrieval import RetrievalOutcome, Retriever, retrieve_many


logger = logging.getLogger("grantgate.grounding")

PARAGRAPH_BREAK = re.compile(r"\r?\n[ \t\r]*\n\s*")


class GroundingStatus(str, Enum):
    GROUNDED = "GROUNDED"
    PARTIAL = "PARTIAL"
    UNGROUNDED = "UNGROUNDED"
    PLACEHOLDER = "PLACEHOLDER"
    FAILED = "FAILED"


@dataclass
class SectionGrounding:
    section_id: str
    section_name: str
    coverage_score: int
    paragraphs: list[dict[str, object]] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in GroundingStatus}
        for paragraph in self.paragraphs:
            counts[str(paragraph["status"])] += 1
        return counts

    def to_dict(self) -> dict[str, object]:
        return {
            "section_id": self.section_id,
            "section_name": self.section_name,
            "coverage_score": self.coverage_score,
            "counts": self.counts,
            "paragraphs": self.paragraphs,
        }


def split_paragraphs(text: str) -> list[str]:
    return [part.strip() for part in PARAGRAPH_BREAK.split(text or "") if part.strip()]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def coverage_score(statuses: list[str]) -> int:
    """Percent of paragraphs that are GROUNDED or PARTIAL, rounded half up."""
    if not statuses:
        return 0
    supported = sum(
        1 for status in statuses if status in (GroundingStatus.GROUNDED.value, GroundingStatus.PARTIAL.value)
    )
    return round_half_up(100 * supported / len(statuses))


def grounding_status(similarity: float, config: GateConfig) -> GroundingStatus:
    if similarity >= config.verified_similarity:
        return GroundingStatus.GROUNDED
    if similarity >= config.partial_similarity:
        return GroundingStatus.PARTIAL
    return GroundingStatus.UNGROUNDED


def classify_paragraph(
    index: int,
    text: str,
    outcome: RetrievalOutcome | None,
    config: GateConfig,
) -> dict[str, object]:
    row: dict[str, object] = {
        "paragraph_index": index,
        "text": text,
        "best_similarity": 0.0,
        "supporting_chunks": [],
        "error": None,
    }
    if outcome is None:
        row["status"] = GroundingStatus.PLACEHOLDER.value
        return row
    if outcome.error is not None or not outcome.chunks:
        row["status"] = GroundingStatus.FAILED.value
        row["error"] = outcome.error or "Retrieval returned no results."
        return row

    ranked = sorted(outcome.chunks, key=lambda chunk: chunk.similarity, reverse=True)
    row["best_similarity"] = ranked[0].similarity
    row["supporting_chunks"] = [chunk.to_dict() for chunk in ranked[: config.max_supporting_chunks]]
    row["status"] = grounding_status(ranked[0].similarity, config).value
    return row


def _section_grounding(section: dict[str, object], paragraphs: list[dict[str, object]]) -> SectionGrounding:
    return SectionGrounding(
        section_id=str(section["id"]),
        section_name=str(section.get("name") or section.get("section_name") or ""),
        coverage_score=coverage_score([str(paragraph["status"]) for paragraph in paragraphs]),
        paragraphs=paragraphs,
    )


class GroundingClassifier:
    def __init__(self, db: Database, retriever: Retriever, config: GateConfig) -> None:
        self.db = db
        self.retriever = retriever
        self.config = config

    async def classify_sections(self, sections: list[dict[str, object]]) -> list[SectionGrounding]:
        split = [(section, split_paragraphs(str(section.get("content") or ""))) for section in sections]
        queries: list[str] = []
        for _, paragraphs in split:
            for paragraph in paragraphs:
                if not has_placeholder(paragraph):
                    queries.append(strip_markup(paragraph) or paragraph)

        outcomes = iter(
            await retrieve_many(
                self.retriever,
                queries,
                top_k=self.config.retrieval_top_k,
                timeout_seconds=self.config.retrieval_timeout_seconds,
                max_concurrency=self.config.retrieval_max_concurrency,
            )
        )

        results: list[SectionGrounding] = []
        for section, paragraphs in split:
            rows = [
                classify_paragraph(
                    index,
                    paragraph,
                    None if has_placeholder(paragraph) else next(outcomes),
                    self.config,
                )
                for index, paragraph in enumerate(paragraphs)
            ]
            results.append(_section_grounding(section, rows))
        return results

    def persist(self, results: list[SectionGrounding]) -> None:
        for result in results:
            self.db.replace_paragraph_attributions(result.section_id, result.paragraphs)
            logger.info(
                "grounding_classified",
                extra={
                    "event": "grounding_classified",
                    "section_id": result.section_id,
                    "coverage_score": result.coverage_score,
                    "counts": result.counts,
                },
            )

    async def classify_section(self, section_id: str) -> SectionGrounding:
        section = self.db.get_section(section_id)
        if section is None:
            raise NotFoundError(f"Section '{section_id}' not found.")
        results = await self.classify_sections([section])
        self.persist(results)
        return results[0]

    async def classify_proposal(self, proposal_id: str) -> list[SectionGrounding]:
        results = await self.classify_sections(self.db.list_sections(proposal_id))
        self.persist(results)
        return results

    def get(self, section_id: str) -> SectionGrounding:
        section = self.db.get_section(section_id)
        if section is None:
            raise NotFoundError(f"Section '{section_id}' not found.")
        rows = self.db.list_paragraph_attributions(section_id=section_id)
        paragraphs = [
            {
                "paragraph_index": row["paragraph_index"],
                "text": row["text"],
                "status": row["status"],
                "best_similarity": row["best_similarity"],
                "supporting_chunks": row["supporting_chunks"],
                "error": row["error"],
            }
            for row in rows
        ]
        return _section_grounding(section, paragraphs)
