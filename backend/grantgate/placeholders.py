from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging

from grantgate.db import Database
from grantgate.errors import InvalidOperationError, NotFoundError
from grantgate.markup import PlaceholderType, placeholder_tokens, replace_placeholder


logger = logging.getLogger("grantgate.placeholders")

BLOCKING_TYPES = frozenset({PlaceholderType.MISSING_DATA, PlaceholderType.VERIFICATION_NEEDED})

# Description keywords -> document categories likely to hold the missing data.
SOURCE_KEYWORDS: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("budget", "financial"), ("AUDITED_FINANCIALS", "FORM_990")),
    (("outcome", "impact", "result"), ("IMPACT_REPORT", "EVALUATION_REPORT")),
    (("staff", "team"), ("STAFF_BIOS",)),
    (("program", "service"), ("PROGRAM_DESCRIPTION",)),
    (("organization", "history", "mission"), ("ORG_OVERVIEW", "ANNUAL_REPORT")),
)


class PlaceholderStatus(str, Enum):
    UNRESOLVED = "UNRESOLVED"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


@dataclass(frozen=True)
class PlaceholderSummary:
    section_id: str
    total: int
    unresolved: int
    blocking: int

    def to_dict(self) -> dict[str, object]:
        return {
            "section_id": self.section_id,
            "total": self.total,
            "unresolved": self.unresolved,
            "blocking": self.blocking,
        }


def is_blocking(placeholder: dict[str, object]) -> bool:
    return (
        placeholder.get("status") == PlaceholderStatus.UNRESOLVED.value
        and PlaceholderType(str(placeholder["placeholder_type"])) in BLOCKING_TYPES
    )


def suggested_sources(placeholder_type: PlaceholderType, description: str) -> list[str]:
    lowered = description.lower()
    sources: list[str] = []
    for keywords, categories in SOURCE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            for category in categories:
                if category not in sources:
                    sources.append(category)
    if sources:
        return sources
    if placeholder_type is PlaceholderType.MISSING_DATA:
        return ["ANNUAL_REPORT", "ORG_OVERVIEW"]
    return ["PROPOSAL", "PROGRAM_DESCRIPTION"]


class PlaceholderManager:
    """Keeps the persisted placeholder rows of a section in step with its content."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _require_section(self, section_id: str) -> dict[str, object]:
        section = self.db.get_section(section_id)
        if section is None:
            raise NotFoundError(f"Section '{section_id}' not found.")
        return section

    def _write_content(self, section: dict[str, object], content: str) -> None:
        if section.get("exported_at"):
            raise InvalidOperationError(f"Section '{section['id']}' was exported and can no longer change.")
        if not self.db.update_section_content(str(section["id"]), content=content):
            raise InvalidOperationError(f"Section '{section['id']}' was exported and can no longer change.")

    def _sync(
        self,
        section: dict[str, object],
        *,
        resolved_values: dict[str, str] | None = None,
        dismissed_ids: tuple[str, ...] = (),
    ) -> PlaceholderSummary:
        section_id = str(section["id"])
        found: dict[str, dict[str, object]] = {}
        for token in placeholder_tokens(str(section.get("content") or "")):
            placeholder_id = str(token.placeholder_id)
            if placeholder_id in found:
                continue
            placeholder_type = token.placeholder_type or PlaceholderType.MISSING_DATA
            found[placeholder_id] = {
                "placeholder_id": placeholder_id,
                "placeholder_type": placeholder_type.value,
                "description": token.fields["description"],
                "suggested_sources": suggested_sources(placeholder_type, token.fields["description"]),
            }

        self.db.sync_placeholders(
            section_id,
            found.values(),
            resolved_values=resolved_values,
            dismissed_ids=dismissed_ids,
        )
        rows = self.db.list_placeholders(section_id=section_id)
        summary = PlaceholderSummary(
            section_id=section_id,
            total=len(rows),
            unresolved=sum(1 for row in rows if row["status"] == PlaceholderStatus.UNRESOLVED.value),
            blocking=sum(1 for row in rows if is_blocking(row)),
        )
        logger.info(
            "placeholder_scan_completed",
            extra={"event": "placeholder_scan_completed", **summary.to_dict()},
        )
        return summary

    def scan_and_persist(self, section_id: str) -> PlaceholderSummary:
        return self._sync(self._require_section(section_id))

    def scan_proposal(self, proposal_id: str) -> list[PlaceholderSummary]:
        return [self._sync(section) for section in self.db.list_sections(proposal_id)]

    def update_content(
        self,
        section_id: str,
        *,
        content: str,
        generated_content: str | None = None,
        citations: list[dict[str, object]] | None = None,
    ) -> PlaceholderSummary:
        section = self._require_section(section_id)
        if section.get("exported_at"):
            raise InvalidOperationError(f"Section '{section_id}' was exported and can no longer change.")
        updated = self.db.update_section_content(
            section_id,
            content=content,
            generated_content=generated_content,
            citations=citations,
        )
        if not updated:
            raise InvalidOperationError(f"Section '{section_id}' was exported and can no longer change.")
        return self._sync({**section, "content": content})

    def resolve(self, section_id: str, placeholder_id: str, value: str) -> PlaceholderSummary:
        section = self._require_section(section_id)
        new_content, replaced = replace_placeholder(str(section.get("content") or ""), placeholder_id, value)
        if replaced == 0:
            raise NotFoundError(f"Placeholder '{placeholder_id}' not found in section '{section_id}'.")
        self._write_content(section, new_content)
        return self._sync({**section, "content": new_content}, resolved_values={placeholder_id: value})

    def dismiss(self, section_id: str, placeholder_id: str) -> PlaceholderSummary:
        section = self._require_section(section_id)
        content = str(section.get("content") or "")
        matches = [token for token in placeholder_tokens(content) if token.placeholder_id == placeholder_id]
        if not matches:
            raise NotFoundError(f"Placeholder '{placeholder_id}' not found in section '{section_id}'.")
        placeholder_type = matches[0].placeholder_type
        if placeholder_type is not PlaceholderType.USER_INPUT_REQUIRED:
            raise InvalidOperationError(
                f"Placeholder '{placeholder_id}' is {placeholder_type.value if placeholder_type else 'unknown'} "
                "and must be resolved, not dismissed."
            )
        new_content, _ = replace_placeholder(content, placeholder_id, "")
        self._write_content(section, new_content)
        return self._sync({**section, "content": new_content}, dismissed_ids=(placeholder_id,))

    def list_placeholders(
        self,
        *,
        section_id: str | None = None,
        proposal_id: str | None = None,
    ) -> list[dict[str, object]]:
        if section_id is None and proposal_id is None:
            raise InvalidOperationError("Either section_id or proposal_id is required.")
        return self.db.list_placeholders(section_id=section_id, proposal_id=proposal_id)
