from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import re

from grantgate.config import GateConfig
from grantgate.db import Database
from grantgate.errors import InvalidOperationError, NotFoundError
from grantgate.export.policy import limit_violations
from grantgate.markup import strip_markup


logger = logging.getLogger("grantgate.checklist")

SECTION_ALIASES: dict[str, tuple[str, ...]] = {
    "executive summary": ("summary", "overview", "abstract"),
    "statement of need": ("need statement", "problem statement", "needs assessment", "community need"),
    "project description": ("project narrative", "methodology", "approach", "methods", "program description"),
    "goals and objectives": ("goals", "objectives", "outcomes", "expected outcomes"),
    "evaluation plan": ("evaluation", "assessment", "measurement", "metrics"),
    "organizational background": ("organization background", "org background", "about us", "organizational capacity"),
    "budget narrative": ("budget justification", "budget explanation", "budget description"),
    "sustainability plan": ("sustainability", "future funding", "continuation plan"),
    "timeline": ("project timeline", "schedule", "work plan", "implementation timeline"),
}


class MappingType(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class ItemStatus(str, Enum):
    COMPLETE = "COMPLETE"
    INCOMPLETE = "INCOMPLETE"
    UNMAPPED = "UNMAPPED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


@dataclass
class ChecklistValidation:
    valid: bool
    missing_required: list[str] = field(default_factory=list)
    unmapped_items: list[str] = field(default_factory=list)
    low_confidence_mappings: list[dict[str, object]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "missing_required": self.missing_required,
            "unmapped_items": self.unmapped_items,
            "low_confidence_mappings": self.low_confidence_mappings,
        }


def normalize_words(text: str) -> set[str]:
    cleaned = re.sub(r"[^a-z0-9\s]", "", (text or "").lower())
    return {word for word in cleaned.split() if len(word) > 2}


def similarity(a: str, b: str) -> float:
    """Jaccard overlap of the normalized word sets of ``a`` and ``b``."""
    words_a = normalize_words(a)
    words_b = normalize_words(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def expand_names(name: str) -> list[str]:
    normalized = (name or "").lower().strip()
    names = [normalized]
    for canonical, aliases in SECTION_ALIASES.items():
        if canonical in normalized or any(alias in normalized for alias in aliases):
            names.append(canonical)
            names.extend(aliases)
    return names


def name_similarity(a: str, b: str) -> float:
    return max(similarity(left, right) for left in expand_names(a) for right in expand_names(b))


def _has_content(section: dict[str, object] | None) -> bool:
    return section is not None and bool(str(section.get("content") or "").strip())


class ChecklistMapper:
    def __init__(self, db: Database, config: GateConfig) -> None:
        self.db = db
        self.config = config

    def _require_proposal(self, proposal_id: str) -> dict[str, object]:
        proposal = self.db.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError(f"Proposal '{proposal_id}' not found.")
        return proposal

    def create_items(self, proposal_id: str, items: list[dict[str, object]]) -> list[dict[str, object]]:
        self._require_proposal(proposal_id)
        return self.db.create_checklist_items(proposal_id, items)

    def auto_map(self, proposal_id: str) -> dict[str, object]:
        """Map each item without a MANUAL mapping to its best-named section.

        A section qualifies only when its name similarity is strictly above
        ``min_mapping_confidence``; ties keep the earlier section.
        """
        self._require_proposal(proposal_id)
        sections = self.db.list_sections(proposal_id)
        items = self.db.list_checklist_items(proposal_id)
        manual_items = {
            str(mapping["checklist_item_id"])
            for mapping in self.db.list_section_mappings(proposal_id)
            if mapping["mapping_type"] == MappingType.MANUAL.value
        }

        created = 0
        matched = 0
        for item in items:
            item_id = str(item["id"])
            if item_id in manual_items:
                continue
            best_section: dict[str, object] | None = None
            best_score = 0.0
            for section in sections:
                score = name_similarity(str(item["name"]), str(section["name"]))
                if score > best_score:
                    best_section, best_score = section, score
            if best_section is None or best_score <= self.config.min_mapping_confidence:
                continue
            matched += 1
            if self.db.apply_auto_mapping(item_id, str(best_section["id"]), round(best_score, 4)):
                created += 1

        logger.info(
            "checklist_auto_mapped",
            extra={
                "event": "checklist_auto_mapped",
                "proposal_id": proposal_id,
                "items": len(items),
                "matched": matched,
                "created": created,
            },
        )
        return {
            "proposal_id": proposal_id,
            "matched": matched,
            "created": created,
            "mappings": self.db.list_section_mappings(proposal_id),
        }

    def manual_map(self, item_id: str, section_id: str) -> dict[str, object]:
        item = self.db.get_checklist_item(item_id)
        if item is None:
            raise NotFoundError(f"Checklist item '{item_id}' not found.")
        section = self.db.get_section(section_id)
        if section is None:
            raise NotFoundError(f"Section '{section_id}' not found.")
        if section["proposal_id"] != item["proposal_id"]:
            raise InvalidOperationError("Checklist item and section belong to different proposals.")
        return self.db.set_manual_mapping(item_id, section_id)

    def _mappings_by_item(self, proposal_id: str) -> dict[str, list[dict[str, object]]]:
        grouped: dict[str, list[dict[str, object]]] = {}
        for mapping in self.db.list_section_mappings(proposal_id):
            grouped.setdefault(str(mapping["checklist_item_id"]), []).append(mapping)
        return grouped

    def validate(self, proposal_id: str) -> ChecklistValidation:
        sections = {str(section["id"]): section for section in self.db.list_sections(proposal_id)}
        mappings = self._mappings_by_item(proposal_id)
        result = ChecklistValidation(valid=True)

        for item in self.db.list_checklist_items(proposal_id):
            name = str(item["name"])
            item_mappings = mappings.get(str(item["id"]), [])
            if not item_mappings:
                result.unmapped_items.append(name)
                if item["is_required"]:
                    result.missing_required.append(name)
                continue

            satisfied = False
            for mapping in item_mappings:
                section = sections.get(str(mapping["section_id"]))
                if not _has_content(section):
                    continue
                satisfied = True
                if (
                    mapping["mapping_type"] == MappingType.AUTO.value
                    and float(mapping["confidence"]) < self.config.low_mapping_confidence
                ):
                    result.low_confidence_mappings.append(
                        {
                            "item_name": name,
                            "section_name": section["name"],
                            "confidence": mapping["confidence"],
                        }
                    )
            if not satisfied and item["is_required"] and name not in result.missing_required:
                result.missing_required.append(name)

        result.valid = not result.missing_required
        return result

    def status(self, proposal_id: str) -> dict[str, object]:
        self._require_proposal(proposal_id)
        sections = {str(section["id"]): section for section in self.db.list_sections(proposal_id)}
        mappings = self._mappings_by_item(proposal_id)

        items: list[dict[str, object]] = []
        for item in self.db.list_checklist_items(proposal_id):
            mapped_sections: list[dict[str, object]] = []
            violations: list[dict[str, object]] = []
            for mapping in mappings.get(str(item["id"]), []):
                section = sections.get(str(mapping["section_id"]))
                mapped_sections.append(
                    {
                        "id": mapping["section_id"],
                        "name": section["name"] if section is not None else "Unknown",
                        "has_content": _has_content(section),
                        "mapping_type": mapping["mapping_type"],
                        "confidence": mapping["confidence"],
                    }
                )
                if _has_content(section):
                    for violation in limit_violations(
                        strip_markup(str(section["content"])),
                        word_limit=item.get("word_limit"),
                        char_limit=item.get("char_limit"),
                    ):
                        violations.append({**violation, "section_id": mapping["section_id"]})

            if not mapped_sections:
                status = ItemStatus.UNMAPPED
            elif any(
                entry["mapping_type"] == MappingType.AUTO.value
                and float(entry["confidence"]) < self.config.low_mapping_confidence
                for entry in mapped_sections
            ):
                status = ItemStatus.NEEDS_REVIEW
            elif any(entry["has_content"] for entry in mapped_sections):
                status = ItemStatus.COMPLETE
            else:
                status = ItemStatus.INCOMPLETE

            items.append(
                {
                    "id": item["id"],
                    "name": item["name"],
                    "is_required": item["is_required"],
                    "status": status.value,
                    "mapped_sections": mapped_sections,
                    "limit_violations": violations,
                }
            )

        return {
            "items": items,
            "summary": {
                "total": len(items),
                "complete": sum(1 for item in items if item["status"] == ItemStatus.COMPLETE.value),
                "incomplete": sum(
                    1
                    for item in items
                    if item["status"] in (ItemStatus.INCOMPLETE.value, ItemStatus.UNMAPPED.value)
                ),
                "needs_review": sum(1 for item in items if item["status"] == ItemStatus.NEEDS_REVIEW.value),
            },
        }
