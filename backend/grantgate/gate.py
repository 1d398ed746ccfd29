"""Export gate: fuses every integrity signal of a proposal into one decision.

Rules, highest precedence first:

1. ``UNRESOLVED_PLACEHOLDER``  a blocking placeholder is still in the text (BLOCK)
2. ``REQUIRED_ITEM_MISSING``   a required checklist item has no content-bearing section (BLOCK)
3. ``HIGH_RISK_UNVERIFIED``    high-risk claims lack evidence and were never attested (WARN, attestation)
4. ``COVERAGE_LOW`` / ``LOW_CONFIDENCE_MAPPING``  advisory (WARN)

Every matching rule is reported; the decision and ``primary_rule_id`` follow the
highest-precedence match. Policy outcomes are returned as data. Only storage
failures raise, as ``GateInfrastructureError``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import hashlib
import json
import logging
import sqlite3

from grantgate.checklist import ChecklistMapper
from grantgate.claims import ClaimVerifier, claim_key, is_high_risk_unverified, summarize_claims
from grantgate.config import GateConfig
from grantgate.db import Database
from grantgate.errors import ConflictError, GateInfrastructureError, InvalidOperationError, NotFoundError
from grantgate.export import ExportRenderError, render_markdown
from grantgate.grounding import GroundingClassifier
from grantgate.markup import PlaceholderType
from grantgate.placeholders import PlaceholderManager, PlaceholderStatus, is_blocking
from grantgate.retrieval import Retriever


logger = logging.getLogger("grantgate.gate")

ATTESTATION_PREFIX = (
    "I have reviewed the following high-risk claim(s) that could not be verified against source documents"
)
ATTESTATION_SUFFIX = "and I take responsibility for their accuracy in this export."


class Decision(str, Enum):
    BLOCK = "BLOCK"
    WARN = "WARN"
    ALLOW = "ALLOW"


class GateState(str, Enum):
    PENDING = "PENDING"
    BLOCK = "BLOCK"
    WARN_NEEDS_ATTESTATION = "WARN_NEEDS_ATTESTATION"
    WARN_ACKNOWLEDGED = "WARN_ACKNOWLEDGED"
    ALLOW = "ALLOW"


class RuleId(str, Enum):
    UNRESOLVED_PLACEHOLDER = "UNRESOLVED_PLACEHOLDER"
    REQUIRED_ITEM_MISSING = "REQUIRED_ITEM_MISSING"
    HIGH_RISK_UNVERIFIED = "HIGH_RISK_UNVERIFIED"
    COVERAGE_LOW = "COVERAGE_LOW"
    LOW_CONFIDENCE_MAPPING = "LOW_CONFIDENCE_MAPPING"


class Severity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


RULE_PRECEDENCE: tuple[RuleId, ...] = (
    RuleId.UNRESOLVED_PLACEHOLDER,
    RuleId.REQUIRED_ITEM_MISSING,
    RuleId.HIGH_RISK_UNVERIFIED,
    RuleId.COVERAGE_LOW,
    RuleId.LOW_CONFIDENCE_MAPPING,
)
RULE_RESOLUTIONS: dict[RuleId, str] = {
    RuleId.UNRESOLVED_PLACEHOLDER: (
        "Provide the missing data or resolve each placeholder. "
        "VERIFICATION_NEEDED placeholders can be attested instead."
    ),
    RuleId.REQUIRED_ITEM_MISSING: "Add content for each required checklist item or map an existing section to it.",
}
RULE_SEVERITIES: dict[RuleId, Severity] = {
    RuleId.HIGH_RISK_UNVERIFIED: Severity.HIGH,
    RuleId.COVERAGE_LOW: Severity.MEDIUM,
    RuleId.LOW_CONFIDENCE_MAPPING: Severity.LOW,
}
EXPORTABLE_STATES = (GateState.ALLOW, GateState.WARN_ACKNOWLEDGED)


@dataclass(frozen=True)
class GateBlock:
    rule_id: RuleId
    reason: str
    affected_items: list[str] = field(default_factory=list)
    details: list[dict[str, object]] = field(default_factory=list)

    @property
    def resolution(self) -> str:
        return RULE_RESOLUTIONS[self.rule_id]

    def to_dict(self) -> dict[str, object]:
        return {
            "rule_id": self.rule_id.value,
            "reason": self.reason,
            "affected_items": self.affected_items,
            "resolution": self.resolution,
            "details": self.details,
        }


@dataclass(frozen=True)
class GateWarning:
    rule_id: RuleId
    message: str
    affected_items: list[str] = field(default_factory=list)
    details: list[dict[str, object]] = field(default_factory=list)

    @property
    def severity(self) -> Severity:
        return RULE_SEVERITIES[self.rule_id]

    def to_dict(self) -> dict[str, object]:
        return {
            "rule_id": self.rule_id.value,
            "message": self.message,
            "severity": self.severity.value,
            "affected_items": self.affected_items,
            "details": self.details,
        }


def attestation_text(claims: list[dict[str, object]]) -> str:
    """Statement naming each unverified high-risk claim with its section, in claim order."""
    named = "; ".join(f"{claim['value']} ({claim['section_name']})" for claim in claims)
    return f"{ATTESTATION_PREFIX}: {named}, {ATTESTATION_SUFFIX}"


@dataclass
class GateResult:
    decision: Decision
    state: GateState
    blocks: list[GateBlock]
    warnings: list[GateWarning]
    attestation_required: bool
    audit_record_id: str
    attestation_text: str | None = None
    primary_rule_id: RuleId | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "decision": self.decision.value,
            "state": self.state.value,
            "blocks": [finding.to_dict() for finding in self.blocks],
            "warnings": [finding.to_dict() for finding in self.warnings],
            "attestation_required": self.attestation_required,
            "attestation_text": self.attestation_text,
            "audit_record_id": self.audit_record_id,
            "primary_rule_id": self.primary_rule_id.value if self.primary_rule_id else None,
        }


def _precedence(finding: GateBlock | GateWarning) -> int:
    return RULE_PRECEDENCE.index(finding.rule_id)


def decide(
    blocks: list[GateBlock],
    warnings: list[GateWarning],
) -> tuple[Decision, GateState, RuleId | None, bool]:
    """Decision, state, primary rule and whether attestation is required."""
    findings = sorted([*blocks, *warnings], key=_precedence)
    if not findings:
        return Decision.ALLOW, GateState.ALLOW, None, False

    primary = findings[0].rule_id
    if primary in (RuleId.UNRESOLVED_PLACEHOLDER, RuleId.REQUIRED_ITEM_MISSING):
        return Decision.BLOCK, GateState.BLOCK, primary, False
    if primary is RuleId.HIGH_RISK_UNVERIFIED:
        return Decision.WARN, GateState.WARN_NEEDS_ATTESTATION, primary, True
    if primary in (RuleId.COVERAGE_LOW, RuleId.LOW_CONFIDENCE_MAPPING):
        return Decision.WARN, GateState.WARN_ACKNOWLEDGED, primary, False
    raise ValueError(f"Unhandled rule: {primary}")


def _digest(payload: object) -> str:
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class ExportGatekeeper:
    def __init__(self, db: Database, retriever: Retriever, config: GateConfig) -> None:
        self.db = db
        self.config = config
        self.placeholders = PlaceholderManager(db)
        self.claims = ClaimVerifier(db, retriever, config)
        self.grounding = GroundingClassifier(db, retriever, config)
        self.checklist = ChecklistMapper(db, config)

    def _require_proposal(self, proposal_id: str) -> dict[str, object]:
        proposal = self.db.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError(f"Proposal '{proposal_id}' not found.")
        return proposal

    def state_fingerprint(self, proposal_id: str) -> str:
        """Hash of the persisted state the gate decides on, without timestamps or row ids."""
        sections = self.db.list_sections(proposal_id)
        return _digest(
            {
                "sections": [
                    [section["id"], section["name"], section["sort_order"], section["content"], section["citations"]]
                    for section in sections
                ],
                "placeholders": [
                    [row["section_id"], row["placeholder_id"], row["placeholder_type"], row["status"]]
                    for row in self.db.list_placeholders(proposal_id=proposal_id)
                ],
                "claims": [
                    [
                        row["section_id"],
                        row["claim_type"],
                        row["value"],
                        row["start_offset"],
                        row["risk_level"],
                        row["status"],
                    ]
                    for row in self.db.list_claims(proposal_id=proposal_id)
                ],
                "attributions": [
                    [row["section_id"], row["paragraph_index"], row["status"]]
                    for row in self.db.list_paragraph_attributions(proposal_id=proposal_id)
                ],
                "checklist": [
                    [item["id"], item["name"], item["is_required"]]
                    for item in self.db.list_checklist_items(proposal_id)
                ],
                "mappings": [
                    [row["checklist_item_id"], row["section_id"], row["mapping_type"], row["confidence"]]
                    for row in self.db.list_section_mappings(proposal_id)
                ],
                "placeholder_attestations": [
                    [row["section_id"], row["placeholder_id"]]
                    for row in self.db.list_placeholder_attestations(proposal_id)
                ],
            }
        )

    async def _refresh(self, proposal_id: str) -> dict[str, int]:
        sections = self.db.list_sections(proposal_id)
        claim_rows, groundings = await asyncio.gather(
            self.claims.check_sections(sections),
            self.grounding.classify_sections(sections),
        )
        # Lookups are done; nothing below awaits, so a cancelled pass writes nothing.
        self.placeholders.scan_proposal(proposal_id)
        self.claims.persist(claim_rows)
        self.grounding.persist(groundings)
        return {
            grounding.section_id: grounding.coverage_score
            for grounding in groundings
            if grounding.paragraphs
        }

    def _placeholder_findings(self, proposal_id: str) -> list[GateBlock]:
        attested = {
            (row["section_id"], row["placeholder_id"])
            for row in self.db.list_placeholder_attestations(proposal_id)
        }
        blocking = [
            row
            for row in self.db.list_placeholders(proposal_id=proposal_id)
            if is_blocking(row)
            and not (
                row["placeholder_type"] == PlaceholderType.VERIFICATION_NEEDED.value
                and (row["section_id"], row["placeholder_id"]) in attested
            )
        ]
        if not blocking:
            return []
        return [
            GateBlock(
                rule_id=RuleId.UNRESOLVED_PLACEHOLDER,
                reason=f"{len(blocking)} placeholder(s) must be resolved before export.",
                affected_items=[f"{row['section_name']}: {row['description']}" for row in blocking],
                details=[
                    {
                        "section_id": row["section_id"],
                        "section_name": row["section_name"],
                        "placeholder_id": row["placeholder_id"],
                        "placeholder_type": row["placeholder_type"],
                        "description": row["description"],
                    }
                    for row in blocking
                ],
            )
        ]

    def _attested_claim_keys(self, proposal_id: str) -> list[set[str]]:
        return [
            set(record["attested_claim_keys"])
            for record in self.db.list_audit_records(proposal_id)
            if record["state"] == GateState.WARN_ACKNOWLEDGED.value and record["attested_at"]
        ]

    async def evaluate(self, proposal_id: str, user_id: str, export_format: str = "markdown") -> GateResult:
        self._require_proposal(proposal_id)
        try:
            coverage = await self._refresh(proposal_id)

            blocks = self._placeholder_findings(proposal_id)
            warnings: list[GateWarning] = []

            validation = self.checklist.validate(proposal_id)
            if validation.missing_required:
                blocks.append(
                    GateBlock(
                        rule_id=RuleId.REQUIRED_ITEM_MISSING,
                        reason=f"{len(validation.missing_required)} required checklist item(s) have no content.",
                        affected_items=list(validation.missing_required),
                        details=[{"item_name": name} for name in validation.missing_required],
                    )
                )

            claims = self.db.list_claims(proposal_id=proposal_id)
            risky = [claim for claim in claims if is_high_risk_unverified(claim)]
            risky_keys = sorted({claim_key(claim) for claim in risky})
            covered = bool(risky_keys) and any(
                set(risky_keys) <= attested for attested in self._attested_claim_keys(proposal_id)
            )
            if risky_keys and not covered:
                warnings.append(
                    GateWarning(
                        rule_id=RuleId.HIGH_RISK_UNVERIFIED,
                        message=f"{len(risky)} high-risk claim(s) could not be verified against source documents.",
                        affected_items=[f"{claim['value']} ({claim['section_name']})" for claim in risky],
                        details=[
                            {
                                "section_id": claim["section_id"],
                                "section_name": claim["section_name"],
                                "claim_type": claim["claim_type"],
                                "value": claim["value"],
                                "error": claim["error"],
                            }
                            for claim in risky
                        ],
                    )
                )

            sections = {str(section["id"]): section for section in self.db.list_sections(proposal_id)}
            low_coverage = [
                {"section_id": section_id, "section_name": sections[section_id]["name"], "coverage_score": score}
                for section_id, score in coverage.items()
                if score < self.config.coverage_section_warn and section_id in sections
            ]
            if low_coverage:
                warnings.append(
                    GateWarning(
                        rule_id=RuleId.COVERAGE_LOW,
                        message=(
                            f"{len(low_coverage)} section(s) are below "
                            f"{self.config.coverage_section_warn}% grounding coverage."
                        ),
                        affected_items=[str(row["section_name"]) for row in low_coverage],
                        details=low_coverage,
                    )
                )
            if validation.low_confidence_mappings:
                warnings.append(
                    GateWarning(
                        rule_id=RuleId.LOW_CONFIDENCE_MAPPING,
                        message=f"{len(validation.low_confidence_mappings)} checklist mapping(s) need review.",
                        affected_items=[
                            f"{row['item_name']} -> {row['section_name']}"
                            for row in validation.low_confidence_mappings
                        ],
                        details=validation.low_confidence_mappings,
                    )
                )

            decision, state, primary_rule_id, attestation_required = decide(blocks, warnings)
            statement = attestation_text(risky) if attestation_required else None
            summary = summarize_claims(claims)
            record = self.db.create_audit_record(
                {
                    "proposal_id": proposal_id,
                    "user_id": user_id,
                    "export_format": export_format,
                    "decision": decision.value,
                    "state": state.value,
                    "primary_rule_id": primary_rule_id.value if primary_rule_id else None,
                    "blocks": [finding.to_dict() for finding in blocks],
                    "warnings": [finding.to_dict() for finding in warnings],
                    "snapshot": {
                        "coverage_by_section": coverage,
                        "verification_rate": summary.verification_rate,
                        "claims": summary.to_dict(),
                        "checklist_valid": validation.valid,
                    },
                    "state_fingerprint": self.state_fingerprint(proposal_id),
                    "attestation_required": attestation_required,
                    "issued_attestation_text": statement,
                    "attested_claim_keys": risky_keys if attestation_required else [],
                }
            )
        except sqlite3.Error as exc:
            logger.exception(
                "gate_evaluation_failed",
                extra={"event": "gate_evaluation_failed", "proposal_id": proposal_id},
            )
            raise GateInfrastructureError() from exc

        logger.info(
            "gate_evaluated",
            extra={
                "event": "gate_evaluated",
                "proposal_id": proposal_id,
                "decision": decision.value,
                "state": state.value,
                "primary_rule_id": primary_rule_id.value if primary_rule_id else None,
                "audit_record_id": record["id"],
            },
        )
        return GateResult(
            decision=decision,
            state=state,
            blocks=blocks,
            warnings=warnings,
            attestation_required=attestation_required,
            attestation_text=statement,
            audit_record_id=str(record["id"]),
            primary_rule_id=primary_rule_id,
        )

    def submit_attestation(self, audit_record_id: str, attestation_text: str) -> dict[str, object]:
        try:
            record = self.db.get_audit_record(audit_record_id)
            if record is None:
                raise NotFoundError(f"Audit record '{audit_record_id}' not found.")
            updated = self.db.record_attestation(
                audit_record_id,
                attestation_text=attestation_text,
                expected_state=GateState.WARN_NEEDS_ATTESTATION.value,
                next_state=GateState.WARN_ACKNOWLEDGED.value,
            )
        except sqlite3.Error as exc:
            logger.exception(
                "attestation_failed",
                extra={"event": "attestation_failed", "audit_record_id": audit_record_id},
            )
            raise GateInfrastructureError() from exc

        if not updated:
            raise ConflictError(
                "Attestation does not apply: the record is not awaiting attestation or the text does not match."
            )
        logger.info(
            "attestation_recorded",
            extra={
                "event": "attestation_recorded",
                "audit_record_id": audit_record_id,
                "proposal_id": record["proposal_id"],
            },
        )
        return {"success": True, "audit_record_id": audit_record_id, "state": GateState.WARN_ACKNOWLEDGED.value}

    def attest_placeholder(self, section_id: str, placeholder_id: str, user_id: str) -> dict[str, object]:
        section = self.db.get_section(section_id)
        if section is None:
            raise NotFoundError(f"Section '{section_id}' not found.")
        rows = [
            row for row in self.db.list_placeholders(section_id=section_id) if row["placeholder_id"] == placeholder_id
        ]
        if not rows:
            raise NotFoundError(f"Placeholder '{placeholder_id}' not found in section '{section_id}'.")
        placeholder = rows[0]
        if placeholder["placeholder_type"] != PlaceholderType.VERIFICATION_NEEDED.value:
            raise InvalidOperationError("Only VERIFICATION_NEEDED placeholders can be attested.")
        if placeholder["status"] != PlaceholderStatus.UNRESOLVED.value:
            raise InvalidOperationError(f"Placeholder '{placeholder_id}' is already {placeholder['status']}.")
        return self.db.attest_placeholder(
            proposal_id=str(section["proposal_id"]),
            section_id=section_id,
            placeholder_id=placeholder_id,
            user_id=user_id,
        )

    def finalize_export(self, audit_record_id: str) -> dict[str, object]:
        record = self.db.get_audit_record(audit_record_id)
        if record is None:
            raise NotFoundError(f"Audit record '{audit_record_id}' not found.")
        if record["finalized_at"]:
            raise ConflictError("This export was already finalized.")
        if record["state"] not in {state.value for state in EXPORTABLE_STATES}:
            raise ConflictError(f"Export is not permitted from gate state {record['state']}.")

        proposal_id = str(record["proposal_id"])
        if self.state_fingerprint(proposal_id) != record["state_fingerprint"]:
            raise ConflictError("Proposal changed since the gate was evaluated. Run the export check again.")

        proposal = self._require_proposal(proposal_id)
        try:
            content = render_markdown(proposal, self.db.list_sections(proposal_id))
        except ExportRenderError as exc:
            raise InvalidOperationError(str(exc)) from exc

        allowed = [state.value for state in EXPORTABLE_STATES]
        if not self.db.finalize_export(audit_record_id, proposal_id=proposal_id, allowed_states=allowed):
            raise ConflictError("This export was already finalized.")

        logger.info(
            "export_finalized",
            extra={
                "event": "export_finalized",
                "audit_record_id": audit_record_id,
                "proposal_id": proposal_id,
                "export_format": record["export_format"],
            },
        )
        return {
            "audit_record_id": audit_record_id,
            "proposal_id": proposal_id,
            "export_format": record["export_format"],
            "media_type": "text/markdown",
            "content": content,
        }

    def list_audit_records(self, proposal_id: str) -> list[dict[str, object]]:
        self._require_proposal(proposal_id)
        return self.db.list_audit_records(proposal_id)
