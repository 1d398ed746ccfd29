from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import re

from grantgate.config import GateConfig
from grantgate.db import Database
from grantgate.errors import InvalidOperationError, NotFoundError
from grantgate.markup import strip_markup
from grantgate.retrieval import RetrievalOutcome, Retriever, retrieve_many


logger = logging.getLogger("grantgate.claims")


class ClaimType(str, Enum):
    NUMBER = "NUMBER"
    PERCENTAGE = "PERCENTAGE"
    CURRENCY = "CURRENCY"
    DATE = "DATE"
    NAMED_ORG = "NAMED_ORG"
    OUTCOME = "OUTCOME"


class RiskLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class VerificationStatus(str, Enum):
    VERIFIED = "VERIFIED"
    PARTIAL = "PARTIAL"
    UNVERIFIED = "UNVERIFIED"


_AMOUNT = r"(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?"

CURRENCY_PATTERN = re.compile(
    rf"\$\s*{_AMOUNT}(?:\s*(?:million|billion|thousand)\b|[MBK]\b)?",
    re.IGNORECASE,
)
PERCENTAGE_PATTERN = re.compile(rf"\b{_AMOUNT}\s*(?:%|percent\b)", re.IGNORECASE)
COUNT_NOUNS = (
    "families|people|individuals|children|youth|seniors|clients|participants|students|members|staff|"
    "employees|volunteers|partners|organizations|communities|counties|cities|states|locations|sites|"
    "programs|projects|years|residents|households|patients|meals|hours|schools|veterans|adults|women|men"
)
NUMBER_PATTERN = re.compile(
    rf"\b{_AMOUNT}\s+(?:[A-Za-z][A-Za-z-]*\s+)?(?:{COUNT_NOUNS})\b",
    re.IGNORECASE,
)
_MONTHS = (
    "January|February|March|April|May|June|July|August|September|October|November|December|"
    "Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec"
)
DATE_PATTERN = re.compile(
    rf"\b(?:(?:{_MONTHS})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s+(?:19|20)\d{{2}})?|(?:19|20)\d{{2}})\b"
)
ORG_NOUNS = (
    "Foundation|Fund|Trust|Institute|University|College|Association|Coalition|Department|Agency|"
    "Council|Alliance|Network|Center|Centre|Society|Corporation|Commission|Bureau|Partnership"
)
_ORG_SUFFIX = r"(?:\s+(?:of|for)\s+(?:the\s+)?[A-Z][A-Za-z]*(?:\s+[A-Z][A-Za-z]*){0,3})"
# "Ford Foundation", "Kresge Fund for the Arts", or a bare "Department of Health".
NAMED_ORG_PATTERN = re.compile(
    rf"\b(?:[A-Z][A-Za-z&'-]*\s+){{1,5}}(?:{ORG_NOUNS})\b{_ORG_SUFFIX}?"
    rf"|\b(?:{ORG_NOUNS}){_ORG_SUFFIX}"
)
OUTCOME_PATTERN = re.compile(
    r"\b(?:reduced|increased|improved|decreased|achieved|doubled|tripled|grew|expanded|lowered|boosted)\b"
    r"(?:[^.;:!?\n]|\.(?=\d)){1,80}",
    re.IGNORECASE,
)

# Numeric families share digits, so the first family to claim a span wins.
NUMERIC_PRIORITY: tuple[tuple[ClaimType, re.Pattern[str]], ...] = (
    (ClaimType.CURRENCY, CURRENCY_PATTERN),
    (ClaimType.PERCENTAGE, PERCENTAGE_PATTERN),
    (ClaimType.NUMBER, NUMBER_PATTERN),
    (ClaimType.DATE, DATE_PATTERN),
)
INDEPENDENT_PATTERNS: tuple[tuple[ClaimType, re.Pattern[str]], ...] = (
    (ClaimType.NAMED_ORG, NAMED_ORG_PATTERN),
    (ClaimType.OUTCOME, OUTCOME_PATTERN),
)


@dataclass(frozen=True)
class ExtractedClaim:
    claim_type: ClaimType
    value: str
    start: int
    end: int
    context: str
    risk_level: RiskLevel


@dataclass(frozen=True)
class ClaimSummary:
    total: int
    verified: int
    partial: int
    unverified: int
    high_risk_unverified: int
    verification_rate: float

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "verified": self.verified,
            "partial": self.partial,
            "unverified": self.unverified,
            "high_risk_unverified": self.high_risk_unverified,
            "verification_rate": self.verification_rate,
        }


def _leading_number(value: str) -> float | None:
    match = re.search(r"\d[\d,]*(?:\.\d+)?", value)
    if match is None:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def classify_risk(claim_type: ClaimType, value: str, config: GateConfig) -> RiskLevel:
    if claim_type is ClaimType.NUMBER:
        magnitude = _leading_number(value)
        if magnitude is not None and magnitude >= config.high_risk_number_threshold:
            return RiskLevel.HIGH
    return RiskLevel(config.risk_table.get(claim_type.value, RiskLevel.HIGH.value))


def _overlaps(span: tuple[int, int], taken: list[tuple[int, int]]) -> bool:
    start, end = span
    return any(start < other_end and other_start < end for other_start, other_end in taken)


def extract_claims(text: str, config: GateConfig) -> list[ExtractedClaim]:
    """Find factual claims in the plain text of ``text``.

    Offsets refer to ``strip_markup(text)``. Results are sorted by position.
    """
    plain = strip_markup(text)
    window = config.claim_context_chars
    found: list[tuple[ClaimType, int, int, str]] = []

    taken: list[tuple[int, int]] = []
    for claim_type, pattern in NUMERIC_PRIORITY:
        for match in pattern.finditer(plain):
            if _overlaps(match.span(), taken):
                continue
            taken.append(match.span())
            found.append((claim_type, match.start(), match.end(), match.group(0)))

    for claim_type, pattern in INDEPENDENT_PATTERNS:
        for match in pattern.finditer(plain):
            value = match.group(0).rstrip(" ,")
            found.append((claim_type, match.start(), match.start() + len(value), value))

    claims = [
        ExtractedClaim(
            claim_type=claim_type,
            value=value,
            start=start,
            end=end,
            context=plain[max(0, start - window) : end + window].strip(),
            risk_level=classify_risk(claim_type, value, config),
        )
        for claim_type, start, end, value in found
    ]
    claims.sort(key=lambda claim: (claim.start, claim.end, claim.claim_type.value))
    return claims


def verification_status(similarity: float | None, config: GateConfig) -> VerificationStatus:
    if similarity is None:
        return VerificationStatus.UNVERIFIED
    if similarity >= config.verified_similarity:
        return VerificationStatus.VERIFIED
    if similarity >= config.partial_similarity:
        return VerificationStatus.PARTIAL
    return VerificationStatus.UNVERIFIED


def claim_key(claim: dict[str, object]) -> str:
    """Stable identity of a claim across verification passes."""
    return f"{claim['section_id']}|{claim['claim_type']}|{claim['value']}"


def is_high_risk_unverified(claim: dict[str, object]) -> bool:
    return (
        claim.get("risk_level") == RiskLevel.HIGH.value
        and claim.get("status") == VerificationStatus.UNVERIFIED.value
    )


def summarize_claims(claims: list[dict[str, object]]) -> ClaimSummary:
    total = len(claims)
    verified = sum(1 for claim in claims if claim["status"] == VerificationStatus.VERIFIED.value)
    partial = sum(1 for claim in claims if claim["status"] == VerificationStatus.PARTIAL.value)
    return ClaimSummary(
        total=total,
        verified=verified,
        partial=partial,
        unverified=total - verified - partial,
        high_risk_unverified=sum(1 for claim in claims if is_high_risk_unverified(claim)),
        verification_rate=round(verified / total, 4) if total else 0.0,
    )


def _claim_row(claim: ExtractedClaim, outcome: RetrievalOutcome, config: GateConfig) -> dict[str, object]:
    best = outcome.best
    status = verification_status(best.similarity if best is not None else None, config)
    evidence = None
    if best is not None:
        evidence = {
            "document_id": best.document_id,
            "matched_text": best.matched_text,
            "similarity": best.similarity,
        }
    return {
        "claim_type": claim.claim_type.value,
        "value": claim.value,
        "context": claim.context,
        "start_offset": claim.start,
        "end_offset": claim.end,
        "risk_level": claim.risk_level.value,
        "status": status.value,
        "evidence": evidence,
        "error": outcome.error,
    }


class ClaimVerifier:
    def __init__(self, db: Database, retriever: Retriever, config: GateConfig) -> None:
        self.db = db
        self.retriever = retriever
        self.config = config

    async def check_sections(self, sections: list[dict[str, object]]) -> dict[str, list[dict[str, object]]]:
        extracted = {
            str(section["id"]): extract_claims(str(section.get("content") or ""), self.config)
            for section in sections
        }
        ordered = [(section_id, claim) for section_id, claims in extracted.items() for claim in claims]
        outcomes = await retrieve_many(
            self.retriever,
            [claim.context or claim.value for _, claim in ordered],
            top_k=self.config.retrieval_top_k,
            timeout_seconds=self.config.retrieval_timeout_seconds,
            max_concurrency=self.config.retrieval_max_concurrency,
        )

        rows: dict[str, list[dict[str, object]]] = {section_id: [] for section_id in extracted}
        for (section_id, claim), outcome in zip(ordered, outcomes):
            rows[section_id].append(_claim_row(claim, outcome, self.config))
        return rows

    def persist(self, rows: dict[str, list[dict[str, object]]]) -> None:
        for section_id, claims in rows.items():
            self.db.replace_claims(section_id, claims)
            statuses = [claim["status"] for claim in claims]
            logger.info(
                "claim_verification_completed",
                extra={
                    "event": "claim_verification_completed",
                    "section_id": section_id,
                    "claims": len(claims),
                    "verified": statuses.count(VerificationStatus.VERIFIED.value),
                    "unverified": statuses.count(VerificationStatus.UNVERIFIED.value),
                    "failed_lookups": sum(1 for claim in claims if claim.get("error")),
                },
            )

    async def verify_section(self, section_id: str) -> list[dict[str, object]]:
        section = self.db.get_section(section_id)
        if section is None:
            raise NotFoundError(f"Section '{section_id}' not found.")
        self.persist(await self.check_sections([section]))
        return self.db.list_claims(section_id=section_id)

    async def verify_proposal(self, proposal_id: str) -> list[dict[str, object]]:
        self.persist(await self.check_sections(self.db.list_sections(proposal_id)))
        return self.db.list_claims(proposal_id=proposal_id)

    def summarize(self, *, section_id: str | None = None, proposal_id: str | None = None) -> ClaimSummary:
        if section_id is None and proposal_id is None:
            raise InvalidOperationError("Either section_id or proposal_id is required.")
        return summarize_claims(self.db.list_claims(section_id=section_id, proposal_id=proposal_id))
