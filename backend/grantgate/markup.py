"""Scanner for the two inline markup grammars generated content may carry.

Placeholders: ``[[PLACEHOLDER:TYPE:description:id]]``
Citations:    ``{{cite:N}}``

Anything that does not match a grammar exactly is ordinary text. The
functions here never raise on content and never touch storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re


class PlaceholderType(str, Enum):
    MISSING_DATA = "MISSING_DATA"
    VERIFICATION_NEEDED = "VERIFICATION_NEEDED"
    USER_INPUT_REQUIRED = "USER_INPUT_REQUIRED"


class TokenKind(str, Enum):
    PLACEHOLDER = "PLACEHOLDER"
    CITATION = "CITATION"


_TYPE_ALTERNATION = "|".join(member.value for member in PlaceholderType)
PLACEHOLDER_PATTERN = re.compile(
    rf"\[\[PLACEHOLDER:(?P<type>{_TYPE_ALTERNATION}):(?P<description>[^:\[\]]+):(?P<id>[A-Za-z0-9_]+)\]\]"
)
CITATION_PATTERN = re.compile(r"\{\{cite:(?P<index>[1-9][0-9]*)\}\}")
_MARKUP_PATTERN = re.compile(f"{PLACEHOLDER_PATTERN.pattern}|{CITATION_PATTERN.pattern}")
_PLACEHOLDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True)
class MarkupToken:
    kind: TokenKind
    start: int
    end: int
    text: str
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def span(self) -> tuple[int, int]:
        return self.start, self.end

    @property
    def placeholder_type(self) -> PlaceholderType | None:
        if self.kind is not TokenKind.PLACEHOLDER:
            return None
        return PlaceholderType(self.fields["type"])

    @property
    def placeholder_id(self) -> str | None:
        return self.fields.get("id")

    @property
    def citation_index(self) -> int | None:
        if self.kind is not TokenKind.CITATION:
            return None
        return int(self.fields["index"])


def parse(text: str) -> list[MarkupToken]:
    tokens: list[MarkupToken] = []
    for match in _MARKUP_PATTERN.finditer(text or ""):
        if match.group("type") is not None:
            tokens.append(
                MarkupToken(
                    kind=TokenKind.PLACEHOLDER,
                    start=match.start(),
                    end=match.end(),
                    text=match.group(0),
                    fields={
                        "type": match.group("type"),
                        "description": match.group("description").strip(),
                        "id": match.group("id"),
                    },
                )
            )
        else:
            tokens.append(
                MarkupToken(
                    kind=TokenKind.CITATION,
                    start=match.start(),
                    end=match.end(),
                    text=match.group(0),
                    fields={"index": match.group("index")},
                )
            )
    return tokens


def placeholder_tokens(text: str) -> list[MarkupToken]:
    return [token for token in parse(text) if token.kind is TokenKind.PLACEHOLDER]


def citation_tokens(text: str) -> list[MarkupToken]:
    return [token for token in parse(text) if token.kind is TokenKind.CITATION]


def has_placeholder(text: str) -> bool:
    return PLACEHOLDER_PATTERN.search(text or "") is not None


def strip_markup(text: str) -> str:
    """Plain text with every token removed and leftover spacing tidied per line."""
    stripped = _MARKUP_PATTERN.sub("", text or "")
    lines = []
    for line in stripped.split("\n"):
        line = re.sub(r"[ \t]{2,}", " ", line)
        line = re.sub(r"\s+([.,;:!?])", r"\1", line)
        lines.append(line.strip())
    return "\n".join(lines).strip()


def format_placeholder(placeholder_type: PlaceholderType, description: str, placeholder_id: str) -> str:
    cleaned = re.sub(r"[:\[\]]", " ", description).strip()
    if not cleaned:
        raise ValueError("Placeholder description must contain text other than ':', '[' or ']'.")
    if not _PLACEHOLDER_ID_PATTERN.fullmatch(placeholder_id):
        raise ValueError("Placeholder id must match [A-Za-z0-9_]+.")
    return f"[[PLACEHOLDER:{placeholder_type.value}:{cleaned}:{placeholder_id}]]"


def replace_placeholder(text: str, placeholder_id: str, value: str) -> tuple[str, int]:
    """Replace every token carrying ``placeholder_id`` with ``value`` verbatim.

    Returns the new text and the number of tokens replaced. Offsets are taken
    from one left-to-right parse, so the value lands exactly where each token was.
    """
    matches = [token for token in placeholder_tokens(text) if token.placeholder_id == placeholder_id]
    if not matches:
        return text, 0

    pieces: list[str] = []
    cursor = 0
    for token in matches:
        pieces.append(text[cursor : token.start])
        pieces.append(value)
        cursor = token.end
    pieces.append(text[cursor:])
    return "".join(pieces), len(matches)
