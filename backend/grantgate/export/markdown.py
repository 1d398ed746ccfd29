from __future__ import annotations

import re

from grantgate.export.policy import normalize_text
from grantgate.markup import PLACEHOLDER_PATTERN, citation_tokens


class ExportRenderError(ValueError):
    pass


def _render_body(content: str) -> tuple[str, list[int]]:
    """Drop placeholder tokens and turn ``{{cite:N}}`` into ``[N]``."""
    cited: list[int] = []
    pieces: list[str] = []
    cursor = 0
    without_placeholders = PLACEHOLDER_PATTERN.sub("", content)
    for token in citation_tokens(without_placeholders):
        index = token.citation_index or 0
        pieces.append(without_placeholders[cursor : token.start])
        pieces.append(f"[{index}]")
        if index not in cited:
            cited.append(index)
        cursor = token.end
    pieces.append(without_placeholders[cursor:])

    lines = [re.sub(r"[ \t]{2,}", " ", line).rstrip() for line in "".join(pieces).split("\n")]
    return "\n".join(lines).strip(), cited


def _reference_line(index: int, citation: dict[str, object]) -> str:
    name = normalize_text(str(citation.get("document_name") or citation.get("document_id") or "Unknown source"))
    page = citation.get("page_number")
    if isinstance(page, int) and page > 0:
        return f"[{index}] {name}, p. {page}"
    return f"[{index}] {name}"


def render_markdown(proposal: dict[str, object], sections: list[dict[str, object]]) -> str:
    title = normalize_text(str(proposal.get("title") or ""))
    if not title:
        raise ExportRenderError("Proposal title is required for export.")

    lines: list[str] = [f"# {title}", ""]
    funder = normalize_text(str(proposal.get("funder_name") or ""))
    if funder:
        lines.extend([f"Prepared for: {funder}", ""])

    for section in sections:
        lines.extend([f"## {normalize_text(str(section['name']))}", ""])
        body, cited = _render_body(str(section.get("content") or ""))
        if body:
            lines.extend([body, ""])

        citations = section.get("citations") or []
        references = [
            _reference_line(index, citations[index - 1])
            for index in sorted(cited)
            if isinstance(citations, list) and 1 <= index <= len(citations) and isinstance(citations[index - 1], dict)
        ]
        if references:
            lines.extend(["### Sources", ""])
            lines.extend(f"- {reference}" for reference in references)
            lines.append("")

    return "\n".join(lines).rstrip() + "\n"
