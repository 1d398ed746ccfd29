import pytest

from grantgate.export import ExportRenderError, render_markdown
from grantgate.export.policy import limit_violations, word_count


def test_render_markdown_with_citations_and_sources() -> None:
    proposal = {"title": "Eastside Food Access", "funder_name": "Ford Foundation"}
    sections = [
        {
            "name": "Statement of Need",
            "content": "We served 1,200 families {{cite:2}} last year. [[PLACEHOLDER:USER_INPUT_REQUIRED:Quote:q1]]",
            "citations": [
                {"document_id": "doc-1", "document_name": "Board Minutes"},
                {"document_id": "doc-2", "document_name": "Annual Report 2023", "page_number": 4},
            ],
        },
        {"name": "Budget Narrative", "content": "", "citations": []},
    ]

    rendered = render_markdown(proposal, sections)

    assert rendered == (
        "# Eastside Food Access\n"
        "\n"
        "Prepared for: Ford Foundation\n"
        "\n"
        "## Statement of Need\n"
        "\n"
        "We served 1,200 families [2] last year.\n"
        "\n"
        "### Sources\n"
        "\n"
        "- [2] Annual Report 2023, p. 4\n"
        "\n"
        "## Budget Narrative\n"
    )


def test_citation_without_source_is_rendered_without_reference() -> None:
    rendered = render_markdown({"title": "T"}, [{"name": "A", "content": "Fact {{cite:3}}.", "citations": []}])

    assert "Fact [3]." in rendered
    assert "### Sources" not in rendered
    assert "Prepared for" not in rendered


def test_render_requires_title() -> None:
    with pytest.raises(ExportRenderError):
        render_markdown({"title": "  "}, [])


def test_limit_violations() -> None:
    text = "one two three four five six"

    assert word_count(text) == 6
    assert limit_violations(text, word_limit=6, char_limit=None) == []
    assert limit_violations(text, word_limit=5, char_limit=10) == [
        {"kind": "WORD_LIMIT", "limit": 5, "actual": 6},
        {"kind": "CHAR_LIMIT", "limit": 10, "actual": 27},
    ]
