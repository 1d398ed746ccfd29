import pytest

from grantgate.db import Database
from grantgate.errors import InvalidOperationError, NotFoundError
from grantgate.markup import PlaceholderType, placeholder_tokens
from grantgate.placeholders import PlaceholderManager, suggested_sources

BUDGET = "[[PLACEHOLDER:MISSING_DATA:Annual operating budget:ph1]]"
DIRECTOR = "[[PLACEHOLDER:USER_INPUT_REQUIRED:Executive director name:u1]]"
PARTNERS = "[[PLACEHOLDER:VERIFICATION_NEEDED:Confirm partner count:v1]]"


def _section(db: Database, proposal: dict[str, object], content: str) -> dict[str, object]:
    return db.create_section(proposal_id=str(proposal["id"]), name="Statement of Need", content=content)


def _by_id(db: Database, section_id: str) -> dict[str, dict[str, object]]:
    return {str(row["placeholder_id"]): row for row in db.list_placeholders(section_id=section_id)}


def test_scan_persists_placeholders_and_counts_blocking(db: Database, proposal) -> None:
    section = _section(db, proposal, f"Our budget is {BUDGET}. Led by {DIRECTOR}. Partners: {PARTNERS}")
    manager = PlaceholderManager(db)

    summary = manager.scan_and_persist(str(section["id"]))

    assert summary.total == 3
    assert summary.unresolved == 3
    assert summary.blocking == 2
    rows = _by_id(db, str(section["id"]))
    assert rows["ph1"]["placeholder_type"] == "MISSING_DATA"
    assert rows["ph1"]["suggested_sources"] == ["AUDITED_FINANCIALS", "FORM_990"]
    assert rows["u1"]["status"] == "UNRESOLVED"


def test_rescan_is_idempotent(db: Database, proposal) -> None:
    section = _section(db, proposal, f"Budget {BUDGET}")
    manager = PlaceholderManager(db)

    first = manager.scan_and_persist(str(section["id"]))
    second = manager.scan_and_persist(str(section["id"]))

    assert first == second
    assert len(db.list_placeholders(section_id=str(section["id"]))) == 1


def test_resolve_replaces_token_and_marks_resolved(db: Database, proposal) -> None:
    section = _section(db, proposal, f"Our annual budget is {BUDGET} this year.")
    manager = PlaceholderManager(db)
    manager.scan_and_persist(str(section["id"]))

    summary = manager.resolve(str(section["id"]), "ph1", "$120,000")

    content = str(db.get_section(str(section["id"]))["content"])
    assert content == "Our annual budget is $120,000 this year."
    assert not [token for token in placeholder_tokens(content) if token.placeholder_id == "ph1"]
    assert summary.blocking == 0
    row = _by_id(db, str(section["id"]))["ph1"]
    assert row["status"] == "RESOLVED"
    assert row["resolved_value"] == "$120,000"


def test_resolve_unknown_placeholder_leaves_content_untouched(db: Database, proposal) -> None:
    original = f"Our annual budget is {BUDGET}."
    section = _section(db, proposal, original)
    manager = PlaceholderManager(db)

    with pytest.raises(NotFoundError):
        manager.resolve(str(section["id"]), "missing", "value")

    assert db.get_section(str(section["id"]))["content"] == original


def test_dismiss_only_allowed_for_user_input(db: Database, proposal) -> None:
    original = f"Budget {BUDGET}. Partners {PARTNERS}."
    section = _section(db, proposal, original)
    manager = PlaceholderManager(db)

    with pytest.raises(InvalidOperationError):
        manager.dismiss(str(section["id"]), "ph1")
    with pytest.raises(InvalidOperationError):
        manager.dismiss(str(section["id"]), "v1")
    with pytest.raises(NotFoundError):
        manager.dismiss(str(section["id"]), "u9")

    assert db.get_section(str(section["id"]))["content"] == original


def test_dismiss_removes_token_and_marks_dismissed(db: Database, proposal) -> None:
    section = _section(db, proposal, f"Led by {DIRECTOR} since 2015.")
    manager = PlaceholderManager(db)
    manager.scan_and_persist(str(section["id"]))

    summary = manager.dismiss(str(section["id"]), "u1")

    assert db.get_section(str(section["id"]))["content"] == "Led by  since 2015."
    assert _by_id(db, str(section["id"]))["u1"]["status"] == "DISMISSED"
    assert summary.unresolved == 0

    manager.scan_and_persist(str(section["id"]))
    assert _by_id(db, str(section["id"]))["u1"]["status"] == "DISMISSED"


def test_content_edit_that_drops_token_resolves_it(db: Database, proposal) -> None:
    section = _section(db, proposal, f"Budget {BUDGET}")
    manager = PlaceholderManager(db)
    manager.scan_and_persist(str(section["id"]))

    summary = manager.update_content(str(section["id"]), content="Budget is $90,000.")

    assert summary.blocking == 0
    assert _by_id(db, str(section["id"]))["ph1"]["status"] == "RESOLVED"


def test_reintroduced_token_becomes_unresolved_again(db: Database, proposal) -> None:
    section = _section(db, proposal, f"Budget {BUDGET}")
    manager = PlaceholderManager(db)
    manager.resolve(str(section["id"]), "ph1", "$90,000")

    summary = manager.update_content(str(section["id"]), content=f"Budget {BUDGET}")

    assert summary.blocking == 1
    assert _by_id(db, str(section["id"]))["ph1"]["status"] == "UNRESOLVED"


def test_exported_section_rejects_content_changes(db: Database, proposal) -> None:
    section = _section(db, proposal, f"Budget {BUDGET}")
    with db.get_conn() as conn:
        conn.execute("UPDATE sections SET exported_at = '2026-01-01T00:00:00+00:00' WHERE id = ?", (section["id"],))
    manager = PlaceholderManager(db)

    with pytest.raises(InvalidOperationError):
        manager.update_content(str(section["id"]), content="changed")
    with pytest.raises(InvalidOperationError):
        manager.resolve(str(section["id"]), "ph1", "$1")

    assert db.get_section(str(section["id"]))["content"] == f"Budget {BUDGET}"


def test_scan_unknown_section_raises_not_found(db: Database) -> None:
    with pytest.raises(NotFoundError):
        PlaceholderManager(db).scan_and_persist("nope")


def test_list_placeholders_for_proposal_spans_sections(db: Database, proposal) -> None:
    first = _section(db, proposal, f"Budget {BUDGET}")
    second = db.create_section(proposal_id=str(proposal["id"]), name="Leadership", content=f"Led by {DIRECTOR}")
    manager = PlaceholderManager(db)
    manager.scan_proposal(str(proposal["id"]))

    rows = manager.list_placeholders(proposal_id=str(proposal["id"]))

    assert [(row["section_id"], row["placeholder_id"]) for row in rows] == [
        (first["id"], "ph1"),
        (second["id"], "u1"),
    ]


@pytest.mark.parametrize(
    ("placeholder_type", "description", "expected"),
    [
        (PlaceholderType.MISSING_DATA, "Annual operating budget", ["AUDITED_FINANCIALS", "FORM_990"]),
        (
            PlaceholderType.VERIFICATION_NEEDED,
            "Program outcome rate",
            ["IMPACT_REPORT", "EVALUATION_REPORT", "PROGRAM_DESCRIPTION"],
        ),
        (PlaceholderType.MISSING_DATA, "Staff headcount", ["STAFF_BIOS"]),
        (PlaceholderType.MISSING_DATA, "Founding year", ["ANNUAL_REPORT", "ORG_OVERVIEW"]),
        (PlaceholderType.USER_INPUT_REQUIRED, "Signer name", ["PROPOSAL", "PROGRAM_DESCRIPTION"]),
    ],
)
def test_suggested_sources(placeholder_type: PlaceholderType, description: str, expected: list[str]) -> None:
    assert suggested_sources(placeholder_type, description) == expected
