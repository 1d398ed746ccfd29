import pytest

from grantgate.checklist import ChecklistMapper, expand_names, name_similarity, normalize_words, similarity
from grantgate.config import GateConfig
from grantgate.db import Database
from grantgate.errors import InvalidOperationError, NotFoundError


def test_normalize_words_drops_short_tokens_and_punctuation() -> None:
    assert normalize_words("The Plan: A 3-Year Work-Plan!") == {"the", "plan", "3year", "workplan"}
    assert normalize_words("") == set()


def test_similarity_is_symmetric_jaccard() -> None:
    assert similarity("Evaluation Plan", "Evaluation Plan") == 1.0
    assert similarity("Evaluation Plan", "Plan for Evaluation") == similarity("Plan for Evaluation", "Evaluation Plan")
    assert similarity("Community Partnerships", "Community Garden Plan") == 0.25
    assert similarity("an", "Budget") == 0.0


def test_alias_expansion_pulls_in_the_whole_group() -> None:
    names = expand_names("Summary")

    assert "executive summary" in names
    assert "abstract" in names
    assert name_similarity("Summary", "Executive Summary") == 1.0


def _items(db: Database, proposal, *items: dict[str, object]) -> list[dict[str, object]]:
    return ChecklistMapper(db, GateConfig()).create_items(str(proposal["id"]), list(items))


def test_summary_item_maps_to_executive_summary(db: Database, proposal, config) -> None:
    section = db.create_section(proposal_id=str(proposal["id"]), name="Executive Summary", content="We feed families.")
    db.create_section(proposal_id=str(proposal["id"]), name="Budget Narrative", content="Costs.")
    item = _items(db, proposal, {"name": "Summary"})[0]

    result = ChecklistMapper(db, config).auto_map(str(proposal["id"]))

    assert result["matched"] == 1
    assert result["created"] == 1
    mapping = result["mappings"][0]
    assert (mapping["checklist_item_id"], mapping["section_id"]) == (item["id"], section["id"])
    assert mapping["mapping_type"] == "AUTO"
    assert mapping["confidence"] >= 0.3


@pytest.mark.parametrize(("threshold", "mapped"), [(0.3, False), (0.25, False), (0.2, True)])
def test_mapping_requires_similarity_strictly_above_threshold(db: Database, proposal, threshold, mapped) -> None:
    db.create_section(proposal_id=str(proposal["id"]), name="Community Garden Plan", content="Beds and soil.")
    _items(db, proposal, {"name": "Community Partnerships"})

    result = ChecklistMapper(db, GateConfig(min_mapping_confidence=threshold)).auto_map(str(proposal["id"]))

    assert bool(result["mappings"]) is mapped


def test_auto_map_is_idempotent(db: Database, proposal, config) -> None:
    db.create_section(proposal_id=str(proposal["id"]), name="Evaluation Plan", content="Surveys.")
    _items(db, proposal, {"name": "Evaluation"})
    mapper = ChecklistMapper(db, config)

    first = mapper.auto_map(str(proposal["id"]))
    second = mapper.auto_map(str(proposal["id"]))

    assert first["created"] == 1
    assert second["created"] == 0
    assert second["matched"] == 1
    assert len(db.list_section_mappings(str(proposal["id"]))) == 1


def test_auto_map_moves_stale_mapping_to_better_section(db: Database, proposal, config) -> None:
    first = db.create_section(proposal_id=str(proposal["id"]), name="Logic Model Draft", content="Inputs and outputs.")
    _items(db, proposal, {"name": "Logic Model Narrative"})
    mapper = ChecklistMapper(db, config)
    mapper.auto_map(str(proposal["id"]))
    assert db.list_section_mappings(str(proposal["id"]))[0]["section_id"] == first["id"]

    better = db.create_section(proposal_id=str(proposal["id"]), name="Logic Model Narrative", content="Inputs.")
    mapper.auto_map(str(proposal["id"]))

    mappings = db.list_section_mappings(str(proposal["id"]))
    assert [mapping["section_id"] for mapping in mappings] == [better["id"]]


def test_manual_mapping_wins_over_auto(db: Database, proposal, config) -> None:
    summary = db.create_section(proposal_id=str(proposal["id"]), name="Executive Summary", content="Overview.")
    other = db.create_section(proposal_id=str(proposal["id"]), name="Appendix", content="Letters.")
    item = _items(db, proposal, {"name": "Summary"})[0]
    mapper = ChecklistMapper(db, config)
    mapper.auto_map(str(proposal["id"]))

    manual = mapper.manual_map(str(item["id"]), str(other["id"]))
    mapper.auto_map(str(proposal["id"]))

    assert manual["mapping_type"] == "MANUAL"
    assert manual["confidence"] == 1.0
    mappings = db.list_section_mappings(str(proposal["id"]))
    assert [(mapping["section_id"], mapping["mapping_type"]) for mapping in mappings] == [(other["id"], "MANUAL")]
    assert summary["id"] not in {mapping["section_id"] for mapping in mappings}


def test_manual_map_rejects_foreign_or_unknown_sections(db: Database, proposal, config) -> None:
    item = _items(db, proposal, {"name": "Summary"})[0]
    foreign = db.create_proposal(organization_id="org-2", title="Other", funder_name=None)
    foreign_section = db.create_section(proposal_id=str(foreign["id"]), name="Summary", content="x")
    mapper = ChecklistMapper(db, config)

    with pytest.raises(InvalidOperationError):
        mapper.manual_map(str(item["id"]), str(foreign_section["id"]))
    with pytest.raises(NotFoundError):
        mapper.manual_map(str(item["id"]), "missing")
    with pytest.raises(NotFoundError):
        mapper.manual_map("missing", str(foreign_section["id"]))


def test_validate_reports_missing_unmapped_and_low_confidence(db: Database, proposal, config) -> None:
    proposal_id = str(proposal["id"])
    db.create_section(proposal_id=proposal_id, name="Executive Summary", content="We feed families.")
    empty = db.create_section(proposal_id=proposal_id, name="Budget Narrative", content="   ")
    db.create_section(proposal_id=proposal_id, name="Partner Letters", content="Signed letters.")
    _items(
        db,
        proposal,
        {"name": "Summary"},
        {"name": "Budget Justification"},
        {"name": "Letters of Support", "is_required": False},
        {"name": "Logic Model"},
    )
    mapper = ChecklistMapper(db, config)
    mapper.auto_map(proposal_id)

    validation = mapper.validate(proposal_id)

    assert validation.valid is False
    assert validation.missing_required == ["Budget Justification", "Logic Model"]
    assert validation.unmapped_items == ["Logic Model"]
    assert validation.low_confidence_mappings == [
        {"item_name": "Letters of Support", "section_name": "Partner Letters", "confidence": 0.3333}
    ]
    assert db.list_section_mappings(proposal_id)[1]["section_id"] == empty["id"]


def test_validate_passes_when_required_items_have_content(db: Database, proposal, config) -> None:
    db.create_section(proposal_id=str(proposal["id"]), name="Executive Summary", content="We feed families.")
    _items(db, proposal, {"name": "Summary"}, {"name": "Logic Model", "is_required": False})
    mapper = ChecklistMapper(db, config)
    mapper.auto_map(str(proposal["id"]))

    validation = mapper.validate(str(proposal["id"]))

    assert validation.valid is True
    assert validation.unmapped_items == ["Logic Model"]
    assert validation.missing_required == []


def test_status_reports_limits_and_summary(db: Database, proposal, config) -> None:
    proposal_id = str(proposal["id"])
    db.create_section(proposal_id=proposal_id, name="Executive Summary", content="one two three four five six")
    db.create_section(proposal_id=proposal_id, name="Evaluation Plan", content="")
    _items(
        db,
        proposal,
        {"name": "Summary", "word_limit": 5},
        {"name": "Evaluation"},
        {"name": "Logic Model"},
    )
    mapper = ChecklistMapper(db, config)
    mapper.auto_map(proposal_id)

    status = mapper.status(proposal_id)

    by_name = {item["name"]: item for item in status["items"]}
    assert by_name["Summary"]["status"] == "COMPLETE"
    assert by_name["Summary"]["limit_violations"][0]["kind"] == "WORD_LIMIT"
    assert by_name["Summary"]["limit_violations"][0]["actual"] == 6
    assert by_name["Evaluation"]["status"] == "INCOMPLETE"
    assert by_name["Logic Model"]["status"] == "UNMAPPED"
    assert status["summary"] == {"total": 3, "complete": 1, "incomplete": 2, "needs_review": 0}


def test_status_for_unknown_proposal_raises(db: Database, config) -> None:
    with pytest.raises(NotFoundError):
        ChecklistMapper(db, config).status("missing")
