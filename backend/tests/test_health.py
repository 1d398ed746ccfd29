from pathlib import Path
import re

import pytest
from fastapi.testclient import TestClient

from grantgate.api.routers.system import reset_ready_cache
from grantgate.config import GateConfig, settings
from grantgate.main import app
from grantgate.version import APP_VERSION


PANTRY = "We request $500,000 to sustain the pantry."


@pytest.fixture(autouse=True)
def isolated_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_retriever):
    retriever = fake_retriever({"sustain the pantry": 0.95, "Meals": 0.9})
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/test.db")
    monkeypatch.setattr("grantgate.main.get_retriever", lambda: retriever)
    monkeypatch.setattr("grantgate.main.get_gate_config", lambda: GateConfig(claim_context_chars=0))
    reset_ready_cache()
    yield retriever
    reset_ready_cache()


def _proposal(client: TestClient) -> str:
    response = client.post(
        "/proposals",
        json={"organization_id": "org-1", "title": "Eastside Food Access", "funder_name": "Ford Foundation"},
    )
    assert response.status_code == 200
    return response.json()["id"]


def _section(client: TestClient, proposal_id: str, name: str, content: str) -> dict[str, object]:
    response = client.post(f"/proposals/{proposal_id}/sections", json={"name": name, "content": content})
    assert response.status_code == 200
    return response.json()


def test_fastapi_uses_centralized_app_version() -> None:
    assert app.version == APP_VERSION
    assert re.fullmatch(r"\d+\.\d+\.\d+", APP_VERSION)


def test_health_endpoint() -> None:
    with TestClient(app) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

        root = client.get("/")
        assert root.json()["version"] == APP_VERSION


def test_ready_endpoint() -> None:
    with TestClient(app) as client:
        response = client.get("/ready")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ready"
        assert payload["checks"]["db"] == {"ok": True, "backend": "sqlite"}
        assert payload["checks"]["retrieval"]["configured"] is True


def test_section_creation_reports_placeholders() -> None:
    with TestClient(app) as client:
        proposal_id = _proposal(client)
        section = _section(
            client,
            proposal_id,
            "Financials",
            "Revenue grew 40%. [[PLACEHOLDER:MISSING_DATA:Total budget:ph1]]",
        )
        assert section["placeholders"] == {"section_id": section["id"], "total": 1, "unresolved": 1, "blocking": 1}

        listed = client.get(f"/proposals/{proposal_id}/placeholders").json()["placeholders"]
        assert [(row["placeholder_id"], row["placeholder_type"]) for row in listed] == [("ph1", "MISSING_DATA")]

        gate = client.post("/export/gate", json={"proposal_id": proposal_id, "user_id": "user-1"})
        assert gate.status_code == 200
        assert gate.json()["decision"] == "BLOCK"
        assert gate.json()["primary_rule_id"] == "UNRESOLVED_PLACEHOLDER"
        block = gate.json()["blocks"][0]
        assert block["affected_items"] == ["Financials: Total budget"]
        assert block["resolution"]
        assert {warning["severity"] for warning in gate.json()["warnings"]} >= {"HIGH"}

        resolved = client.post(
            f"/sections/{section['id']}/placeholders/ph1/resolve",
            json={"value": "$1.2 million"},
        )
        assert resolved.status_code == 200
        assert resolved.json()["blocking"] == 0

        proposal = client.get(f"/proposals/{proposal_id}").json()
        assert proposal["sections"][0]["content"] == "Revenue grew 40%. $1.2 million"


def test_placeholder_errors_map_to_status_codes() -> None:
    with TestClient(app) as client:
        proposal_id = _proposal(client)
        section = _section(
            client,
            proposal_id,
            "Financials",
            "Budget [[PLACEHOLDER:MISSING_DATA:Total budget:ph1]]",
        )

        dismiss = client.post(f"/sections/{section['id']}/placeholders/ph1/dismiss")
        assert dismiss.status_code == 422
        assert "must be resolved" in dismiss.json()["detail"]

        missing = client.post(f"/sections/{section['id']}/placeholders/nope/resolve", json={"value": "x"})
        assert missing.status_code == 404

        attest = client.post(f"/sections/{section['id']}/placeholders/ph1/attest", json={"user_id": "user-1"})
        assert attest.status_code == 422


def test_attestation_flow_over_http() -> None:
    with TestClient(app) as client:
        proposal_id = _proposal(client)
        section = _section(client, proposal_id, "Budget Narrative", PANTRY)

        gate = client.post("/export/gate", json={"proposal_id": proposal_id, "user_id": "user-1"}).json()
        assert gate["decision"] == "WARN"
        assert gate["state"] == "WARN_NEEDS_ATTESTATION"
        assert gate["attestation_required"] is True
        assert "$500,000 (Budget Narrative)" in gate["attestation_text"]
        assert gate["warnings"][0]["affected_items"] == ["$500,000 (Budget Narrative)"]

        wrong = client.post(
            "/export/attestation",
            json={"audit_record_id": gate["audit_record_id"], "attestation_text": "ok"},
        )
        assert wrong.status_code == 409

        unattested = client.post("/export/finalize", json={"audit_record_id": gate["audit_record_id"]})
        assert unattested.status_code == 409

        attested = client.post(
            "/export/attestation",
            json={"audit_record_id": gate["audit_record_id"], "attestation_text": gate["attestation_text"]},
        )
        assert attested.status_code == 200
        assert attested.json()["state"] == "WARN_ACKNOWLEDGED"

        again = client.post("/export/gate", json={"proposal_id": proposal_id, "user_id": "user-1"}).json()
        assert again["decision"] == "ALLOW"

        exported = client.post(
            "/export/finalize?format=markdown",
            json={"audit_record_id": again["audit_record_id"]},
        )
        assert exported.status_code == 200
        assert exported.headers["content-type"].startswith("text/markdown")
        assert exported.text.startswith("# Eastside Food Access\n")

        audit = client.get(f"/proposals/{proposal_id}/export/audit").json()["records"]
        assert [record["state"] for record in audit] == ["ALLOW", "WARN_ACKNOWLEDGED"]
        assert audit[0]["finalized_at"]

        locked = client.put(
            f"/proposals/{proposal_id}/sections/{section['id']}",
            json={"content": "Edited after export."},
        )
        assert locked.status_code == 422
        assert "exported" in locked.json()["detail"]


def test_checklist_endpoints() -> None:
    with TestClient(app) as client:
        proposal_id = _proposal(client)
        section = _section(client, proposal_id, "Executive Summary", "Meals are delivered daily.")

        created = client.post(
            f"/proposals/{proposal_id}/checklist",
            json={"items": [{"name": "Summary", "word_limit": 3}, {"name": "Logic Model"}]},
        )
        assert created.status_code == 200
        items = created.json()["items"]

        mapped = client.post(f"/proposals/{proposal_id}/checklist/auto-map").json()
        assert mapped["created"] == 1

        validation = client.get(f"/proposals/{proposal_id}/checklist/validation").json()
        assert validation["valid"] is False
        assert validation["missing_required"] == ["Logic Model"]

        manual = client.post(f"/checklist/{items[1]['id']}/map", json={"section_id": section["id"]})
        assert manual.status_code == 200
        assert manual.json()["mapping_type"] == "MANUAL"

        status = client.get(f"/proposals/{proposal_id}/checklist").json()
        assert status["summary"]["complete"] == 2
        assert status["items"][0]["limit_violations"][0]["kind"] == "WORD_LIMIT"

        gate = client.post("/export/gate", json={"proposal_id": proposal_id, "user_id": "user-1"}).json()
        assert gate["decision"] == "ALLOW"


def test_analysis_endpoints(isolated_app) -> None:
    with TestClient(app) as client:
        proposal_id = _proposal(client)
        section = _section(client, proposal_id, "Budget Narrative", f"{PANTRY}\n\nVolunteers staff the desk.")

        verified = client.post(f"/sections/{section['id']}/claims/verify").json()
        assert [claim["value"] for claim in verified["claims"]] == ["$500,000"]
        assert verified["summary"]["high_risk_unverified"] == 1

        summary = client.get(f"/proposals/{proposal_id}/claims/summary").json()
        assert summary["total"] == 1

        grounding = client.post(f"/sections/{section['id']}/grounding").json()
        assert [paragraph["status"] for paragraph in grounding["paragraphs"]] == ["GROUNDED", "FAILED"]
        assert grounding["coverage_score"] == 50
        assert client.get(f"/sections/{section['id']}/grounding").json()["coverage_score"] == 50
        assert isolated_app.calls


def test_proposal_wide_analysis_endpoints() -> None:
    with TestClient(app) as client:
        proposal_id = _proposal(client)
        _section(client, proposal_id, "Budget Narrative", PANTRY)
        _section(client, proposal_id, "Program Design", "Meals are delivered daily.\r\n\r\nVolunteers staff the desk.")

        verified = client.post(f"/proposals/{proposal_id}/claims/verify")
        assert verified.status_code == 200
        assert [claim["value"] for claim in verified.json()["claims"]] == ["$500,000"]
        assert verified.json()["summary"]["total"] == 1

        grounding = client.post(f"/proposals/{proposal_id}/grounding").json()
        by_name = {section["section_name"]: section for section in grounding["sections"]}
        assert by_name["Budget Narrative"]["coverage_score"] == 100
        assert [paragraph["status"] for paragraph in by_name["Program Design"]["paragraphs"]] == [
            "GROUNDED",
            "FAILED",
        ]

        assert client.post("/proposals/missing/claims/verify").status_code == 404
        assert client.post("/proposals/missing/grounding").status_code == 404


def test_unknown_resources_return_404() -> None:
    with TestClient(app) as client:
        assert client.get("/proposals/missing").status_code == 404
        assert client.post("/export/gate", json={"proposal_id": "missing", "user_id": "u"}).status_code == 404
        assert client.post("/export/attestation", json={"audit_record_id": "x", "attestation_text": "y"}).status_code == 404
        assert client.get("/sections/missing/grounding").status_code == 404
        invalid = client.post("/export/gate", json={"proposal_id": "p", "user_id": "u", "export_format": "rtf"})
        assert invalid.status_code == 422
