from __future__ import annotations

from typing import Callable

from grantgate.config import GateConfig
from grantgate.db import Database
from grantgate.errors import NotFoundError
from grantgate.gate import ExportGatekeeper
from grantgate.retrieval import Retriever

DatabaseGetter = Callable[[], Database]
RetrieverGetter = Callable[[], Retriever]
GateConfigGetter = Callable[[], GateConfig]


def require_proposal(db: Database, proposal_id: str) -> dict[str, object]:
    proposal = db.get_proposal(proposal_id)
    if proposal is None:
        raise NotFoundError(f"Proposal '{proposal_id}' not found.")
    return proposal


def require_section(db: Database, section_id: str, *, proposal_id: str | None = None) -> dict[str, object]:
    section = db.get_section(section_id)
    if section is None or (proposal_id is not None and section["proposal_id"] != proposal_id):
        raise NotFoundError(f"Section '{section_id}' not found.")
    return section


def serialize_section(section: dict[str, object]) -> dict[str, object]:
    return {
        "id": section["id"],
        "proposal_id": section["proposal_id"],
        "name": section["name"],
        "order": section["sort_order"],
        "content": section["content"],
        "citations": section.get("citations") or [],
        "exported_at": section.get("exported_at"),
    }


def serialize_audit_record(record: dict[str, object]) -> dict[str, object]:
    return {
        "id": record["id"],
        "proposal_id": record["proposal_id"],
        "user_id": record["user_id"],
        "export_format": record["export_format"],
        "decision": record["decision"],
        "state": record["state"],
        "primary_rule_id": record["primary_rule_id"],
        "blocks_json": record["blocks_json"],
        "warnings_json": record["warnings_json"],
        "snapshot": record["snapshot"],
        "attestation_required": record["attestation_required"],
        "timestamp": record["timestamp"],
        "attestation_text": record["attestation_text"],
        "attested_at": record["attested_at"],
        "finalized_at": record["finalized_at"],
    }


class GateServices:
    """Builds engines per request from the injected getters."""

    def __init__(
        self,
        *,
        get_database: DatabaseGetter,
        get_retriever: RetrieverGetter,
        get_gate_config: GateConfigGetter,
    ) -> None:
        self._get_database = get_database
        self._get_retriever = get_retriever
        self._get_gate_config = get_gate_config

    def database(self) -> Database:
        return self._get_database()

    def gatekeeper(self) -> ExportGatekeeper:
        return ExportGatekeeper(self._get_database(), self._get_retriever(), self._get_gate_config())
