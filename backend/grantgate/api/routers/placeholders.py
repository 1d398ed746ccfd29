from __future__ import annotations

from fastapi import APIRouter

from grantgate.api.contracts import PlaceholderAttestRequest, PlaceholderResolveRequest
from grantgate.api.services.runtime import GateServices, require_proposal
from grantgate.placeholders import PlaceholderManager


def build_placeholders_router(*, services: GateServices) -> APIRouter:
    router = APIRouter()

    @router.get("/proposals/{proposal_id}/placeholders")
    def list_proposal_placeholders(proposal_id: str) -> dict[str, object]:
        db = services.database()
        require_proposal(db, proposal_id)
        return {
            "proposal_id": proposal_id,
            "placeholders": PlaceholderManager(db).list_placeholders(proposal_id=proposal_id),
        }

    @router.post("/sections/{section_id}/placeholders/scan")
    def scan_section_placeholders(section_id: str) -> dict[str, object]:
        return PlaceholderManager(services.database()).scan_and_persist(section_id).to_dict()

    @router.post("/sections/{section_id}/placeholders/{placeholder_id}/resolve")
    def resolve_placeholder(
        section_id: str,
        placeholder_id: str,
        payload: PlaceholderResolveRequest,
    ) -> dict[str, object]:
        return PlaceholderManager(services.database()).resolve(section_id, placeholder_id, payload.value).to_dict()

    @router.post("/sections/{section_id}/placeholders/{placeholder_id}/dismiss")
    def dismiss_placeholder(section_id: str, placeholder_id: str) -> dict[str, object]:
        return PlaceholderManager(services.database()).dismiss(section_id, placeholder_id).to_dict()

    @router.post("/sections/{section_id}/placeholders/{placeholder_id}/attest")
    def attest_placeholder(
        section_id: str,
        placeholder_id: str,
        payload: PlaceholderAttestRequest,
    ) -> dict[str, object]:
        return services.gatekeeper().attest_placeholder(section_id, placeholder_id, payload.user_id)

    return router
