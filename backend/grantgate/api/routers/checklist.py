from __future__ import annotations

from fastapi import APIRouter

from grantgate.api.contracts import ChecklistCreateRequest, ManualMappingRequest
from grantgate.api.services.runtime import GateServices, require_proposal


def build_checklist_router(*, services: GateServices) -> APIRouter:
    router = APIRouter()

    @router.post("/proposals/{proposal_id}/checklist")
    def create_checklist(proposal_id: str, payload: ChecklistCreateRequest) -> dict[str, object]:
        items = services.gatekeeper().checklist.create_items(
            proposal_id,
            [item.model_dump() for item in payload.items],
        )
        return {"proposal_id": proposal_id, "items": items}

    @router.get("/proposals/{proposal_id}/checklist")
    def checklist_status(proposal_id: str) -> dict[str, object]:
        return {"proposal_id": proposal_id, **services.gatekeeper().checklist.status(proposal_id)}

    @router.post("/proposals/{proposal_id}/checklist/auto-map")
    def auto_map_checklist(proposal_id: str) -> dict[str, object]:
        return services.gatekeeper().checklist.auto_map(proposal_id)

    @router.post("/checklist/{item_id}/map")
    def map_checklist_item(item_id: str, payload: ManualMappingRequest) -> dict[str, object]:
        return services.gatekeeper().checklist.manual_map(item_id, payload.section_id)

    @router.get("/proposals/{proposal_id}/checklist/validation")
    def validate_checklist(proposal_id: str) -> dict[str, object]:
        require_proposal(services.database(), proposal_id)
        return services.gatekeeper().checklist.validate(proposal_id).to_dict()

    return router
