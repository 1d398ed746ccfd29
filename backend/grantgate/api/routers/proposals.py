from __future__ import annotations

from fastapi import APIRouter

from grantgate.api.contracts import ProposalCreateRequest, SectionCreateRequest, SectionUpdateRequest
from grantgate.api.services.runtime import (
    GateServices,
    require_proposal,
    require_section,
    serialize_section,
)
from grantgate.placeholders import PlaceholderManager


def build_proposals_router(*, services: GateServices) -> APIRouter:
    router = APIRouter()

    @router.post("/proposals")
    def create_proposal_endpoint(payload: ProposalCreateRequest) -> dict[str, object]:
        return services.database().create_proposal(
            organization_id=payload.organization_id,
            title=payload.title,
            funder_name=payload.funder_name,
        )

    @router.get("/proposals/{proposal_id}")
    def get_proposal_endpoint(proposal_id: str) -> dict[str, object]:
        db = services.database()
        proposal = require_proposal(db, proposal_id)
        return {
            **proposal,
            "sections": [serialize_section(section) for section in db.list_sections(proposal_id)],
        }

    @router.post("/proposals/{proposal_id}/sections")
    def create_section_endpoint(proposal_id: str, payload: SectionCreateRequest) -> dict[str, object]:
        db = services.database()
        require_proposal(db, proposal_id)
        section = db.create_section(
            proposal_id=proposal_id,
            name=payload.name,
            content=payload.content,
            citations=[citation.model_dump() for citation in payload.citations],
            sort_order=payload.order,
        )
        summary = PlaceholderManager(db).scan_and_persist(str(section["id"]))
        return {**serialize_section(section), "placeholders": summary.to_dict()}

    @router.put("/proposals/{proposal_id}/sections/{section_id}")
    def update_section_endpoint(
        proposal_id: str,
        section_id: str,
        payload: SectionUpdateRequest,
    ) -> dict[str, object]:
        db = services.database()
        require_section(db, section_id, proposal_id=proposal_id)
        citations = None
        if payload.citations is not None:
            citations = [citation.model_dump() for citation in payload.citations]
        summary = PlaceholderManager(db).update_content(
            section_id,
            content=payload.content,
            generated_content=payload.generated_content,
            citations=citations,
        )
        section = require_section(db, section_id)
        return {**serialize_section(section), "placeholders": summary.to_dict()}

    return router
