from __future__ import annotations

from fastapi import APIRouter

from grantgate.api.services.runtime import GateServices, require_proposal


def build_analysis_router(*, services: GateServices) -> APIRouter:
    """Claim verification and paragraph grounding endpoints."""
    router = APIRouter()

    @router.post("/sections/{section_id}/claims/verify")
    async def verify_section_claims(section_id: str) -> dict[str, object]:
        verifier = services.gatekeeper().claims
        claims = await verifier.verify_section(section_id)
        return {
            "section_id": section_id,
            "claims": claims,
            "summary": verifier.summarize(section_id=section_id).to_dict(),
        }

    @router.post("/proposals/{proposal_id}/claims/verify")
    async def verify_proposal_claims(proposal_id: str) -> dict[str, object]:
        require_proposal(services.database(), proposal_id)
        verifier = services.gatekeeper().claims
        claims = await verifier.verify_proposal(proposal_id)
        return {
            "proposal_id": proposal_id,
            "claims": claims,
            "summary": verifier.summarize(proposal_id=proposal_id).to_dict(),
        }

    @router.get("/proposals/{proposal_id}/claims/summary")
    def proposal_claim_summary(proposal_id: str) -> dict[str, object]:
        require_proposal(services.database(), proposal_id)
        summary = services.gatekeeper().claims.summarize(proposal_id=proposal_id)
        return {"proposal_id": proposal_id, **summary.to_dict()}

    @router.post("/sections/{section_id}/grounding")
    async def classify_section_grounding(section_id: str) -> dict[str, object]:
        result = await services.gatekeeper().grounding.classify_section(section_id)
        return result.to_dict()

    @router.post("/proposals/{proposal_id}/grounding")
    async def classify_proposal_grounding(proposal_id: str) -> dict[str, object]:
        require_proposal(services.database(), proposal_id)
        results = await services.gatekeeper().grounding.classify_proposal(proposal_id)
        return {"proposal_id": proposal_id, "sections": [result.to_dict() for result in results]}

    @router.get("/sections/{section_id}/grounding")
    def get_section_grounding(section_id: str) -> dict[str, object]:
        return services.gatekeeper().grounding.get(section_id).to_dict()

    return router
