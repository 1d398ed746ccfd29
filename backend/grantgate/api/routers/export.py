from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse

from grantgate.api.contracts import AttestationRequest, FinalizeExportRequest, GateEvaluateRequest
from grantgate.api.services.runtime import GateServices, serialize_audit_record


def build_export_router(*, services: GateServices) -> APIRouter:
    router = APIRouter()

    @router.post("/export/gate")
    async def evaluate_export_gate(payload: GateEvaluateRequest) -> dict[str, object]:
        result = await services.gatekeeper().evaluate(
            payload.proposal_id,
            payload.user_id,
            payload.export_format,
        )
        return result.to_dict()

    @router.post("/export/attestation")
    def submit_attestation(payload: AttestationRequest) -> dict[str, object]:
        return services.gatekeeper().submit_attestation(payload.audit_record_id, payload.attestation_text)

    @router.post("/export/finalize", response_model=None)
    def finalize_export(
        payload: FinalizeExportRequest,
        format: str = Query(default="json", pattern="^(json|markdown)$"),
    ) -> dict[str, object] | PlainTextResponse:
        exported = services.gatekeeper().finalize_export(payload.audit_record_id)
        if format == "markdown":
            return PlainTextResponse(content=str(exported["content"]), media_type="text/markdown")
        return exported

    @router.get("/proposals/{proposal_id}/export/audit")
    def list_export_audit(proposal_id: str) -> dict[str, object]:
        records = services.gatekeeper().list_audit_records(proposal_id)
        return {"proposal_id": proposal_id, "records": [serialize_audit_record(record) for record in records]}

    return router
