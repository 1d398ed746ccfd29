from pydantic import BaseModel, Field


class ProposalCreateRequest(BaseModel):
    organization_id: str = Field(..., min_length=1, max_length=120)
    title: str = Field(..., min_length=1, max_length=240)
    funder_name: str | None = Field(default=None, max_length=240)


class CitationPayload(BaseModel):
    document_id: str = Field(..., min_length=1)
    document_name: str = Field(..., min_length=1, max_length=240)
    page_number: int | None = Field(default=None, ge=1)


class SectionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=160)
    content: str = Field(default="")
    citations: list[CitationPayload] = Field(default_factory=list)
    order: int | None = Field(default=None, ge=0)


class SectionUpdateRequest(BaseModel):
    content: str
    generated_content: str | None = None
    citations: list[CitationPayload] | None = None


class PlaceholderResolveRequest(BaseModel):
    value: str = Field(..., max_length=20000)


class PlaceholderAttestRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=120)


class ChecklistItemPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=240)
    description: str = Field(default="", max_length=4000)
    is_required: bool = True
    word_limit: int | None = Field(default=None, ge=1)
    char_limit: int | None = Field(default=None, ge=1)
    page_limit: int | None = Field(default=None, ge=1)
    point_value: float | None = Field(default=None, ge=0)
    parser_confidence: float | None = Field(default=None, ge=0, le=1)


class ChecklistCreateRequest(BaseModel):
    items: list[ChecklistItemPayload] = Field(..., min_length=1)


class ManualMappingRequest(BaseModel):
    section_id: str = Field(..., min_length=1)


class GateEvaluateRequest(BaseModel):
    proposal_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1, max_length=120)
    export_format: str = Field(default="markdown", pattern="^(markdown|docx|pdf)$")


class AttestationRequest(BaseModel):
    audit_record_id: str = Field(..., min_length=1)
    attestation_text: str = Field(..., min_length=1)


class FinalizeExportRequest(BaseModel):
    audit_record_id: str = Field(..., min_length=1)
