"""
FastAPI sandbox of the Kora case-management API.

Serves the same routes KoraClient calls, backed by the in-memory
MockKoraClient, so the onboarding flow can run against a real HTTP
endpoint during local development:

- Applications: create, draft save, resume, resolve-onboarding, submit
- Auth: login
- Profiles: applicant, company, questionnaire
- Documents: Emirates ID, identity, address, business
- Evidence: evidence pack, beneficial owners, authorized persons
- Flow: the step graph the UI renders
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, UploadFile, Form, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config.settings import settings
from config.flow_schema import export_flow_json
from backend.errors import KoraAPIError
from backend.answer_store import StagedFile
from backend.mock_kora import MockKoraClient

logger = logging.getLogger(__name__)


# ============================================================================
# APP SETUP
# ============================================================================

app = FastAPI(
    title="Kora Sandbox API",
    description="In-memory case-management backend for the Sitara onboarding flow",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

kora = MockKoraClient()


def reset_sandbox() -> MockKoraClient:
    """Drop all sandbox state (used between tests)."""
    global kora
    kora = MockKoraClient()
    return kora


def _http_error(e: KoraAPIError) -> HTTPException:
    status = e.status_code or (503 if e.code == "NETWORK_ERROR" else 500)
    return HTTPException(status_code=status, detail=e.message)


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CreateApplicationRequest(BaseModel):
    tenant_code: str
    account_type: str = "individual"
    email: str
    phone_e164: Optional[str] = None
    password: Optional[str] = None


class DraftRequest(BaseModel):
    current_step_id: str
    draft_answers: Dict[str, Any] = Field(default_factory=dict)


class LoginRequest(BaseModel):
    email: str
    password: str


class ResolveOnboardingRequest(BaseModel):
    takes_ownership_of_metals: bool
    holds_client_assets_or_funds: bool
    acts_as_intermediary: bool
    settlement_facilitation: Optional[bool] = None


class QuestionnaireRequest(BaseModel):
    tenant_id: str
    application_id: str
    questionnaire_code: str
    questionnaire_version: str = "v1"
    responses: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    api_version: str
    demo_mode: bool


# ============================================================================
# HEALTH + FLOW
# ============================================================================

@app.get("/", response_model=HealthResponse)
@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", api_version="1.0.0", demo_mode=settings.DEMO_MODE)


@app.get("/flow")
async def get_flow():
    """The onboarding step graph as the UI consumes it."""
    return export_flow_json()


# ============================================================================
# APPLICATIONS
# ============================================================================

@app.post("/applications", status_code=201)
async def create_application(request: CreateApplicationRequest):
    try:
        return await kora.create_application(request.model_dump())
    except KoraAPIError as e:
        raise _http_error(e)


@app.patch("/applications/{application_id}/draft")
async def save_draft(application_id: str, request: DraftRequest):
    try:
        return await kora.save_draft(application_id, request.current_step_id, request.draft_answers)
    except KoraAPIError as e:
        raise _http_error(e)


@app.get("/applications/{application_id}/resume")
async def load_resume(application_id: str):
    try:
        return await kora.load_resume(application_id)
    except KoraAPIError as e:
        raise _http_error(e)


@app.post("/applications/{application_id}/resolve-onboarding")
async def resolve_onboarding(application_id: str, request: ResolveOnboardingRequest):
    try:
        return await kora.resolve_onboarding(application_id, request.model_dump())
    except KoraAPIError as e:
        raise _http_error(e)


@app.post("/applications/{application_id}/submit")
async def submit_application(application_id: str):
    try:
        return await kora.submit_application(application_id)
    except KoraAPIError as e:
        raise _http_error(e)


# ============================================================================
# AUTH + PROFILES
# ============================================================================

@app.post("/auth/login")
async def login(request: LoginRequest):
    try:
        return await kora.login(request.email, request.password)
    except KoraAPIError as e:
        raise _http_error(e)


@app.post("/profiles", status_code=201)
async def create_applicant_profile(payload: Dict[str, Any]):
    try:
        return await kora.create_applicant_profile(payload)
    except KoraAPIError as e:
        raise _http_error(e)


@app.patch("/profiles/{profile_id}")
async def patch_applicant_profile(profile_id: int, patch: Dict[str, Any]):
    try:
        return await kora.patch_applicant_profile(profile_id, patch)
    except KoraAPIError as e:
        raise _http_error(e)


@app.post("/profiles/company")
async def upsert_company_profile(payload: Dict[str, Any]):
    try:
        return await kora.upsert_company_profile(payload)
    except KoraAPIError as e:
        raise _http_error(e)


@app.put("/questionnaires")
async def upsert_questionnaire(request: QuestionnaireRequest):
    try:
        return await kora.upsert_questionnaire(request.model_dump())
    except KoraAPIError as e:
        raise _http_error(e)


# ============================================================================
# DOCUMENTS
# ============================================================================

async def _staged(file: UploadFile) -> StagedFile:
    contents = await file.read()
    return StagedFile(
        name=file.filename or "upload",
        content=contents,
        mime_type=file.content_type or "application/octet-stream",
    )


@app.post("/documents/emirates-id")
async def upload_emirates_id(
    front: UploadFile = File(...),
    back: UploadFile = File(...),
    tenant_id: str = Form(...),
    application_id: str = Form(...),
    applicant_id: Optional[str] = Form(None)
):
    try:
        return await kora.upload_emirates_id(
            tenant_id, application_id, await _staged(front), await _staged(back), applicant_id=applicant_id
        )
    except KoraAPIError as e:
        raise _http_error(e)


async def _upload(
    file: UploadFile,
    tenant_id: str,
    application_id: str,
    document_type: str,
    applicant_id: Optional[str],
):
    try:
        return await kora.upload_document(
            tenant_id, application_id, document_type, await _staged(file), applicant_id=applicant_id
        )
    except KoraAPIError as e:
        raise _http_error(e)


@app.post("/documents/id")
async def upload_identity_document(
    file: UploadFile = File(...),
    tenant_id: str = Form(...),
    application_id: str = Form(...),
    document_type: str = Form("passport"),
    applicant_id: Optional[str] = Form(None)
):
    return await _upload(file, tenant_id, application_id, document_type, applicant_id)


@app.post("/documents/address")
async def upload_address_document(
    file: UploadFile = File(...),
    tenant_id: str = Form(...),
    application_id: str = Form(...),
    document_type: str = Form("proof_of_address"),
    applicant_id: Optional[str] = Form(None)
):
    return await _upload(file, tenant_id, application_id, document_type, applicant_id)


@app.post("/documents/business")
async def upload_business_document(
    file: UploadFile = File(...),
    tenant_id: str = Form(...),
    application_id: str = Form(...),
    document_type: str = Form(...),
    applicant_id: Optional[str] = Form(None)
):
    return await _upload(file, tenant_id, application_id, document_type, applicant_id)


# ============================================================================
# EVIDENCE
# ============================================================================

@app.get("/evidence/applications/{application_id}")
async def get_evidence_pack(application_id: str):
    try:
        return await kora.fetch_evidence_pack(application_id)
    except KoraAPIError as e:
        raise _http_error(e)


@app.get("/beneficial-owners")
async def list_beneficial_owners(application_id: str) -> List[Dict[str, Any]]:
    try:
        return await kora.list_beneficial_owners(application_id)
    except KoraAPIError as e:
        raise _http_error(e)


@app.get("/authorized-persons")
async def list_authorized_persons(application_id: str) -> List[Dict[str, Any]]:
    try:
        return await kora.list_authorized_persons(application_id)
    except KoraAPIError as e:
        raise _http_error(e)


# ============================================================================
# RUN SERVER
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
