"""
Mock Kora Client - in-memory case-management service.

Mirrors the response shapes of the real Kora API so the flow can run end to
end without a backend (demo mode) and so tests can observe exactly which
remote calls were made. Also backs the FastAPI sandbox in backend/api.py.
"""

import uuid
import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from backend.errors import KoraAPIError
from backend.answer_store import StagedFile

logger = logging.getLogger(__name__)


# ============================================================================
# RECORDS
# ============================================================================

class ApplicantRecord(BaseModel):
    id: str
    email: str
    password_hash: str
    phone_e164: Optional[str] = None


class ApplicationRecord(BaseModel):
    id: str
    tenant_id: str
    applicant_id: str
    account_type: str
    status: str = "draft"
    external_reference: str
    current_step_id: Optional[str] = None
    draft_answers: Dict[str, Any] = Field(default_factory=dict)
    onboarding_resolution: Optional[Dict[str, Any]] = None
    created_at: str
    updated_at: str
    submitted_at: Optional[str] = None


class DocumentRecord(BaseModel):
    id: str
    application_id: str
    document_type: str
    original_name: str
    mime_type: str
    size_bytes: int
    sha256: str
    uploaded_at: str


# Document set -> document types it requires
DOCUMENT_SET_TYPES: Dict[str, List[str]] = {
    "identity": ["passport"],
    "proof_of_address": ["proof_of_address"],
    "legal_existence": ["trade_license"],
    "registered_address": ["registered_address_proof"],
    "tax_registration": ["tax_registration_certificate"],
    "custody": ["bank_reference_letter"],
    "economic_activity": ["audited_financials"],
}

INDIVIDUAL_DOCUMENT_SETS = ["identity", "proof_of_address"]
BUSINESS_BASE_DOCUMENT_SETS = ["identity", "legal_existence"]

TENANT_CODES = {"sitara-core": "tenant-sitara-core"}

ERROR_KINDS = {
    "network": ("NETWORK_ERROR", "Network connection failed", None),
    "rate_limit": ("RATE_LIMIT", "Too many requests", 429),
    "auth": ("UNAUTHORIZED", "Invalid credentials", 401),
    "server": ("SERVER_ERROR", "Internal server error", 500),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


# ============================================================================
# MOCK CLIENT
# ============================================================================

class MockKoraClient:
    """
    In-memory stand-in for KoraClient (same async methods, same shapes).

    Every public call is appended to `calls`; failures can be queued per
    method with inject_failure().
    """

    def __init__(self, simulate_delay: bool = False):
        self.simulate_delay = simulate_delay
        self.calls: List[str] = []
        self.applicants: Dict[str, ApplicantRecord] = {}
        self.applications: Dict[str, ApplicationRecord] = {}
        self.profiles: Dict[int, Dict[str, Any]] = {}
        self.company_profiles: Dict[str, Dict[str, Any]] = {}
        self.questionnaires: Dict[str, Dict[str, Any]] = {}
        self.documents: Dict[str, DocumentRecord] = {}
        self.beneficial_owners: Dict[str, List[Dict[str, Any]]] = {}
        self.authorized_persons: Dict[str, List[Dict[str, Any]]] = {}
        # document_type -> fields returned as "extracted" on upload
        self.extraction_results: Dict[str, Dict[str, Any]] = {}
        self._failures: Dict[str, List[KoraAPIError]] = {}
        self._next_profile_id = 1

    # ---- test hooks ----

    def simulate_error(self, kind: str):
        """Raise the error a real backend would produce for `kind`."""
        code, message, status = ERROR_KINDS.get(kind, ("UNKNOWN_ERROR", f"Unknown error: {kind}", None))
        raise KoraAPIError(code, message, status)

    def inject_failure(self, method: str, kind: str = "network", times: int = 1, message: Optional[str] = None):
        """Make the next `times` calls of `method` fail."""
        code, default_message, status = ERROR_KINDS.get(kind, ("UNKNOWN_ERROR", kind, None))
        queue = self._failures.setdefault(method, [])
        for _ in range(times):
            queue.append(KoraAPIError(code, message or default_message, status))

    def call_count(self, method: str) -> int:
        return sum(1 for c in self.calls if c == method)

    def add_document(self, application_id: str, document_type: str, name: str = "document.pdf") -> DocumentRecord:
        """Register an uploaded document directly (seeding / tests)."""
        return self._store_document(application_id, document_type, StagedFile(name=name, content=b"%PDF-seed"))

    async def _enter(self, method: str):
        self.calls.append(method)
        if self.simulate_delay:
            await asyncio.sleep(0.2)
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)

    def _application(self, application_id: str) -> ApplicationRecord:
        app = self.applications.get(application_id)
        if app is None:
            raise KoraAPIError("NOT_FOUND", "Application not found", 404)
        return app

    def _store_document(self, application_id: str, document_type: str, file: StagedFile) -> DocumentRecord:
        self._application(application_id)
        record = DocumentRecord(
            id=f"DOC_{uuid.uuid4().hex[:12].upper()}",
            application_id=application_id,
            document_type=document_type,
            original_name=file.name,
            mime_type=file.mime_type,
            size_bytes=file.size_bytes,
            sha256=hashlib.sha256(file.content).hexdigest(),
            uploaded_at=_now(),
        )
        self.documents[record.id] = record
        return record

    # ---- Applications ----

    async def create_application(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("create_application")

        tenant_id = TENANT_CODES.get(payload.get("tenant_code", ""))
        if tenant_id is None:
            raise KoraAPIError("BAD_REQUEST", "Unknown tenant code", 400)

        email = str(payload.get("email") or "").strip().lower()
        if not email:
            raise KoraAPIError("VALIDATION_ERROR", "Email is required", 422)
        if email in self.applicants:
            raise KoraAPIError("CONFLICT", "Email already registered", 409)

        applicant = ApplicantRecord(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=_hash(payload.get("password") or ""),
            phone_e164=payload.get("phone_e164"),
        )
        self.applicants[email] = applicant

        ts = _now()
        app = ApplicationRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            applicant_id=applicant.id,
            account_type=payload.get("account_type") or "individual",
            external_reference=f"SIT-{len(self.applications) + 1:06d}",
            created_at=ts,
            updated_at=ts,
        )
        self.applications[app.id] = app
        logger.info(f"[Kora Mock] Created application {app.external_reference} ({app.account_type})")

        return {
            "application_id": app.id,
            "applicant_id": applicant.id,
            "tenant_id": tenant_id,
            "status": app.status,
            "account_type": app.account_type,
            "external_reference": app.external_reference,
        }

    async def submit_application(self, application_id: str) -> Dict[str, Any]:
        await self._enter("submit_application")
        app = self._application(application_id)
        if app.status == "submitted":
            raise KoraAPIError("CONFLICT", "Application already submitted", 409)
        app.status = "submitted"
        app.submitted_at = _now()
        app.updated_at = app.submitted_at
        return {
            "id": app.id,
            "status": app.status,
            "external_reference": app.external_reference,
            "submitted_at": app.submitted_at,
        }

    async def save_draft(self, application_id: str, current_step_id: str, draft_answers: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("save_draft")
        app = self._application(application_id)
        if app.status == "submitted":
            raise KoraAPIError("CONFLICT", "Application already submitted", 409)
        app.current_step_id = current_step_id
        app.draft_answers = dict(draft_answers)
        app.updated_at = _now()
        return {"id": app.id, "current_step_id": current_step_id, "updated_at": app.updated_at}

    async def load_resume(self, application_id: str) -> Dict[str, Any]:
        await self._enter("load_resume")
        app = self._application(application_id)
        return {
            "application_id": app.id,
            "status": app.status,
            "current_step_id": app.current_step_id,
            "draft_answers": dict(app.draft_answers),
            "can_edit": app.status != "submitted",
        }

    async def resolve_onboarding(self, application_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("resolve_onboarding")
        app = self._application(application_id)

        owns = payload.get("takes_ownership_of_metals") is True
        holds = payload.get("holds_client_assets_or_funds") is True
        intermediary = payload.get("acts_as_intermediary") is True
        settlement = payload.get("settlement_facilitation") is True

        low_risk = not (owns or holds or intermediary)
        document_sets = list(BUSINESS_BASE_DOCUMENT_SETS)
        if not low_risk:
            document_sets += ["registered_address", "tax_registration"]
        if holds:
            document_sets.append("custody")
        if owns or intermediary:
            document_sets.append("economic_activity")

        resolution = {
            "low_risk_service_provider": low_risk,
            "monitoring_level": "standard" if low_risk else "enhanced",
            "question_sets": [] if low_risk else ["uae_business_questions"],
            "document_sets": document_sets,
            "custody_required": holds,
            "escrow_required": holds and settlement,
            "intermediation_required": intermediary,
            "economic_activity_required": owns or intermediary,
        }
        app.onboarding_resolution = resolution
        return resolution

    # ---- Auth ----

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        await self._enter("login")
        applicant = self.applicants.get(str(email or "").strip().lower())
        if applicant is None or applicant.password_hash != _hash(password or ""):
            raise KoraAPIError("UNAUTHORIZED", "Invalid credentials", 401)

        apps = [a for a in self.applications.values() if a.applicant_id == applicant.id]
        return {
            "access_token": uuid.uuid4().hex,
            "token_type": "bearer",
            "applicant_id": applicant.id,
            "email": applicant.email,
            "tenant_id": apps[0].tenant_id if apps else None,
            "applications": [
                {
                    "id": a.id,
                    "external_reference": a.external_reference,
                    "account_type": a.account_type,
                    "status": a.status,
                    "created_at": a.created_at,
                    "updated_at": a.updated_at,
                }
                for a in apps
            ],
        }

    # ---- Profiles ----

    async def create_applicant_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("create_applicant_profile")
        self._application(payload.get("application_id", ""))
        ts = _now()
        profile = dict(payload, id=self._next_profile_id, created_at=ts, updated_at=ts)
        self.profiles[self._next_profile_id] = profile
        self._next_profile_id += 1
        return profile

    async def patch_applicant_profile(self, profile_id: Any, patch: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("patch_applicant_profile")
        profile = self.profiles.get(int(profile_id))
        if profile is None:
            raise KoraAPIError("NOT_FOUND", "Profile not found", 404)
        profile.update({k: v for k, v in patch.items() if v is not None})
        profile["updated_at"] = _now()
        return profile

    async def upsert_company_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("upsert_company_profile")
        application_id = payload.get("application_id", "")
        self._application(application_id)
        existing = self.company_profiles.get(application_id)
        if existing is None:
            existing = {"id": str(uuid.uuid4()), "created_at": _now()}
        existing.update(payload)
        existing["updated_at"] = _now()
        self.company_profiles[application_id] = existing
        return existing

    async def upsert_questionnaire(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("upsert_questionnaire")
        application_id = payload.get("application_id", "")
        self._application(application_id)
        key = f"{application_id}:{payload.get('questionnaire_code')}"
        record = self.questionnaires.get(key) or {"id": str(uuid.uuid4()), "created_at": _now()}
        record.update(payload)
        self.questionnaires[key] = record
        return record

    # ---- Documents ----

    async def upload_emirates_id(
        self,
        tenant_id: str,
        application_id: str,
        front: StagedFile,
        back: StagedFile,
        applicant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self._enter("upload_emirates_id")
        front_doc = self._store_document(application_id, "emirates_id_front", front)
        back_doc = self._store_document(application_id, "emirates_id_back", back)
        return {"front_doc_id": front_doc.id, "back_doc_id": back_doc.id}

    async def upload_document(
        self,
        tenant_id: str,
        application_id: str,
        document_type: str,
        file: StagedFile,
        applicant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self._enter("upload_document")
        record = self._store_document(application_id, document_type, file)
        return {
            "document_id": record.id,
            "document_type": document_type,
            "extracted": dict(self.extraction_results.get(document_type, {})),
        }

    # ---- Evidence ----

    def _required_document_sets(self, app: ApplicationRecord) -> List[str]:
        if app.account_type != "business":
            return list(INDIVIDUAL_DOCUMENT_SETS)
        if app.onboarding_resolution:
            return list(app.onboarding_resolution.get("document_sets", []))
        return list(BUSINESS_BASE_DOCUMENT_SETS)

    async def fetch_evidence_pack(self, application_id: str) -> Dict[str, Any]:
        await self._enter("fetch_evidence_pack")
        app = self._application(application_id)

        docs = [d for d in self.documents.values() if d.application_id == application_id]
        document_sets = self._required_document_sets(app)
        required = []
        for s in document_sets:
            for t in DOCUMENT_SET_TYPES.get(s, []):
                if t not in required:
                    required.append(t)
        present = {d.document_type for d in docs}
        latest: Dict[str, str] = {}
        for d in sorted(docs, key=lambda d: d.uploaded_at):
            latest[d.document_type] = d.id

        return {
            "meta": {
                "version": "1",
                "tenant_id": app.tenant_id,
                "application_id": app.id,
                "generated_at": _now(),
            },
            "application": {"id": app.id, "status": app.status, "account_type": app.account_type},
            "company_profile": self.company_profiles.get(application_id),
            "applicant_profile": None,
            "documents": [
                {
                    "id": d.id,
                    "document_type": d.document_type,
                    "file": {
                        "original_name": d.original_name,
                        "mime_type": d.mime_type,
                        "size_bytes": d.size_bytes,
                        "sha256": d.sha256,
                    },
                    "dates": {"uploaded_at": d.uploaded_at},
                }
                for d in docs
            ],
            "overrides": [],
            "derived": {
                "document_sets": document_sets,
                "required_document_types": required,
                "missing_document_types": [t for t in required if t not in present],
                "latest_documents_by_type": latest,
            },
        }

    async def list_beneficial_owners(self, application_id: str) -> List[Dict[str, Any]]:
        await self._enter("list_beneficial_owners")
        return list(self.beneficial_owners.get(application_id, []))

    async def list_authorized_persons(self, application_id: str) -> List[Dict[str, Any]]:
        await self._enter("list_authorized_persons")
        return list(self.authorized_persons.get(application_id, []))
