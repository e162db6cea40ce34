"""
Kora API Client - case-management service used by the onboarding flow.

Blocking HTTP calls go through a requests.Session and are pushed to a worker
thread, so the flow controller can await them. Every failure surfaces as
KoraAPIError with the server's detail message when it sent one.

In demo mode get_kora_client() returns the in-memory MockKoraClient instead.
"""

import json
import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from config.settings import settings
from backend.errors import KoraAPIError
from backend.answer_store import StagedFile

logger = logging.getLogger(__name__)


# ============================================================================
# ERROR HELPERS
# ============================================================================

STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT",
}


def extract_error_detail(body: Any, fallback: str) -> str:
    """Pull a readable message out of a FastAPI-style error body."""
    if not isinstance(body, dict):
        return fallback
    detail = body.get("detail") or body.get("error")
    if isinstance(detail, str) and detail:
        return detail
    if isinstance(detail, list) and detail:
        return ", ".join(d if isinstance(d, str) else json.dumps(d) for d in detail)
    if isinstance(detail, dict) and detail:
        return json.dumps(detail)
    return fallback


def _error_code(status_code: int) -> str:
    if status_code >= 500:
        return "SERVER_ERROR"
    return STATUS_CODES.get(status_code, "HTTP_ERROR")


# Document type -> intake endpoint
UPLOAD_ROUTES = {
    "passport": "/documents/id",
    "national_id": "/documents/id",
    "proof_of_address": "/documents/address",
}
DEFAULT_UPLOAD_ROUTE = "/documents/business"


# ============================================================================
# HTTP CLIENT
# ============================================================================

class KoraClient:
    """
    HTTP client for the Kora case-management API.

    Sends X-Tenant-Key on every request when a tenant key is configured.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        tenant_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.KORA_API_URL).rstrip("/")
        self.tenant_key = tenant_key if tenant_key is not None else settings.KORA_TENANT_KEY
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        if self.tenant_key:
            self.session.headers["X-Tenant-Key"] = self.tenant_key
        self.access_token: Optional[str] = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path if path.startswith('/') else '/' + path}"

    def _request(
        self,
        method: str,
        path: str,
        fallback: str,
        json_body: Optional[dict] = None,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        try:
            res = self.session.request(
                method,
                self._url(path),
                json=json_body,
                data=data,
                files=files,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            logger.warning(f"[Kora] {method} {path} timed out: {e}")
            raise KoraAPIError("TIMEOUT", fallback) from e
        except requests.RequestException as e:
            logger.warning(f"[Kora] {method} {path} failed: {e}")
            raise KoraAPIError("NETWORK_ERROR", fallback) from e

        try:
            body = res.json()
        except ValueError:
            body = None

        if not res.ok:
            message = extract_error_detail(body, fallback)
            logger.warning(f"[Kora] {method} {path} -> {res.status_code}: {message}")
            raise KoraAPIError(_error_code(res.status_code), message, res.status_code)

        return body

    async def _call(self, method: str, path: str, fallback: str, **kwargs) -> Any:
        return await asyncio.to_thread(self._request, method, path, fallback, **kwargs)

    # ---- Applications ----

    async def create_application(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/applications", "Failed to create application", json_body=payload)

    async def submit_application(self, application_id: str) -> Dict[str, Any]:
        return await self._call(
            "POST", f"/applications/{application_id}/submit", "Failed to submit application"
        )

    async def save_draft(self, application_id: str, current_step_id: str, draft_answers: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(
            "PATCH",
            f"/applications/{application_id}/draft",
            "Failed to save draft",
            json_body={"current_step_id": current_step_id, "draft_answers": draft_answers},
        )

    async def load_resume(self, application_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/applications/{application_id}/resume", "Failed to load application")

    async def resolve_onboarding(self, application_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(
            "POST",
            f"/applications/{application_id}/resolve-onboarding",
            "Failed to resolve onboarding requirements",
            json_body=payload,
        )

    # ---- Auth ----

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        body = await self._call(
            "POST", "/auth/login", "Invalid credentials", json_body={"email": email, "password": password}
        )
        self.access_token = (body or {}).get("access_token")
        return body

    # ---- Profiles ----

    async def create_applicant_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/profiles", "Failed to save applicant profile", json_body=payload)

    async def patch_applicant_profile(self, profile_id: Any, patch: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(
            "PATCH", f"/profiles/{profile_id}", "Failed to save risk declarations", json_body=patch
        )

    async def upsert_company_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/profiles/company", "Failed to create company profile", json_body=payload)

    async def upsert_questionnaire(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("PUT", "/questionnaires", "Failed to save questionnaire", json_body=payload)

    # ---- Documents ----

    async def upload_emirates_id(
        self,
        tenant_id: str,
        application_id: str,
        front: StagedFile,
        back: StagedFile,
        applicant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = {"tenant_id": tenant_id, "application_id": application_id}
        if applicant_id:
            data["applicant_id"] = applicant_id
        files = {
            "front": (front.name, front.content, front.mime_type),
            "back": (back.name, back.content, back.mime_type),
        }
        return await self._call(
            "POST", "/documents/emirates-id", "Failed to upload Emirates ID. Please try again.",
            data=data, files=files,
        )

    async def upload_document(
        self,
        tenant_id: str,
        application_id: str,
        document_type: str,
        file: StagedFile,
        applicant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = {"tenant_id": tenant_id, "application_id": application_id, "document_type": document_type}
        if applicant_id:
            data["applicant_id"] = applicant_id
        route = UPLOAD_ROUTES.get(document_type, DEFAULT_UPLOAD_ROUTE)
        return await self._call(
            "POST", route, "We couldn't upload your document. Please try again.",
            data=data, files={"file": (file.name, file.content, file.mime_type)},
        )

    # ---- Evidence ----

    async def fetch_evidence_pack(self, application_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/evidence/applications/{application_id}", "Failed to fetch evidence pack")

    async def list_beneficial_owners(self, application_id: str) -> List[Dict[str, Any]]:
        return await self._call(
            "GET", "/beneficial-owners", "Failed to list beneficial owners",
            params={"application_id": application_id},
        )

    async def list_authorized_persons(self, application_id: str) -> List[Dict[str, Any]]:
        return await self._call(
            "GET", "/authorized-persons", "Failed to list authorized persons",
            params={"application_id": application_id},
        )


# ============================================================================
# MODULE-LEVEL INSTANCE
# ============================================================================

_client = None


def get_kora_client():
    """Get singleton client: the in-memory mock in demo mode, HTTP otherwise."""
    global _client
    if _client is None:
        if settings.DEMO_MODE:
            from backend.mock_kora import MockKoraClient
            _client = MockKoraClient(simulate_delay=True)
            logger.info("[Kora] Demo mode: using in-memory case-management mock")
        else:
            _client = KoraClient()
            logger.info(f"[Kora] Using {_client.base_url}")
    return _client


def reset_kora_client():
    global _client
    _client = None
