"""
Evidence Pack Models

The evidence pack is computed by the case-management service and cached in
answers under "evidencePack". This module only reads it: parsing,
staleness and grouping of document types into review categories.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# =============================================================================
# MODELS
# =============================================================================

class EvidenceMeta(BaseModel):
    version: Optional[str] = None
    tenant_id: Optional[str] = None
    application_id: Optional[str] = None
    generated_at: Optional[str] = None


class EvidenceDocumentDates(BaseModel):
    uploaded_at: Optional[str] = None
    issued_on: Optional[str] = None
    expires_on: Optional[str] = None
    extracted_at: Optional[str] = None


class EvidenceDocumentFile(BaseModel):
    original_name: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    sha256: Optional[str] = None


class EvidenceDocument(BaseModel):
    id: str
    document_type: str
    category: Optional[str] = None
    file: Optional[EvidenceDocumentFile] = None
    dates: Optional[EvidenceDocumentDates] = None
    issuer: Optional[str] = None
    document_number: Optional[str] = None


class EvidenceDerived(BaseModel):
    document_sets: List[str] = Field(default_factory=list)
    required_document_types: List[str] = Field(default_factory=list)
    missing_document_types: List[str] = Field(default_factory=list)
    latest_documents_by_type: Dict[str, str] = Field(default_factory=dict)


class EvidencePack(BaseModel):
    meta: EvidenceMeta = Field(default_factory=EvidenceMeta)
    documents: List[EvidenceDocument] = Field(default_factory=list)
    derived: EvidenceDerived = Field(default_factory=EvidenceDerived)

    model_config = {"extra": "ignore"}

    @property
    def is_complete(self) -> bool:
        return len(self.derived.missing_document_types) == 0


def parse_evidence_pack(raw: Any) -> Optional[EvidencePack]:
    """Parse the cached answer value; None when absent or malformed."""
    if not isinstance(raw, Mapping):
        return None
    try:
        return EvidencePack.model_validate(raw)
    except ValueError as e:
        logger.warning(f"[Evidence] Cached evidence pack is malformed: {e}")
        return None


# =============================================================================
# STALENESS
# =============================================================================

def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def is_stale(pack: Optional[EvidencePack]) -> bool:
    """True when any document was uploaded after the pack was generated."""
    if pack is None:
        return False
    generated = _parse_ts(pack.meta.generated_at)
    if generated is None:
        return False
    for doc in pack.documents:
        uploaded = _parse_ts(doc.dates.uploaded_at if doc.dates else None)
        if uploaded is None:
            continue
        try:
            if uploaded > generated:
                return True
        except TypeError:
            # naive vs aware timestamps
            if uploaded.replace(tzinfo=None) > generated.replace(tzinfo=None):
                return True
    return False


# =============================================================================
# CATEGORIES
# =============================================================================

DOCUMENT_CATEGORIES: Dict[str, List[str]] = {
    "Legal existence": [
        "trade_license",
        "certificate_of_incorporation",
        "commercial_registration",
        "memorandum_of_association",
        "articles_of_association",
    ],
    "Tax": ["tax_registration_certificate", "vat_certificate"],
    "Identity": ["passport", "emirates_id_front", "emirates_id_back", "national_id"],
    "Proof of address": ["proof_of_address", "registered_address_proof", "utility_bill", "bank_statement"],
    "Business activity": ["bank_reference_letter", "audited_financials", "source_of_funds"],
}

OTHER_CATEGORY = "Other"


def category_for(document_type: str) -> str:
    for category, types in DOCUMENT_CATEGORIES.items():
        if document_type in types:
            return category
    return OTHER_CATEGORY


def categorize_types(document_types: List[str]) -> Dict[str, List[str]]:
    """Group document types by category, keeping category order."""
    grouped: Dict[str, List[str]] = {}
    for category in list(DOCUMENT_CATEGORIES) + [OTHER_CATEGORY]:
        members = [t for t in document_types if category_for(t) == category]
        if members:
            grouped[category] = members
    return grouped


def categorize_documents(pack: EvidencePack) -> Dict[str, List[EvidenceDocument]]:
    grouped: Dict[str, List[EvidenceDocument]] = {}
    for doc in pack.documents:
        grouped.setdefault(category_for(doc.document_type), []).append(doc)
    return grouped


def summarize(pack: Optional[EvidencePack]) -> Dict[str, Any]:
    """Compact view for review screens."""
    if pack is None:
        return {
            "available": False,
            "complete": False,
            "stale": False,
            "required": {},
            "missing": {},
            "document_count": 0,
        }
    return {
        "available": True,
        "complete": pack.is_complete,
        "stale": is_stale(pack),
        "required": categorize_types(pack.derived.required_document_types),
        "missing": categorize_types(pack.derived.missing_document_types),
        "document_count": len(pack.documents),
        "generated_at": pack.meta.generated_at,
    }
