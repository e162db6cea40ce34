"""
Step Gate Table

One predicate per step id answering "may the user leave this step?".
Predicates only read answers; they never touch the network and never
raise. Step ids without an entry are always permitted.
"""

from typing import Any, Callable, Dict, Mapping, Optional

from backend.flow_config import FlowConfig
from backend.answer_store import files_key
from backend import submission_gate

Gate = Callable[[Mapping[str, Any], FlowConfig], bool]


# =============================================================================
# HELPERS
# =============================================================================

def has_text(value: Any) -> bool:
    return isinstance(value, str) and len(value.strip()) > 0


def has_items(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0


def strict_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def has_docs(value: Any) -> bool:
    """Any non-empty document structure counts as provided."""
    if not value:
        return False
    if isinstance(value, Mapping):
        docs = value.get("docs")
        if isinstance(docs, list):
            return len(docs) > 0
        return len(value) > 0
    if isinstance(value, list):
        return len(value) > 0
    if isinstance(value, str):
        return len(value.strip()) > 0
    return False


def _has_answer(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return len(value.strip()) > 0
    if isinstance(value, list):
        return len(value) > 0
    return True


# =============================================================================
# GATES
# =============================================================================

def account_selection_gate(answers, config):
    if not answers.get("accountType"):
        return False
    if answers.get("accountType") == "business" and answers.get("signingRole") == "employee":
        return (
            has_text(answers.get("signatoryFirstName"))
            and has_text(answers.get("signatoryLastName"))
            and has_text(answers.get("signatoryEmail"))
        )
    return True


def login_gate(answers, config):
    mode = answers.get("authMode") or "signup"
    if mode == "login":
        return bool(answers.get("email")) and bool(answers.get("password"))
    return (
        bool(answers.get("email"))
        and bool(answers.get("phone"))
        and bool(answers.get("password"))
        and bool(answers.get("confirmPassword"))
        and answers.get("passwordMatch") is not False
    )


def identity_gate(answers, config):
    if not answers.get("countryOfResidence"):
        return False

    # The saved document id is the evidence, not the extraction status
    has_id_document = bool(
        answers.get("passportDocId")
        or answers.get("identityDocId")
        or answers.get("idDocumentDocId")
    )
    if not has_id_document:
        return False

    if answers.get("countryOfResidence") == config.identity_jurisdiction:
        if not (has_items(answers.get(files_key("emiratesIdFront")))
                and has_items(answers.get(files_key("emiratesIdBack")))):
            return False

    if answers.get("accountType") != "business" and not answers.get("proofOfAddressDocId"):
        return False

    return True


def profile_gate(answers, config):
    return (
        has_text(answers.get("occupation"))
        and has_text(answers.get("sourceOfIncome"))
        and has_items(answers.get("selectedServices"))
    )


def risk_declarations_gate(answers, config):
    return all(
        strict_bool(answers.get(key)) is not None
        for key in ("ind_pepSelf", "ind_sanctionsSelf", "ind_thirdPartyUse")
    )


def corporate_setup_gate(answers, config):
    if not has_text(answers.get("incCountry")):
        return False

    q1 = strict_bool(answers.get("takes_ownership_of_metals"))
    q2 = strict_bool(answers.get("holds_client_assets_or_funds"))
    q3 = strict_bool(answers.get("acts_as_intermediary"))
    if q1 is None or q2 is None or q3 is None:
        return False

    if q2 is True and strict_bool(answers.get("settlement_facilitation")) is None:
        return False
    return True


BUSINESS_DOCUMENT_FIELDS = ("legal_existence", "registered_address", "tax_registration")


def company_details_gate(answers, config):
    if config.dev_mode:
        return True
    return all(
        has_docs(answers.get(files_key(field_id))) or bool(answers.get(f"{field_id}DocId"))
        for field_id in BUSINESS_DOCUMENT_FIELDS
    )


def relationship_gate(answers, config):
    payment_methods = answers.get("relationship_payment_methods")
    if not has_items(payment_methods):
        return False
    if "cash" in payment_methods and answers.get("relationship_cash_ack") is not True:
        return False
    return (
        has_text(answers.get("transaction_direction"))
        and has_items(answers.get("relationship_products"))
        and has_text(answers.get("relationship_frequency"))
        and has_text(answers.get("relationship_value_band_usd"))
    )


QUESTIONNAIRE_REQUIRED_KEYS = (
    "pep_exposure",
    "sanctions_screening",
    "ubo_disclosed_verified",
    "aml_policy",
    "expected_txn_volume_usd_band",
    "countries_of_operation_iso2",
    "kyc_sops",
)
QUESTIONNAIRE_ACKNOWLEDGEMENTS = ("consent_screening", "ack_ongoing_review")


def questionnaire_gate(answers, config):
    q = answers.get("questionnaire")
    if not isinstance(q, Mapping):
        return False
    if not all(q.get(key) is True for key in QUESTIONNAIRE_ACKNOWLEDGEMENTS):
        return False
    return all(_has_answer(q.get(key)) for key in QUESTIONNAIRE_REQUIRED_KEYS)


def submit_gate(answers, config):
    return submission_gate.can_submit(answers, config)


GATES: Dict[str, Gate] = {
    "accountSelection": account_selection_gate,
    "login": login_gate,
    "identity": identity_gate,
    "profile": profile_gate,
    "riskDeclarations": risk_declarations_gate,
    "corporateSetup": corporate_setup_gate,
    "companyDetails": company_details_gate,
    "relationship": relationship_gate,
    "questionnaire": questionnaire_gate,
    "submit": submit_gate,
}


def can_leave(step_id: str, answers: Mapping[str, Any], config: FlowConfig) -> bool:
    """Look up and evaluate the gate for a step; unknown steps are permitted."""
    gate = GATES.get(step_id)
    if gate is None:
        return True
    return bool(gate(answers, config))
