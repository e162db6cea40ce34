"""
Submission Gate - may the terminal step fire the final submit?

Three conditions, all required:
1. every mandatory declaration checkbox for the account type is checked
2. the evidence pack is cached and lists no missing document types
   (skipped for account types that are not evidence-gated, and in dev mode)
3. the application has not already been submitted
"""

from typing import Any, Dict, List, Mapping

from backend.evidence import parse_evidence_pack
from backend.flow_config import FlowConfig

SUBMITTED_KEY = "_applicationSubmitted"

DECLARATIONS_BY_ACCOUNT_TYPE: Dict[str, List[str]] = {
    "business": ["submitDeclarationAccepted"],
    "individual": ["submitDeclarationAccepted", "privacyPolicyAccepted", "termsAccepted"],
}


def required_declarations(answers: Mapping[str, Any]) -> List[str]:
    account_type = "business" if answers.get("accountType") == "business" else "individual"
    return DECLARATIONS_BY_ACCOUNT_TYPE[account_type]


def declarations_accepted(answers: Mapping[str, Any]) -> bool:
    return all(answers.get(key) is True for key in required_declarations(answers))


def missing_evidence_types(answers: Mapping[str, Any]) -> List[str]:
    pack = parse_evidence_pack(answers.get("evidencePack"))
    if pack is None:
        return []
    return list(pack.derived.missing_document_types)


def evidence_ok(answers: Mapping[str, Any], config: FlowConfig) -> bool:
    if config.dev_mode:
        return True
    account_type = answers.get("accountType") or "individual"
    if account_type not in config.evidence_gated_account_types:
        return True
    pack = parse_evidence_pack(answers.get("evidencePack"))
    return pack is not None and pack.is_complete


def is_submitted(answers: Mapping[str, Any]) -> bool:
    return answers.get(SUBMITTED_KEY) is True


def can_submit(answers: Mapping[str, Any], config: FlowConfig, has_submitted: bool = False) -> bool:
    if has_submitted or is_submitted(answers):
        return False
    return declarations_accepted(answers) and evidence_ok(answers, config)


def blocking_reasons(answers: Mapping[str, Any], config: FlowConfig, has_submitted: bool = False) -> List[str]:
    """Human-readable reasons the submit control is disabled."""
    reasons = []
    if has_submitted or is_submitted(answers):
        reasons.append("This application has already been submitted.")
        return reasons
    if not declarations_accepted(answers):
        reasons.append("Please accept all declarations.")
    if not evidence_ok(answers, config):
        missing = missing_evidence_types(answers)
        if missing:
            reasons.append(f"Missing documents: {', '.join(missing)}")
        else:
            reasons.append("Your document checklist has not been loaded yet.")
    return reasons
