"""
Transition Action Table

One async side effect per step id, run when the user leaves the step and
its gate has passed. Actions read a snapshot of answers and write through
ActionContext.set_answer(); the writes are buffered and only committed by
the controller when the action returns. A failing action raises
StepActionError and nothing it wrote is applied.

Step ids without an entry simply advance.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from config.flow_schema import FlowSpec
from backend.answer_store import StagedFile, files_key
from backend.errors import AccountExistsError, KoraAPIError, StepActionError
from backend.flow_config import FlowConfig

logger = logging.getLogger(__name__)


# =============================================================================
# CONTEXT + RESULT
# =============================================================================

@dataclass
class ActionResult:
    """What the controller should do after a successful action."""
    advance: bool = True
    exit_to: Optional[str] = None
    session: Optional[Dict[str, Any]] = None


@dataclass
class ActionContext:
    step_id: str
    answers: Mapping[str, Any]
    client: Any
    config: FlowConfig
    spec: FlowSpec
    writes: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.writes:
            return self.writes[key]
        return self.answers.get(key, default)

    def set_answer(self, key: str, value: Any):
        self.writes[key] = value

    def fail(self, message: str) -> StepActionError:
        return StepActionError(self.step_id, message)


Action = Callable[[ActionContext], Awaitable[ActionResult]]


# File fields uploaded by a transition action rather than on selection
STAGED_UPLOAD_FIELDS = ("emiratesIdFront", "emiratesIdBack")


def _first_staged(value: Any) -> Optional[StagedFile]:
    """Resumed drafts hold file metadata only; only real staged files can be uploaded."""
    if isinstance(value, list) and value and isinstance(value[0], StagedFile):
        return value[0]
    return None


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


# =============================================================================
# ACTIONS
# =============================================================================

async def login_action(ctx: ActionContext) -> ActionResult:
    mode = ctx.get("authMode") or "signup"

    if mode == "login":
        try:
            session = await ctx.client.login(_text(ctx.get("email")), ctx.get("password") or "")
        except KoraAPIError as e:
            logger.info(f"[Flow] Login failed: {e.code}")
            raise ctx.fail("Invalid email or password. Please try again.") from e
        return ActionResult(advance=False, exit_to=ctx.config.dashboard_route, session=session)

    # Signup already went through on an earlier attempt
    if ctx.get("koraApplicationId"):
        return ActionResult()

    account_type = "business" if ctx.get("accountType") == "business" else "individual"
    payload = {
        "tenant_code": ctx.config.tenant_code,
        "account_type": account_type,
        "email": _text(ctx.get("email")),
        "phone_e164": ctx.get("phone") or None,
        "password": ctx.get("password") or None,
    }

    try:
        res = await ctx.client.create_application(payload)
    except KoraAPIError as e:
        if "Email already registered" in e.message:
            raise AccountExistsError(ctx.step_id) from e
        raise ctx.fail(e.message or "Unable to create your account. Please try again.") from e

    ctx.set_answer("koraApplicationId", res["application_id"])
    ctx.set_answer("koraApplicantId", res["applicant_id"])
    ctx.set_answer("koraTenantId", res["tenant_id"])
    ctx.set_answer("koraApplicationExternalRef", res.get("external_reference"))

    if account_type == "business":
        try:
            company = await ctx.client.upsert_company_profile({
                "tenant_id": res["tenant_id"],
                "application_id": res["application_id"],
                "applicant_id": res["applicant_id"],
            })
            if company and company.get("id"):
                ctx.set_answer("koraCompanyProfileId", str(company["id"]))
        except KoraAPIError as e:
            # Re-created later; never blocks onboarding
            logger.warning(f"[Flow] Company profile pre-creation failed: {e.message}")

    logger.info(f"[Flow] Application created: {res.get('external_reference')}")
    return ActionResult()


async def identity_action(ctx: ActionContext) -> ActionResult:
    if ctx.get("countryOfResidence") != ctx.config.identity_jurisdiction:
        return ActionResult()

    if ctx.get("emiratesIdFrontDocId") and ctx.get("emiratesIdBackDocId"):
        return ActionResult()

    front, back = (_first_staged(ctx.get(files_key(f))) for f in STAGED_UPLOAD_FIELDS)
    tenant_id = ctx.get("koraTenantId")
    application_id = ctx.get("koraApplicationId")

    if front is None or back is None or not tenant_id or not application_id:
        raise ctx.fail(
            "Please make sure Emirates ID front and back are selected and your application has been created."
        )

    try:
        res = await ctx.client.upload_emirates_id(
            str(tenant_id),
            str(application_id),
            front,
            back,
            applicant_id=ctx.get("koraApplicantId"),
        )
    except KoraAPIError as e:
        raise ctx.fail(
            e.message or "We couldn't upload your Emirates ID. Please check the files and try again."
        ) from e

    ctx.set_answer("emiratesIdFrontDocId", res["front_doc_id"])
    ctx.set_answer("emiratesIdBackDocId", res["back_doc_id"])
    ctx.set_answer("emiratesIdUploaded", True)
    return ActionResult()


async def profile_action(ctx: ActionContext) -> ActionResult:
    tenant_id = ctx.get("koraTenantId")
    application_id = ctx.get("koraApplicationId")
    applicant_id = ctx.get("koraApplicantId")
    if not tenant_id or not application_id or not applicant_id:
        raise ctx.fail(
            "We couldn't find your application reference. Please go back to the Login step and try again."
        )

    services = ctx.get("selectedServices")
    payload = {
        "tenant_id": str(tenant_id),
        "application_id": str(application_id),
        "applicant_id": str(applicant_id),
        "full_name": _text(ctx.get("fullName")),
        "nationality": _text(ctx.get("nationality")),
        "occupation": _text(ctx.get("occupation")),
        "source_of_income": _text(ctx.get("sourceOfIncome")),
        "expected_frequency": ctx.get("expectedFrequency") or None,
        "expected_value": ctx.get("expectedValue") or None,
        "selected_services": list(services) if isinstance(services, list) else [],
    }

    try:
        existing_id = ctx.get("koraApplicantProfileId")
        if existing_id:
            await ctx.client.patch_applicant_profile(existing_id, payload)
            return ActionResult()
        res = await ctx.client.create_applicant_profile(payload)
    except KoraAPIError as e:
        raise ctx.fail(
            e.message or "We couldn't save your profile details. Please check the fields and try again."
        ) from e

    ctx.set_answer("koraApplicantProfileId", str(res["id"]))
    return ActionResult()


def _declaration(ctx: ActionContext, flag_key: str, details_key: str):
    flag = ctx.get(flag_key)
    flag = flag if isinstance(flag, bool) else None
    details = (ctx.get(details_key) or None) if flag is True else None
    return flag, details


async def risk_declarations_action(ctx: ActionContext) -> ActionResult:
    profile_id = ctx.get("koraApplicantProfileId")
    if not profile_id:
        raise ctx.fail("We couldn't find your profile. Please go back and complete the Profile step.")

    pep, pep_details = _declaration(ctx, "ind_pepSelf", "ind_pepSelfDetails")
    sanctions, sanctions_details = _declaration(ctx, "ind_sanctionsSelf", "ind_sanctionsSelfDetails")
    third_party, third_party_details = _declaration(ctx, "ind_thirdPartyUse", "ind_thirdPartyUseDetails")

    patch = {
        "is_pep_self": pep,
        "pep_self_details": pep_details,
        "is_sanctions_self": sanctions,
        "sanctions_self_details": sanctions_details,
        "is_third_party_use": third_party,
        "third_party_use_details": third_party_details,
    }

    try:
        await ctx.client.patch_applicant_profile(profile_id, patch)
    except KoraAPIError as e:
        raise ctx.fail(e.message or "We couldn't save your risk declarations. Please try again.") from e
    return ActionResult()


async def corporate_setup_action(ctx: ActionContext) -> ActionResult:
    application_id = ctx.get("koraApplicationId")
    if not application_id:
        raise ctx.fail("We couldn't find your application reference. Please go back to Login and try again.")

    answers = [ctx.get(k) for k in ("takes_ownership_of_metals", "holds_client_assets_or_funds", "acts_as_intermediary")]
    if not all(isinstance(a, bool) for a in answers):
        raise ctx.fail("Please answer all questions to continue.")
    owns, holds, intermediary = answers

    settlement = ctx.get("settlement_facilitation") if holds else None
    if holds and not isinstance(settlement, bool):
        raise ctx.fail("Please answer the settlement question to continue.")

    payload = {
        "takes_ownership_of_metals": owns,
        "holds_client_assets_or_funds": holds,
        "acts_as_intermediary": intermediary,
        "settlement_facilitation": settlement,
    }

    try:
        resolution = await ctx.client.resolve_onboarding(str(application_id), payload)
    except KoraAPIError as e:
        raise ctx.fail(
            e.message or "We couldn't determine the required onboarding sections. Please try again."
        ) from e

    ctx.set_answer("onboardingResolution", resolution)
    ctx.set_answer("businessFlow", "basic" if resolution.get("low_risk_service_provider") else "advanced")
    logger.info(f"[Flow] Business flow resolved: {ctx.writes['businessFlow']}")
    return ActionResult()


async def questionnaire_action(ctx: ActionContext) -> ActionResult:
    tenant_id = ctx.get("koraTenantId")
    application_id = ctx.get("koraApplicationId")
    responses = ctx.get("questionnaire")
    if not tenant_id or not application_id or not isinstance(responses, Mapping):
        logger.warning("[Flow] Questionnaire not saved remotely: application reference missing")
        return ActionResult()

    try:
        await ctx.client.upsert_questionnaire({
            "tenant_id": str(tenant_id),
            "application_id": str(application_id),
            "questionnaire_code": ctx.config.questionnaire_code,
            "questionnaire_version": ctx.spec.meta.version,
            "responses": dict(responses),
        })
    except KoraAPIError as e:
        # Answers stay in the draft; the questionnaire is re-sent on the next attempt
        logger.warning(f"[Flow] Questionnaire upsert failed: {e.message}")
    return ActionResult()


ACTIONS: Dict[str, Action] = {
    "login": login_action,
    "identity": identity_action,
    "profile": profile_action,
    "riskDeclarations": risk_declarations_action,
    "corporateSetup": corporate_setup_action,
    "questionnaire": questionnaire_action,
}


async def run_action(ctx: ActionContext) -> ActionResult:
    action = ACTIONS.get(ctx.step_id)
    if action is None:
        return ActionResult()
    return await action(ctx)
