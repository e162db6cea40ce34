"""
Test Suite: Transition Action Table

Tests:
1. Signup creates the application and writes its ids
2. Signup is skipped on retry once the application exists
3. Already registered email maps to an actionable error
4. Login authenticates and exits to the dashboard
5. Company profile pre-creation never blocks
6. Identity action: jurisdiction skip, fail fast, upload
7. Profile create then patch on retry
8. Corporate setup resolves the business flow
9. Questionnaire upsert is best effort
10. Steps without an action simply advance
"""

import sys
import os
import asyncio

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from backend.flow_config import FlowConfig

CONFIG = FlowConfig()


def make_ctx(step_id, answers, client):
    from config.flow_schema import get_flow_spec
    from backend.transition_actions import ActionContext

    return ActionContext(step_id=step_id, answers=answers, client=client, config=CONFIG, spec=get_flow_spec())


def signup_answers(account_type="individual", email="applicant@example.com"):
    return {
        "accountType": account_type,
        "authMode": "signup",
        "email": email,
        "phone": "+971501234567",
        "password": "Secret123!",
        "confirmPassword": "Secret123!",
    }


async def create_application(client, account_type="individual", email="applicant@example.com"):
    """Run the signup action and return the ids it wrote."""
    from backend.transition_actions import run_action

    ctx = make_ctx("login", signup_answers(account_type, email), client)
    await run_action(ctx)
    return ctx.writes


def test_signup_creates_application():
    """Test signup writes the server-issued ids."""
    print("\nTEST 1: Signup")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action

    client = MockKoraClient()
    ctx = make_ctx("login", signup_answers(), client)
    result = asyncio.run(run_action(ctx))

    assert result.advance is True
    assert result.exit_to is None
    for key in ["koraApplicationId", "koraApplicantId", "koraTenantId", "koraApplicationExternalRef"]:
        assert ctx.writes.get(key)
    assert ctx.writes["koraTenantId"] == "tenant-sitara-core"
    assert client.call_count("create_application") == 1
    assert client.call_count("upsert_company_profile") == 0
    print(f"   Created {ctx.writes['koraApplicationExternalRef']}")

    print(" PASSED: Signup")


def test_signup_skipped_on_retry():
    """Test an existing application id skips creation."""
    print("\nTEST 2: Signup Retry")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action

    client = MockKoraClient()
    answers = dict(signup_answers(), koraApplicationId="app-existing")
    ctx = make_ctx("login", answers, client)
    result = asyncio.run(run_action(ctx))

    assert result.advance is True
    assert ctx.writes == {}
    assert client.calls == []
    print("   No second create call")

    print(" PASSED: Signup retry")


def test_existing_account_error():
    """Test 'Email already registered' becomes AccountExistsError."""
    print("\nTEST 3: Existing Account")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action
    from backend.errors import AccountExistsError

    client = MockKoraClient()
    asyncio.run(create_application(client))

    ctx = make_ctx("login", signup_answers(), client)
    with pytest.raises(AccountExistsError) as exc_info:
        asyncio.run(run_action(ctx))

    assert exc_info.value.message == "This email is already registered. Please use the 'Log In' option above."
    assert exc_info.value.suggested_mode == "login"
    assert ctx.writes == {}
    print("   Actionable message with login suggestion")

    print(" PASSED: Existing account")


def test_login_mode():
    """Test login authenticates and requests exit."""
    print("\nTEST 4: Login Mode")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action
    from backend.errors import StepActionError

    client = MockKoraClient()
    asyncio.run(create_application(client))

    ctx = make_ctx("login", {"authMode": "login", "email": "applicant@example.com", "password": "Secret123!"}, client)
    result = asyncio.run(run_action(ctx))
    assert result.advance is False
    assert result.exit_to == CONFIG.dashboard_route
    assert result.session["email"] == "applicant@example.com"
    assert len(result.session["applications"]) == 1
    print("   Session returned, exit requested")

    bad = make_ctx("login", {"authMode": "login", "email": "applicant@example.com", "password": "wrong"}, client)
    with pytest.raises(StepActionError) as exc_info:
        asyncio.run(run_action(bad))
    assert exc_info.value.message == "Invalid email or password. Please try again."
    print("   Bad credentials rejected")

    print(" PASSED: Login mode")


def test_company_profile_best_effort():
    """Test business signup survives a failing company profile call."""
    print("\nTEST 5: Company Profile Best Effort")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient

    client = MockKoraClient()
    writes = asyncio.run(create_application(client, "business", "ok@corp.ae"))
    assert writes.get("koraCompanyProfileId")
    print("   Company profile created for businesses")

    client.inject_failure("upsert_company_profile", "server")
    writes = asyncio.run(create_application(client, "business", "second@corp.ae"))
    assert writes.get("koraApplicationId")
    assert "koraCompanyProfileId" not in writes
    print("   Failure logged, signup still succeeds")

    print(" PASSED: Company profile best effort")


def test_identity_action():
    """Test Emirates ID upload rules."""
    print("\nTEST 6: Identity Action")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action
    from backend.answer_store import StagedFile
    from backend.errors import StepActionError

    client = MockKoraClient()
    ids = asyncio.run(create_application(client))

    # Outside the jurisdiction nothing is uploaded
    ctx = make_ctx("identity", dict(ids, countryOfResidence="India"), client)
    asyncio.run(run_action(ctx))
    assert client.call_count("upload_emirates_id") == 0
    print("   Skipped outside the jurisdiction")

    uae = dict(ids, countryOfResidence="United Arab Emirates")
    front = StagedFile(name="front.png", content=b"front", mime_type="image/png")
    back = StagedFile(name="back.png", content=b"back", mime_type="image/png")

    # Missing back side fails before any network call
    ctx = make_ctx("identity", dict(uae, emiratesIdFront__files=[front]), client)
    with pytest.raises(StepActionError) as exc_info:
        asyncio.run(run_action(ctx))
    assert "Emirates ID front and back" in exc_info.value.message
    assert client.call_count("upload_emirates_id") == 0
    print("   Fails fast when a side is missing")

    # Resumed drafts only carry metadata
    resumed = dict(uae, emiratesIdFront__files=[front.metadata()], emiratesIdBack__files=[back.metadata()])
    with pytest.raises(StepActionError):
        asyncio.run(run_action(make_ctx("identity", resumed, client)))
    assert client.call_count("upload_emirates_id") == 0

    ctx = make_ctx("identity", dict(uae, emiratesIdFront__files=[front], emiratesIdBack__files=[back]), client)
    asyncio.run(run_action(ctx))
    assert ctx.writes["emiratesIdUploaded"] is True
    assert ctx.writes["emiratesIdFrontDocId"].startswith("DOC_")
    assert ctx.writes["emiratesIdBackDocId"].startswith("DOC_")
    print("   Both sides uploaded")

    # Already uploaded: no second upload
    done = make_ctx("identity", dict(resumed, **ctx.writes), client)
    asyncio.run(run_action(done))
    assert client.call_count("upload_emirates_id") == 1
    print("   Not re-uploaded once doc ids exist")

    print(" PASSED: Identity action")


def test_profile_action():
    """Test applicant profile creation and idempotent retry."""
    print("\nTEST 7: Profile Action")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action
    from backend.errors import StepActionError

    client = MockKoraClient()

    with pytest.raises(StepActionError):
        asyncio.run(run_action(make_ctx("profile", {"occupation": "Trader"}, client)))
    print("   Missing application reference rejected")

    ids = asyncio.run(create_application(client))
    answers = dict(ids, fullName="Amal Haddad", occupation="Trader", sourceOfIncome="salary",
                   selectedServices=["vault_storage"])
    ctx = make_ctx("profile", answers, client)
    asyncio.run(run_action(ctx))
    profile_id = ctx.writes["koraApplicantProfileId"]
    assert client.profiles[int(profile_id)]["selected_services"] == ["vault_storage"]
    print(f"   Profile {profile_id} created")

    retry = make_ctx("profile", dict(answers, koraApplicantProfileId=profile_id, occupation="Consultant"), client)
    asyncio.run(run_action(retry))
    assert client.call_count("create_applicant_profile") == 1
    assert client.call_count("patch_applicant_profile") == 1
    assert client.profiles[int(profile_id)]["occupation"] == "Consultant"
    print("   Retry patches instead of creating")

    declarations = dict(
        answers,
        koraApplicantProfileId=profile_id,
        ind_pepSelf=True,
        ind_pepSelfDetails="Former council member",
        ind_sanctionsSelf=False,
        ind_thirdPartyUse=False,
    )
    asyncio.run(run_action(make_ctx("riskDeclarations", declarations, client)))
    stored = client.profiles[int(profile_id)]
    assert stored["is_pep_self"] is True
    assert stored["pep_self_details"] == "Former council member"
    assert stored["is_sanctions_self"] is False
    print("   Risk declarations patched")

    print(" PASSED: Profile action")


def test_corporate_setup_action():
    """Test the risk resolver feeds the business flow flag."""
    print("\nTEST 8: Corporate Setup Action")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action

    client = MockKoraClient()
    ids = asyncio.run(create_application(client, "business", "corp@corp.ae"))

    low_risk = dict(ids, takes_ownership_of_metals=False, holds_client_assets_or_funds=False,
                    acts_as_intermediary=False)
    ctx = make_ctx("corporateSetup", low_risk, client)
    asyncio.run(run_action(ctx))
    assert ctx.writes["businessFlow"] == "basic"
    assert ctx.writes["onboardingResolution"]["low_risk_service_provider"] is True
    print("   Low risk -> basic")

    custody = dict(ids, takes_ownership_of_metals=False, holds_client_assets_or_funds=True,
                   acts_as_intermediary=False, settlement_facilitation=True)
    ctx = make_ctx("corporateSetup", custody, client)
    asyncio.run(run_action(ctx))
    assert ctx.writes["businessFlow"] == "advanced"
    assert "custody" in ctx.writes["onboardingResolution"]["document_sets"]
    assert ctx.writes["onboardingResolution"]["escrow_required"] is True
    print("   Custody -> advanced with custody documents")

    print(" PASSED: Corporate setup action")


def test_questionnaire_best_effort():
    """Test a failing questionnaire upsert still advances."""
    print("\nTEST 9: Questionnaire Best Effort")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action

    client = MockKoraClient()
    ids = asyncio.run(create_application(client, "business", "q@corp.ae"))
    answers = dict(ids, questionnaire={"pep_exposure": "no", "consent_screening": True})

    result = asyncio.run(run_action(make_ctx("questionnaire", answers, client)))
    assert result.advance
    stored = client.questionnaires[f"{ids['koraApplicationId']}:{CONFIG.questionnaire_code}"]
    assert stored["responses"]["pep_exposure"] == "no"
    assert stored["questionnaire_version"] == "v1"
    print("   Questionnaire stored")

    client.inject_failure("upsert_questionnaire", "network")
    result = asyncio.run(run_action(make_ctx("questionnaire", answers, client)))
    assert result.advance
    print("   Failure does not block")

    print(" PASSED: Questionnaire best effort")


def test_steps_without_actions():
    """Test steps without an action advance with no calls."""
    print("\nTEST 10: Steps Without Actions")
    print("-" * 40)

    from backend.mock_kora import MockKoraClient
    from backend.transition_actions import run_action, ACTIONS

    client = MockKoraClient()
    for step_id in ["accountSelection", "ownership", "relationship", "submit"]:
        assert step_id not in ACTIONS
        result = asyncio.run(run_action(make_ctx(step_id, {}, client)))
        assert result.advance
    assert client.calls == []

    print(" PASSED: Steps without actions")


def run_all_tests():
    """Run all transition action tests."""
    print("=" * 60)
    print("TRANSITION ACTION TABLE - TEST SUITE")
    print("=" * 60)

    tests = [
        test_signup_creates_application,
        test_signup_skipped_on_retry,
        test_existing_account_error,
        test_login_mode,
        test_company_profile_best_effort,
        test_identity_action,
        test_profile_action,
        test_corporate_setup_action,
        test_questionnaire_best_effort,
        test_steps_without_actions,
    ]

    passed = 0
    failed = 0

    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            failed += 1
            print(f" FAILED: {test.__name__}")
            print(f"   Error: {e}")
            import traceback
            traceback.print_exc()

    print("\n" + "=" * 60)
    if failed == 0:
        print("All transition action tests passed!")
    else:
        print(f"Results: {passed} passed, {failed} failed")
    print("=" * 60)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
