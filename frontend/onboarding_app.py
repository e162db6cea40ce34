"""
Sitara Onboarding - Multi-Step Compliance Flow

A standalone Streamlit application over the flow controller.
Integrates:
- Step graph rendering with conditional fields
- Account creation, login and resume against the case-management service
- Document intake (immediate uploads and Emirates ID staging)
- Evidence checklist on the final step
- One-shot submission
"""

import sys
import asyncio
import logging
from pathlib import Path

import streamlit as st

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.settings import settings, validate_settings
from config.flow_schema import FieldType, get_flow_spec
from backend.flow_config import FlowConfig
from backend.flow_controller import FlowController
from backend.kora_client import get_kora_client
from backend.persistence import build_persistence
from backend.evidence import parse_evidence_pack, summarize
from backend.transition_actions import STAGED_UPLOAD_FIELDS
from backend.errors import PersistenceError
from frontend.form_fields import (
    render_field,
    render_file_field,
    render_required_hint,
    get_file_signature,
    to_staged_file,
    is_empty,
)

logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="Sitara Onboarding",
    layout="centered",
    initial_sidebar_state="expanded"
)


# =============================================================================
# SESSION STATE
# =============================================================================

def run(coro):
    """Drive one controller coroutine to completion inside a Streamlit rerun."""
    return asyncio.run(coro)


def build_controller() -> FlowController:
    spec = get_flow_spec()
    client = get_kora_client()
    persistence = build_persistence(client, settings.STORAGE_DIR, settings.STORAGE_KEY)
    config = FlowConfig.from_settings()

    application_id = st.query_params.get("applicationId")
    if application_id:
        try:
            return run(FlowController.resume(application_id, spec, client, persistence, config))
        except PersistenceError as e:
            st.session_state.resume_error = e.message
            logger.warning(f"[Flow] Resume of {application_id} failed: {e.message}")

    return FlowController(spec, client, persistence, config)


def get_controller() -> FlowController:
    if "flow_controller" not in st.session_state:
        st.session_state.flow_controller = build_controller()
        st.session_state.upload_signatures = {}
    return st.session_state.flow_controller


def start_over():
    for key in ["flow_controller", "upload_signatures", "resume_error"]:
        st.session_state.pop(key, None)


# =============================================================================
# FIELDS
# =============================================================================

def handle_file_field(controller: FlowController, field, disabled: bool):
    picked = render_file_field(field, controller.answers, disabled=disabled)
    seen = st.session_state.upload_signatures.setdefault(field.id, set())

    for uploaded in picked:
        signature = get_file_signature(uploaded)
        if signature in seen:
            continue
        seen.add(signature)
        staged = to_staged_file(uploaded)
        if field.id in STAGED_UPLOAD_FIELDS:
            controller.stage_file(field.id, staged)
        else:
            with st.spinner(f"Uploading {staged.name}..."):
                run(controller.upload_document(field.id, staged))


def render_step_fields(controller: FlowController):
    step = controller.current_step
    disabled = controller.read_only or controller.has_submitted
    fields = controller.visible_fields()
    before = [f.id for f in fields]

    for field in fields:
        if field.type == FieldType.FILE:
            handle_file_field(controller, field, disabled)
            continue

        current = controller.answers.get(field.id)
        value = render_field(field, current, controller.field_options(field), disabled=disabled)
        if field.type != FieldType.NOTE and not disabled:
            if value != current and not (is_empty(value) and is_empty(current)):
                controller.set_answer(field.id, value)

        if controller.show_validation_errors:
            render_required_hint(field, controller.answers.get(field.id))

    # A change above can show or hide fields (or the whole step)
    if controller.current_step.id != step.id or [f.id for f in controller.visible_fields()] != before:
        st.rerun()


# =============================================================================
# TERMINAL STEP
# =============================================================================

def render_evidence(controller: FlowController):
    st.markdown("### Document checklist")
    summary = summarize(parse_evidence_pack(controller.answers.get("evidencePack")))

    if controller.evidence_error:
        st.warning(controller.evidence_error)

    if not summary["available"]:
        st.info("Your document checklist has not been loaded yet.")
    elif summary["complete"]:
        st.success(f"All required documents received ({summary['document_count']} on file).")
    else:
        for category, types in summary["missing"].items():
            st.markdown(f"**{category}**: missing {', '.join(types)}")
    if summary.get("stale"):
        st.caption("Documents changed since this checklist was generated.")

    parties = controller.related_parties
    if parties.get("owners") or parties.get("authorised_persons"):
        with st.expander("Related parties"):
            for owner in parties.get("owners", []):
                st.caption(f"Owner: {owner.get('name', owner)}")
            for person in parties.get("authorised_persons", []):
                st.caption(f"Authorised person: {person.get('full_name', person)}")

    if st.button("Refresh checklist", disabled=controller.is_refreshing_evidence or controller.has_submitted):
        with st.spinner("Loading your document checklist..."):
            run(controller.refresh_evidence("manual"))
        st.rerun()


def render_submit(controller: FlowController):
    if controller.has_submitted:
        st.success("Your application has been submitted. We will be in touch shortly.")
        if st.button("Finish", type="primary"):
            controller.persistence.clear()
            controller.exit_to = controller.config.dashboard_route
            st.rerun()
        return

    for reason in controller.submit_blockers:
        st.caption(reason)

    if st.button("Submit application", type="primary", disabled=not controller.can_submit):
        with st.spinner("Submitting..."):
            run(controller.submit())
        st.rerun()


# =============================================================================
# NAVIGATION
# =============================================================================

def render_navigation(controller: FlowController):
    col1, col2, col3 = st.columns([1, 1, 1])

    with col1:
        if st.button("Back", disabled=not controller.can_go_back, use_container_width=True):
            run(controller.go_back())
            st.rerun()

    with col2:
        can_save = bool(controller.effective_application_id) and not controller.read_only
        if can_save and not controller.has_submitted:
            if st.button("Save & exit", disabled=controller.is_busy, use_container_width=True):
                with st.spinner("Saving your progress..."):
                    run(controller.save_and_exit())
                st.rerun()

    with col3:
        if not controller.is_terminal:
            if st.button("Next", type="primary", disabled=controller.is_busy, use_container_width=True):
                with st.spinner("Saving..."):
                    run(controller.go_next())
                st.rerun()


def render_sidebar(controller: FlowController):
    with st.sidebar:
        st.markdown(f"### {controller.spec.meta.title}")
        visible = controller.visible_steps()
        for i, step in enumerate(visible):
            marker = "->" if step.id == controller.current_step.id else f"{i + 1}."
            st.caption(f"{marker} {step.label}")

        st.markdown("---")
        ref = controller.answers.get("koraApplicationExternalRef")
        if ref:
            st.caption(f"Reference: {ref}")
        if settings.DEMO_MODE:
            st.caption("Demo mode: in-memory backend")
        if controller.config.dev_mode:
            st.caption("Dev mode: evidence checks bypassed")

        _, issues = validate_settings()
        for issue in issues:
            st.caption(issue)

        if st.button("Reset", disabled=controller.is_busy):
            controller.reset()
            st.session_state.upload_signatures = {}
            st.rerun()


# =============================================================================
# MAIN
# =============================================================================

def main():
    controller = get_controller()

    if st.session_state.get("resume_error"):
        st.warning(st.session_state.resume_error)

    if controller.exit_to:
        st.markdown("## You're all set")
        if controller.session:
            st.caption(f"Signed in as {controller.session.get('email', '')}")
        else:
            st.caption("Your progress is saved. You can come back at any time.")
        if st.button("Start a new application"):
            start_over()
            st.rerun()
        return

    render_sidebar(controller)

    step = controller.current_step
    visible = controller.visible_steps()
    st.markdown(f"## {step.label}")
    if step.description:
        st.caption(step.description)
    st.progress((controller.visible_index + 1) / max(len(visible), 1))

    if controller.read_only:
        st.info("This application has been submitted and can no longer be edited.")

    if controller.is_terminal:
        run(controller.ensure_evidence())

    render_step_fields(controller)

    if controller.last_error:
        st.error(controller.last_error)
        if controller.suggested_auth_mode:
            if st.button("Switch to Log In"):
                controller.use_suggested_auth_mode()
                st.rerun()
    if controller.save_error:
        st.warning(controller.save_error)

    if controller.is_terminal:
        st.markdown("---")
        render_evidence(controller)
        render_submit(controller)

    st.markdown("---")
    render_navigation(controller)


if __name__ == "__main__":
    main()
