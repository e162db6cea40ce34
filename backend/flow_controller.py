"""
Flow Controller - the onboarding state machine.

Composes the answer store, visibility evaluator, gate table, action table,
persistence adapter and submission gate behind the surface the UI drives:

    visible_steps(), current_step, set_answer(), go_next(), go_back(),
    save_and_exit(), submit(), reset(), refresh_evidence(), upload_document()

plus read-only flags (is_busy, has_submitted, show_validation_errors,
last_error, save_error, evidence_error, exit_to).

Position is an index into the full step list so step identity survives
visibility changes. Every answer change re-checks that the current step is
still visible and moves to the nearest visible step when it is not.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from config.flow_schema import FieldDescriptor, FlowSpec, Option, StepDescriptor
from backend.answer_store import AnswerStore, StagedFile, allowed_keys_for, doc_id_key, files_key
from backend.errors import (
    AccountExistsError,
    KoraAPIError,
    OnboardingError,
    PersistenceError,
    StepActionError,
    UnknownAnswerKeyError,
)
from backend.evidence import is_stale, parse_evidence_pack
from backend.flow_config import FlowConfig
from backend.persistence import PersistenceAdapter
from backend.step_gates import can_leave
from backend.submission_gate import SUBMITTED_KEY, blocking_reasons, can_submit
from backend.transition_actions import ActionContext, run_action
from backend.visibility import compute_visible_steps, filter_options_by_map, is_business, visible_fields

logger = logging.getLogger(__name__)

SubmissionSink = Callable[[Dict[str, Any]], Awaitable[Any]]

SUBMIT_ERROR_MESSAGE = "We couldn't submit your application. Please try again."
EVIDENCE_ERROR_MESSAGE = "We couldn't load your document checklist. Please try again."
READ_ONLY_MESSAGE = "This application has been submitted and cannot be modified."

# Extracted ID document field -> answer key filled when still empty
EXTRACTED_FIELD_MAP = {
    "full_name": "fullName",
    "nationality": "nationality",
}


class FlowController:
    """Drives one applicant through the step graph."""

    def __init__(
        self,
        spec: FlowSpec,
        client,
        persistence: PersistenceAdapter,
        config: FlowConfig,
        initial_answers: Optional[Mapping[str, Any]] = None,
        initial_step_id: Optional[str] = None,
        application_id: Optional[str] = None,
        resume_mode: bool = False,
        read_only: bool = False,
        submission_sink: Optional[SubmissionSink] = None,
    ):
        self.spec = spec
        self.client = client
        self.persistence = persistence
        self.config = config
        self.application_id = application_id
        self.resume_mode = resume_mode
        self.read_only = read_only
        self.submission_sink = submission_sink or self._submit_to_kora

        self.store = AnswerStore(allowed_keys_for(spec))
        if initial_answers is not None:
            self.store.hydrate(initial_answers, notify=False)
        else:
            local_answers, _ = persistence.restore_local()
            if local_answers:
                self.store.hydrate(local_answers, notify=False)

        start = spec.index_of(initial_step_id) if initial_step_id else 0
        self.position = start if start >= 0 else 0

        # UI flags
        self.is_busy = False
        self.is_saving = False
        self.is_refreshing_evidence = False
        self.has_submitted = self.store.get(SUBMITTED_KEY) is True
        self.show_validation_errors = False
        self.last_error: Optional[str] = None
        self.save_error: Optional[str] = None
        self.evidence_error: Optional[str] = None
        self.exit_to: Optional[str] = None
        self.suggested_auth_mode: Optional[str] = None

        self.session: Optional[Dict[str, Any]] = None
        self.related_parties: Dict[str, List[Dict[str, Any]]] = {}
        self._evidence_auto_fetched = False

        self.store.subscribe(self._on_answers_changed)
        self.repair_position()

    # =========================================================================
    # CONSTRUCTION
    # =========================================================================

    @classmethod
    async def resume(
        cls,
        application_id: str,
        spec: FlowSpec,
        client,
        persistence: PersistenceAdapter,
        config: FlowConfig,
        submission_sink: Optional[SubmissionSink] = None,
    ) -> "FlowController":
        """Rebuild a controller from the stored draft of an application."""
        state = await persistence.load_resume(application_id)
        logger.info(
            f"[Flow] Resuming {application_id} at {state.current_step_id or 'start'} "
            f"(source={state.source}, editable={state.can_edit})"
        )
        return cls(
            spec,
            client,
            persistence,
            config,
            initial_answers=state.initial_answers(),
            initial_step_id=state.current_step_id,
            application_id=application_id,
            resume_mode=True,
            read_only=not state.can_edit,
            submission_sink=submission_sink,
        )

    # =========================================================================
    # DERIVED STATE
    # =========================================================================

    @property
    def answers(self) -> Dict[str, Any]:
        return self.store.snapshot()

    @property
    def effective_application_id(self) -> Optional[str]:
        return self.application_id or self.store.get("koraApplicationId")

    @property
    def current_step(self) -> StepDescriptor:
        return self.spec.steps[self.position]

    @property
    def is_terminal(self) -> bool:
        return self.current_step.id == self.spec.terminal_step_id

    def visible_steps(self) -> List[StepDescriptor]:
        return compute_visible_steps(self.spec, self.store.snapshot(), self.resume_mode)

    def get_visible_steps(self) -> List[StepDescriptor]:
        return self.visible_steps()

    def get_current_step(self) -> StepDescriptor:
        return self.current_step

    @property
    def visible_index(self) -> int:
        ids = [s.id for s in self.visible_steps()]
        try:
            return ids.index(self.current_step.id)
        except ValueError:
            return 0

    def visible_fields(self, step: Optional[StepDescriptor] = None) -> List[FieldDescriptor]:
        return visible_fields(step or self.current_step, self.store.snapshot())

    def field_options(self, field: FieldDescriptor) -> List[Option]:
        return filter_options_by_map(field.options, field.filter_by, self.store.snapshot())

    @property
    def can_go_back(self) -> bool:
        return not self.is_busy and self.visible_index > 0

    @property
    def can_go_next(self) -> bool:
        """Gate for the current step; False while an action is in flight."""
        if self.is_busy or self.is_terminal:
            return False
        return can_leave(self.current_step.id, self.store.snapshot(), self.config)

    @property
    def can_submit(self) -> bool:
        if self.is_busy or not self.is_terminal:
            return False
        return can_submit(self.store.snapshot(), self.config, self.has_submitted)

    @property
    def submit_blockers(self) -> List[str]:
        return blocking_reasons(self.store.snapshot(), self.config, self.has_submitted)

    @property
    def evidence_stale(self) -> bool:
        return is_stale(parse_evidence_pack(self.store.get("evidencePack")))

    # =========================================================================
    # POSITION
    # =========================================================================

    def _set_position(self, index: int):
        if index == self.position:
            return
        self.position = index
        self.show_validation_errors = False
        if not self.is_terminal:
            self._evidence_auto_fetched = False

    def repair_position(self) -> int:
        """
        Move off a step that is no longer visible: forward to the next visible
        step in graph order, else to the last visible step, else to 0.
        """
        visible = self.visible_steps()
        ids = [s.id for s in visible]
        if self.current_step.id in ids:
            return self.position

        if not visible:
            self._set_position(0)
            return self.position

        target = None
        for step in visible:
            if self.spec.index_of(step.id) >= self.position:
                target = step
                break
        if target is None:
            target = visible[-1]

        logger.debug(f"[Flow] Step {self.current_step.id} hidden, moving to {target.id}")
        self._set_position(self.spec.index_of(target.id))
        return self.position

    def _on_answers_changed(self, snapshot: Dict[str, Any]):
        if not self.read_only:
            self.persistence.mirror(snapshot)
        self.repair_position()

    # =========================================================================
    # ANSWERS
    # =========================================================================

    def set_answer(self, key: str, value: Any):
        if self.read_only:
            raise OnboardingError(READ_ONLY_MESSAGE)

        updates = {key: value}
        if key in ("password", "confirmPassword"):
            password = value if key == "password" else self.store.get("password")
            confirm = value if key == "confirmPassword" else self.store.get("confirmPassword")
            updates["passwordMatch"] = (password == confirm) if password and confirm else None
        self.store.update(updates)

    def stage_file(self, field_id: str, staged_file: StagedFile):
        """Hold a file in answers until the step's action uploads it."""
        self.set_answer(files_key(field_id), [staged_file])

    def use_suggested_auth_mode(self):
        if self.suggested_auth_mode:
            self.set_answer("authMode", self.suggested_auth_mode)
            self.suggested_auth_mode = None
            self.last_error = None

    # =========================================================================
    # NAVIGATION
    # =========================================================================

    async def _save_on_navigation(self, step: StepDescriptor):
        """Save the step being left. A failure is reported, never blocking."""
        app_id = self.effective_application_id
        if self.read_only or not app_id:
            return
        self.is_saving = True
        try:
            await self.persistence.save_draft(app_id, step.id, self.store.snapshot())
            self.save_error = None
        except PersistenceError as e:
            self.save_error = e.message
        finally:
            self.is_saving = False

    def _next_visible_after(self, index: int) -> Optional[StepDescriptor]:
        for step in self.visible_steps():
            if self.spec.index_of(step.id) > index:
                return step
        return None

    async def go_next(self) -> bool:
        """
        Gate, run the step's action, commit its writes, save, then advance.
        Returns True when the position moved.
        """
        if self.is_busy or self.is_terminal:
            return False

        step = self.current_step

        if self.read_only:
            target = self._next_visible_after(self.position)
            if target is None:
                return False
            self._set_position(self.spec.index_of(target.id))
            return True

        if self._next_visible_after(self.position) is None:
            return False

        if not can_leave(step.id, self.store.snapshot(), self.config):
            self.show_validation_errors = True
            return False

        self.is_busy = True
        self.last_error = None
        try:
            ctx = ActionContext(
                step_id=step.id,
                answers=self.store.snapshot(),
                client=self.client,
                config=self.config,
                spec=self.spec,
            )
            try:
                result = await run_action(ctx)
            except StepActionError as e:
                self.last_error = e.message
                if isinstance(e, AccountExistsError):
                    self.suggested_auth_mode = e.suggested_mode
                logger.warning(f"[Flow] Action for {step.id} failed: {e.message}")
                return False

            if ctx.writes:
                self.store.update(ctx.writes)
            if result.session is not None:
                self.session = result.session
            if result.exit_to:
                self.exit_to = result.exit_to
                return False
            if not result.advance:
                return False

            # Visibility may have changed with the committed writes
            target = self._next_visible_after(self.position)
            if target is None:
                return False

            await self._save_on_navigation(step)
            self._set_position(self.spec.index_of(target.id))
            logger.info(f"[Flow] {step.id} -> {target.id}")
        finally:
            self.is_busy = False

        await self.ensure_evidence()
        return True

    async def go_back(self) -> bool:
        if self.is_busy:
            return False
        visible = self.visible_steps()
        idx = self.visible_index
        if idx <= 0:
            return False
        target = visible[idx - 1]

        self.is_busy = True
        try:
            await self._save_on_navigation(self.current_step)
            self._set_position(self.spec.index_of(target.id))
        finally:
            self.is_busy = False
        return True

    async def save_and_exit(self) -> bool:
        """Save the draft and request exit to the dashboard; stays put on failure."""
        app_id = self.effective_application_id
        if self.read_only or not app_id or self.is_busy:
            return False

        self.is_busy = True
        self.is_saving = True
        try:
            await self.persistence.save_draft(app_id, self.current_step.id, self.store.snapshot())
        except PersistenceError as e:
            self.save_error = e.message
            return False
        finally:
            self.is_saving = False
            self.is_busy = False

        self.save_error = None
        self.exit_to = self.config.dashboard_route
        return True

    def reset(self):
        """Clear answers, the local mirror and all flags; back to the first step."""
        if self.is_busy:
            return
        # A fresh session: no longer tied to the resumed application
        self.application_id = None
        self.resume_mode = False
        self.read_only = False
        self.store.clear()
        self.persistence.clear()
        self._set_position(0)
        self.repair_position()
        self.has_submitted = False
        self.show_validation_errors = False
        self.last_error = None
        self.save_error = None
        self.evidence_error = None
        self.exit_to = None
        self.suggested_auth_mode = None
        self.session = None
        self.related_parties = {}
        self._evidence_auto_fetched = False
        logger.info("[Flow] Reset")

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def _submit_to_kora(self, answers: Dict[str, Any]):
        app_id = answers.get("koraApplicationId") or self.application_id
        if not app_id:
            raise StepActionError("submit", "Cannot submit: missing application ID")
        try:
            return await self.client.submit_application(str(app_id))
        except KoraAPIError as e:
            raise StepActionError("submit", e.message or SUBMIT_ERROR_MESSAGE) from e

    async def submit(self) -> bool:
        """One-shot final submission. Returns True only for the call that submitted."""
        if self.has_submitted or self.store.get(SUBMITTED_KEY) is True:
            return False
        if not self.can_submit:
            return False

        self.is_busy = True
        self.last_error = None
        try:
            await self.submission_sink(self.store.snapshot())
        except OnboardingError as e:
            self.last_error = e.message or SUBMIT_ERROR_MESSAGE
            logger.warning(f"[Flow] Submission failed: {self.last_error}")
            return False
        finally:
            self.is_busy = False

        self.has_submitted = True
        self.store.set(SUBMITTED_KEY, True)
        logger.info(f"[Flow] Application {self.effective_application_id} submitted")
        return True

    # =========================================================================
    # EVIDENCE
    # =========================================================================

    async def refresh_evidence(self, reason: str = "manual") -> bool:
        """
        Re-fetch the evidence pack (and related parties for businesses) and
        overwrite the cached copy. Manual failures go to last_error,
        automatic ones only to evidence_error.
        """
        app_id = self.effective_application_id
        if not app_id:
            return False

        self.is_refreshing_evidence = True
        parties = None
        try:
            if is_business(self.store.snapshot()):
                pack, owners, persons = await asyncio.gather(
                    self.client.fetch_evidence_pack(app_id),
                    self.client.list_beneficial_owners(app_id),
                    self.client.list_authorized_persons(app_id),
                )
                parties = {"owners": owners or [], "authorised_persons": persons or []}
            else:
                pack = await self.client.fetch_evidence_pack(app_id)
            if not isinstance(pack, Mapping):
                raise KoraAPIError("INVALID_RESPONSE", EVIDENCE_ERROR_MESSAGE)
        except KoraAPIError as e:
            message = e.message or EVIDENCE_ERROR_MESSAGE
            logger.warning(f"[Evidence] {reason} refresh failed for {app_id}: {message}")
            if reason == "auto":
                self.evidence_error = message
            else:
                self.last_error = message
            return False
        finally:
            self.is_refreshing_evidence = False

        self.evidence_error = None
        if parties is not None:
            self.related_parties = parties
        self.store.update({
            "evidencePack": dict(pack),
            "evidencePackFetchedAt": datetime.now(timezone.utc).isoformat(),
        })
        missing = (pack.get("derived") or {}).get("missing_document_types") or []
        logger.info(f"[Evidence] {reason} refresh for {app_id}: {len(missing)} missing document types")
        return True

    async def ensure_evidence(self) -> bool:
        """Automatic refresh, once per arrival at the terminal step."""
        if not self.is_terminal or self._evidence_auto_fetched or self.has_submitted:
            return False
        if not self.effective_application_id:
            return False
        self._evidence_auto_fetched = True
        return await self.refresh_evidence("auto")

    # =========================================================================
    # DOCUMENT INTAKE
    # =========================================================================

    async def upload_document(
        self,
        field_id: str,
        staged_file: StagedFile,
        document_type: Optional[str] = None,
    ) -> bool:
        """Upload a file now and record its document id; extracted fields fill empty answers."""
        field = next((f for f in self.spec.all_fields() if f.id == field_id and f.is_file), None)
        if field is None:
            raise UnknownAnswerKeyError(field_id)
        if self.read_only:
            raise OnboardingError(READ_ONLY_MESSAGE)
        if self.is_busy:
            return False

        tenant_id = self.store.get("koraTenantId")
        app_id = self.effective_application_id
        if not tenant_id or not app_id:
            self.last_error = "Application context is missing. Please restart the flow."
            return False

        document_type = document_type or field.document_type or field_id
        self.is_busy = True
        self.last_error = None
        try:
            res = await self.client.upload_document(
                str(tenant_id),
                str(app_id),
                document_type,
                staged_file,
                applicant_id=self.store.get("koraApplicantId"),
            )
        except KoraAPIError as e:
            self.last_error = e.message or "We couldn't upload your document. Please try again."
            logger.warning(f"[Flow] Upload of {field_id} failed: {self.last_error}")
            return False
        finally:
            self.is_busy = False

        existing = self.store.get(files_key(field_id))
        uploaded = [f for f in existing if isinstance(f, Mapping)] if (field.multiple and isinstance(existing, list)) else []
        uploaded.append(dict(staged_file.metadata(), document_id=res["document_id"]))

        writes: Dict[str, Any] = {
            files_key(field_id): uploaded,
            doc_id_key(field_id): res["document_id"],
        }
        extracted = res.get("extracted") or {}
        if extracted:
            writes["idExtractedFields"] = extracted
            for source, key in EXTRACTED_FIELD_MAP.items():
                value = extracted.get(source)
                if value and not self.store.get(key) and key in self.store.allowed_keys:
                    writes[key] = value
        self.store.update(writes)
        return True
