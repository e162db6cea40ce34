"""
Draft persistence for the onboarding flow.

Two independent strategies behind one adapter:
- LocalMirror: answers (and last step id) written synchronously to local
  storage on every change, for same-device resumption
- RemoteDraftStore: {current_step_id, draft_answers} pushed to the
  application record at well-defined points (step exit, save & exit)

Both only ever see serialize_answers() output: no file bytes, no secrets.
"""

import re
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from backend.answer_store import serialize_answers
from backend.errors import KoraAPIError, PersistenceError

logger = logging.getLogger(__name__)

SAVE_ERROR_MESSAGE = "We couldn't save your progress. Please check your connection."
LOAD_ERROR_MESSAGE = "Failed to load application"


# ============================================================================
# STORAGE BACKENDS
# ============================================================================

class Storage:
    """Minimal string key/value storage."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str):
        raise NotImplementedError

    def remove(self, key: str):
        raise NotImplementedError


class MemoryStorage(Storage):
    def __init__(self):
        self.items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set(self, key: str, value: str):
        self.items[key] = value

    def remove(self, key: str):
        self.items.pop(key, None)


class FileStorage(Storage):
    """One file per key inside a directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str):
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(key).write_text(value, encoding="utf-8")

    def remove(self, key: str):
        path = self._path(key)
        if path.exists():
            path.unlink()


# ============================================================================
# LOCAL MIRROR
# ============================================================================

class LocalMirror:
    """Answers under `key`, last known step id under `key + "_step"`."""

    def __init__(self, storage: Storage, key: str):
        self.storage = storage
        self.key = key
        self.step_key = f"{key}_step"

    def write_answers(self, answers: Dict[str, Any]):
        try:
            self.storage.set(self.key, json.dumps(serialize_answers(answers)))
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"[Draft] Failed to mirror answers locally: {e}")

    def write_step(self, step_id: str):
        try:
            self.storage.set(self.step_key, step_id)
        except OSError as e:
            logger.warning(f"[Draft] Failed to mirror step locally: {e}")

    def read_answers(self) -> Optional[Dict[str, Any]]:
        try:
            raw = self.storage.get(self.key)
        except OSError as e:
            logger.warning(f"[Draft] Failed to read local answers: {e}")
            return None
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            logger.warning(f"[Draft] Local answers are not valid JSON: {e}")
            return None
        return parsed if isinstance(parsed, dict) else None

    def read_step(self) -> Optional[str]:
        try:
            return self.storage.get(self.step_key) or None
        except OSError as e:
            logger.warning(f"[Draft] Failed to read local step: {e}")
            return None

    def clear(self):
        try:
            self.storage.remove(self.key)
            self.storage.remove(self.step_key)
        except OSError as e:
            logger.warning(f"[Draft] Failed to clear local draft: {e}")


# ============================================================================
# REMOTE DRAFT STORE
# ============================================================================

@dataclass
class ResumeState:
    """Everything needed to rebuild a controller mid-flow."""
    application_id: Optional[str]
    current_step_id: Optional[str] = None
    draft_answers: Dict[str, Any] = field(default_factory=dict)
    submitted: bool = False
    can_edit: bool = True
    source: str = "remote"

    def initial_answers(self) -> Dict[str, Any]:
        answers = dict(self.draft_answers)
        answers["_applicationSubmitted"] = self.submitted
        return answers


class RemoteDraftStore:
    def __init__(self, client):
        self.client = client

    async def save(self, application_id: str, step_id: str, answers: Dict[str, Any]):
        try:
            await self.client.save_draft(application_id, step_id, serialize_answers(answers))
        except KoraAPIError as e:
            logger.warning(f"[Draft] Save failed for {application_id}: {e.message}")
            raise PersistenceError(SAVE_ERROR_MESSAGE) from e
        logger.debug(f"[Draft] Saved {application_id} at {step_id}")

    async def load(self, application_id: str) -> ResumeState:
        try:
            data = await self.client.load_resume(application_id)
        except KoraAPIError as e:
            logger.warning(f"[Draft] Resume failed for {application_id}: {e.message}")
            raise PersistenceError(LOAD_ERROR_MESSAGE) from e
        data = data or {}
        return ResumeState(
            application_id=application_id,
            current_step_id=data.get("current_step_id"),
            draft_answers=dict(data.get("draft_answers") or {}),
            submitted=data.get("status") == "submitted",
            can_edit=bool(data.get("can_edit", True)),
            source="remote",
        )


# ============================================================================
# ADAPTER
# ============================================================================

class PersistenceAdapter:
    """Composes the local mirror and the remote draft store."""

    def __init__(self, local: LocalMirror, remote: Optional[RemoteDraftStore] = None):
        self.local = local
        self.remote = remote

    def mirror(self, answers: Dict[str, Any]):
        """Synchronous local write; called on every answer change."""
        self.local.write_answers(answers)

    async def save_draft(self, application_id: Optional[str], step_id: str, answers: Dict[str, Any]) -> bool:
        """
        Push the draft to the application record, then back it up locally.
        Returns False when there is nothing to save against.
        """
        if not application_id or self.remote is None:
            return False
        await self.remote.save(application_id, step_id, answers)
        self.local.write_answers(answers)
        self.local.write_step(step_id)
        return True

    async def load_resume(self, application_id: str) -> ResumeState:
        """
        Remote draft first; the local mirror when the record can't be reached.
        Raises PersistenceError when neither is available.
        """
        if self.remote is not None:
            try:
                return await self.remote.load(application_id)
            except PersistenceError:
                logger.info(f"[Draft] Falling back to local mirror for {application_id}")
        answers, step_id = self.restore_local()
        if answers is None:
            raise PersistenceError(LOAD_ERROR_MESSAGE)
        return ResumeState(
            application_id=application_id,
            current_step_id=step_id,
            draft_answers=answers,
            submitted=answers.get("_applicationSubmitted") is True,
            can_edit=True,
            source="local",
        )

    def restore_local(self) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        return self.local.read_answers(), self.local.read_step()

    def clear(self):
        self.local.clear()


def build_persistence(client, storage_dir: str, storage_key: str) -> PersistenceAdapter:
    return PersistenceAdapter(
        LocalMirror(FileStorage(storage_dir), storage_key),
        RemoteDraftStore(client),
    )
