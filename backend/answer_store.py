"""
Answer Store - the flat key/value record every step reads and writes.

Provides:
- StagedFile: a file chosen in the UI but not yet uploaded
- AnswerStore: validated map with change listeners
- allowed_keys_for(): the key vocabulary of a step graph
- serialize_answers(): the persistence boundary (no bytes, no secrets)
"""

import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from pydantic import BaseModel

from config.flow_schema import FlowSpec
from backend.errors import UnknownAnswerKeyError, InvalidAnswerValueError

logger = logging.getLogger(__name__)


# =============================================================================
# KEYS
# =============================================================================

# Keys written by transition actions and the controller rather than by fields
RESERVED_KEYS: FrozenSet[str] = frozenset([
    "koraApplicationId",
    "koraApplicantId",
    "koraTenantId",
    "koraApplicationExternalRef",
    "koraApplicantProfileId",
    "koraCompanyProfileId",
    "onboardingResolution",
    "businessFlow",
    "evidencePack",
    "evidencePackFetchedAt",
    "emiratesIdFrontDocId",
    "emiratesIdBackDocId",
    "emiratesIdUploaded",
    "passwordMatch",
    "idExtractedFields",
    "_applicationSubmitted",
])

# Never leave the process
SECRET_KEYS: FrozenSet[str] = frozenset(["password", "confirmPassword"])

FILES_SUFFIX = "__files"
DOC_ID_SUFFIX = "DocId"


def files_key(field_id: str) -> str:
    return f"{field_id}{FILES_SUFFIX}"


def doc_id_key(field_id: str) -> str:
    return f"{field_id}{DOC_ID_SUFFIX}"


def allowed_keys_for(spec: FlowSpec) -> FrozenSet[str]:
    """Every field id, the staging/doc-id slots of file fields, and reserved keys."""
    keys = set(RESERVED_KEYS)
    for field in spec.all_fields():
        keys.add(field.id)
        if field.is_file:
            keys.add(files_key(field.id))
            keys.add(doc_id_key(field.id))
    return frozenset(keys)


# =============================================================================
# VALUES
# =============================================================================

class StagedFile(BaseModel):
    """A file picked in the UI, held in memory until an action uploads it."""
    name: str
    content: bytes
    mime_type: str = "application/octet-stream"

    model_config = {"frozen": True}

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    def metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
        }


_SCALARS = (str, int, float, bool, type(None))


def _is_json_value(value: Any) -> bool:
    if isinstance(value, _SCALARS):
        return True
    if isinstance(value, (list, tuple)):
        return all(_is_json_value(v) for v in value)
    if isinstance(value, Mapping):
        return all(isinstance(k, str) and _is_json_value(v) for k, v in value.items())
    return False


def is_valid_answer_value(value: Any) -> bool:
    """
    Allowed shapes: scalar, list of str, list of mappings, mapping,
    StagedFile, list of StagedFile.
    """
    if isinstance(value, _SCALARS) or isinstance(value, StagedFile):
        return True
    if isinstance(value, Mapping):
        return _is_json_value(value)
    if isinstance(value, list):
        if not value:
            return True
        if all(isinstance(v, str) for v in value):
            return True
        if all(isinstance(v, StagedFile) for v in value):
            return True
        if all(isinstance(v, Mapping) for v in value):
            return all(_is_json_value(v) for v in value)
    return False


# =============================================================================
# STORE
# =============================================================================

Listener = Callable[[Dict[str, Any]], None]


class AnswerStore:
    """
    Validated answer map.

    Writes through set()/update() must use a declared key and an allowed
    value shape. hydrate() is the only lenient entry point: it is fed by
    persisted drafts, which may predate the current key vocabulary.
    """

    def __init__(self, allowed_keys: Iterable[str], initial: Optional[Mapping[str, Any]] = None):
        self.allowed_keys = frozenset(allowed_keys)
        self._data: Dict[str, Any] = {}
        self._listeners: List[Listener] = []
        if initial:
            self.hydrate(initial, notify=False)

    # ---- read ----

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self):
        return iter(self._data)

    def snapshot(self) -> Dict[str, Any]:
        """Shallow copy, safe to hand to predicates and actions."""
        return dict(self._data)

    # ---- write ----

    def _check(self, key: str, value: Any):
        if key not in self.allowed_keys:
            raise UnknownAnswerKeyError(key)
        if not is_valid_answer_value(value):
            raise InvalidAnswerValueError(key, value)

    def set(self, key: str, value: Any):
        self._check(key, value)
        self._data[key] = value
        self._notify()

    def update(self, values: Mapping[str, Any]):
        """Apply several writes at once; nothing is applied if any write is invalid."""
        if not values:
            return
        for key, value in values.items():
            self._check(key, value)
        self._data.update(values)
        self._notify()

    def delete(self, key: str):
        if key in self._data:
            del self._data[key]
            self._notify()

    def hydrate(self, data: Mapping[str, Any], notify: bool = True):
        """Replace contents from a persisted draft."""
        unknown = [k for k in data if k not in self.allowed_keys]
        if unknown:
            logger.info(f"[Flow] Hydrating {len(unknown)} undeclared answer keys: {', '.join(sorted(unknown))}")
        self._data = dict(data)
        if notify:
            self._notify()

    def clear(self):
        self._data = {}
        self._notify()

    # ---- listeners ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self):
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)


# =============================================================================
# SERIALIZATION BOUNDARY
# =============================================================================

def _serialize_value(value: Any) -> Any:
    if isinstance(value, StagedFile):
        return value.metadata()
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    if isinstance(value, tuple):
        return [_serialize_value(v) for v in value]
    if isinstance(value, Mapping):
        return {k: _serialize_value(v) for k, v in value.items()}
    return value


def serialize_answers(answers: Mapping[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of answers: staged files become metadata, secrets are dropped."""
    return {
        key: _serialize_value(value)
        for key, value in answers.items()
        if key not in SECRET_KEYS
    }
