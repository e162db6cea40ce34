"""
Onboarding Flow Schema Loader

Provides:
- Pydantic models for the step graph (steps, fields, show rules)
- A singleton loader that reads the authored flow from JSON
- Lookup helpers used by the flow controller and the answer store
"""

import json
import logging
from pathlib import Path
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS
# =============================================================================

class FieldType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    PASSWORD = "password"
    TEL = "tel"
    TEXTAREA = "textarea"
    NUMBER = "number"
    SELECT = "select"
    RADIO = "radio"
    MULTISELECT = "multiselect"
    CHECKBOX = "checkbox"
    BOOLEAN = "boolean"
    FILE = "file"
    OTP = "otp"
    NOTE = "note"  # Static text, never answered
    GROUP = "group"  # Value is a mapping keyed by item ids
    TABLE = "table"  # Value is a list of mappings keyed by item ids


# =============================================================================
# RULE + FIELD MODELS
# =============================================================================

class ShowRule(BaseModel):
    """
    One predicate of a rule set.

    Exactly one of equals / includes_any / exists is expected; a rule that
    carries none of them is treated as satisfied.
    """
    field: str
    equals: Optional[str] = None
    includes_any: Optional[List[str]] = Field(None, alias="includesAny")
    exists: Optional[bool] = None

    model_config = {"populate_by_name": True, "frozen": True}


class Option(BaseModel):
    """A selectable option for radio/select/multiselect fields."""
    value: str
    label: str
    group: Optional[str] = None

    model_config = {"frozen": True}


class FilterBy(BaseModel):
    """Restrict options to one group, chosen by the value of a driver field."""
    field: str
    map: Dict[str, str]

    model_config = {"frozen": True}


class FieldDescriptor(BaseModel):
    """Definition of a single field rendered on a step."""
    id: str
    label: str
    type: FieldType
    required: bool = False
    placeholder: Optional[str] = None
    hint: Optional[str] = None
    options: List[Option] = []
    show_if: List[ShowRule] = Field(default_factory=list, alias="showIf")
    filter_by: Optional[FilterBy] = Field(None, alias="filterBy")
    accept: Optional[str] = None  # For file fields
    multiple: bool = False
    text: Optional[str] = None  # For note fields
    document_type: Optional[str] = None  # Document intake type for file fields
    items: List["FieldDescriptor"] = []  # Sub-fields of group/table fields

    model_config = {"populate_by_name": True, "frozen": True}

    @property
    def is_file(self) -> bool:
        return self.type == FieldType.FILE


class StepDescriptor(BaseModel):
    """One screen of the wizard."""
    id: str
    label: str
    description: Optional[str] = None
    fields: List[FieldDescriptor] = []
    show_if: List[ShowRule] = Field(default_factory=list, alias="showIf")

    model_config = {"populate_by_name": True, "frozen": True}

    def get_field(self, field_id: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None


class FlowMeta(BaseModel):
    title: str
    version: str = "v1"


class FlowSpec(BaseModel):
    """The complete, ordered step graph."""
    meta: FlowMeta
    steps: List[StepDescriptor]

    model_config = {"frozen": True}

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: List[StepDescriptor]) -> List[StepDescriptor]:
        if not steps:
            raise ValueError("A flow needs at least one step")
        seen = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id: {step.id}")
            seen.add(step.id)
        return steps

    @property
    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    @property
    def terminal_step_id(self) -> str:
        return self.steps[-1].id

    def index_of(self, step_id: Optional[str]) -> int:
        """Absolute index of a step id, or -1."""
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return -1

    def get_step(self, step_id: str) -> Optional[StepDescriptor]:
        idx = self.index_of(step_id)
        return self.steps[idx] if idx >= 0 else None

    def all_fields(self) -> List[FieldDescriptor]:
        fields = []
        for step in self.steps:
            fields.extend(step.fields)
        return fields

    def file_field_ids(self) -> List[str]:
        return [f.id for f in self.all_fields() if f.is_file]


# =============================================================================
# SCHEMA LOADER CLASS
# =============================================================================

class FlowSchemaLoader:
    """Loads the onboarding step graph once per process."""

    _instance = None
    _spec: Optional[FlowSpec] = None

    def __new__(cls):
        """Singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def load(self, config_path: Optional[str] = None) -> FlowSpec:
        """Load the flow from JSON. Explicit paths always reload."""
        if self._spec is not None and config_path is None:
            return self._spec

        if config_path is None:
            path = Path(__file__).parent / "onboarding_flow.json"
        else:
            path = Path(config_path)

        if not path.exists():
            raise FileNotFoundError(f"Onboarding flow config not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        spec = FlowSpec(**data)
        logger.info(f"[Flow] Loaded {len(spec.steps)} steps from {path.name}")

        if config_path is None:
            FlowSchemaLoader._spec = spec
        return spec


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def get_flow_spec() -> FlowSpec:
    """Get the default onboarding step graph."""
    return FlowSchemaLoader().load()


def export_flow_json(spec: Optional[FlowSpec] = None) -> Dict[str, Any]:
    """Export the flow as a JSON-serializable dict (camelCase keys)."""
    spec = spec or get_flow_spec()
    return spec.model_dump(by_alias=True, exclude_none=True)
