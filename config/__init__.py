# Config module
from .settings import settings, validate_settings
from .flow_schema import (
    FieldType,
    ShowRule,
    Option,
    FilterBy,
    FieldDescriptor,
    StepDescriptor,
    FlowMeta,
    FlowSpec,
    FlowSchemaLoader,
    get_flow_spec,
    export_flow_json,
)

__all__ = [
    "settings",
    "validate_settings",
    "FieldType",
    "ShowRule",
    "Option",
    "FilterBy",
    "FieldDescriptor",
    "StepDescriptor",
    "FlowMeta",
    "FlowSpec",
    "FlowSchemaLoader",
    "get_flow_spec",
    "export_flow_json",
]
