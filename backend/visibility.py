"""
Visibility Rule Evaluator

Decides which steps and fields are currently relevant. Rules are a fixed
predicate vocabulary (equals / includesAny / exists) combined with AND.
Step visibility additionally passes through a short override table that
is consulted before the declared rules.
"""

from typing import Any, Callable, List, Mapping, Optional, Sequence

from config.flow_schema import FieldDescriptor, FilterBy, FlowSpec, Option, ShowRule, StepDescriptor


# =============================================================================
# PREDICATES
# =============================================================================

def is_truthy(value: Any) -> bool:
    """Non-empty string, non-empty list, or any other non-None value."""
    if value is None:
        return False
    if isinstance(value, str):
        return len(value.strip()) > 0
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


def value_includes_any(value: Any, targets: Sequence[str]) -> bool:
    if isinstance(value, (list, tuple)):
        return any(_as_rule_string(v) in targets for v in value)
    if isinstance(value, str):
        return value in targets
    return False


def _as_rule_string(value: Any) -> str:
    # Answers written by yes/no toggles are real booleans; rules compare "true"/"false"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def rule_satisfied(rule: ShowRule, answers: Mapping[str, Any]) -> bool:
    value = answers.get(rule.field)
    if rule.exists:
        return is_truthy(value)
    if rule.equals is not None:
        if value is None:
            return False
        return _as_rule_string(value) == str(rule.equals)
    if rule.includes_any:
        return value_includes_any(value, rule.includes_any)
    return True


def visible_by_rules(rules: Optional[Sequence[ShowRule]], answers: Mapping[str, Any]) -> bool:
    """True when every rule holds; an empty rule set is always visible."""
    if not rules:
        return True
    for rule in rules:
        if not rule_satisfied(rule, answers):
            return False
    return True


# =============================================================================
# FIELDS
# =============================================================================

def filter_options_by_map(
    options: Sequence[Option],
    filter_by: Optional[FilterBy],
    answers: Mapping[str, Any],
) -> List[Option]:
    """Keep only the option group selected by the driver field."""
    if filter_by is None:
        return list(options)
    driver = answers.get(filter_by.field)
    group = filter_by.map.get(_as_rule_string(driver)) if driver is not None else None
    if not group:
        return []
    return [o for o in options if o.group == group]


def visible_fields(step: StepDescriptor, answers: Mapping[str, Any]) -> List[FieldDescriptor]:
    return [f for f in step.fields if visible_by_rules(f.show_if, answers)]


# =============================================================================
# STEP OVERRIDES
# =============================================================================

# (step_id, answers, resume_mode) -> True/False to force, None to defer
StepOverride = Callable[[str, Mapping[str, Any], bool], Optional[bool]]

CREATION_STEP_IDS = ("accountSelection", "login")


def is_business(answers: Mapping[str, Any]) -> bool:
    return answers.get("accountType") == "business"


def is_basic_business_path(answers: Mapping[str, Any]) -> bool:
    if not is_business(answers):
        return False
    if answers.get("businessFlow") == "basic":
        return True
    resolution = answers.get("onboardingResolution")
    return isinstance(resolution, Mapping) and resolution.get("low_risk_service_provider") is True


def _hide_creation_steps_on_resume(step_id, answers, resume_mode):
    if resume_mode and step_id in CREATION_STEP_IDS:
        return False
    return None


def _hide_questionnaire_on_basic_path(step_id, answers, resume_mode):
    if step_id == "questionnaire" and is_basic_business_path(answers):
        return False
    return None


def _pin_documents_for_business(step_id, answers, resume_mode):
    if step_id == "companyDetails" and is_business(answers):
        return True
    return None


STEP_OVERRIDES: List[StepOverride] = [
    _hide_creation_steps_on_resume,
    _hide_questionnaire_on_basic_path,
    _pin_documents_for_business,
]


def step_visible(step: StepDescriptor, answers: Mapping[str, Any], resume_mode: bool = False) -> bool:
    for override in STEP_OVERRIDES:
        forced = override(step.id, answers, resume_mode)
        if forced is not None:
            return forced
    return visible_by_rules(step.show_if, answers)


def compute_visible_steps(
    spec: FlowSpec,
    answers: Mapping[str, Any],
    resume_mode: bool = False,
) -> List[StepDescriptor]:
    """Visible subset of the step graph, in graph order."""
    return [s for s in spec.steps if step_visible(s, answers, resume_mode)]
