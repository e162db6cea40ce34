"""
Reusable Field Components for the Onboarding Flow

Provides Streamlit-based renderers that:
- Map each flow field type (text, select, boolean, file, table, ...) to a widget
- Seed widgets from the answer store and return the edited value
- Show "required" hints once the step gate has refused to let the user leave
"""

import hashlib
from typing import Optional, List, Dict, Any

import streamlit as st

from config.flow_schema import FieldDescriptor, FieldType, Option
from backend.answer_store import StagedFile, files_key, doc_id_key

BOOLEAN_LABELS = {"Yes": True, "No": False}


def get_field_key(field_id: str, prefix: str = "flow") -> str:
    """Generate unique session state key for a field."""
    return f"{prefix}_{field_id}"


def display_label(field: FieldDescriptor) -> str:
    return f"{field.label} *" if field.required else field.label


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def get_file_signature(uploaded_file) -> Optional[str]:
    if uploaded_file is None:
        return None
    digest = hashlib.md5(uploaded_file.getvalue()).hexdigest()
    return f"{uploaded_file.name}:{uploaded_file.size}:{digest}"


ACCEPT_EXTENSIONS = {
    "image/*": ["png", "jpg", "jpeg"],
    "application/pdf": ["pdf"],
}


def accept_to_extensions(accept: Optional[str]) -> Optional[List[str]]:
    """HTML accept string -> extensions for st.file_uploader."""
    if not accept:
        return None
    extensions = []
    for part in accept.split(","):
        part = part.strip()
        extensions.extend(ACCEPT_EXTENSIONS.get(part, [part.lstrip(".")] if part.startswith(".") else []))
    return extensions or None


def to_staged_file(uploaded_file) -> StagedFile:
    return StagedFile(
        name=uploaded_file.name,
        content=uploaded_file.getvalue(),
        mime_type=uploaded_file.type or "application/octet-stream",
    )


# =============================================================================
# SCALAR FIELDS
# =============================================================================

def render_text_field(field: FieldDescriptor, value: Any, disabled: bool = False, prefix: str = "flow") -> str:
    key = get_field_key(field.id, prefix)
    current = "" if value is None else str(value)

    if field.type == FieldType.TEXTAREA:
        return st.text_area(
            display_label(field), value=current, key=key,
            placeholder=field.placeholder or "", help=field.hint, disabled=disabled,
        )

    return st.text_input(
        display_label(field),
        value=current,
        key=key,
        type="password" if field.type == FieldType.PASSWORD else "default",
        placeholder=field.placeholder or "",
        help=field.hint,
        disabled=disabled,
    )


def render_choice_field(
    field: FieldDescriptor,
    value: Any,
    options: List[Option],
    disabled: bool = False,
    prefix: str = "flow"
) -> Optional[str]:
    """Radio or dropdown; returns the option value (not the label)."""
    key = get_field_key(field.id, prefix)
    values = [o.value for o in options]
    labels = {o.value: o.label for o in options}

    if field.type == FieldType.RADIO:
        index = values.index(value) if value in values else None
        return st.radio(
            display_label(field), options=values, index=index, key=key,
            format_func=lambda v: labels.get(v, v), help=field.hint, disabled=disabled,
            horizontal=len(values) <= 3,
        )

    choices = [""] + values
    index = choices.index(value) if value in choices else 0
    selected = st.selectbox(
        display_label(field), options=choices, index=index, key=key,
        format_func=lambda v: labels.get(v, "Select...") if v else "Select...",
        help=field.hint, disabled=disabled,
    )
    return selected or None


def render_multiselect_field(
    field: FieldDescriptor,
    value: Any,
    options: List[Option],
    disabled: bool = False,
    prefix: str = "flow"
) -> List[str]:
    values = [o.value for o in options]
    labels = {o.value: o.label for o in options}
    default = [v for v in (value or []) if v in values]
    return st.multiselect(
        display_label(field), options=values, default=default, key=get_field_key(field.id, prefix),
        format_func=lambda v: labels.get(v, v), help=field.hint, disabled=disabled,
    )


def render_boolean_field(field: FieldDescriptor, value: Any, disabled: bool = False, prefix: str = "flow") -> Optional[bool]:
    """Yes/No question; stays None until the user picks one."""
    options = list(BOOLEAN_LABELS)
    index = None
    if value is True:
        index = 0
    elif value is False:
        index = 1
    choice = st.radio(
        display_label(field), options=options, index=index, key=get_field_key(field.id, prefix),
        horizontal=True, help=field.hint, disabled=disabled,
    )
    return BOOLEAN_LABELS.get(choice) if choice else None


def render_checkbox_field(field: FieldDescriptor, value: Any, disabled: bool = False, prefix: str = "flow") -> bool:
    return st.checkbox(
        display_label(field), value=value is True, key=get_field_key(field.id, prefix),
        help=field.hint, disabled=disabled,
    )


# =============================================================================
# FILE FIELDS
# =============================================================================

def render_file_field(
    field: FieldDescriptor,
    answers: Dict[str, Any],
    disabled: bool = False,
    prefix: str = "flow"
) -> List[Any]:
    """
    Show what is already on file and return newly picked uploads
    (streamlit UploadedFile objects, not yet converted).
    """
    existing = answers.get(files_key(field.id)) or []
    doc_id = answers.get(doc_id_key(field.id))

    for f in existing:
        name = f.name if isinstance(f, StagedFile) else f.get("name", "document")
        status = "uploaded" if doc_id or (isinstance(f, dict) and f.get("document_id")) else "selected"
        st.caption(f"{name} ({status})")

    picked = st.file_uploader(
        display_label(field),
        type=accept_to_extensions(field.accept),
        accept_multiple_files=field.multiple,
        key=get_field_key(field.id, prefix),
        help=field.hint,
        disabled=disabled,
    )
    if picked is None:
        return []
    return list(picked) if isinstance(picked, list) else [picked]


# =============================================================================
# COMPOSITE FIELDS
# =============================================================================

def render_group_field(
    field: FieldDescriptor,
    value: Any,
    disabled: bool = False,
    prefix: str = "flow"
) -> Dict[str, Any]:
    """A fixed set of sub-questions stored as one mapping."""
    current = dict(value) if isinstance(value, dict) else {}
    st.markdown(f"**{display_label(field)}**")
    result = {}
    for item in field.items:
        item_value = render_field(item, current.get(item.id), item.options, disabled, prefix=f"{prefix}_{field.id}")
        if not is_empty(item_value):
            result[item.id] = item_value
    return result


def render_table_field(
    field: FieldDescriptor,
    value: Any,
    disabled: bool = False,
    prefix: str = "flow"
) -> List[Dict[str, Any]]:
    """Repeating rows (owners, authorised persons) edited in a data grid."""
    columns = [item.id for item in field.items]
    rows = [dict(r) for r in value] if isinstance(value, list) and value else [{c: "" for c in columns}]

    st.markdown(f"**{display_label(field)}**")
    edited = st.data_editor(
        rows,
        num_rows="dynamic",
        key=get_field_key(field.id, prefix),
        disabled=disabled,
        column_config={item.id: item.label for item in field.items},
        use_container_width=True,
    )
    if hasattr(edited, "to_dict"):
        edited = edited.to_dict("records")

    cleaned = []
    for row in edited or []:
        row = {c: row.get(c) for c in columns if not is_empty(row.get(c))}
        if row:
            cleaned.append(row)
    return cleaned


# =============================================================================
# DISPATCH
# =============================================================================

def render_field(
    field: FieldDescriptor,
    value: Any,
    options: Optional[List[Option]] = None,
    disabled: bool = False,
    prefix: str = "flow"
) -> Any:
    """
    Render a field based on its type and return the edited value.

    File fields are handled by render_file_field() because they need the
    whole answer map, not just their own value.
    """
    options = field.options if options is None else options

    if field.type in (FieldType.TEXT, FieldType.EMAIL, FieldType.PASSWORD, FieldType.TEL,
                      FieldType.TEXTAREA, FieldType.OTP):
        text = render_text_field(field, value, disabled, prefix)
        return text if text else None

    elif field.type == FieldType.NUMBER:
        text = render_text_field(field, value, disabled, prefix)
        return text.strip() or None

    elif field.type in (FieldType.SELECT, FieldType.RADIO):
        return render_choice_field(field, value, options, disabled, prefix)

    elif field.type == FieldType.MULTISELECT:
        return render_multiselect_field(field, value, options, disabled, prefix)

    elif field.type == FieldType.BOOLEAN:
        return render_boolean_field(field, value, disabled, prefix)

    elif field.type == FieldType.CHECKBOX:
        return render_checkbox_field(field, value, disabled, prefix)

    elif field.type == FieldType.GROUP:
        return render_group_field(field, value, disabled, prefix)

    elif field.type == FieldType.TABLE:
        return render_table_field(field, value, disabled, prefix)

    elif field.type == FieldType.NOTE:
        st.info(field.text or field.label)
        return None

    # Default to text
    return render_text_field(field, value, disabled, prefix) or None


def render_required_hint(field: FieldDescriptor, value: Any):
    """Shown only after a refused 'Next'."""
    if field.required and is_empty(value):
        st.error(f"{field.label} is required")
