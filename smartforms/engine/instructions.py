"""Instruction Builder - Turn configured actions into side-effect instructions"""
import re
from typing import Any, Dict, Optional

from ..domain.models import (
    CallWebhookAction, CreateTaskAction, EvaluationContext, FieldUpdate, Instruction,
    NotifyAction, SetFieldValueAction,
)
from ..domain.enums import FieldProperty, InstructionType
from ..utils.time import add_hours, format_iso

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def _lookup(path: str, context: EvaluationContext) -> Any:
    head, _, rest = path.partition(".")
    if head == "data":
        value: Any = context.data
    elif head == "user":
        value = context.user.model_dump(mode="json") if context.user else {}
    elif head == "submission":
        value = context.submission.model_dump(mode="json")
    elif head == "now":
        return format_iso(context.now)
    else:
        return None
    for part in rest.split(".") if rest else []:
        value = value.get(part) if isinstance(value, dict) else None
    # user.<attr> falls back to user.attributes.<attr>
    if value is None and head == "user" and context.user is not None and rest:
        value = context.user.attributes.get(rest)
    return value


def render_template(value: Any, context: EvaluationContext) -> Any:
    """
    Substitute {{data.x}}, {{user.id}}, {{submission.id}} placeholders

    A string that is exactly one placeholder keeps the referenced value's
    type; strings, lists and dicts are rendered recursively.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            return _lookup(whole.group(1), context)

        def replace(match: "re.Match") -> str:
            resolved = _lookup(match.group(1), context)
            return "" if resolved is None else str(resolved)

        return _PLACEHOLDER.sub(replace, value)
    if isinstance(value, list):
        return [render_template(v, context) for v in value]
    if isinstance(value, dict):
        return {k: render_template(v, context) for k, v in value.items()}
    return value


def build_instruction(action: Any, source: str, context: EvaluationContext) -> Optional[Instruction]:
    """Instruction for notify, call_webhook and create_task actions; None otherwise"""
    payload: Dict[str, Any]
    if isinstance(action, NotifyAction):
        instruction_type = InstructionType.NOTIFY
        payload = {
            "recipients": render_template(action.recipients, context),
            "template": action.template,
            "subject": render_template(action.subject, context),
            "message": render_template(action.message, context),
            "channel": action.channel,
        }
    elif isinstance(action, CallWebhookAction):
        instruction_type = InstructionType.CALL_WEBHOOK
        payload = {
            "url": render_template(action.url, context),
            "method": action.method.upper(),
            "headers": render_template(action.headers, context),
            "payload": render_template(action.payload, context),
        }
    elif isinstance(action, CreateTaskAction):
        instruction_type = InstructionType.CREATE_TASK
        payload = {
            "title": render_template(action.title, context),
            "description": render_template(action.description, context),
            "assignee": render_template(action.assignee, context),
            "priority": action.priority,
            "due_at": (
                format_iso(add_hours(context.now, action.due_in_hours))
                if action.due_in_hours is not None else None
            ),
        }
    else:
        return None

    if context.submission.id is not None:
        payload["submission_id"] = context.submission.id
    return Instruction(type=instruction_type, source=source, payload=payload)


def build_field_update(action: SetFieldValueAction, source: str, context: EvaluationContext) -> FieldUpdate:
    """Field delta for a set_field_value action"""
    return FieldUpdate(
        field_id=action.field_id,
        property=FieldProperty.VALUE,
        value=render_template(action.value, context),
        rule_id=source
    )
