"""Validation Engine - Field and form validation against SmartField specs"""
import re
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from email_validator import EmailNotValidError, validate_email

from ..config.settings import Settings, get_settings
from ..domain.models import (
    Condition, EvaluationContext, FieldError, FieldUpdateMap, SmartField,
    ValidationResult, ValidationRule,
)
from ..domain.enums import (
    FieldProperty, SmartFieldType, ValidatorKind,
    FILE_FIELD_TYPES, LAYOUT_FIELD_TYPES,
)
from ..utils.logger import get_logger
from ..utils.time import age_in_years, to_datetime
from .condition_evaluator import ConditionalLogicEngine, is_empty, to_number

logger = get_logger(__name__)

# (value, context) -> passes
CustomValidator = Callable[[Any, EvaluationContext], bool]

_PHONE_PATTERN = re.compile(r"^\+?[0-9\s\-()]{7,20}$")

MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "required": "{label} is required",
        "min": "{label} must be at least {limit}",
        "max": "{label} must be at most {limit}",
        "min_length": "{label} must be at least {limit} characters",
        "max_length": "{label} must be at most {limit} characters",
        "number": "{label} must be a number",
        "pattern": "{label} has an invalid format",
        "email": "{label} must be a valid email address",
        "url": "{label} must be a valid URL",
        "date": "{label} must be a valid date",
        "option": "{label} has a value that is not one of the allowed options",
        "file_type": "{label} only accepts {limit} files",
        "file_size": "{label} must be smaller than {limit} MB",
        "cross_field": "{label} does not satisfy the comparison with {other}",
        "custom": "{label} is invalid",
        "future_date": "{label} must be a future date",
        "past_date": "{label} must be a past date",
        "min_age_18": "{label} indicates an age under 18",
        "phone": "{label} must be a valid phone number",
    },
    "ar": {
        "required": "{label} مطلوب",
        "min": "يجب أن تكون قيمة {label} {limit} على الأقل",
        "max": "يجب ألا تتجاوز قيمة {label} {limit}",
        "min_length": "يجب أن يحتوي {label} على {limit} أحرف على الأقل",
        "max_length": "يجب ألا يتجاوز {label} {limit} حرفًا",
        "number": "يجب أن يكون {label} رقمًا",
        "pattern": "صيغة {label} غير صحيحة",
        "email": "يجب أن يكون {label} بريدًا إلكترونيًا صحيحًا",
        "url": "يجب أن يكون {label} رابطًا صحيحًا",
        "date": "يجب أن يكون {label} تاريخًا صحيحًا",
        "option": "قيمة {label} ليست من الخيارات المسموح بها",
        "file_type": "{label} يقبل الملفات من نوع {limit} فقط",
        "file_size": "يجب أن يكون حجم {label} أقل من {limit} ميجابايت",
        "cross_field": "{label} لا يحقق شرط المقارنة مع {other}",
        "custom": "{label} غير صالح",
        "future_date": "يجب أن يكون {label} تاريخًا مستقبليًا",
        "past_date": "يجب أن يكون {label} تاريخًا سابقًا",
        "min_age_18": "يجب ألا يقل العمر في {label} عن 18 سنة",
        "phone": "يجب أن يكون {label} رقم هاتف صحيحًا",
    },
}


# ============================================================================
# Built-in custom validators
# ============================================================================

def _future_date(value: Any, context: EvaluationContext) -> bool:
    parsed = to_datetime(value)
    return parsed is not None and parsed > context.now


def _past_date(value: Any, context: EvaluationContext) -> bool:
    parsed = to_datetime(value)
    return parsed is not None and parsed < context.now


def _min_age_18(value: Any, context: EvaluationContext) -> bool:
    parsed = to_datetime(value)
    return parsed is not None and age_in_years(parsed, context.now) >= 18


def _phone(value: Any, context: EvaluationContext) -> bool:
    return bool(_PHONE_PATTERN.match(str(value)))


BUILTIN_VALIDATORS: Dict[str, CustomValidator] = {
    "future_date": _future_date,
    "past_date": _past_date,
    "min_age_18": _min_age_18,
    "phone": _phone,
}


def errors_to_map(errors: Iterable[FieldError]) -> Dict[str, List[str]]:
    """Group error messages by field id"""
    result: Dict[str, List[str]] = {}
    for error in errors:
        result.setdefault(error.field_id, []).append(error.message)
    return result


class ValidationEngine:
    """
    Validate field values and whole forms

    Validation is read-only: data is never modified and failures are
    returned as FieldError entries, never raised.
    """

    def __init__(
        self,
        condition_engine: Optional[ConditionalLogicEngine] = None,
        settings: Optional[Settings] = None
    ):
        self.condition_engine = condition_engine or ConditionalLogicEngine()
        self.settings = settings or get_settings()
        self._validators: Dict[str, CustomValidator] = dict(BUILTIN_VALIDATORS)

    def register_validator(self, name: str, validator: CustomValidator) -> None:
        """Register a named custom validator for this engine instance"""
        self._validators[name] = validator

    # ========================================================================
    # Messages
    # ========================================================================

    def _message(self, code: str, context: EvaluationContext, **params: Any) -> str:
        locale = context.locale or self.settings.default_locale
        catalogue = MESSAGES.get(locale, MESSAGES["en"])
        template = catalogue.get(code) or MESSAGES["en"].get(code) or MESSAGES["en"]["custom"]
        return template.format(**params)

    def _error(
        self,
        field: SmartField,
        code: str,
        context: EvaluationContext,
        rule_id: Optional[str] = None,
        message: Optional[str] = None,
        **params: Any
    ) -> FieldError:
        label = field.label or field.field_id
        return FieldError(
            field_id=field.field_id,
            code=code,
            message=message or self._message(code, context, label=label, **params),
            rule_id=rule_id
        )

    # ========================================================================
    # Field validation
    # ========================================================================

    def is_required(
        self,
        field: SmartField,
        context: EvaluationContext,
        override: Optional[bool] = None
    ) -> bool:
        """Decide whether 'required' is in force for this context"""
        if override is not None:
            return override
        validation = field.validation
        if not validation.required:
            return False
        if validation.required_when is None:
            return True
        return self.condition_engine.evaluate(validation.required_when, context)

    def validate_field(
        self,
        field: SmartField,
        value: Any,
        context: Optional[EvaluationContext] = None,
        required: Optional[bool] = None
    ) -> ValidationResult:
        """
        Validate a single field value

        Args:
            field: Field definition
            value: Submitted value
            context: Evaluation snapshot (used for conditional requiredness)
            required: Requiredness computed by conditional rules, if any

        Returns:
            ValidationResult; a required failure short-circuits other checks
        """
        context = context or EvaluationContext(data={field.field_id: value})

        if field.field_type in LAYOUT_FIELD_TYPES:
            return ValidationResult()

        if is_empty(value):
            if self.is_required(field, context, required):
                return ValidationResult(valid=False, errors=[self._error(field, "required", context)])
            return ValidationResult()

        errors = self._type_checks(field, value, context)

        validation = field.validation
        if validation.pattern:
            try:
                matched = re.search(validation.pattern, str(value)) is not None
            except re.error as e:
                logger.warning(
                    f"Invalid validation pattern on field {field.field_id}: {e}",
                    extra={"field_id": field.field_id}
                )
                matched = True
            if not matched:
                errors.append(self._error(field, "pattern", context, message=validation.pattern_message))

        if validation.custom_validator:
            error = self._run_custom(field, validation.custom_validator, value, context)
            if error:
                errors.append(error)

        return ValidationResult(valid=not errors, errors=errors)

    def _type_checks(self, field: SmartField, value: Any, context: EvaluationContext) -> List[FieldError]:
        errors: List[FieldError] = []
        validation = field.validation
        field_type = field.field_type

        if field_type in (SmartFieldType.NUMBER, SmartFieldType.DECIMAL):
            number = to_number(value)
            if number is None:
                return [self._error(field, "number", context)]
            if validation.min is not None and number < validation.min:
                errors.append(self._error(field, "min", context, limit=validation.min))
            if validation.max is not None and number > validation.max:
                errors.append(self._error(field, "max", context, limit=validation.max))
            return errors

        if field_type in FILE_FIELD_TYPES:
            return self._file_checks(field, value, context)

        if field_type in (SmartFieldType.SELECT, SmartFieldType.RADIO, SmartFieldType.MULTI_SELECT):
            return self._option_checks(field, value, context)

        if field_type in (SmartFieldType.DATE, SmartFieldType.DATETIME):
            if to_datetime(value) is None:
                return [self._error(field, "date", context)]
            return errors

        if isinstance(value, str):
            if validation.min_length is not None and len(value) < validation.min_length:
                errors.append(self._error(field, "min_length", context, limit=validation.min_length))
            if validation.max_length is not None and len(value) > validation.max_length:
                errors.append(self._error(field, "max_length", context, limit=validation.max_length))

        if field_type == SmartFieldType.EMAIL and not self._is_email(value):
            errors.append(self._error(field, "email", context))
        elif field_type == SmartFieldType.URL and not self._is_url(value):
            errors.append(self._error(field, "url", context))

        return errors

    def _option_checks(self, field: SmartField, value: Any, context: EvaluationContext) -> List[FieldError]:
        # Dynamically loaded options are resolved by the caller
        if field.options_source or not field.options:
            return []
        allowed = [option.value for option in field.options]
        values = value if isinstance(value, list) else [value]
        if any(v not in allowed for v in values):
            return [self._error(field, "option", context)]
        return []

    def _file_checks(self, field: SmartField, value: Any, context: EvaluationContext) -> List[FieldError]:
        errors: List[FieldError] = []
        validation = field.validation
        max_mb = validation.max_file_size_mb or self.settings.default_max_file_size_mb
        allowed = [t.lower().lstrip(".") for t in validation.allowed_file_types]
        files = value if isinstance(value, list) else [value]

        for item in files:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or item.get("filename") or "")
            extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
            if allowed and extension not in allowed:
                errors.append(self._error(field, "file_type", context, limit=", ".join(allowed)))
            size = item.get("size")
            if isinstance(size, (int, float)) and size > max_mb * 1024 * 1024:
                errors.append(self._error(field, "file_size", context, limit=max_mb))
        return errors

    def _is_email(self, value: Any) -> bool:
        try:
            validate_email(str(value), check_deliverability=False)
            return True
        except EmailNotValidError:
            return False

    def _is_url(self, value: Any) -> bool:
        parsed = urlparse(str(value))
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)

    def _run_custom(
        self,
        field: SmartField,
        name: str,
        value: Any,
        context: EvaluationContext,
        rule_id: Optional[str] = None,
        message: Optional[str] = None
    ) -> Optional[FieldError]:
        validator = self._validators.get(name)
        if validator is None:
            logger.warning(
                f"Unknown custom validator '{name}' on field {field.field_id}",
                extra={"field_id": field.field_id}
            )
            return None
        if validator(value, context):
            return None
        code = name if name in MESSAGES["en"] else "custom"
        return self._error(field, code, context, rule_id=rule_id, message=message)

    # ========================================================================
    # Form validation
    # ========================================================================

    def validate_form(
        self,
        fields: Iterable[SmartField],
        data: Dict[str, Any],
        context: Optional[EvaluationContext] = None,
        validation_rules: Iterable[ValidationRule] = (),
        field_updates: Optional[FieldUpdateMap] = None
    ) -> ValidationResult:
        """
        Validate every field, then every applicable form-level rule

        Errors accumulate; validation never stops at the first failure.

        Args:
            fields: Field definitions
            data: Submitted values (not modified)
            context: Evaluation snapshot; built from data if omitted
            validation_rules: Form-level rules
            field_updates: Output of conditional rules (visibility/requiredness)

        Returns:
            ValidationResult with all errors
        """
        fields = list(fields)
        field_updates = field_updates or {}
        if context is None:
            context = EvaluationContext(data=data, known_fields=[f.field_id for f in fields])
        elif context.data is not data:
            context = context.model_copy(update={"data": data})

        by_id = {f.field_id: f for f in fields}
        hidden = {f.field_id for f in fields if self._is_hidden(f, field_updates)}
        errors: List[FieldError] = []

        for field in fields:
            if field.field_id in hidden:
                continue
            required = field_updates.get(field.field_id, {}).get(FieldProperty.REQUIRED.value)
            result = self.validate_field(field, data.get(field.field_id), context, required=required)
            errors.extend(result.errors)

        for rule in validation_rules:
            if rule.applies_when is not None and not self.condition_engine.evaluate(rule.applies_when, context):
                continue
            errors.extend(self._apply_rule(rule, by_id, hidden, data, context))

        if errors:
            logger.info(f"Form validation failed with {len(errors)} error(s)")
        return ValidationResult(valid=not errors, errors=errors)

    def _is_hidden(self, field: SmartField, field_updates: FieldUpdateMap) -> bool:
        visible = field_updates.get(field.field_id, {}).get(FieldProperty.VISIBLE.value)
        if visible is not None:
            return not visible
        return field.hidden

    def _apply_rule(
        self,
        rule: ValidationRule,
        by_id: Dict[str, SmartField],
        hidden: set,
        data: Dict[str, Any],
        context: EvaluationContext
    ) -> List[FieldError]:
        errors: List[FieldError] = []

        def field_for(field_id: str) -> SmartField:
            return by_id.get(field_id) or SmartField(field_id=field_id, label=field_id)

        if rule.kind == ValidatorKind.CROSS_FIELD:
            first_id, second_id = rule.field_ids
            if first_id in hidden or second_id in hidden:
                return errors
            left, right = data.get(first_id), data.get(second_id)
            if is_empty(left) or is_empty(right):
                return errors
            condition = Condition(field_id=first_id, operator=rule.operator, value=right)
            if not self.condition_engine.evaluate_condition(condition, context):
                other = field_for(second_id)
                errors.append(self._error(
                    field_for(first_id), "cross_field", context,
                    rule_id=rule.rule_id, message=rule.message,
                    other=other.label or other.field_id
                ))
            return errors

        for field_id in rule.field_ids:
            if field_id in hidden:
                continue
            field = field_for(field_id)
            value = data.get(field_id)

            if rule.kind == ValidatorKind.REQUIRED:
                if is_empty(value):
                    errors.append(self._error(field, "required", context, rule_id=rule.rule_id, message=rule.message))
                continue

            if is_empty(value):
                continue

            if rule.kind in (ValidatorKind.MIN, ValidatorKind.MAX):
                number = to_number(value)
                limit = to_number(rule.value)
                if number is None:
                    errors.append(self._error(field, "number", context, rule_id=rule.rule_id, message=rule.message))
                elif rule.kind == ValidatorKind.MIN and number < limit:
                    errors.append(self._error(field, "min", context, rule_id=rule.rule_id, message=rule.message, limit=rule.value))
                elif rule.kind == ValidatorKind.MAX and number > limit:
                    errors.append(self._error(field, "max", context, rule_id=rule.rule_id, message=rule.message, limit=rule.value))
            elif rule.kind == ValidatorKind.PATTERN:
                try:
                    matched = re.search(rule.pattern, str(value)) is not None
                except re.error as e:
                    logger.warning(f"Invalid pattern in validation rule {rule.rule_id}: {e}", extra={"rule_id": rule.rule_id})
                    matched = True
                if not matched:
                    errors.append(self._error(field, "pattern", context, rule_id=rule.rule_id, message=rule.message))
            elif rule.kind == ValidatorKind.EMAIL:
                if not self._is_email(value):
                    errors.append(self._error(field, "email", context, rule_id=rule.rule_id, message=rule.message))
            elif rule.kind == ValidatorKind.CUSTOM:
                error = self._run_custom(field, rule.validator, value, context, rule_id=rule.rule_id, message=rule.message)
                if error:
                    errors.append(error)

        return errors
