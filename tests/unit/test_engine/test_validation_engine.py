"""Tests for ValidationEngine"""
from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from smartforms.domain.models import EvaluationContext, SmartField, ValidationRule
from smartforms.engine import errors_to_map


def field(field_id, field_type="text", label=None, **validation):
    return SmartField.model_validate({
        "field_id": field_id,
        "label": label or field_id.title(),
        "field_type": field_type,
        "validation": validation,
    })


class TestValidateField:

    def test_required_short_circuits(self, validation_engine, make_context):
        email = field("email", "email", required=True, pattern=r"@corp\.com$")
        result = validation_engine.validate_field(email, "", make_context())
        assert not result.valid
        assert [e.code for e in result.errors] == ["required"]
        assert result.errors[0].message == "Email is required"

    def test_optional_empty_value_passes(self, validation_engine, make_context):
        result = validation_engine.validate_field(field("notes", min_length=5), None, make_context())
        assert result.valid

    def test_number_bounds(self, validation_engine, make_context):
        amount = field("amount", "number", min=1, max=100)
        assert validation_engine.validate_field(amount, "50", make_context()).valid
        assert [e.code for e in validation_engine.validate_field(amount, 0, make_context()).errors] == ["min"]
        assert [e.code for e in validation_engine.validate_field(amount, 101, make_context()).errors] == ["max"]
        assert [e.code for e in validation_engine.validate_field(amount, "lots", make_context()).errors] == ["number"]

    def test_text_length_and_pattern(self, validation_engine, make_context):
        code = field("code", min_length=3, max_length=6, pattern=r"^[A-Z]+$", pattern_message="Use capitals")
        assert validation_engine.validate_field(code, "ABCD", make_context()).valid
        result = validation_engine.validate_field(code, "ab", make_context())
        assert [e.code for e in result.errors] == ["min_length", "pattern"]
        assert result.errors[1].message == "Use capitals"

    def test_email_and_url(self, validation_engine, make_context):
        email = field("email", "email")
        website = field("website", "url")
        assert validation_engine.validate_field(email, "someone@acme.io", make_context()).valid
        assert not validation_engine.validate_field(email, "not-an-email", make_context()).valid
        assert validation_engine.validate_field(website, "https://example.com/x", make_context()).valid
        assert not validation_engine.validate_field(website, "example", make_context()).valid

    def test_date_type(self, validation_engine, make_context):
        due = field("due", "date")
        assert validation_engine.validate_field(due, "2025-02-01", make_context()).valid
        assert [e.code for e in validation_engine.validate_field(due, "someday", make_context()).errors] == ["date"]

    def test_select_options(self, validation_engine, make_context):
        priority = SmartField.model_validate({
            "field_id": "priority",
            "field_type": "select",
            "options": [{"value": "low"}, {"value": "high"}],
        })
        assert validation_engine.validate_field(priority, "low", make_context()).valid
        assert [e.code for e in validation_engine.validate_field(priority, "urgent", make_context()).errors] == ["option"]

    def test_dynamic_options_are_not_checked(self, validation_engine, make_context):
        owner = SmartField(field_id="owner", field_type="select", options_source="users")
        assert validation_engine.validate_field(owner, "anyone", make_context()).valid

    def test_file_type_and_size(self, validation_engine, make_context):
        receipt = field("receipt", "file", allowed_file_types=["pdf", ".png"], max_file_size_mb=1)
        ok = {"name": "scan.PDF", "size": 1000}
        wrong_type = {"name": "scan.exe", "size": 1000}
        too_big = {"name": "scan.png", "size": 2 * 1024 * 1024}
        assert validation_engine.validate_field(receipt, ok, make_context()).valid
        assert [e.code for e in validation_engine.validate_field(receipt, [wrong_type, too_big], make_context()).errors] == [
            "file_type", "file_size",
        ]

    def test_layout_fields_are_skipped(self, validation_engine, make_context):
        header = field("header", "section_header", required=True)
        assert validation_engine.validate_field(header, None, make_context()).valid

    def test_builtin_custom_validators(self, validation_engine, make_context):
        context = make_context()
        start = field("start", "date", custom_validator="future_date")
        birth = field("birth", "date", custom_validator="min_age_18")
        phone = field("phone", "phone", custom_validator="phone")
        assert validation_engine.validate_field(start, "2025-06-01", context).valid
        assert [e.code for e in validation_engine.validate_field(start, "2024-06-01", context).errors] == ["future_date"]
        assert validation_engine.validate_field(birth, "2000-01-01", context).valid
        assert not validation_engine.validate_field(birth, "2010-01-01", context).valid
        assert validation_engine.validate_field(phone, "+966 50 123 4567", context).valid
        assert not validation_engine.validate_field(phone, "call me", context).valid

    def test_date_validators_with_naive_now(self, validation_engine):
        context = EvaluationContext(now=datetime(2026, 1, 1))
        start = field("start", "date", custom_validator="future_date")
        assert validation_engine.validate_field(start, "2030-01-01", context).valid
        assert not validation_engine.validate_field(start, "2025-01-01", context).valid

    def test_registered_validator(self, validation_engine, make_context):
        validation_engine.register_validator("even", lambda value, context: int(value) % 2 == 0)
        even = field("count", "number", custom_validator="even")
        assert validation_engine.validate_field(even, 4, make_context()).valid
        assert [e.code for e in validation_engine.validate_field(even, 3, make_context()).errors] == ["custom"]

    def test_unknown_validator_is_ignored(self, validation_engine, make_context):
        odd = field("count", custom_validator="does_not_exist")
        assert validation_engine.validate_field(odd, "x", make_context()).valid

    def test_arabic_messages(self, validation_engine, make_context):
        result = validation_engine.validate_field(field("name", label="الاسم", required=True), "", make_context(locale="ar"))
        assert result.errors[0].message == "الاسم مطلوب"

    def test_unsupported_locale_falls_back_to_english(self, validation_engine, make_context):
        result = validation_engine.validate_field(field("name", required=True), "", make_context(locale="fr"))
        assert result.errors[0].message == "Name is required"


class TestConditionalRequired:
    """A field required only when 'type' equals 'refund'"""

    @pytest.fixture
    def fields(self):
        return [
            field("type", "select"),
            field("reason", required=True, required_when={
                "conditions": [{"field_id": "type", "operator": "equals", "value": "refund"}],
            }),
        ]

    def test_refund_without_reason_fails(self, validation_engine, make_context, fields):
        data = {"type": "refund", "reason": ""}
        result = validation_engine.validate_form(fields, data, make_context(data=data))
        assert not result.valid
        assert [(e.field_id, e.code) for e in result.errors] == [("reason", "required")]

    def test_standard_without_reason_passes(self, validation_engine, make_context, fields):
        data = {"type": "standard", "reason": ""}
        assert validation_engine.validate_form(fields, data, make_context(data=data)).valid

    def test_conditional_rule_override_wins(self, validation_engine, make_context, fields):
        data = {"type": "refund"}
        result = validation_engine.validate_form(
            fields, data, make_context(data=data), field_updates={"reason": {"required": False}}
        )
        assert result.valid


class TestValidateForm:

    def test_errors_accumulate(self, validation_engine):
        fields = [field("name", required=True), field("email", "email"), field("age", "number", min=18)]
        data = {"email": "bad", "age": 12}
        result = validation_engine.validate_form(fields, data)
        assert [e.field_id for e in result.errors] == ["name", "email", "age"]
        assert data == {"email": "bad", "age": 12}

    def test_hidden_fields_are_skipped(self, validation_engine):
        fields = [
            field("name", required=True),
            SmartField.model_validate({"field_id": "secret", "hidden": True, "validation": {"required": True}}),
        ]
        result = validation_engine.validate_form(fields, {}, field_updates={"name": {"visible": False}})
        assert result.valid

    def test_shown_by_rule_overrides_hidden_flag(self, validation_engine):
        fields = [SmartField.model_validate({"field_id": "secret", "hidden": True, "validation": {"required": True}})]
        result = validation_engine.validate_form(fields, {}, field_updates={"secret": {"visible": True}})
        assert [e.code for e in result.errors] == ["required"]

    def test_cross_field_rule(self, validation_engine):
        fields = [field("start", "date", label="Start date"), field("end", "date", label="End date")]
        rules = [ValidationRule(
            rule_id="order", kind="cross_field", field_ids=["end", "start"], operator="greater_or_equal",
        )]
        assert validation_engine.validate_form(fields, {"start": "2025-01-01", "end": "2025-01-10"},
                                               validation_rules=rules).valid
        result = validation_engine.validate_form(fields, {"start": "2025-01-10", "end": "2025-01-01"},
                                                 validation_rules=rules)
        assert [(e.field_id, e.code, e.rule_id) for e in result.errors] == [("end", "cross_field", "order")]
        assert result.errors[0].message == "End date does not satisfy the comparison with Start date"

    def test_form_rules_with_applies_when(self, validation_engine):
        fields = [field("amount", "number"), field("type"), field("contact")]
        rules = [
            ValidationRule(rule_id="cap", kind="max", field_ids=["amount"], value=500, applies_when={
                "conditions": [{"field_id": "type", "operator": "equals", "value": "petty"}],
            }),
            ValidationRule(rule_id="contact_email", kind="email", field_ids=["contact"], message="Bad contact"),
            ValidationRule(rule_id="contact_needed", kind="required", field_ids=["type"]),
        ]
        result = validation_engine.validate_form(
            fields, {"amount": 900, "type": "petty", "contact": "nope"}, validation_rules=rules
        )
        assert [(e.rule_id, e.code) for e in result.errors] == [("cap", "max"), ("contact_email", "email")]
        assert result.errors[1].message == "Bad contact"

        result = validation_engine.validate_form(
            fields, {"amount": 900, "type": "travel"}, validation_rules=rules
        )
        assert result.valid

    def test_errors_to_map(self, validation_engine):
        fields = [field("name", required=True), field("code", min_length=3, pattern=r"^\d+$")]
        result = validation_engine.validate_form(fields, {"code": "a"})
        mapped = errors_to_map(result.errors)
        assert list(mapped) == ["name", "code"]
        assert len(mapped["code"]) == 2


class TestValidationRuleConstruction:

    def test_cross_field_needs_two_fields(self):
        with pytest.raises(PydanticValidationError):
            ValidationRule(rule_id="x", kind="cross_field", field_ids=["a"], operator="equals")

    def test_cross_field_rejects_unary_operator(self):
        with pytest.raises(PydanticValidationError):
            ValidationRule(rule_id="x", kind="cross_field", field_ids=["a", "b"], operator="is_empty")

    def test_min_needs_value(self):
        with pytest.raises(PydanticValidationError):
            ValidationRule(rule_id="x", kind="min", field_ids=["a"])

    def test_min_rejects_non_numeric_bound(self):
        with pytest.raises(PydanticValidationError):
            ValidationRule(rule_id="x", kind="min", field_ids=["amount"], value="ten")

    def test_numeric_string_bound(self, validation_engine, make_context):
        rule = ValidationRule(rule_id="floor", kind="min", field_ids=["amount"], value="10")
        result = validation_engine.validate_form(
            [field("amount", "number")], {"amount": 5}, make_context(data={"amount": 5}), validation_rules=[rule]
        )
        assert [e.code for e in result.errors] == ["min"]
