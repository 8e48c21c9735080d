"""Tests for domain model construction checks"""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from smartforms.domain.models import (
    EvaluationContext, FormTemplate, SubmissionSnapshot, UserContext, WorkflowConfig, WorkflowState,
)
from smartforms.domain.enums import StepKind, SubmissionStatus
from smartforms.domain.errors import ConcurrencyError, ConflictError, DomainError


def steps(*extra):
    return [
        {"step_id": "start", "kind": "start", "actions": [{"action_id": "go", "target_step_id": "end"}]},
        {"step_id": "end", "kind": "end"},
        *extra,
    ]


class TestWorkflowConfig:

    def test_end_step_defaults_to_completed(self):
        config = WorkflowConfig.model_validate({"steps": steps()})
        assert config.get_step("end").terminal_status == SubmissionStatus.COMPLETED
        assert config.start_step.step_id == "start"

    def test_explicit_start_step(self):
        config = WorkflowConfig.model_validate({
            "start_step_id": "intake",
            "steps": [
                {"step_id": "intake", "kind": "task", "actions": [{"action_id": "close", "target_step_id": "end"}]},
                {"step_id": "end", "kind": "end"},
            ],
        })
        assert config.start_step.kind == StepKind.TASK

    @pytest.mark.parametrize("bad_steps", [
        # two start steps
        steps({"step_id": "start2", "kind": "start"}),
        # duplicate step ids
        steps({"step_id": "end", "kind": "task"}),
        # unknown target
        [{"step_id": "start", "kind": "start", "actions": [{"action_id": "go", "target_step_id": "nowhere"}]}],
        # end step with non-terminal status
        steps({"step_id": "odd_end", "kind": "end", "terminal_status": "IN_PROGRESS"}),
        # task step whose active status is terminal
        steps({"step_id": "t", "kind": "task", "active_status": "COMPLETED"}),
        # follow-up action not defined
        steps({"step_id": "a", "kind": "approval", "on_approved_action": "missing"}),
        # duplicate action ids
        [{"step_id": "start", "kind": "start", "actions": [
            {"action_id": "go", "target_step_id": "start"},
            {"action_id": "go", "target_step_id": "start"},
        ]}],
    ])
    def test_graph_errors(self, bad_steps):
        with pytest.raises(PydanticValidationError):
            WorkflowConfig.model_validate({"steps": bad_steps})

    def test_needs_at_least_one_step(self):
        with pytest.raises(PydanticValidationError):
            WorkflowConfig.model_validate({"steps": []})


class TestFormTemplate:

    def test_duplicate_field_ids(self):
        with pytest.raises(PydanticValidationError):
            FormTemplate.model_validate({
                "template_id": "T",
                "fields": [{"field_id": "a"}, {"field_id": "a"}],
            })

    def test_approval_step_needs_config(self):
        document = {
            "template_id": "T",
            "workflow": {"steps": steps({"step_id": "appr", "kind": "approval"})},
        }
        with pytest.raises(PydanticValidationError):
            FormTemplate.model_validate(document)
        document["approval"] = {"levels": [{"approver_ids": ["u1"]}]}
        assert FormTemplate.model_validate(document).approval.levels[0].approver_ids == ["u1"]

    def test_unknown_top_level_keys_ignored(self):
        template = FormTemplate.model_validate({
            "template_id": "T",
            "created_by": "someone",
            "fields": [{"field_id": "a"}, {"field_id": "b", "field_type": "number"}],
        })
        assert template.field_ids == ["a", "b"]

    def test_unknown_field_type_rejected(self):
        with pytest.raises(PydanticValidationError):
            FormTemplate.model_validate({"template_id": "T", "fields": [{"field_id": "a", "field_type": "hologram"}]})


class TestEvaluationContext:

    def test_for_submission(self, now):
        submitter = UserContext(id="u1", roles=["employee"])
        state = WorkflowState(current_step_id="s", status=SubmissionStatus.IN_PROGRESS)
        submission = SubmissionSnapshot(submission_id="S1", data={"a": 1}, submitted_by=submitter, workflow_state=state)
        context = EvaluationContext.for_submission(submission, now=now, locale="ar")
        assert context.user.id == "u1"
        assert context.submission.id == "S1"
        assert context.submission.status == SubmissionStatus.IN_PROGRESS
        assert context.now == now
        assert context.locale == "ar"

    def test_copies_leave_original_untouched(self):
        context = EvaluationContext(data={"a": 1})
        updated = context.with_data({"b": 2}).with_status(SubmissionStatus.SUBMITTED)
        assert context.data == {"a": 1}
        assert context.submission.status is None
        assert updated.data == {"a": 1, "b": 2}
        assert updated.submission.status == SubmissionStatus.SUBMITTED

    def test_naive_now_is_read_as_utc(self):
        context = EvaluationContext(now=datetime(2026, 1, 1, 9, 30))
        assert context.now == datetime(2026, 1, 1, 9, 30, tzinfo=timezone.utc)

    def test_user_context_rejects_unknown_keys(self):
        with pytest.raises(PydanticValidationError):
            UserContext(id="u1", password="secret")


def test_domain_error_hierarchy():
    error = ConcurrencyError("stale", details={"expected_version": 1})
    assert isinstance(error, ConflictError)
    assert isinstance(error, DomainError)
    assert error.http_status == 409
    assert error.to_dict() == {
        "error": {"code": "CONCURRENCY_CONFLICT", "message": "stale", "details": {"expected_version": 1}}
    }
