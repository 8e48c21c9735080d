"""
Pytest Configuration and Fixtures

This file contains shared fixtures and configuration for all tests.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from smartforms.config.settings import Settings
from smartforms.domain.models import (
    ApprovalConfig, ApprovalLevel, EvaluationContext, SubmissionRef,
    SubmissionSnapshot, UserContext, WorkflowActionContext, WorkflowConfig, WorkflowState,
)
from smartforms.domain.enums import SubmissionStatus
from smartforms.engine import (
    ApprovalEngine, AutoAssignmentEngine, ConditionalLogicEngine,
    RulesEngine, ValidationEngine, WorkflowEngine,
)

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    """Fixed evaluation instant"""
    return NOW


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment"""
    return Settings(_env_file=None, default_escalation_policy="notify_only")


@pytest.fixture
def requester() -> UserContext:
    return UserContext(
        id="u-requester",
        name="Requester",
        roles=["employee"],
        attributes={"site_id": "riyadh", "department": "finance"},
    )


@pytest.fixture
def manager() -> UserContext:
    return UserContext(id="u-manager", name="Manager", roles=["manager", "employee"])


@pytest.fixture
def make_context(requester):
    """Factory for evaluation contexts"""
    def _make(
        data: Optional[Dict[str, Any]] = None,
        user: Optional[UserContext] = None,
        status: Optional[SubmissionStatus] = None,
        known_fields: Optional[List[str]] = None,
        locale: Optional[str] = None,
    ) -> EvaluationContext:
        return EvaluationContext(
            data=data or {},
            user=user or requester,
            submission=SubmissionRef(id="SUB-1", status=status),
            known_fields=known_fields,
            locale=locale,
            now=NOW,
        )
    return _make


@pytest.fixture
def make_submission(requester):
    """Factory for submission snapshots"""
    def _make(
        data: Optional[Dict[str, Any]] = None,
        state: Optional[WorkflowState] = None,
        submission_id: str = "SUB-1",
    ) -> SubmissionSnapshot:
        return SubmissionSnapshot(
            submission_id=submission_id,
            template_id="TPL-1",
            data=data or {},
            submitted_by=requester,
            workflow_state=state,
        )
    return _make


@pytest.fixture
def condition_engine() -> ConditionalLogicEngine:
    return ConditionalLogicEngine()


@pytest.fixture
def validation_engine(condition_engine, settings) -> ValidationEngine:
    return ValidationEngine(condition_engine, settings)


@pytest.fixture
def assignment_engine(condition_engine) -> AutoAssignmentEngine:
    return AutoAssignmentEngine(condition_engine)


@pytest.fixture
def approval_engine(condition_engine, settings) -> ApprovalEngine:
    return ApprovalEngine(condition_engine=condition_engine, settings=settings)


@pytest.fixture
def workflow_engine(condition_engine, approval_engine, assignment_engine) -> WorkflowEngine:
    return WorkflowEngine(
        condition_engine=condition_engine,
        approval_engine=approval_engine,
        assignment_engine=assignment_engine,
    )


@pytest.fixture
def rules_engine(condition_engine, assignment_engine, approval_engine, workflow_engine) -> RulesEngine:
    return RulesEngine(
        condition_engine=condition_engine,
        assignment_engine=assignment_engine,
        approval_engine=approval_engine,
        workflow_engine=workflow_engine,
    )


@pytest.fixture
def sequential_chain() -> ApprovalConfig:
    """Two single-approver sequential levels"""
    return ApprovalConfig(levels=[
        ApprovalLevel(name="Manager", kind="sequential", approver_ids=["u-manager"]),
        ApprovalLevel(name="Director", kind="sequential", approver_ids=["u-director"]),
    ])


@pytest.fixture
def expense_workflow(sequential_chain) -> WorkflowConfig:
    """start -> review (task, assigned) -> approval -> done / rework loop"""
    return WorkflowConfig.model_validate({
        "steps": [
            {
                "step_id": "start",
                "kind": "start",
                "actions": [{"action_id": "submit", "target_step_id": "review"}],
            },
            {
                "step_id": "review",
                "kind": "task",
                "assignment": {
                    "rule_id": "reviewers",
                    "strategy": "load_balance",
                    "candidates": [{"id": "agent-a"}, {"id": "agent-b"}],
                },
                "actions": [
                    {
                        "action_id": "send_for_approval",
                        "target_step_id": "approval",
                        "required_roles": ["agent"],
                        "auto_actions": [
                            {"type": "notify", "recipients": ["{{user.id}}"], "template": "sent_for_approval"},
                        ],
                    },
                    {
                        "action_id": "cancel",
                        "target_step_id": "cancelled",
                        "requires_comment": True,
                    },
                    {
                        "action_id": "fast_track",
                        "target_step_id": "done",
                        "guard": {"operator": "AND", "conditions": [
                            {"field_id": "amount", "operator": "less_than", "value": 100},
                        ]},
                    },
                ],
            },
            {
                "step_id": "approval",
                "kind": "approval",
                "approval": sequential_chain.model_dump(mode="json"),
                "on_approved_action": "finish",
                "on_rejected_action": "rework",
                "actions": [
                    {"action_id": "finish", "target_step_id": "done"},
                    {"action_id": "rework", "target_step_id": "review", "auto_assign": False},
                    {"action_id": "withdraw", "target_step_id": "cancelled", "allowed_during_approval": True},
                ],
            },
            {"step_id": "done", "kind": "end", "terminal_status": "COMPLETED"},
            {"step_id": "cancelled", "kind": "end", "terminal_status": "CANCELLED"},
        ]
    })


@pytest.fixture
def make_action_context(make_context, make_submission):
    """Factory for workflow action contexts"""
    def _make(
        config: WorkflowConfig,
        state: WorkflowState,
        user: Optional[UserContext] = None,
        data: Optional[Dict[str, Any]] = None,
        comments: Optional[str] = None,
        expected_version: Optional[int] = None,
        **kwargs: Any,
    ) -> WorkflowActionContext:
        return WorkflowActionContext(
            submission=make_submission(data=data, state=state),
            config=config,
            context=make_context(data=data, user=user, status=state.status),
            comments=comments,
            expected_version=expected_version,
            **kwargs,
        )
    return _make
