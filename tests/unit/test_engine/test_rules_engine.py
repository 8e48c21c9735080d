"""Tests for RulesEngine"""
from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from smartforms.domain.models import BusinessRule, RuleEvent, WorkflowConfig
from smartforms.domain.enums import (
    InstructionType, RuleActionType, RuleTrigger, SubmissionStatus,
)


def business_rule(rule_id, *actions, trigger="on_submit", **kwargs):
    return BusinessRule.model_validate({
        "rule_id": rule_id,
        "trigger": trigger,
        "actions": list(actions) or [{"type": "notify", "recipients": ["ops"]}],
        **kwargs,
    })


def notify(*recipients, **kwargs):
    return {"type": "notify", "recipients": list(recipients), **kwargs}


class TestSelection:

    def test_descending_priority_with_stable_ties(self, rules_engine, make_context):
        rules = [
            business_rule("low", priority=1),
            business_rule("high_a", priority=5),
            business_rule("high_b", priority=5),
        ]
        results = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, make_context(), rules)
        assert [r.rule_id for r in results] == ["high_a", "high_b", "low"]

    def test_trigger_condition_and_active_filters(self, rules_engine, make_context):
        rules = [
            business_rule("other_trigger", trigger="scheduled"),
            business_rule("inactive", is_active=False),
            business_rule("big_only", conditions={"conditions": [
                {"field_id": "amount", "operator": "greater_than", "value": 1000},
            ]}),
            business_rule("always"),
        ]
        results = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, make_context(data={"amount": 10}), rules)
        assert [r.rule_id for r in results] == ["always"]

    def test_stop_on_match(self, rules_engine, make_context):
        rules = [business_rule("first", priority=2, stop_on_match=True), business_rule("second")]
        results = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, make_context(), rules)
        assert [r.rule_id for r in results] == ["first"]

    def test_watch_fields(self, rules_engine, make_context):
        rules = [business_rule("amount_watch", trigger="on_field_change", watch_fields=["amount"])]
        changed_title = RuleEvent(trigger=RuleTrigger.ON_FIELD_CHANGE, changed_field_id="title")
        changed_amount = RuleEvent(trigger=RuleTrigger.ON_FIELD_CHANGE, changed_field_id="amount")
        assert rules_engine.evaluate(RuleTrigger.ON_FIELD_CHANGE, make_context(), rules, event=changed_title) == []
        assert len(rules_engine.evaluate(RuleTrigger.ON_FIELD_CHANGE, make_context(), rules, event=changed_amount)) == 1

    def test_status_filters(self, rules_engine, make_context):
        rules = [business_rule(
            "on_approved", trigger="on_status_change",
            from_statuses=["PENDING_APPROVAL"], to_statuses=["COMPLETED"],
        )]

        def fire(old, new):
            event = RuleEvent(trigger=RuleTrigger.ON_STATUS_CHANGE, old_status=old, new_status=new)
            return rules_engine.evaluate(RuleTrigger.ON_STATUS_CHANGE, make_context(), rules, event=event)

        assert len(fire(SubmissionStatus.PENDING_APPROVAL, SubmissionStatus.COMPLETED)) == 1
        assert fire(SubmissionStatus.IN_PROGRESS, SubmissionStatus.COMPLETED) == []
        assert fire(SubmissionStatus.PENDING_APPROVAL, SubmissionStatus.REJECTED) == []


class TestActions:

    def test_instructions_and_template_substitution(self, rules_engine, make_context):
        rule = business_rule(
            "notify_finance",
            notify("finance@corp", "{{data.owner}}", subject="New request from {{user.name}}"),
            {"type": "create_task", "title": "Check {{data.title}}", "priority": "high"},
            {"type": "call_webhook", "url": "https://erp.local/hook", "method": "put",
             "payload": {"amount": "{{data.amount}}", "ref": "REQ-{{submission.id}}"}},
        )
        context = make_context(data={"owner": "u-owner", "title": "Laptop", "amount": 1200})
        [result] = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, context, [rule])

        assert result.success
        notify_i, task_i, hook_i = result.instructions
        assert notify_i.type == InstructionType.NOTIFY
        assert notify_i.source == "rule:notify_finance"
        assert notify_i.payload["recipients"] == ["finance@corp", "u-owner"]
        assert notify_i.payload["subject"] == "New request from Requester"
        assert task_i.payload["title"] == "Check Laptop"
        assert task_i.payload["due_at"] is None
        assert hook_i.payload["method"] == "PUT"
        assert hook_i.payload["payload"] == {"amount": 1200, "ref": "REQ-SUB-1"}

    def test_set_field_value_is_visible_to_later_actions(self, rules_engine, make_context):
        rule = business_rule(
            "escalate_priority",
            {"type": "set_field_value", "field_id": "priority", "value": "high"},
            notify("ops", message="Priority is {{data.priority}}"),
        )
        context = make_context(data={"priority": "low"})
        [result] = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, context, [rule])
        assert result.field_updates == {"priority": {"value": "high"}}
        assert result.instructions[0].payload["message"] == "Priority is high"
        assert context.data == {"priority": "low"}

    def test_assign_action(self, rules_engine, make_context):
        rule = business_rule("route", {
            "type": "assign",
            "rule": {"rule_id": "pool", "strategy": "load_balance", "candidates": [{"id": "b"}, {"id": "a"}]},
        })
        [result] = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, make_context(), [rule])
        assert result.actions[0].type == RuleActionType.ASSIGN
        assert result.actions[0].assignment.assignee.id == "a"

    def test_failing_rule_is_isolated(self, rules_engine, make_context):
        rules = [
            business_rule("broken", {"type": "change_status", "status": "CANCELLED"}, notify("never"), priority=9),
            business_rule("healthy", notify("ops")),
        ]
        broken, healthy = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, make_context(), rules)
        assert not broken.success
        assert broken.error_code == "RULE_EXECUTION_ERROR"
        assert [a.success for a in broken.actions] == [False]
        assert healthy.success
        assert healthy.instructions[0].payload["recipients"] == ["ops"]

    def test_unexpected_failure_is_isolated(self, rules_engine, make_context):
        rules = [
            business_rule("overflow", {"type": "create_task", "title": "Later", "due_in_hours": 1e15}, priority=10),
            business_rule("healthy", notify("ops")),
        ]
        overflow, healthy = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, make_context(), rules)
        assert not overflow.success
        assert overflow.error_code == "RULE_EXECUTION_ERROR"
        assert overflow.actions[0].type == RuleActionType.CREATE_TASK
        assert healthy.success
        assert healthy.instructions[0].type == InstructionType.NOTIFY


class TestWorkflowActions:

    @pytest.fixture
    def escalating_workflow(self):
        return WorkflowConfig.model_validate({"steps": [
            {"step_id": "start", "kind": "start", "actions": [{"action_id": "submit", "target_step_id": "approval"}]},
            {
                "step_id": "approval",
                "kind": "approval",
                "approval": {"levels": [{
                    "approver_ids": ["u-manager"],
                    "escalate_after_hours": 24,
                    "escalation_policy": "auto_reject",
                }]},
                "actions": [{"action_id": "finish", "target_step_id": "done"}],
            },
            {"step_id": "done", "kind": "end"},
        ]})

    @pytest.fixture
    def pending(self, workflow_engine, make_submission, make_context, make_action_context, escalating_workflow):
        state = workflow_engine.start_workflow(make_submission(), escalating_workflow, make_context())
        return workflow_engine.execute_action(make_action_context(escalating_workflow, state), "submit").state

    def test_escalate_applies_overdue_policy(self, rules_engine, make_context, make_action_context,
                                             escalating_workflow, pending, now):
        rule = business_rule("sla", {"type": "escalate"}, trigger="scheduled")
        workflow = make_action_context(escalating_workflow, pending)
        later = make_context(status=pending.status).model_copy(update={"now": now + timedelta(hours=25)})

        [result] = rules_engine.evaluate(RuleTrigger.SCHEDULED, later, [rule], workflow=workflow)
        outcome = result.actions[0]
        assert result.success
        assert len(outcome.escalations) == 1
        assert outcome.transition.new_status == SubmissionStatus.REJECTED
        assert outcome.transition.instructions[0].type == InstructionType.ESCALATE
        assert outcome.transition.state.approvals[0].decided_at == now + timedelta(hours=25)

    def test_escalate_with_nothing_overdue(self, rules_engine, make_context, make_action_context,
                                           escalating_workflow, pending):
        rule = business_rule("sla", {"type": "escalate"}, trigger="scheduled")
        workflow = make_action_context(escalating_workflow, pending)
        [result] = rules_engine.evaluate(RuleTrigger.SCHEDULED, make_context(), [rule], workflow=workflow)
        assert result.success
        assert result.actions[0].escalations == []
        assert result.actions[0].transition is None

    def test_change_status_then_follow_up_sees_new_state(self, rules_engine, make_context, make_action_context,
                                                         escalating_workflow, pending):
        rules = [
            business_rule("close", {"type": "change_status", "status": "CANCELLED"}, priority=2),
            business_rule("close_again", {"type": "change_status", "status": "COMPLETED"}, priority=1),
        ]
        workflow = make_action_context(escalating_workflow, pending, expected_version=pending.version)
        first, second = rules_engine.evaluate(RuleTrigger.ON_SUBMIT, make_context(), rules, workflow=workflow)
        assert first.actions[0].transition.new_status == SubmissionStatus.CANCELLED
        assert first.actions[0].transition.state.version == pending.version + 1
        # the second rule runs against the cancelled state
        assert not second.success
        assert second.error_code == "RULE_EXECUTION_ERROR"
        assert "already CANCELLED" in second.error


class TestStaticChecks:

    def test_validate_rule(self, rules_engine):
        rule = business_rule(
            "misconfigured",
            {"type": "notify", "recipients": []},
            {"type": "call_webhook", "url": "ftp://files"},
            {"type": "escalate"},
            watch_fields=["amount"],
        )
        problems = rules_engine.validate_rule(rule)
        assert len(problems) == 4
        assert rules_engine.validate_rule(business_rule("fine")) == []

    def test_unknown_action_type_rejected(self):
        with pytest.raises(PydanticValidationError):
            business_rule("bad", {"type": "send_fax"})

    def test_change_status_must_be_terminal(self):
        with pytest.raises(PydanticValidationError):
            business_rule("bad", {"type": "change_status", "status": "IN_PROGRESS"})

    def test_rule_needs_actions(self):
        with pytest.raises(PydanticValidationError):
            BusinessRule(rule_id="empty", trigger="on_submit", actions=[])
