"""Rules Engine - Event-triggered business rule automation"""
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse

from ..domain.models import (
    ActionOutcome, AssignAction, BusinessRule, CallWebhookAction, ChangeStatusAction,
    EscalateAction, EvaluationContext, LoadSnapshot, NotifyAction, RuleEvent,
    RuleExecutionResult, SetFieldValueAction, WorkflowActionContext,
)
from ..domain.enums import RuleActionType, RuleTrigger, SubmissionStatus
from ..domain.errors import DomainError, RuleExecutionError
from ..utils.logger import get_logger
from .approval_engine import ApprovalEngine
from .assignment_engine import AutoAssignmentEngine
from .condition_evaluator import ConditionalLogicEngine
from .instructions import build_field_update, build_instruction
from .workflow_engine import WorkflowEngine

logger = get_logger(__name__)


class RulesEngine:
    """
    Evaluate business rules for a trigger event

    Rules run by descending priority (ties keep declaration order). A
    failing rule is recorded in its own result and never stops the rules
    after it. Rules are selected against the context as given; field
    values set by earlier actions are visible to the templates of later
    actions in the same pass.
    """

    def __init__(
        self,
        condition_engine: Optional[ConditionalLogicEngine] = None,
        assignment_engine: Optional[AutoAssignmentEngine] = None,
        approval_engine: Optional[ApprovalEngine] = None,
        workflow_engine: Optional[WorkflowEngine] = None
    ):
        self.condition_engine = condition_engine or ConditionalLogicEngine()
        self.assignment_engine = assignment_engine or AutoAssignmentEngine(self.condition_engine)
        self.approval_engine = approval_engine or ApprovalEngine(condition_engine=self.condition_engine)
        self.workflow_engine = workflow_engine or WorkflowEngine(
            condition_engine=self.condition_engine,
            approval_engine=self.approval_engine,
            assignment_engine=self.assignment_engine,
        )

    def select_rules(
        self,
        trigger: RuleTrigger,
        context: EvaluationContext,
        rules: Iterable[BusinessRule],
        event: Optional[RuleEvent] = None
    ) -> List[BusinessRule]:
        """Active rules for the trigger whose filters and conditions hold, in run order"""
        event = event or RuleEvent(trigger=trigger)
        selected = [
            rule for rule in rules
            if rule.is_active
            and rule.trigger == trigger
            and self._matches_event(rule, event)
            and self.condition_engine.evaluate(rule.conditions, context)
        ]
        # sorted() is stable, so equal priorities keep declaration order
        return sorted(selected, key=lambda r: -r.priority)

    def _matches_event(self, rule: BusinessRule, event: RuleEvent) -> bool:
        if rule.trigger == RuleTrigger.ON_FIELD_CHANGE and rule.watch_fields:
            return event.changed_field_id in rule.watch_fields
        if rule.trigger == RuleTrigger.ON_STATUS_CHANGE:
            if rule.from_statuses and event.old_status not in rule.from_statuses:
                return False
            if rule.to_statuses and event.new_status not in rule.to_statuses:
                return False
        return True

    def evaluate(
        self,
        trigger: RuleTrigger,
        context: EvaluationContext,
        rules: Iterable[BusinessRule],
        event: Optional[RuleEvent] = None,
        workflow: Optional[WorkflowActionContext] = None
    ) -> List[RuleExecutionResult]:
        """
        Run every matching rule for a trigger

        Args:
            trigger: Event type
            context: Evaluation snapshot
            rules: Business rules of the template
            event: Trigger details (changed field, old/new status)
            workflow: Submission workflow context for change_status,
                escalate and assign actions

        Returns:
            One RuleExecutionResult per rule that ran
        """
        event = event or RuleEvent(trigger=trigger)
        results: List[RuleExecutionResult] = []

        for rule in self.select_rules(trigger, context, rules, event):
            result = RuleExecutionResult(rule_id=rule.rule_id, trigger=trigger)
            for action in rule.actions:
                try:
                    outcome = self._execute_action(rule, action, context, workflow)
                except RuleExecutionError as e:
                    logger.warning(
                        f"Rule {rule.rule_id} failed: {e.message}",
                        extra={"rule_id": rule.rule_id, "trigger": trigger}
                    )
                    result.actions.append(ActionOutcome(
                        action_id=action.action_id,
                        type=RuleActionType(action.type),
                        success=False,
                        error=e.message,
                    ))
                    result.success = False
                    result.error = e.message
                    result.error_code = e.error_code
                    break

                result.actions.append(outcome)
                # Later actions and rules see this pass's effects
                if outcome.field_update is not None:
                    context = context.with_data({outcome.field_update.field_id: outcome.field_update.value})
                if outcome.transition is not None and workflow is not None:
                    new_state = outcome.transition.state
                    workflow = workflow.model_copy(update={
                        "submission": workflow.submission.model_copy(update={"workflow_state": new_state}),
                        "expected_version": new_state.version,
                    })
                    context = context.with_status(new_state.status)

            logger.info(
                f"Rule {rule.rule_id} executed: success={result.success}",
                extra={"rule_id": rule.rule_id, "trigger": trigger}
            )
            results.append(result)
            if rule.stop_on_match:
                break

        return results

    def _execute_action(
        self,
        rule: BusinessRule,
        action: Any,
        context: EvaluationContext,
        workflow: Optional[WorkflowActionContext]
    ) -> ActionOutcome:
        action_type = RuleActionType(action.type)
        source = f"rule:{rule.rule_id}"
        outcome = ActionOutcome(action_id=action.action_id, type=action_type)

        try:
            if isinstance(action, SetFieldValueAction):
                update = build_field_update(action, rule.rule_id, context)
                return outcome.model_copy(update={"field_update": update})

            if isinstance(action, AssignAction):
                load_snapshot = workflow.load_snapshot if workflow else LoadSnapshot()
                assignment = self.assignment_engine.assign_rule(action.rule, load_snapshot, context)
                return outcome.model_copy(update={"assignment": assignment})

            if isinstance(action, ChangeStatusAction):
                workflow = self._require_workflow(rule, action_type, workflow)
                transition = self.workflow_engine.terminate(workflow, action.status, reason=source)
                return outcome.model_copy(update={"transition": transition})

            if isinstance(action, EscalateAction):
                workflow = self._require_workflow(rule, action_type, workflow)
                state = workflow.submission.workflow_state
                if state is None or state.status != SubmissionStatus.PENDING_APPROVAL:
                    return outcome
                escalations = self.approval_engine.check_escalations(state.approvals, context.now)
                if not escalations:
                    return outcome
                # Escalation decisions are stamped with the tick's time
                workflow = workflow.model_copy(update={
                    "context": workflow.context.model_copy(update={"now": context.now})
                })
                transition = self.workflow_engine.apply_escalations(workflow, escalations)
                return outcome.model_copy(update={"escalations": escalations, "transition": transition})

            instruction = build_instruction(action, source, context)
            return outcome.model_copy(update={"instruction": instruction})

        except RuleExecutionError:
            raise
        except DomainError as e:
            raise RuleExecutionError(
                f"{action_type.value} action failed: {e.message}",
                details={"rule_id": rule.rule_id, "cause": e.error_code, **e.details}
            ) from e
        except Exception as e:
            logger.error(
                f"Unexpected failure in {action_type.value} action of rule {rule.rule_id}: {e}",
                extra={"rule_id": rule.rule_id}
            )
            raise RuleExecutionError(
                f"{action_type.value} action failed: {e}",
                details={"rule_id": rule.rule_id, "cause": type(e).__name__}
            ) from e

    def _require_workflow(
        self,
        rule: BusinessRule,
        action_type: RuleActionType,
        workflow: Optional[WorkflowActionContext]
    ) -> WorkflowActionContext:
        if workflow is None or workflow.submission.workflow_state is None:
            raise RuleExecutionError(
                f"{action_type.value} action needs a submission in a workflow",
                details={"rule_id": rule.rule_id}
            )
        return workflow

    # ========================================================================
    # Static checks
    # ========================================================================

    def validate_rule(self, rule: BusinessRule) -> List[str]:
        """
        Static configuration check for a business rule

        Returns:
            Problems found; empty when the rule looks runnable
        """
        problems: List[str] = []
        if rule.watch_fields and rule.trigger != RuleTrigger.ON_FIELD_CHANGE:
            problems.append("watch_fields only applies to on_field_change rules")
        if (rule.from_statuses or rule.to_statuses) and rule.trigger != RuleTrigger.ON_STATUS_CHANGE:
            problems.append("from_statuses/to_statuses only apply to on_status_change rules")

        for index, action in enumerate(rule.actions):
            label = action.action_id or f"action[{index}]"
            if isinstance(action, NotifyAction) and not action.recipients:
                problems.append(f"{label}: notify action has no recipients")
            elif isinstance(action, CallWebhookAction) and "{{" not in action.url:
                parsed = urlparse(action.url)
                if parsed.scheme not in ("http", "https") or not parsed.netloc:
                    problems.append(f"{label}: webhook url must be http(s)")
            elif isinstance(action, AssignAction) and not action.rule.candidates:
                problems.append(f"{label}: assign action has no candidates")
            elif isinstance(action, EscalateAction) and rule.trigger != RuleTrigger.SCHEDULED:
                problems.append(f"{label}: escalate actions only run on scheduled rules")
        return problems
