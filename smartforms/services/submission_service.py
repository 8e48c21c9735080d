"""Submission Service - Wires the engines along the submission lifecycle"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..config.settings import Settings, get_settings
from ..domain.models import (
    ConditionalResult, ConditionGroup, EvaluationContext, FieldUpdateMap,
    FormTemplate, LoadSnapshot, RuleEvent, RuleExecutionResult, SubmissionSnapshot,
    ValidationResult, WorkflowActionContext, WorkflowTransitionResult,
)
from ..domain.enums import ApprovalDecision, FieldProperty, RuleTrigger, StepKind, SubmissionStatus
from ..domain.errors import InvalidStateError
from ..engine.approval_engine import ApprovalEngine
from ..engine.assignment_engine import AutoAssignmentEngine
from ..engine.condition_evaluator import ConditionalLogicEngine, merge_field_updates, referenced_fields
from ..engine.rules_engine import RulesEngine
from ..engine.validation_engine import ValidationEngine
from ..engine.workflow_engine import WorkflowEngine
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, set_correlation_id

logger = get_logger(__name__)


class SubmitOutcome(BaseModel):
    """Everything a submit produced, for the caller to persist and dispatch"""
    accepted: bool
    data: Dict[str, Any] = Field(default_factory=dict, description="Data with computed values applied")
    validation: ValidationResult
    field_updates: FieldUpdateMap = Field(default_factory=dict)
    transition: Optional[WorkflowTransitionResult] = None
    rule_results: List[RuleExecutionResult] = Field(default_factory=list)


class FieldChangeOutcome(BaseModel):
    """Result of one field edit"""
    conditional: ConditionalResult
    rule_results: List[RuleExecutionResult] = Field(default_factory=list)
    field_updates: FieldUpdateMap = Field(default_factory=dict)


class SubmissionService:
    """
    Service for submission operations

    Flow: conditional rules -> validation -> workflow start -> on_submit
    rules. Field-update maps from every stage are merged in execution
    order, so the most recently executed update wins.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.condition_engine = ConditionalLogicEngine()
        self.validation_engine = ValidationEngine(self.condition_engine, self.settings)
        self.assignment_engine = AutoAssignmentEngine(self.condition_engine)
        self.approval_engine = ApprovalEngine(condition_engine=self.condition_engine, settings=self.settings)
        self.workflow_engine = WorkflowEngine(
            condition_engine=self.condition_engine,
            approval_engine=self.approval_engine,
            assignment_engine=self.assignment_engine,
        )
        self.rules_engine = RulesEngine(
            condition_engine=self.condition_engine,
            assignment_engine=self.assignment_engine,
            approval_engine=self.approval_engine,
            workflow_engine=self.workflow_engine,
        )

    def build_context(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        now: Optional[datetime] = None,
        locale: Optional[str] = None
    ) -> EvaluationContext:
        """Evaluation context for a submission of a template"""
        context = EvaluationContext.for_submission(
            submission, now=now, locale=locale or self.settings.default_locale
        )
        return context.model_copy(update={"known_fields": template.field_ids})

    def _workflow_context(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        context: EvaluationContext,
        load_snapshot: Optional[LoadSnapshot] = None,
        comments: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Optional[WorkflowActionContext]:
        if template.workflow is None or submission.workflow_state is None:
            return None
        return WorkflowActionContext(
            submission=submission,
            config=template.workflow,
            context=context,
            comments=comments,
            expected_version=expected_version,
            load_snapshot=load_snapshot or LoadSnapshot(),
            default_approval=template.approval,
        )

    # ========================================================================
    # Form evaluation
    # ========================================================================

    def evaluate_form(self, template: FormTemplate, context: EvaluationContext) -> ConditionalResult:
        """
        Field visibility, requiredness, values and options for a context

        Declared default values fill empty fields first; conditional rules
        then run against the filled data and win over the defaults.
        """
        defaults = self.condition_engine.default_values(template.fields, context)
        if defaults:
            context = context.with_data({update.field_id: update.value for update in defaults})
        result = self.condition_engine.apply_conditional_rules(template.conditional_rules, context)
        if not defaults:
            return result
        return result.model_copy(update={
            "updates": defaults + result.updates,
            "field_updates": merge_field_updates(
                {update.field_id: {FieldProperty.VALUE.value: update.value} for update in defaults},
                result.field_updates,
            ),
        })

    def handle_field_change(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        field_id: str,
        context: Optional[EvaluationContext] = None
    ) -> FieldChangeOutcome:
        """Re-apply affected conditional rules and fire on_field_change rules"""
        context = context or self.build_context(template, submission)
        conditional = self.condition_engine.process_field_change(field_id, template.conditional_rules, context)
        rule_results = self.rules_engine.evaluate(
            RuleTrigger.ON_FIELD_CHANGE,
            context,
            template.business_rules,
            event=RuleEvent(trigger=RuleTrigger.ON_FIELD_CHANGE, changed_field_id=field_id),
            workflow=self._workflow_context(template, submission, context),
        )
        field_updates = merge_field_updates(
            conditional.field_updates, *[r.field_updates for r in rule_results]
        )
        return FieldChangeOutcome(conditional=conditional, rule_results=rule_results, field_updates=field_updates)

    # ========================================================================
    # Submit
    # ========================================================================

    def submit(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        load_snapshot: Optional[LoadSnapshot] = None,
        now: Optional[datetime] = None,
        locale: Optional[str] = None
    ) -> SubmitOutcome:
        """
        Validate a submission and start its workflow

        Args:
            template: Template configuration
            submission: Submitted data (workflow_state is ignored)
            load_snapshot: Assignment state for the first step
            now: Evaluation instant; defaults to the current time
            locale: Message locale

        Returns:
            SubmitOutcome; accepted is False when validation failed
        """
        set_correlation_id(generate_correlation_id())
        context = self.build_context(template, submission, now=now, locale=locale)

        conditional = self.evaluate_form(template, context)
        data = self._apply_values(submission.data, conditional.field_updates)
        context = context.model_copy(update={"data": data})

        validation = self.validation_engine.validate_form(
            template.fields, data, context,
            validation_rules=template.validation_rules,
            field_updates=conditional.field_updates,
        )
        if not validation.valid:
            logger.info(
                f"Submission rejected by validation with {len(validation.errors)} error(s)",
                extra={"submission_id": submission.submission_id}
            )
            return SubmitOutcome(
                accepted=False,
                data=data,
                validation=validation,
                field_updates=conditional.field_updates,
            )

        submission = submission.model_copy(update={"data": data, "workflow_state": None})
        transition = None
        workflow = None
        if template.workflow is not None:
            transition = self.workflow_engine.start(
                submission, template.workflow, context,
                load_snapshot=load_snapshot, default_approval=template.approval
            )
            submission = submission.model_copy(update={"workflow_state": transition.state})
            context = context.with_status(transition.state.status)
            workflow = self._workflow_context(
                template, submission, context, load_snapshot,
                expected_version=transition.state.version
            )
        else:
            context = context.with_status(SubmissionStatus.SUBMITTED)

        rule_results = self.rules_engine.evaluate(
            RuleTrigger.ON_SUBMIT, context, template.business_rules, workflow=workflow
        )
        field_updates = merge_field_updates(
            conditional.field_updates,
            transition.field_updates if transition else None,
            *[r.field_updates for r in rule_results],
        )

        logger.info(
            f"Submission accepted with status {context.submission.status.value}",
            extra={"submission_id": submission.submission_id, "status": context.submission.status}
        )
        return SubmitOutcome(
            accepted=True,
            data=data,
            validation=validation,
            field_updates=field_updates,
            transition=transition,
            rule_results=rule_results,
        )

    def _apply_values(self, data: Dict[str, Any], field_updates: FieldUpdateMap) -> Dict[str, Any]:
        updated = dict(data)
        for field_id, properties in field_updates.items():
            if FieldProperty.VALUE.value in properties:
                updated[field_id] = properties[FieldProperty.VALUE.value]
        return updated

    # ========================================================================
    # Workflow operations
    # ========================================================================

    def execute_action(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        action_id: str,
        context: EvaluationContext,
        expected_version: Optional[int] = None,
        comments: Optional[str] = None,
        load_snapshot: Optional[LoadSnapshot] = None
    ) -> WorkflowTransitionResult:
        """Execute a workflow action and fire on_status_change rules"""
        workflow = self._require_workflow(template, submission, context, load_snapshot, comments, expected_version)
        previous = submission.status
        transition = self.workflow_engine.execute_action(workflow, action_id)
        return self._after_transition(template, submission, context, workflow, previous, transition)

    def decide_approval(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        approver_id: str,
        decision: ApprovalDecision,
        context: EvaluationContext,
        expected_version: Optional[int] = None,
        comments: Optional[str] = None,
        delegate_to: Optional[str] = None
    ) -> WorkflowTransitionResult:
        """Record an approver decision and fire on_status_change rules"""
        workflow = self._require_workflow(template, submission, context, None, comments, expected_version)
        previous = submission.status
        transition = self.workflow_engine.record_approval_decision(
            workflow, approver_id, decision, delegate_to=delegate_to
        )
        return self._after_transition(template, submission, context, workflow, previous, transition)

    def run_scheduled(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        now: datetime,
        load_snapshot: Optional[LoadSnapshot] = None
    ) -> List[RuleExecutionResult]:
        """Scheduled tick for one submission"""
        context = self.build_context(template, submission, now=now)
        workflow = self._workflow_context(template, submission, context, load_snapshot)
        return self.rules_engine.evaluate(RuleTrigger.SCHEDULED, context, template.business_rules, workflow=workflow)

    def _require_workflow(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        context: EvaluationContext,
        load_snapshot: Optional[LoadSnapshot],
        comments: Optional[str],
        expected_version: Optional[int]
    ) -> WorkflowActionContext:
        workflow = self._workflow_context(
            template, submission, context, load_snapshot, comments, expected_version
        )
        if workflow is None:
            raise InvalidStateError(
                "Submission has no workflow to act on",
                details={"submission_id": submission.submission_id}
            )
        return workflow

    def _after_transition(
        self,
        template: FormTemplate,
        submission: SubmissionSnapshot,
        context: EvaluationContext,
        workflow: WorkflowActionContext,
        previous: Optional[SubmissionStatus],
        transition: WorkflowTransitionResult
    ) -> WorkflowTransitionResult:
        if transition.new_status == previous:
            return transition

        context = context.with_status(transition.new_status)
        updated = workflow.model_copy(update={
            "submission": submission.model_copy(update={"workflow_state": transition.state}),
            "context": context,
            "expected_version": transition.state.version,
        })
        rule_results = self.rules_engine.evaluate(
            RuleTrigger.ON_STATUS_CHANGE,
            context,
            template.business_rules,
            event=RuleEvent(
                trigger=RuleTrigger.ON_STATUS_CHANGE,
                old_status=previous,
                new_status=transition.new_status,
            ),
            workflow=updated,
        )
        if not rule_results:
            return transition

        instructions = list(transition.instructions)
        state = transition.state
        for result in rule_results:
            instructions.extend(result.instructions)
            for outcome in result.actions:
                if outcome.transition is not None:
                    state = outcome.transition.state
        field_updates = merge_field_updates(transition.field_updates, *[r.field_updates for r in rule_results])
        return transition.model_copy(update={
            "instructions": instructions,
            "field_updates": field_updates,
            "state": state,
            "new_status": state.status,
        })

    # ========================================================================
    # Template checks
    # ========================================================================

    def validate_template(self, template: FormTemplate) -> Dict[str, Any]:
        """
        Validate template configuration beyond what parsing enforces

        Returns validation result with errors and warnings
        """
        errors: List[Dict[str, str]] = []
        warnings: List[Dict[str, str]] = []
        field_ids = set(template.field_ids)

        def check_refs(group: Optional[ConditionGroup], path: str) -> None:
            for field_id in sorted(referenced_fields(group) - field_ids):
                warnings.append({
                    "type": "UNKNOWN_FIELD_REFERENCE",
                    "message": f"Condition references unknown field '{field_id}'",
                    "path": path,
                })

        for i, rule in enumerate(template.conditional_rules):
            check_refs(rule.conditions, f"conditional_rules[{i}].conditions")
            for j, action in enumerate(rule.actions):
                if action.target_field_id not in field_ids:
                    errors.append({
                        "type": "UNKNOWN_TARGET_FIELD",
                        "message": f"Action targets unknown field '{action.target_field_id}'",
                        "path": f"conditional_rules[{i}].actions[{j}]",
                    })

        for i, rule in enumerate(template.validation_rules):
            check_refs(rule.applies_when, f"validation_rules[{i}].applies_when")
            for field_id in rule.field_ids:
                if field_id not in field_ids:
                    errors.append({
                        "type": "UNKNOWN_FIELD",
                        "message": f"Validation rule targets unknown field '{field_id}'",
                        "path": f"validation_rules[{i}].field_ids",
                    })

        for i, field in enumerate(template.fields):
            check_refs(field.validation.required_when, f"fields[{i}].validation.required_when")

        for i, rule in enumerate(template.business_rules):
            check_refs(rule.conditions, f"business_rules[{i}].conditions")
            for problem in self.rules_engine.validate_rule(rule):
                warnings.append({"type": "RULE_CONFIGURATION", "message": problem, "path": f"business_rules[{i}]"})

        if template.workflow is not None:
            reachable = self._find_reachable_steps(template)
            for step in template.workflow.steps:
                if step.step_id not in reachable:
                    warnings.append({
                        "type": "UNREACHABLE_STEP",
                        "message": f"Step '{step.step_id}' is not reachable from the start step",
                        "path": f"workflow.steps[{step.step_id}]",
                    })
                check_refs(step.approval.skip_when if step.approval else None, f"workflow.steps[{step.step_id}].approval")
                for action in step.actions:
                    check_refs(action.guard, f"workflow.steps[{step.step_id}].actions[{action.action_id}].guard")
            if not any(s.kind == StepKind.END for s in template.workflow.steps if s.step_id in reachable):
                warnings.append({
                    "type": "NO_REACHABLE_END",
                    "message": "No end step is reachable from the start step",
                    "path": "workflow.steps",
                })

        return {"is_valid": not errors, "errors": errors, "warnings": warnings}

    def _find_reachable_steps(self, template: FormTemplate) -> set:
        """Find all steps reachable from the start step"""
        workflow = template.workflow
        start = workflow.start_step.step_id
        reachable = {start}
        to_visit = [start]
        while to_visit:
            step = workflow.get_step(to_visit.pop())
            for action in step.actions:
                if action.target_step_id not in reachable:
                    reachable.add(action.target_step_id)
                    to_visit.append(action.target_step_id)
        return reachable
