"""
Workflow Engine - Step graph execution for submissions

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INITIALIZATION
   - Constructor with injected engines, resolver, guard and audit writer

2. LOOKUPS
   - get_current_step: Current step or StepNotFoundError
   - get_available_actions: Actions the user could execute now

3. START
   - start: Enter the start step and return the full transition result
   - start_workflow: Same, returning only the WorkflowState

4. ACTIONS
   - execute_action: Checks (version, state, action, comment, guard, roles)
     then transition
   - terminate: Terminal-status path used by change_status rules

5. APPROVAL BRIDGE
   - record_approval_decision: Approver decision plus follow-up actions
   - apply_escalations: Scheduler escalations fed back as system decisions

6. TRANSITION LOGIC
   - _follow_action: Leave a step through an action
   - _enter_step: Status, approval chain and assignment for the new step

=============================================================================
STATE HANDLING
=============================================================================

The engine never mutates its inputs. Every operation returns a
WorkflowTransitionResult whose `state` is a new WorkflowState with the
version incremented and timeline events appended. Side effects (notify,
webhooks, tasks) come back as Instructions for the caller to dispatch.

=============================================================================
"""
from typing import Iterable, List, Optional

from ..domain.models import (
    ApprovalConfig, ApprovalRequest, ApprovalResult, Assignee, AssignmentResult,
    EscalationResult, EvaluationContext, FieldUpdateMap, Instruction, LoadSnapshot,
    SetFieldValueAction, SubmissionSnapshot, WorkflowAction, WorkflowActionContext,
    WorkflowConfig, WorkflowState, WorkflowStep, WorkflowTransitionResult, ApprovalRecord,
)
from ..domain.enums import (
    ApprovalDecision, ApprovalStatus, InstructionType, StepKind, SubmissionStatus,
    TimelineEventType, OPEN_APPROVAL_STATUSES, TERMINAL_STATUSES,
)
from ..domain.errors import (
    ActionNotAvailableError, ConcurrencyError, ConfigurationError,
    InvalidStateError, ValidationError,
)
from ..utils.logger import get_logger
from .approval_engine import ApprovalEngine, SYSTEM_ACTOR
from .assignment_engine import AutoAssignmentEngine
from .audit_writer import AuditWriter
from .condition_evaluator import ConditionalLogicEngine, is_empty
from .instructions import build_field_update, build_instruction
from .permission_guard import PermissionGuard
from .transition_resolver import TransitionResolver

logger = get_logger(__name__)


class _TransitionEffects:
    """Collects what one engine call produced besides the new state"""

    def __init__(self):
        self.instructions: List[Instruction] = []
        self.field_updates: FieldUpdateMap = {}
        self.approvals: List[ApprovalRecord] = []
        self.assignment: Optional[AssignmentResult] = None

    def collect(self, actions: Iterable, source: str, context: EvaluationContext) -> None:
        for action in actions:
            if isinstance(action, SetFieldValueAction):
                update = build_field_update(action, source, context)
                self.field_updates.setdefault(update.field_id, {})[update.property.value] = update.value
                continue
            instruction = build_instruction(action, source, context)
            if instruction is not None:
                self.instructions.append(instruction)


class WorkflowEngine:
    """
    Workflow engine: starts submissions, executes actions, bridges approvals

    Collaborators are injected so tests can substitute them; by default
    all engines share one ConditionalLogicEngine.
    """

    def __init__(
        self,
        condition_engine: Optional[ConditionalLogicEngine] = None,
        approval_engine: Optional[ApprovalEngine] = None,
        assignment_engine: Optional[AutoAssignmentEngine] = None,
        permission_guard: Optional[PermissionGuard] = None,
        audit_writer: Optional[AuditWriter] = None
    ):
        self.condition_engine = condition_engine or ConditionalLogicEngine()
        self.permission_guard = permission_guard or PermissionGuard()
        self.approval_engine = approval_engine or ApprovalEngine(
            condition_engine=self.condition_engine,
            permission_guard=self.permission_guard
        )
        self.assignment_engine = assignment_engine or AutoAssignmentEngine(self.condition_engine)
        self.resolver = TransitionResolver(self.condition_engine, self.permission_guard)
        self.audit = audit_writer or AuditWriter()

    # ========================================================================
    # Lookups
    # ========================================================================

    def get_current_step(self, config: WorkflowConfig, state: WorkflowState) -> WorkflowStep:
        """Current step of a workflow state; StepNotFoundError on drift"""
        return self.resolver.get_step(config, state.current_step_id)

    def get_available_actions(
        self,
        config: WorkflowConfig,
        state: WorkflowState,
        context: EvaluationContext
    ) -> List[WorkflowAction]:
        """Actions on the current step the context's user may execute"""
        return self.resolver.get_available_actions(config, state, context)

    # ========================================================================
    # Start
    # ========================================================================

    def start(
        self,
        submission: SubmissionSnapshot,
        config: WorkflowConfig,
        context: Optional[EvaluationContext] = None,
        load_snapshot: Optional[LoadSnapshot] = None,
        default_approval: Optional[ApprovalConfig] = None
    ) -> WorkflowTransitionResult:
        """
        Put a submission on its start step

        Args:
            submission: Submitted data and submitter
            config: Step graph
            context: Evaluation snapshot; built from the submission if omitted
            load_snapshot: Assignment state for the start step's rule
            default_approval: Template-level approval for approval steps

        Returns:
            Transition result whose state is the initial WorkflowState
        """
        context = context or EvaluationContext.for_submission(submission)
        step = config.start_step
        at = context.now
        actor_id = submission.submitted_by.id

        state = WorkflowState(current_step_id=step.step_id, status=SubmissionStatus.SUBMITTED)
        state = self.audit.append(
            state, TimelineEventType.WORKFLOW_STARTED, at,
            actor_id=actor_id, step_id=step.step_id
        )
        effects = _TransitionEffects()
        state = self._enter_step(
            submission, config, state, step, context,
            load_snapshot or LoadSnapshot(), default_approval, effects,
            actor_id=actor_id, auto_assign=True, depth=0
        )

        logger.info(
            f"Workflow started at step {state.current_step_id} with status {state.status.value}",
            extra={"submission_id": submission.submission_id, "step_id": state.current_step_id}
        )
        return self._result(None, config, state, effects)

    def start_workflow(
        self,
        submission: SubmissionSnapshot,
        config: WorkflowConfig,
        context: Optional[EvaluationContext] = None,
        load_snapshot: Optional[LoadSnapshot] = None,
        default_approval: Optional[ApprovalConfig] = None
    ) -> WorkflowState:
        """Initial WorkflowState for a submission"""
        return self.start(submission, config, context, load_snapshot, default_approval).state

    # ========================================================================
    # Actions
    # ========================================================================

    def execute_action(self, action_context: WorkflowActionContext, action_id: str) -> WorkflowTransitionResult:
        """
        Execute a named action on the current step

        Args:
            action_context: Submission, config, acting context and version token
            action_id: Action offered by the current step

        Returns:
            WorkflowTransitionResult with the new step, status and state

        Raises:
            ConcurrencyError: Version token is stale
            InvalidStateError: Workflow already finished
            StepNotFoundError: State points at a step missing from config
            ActionNotAvailableError: Step does not offer the action right now
            ValidationError: Action requires a comment and none was given
            GuardNotSatisfiedError: Guard evaluated false
            UnauthorizedError: User lacks every required role
        """
        submission = action_context.submission
        config = action_context.config
        context = action_context.context
        state = self._require_state(submission)

        self._check_version(submission, state, action_context.expected_version)
        self._check_not_terminal(submission, state)

        step = self.resolver.get_step(config, state.current_step_id)
        action = self.resolver.resolve_action(step, action_id)

        if state.status == SubmissionStatus.PENDING_APPROVAL and not action.allowed_during_approval:
            raise ActionNotAvailableError(
                f"Action '{action_id}' is not available while approval is pending",
                details={"action_id": action_id, "step_id": step.step_id}
            )
        if action.requires_comment and is_empty(action_context.comments):
            raise ValidationError(
                f"Action '{action_id}' requires a comment",
                details={"action_id": action_id}
            )

        self.resolver.check_guard(action, context)
        self.permission_guard.enforce_action(context.user, action)

        actor_id = context.user.id if context.user else None
        effects = _TransitionEffects()
        state = self._follow_action(
            submission, config, state, step, action, context,
            action_context.load_snapshot, action_context.default_approval, effects,
            actor_id=actor_id, comments=action_context.comments, depth=0
        )
        return self._result(step.step_id, config, self._bump(state), effects)

    def terminate(
        self,
        action_context: WorkflowActionContext,
        status: SubmissionStatus,
        reason: Optional[str] = None
    ) -> WorkflowTransitionResult:
        """
        Move a submission straight to a terminal status

        The current step is kept; any open approval records are skipped.
        """
        status = SubmissionStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValidationError(
                f"{status.value} is not a terminal status",
                details={"status": status.value}
            )
        submission = action_context.submission
        config = action_context.config
        context = action_context.context
        state = self._require_state(submission)

        self._check_version(submission, state, action_context.expected_version)
        self._check_not_terminal(submission, state)
        step = self.resolver.get_step(config, state.current_step_id)

        previous = state.status
        state = self._skip_open_approvals(state).model_copy(update={"status": status})
        actor_id = context.user.id if context.user else SYSTEM_ACTOR
        state = self.audit.append(
            state, TimelineEventType.STATUS_CHANGED, context.now,
            actor_id=actor_id, step_id=step.step_id,
            details={"from": previous.value, "to": status.value, "reason": reason}
        )

        logger.info(
            f"Submission terminated with status {status.value}",
            extra={"submission_id": submission.submission_id, "status": status}
        )
        return self._result(step.step_id, config, self._bump(state), _TransitionEffects())

    # ========================================================================
    # Approval bridge
    # ========================================================================

    def record_approval_decision(
        self,
        action_context: WorkflowActionContext,
        approver_id: str,
        decision: ApprovalDecision,
        approver_roles: Optional[List[str]] = None,
        delegate_to: Optional[str] = None
    ) -> WorkflowTransitionResult:
        """
        Apply an approver decision on the current approval step

        When the chain completes or is rejected and the step names a
        follow-up action, that action runs as a system transition.
        """
        submission = action_context.submission
        config = action_context.config
        context = action_context.context
        state = self._require_state(submission)
        step = self.resolver.get_step(config, state.current_step_id)
        approval_config = self._approval_config(step, action_context.default_approval)

        if approver_roles is None:
            approver_roles = context.user.roles if context.user and context.user.id == approver_id else []

        request = ApprovalRequest(
            submission=submission,
            config=approval_config,
            approver_id=approver_id,
            approver_roles=approver_roles,
            decision=decision,
            comments=action_context.comments,
            delegate_to=delegate_to,
            expected_version=action_context.expected_version,
            decided_at=context.now,
        )
        result = self.approval_engine.process_approval(request)

        effects = _TransitionEffects()
        state = self._apply_approval_result(
            state, step, result, context, approver_id,
            TimelineEventType.APPROVAL_DECISION,
            {"decision": request.decision.value, "record_id": result.decided_record_id, "comments": action_context.comments}
        )
        state = self._run_chain_follow_up(submission, config, state, step, action_context, effects)
        return self._result(step.step_id, config, self._bump(state), effects)

    def apply_escalations(
        self,
        action_context: WorkflowActionContext,
        escalations: List[EscalationResult]
    ) -> WorkflowTransitionResult:
        """Feed escalation results back into the approval chain as system decisions"""
        submission = action_context.submission
        config = action_context.config
        context = action_context.context
        state = self._require_state(submission)
        self._check_version(submission, state, action_context.expected_version)
        step = self.resolver.get_step(config, state.current_step_id)

        effects = _TransitionEffects()
        for escalation in escalations:
            if state.status != SubmissionStatus.PENDING_APPROVAL:
                break
            current = submission.model_copy(update={"workflow_state": state})
            result = self.approval_engine.apply_escalation(current, escalation, context.now)
            state = self._apply_approval_result(
                state, step, result, context, SYSTEM_ACTOR,
                TimelineEventType.APPROVAL_ESCALATED,
                {"record_id": escalation.record_id, "policy": escalation.policy.value,
                 "waited_hours": escalation.waited_hours}
            )
            effects.instructions.append(Instruction(
                type=InstructionType.ESCALATE,
                source=f"approval:{escalation.record_id}",
                payload={
                    "submission_id": submission.submission_id,
                    **escalation.model_dump(mode="json"),
                }
            ))

        state = self._run_chain_follow_up(submission, config, state, step, action_context, effects)
        return self._result(step.step_id, config, self._bump(state), effects)

    def _apply_approval_result(
        self,
        state: WorkflowState,
        step: WorkflowStep,
        result: ApprovalResult,
        context: EvaluationContext,
        actor_id: str,
        event_type: TimelineEventType,
        details: dict
    ) -> WorkflowState:
        previous = state.status
        state = state.model_copy(update={"approvals": result.approvals, "status": result.new_status})
        state = self.audit.append(state, event_type, context.now, actor_id=actor_id, step_id=step.step_id, details=details)
        return self.audit.append_status_change(state, previous, context.now, actor_id=actor_id)

    def _run_chain_follow_up(
        self,
        submission: SubmissionSnapshot,
        config: WorkflowConfig,
        state: WorkflowState,
        step: WorkflowStep,
        action_context: WorkflowActionContext,
        effects: _TransitionEffects
    ) -> WorkflowState:
        if state.status == SubmissionStatus.COMPLETED:
            follow_up = step.on_approved_action
        elif state.status == SubmissionStatus.REJECTED:
            follow_up = step.on_rejected_action
        else:
            return state
        if not follow_up:
            return state

        action = step.get_action(follow_up)
        logger.info(
            f"Approval chain finished with {state.status.value}; running {follow_up}",
            extra={"submission_id": submission.submission_id, "step_id": step.step_id, "action_id": follow_up}
        )
        return self._follow_action(
            submission, config, state, step, action, action_context.context,
            action_context.load_snapshot, action_context.default_approval, effects,
            actor_id=SYSTEM_ACTOR, comments=None, depth=1
        )

    # ========================================================================
    # Transition logic
    # ========================================================================

    def _follow_action(
        self,
        submission: SubmissionSnapshot,
        config: WorkflowConfig,
        state: WorkflowState,
        step: WorkflowStep,
        action: WorkflowAction,
        context: EvaluationContext,
        load_snapshot: LoadSnapshot,
        default_approval: Optional[ApprovalConfig],
        effects: _TransitionEffects,
        actor_id: Optional[str],
        comments: Optional[str],
        depth: int
    ) -> WorkflowState:
        target = self.resolver.get_step(config, action.target_step_id)

        effects.collect(step.on_exit, f"step:{step.step_id}", context)
        effects.collect(action.auto_actions, f"action:{action.action_id}", context)

        state = self._skip_open_approvals(state).model_copy(update={"current_step_id": target.step_id})
        state = self.audit.append(
            state, TimelineEventType.ACTION_EXECUTED, context.now,
            actor_id=actor_id, step_id=step.step_id,
            details={
                "action_id": action.action_id,
                "from_step": step.step_id,
                "to_step": target.step_id,
                "comments": comments,
            }
        )
        logger.info(
            f"Action {action.action_id}: {step.step_id} -> {target.step_id}",
            extra={"submission_id": submission.submission_id, "action_id": action.action_id, "step_id": target.step_id}
        )
        return self._enter_step(
            submission, config, state, target, context, load_snapshot, default_approval,
            effects, actor_id=actor_id, auto_assign=action.auto_assign, depth=depth
        )

    def _enter_step(
        self,
        submission: SubmissionSnapshot,
        config: WorkflowConfig,
        state: WorkflowState,
        step: WorkflowStep,
        context: EvaluationContext,
        load_snapshot: LoadSnapshot,
        default_approval: Optional[ApprovalConfig],
        effects: _TransitionEffects,
        actor_id: Optional[str],
        auto_assign: bool,
        depth: int
    ) -> WorkflowState:
        at = context.now
        previous = state.status
        effects.collect(step.on_enter, f"step:{step.step_id}", context)

        if step.kind == StepKind.APPROVAL:
            approval_config = self._approval_config(step, default_approval)
            round_number = state.approval_round + 1
            records = self.approval_engine.initialize_approval(submission, approval_config, context, round_number)
            if records:
                effects.approvals.extend(records)
                state = state.model_copy(update={
                    "approvals": [*state.approvals, *records],
                    "approval_round": round_number,
                    "status": SubmissionStatus.PENDING_APPROVAL,
                })
                state = self.audit.append(
                    state, TimelineEventType.APPROVAL_INITIALIZED, at,
                    actor_id=actor_id, step_id=step.step_id,
                    details={"round": round_number, "records": len(records)}
                )
            else:
                state = state.model_copy(update={"status": step.active_status})
                if step.on_approved_action:
                    state = self.audit.append_status_change(state, previous, at, actor_id=actor_id)
                    return self._follow_skipped_chain(
                        submission, config, state, step, context, load_snapshot,
                        default_approval, effects, depth
                    )
        elif step.kind == StepKind.END:
            state = state.model_copy(update={"status": step.terminal_status})
        elif step.kind == StepKind.START:
            state = state.model_copy(update={"status": SubmissionStatus.SUBMITTED})
        else:
            state = state.model_copy(update={"status": step.active_status})

        state = self.audit.append_status_change(state, previous, at, actor_id=actor_id)

        if step.assignment is not None and auto_assign and step.kind != StepKind.END:
            result = self.assignment_engine.assign_rule(step.assignment, load_snapshot, context)
            effects.assignment = result
            assignee = None
            if result.assignee is not None:
                assignee = Assignee(
                    user_id=result.assignee.id,
                    name=result.assignee.name,
                    assigned_at=at,
                    rule_id=result.rule_id,
                )
                state = self.audit.append(
                    state, TimelineEventType.ASSIGNED, at,
                    actor_id=actor_id, step_id=step.step_id,
                    details={"assignee": assignee.user_id, "strategy": result.strategy.value}
                )
            state = state.model_copy(update={"assigned_to": assignee})

        return state

    def _follow_skipped_chain(
        self,
        submission: SubmissionSnapshot,
        config: WorkflowConfig,
        state: WorkflowState,
        step: WorkflowStep,
        context: EvaluationContext,
        load_snapshot: LoadSnapshot,
        default_approval: Optional[ApprovalConfig],
        effects: _TransitionEffects,
        depth: int
    ) -> WorkflowState:
        # A chain with no applicable levels counts as approved
        if depth >= len(config.steps):
            raise ConfigurationError(
                "Skipped approval chains loop through follow-up actions",
                details={"step_id": step.step_id}
            )
        action = step.get_action(step.on_approved_action)
        return self._follow_action(
            submission, config, state, step, action, context, load_snapshot,
            default_approval, effects, actor_id=SYSTEM_ACTOR, comments=None, depth=depth + 1
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    def _approval_config(self, step: WorkflowStep, default_approval: Optional[ApprovalConfig]) -> ApprovalConfig:
        approval_config = step.approval or default_approval
        if approval_config is None:
            raise ConfigurationError(
                f"Approval step '{step.step_id}' has no approval configuration",
                details={"step_id": step.step_id}
            )
        return approval_config

    def _require_state(self, submission: SubmissionSnapshot) -> WorkflowState:
        if submission.workflow_state is None:
            raise InvalidStateError(
                "Submission has not entered a workflow",
                details={"submission_id": submission.submission_id}
            )
        return submission.workflow_state

    def _check_version(self, submission: SubmissionSnapshot, state: WorkflowState, expected: Optional[int]) -> None:
        if expected is not None and expected != state.version:
            raise ConcurrencyError(
                "Workflow state was modified concurrently; re-read and retry",
                details={
                    "submission_id": submission.submission_id,
                    "expected_version": expected,
                    "actual_version": state.version,
                }
            )

    def _check_not_terminal(self, submission: SubmissionSnapshot, state: WorkflowState) -> None:
        if state.status in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Submission is already {state.status.value}",
                details={"submission_id": submission.submission_id, "status": state.status.value}
            )

    def _skip_open_approvals(self, state: WorkflowState) -> WorkflowState:
        if not any(r.status in OPEN_APPROVAL_STATUSES for r in state.approvals):
            return state
        approvals = [
            r.model_copy(update={"status": ApprovalStatus.SKIPPED})
            if r.status in OPEN_APPROVAL_STATUSES else r
            for r in state.approvals
        ]
        return state.model_copy(update={"approvals": approvals})

    def _bump(self, state: WorkflowState) -> WorkflowState:
        return state.model_copy(update={"version": state.version + 1})

    def _result(
        self,
        previous_step_id: Optional[str],
        config: WorkflowConfig,
        state: WorkflowState,
        effects: _TransitionEffects
    ) -> WorkflowTransitionResult:
        return WorkflowTransitionResult(
            previous_step_id=previous_step_id,
            new_step=config.get_step(state.current_step_id),
            new_status=state.status,
            assignee=state.assigned_to,
            assignment=effects.assignment,
            approvals=effects.approvals,
            instructions=effects.instructions,
            field_updates=effects.field_updates,
            state=state,
        )
