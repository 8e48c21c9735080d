"""Transition Resolver - Find and check the action a user asked for"""
from typing import List, Optional

from ..domain.models import (
    EvaluationContext, WorkflowAction, WorkflowConfig, WorkflowState, WorkflowStep,
)
from ..domain.enums import SubmissionStatus, TERMINAL_STATUSES
from ..domain.errors import ActionNotAvailableError, GuardNotSatisfiedError, StepNotFoundError
from .condition_evaluator import ConditionalLogicEngine
from .permission_guard import PermissionGuard
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TransitionResolver:
    """
    Resolve workflow actions on the current step

    Given current step S and action A:
    1. S must exist in the workflow config -> else StepNotFoundError
    2. A must be offered by S -> else ActionNotAvailableError
    3. A's guard must hold -> else GuardNotSatisfiedError
    """

    def __init__(
        self,
        condition_engine: Optional[ConditionalLogicEngine] = None,
        permission_guard: Optional[PermissionGuard] = None
    ):
        self.condition_engine = condition_engine or ConditionalLogicEngine()
        self.permission_guard = permission_guard or PermissionGuard()

    def get_step(self, config: WorkflowConfig, step_id: str) -> WorkflowStep:
        """
        Look up a step by id

        Raises:
            StepNotFoundError: If the workflow state and config have drifted
        """
        step = config.get_step(step_id)
        if step is None:
            logger.error(
                f"Step {step_id} not found in workflow config",
                extra={"step_id": step_id}
            )
            raise StepNotFoundError(
                f"Step '{step_id}' does not exist in the workflow",
                details={"step_id": step_id, "known_steps": [s.step_id for s in config.steps]}
            )
        return step

    def resolve_action(self, step: WorkflowStep, action_id: str) -> WorkflowAction:
        """
        Find an action offered by a step

        Raises:
            ActionNotAvailableError: If the step does not offer the action
        """
        action = step.get_action(action_id)
        if action is None:
            raise ActionNotAvailableError(
                f"Action '{action_id}' is not available on step '{step.step_id}'",
                details={
                    "action_id": action_id,
                    "step_id": step.step_id,
                    "available": [a.action_id for a in step.actions],
                }
            )
        return action

    def check_guard(self, action: WorkflowAction, context: EvaluationContext) -> None:
        """
        Evaluate an action guard

        Raises:
            GuardNotSatisfiedError: If the guard evaluates false
        """
        if action.guard is None:
            return
        if not self.condition_engine.evaluate(action.guard, context):
            raise GuardNotSatisfiedError(
                f"Guard for action '{action.action_id}' is not satisfied",
                details={"action_id": action.action_id}
            )

    def get_available_actions(
        self,
        config: WorkflowConfig,
        state: WorkflowState,
        context: EvaluationContext
    ) -> List[WorkflowAction]:
        """Actions on the current step the user could execute right now"""
        if state.status in TERMINAL_STATUSES:
            return []
        step = self.get_step(config, state.current_step_id)
        available = []
        for action in step.actions:
            if state.status == SubmissionStatus.PENDING_APPROVAL and not action.allowed_during_approval:
                continue
            if not self.permission_guard.can_execute_action(context.user, action):
                continue
            if action.guard is not None and not self.condition_engine.evaluate(action.guard, context):
                continue
            available.append(action)
        return available
