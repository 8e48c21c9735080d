"""Permission Guard - Role membership checks on inputs the engine is given"""
from typing import Iterable, Optional

from ..domain.models import ApprovalRecord, UserContext, WorkflowAction
from ..domain.errors import UnauthorizedError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PermissionGuard:
    """
    Permission checks for workflow and approval actions

    Rules:
    - A workflow action with required roles needs any one of them
    - An approval record is actionable by its approver id, or by any
      holder of its approver role
    - Identity is never resolved here; the caller vouches for the user
    """

    def has_any_role(self, roles: Iterable[str], required: Iterable[str]) -> bool:
        """True when no roles are required or the user holds at least one"""
        required = list(required)
        if not required:
            return True
        return bool(set(roles) & set(required))

    def can_execute_action(self, user: Optional[UserContext], action: WorkflowAction) -> bool:
        """Check if user can execute a workflow action"""
        if not action.required_roles:
            return True
        if user is None:
            return False
        return self.has_any_role(user.roles, action.required_roles)

    def can_act_on_record(
        self,
        approver_id: str,
        approver_roles: Iterable[str],
        record: ApprovalRecord
    ) -> bool:
        """Check if an approver matches a pending approval record"""
        if record.approver_id is not None:
            return record.approver_id == approver_id
        if record.approver_role is not None:
            return record.approver_role in set(approver_roles)
        return False

    def enforce_action(self, user: Optional[UserContext], action: WorkflowAction) -> None:
        """
        Enforce role requirements of a workflow action

        Raises:
            UnauthorizedError: If the user lacks every required role
        """
        if not self.can_execute_action(user, action):
            user_id = user.id if user else None
            logger.warning(
                f"User {user_id} lacks roles {action.required_roles} for action {action.action_id}",
                extra={"action_id": action.action_id}
            )
            raise UnauthorizedError(
                f"Action '{action.action_id}' requires one of roles {action.required_roles}",
                details={"action_id": action.action_id, "user_id": user_id}
            )
