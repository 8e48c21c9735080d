"""Smart Forms engines - condition, validation, assignment, approval, workflow and rules"""
from .condition_evaluator import ConditionalLogicEngine, merge_field_updates
from .validation_engine import ValidationEngine, errors_to_map
from .assignment_engine import AutoAssignmentEngine
from .approval_engine import ApprovalEngine
from .workflow_engine import WorkflowEngine
from .rules_engine import RulesEngine
from .permission_guard import PermissionGuard
from .transition_resolver import TransitionResolver
from .audit_writer import AuditWriter

__all__ = [
    "ConditionalLogicEngine",
    "merge_field_updates",
    "ValidationEngine",
    "errors_to_map",
    "AutoAssignmentEngine",
    "ApprovalEngine",
    "WorkflowEngine",
    "RulesEngine",
    "PermissionGuard",
    "TransitionResolver",
    "AuditWriter",
]
