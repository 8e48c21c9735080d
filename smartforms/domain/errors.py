"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authorization Errors
class AuthorizationError(DomainError):
    """Actor lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class UnauthorizedError(AuthorizationError):
    """Actor is not the expected approver or lacks a required role"""
    error_code = "UNAUTHORIZED"


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class ConfigurationError(ValidationError):
    """Template configuration is malformed"""
    error_code = "CONFIGURATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class StepNotFoundError(NotFoundError):
    """Workflow state points at a step missing from the workflow config"""
    error_code = "STEP_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


# Engine Errors
class EngineError(DomainError):
    """Rule/workflow engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class ActionNotAvailableError(EngineError):
    """Requested action is not offered by the current step"""
    error_code = "ACTION_NOT_AVAILABLE"
    http_status = 400


class GuardNotSatisfiedError(EngineError):
    """Action guard condition evaluated to false"""
    error_code = "GUARD_NOT_SATISFIED"
    http_status = 400


class RuleExecutionError(EngineError):
    """A business rule action failed"""
    error_code = "RULE_EXECUTION_ERROR"
