"""Domain Enumerations - All status and type definitions"""
from enum import Enum


# ============================================================================
# Conditions
# ============================================================================

class LogicOperator(str, Enum):
    """How children of a condition group are combined"""
    AND = "AND"
    OR = "OR"


class ConditionOperator(str, Enum):
    """Operators for condition evaluation"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    BETWEEN = "between"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    IN = "in"
    NOT_IN = "not_in"
    MATCHES_PATTERN = "matches_pattern"


class ValueType(str, Enum):
    """Declared type used to coerce both sides of a comparison"""
    AUTO = "auto"
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class ConditionSource(str, Enum):
    """Where the left-hand value of a condition is read from"""
    FIELD = "field"                    # context.data[field]
    USER_ROLE = "user_role"            # context.user.roles
    USER_ATTRIBUTE = "user_attribute"  # context.user.attributes (dot path)
    SUBMISSION_STATUS = "submission_status"
    TIME = "time"                      # context.now, compared as a date


# ============================================================================
# Fields & Conditional Rules
# ============================================================================

class SmartFieldType(str, Enum):
    """Supported form field types"""
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DECIMAL = "decimal"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    DATE = "date"
    DATETIME = "datetime"
    SELECT = "select"
    MULTI_SELECT = "multi_select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    TOGGLE = "toggle"
    FILE = "file"
    MULTI_FILE = "multi_file"
    IMAGE = "image"
    USER_LOOKUP = "user_lookup"
    SECTION_HEADER = "section_header"
    DIVIDER = "divider"
    INFO_BOX = "info_box"


SELECTION_FIELD_TYPES = {
    SmartFieldType.SELECT,
    SmartFieldType.MULTI_SELECT,
    SmartFieldType.RADIO,
    SmartFieldType.CHECKBOX,
}

FILE_FIELD_TYPES = {
    SmartFieldType.FILE,
    SmartFieldType.MULTI_FILE,
    SmartFieldType.IMAGE,
}

LAYOUT_FIELD_TYPES = {
    SmartFieldType.SECTION_HEADER,
    SmartFieldType.DIVIDER,
    SmartFieldType.INFO_BOX,
}


class ConditionalActionType(str, Enum):
    """Field-level actions a conditional rule can take"""
    SHOW_FIELD = "show_field"
    HIDE_FIELD = "hide_field"
    SET_REQUIRED = "set_required"
    SET_OPTIONAL = "set_optional"
    SET_VALUE = "set_value"
    CLEAR_VALUE = "clear_value"
    SET_OPTIONS = "set_options"
    DISABLE_FIELD = "disable_field"
    ENABLE_FIELD = "enable_field"
    SET_READONLY = "set_readonly"


class FieldProperty(str, Enum):
    """Field UI properties a FieldUpdate can change"""
    VISIBLE = "visible"
    REQUIRED = "required"
    VALUE = "value"
    OPTIONS = "options"
    DISABLED = "disabled"
    READONLY = "readonly"


class ValidatorKind(str, Enum):
    """Kinds of form-level validation rules"""
    REQUIRED = "required"
    MIN = "min"
    MAX = "max"
    PATTERN = "pattern"
    EMAIL = "email"
    CROSS_FIELD = "cross_field"
    CUSTOM = "custom"


# ============================================================================
# Workflow
# ============================================================================

class StepKind(str, Enum):
    """Types of workflow steps"""
    START = "start"
    TASK = "task"
    APPROVAL = "approval"
    END = "end"


class SubmissionStatus(str, Enum):
    """Global submission status"""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = {
    SubmissionStatus.COMPLETED,
    SubmissionStatus.REJECTED,
    SubmissionStatus.CANCELLED,
}


class TimelineEventType(str, Enum):
    """Append-only workflow history event types"""
    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    ACTION_EXECUTED = "ACTION_EXECUTED"
    APPROVAL_INITIALIZED = "APPROVAL_INITIALIZED"
    APPROVAL_DECISION = "APPROVAL_DECISION"
    APPROVAL_ESCALATED = "APPROVAL_ESCALATED"
    ASSIGNED = "ASSIGNED"
    STATUS_CHANGED = "STATUS_CHANGED"


# ============================================================================
# Approvals
# ============================================================================

class ApprovalLevelKind(str, Enum):
    """How approvers within one level combine"""
    SEQUENTIAL = "sequential"  # Approvers act one after another
    PARALLEL = "parallel"      # Every approver must approve
    ANY_OF = "any_of"          # First approval clears the level


class ApprovalStatus(str, Enum):
    """Per-record approval outcome"""
    WAITING = "waiting"      # Instantiated, level not reached yet
    PENDING = "pending"      # Actionable now
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"  # Handed over or superseded
    SKIPPED = "skipped"      # Chain halted before this record was decided


OPEN_APPROVAL_STATUSES = {ApprovalStatus.WAITING, ApprovalStatus.PENDING}


class ApprovalDecision(str, Enum):
    """Decisions an approver can submit"""
    APPROVE = "approve"
    REJECT = "reject"
    DELEGATE = "delegate"


class EscalationPolicy(str, Enum):
    """What happens when an approval waits longer than escalate_after"""
    NOTIFY_ONLY = "notify_only"
    DELEGATE = "delegate"
    AUTO_REJECT = "auto_reject"


# ============================================================================
# Assignment
# ============================================================================

class AssignmentStrategy(str, Enum):
    """Assignee selection strategies"""
    ROUND_ROBIN = "round_robin"
    LOAD_BALANCE = "load_balance"
    SKILL_MATCH = "skill_match"
    LOCATION_MATCH = "location_match"


# ============================================================================
# Business Rules
# ============================================================================

class RuleTrigger(str, Enum):
    """Events that fire business rules"""
    ON_SUBMIT = "on_submit"
    ON_FIELD_CHANGE = "on_field_change"
    ON_STATUS_CHANGE = "on_status_change"
    SCHEDULED = "scheduled"


class RuleActionType(str, Enum):
    """Business rule / workflow auto-action types"""
    NOTIFY = "notify"
    ASSIGN = "assign"
    SET_FIELD_VALUE = "set_field_value"
    CREATE_TASK = "create_task"
    CHANGE_STATUS = "change_status"
    ESCALATE = "escalate"
    CALL_WEBHOOK = "call_webhook"


# Auto-actions a workflow transition may carry (instruction-only effects)
WORKFLOW_AUTO_ACTION_TYPES = {
    RuleActionType.NOTIFY,
    RuleActionType.SET_FIELD_VALUE,
    RuleActionType.CREATE_TASK,
    RuleActionType.CALL_WEBHOOK,
}


class InstructionType(str, Enum):
    """Side-effect instructions handed back to the caller"""
    NOTIFY = "notify"
    CALL_WEBHOOK = "call_webhook"
    CREATE_TASK = "create_task"
    SET_FIELD_VALUE = "set_field_value"
    ESCALATE = "escalate"
