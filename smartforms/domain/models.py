"""Domain Models - Pydantic schemas for the Smart Forms engine"""
import re
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator, model_validator

from .enums import (
    LogicOperator, ConditionOperator, ValueType, ConditionSource,
    SmartFieldType, ConditionalActionType, FieldProperty, ValidatorKind,
    StepKind, SubmissionStatus, TimelineEventType, ApprovalLevelKind,
    ApprovalStatus, ApprovalDecision, EscalationPolicy, AssignmentStrategy,
    RuleTrigger, RuleActionType, InstructionType,
    TERMINAL_STATUSES, WORKFLOW_AUTO_ACTION_TYPES,
)
from ..utils.idgen import generate_approval_record_id, generate_event_id, generate_instruction_id
from ..utils.time import ensure_utc, utc_now


# field_id -> {property -> value}
FieldUpdateMap = Dict[str, Dict[str, Any]]


# ============================================================================
# Identity & Evaluation Context
# ============================================================================

class UserContext(BaseModel):
    """Acting or submitting user as seen by the engine"""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="User ID")
    name: Optional[str] = Field(None, description="Display name")
    roles: List[str] = Field(default_factory=list, description="Role names")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Site, department, skills, ...")


class SubmissionRef(BaseModel):
    """Submission identity inside an evaluation context"""
    id: Optional[str] = None
    status: Optional[SubmissionStatus] = None


class EvaluationContext(BaseModel):
    """Transient snapshot every evaluation runs against"""
    model_config = ConfigDict(extra="forbid")

    data: Dict[str, Any] = Field(default_factory=dict, description="field_id -> value")
    user: Optional[UserContext] = None
    submission: SubmissionRef = Field(default_factory=SubmissionRef)
    locale: Optional[str] = None
    known_fields: Optional[List[str]] = Field(
        None,
        description="Declared field ids; references outside this set are unknown"
    )
    now: datetime = Field(default_factory=utc_now, description="Evaluation instant supplied by the caller")

    @field_validator("now")
    @classmethod
    def check_now(cls, value: datetime) -> datetime:
        # Naive instants are read as UTC
        return ensure_utc(value)

    @classmethod
    def for_submission(
        cls,
        submission: "SubmissionSnapshot",
        now: Optional[datetime] = None,
        locale: Optional[str] = None
    ) -> "EvaluationContext":
        """Context whose user is the submitter and whose data is the submission's"""
        values: Dict[str, Any] = {
            "data": dict(submission.data),
            "user": submission.submitted_by,
            "submission": SubmissionRef(id=submission.submission_id, status=submission.status),
            "locale": locale,
        }
        if now is not None:
            values["now"] = now
        return cls(**values)

    def with_data(self, updates: Dict[str, Any]) -> "EvaluationContext":
        """Copy of this context with field values overlaid"""
        return self.model_copy(update={"data": {**self.data, **updates}})

    def with_user(self, user: UserContext) -> "EvaluationContext":
        """Copy of this context acting as another user"""
        return self.model_copy(update={"user": user})

    def with_status(self, status: SubmissionStatus) -> "EvaluationContext":
        """Copy of this context with a different submission status"""
        return self.model_copy(update={"submission": self.submission.model_copy(update={"status": status})})


# ============================================================================
# Conditions
# ============================================================================

_TIME_OPERATORS = {
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
    ConditionOperator.GREATER_OR_EQUAL,
    ConditionOperator.LESS_OR_EQUAL,
    ConditionOperator.BETWEEN,
}


class Condition(BaseModel):
    """One comparison against a context value"""
    model_config = ConfigDict(extra="forbid")

    field_id: str = Field(..., description="Field id, attribute path for user_attribute, or a label for time")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Value to compare against")
    value_type: ValueType = Field(ValueType.AUTO, description="Coercion applied to both sides")
    source: ConditionSource = Field(ConditionSource.FIELD, description="Where the left value comes from")

    @model_validator(mode="after")
    def check_operands(self) -> "Condition":
        if self.source == ConditionSource.TIME and self.operator not in _TIME_OPERATORS:
            raise ValueError(f"operator '{self.operator.value}' cannot compare the current time")
        if self.operator == ConditionOperator.BETWEEN:
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("between requires a two-element [low, high] value")
        if self.operator == ConditionOperator.MATCHES_PATTERN:
            try:
                re.compile(str(self.value))
            except re.error as e:
                raise ValueError(f"invalid pattern {self.value!r}: {e}") from e
        return self


class ConditionGroup(BaseModel):
    """Group of conditions and nested groups with AND/OR logic"""
    model_config = ConfigDict(extra="forbid")

    operator: LogicOperator = Field(LogicOperator.AND, description="AND or OR")
    conditions: List["ConditionNode"] = Field(default_factory=list)


def _condition_node_tag(value: Any) -> str:
    if isinstance(value, dict):
        return "group" if "conditions" in value else "condition"
    return "group" if isinstance(value, ConditionGroup) else "condition"


ConditionNode = Annotated[
    Union[
        Annotated[Condition, Tag("condition")],
        Annotated[ConditionGroup, Tag("group")],
    ],
    Discriminator(_condition_node_tag),
]

ConditionGroup.model_rebuild()


# ============================================================================
# Fields & Conditional Rules
# ============================================================================

class FieldOption(BaseModel):
    """Static option for selection fields"""
    value: Any
    label: Optional[str] = None


class FieldValidation(BaseModel):
    """Validation settings for one field"""
    model_config = ConfigDict(extra="forbid")

    required: bool = False
    required_when: Optional[ConditionGroup] = Field(
        None,
        description="When set, 'required' is only in force if this evaluates true"
    )
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    pattern_message: Optional[str] = None
    custom_validator: Optional[str] = Field(None, description="Name of a registered validator")
    allowed_file_types: List[str] = Field(default_factory=list)
    max_file_size_mb: Optional[float] = None


class SmartField(BaseModel):
    """Form field definition"""
    model_config = ConfigDict(extra="forbid")

    field_id: str = Field(..., description="Unique field id")
    label: str = Field("", description="Display label")
    field_type: SmartFieldType = Field(SmartFieldType.TEXT, description="Field type")
    validation: FieldValidation = Field(default_factory=FieldValidation)
    default_value: Optional[Any] = None
    options: List[FieldOption] = Field(default_factory=list, description="Static options")
    options_source: Optional[str] = Field(None, description="Lookup key for dynamically loaded options")
    hidden: bool = False


class ConditionalAction(BaseModel):
    """Field-level action executed when a conditional rule matches"""
    model_config = ConfigDict(extra="forbid")

    action_type: ConditionalActionType
    target_field_id: str
    value: Any = None

    @model_validator(mode="after")
    def check_value(self) -> "ConditionalAction":
        if self.action_type == ConditionalActionType.SET_OPTIONS and not isinstance(self.value, list):
            raise ValueError("set_options requires a list value")
        return self


class ConditionalRule(BaseModel):
    """If conditions hold, apply actions to field UI state"""
    model_config = ConfigDict(extra="forbid")

    rule_id: str
    name: Optional[str] = None
    conditions: ConditionGroup = Field(default_factory=ConditionGroup)
    actions: List[ConditionalAction] = Field(default_factory=list)
    is_active: bool = True


class FieldUpdate(BaseModel):
    """One property change on one field"""
    field_id: str
    property: FieldProperty
    value: Any = None
    rule_id: Optional[str] = None


class ConditionalResult(BaseModel):
    """Outcome of applying conditional rules"""
    applied_rules: List[str] = Field(default_factory=list)
    updates: List[FieldUpdate] = Field(default_factory=list, description="In execution order")
    field_updates: FieldUpdateMap = Field(default_factory=dict, description="Merged, later wins")


# ============================================================================
# Validation
# ============================================================================

_UNARY_OR_RANGE_OPERATORS = {
    ConditionOperator.IS_EMPTY,
    ConditionOperator.IS_NOT_EMPTY,
    ConditionOperator.BETWEEN,
    ConditionOperator.MATCHES_PATTERN,
}


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value).strip())
    except ValueError:
        return False
    return True


class ValidationRule(BaseModel):
    """Form-level constraint over one or more fields"""
    model_config = ConfigDict(extra="forbid")

    rule_id: str
    kind: ValidatorKind
    field_ids: List[str] = Field(..., min_length=1)
    applies_when: Optional[ConditionGroup] = None
    operator: Optional[ConditionOperator] = Field(None, description="cross_field comparison")
    value: Any = Field(None, description="Bound for min/max")
    pattern: Optional[str] = None
    validator: Optional[str] = Field(None, description="Registered validator for custom rules")
    message: Optional[str] = None

    @model_validator(mode="after")
    def check_kind(self) -> "ValidationRule":
        if self.kind == ValidatorKind.CROSS_FIELD:
            if len(self.field_ids) != 2 or self.operator is None:
                raise ValueError("cross_field rules need exactly two field_ids and an operator")
            if self.operator in _UNARY_OR_RANGE_OPERATORS:
                raise ValueError(f"operator '{self.operator.value}' cannot compare two fields")
        elif self.kind in (ValidatorKind.MIN, ValidatorKind.MAX):
            if self.value is None:
                raise ValueError(f"{self.kind.value} rules need a value")
            if not _is_numeric(self.value):
                raise ValueError(f"{self.kind.value} rules need a numeric value, got {self.value!r}")
        elif self.kind == ValidatorKind.PATTERN and not self.pattern:
            raise ValueError("pattern rules need a pattern")
        elif self.kind == ValidatorKind.CUSTOM and not self.validator:
            raise ValueError("custom rules need a validator name")
        return self


class FieldError(BaseModel):
    """A single validation failure"""
    field_id: str
    code: str = Field(..., description="required, min, max, pattern, email, ...")
    message: str
    rule_id: Optional[str] = None


class ValidationResult(BaseModel):
    """Validation outcome; never raised"""
    valid: bool = True
    errors: List[FieldError] = Field(default_factory=list)


# ============================================================================
# Assignment
# ============================================================================

class Candidate(BaseModel):
    """Potential assignee"""
    id: str
    name: Optional[str] = None
    skills: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict, description="site_id, department, ...")
    available: bool = True


class AssignmentRule(BaseModel):
    """How to pick an assignee"""
    model_config = ConfigDict(extra="forbid")

    rule_id: str
    strategy: AssignmentStrategy
    candidates: List[Candidate] = Field(default_factory=list)
    applies_when: Optional[ConditionGroup] = None
    priority: int = Field(0, description="Lower runs first")
    required_skills: List[str] = Field(default_factory=list)
    skill_field: Optional[str] = Field(None, description="Data field holding extra required skills")
    location_attribute: str = Field("site_id", description="Attribute matched for location_match")
    max_open_assignments: Optional[int] = Field(None, description="Candidates at or above this load are skipped")
    is_active: bool = True


class LoadSnapshot(BaseModel):
    """Caller-owned assignment state"""
    open_assignments: Dict[str, int] = Field(default_factory=dict, description="candidate id -> open items")
    last_indices: Dict[str, int] = Field(default_factory=dict, description="rule id -> last round-robin index")


class AssignmentResult(BaseModel):
    """Outcome of one assignment; assignee None is an expected result"""
    assignee: Optional[Candidate] = None
    strategy: Optional[AssignmentStrategy] = None
    rule_id: Optional[str] = None
    next_index: Optional[int] = Field(None, description="Round-robin index for the caller to persist")
    reason: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.assignee is not None


class Assignee(BaseModel):
    """Assignee attached to a workflow state"""
    user_id: str
    name: Optional[str] = None
    assigned_at: Optional[datetime] = None
    rule_id: Optional[str] = None


# ============================================================================
# Approvals
# ============================================================================

class ApprovalLevel(BaseModel):
    """One configured approval gate"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    kind: ApprovalLevelKind = ApprovalLevelKind.SEQUENTIAL
    approver_ids: List[str] = Field(default_factory=list)
    approver_roles: List[str] = Field(default_factory=list)
    dynamic_approver_field: Optional[str] = Field(None, description="Data field holding an approver id")
    condition: Optional[ConditionGroup] = Field(None, description="Entry condition; level skipped if false")
    escalate_after_hours: Optional[float] = None
    escalation_policy: Optional[EscalationPolicy] = None
    delegate_to: Optional[str] = None

    @model_validator(mode="after")
    def check_approvers(self) -> "ApprovalLevel":
        if not (self.approver_ids or self.approver_roles or self.dynamic_approver_field):
            raise ValueError("approval level needs approver_ids, approver_roles or dynamic_approver_field")
        return self


class ApprovalConfig(BaseModel):
    """Multi-level approval configuration"""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    skip_when: Optional[ConditionGroup] = Field(None, description="Whole chain skipped if true")
    levels: List[ApprovalLevel] = Field(default_factory=list)


class ApprovalRecord(BaseModel):
    """One approver's decision slot; append-only audit trail"""
    record_id: str = Field(default_factory=generate_approval_record_id)
    level: int = Field(..., description="Index into ApprovalConfig.levels")
    level_kind: ApprovalLevelKind
    position: int = Field(0, description="Order within a sequential level")
    round: int = Field(1, description="Approval pass; increments on rework")
    approver_id: Optional[str] = None
    approver_role: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    comments: Optional[str] = None
    delegated_to: Optional[str] = None
    delegated_by: Optional[str] = None
    escalate_after_hours: Optional[float] = None
    escalation_policy: Optional[EscalationPolicy] = None
    delegate_to: Optional[str] = None
    escalated: bool = False


class ApprovalResult(BaseModel):
    """Outcome of one approval decision"""
    approvals: List[ApprovalRecord]
    new_status: SubmissionStatus
    decided_record_id: Optional[str] = None
    cleared_levels: List[int] = Field(default_factory=list)
    next_approvers: List[str] = Field(default_factory=list)

    @property
    def is_fully_approved(self) -> bool:
        return self.new_status == SubmissionStatus.COMPLETED

    @property
    def is_rejected(self) -> bool:
        return self.new_status == SubmissionStatus.REJECTED


class EscalationResult(BaseModel):
    """An overdue approval record and what to do about it"""
    record_id: str
    level: int
    approver_id: Optional[str] = None
    approver_role: Optional[str] = None
    policy: EscalationPolicy
    delegate_to: Optional[str] = None
    waited_hours: float


# ============================================================================
# Rule / Auto Actions (closed union)
# ============================================================================

class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action_id: Optional[str] = None


class NotifyAction(_ActionBase):
    type: Literal["notify"] = "notify"
    recipients: List[str] = Field(default_factory=list)
    template: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    channel: str = "email"


class AssignAction(_ActionBase):
    type: Literal["assign"] = "assign"
    rule: AssignmentRule


class SetFieldValueAction(_ActionBase):
    type: Literal["set_field_value"] = "set_field_value"
    field_id: str
    value: Any = None


class CreateTaskAction(_ActionBase):
    type: Literal["create_task"] = "create_task"
    title: str
    description: Optional[str] = None
    assignee: Optional[str] = None
    priority: Optional[str] = None
    due_in_hours: Optional[float] = None


class ChangeStatusAction(_ActionBase):
    type: Literal["change_status"] = "change_status"
    status: SubmissionStatus

    @model_validator(mode="after")
    def check_terminal(self) -> "ChangeStatusAction":
        if self.status not in TERMINAL_STATUSES:
            raise ValueError("change_status only targets COMPLETED, REJECTED or CANCELLED")
        return self


class EscalateAction(_ActionBase):
    type: Literal["escalate"] = "escalate"
    reason: Optional[str] = None


class CallWebhookAction(_ActionBase):
    type: Literal["call_webhook"] = "call_webhook"
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)


RuleAction = Annotated[
    Union[
        NotifyAction,
        AssignAction,
        SetFieldValueAction,
        CreateTaskAction,
        ChangeStatusAction,
        EscalateAction,
        CallWebhookAction,
    ],
    Field(discriminator="type"),
]


class Instruction(BaseModel):
    """Side effect for the caller to perform; the engine never does I/O"""
    instruction_id: str = Field(default_factory=generate_instruction_id)
    type: InstructionType
    source: str = Field(..., description="rule:<id>, action:<id> or step:<id>")
    payload: Dict[str, Any] = Field(default_factory=dict)


def _ensure_auto_action_types(actions: List[Any], owner: str) -> None:
    for action in actions:
        if RuleActionType(action.type) not in WORKFLOW_AUTO_ACTION_TYPES:
            raise ValueError(f"{owner}: '{action.type}' is not allowed as a workflow auto-action")


# ============================================================================
# Workflow
# ============================================================================

class WorkflowAction(BaseModel):
    """A named transition choice on a step"""
    model_config = ConfigDict(extra="forbid")

    action_id: str
    name: Optional[str] = None
    target_step_id: str
    required_roles: List[str] = Field(default_factory=list, description="Any one of these roles")
    guard: Optional[ConditionGroup] = None
    auto_assign: bool = Field(True, description="Run the target step's assignment rule")
    auto_actions: List[RuleAction] = Field(default_factory=list)
    requires_comment: bool = False
    allowed_during_approval: bool = Field(False, description="May run while the step's chain is pending")

    @model_validator(mode="after")
    def check_auto_actions(self) -> "WorkflowAction":
        _ensure_auto_action_types(self.auto_actions, f"action {self.action_id}")
        return self


class WorkflowStep(BaseModel):
    """A node in the submission's step graph"""
    model_config = ConfigDict(extra="forbid")

    step_id: str
    name: Optional[str] = None
    kind: StepKind
    actions: List[WorkflowAction] = Field(default_factory=list)
    approval: Optional[ApprovalConfig] = Field(None, description="Approval chain for approval steps")
    assignment: Optional[AssignmentRule] = Field(None, description="Set when the step requires an assignee")
    active_status: SubmissionStatus = Field(
        SubmissionStatus.IN_PROGRESS,
        description="Status while a task step is current"
    )
    terminal_status: Optional[SubmissionStatus] = Field(None, description="Status set when an end step is reached")
    on_enter: List[RuleAction] = Field(default_factory=list)
    on_exit: List[RuleAction] = Field(default_factory=list)
    on_approved_action: Optional[str] = Field(None, description="Action run when the chain completes")
    on_rejected_action: Optional[str] = Field(None, description="Action run when the chain is rejected")

    @model_validator(mode="after")
    def check_step(self) -> "WorkflowStep":
        if self.kind == StepKind.END:
            if self.terminal_status is None:
                self.terminal_status = SubmissionStatus.COMPLETED
            elif self.terminal_status not in TERMINAL_STATUSES:
                raise ValueError(f"end step {self.step_id} needs a terminal status")
        if self.active_status in TERMINAL_STATUSES:
            raise ValueError(f"step {self.step_id}: active_status cannot be terminal")
        action_ids = [a.action_id for a in self.actions]
        if len(action_ids) != len(set(action_ids)):
            raise ValueError(f"step {self.step_id} has duplicate action ids")
        for follow_up in (self.on_approved_action, self.on_rejected_action):
            if follow_up and follow_up not in action_ids:
                raise ValueError(f"step {self.step_id}: follow-up action '{follow_up}' is not defined")
        _ensure_auto_action_types(self.on_enter, f"step {self.step_id} on_enter")
        _ensure_auto_action_types(self.on_exit, f"step {self.step_id} on_exit")
        return self

    def get_action(self, action_id: str) -> Optional[WorkflowAction]:
        for action in self.actions:
            if action.action_id == action_id:
                return action
        return None


class WorkflowConfig(BaseModel):
    """The step graph for a template version"""
    model_config = ConfigDict(extra="forbid")

    steps: List[WorkflowStep] = Field(..., min_length=1)
    start_step_id: Optional[str] = Field(None, description="Defaults to the single step of kind start")

    @model_validator(mode="after")
    def check_graph(self) -> "WorkflowConfig":
        step_ids = [s.step_id for s in self.steps]
        if len(step_ids) != len(set(step_ids)):
            raise ValueError("workflow has duplicate step ids")
        known = set(step_ids)
        if self.start_step_id is not None:
            if self.start_step_id not in known:
                raise ValueError(f"start step '{self.start_step_id}' is not defined")
        else:
            starts = [s for s in self.steps if s.kind == StepKind.START]
            if len(starts) != 1:
                raise ValueError(f"workflow needs exactly one start step, found {len(starts)}")
        for step in self.steps:
            for action in step.actions:
                if action.target_step_id not in known:
                    raise ValueError(
                        f"action {action.action_id} on step {step.step_id} targets unknown step "
                        f"'{action.target_step_id}'"
                    )
        return self

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    @property
    def start_step(self) -> WorkflowStep:
        if self.start_step_id is not None:
            return self.get_step(self.start_step_id)
        return next(s for s in self.steps if s.kind == StepKind.START)


class TimelineEvent(BaseModel):
    """Append-only history entry"""
    event_id: str = Field(default_factory=generate_event_id)
    event_type: TimelineEventType
    at: datetime
    actor_id: Optional[str] = None
    step_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class WorkflowState(BaseModel):
    """Per-submission execution cursor"""
    current_step_id: str
    status: SubmissionStatus
    approvals: List[ApprovalRecord] = Field(default_factory=list)
    assigned_to: Optional[Assignee] = None
    approval_round: int = Field(0, description="Number of approval chains started")
    version: int = Field(0, description="Optimistic concurrency version")
    history: List[TimelineEvent] = Field(default_factory=list)

    def current_round_approvals(self) -> List[ApprovalRecord]:
        return [a for a in self.approvals if a.round == self.approval_round]


class SubmissionSnapshot(BaseModel):
    """Read-only view of a submission handed to the engine"""
    submission_id: str
    template_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    submitted_by: UserContext
    workflow_state: Optional[WorkflowState] = None

    @property
    def status(self) -> Optional[SubmissionStatus]:
        return self.workflow_state.status if self.workflow_state else None


class ApprovalRequest(BaseModel):
    """One approver decision"""
    submission: SubmissionSnapshot
    config: ApprovalConfig
    approver_id: str
    approver_roles: List[str] = Field(default_factory=list)
    decision: ApprovalDecision
    comments: Optional[str] = None
    delegate_to: Optional[str] = None
    expected_version: Optional[int] = Field(None, description="Version token read by the caller")
    decided_at: datetime = Field(default_factory=utc_now)


class WorkflowActionContext(BaseModel):
    """Everything WorkflowEngine.execute_action needs"""
    submission: SubmissionSnapshot
    config: WorkflowConfig
    context: EvaluationContext
    comments: Optional[str] = None
    expected_version: Optional[int] = None
    load_snapshot: LoadSnapshot = Field(default_factory=LoadSnapshot)
    default_approval: Optional[ApprovalConfig] = Field(
        None,
        description="Template-level approval used by approval steps without their own"
    )


class WorkflowTransitionResult(BaseModel):
    """Outcome of a workflow transition"""
    previous_step_id: Optional[str] = None
    new_step: WorkflowStep
    new_status: SubmissionStatus
    assignee: Optional[Assignee] = None
    assignment: Optional[AssignmentResult] = None
    approvals: List[ApprovalRecord] = Field(default_factory=list)
    instructions: List[Instruction] = Field(default_factory=list)
    field_updates: FieldUpdateMap = Field(default_factory=dict)
    state: WorkflowState


# ============================================================================
# Business Rules
# ============================================================================

class BusinessRule(BaseModel):
    """Event-triggered automation"""
    model_config = ConfigDict(extra="forbid")

    rule_id: str
    name: Optional[str] = None
    trigger: RuleTrigger
    conditions: Optional[ConditionGroup] = None
    actions: List[RuleAction] = Field(..., min_length=1)
    priority: int = Field(0, description="Higher runs first")
    is_active: bool = True
    stop_on_match: bool = False
    watch_fields: List[str] = Field(default_factory=list, description="on_field_change filter")
    from_statuses: List[SubmissionStatus] = Field(default_factory=list, description="on_status_change filter")
    to_statuses: List[SubmissionStatus] = Field(default_factory=list, description="on_status_change filter")


class RuleEvent(BaseModel):
    """A trigger occurrence"""
    trigger: RuleTrigger
    changed_field_id: Optional[str] = None
    old_status: Optional[SubmissionStatus] = None
    new_status: Optional[SubmissionStatus] = None


class ActionOutcome(BaseModel):
    """Result of one business rule action"""
    action_id: Optional[str] = None
    type: RuleActionType
    success: bool = True
    error: Optional[str] = None
    instruction: Optional[Instruction] = None
    field_update: Optional[FieldUpdate] = None
    assignment: Optional[AssignmentResult] = None
    transition: Optional[WorkflowTransitionResult] = None
    escalations: List[EscalationResult] = Field(default_factory=list)


class RuleExecutionResult(BaseModel):
    """Per-rule outcome of a rules pass"""
    rule_id: str
    trigger: RuleTrigger
    success: bool = True
    error: Optional[str] = None
    error_code: Optional[str] = None
    actions: List[ActionOutcome] = Field(default_factory=list)

    @property
    def field_updates(self) -> FieldUpdateMap:
        updates: FieldUpdateMap = {}
        for outcome in self.actions:
            if outcome.field_update is not None:
                update = outcome.field_update
                updates.setdefault(update.field_id, {})[update.property.value] = update.value
        return updates

    @property
    def instructions(self) -> List[Instruction]:
        return [o.instruction for o in self.actions if o.instruction is not None]


# ============================================================================
# Template
# ============================================================================

class FormTemplate(BaseModel):
    """Template configuration document consumed read-only by the engine"""
    model_config = ConfigDict(extra="ignore")

    template_id: str
    name: Optional[str] = None
    version: int = 1
    is_published: bool = False
    fields: List[SmartField] = Field(default_factory=list)
    conditional_rules: List[ConditionalRule] = Field(default_factory=list)
    validation_rules: List[ValidationRule] = Field(default_factory=list)
    workflow: Optional[WorkflowConfig] = None
    approval: Optional[ApprovalConfig] = None
    assignment_rules: List[AssignmentRule] = Field(default_factory=list)
    business_rules: List[BusinessRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_template(self) -> "FormTemplate":
        for label, ids in (
            ("field", [f.field_id for f in self.fields]),
            ("conditional rule", [r.rule_id for r in self.conditional_rules]),
            ("validation rule", [r.rule_id for r in self.validation_rules]),
            ("business rule", [r.rule_id for r in self.business_rules]),
        ):
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                raise ValueError(f"duplicate {label} ids: {', '.join(duplicates)}")
        if self.workflow is not None and self.approval is None:
            for step in self.workflow.steps:
                if step.kind == StepKind.APPROVAL and step.approval is None:
                    raise ValueError(f"approval step {step.step_id} has no approval config")
        return self

    @property
    def field_ids(self) -> List[str]:
        return [f.field_id for f in self.fields]
