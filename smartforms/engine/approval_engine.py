"""Approval Engine - Multi-level approval chains, one decision at a time"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..config.settings import Settings, get_settings
from ..domain.models import (
    ApprovalConfig, ApprovalLevel, ApprovalRecord, ApprovalRequest, ApprovalResult,
    EscalationResult, EvaluationContext, SubmissionSnapshot,
)
from ..domain.enums import (
    ApprovalDecision, ApprovalLevelKind, ApprovalStatus, EscalationPolicy,
    SubmissionStatus, OPEN_APPROVAL_STATUSES,
)
from ..domain.errors import (
    ConcurrencyError, InvalidStateError, UnauthorizedError, ValidationError,
)
from ..utils.idgen import generate_approval_record_id
from ..utils.logger import get_logger
from ..utils.time import hours_between
from .condition_evaluator import ConditionalLogicEngine, is_empty
from .permission_guard import PermissionGuard

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


class ApprovalEngine:
    """
    Advance approval chains

    Records for every applicable level are created up front: the first
    level is pending, later levels wait. Each decision returns a new
    record list and the resulting submission status; inputs are never
    modified. Records from earlier rounds stay in the list untouched.
    """

    def __init__(
        self,
        condition_engine: Optional[ConditionalLogicEngine] = None,
        permission_guard: Optional[PermissionGuard] = None,
        settings: Optional[Settings] = None
    ):
        self.condition_engine = condition_engine or ConditionalLogicEngine()
        self.permission_guard = permission_guard or PermissionGuard()
        self.settings = settings or get_settings()

    # ========================================================================
    # Initialization
    # ========================================================================

    def is_required(self, config: Optional[ApprovalConfig], context: EvaluationContext) -> bool:
        """Whether an approval chain applies at all"""
        if config is None or not config.enabled or not config.levels:
            return False
        if config.skip_when is not None and self.condition_engine.evaluate(config.skip_when, context):
            return False
        return True

    def initialize_approval(
        self,
        submission: SubmissionSnapshot,
        config: ApprovalConfig,
        context: Optional[EvaluationContext] = None,
        round_number: int = 1
    ) -> List[ApprovalRecord]:
        """
        Create approval records for a new chain

        Args:
            submission: Submission entering approval
            config: Approval chain configuration
            context: Evaluation snapshot; built from the submission if omitted
            round_number: Approval pass (increments on rework)

        Returns:
            Records for every applicable level; skipped levels produce none
        """
        context = context or EvaluationContext.for_submission(submission)
        if not self.is_required(config, context):
            logger.info(
                "Approval chain skipped",
                extra={"submission_id": submission.submission_id}
            )
            return []

        records: List[ApprovalRecord] = []
        first_level: Optional[int] = None

        for index, level in enumerate(config.levels):
            if level.condition is not None and not self.condition_engine.evaluate(level.condition, context):
                logger.debug(f"Approval level {index} condition not met, skipping")
                continue
            approvers = self._level_approvers(level, context)
            if not approvers:
                logger.warning(
                    f"Approval level {index} resolved no approvers, skipping",
                    extra={"submission_id": submission.submission_id}
                )
                continue

            active = first_level is None
            if active:
                first_level = index

            for position, (approver_id, approver_role) in enumerate(approvers):
                pending = active and (level.kind != ApprovalLevelKind.SEQUENTIAL or position == 0)
                records.append(ApprovalRecord(
                    level=index,
                    level_kind=level.kind,
                    position=position,
                    round=round_number,
                    approver_id=approver_id,
                    approver_role=approver_role,
                    status=ApprovalStatus.PENDING if pending else ApprovalStatus.WAITING,
                    requested_at=context.now if pending else None,
                    escalate_after_hours=level.escalate_after_hours,
                    escalation_policy=level.escalation_policy,
                    delegate_to=level.delegate_to,
                ))

        logger.info(
            f"Approval chain initialized with {len(records)} record(s)",
            extra={"submission_id": submission.submission_id}
        )
        return records

    def _level_approvers(
        self,
        level: ApprovalLevel,
        context: EvaluationContext
    ) -> List[Tuple[Optional[str], Optional[str]]]:
        approvers: List[Tuple[Optional[str], Optional[str]]] = []
        approvers.extend((approver_id, None) for approver_id in level.approver_ids)
        if level.dynamic_approver_field:
            value = context.data.get(level.dynamic_approver_field)
            values = value if isinstance(value, list) else [value]
            approvers.extend((str(v), None) for v in values if not is_empty(v))
        approvers.extend((None, role) for role in level.approver_roles)
        return approvers

    # ========================================================================
    # Decisions
    # ========================================================================

    def process_approval(self, request: ApprovalRequest) -> ApprovalResult:
        """
        Apply one approver decision

        Args:
            request: Decision with version token, approver and comments

        Returns:
            ApprovalResult with the updated records and submission status

        Raises:
            ConcurrencyError: Version token is stale
            InvalidStateError: Submission is not awaiting approval
            UnauthorizedError: Approver does not match an actionable record
        """
        submission = request.submission
        state = submission.workflow_state
        if state is None:
            raise InvalidStateError(
                "Submission has no workflow state",
                details={"submission_id": submission.submission_id}
            )
        if request.expected_version is not None and request.expected_version != state.version:
            raise ConcurrencyError(
                "Submission was modified by another decision; re-read and retry",
                details={
                    "submission_id": submission.submission_id,
                    "expected_version": request.expected_version,
                    "actual_version": state.version,
                }
            )
        if state.status != SubmissionStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                f"Submission is {state.status.value}, not awaiting approval",
                details={"submission_id": submission.submission_id, "status": state.status.value}
            )

        record = self._find_actionable(state.approvals, request.approver_id, request.approver_roles)
        if record is None:
            logger.warning(
                f"Approver {request.approver_id} has no actionable approval",
                extra={"submission_id": submission.submission_id, "approver_id": request.approver_id}
            )
            raise UnauthorizedError(
                "Approver is not expected to act on this submission",
                details={"submission_id": submission.submission_id, "approver_id": request.approver_id}
            )

        result = self._decide(
            state.approvals,
            record.record_id,
            request.decision,
            actor_id=request.approver_id,
            comments=request.comments,
            delegate_to=request.delegate_to,
            at=request.decided_at,
        )
        logger.info(
            f"Approval {request.decision.value} by {request.approver_id} -> {result.new_status.value}",
            extra={
                "submission_id": submission.submission_id,
                "approver_id": request.approver_id,
                "status": result.new_status,
            }
        )
        return result

    def actionable_records(self, approvals: Iterable[ApprovalRecord]) -> List[ApprovalRecord]:
        """Pending records at the current level of the latest round"""
        current = self._current_round(approvals)
        pending = [r for r in current if r.status == ApprovalStatus.PENDING]
        if not pending:
            return []
        level = min(r.level for r in pending)
        at_level = sorted((r for r in pending if r.level == level), key=lambda r: r.position)
        if at_level[0].level_kind == ApprovalLevelKind.SEQUENTIAL:
            return [at_level[0]]
        return at_level

    def _find_actionable(
        self,
        approvals: List[ApprovalRecord],
        approver_id: str,
        approver_roles: Iterable[str]
    ) -> Optional[ApprovalRecord]:
        roles = list(approver_roles)
        for record in self.actionable_records(approvals):
            if self.permission_guard.can_act_on_record(approver_id, roles, record):
                return record
        return None

    def can_user_approve(
        self,
        submission: SubmissionSnapshot,
        approver_id: str,
        approver_roles: Iterable[str] = ()
    ) -> bool:
        """Whether a user could act on the submission's approval chain right now"""
        state = submission.workflow_state
        if state is None or state.status != SubmissionStatus.PENDING_APPROVAL:
            return False
        return self._find_actionable(state.approvals, approver_id, approver_roles) is not None

    def _current_round(self, approvals: Iterable[ApprovalRecord]) -> List[ApprovalRecord]:
        approvals = list(approvals)
        if not approvals:
            return []
        latest = max(r.round for r in approvals)
        return [r for r in approvals if r.round == latest]

    def _decide(
        self,
        approvals: List[ApprovalRecord],
        record_id: str,
        decision: ApprovalDecision,
        actor_id: str,
        comments: Optional[str],
        delegate_to: Optional[str],
        at: datetime
    ) -> ApprovalResult:
        # Work on copies so the caller's records stay untouched
        records = [r.model_copy() for r in approvals]
        target = next(r for r in records if r.record_id == record_id)
        round_records = [r for r in records if r.round == target.round]

        target.decided_at = at
        target.decided_by = actor_id
        target.comments = comments
        cleared: List[int] = []

        if decision == ApprovalDecision.REJECT:
            target.status = ApprovalStatus.REJECTED
            for other in round_records:
                if other is not target and other.status in OPEN_APPROVAL_STATUSES:
                    other.status = ApprovalStatus.SKIPPED
            new_status = SubmissionStatus.REJECTED

        elif decision == ApprovalDecision.DELEGATE:
            delegate = delegate_to or target.delegate_to
            if not delegate:
                raise ValidationError(
                    "Delegation requires a delegate",
                    details={"record_id": record_id}
                )
            target.status = ApprovalStatus.DELEGATED
            target.delegated_to = delegate
            replacement = target.model_copy(update={
                "record_id": generate_approval_record_id(),
                "approver_id": delegate,
                "approver_role": None,
                "status": ApprovalStatus.PENDING,
                "requested_at": at,
                "decided_at": None,
                "decided_by": None,
                "comments": None,
                "delegated_to": None,
                "delegated_by": actor_id,
                "delegate_to": None,
                "escalated": False,
            })
            records.insert(records.index(target) + 1, replacement)
            new_status = SubmissionStatus.PENDING_APPROVAL

        else:
            target.status = ApprovalStatus.APPROVED
            new_status = SubmissionStatus.PENDING_APPROVAL
            if self._advance_level(round_records, target, at):
                cleared.append(target.level)
                if not self._activate_next_level(round_records, target.level, at):
                    new_status = SubmissionStatus.COMPLETED

        next_approvers = [
            r.approver_id or f"role:{r.approver_role}"
            for r in self.actionable_records(records)
        ] if new_status == SubmissionStatus.PENDING_APPROVAL else []

        return ApprovalResult(
            approvals=records,
            new_status=new_status,
            decided_record_id=record_id,
            cleared_levels=cleared,
            next_approvers=next_approvers,
        )

    def _advance_level(self, round_records: List[ApprovalRecord], target: ApprovalRecord, at: datetime) -> bool:
        """Apply an approval within its level; True when the level clears"""
        level_records = [r for r in round_records if r.level == target.level]

        if target.level_kind == ApprovalLevelKind.ANY_OF:
            for other in level_records:
                if other is not target and other.status in OPEN_APPROVAL_STATUSES:
                    other.status = ApprovalStatus.DELEGATED
                    other.decided_at = at
            return True

        if target.level_kind == ApprovalLevelKind.SEQUENTIAL:
            waiting = sorted(
                (r for r in level_records if r.status == ApprovalStatus.WAITING),
                key=lambda r: r.position
            )
            if waiting:
                waiting[0].status = ApprovalStatus.PENDING
                waiting[0].requested_at = at
                return False
            return not any(r.status == ApprovalStatus.PENDING for r in level_records)

        # Parallel: every approver must approve
        return not any(r.status in OPEN_APPROVAL_STATUSES for r in level_records)

    def _activate_next_level(self, round_records: List[ApprovalRecord], cleared_level: int, at: datetime) -> bool:
        """Make the next waiting level actionable; False when none remains"""
        later = [r for r in round_records if r.level > cleared_level and r.status == ApprovalStatus.WAITING]
        if not later:
            return False
        next_level = min(r.level for r in later)
        level_records = sorted((r for r in later if r.level == next_level), key=lambda r: r.position)
        if level_records[0].level_kind == ApprovalLevelKind.SEQUENTIAL:
            level_records = level_records[:1]
        for record in level_records:
            record.status = ApprovalStatus.PENDING
            record.requested_at = at
        return True

    # ========================================================================
    # Escalation
    # ========================================================================

    def resolve_policy(self, record: ApprovalRecord) -> EscalationPolicy:
        """Escalation policy for a record, falling back to configured defaults"""
        if record.escalation_policy is not None:
            policy = record.escalation_policy
        elif record.delegate_to:
            policy = EscalationPolicy.DELEGATE
        else:
            policy = EscalationPolicy(self.settings.default_escalation_policy)
        if policy == EscalationPolicy.DELEGATE and not record.delegate_to:
            logger.warning(f"Approval {record.record_id} escalates to delegate but has no delegate; notifying only")
            return EscalationPolicy.NOTIFY_ONLY
        return policy

    def check_escalations(self, approvals: Iterable[ApprovalRecord], now: datetime) -> List[EscalationResult]:
        """
        Find pending approvals that waited longer than their escalate-after window

        Pure: the scheduler supplies now and feeds results to apply_escalation.
        """
        results: List[EscalationResult] = []
        for record in approvals:
            if record.status != ApprovalStatus.PENDING or record.escalated:
                continue
            if record.escalate_after_hours is None or record.requested_at is None:
                continue
            waited = hours_between(record.requested_at, now)
            if waited < record.escalate_after_hours:
                continue
            results.append(EscalationResult(
                record_id=record.record_id,
                level=record.level,
                approver_id=record.approver_id,
                approver_role=record.approver_role,
                policy=self.resolve_policy(record),
                delegate_to=record.delegate_to,
                waited_hours=round(waited, 2),
            ))
        return results

    def apply_escalation(
        self,
        submission: SubmissionSnapshot,
        escalation: EscalationResult,
        now: datetime
    ) -> ApprovalResult:
        """
        Feed an escalation back as a system decision

        delegate hands the record to its delegate, auto_reject rejects the
        chain, notify_only only flags the record as escalated.
        """
        state = submission.workflow_state
        if state is None or state.status != SubmissionStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                "Submission is not awaiting approval",
                details={"submission_id": submission.submission_id}
            )
        approvals = [
            r.model_copy(update={"escalated": True}) if r.record_id == escalation.record_id else r
            for r in state.approvals
        ]
        comment = f"Escalated after {escalation.waited_hours}h"

        logger.info(
            f"Escalating approval {escalation.record_id} with policy {escalation.policy.value}",
            extra={"submission_id": submission.submission_id, "approver_id": escalation.approver_id}
        )

        if escalation.policy == EscalationPolicy.DELEGATE:
            return self._decide(
                approvals, escalation.record_id, ApprovalDecision.DELEGATE,
                actor_id=SYSTEM_ACTOR, comments=comment,
                delegate_to=escalation.delegate_to, at=now,
            )
        if escalation.policy == EscalationPolicy.AUTO_REJECT:
            return self._decide(
                approvals, escalation.record_id, ApprovalDecision.REJECT,
                actor_id=SYSTEM_ACTOR, comments=comment, delegate_to=None, at=now,
            )
        return ApprovalResult(
            approvals=approvals,
            new_status=state.status,
            next_approvers=[r.approver_id or f"role:{r.approver_role}" for r in self.actionable_records(approvals)],
        )

    # ========================================================================
    # Reporting
    # ========================================================================

    def get_approval_summary(self, approvals: Iterable[ApprovalRecord]) -> Dict[str, Any]:
        """Counts per status for the latest round plus the current level"""
        current = self._current_round(approvals)
        counts = {status.value: 0 for status in ApprovalStatus}
        for record in current:
            counts[record.status.value] += 1
        actionable = self.actionable_records(current)
        return {
            "round": current[0].round if current else 0,
            "total": len(current),
            **counts,
            "current_level": actionable[0].level if actionable else None,
            "pending_approvers": [r.approver_id or f"role:{r.approver_role}" for r in actionable],
        }
