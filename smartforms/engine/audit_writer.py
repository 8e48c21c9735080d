"""Audit Writer - Append-only timeline events for workflow state"""
from datetime import datetime
from typing import Any, Dict, Optional

from ..domain.models import TimelineEvent, WorkflowState
from ..domain.enums import TimelineEventType


class AuditWriter:
    """
    Build timeline events (append-only)

    Nothing is persisted here: events are appended to a copy of the
    workflow state and the caller stores the state as a whole.
    """

    def build_event(
        self,
        event_type: TimelineEventType,
        at: datetime,
        actor_id: Optional[str] = None,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> TimelineEvent:
        """Build a single timeline event"""
        return TimelineEvent(
            event_type=event_type,
            at=at,
            actor_id=actor_id,
            step_id=step_id,
            details=details or {}
        )

    def append(
        self,
        state: WorkflowState,
        event_type: TimelineEventType,
        at: datetime,
        actor_id: Optional[str] = None,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> WorkflowState:
        """Return a copy of state with one more history entry"""
        event = self.build_event(event_type, at, actor_id, step_id, details)
        return state.model_copy(update={"history": [*state.history, event]})

    def append_status_change(
        self,
        state: WorkflowState,
        previous: Any,
        at: datetime,
        actor_id: Optional[str] = None
    ) -> WorkflowState:
        """Record a status change if the status actually moved"""
        if previous == state.status:
            return state
        return self.append(
            state,
            TimelineEventType.STATUS_CHANGED,
            at,
            actor_id=actor_id,
            step_id=state.current_step_id,
            details={
                "from": getattr(previous, "value", previous),
                "to": state.status.value,
            }
        )
