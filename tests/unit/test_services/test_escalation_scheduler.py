"""Tests for EscalationScheduler ticks"""
from datetime import timedelta

import pytest

from smartforms.domain.models import FormTemplate
from smartforms.domain.enums import SubmissionStatus
from smartforms.scheduler import EscalationScheduler
from smartforms.services import SubmissionService
from tests.conftest import NOW


@pytest.fixture
def service(settings):
    return SubmissionService(settings)


@pytest.fixture
def template():
    return FormTemplate.model_validate({
        "template_id": "TPL-SLA",
        "fields": [{"field_id": "title"}],
        "workflow": {"steps": [
            {"step_id": "start", "kind": "start", "actions": [{"action_id": "submit", "target_step_id": "approval"}]},
            {
                "step_id": "approval",
                "kind": "approval",
                "approval": {"levels": [{
                    "approver_ids": ["u-manager"],
                    "escalate_after_hours": 24,
                    "escalation_policy": "auto_reject",
                }]},
                "actions": [{"action_id": "finish", "target_step_id": "done"}],
                "on_approved_action": "finish",
            },
            {"step_id": "done", "kind": "end"},
        ]},
        "business_rules": [
            {"rule_id": "sla", "trigger": "scheduled", "actions": [{"type": "escalate"}]},
        ],
    })


@pytest.fixture
def pending(service, template, make_submission):
    """Submission waiting on the manager since NOW"""
    outcome = service.submit(template, make_submission(data={"title": "Badge"}), now=NOW)
    submission = make_submission(data=outcome.data, state=outcome.transition.state)
    context = service.build_context(template, submission, now=NOW)
    result = service.execute_action(template, submission, "submit", context)
    assert result.new_status == SubmissionStatus.PENDING_APPROVAL
    return submission.model_copy(update={"workflow_state": result.state})


class RecordingSink:

    def __init__(self):
        self.calls = []

    def __call__(self, submission, results):
        self.calls.append((submission.submission_id, results))


class ExplodingService:
    """Delegates to a real service but fails for one submission"""

    def __init__(self, service, failing_id):
        self.service = service
        self.failing_id = failing_id

    def run_scheduled(self, template, submission, now):
        if submission.submission_id == self.failing_id:
            raise RuntimeError("storage unavailable")
        return self.service.run_scheduled(template, submission, now)


def test_tick_escalates_overdue_approvals(service, settings, template, pending):
    sink = RecordingSink()
    scheduler = EscalationScheduler(lambda: [(template, pending)], sink, service=service, settings=settings)

    assert scheduler.run_tick(NOW + timedelta(hours=25)) == 1

    [(submission_id, results)] = sink.calls
    assert submission_id == "SUB-1"
    outcome = results[0].actions[0]
    assert outcome.transition.new_status == SubmissionStatus.REJECTED
    assert outcome.escalations[0].waited_hours == 25.0


def test_tick_before_deadline_still_reports_rule_run(service, settings, template, pending):
    sink = RecordingSink()
    scheduler = EscalationScheduler(lambda: [(template, pending)], sink, service=service, settings=settings)

    assert scheduler.run_tick(NOW + timedelta(hours=2)) == 1
    [(_, results)] = sink.calls
    assert results[0].actions[0].escalations == []


def test_failing_submission_does_not_stop_tick(service, settings, template, pending):
    broken = pending.model_copy(update={"submission_id": "SUB-BROKEN"})
    sink = RecordingSink()
    scheduler = EscalationScheduler(
        lambda: [(template, broken), (template, pending)],
        sink,
        service=ExplodingService(service, "SUB-BROKEN"),
        settings=settings,
    )

    assert scheduler.run_tick(NOW + timedelta(hours=25)) == 1
    assert [call[0] for call in sink.calls] == ["SUB-1"]


def test_submissions_without_scheduled_rules_are_skipped(service, settings, make_submission):
    template = FormTemplate.model_validate({"template_id": "quiet", "fields": [{"field_id": "a"}]})
    sink = RecordingSink()
    scheduler = EscalationScheduler(lambda: [(template, make_submission())], sink, service=service, settings=settings)

    assert scheduler.run_tick(NOW) == 0
    assert sink.calls == []


def test_not_running_until_started(settings):
    scheduler = EscalationScheduler(lambda: [], lambda submission, results: None, settings=settings)
    assert not scheduler.is_running
    scheduler.stop()
    assert not scheduler.is_running
