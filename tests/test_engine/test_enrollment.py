"""Tests for the enrollment state machine (src/engine/enrollment.py).

Covers:
    - Delay suspension and resumption
    - Send steps: blocked on non-send passes, dedupe, skip and exit outcomes
    - Engagement and field branches, empty branches
    - Deleted nodes under a live enrollment
    - Re-entry decisions and pacing holds
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from src.db.models import (
    Branch,
    Contact,
    Enrollment,
    EnrollmentStatus,
    EventAction,
    ReentryConfig,
    ReentryType,
)
from src.engine.enrollment import (
    EXIT_NODE_REMOVED,
    EnrollmentMachine,
    SendOutcome,
    SendResult,
    can_enter,
    field_matches,
    hold_until,
    reenter,
    start_enrollment,
)
from src.engine.workflow import WorkflowGraph
from tests.conftest import FakeEffects, welcome_workflow

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def engagement_nodes(yes_branch=None):
    if yes_branch is None:
        yes_branch = [{"id": "yes-end", "type": "end"}]
    return [
        {"id": "entry-criteria", "type": "entry_criteria", "config": {}},
        {"id": "trigger", "type": "trigger", "config": {}},
        {"id": "send", "type": "send_email", "config": {"templateKey": "renewal_personal_cross"}},
        {
            "id": "opened",
            "type": "condition",
            "config": {"type": "email_opened", "emailNodeId": "send"},
            "branches": {
                "yes": yes_branch,
                "no": [{"id": "wait", "type": "delay", "config": {"duration": 2, "unit": "days"}}],
            },
        },
        {
            "id": "tag",
            "type": "update_field",
            "config": {"field": "renewal_touched", "value": True},
        },
    ]


def set_tier(node_id: str, tier: str):
    return {"id": node_id, "type": "update_field", "config": {"field": "tier", "value": tier}}


def enroll(graph: WorkflowGraph, now: datetime = T0) -> Enrollment:
    enrollment = start_enrollment(1, "acct-001", graph, now)
    enrollment.id = 10
    return enrollment


@pytest.fixture
def contact() -> Contact:
    return Contact(
        id="acct-001", email="ann@example.com", name="Ann Lee", fields={"policy_count": 2}
    )


# ===========================================================================
# Starting
# ===========================================================================


class TestStartEnrollment:
    def test_positioned_at_first_node(self):
        enrollment = enroll(WorkflowGraph.from_nodes(welcome_workflow()))
        assert enrollment.current_node_id == "entry-criteria"
        assert enrollment.current_node_path == ["entry-criteria"]
        assert enrollment.status is EnrollmentStatus.ACTIVE
        assert enrollment.entry_count == 1

    def test_pacing_hold(self):
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        hold = datetime(2026, 10, 21, tzinfo=timezone.utc)
        enrollment = start_enrollment(1, "acct-001", graph, T0, wait_until=hold)
        assert enrollment.status is EnrollmentStatus.WAITING
        assert enrollment.wait_until == hold

    def test_hold_until(self):
        assert hold_until(date(2026, 10, 19), T0) is None
        assert hold_until(date(2026, 10, 21), T0) == datetime(2026, 10, 21, tzinfo=timezone.utc)


# ===========================================================================
# Sends and delays
# ===========================================================================


class TestSendAndDelay:
    def test_non_send_pass_stops_at_send_step(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        enrollment = enroll(graph)
        result = EnrollmentMachine(graph, fake_effects).resume(enrollment, contact, T0)

        assert result.blocked_on_send
        assert result.visited == ["entry-criteria", "trigger"]
        assert enrollment.current_node_id == "welcome"
        assert enrollment.status is EnrollmentStatus.ACTIVE
        assert fake_effects.send_calls == []

    def test_delay_waits_then_resumes(self, contact, fake_effects: FakeEffects):
        """A 3-day delay holds until t0 + 3d and resumes on the first tick after."""
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        machine = EnrollmentMachine(graph, fake_effects)
        enrollment = enroll(graph)

        result = machine.resume(enrollment, contact, T0, allow_send=True)
        assert result.emails_sent == 1
        assert enrollment.status is EnrollmentStatus.WAITING
        assert enrollment.current_node_id == "wait"
        assert enrollment.wait_until == T0 + timedelta(days=3)

        for hours in (1, 24, 71):
            later = T0 + timedelta(hours=hours)
            result = machine.resume(enrollment, contact, later, allow_send=True)
            assert not result.moved
            assert enrollment.status is EnrollmentStatus.WAITING

        result = machine.resume(enrollment, contact, T0 + timedelta(days=3), allow_send=True)
        assert result.visited[0] == "wait"
        assert fake_effects.send_calls == ["welcome", "reminder"]
        assert enrollment.status is EnrollmentStatus.COMPLETED
        assert enrollment.emails_sent == 2
        assert enrollment.completed_at == T0 + timedelta(days=3)

    def test_already_sent_step_is_not_resent(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        machine = EnrollmentMachine(graph, fake_effects)
        enrollment = enroll(graph)
        machine.resume(enrollment, contact, T0, allow_send=True)

        # Rewind onto the send step as if the position update had been lost
        enrollment.current_node_id = "welcome"
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.wait_until = None
        machine.resume(enrollment, contact, T0, allow_send=True)
        assert fake_effects.send_calls == ["welcome"]

    def test_exit_outcome_completes_with_reason(self, contact, fake_effects: FakeEffects):
        fake_effects.outcome = SendResult(SendOutcome.EXITED, "opted out")
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        enrollment = enroll(graph)
        EnrollmentMachine(graph, fake_effects).resume(enrollment, contact, T0, allow_send=True)

        assert enrollment.status is EnrollmentStatus.COMPLETED
        assert enrollment.exit_reason == "opted out"
        assert enrollment.current_node_id == "welcome"

    def test_skip_outcome_advances(self, contact, fake_effects: FakeEffects):
        fake_effects.outcome = SendResult(SendOutcome.SKIPPED, "no template")
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        enrollment = enroll(graph)
        EnrollmentMachine(graph, fake_effects).resume(enrollment, contact, T0, allow_send=True)

        assert enrollment.current_node_id == "wait"
        assert enrollment.emails_sent == 0
        skipped = [e for e in fake_effects.events if e.action == EventAction.SKIPPED]
        assert skipped[0].error == "no template"

    def test_zero_delay_passes_straight_through(self, contact, fake_effects: FakeEffects):
        nodes = welcome_workflow()
        nodes[3]["config"] = {"duration": 0, "unit": "days"}
        graph = WorkflowGraph.from_nodes(nodes)
        enrollment = enroll(graph)
        EnrollmentMachine(graph, fake_effects).resume(enrollment, contact, T0, allow_send=True)
        assert enrollment.status is EnrollmentStatus.COMPLETED
        assert fake_effects.send_calls == ["welcome", "reminder"]

    def test_completed_enrollment_is_untouched(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        enrollment = enroll(graph)
        enrollment.status = EnrollmentStatus.COMPLETED
        result = EnrollmentMachine(graph, fake_effects).resume(enrollment, contact, T0, True)
        assert not result.moved
        assert fake_effects.events == []

    def test_paced_enrollment_waits_at_first_node(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        hold = datetime(2026, 10, 21, tzinfo=timezone.utc)
        enrollment = start_enrollment(1, "acct-001", graph, T0, wait_until=hold)
        machine = EnrollmentMachine(graph, fake_effects)

        machine.resume(enrollment, contact, T0, allow_send=True)
        assert enrollment.current_node_id == "entry-criteria"
        assert fake_effects.send_calls == []

        machine.resume(enrollment, contact, hold, allow_send=True)
        assert fake_effects.send_calls == ["welcome"]


# ===========================================================================
# Branches
# ===========================================================================


class TestBranches:
    def _sent(self, fake_effects: FakeEffects, contact, graph):
        machine = EnrollmentMachine(graph, fake_effects)
        enrollment = enroll(graph)
        machine.resume(enrollment, contact, T0, allow_send=True)
        return machine, enrollment

    def test_not_opened_takes_no_branch(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(engagement_nodes())
        _, enrollment = self._sent(fake_effects, contact, graph)
        assert enrollment.current_node_id == "wait"
        assert enrollment.current_node_path == ["opened", "wait"]
        branched = [e for e in fake_effects.events if e.action == EventAction.BRANCHED]
        assert branched[0].branch is Branch.NO

    def test_opened_takes_yes_branch(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(engagement_nodes())
        machine = EnrollmentMachine(graph, fake_effects)
        enrollment = enroll(graph)
        # Stop at the send step, send, then mark the open before the condition runs
        machine.resume(enrollment, contact, T0)
        fake_effects.send_email(enrollment, contact, graph.nodes["send"], T0)
        fake_effects.ledger["send"].opened_at = T0 + timedelta(hours=1)

        machine.resume(enrollment, contact, T0 + timedelta(hours=2), allow_send=True)
        assert enrollment.status is EnrollmentStatus.COMPLETED
        assert enrollment.current_node_id == "yes-end"
        assert "renewal_touched" not in contact.fields

    def test_empty_branch_advances_past_condition(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(engagement_nodes(yes_branch=[]))
        machine = EnrollmentMachine(graph, fake_effects)
        enrollment = enroll(graph)
        machine.resume(enrollment, contact, T0)
        fake_effects.send_email(enrollment, contact, graph.nodes["send"], T0)
        fake_effects.ledger["send"].opened_at = T0

        machine.resume(enrollment, contact, T0, allow_send=True)
        assert contact.fields["renewal_touched"] is True
        assert enrollment.status is EnrollmentStatus.COMPLETED
        assert enrollment.exit_reason is None

    def test_branch_end_climbs_to_parent_sibling(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(engagement_nodes())
        machine, enrollment = self._sent(fake_effects, contact, graph)
        machine.resume(enrollment, contact, T0 + timedelta(days=2), allow_send=True)
        assert contact.fields["renewal_touched"] is True
        assert enrollment.status is EnrollmentStatus.COMPLETED

    def test_field_condition_branch(self, contact, fake_effects: FakeEffects):
        nodes = [
            {"id": "entry-criteria", "type": "entry_criteria"},
            {"id": "trigger", "type": "trigger"},
            {
                "id": "multi",
                "type": "field_condition",
                "config": {"field": "policy_count", "operator": "at_least", "value": 2},
                "branches": {
                    "yes": [set_tier("cross", "multi")],
                    "no": [set_tier("single", "single")],
                },
            },
        ]
        graph = WorkflowGraph.from_nodes(nodes)
        enrollment = enroll(graph)
        EnrollmentMachine(graph, fake_effects).resume(enrollment, contact, T0)
        assert contact.fields["tier"] == "multi"
        assert enrollment.status is EnrollmentStatus.COMPLETED


class TestFieldMatches:
    @pytest.mark.parametrize(
        "config,expected",
        [
            ({"field": "state", "operator": "equals", "value": "TX"}, True),
            ({"field": "state", "operator": "not_equals", "value": "TX"}, False),
            ({"field": "state", "value": "OK"}, False),
            ({"field": "policy_count", "operator": "equals", "value": "2"}, True),
            ({"field": "policy_count", "operator": "at_most", "value": 1}, False),
            ({"field": "missing", "operator": "not_equals", "value": "x"}, False),
            ({"operator": "equals", "value": "TX"}, False),
        ],
    )
    def test_operators(self, config, expected):
        contact = Contact(id="a", fields={"state": "TX", "policy_count": 2})
        assert field_matches(contact, config) is expected


# ===========================================================================
# Workflow edits under live enrollments
# ===========================================================================


class TestNodeRemoval:
    def test_deleted_branch_node_resumes_at_ancestor(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(engagement_nodes())
        machine = EnrollmentMachine(graph, fake_effects)
        enrollment = enroll(graph)
        machine.resume(enrollment, contact, T0, allow_send=True)
        assert enrollment.current_node_id == "wait"

        graph.delete_node("wait")
        machine.resume(enrollment, contact, T0 + timedelta(hours=1), allow_send=True)
        # Condition re-evaluated: still unopened, the no branch is now empty
        assert contact.fields["renewal_touched"] is True
        assert enrollment.status is EnrollmentStatus.COMPLETED

    def test_deleted_top_level_node_completes(self, contact, fake_effects: FakeEffects):
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        machine = EnrollmentMachine(graph, fake_effects)
        enrollment = enroll(graph)
        machine.resume(enrollment, contact, T0, allow_send=True)
        assert enrollment.current_node_id == "wait"

        graph.delete_node("wait")
        machine.resume(enrollment, contact, T0 + timedelta(days=4), allow_send=True)
        assert enrollment.status is EnrollmentStatus.COMPLETED
        assert enrollment.exit_reason == EXIT_NODE_REMOVED


# ===========================================================================
# Re-entry
# ===========================================================================


class TestCanEnter:
    ALLOW_30 = ReentryConfig(enabled=True, type=ReentryType.AFTER_DAYS, days=30)

    def _completed(self, entered: datetime) -> Enrollment:
        return Enrollment(
            status=EnrollmentStatus.COMPLETED, entered_at=entered, last_entered_at=entered
        )

    def test_first_entry(self):
        assert can_enter(None, ReentryConfig(), T0)

    def test_reentry_disabled_blocks_completed(self):
        existing = self._completed(T0 - timedelta(days=400))
        assert not can_enter(existing, ReentryConfig(enabled=False), T0)

    def test_never_type(self):
        existing = self._completed(T0 - timedelta(days=400))
        assert not can_enter(existing, ReentryConfig(enabled=True, type=ReentryType.NEVER), T0)

    def test_in_flight_never_restarts(self):
        existing = Enrollment(status=EnrollmentStatus.WAITING, entered_at=T0 - timedelta(days=90))
        assert not can_enter(existing, self.ALLOW_30, T0)

    def test_after_days_boundary(self):
        assert not can_enter(self._completed(T0 - timedelta(days=29)), self.ALLOW_30, T0)
        assert can_enter(self._completed(T0 - timedelta(days=30)), self.ALLOW_30, T0)

    def test_reenter_resets_state(self):
        graph = WorkflowGraph.from_nodes(welcome_workflow())
        existing = self._completed(T0 - timedelta(days=60))
        existing.exit_reason = "opted out"
        existing.emails_sent = 2
        reenter(existing, graph, T0)

        assert existing.status is EnrollmentStatus.ACTIVE
        assert existing.entry_count == 2
        assert existing.last_entered_at == T0
        assert existing.entered_at == T0 - timedelta(days=60)
        assert existing.exit_reason is None
        assert existing.emails_sent == 0
        assert existing.current_node_id == "entry-criteria"
