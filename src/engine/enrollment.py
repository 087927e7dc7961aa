"""Enrollment state machine.

Moves one enrollment through its automation's workflow until something
blocks it: a delay that hasn't elapsed, a send step on a pass that isn't
allowed to send, or the end of the workflow.

States:
    active -> waiting (delay or pacing hold) -> active -> ... -> completed

Node handling:
    - entry_criteria / trigger: pass through
    - delay: wait_until = now + duration, status waiting
    - send_email: hand off to the effects, then Advance (send passes only)
    - condition: yes/no on the open/click stamps of an earlier send
    - field_condition: yes/no on a contact field comparison
    - update_field: write the field, then Advance
    - end, or running off the tree: completed

Side effects (sending, field writes, history rows) go through a
WorkflowEffects object so the machine itself never touches storage.

Usage:
    from src.engine.enrollment import EnrollmentMachine

    machine = EnrollmentMachine(graph, effects)
    result = machine.resume(enrollment, contact, now, allow_send=True)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Optional

from src.core.logging import get_logger
from src.db.models import (
    Branch,
    Contact,
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    EventAction,
    NodeType,
    NumberOperator,
    ReentryConfig,
    ReentryType,
    SentEmail,
)
from src.engine.filters import compare_number, compare_select
from src.engine.workflow import WorkflowGraph, WorkflowNode, delay_duration

logger = get_logger(__name__)

EXIT_NODE_REMOVED = "node removed"
EXIT_EMPTY_WORKFLOW = "empty workflow"

ENGAGEMENT_OPENED = "email_opened"
ENGAGEMENT_CLICKED = "email_clicked"


# =============================================================================
# EFFECTS
# =============================================================================


class SendOutcome(str, Enum):
    """What happened when a send step was handed off."""

    SENT = "sent"
    SKIPPED = "skipped"
    EXITED = "exited"


@dataclass(frozen=True)
class SendResult:
    outcome: SendOutcome
    reason: Optional[str] = None


class WorkflowEffects(ABC):
    """Everything the machine needs from the outside world."""

    @abstractmethod
    def find_sent(self, enrollment: Enrollment, node_id: str) -> Optional[SentEmail]:
        """Ledger row for a send step in the enrollment's current entry."""

    @abstractmethod
    def send_email(
        self,
        enrollment: Enrollment,
        contact: Contact,
        node: WorkflowNode,
        now: datetime,
    ) -> SendResult:
        """Hand the email off; raises on delivery failure."""

    @abstractmethod
    def update_field(self, contact: Contact, field_name: str, value: Any) -> None:
        """Write a contact field."""

    def record(self, event: EnrollmentEvent) -> None:
        """Store a history row. Default: log only."""
        logger.debug(
            "Enrollment event",
            extra={
                "context": {
                    "enrollment_id": event.enrollment_id,
                    "node_id": event.node_id,
                    "action": event.action.value,
                }
            },
        )


# =============================================================================
# RE-ENTRY
# =============================================================================


def can_enter(existing: Optional[Enrollment], reentry: ReentryConfig, now: datetime) -> bool:
    """Decide whether a matching contact may (re-)enter.

    Args:
        existing: The contact's enrollment in this automation, if any
        reentry: Automation re-entry policy
        now: Current time

    Returns:
        True for a first entry, or a re-entry the policy allows
    """
    if existing is None:
        return True
    if not existing.is_completed:
        # Mid-flight enrollments never restart
        return False
    if not reentry.enabled or reentry.type == ReentryType.NEVER:
        return False
    last = existing.last_entered_at or existing.entered_at
    if last is None:
        return True
    return now - last >= timedelta(days=reentry.days)


def hold_until(send_date: date, now: datetime) -> Optional[datetime]:
    """Wait target for a paced enrollee (midnight of its send date)."""
    if send_date <= now.date():
        return None
    return datetime.combine(send_date, time.min, tzinfo=now.tzinfo)


def start_enrollment(
    automation_id: int,
    contact_id: str,
    graph: WorkflowGraph,
    now: datetime,
    wait_until: Optional[datetime] = None,
) -> Enrollment:
    """New enrollment positioned at the first node."""
    first = graph.first()
    enrollment = Enrollment(
        automation_id=automation_id,
        contact_id=contact_id,
        entered_at=now,
        last_entered_at=now,
        entry_count=1,
        updated_at=now,
    )
    _position(enrollment, graph, first)
    _apply_hold(enrollment, wait_until)
    return enrollment


def reenter(
    enrollment: Enrollment,
    graph: WorkflowGraph,
    now: datetime,
    wait_until: Optional[datetime] = None,
) -> Enrollment:
    """Reset a completed enrollment for a new entry."""
    enrollment.status = EnrollmentStatus.ACTIVE
    enrollment.last_entered_at = now
    enrollment.entry_count += 1
    enrollment.completed_at = None
    enrollment.exit_reason = None
    enrollment.emails_sent = 0
    enrollment.wait_until = None
    enrollment.updated_at = now
    _position(enrollment, graph, graph.first())
    _apply_hold(enrollment, wait_until)
    return enrollment


def _apply_hold(enrollment: Enrollment, wait_until: Optional[datetime]) -> None:
    if wait_until is not None:
        enrollment.status = EnrollmentStatus.WAITING
        enrollment.wait_until = wait_until


def _position(enrollment: Enrollment, graph: WorkflowGraph, node_id: Optional[str]) -> None:
    enrollment.current_node_id = node_id
    enrollment.current_node_path = graph.path_to(node_id) if node_id else []


# =============================================================================
# MACHINE
# =============================================================================


@dataclass
class StepResult:
    """Outcome of one resume call.

    Attributes:
        enrollment: The (mutated) enrollment
        visited: Node ids processed during this call
        emails_sent: Emails handed off during this call
        blocked_on_send: Stopped at a send step on a non-send pass
    """

    enrollment: Enrollment
    visited: list[str] = field(default_factory=list)
    emails_sent: int = 0
    blocked_on_send: bool = False

    @property
    def status(self) -> EnrollmentStatus:
        return self.enrollment.status

    @property
    def moved(self) -> bool:
        return bool(self.visited)


class EnrollmentMachine:
    """Runs enrollments of one automation's workflow."""

    def __init__(self, graph: WorkflowGraph, effects: WorkflowEffects):
        self.graph = graph
        self.effects = effects

    def resume(
        self,
        enrollment: Enrollment,
        contact: Contact,
        now: datetime,
        allow_send: bool = False,
    ) -> StepResult:
        """Advance an enrollment as far as it can go right now.

        Args:
            enrollment: Enrollment to move (mutated in place)
            contact: Enrolled contact
            now: Current time
            allow_send: Whether send steps may hand off emails on this pass

        Returns:
            StepResult
        """
        result = StepResult(enrollment=enrollment)
        if enrollment.is_completed:
            return result

        node_id = self._current_node(enrollment, now)
        if node_id is None:
            return result

        if enrollment.status == EnrollmentStatus.WAITING:
            if enrollment.wait_until is not None and now < enrollment.wait_until:
                return result
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.wait_until = None
            node = self.graph.nodes[node_id]
            if node.type == NodeType.DELAY:
                self._event(enrollment, node, EventAction.COMPLETED, now)
                result.visited.append(node_id)
                node_id = self.graph.next_after(node_id)

        # The tree is finite, so each pass visits every node at most once
        for _ in range(len(self.graph) + 1):
            if node_id is None:
                self._complete(enrollment, now)
                return result
            node = self.graph.nodes[node_id]
            _position(enrollment, self.graph, node_id)
            enrollment.updated_at = now

            next_id, stop = self._step(enrollment, contact, node, now, allow_send, result)
            if stop:
                return result
            result.visited.append(node_id)
            node_id = next_id

        logger.error(
            "Enrollment walked more nodes than the workflow holds",
            extra={"context": {"enrollment_id": enrollment.id}},
        )
        return result

    def _current_node(self, enrollment: Enrollment, now: datetime) -> Optional[str]:
        """Resolve the node to resume from, handling deleted nodes."""
        node_id = enrollment.current_node_id
        if node_id is None:
            node_id = self.graph.first()
            if node_id is None:
                self._complete(enrollment, now, EXIT_EMPTY_WORKFLOW)
            return node_id
        if node_id in self.graph:
            return node_id

        # Node was deleted: fall back to the deepest surviving ancestor
        for ancestor in reversed(enrollment.current_node_path[:-1]):
            if ancestor in self.graph:
                logger.info(
                    "Enrollment node removed, resuming at ancestor",
                    extra={
                        "context": {
                            "enrollment_id": enrollment.id,
                            "removed": node_id,
                            "ancestor": ancestor,
                        }
                    },
                )
                enrollment.status = EnrollmentStatus.ACTIVE
                enrollment.wait_until = None
                _position(enrollment, self.graph, ancestor)
                return ancestor

        self._complete(enrollment, now, EXIT_NODE_REMOVED)
        return None

    def _step(
        self,
        enrollment: Enrollment,
        contact: Contact,
        node: WorkflowNode,
        now: datetime,
        allow_send: bool,
        result: StepResult,
    ) -> tuple[Optional[str], bool]:
        """Process one node.

        Returns:
            (next node id, whether the machine stops here)
        """
        if node.type in (NodeType.ENTRY_CRITERIA, NodeType.TRIGGER):
            return self.graph.next_after(node.id), False

        if node.type == NodeType.DELAY:
            wait = delay_duration(node.config)
            if wait <= timedelta(0):
                self._event(enrollment, node, EventAction.COMPLETED, now)
                return self.graph.next_after(node.id), False
            enrollment.status = EnrollmentStatus.WAITING
            enrollment.wait_until = now + wait
            self._event(enrollment, node, EventAction.ENTERED, now)
            return None, True

        if node.type == NodeType.SEND_EMAIL:
            return self._send(enrollment, contact, node, now, allow_send, result)

        if node.type == NodeType.CONDITION:
            branch = self._engagement_branch(enrollment, node)
            self._event(enrollment, node, EventAction.BRANCHED, now, branch=branch)
            return self.graph.enter_branch(node.id, branch), False

        if node.type == NodeType.FIELD_CONDITION:
            branch = Branch.YES if field_matches(contact, node.config) else Branch.NO
            self._event(enrollment, node, EventAction.BRANCHED, now, branch=branch)
            return self.graph.enter_branch(node.id, branch), False

        if node.type == NodeType.UPDATE_FIELD:
            field_name = node.config.get("field")
            if field_name:
                self.effects.update_field(contact, field_name, node.config.get("value"))
                self._event(enrollment, node, EventAction.COMPLETED, now)
            else:
                self._event(enrollment, node, EventAction.SKIPPED, now)
            return self.graph.next_after(node.id), False

        # NodeType.END
        self._event(enrollment, node, EventAction.COMPLETED, now)
        self._complete(enrollment, now)
        return None, True

    def _send(
        self,
        enrollment: Enrollment,
        contact: Contact,
        node: WorkflowNode,
        now: datetime,
        allow_send: bool,
        result: StepResult,
    ) -> tuple[Optional[str], bool]:
        if self.effects.find_sent(enrollment, node.id) is not None:
            # Already handed off in this entry
            return self.graph.next_after(node.id), False

        if not allow_send:
            result.blocked_on_send = True
            return None, True

        outcome = self.effects.send_email(enrollment, contact, node, now)
        if outcome.outcome == SendOutcome.EXITED:
            self._event(enrollment, node, EventAction.SKIPPED, now, error=outcome.reason)
            self._complete(enrollment, now, outcome.reason)
            return None, True
        if outcome.outcome == SendOutcome.SKIPPED:
            self._event(enrollment, node, EventAction.SKIPPED, now, error=outcome.reason)
            return self.graph.next_after(node.id), False

        enrollment.emails_sent += 1
        result.emails_sent += 1
        self._event(enrollment, node, EventAction.COMPLETED, now)
        return self.graph.next_after(node.id), False

    def _engagement_branch(self, enrollment: Enrollment, node: WorkflowNode) -> Branch:
        email_node_id = node.config.get("emailNodeId")
        if not email_node_id:
            return Branch.NO
        sent = self.effects.find_sent(enrollment, email_node_id)
        if sent is None:
            return Branch.NO
        if node.config.get("type") == ENGAGEMENT_CLICKED:
            return Branch.YES if sent.clicked_at is not None else Branch.NO
        return Branch.YES if sent.opened_at is not None else Branch.NO

    def _complete(
        self,
        enrollment: Enrollment,
        now: Optional[datetime],
        exit_reason: Optional[str] = None,
    ) -> None:
        enrollment.status = EnrollmentStatus.COMPLETED
        enrollment.completed_at = now
        enrollment.wait_until = None
        if exit_reason:
            enrollment.exit_reason = exit_reason
        logger.debug(
            "Enrollment completed",
            extra={
                "context": {
                    "enrollment_id": enrollment.id,
                    "contact_id": enrollment.contact_id,
                    "exit_reason": exit_reason,
                }
            },
        )

    def _event(
        self,
        enrollment: Enrollment,
        node: WorkflowNode,
        action: EventAction,
        now: datetime,
        branch: Optional[Branch] = None,
        error: Optional[str] = None,
    ) -> None:
        self.effects.record(
            EnrollmentEvent(
                enrollment_id=enrollment.id or 0,
                node_id=node.id,
                node_type=node.type,
                action=action,
                branch=branch,
                error=error,
                created_at=now,
            )
        )


def field_matches(contact: Contact, config: dict[str, Any]) -> bool:
    """Evaluate a field_condition node against a contact.

    Config: {"field": ..., "operator": ..., "value": ...}. Operators are
    equals / not_equals (select shaped) and at_least / at_most (numeric).
    A missing field never matches.
    """
    field_name = config.get("field")
    if not field_name:
        return False
    actual = contact.fields.get(field_name)
    if actual is None or actual == "":
        return False

    operator = config.get("operator") or NumberOperator.EQUALS.value
    expected = config.get("value")

    if operator in (NumberOperator.AT_LEAST.value, NumberOperator.AT_MOST.value):
        return compare_number(actual, operator, expected)

    matched, _ = compare_select(actual, expected)
    if not matched:
        matched = compare_number(actual, NumberOperator.EQUALS.value, expected)
    if operator == "not_equals":
        return not matched
    return matched
