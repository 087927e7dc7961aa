"""Scheduled automation actions.

Three actions the scheduler calls, plus the daily cycle that chains them:
    - refresh: match contacts against each active automation and enroll
    - verify: move waiting/active enrollments past elapsed delays and branches
    - send: hand off emails for enrollments sitting on a send step
    - daily: refresh + verify + send

Ticks are idempotent. Refresh never enrolls a contact twice in the same
automation (one row per contact per automation). Send never hands off
the same step twice for one entry (ledger row per enrollment, node and
entry). A shared run-lock keeps overlapping ticks from running at once.

Each enrollment is processed in its own transaction, so one failure
rolls back only that enrollment and is retried on the next tick.

Usage:
    from src.autonomous.runner import AutomationRunner

    runner = AutomationRunner(db, WebhookMailer())
    result = runner.daily()
    print(result.summary())
"""

import os
import socket
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Optional

from src.core.config import Config, get_config
from src.core.exceptions import RunLockError, ValidationError
from src.core.logging import get_logger, log_context
from src.db.database import Database
from src.db.models import (
    Automation,
    AutomationStatus,
    Contact,
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    EventAction,
    NodeType,
    SentEmail,
)
from src.engine.conditions import DEFAULT_CATALOG, ConditionCatalog
from src.engine.enrollment import (
    EnrollmentMachine,
    SendOutcome,
    SendResult,
    StepResult,
    WorkflowEffects,
    can_enter,
    hold_until,
    reenter,
    start_enrollment,
)
from src.engine.filters import evaluate_audience
from src.engine.pacing import assign_send_dates
from src.engine.templates import render_email, template_exists
from src.engine.workflow import WorkflowGraph, WorkflowNode
from src.integrations.mailer import Mailer, OutboundEmail

logger = get_logger(__name__)

Clock = Callable[[], datetime]

RUN_LOCK_NAME = "automation-run"

# Same template to the same contact within this window is skipped
RECENT_TEMPLATE_WINDOW = timedelta(days=7)

EXIT_OPTED_OUT = "opted out"
EXIT_NO_EMAIL = "no valid email"
EXIT_CONTACT_REMOVED = "contact removed"
SKIP_NO_TEMPLATE = "no template"
SKIP_RECENT_TEMPLATE = "template sent within 7 days"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunResult:
    """Counters from one action (or the daily cycle)."""

    action: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    automations_processed: int = 0
    contacts_evaluated: int = 0
    contacts_matched: int = 0
    enrolled: int = 0
    reentered: int = 0
    reentry_skipped: int = 0
    paced: int = 0
    enrollments_advanced: int = 0
    enrollments_waiting: int = 0
    enrollments_completed: int = 0
    emails_sent: int = 0
    failures: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "RunResult") -> None:
        """Add another result's counters into this one."""
        for name in (
            "automations_processed",
            "contacts_evaluated",
            "contacts_matched",
            "enrolled",
            "reentered",
            "reentry_skipped",
            "paced",
            "enrollments_advanced",
            "enrollments_waiting",
            "enrollments_completed",
            "emails_sent",
            "failures",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.errors.extend(other.errors)

    def summary(self) -> str:
        return (
            f"{self.action}: {self.enrolled} enrolled, {self.reentered} re-entered, "
            f"{self.enrollments_advanced} advanced, {self.emails_sent} sent, "
            f"{self.enrollments_completed} completed, {len(self.errors)} errors"
        )


class DatabaseEffects(WorkflowEffects):
    """Workflow side effects backed by the database and the mailer."""

    def __init__(
        self,
        db: Database,
        mailer: Mailer,
        automation: Automation,
        sender: Optional[dict[str, Any]] = None,
    ):
        self.db = db
        self.mailer = mailer
        self.automation = automation
        self.sender = sender or {}

    def find_sent(self, enrollment: Enrollment, node_id: str) -> Optional[SentEmail]:
        if enrollment.id is None:
            return None
        return self.db.get_sent_email(enrollment.id, node_id, enrollment.entry_count)

    def send_email(
        self,
        enrollment: Enrollment,
        contact: Contact,
        node: WorkflowNode,
        now: datetime,
    ) -> SendResult:
        """Pre-send checks, render, hand off and write the ledger row.

        Raises:
            EmailSendError: Hand-off failed (the caller rolls back)
        """
        if contact.email_opt_out:
            return SendResult(SendOutcome.EXITED, EXIT_OPTED_OUT)
        recipient = contact.email
        if not recipient or not contact.has_valid_email():
            return SendResult(SendOutcome.EXITED, EXIT_NO_EMAIL)

        template_key = node.config.get("templateKey") or node.config.get("template") or ""
        if not template_exists(template_key):
            logger.warning(
                "Send step has no usable template",
                extra={
                    "context": {
                        "automation_id": self.automation.id,
                        "node_id": node.id,
                        "template": template_key,
                    }
                },
            )
            return SendResult(SendOutcome.SKIPPED, SKIP_NO_TEMPLATE)

        if self.db.template_sent_since(contact.id, template_key, now - RECENT_TEMPLATE_WINDOW):
            return SendResult(SendOutcome.SKIPPED, SKIP_RECENT_TEMPLATE)

        rendered = render_email(
            template_key,
            contact,
            subject=node.config.get("subject"),
            sender=self.sender,
        )
        self.mailer.send(
            OutboundEmail(
                to=recipient,
                subject=rendered.subject,
                html=rendered.html,
                template_key=template_key,
                metadata={
                    "automation_id": self.automation.id,
                    "enrollment_id": enrollment.id,
                    "node_id": node.id,
                    "entry": enrollment.entry_count,
                },
            )
        )
        self.db.record_sent_email(
            SentEmail(
                enrollment_id=enrollment.id or 0,
                node_id=node.id,
                entry_number=enrollment.entry_count,
                contact_id=contact.id,
                template_key=template_key,
                to_address=recipient,
                subject=rendered.subject,
                sent_at=now,
            )
        )
        return SendResult(SendOutcome.SENT)

    def update_field(self, contact: Contact, field_name: str, value: Any) -> None:
        contact.fields[field_name] = value
        self.db.update_contact_field(contact.id, field_name, value)

    def record(self, event: EnrollmentEvent) -> None:
        self.db.add_enrollment_event(event)


class AutomationRunner:
    """Runs refresh / verify / send against the database."""

    def __init__(
        self,
        db: Database,
        mailer: Mailer,
        clock: Clock = utc_now,
        config: Optional[Config] = None,
        catalog: ConditionCatalog = DEFAULT_CATALOG,
        sender: Optional[dict[str, Any]] = None,
    ):
        self.db = db
        self.mailer = mailer
        self.clock = clock
        self.config = config or get_config()
        self.catalog = catalog
        self.sender = sender or {}
        self._owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    # -------------------------------------------------------------------------
    # Public actions
    # -------------------------------------------------------------------------

    def refresh(self, now: Optional[datetime] = None) -> RunResult:
        """Enroll newly matching contacts in every active automation.

        Raises:
            RunLockError: Another tick is running
        """
        now = now or self.clock()
        with self._run_lock(now, "refresh"):
            return self._finish(self._refresh(now))

    def verify(self, now: Optional[datetime] = None) -> RunResult:
        """Resume waiting and active enrollments without sending.

        Raises:
            RunLockError: Another tick is running
        """
        now = now or self.clock()
        with self._run_lock(now, "verify"):
            return self._finish(self._verify(now))

    def send(self, now: Optional[datetime] = None) -> RunResult:
        """Hand off emails for enrollments positioned on a send step.

        Raises:
            RunLockError: Another tick is running
        """
        now = now or self.clock()
        with self._run_lock(now, "send"):
            return self._finish(self._send(now))

    def daily(self, now: Optional[datetime] = None) -> RunResult:
        """Full cycle: refresh, verify, then send.

        Each step is wrapped so one failure doesn't stop the cycle.

        Raises:
            RunLockError: Another tick is running
        """
        now = now or self.clock()
        result = RunResult(action="daily", started_at=now)
        with self._run_lock(now, "daily"):
            logger.info("Daily cycle starting")
            steps = (("refresh", self._refresh), ("verify", self._verify), ("send", self._send))
            for name, step in steps:
                try:
                    result.merge(step(now))
                except Exception as e:
                    result.errors.append(f"{name}: {e}")
                    logger.error(f"Daily step {name} failed: {e}", exc_info=True)
            return self._finish(result)

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    @contextmanager
    def _run_lock(self, now: datetime, action: str) -> Iterator[None]:
        ttl = timedelta(minutes=self.config.run_lock_ttl_minutes)
        if not self.db.acquire_run_lock(RUN_LOCK_NAME, self._owner, now, ttl):
            raise RunLockError(f"Run lock {RUN_LOCK_NAME!r} is held by another tick")
        try:
            with log_context(action=action, run=uuid.uuid4().hex[:8]):
                yield
        finally:
            self.db.release_run_lock(RUN_LOCK_NAME, self._owner)

    def _finish(self, result: RunResult) -> RunResult:
        result.completed_at = self.clock()
        logger.info(
            result.summary(),
            extra={"context": {"action": result.action, "errors": len(result.errors)}},
        )
        return result

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    def _refresh(self, now: datetime) -> RunResult:
        result = RunResult(action="refresh", started_at=now)
        contacts = self.db.get_contacts()
        for automation in self.db.get_automations(AutomationStatus.ACTIVE):
            try:
                self._refresh_automation(automation, contacts, now, result)
                result.automations_processed += 1
            except Exception as e:
                result.failures += 1
                result.errors.append(f"Automation {automation.id} refresh: {e}")
                logger.error(
                    "Automation refresh failed",
                    extra={"context": {"automation_id": automation.id, "error": str(e)}},
                    exc_info=True,
                )
        return result

    def _refresh_automation(
        self,
        automation: Automation,
        contacts: list[Contact],
        now: datetime,
        result: RunResult,
    ) -> None:
        if automation.id is None:
            raise ValidationError(f"Automation {automation.name!r} has not been saved")
        graph = WorkflowGraph.from_nodes(automation.nodes)
        effects = DatabaseEffects(self.db, self.mailer, automation, self.sender)
        machine = EnrollmentMachine(graph, effects)
        reentry = automation.reentry

        candidates: list[tuple[Contact, Optional[Enrollment]]] = []
        for contact in contacts:
            result.contacts_evaluated += 1
            audience = evaluate_audience(
                automation.filter_config, contact.filter_record(), now, self.catalog
            )
            if not audience.passes:
                continue
            result.contacts_matched += 1
            existing = self.db.find_enrollment(automation.id, contact.id)
            if not can_enter(existing, reentry, now):
                if existing is not None and existing.is_completed:
                    result.reentry_skipped += 1
                continue
            candidates.append((contact, existing))

        send_dates = assign_send_dates(
            [contact.id for contact, _ in candidates], automation.pacing, now.date()
        )

        for contact, existing in candidates:
            wait_until = hold_until(send_dates[contact.id], now)
            try:
                with self.db.transaction():
                    if existing is None:
                        enrollment = start_enrollment(
                            automation.id, contact.id, graph, now, wait_until
                        )
                        self.db.create_enrollment(enrollment)
                    else:
                        enrollment = reenter(existing, graph, now, wait_until)
                    first = graph.get(enrollment.current_node_id)
                    if first is not None:
                        effects.record(
                            EnrollmentEvent(
                                enrollment_id=enrollment.id or 0,
                                node_id=first.id,
                                node_type=first.type,
                                action=EventAction.ENTERED,
                                created_at=now,
                            )
                        )
                    step = machine.resume(enrollment, contact, now, allow_send=False)
                    self.db.update_enrollment(enrollment)
            except Exception as e:
                self._record_failure(result, automation, contact.id, e)
                continue

            if existing is None:
                result.enrolled += 1
            else:
                result.reentered += 1
            if wait_until is not None:
                result.paced += 1
            self._tally(step, result)

        self.db.mark_automation_run(automation.id, now)
        logger.info(
            "Automation refreshed",
            extra={
                "context": {
                    "automation_id": automation.id,
                    "candidates": len(candidates),
                    "paced": automation.pacing.enabled,
                }
            },
        )

    # -------------------------------------------------------------------------
    # Verify / send
    # -------------------------------------------------------------------------

    def _verify(self, now: datetime) -> RunResult:
        return self._resume_all("verify", now, allow_send=False)

    def _send(self, now: datetime) -> RunResult:
        return self._resume_all("send", now, allow_send=True)

    def _resume_all(self, action: str, now: datetime, allow_send: bool) -> RunResult:
        result = RunResult(action=action, started_at=now)
        # Only active automations: paused ones keep their enrollments untouched
        for automation in self.db.get_automations(AutomationStatus.ACTIVE):
            try:
                self._resume_automation(automation, now, allow_send, result)
                result.automations_processed += 1
            except Exception as e:
                result.failures += 1
                result.errors.append(f"Automation {automation.id} {action}: {e}")
                logger.error(
                    f"Automation {action} failed",
                    extra={"context": {"automation_id": automation.id, "error": str(e)}},
                    exc_info=True,
                )
        return result

    def _resume_automation(
        self,
        automation: Automation,
        now: datetime,
        allow_send: bool,
        result: RunResult,
    ) -> None:
        if automation.id is None:
            raise ValidationError(f"Automation {automation.name!r} has not been saved")
        graph = WorkflowGraph.from_nodes(automation.nodes)
        effects = DatabaseEffects(self.db, self.mailer, automation, self.sender)
        machine = EnrollmentMachine(graph, effects)

        for enrollment in self.db.get_open_enrollments(automation.id):
            if allow_send and not self._positioned_to_send(enrollment, graph):
                continue
            if (
                enrollment.status == EnrollmentStatus.WAITING
                and enrollment.wait_until is not None
                and now < enrollment.wait_until
                and enrollment.current_node_id in graph
            ):
                result.enrollments_waiting += 1
                continue

            contact = self.db.get_contact(enrollment.contact_id)
            try:
                with self.db.transaction():
                    if contact is None:
                        enrollment.status = EnrollmentStatus.COMPLETED
                        enrollment.completed_at = now
                        enrollment.exit_reason = EXIT_CONTACT_REMOVED
                        enrollment.updated_at = now
                        self.db.update_enrollment(enrollment)
                        step = StepResult(enrollment=enrollment)
                    else:
                        step = machine.resume(enrollment, contact, now, allow_send=allow_send)
                        self.db.update_enrollment(enrollment)
            except Exception as e:
                self._record_failure(result, automation, enrollment.contact_id, e)
                continue
            self._tally(step, result)

    @staticmethod
    def _positioned_to_send(enrollment: Enrollment, graph: WorkflowGraph) -> bool:
        node = graph.get(enrollment.current_node_id)
        return (
            node is not None
            and node.type == NodeType.SEND_EMAIL
            and enrollment.status == EnrollmentStatus.ACTIVE
        )

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    @staticmethod
    def _tally(step: StepResult, result: RunResult) -> None:
        if step.moved:
            result.enrollments_advanced += 1
        result.emails_sent += step.emails_sent
        if step.status == EnrollmentStatus.COMPLETED:
            result.enrollments_completed += 1
        elif step.status == EnrollmentStatus.WAITING:
            result.enrollments_waiting += 1

    @staticmethod
    def _record_failure(
        result: RunResult,
        automation: Automation,
        contact_id: str,
        error: Exception,
    ) -> None:
        result.failures += 1
        result.errors.append(f"Automation {automation.id} contact {contact_id}: {error}")
        logger.error(
            "Enrollment processing failed, will retry next tick",
            extra={
                "context": {
                    "automation_id": automation.id,
                    "contact_id": contact_id,
                    "error": str(error),
                }
            },
            exc_info=True,
        )
