"""Shared pytest fixtures for AgencyFlow tests.

Fixtures:
    - temp_db: Fresh file-backed SQLite database
    - memory_db: Fresh in-memory SQLite database
    - now: Fixed evaluation time (Monday 2026-10-19 09:00 UTC)
    - sample_contact / opted_out_contact: Contact records
    - mock_config: Test configuration
    - fake_mailer: Mailer that records messages instead of sending
    - fake_effects: In-memory WorkflowEffects for the state machine
    - make_automation: Factory storing an automation in memory_db
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest

from src.core.config import Config
from src.core.exceptions import EmailSendError
from src.db.database import Database
from src.db.models import (
    Automation,
    AutomationStatus,
    Contact,
    Enrollment,
    EnrollmentEvent,
    FilterConfig,
    PacingConfig,
    ReentryConfig,
    SentEmail,
)
from src.engine.enrollment import SendOutcome, SendResult, WorkflowEffects
from src.engine.workflow import WorkflowNode
from src.integrations.mailer import Mailer, OutboundEmail

# Monday
FIXED_NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a temporary database for testing.

    Yields:
        Database connected to temp file, cleaned up after test
    """
    db_path = tmp_path / "test.db"
    db = Database(str(db_path))
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def memory_db() -> Generator[Database, None, None]:
    """Create an in-memory database for fast tests.

    Yields:
        Database using :memory:, no cleanup needed
    """
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def sample_contact() -> Contact:
    """Personal-lines customer with an active Auto policy."""
    return Contact(
        id="acct-001",
        email="ann.lee@example.com",
        name="Ann Lee",
        fields={
            "account_status": "customer",
            "active_policy_types": ["Auto"],
            "policy_class": "Personal",
            "state": "TX",
            "policy_count": 1,
            "is_new_customer": True,
        },
    )


@pytest.fixture
def opted_out_contact() -> Contact:
    return Contact(
        id="acct-002",
        email="bo.diaz@example.com",
        name="Bo Diaz",
        email_opt_out=True,
        fields={"active_policy_types": ["Auto"]},
    )


@pytest.fixture
def mock_config(tmp_path: Path) -> Config:
    """Test configuration with temp paths, dry-run on."""
    return Config(
        db_path=tmp_path / "test.db",
        log_path=tmp_path / "logs",
        email_endpoint="https://mail.example.test/send",
        email_api_key="test-key",
        from_email="agent@example.com",
        dry_run=True,
    )


class FakeMailer(Mailer):
    """Records handed-off emails; can be told to fail for some recipients."""

    name = "fake-mailer"

    def __init__(self) -> None:
        self.sent: list[OutboundEmail] = []
        self.fail_for: set[str] = set()

    def is_configured(self) -> bool:
        return True

    def health_check(self) -> bool:
        return True

    def send(self, email: OutboundEmail) -> str:
        if email.to in self.fail_for:
            raise EmailSendError(f"Rejected: {email.to}")
        self.sent.append(email)
        return f"msg-{len(self.sent)}"


@pytest.fixture
def fake_mailer() -> FakeMailer:
    return FakeMailer()


class FakeEffects(WorkflowEffects):
    """In-memory effects: a ledger keyed by node id and a list of events."""

    def __init__(self) -> None:
        self.ledger: dict[str, SentEmail] = {}
        self.events: list[EnrollmentEvent] = []
        self.outcome = SendResult(SendOutcome.SENT)
        self.send_calls: list[str] = []

    def find_sent(self, enrollment: Enrollment, node_id: str) -> Optional[SentEmail]:
        return self.ledger.get(node_id)

    def send_email(
        self,
        enrollment: Enrollment,
        contact: Contact,
        node: WorkflowNode,
        now: datetime,
    ) -> SendResult:
        self.send_calls.append(node.id)
        if self.outcome.outcome == SendOutcome.SENT:
            self.ledger[node.id] = SentEmail(
                enrollment_id=enrollment.id or 0,
                node_id=node.id,
                contact_id=contact.id,
                sent_at=now,
            )
        return self.outcome

    def update_field(self, contact: Contact, field_name: str, value: Any) -> None:
        contact.fields[field_name] = value

    def record(self, event: EnrollmentEvent) -> None:
        self.events.append(event)


@pytest.fixture
def fake_effects() -> FakeEffects:
    return FakeEffects()


def auto_policy_filter() -> FilterConfig:
    """Entry criteria: has an active Auto policy."""
    return FilterConfig.from_dict(
        {
            "groups": [
                {
                    "id": "g1",
                    "logic": "AND",
                    "include": [{"id": "r1", "conditionId": "has_policy_type", "value": "Auto"}],
                }
            ],
            "groupLogic": "AND",
        }
    )


def welcome_workflow() -> list[dict[str, Any]]:
    """Welcome email, wait 3 days, reminder, end."""
    return [
        {"id": "entry-criteria", "type": "entry_criteria", "title": "Entry Criteria", "config": {}},
        {"id": "trigger", "type": "trigger", "title": "Trigger", "config": {}},
        {
            "id": "welcome",
            "type": "send_email",
            "title": "Welcome",
            "config": {"templateKey": "welcome_personal"},
        },
        {"id": "wait", "type": "delay", "title": "Wait", "config": {"duration": 3, "unit": "days"}},
        {
            "id": "reminder",
            "type": "send_email",
            "title": "Reminder",
            "config": {"templateKey": "renewal_reminder"},
        },
        {"id": "done", "type": "end", "title": "End", "config": {}},
    ]


@pytest.fixture
def make_automation(memory_db: Database) -> Callable[..., Automation]:
    """Factory: store an automation and return it with its id set."""

    def _make(
        name: str = "Welcome Series",
        filter_config: Optional[FilterConfig] = None,
        nodes: Optional[list[dict[str, Any]]] = None,
        status: AutomationStatus = AutomationStatus.ACTIVE,
        reentry: Optional[ReentryConfig] = None,
        pacing: Optional[PacingConfig] = None,
    ) -> Automation:
        automation = Automation(
            name=name,
            status=status,
            filter_config=filter_config or auto_policy_filter(),
            nodes=nodes if nodes is not None else welcome_workflow(),
        )
        if reentry is not None:
            automation = automation.with_reentry(reentry)
        if pacing is not None:
            automation = automation.with_pacing(pacing)
        automation.id = memory_db.create_automation(automation)
        return automation

    return _make


def pytest_configure(config):  # type: ignore[no-untyped-def]
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: tests taking > 1 second")
    config.addinivalue_line("markers", "integration: tests requiring external services")
    config.addinivalue_line("markers", "database: tests requiring database")
