"""Tests for database operations."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.core.exceptions import DatabaseError
from src.db.database import Database
from src.db.models import (
    Automation,
    AutomationStatus,
    Branch,
    Contact,
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    EventAction,
    NodeType,
    SentEmail,
)

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def _automation(memory_db: Database, **kwargs) -> int:
    return memory_db.create_automation(Automation(name="Renewal", **kwargs))


def _enrollment(
    memory_db: Database, automation_id: int, contact_id: str = "acct-001"
) -> Enrollment:
    if memory_db.get_contact(contact_id) is None:
        memory_db.upsert_contact(Contact(id=contact_id, email=f"{contact_id}@example.com"))
    enrollment = Enrollment(
        automation_id=automation_id,
        contact_id=contact_id,
        current_node_id="node-1",
        current_node_path=["node-1"],
        entered_at=T0,
        last_entered_at=T0,
    )
    memory_db.create_enrollment(enrollment)
    return enrollment


class TestDatabaseConnection:
    """Test database connection management."""

    def test_connect_creates_file(self, tmp_path: Path):
        """Connecting creates database file."""
        db_path = tmp_path / "new.db"
        db = Database(str(db_path))
        db.initialize()
        assert db_path.exists()
        db.close()

    def test_initialize_schema(self, memory_db: Database):
        """Schema initialization creates all required tables."""
        conn = memory_db._get_connection()
        tables = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        ).fetchall()
        table_names = [t[0] for t in tables]

        for expected in (
            "automations",
            "contacts",
            "enrollment_history",
            "enrollments",
            "run_locks",
            "schema_version",
            "sent_emails",
        ):
            assert expected in table_names

    def test_initialize_is_idempotent(self, temp_db: Database):
        temp_db.initialize()
        rows = temp_db._get_connection().execute("SELECT version FROM schema_version").fetchall()
        assert len(rows) == 1


class TestAutomations:
    """Automation CRUD."""

    def test_create_and_get(self, memory_db: Database):
        nodes = [{"id": "entry-criteria", "type": "entry_criteria", "config": {}}]
        automation_id = _automation(memory_db, nodes=nodes, status=AutomationStatus.ACTIVE)
        stored = memory_db.get_automation(automation_id)
        assert stored is not None
        assert stored.name == "Renewal"
        assert stored.status is AutomationStatus.ACTIVE
        assert stored.nodes == nodes

    def test_get_missing(self, memory_db: Database):
        assert memory_db.get_automation(999) is None

    def test_filter_by_status(self, memory_db: Database):
        _automation(memory_db, status=AutomationStatus.ACTIVE)
        _automation(memory_db, status=AutomationStatus.PAUSED)
        active = memory_db.get_automations(AutomationStatus.ACTIVE)
        assert len(active) == 1
        assert len(memory_db.get_automations()) == 2

    def test_set_status(self, memory_db: Database):
        automation_id = _automation(memory_db)
        assert memory_db.set_automation_status(automation_id, AutomationStatus.PAUSED)
        assert memory_db.get_automation(automation_id).status is AutomationStatus.PAUSED

    def test_update(self, memory_db: Database):
        automation_id = _automation(memory_db)
        automation = memory_db.get_automation(automation_id)
        automation.description = "Renewals 45 days out"
        assert memory_db.update_automation(automation)
        assert memory_db.get_automation(automation_id).description == "Renewals 45 days out"

    def test_mark_run(self, memory_db: Database):
        automation_id = _automation(memory_db)
        memory_db.mark_automation_run(automation_id, T0)
        assert memory_db.get_automation(automation_id).last_run_at == T0

    def test_corrupt_nodes_raise_database_error(self, memory_db: Database):
        automation_id = _automation(memory_db)
        conn = memory_db._get_connection()
        conn.execute("UPDATE automations SET nodes = ? WHERE id = ?", ("[{", automation_id))
        conn.commit()
        with pytest.raises(DatabaseError, match="nodes"):
            memory_db.get_automation(automation_id)


class TestContacts:
    """Contact upsert and field writes."""

    def test_upsert_replaces(self, memory_db: Database):
        memory_db.upsert_contact(Contact(id="a1", email="old@example.com", fields={"state": "TX"}))
        memory_db.upsert_contact(Contact(id="a1", email="new@example.com", fields={"state": "OK"}))
        contact = memory_db.get_contact("a1")
        assert contact.email == "new@example.com"
        assert contact.fields == {"state": "OK"}
        assert len(memory_db.get_contacts()) == 1

    def test_update_field(self, memory_db: Database):
        memory_db.upsert_contact(Contact(id="a1", fields={"state": "TX"}))
        assert memory_db.update_contact_field("a1", "welcome_sent", True)
        assert memory_db.get_contact("a1").fields == {"state": "TX", "welcome_sent": True}

    def test_update_field_missing_contact(self, memory_db: Database):
        assert memory_db.update_contact_field("nobody", "x", 1) is False

    def test_opt_out_round_trip(self, memory_db: Database):
        memory_db.upsert_contact(Contact(id="a1", email_opt_out=True))
        assert memory_db.get_contact("a1").email_opt_out is True


class TestEnrollments:
    """Enrollment persistence and the one-per-contact rule."""

    def test_create_sets_id(self, memory_db: Database):
        enrollment = _enrollment(memory_db, _automation(memory_db))
        assert enrollment.id is not None
        stored = memory_db.get_enrollment(enrollment.id)
        assert stored.current_node_path == ["node-1"]
        assert stored.entered_at == T0

    def test_duplicate_contact_rejected(self, memory_db: Database):
        automation_id = _automation(memory_db)
        _enrollment(memory_db, automation_id)
        with pytest.raises(DatabaseError):
            _enrollment(memory_db, automation_id)

    def test_update_and_find(self, memory_db: Database):
        automation_id = _automation(memory_db)
        enrollment = _enrollment(memory_db, automation_id)
        enrollment.status = EnrollmentStatus.WAITING
        enrollment.wait_until = T0 + timedelta(days=3)
        assert memory_db.update_enrollment(enrollment)

        found = memory_db.find_enrollment(automation_id, "acct-001")
        assert found.status is EnrollmentStatus.WAITING
        assert found.wait_until == T0 + timedelta(days=3)
        assert memory_db.find_enrollment(automation_id, "acct-999") is None

    def test_open_enrollments_and_counts(self, memory_db: Database):
        automation_id = _automation(memory_db)
        first = _enrollment(memory_db, automation_id, "a1")
        _enrollment(memory_db, automation_id, "a2")
        first.status = EnrollmentStatus.COMPLETED
        memory_db.update_enrollment(first)

        assert [e.contact_id for e in memory_db.get_open_enrollments(automation_id)] == ["a2"]
        counts = memory_db.get_enrollment_counts(automation_id)
        assert counts[EnrollmentStatus.COMPLETED] == 1
        assert counts[EnrollmentStatus.ACTIVE] == 1
        assert counts[EnrollmentStatus.WAITING] == 0

    def test_history(self, memory_db: Database):
        enrollment = _enrollment(memory_db, _automation(memory_db))
        memory_db.add_enrollment_event(
            EnrollmentEvent(
                enrollment_id=enrollment.id,
                node_id="cond",
                node_type=NodeType.CONDITION,
                action=EventAction.BRANCHED,
                branch=Branch.NO,
                created_at=T0,
            )
        )
        events = memory_db.get_enrollment_events(enrollment.id)
        assert len(events) == 1
        assert events[0].branch is Branch.NO
        assert events[0].node_type is NodeType.CONDITION


class TestTransaction:
    """transaction() commits or rolls back as a whole."""

    def test_rollback_on_error(self, memory_db: Database):
        automation_id = _automation(memory_db)
        memory_db.upsert_contact(Contact(id="a1"))
        with pytest.raises(RuntimeError):
            with memory_db.transaction():
                memory_db.create_enrollment(
                    Enrollment(automation_id=automation_id, contact_id="a1")
                )
                raise RuntimeError("boom")
        assert memory_db.find_enrollment(automation_id, "a1") is None

    def test_commit_on_success(self, memory_db: Database):
        automation_id = _automation(memory_db)
        memory_db.upsert_contact(Contact(id="a1"))
        with memory_db.transaction():
            memory_db.create_enrollment(Enrollment(automation_id=automation_id, contact_id="a1"))
        assert memory_db.find_enrollment(automation_id, "a1") is not None

    def test_nested_joins_outer(self, memory_db: Database):
        automation_id = _automation(memory_db)
        memory_db.upsert_contact(Contact(id="a1"))
        with pytest.raises(RuntimeError):
            with memory_db.transaction():
                with memory_db.transaction():
                    memory_db.create_enrollment(
                        Enrollment(automation_id=automation_id, contact_id="a1")
                    )
                raise RuntimeError("outer fails")
        assert memory_db.find_enrollment(automation_id, "a1") is None


class TestSentEmails:
    """Ledger dedupe, template recency and engagement."""

    def test_ledger_unique_per_entry(self, memory_db: Database):
        enrollment = _enrollment(memory_db, _automation(memory_db))
        sent = SentEmail(
            enrollment_id=enrollment.id, node_id="n1", contact_id="acct-001", sent_at=T0
        )
        memory_db.record_sent_email(sent)
        assert sent.id is not None
        with pytest.raises(DatabaseError):
            memory_db.record_sent_email(
                SentEmail(enrollment_id=enrollment.id, node_id="n1", contact_id="acct-001")
            )
        # Next entry may send the same step again
        memory_db.record_sent_email(
            SentEmail(
                enrollment_id=enrollment.id, node_id="n1", entry_number=2, contact_id="acct-001"
            )
        )
        assert memory_db.get_sent_email(enrollment.id, "n1", 2) is not None
        assert len(memory_db.get_sent_emails(enrollment.id)) == 2

    def test_template_sent_since(self, memory_db: Database):
        enrollment = _enrollment(memory_db, _automation(memory_db))
        memory_db.record_sent_email(
            SentEmail(
                enrollment_id=enrollment.id,
                node_id="n1",
                contact_id="acct-001",
                template_key="welcome_personal",
                sent_at=T0,
            )
        )
        week_before = T0 - timedelta(days=7)
        assert memory_db.template_sent_since("acct-001", "welcome_personal", week_before)
        assert not memory_db.template_sent_since(
            "acct-001", "welcome_personal", T0 + timedelta(hours=1)
        )
        assert not memory_db.template_sent_since("acct-001", "renewal_reminder", week_before)

    def test_click_implies_open_and_keeps_first_stamp(self, memory_db: Database):
        enrollment = _enrollment(memory_db, _automation(memory_db))
        sent = SentEmail(
            enrollment_id=enrollment.id, node_id="n1", contact_id="acct-001", sent_at=T0
        )
        memory_db.record_sent_email(sent)

        clicked = T0 + timedelta(hours=2)
        assert memory_db.mark_email_engagement(sent.id, clicked_at=clicked)
        memory_db.mark_email_engagement(sent.id, opened_at=T0 + timedelta(hours=5))

        stored = memory_db.get_sent_email(enrollment.id, "n1", 1)
        assert stored.opened_at == clicked
        assert stored.clicked_at == clicked


class TestRunLocks:
    """Named run-locks with expiry."""

    def test_second_owner_blocked(self, memory_db: Database):
        ttl = timedelta(minutes=25)
        assert memory_db.acquire_run_lock("automation-run", "a", T0, ttl)
        assert not memory_db.acquire_run_lock("automation-run", "b", T0 + timedelta(minutes=5), ttl)

    def test_expired_lock_taken_over(self, memory_db: Database):
        ttl = timedelta(minutes=25)
        memory_db.acquire_run_lock("automation-run", "a", T0, ttl)
        assert memory_db.acquire_run_lock("automation-run", "b", T0 + timedelta(minutes=26), ttl)

    def test_release_only_by_owner(self, memory_db: Database):
        ttl = timedelta(minutes=25)
        memory_db.acquire_run_lock("automation-run", "a", T0, ttl)
        assert not memory_db.release_run_lock("automation-run", "b")
        assert memory_db.release_run_lock("automation-run", "a")
        assert memory_db.acquire_run_lock("automation-run", "b", T0, ttl)
