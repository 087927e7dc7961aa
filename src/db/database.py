"""SQLite database connection and operations for AgencyFlow.

Provides:
    - Connection management with WAL mode
    - Schema creation
    - CRUD for automations, contacts, enrollments and their history
    - Sent-email ledger (send dedupe and engagement stamps)
    - Named run-locks so overlapping ticks don't double-send
    - transaction() for multi-statement atomic commits

Usage:
    from src.db.database import Database

    db = Database()
    db.initialize()

    automation_id = db.create_automation(automation)
    with db.transaction():
        db.record_sent_email(sent)
        db.update_enrollment(enrollment)
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator, Optional

from src.core.config import get_config
from src.core.exceptions import DatabaseError
from src.core.logging import get_logger
from src.db.models import (
    Automation,
    AutomationStatus,
    Branch,
    Contact,
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    EventAction,
    FilterConfig,
    NodeType,
    SentEmail,
)

logger = get_logger(__name__)


# Schema version for migrations
SCHEMA_VERSION = 1


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _from_json(row: sqlite3.Row, column: str, empty: str) -> Any:
    try:
        return json.loads(row[column] or empty)
    except json.JSONDecodeError as e:
        raise DatabaseError(f"Stored {column} is not valid JSON: {e}") from e


class Database:
    """SQLite database manager.

    Statements commit immediately unless they run inside transaction(),
    in which case the block commits or rolls back as a whole.

    Attributes:
        db_path: Path to database file
    """

    def __init__(self, db_path: Optional[str] = None):
        """Initialize database.

        Args:
            db_path: Path to database file. Use ":memory:" for in-memory.
                    Defaults to config path.
        """
        if db_path is None:
            config = get_config()
            self.db_path = str(config.db_path)
        else:
            self.db_path = db_path

        self._conn: Optional[sqlite3.Connection] = None
        self._transaction_depth = 0

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                # Create directory if needed (unless in-memory)
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

                # The orchestrator thread reuses the connection opened at startup
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
                self._conn.row_factory = sqlite3.Row

                # Enable foreign keys
                self._conn.execute("PRAGMA foreign_keys = ON")

                # Enable WAL mode for better concurrency
                if self.db_path != ":memory:":
                    self._conn.execute("PRAGMA journal_mode = WAL")

            except sqlite3.Error as e:
                raise DatabaseError(f"Cannot connect to database: {e}") from e

        return self._conn

    @staticmethod
    def _lastrowid(cursor: sqlite3.Cursor) -> int:
        """Extract lastrowid from cursor (always set after INSERT in SQLite)."""
        row_id = cursor.lastrowid
        assert row_id is not None, "lastrowid was None after INSERT"
        return row_id

    def _commit(self, conn: sqlite3.Connection) -> None:
        if self._transaction_depth == 0:
            conn.commit()

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if self._transaction_depth == 0:
            conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group writes into one commit.

        Nested blocks join the outer transaction. Any exception rolls the
        whole outer block back and is re-raised.
        """
        conn = self._get_connection()
        self._transaction_depth += 1
        try:
            yield conn
        except BaseException:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                conn.rollback()
            raise
        else:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                try:
                    conn.commit()
                except sqlite3.Error as e:
                    conn.rollback()
                    raise DatabaseError(f"Failed to commit transaction: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def initialize(self) -> None:
        """Create schema if not exists.

        Creates all tables, indexes, and initial schema version.
        """
        conn = self._get_connection()

        try:
            conn.executescript(self._get_schema_ddl())
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            conn.commit()
            logger.info("Database initialized", extra={"context": {"path": self.db_path}})
        except sqlite3.Error as e:
            raise DatabaseError(f"Cannot initialize database: {e}") from e

    def _get_schema_ddl(self) -> str:
        """Return complete schema DDL."""
        return """
        -- Automations (filter config + nested workflow JSON)
        CREATE TABLE IF NOT EXISTS automations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT DEFAULT '',
            category TEXT DEFAULT '',
            status TEXT NOT NULL DEFAULT 'draft'
                CHECK (status IN ('draft', 'active', 'paused', 'archived')),
            filter_config TEXT NOT NULL DEFAULT '{}',
            nodes TEXT NOT NULL DEFAULT '[]',
            last_run_at TEXT,
            created_at TEXT,
            updated_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_automations_status ON automations(status);

        -- Contacts (accounts); fields is the JSON record filters read
        CREATE TABLE IF NOT EXISTS contacts (
            id TEXT PRIMARY KEY,
            email TEXT,
            name TEXT DEFAULT '',
            email_opt_out INTEGER NOT NULL DEFAULT 0,
            fields TEXT NOT NULL DEFAULT '{}',
            updated_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email);

        -- One enrollment row per contact per automation; re-entry reuses it
        CREATE TABLE IF NOT EXISTS enrollments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            automation_id INTEGER NOT NULL REFERENCES automations(id) ON DELETE CASCADE,
            contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'waiting', 'completed')),
            current_node_id TEXT,
            current_node_path TEXT NOT NULL DEFAULT '[]',
            wait_until TEXT,
            entered_at TEXT,
            last_entered_at TEXT,
            entry_count INTEGER NOT NULL DEFAULT 1,
            completed_at TEXT,
            exit_reason TEXT,
            emails_sent INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT,
            UNIQUE (contact_id, automation_id)
        );

        CREATE INDEX IF NOT EXISTS idx_enrollments_automation_status
            ON enrollments(automation_id, status);

        -- Node transitions
        CREATE TABLE IF NOT EXISTS enrollment_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            enrollment_id INTEGER NOT NULL REFERENCES enrollments(id) ON DELETE CASCADE,
            node_id TEXT NOT NULL,
            node_type TEXT,
            action TEXT NOT NULL,
            branch TEXT,
            error TEXT,
            created_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_history_enrollment ON enrollment_history(enrollment_id);

        -- Sent-email ledger; the unique key is the send dedupe
        CREATE TABLE IF NOT EXISTS sent_emails (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            enrollment_id INTEGER NOT NULL REFERENCES enrollments(id) ON DELETE CASCADE,
            node_id TEXT NOT NULL,
            entry_number INTEGER NOT NULL DEFAULT 1,
            contact_id TEXT NOT NULL,
            template_key TEXT DEFAULT '',
            to_address TEXT,
            subject TEXT,
            sent_at TEXT,
            opened_at TEXT,
            clicked_at TEXT,
            UNIQUE (enrollment_id, node_id, entry_number)
        );

        CREATE INDEX IF NOT EXISTS idx_sent_contact_template
            ON sent_emails(contact_id, template_key, sent_at);

        -- Named run-locks (expires_at is a unix timestamp)
        CREATE TABLE IF NOT EXISTS run_locks (
            name TEXT PRIMARY KEY,
            owner TEXT,
            acquired_at TEXT,
            expires_at REAL NOT NULL
        );

        -- Schema version
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );
        """

    # =========================================================================
    # ROW MAPPERS
    # =========================================================================

    def _row_to_automation(self, row: sqlite3.Row) -> Automation:
        """Convert a database row to an Automation dataclass."""
        return Automation(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            category=row["category"] or "",
            status=AutomationStatus(row["status"]),
            filter_config=FilterConfig.from_dict(_from_json(row, "filter_config", "{}")),
            nodes=_from_json(row, "nodes", "[]"),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            last_run_at=_from_iso(row["last_run_at"]),
        )

    def _row_to_contact(self, row: sqlite3.Row) -> Contact:
        """Convert a database row to a Contact dataclass."""
        return Contact(
            id=row["id"],
            email=row["email"],
            name=row["name"] or "",
            email_opt_out=bool(row["email_opt_out"]),
            fields=_from_json(row, "fields", "{}"),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _row_to_enrollment(self, row: sqlite3.Row) -> Enrollment:
        """Convert a database row to an Enrollment dataclass."""
        return Enrollment(
            id=row["id"],
            automation_id=row["automation_id"],
            contact_id=row["contact_id"],
            status=EnrollmentStatus(row["status"]),
            current_node_id=row["current_node_id"],
            current_node_path=_from_json(row, "current_node_path", "[]"),
            wait_until=_from_iso(row["wait_until"]),
            entered_at=_from_iso(row["entered_at"]),
            last_entered_at=_from_iso(row["last_entered_at"]),
            entry_count=row["entry_count"],
            completed_at=_from_iso(row["completed_at"]),
            exit_reason=row["exit_reason"],
            emails_sent=row["emails_sent"],
            updated_at=_from_iso(row["updated_at"]),
        )

    def _row_to_event(self, row: sqlite3.Row) -> EnrollmentEvent:
        """Convert a database row to an EnrollmentEvent dataclass."""
        return EnrollmentEvent(
            id=row["id"],
            enrollment_id=row["enrollment_id"],
            node_id=row["node_id"],
            node_type=NodeType(row["node_type"]) if row["node_type"] else None,
            action=EventAction(row["action"]),
            branch=Branch(row["branch"]) if row["branch"] else None,
            error=row["error"],
            created_at=_from_iso(row["created_at"]),
        )

    def _row_to_sent_email(self, row: sqlite3.Row) -> SentEmail:
        """Convert a database row to a SentEmail dataclass."""
        return SentEmail(
            id=row["id"],
            enrollment_id=row["enrollment_id"],
            node_id=row["node_id"],
            entry_number=row["entry_number"],
            contact_id=row["contact_id"],
            template_key=row["template_key"] or "",
            to_address=row["to_address"] or "",
            subject=row["subject"] or "",
            sent_at=_from_iso(row["sent_at"]),
            opened_at=_from_iso(row["opened_at"]),
            clicked_at=_from_iso(row["clicked_at"]),
        )

    # =========================================================================
    # AUTOMATIONS
    # =========================================================================

    def create_automation(self, automation: Automation) -> int:
        """Create an automation record.

        Args:
            automation: Automation to create

        Returns:
            New automation ID
        """
        conn = self._get_connection()
        now = _to_iso(automation.created_at or datetime.now())
        try:
            cursor = conn.execute(
                """INSERT INTO automations
                   (name, description, category, status, filter_config, nodes,
                    last_run_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    automation.name,
                    automation.description,
                    automation.category,
                    automation.status.value,
                    json.dumps(automation.filter_config.to_dict()),
                    json.dumps(automation.nodes),
                    _to_iso(automation.last_run_at),
                    now,
                    now,
                ),
            )
            self._commit(conn)
            automation_id = self._lastrowid(cursor)
            logger.info(
                "Automation created",
                extra={"context": {"automation_id": automation_id, "name": automation.name}},
            )
            return automation_id
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to create automation: {e}") from e

    def get_automation(self, automation_id: int) -> Optional[Automation]:
        """Get automation by ID."""
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM automations WHERE id = ?", (automation_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_automation(row)

    def get_automations(self, status: Optional[AutomationStatus] = None) -> list[Automation]:
        """List automations, optionally by status, oldest first."""
        conn = self._get_connection()
        if status is None:
            rows = conn.execute("SELECT * FROM automations ORDER BY id").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM automations WHERE status = ? ORDER BY id", (status.value,)
            ).fetchall()
        return [self._row_to_automation(row) for row in rows]

    def update_automation(self, automation: Automation) -> bool:
        """Update automation. Returns True if updated."""
        if automation.id is None:
            return False
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """UPDATE automations SET
                   name = ?, description = ?, category = ?, status = ?,
                   filter_config = ?, nodes = ?, last_run_at = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    automation.name,
                    automation.description,
                    automation.category,
                    automation.status.value,
                    json.dumps(automation.filter_config.to_dict()),
                    json.dumps(automation.nodes),
                    _to_iso(automation.last_run_at),
                    _to_iso(datetime.now()),
                    automation.id,
                ),
            )
            self._commit(conn)
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to update automation: {e}") from e

    def set_automation_status(self, automation_id: int, status: AutomationStatus) -> bool:
        """Change an automation's status (activate, pause, archive)."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "UPDATE automations SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _to_iso(datetime.now()), automation_id),
            )
            self._commit(conn)
            if cursor.rowcount:
                logger.info(
                    "Automation status changed",
                    extra={"context": {"automation_id": automation_id, "status": status.value}},
                )
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to set automation status: {e}") from e

    def mark_automation_run(self, automation_id: int, when: datetime) -> None:
        """Stamp last_run_at after a refresh pass."""
        conn = self._get_connection()
        try:
            conn.execute(
                "UPDATE automations SET last_run_at = ? WHERE id = ?",
                (_to_iso(when), automation_id),
            )
            self._commit(conn)
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to mark automation run: {e}") from e

    # =========================================================================
    # CONTACTS
    # =========================================================================

    def upsert_contact(self, contact: Contact) -> None:
        """Insert or replace a contact by id."""
        conn = self._get_connection()
        try:
            conn.execute(
                """INSERT INTO contacts (id, email, name, email_opt_out, fields, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       email = excluded.email,
                       name = excluded.name,
                       email_opt_out = excluded.email_opt_out,
                       fields = excluded.fields,
                       updated_at = excluded.updated_at""",
                (
                    contact.id,
                    contact.email,
                    contact.name,
                    int(contact.email_opt_out),
                    json.dumps(contact.fields, default=str),
                    _to_iso(contact.updated_at or datetime.now()),
                ),
            )
            self._commit(conn)
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to save contact: {e}") from e

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        """Get contact by ID."""
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_contact(row)

    def get_contacts(self) -> list[Contact]:
        """All contacts, in id order (refresh scans the whole population)."""
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM contacts ORDER BY id").fetchall()
        return [self._row_to_contact(row) for row in rows]

    def update_contact_field(self, contact_id: str, field_name: str, value: Any) -> bool:
        """Write one key of a contact's fields record."""
        contact = self.get_contact(contact_id)
        if contact is None:
            return False
        contact.fields[field_name] = value
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "UPDATE contacts SET fields = ?, updated_at = ? WHERE id = ?",
                (json.dumps(contact.fields, default=str), _to_iso(datetime.now()), contact_id),
            )
            self._commit(conn)
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to update contact field: {e}") from e

    # =========================================================================
    # ENROLLMENTS
    # =========================================================================

    def create_enrollment(self, enrollment: Enrollment) -> int:
        """Create an enrollment.

        Raises:
            DatabaseError: Including when the contact is already enrolled
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """INSERT INTO enrollments
                   (automation_id, contact_id, status, current_node_id, current_node_path,
                    wait_until, entered_at, last_entered_at, entry_count, completed_at,
                    exit_reason, emails_sent, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    enrollment.automation_id,
                    enrollment.contact_id,
                    enrollment.status.value,
                    enrollment.current_node_id,
                    json.dumps(enrollment.current_node_path),
                    _to_iso(enrollment.wait_until),
                    _to_iso(enrollment.entered_at),
                    _to_iso(enrollment.last_entered_at),
                    enrollment.entry_count,
                    _to_iso(enrollment.completed_at),
                    enrollment.exit_reason,
                    enrollment.emails_sent,
                    _to_iso(enrollment.updated_at),
                ),
            )
            self._commit(conn)
            enrollment.id = self._lastrowid(cursor)
            return enrollment.id
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to create enrollment: {e}") from e

    def update_enrollment(self, enrollment: Enrollment) -> bool:
        """Persist an enrollment's state. Returns True if updated."""
        if enrollment.id is None:
            return False
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """UPDATE enrollments SET
                   status = ?, current_node_id = ?, current_node_path = ?, wait_until = ?,
                   entered_at = ?, last_entered_at = ?, entry_count = ?, completed_at = ?,
                   exit_reason = ?, emails_sent = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    enrollment.status.value,
                    enrollment.current_node_id,
                    json.dumps(enrollment.current_node_path),
                    _to_iso(enrollment.wait_until),
                    _to_iso(enrollment.entered_at),
                    _to_iso(enrollment.last_entered_at),
                    enrollment.entry_count,
                    _to_iso(enrollment.completed_at),
                    enrollment.exit_reason,
                    enrollment.emails_sent,
                    _to_iso(enrollment.updated_at),
                    enrollment.id,
                ),
            )
            self._commit(conn)
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to update enrollment: {e}") from e

    def get_enrollment(self, enrollment_id: int) -> Optional[Enrollment]:
        """Get enrollment by ID."""
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM enrollments WHERE id = ?", (enrollment_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_enrollment(row)

    def find_enrollment(self, automation_id: int, contact_id: str) -> Optional[Enrollment]:
        """The contact's enrollment in an automation, if any."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM enrollments WHERE automation_id = ? AND contact_id = ?",
            (automation_id, contact_id),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_enrollment(row)

    def get_enrollments(
        self,
        automation_id: int,
        statuses: Optional[list[EnrollmentStatus]] = None,
    ) -> list[Enrollment]:
        """Enrollments of an automation, optionally filtered by status."""
        conn = self._get_connection()
        query = "SELECT * FROM enrollments WHERE automation_id = ?"
        params: list[Any] = [automation_id]
        if statuses:
            placeholders = ", ".join("?" for _ in statuses)
            query += f" AND status IN ({placeholders})"
            params.extend(s.value for s in statuses)
        query += " ORDER BY id"
        rows = conn.execute(query, params).fetchall()
        return [self._row_to_enrollment(row) for row in rows]

    def get_open_enrollments(self, automation_id: int) -> list[Enrollment]:
        """Active and waiting enrollments of an automation."""
        return self.get_enrollments(
            automation_id, [EnrollmentStatus.ACTIVE, EnrollmentStatus.WAITING]
        )

    def get_enrollment_counts(self, automation_id: int) -> dict[EnrollmentStatus, int]:
        """Count enrollments per status."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM enrollments WHERE automation_id = ? GROUP BY status",
            (automation_id,),
        ).fetchall()
        counts = {status: 0 for status in EnrollmentStatus}
        for row in rows:
            counts[EnrollmentStatus(row["status"])] = row["n"]
        return counts

    # =========================================================================
    # HISTORY
    # =========================================================================

    def add_enrollment_event(self, event: EnrollmentEvent) -> int:
        """Append a history row."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """INSERT INTO enrollment_history
                   (enrollment_id, node_id, node_type, action, branch, error, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.enrollment_id,
                    event.node_id,
                    event.node_type.value if event.node_type else None,
                    event.action.value,
                    event.branch.value if event.branch else None,
                    event.error,
                    _to_iso(event.created_at or datetime.now()),
                ),
            )
            self._commit(conn)
            return self._lastrowid(cursor)
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to record enrollment event: {e}") from e

    def get_enrollment_events(self, enrollment_id: int) -> list[EnrollmentEvent]:
        """History of an enrollment, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM enrollment_history WHERE enrollment_id = ? ORDER BY id",
            (enrollment_id,),
        ).fetchall()
        return [self._row_to_event(row) for row in rows]

    # =========================================================================
    # SENT EMAIL LEDGER
    # =========================================================================

    def record_sent_email(self, sent: SentEmail) -> int:
        """Add a ledger row.

        Raises:
            DatabaseError: Including a duplicate (enrollment, node, entry)
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """INSERT INTO sent_emails
                   (enrollment_id, node_id, entry_number, contact_id, template_key,
                    to_address, subject, sent_at, opened_at, clicked_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    sent.enrollment_id,
                    sent.node_id,
                    sent.entry_number,
                    sent.contact_id,
                    sent.template_key,
                    sent.to_address,
                    sent.subject,
                    _to_iso(sent.sent_at or datetime.now()),
                    _to_iso(sent.opened_at),
                    _to_iso(sent.clicked_at),
                ),
            )
            self._commit(conn)
            sent.id = self._lastrowid(cursor)
            return sent.id
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to record sent email: {e}") from e

    def get_sent_email(
        self, enrollment_id: int, node_id: str, entry_number: int
    ) -> Optional[SentEmail]:
        """Ledger row for one send step of one entry."""
        conn = self._get_connection()
        row = conn.execute(
            """SELECT * FROM sent_emails
               WHERE enrollment_id = ? AND node_id = ? AND entry_number = ?""",
            (enrollment_id, node_id, entry_number),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_sent_email(row)

    def get_sent_emails(self, enrollment_id: int) -> list[SentEmail]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM sent_emails WHERE enrollment_id = ? ORDER BY id", (enrollment_id,)
        ).fetchall()
        return [self._row_to_sent_email(row) for row in rows]

    def template_sent_since(self, contact_id: str, template_key: str, since: datetime) -> bool:
        """Whether a template went to a contact at or after a time."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT sent_at FROM sent_emails WHERE contact_id = ? AND template_key = ?",
            (contact_id, template_key),
        ).fetchall()
        for row in rows:
            sent_at = _from_iso(row["sent_at"])
            if sent_at is not None and sent_at >= since:
                return True
        return False

    def mark_email_engagement(
        self,
        sent_email_id: int,
        opened_at: Optional[datetime] = None,
        clicked_at: Optional[datetime] = None,
    ) -> bool:
        """Stamp open/click times reported by the sending service.

        A click implies an open. Existing stamps are kept.
        """
        if clicked_at is not None and opened_at is None:
            opened_at = clicked_at
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """UPDATE sent_emails SET
                   opened_at = COALESCE(opened_at, ?),
                   clicked_at = COALESCE(clicked_at, ?)
                   WHERE id = ?""",
                (_to_iso(opened_at), _to_iso(clicked_at), sent_email_id),
            )
            self._commit(conn)
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to mark email engagement: {e}") from e

    # =========================================================================
    # RUN LOCKS
    # =========================================================================

    def acquire_run_lock(
        self,
        name: str,
        owner: str,
        now: datetime,
        ttl: timedelta,
    ) -> bool:
        """Take a named lock unless someone else holds an unexpired one.

        Args:
            name: Lock name (the action being run)
            owner: Holder identity
            now: Current time
            ttl: Lock lifetime; an expired lock is taken over

        Returns:
            True if acquired
        """
        conn = self._get_connection()
        try:
            conn.execute(
                "DELETE FROM run_locks WHERE name = ? AND expires_at <= ?",
                (name, now.timestamp()),
            )
            cursor = conn.execute(
                """INSERT OR IGNORE INTO run_locks (name, owner, acquired_at, expires_at)
                   VALUES (?, ?, ?, ?)""",
                (name, owner, _to_iso(now), (now + ttl).timestamp()),
            )
            self._commit(conn)
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to acquire run lock {name}: {e}") from e

    def release_run_lock(self, name: str, owner: str) -> bool:
        """Release a lock held by owner."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "DELETE FROM run_locks WHERE name = ? AND owner = ?", (name, owner)
            )
            self._commit(conn)
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Failed to release run lock {name}: {e}") from e
