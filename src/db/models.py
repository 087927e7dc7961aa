"""Data models and enumerations for AgencyFlow.

All enums stored as TEXT in SQLite.
Filter and policy values (FilterConfig, ReentryConfig, PacingConfig) are
frozen: edits replace the whole value. Runtime records (Enrollment,
Contact) stay mutable for processing.

This module defines:
    - Enumerations for all categorical fields
    - Frozen value objects for filter, re-entry and pacing settings
    - Dataclasses for database records
    - JSON shape conversion (from_dict / to_dict)
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from src.core.exceptions import ValidationError

# =============================================================================
# ENUMERATIONS
# =============================================================================


class Logic(str, Enum):
    """Combinator applied across rules in a group or across groups."""

    AND = "AND"
    OR = "OR"


class RuleBucket(str, Enum):
    """Which part of a filter group a rule belongs to.

    Values:
        INCLUDE: Contact must have the condition
        EXCLUDE: Contact must NOT have the condition (result inverted)
        ACTIVITY: Engagement/recency conditions, evaluated like INCLUDE
    """

    INCLUDE = "include"
    EXCLUDE = "exclude"
    ACTIVITY = "activity"


class ConfigType(str, Enum):
    """How a condition's value is configured and evaluated."""

    SELECT = "select"
    DAYS_THRESHOLD = "days_threshold"
    NUMBER_COMPARE = "number_compare"
    DAYS_FROM_NOW = "days_from_now"
    DAYS_AGO = "days_ago"
    TEXT = "text"
    NONE = "none"


class NumberOperator(str, Enum):
    """Operators for number_compare conditions."""

    EQUALS = "equals"
    AT_LEAST = "at_least"
    AT_MOST = "at_most"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class SelectOperator(str, Enum):
    """Operators for select conditions. A rule without one means IS."""

    IS = "is"
    EQUALS = "equals"
    IS_NOT = "is_not"
    NOT_EQUALS = "not_equals"
    IS_ANY = "is_any"
    IN = "in"
    IS_NOT_ANY = "is_not_any"


class DayOperator(str, Enum):
    """Operators for day-offset conditions, relative to today.

    A rule without one means the exact offset in the condition's own
    direction (EQUALS_DAYS_FROM_NOW or EQUALS_DAYS_AGO).
    """

    EQUALS_DAYS_FROM_NOW = "equals_days_from_now"
    EQUALS_DAYS_AGO = "equals_days_ago"
    MORE_THAN_DAYS_FUTURE = "more_than_days_future"
    LESS_THAN_DAYS_FUTURE = "less_than_days_future"
    MORE_THAN_DAYS_AGO = "more_than_days_ago"
    LESS_THAN_DAYS_AGO = "less_than_days_ago"
    IN_NEXT_DAYS = "in_next_days"
    IN_LAST_DAYS = "in_last_days"


class TextOperator(str, Enum):
    """Operators for free-text conditions (case-insensitive)."""

    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class NodeType(str, Enum):
    """Type of workflow node."""

    ENTRY_CRITERIA = "entry_criteria"
    TRIGGER = "trigger"
    SEND_EMAIL = "send_email"
    DELAY = "delay"
    CONDITION = "condition"
    FIELD_CONDITION = "field_condition"
    UPDATE_FIELD = "update_field"
    END = "end"


# Node types that own yes/no branch lists
BRANCHING_NODE_TYPES = frozenset({NodeType.CONDITION, NodeType.FIELD_CONDITION})

# Node types that can never be deleted or moved
PINNED_NODE_TYPES = (NodeType.ENTRY_CRITERIA, NodeType.TRIGGER)


class Branch(str, Enum):
    """Child list of a condition node."""

    YES = "yes"
    NO = "no"


class DelayUnit(str, Enum):
    """Unit of a delay node's duration."""

    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class ReentryType(str, Enum):
    """Re-entry policy kind."""

    NEVER = "never"
    AFTER_DAYS = "after_days"


class Weekday(str, Enum):
    """Day of week as stored in pacing settings."""

    SUN = "sun"
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"

    @classmethod
    def from_date(cls, value: Any) -> "Weekday":
        """Weekday of a date (Python's Monday=0 mapped to 'mon')."""
        return _PYTHON_WEEKDAYS[value.weekday()]


_PYTHON_WEEKDAYS = (
    Weekday.MON,
    Weekday.TUE,
    Weekday.WED,
    Weekday.THU,
    Weekday.FRI,
    Weekday.SAT,
    Weekday.SUN,
)

WEEKDAYS_MON_FRI = frozenset(
    {Weekday.MON, Weekday.TUE, Weekday.WED, Weekday.THU, Weekday.FRI}
)


class EnrollmentStatus(str, Enum):
    """Where an enrollment is in its lifecycle.

    Values:
        ACTIVE: Ready to move on the next pass
        WAITING: Held until wait_until (delay node or pacing date)
        COMPLETED: Reached an end node or ran off the workflow
    """

    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"


class AutomationStatus(str, Enum):
    """Lifecycle of an automation. Only ACTIVE automations are processed."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class EventAction(str, Enum):
    """What happened to an enrollment at a node."""

    ENTERED = "entered"
    COMPLETED = "completed"
    BRANCHED = "branched"
    SKIPPED = "skipped"
    FAILED = "failed"


# =============================================================================
# VALUE OBJECTS
# =============================================================================


def _coerce_enum(enum_cls: type, value: Any, what: str) -> Any:
    """Convert a raw value to an enum member, raising ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(f"Unknown {what}: {value!r}") from e


@dataclass(frozen=True)
class ReentryConfig:
    """Whether a contact may enter an automation again.

    Attributes:
        enabled: Re-entry allowed at all
        type: NEVER or AFTER_DAYS
        days: Days since last entry before re-entry (AFTER_DAYS only)
    """

    enabled: bool = False
    type: ReentryType = ReentryType.NEVER
    days: int = 30

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _coerce_enum(ReentryType, self.type, "re-entry type"))
        if not isinstance(self.days, int) or isinstance(self.days, bool) or self.days < 1:
            raise ValidationError(f"Re-entry days must be an integer >= 1, got {self.days!r}")

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ReentryConfig":
        if not data:
            return cls()
        return cls(
            enabled=bool(data.get("enabled", False)),
            type=data.get("type", ReentryType.NEVER.value),
            days=data.get("days", 30),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "type": self.type.value, "days": self.days}


@dataclass(frozen=True)
class PacingConfig:
    """Spread new enrollments across several days.

    Attributes:
        enabled: Pacing on/off
        spread_over_days: Number of send days to spread across (>= 1)
        allowed_days: Weekdays on which sends may be scheduled
    """

    enabled: bool = False
    spread_over_days: int = 7
    allowed_days: frozenset = WEEKDAYS_MON_FRI

    def __post_init__(self) -> None:
        if (
            not isinstance(self.spread_over_days, int)
            or isinstance(self.spread_over_days, bool)
            or self.spread_over_days < 1
        ):
            raise ValidationError(
                f"spreadOverDays must be an integer >= 1, got {self.spread_over_days!r}"
            )
        days = frozenset(_coerce_enum(Weekday, d, "weekday") for d in self.allowed_days)
        object.__setattr__(self, "allowed_days", days)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "PacingConfig":
        if not data:
            return cls()
        return cls(
            enabled=bool(data.get("enabled", False)),
            spread_over_days=data.get("spreadOverDays", 7),
            allowed_days=frozenset(data.get("allowedDays", [d.value for d in WEEKDAYS_MON_FRI])),
        )

    def to_dict(self) -> dict[str, Any]:
        ordered = [d.value for d in Weekday if d in self.allowed_days]
        return {
            "enabled": self.enabled,
            "spreadOverDays": self.spread_over_days,
            "allowedDays": ordered,
        }


@dataclass(frozen=True)
class TimingWindow:
    """Shared day window for days_from_now / days_ago conditions (inclusive)."""

    min_days: int
    max_days: int

    def __post_init__(self) -> None:
        if self.min_days > self.max_days:
            raise ValidationError(
                f"Timing window min ({self.min_days}) is greater than max ({self.max_days})"
            )

    def contains(self, days: int) -> bool:
        return self.min_days <= days <= self.max_days

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["TimingWindow"]:
        if not data or data.get("min") is None or data.get("max") is None:
            return None
        return cls(min_days=int(data["min"]), max_days=int(data["max"]))

    def to_dict(self) -> dict[str, int]:
        return {"min": self.min_days, "max": self.max_days}


@dataclass(frozen=True)
class FilterRule:
    """One condition in a filter group.

    A rule may be partially configured while the user is editing it.
    Such rules are inert, never errors.

    Attributes:
        id: Rule id
        condition_id: ConditionDefinition id (None = not configured)
        value: Configured value
        operator: Operator (number_compare and text need one; select and
            day-offset conditions fall back to their default)
        bucket: include / exclude / activity
    """

    id: str = ""
    condition_id: Optional[str] = None
    value: Any = None
    operator: Optional[str] = None
    bucket: RuleBucket = RuleBucket.INCLUDE

    @classmethod
    def from_dict(cls, data: dict[str, Any], bucket: Optional[RuleBucket] = None) -> "FilterRule":
        raw_bucket = bucket or data.get("bucket") or RuleBucket.INCLUDE.value
        try:
            rule_bucket = RuleBucket(raw_bucket)
        except ValueError:
            rule_bucket = RuleBucket.INCLUDE
        return cls(
            id=str(data.get("id", "")),
            condition_id=data.get("conditionId") or data.get("condition_id") or data.get("field"),
            value=data.get("value"),
            operator=data.get("operator") or None,
            bucket=rule_bucket,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conditionId": self.condition_id,
            "value": self.value,
            "operator": self.operator,
            "bucket": self.bucket.value,
        }


@dataclass(frozen=True)
class FilterGroup:
    """Rules combined with one AND/OR logic."""

    id: str = ""
    name: str = ""
    logic: Logic = Logic.AND
    rules: tuple[FilterRule, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FilterGroup":
        rules: list[FilterRule] = []
        # Flat list (each rule names its bucket) or legacy "conditions"
        for raw in data.get("rules") or data.get("conditions") or []:
            rules.append(FilterRule.from_dict(raw))
        # Bucketed lists
        for bucket in RuleBucket:
            for raw in data.get(bucket.value) or []:
                rules.append(FilterRule.from_dict(raw, bucket=bucket))
        try:
            logic = Logic(str(data.get("logic", "AND")).upper())
        except ValueError:
            logic = Logic.AND
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            logic=logic,
            rules=tuple(rules),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "logic": self.logic.value,
            "rules": [r.to_dict() for r in self.rules],
        }


@dataclass(frozen=True)
class FilterConfig:
    """Entry criteria of an automation."""

    groups: tuple[FilterGroup, ...] = ()
    group_logic: Logic = Logic.AND
    timing: Optional[TimingWindow] = None

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "FilterConfig":
        if not data:
            return cls()
        try:
            group_logic = Logic(str(data.get("groupLogic", "AND")).upper())
        except ValueError:
            group_logic = Logic.AND
        return cls(
            groups=tuple(FilterGroup.from_dict(g) for g in data.get("groups") or []),
            group_logic=group_logic,
            timing=TimingWindow.from_dict(data.get("timing")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "groups": [g.to_dict() for g in self.groups],
            "groupLogic": self.group_logic.value,
        }
        if self.timing is not None:
            data["timing"] = self.timing.to_dict()
        return data


# =============================================================================
# RECORDS
# =============================================================================


@dataclass
class Contact:
    """A contact (account) that automations evaluate.

    Attributes:
        id: Account unique id
        email: Primary email
        name: Display name
        email_opt_out: Unsubscribed from marketing email
        fields: Record the filter evaluator reads (policy types, dates, ...)
    """

    id: str
    email: Optional[str] = None
    name: str = ""
    email_opt_out: bool = False
    fields: dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @property
    def first_name(self) -> str:
        return self.fields.get("first_name") or (self.name.split(" ")[0] if self.name else "")

    def has_valid_email(self) -> bool:
        return bool(self.email and "@" in self.email)

    def filter_record(self) -> dict[str, Any]:
        """Fields the audience filter reads, plus email and email_domain.

        Stored fields win over the derived ones.
        """
        record: dict[str, Any] = {}
        if self.email:
            record["email"] = self.email
            if "@" in self.email:
                record["email_domain"] = self.email.rsplit("@", 1)[1].lower()
        record.update(self.fields)
        return record


@dataclass
class Automation:
    """A named (FilterConfig, workflow nodes) pair.

    The workflow is kept in its persisted nested-JSON shape; the engine
    builds an arena graph from it when processing. Re-entry and pacing
    settings live in the entry criteria node's config.
    """

    id: Optional[int] = None
    name: str = ""
    description: str = ""
    category: str = ""
    status: AutomationStatus = AutomationStatus.DRAFT
    filter_config: FilterConfig = field(default_factory=FilterConfig)
    nodes: list[dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None

    def _entry_config(self) -> dict[str, Any]:
        for node in self.nodes:
            if node.get("type") == NodeType.ENTRY_CRITERIA.value:
                return node.get("config") or {}
        return {}

    @property
    def reentry(self) -> ReentryConfig:
        return ReentryConfig.from_dict(self._entry_config().get("reentry"))

    @property
    def pacing(self) -> PacingConfig:
        return PacingConfig.from_dict(self._entry_config().get("pacing"))

    @property
    def is_active(self) -> bool:
        return self.status == AutomationStatus.ACTIVE

    def _with_entry_setting(self, key: str, value: dict[str, Any]) -> "Automation":
        nodes = []
        for node in self.nodes:
            if node.get("type") == NodeType.ENTRY_CRITERIA.value:
                config = dict(node.get("config") or {})
                config[key] = value
                node = {**node, "config": config}
            nodes.append(node)
        return replace(self, nodes=nodes)

    def with_reentry(self, reentry: ReentryConfig) -> "Automation":
        """Return a copy with the re-entry policy replaced."""
        return self._with_entry_setting("reentry", reentry.to_dict())

    def with_pacing(self, pacing: PacingConfig) -> "Automation":
        """Return a copy with the pacing policy replaced."""
        return self._with_entry_setting("pacing", pacing.to_dict())


@dataclass
class Enrollment:
    """One contact's progress through one automation.

    Attributes:
        id: Enrollment id
        automation_id: Owning automation
        contact_id: Enrolled contact
        status: active / waiting / completed
        current_node_id: Node the enrollment is positioned at
        current_node_path: Node ids from the top-level list down to the current node
        wait_until: Resume time while WAITING (delay or pacing)
        entered_at: First entry
        last_entered_at: Most recent entry (re-entry resets it)
        entry_count: Number of entries
        completed_at: When the enrollment completed
        exit_reason: Why it completed early (opt-out, node removed, ...)
        emails_sent: Emails handed off during the current entry
    """

    id: Optional[int] = None
    automation_id: int = 0
    contact_id: str = ""
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_node_id: Optional[str] = None
    current_node_path: list[str] = field(default_factory=list)
    wait_until: Optional[datetime] = None
    entered_at: Optional[datetime] = None
    last_entered_at: Optional[datetime] = None
    entry_count: int = 1
    completed_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    emails_sent: int = 0
    updated_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == EnrollmentStatus.COMPLETED


@dataclass
class EnrollmentEvent:
    """History row for one node transition."""

    id: Optional[int] = None
    enrollment_id: int = 0
    node_id: str = ""
    node_type: Optional[NodeType] = None
    action: EventAction = EventAction.ENTERED
    branch: Optional[Branch] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class SentEmail:
    """Ledger row for an email handed off at a send_email node."""

    id: Optional[int] = None
    enrollment_id: int = 0
    node_id: str = ""
    entry_number: int = 1
    contact_id: str = ""
    template_key: str = ""
    to_address: str = ""
    subject: str = ""
    sent_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
