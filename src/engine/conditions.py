"""Condition catalog - what audience filters can test.

Static registry of condition definitions. Each definition is one of a
closed set of frozen dataclasses keyed by its config type, so an unknown
config type is rejected when the catalog is built, never at evaluation.

Config types:
    - select: is / is not / is any of / is not any of an option
      (multi-valued fields match on any of their values)
    - days_threshold: "hasn't ... in N days"
    - number_compare: equals / at least / at most / greater / less, clamped to max
    - days_from_now, days_ago: date field offset from today (exact, more
      than, less than, within the next or last N days)
    - text: contains / starts with / ends with / equals / is empty
    - none: boolean flag on the record

Each definition carries the operators it accepts. Select and day-offset
conditions also have a default operator for rules saved without one;
number and text rules must name theirs.

Usage:
    from src.engine.conditions import DEFAULT_CATALOG

    definition = DEFAULT_CATALOG.get("has_policy_type")
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Iterable, Optional

from src.core.exceptions import ValidationError
from src.core.logging import get_logger
from src.db.models import ConfigType, DayOperator, NumberOperator, SelectOperator, TextOperator

logger = get_logger(__name__)

SELECT_NEGATED = frozenset(
    {SelectOperator.IS_NOT.value, SelectOperator.NOT_EQUALS.value, SelectOperator.IS_NOT_ANY.value}
)
SELECT_ANY_OF = frozenset(
    {SelectOperator.IS_ANY.value, SelectOperator.IN.value, SelectOperator.IS_NOT_ANY.value}
)
TEXT_NO_VALUE = frozenset({TextOperator.IS_EMPTY.value, TextOperator.IS_NOT_EMPTY.value})


@dataclass(frozen=True)
class ConditionOption:
    """One selectable value of a select condition."""

    value: str
    label: str


@dataclass(frozen=True)
class ConditionDefinition:
    """Base definition shared by every config type.

    Attributes:
        id: Unique id within the catalog (referenced by FilterRule.condition_id)
        category: Grouping shown in the builder (Account, Policy, Activity, ...)
        label: Human-readable name
        field: Contact record field the condition reads
        default_value: Value pre-filled for new rules
        unit: Display unit for numeric values
        aliases: Other ids saved rules use for the same condition
    """

    config_type: ClassVar[ConfigType]
    operators: ClassVar[tuple[str, ...]] = ()
    default_operator: ClassVar[Optional[str]] = None

    id: str
    category: str
    label: str
    field: str
    default_value: Any = None
    unit: Optional[str] = None
    aliases: tuple[str, ...] = ()

    @property
    def requires_operator(self) -> bool:
        return bool(self.operators) and self.default_operator is None

    @property
    def requires_value(self) -> bool:
        return True

    def accepts(self, operator: Optional[str]) -> bool:
        """True when a rule with this operator (or none) can be evaluated."""
        if not self.operators:
            return True
        if operator is None:
            return not self.requires_operator
        return operator in self.operators

    def resolve_operator(self, operator: Optional[str]) -> Optional[str]:
        return operator or self.default_operator

    def needs_value(self, operator: Optional[str]) -> bool:
        return self.requires_value

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "category": self.category,
            "label": self.label,
            "field": self.field,
            "configType": self.config_type.value,
        }
        if self.default_value is not None:
            data["defaultValue"] = self.default_value
        if self.unit is not None:
            data["unit"] = self.unit
        if self.aliases:
            data["aliases"] = list(self.aliases)
        return data


@dataclass(frozen=True)
class SelectCondition(ConditionDefinition):
    """Match against one of a fixed option list.

    Attributes:
        options: Allowed values
        multi_valued: Record field holds a list (e.g. active policy types)
        conflict_reason: Diagnostic when an exclude rule finds the value;
            formatted with {label} and {value}
    """

    config_type: ClassVar[ConfigType] = ConfigType.SELECT
    operators: ClassVar[tuple[str, ...]] = tuple(op.value for op in SelectOperator)
    default_operator: ClassVar[Optional[str]] = SelectOperator.IS.value

    options: tuple[ConditionOption, ...] = ()
    multi_valued: bool = False
    conflict_reason: str = "{label} is {value}"

    def option_label(self, value: Any) -> str:
        for option in self.options:
            if option.value == value:
                return option.label
        return str(value)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["options"] = [{"value": o.value, "label": o.label} for o in self.options]
        data["multiValued"] = self.multi_valued
        return data


@dataclass(frozen=True)
class DaysThresholdCondition(ConditionDefinition):
    """Passes when the last event is at least N days old (or never happened)."""

    config_type: ClassVar[ConfigType] = ConfigType.DAYS_THRESHOLD


@dataclass(frozen=True)
class NumberCompareCondition(ConditionDefinition):
    """Numeric comparison; the rule value is clamped to max."""

    config_type: ClassVar[ConfigType] = ConfigType.NUMBER_COMPARE
    operators: ClassVar[tuple[str, ...]] = tuple(op.value for op in NumberOperator)

    max: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.max is not None:
            data["max"] = self.max
        return data


@dataclass(frozen=True)
class DaysFromNowCondition(ConditionDefinition):
    """Date field counted forward from today (renewals, expirations)."""

    config_type: ClassVar[ConfigType] = ConfigType.DAYS_FROM_NOW
    operators: ClassVar[tuple[str, ...]] = tuple(op.value for op in DayOperator)
    default_operator: ClassVar[Optional[str]] = DayOperator.EQUALS_DAYS_FROM_NOW.value


@dataclass(frozen=True)
class DaysAgoCondition(ConditionDefinition):
    """Date field counted back from today (customer since, created)."""

    config_type: ClassVar[ConfigType] = ConfigType.DAYS_AGO
    operators: ClassVar[tuple[str, ...]] = tuple(op.value for op in DayOperator)
    default_operator: ClassVar[Optional[str]] = DayOperator.EQUALS_DAYS_AGO.value


@dataclass(frozen=True)
class TextCondition(ConditionDefinition):
    """Free-text field (city, ZIP, email domain)."""

    config_type: ClassVar[ConfigType] = ConfigType.TEXT
    operators: ClassVar[tuple[str, ...]] = tuple(op.value for op in TextOperator)

    def needs_value(self, operator: Optional[str]) -> bool:
        return operator not in TEXT_NO_VALUE


@dataclass(frozen=True)
class FlagCondition(ConditionDefinition):
    """Boolean presence check; the rule needs no value."""

    config_type: ClassVar[ConfigType] = ConfigType.NONE

    @property
    def requires_value(self) -> bool:
        return False


_DEFINITION_TYPES: dict[ConfigType, type[ConditionDefinition]] = {
    cls.config_type: cls
    for cls in (
        SelectCondition,
        DaysThresholdCondition,
        NumberCompareCondition,
        DaysFromNowCondition,
        DaysAgoCondition,
        TextCondition,
        FlagCondition,
    )
}


def _build_options(raw: Iterable[Any]) -> tuple[ConditionOption, ...]:
    options = []
    for item in raw:
        if isinstance(item, dict):
            value = str(item["value"])
            options.append(ConditionOption(value=value, label=item.get("label") or value))
        else:
            options.append(ConditionOption(value=str(item), label=str(item)))
    return tuple(options)


def build_condition(data: dict[str, Any]) -> ConditionDefinition:
    """Build a condition definition from its JSON shape.

    Args:
        data: Dict with id, category, label, field, configType and
              type-specific keys (options, max, unit, defaultValue, aliases)

    Returns:
        Typed ConditionDefinition

    Raises:
        ValidationError: Unknown configType or missing id/field
    """
    raw_type = data.get("configType")
    try:
        config_type = ConfigType(raw_type)
    except ValueError as e:
        raise ValidationError(
            f"Condition {data.get('id')!r} has unknown configType {raw_type!r}"
        ) from e

    if not data.get("id") or not data.get("field"):
        raise ValidationError(f"Condition definition needs id and field: {data!r}")

    kwargs: dict[str, Any] = {
        "id": data["id"],
        "category": data.get("category", ""),
        "label": data.get("label") or data["id"],
        "field": data["field"],
        "default_value": data.get("defaultValue"),
        "unit": data.get("unit"),
        "aliases": tuple(data.get("aliases") or ()),
    }
    if config_type == ConfigType.SELECT:
        kwargs["options"] = _build_options(data.get("options") or [])
        kwargs["multi_valued"] = bool(data.get("multiValued", False))
        if data.get("conflictReason"):
            kwargs["conflict_reason"] = data["conflictReason"]
    elif config_type == ConfigType.NUMBER_COMPARE:
        kwargs["max"] = data.get("max")

    return _DEFINITION_TYPES[config_type](**kwargs)


class ConditionCatalog:
    """Immutable registry of condition definitions keyed by id and alias."""

    def __init__(self, definitions: Iterable[ConditionDefinition]):
        """Build the catalog.

        Args:
            definitions: Condition definitions

        Raises:
            ValidationError: Duplicate condition id or alias
        """
        self._definitions: dict[str, ConditionDefinition] = {}
        self._aliases: dict[str, str] = {}
        for definition in definitions:
            if definition.id in self._definitions or definition.id in self._aliases:
                raise ValidationError(f"Duplicate condition id: {definition.id}")
            self._definitions[definition.id] = definition
        for definition in self._definitions.values():
            for alias in definition.aliases:
                if alias in self._definitions or alias in self._aliases:
                    raise ValidationError(f"Duplicate condition id: {alias}")
                self._aliases[alias] = definition.id

    @classmethod
    def from_definitions(cls, definitions: Iterable[ConditionDefinition]) -> "ConditionCatalog":
        return cls(definitions)

    @classmethod
    def from_dicts(cls, rows: Iterable[dict[str, Any]]) -> "ConditionCatalog":
        return cls(build_condition(row) for row in rows)

    def get(self, condition_id: Optional[str]) -> Optional[ConditionDefinition]:
        if condition_id is None:
            return None
        return self._definitions.get(self._aliases.get(condition_id, condition_id))

    def __contains__(self, condition_id: object) -> bool:
        return condition_id in self._definitions or condition_id in self._aliases

    def __len__(self) -> int:
        return len(self._definitions)

    def list_conditions(self, category: Optional[str] = None) -> list[ConditionDefinition]:
        """List definitions, optionally for one category, in registration order."""
        return [
            d for d in self._definitions.values() if category is None or d.category == category
        ]

    def categories(self) -> list[str]:
        seen: dict[str, None] = {}
        for definition in self._definitions.values():
            seen.setdefault(definition.category, None)
        return list(seen)


# =============================================================================
# DEFAULT CATALOG
# =============================================================================

POLICY_TYPES = ("Auto", "Home", "Renters", "Life", "Umbrella", "Commercial", "Health")

US_STATES = (
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
)  # fmt: skip

_LINES = (ConditionOption("Personal", "Personal"), ConditionOption("Commercial", "Commercial"))

DEFAULT_CONDITIONS: tuple[ConditionDefinition, ...] = (
    SelectCondition(
        id="account_status",
        category="Account",
        label="Account Status",
        field="account_status",
        options=(
            ConditionOption("customer", "Customer"),
            ConditionOption("prospect", "Prospect"),
            ConditionOption("prior_customer", "Prior Customer"),
            ConditionOption("lead", "Lead"),
        ),
        default_value="customer",
    ),
    SelectCondition(
        id="has_policy_type",
        category="Policy",
        label="Has Active Policy",
        field="active_policy_types",
        options=tuple(ConditionOption(p, p) for p in POLICY_TYPES),
        multi_valued=True,
        conflict_reason="Account has {value} policy",
        aliases=("active_policy_type",),
    ),
    SelectCondition(
        id="policy_type",
        category="Policy",
        label="Policy Type",
        field="policy_types",
        options=tuple(ConditionOption(p, p) for p in POLICY_TYPES),
        multi_valued=True,
    ),
    SelectCondition(
        id="policy_class",
        category="Policy",
        label="Policy Class",
        field="policy_class",
        options=_LINES,
    ),
    SelectCondition(
        id="account_type",
        category="Account",
        label="Account Type",
        field="account_type",
        options=_LINES,
    ),
    SelectCondition(
        id="policy_status",
        category="Policy",
        label="Policy Status",
        field="policy_status",
        options=(
            ConditionOption("active", "Active"),
            ConditionOption("pending active", "Pending Active"),
            ConditionOption("cancelled", "Cancelled"),
            ConditionOption("expired", "Expired"),
        ),
    ),
    SelectCondition(
        id="policy_term",
        category="Policy",
        label="Policy Term",
        field="policy_term",
        options=(
            ConditionOption("6", "6 Months"),
            ConditionOption("12", "12 Months"),
            ConditionOption("New", "New Business"),
            ConditionOption("Renewal", "Renewal"),
        ),
    ),
    SelectCondition(
        id="state",
        category="Account",
        label="State",
        field="state",
        options=tuple(ConditionOption(s, s) for s in US_STATES),
    ),
    NumberCompareCondition(
        id="policy_count",
        category="Policy",
        label="Number of Policies",
        field="policy_count",
        default_value=1,
        max=20,
    ),
    DaysFromNowCondition(
        id="policy_expiration",
        category="Timing",
        label="Policy Expires In",
        field="policy_expiration_date",
        default_value=45,
        unit="days",
        aliases=("policy_expiration_date",),
    ),
    DaysAgoCondition(
        id="policy_effective",
        category="Timing",
        label="Policy Effective Date",
        field="policy_effective_date",
        default_value=3,
        unit="days",
        aliases=("policy_effective_date",),
    ),
    DaysAgoCondition(
        id="customer_since",
        category="Timing",
        label="Customer Since",
        field="customer_since",
        default_value=15,
        unit="days",
    ),
    DaysAgoCondition(
        id="account_created",
        category="Timing",
        label="Account Created",
        field="account_created",
        default_value=90,
        unit="days",
    ),
    TextCondition(id="city", category="Location", label="City", field="city"),
    TextCondition(id="zip_code", category="Location", label="ZIP Code", field="zip_code"),
    TextCondition(
        id="email_domain", category="Location", label="Email Domain", field="email_domain"
    ),
    DaysThresholdCondition(
        id="no_email_received",
        category="Activity",
        label="Hasn't Received Email In",
        field="last_email_sent_at",
        default_value=30,
        unit="days",
    ),
    DaysAgoCondition(
        id="last_email_sent",
        category="Activity",
        label="Last Email Sent",
        field="last_email_sent_at",
        default_value=30,
        unit="days",
    ),
    DaysThresholdCondition(
        id="no_activity",
        category="Activity",
        label="No Account Activity In",
        field="last_activity_at",
        default_value=90,
        unit="days",
    ),
    FlagCondition(
        id="is_new_customer",
        category="Account",
        label="Is a New Customer",
        field="is_new_customer",
    ),
    FlagCondition(
        id="has_multiple_policies",
        category="Policy",
        label="Has Multiple Policies",
        field="has_multiple_policies",
    ),
)

DEFAULT_CATALOG = ConditionCatalog(DEFAULT_CONDITIONS)


def get_condition(condition_id: Optional[str]) -> Optional[ConditionDefinition]:
    """Look up a condition (by id or alias) in the default catalog."""
    return DEFAULT_CATALOG.get(condition_id)


def list_conditions(category: Optional[str] = None) -> list[ConditionDefinition]:
    """List default catalog conditions, optionally for one category."""
    return DEFAULT_CATALOG.list_conditions(category)
