"""Audience filter evaluation.

Decides whether a contact record matches an automation's entry criteria,
keeping the full per-group and per-rule breakdown so the builder can show
why a contact did or didn't match. The boolean answer and the diagnostics
come from the same evaluation.

Three levels:
    - evaluate_rule: one rule against one record
    - evaluate_group: rules combined with the group's AND/OR
    - evaluate_audience: groups combined with the top-level AND/OR

Tolerance policy: a rule missing its condition, a required operator, or a
required value is skipped everywhere (evaluation and active-rule counts),
so a half-edited filter never breaks a run.

Usage:
    from src.engine.filters import evaluate_audience

    result = evaluate_audience(automation.filter_config, contact.filter_record(), now)
    if result.passes:
        ...
    for line in result.explain():
        print(line)
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Mapping, Optional

from src.core.logging import get_logger
from src.db.models import (
    ConfigType,
    DayOperator,
    FilterConfig,
    FilterGroup,
    FilterRule,
    Logic,
    NumberOperator,
    RuleBucket,
    TextOperator,
    TimingWindow,
)
from src.engine.conditions import (
    DEFAULT_CATALOG,
    SELECT_ANY_OF,
    SELECT_NEGATED,
    ConditionCatalog,
    ConditionDefinition,
    NumberCompareCondition,
    SelectCondition,
)

logger = get_logger(__name__)

# Shown as the actual value when the record has nothing for the field
NONE_EXCLUDED = "None (Excluded)"
OUTSIDE_TIMING_WINDOW = "Outside timing window"

SECONDS_PER_DAY = 86400


# =============================================================================
# RESULTS
# =============================================================================


@dataclass(frozen=True)
class RuleResult:
    """Outcome of one rule.

    Attributes:
        rule: The evaluated rule
        passes: Result used by group logic (exclude rules already inverted)
        actual: Value found on the record, or NONE_EXCLUDED
        matched: Raw condition outcome before exclude inversion
        reason: Failure diagnostic (exclude conflict or timing window miss)
    """

    rule: FilterRule
    passes: bool
    actual: Any
    matched: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class GroupResult:
    """Outcome of one filter group."""

    group: FilterGroup
    passes: bool
    rule_results: tuple[RuleResult, ...] = ()
    skipped_rules: int = 0


@dataclass(frozen=True)
class AudienceResult:
    """Outcome of a full filter config, with diagnostics."""

    passes: bool
    group_results: tuple[GroupResult, ...] = ()
    group_logic: Logic = Logic.AND

    def failed_rules(self) -> list[RuleResult]:
        """All rule results that did not pass, across groups."""
        return [r for g in self.group_results for r in g.rule_results if not r.passes]

    def explain(self, catalog: ConditionCatalog = DEFAULT_CATALOG) -> list[str]:
        """Readable breakdown of why the record did or didn't match."""
        if not self.group_results:
            return ["No filter groups defined: nobody enrolls"]

        lines = [f"Overall ({self.group_logic.value}): {'PASS' if self.passes else 'FAIL'}"]
        for index, group_result in enumerate(self.group_results, start=1):
            name = group_result.group.name or f"Group {index}"
            lines.append(
                f"{name} ({group_result.group.logic.value}): "
                f"{'PASS' if group_result.passes else 'FAIL'}"
            )
            for rule_result in group_result.rule_results:
                text = describe_rule(rule_result.rule, catalog) or rule_result.rule.condition_id
                line = (
                    f"  [{'x' if rule_result.passes else ' '}] {text} "
                    f"(actual: {rule_result.actual})"
                )
                if rule_result.reason:
                    line += f" - {rule_result.reason}"
                lines.append(line)
            if group_result.skipped_rules:
                lines.append(f"  ({group_result.skipped_rules} rule(s) not configured)")
        return lines


# =============================================================================
# VALUE HELPERS
# =============================================================================


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple, set)) and not value)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y", "on")
    return bool(value)


def _align(value: datetime, now: datetime) -> datetime:
    """Make value comparable with now (naive values take now's timezone)."""
    if now.tzinfo is not None and value.tzinfo is None:
        return value.replace(tzinfo=now.tzinfo)
    if now.tzinfo is None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_datetime(value: Any, now: datetime) -> Optional[datetime]:
    """Parse a record date/datetime/ISO string, aligned with now.

    Returns:
        Datetime, or None if absent or unparseable
    """
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        return _align(value, now)
    if isinstance(value, date):
        return _align(datetime.combine(value, time.min), now)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _align(datetime.fromisoformat(text), now)
        except ValueError:
            logger.debug("Unparseable date on record", extra={"context": {"value": value}})
            return None
    return None


def compare_select(actual: Any, expected: Any) -> tuple[bool, Optional[str]]:
    """Exact, case-sensitive match.

    Args:
        actual: Record value (a list for multi-valued fields)
        expected: Rule value (a list means any of them)

    Returns:
        (matched, the expected value that matched)
    """
    expected_values = expected if isinstance(expected, (list, tuple)) else [expected]
    actual_values = actual if isinstance(actual, (list, tuple, set)) else [actual]
    actual_text = {str(a) for a in actual_values if a is not None}
    for candidate in expected_values:
        if str(candidate) in actual_text:
            return True, str(candidate)
    return False, None


def compare_number(
    actual: Any,
    operator: str,
    expected: Any,
    max_value: Optional[float] = None,
) -> bool:
    """Apply a NumberOperator; expected is clamped to max_value."""
    if not _is_number(actual) or not _is_number(expected):
        return False
    actual_num = float(actual)
    expected_num = float(expected)
    if max_value is not None:
        expected_num = min(expected_num, float(max_value))

    if operator == NumberOperator.EQUALS.value:
        return actual_num == expected_num
    if operator == NumberOperator.AT_LEAST.value:
        return actual_num >= expected_num
    if operator == NumberOperator.AT_MOST.value:
        return actual_num <= expected_num
    if operator == NumberOperator.GREATER_THAN.value:
        return actual_num > expected_num
    if operator == NumberOperator.LESS_THAN.value:
        return actual_num < expected_num
    return False


def select_values(value: Any, operator: Optional[str]) -> list[str]:
    """Rule value as a list of options.

    Any-of operators also accept a comma-separated string ("Home,Renters").
    """
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value]
    if operator in SELECT_ANY_OF and isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(value)]


def compare_day_offset(offset: int, operator: str, days: int) -> bool:
    """Apply a DayOperator to a date's offset from today.

    Args:
        offset: Calendar days from today to the date (negative in the past)
        operator: DayOperator value
        days: Rule value
    """
    if operator == DayOperator.EQUALS_DAYS_FROM_NOW.value:
        return offset == days
    if operator == DayOperator.EQUALS_DAYS_AGO.value:
        return -offset == days
    if operator == DayOperator.MORE_THAN_DAYS_FUTURE.value:
        return offset > days
    if operator == DayOperator.LESS_THAN_DAYS_FUTURE.value:
        return 0 <= offset < days
    if operator == DayOperator.IN_NEXT_DAYS.value:
        return 0 <= offset <= days
    if operator == DayOperator.MORE_THAN_DAYS_AGO.value:
        return -offset > days
    if operator == DayOperator.LESS_THAN_DAYS_AGO.value:
        return 0 <= -offset < days
    if operator == DayOperator.IN_LAST_DAYS.value:
        return 0 <= -offset <= days
    return False


def compare_text(actual: Any, operator: str, expected: Any) -> bool:
    """Apply a TextOperator, ignoring case and surrounding whitespace.

    A missing value satisfies only not_contains, not_equals and is_empty.
    """
    text = "" if _is_blank(actual) else str(actual).strip().lower()
    wanted = "" if expected is None else str(expected).strip().lower()

    if operator == TextOperator.IS_EMPTY.value:
        return not text
    if operator == TextOperator.IS_NOT_EMPTY.value:
        return bool(text)
    if operator == TextOperator.NOT_CONTAINS.value:
        return wanted not in text if text else True
    if operator == TextOperator.NOT_EQUALS.value:
        return text != wanted
    if not text:
        return False
    if operator == TextOperator.CONTAINS.value:
        return wanted in text
    if operator == TextOperator.EQUALS.value:
        return text == wanted
    if operator == TextOperator.STARTS_WITH.value:
        return text.startswith(wanted)
    if operator == TextOperator.ENDS_WITH.value:
        return text.endswith(wanted)
    return False


def _display(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(v) for v in value)
    return value


# =============================================================================
# RULE
# =============================================================================


def is_configured(rule: FilterRule, catalog: ConditionCatalog = DEFAULT_CATALOG) -> bool:
    """Check whether a rule takes part in evaluation.

    A rule is configured when its condition exists in the catalog, its
    operator (or the condition's default when it has none) is one the
    condition accepts, and it has a value where the operator needs one.
    Values must be numeric except for select and text conditions.
    """
    definition = catalog.get(rule.condition_id)
    if definition is None:
        return False
    if not definition.accepts(rule.operator):
        return False
    if not definition.needs_value(definition.resolve_operator(rule.operator)):
        return True
    if _is_blank(rule.value):
        return False
    if definition.config_type in (ConfigType.SELECT, ConfigType.TEXT):
        return True
    return _is_number(rule.value)


def _evaluate_condition(
    definition: ConditionDefinition,
    rule: FilterRule,
    record: Mapping[str, Any],
    now: datetime,
    timing: Optional[TimingWindow],
) -> tuple[bool, Any, Optional[str], Optional[str]]:
    """Evaluate the raw condition.

    Returns:
        (matched, actual, conflicting value, timing-window miss reason)
    """
    raw = record.get(definition.field)
    config_type = definition.config_type
    operator = definition.resolve_operator(rule.operator)

    if config_type == ConfigType.SELECT:
        negated = operator in SELECT_NEGATED
        if _is_blank(raw):
            return negated, NONE_EXCLUDED, None, None
        found, hit = compare_select(raw, select_values(rule.value, operator))
        if negated:
            return not found, _display(raw), None, None
        return found, _display(raw), hit, None

    if config_type == ConfigType.TEXT:
        matched = compare_text(raw, operator or "", rule.value)
        if _is_blank(raw):
            return matched, NONE_EXCLUDED, None, None
        return matched, raw, str(raw) if matched else None, None

    if config_type == ConfigType.DAYS_THRESHOLD:
        last_event = to_datetime(raw, now)
        if last_event is None:
            # "Never" satisfies "hasn't ... in N days"
            return True, NONE_EXCLUDED, None, None
        days_since = math.floor((now - last_event).total_seconds() / SECONDS_PER_DAY)
        return days_since >= int(float(rule.value)), days_since, str(days_since), None

    if config_type == ConfigType.NUMBER_COMPARE:
        if not _is_number(raw):
            return False, NONE_EXCLUDED, None, None
        max_value = definition.max if isinstance(definition, NumberCompareCondition) else None
        matched = compare_number(raw, rule.operator or "", rule.value, max_value)
        return matched, raw, str(raw), None

    if config_type in (ConfigType.DAYS_FROM_NOW, ConfigType.DAYS_AGO):
        when = to_datetime(raw, now)
        if when is None:
            return False, NONE_EXCLUDED, None, None
        offset = (when.date() - now.date()).days
        delta = offset if config_type == ConfigType.DAYS_FROM_NOW else -offset
        # The shared window only widens the exact-offset form
        if timing is not None and operator == definition.default_operator:
            inside = timing.contains(delta)
            return inside, delta, str(delta), None if inside else OUTSIDE_TIMING_WINDOW
        matched = compare_day_offset(offset, operator or "", int(float(rule.value)))
        return matched, delta, str(delta), None

    # ConfigType.NONE
    flag = _truthy(raw)
    return flag, flag, str(flag) if flag else None, None


def evaluate_rule(
    rule: FilterRule,
    record: Mapping[str, Any],
    now: datetime,
    catalog: ConditionCatalog = DEFAULT_CATALOG,
    timing: Optional[TimingWindow] = None,
) -> RuleResult:
    """Evaluate one rule against one contact record.

    Exclude-bucket rules pass only when the condition is absent. A failing
    rule carries a reason only when an exclude rule finds a conflicting
    value or a date falls outside the timing window.

    Callers are expected to skip unconfigured rules (see is_configured);
    an unconfigured rule evaluates as not passing.

    Args:
        rule: Filter rule
        record: Contact fields
        now: Evaluation time
        catalog: Condition catalog
        timing: Shared timing window for day-offset conditions

    Returns:
        RuleResult
    """
    definition = catalog.get(rule.condition_id)
    if definition is None or not is_configured(rule, catalog):
        return RuleResult(rule=rule, passes=False, actual=NONE_EXCLUDED, matched=False)

    matched, actual, conflict, window_reason = _evaluate_condition(
        definition, rule, record, now, timing
    )

    if rule.bucket == RuleBucket.EXCLUDE:
        passes = not matched
        reason = None
        if not passes and conflict is not None:
            if isinstance(definition, SelectCondition):
                reason = definition.conflict_reason.format(
                    label=definition.label, value=definition.option_label(conflict)
                )
            else:
                reason = f"{definition.label}: {actual}"
        return RuleResult(rule=rule, passes=passes, actual=actual, matched=matched, reason=reason)

    reason = window_reason if not matched else None
    return RuleResult(rule=rule, passes=matched, actual=actual, matched=matched, reason=reason)


# =============================================================================
# GROUP
# =============================================================================


def _combine(logic: Logic, outcomes: list[bool]) -> bool:
    if logic == Logic.OR:
        return any(outcomes)
    return all(outcomes)


def evaluate_group(
    group: FilterGroup,
    record: Mapping[str, Any],
    now: datetime,
    catalog: ConditionCatalog = DEFAULT_CATALOG,
    timing: Optional[TimingWindow] = None,
) -> GroupResult:
    """Evaluate a filter group.

    Configured rules from all buckets are combined with the group's logic.
    A group with no configured rules passes.

    Returns:
        GroupResult with one RuleResult per configured rule
    """
    configured = [rule for rule in group.rules if is_configured(rule, catalog)]
    results = tuple(evaluate_rule(rule, record, now, catalog, timing) for rule in configured)
    skipped = len(group.rules) - len(configured)

    if not results:
        return GroupResult(group=group, passes=True, rule_results=(), skipped_rules=skipped)

    passes = _combine(group.logic, [r.passes for r in results])
    return GroupResult(group=group, passes=passes, rule_results=results, skipped_rules=skipped)


# =============================================================================
# AUDIENCE
# =============================================================================


def evaluate_audience(
    config: FilterConfig,
    record: Mapping[str, Any],
    now: datetime,
    catalog: ConditionCatalog = DEFAULT_CATALOG,
) -> AudienceResult:
    """Evaluate a full filter config with diagnostics.

    Zero groups never match: an automation without groups enrolls nobody.

    Args:
        config: Entry criteria
        record: Contact fields
        now: Evaluation time
        catalog: Condition catalog

    Returns:
        AudienceResult
    """
    if not config.groups:
        return AudienceResult(passes=False, group_results=(), group_logic=config.group_logic)

    group_results = tuple(
        evaluate_group(group, record, now, catalog, config.timing) for group in config.groups
    )
    passes = _combine(config.group_logic, [g.passes for g in group_results])
    return AudienceResult(
        passes=passes, group_results=group_results, group_logic=config.group_logic
    )


def matches(
    config: FilterConfig,
    record: Mapping[str, Any],
    now: datetime,
    catalog: ConditionCatalog = DEFAULT_CATALOG,
) -> bool:
    """Boolean form of evaluate_audience."""
    return evaluate_audience(config, record, now, catalog).passes


def count_active_rules(config: FilterConfig, catalog: ConditionCatalog = DEFAULT_CATALOG) -> int:
    """Count configured rules across all groups."""
    return sum(1 for group in config.groups for rule in group.rules if is_configured(rule, catalog))


def summarize_filter(config: FilterConfig, catalog: ConditionCatalog = DEFAULT_CATALOG) -> str:
    """One-line summary such as '3 filters in 2 groups'."""
    total = count_active_rules(config, catalog)
    if total == 0:
        return "No filters defined"
    groups = len(config.groups)
    return (
        f"{total} filter{'s' if total != 1 else ''} in "
        f"{groups} group{'s' if groups != 1 else ''}"
    )


def describe_rule(rule: FilterRule, catalog: ConditionCatalog = DEFAULT_CATALOG) -> Optional[str]:
    """Render a configured rule as readable text.

    Returns:
        Text such as 'Has Active Policy is not Home', or None if unconfigured
    """
    definition = catalog.get(rule.condition_id)
    if definition is None or not is_configured(rule, catalog):
        return None
    excluded = rule.bucket == RuleBucket.EXCLUDE
    operator = definition.resolve_operator(rule.operator)
    config_type = definition.config_type

    if isinstance(definition, SelectCondition):
        values = select_values(rule.value, operator)
        shown = ", ".join(definition.option_label(v) for v in values)
        negated = excluded != (operator in SELECT_NEGATED)
        verb = "is not" if negated else "is"
        if len(values) > 1:
            verb = "is not any of" if negated else "is any of"
        return f"{definition.label} {verb} {shown}"

    prefix = "Not: " if excluded else ""
    if config_type == ConfigType.NONE:
        return f"{prefix}{definition.label}"
    if config_type == ConfigType.DAYS_THRESHOLD:
        return f"{prefix}{definition.label} {rule.value} days"
    if config_type == ConfigType.NUMBER_COMPARE:
        return f"{prefix}{definition.label} {(operator or '').replace('_', ' ')} {rule.value}"
    if config_type == ConfigType.TEXT:
        verb = (operator or "").replace("_", " ")
        if not definition.needs_value(operator):
            return f"{prefix}{definition.label} {verb}"
        return f"{prefix}{definition.label} {verb} {rule.value}"
    phrase = _DAY_PHRASES.get(operator or "", "{days} days")
    return f"{prefix}{definition.label} {phrase.format(days=rule.value)}"


_DAY_PHRASES = {
    DayOperator.EQUALS_DAYS_FROM_NOW.value: "{days} days from now",
    DayOperator.EQUALS_DAYS_AGO.value: "{days} days ago",
    DayOperator.MORE_THAN_DAYS_FUTURE.value: "more than {days} days from now",
    DayOperator.LESS_THAN_DAYS_FUTURE.value: "less than {days} days from now",
    DayOperator.IN_NEXT_DAYS.value: "in the next {days} days",
    DayOperator.MORE_THAN_DAYS_AGO.value: "more than {days} days ago",
    DayOperator.LESS_THAN_DAYS_AGO.value: "less than {days} days ago",
    DayOperator.IN_LAST_DAYS.value: "in the last {days} days",
}
