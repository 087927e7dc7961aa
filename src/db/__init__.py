"""Database package - SQLite database and models.

Modules:
    - database: SQLite connection and operations
    - models: Data models and enumerations
"""

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
    FilterGroup,
    FilterRule,
    Logic,
    NodeType,
    PacingConfig,
    ReentryConfig,
    ReentryType,
    RuleBucket,
    SentEmail,
    TimingWindow,
    Weekday,
)

__all__ = [
    # Enums
    "Logic",
    "RuleBucket",
    "NodeType",
    "Branch",
    "ReentryType",
    "Weekday",
    "EnrollmentStatus",
    "AutomationStatus",
    "EventAction",
    # Dataclasses
    "FilterRule",
    "FilterGroup",
    "FilterConfig",
    "TimingWindow",
    "ReentryConfig",
    "PacingConfig",
    "Contact",
    "Automation",
    "Enrollment",
    "EnrollmentEvent",
    "SentEmail",
]
