"""Engine package - Business logic layer.

Pure logic with no database access; the autonomous layer wires it to
storage and the mailer.

Modules:
    - conditions: Condition catalog (what a filter rule can test)
    - filters: Rule, group and audience evaluation
    - workflow: Workflow graph editing and traversal
    - enrollment: Enrollment state machine
    - pacing: Spreading a batch of enrollees over send days
    - templates: Email template rendering
"""

from src.engine.conditions import DEFAULT_CATALOG, ConditionCatalog, get_condition
from src.engine.filters import evaluate_audience, evaluate_group, evaluate_rule, matches
from src.engine.pacing import PacingBucket, assign_send_dates, schedule
from src.engine.workflow import WorkflowGraph, WorkflowNode, default_graph

__all__ = [
    # Conditions
    "DEFAULT_CATALOG",
    "ConditionCatalog",
    "get_condition",
    # Filters
    "evaluate_rule",
    "evaluate_group",
    "evaluate_audience",
    "matches",
    # Pacing
    "PacingBucket",
    "schedule",
    "assign_send_dates",
    # Workflow
    "WorkflowGraph",
    "WorkflowNode",
    "default_graph",
]
