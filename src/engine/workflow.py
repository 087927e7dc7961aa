"""Workflow graph - the node tree an enrollment walks through.

Automations persist their workflow as nested JSON: a top-level node list
where condition nodes carry {"branches": {"yes": [...], "no": [...]}}.
The engine works on an arena instead: every node lives in one flat dict,
the top-level order is an id list, and each node knows its parent and
branch. Edits are commands on the arena and the nested shape is rebuilt
on save.

Entry criteria and trigger nodes are pinned at the top: they cannot be
deleted and nothing can be inserted ahead of them.

Usage:
    from src.engine.workflow import WorkflowGraph

    graph = WorkflowGraph.from_nodes(automation.nodes)
    graph.add_node(NodeType.DELAY, after_id="node-1", config={"duration": 3, "unit": "days"})
    automation.nodes = graph.to_nodes()
"""

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterator, Optional

from src.core.exceptions import ProtectedNodeError, ValidationError, WorkflowError
from src.core.logging import get_logger
from src.db.models import (
    BRANCHING_NODE_TYPES,
    PINNED_NODE_TYPES,
    Branch,
    DelayUnit,
    NodeType,
    PacingConfig,
    ReentryConfig,
)

logger = get_logger(__name__)

ENTRY_CRITERIA_ID = "entry-criteria"
TRIGGER_ID = "trigger"

_DEFAULT_TITLES = {
    NodeType.ENTRY_CRITERIA: "Entry Criteria",
    NodeType.TRIGGER: "Trigger",
    NodeType.SEND_EMAIL: "Send Email",
    NodeType.DELAY: "Delay",
    NodeType.CONDITION: "Email Engagement",
    NodeType.FIELD_CONDITION: "Field Condition",
    NodeType.UPDATE_FIELD: "Update Field",
    NodeType.END: "End",
}

_UNIT_DELTAS = {
    DelayUnit.HOURS: timedelta(hours=1),
    DelayUnit.DAYS: timedelta(days=1),
    DelayUnit.WEEKS: timedelta(weeks=1),
}


@dataclass
class WorkflowNode:
    """One node in the arena.

    Attributes:
        id: Node id, unique within the workflow
        type: Node type
        title: Display title
        config: Type-specific settings
        parent_id: Owning condition node (None at top level)
        branch: Which branch of the parent holds this node
        branches: Child id lists (branching node types only)
        extra: Unmodelled keys from the persisted JSON (subtitle, stats, ...)
    """

    id: str
    type: NodeType
    title: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None
    branch: Optional[Branch] = None
    branches: dict[Branch, list[str]] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_pinned(self) -> bool:
        return self.type in PINNED_NODE_TYPES

    @property
    def is_branching(self) -> bool:
        return self.type in BRANCHING_NODE_TYPES


def delay_duration(config: dict[str, Any]) -> timedelta:
    """Resolve a delay node's wait.

    Accepts {"duration": N, "unit": "hours"|"days"|"weeks"} and the
    shorthand {"days": N} / {"hours": N} / {"weeks": N}. A missing or
    malformed duration means no wait.
    """
    if "duration" in config:
        amount = config.get("duration")
        try:
            unit = DelayUnit(config.get("unit") or DelayUnit.DAYS.value)
        except ValueError:
            logger.warning("Unknown delay unit, using days", extra={"context": {"config": config}})
            unit = DelayUnit.DAYS
    else:
        for unit in DelayUnit:
            if unit.value in config:
                amount = config[unit.value]
                break
        else:
            return timedelta(0)

    try:
        count = float(amount)
    except (TypeError, ValueError):
        logger.warning("Malformed delay duration", extra={"context": {"config": config}})
        return timedelta(0)
    if count <= 0:
        return timedelta(0)
    return _UNIT_DELTAS[unit] * count


def _validate_config(node_type: NodeType, config: dict[str, Any]) -> None:
    """Reject invalid settings on the nodes that hold policy values."""
    if node_type == NodeType.ENTRY_CRITERIA:
        ReentryConfig.from_dict(config.get("reentry"))
        PacingConfig.from_dict(config.get("pacing"))


class WorkflowGraph:
    """Arena-indexed workflow tree with edit commands and traversal."""

    def __init__(self) -> None:
        self.nodes: dict[str, WorkflowNode] = {}
        self.root: list[str] = []

    # -------------------------------------------------------------------------
    # Persistence shape
    # -------------------------------------------------------------------------

    @classmethod
    def from_nodes(cls, raw_nodes: Optional[list[dict[str, Any]]]) -> "WorkflowGraph":
        """Build the arena from the persisted nested node list.

        Raises:
            ValidationError: Unknown node type, missing or duplicate id
        """
        graph = cls()
        graph.root = graph._load_list(raw_nodes or [], parent_id=None, branch=None)
        return graph

    def _load_list(
        self,
        raw_nodes: list[dict[str, Any]],
        parent_id: Optional[str],
        branch: Optional[Branch],
    ) -> list[str]:
        ids: list[str] = []
        for raw in raw_nodes:
            node_id = raw.get("id")
            if not node_id:
                raise ValidationError(f"Workflow node without id: {raw!r}")
            if node_id in self.nodes:
                raise ValidationError(f"Duplicate workflow node id: {node_id}")
            try:
                node_type = NodeType(raw.get("type"))
            except ValueError as e:
                raise ValidationError(
                    f"Workflow node {node_id} has unknown type {raw.get('type')!r}"
                ) from e

            extra = {
                k: v
                for k, v in raw.items()
                if k not in ("id", "type", "title", "config", "branches")
            }
            node = WorkflowNode(
                id=node_id,
                type=node_type,
                title=raw.get("title") or "",
                config=dict(raw.get("config") or {}),
                parent_id=parent_id,
                branch=branch,
                extra=extra,
            )
            self.nodes[node_id] = node

            if node.is_branching:
                raw_branches = raw.get("branches") or {}
                for child_branch in Branch:
                    node.branches[child_branch] = self._load_list(
                        raw_branches.get(child_branch.value) or [], node_id, child_branch
                    )
            ids.append(node_id)
        return ids

    def to_nodes(self) -> list[dict[str, Any]]:
        """Rebuild the nested node list for storage."""
        return [self._dump(node_id) for node_id in self.root]

    def _dump(self, node_id: str) -> dict[str, Any]:
        node = self.nodes[node_id]
        data: dict[str, Any] = {"id": node.id, "type": node.type.value, "title": node.title}
        data.update(node.extra)
        data["config"] = dict(node.config)
        if node.is_branching:
            data["branches"] = {
                b.value: [self._dump(child) for child in node.branches.get(b, [])] for b in Branch
            }
        return data

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: Optional[str]) -> Optional[WorkflowNode]:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def _require(self, node_id: str) -> WorkflowNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise WorkflowError(f"Workflow node not found: {node_id}")
        return node

    def siblings(self, node_id: str) -> list[str]:
        """The id list that holds node_id (top level or a branch)."""
        node = self._require(node_id)
        if node.parent_id is None:
            return self.root
        parent = self.nodes[node.parent_id]
        return parent.branches[node.branch]  # type: ignore[index]

    def children(self, node_id: str, branch: Branch) -> list[str]:
        node = self._require(node_id)
        return list(node.branches.get(branch, []))

    def first(self) -> Optional[str]:
        return self.root[0] if self.root else None

    def path_to(self, node_id: str) -> list[str]:
        """Ids from the top-level list down to node_id, inclusive."""
        path = []
        node: Optional[WorkflowNode] = self._require(node_id)
        while node is not None:
            path.append(node.id)
            node = self.nodes.get(node.parent_id) if node.parent_id else None
        path.reverse()
        return path

    def walk(self) -> Iterator[WorkflowNode]:
        """Depth-first, in document order."""

        def _walk(ids: list[str]) -> Iterator[WorkflowNode]:
            for node_id in ids:
                node = self.nodes[node_id]
                yield node
                for branch in Branch:
                    yield from _walk(node.branches.get(branch, []))

        return _walk(self.root)

    def nodes_of_type(self, node_type: NodeType) -> list[WorkflowNode]:
        return [node for node in self.walk() if node.type == node_type]

    # -------------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------------

    def next_after(self, node_id: str) -> Optional[str]:
        """Advance: next sibling, else the next sibling of the nearest ancestor.

        Returns:
            Next node id, or None when the workflow is exhausted
        """
        current: Optional[str] = node_id
        while current is not None:
            ids = self.siblings(current)
            index = ids.index(current)
            if index + 1 < len(ids):
                return ids[index + 1]
            current = self.nodes[current].parent_id
        return None

    def enter_branch(self, node_id: str, branch: Branch) -> Optional[str]:
        """First node of a branch, or Advance past the condition if it's empty."""
        child_ids = self.children(node_id, branch)
        if child_ids:
            return child_ids[0]
        return self.next_after(node_id)

    # -------------------------------------------------------------------------
    # Edit commands
    # -------------------------------------------------------------------------

    def add_node(
        self,
        node_type: NodeType,
        after_id: Optional[str] = None,
        branch: Optional[Branch] = None,
        config: Optional[dict[str, Any]] = None,
        title: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> WorkflowNode:
        """Insert a node.

        With a branch, after_id names the condition node and the new node is
        appended to that branch. Without one, the node goes right after
        after_id in the same list, or at the end of the top level.

        Raises:
            ProtectedNodeError: Adding a pinned type, or inserting ahead of a pinned node
            WorkflowError: after_id unknown, duplicate id, or branch on a non-branching node
        """
        node_type = NodeType(node_type)
        if node_type in PINNED_NODE_TYPES:
            raise ProtectedNodeError(f"{node_type.value} nodes are created with the workflow")

        new_id = node_id or f"node-{uuid.uuid4().hex[:12]}"
        if new_id in self.nodes:
            raise WorkflowError(f"Workflow node id already used: {new_id}")

        node_config = dict(config or {})
        _validate_config(node_type, node_config)
        node = WorkflowNode(
            id=new_id,
            type=node_type,
            title=title or _DEFAULT_TITLES[node_type],
            config=node_config,
        )
        if node.is_branching:
            node.branches = {b: [] for b in Branch}

        if branch is not None:
            parent = self._require(after_id) if after_id else None
            if parent is None or not parent.is_branching:
                raise WorkflowError(f"Node {after_id} has no branches")
            branch = Branch(branch)
            node.parent_id = parent.id
            node.branch = branch
            parent.branches[branch].append(new_id)
        elif after_id is None:
            self.root.append(new_id)
        else:
            anchor = self._require(after_id)
            ids = self.siblings(after_id)
            index = ids.index(after_id) + 1
            if anchor.parent_id is None and any(
                self.nodes[i].is_pinned for i in self.root[index:]
            ):
                raise ProtectedNodeError("Cannot insert ahead of entry criteria or trigger")
            node.parent_id = anchor.parent_id
            node.branch = anchor.branch
            ids.insert(index, new_id)

        self.nodes[new_id] = node
        logger.debug(
            "Workflow node added",
            extra={"context": {"node_id": new_id, "type": node_type.value, "after": after_id}},
        )
        return node

    def delete_node(self, node_id: str) -> list[str]:
        """Remove a node and its subtree.

        Pinned nodes and unknown ids are left alone.

        Returns:
            Ids removed (empty if nothing changed)
        """
        node = self.nodes.get(node_id)
        if node is None:
            return []
        if node.is_pinned:
            logger.info(
                "Ignored delete of pinned node",
                extra={"context": {"node_id": node_id, "type": node.type.value}},
            )
            return []

        self.siblings(node_id).remove(node_id)
        removed = []
        stack = [node_id]
        while stack:
            current = self.nodes.pop(stack.pop())
            removed.append(current.id)
            for branch in Branch:
                stack.extend(current.branches.get(branch, []))

        logger.debug("Workflow node deleted", extra={"context": {"removed": removed}})
        return removed

    def update_config(self, node_id: str, config: dict[str, Any]) -> WorkflowNode:
        """Replace a node's config wholesale.

        Raises:
            WorkflowError: Unknown node
            ValidationError: Invalid re-entry or pacing settings on entry criteria
        """
        node = self._require(node_id)
        new_config = dict(config)
        _validate_config(node.type, new_config)
        node.config = new_config
        return node


def default_graph(filter_config: Optional[dict[str, Any]] = None) -> WorkflowGraph:
    """Starting workflow for a new automation.

    Entry criteria (re-entry and pacing off), a 9:00 daily trigger, and
    one empty send email step.
    """
    raw = [
        {
            "id": ENTRY_CRITERIA_ID,
            "type": NodeType.ENTRY_CRITERIA.value,
            "title": _DEFAULT_TITLES[NodeType.ENTRY_CRITERIA],
            "config": {
                "filterConfig": filter_config or {"groups": [], "groupLogic": "AND"},
                "reentry": ReentryConfig().to_dict(),
                "pacing": PacingConfig().to_dict(),
            },
        },
        {
            "id": TRIGGER_ID,
            "type": NodeType.TRIGGER.value,
            "title": _DEFAULT_TITLES[NodeType.TRIGGER],
            "config": {"time": "09:00", "timezone": "America/Chicago", "frequency": "Daily"},
        },
        {
            "id": "node-1",
            "type": NodeType.SEND_EMAIL.value,
            "title": _DEFAULT_TITLES[NodeType.SEND_EMAIL],
            "config": {"templateKey": ""},
        },
    ]
    return WorkflowGraph.from_nodes(raw)
