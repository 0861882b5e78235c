"""
WorkflowGraph — the single read interface over a workflow's nodes and edges.

Routing never touches WorkflowNode / WorkflowConnection rows directly. A
graph is built either from the live template tables or from an instance's
``started_snapshot``; ``graph_for_instance`` is the only place that picks
between the two.

Nodes and connections are kept as plain dicts shaped like their
``to_dict()`` output, so a snapshot and the live tables are interchangeable:

    node:       {"id", "node_type", "label", "entity_id", "form_template_id", "settings"}
    connection: {"id", "from_node_id", "to_node_id", "condition"}
"""

import logging
from collections import defaultdict, deque

from sqlalchemy import select

from app.core.exceptions import IntegrityViolation, NotFoundError
from app.models import db
from app.models.workflow import WorkflowConnection, WorkflowNode

logger = logging.getLogger(__name__)

SYNC_REJECTION_TAGS = ("any_rejected", "rejected")
SYNC_APPROVAL_TAGS = ("all_approved", "approved")


# ── Edge helpers ─────────────────────────────────────────────────────────


def edge_condition(conn: dict) -> dict:
    return conn.get("condition") or {}


def decision_tag(conn: dict) -> str | None:
    """Decision tag carried by an edge (``decision`` or legacy ``conditionValue``)."""
    cond = edge_condition(conn)
    return cond.get("decision") or cond.get("conditionValue") or None


def is_form_predicate(conn: dict) -> bool:
    cond = edge_condition(conn)
    return bool(cond.get("sourceFormFieldId") and cond.get("conditionType"))


def is_plain(conn: dict) -> bool:
    """An edge is plain iff it carries neither a decision tag nor a form predicate."""
    return decision_tag(conn) is None and not is_form_predicate(conn)


def is_rejection_edge(conn: dict) -> bool:
    return decision_tag(conn) in SYNC_REJECTION_TAGS


# ── Graph ────────────────────────────────────────────────────────────────


class WorkflowGraph:
    """Immutable adjacency view of one workflow definition."""

    def __init__(self, nodes: list[dict], connections: list[dict], source: str = "live"):
        self.nodes = list(nodes)
        self.connections = list(connections)
        self.source = source
        self._by_id = {n["id"]: n for n in self.nodes}
        self._outgoing: dict[int, list[dict]] = defaultdict(list)
        self._incoming: dict[int, list[dict]] = defaultdict(list)
        for conn in self.connections:
            self._outgoing[conn["from_node_id"]].append(conn)
            self._incoming[conn["to_node_id"]].append(conn)

    # ── Construction ──────────────────────────────────────────────────

    @classmethod
    def from_template(cls, template_id: int) -> "WorkflowGraph":
        nodes = db.session.execute(
            select(WorkflowNode).where(WorkflowNode.template_id == template_id).order_by(WorkflowNode.id)
        ).scalars().all()
        conns = db.session.execute(
            select(WorkflowConnection)
            .where(WorkflowConnection.template_id == template_id)
            .order_by(WorkflowConnection.id)
        ).scalars().all()
        return cls([n.to_dict() for n in nodes], [c.to_dict() for c in conns], source="live")

    @classmethod
    def from_snapshot(cls, snapshot: dict) -> "WorkflowGraph":
        """Build from a captured snapshot; malformed content raises IntegrityViolation."""
        if not isinstance(snapshot, dict):
            raise IntegrityViolation("Workflow snapshot is not an object")
        nodes = snapshot.get("nodes")
        conns = snapshot.get("connections")
        if not isinstance(nodes, list) or not isinstance(conns, list):
            raise IntegrityViolation("Workflow snapshot is missing nodes or connections")
        for node in nodes:
            if not isinstance(node, dict) or "id" not in node or "node_type" not in node:
                raise IntegrityViolation("Workflow snapshot contains a malformed node")
        node_ids = {n["id"] for n in nodes}
        for conn in conns:
            if not isinstance(conn, dict):
                raise IntegrityViolation("Workflow snapshot contains a malformed connection")
            if conn.get("from_node_id") not in node_ids or conn.get("to_node_id") not in node_ids:
                raise IntegrityViolation(
                    f"Workflow snapshot connection {conn.get('id')} references an unknown node"
                )
        return cls(nodes, conns, source="snapshot")

    # ── Lookups ───────────────────────────────────────────────────────

    def node_by_id(self, node_id) -> dict | None:
        return self._by_id.get(node_id)

    def require_node(self, node_id) -> dict:
        node = self._by_id.get(node_id)
        if node is None:
            raise IntegrityViolation(f"Workflow node {node_id} is not part of this workflow")
        return node

    def outgoing_edges(self, node_id) -> list[dict]:
        return list(self._outgoing.get(node_id, ()))

    def incoming_edges(self, node_id) -> list[dict]:
        return list(self._incoming.get(node_id, ()))

    def targets(self, edges: list[dict]) -> list[dict]:
        """Resolve edges to their target nodes, preserving order and dropping dangling ones."""
        out = []
        for conn in edges:
            node = self._by_id.get(conn["to_node_id"])
            if node is not None:
                out.append(node)
        return out

    def start_node(self) -> dict | None:
        for node in self.nodes:
            if node["node_type"] == "start":
                return node
        return None

    def nodes_of_type(self, node_type: str) -> list[dict]:
        return [n for n in self.nodes if n["node_type"] == node_type]

    # ── Structure queries ─────────────────────────────────────────────

    def is_fork_point(self, node_id) -> bool:
        """A node forks iff it has two or more outgoing edges without a decision tag."""
        untagged = [c for c in self.outgoing_edges(node_id) if decision_tag(c) is None]
        return len(untagged) > 1

    def expected_arrivals(self, sync_node_id) -> int:
        return len(self.incoming_edges(sync_node_id))

    def sync_has_rejection_path(self, sync_node_id) -> bool:
        return any(decision_tag(c) == "any_rejected" for c in self.outgoing_edges(sync_node_id))

    def find_downstream_sync(self, node_id) -> dict | None:
        """First sync node reachable from ``node_id`` (BFS, never past an end node)."""
        visited = set()
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            for conn in self.outgoing_edges(current):
                target = self._by_id.get(conn["to_node_id"])
                if target is None:
                    continue
                if target["node_type"] == "sync":
                    return target
                if target["node_type"] != "end":
                    queue.append(target["id"])
        return None

    def downstream_node_ids(self, node_ids) -> set[int]:
        """Every node reachable from any of ``node_ids`` (excluding the seeds unless revisited)."""
        found: set[int] = set()
        visited: set[int] = set()
        stack = list(node_ids)
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            for conn in self.outgoing_edges(current):
                found.add(conn["to_node_id"])
                stack.append(conn["to_node_id"])
        return found

    def to_snapshot_parts(self) -> dict:
        return {"nodes": list(self.nodes), "connections": list(self.connections)}

    def __repr__(self):
        return f"<WorkflowGraph {self.source} nodes={len(self.nodes)} edges={len(self.connections)}>"


def graph_for_instance(instance) -> WorkflowGraph:
    """Snapshot when the instance has one, otherwise the live template tables."""
    if instance.started_snapshot is not None:
        return WorkflowGraph.from_snapshot(instance.started_snapshot)
    if instance.template_id is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=None)
    logger.warning(
        "Instance %s has no snapshot; routing against live template %s",
        instance.id, instance.template_id,
        extra={"instance_id": instance.id, "template_id": instance.template_id},
    )
    return WorkflowGraph.from_template(instance.template_id)
