"""
Template validation report.

validate_graph(graph) -> {"valid": bool, "errors": [...], "warnings": [...]}

Each issue is {"code", "message"[, "node_id", "node_label"]}.

Errors block activation:
    NO_NODES, NO_START, MULTIPLE_STARTS, CYCLE_DETECTED (cycles are only
    allowed through rejection edges), APPROVAL_NO_EDGES,
    APPROVAL_NO_APPROVED_PATH, ROLE_NO_USERS, DEAD_END, SYNC_SINGLE_INPUT,
    SYNC_NO_REJECTION_PATH (a join released on any_rejected must have
    somewhere to go)
Warnings are informational:
    NO_END, ORPHANED_NODE, CONDITIONAL_NO_OUTPUT, CONDITIONAL_NO_CONDITIONS,
    CONDITIONAL_MISSING_DEFAULT
"""

from app.services import permission_service
from app.services.workflow.graph import (
    SYNC_REJECTION_TAGS,
    WorkflowGraph,
    decision_tag,
    is_form_predicate,
    is_plain,
)


def _issue(code: str, message: str, node: dict | None = None) -> dict:
    issue = {"code": code, "message": message}
    if node is not None:
        issue["node_id"] = node["id"]
        issue["node_label"] = node.get("label")
    return issue


def _reachable(start_ids, neighbours) -> set:
    seen = set()
    stack = list(start_ids)
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(neighbours(current))
    return seen


def _find_cycle(graph: WorkflowGraph) -> list[int] | None:
    """First cycle that does not go through a rejection edge, as a node id path."""
    visited: set[int] = set()
    on_stack: list[int] = []

    def visit(node_id):
        visited.add(node_id)
        on_stack.append(node_id)
        for conn in graph.outgoing_edges(node_id):
            if decision_tag(conn) in SYNC_REJECTION_TAGS:
                continue
            target = conn["to_node_id"]
            if target in on_stack:
                return on_stack[on_stack.index(target):]
            if target not in visited:
                found = visit(target)
                if found:
                    return found
        on_stack.pop()
        return None

    for node in graph.nodes:
        if node["id"] not in visited:
            found = visit(node["id"])
            if found:
                return found
    return None


def validate_graph(graph: WorkflowGraph) -> dict:
    errors: list[dict] = []
    warnings: list[dict] = []

    if not graph.nodes:
        errors.append(_issue("NO_NODES", "Workflow must have at least one node"))
        return {"valid": False, "errors": errors, "warnings": warnings}

    starts = graph.nodes_of_type("start")
    ends = graph.nodes_of_type("end")
    if not starts:
        errors.append(_issue("NO_START", "Workflow must have a Start node"))
    elif len(starts) > 1:
        errors.append(_issue("MULTIPLE_STARTS", "Workflow can only have one Start node"))
    if not ends:
        warnings.append(_issue("NO_END", "Workflow has no End node. The workflow may not terminate properly."))

    connected = set()
    for conn in graph.connections:
        connected.add(conn["from_node_id"])
        connected.add(conn["to_node_id"])
    for node in graph.nodes:
        if node["node_type"] == "start":
            orphaned = not graph.outgoing_edges(node["id"])
        elif node["node_type"] == "end":
            orphaned = not graph.incoming_edges(node["id"])
        else:
            orphaned = node["id"] not in connected
        if orphaned:
            warnings.append(_issue(
                "ORPHANED_NODE", f'Node "{node["label"]}" is not connected to the workflow', node,
            ))

    cycle = _find_cycle(graph)
    if cycle:
        labels = [graph.node_by_id(nid)["label"] for nid in cycle]
        errors.append(_issue(
            "CYCLE_DETECTED",
            f"Workflow contains a cycle: {' → '.join(labels)} → {labels[0]}. "
            "Cycles are only allowed via rejection paths.",
            graph.node_by_id(cycle[0]),
        ))

    for node in graph.nodes:
        node_type = node["node_type"]
        outgoing = graph.outgoing_edges(node["id"])

        if node_type == "approval":
            if not outgoing:
                errors.append(_issue(
                    "APPROVAL_NO_EDGES", f'Approval node "{node["label"]}" has no outgoing connections', node,
                ))
            elif len(outgoing) > 1 and not any(
                decision_tag(c) == "approved" or is_plain(c) for c in outgoing
            ):
                errors.append(_issue(
                    "APPROVAL_NO_APPROVED_PATH",
                    f'Approval node "{node["label"]}" has no "Approved" path configured', node,
                ))

        if node_type in ("role", "approval") and node.get("entity_id") is not None:
            if not permission_service.users_with_role(node["entity_id"]):
                role = permission_service.role_name(node["entity_id"])
                errors.append(_issue(
                    "ROLE_NO_USERS",
                    f'Cannot proceed to "{node["label"]}": No users have the "{role}" role. '
                    "Please assign at least one user to this role.",
                    node,
                ))

        if node_type == "sync" and len(graph.incoming_edges(node["id"])) < 2:
            errors.append(_issue(
                "SYNC_SINGLE_INPUT",
                f'Sync node "{node["label"]}" needs at least two incoming connections to join',
                node,
            ))
        if node_type == "sync" and outgoing and not any(
            is_plain(c) or decision_tag(c) in SYNC_REJECTION_TAGS for c in outgoing
        ):
            errors.append(_issue(
                "SYNC_NO_REJECTION_PATH",
                f'Sync node "{node["label"]}" has no "any_rejected" or default path. '
                "A rejected branch would leave the workflow stuck at the join.",
                node,
            ))

        if node_type == "conditional":
            if not outgoing:
                warnings.append(_issue(
                    "CONDITIONAL_NO_OUTPUT",
                    f'Conditional node "{node["label"]}" has no outgoing connections. '
                    "The workflow cannot continue.",
                    node,
                ))
                continue
            conditioned = [c for c in outgoing if is_form_predicate(c) or decision_tag(c)]
            has_default = any(is_plain(c) for c in outgoing)
            if not conditioned:
                warnings.append(_issue(
                    "CONDITIONAL_NO_CONDITIONS",
                    f'Conditional node "{node["label"]}" has no condition-based edges. '
                    "All paths will be treated as default.",
                    node,
                ))
            elif not has_default and len(conditioned) < 2:
                warnings.append(_issue(
                    "CONDITIONAL_MISSING_DEFAULT",
                    f'Conditional node "{node["label"]}" may not handle all cases. '
                    "Consider adding a default path or additional conditions.",
                    node,
                ))

    if len(starts) == 1 and ends:
        forward = _reachable(
            [starts[0]["id"]], lambda nid: [c["to_node_id"] for c in graph.outgoing_edges(nid)],
        )
        backward = _reachable(
            [n["id"] for n in ends], lambda nid: [c["from_node_id"] for c in graph.incoming_edges(nid)],
        )
        for node in graph.nodes:
            if node["id"] in forward and node["id"] not in backward:
                errors.append(_issue(
                    "DEAD_END", f'Node "{node["label"]}" cannot reach an End node', node,
                ))

    return {"valid": not errors, "errors": errors, "warnings": warnings}
