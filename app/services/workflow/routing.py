"""
Routing resolver — which node(s) follow the current one.

    resolve_next(graph, node, decision=, form_data=, aggregate_decision=)
        one hop by node type (see per-type helpers below)
    chain_conditionals(graph, nodes, decision=, form_data=, max_hops=)
        walks through conditional nodes so users never land on one
    accumulated_form_data(instance_id, form_data)
        the form values conditional predicates are evaluated against
    check_rejection_route(graph, node, next_nodes)
        refuses rejections the template cannot route

All functions are pure over the graph except accumulated_form_data, which
falls back to the instance history.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import ValidationError, WorkflowConfigurationError
from app.models import db
from app.models.workflow import WorkflowHistory
from app.services.workflow.conditions import evaluate_form_condition
from app.services.workflow.graph import (
    SYNC_APPROVAL_TAGS,
    SYNC_REJECTION_TAGS,
    WorkflowGraph,
    decision_tag,
    is_form_predicate,
    is_plain,
)

logger = logging.getLogger(__name__)

# Node types a rejection may bounce back and forth with (revision loops).
REWORK_NODE_TYPES = frozenset({"form", "role", "department"})


def _first(edges):
    return edges[:1]


def _conditional_edges(edges, decision, form_data):
    predicates = [e for e in edges if is_form_predicate(e)]
    for conn in predicates:
        if evaluate_form_condition(conn["condition"], form_data or {}):
            return [conn]
    if not predicates and decision:
        tagged = [e for e in edges if decision_tag(e) == decision]
        if tagged:
            return _first(tagged)
    default = [e for e in edges if is_plain(e)]
    return _first(default) or _first(edges)


def _approval_edges(edges, decision):
    tagged = [e for e in edges if decision_tag(e) == decision]
    if tagged:
        return _first(tagged)
    default = [e for e in edges if is_plain(e)]
    return _first(default) or _first(edges)


def _sync_edges(edges, aggregate_decision):
    tags = SYNC_REJECTION_TAGS if aggregate_decision == "any_rejected" else SYNC_APPROVAL_TAGS
    tagged = [e for e in edges if decision_tag(e) in tags]
    if tagged:
        return _first(tagged)
    return _first([e for e in edges if is_plain(e)])


def _regular_edges(edges, decision):
    if decision:
        tagged = [e for e in edges if decision_tag(e) == decision]
        if tagged:
            return _first(tagged)
    plain = [e for e in edges if is_plain(e)]
    return plain or edges


def resolve_next(
    graph: WorkflowGraph,
    node: dict,
    *,
    decision: str | None = None,
    form_data: dict | None = None,
    aggregate_decision: str | None = None,
) -> list[dict]:
    """Target nodes of one hop out of ``node``.

    - conditional: first matching form predicate, else the default edge,
      else the first edge (decision-tag match when no predicate edge exists)
    - approval: edge tagged with the decision, else default, else first;
      without a decision every plain edge (a decision is only required
      when there is none)
    - sync: routed on the stored aggregate decision
    - anything else: every plain edge (a fork when there are several),
      unless the decision matches a tagged edge
    """
    edges = graph.outgoing_edges(node["id"])
    if not edges:
        return []
    node_type = node["node_type"]
    if node_type == "conditional":
        chosen = _conditional_edges(edges, decision, form_data)
    elif node_type == "approval":
        if decision:
            chosen = _approval_edges(edges, decision)
        else:
            chosen = [e for e in edges if is_plain(e)]
            if not chosen:
                raise ValidationError(
                    f'A decision is required to advance approval step "{node["label"]}"',
                    details={"decision": "approved | rejected"},
                )
    elif node_type == "sync":
        chosen = _sync_edges(edges, aggregate_decision)
    else:
        chosen = _regular_edges(edges, decision)
    return graph.targets(chosen)


def chain_conditionals(
    graph: WorkflowGraph,
    nodes: list[dict],
    *,
    decision: str | None = None,
    form_data: dict | None = None,
    max_hops: int = 10,
) -> list[dict]:
    """Replace every conditional in ``nodes`` with the node it routes to."""
    resolved = []
    for node in nodes:
        hops = 0
        while node["node_type"] == "conditional" and hops < max_hops:
            hops += 1
            targets = resolve_next(graph, node, decision=decision, form_data=form_data)
            if not targets:
                raise WorkflowConfigurationError(
                    f'Conditional step "{node["label"]}" has no outgoing path. '
                    "Please add a default connection in the workflow editor.",
                    details={"node_id": node["id"]},
                )
            logger.debug("Conditional %s routed to %s", node["label"], targets[0]["label"])
            node = targets[0]
        if node["node_type"] == "conditional":
            raise WorkflowConfigurationError(
                f'Conditional routing did not settle within {max_hops} steps at "{node["label"]}". '
                "Please check the workflow for conditional loops.",
                details={"node_id": node["id"], "max_hops": max_hops},
            )
        resolved.append(node)
    return resolved


def accumulated_form_data(instance_id: int, form_data: dict | None) -> dict:
    """Inline ``responses``, else the inline payload, else the latest form data in history."""
    if form_data:
        responses = form_data.get("responses")
        if isinstance(responses, dict):
            return dict(responses)
        return dict(form_data)
    # JSON null and SQL NULL both come back as None; skip them in Python.
    recent = db.session.execute(
        select(WorkflowHistory.form_data)
        .where(WorkflowHistory.instance_id == instance_id)
        .order_by(WorkflowHistory.handed_off_at.desc(), WorkflowHistory.id.desc())
    ).scalars()
    for latest in recent:
        if isinstance(latest, dict) and latest:
            responses = latest.get("responses")
            return dict(responses) if isinstance(responses, dict) else dict(latest)
    return {}


def check_rejection_route(graph: WorkflowGraph, node: dict, next_nodes: list[dict]) -> None:
    """Raise WorkflowConfigurationError when a rejection out of ``node`` cannot be routed."""
    label = node["label"]
    if not next_nodes:
        raise WorkflowConfigurationError(
            f'Rejection routing failed: No rejection path configured for "{label}". '
            "Please add a rejection edge in the workflow editor.",
            details={"node_id": node["id"]},
        )
    if any(target["id"] == node["id"] for target in next_nodes):
        raise WorkflowConfigurationError(
            f'Rejection routing failed: "{label}" cannot reject to itself. '
            "Please configure a different rejection target.",
            details={"node_id": node["id"]},
        )
    target = next_nodes[0]
    leads_back = any(c["to_node_id"] == node["id"] for c in graph.outgoing_edges(target["id"]))
    if leads_back and target["node_type"] not in REWORK_NODE_TYPES:
        raise WorkflowConfigurationError(
            f'Rejection routing failed: "{label}" rejects to "{target["label"]}", which leads '
            "straight back to it. Please route the rejection through a form, role or department step.",
            details={"node_id": node["id"], "target_node_id": target["id"]},
        )
