"""Save-time checks for flow graphs and trigger settings."""

from __future__ import annotations

from typing import Any, Dict, List

from flowpilot.exceptions import NodeConfigError
from flowpilot.models.enums import BRANCH_HANDLES, NodeType, TriggerType
from flowpilot.models.flow import FlowGraph
from flowpilot.models.node_config import parse_node_config


def validate_flow_graph(graph: FlowGraph, require_entry: bool = False) -> List[str]:
    """Return the problems found in ``graph``; an empty list means it is valid.

    Structural rules always apply: unique node ids, edges between existing
    nodes, at most one outgoing edge from non-branching nodes, and one edge per
    known handle from branching nodes. ``require_entry`` adds the rules for
    flows that can be started: a single trigger node and well-formed node data.
    """
    problems: List[str] = []

    node_ids = set()
    for node in graph.nodes:
        if node.id in node_ids:
            problems.append(f"Duplicate node id '{node.id}'")
        node_ids.add(node.id)

    edge_ids = set()
    for edge in graph.edges:
        if edge.id in edge_ids:
            problems.append(f"Duplicate edge id '{edge.id}'")
        edge_ids.add(edge.id)
        if edge.source not in node_ids:
            problems.append(f"Edge '{edge.id}' starts at unknown node '{edge.source}'")
        if edge.target not in node_ids:
            problems.append(f"Edge '{edge.id}' ends at unknown node '{edge.target}'")

    for node in graph.nodes:
        outgoing = graph.outgoing(node.id)
        handles = BRANCH_HANDLES.get(node.type)
        if handles is None:
            if len(outgoing) > 1:
                problems.append(
                    f"Node '{node.id}' ({node.type.value}) has {len(outgoing)} outgoing edges; "
                    "only condition and check_window nodes may branch"
                )
            continue

        used = set()
        for edge in outgoing:
            if edge.source_handle not in handles:
                problems.append(
                    f"Edge '{edge.id}' from {node.type.value} node '{node.id}' must use "
                    f"one of the handles {', '.join(handles)}"
                )
            elif edge.source_handle in used:
                problems.append(
                    f"Node '{node.id}' has more than one '{edge.source_handle}' edge"
                )
            used.add(edge.source_handle)

    if require_entry:
        triggers = graph.nodes_of_type(NodeType.TRIGGER)
        if len(triggers) != 1:
            problems.append(f"Active flows need exactly one trigger node, found {len(triggers)}")
        for node in graph.nodes:
            try:
                parse_node_config(node)
            except NodeConfigError as exc:
                problems.append(str(exc))

    return problems


def validate_trigger_config(
    trigger_type: TriggerType,
    config: Dict[str, Any],
    require_complete: bool = False,
) -> List[str]:
    """Return the problems in a flow's trigger configuration.

    Shapes are always checked; ``require_complete`` also demands the settings
    an active flow needs to ever match an event.
    """
    problems: List[str] = []
    if not isinstance(config, dict):
        return [f"Trigger config must be an object, not {type(config).__name__}"]

    if trigger_type == TriggerType.KEYWORD:
        keywords = config.get("keywords")
        if keywords is not None and not isinstance(keywords, str) and not (
            isinstance(keywords, list) and all(isinstance(item, str) for item in keywords)
        ):
            problems.append("Trigger 'keywords' must be a list of strings or a comma-separated string")
        elif require_complete and not keyword_list(config):
            problems.append("Active keyword flows need at least one keyword")

    if trigger_type == TriggerType.WEBHOOK:
        webhook_id = config.get("webhookId")
        if webhook_id is not None and (not isinstance(webhook_id, str) or not webhook_id.strip()):
            problems.append("Trigger 'webhookId' must be a non-empty string")
        elif require_complete and webhook_id is None:
            problems.append("Active webhook flows need a 'webhookId'")

    return problems


def keyword_list(config: Dict[str, Any]) -> List[str]:
    """Keywords configured on a keyword trigger, trimmed and without blanks."""
    keywords = config.get("keywords") or []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    if not isinstance(keywords, list):
        raise ValueError(f"Trigger keywords must be a list or a string, not {type(keywords).__name__}")
    return [str(keyword).strip() for keyword in keywords if str(keyword).strip()]
