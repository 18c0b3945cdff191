"""Executes flow graphs as persisted, resumable state machines."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from flowpilot import constants
from flowpilot.capabilities.base import (
    AgentInvoker,
    Clock,
    ContactTagger,
    HttpRequester,
    MessageSender,
    SystemClock,
)
from flowpilot.exceptions import (
    FlowInactiveError,
    FlowNotFoundError,
    MissingTriggerNodeError,
    NodeExecutionError,
    RunNotFoundError,
    StepLimitExceededError,
)
from flowpilot.models.enums import NodeType, RunOutcome, RunStatus, WaitReason
from flowpilot.models.flow import FlowGraph, FlowNode
from flowpilot.models.node_config import (
    AiAgentConfig,
    CloseConfig,
    ConditionConfig,
    DelayConfig,
    HttpRequestConfig,
    HumanHandoffConfig,
    NodeConfig,
    SendMessageConfig,
    TagConfig,
    TransferAgentConfig,
    parse_node_config,
)
from flowpilot.models.run import FlowRun
from flowpilot.services.condition_evaluator import ConditionEvaluator
from flowpilot.services.flow_service import FlowService
from flowpilot.utils.identifiers import generate_execution_id

LOG = logging.getLogger(__name__)

CANCELLED = "Cancelled"


def content_event_id(payload: Dict[str, Any]) -> str:
    """Stable event id for a resume payload that arrived without one."""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return "content:" + hashlib.sha256(encoded).hexdigest()


class NodeOutcome(BaseModel):
    """What a node contributed: context updates, a branch handle, or a suspension."""

    updates: Dict[str, Any] = Field(default_factory=dict)
    handle: Optional[str] = None
    wait: Optional[WaitReason] = None
    resume_at: Optional[datetime] = None


class FlowEngine:
    """Walks a flow's nodes for one run at a time, persisting after every step.

    Every run-state write is a compare-and-set on the run status and on the
    run's current ``execution_id``. An execution that finds its run paused or
    cancelled by someone else stops before the next node, and a paused run is
    only handed to a new execution after the previous one has let go of it.
    """

    def __init__(
        self,
        flows: FlowService,
        messages: MessageSender,
        agents: AgentInvoker,
        contacts: ContactTagger,
        http: HttpRequester,
        clock: Optional[Clock] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        max_steps: Optional[int] = None,
    ) -> None:
        self.flows = flows
        self.messages = messages
        self.agents = agents
        self.contacts = contacts
        self.http = http
        self.clock = clock or SystemClock()
        self.evaluator = evaluator or ConditionEvaluator(clock=self.clock)
        self.max_steps = max_steps if max_steps is not None else constants.MAX_STEPS_PER_RUN
        self._handlers: Dict[NodeType, Callable[[FlowNode, Any, Dict[str, Any]], NodeOutcome]] = {
            NodeType.TRIGGER: self._run_passthrough,
            NodeType.SEND_MESSAGE: self._run_send_message,
            NodeType.AI_AGENT: self._run_ai_agent,
            NodeType.WAIT_REPLY: self._run_wait_reply,
            NodeType.DELAY: self._run_delay,
            NodeType.CONDITION: self._run_condition,
            NodeType.HUMAN_HANDOFF: self._run_human_handoff,
            NodeType.TAG: self._run_tag,
            NodeType.HTTP_REQUEST: self._run_http_request,
            NodeType.CLOSE: self._run_close,
            NodeType.TRANSFER_AGENT: self._run_transfer_agent,
            NodeType.CHECK_WINDOW: self._run_check_window,
        }

    # Public operations ---------------------------------------------------------
    def start_flow(
        self,
        flow_id: str,
        conversation_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> FlowRun:
        """Create a run for ``flow_id`` and execute it until it stops."""
        flow = self.flows.get_flow(flow_id)
        if not flow:
            raise FlowNotFoundError(f"Flow {flow_id} not found")
        if not flow.active:
            raise FlowInactiveError(f"Flow {flow_id} is not active")

        graph = flow.graph()
        triggers = graph.nodes_of_type(NodeType.TRIGGER)
        if len(triggers) != 1:
            raise MissingTriggerNodeError(
                f"Flow {flow_id} needs exactly one trigger node, found {len(triggers)}"
            )

        context: Dict[str, Any] = dict(trigger_data or {})
        context["conversationId"] = conversation_id
        context["contactId"] = contact_id

        run = self.flows.create_run(
            flow,
            triggers[0].id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            context=context,
            started_at=self.clock.now(),
        )
        LOG.info("Flow %s (%s) started run %s", flow.id, flow.name, run.id)
        return self._execute(run, graph, triggers[0].id, context)

    def pause_flow(self, run_id: str) -> FlowRun:
        """Suspend a running run; its context is left untouched."""
        run = self._require_run(run_id)
        if self.flows.update_run(
            run_id, expected=(RunStatus.RUNNING,), status=RunStatus.PAUSED, wait_reason=WaitReason.MANUAL
        ):
            LOG.info("Run %s paused by operator", run_id)
            return self._require_run(run_id)
        return run

    def cancel_flow(self, run_id: str) -> FlowRun:
        """Fail a running or paused run with ``Cancelled``; terminal runs are left as they are."""
        run = self._require_run(run_id)
        if self.flows.update_run(
            run_id,
            expected=(RunStatus.RUNNING, RunStatus.PAUSED),
            status=RunStatus.FAILED,
            error=CANCELLED,
            completed_at=self.clock.now(),
            wait_reason=None,
            resume_at=None,
            execution_id=None,
        ):
            LOG.info("Run %s cancelled", run_id)
            return self._require_run(run_id)
        return run

    def resume_flow(
        self,
        run_id: str,
        additional_context: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> FlowRun:
        """Continue a paused run after the event it was waiting for.

        Calling again for an event that already resumed the run, or for a run
        that is no longer paused, returns the run unchanged. A reply delivered
        without ``event_id`` is identified by its content. A run paused while
        a node was still executing can only be resumed once that execution
        has stopped.
        """
        run = self._require_run(run_id)
        if run.status != RunStatus.PAUSED:
            LOG.debug("Run %s is %s; nothing to resume", run_id, run.status.value)
            return run
        if run.execution_id is not None:
            LOG.info("Run %s is still finishing its current node; resume ignored", run_id)
            return run
        if event_id is None and additional_context and run.wait_reason == WaitReason.REPLY:
            event_id = content_event_id(additional_context)
        if event_id is not None and (event_id == run.last_event_id or event_id in run.seen_event_ids):
            LOG.debug("Run %s already resumed for event %s", run_id, event_id)
            return run

        context = {**run.context, **(additional_context or {})}
        changes: Dict[str, Any] = {}
        if event_id is not None:
            changes["last_event_id"] = event_id
            changes["seen_event_ids"] = (run.seen_event_ids + [event_id])[-constants.SEEN_EVENT_IDS_KEPT :]
        execution_id = generate_execution_id()
        if not self.flows.update_run(
            run_id,
            expected=(RunStatus.PAUSED,),
            owner=None,
            status=RunStatus.RUNNING,
            context=context,
            wait_reason=None,
            resume_at=None,
            execution_id=execution_id,
            **changes,
        ):
            return self._require_run(run_id)

        LOG.info("Run %s resumed at node %s", run_id, run.resume_node_id or "<end>")
        run = run.model_copy(update={"status": RunStatus.RUNNING, "execution_id": execution_id})
        graph = self.flows.get_run_graph(run_id) or FlowGraph()
        return self._execute(run, graph, run.resume_node_id, context)

    def resume_due_runs(self, now: Optional[datetime] = None) -> List[str]:
        """Resume every timer-suspended run whose deadline has passed."""
        now = now or self.clock.now()
        resumed: List[str] = []
        for run in self.flows.list_due_runs(now):
            event_id = f"timer:{run.resume_at.isoformat()}" if run.resume_at else None
            try:
                self.resume_flow(run.id, event_id=event_id)
                resumed.append(run.id)
            except Exception:
                LOG.exception("Failed to resume delayed run %s", run.id)
        return resumed

    # Execution loop ------------------------------------------------------------
    def _execute(
        self,
        run: FlowRun,
        graph: FlowGraph,
        node_id: Optional[str],
        context: Dict[str, Any],
    ) -> FlowRun:
        steps = run.step_count
        node = graph.node(node_id) if node_id else None
        if node_id and node is None:
            return self._fail(run, NodeExecutionError(f"Node '{node_id}' not found in flow graph"), context)

        while node is not None:
            if steps >= self.max_steps:
                return self._fail(
                    run,
                    StepLimitExceededError(f"Run exceeded the limit of {self.max_steps} node executions"),
                    context,
                )
            steps += 1

            if not self.flows.update_run(
                run.id,
                expected=(RunStatus.RUNNING,),
                owner=run.execution_id,
                current_node_id=node.id,
                resume_node_id=node.id,
                context=context,
                step_count=steps,
            ):
                return self._yield(run, node.id, context)

            LOG.info("Run %s executing node %s (%s)", run.id, node.id, node.type.value)
            try:
                outcome = self._execute_node(node, context)
                context = {**context, **outcome.updates}
                next_node = self._next_node(graph, node, outcome.handle)
            except Exception as exc:
                return self._fail(run, exc, context, node)

            if outcome.wait is not None:
                return self._suspend(run, node, next_node, outcome, context)
            node = next_node

        return self._complete(run, context)

    def _execute_node(self, node: FlowNode, context: Dict[str, Any]) -> NodeOutcome:
        config = parse_node_config(node)
        return self._handlers[node.type](node, config, context)

    @staticmethod
    def _next_node(graph: FlowGraph, node: FlowNode, handle: Optional[str]) -> Optional[FlowNode]:
        outgoing = graph.outgoing(node.id)
        if handle is not None:
            edge = next((candidate for candidate in outgoing if candidate.source_handle == handle), None)
        else:
            if len(outgoing) > 1:
                raise NodeExecutionError(
                    f"Node '{node.id}' has {len(outgoing)} outgoing edges and no branch handle"
                )
            edge = outgoing[0] if outgoing else None
        if edge is None:
            return None
        target = graph.node(edge.target)
        if target is None:
            raise NodeExecutionError(f"Edge '{edge.id}' points to missing node '{edge.target}'")
        return target

    # Run transitions -----------------------------------------------------------
    def _complete(self, run: FlowRun, context: Dict[str, Any]) -> FlowRun:
        if self.flows.update_run(
            run.id,
            expected=(RunStatus.RUNNING,),
            owner=run.execution_id,
            status=RunStatus.COMPLETED,
            completed_at=self.clock.now(),
            execution_id=None,
            resume_node_id=None,
            context=context,
        ):
            self.flows.increment_stats(run.flow_id, RunOutcome.SUCCESS)
            LOG.info("Flow %s run %s completed", run.flow_id, run.id)
            return self._require_run(run.id)
        return self._yield(run, None, context)

    def _fail(
        self,
        run: FlowRun,
        exc: Exception,
        context: Dict[str, Any],
        node: Optional[FlowNode] = None,
    ) -> FlowRun:
        message = str(exc) or exc.__class__.__name__
        # An operator pause does not shield a run from its own node failing.
        if self.flows.update_run(
            run.id,
            expected=(RunStatus.RUNNING, RunStatus.PAUSED),
            owner=run.execution_id,
            status=RunStatus.FAILED,
            error=message,
            completed_at=self.clock.now(),
            wait_reason=None,
            resume_at=None,
            execution_id=None,
            context=context,
        ):
            self.flows.increment_stats(run.flow_id, RunOutcome.FAILED)
            LOG.error(
                "Flow %s run %s failed at node %s: %s",
                run.flow_id,
                run.id,
                node.id if node else "<none>",
                message,
            )
        return self._require_run(run.id)

    def _suspend(
        self,
        run: FlowRun,
        node: FlowNode,
        next_node: Optional[FlowNode],
        outcome: NodeOutcome,
        context: Dict[str, Any],
    ) -> FlowRun:
        resume_node_id = next_node.id if next_node else None
        if self.flows.update_run(
            run.id,
            expected=(RunStatus.RUNNING,),
            owner=run.execution_id,
            status=RunStatus.PAUSED,
            execution_id=None,
            wait_reason=outcome.wait,
            resume_at=outcome.resume_at,
            resume_node_id=resume_node_id,
            context=context,
        ):
            LOG.info(
                "Flow %s run %s paused at node %s waiting for %s",
                run.flow_id,
                run.id,
                node.id,
                outcome.wait.value if outcome.wait else "event",
            )
            return self._require_run(run.id)
        return self._yield(run, resume_node_id, context)

    def _yield(self, run: FlowRun, resume_node_id: Optional[str], context: Dict[str, Any]) -> FlowRun:
        """Stop after losing a status race; record the re-entry point if an operator paused the run."""
        if self.flows.update_run(
            run.id,
            expected=(RunStatus.PAUSED,),
            owner=run.execution_id,
            resume_node_id=resume_node_id,
            execution_id=None,
            context=context,
        ):
            LOG.info("Run %s was paused mid-execution; will resume at %s", run.id, resume_node_id or "<end>")
        else:
            LOG.info("Run %s is no longer running; execution stopped", run.id)
        return self._require_run(run.id)

    def _require_run(self, run_id: str) -> FlowRun:
        run = self.flows.get_run(run_id)
        if not run:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    # Node handlers -------------------------------------------------------------
    def _run_passthrough(self, node: FlowNode, config: NodeConfig, context: Dict[str, Any]) -> NodeOutcome:
        return NodeOutcome()

    def _run_send_message(self, node: FlowNode, config: SendMessageConfig, context: Dict[str, Any]) -> NodeOutcome:
        conversation_id = context.get("conversationId")
        if not conversation_id:
            LOG.warning("Node %s skipped: run has no conversation to message", node.id)
            return NodeOutcome()
        self.messages.send(conversation_id, config.message)
        return NodeOutcome()

    def _run_ai_agent(self, node: FlowNode, config: AiAgentConfig, context: Dict[str, Any]) -> NodeOutcome:
        last_message = context.get("lastMessage") or context.get("message") or ""
        response = self.agents.invoke(config.agent_id, str(last_message), context.get("conversationId"))
        return NodeOutcome(updates={"aiResponse": response})

    def _run_wait_reply(self, node: FlowNode, config: NodeConfig, context: Dict[str, Any]) -> NodeOutcome:
        return NodeOutcome(wait=WaitReason.REPLY)

    def _run_delay(self, node: FlowNode, config: DelayConfig, context: Dict[str, Any]) -> NodeOutcome:
        seconds = config.total_seconds()
        if seconds <= 0:
            return NodeOutcome()
        return NodeOutcome(wait=WaitReason.TIMER, resume_at=self.clock.now() + timedelta(seconds=seconds))

    def _run_condition(self, node: FlowNode, config: ConditionConfig, context: Dict[str, Any]) -> NodeOutcome:
        result = self.evaluator.evaluate(config.expression, context)
        return NodeOutcome(handle="yes" if result else "no")

    def _run_human_handoff(self, node: FlowNode, config: HumanHandoffConfig, context: Dict[str, Any]) -> NodeOutcome:
        return NodeOutcome(updates={"handoff": True, "handoffReason": config.reason})

    def _run_tag(self, node: FlowNode, config: TagConfig, context: Dict[str, Any]) -> NodeOutcome:
        contact_id = context.get("contactId")
        tags = config.all_tags()
        if not contact_id:
            LOG.warning("Node %s skipped: run has no contact to tag", node.id)
            return NodeOutcome()
        self.contacts.apply_tags(contact_id, tags)

        existing = context.get("tags") or []
        known = {str(tag).lower() for tag in existing}
        merged = list(existing) + [tag for tag in tags if tag.lower() not in known]
        return NodeOutcome(updates={"tags": merged})

    def _run_http_request(self, node: FlowNode, config: HttpRequestConfig, context: Dict[str, Any]) -> NodeOutcome:
        try:
            result = self.http.request(config.method, config.url, config.headers, config.body)
        except Exception as exc:
            LOG.warning("Node %s HTTP requester raised: %s", node.id, exc)
            return NodeOutcome(updates={"httpError": str(exc) or exc.__class__.__name__})
        if result.error is not None:
            return NodeOutcome(updates={"httpError": result.error})
        return NodeOutcome(
            updates={"httpStatus": result.status, "httpResponse": result.body, "httpError": None}
        )

    def _run_close(self, node: FlowNode, config: CloseConfig, context: Dict[str, Any]) -> NodeOutcome:
        updates: Dict[str, Any] = {"conversationClosed": True}
        if config.reason:
            updates["closeReason"] = config.reason
        return NodeOutcome(updates=updates)

    def _run_transfer_agent(self, node: FlowNode, config: TransferAgentConfig, context: Dict[str, Any]) -> NodeOutcome:
        return NodeOutcome(updates={"transferToAgent": config.agent_id})

    def _run_check_window(self, node: FlowNode, config: NodeConfig, context: Dict[str, Any]) -> NodeOutcome:
        window_open = context.get("windowOpen")
        if window_open is None:
            window_open = True
        return NodeOutcome(handle="open" if window_open else "closed")
