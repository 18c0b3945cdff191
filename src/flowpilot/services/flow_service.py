"""Flow store: persists flow definitions and run state."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import update

from flowpilot.clients.database import Flow as FlowORM, FlowRun as FlowRunORM, session_scope
from flowpilot.exceptions import FlowNotFoundError, FlowValidationError
from flowpilot.models.enums import RunOutcome, RunStatus, TriggerType, WaitReason
from flowpilot.models.flow import (
    Flow,
    FlowCreateRequest,
    FlowEdge,
    FlowGraph,
    FlowNode,
    FlowStats,
    FlowUpdateRequest,
)
from flowpilot.models.run import FlowRun
from flowpilot.services.validation import validate_flow_graph, validate_trigger_config
from flowpilot.utils.identifiers import generate_execution_id, generate_flow_id, generate_run_id

LOG = logging.getLogger(__name__)

# Sentinel for update_run: do not filter on the owning execution.
ANY_OWNER = object()


class FlowService:
    """Persists and manages flow definitions and their runs."""

    # Flows ---------------------------------------------------------------------
    def create_flow(self, payload: FlowCreateRequest) -> Flow:
        self._validate(
            payload.trigger_type, payload.trigger_config, payload.nodes, payload.edges, payload.active
        )
        record = FlowORM(
            id=generate_flow_id(),
            name=payload.name,
            description=payload.description,
            trigger_type=payload.trigger_type,
            trigger_config=payload.trigger_config,
            nodes=_dump_nodes(payload.nodes),
            edges=_dump_edges(payload.edges),
            active=payload.active,
        )
        with session_scope() as db:
            db.add(record)
            db.flush()
            db.refresh(record)
        LOG.info("Flow created: %s (%s)", record.id, record.name)
        return _to_flow(record)

    def update_flow(self, flow_id: str, payload: FlowUpdateRequest) -> Flow:
        changes = payload.model_dump(exclude_unset=True)
        with session_scope() as db:
            record = db.get(FlowORM, flow_id)
            if not record:
                raise FlowNotFoundError(f"Flow {flow_id} not found")
            current = _to_flow(record)
            nodes = payload.nodes if payload.nodes is not None else current.nodes
            edges = payload.edges if payload.edges is not None else current.edges
            active = payload.active if payload.active is not None else current.active
            trigger_type = payload.trigger_type if payload.trigger_type is not None else current.trigger_type
            trigger_config = (
                payload.trigger_config if payload.trigger_config is not None else current.trigger_config
            )
            self._validate(trigger_type, trigger_config, nodes, edges, active)

            for field in ("name", "description", "trigger_type", "trigger_config", "active"):
                if field in changes and (changes[field] is not None or field == "description"):
                    setattr(record, field, changes[field])
            if payload.nodes is not None:
                record.nodes = _dump_nodes(payload.nodes)
            if payload.edges is not None:
                record.edges = _dump_edges(payload.edges)
            db.flush()
            db.refresh(record)
            return _to_flow(record)

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with session_scope() as db:
            record = db.get(FlowORM, flow_id)
            return _to_flow(record) if record else None

    def list_flows(self) -> List[Flow]:
        with session_scope() as db:
            records = db.query(FlowORM).order_by(FlowORM.name.asc()).all()
            return [_to_flow(record) for record in records]

    def list_active_by_trigger(self, trigger_type: TriggerType) -> List[Flow]:
        with session_scope() as db:
            records = (
                db.query(FlowORM)
                .filter(FlowORM.trigger_type == trigger_type, FlowORM.active.is_(True))
                .order_by(FlowORM.created_at.asc())
                .all()
            )
            return [_to_flow(record) for record in records]

    def set_active(self, flow_id: str, active: bool) -> Flow:
        return self.update_flow(flow_id, FlowUpdateRequest(active=active))

    def duplicate_flow(self, flow_id: str) -> Flow:
        original = self.get_flow(flow_id)
        if not original:
            raise FlowNotFoundError(f"Flow {flow_id} not found")
        return self.create_flow(
            FlowCreateRequest(
                name=f"{original.name} (copy)",
                description=original.description,
                trigger_type=original.trigger_type,
                trigger_config=original.trigger_config,
                nodes=original.nodes,
                edges=original.edges,
                active=False,
            )
        )

    def delete_flow(self, flow_id: str) -> None:
        with session_scope() as db:
            record = db.get(FlowORM, flow_id)
            if not record:
                raise FlowNotFoundError(f"Flow {flow_id} not found")
            db.delete(record)

    def increment_stats(self, flow_id: str, outcome: RunOutcome) -> None:
        """Atomically bump the run counter and the counter for ``outcome``."""
        column = FlowORM.stats_success if outcome == RunOutcome.SUCCESS else FlowORM.stats_failed
        statement = (
            update(FlowORM)
            .where(FlowORM.id == flow_id)
            .values({FlowORM.stats_runs: FlowORM.stats_runs + 1, column: column + 1})
            .execution_options(synchronize_session=False)
        )
        with session_scope() as db:
            db.execute(statement)

    # Runs ----------------------------------------------------------------------
    def create_run(
        self,
        flow: Flow,
        entry_node_id: str,
        conversation_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        started_at: Optional[datetime] = None,
    ) -> FlowRun:
        """Persist a running run positioned at ``entry_node_id`` with a graph snapshot."""
        record = FlowRunORM(
            id=generate_run_id(),
            flow_id=flow.id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            status=RunStatus.RUNNING,
            current_node_id=entry_node_id,
            resume_node_id=entry_node_id,
            context=dict(context or {}),
            graph=flow.graph().model_dump(mode="json", by_alias=True, exclude_none=True),
            step_count=0,
            execution_id=generate_execution_id(),
            started_at=started_at or datetime.now(timezone.utc),
        )
        with session_scope() as db:
            db.add(record)
            db.flush()
            db.refresh(record)
        return FlowRun.model_validate(record, from_attributes=True)

    def get_run(self, run_id: str) -> Optional[FlowRun]:
        with session_scope() as db:
            record = db.get(FlowRunORM, run_id)
            return FlowRun.model_validate(record, from_attributes=True) if record else None

    def get_run_graph(self, run_id: str) -> Optional[FlowGraph]:
        """Return the nodes and edges the run was started with."""
        with session_scope() as db:
            record = db.get(FlowRunORM, run_id)
            return FlowGraph.model_validate(record.graph or {}) if record else None

    def list_runs(
        self,
        flow_id: str,
        status: Optional[RunStatus] = None,
        limit: int = 100,
    ) -> List[FlowRun]:
        with session_scope() as db:
            query = db.query(FlowRunORM).filter(FlowRunORM.flow_id == flow_id)
            if status:
                query = query.filter(FlowRunORM.status == status)
            records = query.order_by(FlowRunORM.started_at.desc()).limit(limit).all()
            return [FlowRun.model_validate(record, from_attributes=True) for record in records]

    def list_waiting_runs(self, conversation_id: str) -> List[FlowRun]:
        """Runs in ``conversation_id`` suspended until the customer replies."""
        with session_scope() as db:
            records = (
                db.query(FlowRunORM)
                .filter(
                    FlowRunORM.conversation_id == conversation_id,
                    FlowRunORM.status == RunStatus.PAUSED,
                    FlowRunORM.wait_reason == WaitReason.REPLY,
                )
                .order_by(FlowRunORM.started_at.asc())
                .all()
            )
            return [FlowRun.model_validate(record, from_attributes=True) for record in records]

    def list_due_runs(self, now: datetime) -> List[FlowRun]:
        """Runs suspended on a timer whose deadline has passed."""
        with session_scope() as db:
            records = (
                db.query(FlowRunORM)
                .filter(
                    FlowRunORM.status == RunStatus.PAUSED,
                    FlowRunORM.wait_reason == WaitReason.TIMER,
                    FlowRunORM.resume_at <= now,
                )
                .order_by(FlowRunORM.resume_at.asc())
                .all()
            )
            return [FlowRun.model_validate(record, from_attributes=True) for record in records]

    def update_run(
        self,
        run_id: str,
        expected: Optional[Iterable[RunStatus]] = None,
        owner: Any = ANY_OWNER,
        **changes: Any,
    ) -> bool:
        """Apply ``changes`` to a run, only while its status is one of ``expected``.

        ``owner`` additionally requires the run's ``execution_id`` to match;
        ``None`` means no execution may own the run. The checks and the write
        are a single UPDATE statement, so concurrent transitions cannot
        overwrite each other. Returns whether the run was updated.
        """
        statement = update(FlowRunORM).where(FlowRunORM.id == run_id)
        if expected is not None:
            statement = statement.where(FlowRunORM.status.in_(list(expected)))
        if owner is None:
            statement = statement.where(FlowRunORM.execution_id.is_(None))
        elif owner is not ANY_OWNER:
            statement = statement.where(FlowRunORM.execution_id == owner)
        statement = statement.values(**changes).execution_options(synchronize_session=False)
        with session_scope() as db:
            result = db.execute(statement)
            return result.rowcount == 1

    @staticmethod
    def _validate(
        trigger_type: TriggerType,
        trigger_config: Dict[str, Any],
        nodes: List[FlowNode],
        edges: List[FlowEdge],
        active: bool,
    ) -> None:
        problems = validate_flow_graph(FlowGraph(nodes=nodes, edges=edges), require_entry=active)
        problems += validate_trigger_config(trigger_type, trigger_config, require_complete=active)
        if problems:
            raise FlowValidationError(problems)


def _dump_nodes(nodes: List[FlowNode]) -> List[Dict[str, Any]]:
    return [node.model_dump(mode="json", exclude_none=True) for node in nodes]


def _dump_edges(edges: List[FlowEdge]) -> List[Dict[str, Any]]:
    return [edge.model_dump(mode="json", by_alias=True, exclude_none=True) for edge in edges]


def _to_flow(record: FlowORM) -> Flow:
    return Flow(
        id=record.id,
        name=record.name,
        description=record.description,
        trigger_type=record.trigger_type,
        trigger_config=record.trigger_config or {},
        nodes=record.nodes or [],
        edges=record.edges or [],
        active=record.active,
        stats=FlowStats(
            runs=record.stats_runs or 0,
            success=record.stats_success or 0,
            failed=record.stats_failed or 0,
        ),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
