from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.concurrency import run_in_threadpool

from flowpilot import constants
from flowpilot.capabilities.base import SystemClock
from flowpilot.clients.database import init_db
from flowpilot.clients.gateway import GatewayClient
from flowpilot.clients.http import HttpxRequester
from flowpilot.exceptions import (
    FlowInactiveError,
    FlowNotFoundError,
    FlowPilotError,
    FlowValidationError,
    MissingTriggerNodeError,
    RunNotFoundError,
)
from flowpilot.models.enums import RunStatus, TriggerType
from flowpilot.models.flow import Flow, FlowCreateRequest, FlowUpdateRequest
from flowpilot.models.run import FlowRun, RunResumeRequest
from flowpilot.models.trigger import ReplyRequest, TriggerData, TriggerResult
from flowpilot.services.flow_engine import FlowEngine
from flowpilot.services.flow_service import FlowService
from flowpilot.services.trigger_service import FlowTriggerManager
from flowpilot.utils.logging import setup_logging
from flowpilot.utils.pathing import ensure_runtime_directories

LOG = logging.getLogger(__name__)

app = FastAPI(title="FlowPilot API", version="0.1.0")


def _require_service(name: str):
    service = getattr(app.state, name, None)
    if service is None:
        raise RuntimeError(f"Service '{name}' not initialised.")
    return service


def get_flow_service() -> FlowService:
    return _require_service("flow_service")


def get_flow_engine() -> FlowEngine:
    return _require_service("flow_engine")


def get_trigger_manager() -> FlowTriggerManager:
    return _require_service("trigger_manager")


@app.on_event("startup")
async def startup_event() -> None:
    setup_logging()
    ensure_runtime_directories()
    init_db()
    flow_service = FlowService()
    gateway = GatewayClient()
    flow_engine = FlowEngine(
        flows=flow_service,
        messages=gateway,
        agents=gateway,
        contacts=gateway,
        http=HttpxRequester(),
        clock=SystemClock(),
    )
    trigger_manager = FlowTriggerManager(flow_service, flow_engine)

    app.state.flow_service = flow_service
    app.state.flow_engine = flow_engine
    app.state.trigger_manager = trigger_manager
    app.state.background_tasks = [
        asyncio.create_task(_timer_loop(flow_engine)),
    ]


async def _timer_loop(flow_engine: FlowEngine) -> None:
    while True:
        try:
            await run_in_threadpool(flow_engine.resume_due_runs)
        except Exception:
            LOG.exception("Timer tick failed")
        await asyncio.sleep(constants.TIMER_POLL_SECONDS)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    tasks = getattr(app.state, "background_tasks", [])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _http_error(exc: FlowPilotError) -> HTTPException:
    if isinstance(exc, (FlowNotFoundError, RunNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, FlowInactiveError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, FlowValidationError):
        return HTTPException(status_code=422, detail=exc.problems)
    if isinstance(exc, MissingTriggerNodeError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/health")
async def health() -> dict[str, str]:
    """Lightweight health check."""
    return {"status": "ok"}


# Flows -------------------------------------------------------------------------
@app.post("/flows", response_model=Flow, status_code=status.HTTP_201_CREATED)
async def create_flow(
    payload: FlowCreateRequest,
    flows: FlowService = Depends(get_flow_service),
) -> Flow:
    try:
        return flows.create_flow(payload)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


@app.get("/flows", response_model=List[Flow])
async def list_flows(
    flows: FlowService = Depends(get_flow_service),
) -> List[Flow]:
    return flows.list_flows()


@app.get("/flows/{flow_id}", response_model=Flow)
async def get_flow(
    flow_id: str,
    flows: FlowService = Depends(get_flow_service),
) -> Flow:
    flow = flows.get_flow(flow_id)
    if not flow:
        raise HTTPException(status_code=404, detail="Flow not found.")
    return flow


@app.put("/flows/{flow_id}", response_model=Flow)
async def update_flow(
    flow_id: str,
    payload: FlowUpdateRequest,
    flows: FlowService = Depends(get_flow_service),
) -> Flow:
    try:
        return flows.update_flow(flow_id, payload)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


@app.delete("/flows/{flow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_flow(
    flow_id: str,
    flows: FlowService = Depends(get_flow_service),
) -> None:
    try:
        flows.delete_flow(flow_id)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


@app.post("/flows/{flow_id}/activate", response_model=Flow)
async def activate_flow(
    flow_id: str,
    flows: FlowService = Depends(get_flow_service),
) -> Flow:
    try:
        return flows.set_active(flow_id, True)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


@app.post("/flows/{flow_id}/deactivate", response_model=Flow)
async def deactivate_flow(
    flow_id: str,
    flows: FlowService = Depends(get_flow_service),
) -> Flow:
    try:
        return flows.set_active(flow_id, False)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


@app.post("/flows/{flow_id}/duplicate", response_model=Flow, status_code=status.HTTP_201_CREATED)
async def duplicate_flow(
    flow_id: str,
    flows: FlowService = Depends(get_flow_service),
) -> Flow:
    try:
        return flows.duplicate_flow(flow_id)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


@app.post("/flows/{flow_id}/trigger", response_model=FlowRun, status_code=status.HTTP_201_CREATED)
async def trigger_flow(
    flow_id: str,
    payload: Optional[TriggerData] = None,
    triggers: FlowTriggerManager = Depends(get_trigger_manager),
    flows: FlowService = Depends(get_flow_service),
) -> FlowRun:
    """Start a run of one flow, whatever its trigger type."""
    try:
        run_id = await run_in_threadpool(triggers.manual_trigger, flow_id, payload)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc
    return flows.get_run(run_id)


@app.get("/flows/{flow_id}/runs", response_model=List[FlowRun])
async def list_flow_runs(
    flow_id: str,
    status_filter: Optional[RunStatus] = None,
    limit: int = 100,
    flows: FlowService = Depends(get_flow_service),
) -> List[FlowRun]:
    if not flows.get_flow(flow_id):
        raise HTTPException(status_code=404, detail="Flow not found.")
    return flows.list_runs(flow_id, status=status_filter, limit=limit)


# Runs --------------------------------------------------------------------------
@app.get("/runs/{run_id}", response_model=FlowRun)
async def get_run(
    run_id: str,
    flows: FlowService = Depends(get_flow_service),
) -> FlowRun:
    run = flows.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found.")
    return run


@app.post("/runs/{run_id}/pause", response_model=FlowRun)
async def pause_run(
    run_id: str,
    engine: FlowEngine = Depends(get_flow_engine),
) -> FlowRun:
    try:
        return await run_in_threadpool(engine.pause_flow, run_id)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


@app.post("/runs/{run_id}/resume", response_model=FlowRun)
async def resume_run(
    run_id: str,
    payload: Optional[RunResumeRequest] = None,
    engine: FlowEngine = Depends(get_flow_engine),
) -> FlowRun:
    payload = payload or RunResumeRequest()
    try:
        return await run_in_threadpool(engine.resume_flow, run_id, payload.context, payload.event_id)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


@app.post("/runs/{run_id}/cancel", response_model=FlowRun)
async def cancel_run(
    run_id: str,
    engine: FlowEngine = Depends(get_flow_engine),
) -> FlowRun:
    try:
        return await run_in_threadpool(engine.cancel_flow, run_id)
    except FlowPilotError as exc:
        raise _http_error(exc) from exc


# Events ------------------------------------------------------------------------
@app.post("/triggers/{event}", response_model=TriggerResult, status_code=status.HTTP_202_ACCEPTED)
async def fire_trigger(
    event: TriggerType,
    payload: Optional[TriggerData] = None,
    triggers: FlowTriggerManager = Depends(get_trigger_manager),
) -> TriggerResult:
    run_ids = await run_in_threadpool(triggers.check_triggers, event, payload or TriggerData())
    return TriggerResult(run_ids=run_ids)


@app.post("/webhooks/{webhook_id}", response_model=TriggerResult, status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    webhook_id: str,
    payload: Optional[Dict[str, Any]] = None,
    triggers: FlowTriggerManager = Depends(get_trigger_manager),
) -> TriggerResult:
    run_ids = await run_in_threadpool(triggers.handle_webhook_trigger, webhook_id, payload)
    return TriggerResult(run_ids=run_ids)


@app.post(
    "/conversations/{conversation_id}/replies",
    response_model=TriggerResult,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_reply(
    conversation_id: str,
    payload: ReplyRequest,
    triggers: FlowTriggerManager = Depends(get_trigger_manager),
) -> TriggerResult:
    """Resume the runs waiting on this conversation."""
    run_ids = await run_in_threadpool(
        triggers.handle_inbound_reply, conversation_id, payload.message, payload.event_id
    )
    return TriggerResult(run_ids=run_ids)


@app.post("/scheduler/tick", response_model=TriggerResult)
async def scheduler_tick(
    engine: FlowEngine = Depends(get_flow_engine),
) -> TriggerResult:
    run_ids = await run_in_threadpool(engine.resume_due_runs)
    return TriggerResult(run_ids=run_ids)
