from __future__ import annotations

import json
from typing import Any, Dict, Optional

import click
import httpx
from pydantic import ValidationError

from flowpilot import constants
from flowpilot.cli.formatters import flow_rows, run_rows, table
from flowpilot.clients.database import init_db
from flowpilot.models.enums import RunStatus, TriggerType
from flowpilot.models.flow import FlowCreateRequest, FlowGraph
from flowpilot.services.validation import validate_flow_graph, validate_trigger_config
from flowpilot.utils.logging import setup_logging
from flowpilot.utils.pathing import ensure_runtime_directories


def _request(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
    url = f"{constants.API_BASE}{path}"
    try:
        with httpx.Client(timeout=60) as client:
            response = client.request(method, url, json=payload)
    except httpx.HTTPError as exc:
        raise click.ClickException(f"Cannot reach FlowPilot API at {constants.API_BASE}: {exc}") from exc
    if response.status_code >= 400:
        raise click.ClickException(f"API error {response.status_code}: {response.text}")
    if response.content:
        return response.json()
    return None


def _load_json(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise click.ClickException(f"{path} must contain a JSON object.")
    return document


def _parse_json_option(value: Optional[str], name: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"--{name} is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise click.ClickException(f"--{name} must be a JSON object.")
    return parsed


def _echo(result: Any) -> None:
    click.echo(json.dumps(result, indent=2))


@click.group(help="FlowPilot command-line interface.")
def cli() -> None:
    """Root command for FlowPilot."""
    setup_logging()


@cli.command()
def init() -> None:
    """Initialize local directories and database."""
    ensure_runtime_directories()
    init_db()
    click.echo("FlowPilot environment initialized.")


@cli.command()
@click.option("--host", default=constants.SERVER_HOST, show_default=True)
@click.option("--port", type=int, default=constants.SERVER_PORT, show_default=True)
def serve(host: str, port: int) -> None:
    """Run the API server with its timer loop."""
    import uvicorn

    from flowpilot.api.main import app

    uvicorn.run(app, host=host, port=port, log_config=None)


# Flows -------------------------------------------------------------------------
@cli.group()
def flow() -> None:
    """Flow management commands."""


@flow.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON instead of a table.")
def list_flows(as_json: bool) -> None:
    result = _request("GET", "/flows")
    if as_json:
        _echo(result)
        return
    click.echo(
        table(
            ["ID", "NAME", "TRIGGER", "ACTIVE", "RUNS", "OK", "FAILED"],
            flow_rows(result),
            max_widths={1: 40},
        )
    )


@flow.command("show")
@click.argument("flow_id")
def show_flow(flow_id: str) -> None:
    _echo(_request("GET", f"/flows/{flow_id}"))


@flow.command("create")
@click.option("--file", "file_path", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--activate/--no-activate", default=None, help="Override the file's active flag.")
def create_flow(file_path: str, activate: Optional[bool]) -> None:
    """Create a flow from a JSON definition."""
    payload = _load_json(file_path)
    if activate is not None:
        payload["active"] = activate
    _echo(_request("POST", "/flows", payload))


@flow.command("update")
@click.argument("flow_id")
@click.option("--file", "file_path", required=True, type=click.Path(exists=True, dir_okay=False))
def update_flow(flow_id: str, file_path: str) -> None:
    """Replace the fields present in a JSON definition."""
    _echo(_request("PUT", f"/flows/{flow_id}", _load_json(file_path)))


@flow.command("activate")
@click.argument("flow_id")
def activate_flow(flow_id: str) -> None:
    _request("POST", f"/flows/{flow_id}/activate")
    click.echo("Flow activated.")


@flow.command("deactivate")
@click.argument("flow_id")
def deactivate_flow(flow_id: str) -> None:
    _request("POST", f"/flows/{flow_id}/deactivate")
    click.echo("Flow deactivated.")


@flow.command("duplicate")
@click.argument("flow_id")
def duplicate_flow(flow_id: str) -> None:
    result = _request("POST", f"/flows/{flow_id}/duplicate")
    click.echo(f"Created {result['id']} ({result['name']}).")


@flow.command("remove")
@click.argument("flow_id")
def remove_flow(flow_id: str) -> None:
    _request("DELETE", f"/flows/{flow_id}")
    click.echo("Flow removed.")


@flow.command("runs")
@click.argument("flow_id")
@click.option("--status", type=click.Choice([item.value for item in RunStatus]), help="Optional status filter.")
@click.option("--limit", type=int, default=20, show_default=True)
def list_runs(flow_id: str, status: Optional[str], limit: int) -> None:
    """Show the most recent runs of a flow."""
    suffix = f"?limit={limit}"
    if status:
        suffix += f"&status_filter={status}"
    result = _request("GET", f"/flows/{flow_id}/runs{suffix}")
    click.echo(table(["ID", "STATUS", "NODE", "STARTED", "ERROR"], run_rows(result), max_widths={4: 50}))


@flow.command("trigger")
@click.argument("flow_id")
@click.option("--conversation", help="Conversation the run acts on.")
@click.option("--contact", help="Contact the run acts on.")
@click.option("--message", help="Message text placed in the run context.")
@click.option("--payload", help="Extra context as a JSON object.")
def trigger_flow(
    flow_id: str,
    conversation: Optional[str],
    contact: Optional[str],
    message: Optional[str],
    payload: Optional[str],
) -> None:
    """Start a run of a flow directly."""
    body = {
        "conversation_id": conversation,
        "contact_id": contact,
        "message": message,
        "payload": _parse_json_option(payload, "payload"),
    }
    _echo(_request("POST", f"/flows/{flow_id}/trigger", body))


@flow.command("validate")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
def validate_flow(file_path: str) -> None:
    """Check a flow definition without contacting the server."""
    document = _load_json(file_path)
    try:
        request = FlowCreateRequest.model_validate(document)
    except ValidationError as exc:
        raise click.ClickException(f"Invalid flow document:\n{exc}") from exc
    problems = validate_flow_graph(
        FlowGraph(nodes=request.nodes, edges=request.edges),
        require_entry=request.active,
    )
    problems += validate_trigger_config(
        request.trigger_type, request.trigger_config, require_complete=request.active
    )
    if problems:
        raise click.ClickException("\n".join(["Invalid flow:"] + [f"  - {item}" for item in problems]))
    click.echo(f"{request.name}: {len(request.nodes)} nodes, {len(request.edges)} edges, OK.")


# Runs --------------------------------------------------------------------------
@cli.group()
def run() -> None:
    """Run inspection and control commands."""


@run.command("show")
@click.argument("run_id")
def show_run(run_id: str) -> None:
    _echo(_request("GET", f"/runs/{run_id}"))


@run.command("pause")
@click.argument("run_id")
def pause_run(run_id: str) -> None:
    result = _request("POST", f"/runs/{run_id}/pause")
    click.echo(f"Run {run_id} is {result['status']}.")


@run.command("resume")
@click.argument("run_id")
@click.option("--context", help="Context to merge, as a JSON object.")
@click.option("--event-id", help="Identifier of the event that resumes the run.")
def resume_run(run_id: str, context: Optional[str], event_id: Optional[str]) -> None:
    body = {"context": _parse_json_option(context, "context"), "event_id": event_id}
    result = _request("POST", f"/runs/{run_id}/resume", body)
    click.echo(f"Run {run_id} is {result['status']}.")


@run.command("cancel")
@click.argument("run_id")
def cancel_run(run_id: str) -> None:
    result = _request("POST", f"/runs/{run_id}/cancel")
    click.echo(f"Run {run_id} is {result['status']}.")


# Events ------------------------------------------------------------------------
@cli.command("trigger")
@click.argument("event", type=click.Choice([item.value for item in TriggerType]))
@click.option("--conversation", help="Conversation identifier.")
@click.option("--contact", help="Contact identifier.")
@click.option("--message", help="Inbound message text.")
@click.option("--channel", help="Channel the event arrived on.")
@click.option("--payload", help="Extra event data as a JSON object.")
def fire_trigger(
    event: str,
    conversation: Optional[str],
    contact: Optional[str],
    message: Optional[str],
    channel: Optional[str],
    payload: Optional[str],
) -> None:
    """Deliver a platform event to the matching flows."""
    body = {
        "conversation_id": conversation,
        "contact_id": contact,
        "message": message,
        "channel": channel,
        "payload": _parse_json_option(payload, "payload"),
    }
    _echo(_request("POST", f"/triggers/{event}", body))


@cli.command("webhook")
@click.argument("webhook_id")
@click.option("--payload", help="Webhook body as a JSON object.")
def webhook(webhook_id: str, payload: Optional[str]) -> None:
    _echo(_request("POST", f"/webhooks/{webhook_id}", _parse_json_option(payload, "payload")))


@cli.command("reply")
@click.argument("conversation_id")
@click.option("--message", prompt=True, help="Customer reply text.")
@click.option("--event-id", help="Message identifier, used to ignore redeliveries.")
def reply(conversation_id: str, message: str, event_id: Optional[str]) -> None:
    """Resume runs waiting for a reply in a conversation."""
    body = {"message": message, "event_id": event_id}
    _echo(_request("POST", f"/conversations/{conversation_id}/replies", body))


@cli.command("tick")
def tick() -> None:
    """Resume delayed runs that are due now."""
    result = _request("POST", "/scheduler/tick")
    click.echo(f"Resumed {len(result['run_ids'])} run(s).")


if __name__ == "__main__":
    cli()
