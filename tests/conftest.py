import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from flowpilot import constants
from flowpilot.api import main as api_main
from flowpilot.capabilities.base import (
    AgentInvoker,
    CapabilityError,
    Clock,
    ContactTagger,
    HttpRequester,
    HttpResult,
    MessageSender,
)
from flowpilot.clients import database
from flowpilot.models.enums import TriggerType
from flowpilot.models.flow import FlowCreateRequest
from flowpilot.services.flow_engine import FlowEngine
from flowpilot.services.flow_service import FlowService
from flowpilot.services.trigger_service import FlowTriggerManager


class FakeMessageSender(MessageSender):
    """Records outbound messages; optionally fails every send."""

    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.error: Optional[str] = None

    def send(self, conversation_id: str, text: str) -> None:
        if self.error:
            raise CapabilityError(self.error)
        self.sent.append((conversation_id, text))


class FakeAgentInvoker(AgentInvoker):
    def __init__(self, response: str = "Happy to help!") -> None:
        self.response = response
        self.calls: List[tuple] = []

    def invoke(self, agent_id: str, last_message: str, conversation_id: Optional[str]) -> str:
        self.calls.append((agent_id, last_message, conversation_id))
        return self.response


class FakeContactTagger(ContactTagger):
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def apply_tags(self, contact_id: str, tags: List[str]) -> None:
        self.calls.append((contact_id, list(tags)))


class FakeHttpRequester(HttpRequester):
    """Returns a canned result and remembers each call."""

    def __init__(self) -> None:
        self.result = HttpResult(status=200, body={"ok": True})
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, headers=None, body=None) -> HttpResult:
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body})
        return self.result


class FixedClock(Clock):
    def __init__(self, current: datetime) -> None:
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def temp_runtime_dirs(tmp_path, monkeypatch):
    """Redirect runtime directories and database into a temp location."""
    home = tmp_path / "runtime" / "home"
    mapping = {
        "HOME_DIR": home,
        "LOG_DIR": home / "logs",
        "DB_DIR": home / "db",
        "DB_FILE": home / "db" / "flowpilot.db",
    }

    for name, path in mapping.items():
        monkeypatch.setattr(constants, name, path)

    database.init_db()
    yield


@pytest.fixture(autouse=True)
def restore_root_logging():
    """``setup_logging`` replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 14, 10, 30, tzinfo=timezone.utc))


@pytest.fixture
def messages():
    return FakeMessageSender()


@pytest.fixture
def agents():
    return FakeAgentInvoker()


@pytest.fixture
def contacts():
    return FakeContactTagger()


@pytest.fixture
def http_requester():
    return FakeHttpRequester()


@pytest.fixture
def flow_service() -> FlowService:
    return FlowService()


@pytest.fixture
def engine(flow_service, messages, agents, contacts, http_requester, clock) -> FlowEngine:
    return FlowEngine(
        flows=flow_service,
        messages=messages,
        agents=agents,
        contacts=contacts,
        http=http_requester,
        clock=clock,
    )


@pytest.fixture
def trigger_manager(flow_service, engine) -> FlowTriggerManager:
    return FlowTriggerManager(flow_service, engine)


@pytest.fixture
def make_flow(flow_service):
    """Create a flow from ``(id, type, data)`` node tuples and edge tuples."""

    def _make(
        nodes,
        edges=(),
        trigger_type=TriggerType.MANUAL,
        trigger_config=None,
        active=True,
        name="Test flow",
    ):
        payload = FlowCreateRequest(
            name=name,
            trigger_type=trigger_type,
            trigger_config=trigger_config or {},
            nodes=[{"id": node_id, "type": node_type, "data": data} for node_id, node_type, data in nodes],
            edges=[_edge(edge) for edge in edges],
            active=active,
        )
        return flow_service.create_flow(payload)

    return _make


def _edge(edge) -> Dict[str, Any]:
    source, target = edge[0], edge[1]
    handle = edge[2] if len(edge) > 2 else None
    payload = {"id": f"e-{source}-{target}", "source": source, "target": target}
    if handle:
        payload["sourceHandle"] = handle
    return payload


@pytest.fixture
def api_client(flow_service, engine, trigger_manager):
    app = api_main.app

    overrides = {
        api_main.get_flow_service: lambda: flow_service,
        api_main.get_flow_engine: lambda: engine,
        api_main.get_trigger_manager: lambda: trigger_manager,
    }

    state_attrs = {
        "flow_service": flow_service,
        "flow_engine": engine,
        "trigger_manager": trigger_manager,
    }

    original_state = {name: getattr(app.state, name, None) for name in state_attrs}
    for name, value in state_attrs.items():
        setattr(app.state, name, value)

    original_overrides = app.dependency_overrides.copy()
    original_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def noop_lifespan(_app):
        yield

    app.router.lifespan_context = noop_lifespan
    app.dependency_overrides.update(overrides)

    with TestClient(app) as client:
        yield client

    app.dependency_overrides = original_overrides
    app.router.lifespan_context = original_lifespan

    for name, value in original_state.items():
        if value is None:
            try:
                delattr(app.state, name)
            except AttributeError:
                pass
        else:
            setattr(app.state, name, value)
