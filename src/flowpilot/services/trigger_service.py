"""Routes platform events to the flows configured for them."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from flowpilot.models.enums import TriggerType
from flowpilot.models.flow import Flow
from flowpilot.models.trigger import TriggerData
from flowpilot.services.flow_engine import FlowEngine
from flowpilot.services.flow_service import FlowService
from flowpilot.services.validation import keyword_list

LOG = logging.getLogger(__name__)


class FlowTriggerManager:
    """Starts flow runs for incoming events and resumes runs waiting on replies."""

    def __init__(self, flows: FlowService, engine: FlowEngine) -> None:
        self.flows = flows
        self.engine = engine

    def check_triggers(self, event: TriggerType, data: TriggerData) -> List[str]:
        """Start every active flow for ``event`` whose trigger config matches ``data``."""
        started: List[str] = []
        for flow in self.flows.list_active_by_trigger(event):
            try:
                if not self.matches_trigger(flow, data):
                    continue
                run = self.engine.start_flow(
                    flow.id,
                    conversation_id=data.conversation_id,
                    contact_id=data.contact_id,
                    trigger_data=_trigger_context(event, data),
                )
            except Exception:
                LOG.exception("Failed to start flow %s for %s event", flow.id, event.value)
                continue
            started.append(run.id)

        if started:
            LOG.info("Event %s started %d run(s)", event.value, len(started))
        return started

    @staticmethod
    def matches_trigger(flow: Flow, data: TriggerData) -> bool:
        config = flow.trigger_config or {}
        if flow.trigger_type == TriggerType.KEYWORD:
            message = (data.message or "").lower()
            return any(keyword.lower() in message for keyword in keyword_list(config))
        if flow.trigger_type == TriggerType.WEBHOOK:
            webhook_id = config.get("webhookId")
            return webhook_id is not None and webhook_id == data.webhook_id
        if flow.trigger_type in (
            TriggerType.NEW_CONTACT,
            TriggerType.MESSAGE_RECEIVED,
            TriggerType.MANUAL,
        ):
            return True
        # Scheduled flows are started by their scheduler, never by events.
        return False

    def manual_trigger(self, flow_id: str, data: Optional[TriggerData] = None) -> str:
        """Start ``flow_id`` directly, regardless of its trigger type."""
        data = data or TriggerData()
        run = self.engine.start_flow(
            flow_id,
            conversation_id=data.conversation_id,
            contact_id=data.contact_id,
            trigger_data=_trigger_context(TriggerType.MANUAL, data),
        )
        return run.id

    def handle_webhook_trigger(self, webhook_id: str, payload: Optional[Dict[str, Any]] = None) -> List[str]:
        payload = dict(payload or {})
        data = TriggerData(
            webhook_id=webhook_id,
            payload=payload,
            conversation_id=_optional_str(payload.get("conversationId")),
            contact_id=_optional_str(payload.get("contactId")),
            message=_optional_str(payload.get("message")),
        )
        return self.check_triggers(TriggerType.WEBHOOK, data)

    def handle_inbound_reply(
        self,
        conversation_id: str,
        message: str,
        event_id: Optional[str] = None,
    ) -> List[str]:
        """Resume the runs in ``conversation_id`` that are waiting for a reply."""
        resumed: List[str] = []
        for run in self.flows.list_waiting_runs(conversation_id):
            try:
                self.engine.resume_flow(
                    run.id,
                    additional_context={"lastMessage": message, "message": message},
                    event_id=event_id,
                )
            except Exception:
                LOG.exception("Failed to resume run %s on reply", run.id)
                continue
            resumed.append(run.id)
        return resumed


def _trigger_context(event: TriggerType, data: TriggerData) -> Dict[str, Any]:
    context: Dict[str, Any] = dict(data.payload)
    if data.message is not None:
        context["message"] = data.message
    if data.channel is not None:
        context["channel"] = data.channel
    if data.webhook_id is not None:
        context["webhookId"] = data.webhook_id
    context["triggerType"] = event.value
    return context


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
