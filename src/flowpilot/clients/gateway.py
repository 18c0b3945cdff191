"""Client for the platform gateway that owns channels, agents and contacts."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from flowpilot import constants
from flowpilot.capabilities.base import AgentInvoker, CapabilityError, ContactTagger, MessageSender

LOG = logging.getLogger(__name__)


class GatewayClient(MessageSender, AgentInvoker, ContactTagger):
    """Implements the messaging, AI and tagging capabilities over the gateway REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or constants.GATEWAY_URL).rstrip("/")
        self.token = token if token is not None else constants.GATEWAY_TOKEN
        self.timeout = timeout if timeout is not None else constants.GATEWAY_TIMEOUT
        self.transport = transport

    def send(self, conversation_id: str, text: str) -> None:
        self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            {"content": text, "metadata": {"automated": True}},
        )

    def invoke(self, agent_id: str, last_message: str, conversation_id: Optional[str]) -> str:
        result = self._request(
            "POST",
            f"/agents/{agent_id}/invoke",
            {"message": last_message, "conversationId": conversation_id},
        )
        if isinstance(result, dict):
            return str(result.get("response") or "")
        return str(result or "")

    def apply_tags(self, contact_id: str, tags: List[str]) -> None:
        self._request("POST", f"/contacts/{contact_id}/tags", {"tags": tags})

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, json=payload, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise CapabilityError(f"Gateway unreachable for {method} {path}: {exc}") from exc
        if response.status_code >= 400:
            raise CapabilityError(f"Gateway error {response.status_code}: {response.text}")
        LOG.debug("Gateway %s %s -> %s", method, path, response.status_code)
        return response.json() if response.content else None
