"""Capability interfaces the flow engine depends on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class CapabilityError(RuntimeError):
    """Raised when a collaborator rejects or fails a request."""


class HttpResult(BaseModel):
    """Outcome of an outbound HTTP call; ``error`` is set on transport failure."""

    status: Optional[int] = None
    body: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MessageSender(ABC):
    """Delivers outbound messages to a conversation's channel."""

    @abstractmethod
    def send(self, conversation_id: str, text: str) -> None:
        """Send ``text`` to the conversation; raise on failure."""


class AgentInvoker(ABC):
    """Runs an AI agent against the latest customer message."""

    @abstractmethod
    def invoke(self, agent_id: str, last_message: str, conversation_id: Optional[str]) -> str:
        """Return the agent's response text; raise on failure."""


class ContactTagger(ABC):
    """Applies tags to a contact record."""

    @abstractmethod
    def apply_tags(self, contact_id: str, tags: List[str]) -> None:
        """Attach ``tags`` to the contact; raise on failure."""


class HttpRequester(ABC):
    """Performs the outbound calls of ``http_request`` nodes."""

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> HttpResult:
        """Perform the call. Transport failures are reported in the result, never raised."""


class Clock(ABC):
    """Time source for delays and time-of-day conditions."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware datetime."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
