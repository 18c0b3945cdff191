"""Trigger event payloads."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TriggerData(BaseModel):
    """Event data delivered alongside a trigger."""

    conversation_id: Optional[str] = None
    contact_id: Optional[str] = None
    message: Optional[str] = None
    channel: Optional[str] = None
    webhook_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ReplyRequest(BaseModel):
    message: str
    event_id: Optional[str] = None


class TriggerResult(BaseModel):
    run_ids: List[str] = Field(default_factory=list)
