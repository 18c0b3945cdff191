"""Flow run models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from flowpilot.models.enums import RunStatus, WaitReason


class FlowRun(BaseModel):
    """One execution of a flow and its position in the graph."""

    id: str
    flow_id: str
    conversation_id: Optional[str] = None
    contact_id: Optional[str] = None
    status: RunStatus
    current_node_id: Optional[str] = None
    resume_node_id: Optional[str] = None
    wait_reason: Optional[WaitReason] = None
    resume_at: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    step_count: int = 0
    last_event_id: Optional[str] = None
    seen_event_ids: List[str] = Field(default_factory=list)
    # Set while an engine execution owns the run; cleared once it stops.
    execution_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class RunResumeRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = None
