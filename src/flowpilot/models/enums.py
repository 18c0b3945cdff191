"""Shared enums for FlowPilot models."""

from __future__ import annotations

from enum import Enum


class TriggerType(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    NEW_CONTACT = "new_contact"
    KEYWORD = "keyword"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class NodeType(str, Enum):
    TRIGGER = "trigger"
    SEND_MESSAGE = "send_message"
    AI_AGENT = "ai_agent"
    WAIT_REPLY = "wait_reply"
    DELAY = "delay"
    CONDITION = "condition"
    HUMAN_HANDOFF = "human_handoff"
    TAG = "tag"
    HTTP_REQUEST = "http_request"
    CLOSE = "close"
    TRANSFER_AGENT = "transfer_agent"
    CHECK_WINDOW = "check_window"


class RunStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class WaitReason(str, Enum):
    REPLY = "reply"
    TIMER = "timer"
    MANUAL = "manual"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


# Output handles a branching node may emit.
BRANCH_HANDLES = {
    NodeType.CONDITION: ("yes", "no"),
    NodeType.CHECK_WINDOW: ("open", "closed"),
}
