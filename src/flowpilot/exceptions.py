"""Errors raised by the flow engine and its store."""

from __future__ import annotations

from typing import Iterable


class FlowPilotError(RuntimeError):
    """Base class for FlowPilot errors."""


class FlowNotFoundError(FlowPilotError):
    """Raised when a flow id does not resolve."""


class FlowInactiveError(FlowPilotError):
    """Raised when starting a flow that is switched off."""


class MissingTriggerNodeError(FlowPilotError):
    """Raised when a flow lacks a single trigger entry point."""


class RunNotFoundError(FlowPilotError):
    """Raised when a run id does not resolve."""


class NodeExecutionError(FlowPilotError):
    """Raised when a node cannot be executed."""


class NodeConfigError(NodeExecutionError):
    """Raised when a node's data does not fit its type."""


class StepLimitExceededError(NodeExecutionError):
    """Raised when a run executes more nodes than its budget allows."""


class FlowValidationError(FlowPilotError):
    """Raised when a flow graph is rejected at save time."""

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid flow: " + "; ".join(self.problems))
