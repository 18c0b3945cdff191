"""Identifier helpers."""

from __future__ import annotations

import uuid


def generate_flow_id() -> str:
    """Return a random flow identifier."""
    return f"flow-{uuid.uuid4().hex}"


def generate_run_id() -> str:
    """Return a random run identifier."""
    return f"run-{uuid.uuid4().hex}"


def generate_execution_id() -> str:
    """Return a token identifying one pass of the engine over a run."""
    return f"exec-{uuid.uuid4().hex[:12]}"
