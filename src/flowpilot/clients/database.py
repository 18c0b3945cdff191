"""SQLite database client for FlowPilot."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, create_engine, func
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from flowpilot import constants
from flowpilot.models.enums import RunStatus, TriggerType, WaitReason
from flowpilot.utils.pathing import ensure_runtime_directories


class BaseModel(DeclarativeBase):
    """Declarative base class for SQLAlchemy models."""


def _build_engine(echo: bool = False):
    ensure_runtime_directories()
    return create_engine(
        f"sqlite:///{constants.DB_FILE}",
        echo=echo,
        future=True,
        # Runs execute on worker threads; each operation opens its own session.
        connect_args={"check_same_thread": False},
    )


ENGINE = _build_engine()
SESSION_FACTORY = sessionmaker(bind=ENGINE, autoflush=False, expire_on_commit=False, future=True)


class Flow(BaseModel):
    """Automation flow definition."""

    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[TriggerType] = mapped_column(Enum(TriggerType), nullable=False, index=True)
    trigger_config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    nodes: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    edges: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stats_runs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stats_success: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stats_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    runs: Mapped[list["FlowRun"]] = relationship(back_populates="flow", cascade="all, delete-orphan")


class FlowRun(BaseModel):
    """Execution state of one flow run, including its graph snapshot."""

    __tablename__ = "flow_runs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    flow_id: Mapped[str] = mapped_column(String, ForeignKey("flows.id"), nullable=False, index=True)
    conversation_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    contact_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[RunStatus] = mapped_column(Enum(RunStatus), nullable=False, index=True)
    current_node_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resume_node_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    wait_reason: Mapped[Optional[WaitReason]] = mapped_column(Enum(WaitReason), nullable=True)
    resume_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    graph: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    step_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_event_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    seen_event_ids: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    execution_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    flow: Mapped["Flow"] = relationship(back_populates="runs")


def init_db(echo: bool = False) -> None:
    """Create tables if they do not exist."""
    global ENGINE, SESSION_FACTORY
    ENGINE = _build_engine(echo=echo)
    SESSION_FACTORY = sessionmaker(
        bind=ENGINE,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    BaseModel.metadata.create_all(bind=ENGINE)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = SESSION_FACTORY()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
