"""Flow definition models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from flowpilot.models.enums import NodeType, TriggerType


class FlowNode(BaseModel):
    """Typed step in a flow graph."""

    id: str = Field(min_length=1)
    type: NodeType
    data: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None


class FlowEdge(BaseModel):
    """Directed connection between two nodes."""

    id: str
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    label: Optional[str] = None

    class Config:
        populate_by_name = True


class FlowGraph(BaseModel):
    """Read-only view over a flow's nodes and edges."""

    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)

    def node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def nodes_of_type(self, node_type: NodeType) -> List[FlowNode]:
        return [node for node in self.nodes if node.type == node_type]

    def outgoing(self, node_id: str) -> List[FlowEdge]:
        return [edge for edge in self.edges if edge.source == node_id]


class FlowStats(BaseModel):
    runs: int = 0
    success: int = 0
    failed: int = 0


class Flow(BaseModel):
    """Automation definition triggered by platform events."""

    id: str
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    active: bool = False
    stats: FlowStats = Field(default_factory=FlowStats)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def graph(self) -> FlowGraph:
        return FlowGraph(nodes=self.nodes, edges=self.edges)


class FlowCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    active: bool = False


class FlowUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, Any]] = None
    nodes: Optional[List[FlowNode]] = None
    edges: Optional[List[FlowEdge]] = None
    active: Optional[bool] = None
