"""Per-type node configuration parsed from a node's free-form ``data`` map."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from flowpilot.exceptions import NodeConfigError
from flowpilot.models.enums import DelayUnit, NodeType
from flowpilot.models.flow import FlowNode

_UNIT_SECONDS = {
    DelayUnit.SECONDS: 1,
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 3600,
    DelayUnit.DAYS: 86400,
}


class NodeConfig(BaseModel):
    """Base for node configurations; unknown keys from the editor are ignored."""

    class Config:
        extra = "ignore"


class TriggerConfig(NodeConfig):
    pass


class SendMessageConfig(NodeConfig):
    message: str = Field(min_length=1, validation_alias=AliasChoices("message", "content", "text"))


class AiAgentConfig(NodeConfig):
    agent_id: str = Field(min_length=1, validation_alias=AliasChoices("agentId", "agent_id"))


class WaitReplyConfig(NodeConfig):
    pass


class DelayConfig(NodeConfig):
    delay_ms: Optional[float] = Field(default=None, ge=0, validation_alias=AliasChoices("delayMs", "delay_ms"))
    delay_seconds: Optional[float] = Field(
        default=None, ge=0, validation_alias=AliasChoices("delaySeconds", "delay_seconds")
    )
    value: Optional[float] = Field(default=None, ge=0, validation_alias=AliasChoices("value", "amount", "delay"))
    unit: DelayUnit = DelayUnit.SECONDS

    @field_validator("unit", mode="before")
    @classmethod
    def _normalise_unit(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    def total_seconds(self) -> float:
        if self.delay_ms:
            return self.delay_ms / 1000
        if self.delay_seconds:
            return self.delay_seconds
        return (self.value or 0) * _UNIT_SECONDS[self.unit]


class ConditionConfig(NodeConfig):
    expression: str = Field(min_length=1, validation_alias=AliasChoices("expression", "condition"))


class HumanHandoffConfig(NodeConfig):
    reason: str = "Flow triggered handoff"


class TagConfig(NodeConfig):
    tags: List[str] = Field(default_factory=list)
    tag: Optional[str] = None

    @model_validator(mode="after")
    def _require_tags(self) -> "TagConfig":
        if not self.all_tags():
            raise ValueError("at least one tag is required")
        return self

    def all_tags(self) -> List[str]:
        tags = [tag for tag in self.tags if tag]
        if self.tag and self.tag not in tags:
            tags.append(self.tag)
        return tags


class HttpRequestConfig(NodeConfig):
    url: str = Field(min_length=1)
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()


class CloseConfig(NodeConfig):
    reason: Optional[str] = None


class TransferAgentConfig(NodeConfig):
    agent_id: str = Field(min_length=1, validation_alias=AliasChoices("agentId", "agent_id"))


class CheckWindowConfig(NodeConfig):
    pass


NODE_CONFIGS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.SEND_MESSAGE: SendMessageConfig,
    NodeType.AI_AGENT: AiAgentConfig,
    NodeType.WAIT_REPLY: WaitReplyConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.HUMAN_HANDOFF: HumanHandoffConfig,
    NodeType.TAG: TagConfig,
    NodeType.HTTP_REQUEST: HttpRequestConfig,
    NodeType.CLOSE: CloseConfig,
    NodeType.TRANSFER_AGENT: TransferAgentConfig,
    NodeType.CHECK_WINDOW: CheckWindowConfig,
}


def parse_node_config(node: FlowNode) -> NodeConfig:
    """Parse ``node.data`` into the configuration model for its type."""
    config_cls = NODE_CONFIGS[node.type]
    try:
        return config_cls.model_validate(node.data)
    except ValidationError as exc:
        details = ", ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'data'}: {error['msg']}"
            for error in exc.errors()
        )
        raise NodeConfigError(
            f"Node '{node.id}' ({node.type.value}) has invalid data: {details}"
        ) from exc
