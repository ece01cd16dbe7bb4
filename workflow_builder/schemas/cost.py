from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from workflow_builder.schemas.workflow import WorkflowEdge, WorkflowNode


class NodeCost(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cost_usd: float = Field(0.0, alias="costUsd")
    is_estimate: bool = Field(False, alias="isEstimate")


class WorkflowCost(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_usd: float = Field(0.0, alias="totalUsd")
    is_estimate: bool = Field(False, alias="isEstimate")
    by_node: Dict[str, NodeCost] = Field(default_factory=dict, alias="byNode")


class CostNode(BaseModel):
    """Everything the cost engine needs to price one node"""
    id: Optional[str] = None
    type: str
    input_types: List[str] = Field(default_factory=list)
    output_types: List[str] = Field(default_factory=list)
    pricing: Optional[Any] = None
    config_values: Dict[str, Any] = Field(default_factory=dict)


class CostEstimateRequest(BaseModel):
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)


class ClipStepItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    value: Optional[Any] = None


class ClipStep(BaseModel):
    model_config = ConfigDict(extra="allow")

    workflow_code: Optional[str] = None
    workflow_id: Optional[Any] = None
    data: List[ClipStepItem] = Field(default_factory=list)


class Clip(BaseModel):
    model_config = ConfigDict(extra="allow")

    workflow: List[ClipStep] = Field(default_factory=list)


class TemplateCostRequest(BaseModel):
    clips: List[Clip] = Field(default_factory=list)


class TemplateCostResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_usd: float = Field(0.0, alias="totalUsd")
    is_estimate: bool = Field(False, alias="isEstimate")
    step_count: int = Field(0, alias="stepCount")
