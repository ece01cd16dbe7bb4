import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from workflow_builder.core.config import settings
from workflow_builder.schemas.common import NodeType, WorkflowStatus


class Position(BaseModel):
    x: float = 0
    y: float = 0


class Viewport(BaseModel):
    x: float = 0
    y: float = 0
    zoom: float = 1


class WorkflowNode(BaseModel):
    """A node as sent by the editor"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("id", "uuid"),
        description="Editor-assigned node id, unique within the workflow"
    )
    type: NodeType = Field(..., description="AI model or built-in system node type")
    definition_id: Optional[uuid.UUID] = Field(None, description="Node definition backing this node")
    system_node_type: Optional[str] = None
    position: Position = Field(default_factory=Position)
    width: float = Field(default_factory=lambda: settings.DEFAULT_NODE_WIDTH)
    height: float = Field(default_factory=lambda: settings.DEFAULT_NODE_HEIGHT)
    config_values: Dict[str, Any] = Field(default_factory=dict)
    ui_metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowEdge(BaseModel):
    """A connection from an output socket to an input socket"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = Field(None, max_length=64, validation_alias=AliasChoices("id", "uuid"))
    source: str = Field(..., description="Source node id")
    source_handle: str = Field(..., alias="sourceHandle", description="Source socket name")
    target: str = Field(..., description="Target node id")
    target_handle: str = Field(..., alias="targetHandle", description="Target socket name")
    type: str = "default"
    animated: bool = False


class WorkflowMetadata(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)


class AutoSaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    viewport: Viewport = Field(default_factory=Viewport)
    change_hash: Optional[str] = Field(None, alias="changeHash")


class SaveWorkflowRequest(AutoSaveRequest):
    nodes: List[WorkflowNode]
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)


class SaveResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: uuid.UUID = Field(..., alias="workflowId")
    saved_at: datetime = Field(..., alias="savedAt")
    change_hash: str = Field(..., alias="changeHash")


class CreateWorkflowRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Workflow name cannot be empty")
        return v.strip()


class UpdateWorkflowRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    status: Optional[WorkflowStatus] = None


class WorkflowSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: Optional[str] = None
    owner_id: str
    status: WorkflowStatus
    is_template: bool = False
    change_hash: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    auto_saved_at: Optional[datetime] = None
    published_at: Optional[datetime] = None


class DefinitionRef(BaseModel):
    """Catalog summary attached to AI-model nodes on read"""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    slug: str
    name: str
    version: str
    status: str
    icon: Optional[str] = None
    pricing_config: Optional[Dict[str, Any]] = None


class WorkflowNodeOut(WorkflowNode):
    definition: Optional[DefinitionRef] = None


class WorkflowDetail(WorkflowSummary):
    viewport: Viewport = Field(default_factory=Viewport)
    nodes: List[WorkflowNodeOut] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)


class InputManifestEntry(BaseModel):
    variable_key: str
    label: str
    type: str
    is_required: bool = True
    default_value: Optional[Any] = None
    ui_metadata: Dict[str, Any] = Field(default_factory=dict)


class PublishResult(BaseModel):
    workflow_id: uuid.UUID
    status: WorkflowStatus
    published_at: datetime
    input_manifest: List[InputManifestEntry] = Field(default_factory=list)
