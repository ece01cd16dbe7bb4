import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from workflow_builder.schemas.common import DefinitionKind, DefinitionStatus, IODirection


# Patch keys whose columns are NOT NULL; an explicit null means "leave as is"
DEFINITION_REQUIRED_FIELDS = {"slug", "name", "version", "status"}
IO_REQUIRED_FIELDS = {"name", "direction", "is_required", "is_list", "sort_order"}


def _drop_nulls(updates: Dict[str, Any], required: set) -> Dict[str, Any]:
    return {k: v for k, v in updates.items() if v is not None or k not in required}


def _parse_json_object(v):
    if v is None:
        return {}
    if isinstance(v, str):
        v = json.loads(v) if v.strip() else {}
    if not isinstance(v, dict):
        raise ValueError("must be a JSON object")
    return v


class SocketType(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    slug: str
    color_hex: Optional[str] = None


class IODefinitionBase(BaseModel):
    """Typed input/output socket on a node definition"""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, max_length=100)
    direction: IODirection
    socket_type_id: Optional[uuid.UUID] = None
    label: Optional[str] = None
    description: Optional[str] = None
    is_required: bool = False
    is_list: bool = False
    default_value: Optional[Any] = None
    constraints: Dict[str, Any] = Field(default_factory=dict)
    sort_order: int = 0

    @field_validator("constraints", mode="before")
    @classmethod
    def parse_constraints(cls, v):
        return _parse_json_object(v)


class IODefinitionCreate(IODefinitionBase):
    pass


class IODefinitionUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    direction: Optional[IODirection] = None
    socket_type_id: Optional[uuid.UUID] = None
    label: Optional[str] = None
    description: Optional[str] = None
    is_required: Optional[bool] = None
    is_list: Optional[bool] = None
    default_value: Optional[Any] = None
    constraints: Optional[Dict[str, Any]] = None
    sort_order: Optional[int] = None

    @field_validator("constraints", mode="before")
    @classmethod
    def parse_constraints(cls, v):
        return None if v is None else _parse_json_object(v)

    def field_updates(self) -> Dict[str, Any]:
        return _drop_nulls(self.model_dump(exclude_unset=True), IO_REQUIRED_FIELDS)


class IODefinitionOut(IODefinitionBase):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    definition_id: uuid.UUID
    socket_type: Optional[SocketType] = None


class NodeDefinitionCreate(BaseModel):
    kind: DefinitionKind = DefinitionKind.AI_MODEL
    slug: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    icon: Optional[str] = None
    color_hex: Optional[str] = Field(None, max_length=9)
    version: str = "1.0.0"
    status: DefinitionStatus = DefinitionStatus.DRAFT
    config_schema: Dict[str, Any] = Field(default_factory=dict)
    pricing_config: Optional[Dict[str, Any]] = None
    io_definitions: List[IODefinitionCreate] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def validate_initial_status(cls, v):
        if v not in (DefinitionStatus.DRAFT, DefinitionStatus.ACTIVE):
            raise ValueError("A definition can only be created as draft or active")
        return v


class NodeDefinitionUpdate(BaseModel):
    """
    Patch for a node definition. Fields outside the whitelist are dropped.
    `io_definitions`, when present, is the complete replacement IO set.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    slug: Optional[str] = Field(None, min_length=1, max_length=100)
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    icon: Optional[str] = None
    color_hex: Optional[str] = Field(None, max_length=9, alias="color")
    config_schema: Optional[Dict[str, Any]] = None
    pricing_config: Optional[Dict[str, Any]] = None
    status: Optional[DefinitionStatus] = None
    version: Optional[str] = Field(None, max_length=50)
    io_definitions: Optional[List[IODefinitionCreate]] = None

    @field_validator("config_schema", mode="before")
    @classmethod
    def parse_config_schema(cls, v):
        return None if v is None else _parse_json_object(v)

    def field_updates(self) -> Dict[str, Any]:
        """Whitelisted column updates explicitly present in the patch"""
        return _drop_nulls(
            self.model_dump(exclude_unset=True, exclude={"io_definitions"}), DEFINITION_REQUIRED_FIELDS
        )


class NodeDefinitionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    kind: DefinitionKind
    slug: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    color_hex: Optional[str] = None
    version: str
    status: DefinitionStatus
    config_schema: Dict[str, Any] = Field(default_factory=dict)
    pricing_config: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    deprecated_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    io_definitions: List[IODefinitionOut] = Field(default_factory=list)


class VersionBumpResult(BaseModel):
    """Returned instead of the definition when an edit produced a new version"""
    message: str = "Definition versioned"
    previous_definition_id: uuid.UUID
    new_definition_id: uuid.UUID
    version: str
