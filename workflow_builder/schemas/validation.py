import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FieldRule(BaseModel):
    """Validation rule for one configurable input of a node type"""
    model_config = ConfigDict(populate_by_name=True)

    io_definition_id: Optional[uuid.UUID] = Field(None, alias="ioDefinitionId")
    label: str
    required: bool = False
    socket_type: Optional[str] = Field(None, alias="socketType")
    constraints: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    valid: bool
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    node_errors: Dict[str, Dict[str, List[Dict[str, Any]]]] = Field(default_factory=dict, alias="nodeErrors")
