from typing import List, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from workflow_builder.api.dependencies import get_current_user_id, get_node_definition_service
from workflow_builder.schemas.common import DefinitionKind, DefinitionStatus
from workflow_builder.schemas.node_definition import (
    IODefinitionCreate, IODefinitionOut, IODefinitionUpdate, NodeDefinitionCreate, NodeDefinitionOut,
    NodeDefinitionUpdate, SocketType, VersionBumpResult,
)
from workflow_builder.services.versioning_service import NodeDefinitionService

router = APIRouter()


@router.get("/node-definitions", response_model=List[NodeDefinitionOut])
async def list_node_definitions(
    kind: Optional[DefinitionKind] = None,
    status_filter: Optional[DefinitionStatus] = Query(None, alias="status"),
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: NodeDefinitionService = Depends(get_node_definition_service)
):
    return await service.list_definitions(
        kind=kind.value if kind else None,
        status=status_filter.value if status_filter else None,
        search=search,
        limit=limit,
        offset=offset,
    )


@router.post("/node-definitions", response_model=NodeDefinitionOut, status_code=status.HTTP_201_CREATED)
async def create_node_definition(
    request: NodeDefinitionCreate,
    user_id: str = Depends(get_current_user_id),
    service: NodeDefinitionService = Depends(get_node_definition_service)
):
    return await service.create_definition(request, user_id)


@router.get("/node-definitions/{definition_id}", response_model=NodeDefinitionOut)
async def get_node_definition(
    definition_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: NodeDefinitionService = Depends(get_node_definition_service)
):
    return await service.get_definition(definition_id)


@router.put("/node-definitions/{definition_id}", response_model=Union[VersionBumpResult, NodeDefinitionOut])
async def update_node_definition(
    definition_id: UUID,
    request: NodeDefinitionUpdate,
    user_id: str = Depends(get_current_user_id),
    service: NodeDefinitionService = Depends(get_node_definition_service)
):
    """
    Structural edits to an active definition return a VersionBumpResult
    pointing at the new definition; everything else returns the definition.
    """
    return await service.update_definition(definition_id, request, user_id)


@router.post(
    "/node-definitions/{definition_id}/io-definitions",
    response_model=IODefinitionOut,
    status_code=status.HTTP_201_CREATED
)
async def create_io_definition(
    definition_id: UUID,
    request: IODefinitionCreate,
    user_id: str = Depends(get_current_user_id),
    service: NodeDefinitionService = Depends(get_node_definition_service)
):
    return await service.add_io_definition(definition_id, request)


@router.put("/node-definitions/{definition_id}/io-definitions/{io_id}", response_model=IODefinitionOut)
async def update_io_definition(
    definition_id: UUID,
    io_id: UUID,
    request: IODefinitionUpdate,
    user_id: str = Depends(get_current_user_id),
    service: NodeDefinitionService = Depends(get_node_definition_service)
):
    return await service.update_io_definition(definition_id, io_id, request)


@router.delete("/node-definitions/{definition_id}/io-definitions/{io_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_io_definition(
    definition_id: UUID,
    io_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: NodeDefinitionService = Depends(get_node_definition_service)
):
    await service.delete_io_definition(definition_id, io_id)


@router.get("/socket-types", response_model=List[SocketType])
async def list_socket_types(
    user_id: str = Depends(get_current_user_id),
    service: NodeDefinitionService = Depends(get_node_definition_service)
):
    return await service.list_socket_types()
