from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from workflow_builder.api.dependencies import get_cost_service, get_current_user_id, get_workflow_service
from workflow_builder.core.logging import get_logger
from workflow_builder.schemas.common import WorkflowStatus
from workflow_builder.schemas.cost import CostEstimateRequest, WorkflowCost
from workflow_builder.schemas.validation import FieldRule
from workflow_builder.schemas.workflow import (
    AutoSaveRequest, CreateWorkflowRequest, PublishResult, SaveResult, SaveWorkflowRequest,
    UpdateWorkflowRequest, WorkflowDetail, WorkflowSummary,
)
from workflow_builder.services.cost_service import CostService
from workflow_builder.services.workflow_service import WorkflowService

router = APIRouter()
logger = get_logger(__name__)


@router.get("/workflows", response_model=List[WorkflowSummary])
async def list_workflows(
    status_filter: Optional[WorkflowStatus] = Query(None, alias="status"),
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    """List the caller's workflows, most recently updated first"""
    return await service.list_workflows(user_id, status_filter, search, limit, offset)


@router.post("/workflows", response_model=WorkflowSummary, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: CreateWorkflowRequest,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    return await service.create_workflow(request, user_id)


@router.post("/workflows/cost/estimate", response_model=WorkflowCost)
async def estimate_workflow_cost(
    request: CostEstimateRequest,
    user_id: str = Depends(get_current_user_id),
    cost_service: CostService = Depends(get_cost_service)
):
    """Price a candidate graph without saving it"""
    return await cost_service.estimate(request.nodes)


@router.get("/workflows/validation-rules/{definition_id}", response_model=Dict[str, FieldRule])
async def get_validation_rules(
    definition_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    """Field rules for a node type, for client-side pre-validation"""
    return await service.get_validation_rules(definition_id)


@router.get("/workflows/{workflow_id}", response_model=WorkflowDetail)
async def get_workflow(
    workflow_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    return await service.get_workflow(workflow_id, user_id)


@router.put("/workflows/{workflow_id}", response_model=WorkflowSummary)
async def update_workflow(
    workflow_id: UUID,
    request: UpdateWorkflowRequest,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    return await service.update_workflow(workflow_id, request, user_id)


@router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    workflow_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    await service.delete_workflow(workflow_id, user_id)


@router.put("/workflows/{workflow_id}/auto-save", response_model=SaveResult)
async def auto_save_workflow(
    workflow_id: UUID,
    request: AutoSaveRequest,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    """
    Replace the graph if `changeHash` still matches the stored hash.
    409 with `serverHash` when another writer got there first.
    """
    return await service.auto_save(workflow_id, user_id, request)


@router.put("/workflows/{workflow_id}/save", response_model=SaveResult)
async def save_workflow(
    workflow_id: UUID,
    request: SaveWorkflowRequest,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    return await service.save(workflow_id, user_id, request)


@router.post("/workflows/{workflow_id}/publish", response_model=PublishResult)
async def publish_workflow(
    workflow_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service)
):
    return await service.publish(workflow_id, user_id)


@router.get("/workflows/{workflow_id}/cost", response_model=WorkflowCost)
async def get_workflow_cost(
    workflow_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: WorkflowService = Depends(get_workflow_service),
    cost_service: CostService = Depends(get_cost_service)
):
    _, nodes, _ = await service.load_graph(workflow_id, user_id)
    return await cost_service.estimate(nodes)
