from fastapi import APIRouter, Depends

from workflow_builder.api.dependencies import get_cost_service, get_current_user_id
from workflow_builder.schemas.cost import TemplateCostRequest, TemplateCostResult
from workflow_builder.services.cost_service import CostService

router = APIRouter()


@router.post("/templates/cost-from-clips", response_model=TemplateCostResult)
async def template_cost_from_clips(
    request: TemplateCostRequest,
    user_id: str = Depends(get_current_user_id),
    cost_service: CostService = Depends(get_cost_service)
):
    """Reference cost of a clip-based template, priced like an editor graph"""
    return await cost_service.template_cost(request.clips)
