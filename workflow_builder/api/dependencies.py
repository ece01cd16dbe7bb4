from typing import Any, AsyncGenerator, Dict

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from workflow_builder.core.cache import RuleCache, TTLCache
from workflow_builder.core.config import settings
from workflow_builder.core.database import get_session
from workflow_builder.repositories.node_definition_repository import NodeDefinitionRepository
from workflow_builder.services.activity_log import ActivityLogClient, activity_log_client
from workflow_builder.services.auth_service import auth_service
from workflow_builder.services.cost_service import CostService
from workflow_builder.services.node_registry import NodeRegistryService
from workflow_builder.services.validation_service import ValidationService
from workflow_builder.services.versioning_service import NodeDefinitionService
from workflow_builder.services.workflow_service import WorkflowService

security = HTTPBearer()

# Process-wide so invalidations from one request are seen by the next
rule_cache = TTLCache(ttl_seconds=settings.VALIDATION_RULES_CACHE_TTL)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Dict[str, Any]:
    """Dependency to get current authenticated user"""
    return await auth_service.verify_token(credentials.credentials)


async def get_current_user_id(
    current_user: Dict[str, Any] = Depends(get_current_user)
) -> str:
    """Dependency to get current user ID"""
    return str(current_user["id"])


async def get_database() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


async def get_rule_cache() -> RuleCache:
    return rule_cache


async def get_activity_log() -> ActivityLogClient:
    return activity_log_client


async def get_registry(db: AsyncSession = Depends(get_database)) -> NodeRegistryService:
    return NodeRegistryService(NodeDefinitionRepository(db))


async def get_validation_service(
    registry: NodeRegistryService = Depends(get_registry),
    cache: RuleCache = Depends(get_rule_cache)
) -> ValidationService:
    return ValidationService(registry, cache)


async def get_workflow_service(
    db: AsyncSession = Depends(get_database),
    registry: NodeRegistryService = Depends(get_registry),
    validation_service: ValidationService = Depends(get_validation_service),
    activity_log: ActivityLogClient = Depends(get_activity_log)
) -> WorkflowService:
    return WorkflowService(db, validation_service, registry, activity_log)


async def get_node_definition_service(
    db: AsyncSession = Depends(get_database),
    registry: NodeRegistryService = Depends(get_registry),
    validation_service: ValidationService = Depends(get_validation_service),
    activity_log: ActivityLogClient = Depends(get_activity_log)
) -> NodeDefinitionService:
    return NodeDefinitionService(db, registry, validation_service, activity_log)


async def get_cost_service(registry: NodeRegistryService = Depends(get_registry)) -> CostService:
    return CostService(registry)
