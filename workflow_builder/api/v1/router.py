from fastapi import APIRouter

from workflow_builder.api.v1.endpoints import health, node_definitions, templates, workflows

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(workflows.router, tags=["workflows"])
api_router.include_router(node_definitions.router, tags=["node-definitions"])
api_router.include_router(templates.router, tags=["templates"])
