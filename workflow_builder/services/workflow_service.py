import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from workflow_builder.core.database import transaction
from workflow_builder.core.exceptions import AccessDeniedError, ConflictError, NotFoundError, ValidationError
from workflow_builder.core.logging import get_logger
from workflow_builder.models.workflow import WorkflowDB, WorkflowEdgeDB, WorkflowNodeDB
from workflow_builder.repositories.workflow_repository import WorkflowRepository
from workflow_builder.schemas.common import NodeType, WorkflowStatus
from workflow_builder.schemas.validation import FieldRule
from workflow_builder.schemas.workflow import (
    AutoSaveRequest, CreateWorkflowRequest, DefinitionRef, InputManifestEntry, Position, PublishResult,
    SaveResult, SaveWorkflowRequest, UpdateWorkflowRequest, Viewport, WorkflowDetail, WorkflowEdge,
    WorkflowNode, WorkflowNodeOut, WorkflowSummary,
)
from workflow_builder.services.activity_log import ActivityLogClient
from workflow_builder.services.node_registry import NodeRegistryService
from workflow_builder.services.validation_service import ValidationService

logger = get_logger(__name__)

USER_INPUT_TYPES = {
    NodeType.USER_INPUT: "Text",
    NodeType.USER_INPUT_TEXT: "Text",
    NodeType.USER_INPUT_IMAGE: "Image",
    NodeType.USER_INPUT_VIDEO: "Video",
}


def new_change_hash() -> str:
    return uuid.uuid4().hex[:16]


def check_graph_structure(nodes: Sequence[WorkflowNode], edges: Sequence[WorkflowEdge]) -> None:
    """Node ids must be unique and every edge must join two proposed nodes"""
    errors: List[Dict[str, Any]] = []
    seen = set()
    for node in nodes:
        if node.id in seen:
            errors.append({
                "field": "nodes",
                "code": "DUPLICATE_NODE_ID",
                "message": f"Node id '{node.id}' is used more than once",
                "nodeId": node.id,
            })
        seen.add(node.id)

    for edge in edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in seen:
                errors.append({
                    "field": "edges",
                    "code": "INVALID_EDGE_ENDPOINT",
                    "message": f"Edge references unknown node '{endpoint}'",
                    "nodeId": endpoint,
                })
    if errors:
        raise ValidationError("Workflow graph is malformed", errors=errors)


def clean_connected_inputs(nodes: Sequence[WorkflowNode], edges: Sequence[WorkflowEdge]) -> List[WorkflowNode]:
    """Drop manual config values for inputs that an incoming edge already feeds"""
    connected: Dict[str, set] = {}
    for edge in edges:
        connected.setdefault(edge.target, set()).add(edge.target_handle)

    cleaned = []
    for node in nodes:
        handles = connected.get(node.id)
        if handles and handles & node.config_values.keys():
            node = node.model_copy(update={
                "config_values": {k: v for k, v in node.config_values.items() if k not in handles}
            })
        cleaned.append(node)
    return cleaned


def node_from_row(row: WorkflowNodeDB) -> WorkflowNode:
    return WorkflowNode(
        id=row.client_id,
        type=row.type,
        definition_id=row.definition_id,
        system_node_type=row.system_node_type,
        position=Position(x=row.position_x, y=row.position_y),
        width=row.width,
        height=row.height,
        config_values=row.config_values or {},
        ui_metadata=row.ui_metadata or {},
    )


def edges_from_rows(edge_rows: Sequence[WorkflowEdgeDB], node_rows: Sequence[WorkflowNodeDB]) -> List[WorkflowEdge]:
    """Re-stitch stored edges to the editor's node ids"""
    client_ids = {n.id: n.client_id for n in node_rows}
    return [
        WorkflowEdge(
            id=e.client_id,
            source=client_ids.get(e.source_node_id),
            source_handle=e.source_socket_name,
            target=client_ids.get(e.target_node_id),
            target_handle=e.target_socket_name,
            type=e.edge_type,
            animated=bool(e.animated),
        )
        for e in edge_rows
    ]


def compile_input_manifest(nodes: Sequence[WorkflowNode]) -> List[InputManifestEntry]:
    manifest = []
    for node in nodes:
        if node.type not in USER_INPUT_TYPES:
            continue
        config = node.config_values
        manifest.append(InputManifestEntry(
            variable_key=config.get("variable_key") or f"input_{node.id[:8]}",
            label=config.get("label") or node.ui_metadata.get("label") or "Input",
            type=config.get("input_type") or USER_INPUT_TYPES[node.type],
            is_required=config.get("is_required") is not False,
            default_value=config.get("default_value"),
            ui_metadata=node.ui_metadata,
        ))
    return manifest


class WorkflowService:
    """
    Workflow CRUD and the optimistic-concurrency save protocol.
    Writers race on `change_hash`; the loser gets a ConflictError and must
    refetch. Nothing is merged.
    """

    def __init__(
        self,
        db: AsyncSession,
        validation_service: ValidationService,
        registry: NodeRegistryService,
        activity_log: ActivityLogClient
    ):
        self.db = db
        self.repository = WorkflowRepository(db)
        self.validation_service = validation_service
        self.registry = registry
        self.activity_log = activity_log

    async def _load_owned(self, workflow_id: uuid.UUID, caller_id: str) -> WorkflowDB:
        workflow = await self.repository.get_workflow(workflow_id)
        if not workflow:
            raise NotFoundError("Workflow not found")
        if workflow.owner_id != caller_id:
            raise AccessDeniedError("You do not have access to this workflow")
        return workflow

    # ------------------------------------------------------------------ CRUD

    async def list_workflows(
        self,
        caller_id: str,
        status: Optional[WorkflowStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[WorkflowSummary]:
        rows = await self.repository.list_workflows(
            caller_id, status.value if status else None, search, limit, offset
        )
        return [WorkflowSummary.model_validate(row) for row in rows]

    async def get_workflow(self, workflow_id: uuid.UUID, caller_id: str) -> WorkflowDetail:
        workflow = await self._load_owned(workflow_id, caller_id)
        node_rows, edge_rows = await self.repository.get_graph(workflow.id)

        definition_ids = [n.definition_id for n in node_rows if n.type == NodeType.AI_MODEL.value and n.definition_id]
        definitions = await self.registry.get_definitions_by_ids(definition_ids)

        nodes = []
        for row in node_rows:
            definition = definitions.get(row.definition_id) if row.type == NodeType.AI_MODEL.value else None
            nodes.append(WorkflowNodeOut(
                **node_from_row(row).model_dump(),
                definition=DefinitionRef.model_validate(definition) if definition else None,
            ))

        return WorkflowDetail(
            **WorkflowSummary.model_validate(workflow).model_dump(),
            viewport=Viewport(**(workflow.viewport_state or {})),
            nodes=nodes,
            edges=edges_from_rows(edge_rows, node_rows),
        )

    async def create_workflow(self, request: CreateWorkflowRequest, caller_id: str) -> WorkflowSummary:
        async with transaction(self.db):
            workflow = await self.repository.create_workflow(
                owner_id=caller_id,
                name=request.name,
                description=request.description,
                change_hash=new_change_hash(),
            )
        logger.info(f"Created workflow {workflow.id} for user {caller_id}")
        self.activity_log.publish(caller_id, "workflow", "create", workflow.id)
        return WorkflowSummary.model_validate(workflow)

    async def update_workflow(self, workflow_id: uuid.UUID, request: UpdateWorkflowRequest, caller_id: str) -> WorkflowSummary:
        workflow = await self._load_owned(workflow_id, caller_id)
        updates = request.model_dump(exclude_unset=True, exclude_none=True)
        if updates.get("status") is not None:
            updates["status"] = updates["status"].value
            if updates["status"] == WorkflowStatus.ARCHIVED.value:
                updates["archived_at"] = datetime.now(timezone.utc)
        async with transaction(self.db):
            await self.repository.update_workflow(workflow, updates)
        self.activity_log.publish(caller_id, "workflow", "update", workflow.id)
        return WorkflowSummary.model_validate(workflow)

    async def delete_workflow(self, workflow_id: uuid.UUID, caller_id: str) -> None:
        """Soft delete"""
        workflow = await self._load_owned(workflow_id, caller_id)
        async with transaction(self.db):
            await self.repository.update_workflow(workflow, {
                "status": WorkflowStatus.ARCHIVED.value,
                "archived_at": datetime.now(timezone.utc),
            })
        logger.info(f"Archived workflow {workflow_id}")
        self.activity_log.publish(caller_id, "workflow", "delete", workflow_id)

    # ------------------------------------------------------------------ save protocol

    async def auto_save(self, workflow_id: uuid.UUID, caller_id: str, request: AutoSaveRequest) -> SaveResult:
        return await self._save_graph(workflow_id, caller_id, request)

    async def save(self, workflow_id: uuid.UUID, caller_id: str, request: SaveWorkflowRequest) -> SaveResult:
        metadata = request.metadata.model_dump(exclude_unset=True, exclude_none=True)
        result = await self._save_graph(workflow_id, caller_id, request, metadata)
        self.activity_log.publish(caller_id, "workflow", "save", workflow_id)
        return result

    async def _save_graph(
        self,
        workflow_id: uuid.UUID,
        caller_id: str,
        request: Union[AutoSaveRequest, SaveWorkflowRequest],
        metadata: Optional[Dict[str, Any]] = None
    ) -> SaveResult:
        workflow = await self._load_owned(workflow_id, caller_id)
        expected_hash = workflow.change_hash

        if request.change_hash and expected_hash and request.change_hash != expected_hash:
            logger.warning(f"Save conflict on workflow {workflow_id}: client {request.change_hash}, server {expected_hash}")
            raise ConflictError(server_hash=expected_hash)

        check_graph_structure(request.nodes, request.edges)
        nodes = clean_connected_inputs(request.nodes, request.edges)

        validation = await self.validation_service.validate_workflow(nodes, request.edges)
        if not validation.valid:
            logger.info(f"Rejected save of workflow {workflow_id}: {len(validation.errors)} field errors")
            raise ValidationError(errors=validation.errors, node_errors=validation.node_errors)

        change_hash = new_change_hash()
        saved_at = datetime.now(timezone.utc)
        async with transaction(self.db):
            # The hash read above must still be current when the write lands
            claimed = await self.repository.claim_change_hash(
                workflow, expected_hash, change_hash, request.viewport, saved_at
            )
            if not claimed:
                server_hash = await self.repository.get_change_hash(workflow.id)
                logger.warning(f"Save conflict on workflow {workflow_id}: lost race to hash {server_hash}")
                raise ConflictError(server_hash=server_hash)
            await self.repository.replace_graph(workflow, nodes, request.edges)
            if metadata:
                await self.repository.update_workflow(workflow, metadata)

        logger.info(f"Saved workflow {workflow_id} ({len(nodes)} nodes, {len(request.edges)} edges)")
        return SaveResult(workflow_id=workflow.id, saved_at=saved_at, change_hash=change_hash)

    # ------------------------------------------------------------------ publish

    async def load_graph(self, workflow_id: uuid.UUID, caller_id: str) -> Tuple[WorkflowDB, List[WorkflowNode], List[WorkflowEdge]]:
        workflow = await self._load_owned(workflow_id, caller_id)
        node_rows, edge_rows = await self.repository.get_graph(workflow.id)
        return workflow, [node_from_row(n) for n in node_rows], edges_from_rows(edge_rows, node_rows)

    async def publish(self, workflow_id: uuid.UUID, caller_id: str) -> PublishResult:
        workflow, nodes, edges = await self.load_graph(workflow_id, caller_id)

        validation = await self.validation_service.validate_workflow(nodes, edges)
        if not validation.valid:
            raise ValidationError("Workflow cannot be published", errors=validation.errors, node_errors=validation.node_errors)

        manifest = compile_input_manifest(nodes)
        published_at = datetime.now(timezone.utc)
        async with transaction(self.db):
            await self.repository.update_workflow(workflow, {
                "status": WorkflowStatus.PUBLISHED.value,
                "published_at": published_at,
            })
        logger.info(f"Published workflow {workflow_id} with {len(manifest)} inputs")
        self.activity_log.publish(caller_id, "workflow", "publish", workflow_id)
        return PublishResult(
            workflow_id=workflow.id,
            status=WorkflowStatus.PUBLISHED,
            published_at=published_at,
            input_manifest=manifest,
        )

    async def get_validation_rules(self, definition_id: uuid.UUID) -> Dict[str, FieldRule]:
        await self.registry.get_definition(definition_id)
        return await self.validation_service.get_rules(definition_id)
