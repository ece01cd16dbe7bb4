import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from workflow_builder.models.workflow import WorkflowDB, WorkflowEdgeDB, WorkflowNodeDB
from workflow_builder.schemas.workflow import Viewport, WorkflowEdge, WorkflowNode


class WorkflowRepository:
    """
    Persistence for workflows and their node/edge sets.
    Methods flush but never commit; callers own the transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_workflow(self, owner_id: str, name: str, description: Optional[str], change_hash: str) -> WorkflowDB:
        workflow = WorkflowDB(
            owner_id=owner_id,
            name=name,
            description=description,
            status="draft",
            change_hash=change_hash,
            viewport_state=Viewport().model_dump(),
        )
        self.db.add(workflow)
        await self.db.flush()
        return workflow

    async def get_workflow(self, workflow_id: uuid.UUID) -> Optional[WorkflowDB]:
        result = await self.db.execute(
            select(WorkflowDB).where(
                WorkflowDB.id == workflow_id,
                WorkflowDB.archived_at.is_(None)
            )
        )
        return result.scalar_one_or_none()

    async def list_workflows(
        self,
        owner_id: str,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[WorkflowDB]:
        query = select(WorkflowDB).where(
            WorkflowDB.owner_id == owner_id,
            WorkflowDB.archived_at.is_(None)
        )
        if status:
            query = query.where(WorkflowDB.status == status)
        if search:
            term = f"%{search}%"
            query = query.where(or_(WorkflowDB.name.ilike(term), WorkflowDB.description.ilike(term)))
        query = query.order_by(WorkflowDB.updated_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_workflow(self, workflow: WorkflowDB, updates: Dict[str, Any]) -> WorkflowDB:
        for key, value in updates.items():
            setattr(workflow, key, value)
        await self.db.flush()
        return workflow

    async def get_nodes(self, workflow_id: uuid.UUID) -> List[WorkflowNodeDB]:
        result = await self.db.execute(
            select(WorkflowNodeDB).where(WorkflowNodeDB.workflow_id == workflow_id)
        )
        return list(result.scalars().all())

    async def get_edges(self, workflow_id: uuid.UUID) -> List[WorkflowEdgeDB]:
        result = await self.db.execute(
            select(WorkflowEdgeDB).where(WorkflowEdgeDB.workflow_id == workflow_id)
        )
        return list(result.scalars().all())

    async def get_graph(self, workflow_id: uuid.UUID) -> Tuple[List[WorkflowNodeDB], List[WorkflowEdgeDB]]:
        return await self.get_nodes(workflow_id), await self.get_edges(workflow_id)

    async def get_change_hash(self, workflow_id: uuid.UUID) -> Optional[str]:
        result = await self.db.execute(select(WorkflowDB.change_hash).where(WorkflowDB.id == workflow_id))
        return result.scalar_one_or_none()

    async def claim_change_hash(
        self,
        workflow: WorkflowDB,
        expected_hash: Optional[str],
        change_hash: str,
        viewport: Viewport,
        saved_at: datetime
    ) -> bool:
        """
        Rotate the hash only while the stored one still equals `expected_hash`.
        Returns False when another writer got there first; nothing is changed then.
        """
        if expected_hash is None:
            current = WorkflowDB.change_hash.is_(None)
        else:
            current = WorkflowDB.change_hash == expected_hash
        result = await self.db.execute(
            update(WorkflowDB)
            .where(WorkflowDB.id == workflow.id, current)
            .values(change_hash=change_hash, viewport_state=viewport.model_dump(), auto_saved_at=saved_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.db.refresh(workflow)
        return True

    async def replace_graph(self, workflow: WorkflowDB, nodes: List[WorkflowNode], edges: List[WorkflowEdge]) -> None:
        """Swap the whole node and edge set of a workflow"""
        await self.db.execute(delete(WorkflowEdgeDB).where(WorkflowEdgeDB.workflow_id == workflow.id))
        await self.db.execute(delete(WorkflowNodeDB).where(WorkflowNodeDB.workflow_id == workflow.id))

        node_ids: Dict[str, uuid.UUID] = {}
        for node in nodes:
            row = WorkflowNodeDB(
                id=uuid.uuid4(),
                workflow_id=workflow.id,
                client_id=node.id,
                type=node.type.value,
                definition_id=node.definition_id,
                system_node_type=node.system_node_type,
                position_x=node.position.x,
                position_y=node.position.y,
                width=node.width,
                height=node.height,
                config_values=node.config_values,
                ui_metadata=node.ui_metadata,
            )
            node_ids[node.id] = row.id
            self.db.add(row)
        # Nodes must exist before edges reference them
        await self.db.flush()

        for edge in edges:
            self.db.add(WorkflowEdgeDB(
                workflow_id=workflow.id,
                client_id=edge.id or uuid.uuid4().hex,
                source_node_id=node_ids[edge.source],
                source_socket_name=edge.source_handle,
                target_node_id=node_ids[edge.target],
                target_socket_name=edge.target_handle,
                edge_type=edge.type,
                animated=edge.animated,
            ))
        await self.db.flush()
