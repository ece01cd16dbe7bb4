import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from workflow_builder.models.node_definition import IODefinitionDB, NodeDefinitionDB, SocketTypeDB

IO_COLUMNS = (
    "socket_type_id", "direction", "name", "label", "description",
    "is_required", "is_list", "default_value", "constraints", "sort_order",
)


class NodeDefinitionRepository:
    """
    Catalog persistence: node definitions, their IO sockets and socket types.
    Lookups are by primary key or id list, no joins. Writes flush only.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------ definitions

    async def get_definition(self, definition_id: uuid.UUID) -> Optional[NodeDefinitionDB]:
        result = await self.db.execute(
            select(NodeDefinitionDB).where(NodeDefinitionDB.id == definition_id)
        )
        return result.scalar_one_or_none()

    async def get_definitions_by_ids(self, definition_ids: Iterable[uuid.UUID]) -> List[NodeDefinitionDB]:
        ids = list({i for i in definition_ids if i is not None})
        if not ids:
            return []
        result = await self.db.execute(
            select(NodeDefinitionDB).where(NodeDefinitionDB.id.in_(ids))
        )
        return list(result.scalars().all())

    async def get_active_by_slug(self, slug: str) -> List[NodeDefinitionDB]:
        result = await self.db.execute(
            select(NodeDefinitionDB).where(
                NodeDefinitionDB.slug == slug,
                NodeDefinitionDB.status == "active"
            ).order_by(NodeDefinitionDB.created_at.desc(), NodeDefinitionDB.id)
        )
        return list(result.scalars().all())

    async def list_definitions(
        self,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[NodeDefinitionDB]:
        query = select(NodeDefinitionDB)
        if kind:
            query = query.where(NodeDefinitionDB.kind == kind)
        if status:
            query = query.where(NodeDefinitionDB.status == status)
        if search:
            term = f"%{search.lower()}%"
            query = query.where(or_(NodeDefinitionDB.name.ilike(term), NodeDefinitionDB.slug.ilike(term)))
        query = query.order_by(NodeDefinitionDB.name, NodeDefinitionDB.version).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_definition(self, values: Dict[str, Any]) -> NodeDefinitionDB:
        definition = NodeDefinitionDB(**values)
        self.db.add(definition)
        await self.db.flush()
        return definition

    async def update_definition(self, definition: NodeDefinitionDB, updates: Dict[str, Any]) -> NodeDefinitionDB:
        for key, value in updates.items():
            setattr(definition, key, value)
        await self.db.flush()
        return definition

    async def deprecate_if_active(self, definition: NodeDefinitionDB, deprecated_at: datetime) -> bool:
        """Conditional active -> deprecated move; False if the row already left active"""
        result = await self.db.execute(
            update(NodeDefinitionDB)
            .where(NodeDefinitionDB.id == definition.id, NodeDefinitionDB.status == "active")
            .values(status="deprecated", deprecated_at=deprecated_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.db.refresh(definition)
        return True

    # ------------------------------------------------------------------ IO definitions

    async def get_io_definitions(self, definition_id: uuid.UUID, direction: Optional[str] = None) -> List[IODefinitionDB]:
        query = select(IODefinitionDB).where(IODefinitionDB.definition_id == definition_id)
        if direction:
            query = query.where(IODefinitionDB.direction == direction)
        query = query.order_by(IODefinitionDB.sort_order, IODefinitionDB.name)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_io_definitions_by_definition_ids(self, definition_ids: Iterable[uuid.UUID]) -> List[IODefinitionDB]:
        ids = list({i for i in definition_ids if i is not None})
        if not ids:
            return []
        result = await self.db.execute(
            select(IODefinitionDB)
            .where(IODefinitionDB.definition_id.in_(ids))
            .order_by(IODefinitionDB.definition_id, IODefinitionDB.sort_order)
        )
        return list(result.scalars().all())

    async def get_io_definition(self, io_id: uuid.UUID) -> Optional[IODefinitionDB]:
        result = await self.db.execute(select(IODefinitionDB).where(IODefinitionDB.id == io_id))
        return result.scalar_one_or_none()

    async def add_io_definitions(self, definition_id: uuid.UUID, rows: Iterable[Dict[str, Any]]) -> List[IODefinitionDB]:
        created = []
        for row in rows:
            io = IODefinitionDB(definition_id=definition_id, **{k: row.get(k) for k in IO_COLUMNS if k in row})
            self.db.add(io)
            created.append(io)
        await self.db.flush()
        return created

    async def update_io_definition(self, io: IODefinitionDB, updates: Dict[str, Any]) -> IODefinitionDB:
        for key, value in updates.items():
            setattr(io, key, value)
        await self.db.flush()
        return io

    async def delete_io_definition(self, io: IODefinitionDB) -> None:
        await self.db.delete(io)
        await self.db.flush()

    async def delete_io_definitions(self, definition_id: uuid.UUID) -> None:
        await self.db.execute(delete(IODefinitionDB).where(IODefinitionDB.definition_id == definition_id))

    # ------------------------------------------------------------------ socket types

    async def get_socket_types_by_ids(self, ids: Iterable[uuid.UUID]) -> List[SocketTypeDB]:
        ids = list({i for i in ids if i is not None})
        if not ids:
            return []
        result = await self.db.execute(select(SocketTypeDB).where(SocketTypeDB.id.in_(ids)))
        return list(result.scalars().all())

    async def list_socket_types(self) -> List[SocketTypeDB]:
        result = await self.db.execute(select(SocketTypeDB).order_by(SocketTypeDB.name))
        return list(result.scalars().all())

    async def create_socket_type(self, name: str, slug: str, color_hex: Optional[str] = None) -> SocketTypeDB:
        socket_type = SocketTypeDB(name=name, slug=slug, color_hex=color_hex)
        self.db.add(socket_type)
        await self.db.flush()
        return socket_type


def io_row_to_dict(io: IODefinitionDB) -> Dict[str, Any]:
    return {column: getattr(io, column) for column in IO_COLUMNS}
