import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from workflow_builder.core.exceptions import NotFoundError
from workflow_builder.core.logging import get_logger
from workflow_builder.models.node_definition import IODefinitionDB, NodeDefinitionDB, SocketTypeDB
from workflow_builder.repositories.node_definition_repository import NodeDefinitionRepository
from workflow_builder.schemas.common import IODirection, Modality
from workflow_builder.schemas.node_definition import IODefinitionOut, NodeDefinitionOut, SocketType

logger = get_logger(__name__)

_MODALITIES = {m.value for m in Modality}


@dataclass
class ModelProfile:
    """Pricing-relevant view of an AI-model definition"""
    model_id: str
    pricing: Any = None
    input_types: List[str] = field(default_factory=list)
    output_types: List[str] = field(default_factory=list)


def socket_modality(socket_type: Optional[SocketTypeDB]) -> Optional[str]:
    if socket_type is None:
        return None
    for candidate in (socket_type.slug, socket_type.name):
        if candidate and candidate.lower() in _MODALITIES:
            return candidate.lower()
    return None


class NodeRegistryService:
    """Read side of the node-type catalog"""

    def __init__(self, repository: NodeDefinitionRepository):
        self.repository = repository

    async def get_definition(self, definition_id: uuid.UUID) -> NodeDefinitionDB:
        definition = await self.repository.get_definition(definition_id)
        if not definition:
            raise NotFoundError(f"Node definition '{definition_id}' not found")
        return definition

    async def get_definition_detail(self, definition_id: uuid.UUID) -> NodeDefinitionOut:
        definition = await self.get_definition(definition_id)
        return (await self._with_io([definition]))[0]

    async def list_definitions(
        self,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[NodeDefinitionOut]:
        definitions = await self.repository.list_definitions(kind, status, search, limit, offset)
        return await self._with_io(definitions)

    async def get_active_by_slug(self, slug: str) -> Optional[NodeDefinitionDB]:
        rows = await self.repository.get_active_by_slug(slug)
        if len(rows) > 1:
            logger.error(f"Slug '{slug}' has {len(rows)} active definitions, using newest {rows[0].id}")
        return rows[0] if rows else None

    async def get_definitions_by_ids(self, definition_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, NodeDefinitionDB]:
        rows = await self.repository.get_definitions_by_ids(definition_ids)
        return {row.id: row for row in rows}

    async def get_input_definitions(self, definition_id: uuid.UUID) -> Tuple[List[IODefinitionDB], Dict[uuid.UUID, SocketTypeDB]]:
        """INPUT sockets of a definition plus the socket types they reference"""
        inputs = await self.repository.get_io_definitions(definition_id, IODirection.INPUT.value)
        socket_types = await self.repository.get_socket_types_by_ids(io.socket_type_id for io in inputs)
        return inputs, {st.id: st for st in socket_types}

    async def list_socket_types(self) -> List[SocketType]:
        return [SocketType.model_validate(st) for st in await self.repository.list_socket_types()]

    async def get_model_profiles(self, definition_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, ModelProfile]:
        """Pricing and socket modalities for a batch of definitions"""
        definitions = await self.repository.get_definitions_by_ids(definition_ids)
        if not definitions:
            return {}
        io_rows = await self.repository.get_io_definitions_by_definition_ids(d.id for d in definitions)
        socket_types = await self.repository.get_socket_types_by_ids(io.socket_type_id for io in io_rows)
        socket_map = {st.id: st for st in socket_types}

        profiles = {
            d.id: ModelProfile(model_id=str(d.id), pricing=d.pricing_config)
            for d in definitions
        }
        for io in io_rows:
            modality = socket_modality(socket_map.get(io.socket_type_id))
            if modality is None:
                continue
            profile = profiles[io.definition_id]
            target = profile.input_types if io.direction == IODirection.INPUT.value else profile.output_types
            if modality not in target:
                target.append(modality)
        return profiles

    async def _with_io(self, definitions: List[NodeDefinitionDB]) -> List[NodeDefinitionOut]:
        if not definitions:
            return []
        io_rows = await self.repository.get_io_definitions_by_definition_ids(d.id for d in definitions)
        socket_types = await self.repository.get_socket_types_by_ids(io.socket_type_id for io in io_rows)
        socket_map = {st.id: SocketType.model_validate(st) for st in socket_types}

        io_by_definition: Dict[uuid.UUID, List[IODefinitionOut]] = {}
        for io in io_rows:
            out = IODefinitionOut.model_validate(io)
            out.socket_type = socket_map.get(io.socket_type_id)
            io_by_definition.setdefault(io.definition_id, []).append(out)

        result = []
        for definition in definitions:
            out = NodeDefinitionOut.model_validate(definition)
            out.io_definitions = io_by_definition.get(definition.id, [])
            result.append(out)
        return result
