"""
Node definition lifecycle.

    draft -> active -> deprecated
    draft -> archived

Only draft and active definitions accept edits. A structural edit to an
active definition (config schema or IO set) never mutates it: the row is
deprecated and a new active row with the next version is inserted, so
saved workflow nodes keep validating against the contract they were saved
under. Cosmetic edits apply in place.
"""
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from workflow_builder.core.database import transaction
from workflow_builder.core.exceptions import (
    ImmutableStateError, InvalidTransitionError, NotFoundError, ValidationError, VersionConflictError,
)
from workflow_builder.core.logging import get_logger
from workflow_builder.models.node_definition import IODefinitionDB, NodeDefinitionDB
from workflow_builder.repositories.node_definition_repository import io_row_to_dict
from workflow_builder.schemas.common import DEFINITION_TRANSITIONS, EDITABLE_DEFINITION_STATUSES, DefinitionStatus
from workflow_builder.schemas.node_definition import (
    IODefinitionCreate, IODefinitionOut, IODefinitionUpdate, NodeDefinitionCreate, NodeDefinitionOut,
    NodeDefinitionUpdate, SocketType, VersionBumpResult,
)
from workflow_builder.services.activity_log import ActivityLogClient
from workflow_builder.services.node_registry import NodeRegistryService
from workflow_builder.services.validation_service import ValidationService

logger = get_logger(__name__)

# Columns carried over to a new version
DEFINITION_COLUMNS = ("kind", "slug", "name", "description", "icon", "color_hex", "config_schema", "pricing_config")


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def canonical_io(rows: Iterable[Dict[str, Any]]) -> List[Tuple]:
    """
    Formatting-insensitive form of an IO set: sorted by name, flags as 0/1,
    sort order as int, JSON blobs key-sorted. Labels and descriptions are
    cosmetic and left out.
    """
    canonical = []
    for row in rows:
        socket_type_id = row.get("socket_type_id")
        canonical.append((
            row.get("name") or "",
            str(_enum_value(row.get("direction")) or ""),
            str(socket_type_id) if socket_type_id is not None else "",
            1 if row.get("is_required") else 0,
            1 if row.get("is_list") else 0,
            canonical_json(row.get("default_value")),
            canonical_json(row.get("constraints") or {}),
            int(row.get("sort_order") or 0),
        ))
    return sorted(canonical, key=lambda r: (r[0], r[1]))


def io_create_to_row(io: IODefinitionCreate) -> Dict[str, Any]:
    row = io.model_dump()
    row["direction"] = io.direction.value
    return row


def needs_versioning(
    definition: NodeDefinitionDB,
    updates: Dict[str, Any],
    current_io: Sequence[IODefinitionDB],
    incoming_io: Optional[Sequence[Dict[str, Any]]]
) -> bool:
    """Whether an edit to an active definition changes its structural contract"""
    if "config_schema" in updates:
        if canonical_json(updates["config_schema"] or {}) != canonical_json(definition.config_schema or {}):
            return True
    if incoming_io is not None:
        if canonical_io(incoming_io) != canonical_io(io_row_to_dict(io) for io in current_io):
            return True
    return False


def next_version(version: Optional[str]) -> str:
    """Increment the patch component: 1.2.3 -> 1.2.4, 1.0 -> 1.0.1"""
    if not version:
        return "1.0.1"
    parts = version.split(".")
    if len(parts) < 3 or not parts[2].isdigit():
        return f"{version}.1"
    parts[2] = str(int(parts[2]) + 1)
    return ".".join(parts)


class NodeDefinitionService:
    """Write side of the node-type catalog"""

    def __init__(
        self,
        db: AsyncSession,
        registry: NodeRegistryService,
        validation_service: ValidationService,
        activity_log: ActivityLogClient
    ):
        self.db = db
        self.registry = registry
        self.repository = registry.repository
        self.validation_service = validation_service
        self.activity_log = activity_log

    async def _ensure_slug_available(self, slug: str, exclude_id: Optional[uuid.UUID] = None) -> None:
        """At most one active definition per slug"""
        active = await self.registry.get_active_by_slug(slug)
        if active is not None and active.id != exclude_id:
            raise ValidationError(
                f"Slug '{slug}' already has an active definition",
                errors=[{
                    "field": "slug",
                    "code": "ACTIVE_SLUG_EXISTS",
                    "message": f"Definition {active.id} is already active for '{slug}'",
                }],
            )

    async def _ensure_socket_types(self, rows: Sequence[Dict[str, Any]]) -> None:
        wanted = {row["socket_type_id"] for row in rows if row.get("socket_type_id") is not None}
        if not wanted:
            return
        found = {st.id for st in await self.repository.get_socket_types_by_ids(wanted)}
        missing = wanted - found
        if missing:
            raise ValidationError(
                "Unknown socket type",
                errors=[
                    {"field": "socket_type_id", "code": "UNKNOWN_SOCKET_TYPE", "message": f"Socket type {m} does not exist"}
                    for m in sorted(missing, key=str)
                ],
            )

    # ------------------------------------------------------------------ reads

    async def get_definition(self, definition_id: uuid.UUID) -> NodeDefinitionOut:
        return await self.registry.get_definition_detail(definition_id)

    async def list_definitions(self, **filters) -> List[NodeDefinitionOut]:
        return await self.registry.list_definitions(**filters)

    async def list_socket_types(self) -> List[SocketType]:
        return await self.registry.list_socket_types()

    # ------------------------------------------------------------------ create

    async def create_definition(self, request: NodeDefinitionCreate, caller_id: Optional[str] = None) -> NodeDefinitionOut:
        if request.status == DefinitionStatus.ACTIVE:
            await self._ensure_slug_available(request.slug)
        io_rows = [io_create_to_row(io) for io in request.io_definitions]
        await self._ensure_socket_types(io_rows)

        values = request.model_dump(exclude={"io_definitions"})
        values["kind"] = request.kind.value
        values["status"] = request.status.value

        async with transaction(self.db):
            definition = await self.repository.create_definition(values)
            await self.repository.add_io_definitions(definition.id, io_rows)

        logger.info(f"Created node definition {definition.slug}@{definition.version} ({definition.id})")
        if caller_id:
            self.activity_log.publish(caller_id, "node_definition", "create", definition.id)
        return await self.registry.get_definition_detail(definition.id)

    # ------------------------------------------------------------------ update

    async def update_definition(
        self,
        definition_id: uuid.UUID,
        patch: NodeDefinitionUpdate,
        caller_id: Optional[str] = None
    ) -> Union[NodeDefinitionOut, VersionBumpResult]:
        """
        Apply a patch. Returns the updated definition, or a VersionBumpResult
        when the edit produced a new active version.
        """
        definition = await self.registry.get_definition(definition_id)
        current_status = DefinitionStatus(definition.status)
        if current_status not in EDITABLE_DEFINITION_STATUSES:
            raise ImmutableStateError(f"Cannot edit a {current_status.value} definition")

        updates = patch.field_updates()
        target_status = updates.pop("status", None)
        if target_status == current_status:
            target_status = None
        if target_status is not None and target_status not in DEFINITION_TRANSITIONS[current_status]:
            raise InvalidTransitionError(
                f"Cannot move definition from {current_status.value} to {target_status.value}"
            )
        if "config_schema" in updates and updates["config_schema"] is None:
            updates["config_schema"] = {}

        incoming_io = None
        if patch.io_definitions is not None:
            incoming_io = [io_create_to_row(io) for io in patch.io_definitions]
            await self._ensure_socket_types(incoming_io)

        if current_status == DefinitionStatus.ACTIVE:
            current_io = await self.repository.get_io_definitions(definition.id)
            if needs_versioning(definition, updates, current_io, incoming_io):
                return await self._create_version(definition, updates, current_io, incoming_io, caller_id)

        return await self._update_in_place(definition, current_status, updates, target_status, incoming_io, caller_id)

    async def _update_in_place(
        self,
        definition: NodeDefinitionDB,
        current_status: DefinitionStatus,
        updates: Dict[str, Any],
        target_status: Optional[DefinitionStatus],
        incoming_io: Optional[List[Dict[str, Any]]],
        caller_id: Optional[str]
    ) -> NodeDefinitionOut:
        now = datetime.now(timezone.utc)
        becomes_active = target_status == DefinitionStatus.ACTIVE
        stays_active = current_status == DefinitionStatus.ACTIVE and target_status is None
        slug = updates.get("slug", definition.slug)
        if becomes_active or (stays_active and slug != definition.slug):
            await self._ensure_slug_available(slug, exclude_id=definition.id)

        if target_status is not None:
            updates["status"] = target_status.value
            if target_status == DefinitionStatus.DEPRECATED:
                updates["deprecated_at"] = now
            elif target_status == DefinitionStatus.ARCHIVED:
                updates["archived_at"] = now

        replace_io = current_status == DefinitionStatus.DRAFT and incoming_io is not None
        async with transaction(self.db):
            await self.repository.update_definition(definition, updates)
            if replace_io:
                await self.repository.delete_io_definitions(definition.id)
                await self.repository.add_io_definitions(definition.id, incoming_io)

        if replace_io or target_status is not None:
            self.validation_service.clear_cache(definition.id)
        logger.info(f"Updated node definition {definition.id} in place: {sorted(updates)}")
        if caller_id:
            self.activity_log.publish(caller_id, "node_definition", "update", definition.id)
        return await self.registry.get_definition_detail(definition.id)

    async def _create_version(
        self,
        definition: NodeDefinitionDB,
        updates: Dict[str, Any],
        current_io: Sequence[IODefinitionDB],
        incoming_io: Optional[List[Dict[str, Any]]],
        caller_id: Optional[str]
    ) -> VersionBumpResult:
        values = {column: getattr(definition, column) for column in DEFINITION_COLUMNS}
        values.update({k: v for k, v in updates.items() if k in DEFINITION_COLUMNS})
        values.update(
            status=DefinitionStatus.ACTIVE.value,
            version=next_version(definition.version),
            deprecated_at=None,
            archived_at=None,
        )
        if values["slug"] != definition.slug:
            await self._ensure_slug_available(values["slug"], exclude_id=definition.id)

        io_rows = incoming_io if incoming_io is not None else [io_row_to_dict(io) for io in current_io]
        previous_id = definition.id

        # Deprecate, insert and clone as one unit: a partial run would leave
        # the slug with zero or two active rows
        async with transaction(self.db):
            if not await self.repository.deprecate_if_active(definition, datetime.now(timezone.utc)):
                logger.warning(f"Node definition {previous_id} left active before it could be versioned")
                raise VersionConflictError(
                    f"Definition '{previous_id}' was changed concurrently; reload the active version and retry"
                )
            new_definition = await self.repository.create_definition(values)
            await self.repository.add_io_definitions(new_definition.id, io_rows)

        self.validation_service.clear_cache(previous_id)
        logger.info(
            f"Versioned node definition {values['slug']}: {previous_id} -> "
            f"{new_definition.id} ({definition.version} -> {new_definition.version})"
        )
        if caller_id:
            self.activity_log.publish(caller_id, "node_definition", "version", new_definition.id)
        return VersionBumpResult(
            message=f"Definition versioned to {new_definition.version}",
            previous_definition_id=previous_id,
            new_definition_id=new_definition.id,
            version=new_definition.version,
        )

    # ------------------------------------------------------------------ IO sub-resources

    async def _draft_parent(self, definition_id: uuid.UUID) -> NodeDefinitionDB:
        definition = await self.registry.get_definition(definition_id)
        if definition.status != DefinitionStatus.DRAFT.value:
            raise ImmutableStateError(
                f"IO definitions can only be edited on draft definitions; "
                f"update the {definition.status} definition to create a new version"
            )
        return definition

    async def _owned_io(self, definition_id: uuid.UUID, io_id: uuid.UUID) -> IODefinitionDB:
        io = await self.repository.get_io_definition(io_id)
        if io is None or io.definition_id != definition_id:
            raise NotFoundError(f"IO definition '{io_id}' not found")
        return io

    async def _io_out(self, io: IODefinitionDB) -> IODefinitionOut:
        out = IODefinitionOut.model_validate(io)
        socket_types = await self.repository.get_socket_types_by_ids([io.socket_type_id])
        out.socket_type = SocketType.model_validate(socket_types[0]) if socket_types else None
        return out

    async def add_io_definition(self, definition_id: uuid.UUID, request: IODefinitionCreate) -> IODefinitionOut:
        await self._draft_parent(definition_id)
        row = io_create_to_row(request)
        await self._ensure_socket_types([row])
        async with transaction(self.db):
            io = (await self.repository.add_io_definitions(definition_id, [row]))[0]
        self.validation_service.clear_cache(definition_id)
        return await self._io_out(io)

    async def update_io_definition(
        self,
        definition_id: uuid.UUID,
        io_id: uuid.UUID,
        request: IODefinitionUpdate
    ) -> IODefinitionOut:
        await self._draft_parent(definition_id)
        io = await self._owned_io(definition_id, io_id)
        updates = request.field_updates()
        if updates.get("direction") is not None:
            updates["direction"] = updates["direction"].value
        await self._ensure_socket_types([updates])
        async with transaction(self.db):
            await self.repository.update_io_definition(io, updates)
        self.validation_service.clear_cache(definition_id)
        return await self._io_out(io)

    async def delete_io_definition(self, definition_id: uuid.UUID, io_id: uuid.UUID) -> None:
        await self._draft_parent(definition_id)
        io = await self._owned_io(definition_id, io_id)
        async with transaction(self.db):
            await self.repository.delete_io_definition(io)
        self.validation_service.clear_cache(definition_id)
