import uuid
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from workflow_builder.core.exceptions import (
    ImmutableStateError, InvalidTransitionError, NotFoundError, StorageError, ValidationError, VersionConflictError,
)
from workflow_builder.models import NodeDefinitionDB
from workflow_builder.schemas.node_definition import (
    IODefinitionCreate, IODefinitionUpdate, NodeDefinitionCreate, NodeDefinitionOut, NodeDefinitionUpdate,
    VersionBumpResult,
)
from workflow_builder.services.versioning_service import canonical_io, next_version

PROMPT_INPUT = {"name": "prompt", "label": "Prompt", "is_required": True, "constraints": {"minLength": {"value": 3}}}
IMAGE_OUTPUT = {"name": "image", "socket": "image"}


def _io_payload(definition, **overrides):
    """The definition's current IO set as an update payload"""
    rows = []
    for io in definition.io_definitions:
        row = io.model_dump(include={
            "name", "direction", "socket_type_id", "label", "description",
            "is_required", "is_list", "default_value", "constraints", "sort_order",
        })
        row.update(overrides.get(io.name, {}))
        rows.append(row)
    return rows


@pytest.mark.parametrize("version,expected", [
    ("1.0.0", "1.0.1"),
    ("1.2.3", "1.2.4"),
    ("2.0.9", "2.0.10"),
    ("1.0", "1.0.1"),
    ("3", "3.1"),
    ("1.0.beta", "1.0.beta.1"),
    ("", "1.0.1"),
    (None, "1.0.1"),
])
def test_next_version(version, expected):
    assert next_version(version) == expected


def test_canonical_io_ignores_formatting():
    stored = [
        {"name": "b", "direction": "INPUT", "is_required": 1, "sort_order": "2", "constraints": {"y": 1, "x": 2}},
        {"name": "a", "direction": "INPUT", "is_required": False, "sort_order": 0, "constraints": None},
    ]
    incoming = [
        {"name": "a", "direction": "INPUT", "is_required": 0, "sort_order": 0, "constraints": {}, "label": "A"},
        {"name": "b", "direction": "INPUT", "is_required": True, "sort_order": 2, "constraints": {"x": 2, "y": 1}},
    ]
    assert canonical_io(stored) == canonical_io(incoming)


def test_canonical_io_detects_constraint_change():
    a = [{"name": "p", "direction": "INPUT", "constraints": {"minLength": 3}}]
    b = [{"name": "p", "direction": "INPUT", "constraints": {"minLength": 4}}]
    assert canonical_io(a) != canonical_io(b)


class TestActiveDefinitionUpdates:

    @pytest.mark.asyncio
    async def test_cosmetic_edit_applies_in_place(self, definition_service, make_definition):
        definition = await make_definition(inputs=[PROMPT_INPUT], outputs=[IMAGE_OUTPUT])

        result = await definition_service.update_definition(
            definition.id,
            NodeDefinitionUpdate(name="Flux Pro Ultra", description="Sharper", color="#ffffff"),
        )

        assert isinstance(result, NodeDefinitionOut)
        assert result.id == definition.id
        assert result.name == "Flux Pro Ultra"
        assert result.color_hex == "#ffffff"
        assert result.version == "1.0.0"
        assert result.status.value == "active"
        assert len(await definition_service.list_definitions(search="flux")) == 1

    @pytest.mark.asyncio
    async def test_reformatted_io_set_does_not_version(self, definition_service, make_definition):
        definition = await make_definition(inputs=[PROMPT_INPUT], outputs=[IMAGE_OUTPUT])
        payload = list(reversed(_io_payload(definition, prompt={"label": "Your prompt"})))

        result = await definition_service.update_definition(
            definition.id,
            NodeDefinitionUpdate(io_definitions=payload, config_schema=dict(definition.config_schema)),
        )

        assert isinstance(result, NodeDefinitionOut)
        assert result.id == definition.id

    @pytest.mark.asyncio
    async def test_config_schema_change_creates_new_version(self, definition_service, registry, make_definition):
        definition = await make_definition(
            version="1.2.3",
            config_schema={"steps": {"type": "integer"}},
            inputs=[PROMPT_INPUT],
            outputs=[IMAGE_OUTPUT],
        )

        result = await definition_service.update_definition(
            definition.id,
            NodeDefinitionUpdate(config_schema={"steps": {"type": "integer", "maximum": 50}}, name="Flux v2"),
        )

        assert isinstance(result, VersionBumpResult)
        assert result.previous_definition_id == definition.id
        assert result.new_definition_id != definition.id
        assert result.version == "1.2.4"

        old = await definition_service.get_definition(definition.id)
        assert old.status.value == "deprecated"
        assert old.deprecated_at is not None
        assert old.name == "Flux Pro"

        new = await definition_service.get_definition(result.new_definition_id)
        assert new.status.value == "active"
        assert new.version == "1.2.4"
        assert new.name == "Flux v2"
        assert new.slug == definition.slug
        assert new.config_schema == {"steps": {"type": "integer", "maximum": 50}}
        assert sorted(io.name for io in new.io_definitions) == sorted(io.name for io in old.io_definitions)

        active = await registry.get_active_by_slug(definition.slug)
        assert active.id == result.new_definition_id

    @pytest.mark.asyncio
    async def test_io_change_versions_with_incoming_io(self, definition_service, make_definition):
        definition = await make_definition(inputs=[PROMPT_INPUT], outputs=[IMAGE_OUTPUT])
        payload = _io_payload(definition, prompt={"constraints": {"minLength": {"value": 10}}})

        result = await definition_service.update_definition(definition.id, NodeDefinitionUpdate(io_definitions=payload))

        assert isinstance(result, VersionBumpResult)
        new = await definition_service.get_definition(result.new_definition_id)
        prompt = next(io for io in new.io_definitions if io.name == "prompt")
        assert prompt.constraints == {"minLength": {"value": 10}}

        old = await definition_service.get_definition(definition.id)
        old_prompt = next(io for io in old.io_definitions if io.name == "prompt")
        assert old_prompt.constraints == {"minLength": {"value": 3}}

    @pytest.mark.asyncio
    async def test_versioning_invalidates_cached_rules(
        self, definition_service, validation_service, rule_cache, make_definition
    ):
        definition = await make_definition(inputs=[PROMPT_INPUT])
        await validation_service.get_rules(definition.id)
        assert rule_cache.get(validation_service.cache_key(definition.id)) is not None

        await definition_service.update_definition(definition.id, NodeDefinitionUpdate(config_schema={"changed": True}))

        assert rule_cache.get(validation_service.cache_key(definition.id)) is None

    @pytest.mark.asyncio
    async def test_deprecate(self, definition_service, registry, make_definition):
        definition = await make_definition()
        result = await definition_service.update_definition(definition.id, NodeDefinitionUpdate(status="deprecated"))
        assert result.status.value == "deprecated"
        assert result.deprecated_at is not None
        assert await registry.get_active_by_slug(definition.slug) is None

    @pytest.mark.asyncio
    async def test_active_cannot_return_to_draft(self, definition_service, make_definition):
        definition = await make_definition()
        with pytest.raises(InvalidTransitionError):
            await definition_service.update_definition(definition.id, NodeDefinitionUpdate(status="draft"))


class TestImmutableStates:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("final_status", ["deprecated", "archived"])
    @pytest.mark.parametrize("patch", [
        {"name": "renamed"},
        {"config_schema": {"x": 1}},
        {},
    ])
    async def test_closed_definitions_reject_any_update(self, definition_service, make_definition, final_status, patch):
        start = "active" if final_status == "deprecated" else "draft"
        definition = await make_definition(status=start)
        await definition_service.update_definition(definition.id, NodeDefinitionUpdate(status=final_status))

        with pytest.raises(ImmutableStateError):
            await definition_service.update_definition(definition.id, NodeDefinitionUpdate(**patch))

    @pytest.mark.asyncio
    async def test_unknown_definition(self, definition_service):
        with pytest.raises(NotFoundError):
            await definition_service.update_definition(uuid.uuid4(), NodeDefinitionUpdate(name="x"))


class TestDraftDefinitions:

    @pytest.mark.asyncio
    async def test_draft_update_is_idempotent(self, definition_service, make_definition):
        definition = await make_definition(status="draft", inputs=[PROMPT_INPUT])
        patch = NodeDefinitionUpdate(name="Draft model", config_schema={"seed": {"type": "integer"}})

        first = await definition_service.update_definition(definition.id, patch)
        second = await definition_service.update_definition(definition.id, patch)

        assert first.id == second.id == definition.id
        assert first.model_dump(exclude={"updated_at", "io_definitions"}) == \
            second.model_dump(exclude={"updated_at", "io_definitions"})
        assert len(await definition_service.list_definitions(search="flux")) == 1

    @pytest.mark.asyncio
    async def test_draft_io_is_fully_replaced(self, definition_service, make_definition, socket_types):
        definition = await make_definition(status="draft", inputs=[PROMPT_INPUT], outputs=[IMAGE_OUTPUT])
        replacement = [
            {"name": "image_url", "direction": "INPUT", "socket_type_id": socket_types["image"].id, "is_required": True},
        ]

        result = await definition_service.update_definition(
            definition.id, NodeDefinitionUpdate(io_definitions=replacement)
        )

        assert result.id == definition.id
        assert [io.name for io in result.io_definitions] == ["image_url"]
        assert result.io_definitions[0].socket_type.slug == "image"

    @pytest.mark.asyncio
    async def test_activation_rejects_second_active_slug(self, definition_service, make_definition):
        await make_definition(slug="seedream")
        draft = await make_definition(slug="seedream", status="draft")

        with pytest.raises(ValidationError) as exc:
            await definition_service.update_definition(draft.id, NodeDefinitionUpdate(status="active"))
        assert exc.value.errors[0]["code"] == "ACTIVE_SLUG_EXISTS"

    @pytest.mark.asyncio
    async def test_create_active_rejects_duplicate_slug(self, make_definition):
        await make_definition(slug="kling")
        with pytest.raises(ValidationError):
            await make_definition(slug="kling")

    @pytest.mark.asyncio
    async def test_unknown_patch_fields_are_dropped(self, definition_service, make_definition):
        definition = await make_definition(status="draft")
        patch = NodeDefinitionUpdate.model_validate({"name": "Renamed", "owner": "someone", "id": "x"})
        result = await definition_service.update_definition(definition.id, patch)
        assert result.name == "Renamed"


class TestIODefinitionSubResources:

    @pytest.mark.asyncio
    async def test_crud_on_draft_parent(self, definition_service, validation_service, rule_cache, make_definition, socket_types):
        definition = await make_definition(status="draft")
        await validation_service.get_rules(definition.id)

        created = await definition_service.add_io_definition(
            definition.id,
            IODefinitionCreate(name="prompt", direction="INPUT", socket_type_id=socket_types["text"].id, is_required=True),
        )
        assert created.socket_type.slug == "text"
        assert rule_cache.get(validation_service.cache_key(definition.id)) is None

        updated = await definition_service.update_io_definition(
            definition.id, created.id, IODefinitionUpdate(constraints='{"maxLength": {"value": 100}}')
        )
        assert updated.constraints == {"maxLength": {"value": 100}}

        await definition_service.delete_io_definition(definition.id, created.id)
        assert (await definition_service.get_definition(definition.id)).io_definitions == []

    @pytest.mark.asyncio
    async def test_active_parent_rejects_io_edits(self, definition_service, make_definition, socket_types):
        definition = await make_definition(inputs=[PROMPT_INPUT])
        io_id = definition.io_definitions[0].id

        with pytest.raises(ImmutableStateError) as exc:
            await definition_service.add_io_definition(
                definition.id, IODefinitionCreate(name="seed", direction="INPUT", socket_type_id=socket_types["text"].id)
            )
        assert exc.value.error_code == "IMMUTABLE_STATE"

        with pytest.raises(ImmutableStateError):
            await definition_service.update_io_definition(definition.id, io_id, IODefinitionUpdate(label="x"))
        with pytest.raises(ImmutableStateError):
            await definition_service.delete_io_definition(definition.id, io_id)

    @pytest.mark.asyncio
    async def test_io_of_another_definition_is_not_found(self, definition_service, make_definition):
        owner = await make_definition(slug="owner", status="draft", inputs=[PROMPT_INPUT])
        other = await make_definition(slug="other", status="draft")

        with pytest.raises(NotFoundError):
            await definition_service.delete_io_definition(other.id, owner.io_definitions[0].id)

    @pytest.mark.asyncio
    async def test_unknown_socket_type(self, definition_service, make_definition):
        definition = await make_definition(status="draft")
        with pytest.raises(ValidationError) as exc:
            await definition_service.add_io_definition(
                definition.id, IODefinitionCreate(name="x", direction="INPUT", socket_type_id=uuid.uuid4())
            )
        assert exc.value.errors[0]["code"] == "UNKNOWN_SOCKET_TYPE"


async def _slug_rows(session, slug):
    result = await session.execute(
        select(NodeDefinitionDB.version, NodeDefinitionDB.status)
        .where(NodeDefinitionDB.slug == slug)
        .order_by(NodeDefinitionDB.version)
    )
    return [tuple(row) for row in result.all()]


class TestVersioningAtomicity:

    @pytest.mark.asyncio
    async def test_failed_io_clone_leaves_old_version_active(
        self, definition_service, registry, test_session, make_definition
    ):
        definition = await make_definition(inputs=[PROMPT_INPUT], outputs=[IMAGE_OUTPUT])

        with patch.object(
            definition_service.repository, "add_io_definitions", side_effect=SQLAlchemyError("disk I/O error")
        ):
            with pytest.raises(StorageError):
                await definition_service.update_definition(
                    definition.id, NodeDefinitionUpdate(config_schema={"steps": {"type": "integer"}})
                )

        assert await _slug_rows(test_session, definition.slug) == [("1.0.0", "active")]
        active = await registry.get_active_by_slug(definition.slug)
        assert active.id == definition.id
        assert active.deprecated_at is None

    @pytest.mark.asyncio
    async def test_concurrent_structural_edits_yield_one_active_version(self, session_factory, make_services):
        async with session_factory() as first_session, session_factory() as second_session:
            _, first = make_services(first_session)
            _, second = make_services(second_session)
            definition = await first.create_definition(
                NodeDefinitionCreate(slug="kling-video", name="Kling Video", status="active")
            )
            winner = {}
            get_io = first.repository.get_io_definitions

            async def version_elsewhere_first(definition_id, direction=None):
                # Both editors saw the row as active; the other one versions it first
                winner["result"] = await second.update_definition(
                    definition.id, NodeDefinitionUpdate(config_schema={"duration": {"type": "integer"}})
                )
                return await get_io(definition_id, direction)

            with patch.object(first.repository, "get_io_definitions", side_effect=version_elsewhere_first):
                with pytest.raises(VersionConflictError):
                    await first.update_definition(
                        definition.id, NodeDefinitionUpdate(config_schema={"fps": {"type": "integer"}})
                    )

            assert isinstance(winner["result"], VersionBumpResult)

        async with session_factory() as session:
            assert await _slug_rows(session, "kling-video") == [("1.0.0", "deprecated"), ("1.0.1", "active")]


@pytest.mark.asyncio
async def test_duplicate_active_slug_resolves_to_newest(registry, test_session):
    older = await registry.repository.create_definition({
        "slug": "dup-model", "name": "Dup", "status": "active", "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    })
    newer = await registry.repository.create_definition({
        "slug": "dup-model", "name": "Dup", "status": "active", "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    })
    await test_session.commit()

    active = await registry.get_active_by_slug("dup-model")
    assert active.id == newer.id != older.id
