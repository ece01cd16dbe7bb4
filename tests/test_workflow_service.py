import uuid
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from workflow_builder.core.exceptions import (
    AccessDeniedError, ConflictError, NotFoundError, StorageError, ValidationError,
)
from workflow_builder.models import WorkflowDB
from workflow_builder.schemas.workflow import (
    AutoSaveRequest, CreateWorkflowRequest, SaveWorkflowRequest, UpdateWorkflowRequest, WorkflowEdge, WorkflowNode,
)

OWNER = "user-1"
INTRUDER = "user-2"


@pytest.fixture
async def image_model(make_definition):
    return await make_definition(
        slug="image-model",
        inputs=[
            {"name": "prompt", "label": "Prompt", "is_required": True, "constraints": {"minLength": {"value": 3}}},
            {"name": "reference", "socket": "image", "is_required": False},
        ],
        outputs=[{"name": "image", "socket": "image"}],
        pricing={"output": {"image": {"first_megapixel": 0.05}}},
    )


@pytest.fixture
async def workflow(workflow_service):
    return await workflow_service.create_workflow(CreateWorkflowRequest(name="  Product shots "), OWNER)


def _graph(image_model, prompt="a red shoe on a table", **request):
    nodes = [
        WorkflowNode(id="input-1", type="USER_INPUT_IMAGE", position={"x": 0, "y": 0},
                     config_values={"variable_key": "product", "label": "Product photo"}),
        WorkflowNode(id="model-1", type="AI_MODEL", definition_id=image_model.id,
                     position={"x": 300, "y": 0}, config_values={"prompt": prompt}),
    ]
    edges = [WorkflowEdge(id="e1", source="input-1", sourceHandle="image", target="model-1", targetHandle="reference")]
    return AutoSaveRequest(nodes=nodes, edges=edges, viewport={"x": 10, "y": 20, "zoom": 0.5}, **request)


class TestCrud:

    @pytest.mark.asyncio
    async def test_create(self, workflow, activity_log):
        assert workflow.name == "Product shots"
        assert workflow.owner_id == OWNER
        assert workflow.status.value == "draft"
        assert len(workflow.change_hash) == 16
        assert activity_log.events == [(OWNER, "workflow", "create", str(workflow.id))]

    @pytest.mark.asyncio
    async def test_list_only_returns_callers_workflows(self, workflow_service, workflow):
        await workflow_service.create_workflow(CreateWorkflowRequest(name="Someone else's"), INTRUDER)

        listed = await workflow_service.list_workflows(OWNER)
        assert [w.id for w in listed] == [workflow.id]
        assert await workflow_service.list_workflows(OWNER, search="shots")
        assert await workflow_service.list_workflows(OWNER, search="nothing") == []

    @pytest.mark.asyncio
    async def test_update_metadata(self, workflow_service, workflow):
        updated = await workflow_service.update_workflow(
            workflow.id, UpdateWorkflowRequest(description="Catalog images"), OWNER
        )
        assert updated.description == "Catalog images"
        assert updated.name == "Product shots"

    @pytest.mark.asyncio
    async def test_delete_is_soft(self, workflow_service, workflow, test_session):
        await workflow_service.delete_workflow(workflow.id, OWNER)

        with pytest.raises(NotFoundError):
            await workflow_service.get_workflow(workflow.id, OWNER)
        assert await workflow_service.list_workflows(OWNER) == []
        row = await test_session.get(WorkflowDB, workflow.id)
        assert row.status == "archived"
        assert row.archived_at is not None

    @pytest.mark.asyncio
    async def test_ownership(self, workflow_service, workflow):
        with pytest.raises(AccessDeniedError):
            await workflow_service.get_workflow(workflow.id, INTRUDER)
        with pytest.raises(NotFoundError):
            await workflow_service.get_workflow(uuid.uuid4(), OWNER)


class TestSaveProtocol:

    @pytest.mark.asyncio
    async def test_auto_save_replaces_graph_and_rotates_hash(self, workflow_service, workflow, image_model, activity_log):
        result = await workflow_service.auto_save(workflow.id, OWNER, _graph(image_model, change_hash=workflow.change_hash))

        assert result.workflow_id == workflow.id
        assert result.change_hash != workflow.change_hash

        detail = await workflow_service.get_workflow(workflow.id, OWNER)
        assert detail.change_hash == result.change_hash
        assert detail.viewport.zoom == 0.5
        assert {n.id for n in detail.nodes} == {"input-1", "model-1"}
        model_node = next(n for n in detail.nodes if n.id == "model-1")
        assert model_node.definition.id == image_model.id
        assert model_node.definition.slug == "image-model"
        assert next(n for n in detail.nodes if n.id == "input-1").definition is None
        assert [(e.id, e.source, e.target_handle) for e in detail.edges] == [("e1", "input-1", "reference")]

        # Auto-save is silent
        assert [e[2] for e in activity_log.events] == ["create"]

    @pytest.mark.asyncio
    async def test_second_save_replaces_rather_than_appends(self, workflow_service, workflow, image_model):
        first = await workflow_service.auto_save(workflow.id, OWNER, _graph(image_model))
        request = _graph(image_model, change_hash=first.change_hash)
        request.nodes = request.nodes[1:]
        request.edges = []

        await workflow_service.auto_save(workflow.id, OWNER, request)

        detail = await workflow_service.get_workflow(workflow.id, OWNER)
        assert [n.id for n in detail.nodes] == ["model-1"]
        assert detail.edges == []

    @pytest.mark.asyncio
    async def test_stale_hash_conflicts_and_changes_nothing(self, workflow_service, workflow, image_model):
        saved = await workflow_service.auto_save(workflow.id, OWNER, _graph(image_model))
        before = await workflow_service.get_workflow(workflow.id, OWNER)

        with pytest.raises(ConflictError) as exc:
            await workflow_service.auto_save(
                workflow.id, OWNER, _graph(image_model, prompt="a blue shoe", change_hash="0" * 16)
            )

        assert exc.value.server_hash == saved.change_hash
        assert exc.value.to_dict() == {
            "error": "CONFLICT",
            "message": "Workflow was modified elsewhere",
            "serverHash": saved.change_hash,
        }
        after = await workflow_service.get_workflow(workflow.id, OWNER)
        assert after.model_dump() == before.model_dump()

    @pytest.mark.asyncio
    async def test_invalid_content_persists_nothing(self, workflow_service, workflow, image_model):
        with pytest.raises(ValidationError) as exc:
            await workflow_service.auto_save(workflow.id, OWNER, _graph(image_model, prompt="ab"))

        assert [(e["nodeId"], e["field"], e["code"]) for e in exc.value.errors] == [("model-1", "prompt", "MIN_LENGTH")]
        assert exc.value.node_errors["model-1"]["prompt"][0]["code"] == "MIN_LENGTH"

        detail = await workflow_service.get_workflow(workflow.id, OWNER)
        assert detail.nodes == []
        assert detail.change_hash == workflow.change_hash

    @pytest.mark.asyncio
    async def test_edge_to_unknown_node_is_rejected(self, workflow_service, workflow, image_model):
        request = _graph(image_model)
        request.edges.append(WorkflowEdge(source="model-1", sourceHandle="image", target="ghost", targetHandle="in"))

        with pytest.raises(ValidationError) as exc:
            await workflow_service.auto_save(workflow.id, OWNER, request)
        assert exc.value.errors[0]["code"] == "INVALID_EDGE_ENDPOINT"
        assert exc.value.errors[0]["nodeId"] == "ghost"

    @pytest.mark.asyncio
    async def test_duplicate_node_ids_are_rejected(self, workflow_service, workflow, image_model):
        request = _graph(image_model)
        request.nodes.append(request.nodes[0])

        with pytest.raises(ValidationError) as exc:
            await workflow_service.auto_save(workflow.id, OWNER, request)
        assert exc.value.errors[0]["code"] == "DUPLICATE_NODE_ID"

    @pytest.mark.asyncio
    async def test_connected_input_value_is_dropped(self, workflow_service, workflow, image_model):
        request = _graph(image_model)
        request.nodes[1].config_values["reference"] = "https://cdn.example.com/manual.png"

        await workflow_service.auto_save(workflow.id, OWNER, request)

        detail = await workflow_service.get_workflow(workflow.id, OWNER)
        model_node = next(n for n in detail.nodes if n.id == "model-1")
        assert model_node.config_values == {"prompt": "a red shoe on a table"}

    @pytest.mark.asyncio
    async def test_save_without_hash_is_accepted(self, workflow_service, workflow, image_model):
        result = await workflow_service.auto_save(workflow.id, OWNER, _graph(image_model))
        assert result.change_hash

    @pytest.mark.asyncio
    async def test_non_owner_cannot_save(self, workflow_service, workflow, image_model):
        with pytest.raises(AccessDeniedError):
            await workflow_service.auto_save(workflow.id, INTRUDER, _graph(image_model, change_hash=workflow.change_hash))

    @pytest.mark.asyncio
    async def test_save_updates_metadata_and_logs(self, workflow_service, workflow, image_model, activity_log):
        graph = _graph(image_model, change_hash=workflow.change_hash)
        request = SaveWorkflowRequest(
            nodes=graph.nodes,
            edges=graph.edges,
            viewport=graph.viewport,
            changeHash=workflow.change_hash,
            metadata={"name": "Renamed", "description": "Final"},
        )

        result = await workflow_service.save(workflow.id, OWNER, request)

        detail = await workflow_service.get_workflow(workflow.id, OWNER)
        assert detail.name == "Renamed"
        assert detail.description == "Final"
        assert detail.change_hash == result.change_hash
        assert activity_log.events[-1] == (OWNER, "workflow", "save", str(workflow.id))

    @pytest.mark.asyncio
    async def test_save_rejects_stale_hash_too(self, workflow_service, workflow, image_model):
        graph = _graph(image_model)
        request = SaveWorkflowRequest(nodes=graph.nodes, edges=graph.edges, changeHash="stale")
        with pytest.raises(ConflictError):
            await workflow_service.save(workflow.id, OWNER, request)


class TestPublish:

    @pytest.mark.asyncio
    async def test_publish_compiles_input_manifest(self, workflow_service, workflow, image_model):
        await workflow_service.auto_save(workflow.id, OWNER, _graph(image_model))

        result = await workflow_service.publish(workflow.id, OWNER)

        assert result.status.value == "published"
        assert [(i.variable_key, i.label, i.type, i.is_required) for i in result.input_manifest] == [
            ("product", "Product photo", "Image", True)
        ]
        detail = await workflow_service.get_workflow(workflow.id, OWNER)
        assert detail.status.value == "published"
        assert detail.published_at is not None

    @pytest.mark.asyncio
    async def test_validation_rules(self, workflow_service, image_model):
        rules = await workflow_service.get_validation_rules(image_model.id)
        assert rules["prompt"].required is True
        with pytest.raises(NotFoundError):
            await workflow_service.get_validation_rules(uuid.uuid4())


class TestConcurrentWriters:

    @staticmethod
    def _single_node(node_id, change_hash):
        return AutoSaveRequest(nodes=[WorkflowNode(id=node_id, type="OUTPUT")], change_hash=change_hash)

    @pytest.mark.asyncio
    async def test_writer_holding_the_same_hash_loses_the_race(self, session_factory, make_services):
        async with session_factory() as first_session, session_factory() as second_session:
            first, _ = make_services(first_session)
            second, _ = make_services(second_session)
            created = await first.create_workflow(CreateWorkflowRequest(name="Shared"), OWNER)
            start_hash = created.change_hash
            winner = {}
            validate = first.validation_service.validate_workflow

            async def save_elsewhere_first(nodes, edges):
                # Both writers have read start_hash; the other one commits first
                winner["result"] = await second.auto_save(created.id, OWNER, self._single_node("second", start_hash))
                return await validate(nodes, edges)

            with patch.object(first.validation_service, "validate_workflow", side_effect=save_elsewhere_first):
                with pytest.raises(ConflictError) as exc:
                    await first.auto_save(created.id, OWNER, self._single_node("first", start_hash))

            assert exc.value.server_hash == winner["result"].change_hash

        async with session_factory() as session:
            reader, _ = make_services(session)
            detail = await reader.get_workflow(created.id, OWNER)
            assert detail.change_hash == winner["result"].change_hash
            assert [n.id for n in detail.nodes] == ["second"]

    @pytest.mark.asyncio
    async def test_failed_graph_write_rolls_back_hash_and_nodes(self, workflow_service, workflow, image_model):
        saved = await workflow_service.auto_save(workflow.id, OWNER, _graph(image_model))
        before = await workflow_service.get_workflow(workflow.id, OWNER)

        with patch.object(workflow_service.repository, "replace_graph", side_effect=SQLAlchemyError("disk I/O error")):
            with pytest.raises(StorageError):
                await workflow_service.auto_save(
                    workflow.id, OWNER, _graph(image_model, prompt="a blue shoe", change_hash=saved.change_hash)
                )

        after = await workflow_service.get_workflow(workflow.id, OWNER)
        assert after.change_hash == saved.change_hash
        assert after.model_dump() == before.model_dump()
