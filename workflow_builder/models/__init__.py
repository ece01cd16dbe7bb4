from workflow_builder.models.base import Base
from workflow_builder.models.workflow import WorkflowDB, WorkflowNodeDB, WorkflowEdgeDB
from workflow_builder.models.node_definition import NodeDefinitionDB, IODefinitionDB, SocketTypeDB

__all__ = [
    "Base",
    "WorkflowDB",
    "WorkflowNodeDB",
    "WorkflowEdgeDB",
    "NodeDefinitionDB",
    "IODefinitionDB",
    "SocketTypeDB",
]
