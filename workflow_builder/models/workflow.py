from sqlalchemy import Column, String, Text, JSON, Float, Boolean, ForeignKey, DateTime
from sqlalchemy.dialects.postgresql import UUID
from workflow_builder.models.base import Base, TimestampMixin, UUIDMixin


class WorkflowDB(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "workflows"

    name = Column(String(255), nullable=False)
    description = Column(Text)
    owner_id = Column(String(64), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="draft", index=True)
    is_template = Column(Boolean, nullable=False, default=False)

    # Optimistic lock token, rotated on every graph write
    change_hash = Column(String(64), nullable=True)
    viewport_state = Column(JSON, default=dict)

    auto_saved_at = Column(DateTime(timezone=True), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Workflow {self.name} ({self.id})>"


class WorkflowNodeDB(Base, UUIDMixin):
    __tablename__ = "workflow_nodes"

    workflow_id = Column(UUID(as_uuid=True), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = Column(String(64), nullable=False)  # id assigned by the editor

    type = Column(String(50), nullable=False)
    definition_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    system_node_type = Column(String(100), nullable=True)

    position_x = Column(Float, nullable=False, default=0)
    position_y = Column(Float, nullable=False, default=0)
    width = Column(Float, nullable=False, default=250)
    height = Column(Float, nullable=False, default=150)

    config_values = Column(JSON, nullable=False, default=dict)
    ui_metadata = Column(JSON, nullable=False, default=dict)

    def __repr__(self):
        return f"<WorkflowNode {self.client_id} ({self.type})>"


class WorkflowEdgeDB(Base, UUIDMixin):
    __tablename__ = "workflow_edges"

    workflow_id = Column(UUID(as_uuid=True), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = Column(String(64), nullable=False)

    source_node_id = Column(UUID(as_uuid=True), ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False)
    source_socket_name = Column(String(100), nullable=False)
    target_node_id = Column(UUID(as_uuid=True), ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False)
    target_socket_name = Column(String(100), nullable=False)

    edge_type = Column(String(50), nullable=False, default="default")
    animated = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<WorkflowEdge {self.source_node_id}:{self.source_socket_name} -> {self.target_node_id}:{self.target_socket_name}>"
