from sqlalchemy import Column, String, Text, JSON, Integer, Boolean, ForeignKey, DateTime
from sqlalchemy.dialects.postgresql import UUID
from workflow_builder.models.base import Base, TimestampMixin, UUIDMixin


class SocketTypeDB(Base, UUIDMixin):
    __tablename__ = "socket_types"

    name = Column(String(50), nullable=False)
    slug = Column(String(50), nullable=False, unique=True)
    color_hex = Column(String(9))


class NodeDefinitionDB(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "node_definitions"

    kind = Column(String(20), nullable=False, default="AI_MODEL", index=True)  # AI_MODEL | SYSTEM
    slug = Column(String(100), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    icon = Column(String(255))
    color_hex = Column(String(9))

    version = Column(String(50), nullable=False, default="1.0.0")
    status = Column(String(20), nullable=False, default="draft", index=True)

    config_schema = Column(JSON, default=dict)
    pricing_config = Column(JSON, nullable=True)  # AI_MODEL only

    deprecated_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<NodeDefinition {self.slug}@{self.version} ({self.status})>"


class IODefinitionDB(Base, UUIDMixin):
    __tablename__ = "node_io_definitions"

    definition_id = Column(UUID(as_uuid=True), ForeignKey("node_definitions.id", ondelete="CASCADE"), nullable=False, index=True)
    socket_type_id = Column(UUID(as_uuid=True), ForeignKey("socket_types.id"), nullable=True)

    direction = Column(String(10), nullable=False)  # INPUT | OUTPUT
    name = Column(String(100), nullable=False)
    label = Column(String(255))
    description = Column(Text)
    is_required = Column(Boolean, nullable=False, default=False)
    is_list = Column(Boolean, nullable=False, default=False)
    default_value = Column(JSON, nullable=True)
    constraints = Column(JSON, default=dict)
    sort_order = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<IODefinition {self.direction}:{self.name}>"
