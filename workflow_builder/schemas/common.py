from enum import Enum


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class DefinitionKind(str, Enum):
    AI_MODEL = "AI_MODEL"  # Backed by a provider model, carries pricing
    SYSTEM = "SYSTEM"      # Built-in step (start, end, user input, ...)


class IODirection(str, Enum):
    INPUT = "INPUT"
    OUTPUT = "OUTPUT"


class NodeType(str, Enum):
    AI_MODEL = "AI_MODEL"
    USER_INPUT = "USER_INPUT"
    STATIC_ASSET = "STATIC_ASSET"
    LOGIC_GATE = "LOGIC_GATE"
    OUTPUT = "OUTPUT"
    SYSTEM = "SYSTEM"
    START = "START"
    END = "END"
    USER_INPUT_TEXT = "USER_INPUT_TEXT"
    USER_INPUT_IMAGE = "USER_INPUT_IMAGE"
    USER_INPUT_VIDEO = "USER_INPUT_VIDEO"
    STATIC_IMAGE = "STATIC_IMAGE"
    STATIC_VIDEO = "STATIC_VIDEO"


class Modality(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


# Legal lifecycle moves for a node definition
DEFINITION_TRANSITIONS = {
    DefinitionStatus.DRAFT: {DefinitionStatus.ACTIVE, DefinitionStatus.ARCHIVED},
    DefinitionStatus.ACTIVE: {DefinitionStatus.DEPRECATED},
    DefinitionStatus.DEPRECATED: set(),
    DefinitionStatus.ARCHIVED: set(),
}

EDITABLE_DEFINITION_STATUSES = {DefinitionStatus.DRAFT, DefinitionStatus.ACTIVE}
