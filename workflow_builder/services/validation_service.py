import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from workflow_builder.core.cache import RuleCache
from workflow_builder.core.logging import get_logger
from workflow_builder.schemas.validation import FieldRule, ValidationResult
from workflow_builder.schemas.workflow import WorkflowEdge, WorkflowNode
from workflow_builder.services.node_registry import NodeRegistryService

logger = get_logger(__name__)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _pattern_mismatch(value: str, pattern: Any) -> bool:
    try:
        return re.search(str(pattern), value) is None
    except re.error:
        logger.warning(f"Ignoring invalid pattern constraint: {pattern!r}")
        return False


@dataclass(frozen=True)
class ConstraintCheck:
    """One constraint kind: which values it inspects and when they violate it"""
    key: str
    code: str
    default_message: str
    applies_to: Callable[[Any], bool]
    violated: Callable[[Any, Any], bool]
    actual: Callable[[Any], Any] = lambda value: value


CONSTRAINT_CHECKS: Sequence[ConstraintCheck] = (
    ConstraintCheck(
        key="minLength",
        code="MIN_LENGTH",
        default_message="Minimum {value} characters",
        applies_to=lambda v: isinstance(v, str),
        violated=lambda v, limit: len(v) < limit,
        actual=len,
    ),
    ConstraintCheck(
        key="maxLength",
        code="MAX_LENGTH",
        default_message="Maximum {value} characters",
        applies_to=lambda v: isinstance(v, str),
        violated=lambda v, limit: len(v) > limit,
        actual=len,
    ),
    ConstraintCheck(
        key="pattern",
        code="PATTERN",
        default_message="Invalid format",
        applies_to=lambda v: isinstance(v, str),
        violated=_pattern_mismatch,
    ),
    ConstraintCheck(
        key="min",
        code="MIN_VALUE",
        default_message="Must be at least {value}",
        applies_to=_is_number,
        violated=lambda v, limit: v < limit,
    ),
    ConstraintCheck(
        key="max",
        code="MAX_VALUE",
        default_message="Must be at most {value}",
        applies_to=_is_number,
        violated=lambda v, limit: v > limit,
    ),
    ConstraintCheck(
        key="enum",
        code="INVALID_OPTION",
        default_message="Must be one of {value}",
        applies_to=lambda v: isinstance(v, (str, int, float)),
        violated=lambda v, options: isinstance(options, (list, tuple)) and v not in options,
    ),
)


def _constraint_parts(constraint: Any):
    """Constraints are stored as {value, message?}; a bare value is accepted too"""
    if isinstance(constraint, dict):
        return constraint.get("value"), constraint.get("message")
    return constraint, None


def validate_field(value: Any, rule: FieldRule, field_name: str) -> List[Dict[str, Any]]:
    """Check one configured value against its rule. A missing required value yields only REQUIRED."""
    errors: List[Dict[str, Any]] = []

    if _is_empty(value):
        if rule.required:
            errors.append({
                "field": field_name,
                "code": "REQUIRED",
                "message": f"{rule.label or field_name} is required",
            })
        return errors

    for check in CONSTRAINT_CHECKS:
        if check.key not in rule.constraints:
            continue
        limit, message = _constraint_parts(rule.constraints[check.key])
        if limit is None or not check.applies_to(value):
            continue
        try:
            violated = check.violated(value, limit)
        except TypeError:
            logger.warning(f"Constraint {check.key}={limit!r} is not applicable to field '{field_name}'")
            continue
        if violated:
            template = message or check.default_message
            errors.append({
                "field": field_name,
                "code": check.code,
                "message": template.replace("{value}", str(limit)).replace("{actual}", str(check.actual(value))),
            })
    return errors


def is_input_connected(node_id: str, field_name: str, edges: Sequence[WorkflowEdge]) -> bool:
    """A required input fed by an incoming edge needs no configured value"""
    return any(e.target == node_id and e.target_handle == field_name for e in edges)


class ValidationService:
    """
    Validates node configuration values against the INPUT sockets of their
    node definition. Rules are cached per definition id.
    """

    def __init__(self, registry: NodeRegistryService, cache: RuleCache):
        self.registry = registry
        self.cache = cache

    @staticmethod
    def cache_key(definition_id: uuid.UUID) -> str:
        return f"validation:{definition_id}"

    async def get_rules(self, definition_id: uuid.UUID) -> Dict[str, FieldRule]:
        key = self.cache_key(definition_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        inputs, socket_types = await self.registry.get_input_definitions(definition_id)
        rules: Dict[str, FieldRule] = {}
        for io in inputs:
            socket_type = socket_types.get(io.socket_type_id)
            rules[io.name] = FieldRule(
                io_definition_id=io.id,
                label=io.label or io.name,
                required=bool(io.is_required),
                socket_type=socket_type.name if socket_type else None,
                constraints=io.constraints or {},
            )

        self.cache.set(key, rules)
        return rules

    async def validate_workflow(self, nodes: Sequence[WorkflowNode], edges: Sequence[WorkflowEdge]) -> ValidationResult:
        all_errors: List[Dict[str, Any]] = []
        node_errors: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}

        for node in nodes:
            if node.definition_id is None:
                continue
            rules = await self.get_rules(node.definition_id)

            for field_name, rule in rules.items():
                if rule.required and is_input_connected(node.id, field_name, edges):
                    continue
                errors = validate_field(node.config_values.get(field_name), rule, field_name)
                if errors:
                    all_errors.extend({**e, "nodeId": node.id} for e in errors)
                    node_errors.setdefault(node.id, {})[field_name] = errors

        return ValidationResult(valid=not all_errors, errors=all_errors, node_errors=node_errors)

    def clear_cache(self, definition_id: Optional[uuid.UUID] = None) -> None:
        if definition_id is not None:
            self.cache.invalidate(self.cache_key(definition_id))
        else:
            self.cache.invalidate_all()
