"""
Reference cost of running AI-model nodes.

Costs are a standardized per-run figure for catalog comparison, computed
against a fixed workload (REFERENCE_WORKLOAD), not a measurement of real
usage. Any node priced from DEFAULT_RATES marks its result as an estimate.
"""
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from workflow_builder.core.logging import get_logger
from workflow_builder.schemas.common import Modality, NodeType
from workflow_builder.schemas.cost import Clip, CostNode, NodeCost, TemplateCostResult, WorkflowCost
from workflow_builder.schemas.pricing import (
    CanonicalPricing, ImageRate, OutputPricing, VideoOutputSchedule, parse_pricing,
)
from workflow_builder.schemas.workflow import WorkflowNode
from workflow_builder.services.node_registry import ModelProfile, NodeRegistryService

logger = get_logger(__name__)

REFERENCE_WORKLOAD = {
    "text_tokens_million": 0.001,
    "image_megapixels": 1,
    "video_seconds": 5,
}

DEFAULT_RATES = {
    "output_image_first_megapixel": 0.04,
    "output_video_per_5s_segment": 0.25,
    "output_text_per_million_tokens": 0.01,
}

# Step item naming the model that runs a clip step
MODEL_ITEM_TYPE = "ai_model"
MISSING_MODEL_INPUT_TYPES = [Modality.IMAGE.value, Modality.TEXT.value]

_TRUTHY = {"true", "1", "yes", "on"}

ProfileFetcher = Callable[[List[str]], Awaitable[Dict[str, ModelProfile]]]


def _lower(types: Iterable[Any]) -> List[str]:
    return [str(t).lower() for t in types if t]


def wants_audio(config_values: Dict[str, Any]) -> bool:
    value = config_values.get("generate_audio")
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _image_cost(rate: ImageRate) -> float:
    extra_megapixels = REFERENCE_WORKLOAD["image_megapixels"] - 1
    return rate.first_megapixel + (rate.per_additional_megapixel * extra_megapixels if extra_megapixels > 0 else 0)


def _video_cost(schedule: Optional[VideoOutputSchedule]) -> float:
    if schedule is None:
        return 0.0
    rate = schedule.reference_rate()
    if rate is None:
        return 0.0
    segment = rate.per_segment.get("5s", 0)
    if segment > 0:
        return segment
    if rate.per_second > 0:
        return rate.per_second * REFERENCE_WORKLOAD["video_seconds"]
    return 0.0


def select_video_schedule(output: OutputPricing, generate_audio: bool) -> Optional[VideoOutputSchedule]:
    """Exactly one video schedule prices a node; with- and without-audio are never summed"""
    if generate_audio:
        order = (output.video_with_audio, output.video_without_audio, output.video)
    else:
        order = (output.video_without_audio, output.video_with_audio, output.video)
    for schedule in order:
        if schedule is not None:
            return schedule
    return None


def input_cost(pricing: CanonicalPricing) -> float:
    cost = 0.0
    if pricing.input.text is not None:
        cost += pricing.input.text.per_million_tokens * REFERENCE_WORKLOAD["text_tokens_million"]
    if pricing.input.image is not None:
        cost += _image_cost(pricing.input.image)
    if pricing.input.video is not None:
        cost += pricing.input.video.per_second * REFERENCE_WORKLOAD["video_seconds"]
    return cost


def output_cost(pricing: CanonicalPricing, output_types: Sequence[str], generate_audio: bool) -> float:
    output = pricing.output
    cost = 0.0
    if Modality.IMAGE.value in output_types and output.image is not None:
        cost += _image_cost(output.image)
    if Modality.VIDEO.value in output_types:
        cost += _video_cost(select_video_schedule(output, generate_audio))
    if Modality.TEXT.value in output_types and output.text is not None:
        cost += output.text.per_million_tokens * REFERENCE_WORKLOAD["text_tokens_million"]
    return cost


def default_output_cost(output_types: Sequence[str]) -> float:
    cost = 0.0
    for output_type in output_types:
        if output_type == Modality.IMAGE.value:
            cost += DEFAULT_RATES["output_image_first_megapixel"]
        elif output_type == Modality.VIDEO.value:
            cost += DEFAULT_RATES["output_video_per_5s_segment"]
        elif output_type == Modality.TEXT.value:
            cost += DEFAULT_RATES["output_text_per_million_tokens"] * REFERENCE_WORKLOAD["text_tokens_million"]
    # Default input rates are all zero
    return cost


def compute_node_cost(node: CostNode) -> NodeCost:
    if node.type != NodeType.AI_MODEL.value:
        return NodeCost(cost_usd=0.0, is_estimate=False)

    output_types = _lower(node.output_types)
    pricing = parse_pricing(node.pricing)

    if not isinstance(pricing, CanonicalPricing):
        return NodeCost(cost_usd=default_output_cost(output_types), is_estimate=True)

    cost_in = input_cost(pricing)
    cost_out = output_cost(pricing, output_types, wants_audio(node.config_values))
    is_estimate = False
    if output_types and cost_out == 0:
        cost_out = default_output_cost(output_types)
        is_estimate = True
    return NodeCost(cost_usd=cost_in + cost_out, is_estimate=is_estimate)


def compute_workflow_cost(nodes: Sequence[CostNode]) -> WorkflowCost:
    total = 0.0
    any_estimate = False
    by_node: Dict[str, NodeCost] = {}
    for node in nodes:
        cost = compute_node_cost(node)
        if node.id is not None:
            by_node[node.id] = cost
        total += cost.cost_usd
        any_estimate = any_estimate or cost.is_estimate
    return WorkflowCost(total_usd=total, is_estimate=any_estimate, by_node=by_node)


def output_types_from_operation(operation_code: Optional[str]) -> List[str]:
    code = (operation_code or "").lower()
    if "video" in code:
        return [Modality.VIDEO.value]
    # Image is also the fallback for unknown operations
    return [Modality.IMAGE.value]


def infer_output_types(
    declared: Optional[Sequence[str]],
    pricing: Any,
    operation_code: Optional[str]
) -> Tuple[List[str], str]:
    """
    Output modalities of a model, by priority: the model's declared output
    types, then the schedules present in its pricing, then the step's
    operation code. Returns the types and which tier produced them.
    """
    declared_types = _lower(declared or [])
    if declared_types:
        return declared_types, "declared"

    parsed = parse_pricing(pricing)
    if isinstance(parsed, CanonicalPricing):
        from_pricing = [m.value for m in parsed.output.modalities()]
        if from_pricing:
            return from_pricing, "pricing"

    return output_types_from_operation(operation_code), "operation"


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def _step_model_id(step) -> Optional[str]:
    for item in step.data:
        if item.type == MODEL_ITEM_TYPE and item.value:
            return str(item.value).strip()
    return None


def extract_model_ids_from_clips(clips: Sequence[Clip]) -> List[str]:
    ids: List[str] = []
    for clip in clips:
        for step in clip.workflow:
            for item in step.data:
                if item.type == MODEL_ITEM_TYPE and item.value:
                    model_id = str(item.value).strip()
                    if model_id not in ids:
                        ids.append(model_id)
    return ids


def build_nodes_from_clips(clips: Sequence[Clip], profiles: Dict[str, ModelProfile]) -> List[CostNode]:
    nodes = []
    for clip_index, clip in enumerate(clips):
        for step_index, step in enumerate(clip.workflow):
            model_id = _step_model_id(step)
            if not model_id:
                continue
            profile = profiles.get(model_id)
            output_types, source = infer_output_types(
                profile.output_types if profile else None,
                profile.pricing if profile else None,
                step.workflow_code,
            )
            node_id = f"clip-{clip_index}-step-{step_index}"
            if source != "declared":
                logger.debug(f"{node_id}: output types {output_types} inferred from {source}")
            nodes.append(CostNode(
                id=node_id,
                type=NodeType.AI_MODEL.value,
                input_types=profile.input_types if profile else MISSING_MODEL_INPUT_TYPES,
                output_types=output_types,
                pricing=profile.pricing if profile else None,
            ))
    return nodes


def _log_breakdown(clips: Sequence[Clip], result: WorkflowCost) -> None:
    lines = []
    for clip_index, clip in enumerate(clips):
        clip_total = 0.0
        for step_index, step in enumerate(clip.workflow):
            cost = result.by_node.get(f"clip-{clip_index}-step-{step_index}")
            if cost is None:
                continue
            clip_total += cost.cost_usd
            estimate = " (estimate)" if cost.is_estimate else ""
            lines.append(f"  clip {clip_index} step {step_index} [{step.workflow_code or '-'}]: ${cost.cost_usd:.4f}{estimate}")
        lines.append(f"  clip {clip_index} total: ${clip_total:.4f}")
    logger.info("Template cost breakdown:\n" + "\n".join(lines) + f"\n  total: ${result.total_usd:.4f}")


async def compute_template_cost_from_clips(clips: Sequence[Clip], fetch_profiles: ProfileFetcher) -> TemplateCostResult:
    """Price ordered clips of ordered steps, resolving every referenced model in one fetch"""
    model_ids = extract_model_ids_from_clips(clips)
    if not model_ids:
        return TemplateCostResult(total_usd=0.0, is_estimate=False, step_count=0)

    profiles = await fetch_profiles(model_ids)
    nodes = build_nodes_from_clips(clips, profiles)
    result = compute_workflow_cost(nodes)
    _log_breakdown(clips, result)
    return TemplateCostResult(
        total_usd=round(result.total_usd, 4),
        is_estimate=result.is_estimate,
        step_count=len(nodes),
    )


class CostService:
    """Prices editor graphs and clip templates against the definition catalog"""

    def __init__(self, registry: NodeRegistryService):
        self.registry = registry

    async def cost_nodes(self, nodes: Sequence[WorkflowNode]) -> List[CostNode]:
        definition_ids = {
            n.definition_id for n in nodes
            if n.type == NodeType.AI_MODEL and n.definition_id is not None
        }
        profiles = await self.registry.get_model_profiles(definition_ids)

        cost_nodes = []
        for node in nodes:
            profile = profiles.get(node.definition_id) if node.definition_id else None
            cost_nodes.append(CostNode(
                id=node.id,
                type=node.type.value,
                input_types=profile.input_types if profile else [],
                output_types=profile.output_types if profile else [],
                pricing=profile.pricing if profile else None,
                config_values=node.config_values,
            ))
        return cost_nodes

    async def estimate(self, nodes: Sequence[WorkflowNode]) -> WorkflowCost:
        return compute_workflow_cost(await self.cost_nodes(nodes))

    async def fetch_profiles(self, model_ids: List[str]) -> Dict[str, ModelProfile]:
        """Clip model ids are definition ids or slugs of an active definition"""
        resolved: Dict[str, uuid.UUID] = {}
        for model_id in model_ids:
            definition_id = _as_uuid(model_id)
            if definition_id is None:
                definition = await self.registry.get_active_by_slug(model_id)
                definition_id = definition.id if definition else None
            if definition_id is None:
                logger.warning(f"Clip references unknown model id '{model_id}', using default pricing")
                continue
            resolved[model_id] = definition_id
        profiles = await self.registry.get_model_profiles(resolved.values())
        return {
            model_id: profiles[definition_id]
            for model_id, definition_id in resolved.items()
            if definition_id in profiles
        }

    async def template_cost(self, clips: Sequence[Clip]) -> TemplateCostResult:
        return await compute_template_cost_from_clips(clips, self.fetch_profiles)
