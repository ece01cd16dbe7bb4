"""
Pricing metadata carried by AI-model node definitions.

Stored pricing is free-form JSON. `parse_pricing` turns it into one of two
variants: `CanonicalPricing` (per-modality rate objects the cost engine
understands) or `LegacyPricing` (anything else, kept verbatim and treated as
unusable). Canonical shape::

    {
      "input":  {"text":  {"per_million_tokens": n},
                 "image": {"first_megapixel": n, "per_additional_megapixel": n},
                 "video": {"per_second": n}},
      "output": {"image": {"first_megapixel": n, "per_additional_megapixel": n},
                 "video_with_audio":    {"720p": {"per_second": n, "per_segment": {"5s": n}}},
                 "video_without_audio": {"720p": {...}},
                 "text":  {"per_million_tokens": n}}
    }
"""
import json
import math
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, Field, ValidationError

from workflow_builder.schemas.common import Modality


def _to_number(v) -> float:
    if v is None or v == "":
        return 0.0
    try:
        n = float(v)
    except (TypeError, ValueError):
        return 0.0
    return n if math.isfinite(n) else 0.0


Rate = Annotated[float, BeforeValidator(_to_number)]

# Resolution keys in order of preference when pricing a reference video
VIDEO_RESOLUTION_PREFERENCE = ("720p", "1080p", "512p", "768p", "360p", "540p")


class TextRate(BaseModel):
    per_million_tokens: Rate = 0


class ImageRate(BaseModel):
    first_megapixel: Rate = 0
    per_additional_megapixel: Rate = 0


class VideoInputRate(BaseModel):
    per_second: Rate = 0


class VideoResolutionRate(BaseModel):
    per_second: Rate = 0
    per_segment: Dict[str, Rate] = Field(default_factory=dict)


class VideoOutputSchedule(BaseModel):
    resolutions: Dict[str, VideoResolutionRate] = Field(default_factory=dict)

    def reference_rate(self) -> Optional[VideoResolutionRate]:
        for key in VIDEO_RESOLUTION_PREFERENCE:
            if key in self.resolutions:
                return self.resolutions[key]
        return None


class InputPricing(BaseModel):
    text: Optional[TextRate] = None
    image: Optional[ImageRate] = None
    video: Optional[VideoInputRate] = None


class OutputPricing(BaseModel):
    image: Optional[ImageRate] = None
    video_with_audio: Optional[VideoOutputSchedule] = None
    video_without_audio: Optional[VideoOutputSchedule] = None
    video: Optional[VideoOutputSchedule] = None
    text: Optional[TextRate] = None

    def modalities(self):
        """Output modalities implied by the schedules present"""
        found = []
        if self.image is not None:
            found.append(Modality.IMAGE)
        if any(s is not None for s in (self.video_with_audio, self.video_without_audio, self.video)):
            found.append(Modality.VIDEO)
        if self.text is not None:
            found.append(Modality.TEXT)
        return found


class CanonicalPricing(BaseModel):
    kind: Literal["canonical"] = "canonical"
    input: InputPricing = Field(default_factory=InputPricing)
    output: OutputPricing = Field(default_factory=OutputPricing)


class LegacyPricing(BaseModel):
    kind: Literal["legacy"] = "legacy"
    raw: Any = None


PricingConfig = Annotated[Union[CanonicalPricing, LegacyPricing], Field(discriminator="kind")]


def _normalize_image(obj: Dict[str, Any]) -> Dict[str, Any]:
    # Upstream catalogs publish a flat per_megapixel price
    if obj.get("per_megapixel") is not None and obj.get("first_megapixel") is None:
        pm = _to_number(obj["per_megapixel"])
        return {"first_megapixel": pm, "per_additional_megapixel": pm}
    return obj


def _video_schedule(obj: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(obj, dict):
        return None
    resolutions = {k: v for k, v in obj.items() if isinstance(v, dict)}
    return {"resolutions": resolutions}


def _objects_only(section: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in section.items() if isinstance(v, dict)}


def parse_pricing(raw: Any) -> Optional[PricingConfig]:
    """Classify stored pricing metadata. Returns None when nothing is stored."""
    if raw is None or raw == "" or raw == {}:
        return None
    if isinstance(raw, (CanonicalPricing, LegacyPricing)):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return LegacyPricing(raw=raw)
    if not isinstance(raw, dict):
        return LegacyPricing(raw=raw)

    input_section = raw.get("input") if isinstance(raw.get("input"), dict) else {}
    output_section = raw.get("output") if isinstance(raw.get("output"), dict) else {}
    input_section = _objects_only(input_section)
    output_section = _objects_only(output_section)
    if not input_section and not output_section:
        return LegacyPricing(raw=raw)

    if "image" in input_section:
        input_section["image"] = _normalize_image(input_section["image"])
    if "image" in output_section:
        output_section["image"] = _normalize_image(output_section["image"])
    for key in ("video_with_audio", "video_without_audio", "video"):
        if key in output_section:
            output_section[key] = _video_schedule(output_section[key])

    try:
        return CanonicalPricing(input=input_section, output=output_section)
    except ValidationError:
        return LegacyPricing(raw=raw)
