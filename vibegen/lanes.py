from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TEXT_LANES: Tuple[str, ...] = ("platform", "audience", "skill", "absurdity")
VISUAL_LANES: Tuple[str, ...] = ("objects", "group", "solo", "creative")

TEXT_MAX_CHARS = 100
VISUAL_MAX_CHARS = 300

# Prompt guidance only; the validator enforces TEXT_MAX_CHARS.
TEXT_SOFT_TARGETS: Dict[str, int] = {"platform": 50, "audience": 70, "skill": 90, "absurdity": 100}

TextLane = Literal["platform", "audience", "skill", "absurdity"]
VisualLane = Literal["objects", "group", "solo", "creative"]

SOURCE_MODEL = "model"
SOURCE_REPAIRED = "repaired"
SOURCE_FALLBACK = "fallback"

REASON_CONTENT_FILTER = "content-filter"
REASON_TIMEOUT = "timeout"
REASON_API_ERROR = "api-error"
REASON_INSUFFICIENT = "insufficient-candidates"

_WS_RE = re.compile(r"\s+")


def effective_tags(subcategory: Optional[str], tags: Iterable[str]) -> List[str]:
    """Subcategory (lowercased) first, then tags; trimmed, de-duplicated case-insensitively."""
    out: List[str] = []
    seen = set()
    first = [str(subcategory).lower()] if subcategory else []
    for raw in first + [str(t) for t in (tags or [])]:
        tag = raw.strip()
        if not tag:
            continue
        key = tag.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(tag)
    return out


def context_id(category: str, subcategory: str, entity: Optional[str] = None) -> str:
    parts = [category, subcategory]
    if entity:
        parts.append(entity)
    return ".".join(_WS_RE.sub("", p).lower() for p in parts)


class GenerationContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    subcategory: str
    tone: str = "Humorous"
    tags: Tuple[str, ...] = ()
    entity: Optional[str] = None

    def effective_tags(self) -> List[str]:
        return effective_tags(self.subcategory, self.tags)

    def context_id(self) -> str:
        return context_id(self.category, self.subcategory, self.entity)


class TextLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    lane: TextLane
    text: str


class VisualLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    lane: VisualLane
    text: str = Field(validation_alias=AliasChoices("text", "prompt"))


# Loose shapes accepted from the model before validation. Lane names stay
# plain strings here so a wrong lane is reported by the validator, not pydantic.

class RawTextLine(BaseModel):
    lane: str
    text: str


class RawVisualLine(BaseModel):
    lane: str
    text: str = Field(validation_alias=AliasChoices("text", "prompt"))


class TextCandidate(BaseModel):
    lines: List[RawTextLine]


class VisualCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    visual_options: List[RawVisualLine] = Field(
        validation_alias=AliasChoices("visualOptions", "visual_options", "prompts")
    )
    negative_prompt: str = Field(
        "", validation_alias=AliasChoices("negativePrompt", "negative_prompt")
    )


class ParseOk(BaseModel):
    ok: Literal[True] = True
    candidate: Union[TextCandidate, VisualCandidate]


class ParseError(BaseModel):
    ok: Literal[False] = False
    reason: str
    refusal: bool = False


ParseResult = Union[ParseOk, ParseError]


class GenerationOutcome(BaseModel):
    source: Literal["model", "repaired", "fallback"]
    reason: Optional[Literal["content-filter", "timeout", "api-error", "insufficient-candidates"]] = None
    attempts: int = Field(0, ge=0, le=2)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class TextResult(GenerationOutcome):
    lines: List[TextLine]


class VisualResult(GenerationOutcome):
    prompts: List[VisualLine]
    negative_prompt: str


class FinalPayload(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    text_content: str
    text_layout_spec: Dict[str, Any]
    visual_style: str
    visual_prompt: str
    negative_prompt: str
    dimensions: str
    context_id: str
    tone: str
    tags: Tuple[str, ...] = ()

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
