from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from jsonschema import Draft202012Validator

from vibegen import tables
from vibegen.lanes import (
    TEXT_LANES,
    TEXT_MAX_CHARS,
    TEXT_SOFT_TARGETS,
    VISUAL_LANES,
    VISUAL_MAX_CHARS,
    GenerationContext,
)
from vibegen.tables import tone_instruction

REPAIR_SUFFIX = "Be concrete; avoid clichés strictly."

TEXT_LANE_RULES: Dict[str, str] = {
    "platform": "plain observation with one specific hook",
    "audience": "how the people around react",
    "skill": "what the subject does well or badly, exaggerated",
    "absurdity": "a surreal or overblown image",
}

VISUAL_LANE_RULES: Dict[str, str] = {
    "objects": "props only; no people, no pronouns for people",
    "group": "several people (friends, team, crowd, group) sharing the moment",
    "solo": "exactly one person doing a clear action verb",
    "creative": "a symbolic or abstract arrangement, a visual metaphor",
}


def _tag_list(tags: Sequence[str]) -> str:
    return ", ".join(f'"{t}"' for t in tags) if tags else "(none)"


def _strengthen(prompt: str, strengthen: bool, feedback: Optional[str]) -> str:
    if not strengthen:
        return prompt
    extra = f"\n{REPAIR_SUFFIX}"
    if feedback:
        extra += f"\nThe previous answer was rejected: {feedback}. Fix that and keep every other rule."
    return prompt + extra


def build_text_messages(
    ctx: GenerationContext,
    anchors: Sequence[str],
    strengthen: bool = False,
    feedback: Optional[str] = None,
) -> List[Dict[str, str]]:
    tags = ctx.effective_tags()
    lane_lines = "\n".join(
        f"- {lane}: {TEXT_LANE_RULES[lane]} (aim for about {TEXT_SOFT_TARGETS[lane]} characters)"
        for lane in TEXT_LANES
    )
    system = (
        "You write short, punchy one-liners for greeting images and memes. "
        "Return strict JSON only, no prose and no code fences, shaped as "
        '{"lines":[{"lane":"platform","text":"..."},{"lane":"audience","text":"..."},'
        '{"lane":"skill","text":"..."},{"lane":"absurdity","text":"..."}]}.\n'
        "Lanes, one line each, in this order:\n"
        f"{lane_lines}\n"
        "Hard rules:\n"
        f"- Every line is at most {TEXT_MAX_CHARS} characters.\n"
        "- Every line contains every required tag verbatim (any letter case).\n"
        "- Only commas, periods and colons as punctuation. Never use em-dashes, en-dashes or '--'.\n"
        "- Never start a line with a lane name such as 'platform:' or 'skill:'.\n"
        f"- Avoid these clichés: {'; '.join(tables.CLICHES)}.\n"
        f"Tone: {tone_instruction(ctx.tone)}"
    )
    user = (
        f"Category: {ctx.category}\n"
        f"Subcategory: {ctx.subcategory}\n"
        f"Tone: {ctx.tone}\n"
        f"Required tags: {_tag_list(tags)}\n"
        f"Concrete anchors to draw from: {', '.join(anchors)}\n"
        "Write the four lines now."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": _strengthen(user, strengthen, feedback)},
    ]


def build_visual_messages(
    ctx: GenerationContext,
    anchors: Sequence[str],
    negatives: str,
    solo_action: str,
    strengthen: bool = False,
    feedback: Optional[str] = None,
) -> List[Dict[str, str]]:
    tags = ctx.effective_tags()
    lane_lines = "\n".join(f"- {lane}: {VISUAL_LANE_RULES[lane]}" for lane in VISUAL_LANES)
    system = (
        "You write image-generation prompts for a greeting image or meme background. "
        "Return strict JSON only, no prose and no code fences, shaped as "
        '{"visualOptions":[{"lane":"objects","prompt":"..."},{"lane":"group","prompt":"..."},'
        '{"lane":"solo","prompt":"..."},{"lane":"creative","prompt":"..."}],"negativePrompt":"..."}.\n'
        "Lanes, one prompt each, in this order:\n"
        f"{lane_lines}\n"
        "Hard rules:\n"
        f"- Every prompt is at most {VISUAL_MAX_CHARS} characters.\n"
        "- Every prompt contains every required tag verbatim (any letter case).\n"
        "- Describe the scene only. No style words (realistic, anime, 3d, illustrated, cartoon, "
        "caricature, pop art, watercolor); style is chosen separately.\n"
        "- Leave a clear empty area for a caption and never draw text into the scene.\n"
        "- negativePrompt is a comma-separated list of things to exclude.\n"
        f"Tone: {tone_instruction(ctx.tone)}"
    )
    user = (
        f"Category: {ctx.category}\n"
        f"Subcategory: {ctx.subcategory}\n"
        f"Required tags: {_tag_list(tags)}\n"
        f"Concrete anchors to draw from: {', '.join(anchors)}\n"
        f"Solo lane action idea: {solo_action}\n"
        f"Negative prompt must include: {negatives}\n"
        "Write the four prompts and the negative prompt now."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": _strengthen(user, strengthen, feedback)},
    ]


def text_lines_schema() -> Dict[str, Any]:
    line = {
        "type": "object",
        "properties": {
            "lane": {"type": "string", "enum": list(TEXT_LANES)},
            "text": {"type": "string", "minLength": 1, "maxLength": TEXT_MAX_CHARS},
        },
        "required": ["lane", "text"],
        "additionalProperties": False,
    }
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "properties": {
            "lines": {"type": "array", "items": line, "minItems": 4, "maxItems": 4},
        },
        "required": ["lines"],
        "additionalProperties": False,
    }


def visual_options_schema() -> Dict[str, Any]:
    option = {
        "type": "object",
        "properties": {
            "lane": {"type": "string", "enum": list(VISUAL_LANES)},
            "prompt": {"type": "string", "minLength": 1, "maxLength": VISUAL_MAX_CHARS},
        },
        "required": ["lane", "prompt"],
        "additionalProperties": False,
    }
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "properties": {
            "visualOptions": {"type": "array", "items": option, "minItems": 4, "maxItems": 4},
            "negativePrompt": {"type": "string", "minLength": 1},
        },
        "required": ["visualOptions", "negativePrompt"],
        "additionalProperties": False,
    }


def response_format(name: str, schema: Dict[str, Any]) -> Dict[str, Any]:
    """OpenAI-style structured output block; providers without it get json_object instead.

    Raises jsonschema.SchemaError if `schema` is not a valid 2020-12 schema.
    """
    Draft202012Validator.check_schema(schema)
    body = {k: v for k, v in schema.items() if k != "$schema"}
    return {"type": "json_schema", "json_schema": {"name": name, "strict": True, "schema": body}}


def describe_messages(messages: List[Dict[str, str]]) -> str:
    """Compact one-line form of a message list for debug logging."""
    return json.dumps([{"role": m.get("role"), "chars": len(m.get("content") or "")} for m in messages])
