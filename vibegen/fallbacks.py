"""Deterministic, offline replacements for model output.

Both generators are seeded from the generation context, so the same context
always yields the same lines, and their output is built to pass the matching
validator for any tag list that fits a line.
"""
from __future__ import annotations

import hashlib
import random
import re
from typing import Dict, List, Optional, Sequence, Tuple

from vibegen import tables
from vibegen.lanes import (
    TEXT_LANES,
    TEXT_MAX_CHARS,
    VISUAL_LANES,
    VISUAL_MAX_CHARS,
    GenerationContext,
    TextLine,
    VisualLine,
)
from vibegen.validators import FORBIDDEN_PUNCT_RE

DEFAULT_SUBJECT = "the crew"

NAME_RE = re.compile(r"^[A-Z][A-Za-z'-]{1,24}(?: [A-Z][A-Za-z'-]{1,24})?$")

WARM_TEXT: Dict[str, str] = {
    "platform": "{name} brightens the {topic} {a} just by showing up.",
    "audience": "Everyone at the {topic} grins when {name} drifts past the {b}.",
    "skill": "Pure {topic} talent, {name} handles the {a} like a quiet pro.",
    "absurdity": "Even the {b} seems to cheer for {name} at this {topic}.",
}

ROAST_TEXT: Dict[str, str] = {
    "platform": "{name} turns the {topic} {a} into pure damage control.",
    "audience": "Guests at the {topic} only relax when {name} steps away from the {b}.",
    "skill": "Classic {topic}, {name} tackles the {a} with the grace of a forklift.",
    "absurdity": "Even the {b} filed a complaint about {name} at this {topic}.",
}

VISUAL_TEMPLATES: Dict[str, str] = {
    "objects": "Close-up of {a} and {b} arranged on a surface, {topic} details, clear empty area for a caption",
    "group": "A group of friends gathered around the {a}, candid gestures near the {b}, {topic} energy",
    "solo": "One person {action}, {a} in frame, motion clearly visible, {topic} moment",
    "creative": "Symbolic abstract arrangement of {a} and {b}, unexpected perspective, {topic} as a visual metaphor",
}


def context_seed(ctx: GenerationContext) -> int:
    raw = "|".join([ctx.context_id(), (ctx.tone or "").lower()] + [t.lower() for t in ctx.effective_tags()])
    return int(hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16], 16)


def pick_anchors(anchors: Sequence[str], rng: random.Random) -> Tuple[str, str]:
    """Two distinct anchors where the pack allows it."""
    pool = [a for a in anchors if a] or list(tables.ANCHORS[tables.DEFAULT_KEY])
    first = rng.choice(pool)
    rest = [a for a in pool if a != first]
    second = rng.choice(rest) if rest else first
    return first, second


def subject_name(ctx: GenerationContext) -> str:
    sub = (ctx.subcategory or "").strip().lower()
    for tag in ctx.tags:
        tag = tag.strip()
        if tag and tag.lower() != sub and NAME_RE.match(tag):
            return tag
    return DEFAULT_SUBJECT


def _sentence_case(text: str) -> str:
    return text[:1].upper() + text[1:] if text else text


def _with_tags(core: str, tags: Sequence[str]) -> str:
    missing = [t for t in tags if t.lower() not in core.lower()]
    if not missing:
        return core
    base = core.rstrip(" .,:;")
    suffix = ", ".join(missing)
    return f"{base}, {suffix}." if base else f"{suffix}."


def fit_line(core: str, tags: Sequence[str], cap: int) -> str:
    """Append missing tags; over the cap, drop trailing words of `core` until it fits."""
    core = re.sub(r"\s+", " ", core).strip()
    line = _with_tags(core, tags)
    words = core.split(" ")
    while len(line) > cap and words:
        words.pop()
        line = _with_tags(" ".join(words).rstrip(" ,:;"), tags)
    return line


def fallback_text_lines(ctx: GenerationContext, seed: Optional[int] = None) -> List[TextLine]:
    rng = random.Random(context_seed(ctx) if seed is None else seed)
    tags = ctx.effective_tags()
    a, b = pick_anchors(tables.anchor_pack(ctx.category, ctx.subcategory), rng)
    templates = ROAST_TEXT if (ctx.tone or "").strip().lower() == "savage" else WARM_TEXT
    fill = {"name": subject_name(ctx), "topic": (ctx.subcategory or "").strip().lower() or "moment", "a": a, "b": b}
    lines: List[TextLine] = []
    for lane in TEXT_LANES:
        core = FORBIDDEN_PUNCT_RE.sub(",", _sentence_case(templates[lane].format(**fill)))
        lines.append(TextLine(lane=lane, text=fit_line(core, tags, TEXT_MAX_CHARS)))
    return lines


def fallback_negative_prompt(category: Optional[str]) -> str:
    specific = tables.negatives_for(category)
    if specific == tables.NEGATIVES[tables.DEFAULT_KEY]:
        return specific
    return f"{specific}, {tables.GENERIC_NEGATIVE}"


def fallback_visual_lines(ctx: GenerationContext, seed: Optional[int] = None) -> Tuple[List[VisualLine], str]:
    rng = random.Random(context_seed(ctx) if seed is None else seed)
    tags = ctx.effective_tags()
    a, b = pick_anchors(tables.anchor_pack(ctx.category, ctx.subcategory), rng)
    fill = {
        "a": a,
        "b": b,
        "topic": (ctx.subcategory or "").strip().lower() or "everyday",
        "action": tables.solo_action_for(ctx.category, ctx.subcategory),
    }
    prompts = [
        VisualLine(lane=lane, text=fit_line(VISUAL_TEMPLATES[lane].format(**fill), tags, VISUAL_MAX_CHARS))
        for lane in VISUAL_LANES
    ]
    return prompts, fallback_negative_prompt(ctx.category)
