from __future__ import annotations

import copy
import re
from typing import Any, Optional

from pydantic import BaseModel

from vibegen import tables
from vibegen.lanes import FinalPayload, GenerationContext

DEFAULT_NEGATIVE_PROMPT = "no watermarks, no logos, no misspellings, no extra text"
DEFAULT_DIMENSIONS = "square"

# Dimension names to the image provider's aspect identifiers.
ASPECT_RATIOS = {
    "square": "ASPECT_1_1",
    "landscape": "ASPECT_16_9",
    "portrait": "ASPECT_9_16",
    "story": "ASPECT_9_16",
    "wide": "ASPECT_16_9",
    "photo": "ASPECT_4_3",
    "tall": "ASPECT_3_4",
}

# Supported width:height ratios for custom WxH dimensions.
_CUSTOM_RATIOS = {
    (1, 1): "ASPECT_1_1",
    (16, 9): "ASPECT_16_9",
    (9, 16): "ASPECT_9_16",
    (4, 3): "ASPECT_4_3",
    (3, 4): "ASPECT_3_4",
    (3, 2): "ASPECT_3_2",
    (2, 3): "ASPECT_2_3",
    (16, 10): "ASPECT_16_10",
    (10, 16): "ASPECT_10_16",
    (3, 1): "ASPECT_3_1",
    (1, 3): "ASPECT_1_3",
}

_SIZE_RE = re.compile(r"^\s*(\d{2,5})\s*[x×:]\s*(\d{2,5})\s*$", re.IGNORECASE)


def aspect_ratio_for(dimensions: Optional[str]) -> str:
    """Named size or WxH -> closest supported aspect id (square when unknown)."""
    key = (dimensions or "").strip().lower()
    if key in ASPECT_RATIOS:
        return ASPECT_RATIOS[key]
    m = _SIZE_RE.match(key)
    if not m:
        return ASPECT_RATIOS[DEFAULT_DIMENSIONS]
    w, h = int(m.group(1)), int(m.group(2))
    if w <= 0 or h <= 0:
        return ASPECT_RATIOS[DEFAULT_DIMENSIONS]
    target = w / h
    best = min(_CUSTOM_RATIOS, key=lambda r: abs(r[0] / r[1] - target))
    return _CUSTOM_RATIOS[best]


def _visual_text(visual_option: Any) -> str:
    if visual_option is None:
        return ""
    if isinstance(visual_option, str):
        return visual_option.strip()
    if isinstance(visual_option, BaseModel):
        visual_option = visual_option.model_dump()
    if isinstance(visual_option, dict):
        for key in ("text", "prompt"):
            value = visual_option.get(key)
            if isinstance(value, str):
                return value.strip()
    return ""


def compose_final_payload(
    text_content: Optional[str],
    text_layout_id: Optional[str],
    visual_style: Optional[str],
    visual_option: Any,
    negative_prompt: Optional[str],
    dimensions: Optional[str],
    ctx: GenerationContext,
) -> FinalPayload:
    """Merge the user's picks into the payload an image provider consumes.

    Pure: the same inputs always give an equal payload.
    """
    negative = (negative_prompt or "").strip() or DEFAULT_NEGATIVE_PROMPT
    return FinalPayload(
        text_content=(text_content or "").strip(),
        text_layout_spec=copy.deepcopy(tables.layout_spec(text_layout_id)),
        visual_style=(visual_style or "").strip(),
        visual_prompt=_visual_text(visual_option),
        negative_prompt=negative,
        dimensions=(dimensions or "").strip() or DEFAULT_DIMENSIONS,
        context_id=ctx.context_id(),
        tone=ctx.tone,
        tags=tuple(ctx.effective_tags()),
    )
