from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import requests
from requests.exceptions import RequestException, Timeout

from vibegen.composer import aspect_ratio_for
from vibegen.lanes import FinalPayload

log = logging.getLogger(__name__)

IDEOGRAM_API_KEY = os.getenv("IDEOGRAM_API_KEY", "").strip()
IDEOGRAM_MODEL = os.getenv("IDEOGRAM_MODEL", "V_2").strip()
IDEOGRAM_FALLBACK_MODEL = os.getenv("IDEOGRAM_FALLBACK_MODEL", "V_2_TURBO").strip()
IDEOGRAM_ENDPOINT = "https://api.ideogram.ai/generate"
try:
    IMAGE_TIMEOUT_SECS = int(os.getenv("IMAGE_TIMEOUT_SECS", "60"))
except ValueError:
    IMAGE_TIMEOUT_SECS = 60

STYLE_TYPES = {
    "realistic": "REALISTIC",
    "anime": "ANIME",
    "3danimated": "RENDER_3D",
    "caricature": "DESIGN",
    "illustrated": "DESIGN",
    "popart": "DESIGN",
}

STYLE_PHRASES = {
    "realistic": "photorealistic photo",
    "caricature": "playful caricature with exaggerated features",
    "anime": "anime style",
    "3danimated": "3D animated render",
    "illustrated": "flat illustration",
    "popart": "bold pop art",
}

_RETRY_ON_SECONDARY = {"rate_limited", "model_unavailable"}


class ImageGenerationError(Exception):
    """Image provider failure.

    code is one of: rate_limited, content_policy, model_unavailable,
    invalid_key, bad_response.
    """

    def __init__(self, message: str, code: str = "bad_response", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


def has_key() -> bool:
    return bool(IDEOGRAM_API_KEY)


def render_prompt(payload: FinalPayload) -> str:
    """Scene prompt plus style, caption text and its placement rules."""
    parts = [payload.visual_prompt.rstrip(". ")]
    style = STYLE_PHRASES.get(payload.visual_style.strip().lower())
    if style:
        parts.append(f"Style: {style}")
    if payload.text_content:
        layout = payload.text_layout_spec
        placement = layout.get("rules") or layout.get("type") or "clear empty area"
        parts.append(f'Caption text exactly: "{payload.text_content}" placed as {placement}')
    return ". ".join(p for p in parts if p) + "."


def build_image_request(payload: FinalPayload, model: Optional[str] = None) -> Dict[str, Any]:
    req: Dict[str, Any] = {
        "prompt": render_prompt(payload),
        "aspect_ratio": aspect_ratio_for(payload.dimensions),
        "model": model or IDEOGRAM_MODEL,
        "magic_prompt_option": "AUTO",
        "negative_prompt": payload.negative_prompt,
    }
    style_type = STYLE_TYPES.get(payload.visual_style.strip().lower())
    if style_type:
        req["style_type"] = style_type
    return {"image_request": req}


def _error_for_response(resp: Any) -> ImageGenerationError:
    try:
        txt = resp.text or ""
    except (AttributeError, ValueError):
        txt = ""
    lower = txt.lower()
    status = resp.status_code
    if status in (401, 403):
        code = "invalid_key"
    elif status == 429:
        code = "rate_limited"
    elif status in (400, 422) and ("safety" in lower or "policy" in lower or "not safe" in lower):
        code = "content_policy"
    elif status in (404, 503) or ("model" in lower and ("not found" in lower or "unavailable" in lower)):
        code = "model_unavailable"
    else:
        code = "bad_response"
    log.warning("Ideogram HTTP %s: %s", status, txt[:400])
    return ImageGenerationError(f"Ideogram HTTP {status}", code=code, status_code=status)


def _generate_once(payload: FinalPayload, model: str) -> Dict[str, Any]:
    headers = {"Api-Key": IDEOGRAM_API_KEY, "Content-Type": "application/json"}
    body = build_image_request(payload, model)
    try:
        resp = requests.post(IDEOGRAM_ENDPOINT, headers=headers, json=body, timeout=IMAGE_TIMEOUT_SECS)
    except Timeout as e:
        raise ImageGenerationError("Ideogram request timed out", code="model_unavailable") from e
    except RequestException as e:
        raise ImageGenerationError(f"Ideogram request error: {e!r}", code="bad_response") from e
    if resp.status_code != 200:
        raise _error_for_response(resp)
    try:
        data = resp.json()
    except ValueError as e:
        raise ImageGenerationError("Ideogram: non-JSON HTTP body", code="bad_response") from e
    items = data.get("data") if isinstance(data, dict) else None
    first = items[0] if isinstance(items, list) and items else {}
    if isinstance(first, dict) and first.get("is_image_safe") is False:
        raise ImageGenerationError("Ideogram flagged the image as unsafe", code="content_policy")
    url = first.get("url") if isinstance(first, dict) else None
    if not url:
        raise ImageGenerationError("Ideogram: response has no image url", code="bad_response")
    return {"url": url, "model": model}


def generate_image(payload: FinalPayload, model: Optional[str] = None) -> Dict[str, Any]:
    """Render a FinalPayload; returns {"url", "model"} or raises ImageGenerationError.

    Rate limits and unavailable models get one retry on the secondary tier.
    """
    if not IDEOGRAM_API_KEY:
        raise ImageGenerationError("Missing Ideogram API key", code="invalid_key")
    primary = model or IDEOGRAM_MODEL
    try:
        return _generate_once(payload, primary)
    except ImageGenerationError as e:
        secondary = IDEOGRAM_FALLBACK_MODEL
        if e.code not in _RETRY_ON_SECONDARY or not secondary or secondary == primary:
            raise
        log.warning("Ideogram model '%s' %s; retrying with '%s'", primary, e.code, secondary)
        return _generate_once(payload, secondary)
