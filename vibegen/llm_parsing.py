from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from vibegen.lanes import (
    TEXT_LANES,
    VISUAL_LANES,
    ParseError,
    ParseOk,
    ParseResult,
    TextCandidate,
    VisualCandidate,
)

REFUSAL_RE = re.compile(
    r"^\s*(?:i'?m sorry|i am sorry|sorry,|i can(?:'|no)t|i won'?t|i'm unable|i am unable)",
    re.IGNORECASE,
)


def _balanced_slice(s: str, open_ch: str, close_ch: str) -> Optional[str]:
    in_str = False
    esc = False
    depth = 0
    start_idx = -1
    for i, ch in enumerate(s):
        if not in_str and ch == open_ch:
            if depth == 0:
                start_idx = i
            depth += 1
        elif not in_str and ch == close_ch:
            if depth > 0:
                depth -= 1
                if depth == 0 and start_idx != -1:
                    return s[start_idx : i + 1]
        elif ch == '"':
            if not esc:
                in_str = not in_str
            esc = False
            continue
        esc = (ch == "\\") and not esc
    return None


def json_from_text(text: str) -> Any:
    """Extract a JSON value from model text; raise ValueError on failure.

    Strategy:
    - Try fenced blocks: ```json ...``` first, then any ``` ... ```.
    - Try the first balanced {...} object, then the first balanced [...] array.
    - Sanitize: remove trailing commas, normalize smart quotes.
    - Close a truncated object or array and try once more.
    """
    t = (text or "").strip()
    candidate = None
    m = re.search(r"```json\s*([\s\S]*?)```", t, re.IGNORECASE)
    if m:
        candidate = m.group(1)
    else:
        m2 = re.search(r"```\s*([\s\S]*?)```", t)
        if m2:
            candidate = m2.group(1)
    if not candidate:
        obj_at = t.find("{")
        arr_at = t.find("[")
        if arr_at != -1 and (obj_at == -1 or arr_at < obj_at):
            candidate = _balanced_slice(t, "[", "]")
        else:
            candidate = _balanced_slice(t, "{", "}")
    if not candidate:
        starts = [i for i in (t.find("{"), t.find("[")) if i != -1]
        if starts:
            candidate = repair_json_loose(t[min(starts):])

    if candidate:
        try:
            return json.loads(candidate)
        except ValueError:
            s = re.sub(r",\s*([}\]])", r"\1", candidate)
            s = s.replace("“", '"').replace("”", '"').replace("’", "'")
            try:
                return json.loads(s)
            except ValueError:
                pass
    raise ValueError("No JSON content found")


_DANGLING_KEY_RE = re.compile(r'([{,])\s*"(?:[^"\\]|\\.)*"\s*:?\s*$')


def repair_json_loose(text: str) -> str:
    """Best-effort repair for truncated JSON.

    Closes an open string, drops a key that never got its value and any
    trailing comma, then closes open objects and arrays innermost first.
    """
    t = (text or "").strip()
    if not t:
        return t
    closers: List[str] = []
    in_str = False
    esc = False
    for ch in t:
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            closers.append("}")
        elif ch == "[":
            closers.append("]")
        elif ch in "}]" and closers:
            closers.pop()
    if in_str:
        if esc:
            t = t[:-1]
        t += '"'
    if closers and closers[-1] == "}":
        t = _DANGLING_KEY_RE.sub(r"\1", t)
    t = re.sub(r"[,:]\s*$", "", t)
    return t + "".join(reversed(closers))


def _refusal_of(doc: Any) -> Optional[str]:
    if isinstance(doc, dict):
        for key in ("refusal", "error"):
            value = doc.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return None


def _strip_own_prefix(lane: str, text: str) -> str:
    return re.sub(rf"^\s*{re.escape(lane)}\s*:\s*", "", text, flags=re.IGNORECASE)


def _normalize_entries(entries: Any, lanes: Sequence[str], text_key: str) -> Optional[List[Dict[str, Any]]]:
    """Bring the shapes models actually return into [{"lane", text_key}, ...].

    Accepts a list of objects, a list of bare strings (lanes taken by
    position) or a {"<lane>": "text"} mapping.
    """
    if isinstance(entries, dict):
        entries = [{"lane": k, text_key: v} for k, v in entries.items()]
    if not isinstance(entries, list):
        return None
    out: List[Dict[str, Any]] = []
    for idx, item in enumerate(entries):
        if isinstance(item, str):
            item = {"lane": lanes[idx] if idx < len(lanes) else f"extra_{idx}", text_key: item}
        elif isinstance(item, dict):
            item = dict(item)
            if "lane" not in item and idx < len(lanes):
                item["lane"] = lanes[idx]
            if text_key not in item:
                for alt in ("text", "prompt", "line", "content"):
                    if alt in item:
                        item[text_key] = item.pop(alt)
                        break
        else:
            return None
        lane = item.get("lane")
        text = item.get(text_key)
        if isinstance(lane, str) and isinstance(text, str):
            item["lane"] = lane.strip().lower()
            item[text_key] = _strip_own_prefix(item["lane"], text).strip()
        out.append(item)
    return out


def _load(raw: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    return json_from_text(str(raw or ""))


def parse_text_response(raw: Any) -> ParseResult:
    """Turn a chat reply into ParseOk(TextCandidate) or ParseError."""
    try:
        doc = _load(raw)
    except ValueError as e:
        text = str(raw or "")
        return ParseError(reason=f"unparsable model output: {e}", refusal=bool(REFUSAL_RE.match(text)))
    refusal = _refusal_of(doc)
    if isinstance(doc, dict) and "lines" not in doc and refusal:
        return ParseError(reason=f"model refused: {refusal}", refusal=True)
    if isinstance(doc, dict):
        entries = doc.get("lines")
        if entries is None and any(lane in doc for lane in TEXT_LANES):
            entries = {k: v for k, v in doc.items() if k in TEXT_LANES}
    else:
        entries = doc
    lines = _normalize_entries(entries, TEXT_LANES, "text")
    if lines is None:
        return ParseError(reason="model output has no 'lines' array")
    try:
        return ParseOk(candidate=TextCandidate.model_validate({"lines": lines}))
    except ValidationError as e:
        return ParseError(reason=f"model output has malformed lines: {e.error_count()} problem(s)")


def parse_visual_response(raw: Any) -> ParseResult:
    """Turn a chat reply into ParseOk(VisualCandidate) or ParseError."""
    try:
        doc = _load(raw)
    except ValueError as e:
        text = str(raw or "")
        return ParseError(reason=f"unparsable model output: {e}", refusal=bool(REFUSAL_RE.match(text)))
    negative = ""
    if isinstance(doc, dict):
        entries = None
        for key in ("visualOptions", "visual_options", "prompts"):
            if key in doc:
                entries = doc[key]
                break
        if entries is None and any(lane in doc for lane in VISUAL_LANES):
            entries = {k: v for k, v in doc.items() if k in VISUAL_LANES}
        refusal = _refusal_of(doc)
        if entries is None and refusal:
            return ParseError(reason=f"model refused: {refusal}", refusal=True)
        neg = doc.get("negativePrompt", doc.get("negative_prompt"))
        if isinstance(neg, list):
            neg = ", ".join(str(n) for n in neg)
        negative = neg if isinstance(neg, str) else ""
    else:
        entries = doc
    prompts = _normalize_entries(entries, VISUAL_LANES, "prompt")
    if prompts is None:
        return ParseError(reason="model output has no 'visualOptions' array")
    try:
        candidate = VisualCandidate.model_validate({"visualOptions": prompts, "negativePrompt": negative})
    except ValidationError as e:
        return ParseError(reason=f"model output has malformed prompts: {e.error_count()} problem(s)")
    return ParseOk(candidate=candidate)
