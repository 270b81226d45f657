from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel

from vibegen import tables
from vibegen.lanes import (
    TEXT_LANES,
    TEXT_MAX_CHARS,
    VISUAL_LANES,
    VISUAL_MAX_CHARS,
    TextLine,
    VisualLine,
)

LANE_PREFIX_RE = re.compile(r"^\s*(platform|audience|skill|absurdity|skillability)\s*:\s*", re.IGNORECASE)
FORBIDDEN_PUNCT_RE = re.compile(r"[—–]|--")

CREATIVE_STRICT: FrozenSet[str] = frozenset({"symbolic", "abstract"})
CREATIVE_LENIENT: FrozenSet[str] = CREATIVE_STRICT | {"arrangement", "metaphor"}

Issue = Dict[str, Any]


def _error(kind: str, code: str, path: str, message: str, lane: Optional[str] = None) -> Issue:
    err: Issue = {"kind": kind, "code": code, "path": path, "message": message}
    if lane:
        err["lane"] = lane
    return err


@lru_cache(maxsize=128)
def _word_re(words: FrozenSet[str]) -> re.Pattern:
    alts = "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True))
    return re.compile(r"\b(?:" + alts + r")\b", re.IGNORECASE)


def _find_word(text: str, words: FrozenSet[str]) -> Optional[str]:
    if not words:
        return None
    m = _word_re(words).search(text)
    return m.group(0) if m else None


def _mask_tags(text: str, tags: Sequence[str]) -> str:
    """Blank out whole-word tag occurrences so a tag never trips a vocabulary ban.

    A tag inside a longer word is left alone: "he" must not hide "she", and
    masking "a" must not split "headphones" into new words.
    """
    for tag in sorted(tags, key=len, reverse=True):
        pattern = r"(?<!\w)" + re.escape(tag) + r"(?!\w)"
        text = re.sub(pattern, lambda m: " " * len(m.group(0)), text, flags=re.IGNORECASE)
    return text


def _missing_tag(text: str, tags: Sequence[str]) -> Optional[str]:
    low = text.lower()
    for tag in tags:
        if tag.lower() not in low:
            return tag
    return None


def _clean_tags(required_tags: Optional[Iterable[str]]) -> List[str]:
    return [t.strip() for t in (required_tags or []) if isinstance(t, str) and t.strip()]


def _items(candidate: Any, keys: Sequence[str]) -> Optional[List[Any]]:
    if isinstance(candidate, (list, tuple)):
        return list(candidate)
    if isinstance(candidate, BaseModel):
        candidate = candidate.model_dump()
    if isinstance(candidate, dict):
        for key in keys:
            value = candidate.get(key)
            if isinstance(value, (list, tuple)):
                return list(value)
            # {"objects": "...", "group": "..."} style mapping
            if isinstance(value, dict):
                return [{"lane": k, "text": v} for k, v in value.items()]
    return None


def _fields(item: Any) -> Optional[Tuple[str, str]]:
    if isinstance(item, BaseModel):
        item = item.model_dump()
    if not isinstance(item, dict):
        return None
    lane = item.get("lane")
    text = item.get("text", item.get("prompt"))
    if not isinstance(lane, str) or not isinstance(text, str):
        return None
    return lane, text


def _structure(items: List[Any], lanes: Sequence[str], root: str) -> Tuple[Dict[str, Tuple[int, str]], List[Issue]]:
    """Map lane -> (index, text), or return the structural problems found."""
    errors: List[Issue] = []
    by_lane: Dict[str, Tuple[int, str]] = {}
    for idx, item in enumerate(items):
        fields = _fields(item)
        if fields is None:
            errors.append(_error("structural", "invalid_line", f"{root}[{idx}]",
                                 "each entry needs string 'lane' and 'text'"))
            continue
        lane = fields[0].strip().lower()
        if lane not in lanes:
            errors.append(_error("structural", "unknown_lane", f"{root}[{idx}].lane",
                                 f"unknown lane '{fields[0]}'", lane=lane or None))
        elif lane in by_lane:
            errors.append(_error("structural", "duplicate_lane", f"{root}[{idx}].lane",
                                 f"lane '{lane}' appears more than once", lane=lane))
        else:
            by_lane[lane] = (idx, fields[1].strip())
    if len(items) != len(lanes):
        errors.append(_error("structural", "wrong_count", root,
                             f"expected exactly {len(lanes)} entries, got {len(items)}"))
    for lane in lanes:
        if lane not in by_lane and not errors:
            errors.append(_error("structural", "missing_lane", root, f"required lane '{lane}' is missing", lane=lane))
    return by_lane, errors


# ---------------------------------------------------------------------------
# Text lanes

def _text_issues(candidate: Any, tags: List[str], cliches: Sequence[str]) -> Iterator[Issue]:
    items = _items(candidate, ("lines",))
    if items is None:
        yield _error("structural", "invalid_shape", "lines",
                     "required property 'lines' must be an array of 4 lines")
        return
    by_lane, structural = _structure(items, TEXT_LANES, "lines")
    if structural:
        yield from structural
        return
    for lane in TEXT_LANES:
        idx, text = by_lane[lane]
        path = f"lines[{idx}].text"
        if not text:
            yield _error("content", "empty_text", path, "text must be non-empty", lane)
            continue
        if len(text) > TEXT_MAX_CHARS:
            yield _error("content", "too_long", path,
                         f"text is {len(text)} characters; limit is {TEXT_MAX_CHARS}", lane)
        if LANE_PREFIX_RE.match(text):
            yield _error("content", "lane_prefix", path, "text must not start with a lane name", lane)
        missing = _missing_tag(text, tags)
        if missing is not None:
            yield _error("content", "missing_tag", path, f"required tag '{missing}' is missing", lane)
        if FORBIDDEN_PUNCT_RE.search(text):
            yield _error("content", "forbidden_punctuation", path,
                         "em-dash, en-dash and '--' are not allowed", lane)
        masked = _mask_tags(text, tags).lower()
        for phrase in cliches:
            if phrase in masked:
                yield _error("content", "cliche", path, f"banned cliche '{phrase}'", lane)
                break


def validate_text_lines(
    candidate: Any,
    required_tags: Optional[Iterable[str]] = None,
    cliches: Sequence[str] = tables.CLICHES,
) -> Dict[str, Any]:
    """Check a 4-lane text candidate; stop at the first violation.

    Returns {"valid": True, "lines": [TextLine, ...]} in platform, audience,
    skill, absurdity order, or {"valid": False, "error": {...}}.
    """
    tags = _clean_tags(required_tags)
    for issue in _text_issues(candidate, tags, cliches):
        return {"valid": False, "error": issue}
    items = _items(candidate, ("lines",)) or []
    by_lane, _ = _structure(items, TEXT_LANES, "lines")
    lines = [TextLine(lane=lane, text=by_lane[lane][1]) for lane in TEXT_LANES]
    return {"valid": True, "lines": lines}


def collect_text_errors(candidate: Any, required_tags: Optional[Iterable[str]] = None) -> List[Dict[str, str]]:
    """Return every violation as {"path", "message"} (empty list when valid)."""
    tags = _clean_tags(required_tags)
    return [{"path": e["path"], "message": e["message"]} for e in _text_issues(candidate, tags, tables.CLICHES)]


# ---------------------------------------------------------------------------
# Visual lanes

def _negative_of(candidate: Any, negative_prompt: Optional[str]) -> Optional[str]:
    if isinstance(candidate, BaseModel):
        candidate = candidate.model_dump()
    if isinstance(candidate, dict):
        for key in ("negativePrompt", "negative_prompt"):
            value = candidate.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(negative_prompt, str) and negative_prompt.strip():
        return negative_prompt.strip()
    return None


def _visual_issues(
    candidate: Any,
    tags: List[str],
    strict: bool,
    negative_prompt: Optional[str],
    vocab: Mapping[str, FrozenSet[str]],
) -> Iterator[Issue]:
    items = _items(candidate, ("visualOptions", "visual_options", "prompts"))
    if items is None:
        yield _error("structural", "invalid_shape", "visualOptions",
                     "required property 'visualOptions' must be an array of 4 prompts")
        return
    by_lane, structural = _structure(items, VISUAL_LANES, "visualOptions")
    if _negative_of(candidate, negative_prompt) is None:
        structural.append(_error("structural", "missing_negative_prompt", "negativePrompt",
                                 "required property 'negativePrompt' must be a non-empty string"))
    if structural:
        yield from structural
        return
    creative_words = CREATIVE_STRICT if strict else CREATIVE_LENIENT
    for lane in VISUAL_LANES:
        idx, text = by_lane[lane]
        path = f"visualOptions[{idx}].text"
        if not text:
            yield _error("content", "empty_text", path, "prompt must be non-empty", lane)
            continue
        if len(text) > VISUAL_MAX_CHARS:
            yield _error("content", "too_long", path,
                         f"prompt is {len(text)} characters; limit is {VISUAL_MAX_CHARS}", lane)
        missing = _missing_tag(text, tags)
        if missing is not None:
            yield _error("content", "missing_tag", path, f"required tag '{missing}' is missing", lane)
        masked = _mask_tags(text, tags)
        style = _find_word(masked, vocab["style_keywords"])
        if style:
            yield _error("content", "style_keyword", path,
                         f"style keyword '{style}' belongs to the style picker, not the prompt", lane)
        if lane == "objects":
            person = _find_word(masked, vocab["person_words"])
            if person:
                yield _error("content", "person_in_objects", path,
                             f"objects prompt must not mention people ('{person}')", lane)
        elif lane == "group":
            if not _find_word(text, vocab["group_words"]):
                yield _error("content", "missing_group_subject", path,
                             "group prompt must show several people", lane)
        elif lane == "solo":
            if not _find_word(text, vocab["singular_words"]):
                yield _error("content", "missing_solo_subject", path,
                             "solo prompt must show one person", lane)
            if not _find_word(text, vocab["action_verbs"]):
                yield _error("content", "missing_action_verb", path,
                             "solo prompt must include a clear action verb", lane)
        elif lane == "creative":
            if not _find_word(text, creative_words):
                cues = "' or '".join(sorted(creative_words))
                yield _error("content", "missing_creative_cue", path,
                             f"creative prompt must include '{cues}'", lane)


def validate_visual_lines(
    candidate: Any,
    required_tags: Optional[Iterable[str]] = None,
    strict: bool = True,
    negative_prompt: Optional[str] = None,
    vocabulary: Optional[Mapping[str, FrozenSet[str]]] = None,
) -> Dict[str, Any]:
    """Check a 4-lane visual candidate; stop at the first violation.

    `candidate` carries its own negativePrompt when it is an object; for a
    plain list pass `negative_prompt`. `vocabulary` defaults to the generic
    word sets from tables.vocabulary_for().
    """
    tags = _clean_tags(required_tags)
    vocab = vocabulary or tables.vocabulary_for(None)
    for issue in _visual_issues(candidate, tags, strict, negative_prompt, vocab):
        return {"valid": False, "error": issue}
    items = _items(candidate, ("visualOptions", "visual_options", "prompts")) or []
    by_lane, _ = _structure(items, VISUAL_LANES, "visualOptions")
    prompts = [VisualLine(lane=lane, text=by_lane[lane][1]) for lane in VISUAL_LANES]
    return {"valid": True, "prompts": prompts, "negative_prompt": _negative_of(candidate, negative_prompt)}


def collect_visual_errors(
    candidate: Any,
    required_tags: Optional[Iterable[str]] = None,
    strict: bool = True,
    category: Optional[str] = None,
) -> List[Dict[str, str]]:
    tags = _clean_tags(required_tags)
    vocab = tables.vocabulary_for(category)
    issues = _visual_issues(candidate, tags, strict, None, vocab)
    return [{"path": e["path"], "message": e["message"]} for e in issues]


# ---------------------------------------------------------------------------
# Variety across lanes
#
# Soft checks: they feed repair feedback and result warnings but never make a
# set invalid.

NEAR_DUPLICATE_JACCARD = 0.6
NEAR_DUPLICATE_BIGRAMS = 0.7

_STOPWORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "from", "into", "like", "just", "are", "was",
    "its", "his", "her", "their", "you", "your", "all", "but", "out", "off", "over",
})


def _opening_word(text: str) -> str:
    words = text.split()
    return re.sub(r"[^a-z]", "", words[0].lower()) if words else ""


def _content_words(text: str) -> FrozenSet[str]:
    return frozenset(w for w in re.findall(r"[a-z']+", text.lower()) if len(w) > 2 and w not in _STOPWORDS)


def _bigrams(text: str) -> FrozenSet[str]:
    norm = re.sub(r"[^a-z0-9]", "", text.lower())
    return frozenset(norm[i:i + 2] for i in range(len(norm) - 1))


def _overlap(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _variety_issues(items: List[Any], tags: List[str], root: str, openings: bool) -> List[Issue]:
    seen: List[Tuple[int, str, str]] = []
    for idx, item in enumerate(items):
        fields = _fields(item)
        if fields is not None and fields[1].strip():
            seen.append((idx, fields[0].strip().lower(), fields[1].strip()))
    issues: List[Issue] = []
    first_opening: Dict[str, int] = {}
    masked = {idx: _mask_tags(text, tags) for idx, _, text in seen}
    for pos, (idx, lane, text) in enumerate(seen):
        path = f"{root}[{idx}].text"
        word = _opening_word(text)
        if openings and word:
            if word in first_opening:
                issues.append(_error("soft", "repeated_opening", path,
                                     f"opens with '{word}' like {root}[{first_opening[word]}]", lane))
            else:
                first_opening[word] = idx
        for other_idx, _, _ in seen[:pos]:
            words = _overlap(_content_words(masked[idx]), _content_words(masked[other_idx]))
            pairs = _overlap(_bigrams(masked[idx]), _bigrams(masked[other_idx]))
            if words >= NEAR_DUPLICATE_JACCARD or pairs >= NEAR_DUPLICATE_BIGRAMS:
                issues.append(_error("soft", "near_duplicate", path,
                                     f"nearly repeats {root}[{other_idx}] "
                                     f"(word overlap {words:.2f}, bigram overlap {pairs:.2f})", lane))
                break
    return issues


def text_variety_issues(candidate: Any, required_tags: Optional[Iterable[str]] = None) -> List[Issue]:
    """Repeated opening words and near-duplicate lines; required tags are ignored for similarity."""
    items = _items(candidate, ("lines",)) or []
    return _variety_issues(items, _clean_tags(required_tags), "lines", openings=True)


def visual_variety_issues(candidate: Any, required_tags: Optional[Iterable[str]] = None) -> List[Issue]:
    """Near-duplicate prompts. Openings are not compared: 'A ...' is normal for prompts."""
    items = _items(candidate, ("visualOptions", "visual_options", "prompts")) or []
    return _variety_issues(items, _clean_tags(required_tags), "visualOptions", openings=False)


def describe_issues(issues: Iterable[Issue]) -> List[str]:
    return [f"{i['path']}: {i['message']}" for i in issues]
