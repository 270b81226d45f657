from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

from requests.exceptions import Timeout

from vibegen import fallbacks, llm_client, llm_prompts, tables
from vibegen.lanes import (
    REASON_API_ERROR,
    REASON_CONTENT_FILTER,
    REASON_INSUFFICIENT,
    REASON_TIMEOUT,
    SOURCE_FALLBACK,
    SOURCE_MODEL,
    SOURCE_REPAIRED,
    GenerationContext,
    ParseResult,
    TextResult,
    VisualResult,
)
from vibegen.llm_client import ChatError
from vibegen.llm_parsing import parse_text_response, parse_visual_response
from vibegen.validators import (
    describe_issues,
    text_variety_issues,
    validate_text_lines,
    validate_visual_lines,
    visual_variety_issues,
)

log = logging.getLogger(__name__)

MODE_LIVE = "live"
MODE_OFFLINE = "offline"
GENERATION_MODES = (MODE_LIVE, MODE_OFFLINE)

MAX_ATTEMPTS = 2

TEXT_MODEL = os.getenv("TEXT_MODEL", "gpt-4.1-mini-2025-04-14").strip()
VISUAL_MODEL = os.getenv("VISUAL_MODEL", "gpt-4.1-mini-2025-04-14").strip()
try:
    TEXT_MAX_TOKENS = int(os.getenv("TEXT_MAX_TOKENS", "220"))
except ValueError:
    TEXT_MAX_TOKENS = 220
try:
    VISUAL_MAX_TOKENS = int(os.getenv("VISUAL_MAX_TOKENS", "550"))
except ValueError:
    VISUAL_MAX_TOKENS = 550

SendChat = Callable[[List[Dict[str, str]], Dict[str, Any]], str]


class FallbackContractError(RuntimeError):
    """The deterministic fallback produced a set its own validator rejects."""

    def __init__(self, kind: str, error: Dict[str, Any]):
        super().__init__(f"{kind} fallback failed validation: {error.get('code')} at {error.get('path')}: "
                         f"{error.get('message')}")
        self.kind = kind
        self.error = error


class _Failure:
    """One failed attempt: where it failed and the reason it maps to."""

    __slots__ = ("stage", "code", "message", "notes")

    def __init__(self, stage: str, code: str, message: str, notes: Optional[List[str]] = None):
        self.stage = stage
        self.code = code
        self.message = message
        self.notes = notes or []

    @classmethod
    def from_exception(cls, exc: Exception) -> "_Failure":
        if isinstance(exc, (TimeoutError, Timeout)):
            return cls("call", "timeout", f"chat call timed out: {exc}")
        code = getattr(exc, "code", None)
        if isinstance(exc, ChatError) or isinstance(code, str):
            return cls("call", str(code or "http_error"), f"chat call failed ({code}): {exc}")
        return cls("call", "error", f"chat call failed: {exc!r}")

    def feedback(self) -> str:
        if not self.notes:
            return self.message
        return f"{self.message}. Also vary the lanes: {'; '.join(self.notes)}"

    def reason(self) -> str:
        if self.stage == "call":
            if self.code == "timeout":
                return REASON_TIMEOUT
            if self.code == "content_policy":
                return REASON_CONTENT_FILTER
            return REASON_API_ERROR
        if self.stage == "refusal":
            return REASON_CONTENT_FILTER
        return REASON_INSUFFICIENT


class GenerationEngine:
    """Runs one lane set through attempt, repair and fallback.

    `send_chat(messages, options) -> str` is the only external dependency.
    In offline mode it is replaced by a capability that always rejects, so
    every call goes straight to the deterministic fallback.
    """

    def __init__(
        self,
        send_chat: Optional[SendChat] = None,
        mode: Optional[str] = None,
        text_model: Optional[str] = None,
        visual_model: Optional[str] = None,
        text_max_tokens: Optional[int] = None,
        visual_max_tokens: Optional[int] = None,
    ):
        mode = (mode or os.getenv("GENERATION_MODE", MODE_LIVE) or MODE_LIVE).strip().lower()
        if mode not in GENERATION_MODES:
            raise ValueError(f"unknown generation mode {mode!r}; expected one of {GENERATION_MODES}")
        self.mode = mode
        if mode == MODE_OFFLINE:
            self._send_chat: SendChat = llm_client.offline_chat
        else:
            self._send_chat = send_chat or llm_client.send_chat
        self.text_model = text_model or TEXT_MODEL
        self.visual_model = visual_model or VISUAL_MODEL
        self.text_max_tokens = text_max_tokens or TEXT_MAX_TOKENS
        self.visual_max_tokens = visual_max_tokens or VISUAL_MAX_TOKENS

    def _attempts(
        self,
        kind: str,
        build: Callable[[bool, Optional[str]], List[Dict[str, str]]],
        options: Dict[str, Any],
        parse: Callable[[Any], ParseResult],
        validate: Callable[[Any], Dict[str, Any]],
        variety: Callable[[Any], List[str]],
    ) -> Tuple[Optional[Dict[str, Any]], int, List[_Failure], List[str]]:
        failures: List[_Failure] = []
        for attempt in range(1, MAX_ATTEMPTS + 1):
            feedback = failures[-1].feedback() if failures else None
            messages = build(attempt > 1, feedback)
            log.debug("%s attempt %d messages=%s", kind, attempt, llm_prompts.describe_messages(messages))
            try:
                raw = self._send_chat(messages, dict(options))
            except Exception as exc:
                failure = _Failure.from_exception(exc)
                failures.append(failure)
                log.warning("%s attempt %d: %s", kind, attempt, failure.message)
                continue
            parsed = parse(raw)
            if not parsed.ok:
                failure = _Failure("refusal" if parsed.refusal else "parse", "parse", parsed.reason)
                failures.append(failure)
                log.warning("%s attempt %d: %s", kind, attempt, failure.message)
                continue
            verdict = validate(parsed.candidate)
            if verdict["valid"]:
                notes = variety(verdict)
                if notes:
                    log.info("%s attempt %d accepted with variety notes: %s", kind, attempt, "; ".join(notes))
                return verdict, attempt, failures, notes
            err = verdict["error"]
            failure = _Failure("validate", err["code"], f"{err['path']}: {err['message']}",
                               notes=variety(parsed.candidate))
            failures.append(failure)
            log.warning("%s attempt %d rejected (%s): %s", kind, attempt, err["kind"], failure.message)
        return None, MAX_ATTEMPTS, failures, []

    def generate_text(self, ctx: GenerationContext) -> TextResult:
        tags = ctx.effective_tags()
        anchors = tables.anchor_pack(ctx.category, ctx.subcategory)
        options = {
            "model": self.text_model,
            "max_tokens": self.text_max_tokens,
            "response_format": llm_prompts.response_format("text_lines", llm_prompts.text_lines_schema()),
        }

        def build(strengthen: bool, feedback: Optional[str]) -> List[Dict[str, str]]:
            return llm_prompts.build_text_messages(ctx, anchors, strengthen=strengthen, feedback=feedback)

        def variety(cand: Any) -> List[str]:
            return describe_issues(text_variety_issues(cand, tags))

        verdict, attempts, failures, warnings = self._attempts(
            "text", build, options, parse_text_response,
            lambda cand: validate_text_lines(cand, tags), variety,
        )
        errors = [f.message for f in failures]
        if verdict is not None:
            source = SOURCE_MODEL if attempts == 1 else SOURCE_REPAIRED
            return TextResult(lines=verdict["lines"], source=source, attempts=attempts, errors=errors,
                              warnings=warnings)

        reason = failures[-1].reason()
        lines = fallbacks.fallback_text_lines(ctx)
        check = validate_text_lines(lines, tags)
        if not check["valid"]:
            raise FallbackContractError("text", check["error"])
        log.info("text fallback used for %s (reason=%s)", ctx.context_id(), reason)
        return TextResult(lines=check["lines"], source=SOURCE_FALLBACK, reason=reason,
                          attempts=attempts, errors=errors, warnings=variety(check))

    def generate_visuals(self, ctx: GenerationContext, strict: bool = True) -> VisualResult:
        tags = ctx.effective_tags()
        anchors = tables.anchor_pack(ctx.category, ctx.subcategory)
        negatives = fallbacks.fallback_negative_prompt(ctx.category)
        solo_action = tables.solo_action_for(ctx.category, ctx.subcategory)
        vocab = tables.vocabulary_for(ctx.category)
        options = {
            "model": self.visual_model,
            "max_tokens": self.visual_max_tokens,
            "response_format": llm_prompts.response_format("visual_options", llm_prompts.visual_options_schema()),
        }

        def build(strengthen: bool, feedback: Optional[str]) -> List[Dict[str, str]]:
            return llm_prompts.build_visual_messages(
                ctx, anchors, negatives, solo_action, strengthen=strengthen, feedback=feedback
            )

        def variety(cand: Any) -> List[str]:
            return describe_issues(visual_variety_issues(cand, tags))

        verdict, attempts, failures, warnings = self._attempts(
            "visual", build, options, parse_visual_response,
            lambda cand: validate_visual_lines(cand, tags, strict=strict, vocabulary=vocab), variety,
        )
        errors = [f.message for f in failures]
        if verdict is not None:
            source = SOURCE_MODEL if attempts == 1 else SOURCE_REPAIRED
            return VisualResult(prompts=verdict["prompts"], negative_prompt=verdict["negative_prompt"],
                                source=source, attempts=attempts, errors=errors, warnings=warnings)

        reason = failures[-1].reason()
        prompts, negative = fallbacks.fallback_visual_lines(ctx)
        check = validate_visual_lines(prompts, tags, strict=True, negative_prompt=negative, vocabulary=vocab)
        if not check["valid"]:
            raise FallbackContractError("visual", check["error"])
        log.info("visual fallback used for %s (reason=%s)", ctx.context_id(), reason)
        return VisualResult(prompts=check["prompts"], negative_prompt=check["negative_prompt"],
                            source=SOURCE_FALLBACK, reason=reason, attempts=attempts, errors=errors,
                            warnings=variety(check))
