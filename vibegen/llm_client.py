from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import RequestException, Timeout

log = logging.getLogger(__name__)

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "").strip()
OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "openai/gpt-4.1-mini").strip()
OPENROUTER_FALLBACK_MODEL = os.getenv("OPENROUTER_FALLBACK_MODEL", "").strip()
OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"

# Groq (OpenAI-compatible) fallback provider
GROQ_API_KEY = os.getenv("GROQ_API_KEY", "").strip()
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant").strip()
GROQ_ENDPOINT = "https://api.groq.com/openai/v1/chat/completions"

_OPENROUTER_BACKOFF_LOCK = threading.Lock()
_OPENROUTER_BACKOFF_UNTIL = 0.0
_OPENROUTER_BACKOFF_DELAY = 0.0
try:
    _OPENROUTER_BACKOFF_INITIAL = float(os.getenv("OPENROUTER_BACKOFF_INITIAL", "3.0") or 3.0)
except ValueError:
    _OPENROUTER_BACKOFF_INITIAL = 3.0
try:
    _OPENROUTER_BACKOFF_MAX = float(os.getenv("OPENROUTER_BACKOFF_MAX", "45.0") or 45.0)
except ValueError:
    _OPENROUTER_BACKOFF_MAX = 45.0
_OPENROUTER_BACKOFF_FACTOR = 1.5

try:
    TEMPERATURE = float(os.getenv("TEMPERATURE", "0.8"))
except ValueError:
    TEMPERATURE = 0.8
try:
    LLM_TIMEOUT_SECS = int(os.getenv("LLM_TIMEOUT_SECS", "15"))
except ValueError:
    LLM_TIMEOUT_SECS = 15

_CONTENT_POLICY_MARKERS = ("content_policy", "content policy", "safety system", "flagged", "moderation")


class ChatError(Exception):
    """A chat-completion call failed.

    code is one of: timeout, rate_limited, content_policy, http_error,
    bad_response, unavailable, disabled.
    """

    def __init__(self, message: str, code: str = "http_error", status_code: Optional[int] = None,
                 provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.provider = provider

    def __str__(self) -> str:
        return self.message


def _openrouter_sleep_if_needed() -> None:
    now = time.time()
    wait_for = 0.0
    with _OPENROUTER_BACKOFF_LOCK:
        if _OPENROUTER_BACKOFF_UNTIL > now:
            wait_for = _OPENROUTER_BACKOFF_UNTIL - now
    if wait_for > 0:
        log.info("OpenRouter backoff active; waiting %.2fs before next request", wait_for)
        time.sleep(min(wait_for, _OPENROUTER_BACKOFF_MAX))


def _openrouter_register_rate_limit(retry_after: Optional[str]) -> None:
    delay = None
    if retry_after:
        try:
            delay = float(retry_after)
        except ValueError:
            delay = None
    global _OPENROUTER_BACKOFF_DELAY, _OPENROUTER_BACKOFF_UNTIL
    with _OPENROUTER_BACKOFF_LOCK:
        base = _OPENROUTER_BACKOFF_DELAY or _OPENROUTER_BACKOFF_INITIAL
        if delay is None:
            delay = base * _OPENROUTER_BACKOFF_FACTOR
        delay = max(_OPENROUTER_BACKOFF_INITIAL, min(delay, _OPENROUTER_BACKOFF_MAX))
        _OPENROUTER_BACKOFF_DELAY = delay
        _OPENROUTER_BACKOFF_UNTIL = time.time() + delay
        log.warning("OpenRouter rate limited; backing off for %.2fs", delay)


def _openrouter_reset_backoff() -> None:
    global _OPENROUTER_BACKOFF_DELAY, _OPENROUTER_BACKOFF_UNTIL
    with _OPENROUTER_BACKOFF_LOCK:
        _OPENROUTER_BACKOFF_DELAY = 0.0
        _OPENROUTER_BACKOFF_UNTIL = 0.0


def status() -> Dict[str, Any]:
    if OPENROUTER_API_KEY:
        return {"provider": "openrouter", "model": OPENROUTER_MODEL, "has_token": True, "using": "openrouter"}
    if GROQ_API_KEY:
        return {"provider": "groq", "model": GROQ_MODEL, "has_token": True, "using": "groq"}
    return {"provider": None, "model": None, "has_token": False, "using": "fallback"}


def probe() -> Dict[str, Any]:
    if OPENROUTER_API_KEY:
        return {"ok": True, "using": "openrouter"}
    if GROQ_API_KEY:
        return {"ok": True, "using": "groq"}
    return {"ok": False, "using": "fallback", "error": "Model or token not configured"}


def _body_text(resp: Any) -> str:
    try:
        return resp.text or ""
    except (AttributeError, ValueError):
        return ""


def _error_for_response(resp: Any, provider: str) -> ChatError:
    txt = _body_text(resp)
    lower = txt.lower()
    code = "http_error"
    if resp.status_code == 429:
        code = "rate_limited"
    elif resp.status_code in (400, 403) and any(m in lower for m in _CONTENT_POLICY_MARKERS):
        code = "content_policy"
    log.warning("%s HTTP %s: %s", provider, resp.status_code, txt[:400])
    return ChatError(f"{provider} HTTP {resp.status_code}", code=code, status_code=resp.status_code,
                     provider=provider)


def _content_of(resp: Any, provider: str) -> str:
    try:
        data = resp.json()
    except ValueError as e:
        raise ChatError(f"{provider}: non-JSON HTTP body", code="bad_response", provider=provider) from e
    try:
        choice = (data.get("choices") or [{}])[0]
    except (AttributeError, IndexError, TypeError):
        choice = {}
    if not isinstance(choice, dict):
        choice = {}
    if choice.get("finish_reason") == "content_filter":
        raise ChatError(f"{provider}: response blocked by content filter", code="content_policy",
                        provider=provider)
    message = choice.get("message") or {}
    refusal = message.get("refusal") if isinstance(message, dict) else None
    if isinstance(refusal, str) and refusal.strip():
        raise ChatError(f"{provider}: model refused ({refusal[:120]})", code="content_policy", provider=provider)
    text = message.get("content") if isinstance(message, dict) else None
    if not text or not isinstance(text, str):
        raise ChatError(f"{provider}: empty response text", code="bad_response", provider=provider)
    return text


def _post_chat(endpoint: str, headers: Dict[str, str], body: Dict[str, Any], provider: str) -> Any:
    if provider == "openrouter":
        _openrouter_sleep_if_needed()
    try:
        resp = requests.post(endpoint, headers=headers, json=body, timeout=LLM_TIMEOUT_SECS)
    except Timeout as e:
        log.warning("%s request timed out after %ss", provider, LLM_TIMEOUT_SECS)
        raise ChatError(f"{provider} timed out", code="timeout", provider=provider) from e
    except RequestException as e:
        log.warning("%s request error: %r", provider, e)
        raise ChatError(f"{provider} request error: {e!r}", code="http_error", provider=provider) from e
    if provider == "openrouter":
        if resp.status_code == 429:
            headers_in = getattr(resp, "headers", None) or {}
            _openrouter_register_rate_limit(headers_in.get("Retry-After"))
        elif resp.status_code == 200:
            _openrouter_reset_backoff()
    return resp


def _complete(endpoint: str, headers: Dict[str, str], body: Dict[str, Any], provider: str) -> str:
    """POST a chat body, stepping down json_schema -> json_object -> plain when the provider rejects it."""
    resp = _post_chat(endpoint, headers, body, provider)
    if resp.status_code == 400 and "response_format" in body:
        txt = _body_text(resp)
        if not any(m in txt.lower() for m in _CONTENT_POLICY_MARKERS):
            fmt = body.get("response_format") or {}
            body = dict(body)
            if fmt.get("type") == "json_schema":
                log.info("%s rejected json_schema output; retrying with json_object", provider)
                body["response_format"] = {"type": "json_object"}
                resp = _post_chat(endpoint, headers, body, provider)
            if resp.status_code == 400:
                log.info("%s rejected JSON mode; retrying without response_format", provider)
                body.pop("response_format", None)
                resp = _post_chat(endpoint, headers, body, provider)
    if resp.status_code != 200:
        raise _error_for_response(resp, provider)
    return _content_of(resp, provider)


def _openrouter_model_name(model: Optional[str]) -> str:
    if not model:
        return OPENROUTER_MODEL
    return model if "/" in model else f"openai/{model}"


def _call_openrouter(messages: List[Dict[str, str]], options: Dict[str, Any]) -> str:
    headers = {
        "Authorization": f"Bearer {OPENROUTER_API_KEY}",
        "Content-Type": "application/json",
        "X-Title": "vibegen",
    }
    model = _openrouter_model_name(options.get("model"))
    body: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": float(options.get("temperature", TEMPERATURE)),
    }
    if options.get("max_tokens"):
        body["max_tokens"] = int(options["max_tokens"])
    if options.get("response_format"):
        body["response_format"] = options["response_format"]
    try:
        return _complete(OPENROUTER_ENDPOINT, headers, body, "openrouter")
    except ChatError as e:
        fallback = OPENROUTER_FALLBACK_MODEL
        if not fallback or fallback == model or e.code not in {"rate_limited", "http_error"}:
            raise
        log.warning("OpenRouter model '%s' failed (%s); retrying with fallback '%s'", model, e.code, fallback)
        return _complete(OPENROUTER_ENDPOINT, headers, dict(body, model=fallback), "openrouter")


def _call_groq(messages: List[Dict[str, str]], options: Dict[str, Any]) -> str:
    headers = {
        "Authorization": f"Bearer {GROQ_API_KEY}",
        "Content-Type": "application/json",
    }
    body: Dict[str, Any] = {
        "model": GROQ_MODEL,
        "messages": messages,
        "temperature": float(options.get("temperature", TEMPERATURE)),
    }
    if options.get("max_tokens"):
        body["max_tokens"] = int(options["max_tokens"])
    # Groq supports JSON mode but not every model takes a json_schema block.
    if options.get("response_format"):
        body["response_format"] = {"type": "json_object"}
    return _complete(GROQ_ENDPOINT, headers, body, "groq")


def send_chat(messages: List[Dict[str, str]], options: Optional[Dict[str, Any]] = None) -> str:
    """Send one chat completion and return the assistant text.

    Providers are tried in order (OpenRouter, then Groq) using whichever keys
    are configured. Raises ChatError with the last provider's failure, or with
    code "unavailable" when no provider is configured.
    """
    options = dict(options or {})
    last: Optional[ChatError] = None
    if OPENROUTER_API_KEY:
        try:
            return _call_openrouter(messages, options)
        except ChatError as e:
            last = e
            if e.code == "content_policy":
                raise
    if GROQ_API_KEY:
        try:
            return _call_groq(messages, options)
        except ChatError as e:
            last = e
    if last is not None:
        raise last
    raise ChatError("No chat provider configured", code="unavailable")


def offline_chat(messages: List[Dict[str, str]], options: Optional[Dict[str, Any]] = None) -> str:
    """Capability used when generation mode is offline; always rejects."""
    raise ChatError("AI generation disabled", code="disabled")
