import json as jsonlib
import types

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import Timeout

from vibegen import llm_client
from vibegen.llm_client import ChatError

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
SCHEMA_FORMAT = {"type": "json_schema", "json_schema": {"name": "text_lines", "strict": True, "schema": {}}}


class FakeResp:
    def __init__(self, status, payload=None, text=None, headers=None):
        self.status_code = status
        self._payload = payload
        self.text = text if text is not None else jsonlib.dumps(payload)
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


def _ok(content, finish_reason="stop"):
    return FakeResp(200, {"choices": [{"message": {"content": content}, "finish_reason": finish_reason}]})


def _fake_requests(monkeypatch, *responses):
    captured = {"urls": [], "bodies": [], "headers": []}
    queue = list(responses)

    def fake_post(url, headers=None, json=None, timeout=None, **kwargs):
        captured["urls"].append(url)
        captured["bodies"].append(json)
        captured["headers"].append(headers)
        resp = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(resp, Exception):
            raise resp
        return resp

    monkeypatch.setattr(llm_client, "requests", types.SimpleNamespace(post=fake_post))
    return captured


@pytest.fixture(autouse=True)
def _providers(monkeypatch):
    monkeypatch.setattr(llm_client, "OPENROUTER_API_KEY", "or-key")
    monkeypatch.setattr(llm_client, "GROQ_API_KEY", "")
    monkeypatch.setattr(llm_client, "OPENROUTER_FALLBACK_MODEL", "")
    llm_client._openrouter_reset_backoff()
    yield
    llm_client._openrouter_reset_backoff()


def test_prefers_openrouter_over_groq(monkeypatch):
    monkeypatch.setattr(llm_client, "GROQ_API_KEY", "groq-key")
    called = {"groq": False, "openrouter": False}

    def openrouter_ok(messages, options):
        called["openrouter"] = True
        return "{}"

    def groq_never(messages, options):
        called["groq"] = True
        raise AssertionError("Groq should not be called when OpenRouter succeeds")

    monkeypatch.setattr(llm_client, "_call_openrouter", openrouter_ok)
    monkeypatch.setattr(llm_client, "_call_groq", groq_never)
    assert llm_client.send_chat(MESSAGES, {}) == "{}"
    assert called == {"groq": False, "openrouter": True}


def test_falls_back_to_groq_when_openrouter_fails(monkeypatch):
    monkeypatch.setattr(llm_client, "GROQ_API_KEY", "groq-key")

    def openrouter_fail(messages, options):
        raise ChatError("down", code="http_error", status_code=502)

    monkeypatch.setattr(llm_client, "_call_openrouter", openrouter_fail)
    monkeypatch.setattr(llm_client, "_call_groq", lambda messages, options: "from groq")
    assert llm_client.send_chat(MESSAGES, {}) == "from groq"


def test_content_policy_is_not_retried_on_groq(monkeypatch):
    monkeypatch.setattr(llm_client, "GROQ_API_KEY", "groq-key")

    def blocked(messages, options):
        raise ChatError("blocked", code="content_policy")

    def groq_never(messages, options):
        raise AssertionError("Groq should not see content that was blocked")

    monkeypatch.setattr(llm_client, "_call_openrouter", blocked)
    monkeypatch.setattr(llm_client, "_call_groq", groq_never)
    with pytest.raises(ChatError) as exc:
        llm_client.send_chat(MESSAGES, {})
    assert exc.value.code == "content_policy"


def test_no_provider_is_unavailable(monkeypatch):
    monkeypatch.setattr(llm_client, "OPENROUTER_API_KEY", "")
    with pytest.raises(ChatError) as exc:
        llm_client.send_chat(MESSAGES, {})
    assert exc.value.code == "unavailable"


def test_openrouter_body_and_model_mapping(monkeypatch):
    captured = _fake_requests(monkeypatch, _ok('{"lines": []}'))
    out = llm_client.send_chat(MESSAGES, {
        "model": "gpt-4.1-mini-2025-04-14",
        "max_tokens": 220,
        "response_format": SCHEMA_FORMAT,
    })
    assert out == '{"lines": []}'
    assert captured["urls"] == [llm_client.OPENROUTER_ENDPOINT]
    body = captured["bodies"][0]
    assert body["model"] == "openai/gpt-4.1-mini-2025-04-14"
    assert body["max_tokens"] == 220
    assert body["messages"] == MESSAGES
    assert body["response_format"] == SCHEMA_FORMAT
    assert captured["headers"][0]["Authorization"] == "Bearer or-key"


def test_rejected_json_schema_steps_down_to_json_object(monkeypatch):
    captured = _fake_requests(
        monkeypatch,
        FakeResp(400, text="response_format json_schema is not supported for this model"),
        _ok("{}"),
    )
    assert llm_client.send_chat(MESSAGES, {"response_format": SCHEMA_FORMAT}) == "{}"
    formats = [b.get("response_format") for b in captured["bodies"]]
    assert formats == [SCHEMA_FORMAT, {"type": "json_object"}]


def test_rejected_json_mode_retries_without_response_format(monkeypatch):
    captured = _fake_requests(
        monkeypatch,
        FakeResp(400, text="JSON mode is not enabled"),
        FakeResp(400, text="JSON mode is not enabled"),
        _ok("{}"),
    )
    assert llm_client.send_chat(MESSAGES, {"response_format": SCHEMA_FORMAT}) == "{}"
    assert "response_format" not in captured["bodies"][-1]
    assert len(captured["bodies"]) == 3


def test_timeout_maps_to_timeout_code(monkeypatch):
    _fake_requests(monkeypatch, Timeout("read timed out"))
    with pytest.raises(ChatError) as exc:
        llm_client.send_chat(MESSAGES, {})
    assert exc.value.code == "timeout"


def test_connection_error_maps_to_http_error(monkeypatch):
    _fake_requests(monkeypatch, RequestsConnectionError("refused"))
    with pytest.raises(ChatError) as exc:
        llm_client.send_chat(MESSAGES, {})
    assert exc.value.code == "http_error"


def test_rate_limit_registers_backoff(monkeypatch):
    _fake_requests(monkeypatch, FakeResp(429, text="slow down", headers={"Retry-After": "5"}))
    with pytest.raises(ChatError) as exc:
        llm_client.send_chat(MESSAGES, {})
    assert exc.value.code == "rate_limited"
    assert exc.value.status_code == 429
    assert llm_client._OPENROUTER_BACKOFF_DELAY == 5.0
    assert llm_client._OPENROUTER_BACKOFF_UNTIL > 0


def test_fallback_model_on_model_error(monkeypatch):
    monkeypatch.setattr(llm_client, "OPENROUTER_FALLBACK_MODEL", "meta-llama/llama-3.1-8b-instruct")
    captured = _fake_requests(monkeypatch, FakeResp(404, text="model not found"), _ok("ok"))
    assert llm_client.send_chat(MESSAGES, {"model": "openai/gpt-x"}) == "ok"
    assert [b["model"] for b in captured["bodies"]] == ["openai/gpt-x", "meta-llama/llama-3.1-8b-instruct"]


def test_content_filter_finish_reason(monkeypatch):
    _fake_requests(monkeypatch, _ok("", finish_reason="content_filter"))
    with pytest.raises(ChatError) as exc:
        llm_client.send_chat(MESSAGES, {})
    assert exc.value.code == "content_policy"


def test_policy_400_is_content_policy(monkeypatch):
    _fake_requests(monkeypatch, FakeResp(400, text='{"error": {"code": "content_policy_violation"}}'))
    with pytest.raises(ChatError) as exc:
        llm_client.send_chat(MESSAGES, {"response_format": SCHEMA_FORMAT})
    assert exc.value.code == "content_policy"


def test_empty_content_is_bad_response(monkeypatch):
    _fake_requests(monkeypatch, FakeResp(200, {"choices": []}))
    with pytest.raises(ChatError) as exc:
        llm_client.send_chat(MESSAGES, {})
    assert exc.value.code == "bad_response"


def test_groq_uses_json_object_and_own_model(monkeypatch):
    monkeypatch.setattr(llm_client, "OPENROUTER_API_KEY", "")
    monkeypatch.setattr(llm_client, "GROQ_API_KEY", "groq-key")
    captured = _fake_requests(monkeypatch, _ok("{}"))
    llm_client.send_chat(MESSAGES, {"model": "gpt-4.1-mini", "response_format": SCHEMA_FORMAT})
    assert captured["urls"] == [llm_client.GROQ_ENDPOINT]
    assert captured["bodies"][0]["model"] == llm_client.GROQ_MODEL
    assert captured["bodies"][0]["response_format"] == {"type": "json_object"}


def test_offline_chat_always_rejects():
    with pytest.raises(ChatError) as exc:
        llm_client.offline_chat(MESSAGES, {})
    assert exc.value.code == "disabled"


def test_status_reports_provider(monkeypatch):
    assert llm_client.status()["provider"] == "openrouter"
    monkeypatch.setattr(llm_client, "OPENROUTER_API_KEY", "")
    assert llm_client.status()["has_token"] is False
    monkeypatch.setattr(llm_client, "GROQ_API_KEY", "g")
    assert llm_client.status()["using"] == "groq"
