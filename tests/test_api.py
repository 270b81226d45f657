import json

import pytest
from fastapi.testclient import TestClient

from vibegen import image_client
from vibegen import main
from vibegen.image_client import ImageGenerationError
from vibegen.llm_client import ChatError

client = TestClient(main.app)

BIRTHDAY = {"category": "Celebrations", "subcategory": "Birthday Party", "tone": "Humorous", "tags": ["Jesse"]}
HOCKEY = {"category": "Sports", "subcategory": "Hockey", "tone": "Savage", "tags": ["team"]}

TEXT_REPLY = json.dumps({"lines": [
    {"lane": "platform", "text": "Jesse brings the birthday party cake in like a parade float."},
    {"lane": "audience", "text": "Everyone at the birthday party claps when Jesse finds the candles."},
    {"lane": "skill", "text": "Jesse lights every candle at the birthday party in one smooth pass."},
    {"lane": "absurdity", "text": "The birthday party balloons voted Jesse mayor of the snack table."},
]})

VISUAL_OPTIONS = [
    {"lane": "objects", "prompt": "Stick, puck and a goal net on fresh ice, hockey details, team colors"},
    {"lane": "group", "prompt": "A group of friends in team jerseys celebrating a hockey goal"},
    {"lane": "solo", "prompt": "One skater stopping hard with ice spray, hockey team bench behind"},
    {"lane": "creative", "prompt": "Symbolic hockey arrangement of sticks forming a team crest"},
]
VISUAL_REPLY = json.dumps({"visualOptions": VISUAL_OPTIONS, "negativePrompt": "no laptops, no desks"})


def _chat_by_format(messages, options):
    name = options["response_format"]["json_schema"]["name"]
    return TEXT_REPLY if name == "text_lines" else VISUAL_REPLY


@pytest.fixture(autouse=True)
def _live_mode(monkeypatch):
    monkeypatch.setenv("GENERATION_MODE", "live")


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers.get("X-Request-ID")


def test_llm_status_reports_mode(monkeypatch):
    monkeypatch.setenv("GENERATION_MODE", "offline")
    data = client.get("/llm/status").json()
    assert data["mode"] == "offline"
    assert "using" in data


def test_generate_text_from_model(monkeypatch):
    monkeypatch.setattr(main, "llm_send_chat", lambda messages, options: TEXT_REPLY)
    r = client.post("/generate/text", json=BIRTHDAY)
    assert r.status_code == 200
    data = r.json()
    assert data["source"] == "model"
    assert data["attempts"] == 1
    assert [ln["lane"] for ln in data["lines"]] == ["platform", "audience", "skill", "absurdity"]


def test_generate_text_falls_back_when_provider_fails(monkeypatch):
    def down(messages, options):
        raise ChatError("down", code="http_error", status_code=503)

    monkeypatch.setattr(main, "llm_send_chat", down)
    data = client.post("/generate/text", json=BIRTHDAY).json()
    assert data["source"] == "fallback"
    assert data["reason"] == "api-error"
    assert data["attempts"] == 2
    for line in data["lines"]:
        assert "jesse" in line["text"].lower()
        assert len(line["text"]) <= 100


def test_generate_text_offline_never_calls_provider(monkeypatch):
    def never(messages, options):
        raise AssertionError("provider should not be called offline")

    monkeypatch.setattr(main, "llm_send_chat", never)
    monkeypatch.setenv("GENERATION_MODE", "offline")
    data = client.post("/generate/text", json=BIRTHDAY).json()
    assert data["source"] == "fallback"
    assert data["reason"] == "api-error"


@pytest.mark.parametrize("tone", ["Humorous", "Savage", "Serious"])
def test_single_letter_tag_offline_visuals(monkeypatch, tone):
    monkeypatch.setenv("GENERATION_MODE", "offline")
    body = {"category": "Pop Culture", "subcategory": "Music", "tone": tone, "tags": ["a"]}
    resp = client.post("/generate/visuals", json=body)
    assert resp.status_code == 200
    assert resp.json()["source"] == "fallback"


def test_generate_visuals(monkeypatch):
    monkeypatch.setattr(main, "llm_send_chat", lambda messages, options: VISUAL_REPLY)
    data = client.post("/generate/visuals", json=HOCKEY).json()
    assert data["source"] == "model"
    assert data["negative_prompt"] == "no laptops, no desks"
    assert [p["lane"] for p in data["prompts"]] == ["objects", "group", "solo", "creative"]


def test_generate_options_runs_both_lanes(monkeypatch):
    monkeypatch.setattr(main, "llm_send_chat", _chat_by_format)
    hockey_text = dict(HOCKEY, tags=[])
    data = client.post("/generate/options", json=hockey_text).json()
    assert set(data) == {"text", "visuals"}
    assert len(data["text"]["lines"]) == 4
    assert len(data["visuals"]["prompts"]) == 4


@pytest.mark.parametrize(
    "tags",
    [
        ["a", "b", "c", "d", "e", "f", "g"],
        ["x" * 31],
        ["Jesse -- the legend"],
        ["twenty characters ab", "twenty characters cd", "twenty characters ef", "twenty characters gh"],
    ],
)
def test_bad_tags_are_rejected(tags):
    r = client.post("/generate/text", json=dict(BIRTHDAY, tags=tags))
    assert r.status_code == 422


def test_missing_category_is_rejected():
    r = client.post("/generate/text", json={"subcategory": "Hockey"})
    assert r.status_code == 422


def test_validate_text_ok():
    body = {"candidate": json.loads(TEXT_REPLY), "tags": ["Jesse"], "subcategory": "Birthday Party"}
    r = client.post("/validate/text", json=body)
    assert r.status_code == 200
    assert r.json() == {"detail": {"valid": True}}


def test_validate_text_reports_errors():
    candidate = json.loads(TEXT_REPLY)
    candidate["lines"][1]["text"] = "Everyone claps -- again."
    r = client.post("/validate/text", json={"candidate": candidate, "tags": ["Jesse"]})
    assert r.status_code == 422
    detail = r.json()["detail"]
    assert detail["valid"] is False
    paths = [e["path"] for e in detail["errors"]]
    assert "lines[1].text" in paths


def test_validate_visuals_ok_and_missing_negative():
    body = {"candidate": json.loads(VISUAL_REPLY), "tags": ["team"], "subcategory": "Hockey", "category": "Sports"}
    assert client.post("/validate/visuals", json=body).status_code == 200
    body["candidate"] = {"visualOptions": VISUAL_OPTIONS}
    r = client.post("/validate/visuals", json=body)
    assert r.status_code == 422
    assert any(e["path"] == "negativePrompt" for e in r.json()["detail"]["errors"])


def test_compose_accepts_camel_case_and_defaults_layout():
    body = {
        "textContent": "Happy birthday Jesse",
        "textLayoutId": "nope",
        "visualStyle": "realistic",
        "visualOption": {"lane": "objects", "text": "Cake and candles on a table"},
        "category": "Celebrations",
        "subcategory": "Birthday Party",
        "tags": ["Jesse"],
    }
    r = client.post("/compose", json=body)
    assert r.status_code == 200
    data = r.json()
    assert data["textLayoutSpec"]["type"] == "negativeSpace"
    assert data["contextId"] == "celebrations.birthdayparty"
    assert data["visualPrompt"] == "Cake and candles on a table"
    assert data["dimensions"] == "square"


COMPOSE = {
    "text_content": "The team skates like rent is due",
    "visual_style": "realistic",
    "visual_option": "Stick and puck on fresh ice, hockey team colors",
    "category": "Sports",
    "subcategory": "Hockey",
    "tags": ["team"],
}


def test_generate_image_without_key(monkeypatch):
    monkeypatch.setattr(image_client, "IDEOGRAM_API_KEY", "")
    r = client.post("/generate/image", json=COMPOSE)
    assert r.status_code == 503
    assert "error" in r.json()


def test_generate_image_maps_provider_errors(monkeypatch):
    monkeypatch.setattr(image_client, "IDEOGRAM_API_KEY", "k")

    def limited(payload, model=None):
        raise ImageGenerationError("Ideogram HTTP 429", code="rate_limited", status_code=429)

    monkeypatch.setattr(image_client, "generate_image", limited)
    r = client.post("/generate/image", json=COMPOSE)
    assert r.status_code == 429
    assert r.json()["code"] == "rate_limited"


def test_generate_image_success(monkeypatch):
    monkeypatch.setattr(image_client, "IDEOGRAM_API_KEY", "k")
    monkeypatch.setattr(image_client, "generate_image",
                        lambda payload, model=None: {"url": "https://img.example/x.png", "model": "V_2"})
    r = client.post("/generate/image", json=COMPOSE)
    assert r.status_code == 200
    data = r.json()
    assert data["url"] == "https://img.example/x.png"
    assert data["payload"]["contextId"] == "sports.hockey"
    assert data["payload"]["negativePrompt"]
