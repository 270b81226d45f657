from jsonschema import Draft202012Validator

from vibegen import tables
from vibegen.lanes import GenerationContext
from vibegen.llm_prompts import (
    REPAIR_SUFFIX,
    build_text_messages,
    build_visual_messages,
    response_format,
    text_lines_schema,
    visual_options_schema,
)
from vibegen.tables import tone_instruction

CTX = GenerationContext(category="Celebrations", subcategory="Birthday Party", tone="Savage", tags=("Jesse",))


def _joined(messages):
    return "\n".join(m["content"] for m in messages)


def test_text_messages_carry_the_contract():
    messages = build_text_messages(CTX, ["cake", "candles"])
    assert [m["role"] for m in messages] == ["system", "user"]
    text = _joined(messages)
    for lane in ("platform", "audience", "skill", "absurdity"):
        assert lane in text
    assert '"birthday party"' in text and '"Jesse"' in text
    assert "cake, candles" in text
    assert "100 characters" in text
    assert "em-dashes" in text
    assert "Never start a line with a lane name" in text
    assert "JSON" in text
    for cliche in tables.CLICHES:
        assert cliche in text
    assert tone_instruction("Savage") in text
    assert REPAIR_SUFFIX not in text


def test_strengthened_prompt_adds_repair_instruction_and_feedback():
    messages = build_text_messages(CTX, ["cake"], strengthen=True, feedback="lines[0].text: banned cliche")
    user = messages[-1]["content"]
    assert "avoid clichés strictly" in user
    assert "banned cliche" in user


def test_visual_messages_carry_lane_rules():
    messages = build_visual_messages(CTX, ["cake"], "no banners with words", "blowing out candles")
    text = _joined(messages)
    for lane in ("objects", "group", "solo", "creative"):
        assert lane in text
    assert "no banners with words" in text
    assert "blowing out candles" in text
    assert "300 characters" in text
    assert "negativePrompt" in text
    assert "symbolic or abstract" in text


def test_tone_instruction_falls_back_to_generic():
    assert tone_instruction("Sentimental").startswith("Heartfelt")
    assert tone_instruction("Grumpy") == "Maintain appropriate tone for the context."


def test_schemas_are_valid_2020_12():
    for schema in (text_lines_schema(), visual_options_schema()):
        Draft202012Validator.check_schema(schema)


def test_text_schema_accepts_four_lines_only():
    v = Draft202012Validator(text_lines_schema())
    good = {"lines": [{"lane": lane, "text": "hi"} for lane in ("platform", "audience", "skill", "absurdity")]}
    assert v.is_valid(good)
    assert not v.is_valid({"lines": good["lines"][:3]})
    assert not v.is_valid({"lines": [{"lane": "platform", "text": "x" * 101}] * 4})


def test_visual_schema_requires_negative_prompt():
    v = Draft202012Validator(visual_options_schema())
    opts = [{"lane": lane, "prompt": "p"} for lane in ("objects", "group", "solo", "creative")]
    assert v.is_valid({"visualOptions": opts, "negativePrompt": "no text"})
    assert not v.is_valid({"visualOptions": opts})


def test_response_format_wraps_schema():
    fmt = response_format("text_lines", text_lines_schema())
    assert fmt["type"] == "json_schema"
    assert fmt["json_schema"]["name"] == "text_lines"
    assert "$schema" not in fmt["json_schema"]["schema"]
    assert fmt["json_schema"]["schema"]["required"] == ["lines"]
