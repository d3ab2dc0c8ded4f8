#!/usr/bin/env python3
"""
Tests for request/response mapping between client formats and Gemini.
"""

import format_translator
from errors import InvalidRequest
from format_translator import (
    ANTHROPIC,
    OPENAI,
    ChatMessage,
    anthropic_error,
    extract_text,
    from_gemini_response,
    message_text,
    new_id,
    normalize_messages,
    openai_error,
    select_model,
    to_gemini_request,
    to_transcript,
)


def test_roles_map_to_gemini_turns():
    messages = normalize_messages(
        [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "Bye"},
        ],
        OPENAI,
    )

    request = to_gemini_request(messages)

    assert [c["role"] for c in request["contents"]] == ["user", "user", "model", "user"]
    assert [c["parts"][0]["text"] for c in request["contents"]] == ["Be brief.", "Hi", "Hello!", "Bye"]
    print("✓ roles_map_to_gemini_turns passed")


def test_generation_config_only_has_supplied_params():
    messages = [ChatMessage("user", "Hi")]

    assert "generationConfig" not in to_gemini_request(messages)
    assert to_gemini_request(messages, max_tokens=100)["generationConfig"] == {"maxOutputTokens": 100}
    assert to_gemini_request(messages, temperature=0)["generationConfig"] == {"temperature": 0}
    assert to_gemini_request(messages, max_tokens=5, temperature=0.7)["generationConfig"] == {
        "maxOutputTokens": 5,
        "temperature": 0.7,
    }
    print("✓ generation_config_only_has_supplied_params passed")


def test_system_prompt_becomes_system_instruction():
    request = to_gemini_request([ChatMessage("user", "Hi")], system="You are terse.")
    assert request["systemInstruction"] == {"parts": [{"text": "You are terse."}]}
    print("✓ system_prompt_becomes_system_instruction passed")


def test_transcript_flattens_conversation():
    messages = [
        ChatMessage("system", "Be brief."),
        ChatMessage("user", "Hi"),
        ChatMessage("assistant", "Hello!"),
    ]
    assert to_transcript(messages) == "system: Be brief.\nuser: Hi\nassistant: Hello!"
    print("✓ transcript_flattens_conversation passed")


def test_anthropic_drops_roles_it_does_not_define():
    messages = normalize_messages(
        [
            {"role": "system", "content": "ignored"},
            {"role": "user", "content": "Hi"},
            {"role": "tool", "content": "ignored too"},
        ],
        ANTHROPIC,
    )
    assert messages == [ChatMessage("user", "Hi")]
    print("✓ anthropic_drops_roles_it_does_not_define passed")


def test_content_blocks_are_joined():
    content = [
        {"type": "text", "text": "Hello "},
        {"type": "image", "source": {}},
        {"type": "text", "text": "world"},
    ]
    assert message_text(content) == "Hello world"
    assert message_text(None) == ""
    assert message_text(42) == ""
    print("✓ content_blocks_are_joined passed")


def test_invalid_message_lists_raise():
    for bad in [None, "hello", {"role": "user"}, 3]:
        try:
            normalize_messages(bad, OPENAI)
        except InvalidRequest as e:
            assert e.status_code == 400
            assert e.api_format == OPENAI
        else:
            raise AssertionError(f"expected InvalidRequest for {bad!r}")

    try:
        normalize_messages([{"role": "user", "content": "ok"}, "oops"], ANTHROPIC)
    except InvalidRequest as e:
        assert "messages[1]" in e.message
    else:
        raise AssertionError("expected InvalidRequest for non-object message")

    assert normalize_messages([], OPENAI) == []
    print("✓ invalid_message_lists_raise passed")


def test_extract_text_never_raises_on_missing_fields():
    assert extract_text({"candidates": [{"content": {"parts": [{"text": "hello"}]}}]}) == "hello"

    for raw in [
        None,
        {},
        {"candidates": []},
        {"candidates": [{}]},
        {"candidates": [{"content": {}}]},
        {"candidates": [{"content": {"parts": []}}]},
        {"candidates": [{"content": {"parts": [{}]}}]},
        {"candidates": [{"content": {"parts": [{"text": None}]}}]},
        {"candidates": "nope"},
        [],
    ]:
        assert extract_text(raw) == "", raw
    print("✓ extract_text_never_raises_on_missing_fields passed")


def test_openai_envelope():
    raw = {"candidates": [{"content": {"parts": [{"text": "hello"}]}}]}
    response = from_gemini_response(raw, "gpt-4o", OPENAI)

    assert response["object"] == "chat.completion"
    assert response["id"].startswith("chatcmpl-")
    assert isinstance(response["created"], int)
    assert response["model"] == "gpt-4o"
    assert response["choices"] == [
        {"index": 0, "message": {"role": "assistant", "content": "hello"}, "finish_reason": "stop"}
    ]
    assert response["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    print("✓ openai_envelope passed")


def test_anthropic_envelope():
    response = from_gemini_response({}, "claude-3-opus", ANTHROPIC)

    assert response["id"].startswith("msg_")
    assert response["type"] == "message"
    assert response["role"] == "assistant"
    assert response["content"] == [{"type": "text", "text": ""}]
    assert response["stop_reason"] == "end_turn"
    assert response["stop_sequence"] is None
    assert response["usage"] == {"input_tokens": 0, "output_tokens": 0}
    print("✓ anthropic_envelope passed")


def test_ids_are_unique_within_process():
    ids = {new_id("msg_") for _ in range(1000)}
    assert len(ids) == 1000
    print("✓ ids_are_unique_within_process passed")


def test_model_selection_heuristic():
    original = format_translator.MODEL_SELECTION
    try:
        format_translator.MODEL_SELECTION = "heuristic"
        assert select_model("gemini-FLASH-latest") == format_translator.GEMINI_MODEL_FLASH
        assert select_model("claude-3-5-haiku-flash") == format_translator.GEMINI_MODEL_FLASH
        assert select_model("gpt-4o") == format_translator.GEMINI_MODEL_PRO
        assert select_model(None) == format_translator.GEMINI_MODEL_PRO

        format_translator.MODEL_SELECTION = "fixed"
        assert select_model("flash") == format_translator.GEMINI_MODEL_DEFAULT
    finally:
        format_translator.MODEL_SELECTION = original
    print("✓ model_selection_heuristic passed")


def test_error_envelopes():
    assert openai_error("bad", "invalid_request_error") == {
        "error": {"message": "bad", "type": "invalid_request_error", "param": None, "code": None}
    }
    assert anthropic_error("bad", "invalid_request_error") == {
        "type": "error",
        "error": {"type": "invalid_request_error", "message": "bad"},
    }
    print("✓ error_envelopes passed")


def run_all_tests():
    """Run all tests."""
    try:
        test_roles_map_to_gemini_turns()
        test_generation_config_only_has_supplied_params()
        test_system_prompt_becomes_system_instruction()
        test_transcript_flattens_conversation()
        test_anthropic_drops_roles_it_does_not_define()
        test_content_blocks_are_joined()
        test_invalid_message_lists_raise()
        test_extract_text_never_raises_on_missing_fields()
        test_openai_envelope()
        test_anthropic_envelope()
        test_ids_are_unique_within_process()
        test_model_selection_heuristic()
        test_error_envelopes()
        print("\n✅ All tests passed!")
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        raise


if __name__ == "__main__":
    run_all_tests()
