"""Unit tests for the streaming prompt consumer."""

import json

import pytest

from studio_jobs.streaming import PromptStreamConsumer, extract_delta, parse_prompts


def sse(payload):
    if not isinstance(payload, str):
        payload = json.dumps(payload, ensure_ascii=False)
    return f"data: {payload}\n\n"


def test_extract_delta_forms():
    assert extract_delta({"choices": [{"delta": {"content": "ab"}}]}, "") == ("ab", False)
    assert extract_delta({"delta": "cd"}, "ab") == ("cd", False)
    assert extract_delta({"fullText": "abcd"}, "ab") == ("cd", False)
    assert extract_delta({"fullText": "xyz"}, "ab") == ("xyz", True)
    assert extract_delta({"choices": [{"delta": {}}]}, "") == (None, False)
    assert extract_delta({"unrelated": 1}, "") == (None, False)


def test_json_array_stream():
    consumer = PromptStreamConsumer(expected_count=2)
    body = '[{"prompt":"Red mug on oak table"},{"prompt":"Red mug in kitchen"}]'
    for piece in (body[:15], body[15:40], body[40:]):
        consumer.feed(sse({"delta": piece}))
    consumer.feed(sse("[DONE]"))

    result = consumer.finish()

    assert result.prompts == ["Red mug on oak table", "Red mug in kitchen"]
    assert result.parse_mode == "json"
    assert result.done
    assert not result.degraded


def test_events_split_across_chunks():
    """A data line split between network chunks is reassembled."""
    consumer = PromptStreamConsumer()
    raw = sse({"fullText": '[{"prompt":"Studio shot"}]'}) + sse("[DONE]")

    for i in range(0, len(raw), 7):
        consumer.feed(raw[i:i + 7].encode("utf-8"))

    assert consumer.finish().prompts == ["Studio shot"]


def test_multibyte_characters_split_across_chunks():
    consumer = PromptStreamConsumer()
    raw = sse({"delta": '[{"prompt":"白色背景的产品照片"}]'}).encode("utf-8")

    for i in range(len(raw)):
        consumer.feed(raw[i:i + 1])

    assert consumer.finish().prompts == ["白色背景的产品照片"]


def test_cumulative_full_text_is_not_duplicated():
    consumer = PromptStreamConsumer()
    consumer.feed(sse({"fullText": '[{"prompt":'}))
    consumer.feed(sse({"fullText": '[{"prompt":"Hero shot"}]'}))
    consumer.feed(sse({"fullText": '[{"prompt":"Hero shot"}]'}))

    assert consumer.text == '[{"prompt":"Hero shot"}]'


def test_openai_style_chunks():
    consumer = PromptStreamConsumer()
    for piece in ('["Flat lay', ' on linen"]'):
        consumer.feed(sse({"choices": [{"delta": {"content": piece}}]}))

    assert consumer.finish().prompts == ["Flat lay on linen"]


def test_error_event_keeps_partial_text():
    consumer = PromptStreamConsumer()
    consumer.feed(sse({"delta": '[{"prompt":"Partial'}))
    consumer.feed(sse({"fullText": '[{"prompt":"Partial', "error": "upstream closed"}))
    consumer.feed(sse("[DONE]"))

    result = consumer.finish()

    assert result.error == "upstream closed"
    assert result.raw_text == '[{"prompt":"Partial'


def test_error_marker():
    consumer = PromptStreamConsumer()
    consumer.feed(sse("[ERROR] rate limited"))

    assert consumer.finish().error == "rate limited"


def test_input_after_done_is_ignored():
    consumer = PromptStreamConsumer()
    consumer.feed(sse({"delta": '["one prompt here"]'}) + sse("[DONE]") + sse({"delta": "junk"}))

    assert consumer.finish().prompts == ["one prompt here"]


def test_unterminated_final_line_is_flushed():
    consumer = PromptStreamConsumer()
    consumer.feed('data: {"delta": "[\\"last prompt\\"]"}')

    assert consumer.finish().prompts == ["last prompt"]


@pytest.mark.asyncio
async def test_consume_async_stream():
    async def chunks():
        yield sse({"delta": '[{"prompt":"A"},'}).encode()
        yield sse({"delta": '{"prompt":"B"}]'}).encode()
        yield sse("[DONE]").encode()
        yield sse({"delta": "never read"}).encode()

    result = await PromptStreamConsumer(expected_count=2).consume(chunks())

    assert result.prompts == ["A", "B"]


def test_parse_fenced_json():
    text = 'Here you go:\n```json\n[{"prompt": "Mug on marble"}]\n```'

    assert parse_prompts(text) == (["Mug on marble"], "fenced")


def test_parse_embedded_array():
    text = 'Sure! [{"prompt": "Mug at sunrise"}] Hope this helps.'

    assert parse_prompts(text) == (["Mug at sunrise"], "array")


def test_parse_object_with_prompts_key():
    assert parse_prompts('{"prompts": ["one", "two"]}') == (["one", "two"], "json")


def test_parse_paragraphs():
    text = (
        "1. A ceramic mug on a walnut desk with morning light\n"
        "2. The same mug held in two hands in a cozy cafe\n\n"
        "ok"
    )

    prompts, mode = parse_prompts(text, expected_count=2)

    assert mode == "paragraphs"
    assert prompts == [
        "1. A ceramic mug on a walnut desk with morning light",
        "2. The same mug held in two hands in a cozy cafe",
    ]


def test_parse_raw_repeats_for_expected_count():
    assert parse_prompts("short text", expected_count=3) == (["short text"] * 3, "raw")


def test_parse_empty():
    assert parse_prompts("   ") == ([], "empty")
