import json

import httpx
import pytest

from llama_manager.core.logging_server import LogSink
from llama_manager.services.upstream import (
    OutcomeKind,
    classify_error,
    classify_response,
    is_connection_error,
)
from llama_manager.services.usage import (
    SHAPE_ANTHROPIC,
    SHAPE_CHAT,
    SHAPE_RESPONSES,
    StreamUsageTracker,
    extract_usage,
    tokens_per_second,
)


def _sse(events):
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode()


def test_chat_usage():
    stats = extract_usage(SHAPE_CHAT, {
        "model": "m",
        "choices": [{"message": {"content": "hi"}}],
        "usage": {"prompt_tokens": 7, "completion_tokens": 2},
    })
    assert (stats.prompt_tokens, stats.completion_tokens, stats.text, stats.model) == (7, 2, "hi", "m")


def test_anthropic_usage():
    stats = extract_usage(SHAPE_ANTHROPIC, {
        "content": [{"type": "text", "text": "hello"}],
        "usage": {"input_tokens": 5, "output_tokens": 3},
    })
    assert (stats.prompt_tokens, stats.completion_tokens, stats.text) == (5, 3, "hello")


def test_responses_usage():
    stats = extract_usage(SHAPE_RESPONSES, {
        "output": [{"content": [{"type": "output_text", "text": "a"}, {"text": "b"}]}],
        "usage": {"input_tokens": 4, "output_tokens": 6},
    })
    assert (stats.prompt_tokens, stats.completion_tokens, stats.text) == (4, 6, "ab")


def test_tokens_per_second():
    assert tokens_per_second(50, 2000) == 25.0
    assert tokens_per_second(10, 0) == 0.0


def test_stream_tracker_handles_split_chunks():
    payload = _sse([
        {"model": "engine-model", "choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
    ]) + b"data: [DONE]\n\n"
    tracker = StreamUsageTracker(SHAPE_CHAT, model="requested")

    for i in range(0, len(payload), 7):
        tracker.feed(payload[i:i + 7])
    stats = tracker.finish()

    assert stats.text == "Hello"
    assert stats.completion_tokens == 2
    assert stats.model == "engine-model"


def test_stream_usage_record_wins_over_delta_count():
    tracker = StreamUsageTracker(SHAPE_CHAT)
    tracker.feed(_sse([
        {"choices": [{"delta": {"content": "a"}}]},
        {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 40}},
    ]))
    stats = tracker.finish()
    assert stats.prompt_tokens == 9
    assert stats.completion_tokens == 40


def test_anthropic_stream():
    tracker = StreamUsageTracker(SHAPE_ANTHROPIC)
    tracker.feed(_sse([
        {"type": "message_start", "message": {"usage": {"input_tokens": 12}}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
        {"type": "message_delta", "usage": {"output_tokens": 1}},
    ]))
    stats = tracker.finish()
    assert (stats.prompt_tokens, stats.completion_tokens, stats.text) == (12, 1, "Hi")


def test_responses_stream():
    tracker = StreamUsageTracker(SHAPE_RESPONSES)
    tracker.feed(_sse([
        {"type": "response.output_text.delta", "delta": "Yo"},
        {"type": "response.completed", "response": {"usage": {"input_tokens": 3, "output_tokens": 1}}},
    ]))
    stats = tracker.finish()
    assert (stats.prompt_tokens, stats.completion_tokens, stats.text) == (3, 1, "Yo")


@pytest.mark.parametrize(
    "status, body, kind",
    [
        (200, "", OutcomeKind.OK),
        (500, '{"error": {"message": "failed to load model"}}', OutcomeKind.LOAD_FAILURE),
        (400, '{"error": {"message": "failed to load model"}}', OutcomeKind.UPSTREAM_ERROR),
        (500, "Cannot pass both content and thinking", OutcomeKind.TEMPLATE_INCOMPATIBLE),
        (404, "not found", OutcomeKind.UPSTREAM_ERROR),
    ],
)
def test_classify_response(status, body, kind):
    assert classify_response(status, body).kind is kind


def test_classify_error():
    error = httpx.ConnectError("refused")
    outcome = classify_error(error)
    assert outcome.kind is OutcomeKind.CONNECTION_ERROR
    assert outcome.detail == "refused"
    assert is_connection_error(error)
    assert not is_connection_error(httpx.ReadTimeout("slow"))


def test_log_sink_collapses_repeats_and_filters():
    sink = LogSink(max_entries=3)
    sink.add_log("llama", "loading\nloading")
    sink.add_log("proxy", "request")
    sink.add_log("llama", "a")
    sink.add_log("llama", "b")

    logs = sink.get_logs()
    assert [e["message"] for e in logs] == ["request", "a", "b"]
    assert [e["message"] for e in sink.get_logs(source="llama", limit=1)] == ["b"]
    assert sink.get_logs(limit=0) == []

    sink.clear()
    sink.add_log("llama", "x")
    sink.add_log("llama", "x")
    assert sink.get_logs()[0]["count"] == 2
