"""
Usage Accounting

Extracts token counts, the served model and the response text from engine
responses, for the metrics and conversation log collaborators.

Response Shapes:
    - chat: OpenAI chat completions (choices[].delta.content / message.content)
    - completions: OpenAI legacy completions (choices[].text)
    - responses: OpenAI Responses API (response.output_text.delta events)
    - anthropic: Anthropic messages (content_block_delta events)
    - embeddings: no text, prompt tokens only

Streaming responses are parsed incrementally, one server-sent-event line at
a time, as chunks are relayed; the stream itself is never buffered.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


SHAPE_CHAT = "chat"
SHAPE_COMPLETIONS = "completions"
SHAPE_RESPONSES = "responses"
SHAPE_ANTHROPIC = "anthropic"
SHAPE_EMBEDDINGS = "embeddings"


@dataclass
class UsageStats:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: Optional[str] = None
    text: Optional[str] = None


def tokens_per_second(completion_tokens: int, duration_ms: float) -> float:
    if duration_ms <= 0:
        return 0.0
    return round(completion_tokens / (duration_ms / 1000.0), 1)


def _first_choice(data: Dict[str, Any]) -> Dict[str, Any]:
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _as_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _responses_text(data: Dict[str, Any]) -> Optional[str]:
    if isinstance(data.get("output_text"), str):
        return data["output_text"]
    parts = []
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for content in item.get("content") or []:
            if isinstance(content, dict) and isinstance(content.get("text"), str):
                parts.append(content["text"])
    return "".join(parts) or None


def extract_usage(shape: str, data: Any) -> UsageStats:
    """
    Extract usage from a complete (non-streaming) JSON response.

    Args:
        shape: Response shape
        data: Parsed response body
    """
    if not isinstance(data, dict):
        return UsageStats()

    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    stats = UsageStats(model=data.get("model"))

    if shape == SHAPE_ANTHROPIC:
        stats.prompt_tokens = _as_int(usage.get("input_tokens"))
        stats.completion_tokens = _as_int(usage.get("output_tokens"))
        content = data.get("content")
        if isinstance(content, list) and content and isinstance(content[0], dict):
            stats.text = content[0].get("text")
    elif shape == SHAPE_RESPONSES:
        stats.prompt_tokens = _as_int(usage.get("input_tokens") or usage.get("prompt_tokens"))
        stats.completion_tokens = _as_int(usage.get("output_tokens") or usage.get("completion_tokens"))
        stats.text = _responses_text(data)
    else:
        stats.prompt_tokens = _as_int(usage.get("prompt_tokens"))
        stats.completion_tokens = _as_int(usage.get("completion_tokens"))
        choice = _first_choice(data)
        if shape == SHAPE_CHAT:
            stats.text = (choice.get("message") or {}).get("content")
        elif shape == SHAPE_COMPLETIONS:
            stats.text = choice.get("text")

    return stats


class StreamUsageTracker:
    """
    Incremental parser for a relayed SSE stream.

    Chunks may split lines anywhere, so bytes are buffered up to the next
    newline before a line is parsed. Token counts from a usage record win
    over the per-delta count.

    Attributes:
        shape: Response shape
        model: Model reported by the stream (defaults to the requested one)
        text: Accumulated response text
    """

    def __init__(self, shape: str, model: Optional[str] = None):
        self.shape = shape
        self.model = model
        self.text = ""
        self._buffer = b""
        self._delta_count = 0
        self._usage_prompt = 0
        self._usage_completion = 0

    @property
    def prompt_tokens(self) -> int:
        return self._usage_prompt

    @property
    def completion_tokens(self) -> int:
        return self._usage_completion or self._delta_count

    def feed(self, chunk: bytes) -> None:
        self._buffer += chunk
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            self._handle_line(line)

    def finish(self) -> UsageStats:
        if self._buffer:
            self._handle_line(self._buffer)
            self._buffer = b""
        return UsageStats(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            model=self.model,
            text=self.text,
        )

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line.startswith("data:"):
            return
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return
        try:
            data = json.loads(payload)
        except ValueError:
            return
        if isinstance(data, dict):
            self._handle_event(data)

    def _handle_event(self, data: Dict[str, Any]) -> None:
        if self.shape == SHAPE_ANTHROPIC:
            delta = data.get("delta") or {}
            if data.get("type") == "content_block_delta" and delta.get("text"):
                self.text += delta["text"]
                self._delta_count += 1
            usage = data.get("usage") or {}
            self._usage_prompt = _as_int(usage.get("input_tokens")) or self._usage_prompt
            self._usage_completion = _as_int(usage.get("output_tokens")) or self._usage_completion
            message_usage = (data.get("message") or {}).get("usage") or {}
            self._usage_prompt = _as_int(message_usage.get("input_tokens")) or self._usage_prompt
        elif self.shape == SHAPE_RESPONSES:
            if data.get("type") == "response.output_text.delta" and data.get("delta"):
                self.text += str(data["delta"])
                self._delta_count += 1
            usage = data.get("usage") or (data.get("response") or {}).get("usage") or {}
            self._usage_prompt = (
                _as_int(usage.get("input_tokens") or usage.get("prompt_tokens")) or self._usage_prompt
            )
            self._usage_completion = (
                _as_int(usage.get("output_tokens") or usage.get("completion_tokens"))
                or self._usage_completion
            )
        else:
            choice = _first_choice(data)
            if self.shape == SHAPE_CHAT:
                piece = (choice.get("delta") or {}).get("content")
            else:
                piece = choice.get("text")
            if piece:
                self.text += piece
                self._delta_count += 1
            usage = data.get("usage") or {}
            self._usage_prompt = _as_int(usage.get("prompt_tokens")) or self._usage_prompt
            self._usage_completion = _as_int(usage.get("completion_tokens")) or self._usage_completion

        if data.get("model"):
            self.model = data["model"]
