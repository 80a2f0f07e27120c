"""
Request Rewriting Helpers

Pure functions that rewrite inference request bodies on their way to the
engine. None of them mutate their input.

    - apply_preset_to_request: merge preset sampling defaults
    - inject_reasoning_effort: add a configured reasoning effort
    - sanitize_messages: repair assistant tool-call messages for templates
      that reject content and thinking together
"""

import re
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..core.presets import Preset


logger = logging.getLogger(__name__)


# Preset config attribute -> request field
SAMPLING_FIELDS = (
    ("temp", "temperature"),
    ("top_p", "top_p"),
    ("top_k", "top_k"),
    ("min_p", "min_p"),
)


def _parse_kwargs(value) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    if isinstance(value, dict):
        return dict(value)
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError) as e:
        logger.error(f"Failed to parse chatTemplateKwargs: {e}")
        return None
    if not isinstance(parsed, dict):
        logger.error("chatTemplateKwargs must be a JSON object")
        return None
    return parsed


def apply_preset_to_request(body: Dict[str, Any], preset: Optional[Preset]) -> Dict[str, Any]:
    """
    Merge a preset's sampling defaults into a request body.

    A field the caller already set always wins. Chat template kwargs are
    merged per key, again with the caller's values taking precedence.
    """
    if preset is None:
        return body

    result = dict(body)
    for attr, request_field in SAMPLING_FIELDS:
        value = getattr(preset.config, attr)
        if value is not None and request_field not in result:
            result[request_field] = value

    preset_kwargs = _parse_kwargs(preset.config.chat_template_kwargs)
    if preset_kwargs:
        request_kwargs = result.get("chat_template_kwargs")
        merged = dict(preset_kwargs)
        if isinstance(request_kwargs, dict):
            merged.update(request_kwargs)
        result["chat_template_kwargs"] = merged

    return result


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a glob with * and ? wildcards into an anchored regex."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$")


def has_reasoning_effort(body: Mapping[str, Any]) -> bool:
    if body.get("reasoning_effort"):
        return True
    kwargs = body.get("chat_template_kwargs")
    return isinstance(kwargs, dict) and bool(kwargs.get("reasoning_effort"))


def match_reasoning_effort(
    model_id: str,
    default_effort: Optional[str],
    per_model: Mapping[str, str]
) -> Optional[str]:
    """
    Pick the effort for a model: first matching pattern in mapping order,
    else the global default.
    """
    for pattern, effort in per_model.items():
        if glob_to_regex(pattern).match(model_id or ""):
            return effort
    return default_effort or None


def inject_reasoning_effort(
    body: Dict[str, Any],
    model_id: str,
    default_effort: Optional[str],
    per_model: Mapping[str, str]
) -> Dict[str, Any]:
    """
    Add chat_template_kwargs.reasoning_effort when configured.

    A request that already sets an effort (top level or inside
    chat_template_kwargs) is returned unchanged.
    """
    if has_reasoning_effort(body):
        return body

    effort = match_reasoning_effort(model_id, default_effort, per_model)
    if not effort:
        return body

    result = dict(body)
    kwargs = result.get("chat_template_kwargs")
    kwargs = dict(kwargs) if isinstance(kwargs, dict) else {}
    kwargs["reasoning_effort"] = effort
    result["chat_template_kwargs"] = kwargs
    return result


def _content_text(content: Any) -> str:
    """Plain text of a message content string or list of content parts."""
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "\n".join(p for p in parts if p)
    return content if isinstance(content, str) else str(content)


def sanitize_messages(messages: Any) -> Any:
    """
    Merge content into thinking for assistant tool-call messages.

    Some chat templates raise when an assistant message has both keys,
    whatever their values, so the content key is removed entirely.
    """
    if not isinstance(messages, list):
        return messages

    changed = 0
    result: List[Any] = []
    for message in messages:
        if (
            isinstance(message, dict)
            and message.get("role") == "assistant"
            and message.get("tool_calls")
            and "content" in message
            and "thinking" in message
        ):
            fixed = {k: v for k, v in message.items() if k not in ("content", "thinking")}
            content = _content_text(message.get("content") or "")
            thinking = message.get("thinking") or ""
            if content:
                thinking = f"{thinking}\n{content}"
            fixed["thinking"] = thinking
            result.append(fixed)
            changed += 1
        else:
            result.append(message)

    logger.info(f"[sanitize] Processed {len(messages)} messages, fixed {changed} tool_call messages")
    return result
