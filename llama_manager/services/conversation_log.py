"""
LLM Conversation Log

Keeps the most recent proxied inference requests (one record per request,
streaming or not) for the operator's request log view. Failed requests keep
the original request body so an operator can resubmit it.
"""

import time
import uuid
import logging
from collections import deque
from dataclasses import dataclass, asdict, field
from typing import Any, Deque, Dict, List, Optional


logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 50

OUTCOME_COMPLETED = "completed"
OUTCOME_CLIENT_CLOSED = "client_closed"
OUTCOME_ERROR = "error"


@dataclass
class ConversationRecord:
    """
    One proxied inference request.

    Attributes:
        endpoint: Inference endpoint label ("chat/completions", "messages", ...)
        model: Model reported by the engine, else the requested one
        stream: Streaming request
        status: HTTP status returned to the client
        duration_ms: Wall time from request to last byte
        prompt_tokens: Prompt tokens
        completion_tokens: Generated tokens
        tokens_per_second: Generation throughput
        messages: Chat messages (or Responses input) sent by the client
        prompt: Prompt for legacy completions
        response: Response text
        error: Upstream error text on failure
        request_body: Original request body, kept on failure only
        outcome: completed, client_closed or error
    """

    endpoint: str
    model: str
    stream: bool
    status: int
    duration_ms: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tokens_per_second: float = 0.0
    messages: Optional[Any] = None
    prompt: Optional[Any] = None
    response: Optional[str] = None
    error: Optional[str] = None
    request_body: Optional[Dict[str, Any]] = None
    outcome: str = OUTCOME_COMPLETED
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


class ConversationLog:
    """Bounded, newest-last buffer of ConversationRecords."""

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS):
        self._records: Deque[ConversationRecord] = deque(maxlen=max_records)

    def record(self, entry: ConversationRecord) -> ConversationRecord:
        self._records.append(entry)
        logger.debug(
            f"[llm-log] {entry.endpoint} {entry.model} status={entry.status} "
            f"outcome={entry.outcome} duration={entry.duration_ms}ms"
        )
        return entry

    def list(self) -> List[ConversationRecord]:
        """Records, newest first."""
        return list(reversed(self._records))

    def get(self, record_id: str) -> Optional[ConversationRecord]:
        for entry in self._records:
            if entry.id == record_id:
                return entry
        return None

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
