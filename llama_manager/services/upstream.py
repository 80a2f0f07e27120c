"""
Upstream Outcome Classifier

Turns what came back from llama-server into a typed outcome so the proxy can
dispatch its recovery strategies on the kind instead of on message text.

Outcome Kinds:
    - OK: 2xx response
    - CONNECTION_ERROR: the request never got an HTTP response
    - LOAD_FAILURE: the model could not be loaded (usually out of memory
      because other models are resident)
    - TEMPLATE_INCOMPATIBLE: the chat template rejected messages that carry
      both content and thinking
    - UPSTREAM_ERROR: any other error response, passed through unmodified

The error signatures below are llama-server's own messages. They are only
matched here; everything downstream works with OutcomeKind.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx


LOAD_FAILURE_STATUS = 500
LOAD_FAILURE_SIGNATURE = "failed to load"
TEMPLATE_SIGNATURE = "Cannot pass both content and thinking"

CONNECTION_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.RemoteProtocolError,
)


class OutcomeKind(str, Enum):
    OK = "ok"
    CONNECTION_ERROR = "connection_error"
    LOAD_FAILURE = "load_failure"
    TEMPLATE_INCOMPATIBLE = "template_incompatible"
    UPSTREAM_ERROR = "upstream_error"


@dataclass
class UpstreamOutcome:
    """
    Classified result of one upstream call.

    Attributes:
        kind: Outcome kind
        status_code: HTTP status (None for connection errors)
        body: Error response text (empty for OK outcomes, whose body is
              still unread)
        error: Exception text for connection errors
    """

    kind: OutcomeKind
    status_code: Optional[int] = None
    body: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    @property
    def detail(self) -> str:
        return self.body or self.error or ""


def is_connection_error(exc: BaseException) -> bool:
    return isinstance(exc, CONNECTION_ERRORS)


def classify_response(status_code: int, body: str = "") -> UpstreamOutcome:
    """
    Classify an HTTP response from the engine.

    Args:
        status_code: Response status
        body: Response text (only needed for error responses)
    """
    if 200 <= status_code < 300:
        return UpstreamOutcome(OutcomeKind.OK, status_code=status_code)

    text = body or ""
    if status_code == LOAD_FAILURE_STATUS and LOAD_FAILURE_SIGNATURE in text:
        kind = OutcomeKind.LOAD_FAILURE
    elif TEMPLATE_SIGNATURE in text:
        kind = OutcomeKind.TEMPLATE_INCOMPATIBLE
    else:
        kind = OutcomeKind.UPSTREAM_ERROR
    return UpstreamOutcome(kind, status_code=status_code, body=text)


def classify_error(exc: BaseException) -> UpstreamOutcome:
    """Classify a transport-level exception."""
    return UpstreamOutcome(
        OutcomeKind.CONNECTION_ERROR,
        error=str(exc) or exc.__class__.__name__,
    )
