"""
Logs Controller Module

Operator log views: the shared log sink (engine output, proxy and restart
events) and the recent inference request log, with replay of failed
requests.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core.errors import InvalidRequestError, NotFoundError
from ..core.logging_server import LogSink
from ..lifecycle.dependencies import get_conversation_log, get_log_sink, get_proxy_service
from ..services.conversation_log import ConversationLog
from ..services.proxy_service import ENDPOINTS, ProxyService

router = APIRouter(prefix="/api", tags=["Logs"])


def _unavailable(what: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{what} not available"
    )


@router.get("/logs", summary="Recent log lines")
async def get_logs(
    source: Optional[str] = Query(None, description="Filter by source (llama, proxy, server, ...)"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    log_sink: LogSink = Depends(get_log_sink)
):
    if log_sink is None:
        raise _unavailable("Log sink")
    return {"logs": log_sink.get_logs(source=source, limit=limit)}


@router.get("/llm-logs", summary="Recent inference requests")
async def get_llm_logs(
    conversation_log: ConversationLog = Depends(get_conversation_log)
):
    if conversation_log is None:
        raise _unavailable("Request log")
    return {"logs": [record.to_dict() for record in conversation_log.list()]}


@router.delete("/llm-logs", summary="Clear the inference request log")
async def clear_llm_logs(
    conversation_log: ConversationLog = Depends(get_conversation_log)
):
    if conversation_log is None:
        raise _unavailable("Request log")
    conversation_log.clear()
    return {"success": True}


@router.post(
    "/llm-logs/{record_id}/replay",
    response_model=None,
    summary="Resubmit a logged request"
)
async def replay_llm_log(
    record_id: str,
    conversation_log: ConversationLog = Depends(get_conversation_log),
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    """
    Send the stored request body of a failed request through the proxy
    again. The replay is logged as a new request.
    """
    if conversation_log is None or not proxy_service:
        raise _unavailable("Request log")

    record = conversation_log.get(record_id)
    if record is None:
        raise NotFoundError(f"Request log entry '{record_id}' not found", resource="record")
    if not record.request_body or record.endpoint not in ENDPOINTS:
        raise InvalidRequestError("Only failed requests keep a body that can be replayed")

    return await proxy_service.handle(record.endpoint, dict(record.request_body))
