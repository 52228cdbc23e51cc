import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from ...services.conversation import EventFanout, build_conversation_pipeline, summarize_outcomes
from ...services.conversation.message_store import MessageStoreConfigurationError
from ...services.line import (
    LineConfigurationError,
    get_line_channel_secret,
    get_line_service,
    verify_line_signature,
)

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/line", tags=["line"])


def _parse_json(body: bytes) -> dict[str, Any]:
    try:
        value = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return value


def _verify_request_or_401(*, channel_secret: str, request: Request, body: bytes) -> None:
    signature = request.headers.get("X-Line-Signature", "")
    if not verify_line_signature(channel_secret, body, signature):
        raise HTTPException(status_code=401, detail="Invalid LINE signature")


@router.post("/webhook")
async def line_webhook(request: Request):
    channel_secret = get_line_channel_secret().strip()
    if not channel_secret:
        raise HTTPException(status_code=500, detail="LINE_CHANNEL_SECRET not set")

    body = await request.body()
    _verify_request_or_401(channel_secret=channel_secret, request=request, body=body)

    payload = _parse_json(body)
    events = payload.get("events") if isinstance(payload.get("events"), list) else []
    _logger.info("LINE delivery received with %d events", len(events))

    # The console "Verify" button posts an empty event list.
    if not events:
        return JSONResponse({"ok": True})

    try:
        line = get_line_service()
    except LineConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    try:
        fanout = EventFanout(build_conversation_pipeline(reply_client=line))
        outcomes = await fanout.process(events)
    except MessageStoreConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        await line.aclose()

    _logger.info("LINE delivery processed: %s", summarize_outcomes(outcomes))
    for outcome in outcomes:
        if outcome is not None and not outcome.ok:
            _logger.info("Pipeline outcome: %s", outcome.to_log_dict())

    # LINE has no partial-failure channel; acknowledge receipt only.
    return JSONResponse({"ok": True})
