"""Feishu event webhook.

Deliveries are acknowledged immediately; the message itself is handled
in a background task so Feishu never waits on the LLM or Xero.
"""

import asyncio
import json
import logging
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from bizmate.api.deps import get_deduplicator, get_message_router
from bizmate.core.config import settings
from bizmate.core.errors import ForbiddenError, ValidationError
from bizmate.services.dedupe import EventDeduplicator
from bizmate.services.feishu import (
    FeishuError,
    FeishuMessageEvent,
    decrypt_payload,
    parse_message_event,
    verify_signature,
)
from bizmate.services.messaging import MessageRouter

logger = logging.getLogger(__name__)

router = APIRouter()


async def process_event(
    message_router: MessageRouter,
    event: FeishuMessageEvent,
    timeout: Optional[float] = None,
) -> None:
    """Background half of the webhook, optionally bounded by a timeout."""
    if not timeout:
        await message_router.handle_event(event)
        return
    try:
        await asyncio.wait_for(message_router.handle_event(event), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"Processing of {event.message_id} exceeded {timeout}s")
        await message_router.send_error(event, e)


def _verification_token(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("token") or (payload.get("header") or {}).get("token")


@router.post("/feishu-webhook")
async def feishu_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
    deduplicator: Annotated[EventDeduplicator, Depends(get_deduplicator)],
) -> Dict[str, Any]:
    """Receive a Feishu event callback."""
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError(message="Invalid body")
    if not isinstance(payload, dict):
        raise ValidationError(message="Invalid body")

    if "encrypt" in payload:
        try:
            payload = decrypt_payload(payload["encrypt"])
        except FeishuError as e:
            raise ValidationError(message=e.message)

    expected_token = settings.feishu_verification_token
    if expected_token and _verification_token(payload) != expected_token:
        raise ForbiddenError("Verification token mismatch")

    if payload.get("type") == "url_verification" and payload.get("challenge"):
        logger.info("Answering Feishu URL verification")
        return {"challenge": payload["challenge"]}

    if not verify_signature(
        body,
        request.headers.get("X-Lark-Request-Timestamp"),
        request.headers.get("X-Lark-Request-Nonce"),
        request.headers.get("X-Lark-Signature"),
    ):
        raise ForbiddenError("Invalid signature")

    if not (payload.get("header") and payload.get("event")):
        return {"status": "ok"}

    event = parse_message_event(payload)
    if event is None:
        logger.info(f"Ignoring event type {payload['header'].get('event_type')}")
        return {"status": "ignored"}

    if not await deduplicator.first_seen(event.dedupe_key):
        logger.info(f"Duplicate delivery of {event.message_id} skipped")
        return {"status": "duplicate"}

    background_tasks.add_task(
        process_event,
        message_router,
        event,
        settings.event_processing_timeout,
    )
    return {"status": "received"}
