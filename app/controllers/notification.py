# file: controllers/notification.py

import json
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from app.database.models import User
from app.models.notification import (
    BatchNotificationRequest, BatchNotificationResponse, NotificationStatusResponse,
    SendPushRequest, SendUnifiedRequest, PushSubscriptionInfo,
)
from app.services.delivery import EXPIRED, PAYLOAD_TOO_LARGE, RATE_LIMITED
from app.services.firebase_auth import get_optional_current_user
from app.services.notification_service import NotificationService, get_notification_service
from app.utils.errors import ValidationError, NotificationError, NotificationNotFound

logger = logging.getLogger(__name__)

# Notification.id is a 32-bit INTEGER on PostgreSQL
MAX_NOTIFICATION_ID = 2 ** 31 - 1

router = APIRouter()


async def read_json_body(request: Request) -> dict:
    content_type = request.headers.get("content-type")
    if not content_type or "application/json" not in content_type:
        raise ValidationError("Content-Type must be application/json")

    try:
        raw = (await request.body()).decode("utf-8")
    except UnicodeDecodeError as e:
        logger.error(f"Request body is not valid UTF-8: {e}")
        raise ValidationError("Invalid JSON in request body")
    if not raw.strip():
        raise ValidationError("Request body is empty")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"JSON parse error: {e}")
        raise ValidationError("Invalid JSON in request body")

    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON in request body")
    return data


@router.post("/send-batch", response_model=BatchNotificationResponse)
async def send_batch(
        request: Request,
        service: NotificationService = Depends(get_notification_service),
        current_user: Optional[User] = Depends(get_optional_current_user),
):
    """
    Resolves recipients, creates the notification record and queues the
    fan-out. Returns before any push is delivered; poll GET /send-batch.
    """
    start = time.monotonic()
    data = await read_json_body(request)

    if not data.get("title") or data.get("recipients") is None:
        raise ValidationError("Title and recipients are required")
    try:
        notification = BatchNotificationRequest.model_validate(data)
    except PydanticValidationError as e:
        fields = {err["loc"][0] for err in e.errors() if err["loc"]}
        message = "Invalid recipients" if "recipients" in fields else "Invalid notification fields"
        raise ValidationError(message, details=str(e))

    try:
        created_by = current_user.firebase_uid if current_user else None
        result = await service.submit(notification, created_by=created_by)
    except Exception as e:
        elapsed = int((time.monotonic() - start) * 1000)
        logger.error(f"Batch notification error: {e}")
        details = e.details if isinstance(e, NotificationError) and e.details else str(e)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Failed to send batch notification",
                "details": details,
                "processingTime": elapsed,
            },
        )

    elapsed = int((time.monotonic() - start) * 1000)
    return BatchNotificationResponse(
        message=f"Notification queued for {result.stats.total} recipients",
        notificationId=result.record.id,
        stats=result.stats,
        processingTime=elapsed,
    )


@router.get("/send-batch", response_model=NotificationStatusResponse)
async def get_batch_status(
        id: Optional[str] = None,
        service: NotificationService = Depends(get_notification_service),
):
    if not id:
        raise ValidationError("Notification ID is required")
    if not (id.isascii() and id.isdigit()):
        raise ValidationError("Notification ID must be numeric")
    if int(id) > MAX_NOTIFICATION_ID:
        # Larger than the id column can hold, so no such record exists
        raise NotificationNotFound(id)

    notification_status = await service.get_status(int(id))
    return NotificationStatusResponse(status=notification_status)


@router.post("/send-push")
async def send_push(
        request: Request,
        service: NotificationService = Depends(get_notification_service),
):
    """Delivers one payload to one Web Push subscription and reports the provider's verdict."""
    data = await read_json_body(request)

    if not data.get("subscription") or not data.get("payload"):
        raise ValidationError("Missing subscription or payload")
    try:
        PushSubscriptionInfo.model_validate(data["subscription"])
    except PydanticValidationError:
        raise ValidationError("Invalid subscription format")
    try:
        push = SendPushRequest.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("Invalid payload", details=str(e))

    outcome = await service.adapter.send_web_push(
        "send-push", push.subscription.model_dump(), push.payload
    )

    if outcome.ok:
        return {"success": True, "statusCode": outcome.status_code}
    if outcome.result == EXPIRED:
        return JSONResponse(
            status_code=status.HTTP_410_GONE,
            content={
                "error": "Subscription expired or invalid",
                "statusCode": outcome.status_code,
                "shouldRemoveSubscription": True,
            },
        )
    if outcome.result == PAYLOAD_TOO_LARGE:
        return JSONResponse(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                            content={"error": "Payload too large"})
    if outcome.result == RATE_LIMITED:
        return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                            content={"error": "Rate limit exceeded"})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Failed to send push notification",
            "details": outcome.detail,
            "statusCode": outcome.status_code,
        },
    )


@router.post("/send-unified")
async def send_unified(
        request: Request,
        service: NotificationService = Depends(get_notification_service),
):
    data = await read_json_body(request)
    if not data.get("payload"):
        raise ValidationError("Notification payload is required")
    try:
        unified = SendUnifiedRequest.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("Invalid notification request", details=str(e))

    results = await service.send_unified(unified.recipients, unified.payload)
    return {
        "success": True,
        "message": (
            f"Unified notifications processed: {results.total.success} success, "
            f"{results.total.failed} failed"
        ),
        "results": results.model_dump(),
    }
