# file: services/delivery.py

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from firebase_admin import exceptions as firebase_exceptions, messaging
from pywebpush import webpush, WebPushException

from app.config import Settings
from app.models.notification import PushPayload
from app.services.recipient_resolver import Recipient, CHANNEL_WEBPUSH, CHANNEL_FCM

logger = logging.getLogger(__name__)

SENT = "sent"
EXPIRED = "expired"
PAYLOAD_TOO_LARGE = "payload_too_large"
RATE_LIMITED = "rate_limited"
UNKNOWN_ERROR = "unknown_error"

STATUS_TO_RESULT = {
    404: EXPIRED,
    410: EXPIRED,
    413: PAYLOAD_TOO_LARGE,
    429: RATE_LIMITED,
}


def result_for_status(status_code: Optional[int]) -> str:
    if status_code is not None and 200 <= status_code < 300:
        return SENT
    return STATUS_TO_RESULT.get(status_code, UNKNOWN_ERROR)


@dataclass(frozen=True)
class DeliveryOutcome:
    recipient_id: str
    result: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status_code: Optional[int] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result == SENT

    @property
    def should_remove_subscription(self) -> bool:
        return self.result == EXPIRED


def _status_from_webpush_error(error: WebPushException) -> Optional[int]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    return getattr(response, "status_code", None)


def classify_fcm_error(error: Exception) -> str:
    http_response = getattr(error, "http_response", None)
    status_code = getattr(http_response, "status_code", None)
    if status_code in STATUS_TO_RESULT:
        return STATUS_TO_RESULT[status_code]

    if isinstance(error, (messaging.UnregisteredError, firebase_exceptions.NotFoundError)):
        return EXPIRED
    if isinstance(error, (messaging.QuotaExceededError, firebase_exceptions.ResourceExhaustedError)):
        return RATE_LIMITED
    if isinstance(error, firebase_exceptions.InvalidArgumentError):
        message = str(error).lower()
        if "too big" in message or "too large" in message or "payload size" in message:
            return PAYLOAD_TOO_LARGE
    return UNKNOWN_ERROR


class DeliveryAdapter:
    """
    Sends one rendered payload to one recipient. Provider failures come back
    as a DeliveryOutcome; this method does not raise for them and does not
    touch storage. Callers drop subscriptions flagged should_remove_subscription.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def send(self, recipient: Recipient, payload: PushPayload) -> DeliveryOutcome:
        if recipient.channel == CHANNEL_WEBPUSH:
            return await self.send_web_push(recipient.id, recipient.target, payload)
        if recipient.channel == CHANNEL_FCM:
            return await self.send_fcm(recipient.id, recipient.target, payload)
        return DeliveryOutcome(recipient.id, UNKNOWN_ERROR, detail=f"Unsupported channel {recipient.channel}")

    async def send_web_push(self, recipient_id: str, subscription_info: dict, payload: PushPayload) -> DeliveryOutcome:
        if not self.settings.web_push_enabled:
            return DeliveryOutcome(recipient_id, UNKNOWN_ERROR, detail="VAPID keys not configured")

        data = json.dumps(payload.render())
        try:
            # pywebpush is blocking (requests); keep it off the event loop
            response = await asyncio.to_thread(
                webpush,
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=self.settings.vapid_private_key,
                vapid_claims=dict(self.settings.vapid_claims),
                ttl=self.settings.push_ttl_seconds,
                headers={"Urgency": "normal", "Topic": payload.tag},
            )
        except WebPushException as e:
            status_code = _status_from_webpush_error(e)
            result = result_for_status(status_code)
            endpoint_short = subscription_info.get("endpoint", "?")[:50]
            logger.warning(f"Web push to {endpoint_short}... failed ({status_code}): {e}")
            return DeliveryOutcome(recipient_id, result, status_code=status_code, detail=str(e))
        except Exception as e:
            logger.error(f"Unexpected web push error for {recipient_id}: {e}")
            return DeliveryOutcome(recipient_id, UNKNOWN_ERROR, detail=str(e))

        status_code = getattr(response, "status_code", 201)
        return DeliveryOutcome(recipient_id, result_for_status(status_code), status_code=status_code)

    def build_fcm_message(self, token: str, payload: PushPayload) -> messaging.Message:
        data = {
            "url": payload.url,
            "tag": payload.tag,
            "requireInteraction": str(payload.require_interaction).lower(),
            "timestamp": str(int(time.time() * 1000)),
        }
        return messaging.Message(
            fid=token,
            notification=messaging.Notification(
                title=payload.title,
                body=payload.body,
                image=payload.image,
            ),
            webpush=messaging.WebpushConfig(
                headers={"TTL": str(self.settings.push_ttl_seconds), "Urgency": "normal"},
                notification=messaging.WebpushNotification(
                    icon=payload.icon,
                    badge=payload.badge,
                    tag=payload.tag,
                    require_interaction=payload.require_interaction,
                ),
            ),
            android=messaging.AndroidConfig(ttl=self.settings.push_ttl_seconds),
            data=data,
        )

    async def send_fcm(self, recipient_id: str, token: str, payload: PushPayload) -> DeliveryOutcome:
        message = self.build_fcm_message(token, payload)
        try:
            message_id = await asyncio.to_thread(messaging.send, message)
        except (firebase_exceptions.FirebaseError, ValueError) as e:
            result = classify_fcm_error(e)
            logger.warning(f"FCM send to {recipient_id} failed ({result}): {e}")
            return DeliveryOutcome(recipient_id, result, detail=str(e))
        except Exception as e:
            logger.error(f"Unexpected FCM error for {recipient_id}: {e}")
            return DeliveryOutcome(recipient_id, UNKNOWN_ERROR, detail=str(e))

        logger.info(f"Notification sent: {message_id}")
        return DeliveryOutcome(recipient_id, SENT, detail=message_id)
