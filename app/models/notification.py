# file: models/notification.py

import json
import time
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ICON = "/icons/icon-192x192.png"
DEFAULT_BADGE = "/icons/badge-72x72.png"
DEFAULT_URL = "/notifications"
DEFAULT_TAG = "default"

NotificationType = Literal[
    "reminder", "alert", "announcement", "task", "system",
    "fee_reminder", "exam_reminder", "attendance_alert", "flow",
]
NotificationPriority = Literal["low", "medium", "high", "urgent"]


# --- Recipient specs (tagged on `kind`) ---

class AllParents(BaseModel):
    kind: Literal["all_parents"]


class AllUsers(BaseModel):
    kind: Literal["all_users"]


class AllStaff(BaseModel):
    kind: Literal["all_staff"]


class AllAdmins(BaseModel):
    kind: Literal["all_admins"]


class SingleUser(BaseModel):
    kind: Literal["user"]
    id: str

    @field_validator("id", mode="before")
    def coerce_id(cls, v):
        return str(v)


class ExplicitUsers(BaseModel):
    kind: Literal["explicit"]
    ids: List[str]

    @field_validator("ids", mode="before")
    def coerce_ids(cls, v):
        # Order-preserving dedupe; the wire format is a set
        seen = []
        for item in v or []:
            item = str(item)
            if item not in seen:
                seen.append(item)
        return seen


RecipientSpec = Annotated[
    Union[AllParents, AllUsers, AllStaff, AllAdmins, SingleUser, ExplicitUsers],
    Field(discriminator="kind"),
]


def summarize_recipients(specs: List[RecipientSpec]) -> str:
    parts = []
    for spec in specs:
        if isinstance(spec, SingleUser):
            parts.append(f"user:{spec.id}")
        elif isinstance(spec, ExplicitUsers):
            parts.append(f"explicit:{len(spec.ids)}")
        else:
            parts.append(spec.kind)
    return ",".join(parts) or "none"


# --- Push payload ---

class NotificationAction(BaseModel):
    action: str
    title: str
    icon: Optional[str] = None


class PushPayload(BaseModel):
    """
    The presentation fields a push message may carry. Anything else sent by
    a client is dropped rather than forwarded to the provider.
    """
    model_config = ConfigDict(populate_by_name=True)

    title: str
    body: str = ""
    icon: str = DEFAULT_ICON
    badge: str = DEFAULT_BADGE
    image: Optional[str] = None
    url: str = DEFAULT_URL
    tag: str = DEFAULT_TAG
    require_interaction: bool = Field(default=False, alias="requireInteraction")
    actions: List[NotificationAction] = Field(default_factory=list)

    def render(self, timestamp_ms: Optional[int] = None) -> dict:
        return {
            "title": self.title,
            "body": self.body,
            "icon": self.icon,
            "badge": self.badge,
            "image": self.image,
            "url": self.url,
            "tag": self.tag,
            "requireInteraction": self.require_interaction,
            "actions": [a.model_dump(exclude_none=True) for a in self.actions],
            "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        }

    def to_json(self) -> str:
        return json.dumps(self.render())


# --- Request / response bodies ---

class BatchNotificationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    body: str = ""
    recipients: List[RecipientSpec]
    type: NotificationType = "announcement"
    priority: NotificationPriority = "medium"
    icon: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    url: Optional[str] = None
    tag: Optional[str] = None
    require_interaction: bool = Field(default=False, alias="requireInteraction")
    actions: List[NotificationAction] = Field(default_factory=list)

    def to_payload(self) -> PushPayload:
        fields = {"title": self.title, "body": self.body,
                  "require_interaction": self.require_interaction, "actions": self.actions}
        for name in ("icon", "badge", "image", "url", "tag"):
            value = getattr(self, name)
            if value is not None:
                fields[name] = value
        return PushPayload(**fields)


class NotificationStats(BaseModel):
    total: int
    sent: int
    failed: int
    remaining: int


class NotificationStatus(BaseModel):
    id: int
    status: Literal["processing", "completed", "failed"]
    progress: int
    stats: NotificationStats
    type: Optional[str] = None
    priority: Optional[str] = None
    processingErrors: List[str] = Field(default_factory=list)


class BatchNotificationResponse(BaseModel):
    success: bool = True
    message: str
    notificationId: int
    stats: NotificationStats
    processingTime: int
    status: Literal["queued"] = "queued"


class NotificationStatusResponse(BaseModel):
    success: bool = True
    status: NotificationStatus


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionInfo(BaseModel):
    endpoint: str
    keys: SubscriptionKeys

    @field_validator("endpoint")
    def validate_endpoint(cls, v):
        if not v.strip():
            raise ValueError("endpoint cannot be empty")
        return v


class SendPushRequest(BaseModel):
    subscription: PushSubscriptionInfo
    payload: PushPayload


class SendUnifiedRequest(BaseModel):
    recipients: Optional[List[RecipientSpec]] = None
    payload: PushPayload


class ChannelResult(BaseModel):
    success: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class TotalResult(BaseModel):
    success: int = 0
    failed: int = 0


class UnifiedResults(BaseModel):
    webPush: ChannelResult = Field(default_factory=ChannelResult)
    fcm: ChannelResult = Field(default_factory=ChannelResult)
    total: TotalResult = Field(default_factory=TotalResult)


class SubscriptionCreate(PushSubscriptionInfo):
    user_agent: Optional[str] = None


class SubscriptionRemove(BaseModel):
    endpoint: str


class FCMTokenRequest(BaseModel):
    fcm_token: str
