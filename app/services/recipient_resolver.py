# file: services/recipient_resolver.py

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import select, update, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.database.models import User, PushSubscription
from app.models.notification import (
    AllAdmins, AllParents, AllStaff, AllUsers, ExplicitUsers, RecipientSpec, SingleUser,
)
from app.utils.errors import ResolutionError

logger = logging.getLogger(__name__)

CHANNEL_WEBPUSH = "webpush"
CHANNEL_FCM = "fcm"

ROLE_FILTERS = {
    AllParents: ("parent",),
    AllStaff: ("staff", "admin"),
    AllAdmins: ("admin",),
    AllUsers: None,
}


@dataclass(frozen=True)
class Recipient:
    id: str
    user_id: int
    channel: str
    # Web Push: {"endpoint", "keys": {"p256dh", "auth"}}; FCM: the device token
    target: Union[Dict[str, Any], str] = field(compare=False, hash=False)
    subscription_id: Optional[int] = None

    @property
    def dedupe_key(self) -> str:
        if self.channel == CHANNEL_WEBPUSH:
            return f"{CHANNEL_WEBPUSH}:{self.target['endpoint']}"
        return f"{CHANNEL_FCM}:{self.target}"


def recipients_for_user(user: User) -> List[Recipient]:
    recipients = []
    for sub in user.push_subscriptions:
        if not sub.is_active:
            continue
        recipients.append(Recipient(
            id=f"{user.id}:webpush:{sub.id}",
            user_id=user.id,
            channel=CHANNEL_WEBPUSH,
            target={"endpoint": sub.endpoint, "keys": {"p256dh": sub.p256dh, "auth": sub.auth}},
            subscription_id=sub.id,
        ))
    if user.fcm_token:
        recipients.append(Recipient(
            id=f"{user.id}:fcm",
            user_id=user.id,
            channel=CHANNEL_FCM,
            target=user.fcm_token,
        ))
    return recipients


def _id_clause(raw_id: str):
    if raw_id.isdigit():
        return or_(User.id == int(raw_id), User.firebase_uid == raw_id)
    return User.firebase_uid == raw_id


class RecipientResolver:
    """
    Expands recipient specs into concrete push targets. Accounts without an
    active subscription or FCM token simply contribute nothing.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def resolve(self, specs: Sequence[RecipientSpec]) -> List[Recipient]:
        try:
            async with self.session_factory() as db:
                users = await self._load_users(db, specs)
        except SQLAlchemyError as e:
            logger.error(f"Recipient lookup failed: {e}")
            raise ResolutionError("Failed to resolve recipients", details=str(e)) from e

        resolved: List[Recipient] = []
        seen = set()
        for user in users:
            for recipient in recipients_for_user(user):
                if recipient.dedupe_key in seen:
                    continue
                seen.add(recipient.dedupe_key)
                resolved.append(recipient)

        logger.info(f"Resolved {len(resolved)} push targets from {len(users)} users")
        return resolved

    async def _load_users(self, db: AsyncSession, specs: Sequence[RecipientSpec]) -> List[User]:
        users: List[User] = []
        user_ids = set()

        for spec in specs:
            if isinstance(spec, (SingleUser, ExplicitUsers)):
                ids = [spec.id] if isinstance(spec, SingleUser) else spec.ids
                found = await self._load_named(db, ids)
            else:
                found = await self._load_by_role(db, ROLE_FILTERS[type(spec)])

            for user in found:
                if user.id not in user_ids:
                    user_ids.add(user.id)
                    users.append(user)
        return users

    async def _load_by_role(self, db: AsyncSession, roles) -> List[User]:
        stmt = (
            select(User)
            .options(selectinload(User.push_subscriptions))
            .where(User.is_active == True)
            .order_by(User.id)
        )
        if roles is not None:
            stmt = stmt.where(User.role.in_(roles))
        result = await db.execute(stmt)
        return list(result.scalars().unique().all())

    async def _load_named(self, db: AsyncSession, ids: Sequence[str]) -> List[User]:
        found = []
        for raw_id in ids:
            stmt = (
                select(User)
                .options(selectinload(User.push_subscriptions))
                .where(_id_clause(raw_id), User.is_active == True)
            )
            result = await db.execute(stmt)
            user = result.scalars().first()
            if user is None:
                logger.warning(f"Recipient {raw_id} not found, skipping")
                continue
            found.append(user)
        return found

    async def deactivate(self, recipient: Recipient) -> None:
        """Invalidates a target the provider reported as gone."""
        try:
            async with self.session_factory() as db:
                if recipient.channel == CHANNEL_WEBPUSH:
                    stmt = (
                        update(PushSubscription)
                        .where(PushSubscription.id == recipient.subscription_id)
                        .values(is_active=False)
                    )
                else:
                    stmt = (
                        update(User)
                        .where(User.id == recipient.user_id, User.fcm_token == recipient.target)
                        .values(fcm_token=None)
                    )
                await db.execute(stmt)
                await db.commit()
            logger.info(f"Deactivated expired {recipient.channel} target for user {recipient.user_id}")
        except SQLAlchemyError as e:
            logger.error(f"Could not deactivate target {recipient.id}: {e}")
