# file: controllers/subscriptions.py

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from app.database.connection import get_db
from app.database.models import User, PushSubscription
from app.models.notification import SubscriptionCreate, SubscriptionRemove, FCMTokenRequest
from app.services.firebase_auth import get_current_user

router = APIRouter()


@router.post("/subscriptions", status_code=status.HTTP_201_CREATED)
async def register_subscription(
        subscription: SubscriptionCreate,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    """
    Stores (or re-activates) the browser push subscription of the current user.
    """
    stmt = select(PushSubscription).where(
        PushSubscription.user_id == current_user.id,
        PushSubscription.endpoint == subscription.endpoint,
    )
    result = await db.execute(stmt)
    db_subscription = result.scalars().first()

    if db_subscription is None:
        db_subscription = PushSubscription(user_id=current_user.id, endpoint=subscription.endpoint)
        db.add(db_subscription)
    db_subscription.p256dh = subscription.keys.p256dh
    db_subscription.auth = subscription.keys.auth
    db_subscription.user_agent = subscription.user_agent
    db_subscription.is_active = True

    await db.commit()
    await db.refresh(db_subscription)
    return {"id": db_subscription.id, "endpoint": db_subscription.endpoint, "is_active": True}


@router.delete("/subscriptions", status_code=status.HTTP_204_NO_CONTENT)
async def remove_subscription(
        subscription: SubscriptionRemove,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    stmt = (
        update(PushSubscription)
        .where(
            PushSubscription.user_id == current_user.id,
            PushSubscription.endpoint == subscription.endpoint,
            PushSubscription.is_active == True,
        )
        .values(is_active=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    await db.commit()
    return


@router.post("/fcm-token")
async def update_fcm_token(
    request: FCMTokenRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    # A device token belongs to one account at a time
    stmt_clear = (
        update(User)
        .where(User.fcm_token == request.fcm_token)
        .values(fcm_token=None)
    )
    await db.execute(stmt_clear)
    current_user.fcm_token = request.fcm_token
    await db.commit()
    return {"message": "FCM token updated successfully"}
