import logging
from typing import Optional

import firebase_admin
from firebase_admin import credentials, auth
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.config import get_settings
from app.database.models import User
from app.database.connection import get_db

logger = logging.getLogger(__name__)


def init_firebase() -> bool:
    # Singleton pattern: Check if the app is already initialized
    if firebase_admin._apps:
        return True
    service_account = get_settings().firebase_credentials
    if not service_account:
        logger.warning("FIREBASE_CREDENTIALS not set; ID token checks and FCM delivery are disabled.")
        return False
    try:
        cred = credentials.Certificate(service_account)
        firebase_admin.initialize_app(cred)
        logger.info("Firebase Admin SDK initialized successfully.")
        return True
    except (ValueError, OSError) as e:
        logger.error(f"FATAL: Error initializing Firebase Admin SDK: {e}")
        return False


# auto_error=False so anonymous calls reach the optional dependency.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/sync", auto_error=False)


async def get_current_user(
        token: str = Depends(oauth2_scheme),
        db: AsyncSession = Depends(get_db)
) -> User:
    """
    Required dependency: Verifies Firebase ID token and returns the DB user.
    Raises HTTPException if the token is missing or invalid.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception

    try:
        decoded_token = auth.verify_id_token(token)
        firebase_uid = decoded_token['uid']
    except auth.ExpiredIdTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except auth.InvalidIdTokenError:
        raise credentials_exception
    except Exception:
        raise credentials_exception

    stmt = select(User).where(User.firebase_uid == firebase_uid)
    result = await db.execute(stmt)
    user = result.scalars().first()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User profile not found in application database."
        )
    return user


async def get_optional_current_user(
        token: Optional[str] = Depends(oauth2_scheme),
        db: AsyncSession = Depends(get_db)
) -> Optional[User]:
    """
    Optional dependency: Returns the User object if a valid token is provided,
    or None if the token is missing or invalid. Does not raise exceptions.
    """
    if not token:
        return None
    try:
        decoded_token = auth.verify_id_token(token)
        uid = decoded_token['uid']
        stmt = select(User).where(User.firebase_uid == uid)
        result = await db.execute(stmt)
        return result.scalars().first()
    except Exception:
        return None
