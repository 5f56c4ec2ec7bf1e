# file: main.py

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.controllers.notification import router as notification_router
from app.controllers.subscriptions import router as subscriptions_router
from app.database.connection import init_db
from app.services.firebase_auth import init_firebase
from app.services.notification_service import get_notification_service
from app.utils.errors import NotificationError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_firebase()
    await init_db()
    yield
    # Let queued dispatches finish instead of dropping them with the process
    await get_notification_service().supervisor.shutdown()


app = FastAPI(title="School Notifications API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotificationError)
async def notification_error_handler(request: Request, exc: NotificationError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(notification_router, prefix="/api/notifications", tags=["notifications"])
app.include_router(subscriptions_router, prefix="/api/notifications", tags=["subscriptions"])


@app.get("/")
async def root():
    return {"message": "School Notifications API is running"}
