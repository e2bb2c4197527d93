import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pairchat.config import get_settings
from pairchat.database.connection import close_mongo_connection, connect_to_mongo
from pairchat.errors import register_exception_handlers
from pairchat.realtime.hub import RealtimeHub
from pairchat.realtime.presence import PresenceRegistry
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.routers.auth import router as auth_router
from pairchat.routers.messages import router as messages_router
from pairchat.routers.realtime import router as realtime_router
from pairchat.routers.users import router as users_router
from pairchat.utils.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    db = await connect_to_mongo()
    await UserRepository(db).ensure_indexes()
    await ConversationRepository(db).ensure_indexes()
    try:
        yield
    finally:
        await close_mongo_connection()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(title="pairchat", lifespan=lifespan)
    # presence is process-local; rebuilt empty on every start
    app.state.hub = RealtimeHub(PresenceRegistry())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.CLIENT_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(auth_router, prefix=settings.API_PREFIX)
    app.include_router(messages_router, prefix=settings.API_PREFIX)
    app.include_router(users_router, prefix=settings.API_PREFIX)
    app.include_router(realtime_router)

    @app.get(f"{settings.API_PREFIX}/health")
    async def health():
        return {"message": "Server is running", "timestamp": datetime.now(timezone.utc).isoformat()}

    logger.info("Application created (env=%s)", settings.ENV)
    return app


app = create_app()
