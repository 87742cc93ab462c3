import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dmsync.config import settings
from dmsync.database.connection import close_mongo_connection, connect_to_mongo, get_database
from dmsync.repositories.conversation_repository import ConversationRepository
from dmsync.repositories.message_repository import MessageRepository
from dmsync.routers.chat import feed_router
from dmsync.routers.chat import router as chat_router
from dmsync.routers.conversations import router as conversations_router
from dmsync.utils.realtime_bus import close_bus, get_bus

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    db = get_database()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await get_bus()
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="dmsync message service", lifespan=lifespan)


app.include_router(conversations_router)
app.include_router(chat_router)
app.include_router(feed_router)


@app.get("/health")
async def health():
    bus = await get_bus()
    return {"status": "ok", "feed": "redis" if bus.enabled else "local"}
