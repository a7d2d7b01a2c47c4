import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from coach_messaging.core.config import get_settings
from coach_messaging.database.connection import close_mongo_connection, connect_to_mongo, get_database
from coach_messaging.routers.conversations import router as conversations_router
from coach_messaging.routers.devices import router as devices_router
from coach_messaging.routers.messages import router as messages_router
from coach_messaging.routers.notifications import router as notifications_router
from coach_messaging.utils.errors import AuthorizationError, TransientNetworkError, ValidationError


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    try:
        yield
    finally:
        await close_mongo_connection()


app = FastAPI(
    title="Coach Messaging",
    lifespan=lifespan,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    logger.info("Denied %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


@app.exception_handler(TransientNetworkError)
async def transient_error_handler(request: Request, exc: TransientNetworkError):
    logger.warning("Transient failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(notifications_router)
app.include_router(devices_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"status": "ok", "collections": collections}
