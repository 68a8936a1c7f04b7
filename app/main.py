import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.cache import cache
from app.config import settings
from app.database import Database
from app.errors import ServiceError
from app.middleware import TimingMiddleware
from app.routers import articles, metrics, tags, users

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: the connection pool lives exactly as long as the process.
    app.state.database = Database(settings.DATABASE_URL, echo=settings.DEBUG)
    await cache.connect()
    logger.info("Started (%s)", settings.APP_ENV)
    yield
    # Shutdown
    await cache.disconnect()
    await app.state.database.dispose()


app = FastAPI(
    title="Conduit Articles API",
    description="Article storage with tag sets and viewer-relative social annotations",
    version="1.0.0",
    lifespan=lifespan,
)

# Middleware
app.add_middleware(TimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(articles.router)
app.include_router(tags.router)
app.include_router(users.router)
app.include_router(metrics.router)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health():
    return {"status": "healthy", "version": "1.0.0"}
