"""FastAPI application entrypoint."""
from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_db, init_db
from .routers import auth_router, interviews, sync, tasks
from .services.cache import CacheService, close_cache_backend, get_cache_service
from .services.sync_service import shutdown_sync_orchestrator

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield
    await shutdown_sync_orchestrator()
    await close_cache_backend()


app = FastAPI(
    title="Inbox Task Tracker API",
    description="Turn Gmail messages into prioritized tasks with LLM extraction and live sync progress",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


app.include_router(sync.router)
app.include_router(tasks.router)
app.include_router(interviews.router)
app.include_router(auth_router.router)


@app.get("/api/health")
async def health(
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
):
    """Database and cache connectivity. 503 when the database is unreachable."""
    try:
        await db.execute(text("SELECT 1"))
        database = {"status": "connected"}
    except Exception as e:
        logger.error(f"Health check: database unavailable: {e}")
        database = {"status": "error", "error": str(e)}
    cache_stats = await cache.get_stats()
    healthy = database["status"] == "connected"
    body = {"status": "ok" if healthy else "unhealthy", "database": database, "cache": cache_stats}
    return JSONResponse(status_code=200 if healthy else 503, content=body)
