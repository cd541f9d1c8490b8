from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os

from shelfrank.core.config import settings
from shelfrank.core.deps import get_recommendation_service
from shelfrank.routers import feedback, recommendations
from shelfrank.database import init_db
from shelfrank.scheduler import start_scheduler, stop_scheduler
from shelfrank.services.recommendation_service import RecommendationUnavailableError

# ----------------------------
# Logging
# ----------------------------
logger = logging.getLogger("shelfrank")
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(title="shelfrank", debug=settings.DEBUG)

BUILD_ID = os.getenv("BUILD_ID", "missing")

cors_origins = settings.cors_origins_list
logger.info("[CORS] allow_origins=%s", cors_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_build_header(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Shelfrank-Build"] = BUILD_ID
    return response


@app.exception_handler(RecommendationUnavailableError)
async def unavailable_exception_handler(request: Request, exc: RecommendationUnavailableError):
    logger.warning("[UNAVAILABLE] %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "recommendations_unavailable", "retryable": True},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("[UNHANDLED] %s %s", request.method, request.url.path)

    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error"}
    )

    # Ensure CORS headers are present in error responses
    origin = request.headers.get("origin")
    if origin and origin in cors_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"

    return response


# ----------------------------
# Routers
# ----------------------------
app.include_router(recommendations.router, prefix="/api")
app.include_router(feedback.router, prefix="/api")


@app.on_event("startup")
def on_startup() -> None:
    logger.info("[BOOT] environment=%s build=%s", settings.ENVIRONMENT, BUILD_ID)
    init_db()
    if settings.CACHE_CLEANUP_ENABLED:
        start_scheduler()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    # Drain whichever service instance the routes were resolved to
    provider = app.dependency_overrides.get(get_recommendation_service, get_recommendation_service)
    await provider().wait_for_background_tasks()
    stop_scheduler()


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/api/health")
def api_health_check():
    return {"status": "ok"}
