# crowdpass/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, and all routers.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from crowdpass.routers import passes, sensors, zones, alerts, stats, health
from crowdpass.database import SessionLocal, create_tables
from crowdpass.config import settings as default_settings
from crowdpass.errors import CrowdPassError
from crowdpass.services.runtime import Services, build_services
from crowdpass.services.store import SqlStore
from crowdpass.utils.logger import get_logger
import time

logger = get_logger(__name__)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth.
    Sensor ingest and health check are open — field gateways don't send keys.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    open_paths = {"/api/v1/sensors/data", "/api/v1/sensors/data/batch", "/api/v1/health",
                  "/docs", "/redoc", "/openapi.json"}

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.open_paths:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != self.api_key:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


def create_app(services: Services = None, settings=default_settings, start_background: bool = True) -> FastAPI:
    """
    Build the app. Without explicit services, engines are wired from settings
    and persist through the SQL store.
    """
    app = FastAPI(
        title="CrowdPass API",
        description="Group entry passes, checkpoint scanning and crowd-density alerts.",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if services is None:
        services = build_services(settings, store=SqlStore(SessionLocal))
    app.state.services = services

    # ── CORS (allow dashboards on the venue LAN to call the API) ─────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],   # Restrict to dashboard hosts in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.API_KEY:
        app.add_middleware(APIKeyMiddleware, api_key=settings.API_KEY)

    # ── Request Timing Middleware ────────────────────────────────────────────
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        duration = round((time.time() - start) * 1000, 2)
        logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
        return response

    # ── Domain Error Handler ─────────────────────────────────────────────────
    @app.exception_handler(CrowdPassError)
    async def domain_exception_handler(request: Request, exc: CrowdPassError):
        logger.info(f"{request.url.path} → {exc.status_code} {exc.__class__.__name__}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": exc.__class__.__name__},
        )

    # ── Global Exception Handler ─────────────────────────────────────────────
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    # ── Routers ──────────────────────────────────────────────────────────────
    app.include_router(passes.router,  prefix="/api/v1", tags=["🎫 Passes"])
    app.include_router(sensors.router, prefix="/api/v1", tags=["📡 Sensors"])
    app.include_router(zones.router,   prefix="/api/v1", tags=["👥 Zones"])
    app.include_router(alerts.router,  prefix="/api/v1", tags=["🔔 Alerts"])
    app.include_router(stats.router,   prefix="/api/v1", tags=["📊 Stats"])
    app.include_router(health.router,  prefix="/api/v1", tags=["💚 Health"])

    # ── Startup ──────────────────────────────────────────────────────────────
    @app.on_event("startup")
    async def startup():
        logger.info("🚀 CrowdPass backend starting up...")
        create_tables()
        logger.info("✅ Database tables ready")
        if start_background:
            app.state.services.start()
            logger.info("⏱  Aggregation, alert and expiry ticks started")
        logger.info(f"🌐 Listening on http://{settings.BACKEND_IP}:{settings.BACKEND_PORT}")
        logger.info("📖 API docs at /docs")

    @app.on_event("shutdown")
    async def shutdown():
        logger.info("🛑 CrowdPass backend shutting down...")
        if start_background:
            await app.state.services.stop()

    return app


app = create_app()
