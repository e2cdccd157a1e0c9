"""
NAVER WORKS Attendance Bot - Main Application

Features:
- Webhook receiver for the NAVER WORKS bot (check-in / check-out / leave,
  photo upload, location check-in, menu commands)
- Attendance persisted to Google Sheets or Supabase/SQLite
- Admin daily attendance API
- Weekly summary API and scheduler trigger
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import IS_VERCEL, Settings, get_settings
from app.routes import admin, webhook, weekly_summary
from app.services.attendance_service import AttendanceRecorder, LatenessPolicy, build_backend
from app.services.cloudinary_service import make_uploader
from app.services.image_service import ImagePipeline
from app.services.message_handlers import MessageRouter
from app.services.works_auth_service import WorksTokenProvider
from app.services.works_service import WorksClient
from app.state_store import CooldownStore

# Configure logging to show in console
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def build_state(app: FastAPI, settings: Settings) -> None:
    """Create the process-wide services the routes depend on."""
    tokens = WorksTokenProvider(settings)
    client = WorksClient(settings, tokens)
    backend = build_backend(settings)
    policy = LatenessPolicy(settings.workday_start, settings.late_exempt_actions, settings.TIMEZONE)

    app.state.settings = settings
    app.state.tokens = tokens
    app.state.works_client = client
    app.state.backend = backend
    app.state.cooldowns = CooldownStore(window=settings.CHECKIN_COOLDOWN_SECONDS)
    app.state.message_router = MessageRouter(
        client=client,
        recorder=AttendanceRecorder(backend, policy),
        cooldowns=app.state.cooldowns,
        images=ImagePipeline(make_uploader(settings)),
        settings=settings,
    )
    logger.info(f"Attendance backend: {backend.name}, timezone: {settings.TIMEZONE}, IS_VERCEL: {IS_VERCEL}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.works_client.aclose()
    await app.state.tokens.aclose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="NAVER WORKS Attendance Bot", lifespan=lifespan)
    build_state(app, settings)

    # Global exception handler - ALWAYS return JSON, never HTML
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logging.error(f"Unhandled exception: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "detail": "Internal server error"}
        )

    @app.get("/api/health")
    async def health():
        current = app.state.settings
        return {
            "status": "ok",
            "backend": app.state.backend.name,
            "timezone": current.TIMEZONE,
            "integrations": current.integration_status(),
        }

    # ============================================
    # API Routes
    # ============================================
    app.include_router(webhook.router)  # /api/webhook
    app.include_router(admin.router)  # /api/admin/*
    app.include_router(weekly_summary.router)  # /api/weekly-summary, /api/scheduler/*

    return app


app = create_app()
