"""
FastAPI dependencies for the shared services built at startup (app.state).
Tests replace them through app.dependency_overrides.
"""
from datetime import datetime
from typing import Callable

from fastapi import Request

from app.services.attendance_service import AttendanceBackend
from app.services.message_handlers import MessageRouter
from app.utils import now_utc


def get_message_router(request: Request) -> MessageRouter:
    return request.app.state.message_router


def get_backend(request: Request) -> AttendanceBackend:
    return request.app.state.backend


def get_clock() -> Callable[[], datetime]:
    return now_utc
