"""REST API for students, Codeforces data and the sync scheduler."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from fastapi import Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from cftracker import analytics
from cftracker.server import responses
from cftracker.storage.database import STUDENT_SORT_FIELDS, DuplicateStudentError
from cftracker.sync.codeforces import CodeforcesAPIError, CodeforcesNotFoundError
from cftracker.sync.engine import SyncInProgressError

if TYPE_CHECKING:
    from cftracker.server.state import AppState
    from cftracker.storage.database import Database
    from cftracker.storage.models import Student

log = structlog.get_logger(__name__)

HANDLE_PATTERN = r"^[A-Za-z0-9_-]{3,24}$"
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
PHONE_PATTERN = r"^\+?[1-9]\d{0,15}$"


# -- request bodies -----------------------------------------------------------


class StudentCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=100)
    email: str = Field(pattern=EMAIL_PATTERN)
    phone_number: str = Field(pattern=PHONE_PATTERN)
    codeforces_handle: str = Field(pattern=HANDLE_PATTERN)
    current_rating: int | None = Field(default=None, ge=0, le=5000)
    max_rating: int | None = Field(default=None, ge=0, le=5000)


class StudentUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=2, max_length=100)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    phone_number: str | None = Field(default=None, pattern=PHONE_PATTERN)
    codeforces_handle: str | None = Field(default=None, pattern=HANDLE_PATTERN)
    current_rating: int | None = Field(default=None, ge=0, le=5000)
    max_rating: int | None = Field(default=None, ge=0, le=5000)


class CronStart(BaseModel):
    interval_minutes: int | None = Field(default=None, ge=1)


class CronConfig(BaseModel):
    enabled: bool
    interval_minutes: int = Field(ge=1)


class CronTrigger(BaseModel):
    force: bool = False


# -- helpers ------------------------------------------------------------------


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return ", ".join(parts) or "Invalid request"


def _student_brief(student: Student, *, ratings: bool = True) -> dict:
    brief: dict = {
        "id": student.id,
        "name": student.name,
        "codeforces_handle": student.codeforces_handle,
    }
    if ratings:
        brief["current_rating"] = student.current_rating
        brief["max_rating"] = student.max_rating
    return brief


def create_app(state: AppState, db: Database) -> FastAPI:
    """Build the FastAPI application serving the tracker API."""
    expose = state.config.is_development()

    app = FastAPI(title="cftracker", docs_url=None, redoc_url=None)

    # -- error handlers -------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:  # noqa: ARG001
        return responses.error(_validation_message(exc), 400, detail=str(exc.errors()), expose=expose)

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return responses.error(f"Route {request.method} {request.url.path} not found", 404)
        return responses.error(str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception) -> JSONResponse:
        log.error("request_failed", method=request.method, path=request.url.path, error=str(exc))
        return responses.error("Something went wrong!", 500, detail=str(exc), expose=expose)

    # -- health ---------------------------------------------------------------

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        return responses.success(
            {
                "status": "OK",
                "timestamp": datetime.now(UTC).isoformat(),
                "environment": state.config.server.environment,
                **state.get_status(),
            },
            "Server is running",
        )

    # -- students -------------------------------------------------------------

    @app.get("/api/students")
    async def list_students(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
        search: str = Query(default=""),
        sort_by: str = Query(default="created_at"),
        sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    ) -> JSONResponse:
        if sort_by not in STUDENT_SORT_FIELDS:
            return responses.error(f"Cannot sort by '{sort_by}'", 400)
        search_q = search.strip() or None
        items = await db.list_students_paginated(
            limit, (page - 1) * limit, search_q, sort_by=sort_by, sort_order=sort_order
        )
        total = await db.count_students(search_q)
        return responses.paginated(
            [s.model_dump() for s in items],
            page=page,
            limit=limit,
            total=total,
            message="Students retrieved successfully",
        )

    @app.get("/api/students/stats")
    async def student_stats() -> JSONResponse:
        since = datetime.now(UTC) - timedelta(hours=24)
        stats = await db.get_student_aggregates(since)
        return responses.success(stats, "Student statistics retrieved successfully")

    @app.get("/api/students/{student_id}")
    async def get_student(student_id: int) -> JSONResponse:
        student = await db.get_student(student_id)
        if student is None:
            return responses.error("Student not found", 404)
        return responses.success(student.model_dump(), "Student retrieved successfully")

    @app.post("/api/students")
    async def create_student(body: StudentCreate) -> JSONResponse:
        try:
            student = await db.create_student(**body.model_dump())
        except DuplicateStudentError as exc:
            return responses.error(str(exc), 400)
        log.info("student_created", student_id=student.id, handle=student.codeforces_handle)
        return responses.success(student.model_dump(), "Student created successfully", 201)

    @app.put("/api/students/{student_id}")
    async def update_student(student_id: int, body: StudentUpdate) -> JSONResponse:
        fields = body.model_dump(exclude_unset=True, exclude_none=True)
        existing = await db.get_student(student_id)
        if existing is None:
            return responses.error("Student not found", 404)

        new_handle = fields.get("codeforces_handle")
        handle_changed = new_handle is not None and new_handle != existing.codeforces_handle
        if handle_changed:
            fields["last_data_update"] = None

        try:
            student = await db.update_student(student_id, **fields) if fields else existing
        except DuplicateStudentError as exc:
            return responses.error(str(exc), 400)
        if student is None:
            return responses.error("Student not found", 404)

        if handle_changed and state.engine is not None:
            log.info("handle_changed_sync", student_id=student_id, handle=new_handle)
            try:
                result = await state.engine.sync_student(student_id)
            except Exception as exc:
                log.error("handle_changed_sync_error", student_id=student_id, error=str(exc))
            else:
                if not result.success:
                    log.warning(
                        "handle_changed_sync_failed",
                        student_id=student_id,
                        message=result.message,
                        error=result.error,
                    )
            student = await db.get_student(student_id) or student

        return responses.success(student.model_dump(), "Student updated successfully")

    @app.delete("/api/students/{student_id}")
    async def delete_student(student_id: int) -> JSONResponse:
        if not await db.delete_student(student_id):
            return responses.error("Student not found", 404)
        log.info("student_deleted", student_id=student_id)
        return responses.success(None, "Student deleted successfully")

    # -- codeforces -----------------------------------------------------------

    def _no_engine() -> JSONResponse:
        return responses.error("Sync engine not available", 503)

    @app.get("/api/codeforces/validate/{handle}")
    async def validate_handle(handle: str) -> JSONResponse:
        if state.engine is None:
            return _no_engine()
        try:
            async with state.engine.open_client() as client:
                user = await client.get_user_info(handle)
        except CodeforcesNotFoundError:
            return responses.error(f"Codeforces handle '{handle}' not found", 404)
        except CodeforcesAPIError as exc:
            return responses.error("Failed to validate handle", 500, detail=str(exc), expose=expose)
        return responses.success({"valid": True, "user_info": user}, "Handle is valid")

    @app.get("/api/codeforces/sync/stats")
    async def sync_stats() -> JSONResponse:
        if state.engine is None:
            return _no_engine()
        stats = await state.engine.get_sync_stats()
        return responses.success(stats, "Sync statistics retrieved successfully")

    @app.post("/api/codeforces/sync/all")
    async def sync_all() -> JSONResponse:
        if state.engine is None:
            return _no_engine()
        try:
            stats = await state.engine.sync_all()
        except SyncInProgressError as exc:
            return responses.error(str(exc), 409)
        return responses.success(
            stats.to_dict(),
            f"Sync completed: {stats.successful_syncs}/{stats.total_students} successful",
        )

    @app.post("/api/codeforces/sync/student/{student_id}")
    async def sync_student(student_id: int) -> JSONResponse:
        if state.engine is None:
            return _no_engine()
        result = await state.engine.sync_student(student_id)
        if not result.success:
            return responses.error(result.message, 400, detail=result.error, expose=expose)
        return responses.success(result.data, result.message)

    @app.post("/api/codeforces/sync/force/{student_id}")
    async def force_sync_student(student_id: int) -> JSONResponse:
        if state.engine is None:
            return _no_engine()
        student = await db.get_student(student_id)
        if student is None:
            return responses.error("Student not found", 404)
        log.info("force_sync", student_id=student_id, handle=student.codeforces_handle)
        result = await state.engine.sync_handle(student.codeforces_handle, student)
        if not result.success:
            return responses.error(result.message, 400, detail=result.error, expose=expose)
        return responses.success(
            result.data, f"Force sync completed for {student.codeforces_handle}"
        )

    @app.get("/api/codeforces/student/{student_id}/contests")
    async def contest_history(
        student_id: int,
        days: int = Query(default=365, ge=0),
    ) -> JSONResponse:
        student = await db.get_student(student_id)
        if student is None:
            return responses.error("Student not found", 404)
        changes = await db.list_rating_changes(
            student_id, since_seconds=analytics.cutoff_seconds(days)
        )
        contests = analytics.contest_history(changes)
        return responses.success(
            {
                "student": _student_brief(student),
                "contests": contests,
                "filter_days": days,
                "total_contests": len(contests),
            },
            "Contest history retrieved successfully",
        )

    @app.get("/api/codeforces/student/{student_id}/problems")
    async def problem_stats(
        student_id: int,
        days: int = Query(default=30, ge=0),
    ) -> JSONResponse:
        student = await db.get_student(student_id)
        if student is None:
            return responses.error("Student not found", 404)
        submissions = await db.list_submissions(
            student_id, since_seconds=analytics.cutoff_seconds(days)
        )
        data = {"student": _student_brief(student), **analytics.problem_stats(submissions, days)}
        data["filter_days"] = days
        return responses.success(data, "Problem solving statistics retrieved successfully")

    @app.get("/api/codeforces/student/{student_id}/submissions")
    async def recent_submissions(
        student_id: int,
        limit: int = Query(default=20, ge=1, le=500),
        days: int = Query(default=7, ge=0),
    ) -> JSONResponse:
        student = await db.get_student(student_id)
        if student is None:
            return responses.error("Student not found", 404)
        submissions = await db.list_submissions(
            student_id, since_seconds=analytics.cutoff_seconds(days), limit=limit
        )
        rows = analytics.recent_submission_rows(submissions)
        return responses.success(
            {
                "student": _student_brief(student, ratings=False),
                "submissions": rows,
                "filter_days": days,
                "total_shown": len(rows),
            },
            "Recent submissions retrieved successfully",
        )

    # -- scheduler ------------------------------------------------------------

    def _no_scheduler() -> JSONResponse:
        return responses.error("Scheduler not configured", 503)

    @app.get("/api/cron/status")
    async def cron_status() -> JSONResponse:
        if not state.scheduler:
            return _no_scheduler()
        return responses.success(state.scheduler.get_status(), "Cron job status retrieved successfully")

    @app.post("/api/cron/start")
    async def cron_start(body: CronStart | None = Body(default=None)) -> JSONResponse:
        if not state.scheduler:
            return _no_scheduler()
        if body and body.interval_minutes:
            state.scheduler.reschedule(body.interval_minutes)
        if not state.scheduler.is_running:
            await state.scheduler.start()
        state.scheduler.resume()
        return responses.success(state.scheduler.get_status(), "Cron job started successfully")

    @app.post("/api/cron/stop")
    async def cron_stop() -> JSONResponse:
        if not state.scheduler:
            return _no_scheduler()
        state.scheduler.pause()
        return responses.success(state.scheduler.get_status(), "Cron job stopped successfully")

    @app.put("/api/cron/config")
    async def cron_config(body: CronConfig) -> JSONResponse:
        if not state.scheduler:
            return _no_scheduler()
        if body.interval_minutes != state.scheduler.interval_minutes:
            state.scheduler.reschedule(body.interval_minutes)
        if body.enabled:
            if not state.scheduler.is_running:
                await state.scheduler.start()
            state.scheduler.resume()
        else:
            state.scheduler.pause()
        state.config.sync.enabled = body.enabled
        state.config.sync.interval_minutes = body.interval_minutes
        return responses.success(
            state.scheduler.get_status(), "Cron job configuration updated successfully"
        )

    @app.post("/api/cron/trigger")
    async def cron_trigger(body: CronTrigger | None = Body(default=None)) -> JSONResponse:
        if not state.scheduler:
            return _no_scheduler()
        if state.scheduler.paused:
            return responses.error("Cron job is stopped", 400)
        force = bool(body and body.force)
        state.scheduler.trigger_now(force=force)
        if not state.scheduler.is_running:
            await state.scheduler.start()
        return responses.success(state.scheduler.get_status(), "Manual sync triggered successfully")

    return app
