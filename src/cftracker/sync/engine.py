"""Core sync engine: reconciles Codeforces data for tracked students."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import TYPE_CHECKING, Callable

import structlog

from cftracker.sync.codeforces import (
    CodeforcesAPIError,
    CodeforcesClient,
    CodeforcesNotFoundError,
)
from cftracker.sync.differ import (
    RemoteRatingChange,
    RemoteUser,
    new_rating_changes,
    new_submissions,
    to_contest,
    to_rating_change,
    to_submission,
)

if TYPE_CHECKING:
    from cftracker.config import AppConfig
    from cftracker.storage.database import Database
    from cftracker.storage.models import Student

log = structlog.get_logger(__name__)

_STATS_STALE_HOURS = 24


class SyncState(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncInProgressError(RuntimeError):
    """Raised when a batch is requested while another one is running."""


@dataclass
class SyncSummary:
    submissions_added: int = 0
    rating_changes_added: int = 0
    contests_added: int = 0
    current_rating: int | None = None
    max_rating: int | None = None


@dataclass
class SyncResult:
    success: bool
    message: str
    data: SyncSummary | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StudentSyncOutcome:
    student_id: int
    handle: str
    result: SyncResult


@dataclass
class BatchStats:
    total_students: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    duration_ms: int = 0
    results: list[StudentSyncOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    def summary(self) -> dict:
        return {
            "total_students": self.total_students,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "duration_ms": self.duration_ms,
        }


ClientFactory = Callable[["AppConfig"], CodeforcesClient]


class SyncEngine:
    """Pulls profile, rating history and submissions for students into the store."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._db = db
        self._client_factory = client_factory
        self._state = SyncState.IDLE
        self._lock = asyncio.Lock()
        self._last_stats: BatchStats | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def last_stats(self) -> BatchStats | None:
        return self._last_stats

    def get_status(self) -> dict:
        last = self.last_stats
        return {
            "state": self.state.value,
            "syncing": self.is_syncing,
            "last_stats": last.summary() if last else None,
        }

    def open_client(self) -> CodeforcesClient:
        if self._client_factory:
            return self._client_factory(self._config)
        return CodeforcesClient(
            self._config.codeforces,
            api_delay_ms=self._config.sync.api_delay_ms,
        )

    # ── SINGLE STUDENT ─────────────────────────────────────────────────────

    async def sync_student(self, student_id: int) -> SyncResult:
        """Sync one student by id. Never raises for remote failures."""
        student = await self._db.get_student(student_id)
        if student is None:
            return SyncResult(success=False, message="Student not found")
        async with self.open_client() as client:
            return await self._sync_one(client, student.codeforces_handle, student)

    async def sync_handle(self, handle: str, student: Student | None = None) -> SyncResult:
        """Sync the student owning *handle* (looked up when not given)."""
        async with self.open_client() as client:
            return await self._sync_one(client, handle, student)

    async def _sync_one(
        self,
        client: CodeforcesClient,
        handle: str,
        student: Student | None,
        *,
        refresh_contests: bool = True,
    ) -> SyncResult:
        bound = log.bind(handle=handle)
        try:
            if student is None:
                student = await self._db.find_student_by_handle(handle)
                if student is None:
                    return SyncResult(success=False, message=f"No student with handle {handle}")

            # 1-2. Validate handle by fetching the profile, then rating history
            try:
                user = await client.get_user_info(handle)
            except CodeforcesNotFoundError:
                bound.info("sync_invalid_handle")
                return SyncResult(success=False, message=f"Invalid handle '{handle}'")
            rating_history = await client.get_rating_history(handle)

            # 3-5. Contests, submissions, rating changes
            summary = SyncSummary()
            if refresh_contests:
                summary.contests_added = await self._sync_contests(client)
            summary.submissions_added = await self._sync_submissions(client, handle, student.id)
            summary.rating_changes_added = await self._sync_rating_changes(
                handle, student.id, rating_history
            )

            # 6-7. Aggregate fields + sync stamp
            updated = await self._update_ratings(student.id, user)
            await self._db.mark_student_synced(student.id)

            summary.current_rating = updated.current_rating if updated else user.rating
            summary.max_rating = updated.max_rating if updated else user.max_rating

            bound.info(
                "sync_student_completed",
                submissions_added=summary.submissions_added,
                rating_changes_added=summary.rating_changes_added,
                contests_added=summary.contests_added,
            )
            return SyncResult(success=True, message=f"Synced '{handle}' successfully", data=summary)

        except CodeforcesAPIError as exc:
            bound.warning("sync_student_failed", error=str(exc))
            return SyncResult(success=False, message=f"Sync failed for '{handle}'", error=str(exc))
        except Exception as exc:
            bound.exception("sync_student_error")
            return SyncResult(success=False, message=f"Sync failed for '{handle}'", error=str(exc))

    async def _sync_contests(self, client: CodeforcesClient) -> int:
        """Refresh the global contest list. Failures are logged and count as 0."""
        try:
            contests = await client.get_contests(gym=False)
            return await self._db.upsert_contests([to_contest(c) for c in contests])
        except Exception as exc:
            log.warning("contest_sync_failed", error=str(exc))
            return 0

    async def _sync_submissions(
        self,
        client: CodeforcesClient,
        handle: str,
        student_id: int,
    ) -> int:
        remote = await client.get_submissions(handle)
        known = await self._db.known_submission_ids([s.id for s in remote])
        fresh = new_submissions(remote, known)
        if not fresh:
            return 0
        return await self._db.insert_submissions(
            [to_submission(s, student_id=student_id, handle=handle) for s in fresh]
        )

    async def _sync_rating_changes(
        self,
        handle: str,
        student_id: int,
        remote: list[RemoteRatingChange],
    ) -> int:
        known = await self._db.known_rating_contest_ids(handle)
        fresh = new_rating_changes(remote, known)
        if not fresh:
            return 0
        return await self._db.insert_rating_changes(
            [to_rating_change(c, student_id=student_id, handle=handle) for c in fresh]
        )

    async def _update_ratings(self, student_id: int, user: RemoteUser) -> Student | None:
        return await self._db.update_student_ratings(
            student_id,
            current_rating=user.rating,
            max_rating=user.max_rating,
        )

    # ── BATCHES ────────────────────────────────────────────────────────────

    async def sync_all(self) -> BatchStats:
        """Sync every student."""
        return await self.sync_students(await self._db.list_students())

    async def sync_stale(self, threshold_hours: int | None = None) -> BatchStats:
        """Sync students whose data is missing or older than the threshold."""
        hours = self._config.sync.stale_after_hours if threshold_hours is None else threshold_hours
        before = datetime.now(timezone.utc) - timedelta(hours=hours)
        students = await self._db.list_stale_students(before)
        log.info("stale_students_found", count=len(students), threshold_hours=hours)
        return await self.sync_students(students)

    async def sync_students(
        self,
        students: list[Student],
        *,
        refresh_contests: bool = True,
    ) -> BatchStats:
        """Sync *students* one at a time. Raises if a batch is already running."""
        if self._lock.locked():
            raise SyncInProgressError("Sync already in progress")

        async with self._lock:
            self._state = SyncState.SYNCING
            try:
                stats = await self._do_batch(students, refresh_contests=refresh_contests)
            except Exception:
                self._state = SyncState.ERROR
                raise
            self._state = SyncState.IDLE
            self._last_stats = stats
            return stats

    async def _do_batch(self, students: list[Student], *, refresh_contests: bool) -> BatchStats:
        started = time.monotonic()
        stats = BatchStats(total_students=len(students))
        delay = self._config.sync.student_delay_ms / 1000

        log.info("batch_start", students=len(students))
        if not students:
            log.info("batch_completed", **stats.summary())
            return stats

        async with self.open_client() as client:
            # The contest list is global: download it once per batch.
            if refresh_contests:
                contests_added = await self._sync_contests(client)
                log.info("batch_contests_synced", contests_added=contests_added)

            for i, student in enumerate(students):
                if i:
                    await asyncio.sleep(delay)
                result = await self._sync_one(
                    client,
                    student.codeforces_handle,
                    student,
                    refresh_contests=False,
                )
                stats.results.append(
                    StudentSyncOutcome(
                        student_id=student.id,
                        handle=student.codeforces_handle,
                        result=result,
                    )
                )
                if result.success:
                    stats.successful_syncs += 1
                else:
                    stats.failed_syncs += 1

        stats.duration_ms = round((time.monotonic() - started) * 1000)
        log.info("batch_completed", **stats.summary())
        return stats

    # ── STATS ──────────────────────────────────────────────────────────────

    async def get_sync_stats(self) -> dict:
        before = datetime.now(timezone.utc) - timedelta(hours=_STATS_STALE_HOURS)
        students = await self._db.list_students()
        return {
            "total_students": len(students),
            "students_with_data": await self._db.count_students_with_data(),
            "students_needing_update": await self._db.count_stale_students(before),
            "total_submissions": await self._db.count_submissions(),
            "total_rating_changes": await self._db.count_rating_changes(),
            "total_contests": await self._db.count_contests(),
            "last_sync_times": [
                {
                    "student_id": s.id,
                    "handle": s.codeforces_handle,
                    "last_update": s.last_data_update.isoformat() if s.last_data_update else None,
                }
                for s in students
            ],
        }
