"""Async SQLite database for the cftracker storage layer."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from cftracker.storage.models import (
    Author,
    Contest,
    Problem,
    RatingChange,
    Student,
    Submission,
)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS student (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    phone_number TEXT NOT NULL,
    codeforces_handle TEXT NOT NULL,
    current_rating INTEGER,
    max_rating INTEGER,
    last_data_update TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(email),
    UNIQUE(codeforces_handle)
);

CREATE INDEX IF NOT EXISTS ix_student_last_data_update ON student(last_data_update);

CREATE TABLE IF NOT EXISTS contest (
    contest_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT,
    phase TEXT NOT NULL CHECK(phase IN (
        'BEFORE', 'CODING', 'PENDING_SYSTEM_TEST', 'SYSTEM_TEST', 'FINISHED'
    )),
    frozen INTEGER NOT NULL DEFAULT 0,
    duration_seconds INTEGER NOT NULL,
    start_time_seconds INTEGER,
    relative_time_seconds INTEGER
);

CREATE TABLE IF NOT EXISTS submission (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id INTEGER NOT NULL REFERENCES student(id) ON DELETE CASCADE,
    codeforces_handle TEXT NOT NULL,
    submission_id INTEGER NOT NULL,
    contest_id INTEGER,
    creation_time_seconds INTEGER NOT NULL,
    relative_time_seconds INTEGER NOT NULL,
    problem TEXT NOT NULL,
    author TEXT NOT NULL,
    programming_language TEXT NOT NULL,
    verdict TEXT,
    testset TEXT NOT NULL,
    passed_test_count INTEGER NOT NULL,
    time_consumed_millis INTEGER NOT NULL,
    memory_consumed_bytes INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(submission_id)
);

CREATE INDEX IF NOT EXISTS ix_submission_student_time
    ON submission(student_id, creation_time_seconds DESC);

CREATE TABLE IF NOT EXISTS rating_change (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id INTEGER NOT NULL REFERENCES student(id) ON DELETE CASCADE,
    codeforces_handle TEXT NOT NULL,
    contest_id INTEGER NOT NULL,
    contest_name TEXT NOT NULL,
    handle TEXT NOT NULL,
    rank INTEGER NOT NULL,
    rating_update_time_seconds INTEGER NOT NULL,
    old_rating INTEGER NOT NULL,
    new_rating INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(codeforces_handle, contest_id)
);

CREATE INDEX IF NOT EXISTS ix_rating_change_student_time
    ON rating_change(student_id, rating_update_time_seconds DESC);
"""

STUDENT_SORT_FIELDS = frozenset(
    {
        "name",
        "email",
        "codeforces_handle",
        "current_rating",
        "max_rating",
        "last_data_update",
        "created_at",
        "updated_at",
    }
)

_STUDENT_UPDATABLE = frozenset(
    {
        "name",
        "email",
        "phone_number",
        "codeforces_handle",
        "current_rating",
        "max_rating",
        "last_data_update",
    }
)

# SQLite caps the number of bound parameters per statement.
_IN_CHUNK = 500


class DuplicateStudentError(Exception):
    """Raised when a student's email or Codeforces handle is already taken."""

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} already exists")
        self.field = field


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _reconcile_max(current: int | None, maximum: int | None) -> int | None:
    """Return a max rating that is never below the current rating."""
    if current is None:
        return maximum
    if maximum is None or current > maximum:
        return current
    return maximum


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _duplicate_field(exc: sqlite3.IntegrityError) -> str | None:
    # "UNIQUE constraint failed: student.email"
    msg = str(exc)
    if "UNIQUE constraint failed" not in msg:
        return None
    return msg.rsplit(".", 1)[-1].strip()


class Database:
    """Async SQLite database wrapper for cftracker."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # -- student --------------------------------------------------------------

    async def create_student(
        self,
        *,
        name: str,
        email: str,
        phone_number: str,
        codeforces_handle: str,
        current_rating: int | None = None,
        max_rating: int | None = None,
    ) -> Student:
        now = _now_iso()
        try:
            cur = await self.conn.execute(
                """
                INSERT INTO student (name, email, phone_number, codeforces_handle,
                                     current_rating, max_rating, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    name,
                    email.lower(),
                    phone_number,
                    codeforces_handle,
                    current_rating,
                    _reconcile_max(current_rating, max_rating),
                    now,
                    now,
                ),
            )
            row = await cur.fetchone()
        except sqlite3.IntegrityError as exc:
            field = _duplicate_field(exc)
            if field is None:
                raise
            raise DuplicateStudentError(field) from exc
        await self.conn.commit()
        return self._row_to_student(row)

    async def get_student(self, student_id: int) -> Student | None:
        cur = await self.conn.execute("SELECT * FROM student WHERE id = ?", (student_id,))
        row = await cur.fetchone()
        return self._row_to_student(row) if row else None

    async def find_student_by_handle(self, handle: str) -> Student | None:
        cur = await self.conn.execute(
            "SELECT * FROM student WHERE codeforces_handle = ?", (handle,)
        )
        row = await cur.fetchone()
        return self._row_to_student(row) if row else None

    async def update_student(self, student_id: int, **fields: object) -> Student | None:
        """Update the given columns of a student; returns None if it doesn't exist."""
        unknown = set(fields) - _STUDENT_UPDATABLE
        if unknown:
            msg = f"Cannot update student fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        existing = await self.get_student(student_id)
        if existing is None:
            return None

        if "current_rating" in fields or "max_rating" in fields:
            current = fields.get("current_rating", existing.current_rating)
            maximum = fields.get("max_rating", existing.max_rating)
            fields["max_rating"] = _reconcile_max(current, maximum)  # type: ignore[arg-type]
        if "email" in fields and isinstance(fields["email"], str):
            fields["email"] = fields["email"].lower()
        if isinstance(fields.get("last_data_update"), datetime):
            fields["last_data_update"] = _iso(fields["last_data_update"])  # type: ignore[arg-type]

        fields["updated_at"] = _now_iso()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        try:
            cur = await self.conn.execute(
                f"UPDATE student SET {assignments} WHERE id = ? RETURNING *",  # noqa: S608
                (*fields.values(), student_id),
            )
            row = await cur.fetchone()
        except sqlite3.IntegrityError as exc:
            field = _duplicate_field(exc)
            if field is None:
                raise
            raise DuplicateStudentError(field) from exc
        await self.conn.commit()
        return self._row_to_student(row) if row else None

    async def update_student_ratings(
        self,
        student_id: int,
        *,
        current_rating: int | None = None,
        max_rating: int | None = None,
    ) -> Student | None:
        """Set whichever rating fields are provided, keeping max >= current."""
        fields: dict[str, object] = {}
        if current_rating is not None:
            fields["current_rating"] = current_rating
        if max_rating is not None:
            fields["max_rating"] = max_rating
        if not fields:
            return await self.get_student(student_id)
        return await self.update_student(student_id, **fields)

    async def mark_student_synced(self, student_id: int, at: datetime | None = None) -> None:
        stamp = _iso(at) if at else _now_iso()
        await self.conn.execute(
            "UPDATE student SET last_data_update = ?, updated_at = ? WHERE id = ?",
            (stamp, _now_iso(), student_id),
        )
        await self.conn.commit()

    async def delete_student(self, student_id: int) -> bool:
        cur = await self.conn.execute("DELETE FROM student WHERE id = ?", (student_id,))
        await self.conn.commit()
        return cur.rowcount > 0

    async def list_students(self) -> list[Student]:
        cur = await self.conn.execute("SELECT * FROM student ORDER BY id")
        rows = await cur.fetchall()
        return [self._row_to_student(r) for r in rows]

    async def list_stale_students(self, before: datetime) -> list[Student]:
        """Students never synced or last synced before *before*."""
        cur = await self.conn.execute(
            """
            SELECT * FROM student
            WHERE last_data_update IS NULL OR last_data_update < ?
            ORDER BY id
            """,
            (_iso(before),),
        )
        rows = await cur.fetchall()
        return [self._row_to_student(r) for r in rows]

    def _search_clause(self, search: str | None) -> tuple[str, tuple]:
        if not search:
            return "", ()
        pattern = f"%{_escape_like(search)}%"
        return (
            " WHERE name LIKE ? ESCAPE '\\' OR email LIKE ? ESCAPE '\\'"
            " OR codeforces_handle LIKE ? ESCAPE '\\'",
            (pattern, pattern, pattern),
        )

    async def list_students_paginated(
        self,
        limit: int,
        offset: int,
        search: str | None = None,
        *,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> list[Student]:
        if sort_by not in STUDENT_SORT_FIELDS:
            msg = f"Cannot sort students by {sort_by!r}"
            raise ValueError(msg)
        direction = "ASC" if sort_order == "asc" else "DESC"
        where, params = self._search_clause(search)
        cur = await self.conn.execute(
            f"SELECT * FROM student{where} ORDER BY {sort_by} {direction}, id {direction}"  # noqa: S608
            " LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        rows = await cur.fetchall()
        return [self._row_to_student(r) for r in rows]

    async def count_students(self, search: str | None = None) -> int:
        where, params = self._search_clause(search)
        cur = await self.conn.execute(f"SELECT COUNT(*) FROM student{where}", params)  # noqa: S608
        row = await cur.fetchone()
        return row[0]

    async def count_students_with_data(self) -> int:
        cur = await self.conn.execute(
            "SELECT COUNT(*) FROM student WHERE last_data_update IS NOT NULL"
        )
        row = await cur.fetchone()
        return row[0]

    async def count_stale_students(self, before: datetime) -> int:
        cur = await self.conn.execute(
            "SELECT COUNT(*) FROM student WHERE last_data_update IS NULL OR last_data_update < ?",
            (_iso(before),),
        )
        row = await cur.fetchone()
        return row[0]

    async def get_student_aggregates(self, updated_since: datetime) -> dict:
        cur = await self.conn.execute(
            """
            SELECT
                COUNT(*) AS total_students,
                COUNT(current_rating) AS students_with_rating,
                AVG(current_rating) AS average_rating,
                MAX(current_rating) AS max_rating,
                COALESCE(SUM(CASE WHEN last_data_update >= ? THEN 1 ELSE 0 END), 0)
                    AS students_with_recent_update
            FROM student
            """,
            (_iso(updated_since),),
        )
        row = await cur.fetchone()
        return {
            "total_students": row["total_students"],
            "students_with_rating": row["students_with_rating"],
            "average_rating": round(row["average_rating"]) if row["average_rating"] is not None else 0,
            "max_rating": row["max_rating"] or 0,
            "students_with_recent_update": row["students_with_recent_update"],
        }

    # -- contest --------------------------------------------------------------

    async def upsert_contests(self, contests: list[Contest]) -> int:
        """Insert or refresh contests by id; returns how many were new."""
        if not contests:
            return 0
        existing = await self._existing_ids(
            "SELECT contest_id FROM contest WHERE contest_id IN ({})",
            [c.contest_id for c in contests],
        )
        await self.conn.executemany(
            """
            INSERT INTO contest (contest_id, name, type, phase, frozen, duration_seconds,
                                 start_time_seconds, relative_time_seconds)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (contest_id) DO UPDATE SET
                name = excluded.name,
                type = excluded.type,
                phase = excluded.phase,
                frozen = excluded.frozen,
                duration_seconds = excluded.duration_seconds,
                start_time_seconds = excluded.start_time_seconds,
                relative_time_seconds = excluded.relative_time_seconds
            """,
            [
                (
                    c.contest_id,
                    c.name,
                    c.type,
                    c.phase,
                    int(c.frozen),
                    c.duration_seconds,
                    c.start_time_seconds,
                    c.relative_time_seconds,
                )
                for c in contests
            ],
        )
        await self.conn.commit()
        return len({c.contest_id for c in contests} - existing)

    async def count_contests(self) -> int:
        cur = await self.conn.execute("SELECT COUNT(*) FROM contest")
        row = await cur.fetchone()
        return row[0]

    # -- submission -----------------------------------------------------------

    async def known_submission_ids(self, submission_ids: list[int]) -> set[int]:
        """Return the subset of *submission_ids* already stored."""
        return await self._existing_ids(
            "SELECT submission_id FROM submission WHERE submission_id IN ({})",
            submission_ids,
        )

    async def insert_submissions(self, submissions: list[Submission]) -> int:
        """Insert submissions, ignoring ids already present; returns rows added."""
        if not submissions:
            return 0
        now = _now_iso()
        cur = await self.conn.executemany(
            """
            INSERT INTO submission (student_id, codeforces_handle, submission_id, contest_id,
                                    creation_time_seconds, relative_time_seconds, problem, author,
                                    programming_language, verdict, testset, passed_test_count,
                                    time_consumed_millis, memory_consumed_bytes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (submission_id) DO NOTHING
            """,
            [
                (
                    s.student_id,
                    s.codeforces_handle,
                    s.submission_id,
                    s.contest_id,
                    s.creation_time_seconds,
                    s.relative_time_seconds,
                    s.problem.model_dump_json(),
                    s.author.model_dump_json(),
                    s.programming_language,
                    s.verdict,
                    s.testset,
                    s.passed_test_count,
                    s.time_consumed_millis,
                    s.memory_consumed_bytes,
                    now,
                )
                for s in submissions
            ],
        )
        await self.conn.commit()
        return cur.rowcount

    async def list_submissions(
        self,
        student_id: int,
        *,
        since_seconds: int | None = None,
        limit: int | None = None,
    ) -> list[Submission]:
        """Submissions of a student, newest first."""
        query = "SELECT * FROM submission WHERE student_id = ?"
        params: list[object] = [student_id]
        if since_seconds is not None:
            query += " AND creation_time_seconds >= ?"
            params.append(since_seconds)
        query += " ORDER BY creation_time_seconds DESC, submission_id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cur = await self.conn.execute(query, params)
        rows = await cur.fetchall()
        return [self._row_to_submission(r) for r in rows]

    async def count_submissions(self) -> int:
        cur = await self.conn.execute("SELECT COUNT(*) FROM submission")
        row = await cur.fetchone()
        return row[0]

    # -- rating_change --------------------------------------------------------

    async def known_rating_contest_ids(self, handle: str) -> set[int]:
        """Contest ids that already have a stored rating change for *handle*."""
        cur = await self.conn.execute(
            "SELECT contest_id FROM rating_change WHERE codeforces_handle = ?", (handle,)
        )
        rows = await cur.fetchall()
        return {r["contest_id"] for r in rows}

    async def insert_rating_changes(self, changes: list[RatingChange]) -> int:
        if not changes:
            return 0
        now = _now_iso()
        cur = await self.conn.executemany(
            """
            INSERT INTO rating_change (student_id, codeforces_handle, contest_id, contest_name,
                                       handle, rank, rating_update_time_seconds, old_rating,
                                       new_rating, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (codeforces_handle, contest_id) DO NOTHING
            """,
            [
                (
                    c.student_id,
                    c.codeforces_handle,
                    c.contest_id,
                    c.contest_name,
                    c.handle,
                    c.rank,
                    c.rating_update_time_seconds,
                    c.old_rating,
                    c.new_rating,
                    now,
                )
                for c in changes
            ],
        )
        await self.conn.commit()
        return cur.rowcount

    async def list_rating_changes(
        self,
        student_id: int,
        *,
        since_seconds: int | None = None,
    ) -> list[RatingChange]:
        """Rating changes of a student, newest first."""
        query = "SELECT * FROM rating_change WHERE student_id = ?"
        params: list[object] = [student_id]
        if since_seconds is not None:
            query += " AND rating_update_time_seconds >= ?"
            params.append(since_seconds)
        query += " ORDER BY rating_update_time_seconds DESC"
        cur = await self.conn.execute(query, params)
        rows = await cur.fetchall()
        return [self._row_to_rating_change(r) for r in rows]

    async def count_rating_changes(self) -> int:
        cur = await self.conn.execute("SELECT COUNT(*) FROM rating_change")
        row = await cur.fetchone()
        return row[0]

    # -- helpers --------------------------------------------------------------

    async def _existing_ids(self, query: str, ids: list[int]) -> set[int]:
        found: set[int] = set()
        unique = list(dict.fromkeys(ids))
        for i in range(0, len(unique), _IN_CHUNK):
            chunk = unique[i : i + _IN_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            cur = await self.conn.execute(query.format(placeholders), chunk)
            rows = await cur.fetchall()
            found.update(r[0] for r in rows)
        return found

    # -- row → model helpers --------------------------------------------------

    @staticmethod
    def _row_to_student(row: aiosqlite.Row) -> Student:
        return Student(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            phone_number=row["phone_number"],
            codeforces_handle=row["codeforces_handle"],
            current_rating=row["current_rating"],
            max_rating=row["max_rating"],
            last_data_update=row["last_data_update"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_submission(row: aiosqlite.Row) -> Submission:
        return Submission(
            id=row["id"],
            student_id=row["student_id"],
            codeforces_handle=row["codeforces_handle"],
            submission_id=row["submission_id"],
            contest_id=row["contest_id"],
            creation_time_seconds=row["creation_time_seconds"],
            relative_time_seconds=row["relative_time_seconds"],
            problem=Problem.model_validate_json(row["problem"]),
            author=Author.model_validate_json(row["author"]),
            programming_language=row["programming_language"],
            verdict=row["verdict"],
            testset=row["testset"],
            passed_test_count=row["passed_test_count"],
            time_consumed_millis=row["time_consumed_millis"],
            memory_consumed_bytes=row["memory_consumed_bytes"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_rating_change(row: aiosqlite.Row) -> RatingChange:
        return RatingChange(
            id=row["id"],
            student_id=row["student_id"],
            codeforces_handle=row["codeforces_handle"],
            contest_id=row["contest_id"],
            contest_name=row["contest_name"],
            handle=row["handle"],
            rank=row["rank"],
            rating_update_time_seconds=row["rating_update_time_seconds"],
            old_rating=row["old_rating"],
            new_rating=row["new_rating"],
            created_at=row["created_at"],
        )
