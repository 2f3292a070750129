"""Tests for the cftracker storage layer."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from cftracker.storage import (
    Author,
    Contest,
    Database,
    DuplicateStudentError,
    Problem,
    RatingChange,
    Submission,
)


@pytest_asyncio.fixture()
async def db(tmp_path):
    """Provide a fresh database for each test."""
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


async def _student(db: Database, n: int = 1, **kw):
    data = {
        "name": f"Student {n}",
        "email": f"student{n}@example.com",
        "phone_number": f"+1555000{n:04d}",
        "codeforces_handle": f"handle_{n}",
    }
    data.update(kw)
    return await db.create_student(**data)


def _submission(student_id: int, sid: int, *, t: int = 1_700_000_000, verdict: str | None = "OK") -> Submission:
    return Submission(
        student_id=student_id,
        codeforces_handle="handle_1",
        submission_id=sid,
        contest_id=1800,
        creation_time_seconds=t,
        relative_time_seconds=100,
        problem=Problem(contest_id=1800, index="A", name="Two Sum", rating=800, tags=["math"]),
        author=Author(contest_id=1800, members=[{"handle": "handle_1"}], participant_type="CONTESTANT"),
        programming_language="Python 3",
        verdict=verdict,
        testset="TESTS",
        passed_test_count=10,
        time_consumed_millis=46,
        memory_consumed_bytes=1024,
    )


def _rating_change(student_id: int, contest_id: int, *, t: int = 1_700_000_000) -> RatingChange:
    return RatingChange(
        student_id=student_id,
        codeforces_handle="handle_1",
        contest_id=contest_id,
        contest_name=f"Round {contest_id}",
        handle="handle_1",
        rank=42,
        rating_update_time_seconds=t,
        old_rating=1400,
        new_rating=1450,
    )


# ---------------------------------------------------------------------------
# Schema / connect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_connect_creates_tables(db: Database):
    cur = await db.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in await cur.fetchall()}
    assert tables >= {"student", "contest", "submission", "rating_change"}


@pytest.mark.asyncio()
async def test_foreign_keys_enabled(db: Database):
    cur = await db.conn.execute("PRAGMA foreign_keys")
    row = await cur.fetchone()
    assert row[0] == 1


def test_conn_before_connect_raises(tmp_path):
    with pytest.raises(RuntimeError, match="not connected"):
        _ = Database(tmp_path / "x.db").conn


# ---------------------------------------------------------------------------
# student CRUD
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_create_student(db: Database):
    s = await _student(db, email="Mixed.Case@Example.com")
    assert s.id is not None
    assert s.email == "mixed.case@example.com"
    assert s.current_rating is None
    assert s.last_data_update is None
    assert s.created_at is not None


@pytest.mark.asyncio()
async def test_create_student_reconciles_max_rating(db: Database):
    s = await _student(db, current_rating=1500, max_rating=1200)
    assert s.max_rating == 1500


@pytest.mark.asyncio()
async def test_duplicate_email_rejected(db: Database):
    await _student(db, 1)
    with pytest.raises(DuplicateStudentError) as exc_info:
        await _student(db, 2, email="student1@example.com")
    assert exc_info.value.field == "email"
    assert str(exc_info.value) == "email already exists"


@pytest.mark.asyncio()
async def test_duplicate_handle_rejected(db: Database):
    await _student(db, 1)
    with pytest.raises(DuplicateStudentError) as exc_info:
        await _student(db, 2, codeforces_handle="handle_1")
    assert exc_info.value.field == "codeforces_handle"


@pytest.mark.asyncio()
async def test_get_and_find_student(db: Database):
    s = await _student(db)
    assert (await db.get_student(s.id)).name == "Student 1"
    assert (await db.find_student_by_handle("handle_1")).id == s.id
    assert await db.get_student(999) is None
    assert await db.find_student_by_handle("nobody") is None


@pytest.mark.asyncio()
async def test_update_student(db: Database):
    s = await _student(db)
    updated = await db.update_student(s.id, name="Renamed", current_rating=1600)
    assert updated.name == "Renamed"
    assert updated.current_rating == 1600
    assert updated.max_rating == 1600


@pytest.mark.asyncio()
async def test_update_student_missing_returns_none(db: Database):
    assert await db.update_student(42, name="Ghost") is None


@pytest.mark.asyncio()
async def test_update_student_unknown_field(db: Database):
    s = await _student(db)
    with pytest.raises(ValueError, match="id"):
        await db.update_student(s.id, id=7)


@pytest.mark.asyncio()
async def test_update_student_duplicate(db: Database):
    await _student(db, 1)
    s2 = await _student(db, 2)
    with pytest.raises(DuplicateStudentError):
        await db.update_student(s2.id, codeforces_handle="handle_1")


async def _reopen_name(path, student_id: int) -> str:
    other = Database(path)
    await other.connect()
    try:
        return (await other.get_student(student_id)).name
    finally:
        await other.close()


@pytest.mark.asyncio()
async def test_duplicate_create_keeps_pending_writes(db: Database, tmp_path):
    s1 = await _student(db, 1)
    await _student(db, 2)

    # Another coroutine's write, executed but not yet committed.
    await db.conn.execute("UPDATE student SET name = ? WHERE id = ?", ("Changed", s1.id))
    with pytest.raises(DuplicateStudentError):
        await _student(db, 3, codeforces_handle="handle_2")
    await db.conn.commit()

    assert await _reopen_name(tmp_path / "test.db", s1.id) == "Changed"
    assert await db.count_students() == 2


@pytest.mark.asyncio()
async def test_duplicate_update_keeps_pending_writes(db: Database, tmp_path):
    s1 = await _student(db, 1)
    s2 = await _student(db, 2)
    await db.insert_submissions([_submission(s1.id, 501)])

    await db.conn.execute("UPDATE student SET name = ? WHERE id = ?", ("Changed", s1.id))
    with pytest.raises(DuplicateStudentError):
        await db.update_student(s2.id, email="student1@example.com")
    await db.conn.commit()

    assert await _reopen_name(tmp_path / "test.db", s1.id) == "Changed"
    assert (await db.get_student(s2.id)).email == "student2@example.com"


@pytest.mark.asyncio()
async def test_update_ratings_keeps_max_at_least_current(db: Database):
    s = await _student(db, current_rating=1500, max_rating=1800)
    s = await db.update_student_ratings(s.id, current_rating=1900)
    assert s.current_rating == 1900
    assert s.max_rating == 1900

    s = await db.update_student_ratings(s.id, current_rating=1700, max_rating=1750)
    assert s.current_rating == 1700
    assert s.max_rating == 1750


@pytest.mark.asyncio()
async def test_update_ratings_without_fields_is_noop(db: Database):
    s = await _student(db, current_rating=1500)
    same = await db.update_student_ratings(s.id)
    assert same.current_rating == 1500


@pytest.mark.asyncio()
async def test_mark_synced_and_stale_listing(db: Database):
    s1 = await _student(db, 1)
    s2 = await _student(db, 2)
    s3 = await _student(db, 3)
    now = datetime.now(timezone.utc)
    await db.mark_student_synced(s1.id, now)
    await db.mark_student_synced(s2.id, now - timedelta(hours=48))

    stale = await db.list_stale_students(now - timedelta(hours=24))
    assert [s.id for s in stale] == [s2.id, s3.id]
    assert await db.count_stale_students(now - timedelta(hours=24)) == 2
    assert await db.count_students_with_data() == 2

    refreshed = await db.get_student(s1.id)
    assert refreshed.last_data_update is not None


@pytest.mark.asyncio()
async def test_clear_last_data_update(db: Database):
    s = await _student(db)
    await db.mark_student_synced(s.id)
    updated = await db.update_student(s.id, last_data_update=None)
    assert updated.last_data_update is None


@pytest.mark.asyncio()
async def test_delete_student_cascades(db: Database):
    s = await _student(db)
    await db.insert_submissions([_submission(s.id, 1)])
    await db.insert_rating_changes([_rating_change(s.id, 1800)])

    assert await db.delete_student(s.id) is True
    assert await db.count_submissions() == 0
    assert await db.count_rating_changes() == 0
    assert await db.delete_student(s.id) is False


# ---------------------------------------------------------------------------
# student listing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_list_students_paginated(db: Database):
    for n in range(1, 6):
        await _student(db, n, current_rating=1000 + n * 100)

    page1 = await db.list_students_paginated(2, 0, sort_by="current_rating", sort_order="asc")
    page2 = await db.list_students_paginated(2, 2, sort_by="current_rating", sort_order="asc")
    assert [s.current_rating for s in page1] == [1100, 1200]
    assert [s.current_rating for s in page2] == [1300, 1400]

    desc = await db.list_students_paginated(10, 0, sort_by="current_rating")
    assert desc[0].current_rating == 1500


@pytest.mark.asyncio()
async def test_list_students_search(db: Database):
    await _student(db, 1, name="Alice Smith")
    await _student(db, 2, name="Bob Jones", codeforces_handle="bob_cf")
    await _student(db, 3, name="Carol", email="carol@uni.edu")

    assert [s.name for s in await db.list_students_paginated(10, 0, "alice")] == ["Alice Smith"]
    assert [s.name for s in await db.list_students_paginated(10, 0, "BOB_CF")] == ["Bob Jones"]
    assert [s.name for s in await db.list_students_paginated(10, 0, "uni.edu")] == ["Carol"]
    assert await db.count_students("example.com") == 2
    assert await db.count_students() == 3


@pytest.mark.asyncio()
async def test_search_escapes_like_wildcards(db: Database):
    await _student(db, 1, codeforces_handle="abc")
    await _student(db, 2, codeforces_handle="a_c")
    assert await db.count_students("a_c") == 1
    assert await db.count_students("%") == 0


@pytest.mark.asyncio()
async def test_list_students_bad_sort_field(db: Database):
    with pytest.raises(ValueError, match="Cannot sort"):
        await db.list_students_paginated(10, 0, sort_by="phone_number; DROP TABLE student")


@pytest.mark.asyncio()
async def test_student_aggregates(db: Database):
    s1 = await _student(db, 1, current_rating=1200)
    await _student(db, 2, current_rating=1801)
    await _student(db, 3)
    await db.mark_student_synced(s1.id)

    stats = await db.get_student_aggregates(datetime.now(timezone.utc) - timedelta(hours=24))
    assert stats == {
        "total_students": 3,
        "students_with_rating": 2,
        "average_rating": 1500,
        "max_rating": 1801,
        "students_with_recent_update": 1,
    }


@pytest.mark.asyncio()
async def test_student_aggregates_empty(db: Database):
    stats = await db.get_student_aggregates(datetime.now(timezone.utc))
    assert stats["total_students"] == 0
    assert stats["average_rating"] == 0
    assert stats["max_rating"] == 0


# ---------------------------------------------------------------------------
# contest
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_upsert_contests_counts_new_only(db: Database):
    contests = [
        Contest(contest_id=1, name="Round 1", phase="FINISHED", duration_seconds=7200),
        Contest(contest_id=2, name="Round 2", phase="BEFORE", duration_seconds=7200),
    ]
    assert await db.upsert_contests(contests) == 2

    contests[1] = contests[1].model_copy(update={"phase": "FINISHED"})
    contests.append(Contest(contest_id=3, name="Round 3", phase="CODING", duration_seconds=5400))
    assert await db.upsert_contests(contests) == 1

    assert await db.count_contests() == 3
    cur = await db.conn.execute("SELECT phase FROM contest WHERE contest_id = 2")
    assert (await cur.fetchone())[0] == "FINISHED"


@pytest.mark.asyncio()
async def test_upsert_contests_empty(db: Database):
    assert await db.upsert_contests([]) == 0


# ---------------------------------------------------------------------------
# submission
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_insert_submissions_dedups_by_remote_id(db: Database):
    s = await _student(db)
    assert await db.insert_submissions([_submission(s.id, 1), _submission(s.id, 2)]) == 2
    assert await db.insert_submissions([_submission(s.id, 2), _submission(s.id, 3)]) == 1
    assert await db.count_submissions() == 3
    assert await db.known_submission_ids([1, 3, 5]) == {1, 3}


@pytest.mark.asyncio()
async def test_known_submission_ids_large_batch(db: Database):
    s = await _student(db)
    await db.insert_submissions([_submission(s.id, i) for i in range(1, 1201)])
    known = await db.known_submission_ids(list(range(1000, 1500)))
    assert known == set(range(1000, 1201))


@pytest.mark.asyncio()
async def test_list_submissions_round_trips_nested_fields(db: Database):
    s = await _student(db)
    await db.insert_submissions(
        [
            _submission(s.id, 1, t=1000),
            _submission(s.id, 2, t=3000, verdict=None),
            _submission(s.id, 3, t=2000),
        ]
    )

    subs = await db.list_submissions(s.id)
    assert [x.submission_id for x in subs] == [2, 3, 1]
    assert subs[0].verdict is None
    assert subs[0].problem.tags == ["math"]
    assert subs[0].problem.key == "1800-A"
    assert subs[0].author.members[0].handle == "handle_1"

    recent = await db.list_submissions(s.id, since_seconds=2000, limit=1)
    assert [x.submission_id for x in recent] == [2]


# ---------------------------------------------------------------------------
# rating_change
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_insert_rating_changes_dedups_by_handle_and_contest(db: Database):
    s = await _student(db)
    assert await db.insert_rating_changes([_rating_change(s.id, 1), _rating_change(s.id, 2)]) == 2
    assert await db.insert_rating_changes([_rating_change(s.id, 2)]) == 0
    assert await db.known_rating_contest_ids("handle_1") == {1, 2}
    assert await db.known_rating_contest_ids("other") == set()


@pytest.mark.asyncio()
async def test_list_rating_changes_newest_first(db: Database):
    s = await _student(db)
    await db.insert_rating_changes(
        [_rating_change(s.id, 1, t=100), _rating_change(s.id, 2, t=300), _rating_change(s.id, 3, t=200)]
    )
    changes = await db.list_rating_changes(s.id)
    assert [c.contest_id for c in changes] == [2, 3, 1]
    assert [c.contest_id for c in await db.list_rating_changes(s.id, since_seconds=200)] == [2, 3]
