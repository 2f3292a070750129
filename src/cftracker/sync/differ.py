"""Remote record types, conversion to stored models, and dedup against local state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from cftracker.storage.models import (
    Author,
    Contest,
    Member,
    Problem,
    RatingChange,
    Submission,
)


@dataclass(frozen=True)
class RemoteUser:
    """A user profile as returned by ``user.info``."""

    handle: str
    rating: int | None = None
    max_rating: int | None = None
    rank: str | None = None
    max_rank: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    country: str | None = None
    organization: str | None = None
    contribution: int | None = None
    registration_time_seconds: int | None = None
    last_online_time_seconds: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteUser:
        return cls(
            handle=data["handle"],
            rating=data.get("rating"),
            max_rating=data.get("maxRating"),
            rank=data.get("rank"),
            max_rank=data.get("maxRank"),
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
            country=data.get("country"),
            organization=data.get("organization"),
            contribution=data.get("contribution"),
            registration_time_seconds=data.get("registrationTimeSeconds"),
            last_online_time_seconds=data.get("lastOnlineTimeSeconds"),
        )


@dataclass(frozen=True)
class RemoteRatingChange:
    """One entry of ``user.rating``."""

    contest_id: int
    contest_name: str
    handle: str
    rank: int
    rating_update_time_seconds: int
    old_rating: int
    new_rating: int

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteRatingChange:
        return cls(
            contest_id=data["contestId"],
            contest_name=data["contestName"],
            handle=data["handle"],
            rank=data["rank"],
            rating_update_time_seconds=data["ratingUpdateTimeSeconds"],
            old_rating=data["oldRating"],
            new_rating=data["newRating"],
        )


@dataclass(frozen=True)
class RemoteSubmission:
    """One entry of ``user.status``; ``problem`` and ``author`` stay raw documents."""

    id: int
    creation_time_seconds: int
    relative_time_seconds: int
    problem: dict[str, Any]
    author: dict[str, Any]
    programming_language: str
    testset: str
    passed_test_count: int
    time_consumed_millis: int
    memory_consumed_bytes: int
    contest_id: int | None = None
    verdict: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteSubmission:
        return cls(
            id=data["id"],
            contest_id=data.get("contestId"),
            creation_time_seconds=data["creationTimeSeconds"],
            relative_time_seconds=data.get("relativeTimeSeconds", 0),
            problem=data.get("problem", {}),
            author=data.get("author", {}),
            programming_language=data.get("programmingLanguage", ""),
            verdict=data.get("verdict"),
            testset=data.get("testset", ""),
            passed_test_count=data.get("passedTestCount", 0),
            time_consumed_millis=data.get("timeConsumedMillis", 0),
            memory_consumed_bytes=data.get("memoryConsumedBytes", 0),
        )


@dataclass(frozen=True)
class RemoteContest:
    """One entry of ``contest.list``."""

    id: int
    name: str
    phase: str
    duration_seconds: int
    type: str | None = None
    frozen: bool = False
    start_time_seconds: int | None = None
    relative_time_seconds: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteContest:
        return cls(
            id=data["id"],
            name=data["name"],
            type=data.get("type"),
            phase=data["phase"],
            frozen=data.get("frozen", False),
            duration_seconds=data["durationSeconds"],
            start_time_seconds=data.get("startTimeSeconds"),
            relative_time_seconds=data.get("relativeTimeSeconds"),
        )


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------


def new_submissions(
    remote: list[RemoteSubmission],
    known_ids: set[int],
) -> list[RemoteSubmission]:
    """Drop submissions already stored (by remote id) and repeats within *remote*."""
    seen = set(known_ids)
    fresh: list[RemoteSubmission] = []
    for sub in remote:
        if sub.id in seen:
            continue
        seen.add(sub.id)
        fresh.append(sub)
    return fresh


def new_rating_changes(
    remote: list[RemoteRatingChange],
    known_contest_ids: set[int],
) -> list[RemoteRatingChange]:
    """Drop rating changes whose contest is already stored for this handle."""
    seen = set(known_contest_ids)
    fresh: list[RemoteRatingChange] = []
    for change in remote:
        if change.contest_id in seen:
            continue
        seen.add(change.contest_id)
        fresh.append(change)
    return fresh


# ---------------------------------------------------------------------------
# Remote → stored models
# ---------------------------------------------------------------------------


def _to_problem(raw: dict[str, Any]) -> Problem:
    return Problem(
        contest_id=raw.get("contestId"),
        index=raw.get("index", ""),
        name=raw.get("name", ""),
        type=raw.get("type", "PROGRAMMING"),
        rating=raw.get("rating"),
        tags=list(raw.get("tags", [])),
    )


def _to_author(raw: dict[str, Any]) -> Author:
    return Author(
        contest_id=raw.get("contestId"),
        members=[Member(handle=m["handle"]) for m in raw.get("members", []) if "handle" in m],
        participant_type=raw.get("participantType", "PRACTICE"),
        ghost=raw.get("ghost", False),
        start_time_seconds=raw.get("startTimeSeconds"),
    )


def to_submission(sub: RemoteSubmission, *, student_id: int, handle: str) -> Submission:
    return Submission(
        student_id=student_id,
        codeforces_handle=handle,
        submission_id=sub.id,
        contest_id=sub.contest_id,
        creation_time_seconds=sub.creation_time_seconds,
        relative_time_seconds=sub.relative_time_seconds,
        problem=_to_problem(sub.problem),
        author=_to_author(sub.author),
        programming_language=sub.programming_language,
        verdict=sub.verdict,
        testset=sub.testset,
        passed_test_count=sub.passed_test_count,
        time_consumed_millis=sub.time_consumed_millis,
        memory_consumed_bytes=sub.memory_consumed_bytes,
    )


def to_rating_change(change: RemoteRatingChange, *, student_id: int, handle: str) -> RatingChange:
    return RatingChange(
        student_id=student_id,
        codeforces_handle=handle,
        contest_id=change.contest_id,
        contest_name=change.contest_name,
        handle=change.handle,
        rank=change.rank,
        rating_update_time_seconds=change.rating_update_time_seconds,
        old_rating=change.old_rating,
        new_rating=change.new_rating,
    )


def to_contest(contest: RemoteContest) -> Contest:
    return Contest(
        contest_id=contest.id,
        name=contest.name,
        type=contest.type,
        phase=contest.phase,
        frozen=contest.frozen,
        duration_seconds=contest.duration_seconds,
        start_time_seconds=contest.start_time_seconds,
        relative_time_seconds=contest.relative_time_seconds,
    )
