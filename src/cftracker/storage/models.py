"""Pydantic models for the cftracker storage layer."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ContestPhase = Literal["BEFORE", "CODING", "PENDING_SYSTEM_TEST", "SYSTEM_TEST", "FINISHED"]


class Student(BaseModel):
    """A tracked student and the aggregate fields kept fresh by sync."""

    id: int | None = None
    name: str
    email: str
    phone_number: str
    codeforces_handle: str
    current_rating: int | None = None
    max_rating: int | None = None
    last_data_update: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Contest(BaseModel):
    """An entry of the global Codeforces contest list."""

    contest_id: int
    name: str
    type: str | None = None
    phase: ContestPhase
    frozen: bool = False
    duration_seconds: int
    start_time_seconds: int | None = None
    relative_time_seconds: int | None = None


class Problem(BaseModel):
    contest_id: int | None = None
    index: str
    name: str
    type: str = "PROGRAMMING"
    rating: int | None = None
    tags: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.contest_id}-{self.index}"


class Member(BaseModel):
    handle: str


class Author(BaseModel):
    contest_id: int | None = None
    members: list[Member] = Field(default_factory=list)
    participant_type: str
    ghost: bool = False
    start_time_seconds: int | None = None


class Submission(BaseModel):
    """A stored submission; ``submission_id`` is the remote id and is unique."""

    id: int | None = None
    student_id: int
    codeforces_handle: str
    submission_id: int
    contest_id: int | None = None
    creation_time_seconds: int
    relative_time_seconds: int
    problem: Problem
    author: Author
    programming_language: str
    verdict: str | None = None
    testset: str
    passed_test_count: int
    time_consumed_millis: int
    memory_consumed_bytes: int
    created_at: datetime | None = None


class RatingChange(BaseModel):
    """One rated contest of a handle; unique on (codeforces_handle, contest_id)."""

    id: int | None = None
    student_id: int
    codeforces_handle: str
    contest_id: int
    contest_name: str
    handle: str
    rank: int
    rating_update_time_seconds: int
    old_rating: int
    new_rating: int
    created_at: datetime | None = None
