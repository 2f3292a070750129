"""cftracker storage layer: async SQLite store for students and their Codeforces records."""

from cftracker.storage.database import Database, DuplicateStudentError
from cftracker.storage.models import (
    Author,
    Contest,
    Problem,
    RatingChange,
    Student,
    Submission,
)

__all__ = [
    "Author",
    "Contest",
    "Database",
    "DuplicateStudentError",
    "Problem",
    "RatingChange",
    "Student",
    "Submission",
]
