"""Progress analytics over stored submissions and rating changes."""

from __future__ import annotations

import time
from datetime import UTC, datetime

from cftracker.storage.models import RatingChange, Submission

_DAY_SECONDS = 24 * 60 * 60

# (label, inclusive upper bound); ``None`` bound catches the rest.
RATING_BUCKETS: list[tuple[str, int | None]] = [
    ("800-1000", 1000),
    ("1100-1300", 1300),
    ("1400-1600", 1600),
    ("1700-1900", 1900),
    ("2000-2200", 2200),
    ("2300+", None),
]
UNRATED_BUCKET = "Unrated"


def cutoff_seconds(days: int, *, now: float | None = None) -> int:
    """Unix time *days* ago."""
    current = time.time() if now is None else now
    return int(current) - days * _DAY_SECONDS


def bucket_for(rating: int | None) -> str:
    if not rating:
        return UNRATED_BUCKET
    for label, upper in RATING_BUCKETS:
        if upper is None or rating <= upper:
            return label
    return RATING_BUCKETS[-1][0]


def contest_history(changes: list[RatingChange]) -> list[dict]:
    """Flatten rating changes into contest rows, keeping the input order."""
    return [
        {
            "contest_id": c.contest_id,
            "contest_name": c.contest_name,
            "rank": c.rank,
            "rating_change": c.new_rating - c.old_rating,
            "old_rating": c.old_rating,
            "new_rating": c.new_rating,
            "date": datetime.fromtimestamp(c.rating_update_time_seconds, UTC).isoformat(),
        }
        for c in changes
    ]


def problem_stats(submissions: list[Submission], days: int) -> dict:
    """Solving statistics for the submissions of a *days*-long window.

    Unique problems are keyed by contest id and problem index. Rating
    buckets and difficulty figures count accepted submissions.
    """
    accepted = [s for s in submissions if s.verdict == "OK"]
    unique_solved = len({s.problem.key for s in accepted})
    solved_ratings = [s.problem.rating for s in accepted if s.problem.rating]

    buckets = {label: 0 for label, _ in RATING_BUCKETS}
    buckets[UNRATED_BUCKET] = 0
    for sub in accepted:
        buckets[bucket_for(sub.problem.rating)] += 1

    return {
        "statistics": {
            "most_difficult_problem_rating": max(solved_ratings) if solved_ratings else 0,
            "total_problems_solved": unique_solved,
            "average_rating": round(sum(solved_ratings) / len(solved_ratings)) if solved_ratings else 0,
            "average_problems_per_day": round(unique_solved / days, 2) if days > 0 else 0,
            "total_submissions": len(submissions),
            "accepted_submissions": len(accepted),
        },
        "rating_buckets": buckets,
        "heatmap_data": submission_heatmap(submissions),
    }


def submission_heatmap(submissions: list[Submission]) -> dict[str, int]:
    """Submissions per UTC calendar day (``YYYY-MM-DD``)."""
    heatmap: dict[str, int] = {}
    for sub in submissions:
        day = datetime.fromtimestamp(sub.creation_time_seconds, UTC).date().isoformat()
        heatmap[day] = heatmap.get(day, 0) + 1
    return heatmap


def recent_submission_rows(submissions: list[Submission]) -> list[dict]:
    return [
        {
            "id": s.submission_id,
            "problem": {
                "name": s.problem.name,
                "rating": s.problem.rating,
                "tags": s.problem.tags,
                "contest_id": s.problem.contest_id,
                "index": s.problem.index,
            },
            "verdict": s.verdict,
            "programming_language": s.programming_language,
            "time_consumed_millis": s.time_consumed_millis,
            "memory_consumed_bytes": s.memory_consumed_bytes,
            "creation_time": datetime.fromtimestamp(s.creation_time_seconds, UTC).isoformat(),
        }
        for s in submissions
    ]
