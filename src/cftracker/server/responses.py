"""Uniform JSON envelopes for API responses."""

from __future__ import annotations

import math
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        {"success": True, "message": message, "data": jsonable_encoder(data)},
        status_code=status_code,
    )


def paginated(
    items: list[Any],
    *,
    page: int,
    limit: int,
    total: int,
    message: str = "Success",
) -> JSONResponse:
    return JSONResponse(
        {
            "success": True,
            "message": message,
            "data": jsonable_encoder(items),
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(total / limit) if limit else 0,
                "total_items": total,
                "items_per_page": limit,
            },
        }
    )


def error(
    message: str,
    status_code: int = 500,
    *,
    detail: str | None = None,
    expose: bool = False,
) -> JSONResponse:
    """Error envelope; *detail* is only included when *expose* is set (development)."""
    return JSONResponse(
        {"success": False, "message": message, "error": detail if expose else None},
        status_code=status_code,
    )
