"""Helpers shared by the billing FastAPI routers."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request

from billing.errors import OperationResult


def unwrap(result: OperationResult) -> dict[str, Any]:
    """Return the response body for a successful result or raise ``HTTPException``."""

    if result.error:
        raise HTTPException(
            status_code=result.code,
            detail={"code": result.error_code, "message": result.message},
        )
    return {"message": result.message, "data": result.data}


def state_attr(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} is not configured")
    return value
