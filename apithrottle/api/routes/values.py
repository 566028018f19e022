"""Sample resource routes protected by the throttle policy."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from apithrottle.core.rate_limit import RateLimit, enforce_rate_limit

router = APIRouter(tags=["Values"])

_VALUES: dict[int, str] = {1: "value1", 2: "value2"}


class ValueIn(BaseModel):
    value: str = Field(..., min_length=1, max_length=256)


@router.get("/values", dependencies=[Depends(enforce_rate_limit)])
async def list_values() -> list[str]:
    return list(_VALUES.values())


@router.get("/values/status", dependencies=[Depends(RateLimit(exempt=True))])
async def values_status() -> dict:
    """Unthrottled status check living under the throttled prefix."""

    return {"count": len(_VALUES)}


@router.get("/values/{value_id}", dependencies=[Depends(enforce_rate_limit)])
async def get_value(value_id: int) -> dict:
    """Return one value.

    Subject to per-route rules keyed on ``/values/{value_id}``.
    """

    if value_id not in _VALUES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Value not found")
    return {"id": value_id, "value": _VALUES[value_id]}


@router.post(
    "/values",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(enforce_rate_limit)],
)
async def create_value(payload: ValueIn) -> dict:
    value_id = max(_VALUES, default=0) + 1
    _VALUES[value_id] = payload.value
    return {"id": value_id, "value": payload.value}
