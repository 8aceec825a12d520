from __future__ import annotations

from pydantic import BaseModel, Field


class SetCapacityRequest(BaseModel):
    desired: int = Field(..., ge=0, le=1000, description="Desired number of live members")
    min_size: int | None = Field(None, ge=0, le=1000, description="Lower bound (keeps current when omitted)")
    max_size: int | None = Field(None, ge=0, le=1000, description="Upper bound (keeps current when omitted)")
    image: str | None = Field(None, description="Worker image; changing it rotates members one per cycle")


class CapacitySpecModel(BaseModel):
    min_size: int
    max_size: int
    desired: int
    image: str


class SetCapacityResponse(BaseModel):
    version: int
    spec: CapacitySpecModel


class StateVersionModel(BaseModel):
    version: int
    created_at: str
    fence: int | None = None
    spec: CapacitySpecModel | None = None
