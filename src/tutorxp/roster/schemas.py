"""Pydantic models for roster sync."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ScopeItem(BaseModel):
    scope: str
    scope_key: str = Field(min_length=1, max_length=64)


class ScopesRequest(BaseModel):
    memberships: list[ScopeItem]


class ScopesResponse(BaseModel):
    student_id: int
    memberships: list[ScopeItem]
