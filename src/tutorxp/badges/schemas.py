"""Pydantic models for badge endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class BadgeDefinitionResponse(BaseModel):
    badge_id: str
    name: str
    description: str
    icon: str | None = None
    category: str
    tier: str
    xp_reward: int
    subject: str | None = None
    grade_level: str | None = None


class AllBadgesResponse(BaseModel):
    badges: list[BadgeDefinitionResponse]


class StudentBadgeResponse(BaseModel):
    badge_id: str
    name: str
    description: str
    icon: str | None = None
    category: str
    tier: str
    xp_reward: int
    is_secret: bool = False
    progress: float = 0.0
    is_earned: bool = False
    earned_at: datetime | None = None


class StudentBadgesResponse(BaseModel):
    badges: list[StudentBadgeResponse]
    total_earned: int
    total_visible: int


class BadgeGrantRequest(BaseModel):
    awarded_by: str | None = Field(default=None, max_length=64)
    reason: str | None = Field(default=None, max_length=256)


class BadgeGrantResponse(BaseModel):
    student_id: int
    badge_id: str
    newly_earned: bool
    earned_at: datetime | None = None
