"""Pydantic models for challenge endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ChallengeResponse(BaseModel):
    id: int
    title: str
    description: str
    metric: str
    target_value: int
    starts_at: datetime
    ends_at: datetime
    xp_reward: int
    badge_reward: str | None = None
    subject: str | None = None
    scope: str
    scope_key: str | None = None
    max_participants: int | None = None
    current_participants: int
    is_active: bool


class ChallengeListResponse(BaseModel):
    challenges: list[ChallengeResponse]


class ChallengeCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=128)
    description: str = ""
    metric: str
    target_value: int = Field(gt=0)
    starts_at: datetime
    ends_at: datetime
    xp_reward: int = Field(default=0, ge=0)
    badge_reward: str | None = None
    subject: str | None = None
    scope: str = "global"
    scope_key: str | None = None
    max_participants: int | None = Field(default=None, gt=0)


class JoinRequest(BaseModel):
    student_id: int = Field(gt=0)


class ParticipationResponse(BaseModel):
    challenge_id: int
    student_id: int
    current_value: float
    starting_baseline: float | None = None
    is_completed: bool
    joined_at: datetime


class ProgressRequest(BaseModel):
    student_id: int = Field(gt=0)
    value: float


class ProgressPoint(BaseModel):
    at: str
    value: float


class ChallengeProgressResponse(BaseModel):
    challenge_id: int
    student_id: int
    metric: str
    current_value: float
    target_value: int
    starting_baseline: float | None = None
    progress_percent: float
    is_completed: bool
    completed_at: datetime | None = None
    newly_completed: bool = False
    frozen: bool = False
    xp_awarded: bool = False
    badge_awarded: bool = False
    progress_history: list[ProgressPoint] = []


class StudentChallengeResponse(ChallengeProgressResponse):
    title: str
    ends_at: datetime


class StudentChallengeListResponse(BaseModel):
    challenges: list[StudentChallengeResponse]


class ChallengeStandingEntry(BaseModel):
    rank: int
    student_id: int
    score: float
    progress_percent: float
    is_completed: bool
    completed_at: datetime | None = None


class ChallengeLeaderboardResponse(BaseModel):
    challenge_id: int
    title: str
    metric: str
    target_value: int
    participants: int
    entries: list[ChallengeStandingEntry]
