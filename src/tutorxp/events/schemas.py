"""Pydantic models for learning-outcome intake."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class OutcomeReport(BaseModel):
    student_id: int = Field(gt=0)
    subject: str = Field(min_length=1, max_length=64)
    topic: str = Field(min_length=1, max_length=128)
    is_correct: bool
    hints_used: int = Field(default=0, ge=0)
    is_completed: bool
    timestamp: datetime
    difficulty: str | None = None
    time_spent_seconds: int = Field(default=0, ge=0)
    event_id: str | None = Field(default=None, max_length=128)


class TopicSummary(BaseModel):
    subject: str
    topic: str
    accuracy: float
    mastery_percent: float
    attempts_per_problem: float


class ChallengeProgressItem(BaseModel):
    challenge_id: int
    current_value: float
    target_value: int
    progress_percent: float
    is_completed: bool
    newly_completed: bool = False
    frozen: bool = False


class OutcomeResponse(BaseModel):
    event_key: str
    duplicate: bool
    xp_awarded: int
    xp_breakdown: dict | None = None
    ledger_entry_id: int | None = None
    current_streak: int | None = None
    topic: TopicSummary | None = None
    challenges: list[ChallengeProgressItem] = []
    badges_earned: list[str] = []
