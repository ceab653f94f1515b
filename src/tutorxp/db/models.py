"""ORM models for the points ledger, rules engine, leaderboards and redemptions.

Student identity lives in the institutional system; every table here keys
students by their external id. Only the ledger and wallet reference the
account row, which is created lazily on the first XP-earning event.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from tutorxp.db.base import Base, BigIntId, JSONType


# ---------------------------------------------------------------------------
# Account store & ledger
# ---------------------------------------------------------------------------


class Account(Base):
    """Per-student balance record. Source of truth for affordability checks."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("available >= 0", name="accounts_available_non_negative"),
        CheckConstraint("available = total_earned - total_spent", name="accounts_available_derived"),
    )

    student_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    total_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    available: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    level_title: Mapped[str] = mapped_column(String(64), nullable=False, default="Newcomer", server_default="Newcomer")
    weekly_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    monthly_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    last_earned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StudentWallet(Base):
    """Display mirror of the account balance, written in the same flush."""

    __tablename__ = "student_wallets"

    student_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("accounts.student_id", ondelete="CASCADE"), primary_key=True
    )
    point_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    lifetime_earnings: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_redeemed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class LedgerEntry(Base):
    """Immutable balance change: one row per award, spend, refund or penalty."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("balance_after = balance_before + amount", name="ledger_entries_chain"),
        CheckConstraint("balance_after >= 0", name="ledger_entries_non_negative"),
        Index("idx_ledger_entries_student", "student_id", "id"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("accounts.student_id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    entry_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Learning statistics (written by outcome intake)
# ---------------------------------------------------------------------------


class StudentStats(Base):
    """Denormalized per-student counters. Single row per student, O(1) reads."""

    __tablename__ = "student_stats"

    student_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_active_day: Mapped[date | None] = mapped_column(Date, nullable=True)
    problems_attempted: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    problems_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TopicMastery(Base):
    """Per-topic accuracy and mastery."""

    __tablename__ = "topic_mastery"
    __table_args__ = (
        UniqueConstraint("student_id", "subject", "topic", name="topic_mastery_student_subject_topic_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    subject: Mapped[str] = mapped_column(String(64), nullable=False)
    topic: Mapped[str] = mapped_column(String(128), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    correct: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    hints_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    accuracy: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    mastery_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DailyActivity(Base):
    """Per-day, per-subject activity for streaks, time-spent and monthly accuracy."""

    __tablename__ = "daily_activity"
    __table_args__ = (
        UniqueConstraint("student_id", "day", "subject", name="daily_activity_student_day_subject_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    subject: Mapped[str] = mapped_column(String(64), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    correct: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


class ProcessedOutcome(Base):
    """Replay guard for learning outcomes already applied to statistics."""

    __tablename__ = "processed_outcomes"

    event_key: Mapped[str] = mapped_column(String(256), primary_key=True)
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    xp_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    xp_entry_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ScopeMembership(Base):
    """Roster row pushed by the institutional hierarchy (class/school/grade)."""

    __tablename__ = "scope_memberships"
    __table_args__ = (
        UniqueConstraint("student_id", "scope", "scope_key", name="scope_memberships_student_scope_key"),
        Index("idx_scope_memberships_scope", "scope", "scope_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_key: Mapped[str] = mapped_column(String(64), nullable=False)


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------


class BadgeDefinition(Base):
    """Badge catalog entry. Criteria is a tagged condition (see badges.criteria)."""

    __tablename__ = "badge_definitions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    target_role: Mapped[str] = mapped_column(String(16), nullable=False, default="student", server_default="student")
    grade_level: Mapped[str | None] = mapped_column(String(16), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_secret: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StudentBadge(Base):
    """Badge progress per student. UNIQUE(student_id, badge_id), earned never reverts."""

    __tablename__ = "student_badges"
    __table_args__ = (
        UniqueConstraint("student_id", "badge_id", name="student_badges_student_id_badge_id_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    badge_id: Mapped[str] = mapped_column(String(64), ForeignKey("badge_definitions.id"), nullable=False)
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    is_earned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    earned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    badge_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


class Challenge(Base):
    """Time-boxed goal; immutable once published."""

    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    metric: Mapped[str] = mapped_column(String(32), nullable=False)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    badge_reward: Mapped[str | None] = mapped_column(String(64), ForeignKey("badge_definitions.id"), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(64), nullable=True)
    scope: Mapped[str] = mapped_column(String(16), nullable=False, default="global", server_default="global")
    scope_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    max_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ChallengeParticipation(Base):
    """Progress of one student against one challenge."""

    __tablename__ = "challenge_participation"
    __table_args__ = (
        UniqueConstraint("student_id", "challenge_id", name="challenge_participation_student_challenge_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    challenge_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("challenges.id"), nullable=False)
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    current_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    starting_baseline: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    progress_history: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    xp_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    badge_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------


class LeaderboardSnapshot(Base):
    """Immutable ranked view of one population for one period."""

    __tablename__ = "leaderboard_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "board_type", "scope", "scope_key", "period_key", "revision",
            name="leaderboard_snapshots_identity_key",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    board_type: Mapped[str] = mapped_column(String(32), nullable=False)
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_key: Mapped[str] = mapped_column(String(64), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class LeaderboardEntry(Base):
    """One ranked row inside a snapshot."""

    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        UniqueConstraint("snapshot_id", "student_id", name="leaderboard_entries_snapshot_student_key"),
        UniqueConstraint("snapshot_id", "rank", name="leaderboard_entries_snapshot_rank_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("leaderboard_snapshots.id", ondelete="CASCADE"), nullable=False
    )
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    previous_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trend: Mapped[str] = mapped_column(String(8), nullable=False)


class LeaderboardPointer(Base):
    """The single "current" snapshot per (type, scope, scope_key), swapped by version CAS."""

    __tablename__ = "leaderboard_pointers"

    board_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    scope: Mapped[str] = mapped_column(String(16), primary_key=True)
    scope_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    snapshot_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("leaderboard_snapshots.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Rewards & redemptions
# ---------------------------------------------------------------------------


class RewardCatalogItem(Base):
    """Reward that can be bought with XP; NULL stock means unlimited."""

    __tablename__ = "reward_catalog"
    __table_args__ = (
        CheckConstraint(
            "available_quantity IS NULL OR available_quantity >= 0",
            name="reward_catalog_stock_non_negative",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="general")
    point_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    available_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    max_redemptions_per_student: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fulfillment_type: Mapped[str] = mapped_column(String(16), nullable=False, default="manual", server_default="manual")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Redemption(Base):
    """Exchange of XP for a catalog reward: pending -> approved -> fulfilled | cancelled."""

    __tablename__ = "reward_redemptions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    reward_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("reward_catalog.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    points_spent: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    request_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    spend_entry_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("ledger_entries.id"), nullable=True)
    refund_entry_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("ledger_entries.id"), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    fulfillment_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Notifications (outbox for the notification collaborator)
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted notification event; published to Redis after commit."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
