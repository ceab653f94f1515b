"""Initial schema: ledger, learning statistics, badges, challenges,
leaderboards, rewards and the notification outbox.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Accounts & ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS accounts (
            student_id BIGINT PRIMARY KEY,
            total_earned BIGINT NOT NULL DEFAULT 0,
            total_spent BIGINT NOT NULL DEFAULT 0,
            available BIGINT NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            level_title VARCHAR(64) NOT NULL DEFAULT 'Newcomer',
            weekly_earned BIGINT NOT NULL DEFAULT 0,
            monthly_earned BIGINT NOT NULL DEFAULT 0,
            last_earned_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT accounts_available_non_negative CHECK (available >= 0),
            CONSTRAINT accounts_available_derived CHECK (available = total_earned - total_spent)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS student_wallets (
            student_id BIGINT PRIMARY KEY REFERENCES accounts(student_id) ON DELETE CASCADE,
            point_balance BIGINT NOT NULL DEFAULT 0,
            lifetime_earnings BIGINT NOT NULL DEFAULT 0,
            total_redeemed BIGINT NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS ledger_entries (
            id BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL REFERENCES accounts(student_id) ON DELETE CASCADE,
            kind VARCHAR(16) NOT NULL,
            amount BIGINT NOT NULL,
            source VARCHAR(64) NOT NULL,
            description VARCHAR(256),
            metadata JSONB NOT NULL DEFAULT '{}',
            balance_before BIGINT NOT NULL,
            balance_after BIGINT NOT NULL,
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT ledger_entries_chain CHECK (balance_after = balance_before + amount),
            CONSTRAINT ledger_entries_non_negative CHECK (balance_after >= 0)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_ledger_entries_student
        ON ledger_entries(student_id, id)
    """)

    # --- Learning statistics ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS student_stats (
            student_id BIGINT PRIMARY KEY,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            last_active_day DATE,
            problems_attempted INTEGER NOT NULL DEFAULT 0,
            problems_completed INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS topic_mastery (
            id BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL,
            subject VARCHAR(64) NOT NULL,
            topic VARCHAR(128) NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            correct INTEGER NOT NULL DEFAULT 0,
            completed INTEGER NOT NULL DEFAULT 0,
            hints_used INTEGER NOT NULL DEFAULT 0,
            time_spent_seconds INTEGER NOT NULL DEFAULT 0,
            accuracy DOUBLE PRECISION NOT NULL DEFAULT 0,
            mastery_percent DOUBLE PRECISION NOT NULL DEFAULT 0,
            last_activity_at TIMESTAMPTZ,
            CONSTRAINT topic_mastery_student_subject_topic_key UNIQUE (student_id, subject, topic)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_topic_mastery_student_id
        ON topic_mastery(student_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_activity (
            id BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL,
            day DATE NOT NULL,
            subject VARCHAR(64) NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            correct INTEGER NOT NULL DEFAULT 0,
            completed INTEGER NOT NULL DEFAULT 0,
            time_spent_seconds INTEGER NOT NULL DEFAULT 0,
            CONSTRAINT daily_activity_student_day_subject_key UNIQUE (student_id, day, subject)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_daily_activity_student_id
        ON daily_activity(student_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS processed_outcomes (
            event_key VARCHAR(256) PRIMARY KEY,
            student_id BIGINT NOT NULL,
            xp_awarded INTEGER NOT NULL DEFAULT 0,
            xp_entry_id BIGINT,
            processed_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_processed_outcomes_student_id
        ON processed_outcomes(student_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS scope_memberships (
            id BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL,
            scope VARCHAR(16) NOT NULL,
            scope_key VARCHAR(64) NOT NULL,
            CONSTRAINT scope_memberships_student_scope_key UNIQUE (student_id, scope, scope_key)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_scope_memberships_scope
        ON scope_memberships(scope, scope_key)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_scope_memberships_student_id
        ON scope_memberships(student_id)
    """)

    # --- Badges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS badge_definitions (
            id VARCHAR(64) PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL,
            icon VARCHAR(64),
            category VARCHAR(32) NOT NULL,
            tier VARCHAR(16) NOT NULL,
            xp_reward INTEGER NOT NULL DEFAULT 0,
            criteria JSONB NOT NULL,
            target_role VARCHAR(16) NOT NULL DEFAULT 'student',
            grade_level VARCHAR(16),
            subject VARCHAR(64),
            is_secret BOOLEAN NOT NULL DEFAULT false,
            is_active BOOLEAN NOT NULL DEFAULT true,
            display_order INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS student_badges (
            id BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL,
            badge_id VARCHAR(64) NOT NULL REFERENCES badge_definitions(id),
            progress DOUBLE PRECISION NOT NULL DEFAULT 0,
            is_earned BOOLEAN NOT NULL DEFAULT false,
            earned_at TIMESTAMPTZ,
            metadata JSONB NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ,
            CONSTRAINT student_badges_student_id_badge_id_key UNIQUE (student_id, badge_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_student_badges_student_id
        ON student_badges(student_id)
    """)

    # --- Challenges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS challenges (
            id BIGSERIAL PRIMARY KEY,
            title VARCHAR(128) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            metric VARCHAR(32) NOT NULL,
            target_value INTEGER NOT NULL,
            starts_at TIMESTAMPTZ NOT NULL,
            ends_at TIMESTAMPTZ NOT NULL,
            xp_reward INTEGER NOT NULL DEFAULT 0,
            badge_reward VARCHAR(64) REFERENCES badge_definitions(id),
            subject VARCHAR(64),
            scope VARCHAR(16) NOT NULL DEFAULT 'global',
            scope_key VARCHAR(64),
            max_participants INTEGER,
            current_participants INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS challenge_participation (
            id BIGSERIAL PRIMARY KEY,
            challenge_id BIGINT NOT NULL REFERENCES challenges(id),
            student_id BIGINT NOT NULL,
            current_value DOUBLE PRECISION NOT NULL DEFAULT 0,
            starting_baseline DOUBLE PRECISION,
            is_completed BOOLEAN NOT NULL DEFAULT false,
            completed_at TIMESTAMPTZ,
            progress_history JSONB NOT NULL DEFAULT '[]',
            xp_awarded BOOLEAN NOT NULL DEFAULT false,
            badge_awarded BOOLEAN NOT NULL DEFAULT false,
            joined_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ,
            CONSTRAINT challenge_participation_student_challenge_key UNIQUE (student_id, challenge_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_challenge_participation_student_id
        ON challenge_participation(student_id)
    """)

    # --- Leaderboards ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_snapshots (
            id BIGSERIAL PRIMARY KEY,
            board_type VARCHAR(32) NOT NULL,
            scope VARCHAR(16) NOT NULL,
            scope_key VARCHAR(64) NOT NULL,
            period_key VARCHAR(16) NOT NULL,
            revision INTEGER NOT NULL DEFAULT 1,
            period_start TIMESTAMPTZ,
            period_end TIMESTAMPTZ,
            entry_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT leaderboard_snapshots_identity_key
                UNIQUE (board_type, scope, scope_key, period_key, revision)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_entries (
            id BIGSERIAL PRIMARY KEY,
            snapshot_id BIGINT NOT NULL REFERENCES leaderboard_snapshots(id) ON DELETE CASCADE,
            student_id BIGINT NOT NULL,
            rank INTEGER NOT NULL,
            score DOUBLE PRECISION NOT NULL,
            previous_rank INTEGER,
            trend VARCHAR(8) NOT NULL,
            CONSTRAINT leaderboard_entries_snapshot_student_key UNIQUE (snapshot_id, student_id),
            CONSTRAINT leaderboard_entries_snapshot_rank_key UNIQUE (snapshot_id, rank)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_leaderboard_entries_student_id
        ON leaderboard_entries(student_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_pointers (
            board_type VARCHAR(32) NOT NULL,
            scope VARCHAR(16) NOT NULL,
            scope_key VARCHAR(64) NOT NULL,
            snapshot_id BIGINT NOT NULL REFERENCES leaderboard_snapshots(id),
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (board_type, scope, scope_key)
        )
    """)

    # --- Rewards & redemptions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS reward_catalog (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            category VARCHAR(32) NOT NULL DEFAULT 'general',
            point_cost INTEGER NOT NULL,
            stock_quantity INTEGER,
            available_quantity INTEGER,
            min_level INTEGER NOT NULL DEFAULT 1,
            max_redemptions_per_student INTEGER,
            fulfillment_type VARCHAR(16) NOT NULL DEFAULT 'manual',
            is_active BOOLEAN NOT NULL DEFAULT true,
            display_order INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT reward_catalog_stock_non_negative
                CHECK (available_quantity IS NULL OR available_quantity >= 0)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS reward_redemptions (
            id BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL,
            reward_id BIGINT NOT NULL REFERENCES reward_catalog(id),
            quantity INTEGER NOT NULL DEFAULT 1,
            points_spent INTEGER NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            request_key VARCHAR(128) UNIQUE,
            spend_entry_id BIGINT REFERENCES ledger_entries(id),
            refund_entry_id BIGINT REFERENCES ledger_entries(id),
            approved_by VARCHAR(64),
            approved_at TIMESTAMPTZ,
            fulfilled_at TIMESTAMPTZ,
            cancelled_at TIMESTAMPTZ,
            cancel_reason VARCHAR(256),
            fulfillment_notes TEXT,
            tracking_number VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_reward_redemptions_student_id
        ON reward_redemptions(student_id)
    """)

    # --- Notification outbox ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL,
            type VARCHAR(32) NOT NULL,
            title VARCHAR(256) NOT NULL,
            message TEXT NOT NULL,
            data JSONB NOT NULL DEFAULT '{}',
            delivered BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_notifications_student_id
        ON notifications(student_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_undelivered
        ON notifications(created_at) WHERE delivered = false
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notifications")
    op.execute("DROP TABLE IF EXISTS reward_redemptions")
    op.execute("DROP TABLE IF EXISTS reward_catalog")
    op.execute("DROP TABLE IF EXISTS leaderboard_pointers")
    op.execute("DROP TABLE IF EXISTS leaderboard_entries")
    op.execute("DROP TABLE IF EXISTS leaderboard_snapshots")
    op.execute("DROP TABLE IF EXISTS challenge_participation")
    op.execute("DROP TABLE IF EXISTS challenges")
    op.execute("DROP TABLE IF EXISTS student_badges")
    op.execute("DROP TABLE IF EXISTS badge_definitions")
    op.execute("DROP TABLE IF EXISTS scope_memberships")
    op.execute("DROP TABLE IF EXISTS processed_outcomes")
    op.execute("DROP TABLE IF EXISTS daily_activity")
    op.execute("DROP TABLE IF EXISTS topic_mastery")
    op.execute("DROP TABLE IF EXISTS student_stats")
    op.execute("DROP TABLE IF EXISTS ledger_entries")
    op.execute("DROP TABLE IF EXISTS student_wallets")
    op.execute("DROP TABLE IF EXISTS accounts")
