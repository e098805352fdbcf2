"""Gamification schema: award ledger, badges, quests, chests, story arcs.

The users table belongs to the lab management core; it is created here only
when missing so the engine can run against an empty database.

Revision ID: 001_gamification_schema
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_gamification_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users (collaborator-owned) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            email VARCHAR(320) UNIQUE,
            roles JSONB NOT NULL DEFAULT '[]',
            week_hours DOUBLE PRECISION NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # --- Progression ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_gamification (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            points BIGINT NOT NULL DEFAULT 0,
            coins BIGINT NOT NULL DEFAULT 0,
            trophies INTEGER NOT NULL DEFAULT 0,
            archetype VARCHAR(32),
            title VARCHAR(64),
            display_name VARCHAR(64),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Award Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS award_ledger (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            source_type VARCHAR(32) NOT NULL,
            source_id BIGINT NOT NULL,
            points_awarded INTEGER NOT NULL DEFAULT 0,
            xp_awarded INTEGER NOT NULL DEFAULT 0,
            coins_awarded INTEGER NOT NULL DEFAULT 0,
            trophies_awarded INTEGER NOT NULL DEFAULT 0,
            project_id BIGINT,
            duration_seconds INTEGER,
            description VARCHAR(256),
            occurred_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT award_ledger_user_source_key UNIQUE (user_id, source_type, source_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_award_ledger_user_occurred
        ON award_ledger(user_id, occurred_at)
    """)

    # --- Badges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS badges (
            id SERIAL PRIMARY KEY,
            name VARCHAR(128) UNIQUE NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            category VARCHAR(32) NOT NULL,
            icon VARCHAR(64),
            color VARCHAR(16),
            criteria JSONB NOT NULL DEFAULT '{}',
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_by BIGINT,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_badges (
            id SERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            badge_id INTEGER NOT NULL REFERENCES badges(id) ON DELETE CASCADE,
            earned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            earned_by BIGINT,
            CONSTRAINT user_badges_user_id_badge_id_key UNIQUE (user_id, badge_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_badges_badge
        ON user_badges(badge_id)
    """)

    # --- Quests ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS quests (
            id SERIAL PRIMARY KEY,
            code VARCHAR(64) UNIQUE NOT NULL,
            title VARCHAR(128) NOT NULL,
            description TEXT,
            quest_type VARCHAR(16) NOT NULL,
            scope VARCHAR(16) NOT NULL,
            project_id BIGINT,
            min_level INTEGER NOT NULL DEFAULT 0,
            min_elo VARCHAR(32),
            metric VARCHAR(32) NOT NULL,
            target DOUBLE PRECISION NOT NULL,
            reward_xp INTEGER NOT NULL DEFAULT 0,
            reward_coins INTEGER NOT NULL DEFAULT 0,
            reward_trophies INTEGER NOT NULL DEFAULT 0,
            starts_at TIMESTAMPTZ,
            ends_at TIMESTAMPTZ,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS quest_progress (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            quest_id INTEGER NOT NULL REFERENCES quests(id) ON DELETE CASCADE,
            progress_value DOUBLE PRECISION NOT NULL DEFAULT 0,
            target_value DOUBLE PRECISION NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'IN_PROGRESS',
            started_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ,
            claimed_at TIMESTAMPTZ,
            CONSTRAINT quest_progress_user_id_quest_id_key UNIQUE (user_id, quest_id)
        )
    """)

    # --- Chests + Inventory ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS chests (
            id SERIAL PRIMARY KEY,
            code VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT,
            rarity VARCHAR(16) NOT NULL,
            price_coins INTEGER NOT NULL,
            min_drops INTEGER NOT NULL DEFAULT 1,
            max_drops INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS chest_drops (
            id SERIAL PRIMARY KEY,
            chest_id INTEGER NOT NULL REFERENCES chests(id) ON DELETE CASCADE,
            item_key VARCHAR(64) NOT NULL,
            item_name VARCHAR(128) NOT NULL,
            rarity VARCHAR(16) NOT NULL,
            weight INTEGER NOT NULL,
            qty_min INTEGER NOT NULL DEFAULT 1,
            qty_max INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT true,
            CONSTRAINT chest_drops_chest_id_item_key_key UNIQUE (chest_id, item_key)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS inventory_items (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            item_key VARCHAR(64) NOT NULL,
            item_name VARCHAR(128) NOT NULL,
            rarity VARCHAR(16) NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 0,
            source_type VARCHAR(32) NOT NULL,
            acquired_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ,
            CONSTRAINT inventory_items_user_id_item_key_key UNIQUE (user_id, item_key)
        )
    """)

    # --- Story Arcs ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS story_arcs (
            id SERIAL PRIMARY KEY,
            code VARCHAR(64) UNIQUE NOT NULL,
            title VARCHAR(128) NOT NULL,
            description TEXT,
            chapter INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT true,
            starts_at TIMESTAMPTZ,
            ends_at TIMESTAMPTZ,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS story_arc_progress (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            story_arc_id INTEGER NOT NULL REFERENCES story_arcs(id) ON DELETE CASCADE,
            status VARCHAR(16) NOT NULL DEFAULT 'IN_PROGRESS',
            current_step INTEGER NOT NULL DEFAULT 1,
            completed_steps INTEGER NOT NULL DEFAULT 0,
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            CONSTRAINT story_arc_progress_user_id_story_arc_id_key UNIQUE (user_id, story_arc_id)
        )
    """)

    # --- Notifications ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(32) NOT NULL,
            subtype VARCHAR(64) NOT NULL,
            title VARCHAR(256) NOT NULL,
            description TEXT,
            read BOOLEAN NOT NULL DEFAULT false,
            metadata JSONB DEFAULT '{}',
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_user_unread
        ON notifications(user_id, read)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notifications CASCADE")
    op.execute("DROP TABLE IF EXISTS story_arc_progress CASCADE")
    op.execute("DROP TABLE IF EXISTS story_arcs CASCADE")
    op.execute("DROP TABLE IF EXISTS inventory_items CASCADE")
    op.execute("DROP TABLE IF EXISTS chest_drops CASCADE")
    op.execute("DROP TABLE IF EXISTS chests CASCADE")
    op.execute("DROP TABLE IF EXISTS quest_progress CASCADE")
    op.execute("DROP TABLE IF EXISTS quests CASCADE")
    op.execute("DROP TABLE IF EXISTS user_badges CASCADE")
    op.execute("DROP TABLE IF EXISTS badges CASCADE")
    op.execute("DROP TABLE IF EXISTS award_ledger CASCADE")
    op.execute("DROP TABLE IF EXISTS user_gamification CASCADE")
