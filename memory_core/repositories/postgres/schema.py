"""
PostgreSQL schema for the memory store

Every table is keyed by owner_id and every query filters on it.
Embeddings are float8[]; similarity is computed in Python (numpy).

The partial unique index on memory_facts is what makes concurrent
contradiction handling safe: at most one open, active fact per
(owner, entity, single-valued predicate).
"""
import logging

import asyncpg

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memory_entities (
    id                        TEXT PRIMARY KEY,
    owner_id                  TEXT NOT NULL,
    name                      TEXT NOT NULL,
    entity_type               TEXT NOT NULL DEFAULT 'other',
    memory_type               TEXT NOT NULL DEFAULT 'entity',
    aliases                   TEXT[] NOT NULL DEFAULT '{}',
    summary                   TEXT,
    relationship              TEXT,
    importance_tier           TEXT NOT NULL DEFAULT 'medium',
    importance_score          DOUBLE PRECISION NOT NULL DEFAULT 0.5
                              CHECK (importance_score >= 0 AND importance_score <= 1),
    classified_at             TIMESTAMPTZ,
    classification_rationale  TEXT,
    status                    TEXT NOT NULL DEFAULT 'active',
    superseded_by             TEXT REFERENCES memory_entities(id),
    sensitivity               TEXT NOT NULL DEFAULT 'normal',
    is_historical             BOOLEAN NOT NULL DEFAULT FALSE,
    effective_from            TIMESTAMPTZ,
    expires_at                TIMESTAMPTZ,
    version                   INTEGER NOT NULL DEFAULT 1,
    mention_count             INTEGER NOT NULL DEFAULT 1,
    access_count              INTEGER NOT NULL DEFAULT 0,
    last_mentioned_at         TIMESTAMPTZ,
    last_decay_at             TIMESTAMPTZ,
    last_accessed_at          TIMESTAMPTZ,
    embedding                 FLOAT8[],
    context_notes             TEXT[] NOT NULL DEFAULT '{}',
    source_id                 TEXT,
    created_at                TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at                TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_memory_entities_owner_status
    ON memory_entities (owner_id, status);
CREATE INDEX IF NOT EXISTS idx_memory_entities_owner_name
    ON memory_entities (owner_id, lower(name));
CREATE INDEX IF NOT EXISTS idx_memory_entities_source
    ON memory_entities (owner_id, source_id);

CREATE TABLE IF NOT EXISTS memory_facts (
    id                   TEXT PRIMARY KEY,
    owner_id             TEXT NOT NULL,
    entity_id            TEXT NOT NULL REFERENCES memory_entities(id),
    predicate            TEXT NOT NULL,
    object               TEXT NOT NULL,
    object_entity_id     TEXT REFERENCES memory_entities(id),
    confidence           DOUBLE PRECISION NOT NULL DEFAULT 0.8,
    valid_from           TIMESTAMPTZ,
    valid_to             TIMESTAMPTZ,
    invalidated_at       TIMESTAMPTZ,
    invalidated_by       TEXT,
    invalidation_reason  TEXT,
    version              INTEGER NOT NULL DEFAULT 1,
    previous_version_id  TEXT REFERENCES memory_facts(id),
    single_valued        BOOLEAN NOT NULL DEFAULT FALSE,
    status               TEXT NOT NULL DEFAULT 'active',
    source_id            TEXT,
    mention_count        INTEGER NOT NULL DEFAULT 1,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_mentioned_at    TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_memory_facts_entity
    ON memory_facts (owner_id, entity_id, predicate);
CREATE INDEX IF NOT EXISTS idx_memory_facts_source
    ON memory_facts (owner_id, source_id);
CREATE UNIQUE INDEX IF NOT EXISTS uq_memory_facts_single_open
    ON memory_facts (owner_id, entity_id, predicate)
    WHERE single_valued AND valid_to IS NULL AND invalidated_at IS NULL AND status = 'active';

CREATE TABLE IF NOT EXISTS memory_relationships (
    id                 TEXT PRIMARY KEY,
    owner_id           TEXT NOT NULL,
    source_entity_id   TEXT NOT NULL REFERENCES memory_entities(id),
    target_entity_id   TEXT NOT NULL REFERENCES memory_entities(id),
    relationship_type  TEXT NOT NULL,
    strength           DOUBLE PRECISION NOT NULL DEFAULT 0.5,
    confidence         DOUBLE PRECISION NOT NULL DEFAULT 0.8,
    active             BOOLEAN NOT NULL DEFAULT TRUE,
    started_at         TIMESTAMPTZ,
    ended_at           TIMESTAMPTZ,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (owner_id, source_entity_id, target_entity_id, relationship_type)
);

CREATE INDEX IF NOT EXISTS idx_memory_relationships_source
    ON memory_relationships (owner_id, source_entity_id);
CREATE INDEX IF NOT EXISTS idx_memory_relationships_target
    ON memory_relationships (owner_id, target_entity_id);

CREATE TABLE IF NOT EXISTS memory_inferences (
    id                   TEXT PRIMARY KEY,
    owner_id             TEXT NOT NULL,
    inference_type       TEXT NOT NULL DEFAULT 'connection',
    text                 TEXT NOT NULL,
    subject_names        TEXT[] NOT NULL DEFAULT '{}',
    supporting_evidence  TEXT[] NOT NULL DEFAULT '{}',
    confidence           DOUBLE PRECISION NOT NULL,
    status               TEXT NOT NULL DEFAULT 'active',
    expires_at           TIMESTAMPTZ,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_memory_inferences_owner_status
    ON memory_inferences (owner_id, status);

CREATE TABLE IF NOT EXISTS memory_operations (
    id                 TEXT PRIMARY KEY,
    owner_id           TEXT NOT NULL,
    operation          TEXT NOT NULL,
    entity_id          TEXT NOT NULL,
    merged_entity_ids  TEXT[] NOT NULL DEFAULT '{}',
    old_content        TEXT,
    new_content        TEXT,
    reasoning          TEXT,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS memory_sentiment (
    id          TEXT PRIMARY KEY,
    owner_id    TEXT NOT NULL,
    entity_id   TEXT NOT NULL,
    sentiment   DOUBLE PRECISION NOT NULL,
    context     TEXT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_memory_sentiment_entity
    ON memory_sentiment (owner_id, entity_id, created_at);

CREATE TABLE IF NOT EXISTS memory_maintenance_runs (
    id           TEXT PRIMARY KEY,
    task_name    TEXT NOT NULL,
    owner_id     TEXT NOT NULL,
    window_key   TEXT NOT NULL,
    status       TEXT NOT NULL DEFAULT 'completed',
    counts       JSONB NOT NULL DEFAULT '{}',
    errors       JSONB NOT NULL DEFAULT '[]',
    started_at   TIMESTAMPTZ,
    finished_at  TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_memory_maintenance_runs_window
    ON memory_maintenance_runs (owner_id, task_name, window_key);
"""


async def apply_schema(pool: asyncpg.Pool):
    """Create tables and indexes if they do not exist"""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("✅ Memory schema applied")
