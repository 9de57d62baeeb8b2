"""DDL for the jobs table.

Migrations are owned by the database layer; ``ensure_schema`` exists for
local development and integration tests.
"""

from __future__ import annotations

import logging
import re
from typing import Any, List

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)?$")


def validate_table_name(table: str) -> str:
    """Allow only ``name`` or ``schema.name``; the table is interpolated into SQL."""
    if not _IDENTIFIER_RE.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


def _index_prefix(table: str) -> str:
    return table.split(".")[-1]


def create_jobs_table_sql(table: str = "control_plane.jobs") -> List[str]:
    """Statements creating the jobs table and its indexes."""
    validate_table_name(table)
    prefix = _index_prefix(table)
    statements = []

    if "." in table:
        schema = table.split(".")[0]
        statements.append(f"CREATE SCHEMA IF NOT EXISTS {schema}")

    statements.append(f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id UUID PRIMARY KEY,
            type TEXT NOT NULL,
            payload JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'running', 'completed', 'failed')),
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            priority INTEGER NOT NULL DEFAULT 0,
            project_id TEXT NOT NULL DEFAULT '',
            idempotency_key TEXT,
            last_error TEXT,
            result JSONB,
            scheduled_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            heartbeat_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT {prefix}_attempts_not_negative CHECK (attempts >= 0),
            CONSTRAINT {prefix}_max_attempts_positive CHECK (max_attempts > 0),
            CONSTRAINT {prefix}_attempts_not_exceed_max CHECK (attempts <= max_attempts)
        )
    """)
    statements.append(
        f"CREATE INDEX IF NOT EXISTS idx_{prefix}_status_scheduled_at "
        f"ON {table} (status, scheduled_at)"
    )
    statements.append(
        f"CREATE INDEX IF NOT EXISTS idx_{prefix}_status_heartbeat_at "
        f"ON {table} (status, heartbeat_at)"
    )
    statements.append(
        f"CREATE INDEX IF NOT EXISTS idx_{prefix}_project_id ON {table} (project_id)"
    )
    # At most one active job per (type, idempotency_key).
    statements.append(
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{prefix}_active_idempotency "
        f"ON {table} (type, idempotency_key) "
        f"WHERE idempotency_key IS NOT NULL AND status IN ('pending', 'running')"
    )
    return statements


async def ensure_schema(pool: Any, table: str = "control_plane.jobs") -> None:
    """Create the jobs table if it does not exist."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in create_jobs_table_sql(table):
                await conn.execute(statement)
    logger.info(f"Jobs table ready: {table}")
