"""sqlite DDL for the envforge ledger."""

from __future__ import annotations

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS ef_services (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        repository TEXT,
        branch_name TEXT,
        depends_on_service_id INTEGER,
        attributes TEXT DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ef_builds (
        id INTEGER PRIMARY KEY,
        uuid TEXT NOT NULL UNIQUE,
        repository TEXT NOT NULL,
        branch_name TEXT,
        pr_number INTEGER,
        environment TEXT NOT NULL DEFAULT '{}',
        overrides TEXT DEFAULT '{}',
        comment_runtime_env TEXT DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ef_deployables (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        build_id INTEGER NOT NULL,
        build_uuid TEXT NOT NULL,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        service_id INTEGER,
        active INTEGER NOT NULL DEFAULT 1,
        status TEXT,
        attributes TEXT DEFAULT '{}',
        UNIQUE (build_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ef_deploys (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uuid TEXT NOT NULL UNIQUE,
        build_id INTEGER NOT NULL,
        build_uuid TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        status_message TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        deployable_id INTEGER,
        service_id INTEGER,
        repository TEXT,
        run_uuid TEXT,
        branch_name TEXT,
        tag TEXT,
        sha TEXT,
        env TEXT DEFAULT '{}',
        docker_image TEXT,
        init_docker_image TEXT,
        public_url TEXT,
        internal_hostname TEXT,
        build_output TEXT,
        build_logs_url TEXT,
        cname TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_ef_deploys_build ON ef_deploys (build_id)",
)


def create_schema(conn) -> None:
    """Create all ledger tables on *conn* (idempotent)."""
    for statement in SCHEMA_STATEMENTS:
        conn.execute(statement)
    conn.commit()
