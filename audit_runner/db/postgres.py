from __future__ import annotations

from collections.abc import Callable
from typing import Any

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS collections (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        collection_id TEXT NOT NULL REFERENCES collections(id),
        folder_id TEXT,
        name TEXT NOT NULL,
        file_path TEXT NOT NULL,
        file_type TEXT,
        file_size BIGINT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS documents_collection_idx ON documents (collection_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id TEXT PRIMARY KEY,
        document_id TEXT,
        collection_id TEXT,
        action TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS activity_logs_document_idx ON activity_logs (document_id, action, created_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_jobs (
        id TEXT PRIMARY KEY,
        collection_id TEXT NOT NULL,
        created_by TEXT,
        status TEXT NOT NULL,
        total_files INTEGER NOT NULL DEFAULT 0,
        processed_files INTEGER NOT NULL DEFAULT 0,
        progress INTEGER NOT NULL DEFAULT 0,
        estimated_remaining_seconds INTEGER,
        current_step TEXT,
        error TEXT,
        report_markdown TEXT,
        report_json JSONB,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_job_files (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES audit_jobs(id),
        position INTEGER NOT NULL,
        document_id TEXT,
        collection_id TEXT,
        folder_id TEXT,
        file_path TEXT NOT NULL,
        file_name TEXT NOT NULL,
        file_type TEXT,
        file_size BIGINT,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        facts_json JSONB,
        evidence_json JSONB,
        error TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_job_files_claim_idx ON audit_job_files (job_id, status, created_at, position)",
)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            result = fn(conn)
            conn.commit()
            return result


def apply_schema(tx_runner: PostgresTxRunner) -> None:
    def _op(conn: Any) -> None:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)

    tx_runner.run_in_tx(fn=_op)


class ConnectionTxRunner:
    """Runs callbacks on an already-open connection so several repositories share one transaction."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        return fn(self._conn)
