from __future__ import annotations

import json

import pytest

from audit_runner.repositories import (
    InMemoryAuditJobFilesRepository,
    PostgresAuditJobFilesRepository,
    PostgresAuditJobsRepository,
)
from audit_runner.repositories.audit_job_files import FILE_COLUMNS
from audit_runner.repositories.audit_jobs import JOB_COLUMNS


class FakeCursor:
    def __init__(self, statements, rows):
        self._statements = statements
        self._rows = rows

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._statements.append((query, params))

    def executemany(self, query: str, params_seq):
        self._statements.append((query, list(params_seq)))

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeRunner:
    def __init__(self, rows=None):
        self.statements: list[tuple[str, object]] = []
        self.rows = list(rows or [])
        self.transactions = 0

    def run_in_tx(self, *, fn):
        self.transactions += 1
        runner = self

        class FakeConnection:
            def cursor(self):
                return FakeCursor(runner.statements, runner.rows)

        return fn(FakeConnection())


def test_postgres_repository_rejects_invalid_table_name():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresAuditJobsRepository(tx_runner=FakeRunner(), table_name="audit_jobs;drop table audit_jobs")


def test_postgres_job_update_is_guarded_by_status():
    row = tuple(
        {"id": "audit_1", "status": "cancelled", "report_json": json.dumps({"a": 1})}.get(column)
        for column in JOB_COLUMNS
    )
    runner = FakeRunner(rows=[row])
    repo = PostgresAuditJobsRepository(tx_runner=runner)

    updated = repo.update(
        job_id="audit_1",
        changes={"status": "cancelled", "report_json": {"a": 1}},
        only_if_status=["queued", "running"],
    )

    sql, params = runner.statements[0]
    assert "UPDATE audit_jobs SET status = %s, report_json = %s::jsonb WHERE id = %s AND status = ANY(%s)" in sql
    assert params == ("cancelled", '{"a": 1}', "audit_1", ["queued", "running"])
    assert updated["report_json"] == {"a": 1}


def test_postgres_job_update_returns_none_when_guard_fails():
    repo = PostgresAuditJobsRepository(tx_runner=FakeRunner(rows=[]))
    assert repo.update(job_id="audit_1", changes={"progress": 10}, only_if_status=["running"]) is None


def test_postgres_job_update_rejects_unknown_columns():
    repo = PostgresAuditJobsRepository(tx_runner=FakeRunner())
    with pytest.raises(ValueError, match="unknown audit job columns"):
        repo.update(job_id="audit_1", changes={"owner_id": "x"})


def test_postgres_claim_uses_skip_locked_and_fifo_order():
    rows = [
        tuple({"id": "ajf_2", "position": 1, "created_at": "t", "status": "processing"}.get(c) for c in FILE_COLUMNS),
        tuple({"id": "ajf_1", "position": 0, "created_at": "t", "status": "processing"}.get(c) for c in FILE_COLUMNS),
    ]
    runner = FakeRunner(rows=rows)
    repo = PostgresAuditJobFilesRepository(tx_runner=runner)

    claimed = repo.claim_pending(job_id="audit_1", limit=2, started_at="2024-01-01T00:00:00+00:00")

    sql, params = runner.statements[0]
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "ORDER BY created_at ASC, position ASC" in sql
    assert params == ("2024-01-01T00:00:00+00:00", "audit_1", 2)
    assert [row["id"] for row in claimed] == ["ajf_1", "ajf_2"]


def test_postgres_create_many_serializes_json_columns():
    runner = FakeRunner()
    repo = PostgresAuditJobFilesRepository(tx_runner=runner)

    repo.create_many(files=[{"id": "ajf_1", "job_id": "audit_1", "facts_json": {"facts": []}, "status": "pending"}])

    sql, params = runner.statements[0]
    assert sql.startswith("INSERT INTO audit_job_files")
    assert "%s::jsonb" in sql
    row_params = params[0]
    assert row_params[FILE_COLUMNS.index("facts_json")] == '{"facts": []}'
    assert row_params[FILE_COLUMNS.index("evidence_json")] is None


def test_postgres_create_many_with_no_files_executes_nothing():
    runner = FakeRunner()
    PostgresAuditJobFilesRepository(tx_runner=runner).create_many(files=[])
    assert runner.statements == []


def test_inmemory_claim_increments_attempts_in_fifo_order():
    files = {
        "ajf_b": {"id": "ajf_b", "job_id": "j", "position": 1, "created_at": "t", "status": "pending", "attempts": 0},
        "ajf_a": {"id": "ajf_a", "job_id": "j", "position": 0, "created_at": "t", "status": "pending", "attempts": 0},
        "ajf_c": {"id": "ajf_c", "job_id": "j", "position": 2, "created_at": "t", "status": "done", "attempts": 1},
    }
    repo = InMemoryAuditJobFilesRepository(files)

    claimed = repo.claim_pending(job_id="j", limit=5, started_at="now")

    assert [row["id"] for row in claimed] == ["ajf_a", "ajf_b"]
    assert all(row["attempts"] == 1 and row["status"] == "processing" for row in claimed)
    assert repo.claim_pending(job_id="j", limit=5, started_at="later") == []


def test_inmemory_update_guard():
    files = {"ajf_a": {"id": "ajf_a", "job_id": "j", "status": "done"}}
    repo = InMemoryAuditJobFilesRepository(files)
    assert repo.update(file_id="ajf_a", changes={"status": "failed"}, only_if_status={"processing"}) is None
    assert files["ajf_a"]["status"] == "done"
