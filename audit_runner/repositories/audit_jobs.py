from __future__ import annotations

import copy
import json
import re
from collections.abc import Collection
from typing import Any

from audit_runner.db.postgres import PostgresTxRunner

JOB_COLUMNS: tuple[str, ...] = (
    "id",
    "collection_id",
    "created_by",
    "status",
    "total_files",
    "processed_files",
    "progress",
    "estimated_remaining_seconds",
    "current_step",
    "error",
    "report_markdown",
    "report_json",
    "created_at",
    "started_at",
    "completed_at",
    "updated_at",
)
_JSON_COLUMNS = {"report_json"}


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _check_columns(changes: dict[str, Any]) -> None:
    unknown = set(changes) - set(JOB_COLUMNS[1:])
    if unknown:
        raise ValueError(f"unknown audit job columns: {sorted(unknown)}")


class InMemoryAuditJobsRepository:
    def __init__(self, jobs: dict[str, dict[str, Any]]) -> None:
        self._jobs = jobs

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        self._jobs[str(job["id"])] = copy.deepcopy(job)
        return copy.deepcopy(job)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        row = self._jobs.get(job_id)
        if row is None:
            return None
        return copy.deepcopy(row)

    def update(
        self,
        *,
        job_id: str,
        changes: dict[str, Any],
        only_if_status: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``changes``; returns None when the job is missing or not in ``only_if_status``."""
        _check_columns(changes)
        row = self._jobs.get(job_id)
        if row is None:
            return None
        if only_if_status is not None and row.get("status") not in only_if_status:
            return None
        row.update(copy.deepcopy(changes))
        return copy.deepcopy(row)


class PostgresAuditJobsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "audit_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _to_param(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS and value is not None:
            return json.dumps(value, ensure_ascii=True, sort_keys=True)
        return value

    @staticmethod
    def _placeholder(column: str) -> str:
        return "%s::jsonb" if column in _JSON_COLUMNS else "%s"

    @staticmethod
    def _row_to_job(row: Any) -> dict[str, Any]:
        job = dict(zip(JOB_COLUMNS, row))
        for column in _JSON_COLUMNS:
            value = job.get(column)
            if isinstance(value, str):
                job[column] = json.loads(value)
        return job

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        columns = ", ".join(JOB_COLUMNS)
        placeholders = ", ".join(self._placeholder(column) for column in JOB_COLUMNS)
        sql = f"INSERT INTO {self._table_name} ({columns}) VALUES ({placeholders})"
        params = tuple(self._to_param(column, job.get(column)) for column in JOB_COLUMNS)

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return dict(job)

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(JOB_COLUMNS)}
            FROM {self._table_name}
            WHERE id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_job(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def update(
        self,
        *,
        job_id: str,
        changes: dict[str, Any],
        only_if_status: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        _check_columns(changes)
        if not changes:
            return self.get(job_id=job_id)
        assignments = ", ".join(f"{column} = {self._placeholder(column)}" for column in changes)
        params: list[Any] = [self._to_param(column, value) for column, value in changes.items()]
        sql = f"UPDATE {self._table_name} SET {assignments} WHERE id = %s"
        params.append(job_id)
        if only_if_status is not None:
            sql += " AND status = ANY(%s)"
            params.append(list(only_if_status))
        sql += f" RETURNING {', '.join(JOB_COLUMNS)}"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_job(row)

        return self._tx_runner.run_in_tx(fn=_op)
