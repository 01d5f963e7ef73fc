from __future__ import annotations

import copy
import json
import re
from collections.abc import Collection
from typing import Any

from audit_runner.db.postgres import PostgresTxRunner

FILE_COLUMNS: tuple[str, ...] = (
    "id",
    "job_id",
    "position",
    "document_id",
    "collection_id",
    "folder_id",
    "file_path",
    "file_name",
    "file_type",
    "file_size",
    "status",
    "attempts",
    "facts_json",
    "evidence_json",
    "error",
    "created_at",
    "started_at",
    "completed_at",
)
_JSON_COLUMNS = {"facts_json", "evidence_json"}


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _fifo_key(row: dict[str, Any]) -> tuple[str, int]:
    return (str(row.get("created_at") or ""), int(row.get("position") or 0))


class InMemoryAuditJobFilesRepository:
    def __init__(self, files: dict[str, dict[str, Any]]) -> None:
        self._files = files

    def create_many(self, *, files: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for row in files:
            self._files[str(row["id"])] = copy.deepcopy(row)
        return [copy.deepcopy(row) for row in files]

    def get(self, *, file_id: str) -> dict[str, Any] | None:
        row = self._files.get(file_id)
        return copy.deepcopy(row) if row is not None else None

    def _rows(self, job_id: str, statuses: Collection[str] | None) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self._files.values()
            if row.get("job_id") == job_id and (statuses is None or row.get("status") in statuses)
        ]
        return sorted(rows, key=_fifo_key)

    def list_for_job(self, *, job_id: str, statuses: Collection[str] | None = None) -> list[dict[str, Any]]:
        return [copy.deepcopy(row) for row in self._rows(job_id, statuses)]

    def count_for_job(self, *, job_id: str, statuses: Collection[str] | None = None) -> int:
        return len(self._rows(job_id, statuses))

    def claim_pending(self, *, job_id: str, limit: int, started_at: str) -> list[dict[str, Any]]:
        claimed: list[dict[str, Any]] = []
        for row in self._rows(job_id, {"pending"})[: max(0, limit)]:
            row["status"] = "processing"
            row["attempts"] = int(row.get("attempts") or 0) + 1
            row["started_at"] = started_at
            claimed.append(copy.deepcopy(row))
        return claimed

    def list_stale_processing(self, *, job_id: str, started_before: str) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(row)
            for row in self._rows(job_id, {"processing"})
            if not row.get("started_at") or str(row["started_at"]) < started_before
        ]

    def update(
        self,
        *,
        file_id: str,
        changes: dict[str, Any],
        only_if_status: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        unknown = set(changes) - set(FILE_COLUMNS[1:])
        if unknown:
            raise ValueError(f"unknown audit job file columns: {sorted(unknown)}")
        row = self._files.get(file_id)
        if row is None:
            return None
        if only_if_status is not None and row.get("status") not in only_if_status:
            return None
        row.update(copy.deepcopy(changes))
        return copy.deepcopy(row)


class PostgresAuditJobFilesRepository:
    """Job files on PostgreSQL; claims use row locks so concurrent runs never share a file."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "audit_job_files") -> None:
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
    def _row_to_file(row: Any) -> dict[str, Any]:
        item = dict(zip(FILE_COLUMNS, row))
        for column in _JSON_COLUMNS:
            value = item.get(column)
            if isinstance(value, str):
                item[column] = json.loads(value)
        return item

    def _select(self) -> str:
        return f"SELECT {', '.join(FILE_COLUMNS)} FROM {self._table_name}"

    def create_many(self, *, files: list[dict[str, Any]]) -> list[dict[str, Any]]:
        columns = ", ".join(FILE_COLUMNS)
        placeholders = ", ".join(self._placeholder(column) for column in FILE_COLUMNS)
        sql = f"INSERT INTO {self._table_name} ({columns}) VALUES ({placeholders})"
        params = [tuple(self._to_param(column, row.get(column)) for column in FILE_COLUMNS) for row in files]

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                if params:
                    cur.executemany(sql, params)
            return [dict(row) for row in files]

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, file_id: str) -> dict[str, Any] | None:
        sql = f"{self._select()} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (file_id,))
                row = cur.fetchone()
            return self._row_to_file(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_job(self, *, job_id: str, statuses: Collection[str] | None = None) -> list[dict[str, Any]]:
        sql = f"{self._select()} WHERE job_id = %s"
        params: list[Any] = [job_id]
        if statuses is not None:
            sql += " AND status = ANY(%s)"
            params.append(list(statuses))
        sql += " ORDER BY created_at ASC, position ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [self._row_to_file(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def count_for_job(self, *, job_id: str, statuses: Collection[str] | None = None) -> int:
        sql = f"SELECT COUNT(*) FROM {self._table_name} WHERE job_id = %s"
        params: list[Any] = [job_id]
        if statuses is not None:
            sql += " AND status = ANY(%s)"
            params.append(list(statuses))

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return self._tx_runner.run_in_tx(fn=_op)

    def claim_pending(self, *, job_id: str, limit: int, started_at: str) -> list[dict[str, Any]]:
        sql = f"""
            UPDATE {self._table_name} AS f
            SET status = 'processing', attempts = f.attempts + 1, started_at = %s
            WHERE f.id IN (
                SELECT id FROM {self._table_name}
                WHERE job_id = %s AND status = 'pending'
                ORDER BY created_at ASC, position ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {', '.join(f"f.{column}" for column in FILE_COLUMNS)}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (started_at, job_id, max(0, int(limit))))
                rows = cur.fetchall()
            claimed = [self._row_to_file(row) for row in rows]
            return sorted(claimed, key=_fifo_key)

        return self._tx_runner.run_in_tx(fn=_op)

    def list_stale_processing(self, *, job_id: str, started_before: str) -> list[dict[str, Any]]:
        sql = f"""
            {self._select()}
            WHERE job_id = %s AND status = 'processing'
              AND (started_at IS NULL OR started_at < %s)
            ORDER BY created_at ASC, position ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id, started_before))
                rows = cur.fetchall()
            return [self._row_to_file(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def update(
        self,
        *,
        file_id: str,
        changes: dict[str, Any],
        only_if_status: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        unknown = set(changes) - set(FILE_COLUMNS[1:])
        if unknown:
            raise ValueError(f"unknown audit job file columns: {sorted(unknown)}")
        if not changes:
            return self.get(file_id=file_id)
        assignments = ", ".join(f"{column} = {self._placeholder(column)}" for column in changes)
        params: list[Any] = [self._to_param(column, value) for column, value in changes.items()]
        sql = f"UPDATE {self._table_name} SET {assignments} WHERE id = %s"
        params.append(file_id)
        if only_if_status is not None:
            sql += " AND status = ANY(%s)"
            params.append(list(only_if_status))
        sql += f" RETURNING {', '.join(FILE_COLUMNS)}"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            return self._row_to_file(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)
