from __future__ import annotations

import copy
import json
import re
from typing import Any

from audit_runner.db.postgres import PostgresTxRunner

DOCUMENT_COLUMNS: tuple[str, ...] = (
    "id",
    "collection_id",
    "folder_id",
    "name",
    "file_path",
    "file_type",
    "file_size",
    "created_at",
)
ACTIVITY_COLUMNS: tuple[str, ...] = ("id", "document_id", "collection_id", "action", "metadata", "created_at")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryDocumentsRepository:
    """Source collections, their documents and upload activity (read-mostly for the runner)."""

    def __init__(
        self,
        collections: dict[str, dict[str, Any]],
        documents: dict[str, dict[str, Any]],
        activity_logs: list[dict[str, Any]],
    ) -> None:
        self._collections = collections
        self._documents = documents
        self._activity_logs = activity_logs

    def upsert_collection(self, *, collection: dict[str, Any]) -> dict[str, Any]:
        self._collections[str(collection["id"])] = dict(collection)
        return dict(collection)

    def get_collection(self, *, collection_id: str) -> dict[str, Any] | None:
        row = self._collections.get(collection_id)
        return dict(row) if row is not None else None

    def create_document(self, *, document: dict[str, Any]) -> dict[str, Any]:
        self._documents[str(document["id"])] = dict(document)
        return dict(document)

    def list_documents(self, *, collection_id: str) -> list[dict[str, Any]]:
        rows = [dict(row) for row in self._documents.values() if row.get("collection_id") == collection_id]
        return sorted(rows, key=lambda row: (str(row.get("created_at") or ""), str(row.get("id"))))

    def append_activity(self, *, activity: dict[str, Any]) -> dict[str, Any]:
        self._activity_logs.append(copy.deepcopy(activity))
        return copy.deepcopy(activity)

    def latest_activity(self, *, document_id: str, action: str) -> dict[str, Any] | None:
        latest: dict[str, Any] | None = None
        for row in self._activity_logs:
            if row.get("document_id") != document_id or row.get("action") != action:
                continue
            if latest is None or str(row.get("created_at") or "") >= str(latest.get("created_at") or ""):
                latest = row
        return copy.deepcopy(latest) if latest is not None else None


class PostgresDocumentsRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        collections_table: str = "collections",
        documents_table: str = "documents",
        activity_table: str = "activity_logs",
    ) -> None:
        self._tx_runner = tx_runner
        self._collections_table = _validate_identifier(collections_table)
        self._documents_table = _validate_identifier(documents_table)
        self._activity_table = _validate_identifier(activity_table)

    def upsert_collection(self, *, collection: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._collections_table} (id, name, created_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, (collection["id"], collection.get("name", ""), collection.get("created_at")))
            return dict(collection)

        return self._tx_runner.run_in_tx(fn=_op)

    def get_collection(self, *, collection_id: str) -> dict[str, Any] | None:
        sql = f"SELECT id, name, created_at FROM {self._collections_table} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (collection_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return {"id": row[0], "name": row[1], "created_at": row[2]}

        return self._tx_runner.run_in_tx(fn=_op)

    def create_document(self, *, document: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._documents_table} ({", ".join(DOCUMENT_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(DOCUMENT_COLUMNS))})
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(document.get(column) for column in DOCUMENT_COLUMNS))
            return dict(document)

        return self._tx_runner.run_in_tx(fn=_op)

    def list_documents(self, *, collection_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {", ".join(DOCUMENT_COLUMNS)}
            FROM {self._documents_table}
            WHERE collection_id = %s
            ORDER BY created_at ASC, id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (collection_id,))
                rows = cur.fetchall()
            return [dict(zip(DOCUMENT_COLUMNS, row)) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def append_activity(self, *, activity: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._activity_table} ({", ".join(ACTIVITY_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s::jsonb, %s)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        activity["id"],
                        activity.get("document_id"),
                        activity.get("collection_id"),
                        activity["action"],
                        json.dumps(activity.get("metadata") or {}, ensure_ascii=True, sort_keys=True),
                        activity.get("created_at"),
                    ),
                )
            return dict(activity)

        return self._tx_runner.run_in_tx(fn=_op)

    def latest_activity(self, *, document_id: str, action: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(ACTIVITY_COLUMNS)}
            FROM {self._activity_table}
            WHERE document_id = %s AND action = %s
            ORDER BY created_at DESC
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (document_id, action))
                row = cur.fetchone()
            if row is None:
                return None
            item = dict(zip(ACTIVITY_COLUMNS, row))
            if isinstance(item["metadata"], str):
                item["metadata"] = json.loads(item["metadata"])
            return item

        return self._tx_runner.run_in_tx(fn=_op)
