from __future__ import annotations

import json
import os
import sqlite3
import threading
import uuid
from collections.abc import Collection, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from audit_runner.db.postgres import ConnectionTxRunner, PostgresTxRunner, apply_schema
from audit_runner.object_storage import create_object_storage_from_env
from audit_runner.repositories.audit_job_files import InMemoryAuditJobFilesRepository
from audit_runner.repositories.audit_job_files import PostgresAuditJobFilesRepository
from audit_runner.repositories.audit_jobs import InMemoryAuditJobsRepository
from audit_runner.repositories.audit_jobs import PostgresAuditJobsRepository
from audit_runner.repositories.documents import InMemoryDocumentsRepository
from audit_runner.repositories.documents import PostgresDocumentsRepository

JOB_STATUSES = ("queued", "running", "completed", "failed", "cancelled")
ACTIVE_JOB_STATUSES = frozenset({"queued", "running"})
TERMINAL_JOB_STATUSES = frozenset({"completed", "failed", "cancelled"})
FILE_STATUSES = ("pending", "processing", "done", "failed", "skipped")
TERMINAL_FILE_STATUSES = frozenset({"done", "failed", "skipped"})


class InMemoryStore:
    """Durable-record facade used by the runner; every call reads and writes through repositories."""

    def __init__(self) -> None:
        self.object_storage = create_object_storage_from_env(os.environ)
        self.audit_jobs: dict[str, dict[str, Any]] = {}
        self.audit_job_files: dict[str, dict[str, Any]] = {}
        self.collections: dict[str, dict[str, Any]] = {}
        self.documents: dict[str, dict[str, Any]] = {}
        self.activity_logs: list[dict[str, Any]] = []
        self._lock = threading.RLock()
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.jobs_repository = InMemoryAuditJobsRepository(self.audit_jobs)
        self.job_files_repository = InMemoryAuditJobFilesRepository(self.audit_job_files)
        self.documents_repository = InMemoryDocumentsRepository(
            self.collections,
            self.documents,
            self.activity_logs,
        )

    def reset(self) -> None:
        self.object_storage = create_object_storage_from_env(os.environ)
        reset_fn = getattr(self.object_storage, "reset", None)
        if callable(reset_fn):
            reset_fn()
        with self._lock:
            self.audit_jobs.clear()
            self.audit_job_files.clear()
            self.collections.clear()
            self.documents.clear()
            self.activity_logs.clear()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:16]}"

    @contextmanager
    def _tx(self, *, write: bool) -> Iterator[None]:
        with self._lock:
            yield

    # -- audit jobs -------------------------------------------------------

    def create_job_with_files(self, *, job: dict[str, Any], files: list[dict[str, Any]]) -> dict[str, Any]:
        with self._tx(write=True):
            created = self.jobs_repository.create(job=job)
            self.job_files_repository.create_many(files=files)
            return created

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        with self._tx(write=False):
            return self.jobs_repository.get(job_id=job_id)

    def update_job(
        self,
        job_id: str,
        changes: dict[str, Any],
        *,
        only_if_status: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        payload = dict(changes)
        payload["updated_at"] = self._utcnow_iso()
        with self._tx(write=True):
            return self.jobs_repository.update(job_id=job_id, changes=payload, only_if_status=only_if_status)

    # -- audit job files --------------------------------------------------

    def list_job_files(self, job_id: str, *, statuses: Collection[str] | None = None) -> list[dict[str, Any]]:
        with self._tx(write=False):
            return self.job_files_repository.list_for_job(job_id=job_id, statuses=statuses)

    def count_job_files(self, job_id: str, *, statuses: Collection[str] | None = None) -> int:
        with self._tx(write=False):
            return self.job_files_repository.count_for_job(job_id=job_id, statuses=statuses)

    def claim_pending_files(self, job_id: str, *, limit: int) -> list[dict[str, Any]]:
        with self._tx(write=True):
            return self.job_files_repository.claim_pending(
                job_id=job_id,
                limit=limit,
                started_at=self._utcnow_iso(),
            )

    def list_stale_files(self, job_id: str, *, older_than_s: float) -> list[dict[str, Any]]:
        started_before = (datetime.now(UTC) - timedelta(seconds=older_than_s)).isoformat()
        with self._tx(write=False):
            return self.job_files_repository.list_stale_processing(job_id=job_id, started_before=started_before)

    def update_job_file(
        self,
        file_id: str,
        changes: dict[str, Any],
        *,
        only_if_status: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        with self._tx(write=True):
            return self.job_files_repository.update(
                file_id=file_id,
                changes=dict(changes),
                only_if_status=only_if_status,
            )

    # -- source collections -----------------------------------------------

    def upsert_collection(self, *, collection_id: str, name: str = "") -> dict[str, Any]:
        with self._tx(write=True):
            return self.documents_repository.upsert_collection(
                collection={"id": collection_id, "name": name, "created_at": self._utcnow_iso()}
            )

    def get_collection(self, collection_id: str) -> dict[str, Any] | None:
        with self._tx(write=False):
            return self.documents_repository.get_collection(collection_id=collection_id)

    def add_document(
        self,
        *,
        collection_id: str,
        name: str,
        file_path: str,
        file_type: str | None = None,
        file_size: int | None = None,
        folder_id: str | None = None,
        document_id: str | None = None,
    ) -> dict[str, Any]:
        document = {
            "id": document_id or self._new_id("doc"),
            "collection_id": collection_id,
            "folder_id": folder_id,
            "name": name,
            "file_path": file_path,
            "file_type": file_type,
            "file_size": file_size,
            "created_at": self._utcnow_iso(),
        }
        with self._tx(write=True):
            return self.documents_repository.create_document(document=document)

    def list_collection_documents(self, collection_id: str) -> list[dict[str, Any]]:
        with self._tx(write=False):
            return self.documents_repository.list_documents(collection_id=collection_id)

    def record_activity(
        self,
        *,
        document_id: str | None,
        action: str,
        metadata: dict[str, Any] | None = None,
        collection_id: str | None = None,
    ) -> dict[str, Any]:
        activity = {
            "id": self._new_id("act"),
            "document_id": document_id,
            "collection_id": collection_id,
            "action": action,
            "metadata": dict(metadata or {}),
            "created_at": self._utcnow_iso(),
        }
        with self._tx(write=True):
            return self.documents_repository.append_activity(activity=activity)

    def latest_activity(self, *, document_id: str, action: str) -> dict[str, Any] | None:
        with self._tx(write=False):
            return self.documents_repository.latest_activity(document_id=document_id, action=action)


class SqliteBackedStore(InMemoryStore):
    """Persistent store backend that snapshots state to SQLite.

    The snapshot is reloaded at the start of every call and written back in
    the same IMMEDIATE transaction, so separate processes see each other's
    writes and claims stay atomic.
    """

    def __init__(self, db_path: str) -> None:
        super().__init__()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), isolation_level=None, timeout=30.0)

    def _initialize_database(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  payload TEXT NOT NULL
                )
                """
            )
        finally:
            conn.close()

    def _state_snapshot(self) -> dict[str, Any]:
        return {
            "schema_version": 1,
            "audit_jobs": self.audit_jobs,
            "audit_job_files": self.audit_job_files,
            "collections": self.collections,
            "documents": self.documents,
            "activity_logs": self.activity_logs,
        }

    def _restore_state(self, payload: Mapping[str, Any]) -> None:
        for name in ("audit_jobs", "audit_job_files", "collections", "documents"):
            target = getattr(self, name)
            target.clear()
            value = payload.get(name)
            if isinstance(value, dict):
                target.update(value)
        self.activity_logs.clear()
        logs = payload.get("activity_logs")
        if isinstance(logs, list):
            self.activity_logs.extend(x for x in logs if isinstance(x, dict))

    def _load_state(self, conn: sqlite3.Connection) -> None:
        row = conn.execute("SELECT payload FROM store_state WHERE id = 1").fetchone()
        if row is None or not isinstance(row[0], str):
            self._restore_state({})
            return
        try:
            payload = json.loads(row[0])
        except json.JSONDecodeError:
            payload = {}
        self._restore_state(payload if isinstance(payload, dict) else {})

    def _save_state(self, conn: sqlite3.Connection) -> None:
        blob = json.dumps(self._state_snapshot(), ensure_ascii=True, sort_keys=True)
        conn.execute(
            """
            INSERT INTO store_state(id, payload)
            VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
            """,
            (blob,),
        )

    @contextmanager
    def _tx(self, *, write: bool) -> Iterator[None]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                self._load_state(conn)
                yield
                if write:
                    self._save_state(conn)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    def reset(self) -> None:
        super().reset()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                self._save_state(conn)
                conn.execute("COMMIT")
            finally:
                conn.close()


class PostgresBackedStore(InMemoryStore):
    """Store backend with one PostgreSQL table per record type."""

    def __init__(self, *, dsn: str) -> None:
        super().__init__()
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._tx_runner = PostgresTxRunner(self._dsn)
        apply_schema(self._tx_runner)
        self.jobs_repository = PostgresAuditJobsRepository(tx_runner=self._tx_runner)
        self.job_files_repository = PostgresAuditJobFilesRepository(tx_runner=self._tx_runner)
        self.documents_repository = PostgresDocumentsRepository(tx_runner=self._tx_runner)

    def create_job_with_files(self, *, job: dict[str, Any], files: list[dict[str, Any]]) -> dict[str, Any]:
        def _op(conn: Any) -> dict[str, Any]:
            bound = ConnectionTxRunner(conn)
            created = PostgresAuditJobsRepository(tx_runner=bound).create(job=job)
            PostgresAuditJobFilesRepository(tx_runner=bound).create_many(files=files)
            return created

        return self._tx_runner.run_in_tx(fn=_op)

    def reset(self) -> None:
        super().reset()

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute("TRUNCATE audit_job_files, audit_jobs, activity_logs, documents, collections")

        self._tx_runner.run_in_tx(fn=_op)


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("AUDIT_STORE_BACKEND", "memory").strip().lower()
    if backend == "sqlite":
        db_path = env.get("AUDIT_STORE_SQLITE_PATH", ".local/audit-store.sqlite3")
        return SqliteBackedStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when AUDIT_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn)
    return InMemoryStore()


store = create_store_from_env()
