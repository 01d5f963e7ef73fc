from __future__ import annotations

import pytest

from audit_runner.job_controller import AuditJobController
from audit_runner.settings import RunnerSettings
from audit_runner.store import InMemoryStore, SqliteBackedStore, create_store_from_env


def test_create_store_from_env_selects_backend(tmp_path):
    assert type(create_store_from_env({})) is InMemoryStore
    sqlite_store = create_store_from_env(
        {"AUDIT_STORE_BACKEND": "sqlite", "AUDIT_STORE_SQLITE_PATH": str(tmp_path / "s.sqlite3")}
    )
    assert isinstance(sqlite_store, SqliteBackedStore)
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_store_from_env({"AUDIT_STORE_BACKEND": "postgres"})


def test_sqlite_store_persists_jobs_across_instances(tmp_path):
    db_path = str(tmp_path / "audit.sqlite3")
    settings = RunnerSettings(per_file_timeout_s=5)
    first = SqliteBackedStore(db_path)
    first.upsert_collection(collection_id="c1", name="Acme")
    first.object_storage.upload("c1/a.txt", b"Revenue: 10\n")
    first.add_document(collection_id="c1", name="a.txt", file_path="c1/a.txt", file_type="text/plain")
    first.object_storage.upload("c1/b.txt", b"Revenue: 12\n")
    first.add_document(collection_id="c1", name="b.txt", file_path="c1/b.txt", file_type="text/plain")
    job_id = AuditJobController(store=first, settings=settings).start("c1")["jobId"]
    AuditJobController(store=first, settings=settings).run(job_id, max_files=1)

    # a fresh process picks up where the previous invocation stopped
    second = SqliteBackedStore(db_path)
    job = second.get_job(job_id)
    assert job["status"] == "running"
    assert job["processed_files"] == 1
    assert [row["status"] for row in second.list_job_files(job_id)] == ["done", "pending"]

    finished = AuditJobController(store=second, settings=settings).run(job_id, max_files=1)
    assert finished["status"] == "completed"
    assert SqliteBackedStore(db_path).get_job(job_id)["status"] == "completed"


def test_sqlite_claims_are_not_shared_between_instances(tmp_path):
    db_path = str(tmp_path / "audit.sqlite3")
    first = SqliteBackedStore(db_path)
    second = SqliteBackedStore(db_path)
    first.create_job_with_files(
        job={"id": "audit_1", "collection_id": "c1", "status": "running", "total_files": 2},
        files=[
            {"id": f"ajf_{idx}", "job_id": "audit_1", "position": idx, "status": "pending", "created_at": "t"}
            for idx in range(2)
        ],
    )

    claimed_first = first.claim_pending_files("audit_1", limit=1)
    claimed_second = second.claim_pending_files("audit_1", limit=5)

    assert [row["id"] for row in claimed_first] == ["ajf_0"]
    assert [row["id"] for row in claimed_second] == ["ajf_1"]


def test_guarded_update_refuses_terminal_job():
    store = InMemoryStore()
    store.create_job_with_files(job={"id": "audit_1", "collection_id": "c1", "status": "cancelled"}, files=[])

    assert store.update_job("audit_1", {"progress": 50}, only_if_status={"queued", "running"}) is None
    assert store.get_job("audit_1").get("progress") is None


def test_unknown_columns_are_rejected():
    store = InMemoryStore()
    store.create_job_with_files(job={"id": "audit_1", "collection_id": "c1", "status": "queued"}, files=[])
    with pytest.raises(ValueError, match="unknown audit job columns"):
        store.update_job("audit_1", {"color": "red"})


def test_latest_activity_returns_most_recent():
    store = InMemoryStore()
    store.record_activity(document_id="doc_1", action="upload", metadata={"chunkPaths": ["old"]})
    store.record_activity(document_id="doc_1", action="view")
    store.record_activity(document_id="doc_1", action="upload", metadata={"chunkPaths": ["new"]})

    assert store.latest_activity(document_id="doc_1", action="upload")["metadata"] == {"chunkPaths": ["new"]}
    assert store.latest_activity(document_id="doc_2", action="upload") is None
