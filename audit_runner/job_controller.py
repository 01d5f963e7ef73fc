from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from audit_runner.batch_runner import BatchRunner
from audit_runner.errors import ApiError, job_not_found, validation_error
from audit_runner.report_synthesizer import no_documents_result
from audit_runner.settings import RunnerSettings
from audit_runner.store import ACTIVE_JOB_STATUSES

logger = logging.getLogger(__name__)

ACTIONS = ("start", "run", "status", "cancel")


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def public_job(job: Mapping[str, Any]) -> dict[str, Any]:
    """Wire view of a job row; keys mirror the stored columns."""
    return {
        "id": job["id"],
        "collection_id": job["collection_id"],
        "created_by": job.get("created_by"),
        "status": job["status"],
        "total_files": int(job.get("total_files") or 0),
        "processed_files": int(job.get("processed_files") or 0),
        "progress": int(job.get("progress") or 0),
        "estimated_remaining_seconds": job.get("estimated_remaining_seconds"),
        "current_step": job.get("current_step"),
        "error": job.get("error"),
        "report_markdown": job.get("report_markdown"),
        "report_json": job.get("report_json"),
        "created_at": job.get("created_at"),
        "started_at": job.get("started_at"),
        "completed_at": job.get("completed_at"),
        "updated_at": job.get("updated_at"),
    }


def public_job_file(job_file: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": job_file["id"],
        "job_id": job_file["job_id"],
        "document_id": job_file.get("document_id"),
        "file_name": job_file.get("file_name"),
        "file_path": job_file.get("file_path"),
        "file_type": job_file.get("file_type"),
        "file_size": job_file.get("file_size"),
        "position": job_file.get("position"),
        "status": job_file["status"],
        "attempts": int(job_file.get("attempts") or 0),
        "error": job_file.get("error"),
        "facts_json": job_file.get("facts_json"),
        "evidence_json": job_file.get("evidence_json"),
        "started_at": job_file.get("started_at"),
        "completed_at": job_file.get("completed_at"),
    }


class AuditJobController:
    """Entry points for an audit job: start, run, status, cancel."""

    def __init__(self, *, store: Any, settings: RunnerSettings, runner: BatchRunner | None = None) -> None:
        self.store = store
        self.settings = settings
        self.runner = runner or BatchRunner(store=store, settings=settings)

    def start(self, collection_id: str | None, *, created_by: str | None = None) -> dict[str, Any]:
        collection_id = (collection_id or "").strip()
        if not collection_id:
            raise validation_error("collectionId is required")

        documents = self.store.list_collection_documents(collection_id)
        now = _utcnow_iso()
        job_id = _new_id("audit")
        files = [
            {
                "id": _new_id("ajf"),
                "job_id": job_id,
                "document_id": document["id"],
                "collection_id": collection_id,
                "folder_id": document.get("folder_id"),
                "file_name": document.get("name") or document["file_path"].rsplit("/", 1)[-1],
                "file_path": document["file_path"],
                "file_type": document.get("file_type"),
                "file_size": document.get("file_size"),
                "status": "pending",
                "attempts": 0,
                "position": position,
                "error": None,
                "facts_json": None,
                "evidence_json": None,
                "created_at": now,
                "started_at": None,
                "completed_at": None,
            }
            for position, document in enumerate(documents)
        ]
        job: dict[str, Any] = {
            "id": job_id,
            "collection_id": collection_id,
            "created_by": created_by,
            "status": "queued",
            "total_files": len(files),
            "processed_files": 0,
            "progress": 0,
            "estimated_remaining_seconds": None,
            "current_step": "Ready to run",
            "error": None,
            "report_markdown": None,
            "report_json": None,
            "created_at": now,
            "started_at": None,
            "completed_at": None,
            "updated_at": now,
        }
        if not files:
            empty = no_documents_result()
            job.update(
                {
                    "status": "completed",
                    "progress": 100,
                    "estimated_remaining_seconds": 0,
                    "current_step": "Completed",
                    "report_markdown": empty.report_markdown,
                    "report_json": empty.report_json,
                    "started_at": now,
                    "completed_at": now,
                }
            )
        self.store.create_job_with_files(job=job, files=files)
        logger.info("audit job %s created for collection %s with %d files", job_id, collection_id, len(files))
        return {"jobId": job_id, "totalFiles": len(files)}

    def run(self, job_id: str | None, *, max_files: int | None = None) -> dict[str, Any]:
        job_id = self._require_job_id(job_id)
        job = self.runner.run(job_id, max_files=max_files)
        return public_job(job)

    def status(self, job_id: str | None) -> dict[str, Any]:
        job_id = self._require_job_id(job_id)
        job = self.store.get_job(job_id)
        if job is None:
            raise job_not_found(job_id)
        return public_job(job)

    def cancel(self, job_id: str | None) -> dict[str, Any]:
        job_id = self._require_job_id(job_id)
        job = self.store.get_job(job_id)
        if job is None:
            raise job_not_found(job_id)
        if job["status"] not in ACTIVE_JOB_STATUSES:
            raise self._cancel_conflict(job["status"])
        cancelled = self.store.update_job(
            job_id,
            {
                "status": "cancelled",
                "current_step": "Cancelled",
                "error": "Cancelled by user",
                "estimated_remaining_seconds": None,
                "completed_at": _utcnow_iso(),
            },
            only_if_status=ACTIVE_JOB_STATUSES,
        )
        if cancelled is None:
            # lost a race with the runner finishing the job
            current = self.store.get_job(job_id) or job
            raise self._cancel_conflict(current["status"])
        logger.info("audit job %s cancelled", job_id)
        return public_job(cancelled)

    def list_files(self, job_id: str | None) -> list[dict[str, Any]]:
        job_id = self._require_job_id(job_id)
        if self.store.get_job(job_id) is None:
            raise job_not_found(job_id)
        return [public_job_file(row) for row in self.store.list_job_files(job_id)]

    def handle(self, payload: Mapping[str, Any], *, created_by: str | None = None) -> dict[str, Any]:
        action = payload.get("action")
        if action == "start":
            return self.start(payload.get("collectionId"), created_by=payload.get("createdBy") or created_by)
        if action == "run":
            return self.run(payload.get("jobId"), max_files=payload.get("maxFiles"))
        if action == "status":
            return self.status(payload.get("jobId"))
        if action == "cancel":
            return self.cancel(payload.get("jobId"))
        raise validation_error(f"Unknown action: {action}")

    @staticmethod
    def _require_job_id(job_id: str | None) -> str:
        job_id = (job_id or "").strip()
        if not job_id:
            raise validation_error("jobId is required")
        return job_id

    @staticmethod
    def _cancel_conflict(status: str) -> ApiError:
        return ApiError(
            code="JOB_CANCEL_CONFLICT",
            message=f"Cannot cancel job with status: {status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


def create_controller_from_env(environ: Mapping[str, str] | None = None, *, store: Any = None) -> AuditJobController:
    if store is None:
        from audit_runner.store import store as default_store

        store = default_store
    settings = RunnerSettings.from_env(os.environ if environ is None else environ)
    return AuditJobController(store=store, settings=settings)
