"""
Batch runner: one bounded, idempotent step of an audit job.

Each ``run()`` call claims up to ``max_files`` pending files (FIFO), drives
each one through retrieval, evidence extraction and fact extraction under a
per-file deadline, records the outcome, updates progress, and fires report
synthesis once every file is terminal. All state lives in the store; the
runner can be invoked from any process, any number of times.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from audit_runner.content_retriever import ContentRetriever
from audit_runner.document_parser import extract_evidence, has_usable_evidence
from audit_runner.errors import ApiError, job_not_found
from audit_runner.fact_extractor import FactExtractor, skipped_facts
from audit_runner.report_synthesizer import ReportSynthesizer, no_documents_result
from audit_runner.retry import RetryPolicy
from audit_runner.settings import RunnerSettings
from audit_runner.store import ACTIVE_JOB_STATUSES, TERMINAL_FILE_STATUSES, TERMINAL_JOB_STATUSES
from audit_runner.timeouts import Deadline, DeadlineExceeded, run_with_deadline

logger = logging.getLogger(__name__)

NO_TEXT_SUMMARY = "No extractable text"
MAX_ERROR_CHARS = 1000
STEP_NAME_CHARS = 50


@dataclass
class FileOutcome:
    status: str
    facts_json: dict[str, Any]
    evidence_json: dict[str, Any] = field(default_factory=lambda: {"snippets": []})
    error: str | None = None


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _truncate_error(message: str) -> str:
    return message[:MAX_ERROR_CHARS]


def compute_progress(processed: int, total: int) -> int:
    """Linear in processed/total, capped at 90 until synthesis completes."""
    if total <= 0:
        return 0
    return min(90, int(math.floor(processed / total * 90)))


def estimate_remaining_seconds(
    *,
    processed: int,
    total: int,
    elapsed_s: float,
    max_eta_s: int,
) -> int | None:
    remaining = max(0, total - processed)
    if remaining == 0:
        return 0
    if processed <= 0 or elapsed_s <= 0:
        return None
    files_per_second = processed / elapsed_s
    if files_per_second <= 0.001:
        return max_eta_s
    return min(max_eta_s, int(round(remaining / files_per_second)))


class BatchRunner:
    def __init__(
        self,
        *,
        store: Any,
        settings: RunnerSettings,
        retriever: ContentRetriever | None = None,
        fact_extractor: FactExtractor | None = None,
        synthesizer: ReportSynthesizer | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        retry_policy = RetryPolicy.from_settings(settings)
        self.store = store
        self.settings = settings
        self.retriever = retriever or ContentRetriever(object_storage=store.object_storage, store=store)
        self.fact_extractor = fact_extractor or FactExtractor(settings=settings, retry_policy=retry_policy)
        self.synthesizer = synthesizer or ReportSynthesizer(settings=settings, retry_policy=retry_policy)
        self.retry_policy = retry_policy
        self._now = now or (lambda: datetime.now(UTC))

    def _now_iso(self) -> str:
        return self._now().isoformat()

    def run(self, job_id: str, *, max_files: int | None = None) -> dict[str, Any]:
        job = self.store.get_job(job_id)
        if job is None:
            raise job_not_found(job_id)
        if job["status"] in TERMINAL_JOB_STATUSES:
            return job

        changes: dict[str, Any] = {"status": "running"}
        if not job.get("started_at"):
            changes["started_at"] = self._now_iso()
        job = self.store.update_job(job_id, changes, only_if_status=ACTIVE_JOB_STATUSES)
        if job is None:
            return self._current(job_id)

        if int(job.get("total_files") or 0) == 0:
            return self._complete(job_id, no_documents_result())

        self._reclaim_stale_files(job_id)
        batch_size = self.settings.clamp_batch_size(max_files)
        claimed = self.store.claim_pending_files(job_id, limit=batch_size)
        logger.info("job %s: claimed %d files (batch size %d)", job_id, len(claimed), batch_size)

        for position, job_file in enumerate(claimed):
            if not self._announce_file(job, job_file):
                self._release_unprocessed(claimed[position:])
                logger.info("job %s left the running state; stopping batch", job_id)
                return self._current(job_id)
            outcome = self._run_file(job_file)
            self._record_outcome(job_file, outcome)
            job = self._update_progress(job) or job

        return self._maybe_finalize(job_id)

    # -- per-file pipeline -------------------------------------------------

    def _run_file(self, job_file: dict[str, Any]) -> FileOutcome:
        file_name = str(job_file.get("file_name") or job_file.get("file_path"))
        try:
            return run_with_deadline(
                lambda deadline: self._process_file(job_file, deadline),
                timeout_s=self.settings.per_file_timeout_s,
                name=f"processing of {file_name}",
            )
        except DeadlineExceeded:
            logger.warning("file %s skipped: processing timed out", file_name)
            return FileOutcome(
                status="skipped",
                facts_json=skipped_facts(
                    f"Skipped: processing timed out ({self.settings.per_file_timeout_s:g}s)"
                ),
            )
        except Exception as exc:
            message = self._describe_failure(exc)
            logger.warning("file %s failed: %s", file_name, message)
            return FileOutcome(status="failed", facts_json=skipped_facts(message), error=message)

    def _process_file(self, job_file: dict[str, Any], deadline: Deadline) -> FileOutcome:
        """Side-effect free: returns the outcome, the caller commits it."""
        retrieved = self.retriever.fetch(job_file, deadline=deadline)
        snippets = extract_evidence(
            retrieved.content,
            file_name=retrieved.file_name,
            mime_type=retrieved.mime_type,
            ocr=lambda image, mime: self.fact_extractor.ocr(image, mime, deadline=deadline),
            max_chars=self.settings.snippet_max_chars,
        )
        if not has_usable_evidence(snippets):
            return FileOutcome(status="skipped", facts_json=skipped_facts(NO_TEXT_SUMMARY))
        deadline.check()
        facts = self.fact_extractor.extract(
            file_name=retrieved.file_name,
            file_path=str(job_file.get("file_path") or ""),
            mime_type=retrieved.mime_type,
            snippets=snippets,
            deadline=deadline,
        )
        return FileOutcome(
            status="done",
            facts_json=facts,
            evidence_json={"snippets": [snippet.as_dict() for snippet in snippets]},
        )

    def _describe_failure(self, exc: Exception) -> str:
        if isinstance(exc, ApiError):
            if exc.code == "LLM_RATE_LIMITED":
                return f"LLM rate limit exceeded after {self.retry_policy.max_attempts} attempts"
            if exc.retryable:
                return _truncate_error(f"{exc.message} (after {self.retry_policy.max_attempts} attempts)")
            return _truncate_error(exc.message)
        return _truncate_error(f"{type(exc).__name__}: {exc}")

    def _record_outcome(self, job_file: dict[str, Any], outcome: FileOutcome) -> None:
        self.store.update_job_file(
            job_file["id"],
            {
                "status": outcome.status,
                "facts_json": outcome.facts_json,
                "evidence_json": outcome.evidence_json,
                "error": outcome.error,
                "completed_at": self._now_iso(),
            },
            only_if_status={"processing"},
        )

    def _reclaim_stale_files(self, job_id: str) -> None:
        stale = self.store.list_stale_files(job_id, older_than_s=self.settings.stale_processing_after_s)
        for job_file in stale:
            attempts = int(job_file.get("attempts") or 0)
            if attempts >= self.settings.max_file_attempts:
                logger.warning("job %s: abandoning %s after %d attempts", job_id, job_file["file_name"], attempts)
                self.store.update_job_file(
                    job_file["id"],
                    {
                        "status": "failed",
                        "facts_json": skipped_facts("Processing abandoned by an interrupted run"),
                        "evidence_json": {"snippets": []},
                        "error": f"Processing abandoned by an interrupted run after {attempts} attempts",
                        "completed_at": self._now_iso(),
                    },
                    only_if_status={"processing"},
                )
            else:
                logger.info("job %s: requeueing stale file %s", job_id, job_file["file_name"])
                self.store.update_job_file(
                    job_file["id"],
                    {"status": "pending", "started_at": None},
                    only_if_status={"processing"},
                )

    def _release_unprocessed(self, files: list[dict[str, Any]]) -> None:
        for job_file in files:
            self.store.update_job_file(
                job_file["id"],
                {"status": "pending", "started_at": None, "attempts": max(0, int(job_file.get("attempts") or 1) - 1)},
                only_if_status={"processing"},
            )

    # -- job progress -------------------------------------------------------

    def _announce_file(self, job: dict[str, Any], job_file: dict[str, Any]) -> bool:
        processed = self.store.count_job_files(job["id"], statuses=TERMINAL_FILE_STATUSES)
        total = int(job.get("total_files") or 0)
        name = str(job_file.get("file_name") or "")[:STEP_NAME_CHARS]
        updated = self.store.update_job(
            job["id"],
            {"current_step": f"Processing: {name}... ({processed + 1}/{total})"},
            only_if_status={"running"},
        )
        return updated is not None

    def _update_progress(self, job: dict[str, Any]) -> dict[str, Any] | None:
        job_id = job["id"]
        total = int(job.get("total_files") or 0)
        processed = min(total, self.store.count_job_files(job_id, statuses=TERMINAL_FILE_STATUSES))
        started_at = _parse_iso(job.get("started_at"))
        elapsed_s = (self._now() - started_at).total_seconds() if started_at else 0.0
        progress = max(int(job.get("progress") or 0), compute_progress(processed, total))
        return self.store.update_job(
            job_id,
            {
                "processed_files": processed,
                "progress": progress,
                "estimated_remaining_seconds": estimate_remaining_seconds(
                    processed=processed,
                    total=total,
                    elapsed_s=elapsed_s,
                    max_eta_s=self.settings.max_eta_seconds,
                ),
                "current_step": f"Processing documents ({processed}/{total})",
            },
            only_if_status={"running"},
        )

    # -- finalization --------------------------------------------------------

    def _maybe_finalize(self, job_id: str) -> dict[str, Any]:
        job = self._current(job_id)
        if job["status"] != "running":
            return job
        total = int(job.get("total_files") or 0)
        processed = self.store.count_job_files(job_id, statuses=TERMINAL_FILE_STATUSES)
        if processed < total:
            return job

        started = self.store.update_job(
            job_id,
            {"processed_files": processed, "current_step": "Synthesizing report", "estimated_remaining_seconds": 0},
            only_if_status={"running"},
        )
        if started is None:
            return self._current(job_id)

        files = self.store.list_job_files(job_id)
        collection = self.store.get_collection(job["collection_id"]) or {}
        collection_name = str(collection.get("name") or "").strip() or f"Dataroom {job['collection_id'][:8]}"
        try:
            result = run_with_deadline(
                lambda deadline: self.synthesizer.synthesize(
                    job=started,
                    files=files,
                    collection_name=collection_name,
                    deadline=deadline,
                ),
                timeout_s=self.settings.synthesis_timeout_s,
                name=f"report synthesis for job {job_id}",
            )
        except Exception as exc:
            message = exc.message if isinstance(exc, ApiError) else str(exc) or type(exc).__name__
            logger.error("job %s: report synthesis failed: %s", job_id, message)
            failed = self.store.update_job(
                job_id,
                {
                    "status": "failed",
                    "current_step": "Report synthesis failed",
                    "error": f"Report synthesis error: {message[:500]}",
                    "completed_at": self._now_iso(),
                },
                only_if_status={"running"},
            )
            return failed or self._current(job_id)
        return self._complete(job_id, result)

    def _complete(self, job_id: str, result: Any) -> dict[str, Any]:
        completed = self.store.update_job(
            job_id,
            {
                "status": "completed",
                "progress": 100,
                "estimated_remaining_seconds": 0,
                "current_step": "Completed",
                "error": None,
                "report_markdown": result.report_markdown,
                "report_json": result.report_json,
                "completed_at": self._now_iso(),
            },
            only_if_status=ACTIVE_JOB_STATUSES,
        )
        if completed is not None:
            logger.info("job %s completed", job_id)
        return completed or self._current(job_id)

    def _current(self, job_id: str) -> dict[str, Any]:
        job = self.store.get_job(job_id)
        if job is None:
            raise job_not_found(job_id)
        return job
