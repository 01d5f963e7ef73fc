from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from audit_runner.errors import ApiError
from audit_runner.job_controller import AuditJobController, create_controller_from_env
from audit_runner.settings import RunnerSettings
from audit_runner.store import TERMINAL_JOB_STATUSES

logger = logging.getLogger(__name__)


@dataclass
class PollerRunStats:
    invocations: int = 0
    final_status: str = ""
    processed_files: int = 0
    total_files: int = 0
    progress: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "invocations": self.invocations,
            "final_status": self.final_status,
            "processed_files": self.processed_files,
            "total_files": self.total_files,
            "progress": self.progress,
        }


class AuditPoller:
    """Drives a job to a terminal state by calling ``run`` on a fixed interval."""

    def __init__(
        self,
        *,
        controller: AuditJobController,
        poll_interval_ms: int = 3000,
        max_files: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.controller = controller
        self.poll_interval_ms = max(0, int(poll_interval_ms))
        self.max_files = max_files
        self._sleep = sleep

    def run_once(self, job_id: str) -> dict[str, Any]:
        return self.controller.run(job_id, max_files=self.max_files)

    def run_until_terminal(self, job_id: str, *, max_invocations: int | None = None) -> dict[str, Any]:
        stats = PollerRunStats()
        while True:
            job = self.run_once(job_id)
            stats.invocations += 1
            stats.final_status = str(job["status"])
            stats.processed_files = int(job.get("processed_files") or 0)
            stats.total_files = int(job.get("total_files") or 0)
            stats.progress = int(job.get("progress") or 0)
            logger.info(
                "job %s: %s %d%% (%d/%d) %s",
                job_id,
                stats.final_status,
                stats.progress,
                stats.processed_files,
                stats.total_files,
                job.get("current_step") or "",
            )
            if stats.final_status in TERMINAL_JOB_STATUSES:
                break
            if max_invocations is not None and stats.invocations >= max(1, max_invocations):
                break
            self._sleep(self.poll_interval_ms / 1000.0)
        return stats.as_dict()


def resolve_resumable_job_id(controller: AuditJobController, last_job_id: str | None) -> str | None:
    """Return ``last_job_id`` when it still names a job worth resuming."""
    if not last_job_id:
        return None
    try:
        job = controller.status(last_job_id)
    except ApiError as exc:
        if exc.code == "JOB_NOT_FOUND":
            return None
        raise
    if job["status"] == "cancelled":
        return None
    return last_job_id


def create_poller_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    controller: AuditJobController | None = None,
    max_files: int | None = None,
) -> AuditPoller:
    env = os.environ if environ is None else environ
    settings = RunnerSettings.from_env(env)
    return AuditPoller(
        controller=controller or create_controller_from_env(env),
        poll_interval_ms=settings.poll_interval_ms,
        max_files=max_files,
    )
