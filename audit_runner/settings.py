from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class RunnerSettings:
    """Tunables of the audit pipeline, read from AUDIT_* environment variables."""

    per_file_timeout_s: float = 90.0
    synthesis_timeout_s: float = 90.0
    max_batch_files: int = 5
    default_batch_files: int = 5
    snippet_max_chars: int = 25000
    secondary_snippet_max_chars: int = 4000
    max_eta_seconds: int = 14400
    llm_max_retries: int = 2
    llm_backoff_base_s: float = 2.0
    llm_backoff_max_s: float = 30.0
    stale_grace_s: float = 30.0
    max_file_attempts: int = 2
    file_max_tokens: int = 1400
    ocr_max_tokens: int = 1200
    synthesis_max_tokens: int = 1800
    secondary_analysis_url: str = ""
    secondary_analysis_timeout_s: float = 60.0
    poll_interval_ms: int = 3000

    @property
    def stale_processing_after_s(self) -> float:
        # A live invocation cannot hold a file longer than a full batch of timeouts.
        return self.per_file_timeout_s * self.max_batch_files + self.stale_grace_s

    def clamp_batch_size(self, max_files: int | None) -> int:
        if max_files is None:
            max_files = self.default_batch_files
        return max(1, min(self.max_batch_files, int(max_files)))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RunnerSettings":
        env = os.environ if environ is None else environ
        max_batch_files = _env_int(env, "AUDIT_MAX_BATCH_FILES", default=5, minimum=1)
        return cls(
            per_file_timeout_s=_env_float(env, "AUDIT_PER_FILE_TIMEOUT_S", default=90.0, minimum=0.01),
            synthesis_timeout_s=_env_float(env, "AUDIT_SYNTHESIS_TIMEOUT_S", default=90.0, minimum=0.01),
            max_batch_files=max_batch_files,
            default_batch_files=min(
                max_batch_files,
                _env_int(env, "AUDIT_DEFAULT_BATCH_FILES", default=5, minimum=1),
            ),
            snippet_max_chars=_env_int(env, "AUDIT_SNIPPET_MAX_CHARS", default=25000, minimum=100),
            secondary_snippet_max_chars=_env_int(
                env,
                "AUDIT_SECONDARY_SNIPPET_MAX_CHARS",
                default=4000,
                minimum=100,
            ),
            max_eta_seconds=_env_int(env, "AUDIT_MAX_ETA_SECONDS", default=14400, minimum=1),
            llm_max_retries=_env_int(env, "AUDIT_LLM_MAX_RETRIES", default=2, minimum=0),
            llm_backoff_base_s=_env_float(env, "AUDIT_LLM_BACKOFF_BASE_S", default=2.0),
            llm_backoff_max_s=_env_float(env, "AUDIT_LLM_BACKOFF_MAX_S", default=30.0),
            stale_grace_s=_env_float(env, "AUDIT_STALE_GRACE_S", default=30.0),
            max_file_attempts=_env_int(env, "AUDIT_MAX_FILE_ATTEMPTS", default=2, minimum=1),
            file_max_tokens=_env_int(env, "AUDIT_FILE_MAX_TOKENS", default=1400, minimum=64),
            ocr_max_tokens=_env_int(env, "AUDIT_OCR_MAX_TOKENS", default=1200, minimum=64),
            synthesis_max_tokens=_env_int(env, "AUDIT_SYNTHESIS_MAX_TOKENS", default=1800, minimum=64),
            secondary_analysis_url=str(env.get("AUDIT_SECONDARY_ANALYSIS_URL", "")).strip().rstrip("/"),
            secondary_analysis_timeout_s=_env_float(
                env,
                "AUDIT_SECONDARY_ANALYSIS_TIMEOUT_S",
                default=60.0,
                minimum=1.0,
            ),
            poll_interval_ms=_env_int(env, "AUDIT_POLL_INTERVAL_MS", default=3000, minimum=1),
        )
