from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from audit_runner.errors import ApiError
from audit_runner.parse_utils import strip_split_suffix
from audit_runner.timeouts import Deadline

logger = logging.getLogger(__name__)

SPLIT_PLACEHOLDER_SUFFIX = ".metadata"
UPLOAD_ACTION = "upload"


@dataclass
class RetrievedContent:
    content: bytes
    file_name: str
    mime_type: str | None
    chunk_count: int = 1


def _split_chunks_missing(message: str) -> ApiError:
    return ApiError(
        code="SPLIT_CHUNKS_MISSING",
        message=message,
        error_class="permanent",
        retryable=False,
        http_status=422,
    )


def is_split_placeholder(file_path: str) -> bool:
    return file_path.endswith(SPLIT_PLACEHOLDER_SUFFIX)


def _chunk_paths(metadata: Any) -> list[str]:
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            return []
    if not isinstance(metadata, dict):
        return []
    raw = metadata.get("chunkPaths")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(raw, list):
        return []
    return [str(path) for path in raw if str(path).strip()]


class ContentRetriever:
    """Fetches a job file's bytes, reassembling split uploads from their recorded chunks."""

    def __init__(self, *, object_storage: Any, store: Any) -> None:
        self._object_storage = object_storage
        self._store = store

    def fetch(self, job_file: dict[str, Any], *, deadline: Deadline | None = None) -> RetrievedContent:
        file_path = str(job_file.get("file_path") or "")
        file_name = str(job_file.get("file_name") or file_path.rsplit("/", 1)[-1])
        mime_type = job_file.get("file_type") or None
        if deadline is not None:
            deadline.check()

        if not is_split_placeholder(file_path):
            return RetrievedContent(
                content=self._object_storage.download(file_path),
                file_name=file_name,
                mime_type=mime_type,
            )

        paths = self._resolve_chunk_paths(job_file)
        parts: list[bytes] = []
        for path in paths:
            if deadline is not None:
                deadline.check()
            parts.append(self._object_storage.download(path))
        logger.info("reassembled %s from %d chunks", file_name, len(paths))
        return RetrievedContent(
            content=b"".join(parts),
            file_name=strip_split_suffix(file_name),
            mime_type=mime_type,
            chunk_count=len(paths),
        )

    def _resolve_chunk_paths(self, job_file: dict[str, Any]) -> list[str]:
        document_id = str(job_file.get("document_id") or "")
        if not document_id:
            raise _split_chunks_missing("Split file has no document reference")
        activity = self._store.latest_activity(document_id=document_id, action=UPLOAD_ACTION)
        if activity is None:
            raise _split_chunks_missing(f"Split file metadata not found for document {document_id}")
        paths = _chunk_paths(activity.get("metadata"))
        if not paths:
            raise _split_chunks_missing(f"Split file has no chunk paths recorded for document {document_id}")
        return paths
