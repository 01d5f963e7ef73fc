from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "class": self.error_class,
            "retryable": self.retryable,
        }


def validation_error(message: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def job_not_found(job_id: str) -> ApiError:
    return ApiError(
        code="JOB_NOT_FOUND",
        message=f"audit job not found: {job_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )
