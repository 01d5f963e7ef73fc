from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class StartAuditRequest(BaseModel):
    action: Literal["start"]
    collectionId: str | None = None
    createdBy: str | None = None


class RunAuditRequest(BaseModel):
    action: Literal["run"]
    jobId: str = Field(min_length=1)
    maxFiles: int | None = Field(default=None, ge=1)


class StatusAuditRequest(BaseModel):
    action: Literal["status"]
    jobId: str = Field(min_length=1)


class CancelAuditRequest(BaseModel):
    action: Literal["cancel"]
    jobId: str = Field(min_length=1)


AuditActionRequest = Annotated[
    Union[StartAuditRequest, RunAuditRequest, StatusAuditRequest, CancelAuditRequest],
    Field(discriminator="action"),
]


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
