from audit_runner.repositories.audit_job_files import (
    InMemoryAuditJobFilesRepository,
    PostgresAuditJobFilesRepository,
)
from audit_runner.repositories.audit_jobs import InMemoryAuditJobsRepository, PostgresAuditJobsRepository
from audit_runner.repositories.documents import InMemoryDocumentsRepository, PostgresDocumentsRepository

__all__ = [
    "InMemoryAuditJobFilesRepository",
    "PostgresAuditJobFilesRepository",
    "InMemoryAuditJobsRepository",
    "PostgresAuditJobsRepository",
    "InMemoryDocumentsRepository",
    "PostgresDocumentsRepository",
]
