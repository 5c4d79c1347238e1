from __future__ import annotations


class IngestError(Exception):
    """Base class for ingestion failures."""


class TransientIOError(IngestError):
    """Network or timeout fault during a fetch or extraction call. Retried."""


class DataFaultError(IngestError):
    """Malformed or unparsable page content."""


class IdentityConflictError(IngestError):
    """A record could not be confidently resolved to one canonical identity."""


class ConfigurationError(IngestError):
    """Required configuration or credentials are missing. Fatal at startup."""


class ExhaustedRetriesError(IngestError):
    def __init__(self, task_id: str, attempts: int, last_error: str) -> None:
        super().__init__(f"task {task_id} failed after {attempts} attempt(s): {last_error}")
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error


class RecordNotFoundError(IngestError):
    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id
