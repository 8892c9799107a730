"""
Pipeline error taxonomy.

Two kinds of failure exist in the pipeline:

  Per-item failures    — one chunk, one document, one tenant inside a batch.
                         Caught by the batch owner, logged with ids and
                         aggregated into the operation's report.
  Request-level errors — raised to the caller.  The FastAPI exception
                         handler in main.py maps `status_code` and
                         `error_code` onto the ErrorResponse envelope.

Which terminal status a document lands in depends on the class:
  ExtractionError → failed   (bad file)
  StorageError    → error    (bad plumbing)
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""

    status_code: int = 500
    error_code:  str = "PIPELINE_ERROR"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ExtractionError(PipelineError):
    """Content could not be turned into chunks."""

    status_code = 422
    error_code  = "EXTRACTION_ERROR"


class StorageError(PipelineError):
    """The source object could not be located, read or moved."""

    status_code = 502
    error_code  = "STORAGE_ERROR"


class InvalidTransition(PipelineError):
    status_code = 409
    error_code  = "INVALID_TRANSITION"


class DocumentNotFound(PipelineError):
    status_code = 404
    error_code  = "DOCUMENT_NOT_FOUND"


class RequeueLimitExceeded(PipelineError):
    status_code = 429
    error_code  = "REQUEUE_LIMIT_EXCEEDED"


class JobAlreadyFinished(PipelineError):
    status_code = 409
    error_code  = "JOB_ALREADY_FINISHED"


class NoEnabledDomains(PipelineError):
    status_code = 400
    error_code  = "NO_ENABLED_DOMAINS"


class InvalidRequest(PipelineError):
    status_code = 400
    error_code  = "INVALID_REQUEST"


class CronKeyRejected(PipelineError):
    status_code = 401
    error_code  = "CRON_KEY_REJECTED"


class DomainNotFound(PipelineError):
    status_code = 404
    error_code  = "DOMAIN_NOT_FOUND"


class JobNotFound(PipelineError):
    status_code = 404
    error_code  = "JOB_NOT_FOUND"


class PayloadTooLarge(PipelineError):
    status_code = 413
    error_code  = "FILE_TOO_LARGE"
