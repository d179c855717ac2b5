# =============================================================================
# Pipeline Error Taxonomy
# =============================================================================
#
# Every failure the pipeline can surface has a named class here. Services
# raise these; the FastAPI exception handler in main.py maps them to HTTP
# responses via `status_code` and `code`.
#
#   PipelineError
#   ├── InvalidFile              400  user error, no retry
#   ├── AccessDenied             403  authorization
#   ├── NotFound                 404
#   ├── AlreadyInProgress        409  concurrent analyze on same document
#   ├── AnalysisTimedOut         409  run reclaimed by the stale sweep
#   ├── StorageError             502  blob store failure
#   ├── StorageInconsistency     500  blob/metadata mismatch
#   ├── ExtractionUnavailable    503  extraction adapter not configured
#   ├── ExtractionFailed         502
#   ├── SummarizationUnavailable 503
#   ├── SummarizationFailed      502
#   ├── IndexUnavailable         503  never surfaced to end users
#   └── IndexDegraded            502  never fails the pipeline
# =============================================================================

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    status_code: int = 500
    code: str = "pipeline_error"

    def __init__(self, message: str = "", *, stage: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.stage = stage


class InvalidFile(PipelineError):
    status_code = 400
    code = "invalid_file"


class AccessDenied(PipelineError):
    status_code = 403
    code = "access_denied"


class NotFound(PipelineError):
    status_code = 404
    code = "not_found"


class AlreadyInProgress(PipelineError):
    status_code = 409
    code = "already_in_progress"


class AnalysisTimedOut(PipelineError):
    """The run lost its claim because the sweep reclaimed the document."""

    status_code = 409
    code = "timeout"


class StorageError(PipelineError):
    status_code = 502
    code = "storage_error"


class StorageInconsistency(PipelineError):
    code = "storage_inconsistency"


class ExtractionUnavailable(PipelineError):
    status_code = 503
    code = "extraction_unavailable"


class ExtractionFailed(PipelineError):
    status_code = 502
    code = "extraction_failed"


class SummarizationUnavailable(PipelineError):
    status_code = 503
    code = "summarization_unavailable"


class SummarizationFailed(PipelineError):
    status_code = 502
    code = "summarization_failed"


class IndexUnavailable(PipelineError):
    status_code = 503
    code = "index_unavailable"


class IndexDegraded(PipelineError):
    status_code = 502
    code = "index_degraded"
