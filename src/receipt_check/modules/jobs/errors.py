from __future__ import annotations


class AdvanceError(RuntimeError):
    """Chunk-level failure: the job is left as it was and the call may be retried."""

    kind = "advance_error"


class JobNotFound(AdvanceError):
    kind = "not_found"


class JobStorageError(AdvanceError):
    kind = "storage_error"


class SourceUnavailable(AdvanceError):
    kind = "source_unavailable"
