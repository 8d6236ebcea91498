"""
Error kinds shared across the pipeline.

Every error carries a stable ``kind`` string. API handlers turn the
caller-facing ones (validation, not found, connectivity) into structured
JSON responses; the internal ones (parse, dispatch) only ever show up in logs.
"""


class InboxSyncError(Exception):
    """Base class for all application errors."""
    kind = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ConnectivityError(InboxSyncError):
    """A mailbox, the document store, or the generative service is unreachable."""
    kind = "connectivity_error"


class ParseError(InboxSyncError):
    """A raw message could not be parsed."""
    kind = "parse_error"


class ClassificationAmbiguity(InboxSyncError):
    """The generative service returned something that is not a category label."""
    kind = "classification_ambiguity"


class ValidationError(InboxSyncError):
    """Caller input is missing or empty."""
    kind = "validation_error"


class NotFoundError(InboxSyncError):
    """A fetch-by-id found nothing."""
    kind = "not_found"


class DispatchFailure(InboxSyncError):
    """A notification sink failed to accept a payload."""
    kind = "dispatch_failure"


class StartupDependencyFailure(InboxSyncError):
    """A required dependency could not be reached at boot."""
    kind = "startup_dependency_failure"
