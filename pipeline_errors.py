"""
Error hierarchy for the ingestion service.

Request problems (InvalidInput, NotFound) are kept apart from pipeline
failures (IngestError subclasses) and from persistence failures
(PersistenceError subclasses) so the HTTP layer can map each family to a
status code and the log can tell an operator which one needs repair.
"""


class GigaViewError(Exception):
    """Base class for every error the service raises on purpose."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(GigaViewError):
    status_code = 400

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid {field}: {reason}")
        self.field = field


class NotFound(GigaViewError):
    status_code = 404


class UpstreamError(GigaViewError):
    """The NASA Image Library answered with an error or could not be reached."""

    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(message)
        self.upstream_status = upstream_status


# ------------------------------------------------------------------------------
# Pipeline failures
# ------------------------------------------------------------------------------

class IngestError(GigaViewError):
    """A stage of the ingestion pipeline failed. Never retried automatically."""

    kind = "IngestError"


class NoDownloadableAsset(IngestError):
    kind = "NoDownloadableAsset"


class DownloadFailed(IngestError):
    kind = "DownloadFailed"


class DownloadTooLarge(IngestError):
    kind = "DownloadTooLarge"


class DownloadTimeout(IngestError):
    kind = "DownloadTimeout"


class NotAnImage(IngestError):
    kind = "NotAnImage"


class ConversionFailed(IngestError):
    kind = "ConversionFailed"


class TilingFailed(IngestError):
    kind = "TilingFailed"


# ------------------------------------------------------------------------------
# Persistence failures
# ------------------------------------------------------------------------------

class PersistenceError(GigaViewError):
    pass


class CatalogCorrupted(PersistenceError):
    """A persisted file holds rows that do not match the expected shape."""


class PersistenceInconsistent(PersistenceError):
    """The catalog was written but the annotation store was not.

    Needs manual repair; there is no automatic rollback of the first write.
    """
