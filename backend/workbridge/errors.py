"""Exception hierarchy for the import pipeline.

Classes may pin ``retryable`` to short-circuit retry classification:
True always retries, False never does, None defers to status/type/message
rules in ``workbridge.pipeline.retry``.
"""


class ImportPipelineError(Exception):
    """Base class for every error raised by the import core."""

    retryable: bool | None = None


class ImportCancelledError(ImportPipelineError):
    """Cancellation observed at a checkpoint. Not a genuine failure."""

    retryable = False

    def __init__(self, message: str = "Import cancelled") -> None:
        super().__init__(message)


class ConnectionInvalidError(ImportPipelineError):
    """The credential is bad, expired, or lacks a required scope."""

    retryable = False


class ProviderAPIError(ImportPipelineError):
    """An external API call failed. Carries enough context to report it."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        endpoint: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint
        self.code = code


class RateLimitedError(ProviderAPIError):
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        status: int | None = None,
        endpoint: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, status=status, endpoint=endpoint, code=code)
        self.retry_after = retry_after


class ProviderAuthError(ProviderAPIError):
    """Authentication or authorization failure. Retrying cannot help."""

    retryable = False


class ContainerNotMappedError(ImportPipelineError):
    """An item's container has no internal id in this run."""

    retryable = False


class UnsupportedOperationError(ImportPipelineError):
    """Optional provider operation that this provider does not implement."""

    retryable = False
