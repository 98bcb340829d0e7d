"""Error taxonomy shared by the REST client, mutations and presentation."""


class DashboardError(Exception):
    """Base class for errors surfaced to the operator."""


class ValidationError(DashboardError):
    """Input rejected client-side before any request was sent.

    Attributes:
        field: Path of the offending input field, when there is one
    """

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def __str__(self) -> str:
        if self.field:
            return f"{self.field}: {self.message}"
        return self.message


class RequestError(DashboardError):
    """Network failure, timeout, auth failure or 5xx. Retryable by the user.

    Attributes:
        status: HTTP status, or None when no response was received
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status


class ConflictError(DashboardError):
    """Server-enforced invariant violation (e.g. deleting the last admin).

    Also raised by the mutation coordinator when locally cached data already
    shows the request would be rejected; the server remains authoritative.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status


class StaleDataError(ConflictError):
    """The referenced entity no longer exists on the server (HTTP 404)."""
