"""Domain exceptions for the ingestion and dispatch pipeline."""


class InboxError(Exception):
    """Base class for pipeline errors."""


class NormalizationError(InboxError):
    """Inbound payload could not be mapped to a canonical event."""

    def __init__(self, channel: str, detail: str) -> None:
        self.channel = channel
        self.detail = detail
        super().__init__(f"Cannot normalize {channel} payload: {detail}")


class IdentityConflictError(InboxError):
    """Identity resolution kept losing unique-constraint races."""


class ChannelSendError(InboxError):
    """A channel provider rejected or failed an outbound send.

    Args:
        message: Error description
        retryable: True for network errors and provider 5xx responses
        status_code: Provider HTTP status, when known
    """

    def __init__(self, message: str, retryable: bool = False, status_code: int | None = None) -> None:
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class MediaFetchError(InboxError):
    """Media could not be retrieved from the provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RuleValidationError(InboxError):
    """Automation rule conditions or actions failed validation."""

    def __init__(self, errors: list[dict]) -> None:
        self.errors = errors
        super().__init__(f"Invalid automation rule: {errors}")


class StorageUnavailableError(InboxError):
    """The identity store could not be reached."""
