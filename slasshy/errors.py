from typing import Optional


class SlasshyError(Exception):
    """Base class for all library errors."""


class ConfigError(SlasshyError):
    pass


# Store

class StoreError(SlasshyError):
    pass


class NotFoundError(StoreError):
    pass


class AlreadyExistsError(StoreError):
    pass


class InvariantError(StoreError):
    pass


# Metadata resolver

class ResolverError(SlasshyError):
    pass


class RetryableHTTPError(ResolverError):
    """Timeouts, resets, 5xx and 429. `retry_after` is set from the Retry-After header."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class TerminalHTTPError(ResolverError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# Player

class PlayerError(SlasshyError):
    pass


class PlayerLaunchError(PlayerError):
    pass


# Cloud

class CloudError(SlasshyError):
    pass


class CloudAuthError(CloudError):
    pass
