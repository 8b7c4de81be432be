class WalletLookupError(Exception):
    """Base error for job, cache and rate-limit operations."""


class InvalidInputError(WalletLookupError):
    """Raised when request data is malformed or empty; no state was changed."""


class NotFoundError(WalletLookupError):
    """Raised when a job or cache entry does not exist."""


class ConflictError(WalletLookupError):
    """Raised when a job is held by another worker or changed underneath us."""


class RateLimitedError(WalletLookupError):
    """Raised when an API key has exhausted one of its rate-limit windows."""

    def __init__(self, message: str, *, retry_after: int, window: str) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.window = window


class ProviderError(WalletLookupError):
    """Raised by identity providers on upstream failures."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class ProviderUnauthorizedError(ProviderError):
    pass


class ProviderRateLimitedError(ProviderError):
    pass
