from typing import Optional


class ConfigError(Exception):
    """Malformed or missing configuration source."""


class ProviderError(Exception):
    """Base class for failures talking to a CDN provider."""

    def __init__(self, message: str, provider: str = '', status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class ProviderAuthError(ProviderError):
    """Provider rejected the credentials (401/403 or signature failure)."""

    def __init__(self, message: str, provider: str = '', status: Optional[int] = None,
                 hint: Optional[str] = None):
        super().__init__(message, provider, status)
        self.hint = hint


class ProviderTransientError(ProviderError):
    """Timeout, DNS, refused connection, rate limit or upstream 5xx."""


class ProviderResponseError(ProviderError):
    """Provider answered, but with errors or an unexpected body."""


class PersistenceError(Exception):
    """Snapshot or config document could not be written."""


class InstallError(Exception):
    """Installation refused or invalid."""
