from __future__ import annotations


class CantoError(Exception):
    """Base error for the Canto connector."""


class ConfigurationError(CantoError):
    """Missing or invalid asset source configuration."""


class AuthenticationFailedError(CantoError):
    """No usable access token could be obtained."""


class AuthorizationRequiredError(AuthenticationFailedError):
    """Interactive authorization is needed before the API can be used."""

    def __init__(self, message: str, *, authorize_url: str) -> None:
        super().__init__(message)
        self.authorize_url = authorize_url


class IdentityProviderError(AuthenticationFailedError):
    """The OAuth token endpoint rejected the request or answered garbage."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MissingClientSecretError(CantoError):
    """Authentication needs credentials that are not configured."""


class InvalidAssetIdentifierError(CantoError, ValueError):
    """An asset identifier is not of the form ``scheme-id``."""


class AssetNotFoundError(CantoError):
    """The remote asset does not exist or could not be decoded."""


class AccessToAssetDeniedError(CantoError):
    """The host denied access to the local asset or its proxy."""


class CantoTransportError(CantoError):
    """HTTP transport failure or unexpected status from the Canto API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(CantoError):
    """The Canto API answered with a body that is not the expected JSON."""
