"""Error taxonomy shared by providers, the manager and the CLI."""


class TixError(Exception):
    """Base class for every error raised by the integration layer."""

    requires_reconnect: bool = False

    def __init__(self, message: str, platform: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.platform = platform


class ConfigurationError(TixError):
    """Required settings (client id, API key, ...) are missing."""


class UnknownPlatform(TixError):
    def __init__(self, platform: str) -> None:
        super().__init__(f"Platform '{platform}' is not supported", platform)


class NotConnected(TixError):
    requires_reconnect = True

    def __init__(self, platform: str, message: str | None = None) -> None:
        super().__init__(message or f"Not connected to {platform}. Please connect first.", platform)


class NoActiveProvider(TixError):
    def __init__(self) -> None:
        super().__init__("No platform is currently active. Please connect to a platform first.")


class AuthExchangeFailed(TixError):
    """The OAuth callback could not be turned into a connection."""


class ReauthRequired(TixError):
    """Refresh impossible or rejected. The connection has been cleared."""

    requires_reconnect = True


class AuthenticationFailed(TixError):
    """The provider answered 401. The connection has been cleared."""

    requires_reconnect = True


class PermissionDenied(TixError):
    """The provider answered 403. Credentials are kept."""


class ValidationError(TixError):
    """A provider-specific precondition failed before any write was attempted."""


class ProviderError(TixError):
    def __init__(
        self,
        platform: str,
        status_code: int | None,
        body: str,
        message: str | None = None,
    ) -> None:
        status = status_code if status_code is not None else "no response"
        super().__init__(message or f"{platform} API error ({status}): {body}", platform)
        self.status_code = status_code
        self.body = body


class UnknownNativeFormat(TixError):
    def __init__(self, platform: str) -> None:
        super().__init__(f"Unknown {platform} data format", platform)


class InvalidMigration(TixError):
    pass
