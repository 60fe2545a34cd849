"""
Error types raised by the IAP session client.

Fatal kinds abort the current call immediately. An ordinary 401/403 that survives
the retry budget is not an error: it is handed back to the caller as a response.
"""


class IapSessionError(RuntimeError):
    """Base class for every error raised by the session client."""


class ConfigurationError(IapSessionError):
    """Missing or contradictory configuration (base URL, credentials, bounds)."""


class BootstrapFailure(IapSessionError):
    """The bootstrap request completed but the session cookie never appeared."""


class RedirectLoop(IapSessionError):
    """More redirects than the configured bound."""

    def __init__(self, url: str, max_redirects: int):
        super().__init__(f'Too many redirects while requesting {url} (>{max_redirects})')
        self.url = url
        self.max_redirects = max_redirects


class EscapedToInteractiveLogin(IapSessionError):
    """An automated request was redirected to a human login page."""

    def __init__(self, url: str, location: str):
        super().__init__(
            f'Redirected to interactive login ({location}) while requesting {url}. '
            'Verify that the configured principal has access to the IAP resource '
            'and that the target audience is correct.'
        )
        self.url = url
        self.location = location


class ProviderError(IapSessionError):
    """Signing, network or browser failure inside an identity provider."""

    def __init__(self, provider: str, message: str):
        super().__init__(f'[{provider}] {message}')
        self.provider = provider


class LoginTimeout(ProviderError):
    """The human-in-the-loop step did not finish in time."""


class BrowserClosed(ProviderError):
    """The user closed the login page or browser before finishing."""
