"""
Identity providers for IAP-gated services.

Three strategies, picked by an explicit auth method rather than by which secrets
happen to be configured:

    service_account  mint Google-signed ID tokens for the IAP audience (headless)
    oauth            OAuth2 authorization-code flow through the system browser
    browser          visible Playwright browser; the user logs in, we harvest cookies

Usage:
    provider = create_provider(ServiceAccountAuth(client_email, private_key), base_url)
    token = provider.get_token()
"""

import base64
import hashlib
import html
import json
import secrets
import time
import webbrowser
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Callable, ClassVar
from urllib.parse import parse_qs, urlencode, urlparse

import google.auth.exceptions
import google.auth.transport.requests
import requests
from google.oauth2 import id_token as google_id_token
from google.oauth2 import service_account
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright
from playwright_stealth import Stealth

from iap_cookies import DEFAULT_REFRESH_MARGIN, Cookie
from iap_errors import BrowserClosed, ConfigurationError, LoginTimeout, ProviderError

GOOGLE_AUTH_ENDPOINT = 'https://accounts.google.com/o/oauth2/v2/auth'
GOOGLE_TOKEN_ENDPOINT = 'https://oauth2.googleapis.com/token'
DEFAULT_REDIRECT_URI = 'http://localhost:3000/auth/google/callback'
DEFAULT_OAUTH_SCOPES = ('openid', 'email', 'https://www.googleapis.com/auth/cloud-platform')

DEFAULT_LOGIN_TIMEOUT = 300


# ---------------------------------------------------------------------------
# Provider configuration (tagged union on `kind`)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceAccountAuth:
    """Service-account key pair. Both fields empty means Application Default Credentials."""

    kind: ClassVar[str] = 'service_account'
    client_email: str | None = None
    private_key: str | None = field(default=None, repr=False)
    target_audience: str | None = None

    @property
    def principal(self) -> str:
        return self.client_email or 'default'


@dataclass(frozen=True)
class OAuthClientAuth:
    kind: ClassVar[str] = 'oauth'
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: tuple[str, ...] = DEFAULT_OAUTH_SCOPES

    @property
    def principal(self) -> str:
        return self.client_id


@dataclass(frozen=True)
class BrowserLoginAuth:
    kind: ClassVar[str] = 'browser'
    principal: str = 'browser'
    timeout: float = DEFAULT_LOGIN_TIMEOUT


ProviderAuth = ServiceAccountAuth | OAuthClientAuth | BrowserLoginAuth

AUTH_METHODS = (ServiceAccountAuth.kind, OAuthClientAuth.kind, BrowserLoginAuth.kind)


def decode_jwt_expiry(token: str) -> float | None:
    """
    Read the exp claim (epoch seconds) from a JWT without verifying it.

    Returns None when the token isn't a JWT or carries no numeric exp.
    """
    try:
        parts = token.split('.')
        if len(parts) != 3:
            return None

        payload_b64 = parts[1]
        padding = 4 - len(payload_b64) % 4
        if padding != 4:
            payload_b64 += '=' * padding

        payload = json.loads(base64.urlsafe_b64decode(payload_b64))
    except (ValueError, json.JSONDecodeError):
        return None

    exp = payload.get('exp') if isinstance(payload, dict) else None
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return float(exp)
    return None


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b'=').decode('ascii')


class IdentityProvider:
    """Supplies a bearer token and/or drives the hop that produces session cookies."""

    name: ClassVar[str] = 'identity'

    def __init__(self, verbose: bool = True):
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def get_token(self) -> str | None:
        return None


# ---------------------------------------------------------------------------
# Service account
# ---------------------------------------------------------------------------


class ServiceAccountTokenProvider(IdentityProvider):
    """Mints and caches Google-signed ID tokens for a target audience."""

    name = 'service_account'

    def __init__(
        self,
        audience: str,
        client_email: str | None = None,
        private_key: str | None = None,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], float] = time.time,
        verbose: bool = True,
    ):
        super().__init__(verbose=verbose)
        if bool(client_email) != bool(private_key):
            raise ConfigurationError(
                'Service account credentials are incomplete: provide both client email and '
                'private key, or neither to use Application Default Credentials'
            )
        self.audience = audience
        self.client_email = client_email
        self.private_key = private_key
        self.refresh_margin = refresh_margin
        self.clock = clock
        self._credentials = None
        self._token: str | None = None
        self._expires_at: float | None = None

    def _mint_id_token(self) -> str:
        request = google.auth.transport.requests.Request()

        if not self.client_email:
            return google_id_token.fetch_id_token(request, self.audience)

        if self._credentials is None:
            self._credentials = service_account.IDTokenCredentials.from_service_account_info(
                {
                    'client_email': self.client_email,
                    'private_key': self.private_key,
                    'token_uri': GOOGLE_TOKEN_ENDPOINT,
                },
                target_audience=self.audience,
            )
        self._credentials.refresh(request)
        return self._credentials.token

    def get_token(self) -> str:
        """Return a cached ID token, minting a new one when it's within the refresh margin."""
        if (
            self._token
            and self._expires_at is not None
            and self.clock() + self.refresh_margin < self._expires_at
        ):
            return self._token

        try:
            token = self._mint_id_token()
        except (google.auth.exceptions.GoogleAuthError, requests.RequestException, ValueError) as e:
            raise ProviderError(self.name, f'Failed to mint ID token for {self.audience}: {e}') from e

        if not token:
            raise ProviderError(self.name, f'Empty ID token returned for {self.audience}')

        expires_at = decode_jwt_expiry(token)
        if expires_at is None:
            self._log('  ID token has no exp claim, it will not be cached')
            self._token, self._expires_at = None, None
        else:
            self._token, self._expires_at = token, expires_at
        return token


# ---------------------------------------------------------------------------
# OAuth2 authorization code
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    access_token: str | None
    id_token: str | None
    refresh_token: str | None = field(default=None, repr=False)
    token_type: str | None = None
    scope: str | None = None
    expires_at: float | None = None


def _callback_handler(redirect_path: str, result: dict):
    """Build a request handler that records the OAuth callback into `result`."""

    class CallbackHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            parsed = urlparse(self.path)
            if parsed.path != redirect_path:
                self._send_response(404, 'Not found')
                return

            query = parse_qs(parsed.query)
            if query.get('code'):
                result['code'] = query['code'][0]
                result['state'] = query.get('state', [''])[0]
                self._send_response(200, 'Authentication successful! You can close this window.')
            else:
                error = query.get('error', ['no authorization code returned'])[0]
                result['error'] = error
                self._send_response(400, f'Authentication failed: {html.escape(error)}')

        def _send_response(self, code: int, message: str):
            self.send_response(code)
            self.send_header('Content-Type', 'text/html; charset=utf-8')
            self.end_headers()
            self.wfile.write(f'<html><body><h1>{message}</h1></body></html>'.encode('utf-8'))

        def log_message(self, format, *args):
            pass  # keep the terminal quiet

    return CallbackHandler


class OAuth2CodeFlowProvider(IdentityProvider):
    """
    Interactive OAuth2 authorization-code flow with a loopback listener.

    The ID token from the exchange is used as the bearer token. There is no
    refresh: once the token expires, authenticate() has to run again.
    """

    name = 'oauth'

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        scopes: tuple[str, ...] = DEFAULT_OAUTH_SCOPES,
        authorization_endpoint: str = GOOGLE_AUTH_ENDPOINT,
        token_endpoint: str = GOOGLE_TOKEN_ENDPOINT,
        timeout: float = DEFAULT_LOGIN_TIMEOUT,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        open_browser: Callable[[str], object] = webbrowser.open,
        http: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
        verbose: bool = True,
    ):
        super().__init__(verbose=verbose)
        if not client_id or not client_secret:
            raise ConfigurationError('OAuth client ID and client secret are both required')
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.timeout = timeout
        self.refresh_margin = refresh_margin
        self.open_browser = open_browser
        self.http = http or requests.Session()
        self.clock = clock
        self.tokens: OAuthTokens | None = None

        parsed = urlparse(redirect_uri)
        self._listen_host = parsed.hostname or 'localhost'
        self._listen_port = parsed.port or 3000
        self._redirect_path = parsed.path or '/'

    def authorization_url(self, state: str, code_challenge: str) -> str:
        params = {
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': ' '.join(self.scopes),
            'access_type': 'offline',
            'state': state,
            'code_challenge': code_challenge,
            'code_challenge_method': 'S256',
        }
        return f'{self.authorization_endpoint}?{urlencode(params)}'

    def _wait_for_callback(self, server: HTTPServer, result: dict) -> None:
        deadline = time.monotonic() + self.timeout
        while not result:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LoginTimeout(
                    self.name, f'No OAuth callback received within {self.timeout:.0f}s'
                )
            server.timeout = min(1.0, remaining)
            server.handle_request()

    def authenticate(self) -> OAuthTokens:
        """Run one interactive round: browser consent, loopback callback, code exchange."""
        state = secrets.token_urlsafe(24)
        verifier = secrets.token_urlsafe(64)
        url = self.authorization_url(state, pkce_challenge(verifier))
        result: dict = {}

        try:
            server = HTTPServer(
                (self._listen_host, self._listen_port),
                _callback_handler(self._redirect_path, result),
            )
        except OSError as e:
            raise ProviderError(
                self.name, f'Could not listen on {self._listen_host}:{self._listen_port}: {e}'
            ) from e

        try:
            self._log(f'  Listening on port {self._listen_port} for the OAuth callback...')
            self._log(f'  If the browser does not open, visit: {url}')
            self.open_browser(url)
            self._wait_for_callback(server, result)
        finally:
            server.server_close()

        if result.get('error'):
            raise ProviderError(self.name, f'Authorization denied: {result["error"]}')
        if result.get('state') != state:
            raise ProviderError(self.name, 'OAuth state mismatch in callback')

        self.tokens = self._exchange_code(result['code'], verifier)
        self._log('  OAuth authentication successful')
        return self.tokens

    def _exchange_code(self, code: str, verifier: str) -> OAuthTokens:
        payload = {
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'code_verifier': verifier,
        }
        try:
            response = self.http.post(self.token_endpoint, data=payload, timeout=30)
        except requests.RequestException as e:
            raise ProviderError(self.name, f'Token exchange request failed: {e}') from e

        if response.status_code >= 400:
            # Body may echo secrets; status is enough for the message
            raise ProviderError(self.name, f'Token exchange failed (status={response.status_code})')

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self.name, 'Token endpoint returned invalid JSON') from e
        if not isinstance(data, dict):
            raise ProviderError(self.name, 'Token endpoint returned an unexpected payload')

        id_token = data.get('id_token')
        expires_at = decode_jwt_expiry(id_token) if id_token else None
        if expires_at is None and data.get('expires_in'):
            try:
                expires_at = self.clock() + float(data['expires_in'])
            except (TypeError, ValueError) as e:
                raise ProviderError(self.name, 'Token endpoint returned a non-numeric expires_in') from e

        return OAuthTokens(
            access_token=data.get('access_token'),
            id_token=id_token,
            refresh_token=data.get('refresh_token'),
            token_type=data.get('token_type'),
            scope=data.get('scope'),
            expires_at=expires_at,
        )

    def get_token(self) -> str:
        if not self.tokens or not self.tokens.id_token:
            raise ProviderError(self.name, 'OAuth not authenticated. Run the interactive login first.')
        expires_at = self.tokens.expires_at
        if expires_at is not None and self.clock() + self.refresh_margin >= expires_at:
            raise ProviderError(self.name, 'OAuth token expired. Please re-authenticate.')
        return self.tokens.id_token


# ---------------------------------------------------------------------------
# Interactive browser
# ---------------------------------------------------------------------------


@dataclass
class BrowserSession:
    cookies: list[Cookie]
    user_agent: str | None


def apply_stealth(page) -> None:
    Stealth().apply_stealth_sync(page)


class InteractiveBrowserSessionProvider(IdentityProvider):
    """
    Visible browser login for when no headless credential path exists.

    The browser profile lives in a persistent directory so device trust and SSO
    state carry over between runs and the user rarely has to log in twice.
    """

    name = 'browser'

    def __init__(
        self,
        session_cookie: str,
        timeout: float = DEFAULT_LOGIN_TIMEOUT,
        poll_interval: float = 1.0,
        settle_delay: float = 2.0,
        browser_type: str = 'chromium',
        playwright_factory: Callable = sync_playwright,
        stealth: Callable = apply_stealth,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        verbose: bool = True,
    ):
        super().__init__(verbose=verbose)
        self.session_cookie = session_cookie
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.browser_type = browser_type
        self.playwright_factory = playwright_factory
        self.stealth = stealth
        self.sleep = sleep
        self.clock = clock

    def authenticate(self, target_url: str, profile_dir: Path) -> BrowserSession:
        """Open the target in a visible browser and wait for the user to finish logging in."""
        self._log(f'Starting browser-based authentication ({self.browser_type})...')
        Path(profile_dir).mkdir(parents=True, exist_ok=True)

        with self.playwright_factory() as p:
            launcher = getattr(p, self.browser_type, p.chromium)
            try:
                context = launcher.launch_persistent_context(
                    str(profile_dir),
                    headless=False,
                    no_viewport=True,
                    args=['--disable-blink-features=AutomationControlled'],
                )
            except PlaywrightError as e:
                raise ProviderError(
                    self.name,
                    f'Failed to launch {self.browser_type}. Try: playwright install {self.browser_type} ({e})',
                ) from e

            try:
                page = context.pages[0] if context.pages else context.new_page()
                self.stealth(page)

                self._log(f'  Navigating to {target_url}...')
                page.goto(target_url, wait_until='domcontentloaded')

                self._log('  Waiting for login to complete in the browser window...')
                self._wait_for_login(context, page, target_url)

                raw_cookies = context.cookies()
                user_agent = page.evaluate('() => navigator.userAgent')
            except PlaywrightError as e:
                if page_closed(context):
                    raise BrowserClosed(self.name, 'Browser was closed before login finished') from e
                raise ProviderError(self.name, f'Browser authentication failed: {e}') from e
            finally:
                context.close()

        cookies = [browser_cookie(c) for c in raw_cookies]
        self._log(f'  Login detected, harvested {len(cookies)} cookies')
        return BrowserSession(cookies=cookies, user_agent=user_agent or None)

    def _has_session_cookie(self, context) -> bool:
        try:
            return any(c.get('name') == self.session_cookie for c in context.cookies())
        except PlaywrightError as e:
            raise BrowserClosed(self.name, 'Browser was closed before login finished') from e

    def _wait_for_login(self, context, page, target_url: str) -> None:
        normalized_target = target_url if target_url.endswith('/') else f'{target_url}/'
        deadline = self.clock() + self.timeout

        while self.clock() < deadline:
            if page.is_closed():
                raise BrowserClosed(self.name, 'Login page was closed before login finished')

            if self._has_session_cookie(context):
                return

            if is_logged_in_url(page.url, normalized_target):
                # Let trailing redirects land their cookies, then accept the URL signal
                self.sleep(self.settle_delay)
                if not self._has_session_cookie(context):
                    self._log(
                        f'  On target page without {self.session_cookie}, assuming login succeeded'
                    )
                return

            self.sleep(self.poll_interval)

        raise LoginTimeout(self.name, f'Login did not complete within {self.timeout:.0f}s')


def page_closed(context) -> bool:
    pages = getattr(context, 'pages', None)
    return not pages or all(p.is_closed() for p in pages)


def is_logged_in_url(url: str, normalized_target: str) -> bool:
    """Same origin and under the target path, and not a login page."""
    normalized_url = url if url.endswith('/') else f'{url}/'
    if not normalized_url.startswith(normalized_target):
        return False
    return '/login' not in urlparse(url).path


def browser_cookie(raw: dict) -> Cookie:
    expires = raw.get('expires')
    # Playwright reports session cookies with expires == -1
    expires_at = float(expires) if isinstance(expires, (int, float)) and expires > 0 else None
    return Cookie(name=raw['name'], value=raw.get('value', ''), expires_at=expires_at)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_provider(
    auth: ProviderAuth,
    base_url: str,
    session_cookie: str,
    refresh_margin: float = DEFAULT_REFRESH_MARGIN,
    verbose: bool = True,
) -> IdentityProvider:
    """Build the provider named by the auth block's kind."""
    if auth.kind == ServiceAccountAuth.kind:
        return ServiceAccountTokenProvider(
            audience=auth.target_audience or base_url,
            client_email=auth.client_email,
            private_key=auth.private_key,
            refresh_margin=refresh_margin,
            verbose=verbose,
        )
    if auth.kind == OAuthClientAuth.kind:
        return OAuth2CodeFlowProvider(
            client_id=auth.client_id,
            client_secret=auth.client_secret,
            redirect_uri=auth.redirect_uri,
            scopes=auth.scopes,
            refresh_margin=refresh_margin,
            verbose=verbose,
        )
    if auth.kind == BrowserLoginAuth.kind:
        return InteractiveBrowserSessionProvider(
            session_cookie=session_cookie,
            timeout=auth.timeout,
            verbose=verbose,
        )
    raise ConfigurationError(f'Unknown auth method {auth.kind!r}; expected one of {", ".join(AUTH_METHODS)}')
