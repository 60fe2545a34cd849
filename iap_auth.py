#!/usr/bin/env python3
"""
IAP Session Client

Keeps an authenticated session against an internal service that sits behind an
SSO / identity-aware proxy check. Handles the bootstrap request that triggers the
identity check, captures session cookies on every redirect hop, retries once on
401/403 with a fresh session, and caches cookies on disk between runs.

Usage:
    from iap_auth import SessionRegistry
    from iap_config import load_session_config

    registry = SessionRegistry()
    manager = registry.get(load_session_config())
    response = manager.authorized_request('/api/search?query=cpu')

Options (when run as a script):
    --login         Run the interactive login (browser or OAuth) before the request
    --path PATH     Path to request (default: /api/health)
    --clear-cache   Clear cached session and force a fresh bootstrap
    --no-cache      Skip the session cache entirely (don't read or write)
    --debug         Write every HTTP hop to iap_debug.log
"""

import argparse
import sys
from enum import Enum

import requests

from iap_cache import CacheEntry, FileSessionCache, InMemorySessionCache, SessionCache
from iap_config import (
    DEFAULT_RETRY_ON_AUTH_FAILURE,
    DEFAULT_SESSION_COOKIE,
    SessionConfig,
    load_session_config,
)
from iap_cookies import DEFAULT_REFRESH_MARGIN, Cookie, CookieJar
from iap_debug import DEBUG_LOG_FILE, debug_log
from iap_errors import BootstrapFailure, ConfigurationError, IapSessionError
from iap_providers import (
    IdentityProvider,
    InteractiveBrowserSessionProvider,
    OAuth2CodeFlowProvider,
    create_provider,
)
from iap_requester import (
    DEFAULT_LOGIN_DOMAIN_PATTERN,
    DEFAULT_MAX_REDIRECTS,
    RedirectAwareRequester,
    drain,
)

AUTH_FAILURE_STATUSES = (401, 403)


class SessionPhase(Enum):
    NO_SESSION = 'no_session'
    BOOTSTRAPPING = 'bootstrapping'
    AUTHENTICATED = 'authenticated'
    RETRYING = 'retrying'
    EXHAUSTED = 'exhausted'


class SessionManager:
    """
    Owns the session state for one (base URL, principal) pair.

    Composes the cookie jar, the redirect-aware requester and an identity provider,
    and drives the bootstrap/retry state machine behind authorized_request().
    Not guarded by a lock: concurrent callers may both bootstrap, which is
    wasteful but harmless.
    """

    def __init__(
        self,
        base_url: str,
        provider: IdentityProvider,
        cache: SessionCache | None = None,
        session_cookie: str = DEFAULT_SESSION_COOKIE,
        retry_on_auth_failure: int = DEFAULT_RETRY_ON_AUTH_FAILURE,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        login_domain_pattern: str = DEFAULT_LOGIN_DOMAIN_PATTERN,
        http: requests.Session | None = None,
        jar: CookieJar | None = None,
        profile_dir=None,
        verbose: bool = True,
    ):
        base_url = (base_url or '').strip().rstrip('/')
        if not base_url:
            raise ConfigurationError('Base URL must not be empty')

        self.base_url = base_url
        self.provider = provider
        self.cache = cache if cache is not None else InMemorySessionCache()
        self.session_cookie = session_cookie
        self.retry_on_auth_failure = retry_on_auth_failure
        self.profile_dir = profile_dir
        self.verbose = verbose
        self.user_agent: str | None = None
        self.jar = jar if jar is not None else CookieJar(refresh_margin=refresh_margin)

        self.requester = RedirectAwareRequester(
            base_url,
            self.jar,
            token_supplier=provider.get_token,
            user_agent_supplier=lambda: self.user_agent,
            on_cookies=self._on_cookies,
            http=http,
            max_redirects=max_redirects,
            login_domain_pattern=login_domain_pattern,
        )

        self._load_cache()
        self.phase = SessionPhase.AUTHENTICATED if self.has_valid_session() else SessionPhase.NO_SESSION

    def _log(self, message: str):
        if self.verbose:
            print(message)

    # -- cache -------------------------------------------------------------

    def _load_cache(self) -> None:
        entry = self.cache.load()
        for cookie in entry.cookies:
            self.jar.store(cookie)
        self.user_agent = entry.user_agent
        if entry.cookies:
            self._log(f'  Loaded {len(entry.cookies)} cached cookies')

    def _save_cache(self) -> None:
        self.cache.save(CacheEntry(cookies=self.jar.cookies(), user_agent=self.user_agent))

    def _on_cookies(self, cookies: list[Cookie]) -> None:
        self._save_cache()

    # -- session state -----------------------------------------------------

    def has_valid_session(self) -> bool:
        """True when the session cookie is present and not within the refresh margin."""
        return self.jar.is_valid(self.session_cookie)

    def clear_session(self) -> None:
        """Forget every cookie and the cached file."""
        self.jar.clear()
        self.user_agent = None
        self.cache.clear()
        self.phase = SessionPhase.NO_SESSION

    def _bootstrap(self) -> None:
        """GET the base path purely to trigger the identity check and collect the cookie."""
        self.phase = SessionPhase.BOOTSTRAPPING
        self.jar.invalidate(self.session_cookie)
        debug_log.log_section('BOOTSTRAP SESSION')

        response = self.requester.request('/', method='GET')
        drain(response)

        if response.status_code >= 400:
            self.phase = SessionPhase.NO_SESSION
            raise BootstrapFailure(
                f'Failed to establish session with {self.base_url}: bootstrap returned {response.status_code}'
            )

        if not self.has_valid_session():
            self.phase = SessionPhase.NO_SESSION
            raise BootstrapFailure(
                f'Session cookie {self.session_cookie} was not set by {self.base_url}. '
                'Confirm that the configured principal can access this service.'
            )

        self.phase = SessionPhase.AUTHENTICATED
        self._log('  Session established')

    # -- public API --------------------------------------------------------

    def authenticate(self) -> None:
        """
        Run the provider's interactive step, if it has one.

        For the browser provider this harvests cookies and the user agent into the
        session; for OAuth it runs the consent round and caches the ID token. A
        service account has nothing interactive, so its token is minted up front.
        """
        if isinstance(self.provider, InteractiveBrowserSessionProvider):
            profile_dir = self.profile_dir
            if profile_dir is None:
                raise ConfigurationError('Browser login needs a profile directory')
            result = self.provider.authenticate(self.base_url, profile_dir)
            for cookie in result.cookies:
                self.jar.store(cookie)
            if result.user_agent:
                self.user_agent = result.user_agent
            self._save_cache()
        elif isinstance(self.provider, OAuth2CodeFlowProvider):
            self.provider.authenticate()
        else:
            self.provider.get_token()

        self.phase = SessionPhase.AUTHENTICATED if self.has_valid_session() else SessionPhase.NO_SESSION

    def authorized_request(
        self,
        path: str,
        method: str = 'GET',
        headers: dict | None = None,
        body=None,
    ) -> requests.Response:
        """
        Send a request with a valid session, bootstrapping first if needed.

        A 401/403 invalidates the session cookie and retries up to
        retry_on_auth_failure times; after that the failing response is returned
        rather than raised so the caller can inspect it.
        """
        if not self.has_valid_session():
            self._bootstrap()

        attempt = 0
        while True:
            debug_log.log_section(f'REQUEST {method.upper()} {path} (attempt {attempt + 1})')
            response = self.requester.request(path, method=method, headers=headers, body=body)

            if response.status_code not in AUTH_FAILURE_STATUSES:
                self.phase = SessionPhase.AUTHENTICATED
                return response

            if attempt >= self.retry_on_auth_failure:
                self.phase = SessionPhase.EXHAUSTED
                return response

            attempt += 1
            self._log(f'  Got {response.status_code}, refreshing session (retry {attempt})')
            self.phase = SessionPhase.RETRYING
            drain(response)
            self.jar.invalidate(self.session_cookie)
            self._save_cache()
            self._bootstrap()


class SessionRegistry:
    """
    Hands out one SessionManager per (base URL, principal).

    Owned by the application and passed to whatever needs a session, so reuse
    is explicit instead of living in module state.
    """

    def __init__(self, verbose: bool = True, use_cache: bool = True):
        self.verbose = verbose
        self.use_cache = use_cache
        self._managers: dict[tuple[str, str], SessionManager] = {}

    def __len__(self) -> int:
        return len(self._managers)

    def get(self, config: SessionConfig) -> SessionManager:
        manager = self._managers.get(config.key)
        if manager is None:
            manager = create_session_manager(config, verbose=self.verbose, use_cache=self.use_cache)
            self._managers[config.key] = manager
        return manager

    def discard(self, config: SessionConfig) -> None:
        self._managers.pop(config.key, None)


def create_session_manager(
    config: SessionConfig,
    verbose: bool = True,
    use_cache: bool = True,
    http: requests.Session | None = None,
) -> SessionManager:
    """Build a SessionManager (provider, file cache, browser profile) from config."""
    file_cache = FileSessionCache(
        config.base_url, config.principal, cache_dir=config.cache_dir, verbose=verbose
    )
    provider = create_provider(
        config.auth,
        config.base_url,
        config.session_cookie,
        refresh_margin=config.refresh_margin,
        verbose=verbose,
    )
    return SessionManager(
        config.base_url,
        provider,
        cache=file_cache if use_cache else InMemorySessionCache(),
        session_cookie=config.session_cookie,
        retry_on_auth_failure=config.retry_on_auth_failure,
        max_redirects=config.max_redirects,
        refresh_margin=config.refresh_margin,
        login_domain_pattern=config.login_domain_pattern,
        http=http,
        profile_dir=file_cache.profile_dir(),
        verbose=verbose,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description='IAP Session Client')
    parser.add_argument('--login', action='store_true', help='Run the interactive login before the request')
    parser.add_argument('--path', default='/api/health', help='Path to request (default: /api/health)')
    parser.add_argument('--clear-cache', action='store_true', help='Clear cached session and force a fresh bootstrap')
    parser.add_argument('--no-cache', action='store_true', help="Skip cache entirely (don't read or write)")
    parser.add_argument('--debug', action='store_true', help=f'Write every HTTP hop to {DEBUG_LOG_FILE}')
    parser.add_argument('--quiet', action='store_true', help='Only print the final result')
    args = parser.parse_args(argv)

    verbose = not args.quiet

    if args.debug:
        debug_log.enable()
        if verbose:
            print(f'  Debug logging enabled: {DEBUG_LOG_FILE}')

    try:
        config = load_session_config()

        if args.clear_cache:
            FileSessionCache(
                config.base_url, config.principal, cache_dir=config.cache_dir, verbose=verbose
            ).clear()

        registry = SessionRegistry(verbose=verbose, use_cache=not args.no_cache)
        manager = registry.get(config)

        if verbose:
            print(f'Connecting to {config.base_url} as {config.principal} ({config.auth.kind})')

        if args.login:
            manager.authenticate()

        response = manager.authorized_request(args.path)
    except (IapSessionError, requests.RequestException) as e:
        print(f'FAILED: {e}')
        return 1
    finally:
        if args.debug:
            debug_log.disable()

    ok = 200 <= response.status_code < 300
    print(f'{"OK" if ok else "FAILED"}: GET {args.path} -> {response.status_code}')
    return 0 if ok else 1


if __name__ == '__main__':
    sys.exit(main())
