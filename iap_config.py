"""
Configuration loading.

Reads a .env file (if present) and the environment into a SessionConfig. The auth
strategy comes from IAP_AUTH_METHOD and nothing else; which secrets happen to be
set never decides it.

Environment:
    IAP_BASE_URL                  service base URL (or GRAFANA_BASE_URL / GRAFANA_URL)
    IAP_AUTH_METHOD               service_account | oauth | browser
    IAP_SERVICE_ACCOUNT_EMAIL     service account email
    IAP_PRIVATE_KEY               service account private key (literal \\n allowed)
    IAP_SERVICE_ACCOUNT_JSON      service account key file contents, raw or base64
    IAP_TARGET_AUDIENCE           IAP audience (defaults to the base URL)
    IAP_OAUTH_CLIENT_ID           OAuth client ID
    IAP_OAUTH_CLIENT_SECRET       OAuth client secret
    IAP_OAUTH_REDIRECT_URI        loopback redirect URI
    IAP_PRINCIPAL                 cache key principal for the browser method
    IAP_SESSION_COOKIE            distinguished session cookie (default grafana_session)
    IAP_LOGIN_DOMAIN_PATTERN      regex for the interactive login host
    IAP_MAX_REDIRECTS             default 5
    IAP_RETRY_ON_AUTH_FAILURE     default 1
    IAP_REFRESH_MARGIN_SECONDS    default 60
    IAP_LOGIN_TIMEOUT_SECONDS     default 300
    IAP_CACHE_DIR                 default ~/.cache/iap-session
"""

import base64
import binascii
import json
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from iap_cookies import DEFAULT_REFRESH_MARGIN
from iap_errors import ConfigurationError
from iap_providers import (
    AUTH_METHODS,
    DEFAULT_LOGIN_TIMEOUT,
    DEFAULT_REDIRECT_URI,
    BrowserLoginAuth,
    OAuthClientAuth,
    ProviderAuth,
    ServiceAccountAuth,
)
from iap_requester import DEFAULT_LOGIN_DOMAIN_PATTERN, DEFAULT_MAX_REDIRECTS

DEFAULT_SESSION_COOKIE = 'grafana_session'
DEFAULT_RETRY_ON_AUTH_FAILURE = 1


@dataclass(frozen=True)
class SessionConfig:
    base_url: str
    auth: ProviderAuth
    session_cookie: str = DEFAULT_SESSION_COOKIE
    login_domain_pattern: str = DEFAULT_LOGIN_DOMAIN_PATTERN
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    retry_on_auth_failure: int = DEFAULT_RETRY_ON_AUTH_FAILURE
    refresh_margin: float = DEFAULT_REFRESH_MARGIN
    cache_dir: Path | None = None

    @property
    def principal(self) -> str:
        return self.auth.principal

    @property
    def key(self) -> tuple[str, str]:
        return (self.base_url, self.principal)


def _env(*names: str) -> str | None:
    for name in names:
        value = (os.getenv(name, '') or '').strip()
        if value:
            return value
    return None


def _env_number(name: str, default, cast=int):
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigurationError(f'{name} must be a number, got {raw!r}') from e
    if value < 0:
        raise ConfigurationError(f'{name} must not be negative, got {raw!r}')
    return value


def decode_service_account_json(raw: str) -> dict:
    """Accept a service account key file as raw JSON or base64-encoded JSON."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        try:
            data = json.loads(base64.b64decode(raw, validate=True).decode('utf-8'))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                'Failed to parse service account JSON. Provide valid JSON or base64-encoded JSON.'
            ) from e
    if not isinstance(data, dict):
        raise ConfigurationError('Service account JSON must be an object')
    return data


def normalize_private_key(key: str) -> str:
    return key.replace('\\n', '\n')


def _service_account_auth() -> ServiceAccountAuth:
    client_email = _env('IAP_SERVICE_ACCOUNT_EMAIL')
    private_key = _env('IAP_PRIVATE_KEY')

    raw_json = _env('IAP_SERVICE_ACCOUNT_JSON')
    if raw_json and not (client_email and private_key):
        parsed = decode_service_account_json(raw_json)
        client_email = client_email or parsed.get('client_email')
        private_key = private_key or parsed.get('private_key')

    if bool(client_email) != bool(private_key):
        raise ConfigurationError(
            'Service account credentials are incomplete: set both IAP_SERVICE_ACCOUNT_EMAIL and '
            'IAP_PRIVATE_KEY (or IAP_SERVICE_ACCOUNT_JSON), or neither to use Application Default Credentials'
        )

    return ServiceAccountAuth(
        client_email=client_email,
        private_key=normalize_private_key(private_key) if private_key else None,
        target_audience=_env('IAP_TARGET_AUDIENCE'),
    )


def _oauth_auth() -> OAuthClientAuth:
    client_id = _env('IAP_OAUTH_CLIENT_ID')
    client_secret = _env('IAP_OAUTH_CLIENT_SECRET')
    if not client_id or not client_secret:
        raise ConfigurationError(
            'IAP_AUTH_METHOD=oauth requires IAP_OAUTH_CLIENT_ID and IAP_OAUTH_CLIENT_SECRET'
        )
    return OAuthClientAuth(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=_env('IAP_OAUTH_REDIRECT_URI') or DEFAULT_REDIRECT_URI,
    )


def _browser_auth() -> BrowserLoginAuth:
    return BrowserLoginAuth(
        principal=_env('IAP_PRINCIPAL') or 'browser',
        timeout=_env_number('IAP_LOGIN_TIMEOUT_SECONDS', DEFAULT_LOGIN_TIMEOUT, float),
    )


def load_session_config(env_file: str | None = None) -> SessionConfig:
    """
    Build a SessionConfig from the environment.

    Raises ConfigurationError for a missing base URL, a missing or unknown auth
    method, incomplete credentials, or non-numeric bounds.
    """
    load_dotenv(env_file)

    base_url = _env('IAP_BASE_URL', 'GRAFANA_BASE_URL', 'GRAFANA_URL')
    if not base_url:
        raise ConfigurationError(
            'Base URL is not configured. Set IAP_BASE_URL (or GRAFANA_BASE_URL / GRAFANA_URL).'
        )

    method = (_env('IAP_AUTH_METHOD') or '').lower()
    builders = {
        ServiceAccountAuth.kind: _service_account_auth,
        OAuthClientAuth.kind: _oauth_auth,
        BrowserLoginAuth.kind: _browser_auth,
    }
    if method not in builders:
        raise ConfigurationError(
            f'IAP_AUTH_METHOD must be one of {", ".join(AUTH_METHODS)}'
            + (f' (got {method!r})' if method else '')
        )

    cache_dir = _env('IAP_CACHE_DIR')

    return SessionConfig(
        base_url=base_url.rstrip('/'),
        auth=builders[method](),
        session_cookie=_env('IAP_SESSION_COOKIE') or DEFAULT_SESSION_COOKIE,
        login_domain_pattern=_env('IAP_LOGIN_DOMAIN_PATTERN') or DEFAULT_LOGIN_DOMAIN_PATTERN,
        max_redirects=_env_number('IAP_MAX_REDIRECTS', DEFAULT_MAX_REDIRECTS),
        retry_on_auth_failure=_env_number('IAP_RETRY_ON_AUTH_FAILURE', DEFAULT_RETRY_ON_AUTH_FAILURE),
        refresh_margin=_env_number('IAP_REFRESH_MARGIN_SECONDS', DEFAULT_REFRESH_MARGIN, float),
        cache_dir=Path(cache_dir).expanduser() if cache_dir else None,
    )
