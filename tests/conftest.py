"""
Pytest config and shared fakes.

The modules live at the repo root (flat layout), so the root is pinned onto
sys.path for runs that don't install the project first.
"""

import base64
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
import requests
from requests.structures import CaseInsensitiveDict
from urllib3._collections import HTTPHeaderDict

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

BASE_URL = 'https://grafana.example.com'

ENV_VARS = [
    'IAP_BASE_URL',
    'GRAFANA_BASE_URL',
    'GRAFANA_URL',
    'IAP_AUTH_METHOD',
    'IAP_SERVICE_ACCOUNT_EMAIL',
    'IAP_PRIVATE_KEY',
    'IAP_SERVICE_ACCOUNT_JSON',
    'IAP_TARGET_AUDIENCE',
    'IAP_OAUTH_CLIENT_ID',
    'IAP_OAUTH_CLIENT_SECRET',
    'IAP_OAUTH_REDIRECT_URI',
    'IAP_PRINCIPAL',
    'IAP_SESSION_COOKIE',
    'IAP_LOGIN_DOMAIN_PATTERN',
    'IAP_MAX_REDIRECTS',
    'IAP_RETRY_ON_AUTH_FAILURE',
    'IAP_REFRESH_MARGIN_SECONDS',
    'IAP_LOGIN_TIMEOUT_SECONDS',
    'IAP_CACHE_DIR',
]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_response(
    status: int = 200,
    headers: dict | None = None,
    set_cookies: list[str] | tuple = (),
    body: bytes = b'',
    url: str = BASE_URL + '/',
) -> requests.Response:
    """A requests.Response with urllib3-style raw headers, no network involved."""
    response = requests.Response()
    response.status_code = status
    response.reason = 'Fake'
    response.url = url
    response.headers = CaseInsensitiveDict(headers or {})

    raw_headers = HTTPHeaderDict(headers or {})
    for value in set_cookies:
        raw_headers.add('Set-Cookie', value)
    if set_cookies:
        response.headers['Set-Cookie'] = ', '.join(set_cookies)

    response.raw = SimpleNamespace(headers=raw_headers)
    response._content = body
    response._content_consumed = True
    return response


def redirect(status: int, location: str, set_cookies=()) -> requests.Response:
    return make_response(status, headers={'Location': location}, set_cookies=set_cookies)


class FakeHttp:
    """Stands in for requests.Session: replays queued responses and records calls."""

    def __init__(self, responses=()):
        self.responses = list(responses)
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def request(self, method, url, headers=None, data=None, allow_redirects=True, timeout=None):
        self.calls.append(
            SimpleNamespace(
                method=method,
                url=url,
                headers=dict(headers or {}),
                data=data,
                allow_redirects=allow_redirects,
            )
        )
        if not self.responses:
            raise AssertionError(f'Unexpected request: {method} {url}')
        return self.responses.pop(0)


def make_jwt(claims: dict) -> str:
    def encode(part: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(part).encode()).rstrip(b'=').decode()

    return f'{encode({"alg": "RS256", "typ": "JWT"})}.{encode(claims)}.signature'


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """No IAP settings from the developer's shell, and no .env file picked up."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr('iap_config.load_dotenv', lambda *args, **kwargs: False)
    return monkeypatch
