"""
Redirect-aware requester.

Issues one logical request and follows redirects by hand, so the Set-Cookie
headers on intermediate hops (which an automatic redirect follower would throw
away) reach the cookie jar. Method and body on each hop follow the browser rules:

    303, or 301/302 after a non-GET/HEAD  ->  GET without a body
    307/308, or 301/302 after GET/HEAD    ->  same method, same body

A redirect into the interactive login domain is a failure, not a hop: a headless
client can't get past a human login page.
"""

import re
from http.cookiejar import DefaultCookiePolicy
from typing import Callable
from urllib.parse import urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from iap_cookies import Cookie, CookieJar, set_cookie_headers
from iap_debug import debug_log
from iap_errors import EscapedToInteractiveLogin, RedirectLoop

DEFAULT_MAX_REDIRECTS = 5
DEFAULT_LOGIN_DOMAIN_PATTERN = r'(^|\.)accounts\.google\.com$'
DEFAULT_TIMEOUT = 30

REDIRECT_STATUSES = {301, 302, 303, 307, 308}

BODY_HEADERS = {'content-type', 'content-length', 'transfer-encoding'}


def create_http_session() -> requests.Session:
    """
    Create the HTTP transport.

    Redirects are never followed automatically, and the session's own cookie
    store is disabled: cookies live in CookieJar only.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=['GET', 'HEAD'],
        redirect=False,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount('https://', adapter)
    session.mount('http://', adapter)

    session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))

    session.headers.update({
        'Accept': 'application/json, text/plain, */*',
        'Accept-Language': 'en-GB,en;q=0.9',
    })

    return session


def next_hop(status: int, method: str, body):
    """Return (method, body) for the request that follows a redirect."""
    method = method.upper()
    if status == 303:
        return 'GET', None
    if status in (301, 302) and method not in ('GET', 'HEAD'):
        return 'GET', None
    return method, body


def is_redirect(status: int) -> bool:
    return status in REDIRECT_STATUSES


def drain(response: requests.Response) -> None:
    """Read and discard a response body so the connection can be reused."""
    try:
        response.content
    except (requests.RequestException, OSError) as e:
        debug_log.log_message(f'  Failed to drain response body: {e}')


class RedirectAwareRequester:
    """Sends requests against one base URL, following redirects manually."""

    def __init__(
        self,
        base_url: str,
        jar: CookieJar,
        token_supplier: Callable[[], str | None] = lambda: None,
        user_agent_supplier: Callable[[], str | None] = lambda: None,
        on_cookies: Callable[[list[Cookie]], None] | None = None,
        http: requests.Session | None = None,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        login_domain_pattern: str = DEFAULT_LOGIN_DOMAIN_PATTERN,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip('/')
        self.jar = jar
        self.token_supplier = token_supplier
        self.user_agent_supplier = user_agent_supplier
        self.on_cookies = on_cookies
        self.http = http or create_http_session()
        self.max_redirects = max_redirects
        self.login_domain = re.compile(login_domain_pattern, re.IGNORECASE)
        self.timeout = timeout

    def build_url(self, path: str) -> str:
        if re.match(r'^https?://', path, re.IGNORECASE):
            return path
        if not path.startswith('/'):
            path = f'/{path}'
        return f'{self.base_url}{path}'

    def _is_login_redirect(self, location_url: str) -> bool:
        host = urlparse(location_url).hostname or ''
        return bool(self.login_domain.search(host))

    def _headers_for_hop(self, headers: dict, has_body: bool) -> dict:
        hop_headers = {
            k: v for k, v in headers.items()
            if has_body or k.lower() not in BODY_HEADERS
        }

        token = self.token_supplier()
        if token:
            hop_headers['Authorization'] = f'Bearer {token}'

        user_agent = self.user_agent_supplier()
        if user_agent:
            hop_headers['User-Agent'] = user_agent

        cookie_header = self.jar.header()
        if cookie_header:
            hop_headers['Cookie'] = cookie_header

        return hop_headers

    def _capture_cookies(self, response: requests.Response) -> None:
        stored = self.jar.merge(set_cookie_headers(response))
        if stored:
            debug_log.log_cookies(self.jar, f'Cookies after {response.status_code}')
            if self.on_cookies:
                self.on_cookies(stored)

    def request(
        self,
        path: str,
        method: str = 'GET',
        headers: dict | None = None,
        body=None,
    ) -> requests.Response:
        """
        Perform one logical request, following up to max_redirects redirects.

        Raises RedirectLoop when the bound is exceeded and EscapedToInteractiveLogin
        when a redirect points at the interactive login domain.
        """
        url = self.build_url(path)
        method = method.upper()
        caller_headers = dict(headers or {})
        redirects = 0

        while True:
            hop_headers = self._headers_for_hop(caller_headers, body is not None)
            debug_log.log_request(method, url, hop_headers, body)

            response = self.http.request(
                method,
                url,
                headers=hop_headers,
                data=body,
                allow_redirects=False,
                timeout=self.timeout,
            )

            debug_log.log_response(response)
            self._capture_cookies(response)

            if not is_redirect(response.status_code):
                return response

            location = response.headers.get('Location')
            if not location:
                return response

            next_url = urljoin(url, location)
            if self._is_login_redirect(next_url):
                drain(response)
                raise EscapedToInteractiveLogin(url, next_url)

            redirects += 1
            if redirects > self.max_redirects:
                drain(response)
                raise RedirectLoop(url, self.max_redirects)

            method, body = next_hop(response.status_code, method, body)
            debug_log.log_redirect(response.status_code, next_url, method, redirects)
            drain(response)
            url = next_url
