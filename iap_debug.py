"""
Operator debug log.

Writes every HTTP hop the session client makes (request headers, response status,
headers and a truncated body, plus cookie jar snapshots) to a file. Cookie values
and credentials (Authorization, Cookie and Set-Cookie headers) are masked. End-user
output never includes any of this; it is for whoever has to work out why a login
flow went sideways.
"""

import json
from datetime import datetime
from pathlib import Path

import requests

from iap_cookies import CookieJar

DEBUG_LOG_FILE = Path('iap_debug.log')

MASKED_HEADERS = {'authorization', 'cookie', 'proxy-authorization', 'set-cookie'}


def _mask(value: str) -> str:
    if len(value) <= 12:
        return '***MASKED***'
    return f'{value[:8]}...***MASKED***'


def _mask_header(name: str, value) -> str:
    text = str(value)
    if name.lower() in MASKED_HEADERS:
        return _mask(text)
    return text


class DebugLogger:
    """Per-hop trace of the session client, off until enable() opens the file."""

    def __init__(self, filepath: Path = DEBUG_LOG_FILE):
        self.filepath = Path(filepath)
        self._file = None

    @property
    def enabled(self) -> bool:
        return self._file is not None

    def enable(self):
        self.disable()
        self._file = self.filepath.open('w', encoding='utf-8')
        self._write(f'# iap-session debug log, started {datetime.now().isoformat()}')

    def disable(self):
        if self._file is not None:
            self._file.close()
        self._file = None

    def _write(self, *lines: str):
        if self._file is None:
            return
        for line in lines:
            self._file.write(f'{line}\n')
        self._file.flush()

    def log_section(self, title: str):
        if self.enabled:
            self._write('', f'#### {title} '.ljust(80, '#'))

    def log_message(self, text: str):
        if not self.enabled:
            return
        self._write(text)

    def log_cookies(self, jar: CookieJar, label: str = 'Current Cookies'):
        if not self.enabled:
            return
        self._write(f'\n--- {label} ---')
        for cookie in jar.cookies():
            expires = (
                datetime.fromtimestamp(cookie.expires_at).isoformat()
                if cookie.expires_at is not None
                else 'session'
            )
            self._write(f'  {cookie.name}: {_mask(cookie.value)} (expires: {expires})')

    def log_request(self, method: str, url: str, headers: dict, body=None):
        if not self.enabled:
            return
        self._write(f'\n>>> REQUEST: {method} {url}')
        self._write('--- Request Headers ---')
        for k, v in headers.items():
            v_str = _mask_header(k, v)
            if len(v_str) > 200:
                v_str = v_str[:200] + '...'
            self._write(f'  {k}: {v_str}')
        if body:
            self._write('--- Request Body ---')
            if isinstance(body, dict):
                self._write(json.dumps(body, indent=2))
            else:
                self._write(str(body)[:500])

    def log_response(self, response: requests.Response):
        if not self.enabled:
            return
        self._write(f'\n<<< RESPONSE: {response.status_code} {response.reason}')
        self._write(f'    URL: {response.url}')
        self._write('--- Response Headers ---')
        for k, v in response.headers.items():
            self._write(f'  {k}: {_mask_header(k, v)}')
        self._write('--- Response Body ---')
        content_type = response.headers.get('Content-Type', '')
        text = response.text or ''
        if 'html' in content_type:
            self._write(f'[HTML Response - {len(text)} chars]')
            self._write(text[:1000])
            if len(text) > 1000:
                self._write('... [truncated]')
        else:
            self._write(text[:2000] if text else '[empty]')

    def log_redirect(self, status: int, location: str, method: str, hop: int):
        if not self.enabled:
            return
        self._write(f'\n--- Redirect {hop}: {status} -> {method} {location} ---')


# Shared by the requester and session manager; enabled by the CLI's --debug flag
debug_log = DebugLogger()
