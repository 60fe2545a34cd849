"""
Cookie jar for SSO/IAP sessions.

Holds one cookie per name with an optional expiry and renders the outbound
Cookie header. Cookies are not scoped by domain or path: everything the
identity check sets is replayed against the same service.

Usage:
    jar = CookieJar()
    jar.merge(['a=1; Max-Age=60', 'b=2; Path=/'])
    jar.header()   # 'a=1; b=2'
"""

import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Callable, Iterable

import requests

DEFAULT_REFRESH_MARGIN = 60.0


@dataclass
class Cookie:
    name: str
    value: str
    expires_at: float | None = None  # epoch seconds, None for session cookies

    def to_dict(self) -> dict:
        return {'name': self.name, 'value': self.value, 'expiresAt': self.expires_at}

    @classmethod
    def from_dict(cls, data: dict) -> 'Cookie | None':
        name = str(data.get('name') or '').strip()
        if not name:
            return None
        expires_at = data.get('expiresAt')
        if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
            expires_at = None
        return cls(name=name, value=str(data.get('value') or ''), expires_at=expires_at)


def _parse_expires(value: str) -> float | None:
    try:
        return parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def parse_set_cookie(header: str, now: float | None = None) -> Cookie | None:
    """
    Parse one Set-Cookie header value.

    Max-Age wins over Expires whatever order they appear in. Expiry attributes
    that can't be parsed are ignored rather than rejecting the cookie.
    """
    header = header.strip()
    if not header:
        return None

    name_value, *attributes = header.split(';')
    name, sep, value = name_value.partition('=')
    name = name.strip()
    if not name or not sep:
        return None

    now = time.time() if now is None else now
    max_age_expiry = None
    expires_expiry = None

    for attribute in attributes:
        attr_name, _, attr_value = attribute.partition('=')
        attr_name = attr_name.strip().lower()
        attr_value = attr_value.strip()
        if attr_name == 'max-age' and attr_value:
            try:
                max_age_expiry = now + int(attr_value)
            except ValueError:
                continue
        elif attr_name == 'expires' and attr_value:
            expires_expiry = _parse_expires(attr_value)

    expires_at = max_age_expiry if max_age_expiry is not None else expires_expiry
    return Cookie(name=name, value=value.strip(), expires_at=expires_at)


def split_set_cookie_header(header: str) -> list[str]:
    """
    Split a comma-folded Set-Cookie header into individual cookies.

    Commas inside an Expires date ("Wed, 21 Oct 2026 ...") are not separators.
    Only a comma that directly follows a weekday name counts as part of the date.
    """
    parts = []
    buffer = ''
    expires_start = None

    for i, char in enumerate(header):
        if expires_start is not None:
            if char == ';':
                expires_start = None
            elif char == ',':
                date_so_far = header[expires_start:i].strip()
                if date_so_far.isalpha():
                    buffer += char
                    continue
                expires_start = None

        if char == ',' and expires_start is None:
            parts.append(buffer.strip())
            buffer = ''
            continue

        if expires_start is None and header[i:i + 8].lower() == 'expires=':
            expires_start = i + 8

        buffer += char

    if buffer.strip():
        parts.append(buffer.strip())
    return [p for p in parts if p]


def set_cookie_headers(response: requests.Response) -> list[str]:
    """Return every Set-Cookie header on a response, one string per cookie."""
    raw_headers = getattr(getattr(response, 'raw', None), 'headers', None)
    if raw_headers is not None and hasattr(raw_headers, 'getlist'):
        values = raw_headers.getlist('Set-Cookie')
        if values:
            return list(values)

    header = response.headers.get('Set-Cookie')
    if not header:
        return []
    return split_set_cookie_header(header)


class CookieJar:
    """Named cookies with expiry. Last write wins per name."""

    def __init__(
        self,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], float] = time.time,
    ):
        self.refresh_margin = refresh_margin
        self.clock = clock
        self._cookies: dict[str, Cookie] = {}

    def __len__(self) -> int:
        return len(self._cookies)

    def __contains__(self, name: str) -> bool:
        return name in self._cookies

    def store(self, cookie: Cookie) -> None:
        self._cookies[cookie.name] = cookie

    def merge(self, headers: Iterable[str]) -> list[Cookie]:
        """Parse Set-Cookie header values into the jar. Returns what was stored."""
        stored = []
        now = self.clock()
        for header in headers:
            cookie = parse_set_cookie(header, now=now)
            if cookie is None:
                continue
            self.store(cookie)
            stored.append(cookie)
        return stored

    def get(self, name: str) -> Cookie | None:
        return self._cookies.get(name)

    def invalidate(self, name: str) -> None:
        self._cookies.pop(name, None)

    def clear(self) -> None:
        self._cookies.clear()

    def cookies(self) -> list[Cookie]:
        return list(self._cookies.values())

    def _is_fresh(self, cookie: Cookie) -> bool:
        if cookie.expires_at is None:
            return True
        return self.clock() + self.refresh_margin < cookie.expires_at

    def is_valid(self, name: str) -> bool:
        cookie = self._cookies.get(name)
        return cookie is not None and self._is_fresh(cookie)

    def header(self) -> str | None:
        """Cookie header value, skipping cookies about to expire."""
        pairs = [f'{c.name}={c.value}' for c in self._cookies.values() if self._is_fresh(c)]
        if not pairs:
            return None
        return '; '.join(pairs)
