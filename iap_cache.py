"""
Persistent session cache.

Stores the cookie jar and the browser user agent on disk so a later process can
skip the identity check while the session cookie is still fresh. One JSON file per
(base URL, principal) pair:

    {"cookies": [{"name": ..., "value": ..., "expiresAt": ...}], "userAgent": ...}

The file is rewritten wholesale on every save with no locking. Two processes
sharing a key can clobber each other's writes; the last writer wins.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

from iap_cookies import Cookie

DEFAULT_CACHE_DIR = Path.home() / '.cache' / 'iap-session'


@dataclass
class CacheEntry:
    cookies: list[Cookie] = field(default_factory=list)
    user_agent: str | None = None

    def to_dict(self) -> dict:
        data = {'cookies': [c.to_dict() for c in self.cookies]}
        if self.user_agent:
            data['userAgent'] = self.user_agent
        return data

    @classmethod
    def from_data(cls, data) -> 'CacheEntry':
        # Early cache files were a bare list of cookies
        if isinstance(data, list):
            raw_cookies, user_agent = data, None
        elif isinstance(data, dict):
            raw_cookies, user_agent = data.get('cookies') or [], data.get('userAgent')
        else:
            return cls()

        cookies = []
        for item in raw_cookies if isinstance(raw_cookies, list) else []:
            if isinstance(item, dict):
                cookie = Cookie.from_dict(item)
                if cookie:
                    cookies.append(cookie)
        return cls(cookies=cookies, user_agent=user_agent if isinstance(user_agent, str) else None)


class SessionCache(Protocol):
    def load(self) -> CacheEntry: ...

    def save(self, entry: CacheEntry) -> None: ...

    def clear(self) -> None: ...


def _sanitize(value: str) -> str:
    return re.sub(r'[^a-z0-9]', '_', value, flags=re.IGNORECASE)


def cache_key(base_url: str, principal: str) -> str:
    """Stable, filesystem-safe key for a (base URL, principal) pair."""
    digest = hashlib.sha256(f'{base_url}|{principal}'.encode('utf-8')).hexdigest()[:16]
    readable = _sanitize(f'{base_url}_{principal}')[:80]
    return f'{readable}_{digest}'


class FileSessionCache:
    """JSON file cache under a per-user directory. I/O failures never raise."""

    def __init__(
        self,
        base_url: str,
        principal: str,
        cache_dir: Path | None = None,
        verbose: bool = True,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir else DEFAULT_CACHE_DIR
        self.key = cache_key(base_url, principal)
        self.cache_file = self.cache_dir / f'session_{self.key}.json'
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def profile_dir(self) -> Path:
        """Browser profile directory for this key, so device trust survives restarts."""
        return self.cache_dir / f'browser_profile_{self.key}'

    def load(self) -> CacheEntry:
        try:
            if not self.cache_file.exists():
                return CacheEntry()
            data = json.loads(self.cache_file.read_text())
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            self._log(f'  Cache file unreadable ({e}), starting without cached session')
            return CacheEntry()

        return CacheEntry.from_data(data)

    def save(self, entry: CacheEntry) -> None:
        data = entry.to_dict()
        data['savedAt'] = datetime.now().isoformat()
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.cache_file.write_text(json.dumps(data, indent=2))
            self.cache_file.chmod(0o600)  # Restrict permissions since it contains session cookies
        except OSError as e:
            self._log(f'  Warning: failed to write session cache {self.cache_file}: {e}')

    def clear(self) -> None:
        try:
            if self.cache_file.exists():
                self.cache_file.unlink()
                self._log('  Session cache cleared')
        except OSError as e:
            self._log(f'  Warning: failed to clear session cache {self.cache_file}: {e}')


class InMemorySessionCache:
    """Cache that never touches disk. Keeps copies so callers can't mutate stored state."""

    def __init__(self, entry: CacheEntry | None = None):
        self.entry = entry
        self.saves = 0

    def load(self) -> CacheEntry:
        if self.entry is None:
            return CacheEntry()
        return CacheEntry.from_data(self.entry.to_dict())

    def save(self, entry: CacheEntry) -> None:
        self.entry = CacheEntry.from_data(entry.to_dict())
        self.saves += 1

    def clear(self) -> None:
        self.entry = None
