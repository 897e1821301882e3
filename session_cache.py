#!/usr/bin/env python3
# /// script
# dependencies = []
# ///
"""
Portal Session Cache

Persists the browser session (cookies + localStorage) captured after logging in
to the portal, and decides without any network access whether a cached session
is still usable.

The snapshot file uses Playwright's storage_state format, so it can be handed
straight to ``browser.new_context(storage_state=...)`` by test suites.

Usage:
    from session_cache import SessionStore, SessionValidator

    store = SessionStore(Path('auth-state.json'))
    if not SessionValidator().is_valid(store.load()):
        ...  # regenerate
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

# Defaults for the Entra ID / ADFS protected portal
DEFAULT_TRUSTED_DOMAINS = ('microsoftonline.com', 'thlonline.com')
DEFAULT_CRITICAL_COOKIES = ('ESTSAUTHPERSISTENT', 'fpc', 'buid')
DEFAULT_ESSENTIAL_COOKIE = 'ESTSAUTHPERSISTENT'
DEFAULT_MAX_AGE_MINUTES = 50

# Playwright marks session cookies with expires = -1
SESSION_COOKIE_EXPIRES = -1

COOKIE_ATTRIBUTES = ('path', 'httpOnly', 'secure', 'sameSite')


@dataclass
class Cookie:
    """A browser cookie. ``expires`` is None for session-scoped cookies."""

    name: str
    domain: str
    value: str = ''
    expires: float | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> 'Cookie':
        """Build from a Playwright cookie dict, normalising the expiry sentinel."""
        if not isinstance(data, dict):
            raise ValueError(f'Cookie must be a JSON object, got {type(data).__name__}')
        if not isinstance(data.get('name'), str):
            raise ValueError('Cookie is missing a name')

        expires = data.get('expires')
        if expires is None or float(expires) <= 0:
            expires = None
        else:
            expires = float(expires)

        return cls(
            name=data['name'],
            domain=data.get('domain') or '',
            value=data.get('value') or '',
            expires=expires,
            attributes={k: data[k] for k in COOKIE_ATTRIBUTES if k in data},
        )

    def to_dict(self) -> dict:
        data = {
            'name': self.name,
            'value': self.value,
            'domain': self.domain,
            'expires': SESSION_COOKIE_EXPIRES if self.expires is None else self.expires,
        }
        data.update(self.attributes)
        return data

    @property
    def is_session_scoped(self) -> bool:
        return self.expires is None

    def is_expired(self, now: float) -> bool:
        """True only for a fixed expiry strictly in the past."""
        return self.expires is not None and self.expires < now

    def expires_after(self, now: float) -> bool:
        return self.expires is not None and self.expires > now

    def matches_domain(self, domains) -> bool:
        return any(domain in self.domain for domain in domains)


@dataclass
class SessionSnapshot:
    """
    Cookies and client storage representing a logged-in browser session.

    ``storage`` maps origin -> {key: value} for localStorage. ``captured_at`` is
    not part of the file contents; the store fills it in from the file's
    modification time.
    """

    cookies: list[Cookie] = field(default_factory=list)
    storage: dict[str, dict[str, str]] = field(default_factory=dict)
    captured_at: datetime | None = None

    @classmethod
    def from_storage_state(cls, state: dict, captured_at: datetime | None = None) -> 'SessionSnapshot':
        if not isinstance(state, dict):
            raise ValueError('Storage state must be a JSON object')

        cookies = [Cookie.from_dict(c) for c in _json_list(state, 'cookies')]

        storage = {}
        for origin in _json_list(state, 'origins'):
            if not isinstance(origin, dict) or not isinstance(origin.get('origin'), str):
                raise ValueError('Each origin must be a JSON object with an "origin" URL')
            entries = {}
            for item in _json_list(origin, 'localStorage'):
                if not isinstance(item, dict):
                    raise ValueError('localStorage entries must be JSON objects')
                entries[item['name']] = item['value']
            storage[origin['origin']] = entries

        return cls(cookies=cookies, storage=storage, captured_at=captured_at)

    def to_storage_state(self) -> dict:
        """Render in Playwright's storage_state format."""
        return {
            'cookies': [c.to_dict() for c in self.cookies],
            'origins': [
                {
                    'origin': origin,
                    'localStorage': [{'name': k, 'value': v} for k, v in entries.items()],
                }
                for origin, entries in self.storage.items()
            ],
        }

    def storage_entries(self, prefix: str = '') -> dict[str, str]:
        """Flatten localStorage across origins, keeping keys under ``prefix``."""
        entries = {}
        for origin_entries in self.storage.values():
            for key, value in origin_entries.items():
                if key.startswith(prefix):
                    entries[key] = value
        return entries

    def age(self, now: datetime | None = None) -> timedelta | None:
        if self.captured_at is None:
            return None
        return (now or datetime.now()) - self.captured_at


def _json_list(data: dict, key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f'"{key}" must be a list, got {type(value).__name__}')
    return value


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file beside ``path`` and rename it into place."""
    payload = json.dumps(data, indent=2)
    _replace_with(path, payload)


def _write_temp(path: Path, payload: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.chmod(0o600)  # Contains auth cookies and tokens
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path


def _replace_with(path: Path, payload: str) -> None:
    tmp_path = _write_temp(path, payload)
    try:
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


class SessionStore:
    """
    Reads and writes the persisted session snapshot.

    Two artifacts are written on save: the full storage state (read back by the
    validator, the live probe and test suites) and a storage-only dump holding
    the localStorage keys under ``storage_prefix``, kept for debugging.
    """

    def __init__(
        self,
        state_file: Path = Path('auth-state.json'),
        storage_file: Path | None = Path('localStorage.json'),
        storage_prefix: str = 'msal.',
        verbose: bool = True,
    ):
        self.state_file = Path(state_file)
        self.storage_file = Path(storage_file) if storage_file else None
        self.storage_prefix = storage_prefix
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def exists(self) -> bool:
        return self.state_file.exists()

    def load(self) -> SessionSnapshot | None:
        """Load the snapshot, or None when it is missing or unreadable."""
        if not self.state_file.exists():
            return None

        try:
            captured_at = datetime.fromtimestamp(self.state_file.stat().st_mtime)
            state = json.loads(self.state_file.read_text(encoding='utf-8'))
            return SessionSnapshot.from_storage_state(state, captured_at=captured_at)
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
            self._log(f'  Session file {self.state_file} is unreadable: {e}')
            return None

    def save(self, snapshot: SessionSnapshot) -> None:
        """
        Replace both artifacts with the contents of ``snapshot``.

        Everything is serialized and written to temp files before either
        artifact is renamed into place, so a failure while writing leaves the
        previous files as they were. The debug dump is renamed first and the
        state file last: if the final rename fails, only the dump is newer than
        the state file, never the other way round.
        """
        pending = []
        if self.storage_file:
            entries = snapshot.storage_entries(self.storage_prefix)
            pending.append((self.storage_file, json.dumps(entries, indent=2)))
        pending.append((self.state_file, json.dumps(snapshot.to_storage_state(), indent=2)))

        temp_files = []
        try:
            for path, payload in pending:
                temp_files.append((_write_temp(path, payload), path))
            for tmp_path, path in temp_files:
                os.replace(tmp_path, path)
        finally:
            for tmp_path, _ in temp_files:
                tmp_path.unlink(missing_ok=True)

        snapshot.captured_at = datetime.fromtimestamp(self.state_file.stat().st_mtime)
        self._log(f'  Session state saved to {self.state_file}')
        if self.storage_file:
            self._log(f'  localStorage ({self.storage_prefix}*) saved to {self.storage_file}')

    def clear(self) -> None:
        """Delete the cached artifacts."""
        removed = False
        for path in (self.state_file, self.storage_file):
            if path and path.exists():
                path.unlink()
                removed = True
        if removed:
            self._log('  Session cache cleared')


class ValidationResult:
    """Outcome of a validity check, with the reason for the verdict."""

    def __init__(self, valid: bool, reason: str):
        self.valid = valid
        self.reason = reason

    def __bool__(self) -> bool:
        return self.valid

    def __repr__(self) -> str:
        return f'ValidationResult(valid={self.valid!r}, reason={self.reason!r})'


class SessionValidator:
    """
    Decides offline whether a cached snapshot can still be used.

    Checks run cheapest first and stop at the first failure:
    trusted-domain cookies present, no critical cookie past its fixed expiry,
    essential cookie present and unexpired, snapshot younger than max_age.
    Session-scoped cookies (no fixed expiry) never fail the critical check.
    """

    def __init__(
        self,
        trusted_domains=DEFAULT_TRUSTED_DOMAINS,
        critical_cookies=DEFAULT_CRITICAL_COOKIES,
        essential_cookie: str = DEFAULT_ESSENTIAL_COOKIE,
        max_age: timedelta = timedelta(minutes=DEFAULT_MAX_AGE_MINUTES),
        verbose: bool = True,
    ):
        self.trusted_domains = tuple(trusted_domains)
        self.critical_cookies = tuple(critical_cookies)
        self.essential_cookie = essential_cookie
        self.max_age = max_age
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def check(self, snapshot: SessionSnapshot | None, now: datetime | None = None) -> ValidationResult:
        now = now or datetime.now()
        result = self._evaluate(snapshot, now)
        self._log(f'  {result.reason}')
        return result

    def is_valid(self, snapshot: SessionSnapshot | None, now: datetime | None = None) -> bool:
        return self.check(snapshot, now).valid

    def _evaluate(self, snapshot: SessionSnapshot | None, now: datetime) -> ValidationResult:
        if snapshot is None:
            return ValidationResult(False, 'No session snapshot found')

        trusted = [c for c in snapshot.cookies if c.matches_domain(self.trusted_domains)]
        if not trusted:
            return ValidationResult(
                False, f'No cookies for trusted domains ({", ".join(self.trusted_domains)})'
            )

        timestamp = now.timestamp()
        expired = [
            c.name for c in trusted
            if c.name in self.critical_cookies and c.is_expired(timestamp)
        ]
        if expired:
            return ValidationResult(False, f'Critical cookies expired: {", ".join(expired)}')

        if not any(c.name == self.essential_cookie and c.expires_after(timestamp) for c in trusted):
            return ValidationResult(
                False, f'Missing essential authentication cookie ({self.essential_cookie})'
            )

        age = snapshot.age(now)
        if age is None:
            return ValidationResult(False, 'Session capture time unknown')

        age_minutes = round(age.total_seconds() / 60)
        if age > self.max_age:
            return ValidationResult(False, f'Session is {age_minutes} minutes old, regenerating')

        return ValidationResult(True, f'Session is valid ({age_minutes} minutes old)')
