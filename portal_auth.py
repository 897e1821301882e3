#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "playwright",
#   "playwright-stealth",
#   "python-dotenv",
# ]
# ///
"""
Portal Authentication Module

Keeps a cached, browser-derived login session for the portal so automated tests
can start already authenticated. The portal signs in through Microsoft Entra ID
with a federated ADFS password page, which is driven with Playwright.

The cached session is checked offline first (cookie expiries and file age). Only
when that check fails is a fresh login performed and the cache rewritten.

Usage:
    uv run portal_auth.py              # Ensure a valid session exists
    uv run portal_auth.py --open       # ...then open the portal with it
    uv run portal_auth.py --deep-test  # Also confirm the portal accepts it
    uv run portal_auth.py --check-only # Report whether the cache is usable

    from portal_auth import SessionManager, AuthConfig

    manager = SessionManager.from_config(AuthConfig.from_env())
    result = manager.ensure_valid_session()
"""

from __future__ import annotations

import getpass
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable
from urllib.parse import urlsplit

import requests
from dotenv import load_dotenv
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page, sync_playwright
from playwright.sync_api import TimeoutError as PlaywrightTimeout
from playwright_stealth import Stealth
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from session_cache import (
    DEFAULT_CRITICAL_COOKIES,
    DEFAULT_ESSENTIAL_COOKIE,
    DEFAULT_MAX_AGE_MINUTES,
    DEFAULT_TRUSTED_DOMAINS,
    SessionSnapshot,
    SessionStore,
    SessionValidator,
)

load_dotenv()


# Debug log file - captures login step outcomes and cookie summaries
DEBUG_LOG_FILE = Path('auth_debug.log')

DEFAULT_PORTAL_URL = 'https://motek.dev.thlonline.com/'

# URL fragments that mean the portal bounced us back to sign-in
LOGIN_REDIRECT_MARKERS = ('login', 'oauth2')

# 1Password item name for credentials (can be overridden via .env or environment variable)
ONEPASSWORD_ITEM = os.environ.get('ONEPASSWORD_ITEM', 'Portal Test User')

USER_AGENT = 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36'


class DebugLogger:
    """Logs login step outcomes and captured cookies to a file for debugging."""

    def __init__(self, filepath: Path = DEBUG_LOG_FILE):
        self.filepath = filepath
        self.enabled = False
        self._file = None

    def enable(self):
        self.enabled = True
        self._file = open(self.filepath, 'w', encoding='utf-8')
        self._write('=== Authentication Debug Log ===')
        self._write(f'Started: {datetime.now().isoformat()}')
        self._write('')

    def disable(self):
        if self._file:
            self._file.close()
            self._file = None
        self.enabled = False

    def _write(self, text: str):
        if self._file:
            self._file.write(text + '\n')
            self._file.flush()

    def log_section(self, title: str):
        if not self.enabled:
            return
        self._write('')
        self._write('=' * 80)
        self._write(f'  {title}')
        self._write('=' * 80)

    def log_step(self, outcome: 'StepOutcome', url: str | None = None):
        if not self.enabled:
            return
        self._write(f'\n--- Step {outcome.name}: {outcome.status.value} ---')
        if outcome.detail:
            self._write(f'  detail: {outcome.detail[:500]}')
        if url:
            self._write(f'  url: {url}')

    def log_cookies(self, snapshot: SessionSnapshot, label: str = 'Captured Cookies'):
        if not self.enabled:
            return
        self._write(f'\n--- {label} ---')
        for cookie in snapshot.cookies:
            self._write(f'  {cookie.name}:')
            self._write(f'    value: {cookie.value[:20]}{"..." if len(cookie.value) > 20 else ""}')
            self._write(f'    domain: {cookie.domain}')
            if cookie.is_session_scoped:
                self._write('    expires: session')
            else:
                self._write(f'    expires: {datetime.fromtimestamp(cookie.expires).isoformat()}')


# Global debug logger instance
debug_log = DebugLogger()


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(',') if item.strip())


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f'{name} must be a whole number, got {raw!r}') from e


@dataclass
class AuthConfig:
    """Settings for the portal, the session cache and the token exchange."""

    portal_url: str = DEFAULT_PORTAL_URL
    state_file: Path = Path('auth-state.json')
    storage_file: Path = Path('localStorage.json')
    storage_prefix: str = 'msal.'
    trusted_domains: tuple[str, ...] = DEFAULT_TRUSTED_DOMAINS
    critical_cookies: tuple[str, ...] = DEFAULT_CRITICAL_COOKIES
    essential_cookie: str = DEFAULT_ESSENTIAL_COOKIE
    max_age_minutes: int = DEFAULT_MAX_AGE_MINUTES
    probe_timeout_ms: int = 10000
    token_cache_file: Path = Path('auth-cache.json')
    client_id: str | None = None
    api_client_id: str | None = None
    tenant_id: str | None = None

    @classmethod
    def from_env(cls) -> 'AuthConfig':
        return cls(
            portal_url=os.environ.get('PORTAL_URL', DEFAULT_PORTAL_URL),
            state_file=Path(os.environ.get('AUTH_STATE_FILE', 'auth-state.json')),
            storage_file=Path(os.environ.get('AUTH_STORAGE_FILE', 'localStorage.json')),
            storage_prefix=os.environ.get('AUTH_STORAGE_PREFIX', 'msal.'),
            trusted_domains=_env_list('AUTH_TRUSTED_DOMAINS', DEFAULT_TRUSTED_DOMAINS),
            critical_cookies=_env_list('AUTH_CRITICAL_COOKIES', DEFAULT_CRITICAL_COOKIES),
            essential_cookie=os.environ.get('AUTH_ESSENTIAL_COOKIE', DEFAULT_ESSENTIAL_COOKIE),
            max_age_minutes=_env_int('AUTH_MAX_AGE_MINUTES', DEFAULT_MAX_AGE_MINUTES),
            probe_timeout_ms=_env_int('AUTH_PROBE_TIMEOUT_MS', 10000),
            token_cache_file=Path(os.environ.get('TOKEN_CACHE_FILE', 'auth-cache.json')),
            client_id=os.environ.get('TEST_CLIENT_ID'),
            api_client_id=os.environ.get('PROD_CLIENT_ID'),
            tenant_id=os.environ.get('TENANT_ID'),
        )

    @property
    def portal_origin(self) -> str:
        parts = urlsplit(self.portal_url)
        return f'{parts.scheme}://{parts.netloc}'

    def create_store(self, verbose: bool = True) -> SessionStore:
        return SessionStore(
            self.state_file,
            storage_file=self.storage_file,
            storage_prefix=self.storage_prefix,
            verbose=verbose,
        )

    def create_validator(self, verbose: bool = True) -> SessionValidator:
        return SessionValidator(
            trusted_domains=self.trusted_domains,
            critical_cookies=self.critical_cookies,
            essential_cookie=self.essential_cookie,
            max_age=timedelta(minutes=self.max_age_minutes),
            verbose=verbose,
        )


def is_1password_available() -> bool:
    """Check if the 1Password CLI (op) is installed and available."""
    return shutil.which('op') is not None


def get_credentials_from_env() -> tuple[str, str] | None:
    """Return the test user from TEST_USER_EMAIL / TEST_USER_PASSWORD, if both are set."""
    username = os.environ.get('TEST_USER_EMAIL', '').strip()
    password = os.environ.get('TEST_USER_PASSWORD', '')
    if username and password:
        return username, password
    return None


def get_credentials_from_prompt() -> tuple[str, str]:
    """
    Prompt the user to enter their credentials manually.

    Returns (username, password) tuple.
    """
    print()
    print('Please enter the portal test user credentials:')
    username = input('  Username (email): ').strip()
    password = getpass.getpass('  Password: ')

    if not username or not password:
        raise ValueError('Username and password are required')

    return username, password


def get_credentials_from_1password(item_name: str = ONEPASSWORD_ITEM) -> tuple[str, str]:
    """
    Retrieve username and password from 1Password using the op CLI.

    Returns (username, password) tuple.
    """
    try:
        username_result = subprocess.run(
            ['op', 'item', 'get', item_name, '--fields', 'username'],
            capture_output=True,
            text=True,
            check=True,
        )
        username = username_result.stdout.strip()

        # Secret fields need --reveal
        password_result = subprocess.run(
            ['op', 'item', 'get', item_name, '--fields', 'password', '--reveal'],
            capture_output=True,
            text=True,
            check=True,
        )
        password = password_result.stdout.strip()

        if not username or not password:
            raise ValueError(f'Empty credentials retrieved from 1Password item "{item_name}"')

        return username, password

    except subprocess.CalledProcessError as e:
        raise RuntimeError(
            f'Failed to get credentials from 1Password: {e.stderr}\n'
            f'Make sure you are signed into 1Password CLI (run: op signin)'
        ) from e
    except FileNotFoundError as e:
        raise RuntimeError(
            '1Password CLI (op) not found. Please install it:\n'
            '  brew install 1password-cli'
        ) from e


def get_credentials(item_name: str = ONEPASSWORD_ITEM, verbose: bool = True) -> tuple[str, str]:
    """
    Get the test user's credentials.

    Order of preference:
    - TEST_USER_EMAIL / TEST_USER_PASSWORD from the environment (or .env)
    - the 1Password CLI, when installed
    - an interactive prompt

    Returns (username, password) tuple.
    """
    credentials = get_credentials_from_env()
    if credentials:
        return credentials

    if is_1password_available():
        if verbose:
            print(f'Getting credentials from 1Password ({item_name})...')
        try:
            return get_credentials_from_1password(item_name)
        except (RuntimeError, ValueError) as e:
            if verbose:
                print(f'  Warning: {e}')
                print('  Falling back to manual credential entry...')
            return get_credentials_from_prompt()

    return get_credentials_from_prompt()


class LoginStepError(RuntimeError):
    """A mandatory login step failed, so the login cannot continue."""

    def __init__(self, step: str, cause: Exception):
        super().__init__(f'Login step "{step}" failed: {cause}')
        self.step = step
        self.cause = cause


class RegenerationError(RuntimeError):
    """Fresh login did not produce a new session; the cached files are untouched."""


class StepStatus(Enum):
    SUCCESS = 'success'
    FAILED = 'failed'
    SKIPPED = 'skipped'


class StepOutcome:
    def __init__(self, name: str, status: StepStatus, detail: str = ''):
        self.name = name
        self.status = status
        self.detail = detail

    def __repr__(self) -> str:
        return f'StepOutcome({self.name!r}, {self.status.value!r})'


StepAction = Callable[[Page, AuthConfig, tuple[str, str], int], None]


class LoginStep:
    """
    One named step of the sign-in walkthrough.

    ``timeout`` (ms) bounds the step's main wait. A fatal step aborts the login
    on any error; other steps are skipped when their wait times out, on the
    assumption that the page did not need them.
    """

    def __init__(self, name: str, action: StepAction, timeout: int = 10000, fatal: bool = False):
        self.name = name
        self.action = action
        self.timeout = timeout
        self.fatal = fatal


USERNAME_SELECTOR = 'input[type="email"], input[name="loginfmt"], input[name="UserName"]'
SUBMIT_SELECTOR = 'input[type="submit"], button[type="submit"]'
PASSWORD_SELECTOR = 'input[type="password"]'
STAY_SIGNED_IN_SELECTOR = 'input[value="Yes"], input[value="No"]'


def open_portal(page: Page, config: AuthConfig, credentials: tuple[str, str], timeout: int) -> None:
    page.goto(config.portal_url, timeout=timeout)


def click_login_button(page: Page, config: AuthConfig, credentials: tuple[str, str], timeout: int) -> None:
    # The landing page has a single button that starts the Entra ID redirect
    page.wait_for_selector('button', timeout=timeout)
    page.click('button')


def enter_username(page: Page, config: AuthConfig, credentials: tuple[str, str], timeout: int) -> None:
    page.wait_for_selector(USERNAME_SELECTOR, timeout=timeout)
    page.fill(USERNAME_SELECTOR, credentials[0])
    page.click(SUBMIT_SELECTOR)


def enter_federated_password(page: Page, config: AuthConfig, credentials: tuple[str, str], timeout: int) -> None:
    page.wait_for_url('**/adfs/ls/**', timeout=timeout)
    page.wait_for_selector(PASSWORD_SELECTOR, timeout=5000)
    page.fill(PASSWORD_SELECTOR, credentials[1])
    page.keyboard.press('Enter')


def decline_stay_signed_in(page: Page, config: AuthConfig, credentials: tuple[str, str], timeout: int) -> None:
    page.wait_for_selector(STAY_SIGNED_IN_SELECTOR, timeout=timeout)
    page.click('input[value="No"]')


def wait_for_portal(page: Page, config: AuthConfig, credentials: tuple[str, str], timeout: int) -> None:
    page.wait_for_url(f'{config.portal_url.rstrip("/")}/**', timeout=timeout)
    page.wait_for_load_state('networkidle', timeout=timeout)


DEFAULT_LOGIN_STEPS = (
    LoginStep('open_portal', open_portal, timeout=30000, fatal=True),
    LoginStep('click_login_button', click_login_button, timeout=10000, fatal=True),
    LoginStep('enter_username', enter_username, timeout=10000),
    LoginStep('federated_password', enter_federated_password, timeout=10000),
    LoginStep('stay_signed_in', decline_stay_signed_in, timeout=10000),
    LoginStep('return_to_portal', wait_for_portal, timeout=60000),
)


class LoginFlow:
    """Runs login steps in order and records how each one went."""

    def __init__(self, steps=DEFAULT_LOGIN_STEPS, verbose: bool = True):
        self.steps = list(steps)
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def run(self, page: Page, config: AuthConfig, credentials: tuple[str, str]) -> list[StepOutcome]:
        outcomes = []
        for step in self.steps:
            outcome = self._run_step(step, page, config, credentials)
            debug_log.log_step(outcome, _page_url(page))
            outcomes.append(outcome)
        return outcomes

    def _run_step(self, step: LoginStep, page: Page, config: AuthConfig, credentials: tuple[str, str]) -> StepOutcome:
        try:
            step.action(page, config, credentials, step.timeout)
        except PlaywrightError as e:
            if step.fatal:
                self._log(f'  {step.name}: failed, aborting login')
                debug_log.log_step(StepOutcome(step.name, StepStatus.FAILED, str(e)), _page_url(page))
                raise LoginStepError(step.name, e) from e
            if isinstance(e, PlaywrightTimeout):
                self._log(f'  {step.name}: not needed (timed out waiting), continuing...')
                return StepOutcome(step.name, StepStatus.SKIPPED, str(e))
            self._log(f'  {step.name}: failed ({_first_line(e)}), continuing...')
            return StepOutcome(step.name, StepStatus.FAILED, str(e))

        self._log(f'  {step.name}: done')
        return StepOutcome(step.name, StepStatus.SUCCESS)


def _page_url(page) -> str | None:
    try:
        return page.url
    except PlaywrightError:
        return None


def _first_line(error: Exception) -> str:
    text = str(error).strip()
    return text.splitlines()[0] if text else type(error).__name__


class SessionRegenerator:
    """
    Logs in from scratch and overwrites the cached session.

    Nothing is written unless the login flow completes and the browser state is
    captured; any failure is raised as RegenerationError with the cache left as
    it was. There is no automatic retry.
    """

    def __init__(
        self,
        config: AuthConfig,
        store: SessionStore,
        flow: LoginFlow | None = None,
        credentials: tuple[str, str] | None = None,
        headless: bool = True,
        browser_type: str = 'chromium',
        stealth: bool = True,
        verbose: bool = True,
        playwright_factory=sync_playwright,
    ):
        self.config = config
        self.store = store
        self.flow = flow or LoginFlow(verbose=verbose)
        self.credentials = credentials
        self.headless = headless
        self.browser_type = browser_type
        self.stealth = stealth
        self.verbose = verbose
        self.playwright_factory = playwright_factory

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def regenerate(self) -> SessionSnapshot:
        debug_log.log_section('REGENERATE SESSION')
        try:
            credentials = self.credentials or get_credentials(verbose=self.verbose)
        except (RuntimeError, ValueError) as e:
            self._log(f'  Could not get credentials: {e}')
            raise RegenerationError(f'Could not get credentials: {e}') from e

        if self.verbose:
            print(f'  Username: {credentials[0]}')

        state = self._login(credentials)
        try:
            snapshot = SessionSnapshot.from_storage_state(state)
        except (ValueError, KeyError, TypeError) as e:
            self._log(f'  Captured browser state is malformed: {e}')
            raise RegenerationError(f'Captured browser state is malformed: {e}') from e
        debug_log.log_cookies(snapshot)

        try:
            self.store.save(snapshot)
        except OSError as e:
            self._log(f'  Could not save session state: {e}')
            raise RegenerationError(f'Could not save session state: {e}') from e

        self._log(f'  Captured {len(snapshot.cookies)} cookies')
        return snapshot

    def _login(self, credentials: tuple[str, str]) -> dict:
        self._log(f'Starting browser-based login ({self.browser_type})...')
        try:
            with self.playwright_factory() as p:
                browser_launcher = getattr(p, self.browser_type, p.chromium)
                browser = browser_launcher.launch(headless=self.headless)
                try:
                    context = browser.new_context(
                        user_agent=USER_AGENT,
                        viewport={'width': 1280, 'height': 800},
                    )
                    page = context.new_page()
                    if self.stealth:
                        Stealth().apply_stealth_sync(page)

                    self.flow.run(page, self.config, credentials)
                    return context.storage_state()
                finally:
                    browser.close()

        except LoginStepError as e:
            self._log(f'  Login failed: {_first_line(e)}')
            raise self._failure(e.cause, str(e)) from e
        except PlaywrightError as e:
            self._log(f'  Login failed: {_first_line(e)}')
            raise self._failure(e, f'Login failed: {e}') from e
        except Exception as e:
            self._log(f'  Login failed: {_first_line(e)}')
            raise RegenerationError(f'Login failed: {e}') from e

    def _failure(self, cause: Exception, message: str) -> RegenerationError:
        error_msg = str(cause)
        if 'Page crashed' in error_msg or 'browser has disconnected' in error_msg.lower():
            return RegenerationError(
                f'Browser crashed during login. This may indicate the browser '
                f'is not properly installed. Try running:\n'
                f'  uv run playwright install {self.browser_type}\n\n'
                f'Original error: {cause}'
            )
        return RegenerationError(message)


class LiveProbe:
    """
    Confirms the portal accepts a cached session.

    Opens the portal in a throwaway headless browser using the snapshot and
    rejects the session if the page ends up on a sign-in URL.
    """

    def __init__(
        self,
        config: AuthConfig,
        timeout: int | None = None,
        browser_type: str = 'chromium',
        verbose: bool = True,
        playwright_factory=sync_playwright,
    ):
        self.config = config
        self.timeout = config.probe_timeout_ms if timeout is None else timeout
        self.browser_type = browser_type
        self.verbose = verbose
        self.playwright_factory = playwright_factory

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def probe(self, snapshot: SessionSnapshot | None) -> bool:
        self._log('Testing session against the portal...')
        if snapshot is None:
            self._log('  No session to test')
            return False

        try:
            with self.playwright_factory() as p:
                browser_launcher = getattr(p, self.browser_type, p.chromium)
                browser = browser_launcher.launch(headless=True)
                try:
                    context = browser.new_context(storage_state=snapshot.to_storage_state())
                    page = context.new_page()
                    page.goto(self.config.portal_url, timeout=self.timeout)
                    page.wait_for_load_state('networkidle', timeout=self.timeout)
                    current_url = page.url
                finally:
                    browser.close()
        except PlaywrightError as e:
            self._log(f'  Session test failed: {_first_line(e)}')
            return False

        if any(marker in current_url.lower() for marker in LOGIN_REDIRECT_MARKERS):
            self._log(f'  Session test failed - redirected to login ({current_url})')
            return False

        self._log('  Session test passed - user is logged in')
        return True


def open_authenticated_homepage(
    snapshot: SessionSnapshot,
    config: AuthConfig,
    browser_type: str = 'chromium',
    verbose: bool = True,
    playwright_factory=sync_playwright,
) -> bool:
    """
    Open the portal in a visible browser using the cached session.

    Blocks until the page is closed by the user.
    """
    if verbose:
        print('Opening portal with authenticated session...')

    try:
        with playwright_factory() as p:
            browser_launcher = getattr(p, browser_type, p.chromium)
            browser = browser_launcher.launch(headless=False)
            try:
                context = browser.new_context(storage_state=snapshot.to_storage_state())
                page = context.new_page()
                page.goto(config.portal_url)
                if verbose:
                    print('  Portal opened with authenticated session!')
                    print('  Browser will stay open - close the window when done')
                page.wait_for_event('close', timeout=0)
            finally:
                browser.close()
    except PlaywrightError as e:
        if verbose:
            print(f'  Failed to open portal: {_first_line(e)}')
        return False

    return True


def create_requests_session(snapshot: SessionSnapshot, config: AuthConfig) -> requests.Session:
    """
    Build a requests session carrying the cached cookies, for API-level tests.

    Retries transient failures and sends browser-like headers for the portal.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=['POST', 'GET'],
    )
    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=10,
        pool_maxsize=10,
    )
    session.mount('https://', adapter)

    session.headers.update({
        'Accept': 'application/json, text/plain, */*',
        'Accept-Language': 'en-GB,en;q=0.9',
        'User-Agent': USER_AGENT,
        'Origin': config.portal_origin,
        'Referer': config.portal_url,
    })

    for cookie in snapshot.cookies:
        session.cookies.set(
            cookie.name,
            cookie.value,
            domain=cookie.domain,
            path=cookie.attributes.get('path', '/'),
        )

    return session


class EnsureResult:
    """What ensure_valid_session did and whether a usable session now exists."""

    def __init__(self):
        self.ready = False
        self.regenerations = 0
        self.probe_passed: bool | None = None
        self.opened = False
        self.snapshot: SessionSnapshot | None = None
        self.error: RegenerationError | None = None

    def __repr__(self) -> str:
        return (
            f'EnsureResult(ready={self.ready!r}, regenerations={self.regenerations!r}, '
            f'probe_passed={self.probe_passed!r}, opened={self.opened!r})'
        )


class SessionManager:
    """
    Makes sure a usable cached session exists.

    The cache is checked offline first and regenerated if rejected. Optionally
    the session is then tried against the live portal; a failed probe triggers
    one more regeneration, which is not probed again. Finally the session can
    be handed to an opener (e.g. a visible browser on the portal).
    """

    def __init__(
        self,
        store: SessionStore,
        validator: SessionValidator,
        regenerator: SessionRegenerator,
        probe: LiveProbe | None = None,
        opener: Callable[[SessionSnapshot], bool] | None = None,
        verbose: bool = True,
    ):
        self.store = store
        self.validator = validator
        self.regenerator = regenerator
        self.probe = probe
        self.opener = opener
        self.verbose = verbose

    @classmethod
    def from_config(
        cls,
        config: AuthConfig,
        verbose: bool = True,
        headless: bool = True,
        browser_type: str = 'chromium',
    ) -> 'SessionManager':
        store = config.create_store(verbose=verbose)
        return cls(
            store=store,
            validator=config.create_validator(verbose=verbose),
            regenerator=SessionRegenerator(
                config, store, headless=headless, browser_type=browser_type, verbose=verbose
            ),
            probe=LiveProbe(config, browser_type=browser_type, verbose=verbose),
            opener=lambda snapshot: open_authenticated_homepage(
                snapshot, config, browser_type=browser_type, verbose=verbose
            ),
            verbose=verbose,
        )

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def ensure_valid_session(self, skip_deep_test: bool = True, open_homepage: bool = False) -> EnsureResult:
        result = EnsureResult()
        self._log('Ensuring valid authentication state...')

        if not self.validator.is_valid(self.store.load()):
            self._log('Generating new session state...')
            result.error = self._regenerate(result)

        snapshot = self.store.load()

        if not skip_deep_test and self.probe is not None:
            result.probe_passed = self.probe.probe(snapshot)
            if not result.probe_passed:
                self._log('Session rejected by the portal, generating new one...')
                result.error = self._regenerate(result)
                return self._finish(result)

        if open_homepage and self.opener is not None and result.error is None and snapshot is not None:
            result.opened = bool(self.opener(snapshot))

        return self._finish(result)

    def _regenerate(self, result: EnsureResult) -> RegenerationError | None:
        result.regenerations += 1
        try:
            snapshot = self.regenerator.regenerate()
        except RegenerationError as e:
            self._log(f'Session regeneration failed: {_first_line(e)}')
            if self.store.exists():
                self._log('  Previous session state left in place')
            return e

        self._log(f'Session regeneration completed ({len(snapshot.cookies)} cookies)')
        return None

    def _finish(self, result: EnsureResult) -> EnsureResult:
        result.snapshot = self.store.load()
        result.ready = result.error is None and result.snapshot is not None
        if result.ready:
            self._log('Session ready to use!')
        return result


def main():
    import argparse

    parser = argparse.ArgumentParser(description='Ensure a valid cached portal session exists')
    parser.add_argument('--open', action='store_true', help='Open the portal with the session when ready')
    parser.add_argument('--deep-test', action='store_true', help='Confirm the portal accepts the session (slower)')
    parser.add_argument('--check-only', action='store_true', help='Only report whether the cached session is usable')
    parser.add_argument('--clear-cache', action='store_true', help='Delete the cached session and force a fresh login')
    parser.add_argument('--visible', action='store_true', help='Show browser window during login')
    parser.add_argument('--debug', action='store_true', help=f'Write login step details to {DEBUG_LOG_FILE}')
    parser.add_argument('--quiet', '-q', action='store_true', help='Suppress progress messages')
    parser.add_argument('--browser', choices=['chromium', 'firefox', 'webkit'], default='chromium',
                        help='Browser to use for login (default: chromium)')
    args = parser.parse_args()

    verbose = not args.quiet
    config = AuthConfig.from_env()

    if args.check_only:
        valid = config.create_validator(verbose=verbose).is_valid(config.create_store(verbose=verbose).load())
        sys.exit(0 if valid else 1)

    manager = SessionManager.from_config(
        config, verbose=verbose, headless=not args.visible, browser_type=args.browser
    )

    if args.clear_cache:
        manager.store.clear()

    if args.debug:
        debug_log.enable()
        if verbose:
            print(f'  Debug logging enabled: {DEBUG_LOG_FILE}')

    try:
        result = manager.ensure_valid_session(skip_deep_test=not args.deep_test, open_homepage=args.open)
    finally:
        if args.debug:
            debug_log.disable()

    sys.exit(0 if result.ready else 1)


if __name__ == '__main__':
    main()
