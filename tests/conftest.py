"""Shared pytest fixtures and Playwright stand-ins."""

import json
import time

import pytest

from portal_auth import AuthConfig

PORTAL_URL = 'https://portal.example.com/'
CREDENTIALS = ('tester@example.com', 'hunter2')


def make_state(now=None, essential_expires=None, extra_cookies=(), storage=None):
    """Playwright storage state for a freshly logged-in session."""
    now = time.time() if now is None else now
    essential_expires = now + 3600 if essential_expires is None else essential_expires
    cookies = [
        {
            'name': 'ESTSAUTHPERSISTENT',
            'value': 'persist-token',
            'domain': '.login.microsoftonline.com',
            'path': '/',
            'expires': essential_expires,
            'httpOnly': True,
            'secure': True,
            'sameSite': 'None',
        },
        {
            'name': 'buid',
            'value': 'buid-value',
            'domain': 'login.microsoftonline.com',
            'path': '/',
            'expires': -1,
            'httpOnly': True,
            'secure': True,
            'sameSite': 'None',
        },
        {
            'name': 'portal_session',
            'value': 'abc',
            'domain': 'portal.thlonline.com',
            'path': '/',
            'expires': -1,
        },
    ]
    cookies.extend(extra_cookies)

    if storage is None:
        storage = {
            'msal.account.keys': '["acc-1"]',
            'msal.token.keys.client': '{"idToken": []}',
            'theme': 'dark',
        }

    return {
        'cookies': cookies,
        'origins': [
            {
                'origin': 'https://portal.thlonline.com',
                'localStorage': [{'name': k, 'value': v} for k, v in storage.items()],
            }
        ],
    }


def write_state(path, state):
    path.write_text(json.dumps(state, indent=2))


class FakeKeyboard:
    def __init__(self, page):
        self.page = page

    def press(self, key):
        self.page._call('keyboard.press', key)


class FakePage:
    """
    Records calls and replays them against a scripted set of failures.

    ``failures`` maps a method name, or a (method, first argument) pair, to the
    exception that call should raise. Waits also record the timeout they were
    given in ``timeouts``.
    """

    def __init__(self, landing_url=None, failures=None):
        self.url = 'about:blank'
        self.landing_url = landing_url
        self.failures = failures or {}
        self.calls = []
        self.timeouts = []
        self.keyboard = FakeKeyboard(self)

    def _call(self, name, *args):
        self.calls.append((name, *args))
        exc = self.failures.get((name, args[0] if args else None)) or self.failures.get(name)
        if exc is not None:
            raise exc

    def called(self, name):
        return [call for call in self.calls if call[0] == name]

    def goto(self, url, timeout=None, wait_until=None):
        self._call('goto', url)
        self.url = self.landing_url or url

    def wait_for_selector(self, selector, timeout=None, state=None):
        self.timeouts.append(('wait_for_selector', selector, timeout))
        self._call('wait_for_selector', selector)

    def wait_for_url(self, pattern, timeout=None):
        self.timeouts.append(('wait_for_url', pattern, timeout))
        self._call('wait_for_url', pattern)

    def wait_for_load_state(self, state=None, timeout=None):
        self.timeouts.append(('wait_for_load_state', state, timeout))
        self._call('wait_for_load_state', state)

    def wait_for_event(self, event, timeout=None):
        self._call('wait_for_event', event)

    def click(self, selector, timeout=None):
        self._call('click', selector)

    def fill(self, selector, value, timeout=None):
        self._call('fill', selector, value)


class FakeContext:
    def __init__(self, page, state, options):
        self.page = page
        self.state = state
        self.options = options

    def new_page(self):
        return self.page

    def storage_state(self):
        return self.state


class FakeBrowser:
    def __init__(self, playwright):
        self.playwright = playwright
        self.closed = False

    def new_context(self, **options):
        context = FakeContext(self.playwright.page, self.playwright.state, options)
        self.playwright.contexts.append(context)
        return context

    def close(self):
        self.closed = True


class FakeBrowserType:
    def __init__(self, playwright):
        self.playwright = playwright

    def launch(self, **options):
        self.playwright.launch_options.append(options)
        browser = FakeBrowser(self.playwright)
        self.playwright.browsers.append(browser)
        return browser


class FakePlaywright:
    """Stands in for ``sync_playwright()``; use ``factory`` where one is expected."""

    def __init__(self, page=None, state=None):
        self.page = page or FakePage()
        self.state = state
        self.chromium = FakeBrowserType(self)
        self.launch_options = []
        self.browsers = []
        self.contexts = []

    def factory(self):
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False


@pytest.fixture
def config(tmp_path):
    return AuthConfig(
        portal_url=PORTAL_URL,
        state_file=tmp_path / 'auth-state.json',
        storage_file=tmp_path / 'localStorage.json',
        token_cache_file=tmp_path / 'auth-cache.json',
        client_id='test-client',
        api_client_id='spa-client',
        tenant_id='tenant-1',
    )


@pytest.fixture
def store(config):
    return config.create_store(verbose=False)


@pytest.fixture
def validator(config):
    return config.create_validator(verbose=False)


@pytest.fixture
def valid_store(store):
    """A store already holding a fresh, valid snapshot."""
    write_state(store.state_file, make_state())
    return store


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        'PORTAL_URL', 'AUTH_STATE_FILE', 'AUTH_STORAGE_FILE', 'AUTH_STORAGE_PREFIX',
        'AUTH_TRUSTED_DOMAINS', 'AUTH_CRITICAL_COOKIES', 'AUTH_ESSENTIAL_COOKIE',
        'AUTH_MAX_AGE_MINUTES', 'AUTH_PROBE_TIMEOUT_MS', 'TOKEN_CACHE_FILE',
        'TEST_USER_EMAIL', 'TEST_USER_PASSWORD', 'TEST_CLIENT_ID', 'PROD_CLIENT_ID', 'TENANT_ID',
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
