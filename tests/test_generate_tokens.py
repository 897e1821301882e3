"""Tests for the MSAL token exchange and browser cache adapter."""

import base64
import json
from unittest.mock import MagicMock, patch

import pytest

from generate_tokens import TokenExchangeError, acquire_tokens, build_msal_cache, generate_tokens

ACCOUNT = {
    'home_account_id': 'uid-1.tenant-1',
    'environment': 'login.windows.net',
    'realm': 'tenant-1',
    'local_account_id': 'uid-1',
    'username': 'tester@example.com',
}

TOKEN_RESULT = {
    'access_token': 'access-abc',
    'id_token': 'id-xyz',
    'expires_in': 1800,
    'id_token_claims': {'oid': 'uid-1', 'tid': 'tenant-1', 'name': 'Test User'},
}


@pytest.fixture
def msal_app():
    app = MagicMock()
    app.acquire_token_by_username_password.return_value = dict(TOKEN_RESULT)
    app.get_accounts.return_value = [ACCOUNT]
    with patch('generate_tokens.msal.PublicClientApplication', return_value=app) as factory:
        app.factory = factory
        yield app


class TestBuildMsalCache:

    def test_keys_follow_msal_browser_layout(self):
        cache = build_msal_cache(TOKEN_RESULT, ACCOUNT, 'spa-client', now=1000)

        account_key = 'uid-1.tenant-1-login.windows.net-spa-client'
        assert set(cache) == {
            f'msal.account.{account_key}',
            f'msal.idtoken.{account_key}.spa-client.tenant-1',
            f'msal.accesstoken.{account_key}.spa-client.tenant-1.authentication',
        }

    def test_entries_are_json_strings(self):
        cache = build_msal_cache(TOKEN_RESULT, ACCOUNT, 'spa-client', now=1000)
        entries = {key.split('.')[1]: json.loads(value) for key, value in cache.items()}

        assert entries['account']['name'] == 'Test User'
        assert entries['account']['tenantId'] == 'tenant-1'
        client_info = entries['account']['clientInfo']
        decoded = json.loads(base64.urlsafe_b64decode(client_info + '=' * (-len(client_info) % 4)))
        assert decoded == {'uid': 'uid-1', 'utid': 'tenant-1'}

        assert entries['idtoken']['secret'] == 'id-xyz'
        assert entries['idtoken']['credentialType'] == 'IdToken'

        access = entries['accesstoken']
        assert access['secret'] == 'access-abc'
        assert access['target'] == 'api://spa-client/Authentication'
        assert access['expiresOn'] == 2800

    def test_default_lifetime_when_missing(self):
        result = {'access_token': 'a', 'id_token': 'i'}
        cache = build_msal_cache(result, ACCOUNT, 'spa-client', now=1000)
        access = next(json.loads(v) for k, v in cache.items() if k.startswith('msal.accesstoken.'))
        assert access['expiresOn'] == 4600


class TestAcquireTokens:

    def test_requests_api_scope(self, config, msal_app):
        result, account = acquire_tokens(config, ('tester@example.com', 'pw'), verbose=False)

        assert result['access_token'] == 'access-abc'
        assert account == ACCOUNT
        msal_app.factory.assert_called_once_with(
            client_id='test-client',
            authority='https://login.microsoftonline.com/tenant-1',
        )
        msal_app.acquire_token_by_username_password.assert_called_once_with(
            'tester@example.com', 'pw', scopes=['api://spa-client/Authentication'],
        )

    def test_rejected_exchange_raises(self, config, msal_app):
        msal_app.acquire_token_by_username_password.return_value = {
            'error': 'invalid_grant',
            'error_description': 'AADSTS50126: Invalid username or password.',
        }

        with pytest.raises(TokenExchangeError, match='invalid_grant'):
            acquire_tokens(config, ('tester@example.com', 'wrong'), verbose=False)

        assert msal_app.acquire_token_by_username_password.call_count == 1

    def test_account_from_claims_when_cache_empty(self, config, msal_app):
        msal_app.get_accounts.return_value = []
        _, account = acquire_tokens(config, ('tester@example.com', 'pw'), verbose=False)
        assert account['home_account_id'] == 'uid-1.tenant-1'
        assert account['realm'] == 'tenant-1'

    def test_missing_configuration(self, config):
        config.tenant_id = None
        with pytest.raises(ValueError, match='TENANT_ID'):
            acquire_tokens(config, ('tester@example.com', 'pw'), verbose=False)


class TestGenerateTokens:

    def test_writes_cache_file(self, config, msal_app):
        with patch('generate_tokens.get_credentials', return_value=('tester@example.com', 'pw')):
            path = generate_tokens(config, verbose=False)

        assert path == config.token_cache_file
        cache = json.loads(path.read_text())
        assert any(key.startswith('msal.accesstoken.') for key in cache)
        assert all(isinstance(value, str) for value in cache.values())
