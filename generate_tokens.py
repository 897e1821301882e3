#!/usr/bin/env python3
# /// script
# dependencies = [
#   "msal",
#   "requests",
#   "playwright",
#   "playwright-stealth",
#   "python-dotenv",
# ]
# ///
"""
Generate MSAL Token Cache

Signs the test user in without a browser, using MSAL's username/password
(resource owner password credential) flow, and writes the resulting tokens in
the shape MSAL.js keeps in the portal's localStorage. Test suites can seed the
browser storage from auth-cache.json instead of driving the login pages.

Requires TEST_CLIENT_ID (public client used for the exchange), PROD_CLIENT_ID
(the portal SPA whose API scope is requested) and TENANT_ID.

Usage:
    uv run generate_tokens.py
    uv run generate_tokens.py --output tokens.json
"""

from __future__ import annotations

import argparse
import base64
import json
import sys
import time
from pathlib import Path

import msal

from portal_auth import AuthConfig, get_credentials
from session_cache import write_json_atomic

AUTHORITY_HOST = 'https://login.microsoftonline.com'
DEFAULT_TOKEN_LIFETIME = 3600


class TokenExchangeError(RuntimeError):
    """The identity provider rejected the credential exchange."""


def api_scope(api_client_id: str) -> str:
    return f'api://{api_client_id}/Authentication'


def acquire_tokens(
    config: AuthConfig,
    credentials: tuple[str, str],
    verbose: bool = True,
) -> tuple[dict, dict]:
    """
    Exchange the test user's credentials for tokens.

    Returns (result, account) where result is MSAL's token response and account
    is the cached account record for the user. No retry is attempted.
    """
    missing = [
        name for name, value in (
            ('TEST_CLIENT_ID', config.client_id),
            ('PROD_CLIENT_ID', config.api_client_id),
            ('TENANT_ID', config.tenant_id),
        )
        if not value
    ]
    if missing:
        raise ValueError(f'Missing configuration: {", ".join(missing)}')

    username, password = credentials
    app = msal.PublicClientApplication(
        client_id=config.client_id,
        authority=f'{AUTHORITY_HOST}/{config.tenant_id}',
    )

    if verbose:
        print(f'Requesting tokens for {username}...')

    result = app.acquire_token_by_username_password(
        username,
        password,
        scopes=[api_scope(config.api_client_id)],
    )

    if not result or 'access_token' not in result:
        error = (result or {}).get('error', 'unknown_error')
        description = (result or {}).get('error_description', 'No token returned')
        raise TokenExchangeError(f'{error}: {description}')

    accounts = app.get_accounts(username=username)
    account = accounts[0] if accounts else _account_from_claims(result.get('id_token_claims', {}))
    return result, account


def _account_from_claims(claims: dict) -> dict:
    oid = claims.get('oid', '')
    tid = claims.get('tid', '')
    return {
        'home_account_id': f'{oid}.{tid}',
        'environment': AUTHORITY_HOST.split('://', 1)[1],
        'realm': tid,
        'local_account_id': oid,
        'username': claims.get('preferred_username', ''),
    }


def _client_info(home_account_id: str) -> str:
    uid, _, utid = home_account_id.partition('.')
    raw = json.dumps({'uid': uid, 'utid': utid}).encode('utf-8')
    return base64.urlsafe_b64encode(raw).decode('ascii').rstrip('=')


def build_msal_cache(result: dict, account: dict, client_id: str, now: float | None = None) -> dict[str, str]:
    """
    Shape a token response like MSAL.js browser cache entries.

    Entries are keyed for the portal's SPA client id and every value is a
    JSON-encoded string, as stored in localStorage.
    """
    now = time.time() if now is None else now
    claims = result.get('id_token_claims') or {}

    home_account_id = account['home_account_id']
    environment = account['environment']
    tenant_id = account.get('realm') or claims.get('tid', '')
    account_key = f'{home_account_id}-{environment}-{client_id}'
    credential_key = f'{account_key}.{client_id}.{tenant_id}'

    return {
        f'msal.account.{account_key}': json.dumps({
            'homeAccountId': home_account_id,
            'environment': environment,
            'tenantId': tenant_id,
            'username': account.get('username') or claims.get('preferred_username', ''),
            'localAccountId': account.get('local_account_id') or claims.get('oid', ''),
            'name': claims.get('name', ''),
            'clientInfo': _client_info(home_account_id),
        }),
        f'msal.idtoken.{credential_key}': json.dumps({
            'credentialType': 'IdToken',
            'homeAccountId': home_account_id,
            'environment': environment,
            'clientId': client_id,
            'secret': result.get('id_token', ''),
            'realm': tenant_id,
        }),
        f'msal.accesstoken.{credential_key}.authentication': json.dumps({
            'credentialType': 'AccessToken',
            'homeAccountId': home_account_id,
            'environment': environment,
            'clientId': client_id,
            'secret': result['access_token'],
            'realm': tenant_id,
            'target': api_scope(client_id),
            'expiresOn': int(now) + int(result.get('expires_in') or DEFAULT_TOKEN_LIFETIME),
        }),
    }


def generate_tokens(config: AuthConfig, output: Path | None = None, verbose: bool = True) -> Path:
    """Acquire tokens for the test user and write the MSAL cache file."""
    credentials = get_credentials(verbose=verbose)
    result, account = acquire_tokens(config, credentials, verbose=verbose)

    path = output or config.token_cache_file
    write_json_atomic(path, build_msal_cache(result, account, config.api_client_id))
    if verbose:
        print('  Tokens generated successfully!')
        print(f'  Saved to {path}')
    return path


def main():
    parser = argparse.ArgumentParser(description='Generate an MSAL token cache for the portal test user')
    parser.add_argument('--output', '-o', type=Path, help='Cache file to write (default: auth-cache.json)')
    parser.add_argument('--quiet', '-q', action='store_true', help='Suppress progress messages')
    args = parser.parse_args()

    try:
        generate_tokens(AuthConfig.from_env(), output=args.output, verbose=not args.quiet)
    except (TokenExchangeError, ValueError, RuntimeError) as e:
        print(f'Token generation failed: {e}', file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
