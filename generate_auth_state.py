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
Generate Portal Session State

Always performs a fresh browser login and overwrites the cached session,
regardless of whether the current one is still valid.

Usage:
    uv run generate_auth_state.py            # Headless login
    uv run generate_auth_state.py --visible  # Watch the login in a browser window
    uv run generate_auth_state.py --debug    # Write step details to auth_debug.log

Options:
    --browser NAME  chromium (default), firefox or webkit
    --quiet         Suppress progress messages
"""

import argparse
import sys

from portal_auth import (
    DEBUG_LOG_FILE,
    AuthConfig,
    RegenerationError,
    SessionRegenerator,
    debug_log,
)


def main():
    parser = argparse.ArgumentParser(description='Log in to the portal and save the session state')
    parser.add_argument('--visible', action='store_true', help='Show browser window during login')
    parser.add_argument('--debug', action='store_true', help=f'Write login step details to {DEBUG_LOG_FILE}')
    parser.add_argument('--quiet', '-q', action='store_true', help='Suppress progress messages')
    parser.add_argument('--browser', choices=['chromium', 'firefox', 'webkit'], default='chromium',
                        help='Browser to use for login (default: chromium)')
    args = parser.parse_args()

    verbose = not args.quiet
    config = AuthConfig.from_env()
    regenerator = SessionRegenerator(
        config,
        config.create_store(verbose=verbose),
        headless=not args.visible,
        browser_type=args.browser,
        verbose=verbose,
    )

    if args.debug:
        debug_log.enable()
        if verbose:
            print(f'  Debug logging enabled: {DEBUG_LOG_FILE}')

    try:
        regenerator.regenerate()
    except RegenerationError as e:
        print(f'Authentication failed: {e}', file=sys.stderr)
        sys.exit(1)
    finally:
        if args.debug:
            debug_log.disable()
            if verbose:
                print(f'  Debug log written to: {DEBUG_LOG_FILE}')

    if verbose:
        print()
        print('Authentication state saved!')
        print(f'  Complete state: {config.state_file}')
        print(f'  localStorage only: {config.storage_file}')


if __name__ == '__main__':
    main()
