"""
Main entry point for the Session Sync Client.

This module provides the command-line interface: inspect the stored session,
log in with a pre-issued token, log out, and watch the session being
revalidated with a live countdown.
"""

import os
import sys
import argparse
import asyncio
import json
import logging
from typing import Optional

from session_shared.models import (
    CountdownDue, CountdownHidden, CountdownTick, Error, ExpiryWarning,
    GrantType, LoggedOut, NewToken, RevalidationFailed, RevalidationSucceeded,
    SessionEvent, TokenInfo
)
from session_shared.exceptions import SessionSyncError, ClaimNotFound, ClaimTypeMismatch
from session_shared.logging_config import LogFormat, LogLevel, setup_logging

from session_client.api_client import ProfileAPIClient, RetryConfig
from session_client.auth.auth_flow import PreIssuedTokenAuthFlow
from session_client.auth.credential_store import PersistentCredentialStore
from session_client.auth.token_storage import SecureTokenStorage
from session_client.claims import token_tail
from session_client.config import ClientConfiguration
from session_client.error_handling import setup_client_error_handling
from session_client.notifications import SessionListener
from session_client.session_handle import SessionHandle

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_NOT_AUTHENTICATED = 2
EXIT_INTERRUPTED = 130

FLOW_TIMEOUT_SECONDS = 60.0


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="session-sync",
        description="Session Sync Client",
        epilog="""
Examples:
  %(prog)s --status                 # Show the stored session
  %(prog)s --status --json          # Same, as JSON
  %(prog)s --login --token TOKEN    # Log in with a pre-issued access token
  %(prog)s --login --watch          # Log in, then revalidate every interval
  %(prog)s --claim email            # Print one claim of the current token
  %(prog)s --logout                 # Clear the session

Exit Codes:
  0   - Success
  1   - Operation failed
  2   - Not authenticated
  130 - Cancelled by user (Ctrl+C)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group()
    operation_group.add_argument("--status", action="store_true",
                                 help="Show the current session and exit (default)")
    operation_group.add_argument("--login", action="store_true",
                                 help="Log in with a pre-issued access token")
    operation_group.add_argument("--logout", action="store_true",
                                 help="Log out and clear the stored session")
    operation_group.add_argument("--claim", type=str, metavar="NAME",
                                 help="Print one claim of the current token")
    operation_group.add_argument("--user", action="store_true",
                                 help="Fetch and print the user profile")

    parser.add_argument("--watch", action="store_true",
                        help="Revalidate the session with a live countdown until interrupted")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Configuration file path")
    config_group.add_argument("--token", type=str, metavar="TOKEN",
                              help="Pre-issued access token used by --login")
    config_group.add_argument("--domain", type=str, metavar="URL",
                              help="Identity provider domain")
    config_group.add_argument("--interval-ms", type=int, metavar="N",
                              help="Revalidation interval in milliseconds")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output in JSON format")
    output_group.add_argument("--quiet", "-q", action="store_true",
                              help="Suppress non-essential output")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Log to file instead of console")

    return parser.parse_args(argv)


def load_configuration(args) -> ClientConfiguration:
    """Build configuration with command line overrides applied."""
    config = ClientConfiguration(args.config)

    if args.domain:
        config.set_override('auth.domain', args.domain)
    if args.token:
        config.set_override('auth.access_token', args.token)
    if args.interval_ms is not None:
        config.set_override('revalidation.interval_ms', args.interval_ms)
    if args.debug:
        config.set_override('logging.level', 'DEBUG')
    if args.log_file:
        config.set_override('logging.file', args.log_file)

    return config


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging from configuration and command line arguments."""
    if args.debug:
        level = LogLevel.DEBUG
    elif args.quiet or args.json:
        level = LogLevel.ERROR
    else:
        level = LogLevel.__members__.get(config.get_log_level(), LogLevel.INFO)

    log_file = config.get_log_file()
    setup_logging(
        log_level=level,
        log_format=LogFormat(config.get_log_format()),
        log_file=log_file,
        enable_console=log_file is None,
        enable_audit=config.is_audit_enabled(),
        audit_file=os.path.join(os.path.dirname(log_file), 'audit.log') if log_file else None
    )


class FlowWaiter(SessionListener):
    """Listener that turns the outcome of one flow into an awaitable."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.outcome: asyncio.Future = loop.create_future()

    def _set(self, value) -> None:
        if not self.outcome.done():
            self.outcome.set_result(value)

    def on_new_token(self, token: str, refresh_token: Optional[str] = None,
                     id_token: Optional[str] = None) -> None:
        self._set(('new_token', token))

    def on_logout(self) -> None:
        self._set(('logged_out', None))

    def on_exception(self, exception: Exception) -> None:
        self._set(('failed', exception))


def describe_event(event: SessionEvent) -> Optional[str]:
    """One line of output for an event, or None for events not shown."""
    if isinstance(event, CountdownTick):
        return f"Next revalidation in: {event.remaining_seconds}s"
    if isinstance(event, CountdownDue):
        return "Revalidating..."
    if isinstance(event, CountdownHidden):
        return "Not authenticated, revalidation stopped"
    if isinstance(event, RevalidationSucceeded):
        return (f"Revalidation succeeded - token ...{event.token_tail}, "
                f"name: {event.display_name}, email: {event.email}")
    if isinstance(event, RevalidationFailed):
        return f"Revalidation failed - {event.message}"
    if isinstance(event, NewToken):
        return f"Token received - ...{token_tail(event.token)}"
    if isinstance(event, LoggedOut):
        return "Logged out"
    if isinstance(event, TokenInfo):
        return f"Token info:\n{event.report}"
    if isinstance(event, ExpiryWarning):
        return f"Token will expire soon ({event.remaining_seconds}s left)"
    if isinstance(event, Error):
        return f"Error: {event.message}"
    return None


def build_handle(args, config: ClientConfiguration, loop: asyncio.AbstractEventLoop,
                 listener: Optional[SessionListener] = None) -> SessionHandle:
    storage = SecureTokenStorage(
        service_name=config.get_service_name(),
        storage_path=config.get_storage_path(),
        use_keyring=config.use_keyring()
    )
    store = PersistentCredentialStore(storage, namespace=config.get_storage_namespace())

    api_client = None
    if config.get_domain():
        api_client = ProfileAPIClient(
            config.get_domain(),
            timeout=config.get_server_timeout(),
            retry_config=RetryConfig(max_retries=config.get_retry_attempts(),
                                     base_delay=config.get_retry_delay())
        )

    auth_flow = PreIssuedTokenAuthFlow(config.get_access_token, api_client)
    error_handler = setup_client_error_handling(loop)

    return SessionHandle(
        owner_id=f"cli-{os.getpid()}",
        store=store,
        auth_flow=auth_flow,
        listener=listener,
        config=config,
        loop=loop,
        error_handler=error_handler
    )


def print_status(handle: SessionHandle, as_json: bool) -> int:
    expiry = handle.get_expiry()
    status = {
        'owner_id': handle.owner_id,
        'auth_state': handle.auth_state.value,
        'authenticated': handle.is_authenticated(),
        'token_tail': token_tail(handle.get_access_token()),
        'subject': handle.get_claims().get('sub'),
        'expires_at_millis': expiry.expires_at_millis if expiry else None,
        'remaining_seconds': expiry.remaining_seconds if expiry else None,
        'near_expiry': expiry.is_near_expiry if expiry else None,
    }

    if as_json:
        print(json.dumps(status))
    else:
        print(f"Status: {'Authenticated' if status['authenticated'] else 'Not Authenticated'}")
        if status['authenticated']:
            print(f"Token: ...{status['token_tail']}")
            if status['subject']:
                print(f"Subject: {status['subject']}")
            if expiry:
                print(f"Time Until Expiry: {expiry.remaining_seconds}s "
                      f"({expiry.remaining_seconds // 60}m)")

    return EXIT_SUCCESS if status['authenticated'] else EXIT_NOT_AUTHENTICATED


async def run_flow(handle: SessionHandle, waiter: FlowWaiter, start, quiet: bool) -> int:
    start()
    try:
        outcome, value = await asyncio.wait_for(waiter.outcome, FLOW_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        print("Error: timed out waiting for the auth flow", file=sys.stderr)
        return EXIT_FAILURE

    if outcome == 'failed':
        message = value.user_message if isinstance(value, SessionSyncError) else str(value)
        print(f"Error: {message}", file=sys.stderr)
        return EXIT_FAILURE

    if not quiet:
        if outcome == 'new_token':
            print(f"Logged in - token ...{token_tail(value)}")
        else:
            print("Logged out")
    return EXIT_SUCCESS


async def watch(handle: SessionHandle, quiet: bool) -> int:
    if not handle.is_authenticated():
        print("Not authenticated - please login", file=sys.stderr)
        return EXIT_NOT_AUTHENTICATED

    if handle.scheduler is None or not handle.scheduler.armed:
        handle.start_revalidation()

    async for event in handle.events.stream():
        line = describe_event(event)
        if line and not quiet:
            print(line, flush=True)
        if isinstance(event, (CountdownHidden, LoggedOut)):
            return EXIT_NOT_AUTHENTICATED
    return EXIT_SUCCESS


async def run(args, config: ClientConfiguration) -> int:
    loop = asyncio.get_running_loop()
    waiter = FlowWaiter(loop)
    handle = build_handle(args, config, loop, listener=waiter)

    try:
        if args.login:
            grant_type = config.get_grant_type()
            code = await run_flow(handle, waiter, lambda: handle.login(grant_type), args.quiet)
            if code != EXIT_SUCCESS or not args.watch:
                return code
            return await watch(handle, args.quiet)

        if args.logout:
            if not handle.refresh_state():
                if not args.quiet:
                    print("Not authenticated")
                return EXIT_SUCCESS
            return await run_flow(handle, waiter, handle.logout, args.quiet)

        handle.refresh_state()

        if args.claim:
            try:
                claim = handle.get_claim(args.claim)
            except (ClaimNotFound, ClaimTypeMismatch) as e:
                print(f"Error: {e.message}", file=sys.stderr)
                return EXIT_FAILURE
            print(json.dumps({claim.name: claim.value}) if args.json else claim.value)
            return EXIT_SUCCESS

        if args.user:
            if not handle.is_authenticated():
                print("Not authenticated - please login", file=sys.stderr)
                return EXIT_NOT_AUTHENTICATED
            profile = await handle.fetch_user_profile()
            if args.json:
                print(json.dumps({'name': profile.display_name, 'email': profile.email}))
            else:
                print(f"Name: {profile.display_name}")
                print(f"Email: {profile.email}")
            return EXIT_SUCCESS

        if args.watch:
            return await watch(handle, args.quiet)

        return print_status(handle, args.json)

    finally:
        handle.close()
        await handle.auth_flow.close()


def main(argv=None) -> int:
    """Main entry point for the client."""
    args = None
    try:
        args = parse_arguments(argv)
        config = load_configuration(args)

        problems = config.validate()
        if problems:
            for problem in problems:
                print(f"Configuration error: {problem}", file=sys.stderr)
            return EXIT_FAILURE

        configure_logging(args, config)
        return asyncio.run(run(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except SessionSyncError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        return EXIT_FAILURE
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        if not getattr(args, 'json', False):
            logger.exception("Fatal error in main")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
