"""Command-line interface for cloudauth configuration and account management."""

from __future__ import annotations

import argparse
import asyncio
import sys

from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import CloudAuthException


if TYPE_CHECKING:
    from collections.abc import Sequence

    from .auth.lifecycle import AccountLifecycleController
    from .config import CloudAuthSettings


def main(argv: Sequence[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="cloudauth",
        description="cloudauth configuration and account tools",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log flows, HTTP calls and store operations to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # account commands
    accounts_parser = subparsers.add_parser("accounts", help="List the stored accounts")
    accounts_parser.add_argument("provider", help="Provider identifier")

    login_parser = subparsers.add_parser("login", help="Connect an account through the browser")
    login_parser.add_argument("provider", help="Provider identifier")
    login_parser.add_argument(
        "--server-url",
        type=str,
        default=None,
        help="OAuth broker base URL (default: oauth.server_url setting)",
    )
    login_parser.add_argument(
        "--user",
        type=str,
        default=None,
        help="Re-authenticate this stored account",
    )

    logout_parser = subparsers.add_parser("logout", help="Remove a stored account")
    logout_parser.add_argument("provider", help="Provider identifier")
    logout_parser.add_argument("user", help="User identifier")

    switch_parser = subparsers.add_parser("switch", help="Change the active account")
    switch_parser.add_argument("provider", help="Provider identifier")
    switch_parser.add_argument("user", help="User identifier")

    args = parser.parse_args(argv)

    from .log import enable_debug, get_logger

    get_logger()
    if args.debug:
        enable_debug()

    if args.command == "config":
        return handle_config(args)
    if args.command in ("accounts", "login", "logout", "switch"):
        return asyncio.run(handle_account_command(args))
    parser.print_help()
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import CloudAuthSettings

    settings = CloudAuthSettings()

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def build_controller(settings: CloudAuthSettings) -> AccountLifecycleController:
    """Wire a lifecycle controller from settings (loopback browser flow)."""
    from .auth.flow import AuthFlowOrchestrator
    from .auth.lifecycle import AccountLifecycleController
    from .auth.state import SecureStateGenerator
    from .auth.token_store import create_token_store
    from .auth.user_agent import LoopbackUserAgent

    oauth = settings.oauth
    agent = LoopbackUserAgent(
        host=oauth.callback_host,
        port=oauth.callback_port,
        path=oauth.callback_path,
    )
    orchestrator = AuthFlowOrchestrator(
        agent,
        state_generator=SecureStateGenerator(oauth.state_length),
        auth_timeout=oauth.auth_timeout_seconds,
        http_timeout=oauth.http_timeout_seconds,
    )
    return AccountLifecycleController(
        create_token_store(settings.storage),
        orchestrator,
        refresh_skew=oauth.refresh_skew_seconds,
    )


async def handle_account_command(args: argparse.Namespace) -> int:
    """Handle the accounts, login, logout and switch commands.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import get_settings

    settings = get_settings()
    controller = build_controller(settings)
    try:
        if args.command == "login":
            return await _login(controller, settings, args)

        await controller.initialize(args.provider)
        if args.command == "accounts":
            return await _list_accounts(controller, args.provider)
        if args.command == "logout":
            await controller.remove_account(args.provider, args.user)
            print(f"Removed {args.provider} account {args.user}")
            return 0
        if await controller.switch_account(args.provider, args.user):
            print(f"Active {args.provider} account: {args.user}")
            return 0
        print(f"Error: no stored {args.provider} account {args.user!r}", file=sys.stderr)
        return 1
    except CloudAuthException as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await controller.orchestrator.close()
        await controller.token_store.close()


async def _login(
    controller: AccountLifecycleController,
    settings: CloudAuthSettings,
    args: argparse.Namespace,
) -> int:
    from .auth.config import OAuthConfig

    server_url = args.server_url or settings.oauth.server_url
    if not server_url:
        print(
            "Error: no OAuth server configured. Pass --server-url or set CLOUDAUTH_OAUTH__SERVER_URL.",
            file=sys.stderr,
        )
        return 1

    controller.register(
        OAuthConfig.for_server(
            args.provider,
            server_url,
            settings.oauth.redirect_scheme,
            client_id=settings.oauth.client_id or None,
        )
    )
    await controller.initialize(args.provider)
    result = await controller.authenticate(args.provider, args.user)
    try:
        result.raise_for_error(provider=args.provider)
    except CloudAuthException as exc:
        print(f"Login failed: {exc}", file=sys.stderr)
        return 2 if result.cancelled else 1

    user_id = await controller.active_user(args.provider)
    state = controller.connection_state(args.provider)
    print(f"Connected {args.provider} account {user_id} ({state.value})")
    return 0


async def _list_accounts(controller: AccountLifecycleController, provider_id: str) -> int:
    accounts = await controller.list_accounts(provider_id)
    if not accounts:
        print(f"No {provider_id} accounts stored.")
        return 0

    print(f"  {'User':<28} {'Name':<24} {'State':<14}")
    print("-" * 70)
    for account in accounts:
        marker = "*" if account.is_active else " "
        action = "  (action required)" if account.requires_action else ""
        print(f"{marker} {account.user_id:<28} {account.name:<24} {account.state.value:<14}{action}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
