"""CLI entry point: ties together configuration, policy and the console transport."""

from __future__ import annotations

import argparse
import getpass
import logging
import sys

from lending_bot.config import DEFAULT_CONFIG_PATH, SettingsError, load_settings


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Lending Bot: role-gated loan reporting over a chat-style console",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to settings.yaml",
    )
    parser.add_argument(
        "--policies",
        default=None,
        help="Path to actions.yaml (default: policies/actions.yaml)",
    )
    parser.add_argument(
        "--identity",
        default="console",
        help="Conversation identity used for the console session",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        settings = load_settings(args.config)
    except SettingsError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    from lending_bot.prompt.cli import run_cli

    run_cli(
        settings=settings,
        policy_path=args.policies,
        identity=args.identity,
        sender_name=getpass.getuser(),
    )


if __name__ == "__main__":
    main()
