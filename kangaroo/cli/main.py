#!/usr/bin/env python3
"""
=====================================================================
kangaroo-cli - Operator CLI for the Cloudy Kangaroo dashboard
=====================================================================
Usage:
  kangaroo-cli status
  kangaroo-cli silence web01 [--check disk] [--hours 8]
  kangaroo-cli unsilence web01/disk
  kangaroo-cli escalate 12345 --event-file event.json [--note "..."]

Environment Variables:
  KANGAROO_URL: Dashboard base URL (default: http://localhost:3000)
  KANGAROO_USER / KANGAROO_PASSWORD: Directory credentials for the
    commands that change state
=====================================================================
"""

import os
import sys
import argparse
import logging

from kangaroo.cli.commands import COMMANDS
from kangaroo.silence_helper import DashboardClient, DashboardClientError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='kangaroo-cli', description='Cloudy Kangaroo operator CLI')
    parser.add_argument('--url', default=os.getenv('KANGAROO_URL', 'http://localhost:3000'),
                        help='Dashboard base URL (default: $KANGAROO_URL or http://localhost:3000)')
    parser.add_argument('--username', default=os.getenv('KANGAROO_USER'), help='Directory username')
    parser.add_argument('--password', default=os.getenv('KANGAROO_PASSWORD'), help='Directory password')
    parser.add_argument('--timeout', type=float, default=10.0, help='Request timeout seconds (default: 10)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log HTTP activity')

    sub = parser.add_subparsers(dest='command', required=True)
    for module in COMMANDS.values():
        module.register(sub)
    return parser


def connect(args, login: bool = True) -> DashboardClient:
    """Dashboard client for the parsed arguments, logged in when asked."""
    client = DashboardClient(args.url, timeout=args.timeout)
    if login:
        if not args.username or not args.password:
            raise DashboardClientError("--username/--password (or KANGAROO_USER/KANGAROO_PASSWORD) are required")
        client.login(args.username, args.password)
    return client


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    )
    try:
        return COMMANDS[args.command].execute(args)
    except DashboardClientError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
