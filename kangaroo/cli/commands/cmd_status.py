"""
kangaroo-cli status - Show dashboard health and current event counts
"""

from collections import Counter
from typing import Any, List

import requests

from kangaroo.web_templates import EVENT_CLASSES

STATUS_NAMES = {"success": "ok", "warning": "warning", "danger": "critical"}


def register(subparsers):
    """Register the status command."""
    subparsers.add_parser(
        'status',
        help='Show dashboard health and event summary',
        description='Check the dashboard health endpoint and, when logged in, summarize current events'
    )


def execute(args) -> int:
    """Execute the status command."""
    from kangaroo.cli.main import connect

    print("=" * 70)
    print(f"Cloudy Kangaroo Status ({args.url})")
    print("=" * 70)

    client = connect(args, login=False)
    try:
        health = client.health()
    except (requests.exceptions.RequestException, ValueError) as e:
        print(f"  ✗ Dashboard unreachable: {e}")
        return 1

    healthy = health.get('status') == 'healthy'
    print(f"  {'✓' if healthy else '✗'} Dashboard  - {health.get('status')} (version {health.get('version', '?')})")
    if not healthy:
        print(f"    {health.get('error', '')}")

    if args.username and args.password:
        client = connect(args)
        print()
        for line in summarize_events(client.events()):
            print(f"  {line}")

    print("=" * 70)
    return 0 if healthy else 1


def summarize_events(events: List[Any]) -> List[str]:
    """One line per severity plus a silenced count."""
    counts = Counter()
    silenced = 0
    for event in events:
        status = (event.get('check') or {}).get('status')
        counts[STATUS_NAMES.get(EVENT_CLASSES.get(status), 'unknown')] += 1
        if event.get('silenced'):
            silenced += 1

    lines = [f"{name:10s} {counts[name]}" for name in ('critical', 'warning', 'ok', 'unknown') if counts[name]]
    lines.append(f"{'silenced':10s} {silenced}")
    lines.append(f"{'total':10s} {len(events)}")
    return lines
