"""
kangaroo-cli escalate - Post a monitoring event to an Ubersmith ticket
"""

import json
import sys


def register(subparsers):
    """Register the escalate command."""
    parser = subparsers.add_parser(
        'escalate',
        help='Add an event to an Ubersmith ticket',
        description='Post a Sensu event (JSON) to an existing Ubersmith ticket'
    )
    parser.add_argument('ticket_id', help='Ubersmith ticket ID')
    parser.add_argument('--event-file', help='JSON file with the event (default: read stdin)')
    parser.add_argument('--note', default='', help='Documentation to include with the post')


def execute(args) -> int:
    """Execute the escalate command."""
    from kangaroo.cli.main import connect

    try:
        if args.event_file:
            with open(args.event_file, 'r') as f:
                event = json.load(f)
        else:
            event = json.load(sys.stdin)
    except (OSError, ValueError) as e:
        print(f"Error: could not read event JSON: {e}")
        return 2

    reply = connect(args).escalate(args.ticket_id, event, documentation=args.note)
    if reply.get('status'):
        print(f"✓ Event added to ticket {args.ticket_id}")
        return 0
    print(f"✗ Ubersmith refused the post: {reply.get('error_message')}")
    return 1
