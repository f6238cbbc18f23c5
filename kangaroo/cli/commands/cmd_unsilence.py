"""
kangaroo-cli unsilence - Remove a silence stash
"""

from kangaroo.silence_helper import split_stash


def register(subparsers):
    """Register the unsilence command."""
    parser = subparsers.add_parser(
        'unsilence',
        help='Remove a silence',
        description='Delete the silence stash for "client" or "client/check"'
    )
    parser.add_argument('stash', help='client or client/check (a "silence/" prefix is accepted)')


def execute(args) -> int:
    """Execute the unsilence command."""
    from kangaroo.cli.main import connect

    client, _ = split_stash(args.stash)
    if not client:
        print("Error: stash must name a client")
        return 2

    result = connect(args).unsilence(args.stash)
    print(f"✓ Removed {result.get('path')}")
    return 0
