"""
kangaroo-cli silence - Silence a client, or one check on it
"""

from kangaroo.silence_helper import DEFAULT_SILENCE_HOURS, MAX_SILENCE_HOURS, SilenceError, validate_silence_hours


def register(subparsers):
    """Register the silence command."""
    parser = subparsers.add_parser(
        'silence',
        help='Silence a Sensu client or check',
        description=f'Create a silence stash (1..{MAX_SILENCE_HOURS} hours)'
    )
    parser.add_argument('client', help='Sensu client name')
    parser.add_argument('--check', help='Check name (default: the whole client)')
    parser.add_argument('--hours', default=str(DEFAULT_SILENCE_HOURS),
                        help=f'Duration in hours (default: {DEFAULT_SILENCE_HOURS})')


def execute(args) -> int:
    """Execute the silence command."""
    from kangaroo.cli.main import connect

    # Checked before logging in so a bad duration never reaches the network
    try:
        hours = validate_silence_hours(args.hours)
    except SilenceError as e:
        print(f"Error: {e}")
        return 2

    stash = connect(args).silence(args.client, args.check, hours=hours)
    print(f"✓ Silenced {stash.get('path')} for {hours}h")
    return 0
