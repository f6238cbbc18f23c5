"""
Command modules. Each exposes register(subparsers) and execute(args) -> int.
"""

from kangaroo.cli.commands import cmd_escalate, cmd_silence, cmd_status, cmd_unsilence

COMMANDS = {
    'status': cmd_status,
    'silence': cmd_silence,
    'unsilence': cmd_unsilence,
    'escalate': cmd_escalate,
}
