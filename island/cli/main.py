"""Main entry point for the island CLI tool."""

import argparse
import sys

from .client import IslandClient
from . import commands


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="island",
        description="Claude Island CLI - forward hooks and answer sessions",
    )
    parser.add_argument("--socket", help="Server socket path")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("hook", help="Forward a Claude Code hook event read from stdin")
    subparsers.add_parser("list", help="List tracked sessions")

    approve_parser = subparsers.add_parser("approve", help="Approve the pending tool")
    approve_parser.add_argument("session_id", help="Session ID")
    approve_parser.add_argument("--always", action="store_true", help="Approve for the rest of the session")

    deny_parser = subparsers.add_parser("deny", help="Deny the pending tool")
    deny_parser.add_argument("session_id", help="Session ID")
    deny_parser.add_argument("--message", "-m", help="Reason sent to the agent")

    send_parser = subparsers.add_parser("send", help="Send a chat message")
    send_parser.add_argument("session_id", help="Session ID")
    send_parser.add_argument("text", nargs="+", help="Message text")

    return parser


def main(argv=None):
    """Main entry point for island CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    client = IslandClient(socket_path=args.socket)

    if args.command == "hook":
        sys.exit(commands.cmd_hook(client))
    elif args.command == "list":
        sys.exit(commands.cmd_list(client))
    elif args.command == "approve":
        sys.exit(commands.cmd_approve(client, args.session_id, always=args.always))
    elif args.command == "deny":
        sys.exit(commands.cmd_deny(client, args.session_id, message=args.message))
    elif args.command == "send":
        sys.exit(commands.cmd_send(client, args.session_id, " ".join(args.text)))


if __name__ == "__main__":
    main()
