"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
from typing import List, Optional

from neomount.config import parse_size
from neomount.constants import PROTOCOL_VERSION, VERSION
from neomount.errors import ConfigInvalid


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    command: str

    debug: bool

    # store
    root: str
    endpoint: str
    token: Optional[str]
    quota: Optional[int]
    workers: int

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="neomount",
            description=(
                "Merge a local directory and a remote object store into a single"
                " namespace, and move local data to the remote on a schedule."
            ),
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (protocol {PROTOCOL_VERSION})",
            help="show the program version and protocol version",
        )

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        commands = parser.add_subparsers(dest="command", metavar="command")
        commands.required = True

        commands.add_parser(
            "serve",
            help="mount the tiers, serve the union view and migrate on schedule",
            description=(
                "Run the orchestrator in the foreground until interrupted. Configured"
                " through environment variables."
            ),
        )

        commands.add_parser(
            "migrate",
            help="run a single migration cycle now",
            description=(
                "Move all files from the local tier to the remote tier. Exits with 1 if"
                " any file failed to move."
            ),
        )

        store = commands.add_parser(
            "store",
            help="serve a directory as a remote object store",
            description="Serve a directory as an object store for rpc remotes.",
        )

        store.add_argument("root", type=str, help="directory to store objects in")

        store.add_argument(
            "--endpoint",
            type=str,
            required=True,
            help="endpoint to listen on, for example tcp://0.0.0.0:7300",
        )

        store.add_argument(
            "--token", type=str, help="shared secret that clients have to present"
        )

        store.add_argument(
            "--quota",
            type=cls._parse_quota,
            help="maximum total size of the stored objects (e.g. 500G)",
        )

        store.add_argument(
            "--workers", type=cls._parse_workers, help="number of workers", default=4
        )

        return parser

    @staticmethod
    def _parse_quota(arg: str) -> int:
        try:
            return parse_size(arg)
        except ConfigInvalid as e:
            raise argparse.ArgumentTypeError(str(e))

    @staticmethod
    def _parse_workers(arg: str) -> int:
        try:
            val = int(arg)
            assert val > 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number > 0")
