"""
Module implementing the command-line interface and invoking the main logic of neomount.

neomount merges a directory on fast local disk and a remote object store into a single
namespace. New data is written to local disk and moved to the remote store on a cron
schedule, while reads are served from whichever tier holds the authoritative copy.

There are three commands:

* serve: mount both tiers, expose the union view and migrate on schedule
* migrate: run a single migration cycle and exit
* store: serve a directory as an object store for remotes of type rpc
"""

import signal
import sys
from typing import List, NoReturn, Optional

import neomount.constants as constants
from neomount.errors import ConfigInvalid
import neomount.logger as logger
from neomount.logger import log
import neomount.operations as operations
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Run a neomount command with the given arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    logger.configure(args.debug)

    ops: operations.Operations

    if args.command == "serve":
        ops = operations.ServeOperations()
    elif args.command == "migrate":
        ops = operations.MigrateOperations()
    else:
        ops = operations.StoreOperations(
            args.root, args.endpoint, args.token, args.quota, args.workers
        )

    try:
        exit_code = ops.run()
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except ConfigInvalid as e:
        log.error(f"invalid configuration: {e}")
        exit_code = constants.NEOMOUNT_ERROR_CODE
    except Exception as e:
        log.error(f"failed to run {args.command}: {e}")
        exit_code = constants.NEOMOUNT_ERROR_CODE

    # Exit with 0 on success, 1 for a migration with failed files, or
    # NEOMOUNT_ERROR_CODE for neomount failures.
    sys.exit(exit_code)
