#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK
# The comment above enables global autocomplete using argcomplete

"""
Utility to check policy documents and try requests against them.
"""

import argparse
import os
import sys

try:
    import argcomplete
except ModuleNotFoundError:
    argcomplete = None


from tenantgate.policy import check_policy, evaluate_request
from tenantgate.policy.logger import Logger


def main() -> None:
    """tenantgate-policy entry point."""
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("-v", "--verbose", action="store_true", default=False, help="Print debug messages")

    main_parser = argparse.ArgumentParser(prog="tenantgate-policy")

    action_subparsers = main_parser.add_subparsers(title="actions")

    check_policy.get_arg_parser(action_subparsers, parser)
    evaluate_request.get_arg_parser(action_subparsers, parser)

    if argcomplete:
        # This should happen before parse_args()
        argcomplete.autocomplete(main_parser)

    args = main_parser.parse_args()
    if "func" not in args:
        main_parser.print_help()
        main_parser.exit()

    Logger(verbose=args.verbose)

    try:
        ret = args.func(args)
        if ret is None:
            sys.exit(1)
    except BrokenPipeError:
        # Python flushes standard streams on exit; redirect remaining output
        # to devnull to avoid another BrokenPipeError at shutdown.
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(1)  # Python exits with error code 1 on EPIPE


if __name__ == "__main__":
    main()
