"""Module to check and normalize policy documents from the command line."""

import argparse
import json
import os
from typing import TYPE_CHECKING, Any, Optional

from tenantgate.common.exception import MalformedPolicy
from tenantgate.policy import document
from tenantgate.policy.document import Policy, PolicyKind
from tenantgate.policy.logger import Logger

if TYPE_CHECKING:
    _SubparserType = argparse._SubParsersAction[argparse.ArgumentParser]  # pylint: disable=protected-access
else:
    _SubparserType = Any

logger = Logger().logger()


def _add_policy_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("policy_file", help="The policy document (JSON)")
    p.add_argument(
        "-k",
        "--kind",
        dest="kind",
        choices=[k.value for k in PolicyKind],
        default=PolicyKind.IDENTITY.value,
        help="What the policy is attached to (default: %(default)s)",
    )
    p.add_argument(
        "-s",
        "--subject",
        dest="subject",
        default="",
        help="The principal, bucket or key the policy is attached to (default: the file name)",
    )


def get_arg_parser(action_parser: _SubparserType, parent_parser: argparse.ArgumentParser) -> None:
    """Perform the setup of the command-line arguments for this module."""
    validate_p = action_parser.add_parser(
        "validate", help="check a policy document and report over-broad grants", parents=[parent_parser]
    )
    _add_policy_arguments(validate_p)
    validate_p.add_argument(
        "--strict",
        action="store_true",
        default=False,
        help="Fail when the policy has warnings",
    )
    validate_p.set_defaults(func=validate_policy)

    format_p = action_parser.add_parser(
        "format", help="print a policy document in its normalized JSON form", parents=[parent_parser]
    )
    _add_policy_arguments(format_p)
    format_p.set_defaults(func=format_policy)


def _load(args: argparse.Namespace) -> Optional[Policy]:
    subject = args.subject or os.path.basename(args.policy_file)
    try:
        return document.load_policy_file(args.policy_file, subject=subject, kind=PolicyKind(args.kind))
    except MalformedPolicy as e:
        logger.error("%s", e)
        return None


def validate_policy(args: argparse.Namespace) -> Optional[str]:
    policy = _load(args)
    if policy is None:
        return None

    warnings = document.validate(policy)
    for warning in warnings:
        print(warning)

    if warnings and args.strict:
        logger.error("%d warning(s) in %s", len(warnings), args.policy_file)
        return None

    logger.info("%s: %d statement(s), %d warning(s)", args.policy_file, len(policy), len(warnings))
    return args.policy_file


def format_policy(args: argparse.Namespace) -> Optional[str]:
    policy = _load(args)
    if policy is None:
        return None

    out = json.dumps(document.serialize(policy), indent=2)
    print(out)
    return out
