"""Module to evaluate an authorization request against a policy manifest offline."""

import argparse
import json
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from tenantgate import config
from tenantgate.authorization.provider import AuthorizationRequest
from tenantgate.authorization.providers.policy import PolicyAuthProvider
from tenantgate.common.exception import InvalidManifest
from tenantgate.policy import actions
from tenantgate.policy.logger import Logger
from tenantgate.policy.store import PolicyStore

if TYPE_CHECKING:
    _SubparserType = argparse._SubParsersAction[argparse.ArgumentParser]  # pylint: disable=protected-access
else:
    _SubparserType = Any

logger = Logger().logger()


def get_arg_parser(action_parser: _SubparserType, parent_parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Perform the setup of the command-line arguments for this module."""
    eval_p = action_parser.add_parser(
        "evaluate", help="decide a request against the policies of a manifest", parents=[parent_parser]
    )
    eval_p.add_argument(
        "-m",
        "--manifest",
        dest="manifest",
        default="",
        help="The policy manifest (default: the gateway 'policy_manifest' option)",
    )
    eval_p.add_argument(
        "-r",
        "--request",
        dest="request_file",
        default="",
        help="A JSON file holding the request; replaces the options below",
    )
    eval_p.add_argument("-p", "--principal", dest="principal", default="", help="The requesting principal ARN")
    eval_p.add_argument("-a", "--action", dest="action", default="", help="The action, e.g. s3:GetObject")
    eval_p.add_argument("-t", "--resource", dest="resource", default="", help="The bucket, object or key")
    eval_p.add_argument("-K", "--key-ref", dest="key_ref", default=None, help="The key the object is encrypted with")
    eval_p.add_argument(
        "-c",
        "--context",
        dest="context",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="A condition attribute of the request; may be repeated",
    )
    eval_p.set_defaults(func=evaluate_request)
    return eval_p


def _parse_context(pairs: List[str]) -> Optional[Dict[str, str]]:
    context: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            logger.error("Invalid context attribute '%s', expected KEY=VALUE", pair)
            return None
        context[key] = value
    return context


def _build_request(args: argparse.Namespace) -> Optional[AuthorizationRequest]:
    if args.request_file:
        try:
            with open(args.request_file, encoding="utf-8") as f:
                return AuthorizationRequest.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            logger.error("Unable to read the request from %s: %s", args.request_file, e)
            return None

    if not (args.principal and args.action and args.resource):
        logger.error("--principal, --action and --resource are required without --request")
        return None

    context = _parse_context(args.context)
    if context is None:
        return None
    return AuthorizationRequest(
        args.principal, actions.canonical_action(args.action), args.resource, args.key_ref, context
    )


def evaluate_request(args: argparse.Namespace) -> Optional[str]:
    request = _build_request(args)
    if request is None:
        return None

    manifest = args.manifest or config.get("gateway", "policy_manifest", fallback=config.DEFAULT_POLICY_MANIFEST)
    store = PolicyStore()
    try:
        errors = store.load_manifest(manifest)
    except InvalidManifest as e:
        logger.error("%s", e)
        return None
    for error in errors:
        logger.warning("Policy not loaded: %s", error)

    provider = PolicyAuthProvider(store)
    decision = provider.authorize(request)

    out = dict(decision.to_dict())
    out["reason"] = decision.reason
    out["contributingStatements"] = list(decision.contributing_statements)
    output = json.dumps(out, indent=2)
    print(output)
    return output
