"""Pattern matchers for policy statements.

Every matcher in this module is a pure, total function: it never raises and
never has side effects. Malformed patterns (interior wildcards, wildcard
principals other than ``*``, unknown condition operators) are rejected when a
policy document is parsed, see :func:`check_wildcard_pattern`,
:func:`check_principal_pattern` and :data:`CONDITION_OPERATORS`.
"""

import functools
import re
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Pattern, Sequence, Tuple, Union

WILDCARD = "*"

ConditionValue = Union[str, bool]

ARN_RE = re.compile(
    r"^arn:(?P<partition>[^:]+):(?P<service>[^:]+):(?P<region>[^:]*):(?P<account>[^:]*):(?P<resource>.+)$"
)
ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
S3_ARN_PREFIX_RE = re.compile(r"^arn:[^:]+:s3:::")


@dataclass(frozen=True)
class Arn:
    partition: str
    service: str
    region: str
    account: str
    resource: str

    @property
    def resource_type(self) -> str:
        return self.resource.split("/", 1)[0].split(":", 1)[0]


def parse_arn(value: str) -> Optional[Arn]:
    m = ARN_RE.match(value)
    if not m:
        return None
    return Arn(**m.groupdict())


def principal_account(principal: str) -> Optional[str]:
    """Return the account id of a principal ARN (or bare account id)."""
    if ACCOUNT_ID_RE.match(principal):
        return principal
    arn = parse_arn(principal)
    if arn is None or not arn.account:
        return None
    return arn.account


def _is_account_pattern(pattern: str) -> Optional[str]:
    if ACCOUNT_ID_RE.match(pattern):
        return pattern
    arn = parse_arn(pattern)
    if arn and arn.service == "iam" and arn.resource == "root":
        return arn.account
    return None


def _role_session_matches(role: Arn, principal: str) -> bool:
    # arn:aws:sts::<account>:assumed-role/<role-name>/<session-name>
    session = parse_arn(principal)
    if session is None or session.service != "sts" or session.account != role.account:
        return False
    if session.partition != role.partition:
        return False
    parts = session.resource.split("/")
    if len(parts) < 3 or parts[0] != "assumed-role":
        return False
    return parts[1] == role.resource.rsplit("/", 1)[-1]


def match_principal(pattern: str, principal: str) -> bool:
    """Match a request principal against a principal pattern.

    ``*`` matches everyone. A 12-digit account id or an account root ARN
    (``arn:aws:iam::<account>:root``) matches any principal of that account.
    A role ARN matches the role itself and every assumed-role session of it.
    Anything else is an exact, case-sensitive comparison.
    """
    if pattern == WILDCARD:
        return True

    if pattern == principal:
        return True

    account = _is_account_pattern(pattern)
    if account is not None:
        return principal_account(principal) == account

    arn = parse_arn(pattern)
    if arn is not None and arn.service == "iam" and arn.resource_type == "role":
        return _role_session_matches(arn, principal)

    return False


def match_action(pattern: str, action: str) -> bool:
    """Match an action name against an action pattern.

    Service prefix and action name are case-insensitive. A single trailing
    wildcard matches every action sharing the prefix (``s3:*``, ``s3:Get*``).
    """
    if pattern == WILDCARD:
        return True

    p = pattern.lower()
    a = action.lower()
    if p.endswith(WILDCARD):
        return a.startswith(p[:-1])
    return p == a


def normalize_resource(resource: str) -> str:
    """Strip the S3 ARN prefix so that ``arn:aws:s3:::b/k`` and ``b/k`` compare equal."""
    return S3_ARN_PREFIX_RE.sub("", resource, count=1)


def match_resource(pattern: str, resource: str) -> bool:
    """Match a resource identifier against a resource pattern.

    ``prefix/*`` matches identifiers strictly inside ``prefix/`` (at least one
    character after the slash), never the bare ``prefix``. Any other trailing
    wildcard is a plain prefix match. Everything else is exact.
    """
    if pattern == WILDCARD:
        return True

    p = normalize_resource(pattern)
    r = normalize_resource(resource)

    if p.endswith("/" + WILDCARD):
        inside = p[:-1]
        return r.startswith(inside) and len(r) > len(inside)
    if p.endswith(WILDCARD):
        return r.startswith(p[:-1])
    return p == r


@functools.lru_cache(maxsize=4096)
def _compile_glob(pattern: str) -> Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.split(WILDCARD)), re.DOTALL)


def glob_match(pattern: str, value: str) -> bool:
    """``*``-only glob match of the whole ``value``; no other metacharacters."""
    return _compile_glob(pattern).fullmatch(value) is not None


def _as_text(value: ConditionValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _string_like(patterns: Sequence[ConditionValue], value: Optional[str]) -> bool:
    return value is not None and any(glob_match(_as_text(p), value) for p in patterns)


def _string_not_like(patterns: Sequence[ConditionValue], value: Optional[str]) -> bool:
    return value is None or not any(glob_match(_as_text(p), value) for p in patterns)


def _string_equals(patterns: Sequence[ConditionValue], value: Optional[str]) -> bool:
    return value is not None and any(_as_text(p) == value for p in patterns)


def _string_not_equals(patterns: Sequence[ConditionValue], value: Optional[str]) -> bool:
    return value is None or all(_as_text(p) != value for p in patterns)


def _bool(patterns: Sequence[ConditionValue], value: Optional[str]) -> bool:
    return value is not None and any(_as_text(p).lower() == value.lower() for p in patterns)


CONDITION_OPERATORS: Dict[str, Callable[[Sequence[ConditionValue], Optional[str]], bool]] = {
    "StringLike": _string_like,
    "StringNotLike": _string_not_like,
    "StringEquals": _string_equals,
    "StringNotEquals": _string_not_equals,
    "Bool": _bool,
}


def evaluate_condition(operator: str, key: str, patterns: Sequence[ConditionValue], context: Mapping[str, str]) -> bool:
    """Evaluate one condition against a request context.

    ``context`` must be keyed by lower-cased attribute names (condition keys
    are case-insensitive). A missing attribute fails positive operators and
    satisfies negated ones. Unknown operators never match.
    """
    op = CONDITION_OPERATORS.get(operator)
    if op is None:
        return False
    return op(patterns, context.get(key.lower()))


def check_wildcard_pattern(pattern: str) -> Optional[str]:
    """Return an error message if ``pattern`` uses a wildcard anywhere but at the end."""
    if WILDCARD in pattern[:-1]:
        return f"Pattern '{pattern}' may only use a single trailing wildcard"
    return None


def check_principal_pattern(pattern: str) -> Optional[str]:
    if pattern != WILDCARD and WILDCARD in pattern:
        return f"Principal '{pattern}' may not contain wildcards"
    return None


def split_s3_resource(resource: str) -> Tuple[str, Optional[str]]:
    """Split ``bucket/key`` (or its ARN form) into bucket and object key.

    The key is ``None`` for a bucket-level identifier.
    """
    r = normalize_resource(resource)
    if "/" not in r:
        return r, None
    bucket, key = r.split("/", 1)
    return bucket, key
