"""Policy document model.

A policy is the JSON document an account administrator attaches to a
principal (identity policy), to a bucket (resource policy) or to an encryption
key (key policy)::

    {
      "Version": "2012-10-17",
      "Statement": [
        {
          "Sid": "ReadClientFolder",
          "Effect": "Allow",
          "Principal": {"AWS": "arn:aws:iam::111122223333:role/ClientAnalyst"},
          "Action": "s3:GetObject",
          "Resource": "arn:aws:s3:::shared-bucket/client-data/*"
        }
      ]
    }

:func:`parse` turns such a document into an immutable :class:`Policy`,
:func:`serialize` turns it back into exactly the same document, and
:func:`validate` reports advisory warnings about over-broad grants.
"""

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union, cast

import jsonschema

from tenantgate.common.exception import MalformedPolicy
from tenantgate.policy import matchers
from tenantgate.policy.matchers import CONDITION_OPERATORS, ConditionValue
from tenantgate.policy.types import PolicyDocType, StatementDocType

POLICY_VERSIONS = ("2012-10-17", "2008-10-17")
DEFAULT_POLICY_VERSION = "2012-10-17"

PRINCIPAL_TYPES = ("AWS", "Service", "Federated", "CanonicalUser")

DEFAULT_SENSITIVE_ACTIONS = (
    "*",
    "s3:*",
    "s3:DeleteObject",
    "s3:DeleteBucket",
    "s3:PutBucketPolicy",
    "s3:PutObjectAcl",
    "kms:*",
    "kms:Decrypt",
    "kms:PutKeyPolicy",
    "kms:ScheduleKeyDeletion",
)


class Effect(enum.Enum):
    ALLOW = "Allow"
    DENY = "Deny"


class PolicyKind(enum.Enum):
    IDENTITY = "identity"
    RESOURCE = "resource"
    KEY = "key"


_STRING_OR_LIST = {
    "oneOf": [
        {"type": "string", "minLength": 1},
        {"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1},
    ]
}

_CONDITION_VALUES = {
    "oneOf": [
        {"type": ["string", "boolean"]},
        {"type": "array", "items": {"type": ["string", "boolean"]}, "minItems": 1},
    ]
}

POLICY_SCHEMA = {
    "type": "object",
    "required": ["Version", "Statement"],
    "additionalProperties": False,
    "properties": {
        "Version": {"type": "string", "enum": list(POLICY_VERSIONS)},
        "Id": {"type": "string"},
        "Statement": {
            "oneOf": [
                {"$ref": "#/definitions/statement"},
                {"type": "array", "items": {"$ref": "#/definitions/statement"}},
            ]
        },
    },
    "definitions": {
        "statement": {
            "type": "object",
            "required": ["Effect", "Action", "Resource"],
            "additionalProperties": False,
            "properties": {
                "Sid": {"type": "string"},
                "Effect": {"type": "string", "enum": [e.value for e in Effect]},
                "Principal": {
                    "oneOf": [
                        {"type": "string", "enum": [matchers.WILDCARD]},
                        {
                            "type": "object",
                            "minProperties": 1,
                            "additionalProperties": False,
                            "properties": {t: _STRING_OR_LIST for t in PRINCIPAL_TYPES},
                        },
                    ]
                },
                "Action": _STRING_OR_LIST,
                "Resource": _STRING_OR_LIST,
                "Condition": {
                    "type": "object",
                    "additionalProperties": {
                        "type": "object",
                        "minProperties": 1,
                        "additionalProperties": _CONDITION_VALUES,
                    },
                },
            },
        }
    },
}


@dataclass(frozen=True)
class Condition:
    operator: str
    key: str
    values: Tuple[ConditionValue, ...]


@dataclass(frozen=True)
class Statement:
    """One Allow/Deny rule of a policy.

    ``principals`` is ``None`` when the statement carries no ``Principal``
    element, which is only valid in identity policies where it stands for the
    principal the policy is attached to.

    ``principal_layout``, ``scalar_fields`` and ``condition_block`` only record
    how the document spelled the statement (principal type keys, bare strings
    instead of one-element lists, an empty ``Condition`` map) so that it serializes back unchanged; they take no
    part in evaluation or comparison.
    """

    effect: Effect
    actions: Tuple[str, ...]
    resources: Tuple[str, ...]
    principals: Optional[Tuple[str, ...]] = None
    conditions: Tuple[Condition, ...] = ()
    sid: Optional[str] = None
    index: int = 0
    principal_layout: Tuple[Tuple[str, int], ...] = field(default=(), compare=False)
    scalar_fields: FrozenSet[str] = field(default=frozenset(), compare=False)
    condition_block: bool = field(default=False, compare=False)

    @property
    def statement_id(self) -> str:
        return self.sid if self.sid else f"#{self.index}"


@dataclass(frozen=True)
class Policy:
    subject: str
    kind: PolicyKind
    statements: Tuple[Statement, ...] = ()
    version: str = DEFAULT_POLICY_VERSION
    policy_id: Optional[str] = None
    single_statement: bool = field(default=False, compare=False)

    def __len__(self) -> int:
        return len(self.statements)


@dataclass(frozen=True)
class PolicyWarning:
    subject: str
    statement_id: str
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.subject} [{self.statement_id}] {self.code}: {self.message}"


def _as_tuple(value: Union[str, Sequence[Any]], path: str, scalars: List[str]) -> Tuple[Any, ...]:
    if isinstance(value, (str, bool)):
        scalars.append(path)
        return (value,)
    return tuple(value)


def _parse_principal(
    raw: Union[str, Mapping[str, Any]], scalars: List[str]
) -> Tuple[Tuple[str, ...], Tuple[Tuple[str, int], ...]]:
    if isinstance(raw, str):
        return (raw,), ()

    principals: List[str] = []
    layout: List[Tuple[str, int]] = []
    for ptype, value in raw.items():
        values = _as_tuple(value, f"Principal.{ptype}", scalars)
        principals.extend(values)
        layout.append((ptype, len(values)))
    return tuple(principals), tuple(layout)


def _parse_conditions(raw: Mapping[str, Mapping[str, Any]], scalars: List[str]) -> Tuple[Condition, ...]:
    conditions: List[Condition] = []
    for operator, block in raw.items():
        for key, value in block.items():
            values = _as_tuple(value, f"Condition.{operator}.{key}", scalars)
            conditions.append(Condition(operator=operator, key=key, values=values))
    return tuple(conditions)


def _check_statement(statement: Statement, kind: PolicyKind, subject: str) -> None:
    where = f"statement {statement.statement_id}"

    if statement.principals is None and kind is not PolicyKind.IDENTITY:
        raise MalformedPolicy(
            f"Policy for {subject}: {where} of a {kind.value} policy lacks 'Principal'", subject=subject
        )

    for pattern in statement.principals or ():
        err = matchers.check_principal_pattern(pattern)
        if err:
            raise MalformedPolicy(f"Policy for {subject}: {where}: {err}", subject=subject)

    for pattern in statement.actions + statement.resources:
        err = matchers.check_wildcard_pattern(pattern)
        if err:
            raise MalformedPolicy(f"Policy for {subject}: {where}: {err}", subject=subject)

    for condition in statement.conditions:
        if condition.operator not in CONDITION_OPERATORS:
            raise MalformedPolicy(
                f"Policy for {subject}: {where}: unsupported condition operator '{condition.operator}'",
                subject=subject,
            )
        if not condition.key:
            raise MalformedPolicy(f"Policy for {subject}: {where}: empty condition key", subject=subject)


def _parse_statement(raw: StatementDocType, index: int, kind: PolicyKind, subject: str) -> Statement:
    scalars: List[str] = []

    principals: Optional[Tuple[str, ...]] = None
    layout: Tuple[Tuple[str, int], ...] = ()
    if "Principal" in raw:
        principals, layout = _parse_principal(raw["Principal"], scalars)

    statement = Statement(
        effect=Effect(raw["Effect"]),
        actions=_as_tuple(raw["Action"], "Action", scalars),
        resources=_as_tuple(raw["Resource"], "Resource", scalars),
        principals=principals,
        conditions=_parse_conditions(raw.get("Condition", {}), scalars),
        sid=raw.get("Sid"),
        index=index,
        principal_layout=layout,
        scalar_fields=frozenset(scalars),
        condition_block="Condition" in raw,
    )
    _check_statement(statement, kind, subject)
    return statement


def _schema_error(error: jsonschema.ValidationError) -> str:
    location = "/".join(str(p) for p in error.absolute_path) or "<document>"
    return f"{location}: {error.message}"


def parse(
    raw: Union[str, bytes, Mapping[str, Any]], subject: str = "", kind: PolicyKind = PolicyKind.IDENTITY
) -> Policy:
    """Parse a policy document.

    Args:
        raw: The JSON document, either encoded or already decoded
        subject: The principal, bucket or key the policy is attached to
        kind: Which kind of subject the policy is attached to

    Returns:
        The immutable Policy

    Raises:
        MalformedPolicy: The document is not valid JSON, does not follow the
                         policy schema, or uses an unsupported pattern or
                         condition operator
    """
    if isinstance(raw, (str, bytes)):
        try:
            doc = json.loads(raw)
        except ValueError as e:
            raise MalformedPolicy(f"Policy for {subject} is not valid JSON: {e}", subject=subject) from e
    else:
        doc = raw

    if not isinstance(doc, Mapping):
        raise MalformedPolicy(f"Policy for {subject} must be a JSON object", subject=subject)

    try:
        jsonschema.validate(instance=doc, schema=POLICY_SCHEMA)
    except jsonschema.ValidationError as e:
        raise MalformedPolicy(f"Policy for {subject} is malformed: {_schema_error(e)}", subject=subject) from e

    policy_doc = cast(PolicyDocType, doc)
    raw_statements = policy_doc["Statement"]
    single = isinstance(raw_statements, Mapping)
    statement_docs: Iterable[StatementDocType]
    statement_docs = [raw_statements] if single else raw_statements  # type: ignore[list-item]

    statements = tuple(_parse_statement(s, i, kind, subject) for i, s in enumerate(statement_docs))

    return Policy(
        subject=subject,
        kind=kind,
        statements=statements,
        version=policy_doc["Version"],
        policy_id=policy_doc.get("Id"),
        single_statement=single,
    )


def load_policy_file(path: str, subject: str, kind: PolicyKind = PolicyKind.IDENTITY) -> Policy:
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise MalformedPolicy(f"Could not read policy file {path} for {subject}: {e}", subject=subject) from e
    return parse(raw, subject=subject, kind=kind)


def _values(values: Sequence[Any], path: str, scalars: FrozenSet[str]) -> Any:
    if path in scalars and len(values) == 1:
        return values[0]
    return list(values)


def _serialize_principal(statement: Statement) -> Any:
    principals = statement.principals or ()
    if not statement.principal_layout:
        if principals == (matchers.WILDCARD,):
            return matchers.WILDCARD
        return {"AWS": _values(principals, "Principal.AWS", statement.scalar_fields)}

    out: Dict[str, Any] = {}
    pos = 0
    for ptype, count in statement.principal_layout:
        out[ptype] = _values(principals[pos : pos + count], f"Principal.{ptype}", statement.scalar_fields)
        pos += count
    return out


def _serialize_statement(statement: Statement) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if statement.sid is not None:
        out["Sid"] = statement.sid
    out["Effect"] = statement.effect.value
    if statement.principals is not None:
        out["Principal"] = _serialize_principal(statement)
    out["Action"] = _values(statement.actions, "Action", statement.scalar_fields)
    out["Resource"] = _values(statement.resources, "Resource", statement.scalar_fields)

    if statement.conditions or statement.condition_block:
        block: Dict[str, Dict[str, Any]] = {}
        for c in statement.conditions:
            block.setdefault(c.operator, {})[c.key] = _values(
                c.values, f"Condition.{c.operator}.{c.key}", statement.scalar_fields
            )
        out["Condition"] = block
    return out


def serialize(policy: Policy) -> Dict[str, Any]:
    """Return the JSON document of ``policy``, as it was parsed."""
    doc: Dict[str, Any] = {"Version": policy.version}
    if policy.policy_id is not None:
        doc["Id"] = policy.policy_id

    statements = [_serialize_statement(s) for s in policy.statements]
    if policy.single_statement and len(statements) == 1:
        doc["Statement"] = statements[0]
    else:
        doc["Statement"] = statements
    return doc


def dumps(policy: Policy, **kwargs: Any) -> str:
    return json.dumps(serialize(policy), **kwargs)


def _covers_sensitive(pattern: str, sensitive: Sequence[str]) -> bool:
    return any(matchers.match_action(pattern, s) or matchers.match_action(s, pattern) for s in sensitive)


def validate(policy: Policy, sensitive_actions: Optional[Sequence[str]] = None) -> List[PolicyWarning]:
    """Report over-broad grants in ``policy``.

    The result is advisory: a policy with warnings still loads and is still
    enforced as written.
    """
    sensitive = tuple(sensitive_actions) if sensitive_actions is not None else DEFAULT_SENSITIVE_ACTIONS
    warnings: List[PolicyWarning] = []
    seen_sids: Dict[str, int] = {}

    for s in policy.statements:
        if s.sid:
            if s.sid in seen_sids:
                warnings.append(
                    PolicyWarning(
                        policy.subject,
                        s.statement_id,
                        "duplicate-sid",
                        f"Sid is also used by statement #{seen_sids[s.sid]}",
                    )
                )
            else:
                seen_sids[s.sid] = s.index

        if s.effect is not Effect.ALLOW:
            continue

        if matchers.WILDCARD in s.resources:
            broad = [a for a in s.actions if _covers_sensitive(a, sensitive)]
            if broad:
                warnings.append(
                    PolicyWarning(
                        policy.subject,
                        s.statement_id,
                        "sensitive-action-any-resource",
                        f"Allows {', '.join(broad)} on every resource",
                    )
                )

        if policy.kind is not PolicyKind.IDENTITY and s.principals and matchers.WILDCARD in s.principals:
            warnings.append(
                PolicyWarning(policy.subject, s.statement_id, "any-principal", "Allows every principal")
            )

    return warnings
