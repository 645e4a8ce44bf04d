"""Catalog of the storage and key actions known to the gateway.

Each action is bound to the shape of resource identifier it operates on:
bucket-level operations take ``bucket``, object operations ``bucket/key`` and
key operations a key reference. The two storage shapes are disjoint, so a
grant on one can never be used for the other.
"""

import enum
from dataclasses import dataclass
from typing import Dict, Optional

from tenantgate.policy.matchers import parse_arn, split_s3_resource


class ResourceLevel(enum.Enum):
    BUCKET = "bucket"
    OBJECT = "object"
    KEY = "key"


@dataclass(frozen=True)
class ActionInfo:
    name: str
    level: ResourceLevel
    lists: bool = False
    # key action required when the object is encrypted with a managed key
    key_action: Optional[str] = None


_ACTIONS = (
    # bucket-level
    ActionInfo("s3:ListBucket", ResourceLevel.BUCKET, lists=True),
    ActionInfo("s3:ListBucketVersions", ResourceLevel.BUCKET, lists=True),
    ActionInfo("s3:ListBucketMultipartUploads", ResourceLevel.BUCKET, lists=True),
    ActionInfo("s3:GetBucketLocation", ResourceLevel.BUCKET),
    ActionInfo("s3:GetBucketPolicy", ResourceLevel.BUCKET),
    ActionInfo("s3:PutBucketPolicy", ResourceLevel.BUCKET),
    ActionInfo("s3:DeleteBucket", ResourceLevel.BUCKET),
    # object-level
    ActionInfo("s3:GetObject", ResourceLevel.OBJECT, key_action="kms:Decrypt"),
    ActionInfo("s3:GetObjectVersion", ResourceLevel.OBJECT, key_action="kms:Decrypt"),
    ActionInfo("s3:PutObject", ResourceLevel.OBJECT, key_action="kms:GenerateDataKey"),
    ActionInfo("s3:DeleteObject", ResourceLevel.OBJECT),
    ActionInfo("s3:GetObjectAcl", ResourceLevel.OBJECT),
    ActionInfo("s3:PutObjectAcl", ResourceLevel.OBJECT),
    ActionInfo("s3:AbortMultipartUpload", ResourceLevel.OBJECT),
    # key-level
    ActionInfo("kms:Decrypt", ResourceLevel.KEY),
    ActionInfo("kms:Encrypt", ResourceLevel.KEY),
    ActionInfo("kms:GenerateDataKey", ResourceLevel.KEY),
    ActionInfo("kms:DescribeKey", ResourceLevel.KEY),
    ActionInfo("kms:PutKeyPolicy", ResourceLevel.KEY),
    ActionInfo("kms:ScheduleKeyDeletion", ResourceLevel.KEY),
)

CATALOG: Dict[str, ActionInfo] = {a.name.lower(): a for a in _ACTIONS}

_SERVICES = ("s3", "kms")


def canonical_action(action: str) -> str:
    """Return the catalog spelling of ``action``.

    Bare names (``GetObject``) are qualified with their service. Unknown
    actions are returned unchanged.
    """
    if ":" in action:
        info = CATALOG.get(action.lower())
        return info.name if info else action

    for service in _SERVICES:
        info = CATALOG.get(f"{service}:{action}".lower())
        if info:
            return info.name
    return action


def lookup(action: str) -> Optional[ActionInfo]:
    return CATALOG.get(canonical_action(action).lower())


def is_key_reference(resource: str) -> bool:
    arn = parse_arn(resource)
    return arn is not None and arn.service == "kms"


def resource_level(resource: str) -> ResourceLevel:
    """Infer the level of a resource identifier from its shape."""
    if is_key_reference(resource):
        return ResourceLevel.KEY
    _, key = split_s3_resource(resource)
    return ResourceLevel.BUCKET if key is None else ResourceLevel.OBJECT


def resource_fits(info: ActionInfo, resource: str) -> bool:
    """Tell whether ``resource`` has the identifier shape ``info`` operates on."""
    if not resource:
        return False
    if info.level is ResourceLevel.KEY:
        return not parse_arn(resource) or is_key_reference(resource)
    if is_key_reference(resource):
        return False

    bucket, key = split_s3_resource(resource)
    if not bucket:
        return False
    if info.level is ResourceLevel.BUCKET:
        return key is None
    return bool(key)
