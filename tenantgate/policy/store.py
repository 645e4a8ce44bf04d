"""In-memory policy store with copy-on-write replacement.

Readers call :meth:`PolicyStore.snapshot` once per request and evaluate the
whole request against that snapshot, so a concurrent :meth:`PolicyStore.put`
or :meth:`PolicyStore.reload` is never observed half-way: in-flight requests
finish against the version they started with and new requests see the new one.
"""

import os
import threading
from dataclasses import replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml

try:
    from yaml import CSafeLoader as SafeLoader
except ImportError:
    from yaml import SafeLoader  # type: ignore

from tenantgate import tenantgate_logging
from tenantgate.common.exception import InvalidManifest, MalformedPolicy, PolicyNotFound
from tenantgate.policy import document, matchers
from tenantgate.policy.document import Policy, PolicyKind

logger = tenantgate_logging.init_logging("policy_store")


class PolicySnapshot:
    """Immutable view of every policy held by the store at one point in time."""

    def __init__(self, policies: Optional[Mapping[str, Policy]] = None, version: int = 0) -> None:
        self._policies: Mapping[str, Policy] = MappingProxyType(dict(policies or {}))
        self._identity: Tuple[Policy, ...] = tuple(
            p for p in self._policies.values() if p.kind is PolicyKind.IDENTITY
        )
        self.version = version

    def __len__(self) -> int:
        return len(self._policies)

    def __iter__(self) -> Iterator[str]:
        return iter(self._policies)

    def __contains__(self, subject: object) -> bool:
        return subject in self._policies

    def get(self, subject: str) -> Optional[Policy]:
        return self._policies.get(subject)

    def items(self) -> Iterable[Tuple[str, Policy]]:
        return self._policies.items()

    def _get_kind(self, subject: str, kind: PolicyKind) -> Optional[Policy]:
        policy = self._policies.get(subject)
        if policy is not None and policy.kind is kind:
            return policy
        return None

    def identity_policies_for(self, principal: str) -> List[Policy]:
        """Identity policies attached to ``principal``.

        A policy attached to a role also applies to the assumed-role sessions
        of that role, which is how federated users reach their permissions.
        """
        return [p for p in self._identity if matchers.match_principal(p.subject, principal)]

    def resource_policy_for(self, resource: str) -> Optional[Policy]:
        """Bucket policy for a bucket or object identifier."""
        bucket, _ = matchers.split_s3_resource(resource)
        if not bucket:
            return None
        for subject in (bucket, f"arn:aws:s3:::{bucket}"):
            policy = self._get_kind(subject, PolicyKind.RESOURCE)
            if policy is not None:
                return policy
        return None

    def key_policy_for(self, key_ref: str) -> Optional[Policy]:
        policy = self._get_kind(key_ref, PolicyKind.KEY)
        if policy is not None:
            return policy

        # arn:aws:kms:<region>:<account>:key/<key-id> may be stored by key id
        arn = matchers.parse_arn(key_ref)
        if arn is not None and arn.service == "kms" and arn.resource.startswith("key/"):
            return self._get_kind(arn.resource[len("key/") :], PolicyKind.KEY)
        return None


class PolicyStore:
    """Holds the policies of one access relationship.

    The store is an explicitly owned component: create one, load it, and hand
    it to the engine. Writers are serialized on a lock and publish a new
    :class:`PolicySnapshot`; readers never lock.
    """

    def __init__(
        self, policies: Optional[Iterable[Policy]] = None, sensitive_actions: Optional[Sequence[str]] = None
    ) -> None:
        self._write_lock = threading.Lock()
        self._sensitive_actions = sensitive_actions
        self._manifest_path: Optional[str] = None
        self._snapshot = PolicySnapshot({p.subject: p for p in policies or ()})

    def __len__(self) -> int:
        return len(self._snapshot)

    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    def get(self, subject: str) -> Optional[Policy]:
        return self._snapshot.get(subject)

    def require(self, subject: str) -> Policy:
        policy = self._snapshot.get(subject)
        if policy is None:
            raise PolicyNotFound(subject=subject)
        return policy

    def _publish(self, policies: Mapping[str, Policy]) -> None:
        self._snapshot = PolicySnapshot(policies, self._snapshot.version + 1)

    def put(self, subject: str, policy: Policy) -> None:
        if policy.subject != subject:
            policy = replace(policy, subject=subject)
        with self._write_lock:
            policies = dict(self._snapshot.items())
            policies[subject] = policy
            self._publish(policies)
        logger.debug("Stored %s policy for %s", policy.kind.value, subject)

    def remove(self, subject: str) -> bool:
        with self._write_lock:
            policies = dict(self._snapshot.items())
            removed = policies.pop(subject, None)
            if removed is None:
                return False
            self._publish(policies)
        logger.debug("Removed policy for %s", subject)
        return True

    def replace_all(self, policies: Iterable[Policy]) -> None:
        with self._write_lock:
            self._publish({p.subject: p for p in policies})

    def load_manifest(self, path: str) -> List[MalformedPolicy]:
        """Replace the store content with the policies listed in a manifest.

        The manifest is a YAML document::

            policies:
              - subject: arn:aws:iam::111122223333:role/ClientAnalyst
                kind: identity
                file: identity/client-analyst.json

        Relative file names are resolved against the manifest directory. A
        malformed policy is skipped and reported; the others are still
        loaded.

        Returns:
            The errors of the policies that could not be loaded

        Raises:
            InvalidManifest: The manifest itself cannot be read or is not a
                             list of policy entries
        """
        entries = _read_manifest(path)
        base_dir = os.path.dirname(os.path.abspath(path))

        policies: Dict[str, Policy] = {}
        errors: List[MalformedPolicy] = []
        for entry in entries:
            try:
                policy = _load_entry(entry, base_dir)
            except MalformedPolicy as e:
                logger.error("Skipping policy: %s", e)
                errors.append(e)
                continue

            for warning in document.validate(policy, self._sensitive_actions):
                logger.warning("Policy warning: %s", warning)

            if policy.subject in policies:
                logger.warning("Policy for %s listed more than once in %s, keeping the last one", policy.subject, path)
            policies[policy.subject] = policy

        with self._write_lock:
            self._publish(policies)
            self._manifest_path = path

        logger.info("Loaded %d policies from %s (%d rejected)", len(policies), path, len(errors))
        return errors

    def reload(self) -> List[MalformedPolicy]:
        if not self._manifest_path:
            raise InvalidManifest("No policy manifest was loaded, nothing to reload")
        return self.load_manifest(self._manifest_path)


def _read_manifest(path: str) -> List[Dict[str, Any]]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.load(f, Loader=SafeLoader)
    except (OSError, yaml.YAMLError) as e:
        raise InvalidManifest(f"Could not read policy manifest {path}: {e}") from e

    if data is None:
        return []

    if not isinstance(data, dict) or not isinstance(data.get("policies", []), list):
        raise InvalidManifest(f"Policy manifest {path} must contain a 'policies' list")

    entries = data.get("policies") or []
    for entry in entries:
        if not isinstance(entry, dict):
            raise InvalidManifest(f"Policy manifest {path} has an entry that is not a mapping: {entry!r}")
    return entries


def _load_entry(entry: Mapping[str, Any], base_dir: str) -> Policy:
    subject = str(entry.get("subject") or "")
    if not subject:
        raise MalformedPolicy(f"Manifest entry {dict(entry)!r} has no subject", subject=None)

    try:
        kind = PolicyKind(entry.get("kind", PolicyKind.IDENTITY.value))
    except ValueError as e:
        raise MalformedPolicy(
            f"Manifest entry for {subject} has unknown kind {entry.get('kind')!r}", subject=subject
        ) from e

    if "document" in entry:
        return document.parse(entry["document"], subject=subject, kind=kind)

    file_name = entry.get("file")
    if not file_name:
        raise MalformedPolicy(f"Manifest entry for {subject} has neither 'file' nor 'document'", subject=subject)
    return document.load_policy_file(os.path.join(base_dir, str(file_name)), subject=subject, kind=kind)
