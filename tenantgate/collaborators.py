"""Interfaces of the services the gateway relies on but does not implement.

Identity federation, object storage and encryption are external to the
gateway. They are consumed through the abstract classes below; the concrete
classes in this module are small local implementations, useful for tests and
single-host deployments.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from tenantgate.authorization.provider import AuthorizationRequest
from tenantgate.common.exception import AccessDeniedError, TenantgateException

if TYPE_CHECKING:
    from tenantgate.authorization.gateway import AccessGateway


class UnknownKey(TenantgateException):
    _msg_fmt = "Unknown encryption key %(key_ref)s."


class DecryptionFailed(TenantgateException):
    _msg_fmt = "Ciphertext could not be decrypted with key %(key_ref)s."


@dataclass(frozen=True)
class IdentityAssertion:
    """Signed identity issued by the federation service for one session."""

    principal: str
    account_id: str
    expires_at: datetime
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now >= expires_at


class IdentityProvider(ABC):
    @abstractmethod
    def resolve(self, token: str) -> IdentityAssertion:
        """Verify a session token and return the identity it asserts."""


class Cipher(ABC):
    @abstractmethod
    def encrypt(self, data: bytes, key_ref: str) -> bytes:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: bytes, key_ref: str) -> bytes:
        pass


class ObjectStorage(ABC):
    @abstractmethod
    def read(self, path: str) -> bytes:
        """Return the object stored at ``bucket/key``.

        Raises:
            KeyError: No such object
        """

    @abstractmethod
    def write(self, path: str, data: bytes) -> None:
        pass

    @abstractmethod
    def list(self, bucket: str, prefix: str = "") -> List[str]:
        """Return the keys of ``bucket`` starting with ``prefix``, sorted."""


class FernetCipher(Cipher):
    """Symmetric authenticated encryption, one Fernet key per key reference."""

    def __init__(self, keys: Optional[Mapping[str, bytes]] = None) -> None:
        self._keys: Dict[str, Fernet] = {ref: Fernet(k) for ref, k in (keys or {}).items()}
        self._lock = threading.Lock()

    def create_key(self, key_ref: str) -> bytes:
        key = Fernet.generate_key()
        with self._lock:
            self._keys[key_ref] = Fernet(key)
        return key

    def _fernet(self, key_ref: str) -> Fernet:
        with self._lock:
            fernet = self._keys.get(key_ref)
        if fernet is None:
            raise UnknownKey(key_ref=key_ref)
        return fernet

    def encrypt(self, data: bytes, key_ref: str) -> bytes:
        return self._fernet(key_ref).encrypt(data)

    def decrypt(self, ciphertext: bytes, key_ref: str) -> bytes:
        try:
            return self._fernet(key_ref).decrypt(ciphertext)
        except InvalidToken as e:
            raise DecryptionFailed(key_ref=key_ref) from e


class InMemoryObjectStorage(ObjectStorage):
    def __init__(self) -> None:
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def read(self, path: str) -> bytes:
        with self._lock:
            return self._objects[path]

    def write(self, path: str, data: bytes) -> None:
        with self._lock:
            self._objects[path] = bytes(data)

    def list(self, bucket: str, prefix: str = "") -> List[str]:
        start = f"{bucket}/{prefix}"
        with self._lock:
            return sorted(p[len(bucket) + 1 :] for p in self._objects if p.startswith(start))


class GuardedObjectClient:
    """Storage client that asks the gateway before every operation.

    This is the caller the gateway expects: it performs the storage and key
    operations only after an Allow. A Deny surfaces as
    :class:`~tenantgate.common.exception.AccessDeniedError`, whose message
    never reveals which policy refused the request.
    """

    def __init__(self, gateway: "AccessGateway", storage: ObjectStorage, cipher: Optional[Cipher] = None) -> None:
        self._gateway = gateway
        self._storage = storage
        self._cipher = cipher

    def _check(
        self, principal: str, action: str, resource: str, key_ref: Optional[str], context: Optional[Mapping[str, str]]
    ) -> None:
        request = AuthorizationRequest(principal, action, resource, key_ref, dict(context or {}))
        decision = self._gateway.authorize(request)
        if not decision.allowed:
            raise AccessDeniedError()

    def get_object(
        self, principal: str, path: str, key_ref: Optional[str] = None, context: Optional[Mapping[str, str]] = None
    ) -> bytes:
        self._check(principal, "s3:GetObject", path, key_ref, context)
        data = self._storage.read(path)
        if key_ref:
            if self._cipher is None:
                raise TenantgateException(f"No cipher configured to decrypt {path}")
            data = self._cipher.decrypt(data, key_ref)
        return data

    def put_object(
        self,
        principal: str,
        path: str,
        data: bytes,
        key_ref: Optional[str] = None,
        context: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._check(principal, "s3:PutObject", path, key_ref, context)
        if key_ref:
            if self._cipher is None:
                raise TenantgateException(f"No cipher configured to encrypt {path}")
            data = self._cipher.encrypt(data, key_ref)
        self._storage.write(path, data)

    def list_objects(self, principal: str, bucket: str, prefix: str = "") -> List[str]:
        self._check(principal, "s3:ListBucket", bucket, None, {"s3:prefix": prefix})
        return self._storage.list(bucket, prefix)
