"""Authorization provider interface for tenantgate.

This module defines the request and decision types exchanged at the access
gateway, and the abstract interface every authorization provider implements.
A provider determines whether a principal may perform an action on a
resource; it never performs the storage or key operation itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class DecisionResult(Enum):
    ALLOW = "Allow"
    DENY = "Deny"


class Verdict(Enum):
    """Outcome of evaluating one side of a request."""

    ALLOW = "Allow"
    DENY = "Deny"
    IMPLICIT_DENY = "ImplicitDeny"


class PolicySide(Enum):
    """Independently authored policies that all have to allow a request.

    The order of the members is the order in which they are evaluated.
    """

    IDENTITY = "identity"
    RESOURCE = "resource"
    KEY = "key"


@dataclass(frozen=True)
class AuthorizationRequest:
    """Request for an authorization decision.

    Attributes:
        principal: ARN of the authenticated principal, e.g. the assumed-role
                   session issued to a federated user
        action: The action requested (``s3:GetObject``; bare ``GetObject`` is
                accepted and qualified by the gateway)
        resource: ``bucket`` for bucket-level actions, ``bucket/key`` for
                  object actions (the ``arn:aws:s3:::`` form is accepted too),
                  a key reference for key actions
        key_ref: Key the object is encrypted with, if any
        context: Condition attributes of the request (e.g. ``s3:prefix``)
    """

    principal: str
    action: str
    resource: str
    key_ref: Optional[str] = None
    context: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthorizationRequest":
        return cls(
            principal=str(data["principal"]),
            action=str(data["action"]),
            resource=str(data["resource"]),
            key_ref=data.get("keyRef"),
            context={str(k): str(v) for k, v in (data.get("context") or {}).items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": self.principal,
            "action": self.action,
            "resource": self.resource,
            "keyRef": self.key_ref,
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class PolicyEvaluation:
    """Verdict of one policy side, with the statement that produced it."""

    side: PolicySide
    verdict: Verdict
    action: str
    resource: str
    subject: Optional[str] = None
    statement_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    """Result of an authorization decision.

    A Decision is always returned, never raised. For a Deny, ``statement_id``
    and ``policy_subject`` name the decisive Deny statement, or are ``None``
    when nothing allowed the request (implicit deny). They are diagnostic
    details for logs and the audit trail and must not be returned to the
    requester, use :meth:`public_view` for that.
    """

    result: DecisionResult
    reason: str
    statement_id: Optional[str] = None
    policy_subject: Optional[str] = None
    explicit: bool = False
    evaluations: Tuple[PolicyEvaluation, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.result is DecisionResult.ALLOW

    @property
    def contributing_statements(self) -> Tuple[str, ...]:
        return tuple(e.statement_id for e in self.evaluations if e.statement_id)

    @classmethod
    def deny(
        cls,
        reason: str,
        statement_id: Optional[str] = None,
        policy_subject: Optional[str] = None,
        explicit: bool = False,
        evaluations: Tuple[PolicyEvaluation, ...] = (),
    ) -> "Decision":
        return cls(DecisionResult.DENY, reason, statement_id, policy_subject, explicit, evaluations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result.value,
            "statementId": self.statement_id,
            "policySubject": self.policy_subject,
        }

    def public_view(self) -> Dict[str, Any]:
        """What may be surfaced to the requester: no policy detail."""
        if self.allowed:
            return {"result": self.result.value}
        return {"result": self.result.value, "error": "AccessDenied", "message": "Access Denied"}


class AuthorizationProvider(ABC):
    """Abstract base class for authorization providers.

    Providers must be stateless and thread-safe, as they are called
    concurrently for independent requests.

    Example implementation:

        class ReadOnlyProvider(AuthorizationProvider):
            def authorize(self, request: AuthorizationRequest) -> Decision:
                if request.action == "s3:GetObject":
                    return Decision(DecisionResult.ALLOW, reason="Read-only access")
                return Decision.deny(reason="Only reads are allowed")

            def get_name(self) -> str:
                return "read_only"

            def health_check(self) -> bool:
                return True
    """

    @abstractmethod
    def authorize(self, request: AuthorizationRequest) -> Decision:
        """Make an authorization decision.

        This method must be thread-safe and should not have side effects.

        Args:
            request: The authorization request

        Returns:
            Decision, Allow or Deny

        Raises:
            AuthorizationError: If the provider was unable to decide. Callers
                               handle this by denying access (fail-safe)
        """

    @abstractmethod
    def get_name(self) -> str:
        """Get the provider name for logging and debugging."""

    @abstractmethod
    def health_check(self) -> bool:
        """Check if the provider is ready to make authorization decisions.

        Returns:
            True if healthy, False otherwise
        """


class AuthorizationError(Exception):
    """Exception raised when an authorization provider encounters an error.

    This exception indicates that the provider was unable to make an
    authorization decision, not that the decision was "deny".
    """
