"""Access gateway for tenantgate.

The gateway is the request boundary: it takes a structured request, asks the
configured authorization provider for a decision, logs and audits it, and
returns it. It performs no storage or key I/O itself; on Allow the caller
invokes the storage and encryption collaborators.
"""

import uuid
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

from tenantgate import config, tenantgate_logging
from tenantgate.audit.emitter import AuditEmitter
from tenantgate.authorization.provider import (
    AuthorizationError,
    AuthorizationProvider,
    AuthorizationRequest,
    Decision,
)
from tenantgate.authorization.providers.policy import PolicyAuthProvider
from tenantgate.collaborators import IdentityAssertion
from tenantgate.common.exception import InvalidManifest
from tenantgate.policy import actions
from tenantgate.policy.store import PolicyStore

logger = tenantgate_logging.init_logging("gateway")


class DenyAllProvider(AuthorizationProvider):
    """Fail-safe provider that denies all authorization requests."""

    def authorize(self, request: AuthorizationRequest) -> Decision:
        return Decision.deny(reason="Authorization provider failed to load - denying all requests for security")

    def get_name(self) -> str:
        return "deny_all"

    def health_check(self) -> bool:
        return False


class AccessGateway:
    """Routes authorization requests to the provider and records every decision.

    The gateway is responsible for:
    - Canonicalizing the request action (``GetObject`` -> ``s3:GetObject``)
    - Routing the request to the provider
    - Handling provider failures gracefully (fail-safe deny)
    - Logging the decision with its diagnostic detail
    - Handing the decision to the audit emitter
    """

    def __init__(
        self,
        store: PolicyStore,
        provider: Optional[AuthorizationProvider] = None,
        emitter: Optional[AuditEmitter] = None,
        component: str = "gateway",
    ) -> None:
        self._store = store
        self._emitter = emitter
        self._component = component
        self._provider: AuthorizationProvider = provider if provider is not None else self._load_provider()

        if not self._provider.health_check():
            logger.warning("Authorization provider %s is unhealthy", self._provider.get_name())

    @classmethod
    def from_config(cls, component: str = "gateway") -> "AccessGateway":
        """Build the store, provider and audit emitter from configuration.

        The policies are loaded from the ``policy_manifest`` file. Malformed
        policies are reported and skipped; an unreadable manifest makes the
        gateway deny every request.
        """
        sensitive = config.getlist(component, "sensitive_actions", fallback=[])
        store = PolicyStore(sensitive_actions=sensitive or None)
        manifest = config.get(component, "policy_manifest", fallback=config.DEFAULT_POLICY_MANIFEST)
        provider: Optional[AuthorizationProvider] = None
        try:
            errors = store.load_manifest(manifest)
            for error in errors:
                logger.error("Policy rejected at load time: %s", error)
        except InvalidManifest as e:
            logger.error("Failed to load policy manifest %s: %s", manifest, e)
            logger.error("SECURITY: Falling back to deny-all provider for safety")
            provider = DenyAllProvider()

        return cls(store, provider=provider, emitter=AuditEmitter.from_config(component), component=component)

    def _load_provider(self) -> AuthorizationProvider:
        """Load the configured authorization provider from configuration."""
        try:
            provider_name = config.get(self._component, "authorization_provider", fallback="policy")
            logger.info("Loading authorization provider: %s", provider_name)

            if provider_name == "deny_all":
                return DenyAllProvider()
            if provider_name != "policy":
                logger.error("Unknown authorization provider: %s, falling back to policy", provider_name)

            provider = PolicyAuthProvider.from_config(self._store, self._component)
            logger.info("Authorization provider %s loaded successfully", provider.get_name())
            return provider

        except Exception as e:
            logger.error("Failed to load authorization provider: %s", e)
            logger.error("SECURITY: Falling back to deny-all provider for safety")
            return DenyAllProvider()

    @property
    def store(self) -> PolicyStore:
        return self._store

    def get_provider_name(self) -> str:
        return self._provider.get_name()

    def authorize(self, request: AuthorizationRequest, timestamp: Optional[datetime] = None) -> Decision:
        """Make an authorization decision.

        Args:
            request: The authorization request
            timestamp: When the request was received (defaults to now, UTC)

        Returns:
            Decision; Allow or Deny, never raised
        """
        return self._handle(request, timestamp, self._decide)

    def _handle(
        self,
        request: AuthorizationRequest,
        timestamp: Optional[datetime],
        decide: Callable[[AuthorizationRequest], Decision],
    ) -> Decision:
        request_id = uuid.uuid4().hex
        token = tenantgate_logging.request_id_var.set(request_id)
        try:
            canonical = actions.canonical_action(request.action)
            if canonical != request.action:
                request = AuthorizationRequest(
                    request.principal, canonical, request.resource, request.key_ref, request.context
                )

            decision = decide(request)
            self._log(request, decision)

            if self._emitter is not None:
                self._emitter.record(request, decision, timestamp, request_id=request_id)

            return decision
        finally:
            tenantgate_logging.request_id_var.reset(token)

    def _decide(self, request: AuthorizationRequest) -> Decision:
        try:
            return self._provider.authorize(request)
        except AuthorizationError as e:
            logger.error("Authorization provider %s could not decide: %s (denying)", self._provider.get_name(), e)
            return Decision.deny(reason=f"Authorization provider error: {e}")
        except Exception as e:
            logger.error(
                "Authorization provider %s encountered error: %s (denying by default)",
                self._provider.get_name(),
                e,
                exc_info=True,
            )
            return Decision.deny(reason=f"Authorization provider error: {e}")

    @staticmethod
    def _log(request: AuthorizationRequest, decision: Decision) -> None:
        log_msg = "Authorization %s: principal=%s, action=%s, resource=%s, key=%s, statement=%s, policy=%s, reason=%s"
        log_args = (
            "GRANTED" if decision.allowed else "DENIED",
            request.principal,
            request.action,
            request.resource,
            request.key_ref,
            decision.statement_id,
            decision.policy_subject,
            decision.reason,
        )
        if decision.allowed:
            logger.info(log_msg, *log_args)
        else:
            logger.warning(log_msg, *log_args)

    def authorize_assertion(
        self,
        assertion: IdentityAssertion,
        action: str,
        resource: str,
        key_ref: Optional[str] = None,
        context: Optional[Mapping[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Authorize a request made with a federated identity assertion.

        Expired sessions are denied without evaluating any policy. The
        assertion's account is exposed to conditions as ``aws:PrincipalAccount``.
        """
        request_context: Dict[str, str] = dict(context or {})
        request_context.setdefault("aws:PrincipalAccount", assertion.account_id)
        request = AuthorizationRequest(assertion.principal, action, resource, key_ref, request_context)

        if assertion.is_expired(now):
            expired = Decision.deny(reason=f"Session of {assertion.principal} expired at {assertion.expires_at}")
            return self._handle(request, now, lambda _: expired)

        return self.authorize(request, timestamp=now)

    def shutdown(self, timeout: float = 30.0) -> None:
        if self._emitter is not None:
            self._emitter.shutdown(timeout)
