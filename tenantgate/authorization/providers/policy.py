"""Policy-document authorization provider.

This provider is the decision engine of the gateway. A request is evaluated
against up to three independently authored policy sides, in this order:

1. identity: the policies attached to the requesting principal (or to the
   role whose session it is)
2. resource: the bucket policy of the target bucket, or the key policy when
   the target is itself a key
3. key: the key policy of the key the object is encrypted with, evaluated
   for the key action the storage operation implies (``kms:Decrypt`` for
   reads, ``kms:GenerateDataKey`` for writes)

Within a side, a matching Deny statement wins over any matching Allow; with
no matching statement the side is an implicit deny. The request is allowed
only when every applicable side allows it. An explicit Deny ends the
evaluation and is reported as the decisive statement; otherwise the first
implicit deny in side order is reported, without a statement.

Every side the request involves applies: the identity side always, the
resource side always, the key side whenever a key reference comes with an
action that uses the key. A side without any stored policy contributes no
Allow, so its absence is an implicit deny.

List operations (``s3:ListBucket``) are evaluated with the requested prefix
(``s3:prefix``, empty when not given) in the context. A list Allow only
matches when it carries a condition on the prefix and that condition covers
the requested prefix; a list grant without a prefix condition grants nothing.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from tenantgate import config
from tenantgate.authorization.provider import (
    AuthorizationProvider,
    AuthorizationRequest,
    Decision,
    DecisionResult,
    PolicyEvaluation,
    PolicySide,
    Verdict,
)
from tenantgate.policy import actions, matchers
from tenantgate.policy.actions import ActionInfo, ResourceLevel
from tenantgate.policy.document import Effect, Policy, Statement
from tenantgate.policy.store import PolicySnapshot, PolicyStore

logger = logging.getLogger(__name__)


class PolicyAuthProvider(AuthorizationProvider):
    """Evaluates identity, resource and key policies held in a PolicyStore.

    The provider keeps no per-request state; every call works on the store
    snapshot taken at its start.
    """

    def __init__(self, store: PolicyStore, list_prefix_key: str = config.DEFAULT_LIST_PREFIX_KEY) -> None:
        self._store = store
        self._prefix_key = list_prefix_key.lower()
        logger.info("Initialized PolicyAuthProvider (list prefix key %s)", list_prefix_key)

    @classmethod
    def from_config(cls, store: PolicyStore, component: str = "gateway") -> "PolicyAuthProvider":
        return cls(
            store,
            list_prefix_key=config.get(component, "list_prefix_key", fallback=config.DEFAULT_LIST_PREFIX_KEY),
        )

    def get_name(self) -> str:
        return "policy"

    def health_check(self) -> bool:
        """The provider is healthy once the store holds at least one policy."""
        return len(self._store) > 0

    def authorize(self, request: AuthorizationRequest) -> Decision:
        snapshot = self._store.snapshot()

        action = actions.canonical_action(request.action)
        info = actions.lookup(action)
        if info is not None and not actions.resource_fits(info, request.resource):
            return Decision.deny(
                reason=f"Resource {request.resource} is not a {info.level.value} identifier as required by {action}"
            )

        context: Dict[str, str] = {k.lower(): v for k, v in request.context.items()}
        is_list = info is not None and info.lists
        if is_list:
            context.setdefault(self._prefix_key, "")

        evaluations: List[PolicyEvaluation] = []
        for side, policies, side_action, side_resource in self._gather(snapshot, request, action, info):
            evaluation = self._evaluate_side(
                side,
                policies,
                request.principal,
                side_action,
                side_resource,
                context,
                is_list and side is not PolicySide.KEY,
            )
            evaluations.append(evaluation)

            if evaluation.verdict is Verdict.DENY:
                return Decision.deny(
                    reason=f"Explicitly denied by statement {evaluation.statement_id} of the {side.value} policy "
                    f"for {evaluation.subject}",
                    statement_id=evaluation.statement_id,
                    policy_subject=evaluation.subject,
                    explicit=True,
                    evaluations=tuple(evaluations),
                )

        for evaluation in evaluations:
            if evaluation.verdict is Verdict.IMPLICIT_DENY:
                where = f"for {evaluation.subject}" if evaluation.subject else "(none stored)"
                return Decision.deny(
                    reason=f"No statement of the {evaluation.side.value} policy {where} allows "
                    f"{evaluation.action} on {evaluation.resource}",
                    policy_subject=evaluation.subject,
                    evaluations=tuple(evaluations),
                )

        first = evaluations[0]
        return Decision(
            DecisionResult.ALLOW,
            reason="Allowed by " + ", ".join(f"{e.side.value}:{e.statement_id}" for e in evaluations),
            statement_id=first.statement_id,
            policy_subject=first.subject,
            evaluations=tuple(evaluations),
        )

    def _gather(
        self, snapshot: PolicySnapshot, request: AuthorizationRequest, action: str, info: Optional[ActionInfo]
    ) -> List[Tuple[PolicySide, Sequence[Policy], str, str]]:
        sides: List[Tuple[PolicySide, Sequence[Policy], str, str]] = []

        identity = snapshot.identity_policies_for(request.principal)
        sides.append((PolicySide.IDENTITY, identity, action, request.resource))

        level = info.level if info is not None else actions.resource_level(request.resource)
        if level is ResourceLevel.KEY:
            resource_policy = snapshot.key_policy_for(request.resource)
        else:
            resource_policy = snapshot.resource_policy_for(request.resource)
        sides.append((PolicySide.RESOURCE, _as_list(resource_policy), action, request.resource))

        if request.key_ref and info is not None and info.key_action:
            key_policy = snapshot.key_policy_for(request.key_ref)
            sides.append((PolicySide.KEY, _as_list(key_policy), info.key_action, request.key_ref))

        return sides

    def _evaluate_side(
        self,
        side: PolicySide,
        policies: Sequence[Policy],
        principal: str,
        action: str,
        resource: str,
        context: Mapping[str, str],
        is_list: bool,
    ) -> PolicyEvaluation:
        allow: Optional[Tuple[Policy, Statement]] = None

        for policy in policies:
            for statement in policy.statements:
                if not self._statement_matches(statement, principal, action, resource, context, is_list):
                    continue
                if statement.effect is Effect.DENY:
                    return PolicyEvaluation(
                        side, Verdict.DENY, action, resource, policy.subject, statement.statement_id
                    )
                if allow is None:
                    allow = (policy, statement)

        if allow is not None:
            policy, statement = allow
            return PolicyEvaluation(side, Verdict.ALLOW, action, resource, policy.subject, statement.statement_id)

        subject = policies[0].subject if policies else None
        return PolicyEvaluation(side, Verdict.IMPLICIT_DENY, action, resource, subject)

    def _statement_matches(
        self,
        statement: Statement,
        principal: str,
        action: str,
        resource: str,
        context: Mapping[str, str],
        is_list: bool,
    ) -> bool:
        # No Principal element: identity policy, applies to its own principal
        if statement.principals is not None and not any(
            matchers.match_principal(p, principal) for p in statement.principals
        ):
            return False

        if not any(matchers.match_action(a, action) for a in statement.actions):
            return False

        if not any(matchers.match_resource(r, resource) for r in statement.resources):
            return False

        # absent condition map: no additional restriction
        if not all(matchers.evaluate_condition(c.operator, c.key, c.values, context) for c in statement.conditions):
            return False

        if is_list and statement.effect is Effect.ALLOW:
            return any(c.key.lower() == self._prefix_key for c in statement.conditions)

        return True


def _as_list(policy: Optional[Policy]) -> List[Policy]:
    return [policy] if policy is not None else []

