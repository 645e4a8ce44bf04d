"""Unit tests for the access gateway.

Tests cover:
- Routing to the configured provider and the deny-all fallback
- Fail-safe deny on provider errors
- Action canonicalization
- Audit recording of every decision
- Federated identity assertions
"""

import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from tenantgate import tenantgate_logging
from tenantgate.audit.emitter import AuditEmitter
from tenantgate.audit.sinks import MemoryAuditSink
from tenantgate.authorization.gateway import AccessGateway, DenyAllProvider
from tenantgate.authorization.provider import (
    AuthorizationError,
    AuthorizationProvider,
    AuthorizationRequest,
    Decision,
    DecisionResult,
)
from tenantgate.authorization.providers.policy import PolicyAuthProvider
from tenantgate.collaborators import IdentityAssertion
from tenantgate.policy import document
from tenantgate.policy.document import PolicyKind
from tenantgate.policy.store import PolicyStore

DATA_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "data", "policies"))

ROLE = "arn:aws:iam::111122223333:role/ClientAnalyst"
SESSION = "arn:aws:sts::111122223333:assumed-role/ClientAnalyst/alice"
BUCKET = "shared-bucket"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _sample_store():
    return PolicyStore(
        [
            document.load_policy_file(os.path.join(DATA_DIR, "client-analyst.json"), ROLE, PolicyKind.IDENTITY),
            document.load_policy_file(os.path.join(DATA_DIR, "shared-bucket.json"), BUCKET, PolicyKind.RESOURCE),
        ]
    )


class TestDenyAllProvider(unittest.TestCase):
    def test_denies_everything(self):
        provider = DenyAllProvider()
        decision = provider.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/client-data/a"))
        self.assertFalse(decision.allowed)
        self.assertEqual(provider.get_name(), "deny_all")
        self.assertFalse(provider.health_check())


class TestAccessGateway(unittest.TestCase):
    def setUp(self):
        self.store = _sample_store()
        self.sink = MemoryAuditSink()
        self.emitter = AuditEmitter(self.sink)
        self.gateway = AccessGateway(self.store, provider=PolicyAuthProvider(self.store), emitter=self.emitter)

    def tearDown(self):
        self.gateway.shutdown(timeout=5.0)

    def test_allow(self):
        decision = self.gateway.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/client-data/a.pdf"))
        self.assertTrue(decision.allowed)
        self.assertEqual(self.gateway.get_provider_name(), "policy")
        self.assertIs(self.gateway.store, self.store)

    def test_canonicalizes_action(self):
        request = AuthorizationRequest(SESSION, "GetObject", f"{BUCKET}/client-data/a.pdf")
        self.gateway.authorize(request, timestamp=NOW)
        self.assertTrue(self.emitter.flush(timeout=5.0))

        entry = self.sink.entries[0]
        self.assertEqual(entry["action"], "s3:GetObject")
        self.assertEqual(entry["timestamp"], NOW.isoformat())

    def test_every_decision_is_audited(self):
        self.gateway.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/client-data/a.pdf"))
        self.gateway.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/internal-files/a.pdf"))
        self.assertTrue(self.emitter.flush(timeout=5.0))

        entries = self.sink.entries
        self.assertEqual([e["result"] for e in entries], ["Allow", "Deny"])
        self.assertEqual(entries[1]["statementId"], "DenyClientAccountInternalFiles")
        self.assertEqual(entries[1]["policySubject"], BUCKET)
        self.assertEqual(entries[0]["principal"], SESSION)
        self.assertNotEqual(entries[0]["requestId"], entries[1]["requestId"])

    def test_decision_is_logged(self):
        with self.assertLogs("tenantgate.gateway", level="INFO") as cm:
            self.gateway.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/internal-files/a.pdf"))
        self.assertTrue(
            any("Authorization DENIED" in line and "DenyClientAccountInternalFiles" in line for line in cm.output)
        )

    def test_provider_error_denies(self):
        provider = MagicMock(spec=AuthorizationProvider)
        provider.authorize.side_effect = RuntimeError("boom")
        provider.get_name.return_value = "broken"
        provider.health_check.return_value = True
        gateway = AccessGateway(self.store, provider=provider, emitter=self.emitter)

        with self.assertLogs("tenantgate.gateway", level="ERROR"):
            decision = gateway.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/client-data/a"))

        self.assertEqual(decision.result, DecisionResult.DENY)
        self.assertIn("boom", decision.reason)
        self.assertTrue(self.emitter.flush(timeout=5.0))
        self.assertEqual(self.sink.entries[-1]["result"], "Deny")

    def test_authorization_error_denies(self):
        provider = MagicMock(spec=AuthorizationProvider)
        provider.authorize.side_effect = AuthorizationError("store unavailable")
        provider.get_name.return_value = "broken"
        gateway = AccessGateway(self.store, provider=provider)

        decision = gateway.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/client-data/a"))
        self.assertFalse(decision.allowed)

    def test_unhealthy_provider_is_reported(self):
        with self.assertLogs("tenantgate.gateway", level="WARNING"):
            AccessGateway(self.store, provider=DenyAllProvider())

    def test_public_view_hides_policy_detail(self):
        decision = self.gateway.authorize(
            AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/internal-files/a.pdf")
        )
        view = decision.public_view()
        self.assertEqual(view["message"], "Access Denied")
        self.assertNotIn("DenyClientAccountInternalFiles", str(view))
        self.assertNotIn(BUCKET, str(view))

    def test_assertion(self):
        assertion = IdentityAssertion(SESSION, "111122223333", NOW + timedelta(hours=1))
        decision = self.gateway.authorize_assertion(
            assertion, "s3:GetObject", f"{BUCKET}/client-data/a.pdf", now=NOW
        )
        self.assertTrue(decision.allowed)

    def test_expired_assertion(self):
        assertion = IdentityAssertion(SESSION, "111122223333", NOW - timedelta(seconds=1))
        provider = MagicMock(spec=AuthorizationProvider)
        provider.health_check.return_value = True
        gateway = AccessGateway(self.store, provider=provider, emitter=self.emitter)

        decision = gateway.authorize_assertion(assertion, "s3:GetObject", f"{BUCKET}/client-data/a.pdf", now=NOW)

        self.assertFalse(decision.allowed)
        provider.authorize.assert_not_called()
        self.assertTrue(self.emitter.flush(timeout=5.0))
        self.assertEqual(self.sink.entries[-1]["result"], "Deny")
        self.assertIsNotNone(self.sink.entries[-1]["requestId"])
        self.assertEqual(self.sink.entries[-1]["timestamp"], NOW.isoformat())

    def test_expired_assertion_is_logged_with_request_id(self):
        assertion = IdentityAssertion(SESSION, "111122223333", NOW - timedelta(seconds=1))
        seen = []

        def capture(*args, **kwargs):
            seen.append(tenantgate_logging.request_id_var.get())

        with patch.object(AccessGateway, "_log", side_effect=capture):
            self.gateway.authorize_assertion(assertion, "s3:GetObject", f"{BUCKET}/client-data/a.pdf", now=NOW)
        self.assertTrue(self.emitter.flush(timeout=5.0))

        self.assertEqual(seen, [self.sink.entries[-1]["requestId"]])

    def test_assertion_account_is_a_condition_key(self):
        self.store.put(
            BUCKET,
            document.parse(
                {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Sid": "SameAccountOnly",
                            "Effect": "Allow",
                            "Principal": "*",
                            "Action": "s3:GetObject",
                            "Resource": f"{BUCKET}/client-data/*",
                            "Condition": {"StringEquals": {"aws:PrincipalAccount": "111122223333"}},
                        }
                    ],
                },
                BUCKET,
                PolicyKind.RESOURCE,
            ),
        )
        assertion = IdentityAssertion(SESSION, "111122223333", NOW + timedelta(hours=1))
        decision = self.gateway.authorize_assertion(assertion, "GetObject", f"{BUCKET}/client-data/a.pdf", now=NOW)
        self.assertTrue(decision.allowed)
        self.assertIn("SameAccountOnly", decision.contributing_statements)


class TestGatewayFromConfig(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def _env(self, **options):
        env = {"TENANTGATE_GATEWAY_AUDIT_SINK": "memory"}
        env.update({f"TENANTGATE_GATEWAY_{k.upper()}": v for k, v in options.items()})
        return patch.dict(os.environ, env)

    def test_from_config(self):
        with self._env(policy_manifest=os.path.join(DATA_DIR, "manifest.yaml")):
            gateway = AccessGateway.from_config()
        try:
            self.assertEqual(gateway.get_provider_name(), "policy")
            self.assertEqual(len(gateway.store), 3)
            decision = gateway.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/client-data/a"))
            self.assertTrue(decision.allowed)
        finally:
            gateway.shutdown(timeout=5.0)

    def test_unreadable_manifest_denies_all(self):
        with self._env(policy_manifest=os.path.join(self.tmpdir, "missing.yaml")):
            gateway = AccessGateway.from_config()
        try:
            self.assertEqual(gateway.get_provider_name(), "deny_all")
            decision = gateway.authorize(AuthorizationRequest(SESSION, "s3:GetObject", f"{BUCKET}/client-data/a"))
            self.assertFalse(decision.allowed)
        finally:
            gateway.shutdown(timeout=5.0)

    def test_configured_deny_all(self):
        with self._env(authorization_provider="deny_all"):
            gateway = AccessGateway(PolicyStore())
        self.assertEqual(gateway.get_provider_name(), "deny_all")

    def test_unknown_provider_falls_back_to_policy(self):
        with self._env(authorization_provider="ldap"):
            with self.assertLogs("tenantgate.gateway", level="ERROR"):
                gateway = AccessGateway(_sample_store())
        self.assertEqual(gateway.get_provider_name(), "policy")

    def test_provider_load_failure_denies_all(self):
        with self._env():
            with patch.object(PolicyAuthProvider, "from_config", side_effect=ValueError("bad option")):
                gateway = AccessGateway(_sample_store())
        self.assertEqual(gateway.get_provider_name(), "deny_all")


class TestDecision(unittest.TestCase):
    def test_allow_public_view(self):
        decision = Decision(DecisionResult.ALLOW, reason="ok", statement_id="S", policy_subject="p")
        self.assertEqual(decision.public_view(), {"result": "Allow"})


if __name__ == "__main__":
    unittest.main()
