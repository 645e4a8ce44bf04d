import json
import os
import unittest
from datetime import datetime, timedelta, timezone

from tenantgate.audit.emitter import AuditEmitter
from tenantgate.audit.sinks import MemoryAuditSink
from tenantgate.authorization.gateway import AccessGateway
from tenantgate.authorization.providers.policy import PolicyAuthProvider
from tenantgate.collaborators import (
    DecryptionFailed,
    FernetCipher,
    GuardedObjectClient,
    IdentityAssertion,
    InMemoryObjectStorage,
    UnknownKey,
)
from tenantgate.common.exception import AccessDeniedError, TenantgateException
from tenantgate.policy import document
from tenantgate.policy.document import PolicyKind
from tenantgate.policy.store import PolicyStore

DATA_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "data", "policies"))

ROLE = "arn:aws:iam::111122223333:role/ClientAnalyst"
SESSION = "arn:aws:sts::111122223333:assumed-role/ClientAnalyst/alice"
OWNER = "arn:aws:iam::444455556666:role/DataOwner"
BUCKET = "shared-bucket"
KEY = "arn:aws:kms:us-east-1:444455556666:key/1234abcd-12ab-34cd-56ef-1234567890ab"


class TestIdentityAssertion(unittest.TestCase):
    def test_is_expired(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assertion = IdentityAssertion(SESSION, "111122223333", now + timedelta(minutes=5))
        self.assertFalse(assertion.is_expired(now))
        self.assertTrue(assertion.is_expired(now + timedelta(minutes=5)))

    def test_naive_datetimes_are_utc(self):
        assertion = IdentityAssertion(SESSION, "111122223333", datetime(2024, 5, 1, 12, 0))
        self.assertTrue(assertion.is_expired(datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc)))
        self.assertFalse(assertion.is_expired(datetime(2024, 5, 1, 11, 0)))


class TestFernetCipher(unittest.TestCase):
    def test_encrypt_decrypt(self):
        cipher = FernetCipher()
        cipher.create_key(KEY)
        token = cipher.encrypt(b"quarterly numbers", KEY)
        self.assertNotEqual(token, b"quarterly numbers")
        self.assertEqual(cipher.decrypt(token, KEY), b"quarterly numbers")

    def test_existing_keys(self):
        cipher = FernetCipher()
        key = cipher.create_key(KEY)
        other = FernetCipher({KEY: key})
        self.assertEqual(other.decrypt(cipher.encrypt(b"x", KEY), KEY), b"x")

    def test_unknown_key(self):
        self.assertRaises(UnknownKey, FernetCipher().encrypt, b"x", KEY)

    def test_wrong_key(self):
        cipher = FernetCipher()
        cipher.create_key(KEY)
        cipher.create_key("other")
        token = cipher.encrypt(b"x", KEY)
        self.assertRaises(DecryptionFailed, cipher.decrypt, token, "other")


class TestInMemoryObjectStorage(unittest.TestCase):
    def test_read_write_list(self):
        storage = InMemoryObjectStorage()
        storage.write(f"{BUCKET}/client-data/b.csv", b"b")
        storage.write(f"{BUCKET}/client-data/a.csv", b"a")
        storage.write(f"{BUCKET}/internal-files/c.csv", b"c")
        storage.write("other-bucket/client-data/d.csv", b"d")

        self.assertEqual(storage.read(f"{BUCKET}/client-data/a.csv"), b"a")
        self.assertEqual(storage.list(BUCKET, "client-data/"), ["client-data/a.csv", "client-data/b.csv"])
        self.assertEqual(len(storage.list(BUCKET)), 3)
        self.assertRaises(KeyError, storage.read, f"{BUCKET}/missing")


class TestGuardedObjectClient(unittest.TestCase):
    def setUp(self):
        owner_identity = document.parse(
            {
                "Version": "2012-10-17",
                "Statement": [{"Effect": "Allow", "Action": ["s3:*", "kms:*"], "Resource": "*"}],
            },
            OWNER,
            PolicyKind.IDENTITY,
        )
        # the sample bucket policy plus write access for the owner
        with open(os.path.join(DATA_DIR, "shared-bucket.json"), encoding="utf-8") as f:
            bucket_doc = json.load(f)
        bucket_doc["Statement"].append(
            {
                "Sid": "OwnerWrites",
                "Effect": "Allow",
                "Principal": {"AWS": OWNER},
                "Action": "s3:*",
                "Resource": f"{BUCKET}/*",
            }
        )
        self.store = PolicyStore(
            [
                owner_identity,
                document.parse(bucket_doc, BUCKET, PolicyKind.RESOURCE),
                document.load_policy_file(os.path.join(DATA_DIR, "client-analyst.json"), ROLE, PolicyKind.IDENTITY),
                document.load_policy_file(os.path.join(DATA_DIR, "shared-bucket-key.json"), KEY, PolicyKind.KEY),
            ]
        )

        self.sink = MemoryAuditSink()
        self.gateway = AccessGateway(
            self.store, provider=PolicyAuthProvider(self.store), emitter=AuditEmitter(self.sink)
        )
        self.cipher = FernetCipher()
        self.cipher.create_key(KEY)
        self.storage = InMemoryObjectStorage()
        self.client = GuardedObjectClient(self.gateway, self.storage, self.cipher)

    def tearDown(self):
        self.gateway.shutdown(timeout=5.0)

    def test_owner_writes_analyst_reads(self):
        self.client.put_object(OWNER, f"{BUCKET}/client-data/report.pdf", b"report", key_ref=KEY)
        self.assertNotEqual(self.storage.read(f"{BUCKET}/client-data/report.pdf"), b"report")

        data = self.client.get_object(SESSION, f"{BUCKET}/client-data/report.pdf", key_ref=KEY)
        self.assertEqual(data, b"report")

    def test_denied_read_is_generic(self):
        self.client.put_object(OWNER, f"{BUCKET}/internal-files/plan.txt", b"plan")

        with self.assertRaises(AccessDeniedError) as cm:
            self.client.get_object(SESSION, f"{BUCKET}/internal-files/plan.txt")
        self.assertEqual(str(cm.exception), "Access Denied")

    def test_analyst_cannot_write(self):
        self.assertRaises(AccessDeniedError, self.client.put_object, SESSION, f"{BUCKET}/client-data/x", b"x")
        self.assertRaises(KeyError, self.storage.read, f"{BUCKET}/client-data/x")

    def test_list(self):
        self.client.put_object(OWNER, f"{BUCKET}/client-data/a.csv", b"a")
        self.client.put_object(OWNER, f"{BUCKET}/internal-files/b.csv", b"b")

        self.assertEqual(self.client.list_objects(SESSION, BUCKET, "client-data/"), ["client-data/a.csv"])
        self.assertRaises(AccessDeniedError, self.client.list_objects, SESSION, BUCKET, "internal-files/")
        self.assertRaises(AccessDeniedError, self.client.list_objects, SESSION, BUCKET)

    def test_no_cipher(self):
        client = GuardedObjectClient(self.gateway, self.storage)
        self.assertRaises(TenantgateException, client.put_object, OWNER, f"{BUCKET}/client-data/x", b"x", KEY)

    def test_operations_are_audited(self):
        self.client.put_object(OWNER, f"{BUCKET}/client-data/a.csv", b"a")
        with self.assertRaises(AccessDeniedError):
            self.client.get_object(SESSION, f"{BUCKET}/internal-files/a.csv")
        self.gateway.shutdown(timeout=5.0)

        self.assertEqual(
            [(e["action"], e["result"]) for e in self.sink.entries],
            [("s3:PutObject", "Allow"), ("s3:GetObject", "Deny")],
        )


if __name__ == "__main__":
    unittest.main()
