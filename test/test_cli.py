import io
import json
import os
import sys
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

from tenantgate.cmd import tenantgate_policy

DATA_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "data", "policies"))

SESSION = "arn:aws:sts::111122223333:assumed-role/ClientAnalyst/alice"


class TestPolicyTool(unittest.TestCase):
    def _run(self, *argv):
        out = io.StringIO()
        code = 0
        with patch.object(sys, "argv", ["tenantgate-policy", *argv]), redirect_stdout(out):
            try:
                tenantgate_policy.main()
            except SystemExit as e:
                code = e.code or 0
        return code, out.getvalue()

    def test_validate(self):
        code, out = self._run("validate", os.path.join(DATA_DIR, "shared-bucket.json"), "--kind", "resource")
        self.assertEqual(code, 0)
        self.assertEqual(out, "")

    def test_validate_warnings(self):
        path = os.path.join(DATA_DIR, "shared-bucket-key.json")

        code, out = self._run("validate", path, "--kind", "key")
        self.assertEqual(code, 0)
        self.assertIn("sensitive-action-any-resource", out)

        code, _ = self._run("validate", path, "--kind", "key", "--strict")
        self.assertEqual(code, 1)

    def test_validate_malformed(self):
        code, _ = self._run("validate", os.path.join(DATA_DIR, "malformed.json"))
        self.assertEqual(code, 1)

    def test_resource_policy_needs_principal(self):
        code, _ = self._run("validate", os.path.join(DATA_DIR, "client-analyst.json"), "--kind", "resource")
        self.assertEqual(code, 1)

    def test_format(self):
        path = os.path.join(DATA_DIR, "client-analyst.json")
        code, out = self._run("format", path)
        self.assertEqual(code, 0)
        with open(path, encoding="utf-8") as f:
            self.assertEqual(json.loads(out), json.load(f))

    def test_evaluate(self):
        code, out = self._run(
            "evaluate",
            "--manifest",
            os.path.join(DATA_DIR, "manifest.yaml"),
            "--principal",
            SESSION,
            "--action",
            "GetObject",
            "--resource",
            "shared-bucket/internal-files/report.pdf",
        )
        self.assertEqual(code, 0)
        decision = json.loads(out)
        self.assertEqual(decision["result"], "Deny")
        self.assertEqual(decision["statementId"], "DenyClientAccountInternalFiles")

    def test_evaluate_list_with_context(self):
        code, out = self._run(
            "evaluate",
            "-m",
            os.path.join(DATA_DIR, "manifest.yaml"),
            "-p",
            SESSION,
            "-a",
            "s3:ListBucket",
            "-t",
            "shared-bucket",
            "-c",
            "s3:prefix=client-data/",
        )
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["result"], "Allow")

    def test_evaluate_missing_arguments(self):
        code, out = self._run("evaluate", "--manifest", os.path.join(DATA_DIR, "manifest.yaml"))
        self.assertEqual(code, 1)
        self.assertEqual(out, "")

    def test_evaluate_bad_context(self):
        code, _ = self._run(
            "evaluate",
            "-m",
            os.path.join(DATA_DIR, "manifest.yaml"),
            "-p",
            SESSION,
            "-a",
            "s3:ListBucket",
            "-t",
            "shared-bucket",
            "-c",
            "no-equals-sign",
        )
        self.assertEqual(code, 1)

    def test_evaluate_missing_manifest(self):
        code, _ = self._run(
            "evaluate", "-m", os.path.join(DATA_DIR, "missing.yaml"), "-p", SESSION, "-a", "s3:ListBucket", "-t", "b"
        )
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
