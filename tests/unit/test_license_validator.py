"""
Unit tests for offline license validation

Tests cover:
- Parse failures and corrupted artifacts
- Signature verification and fail-closed behavior
- Expiry boundary and remaining days
- Hardware binding and revocation precedence
- Verbose stage reporting
- End-to-end issue, validate and revoke flow
"""

import json
import os
import shutil
import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import rsa

from licensing.key_manager import KeyManager
from licensing.license_models import LicenseType, ValidationStatus
from licensing.license_signer import LicenseSigner
from licensing.license_storage import LicenseRegistry
from licensing.security.crypto_layer import generate_license_id, sign_payload
from licensing.security.hardware_fingerprint import StaticFingerprint
from licensing.security.license_validator import (
    STAGES, LicenseValidator, load_blacklist
)

HWID = "ab" * 32
OTHER_HWID = "cd" * 32


class ValidatorTestCase(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048,
                                                   backend=default_backend())
        cls.public_key = cls.private_key.public_key()

    def make_license(self, **overrides):
        data = {
            "client": "Acme",
            "licenseType": "PRO",
            "hardwareId": HWID,
            "expires": "2025-01-10",
            "version": "1.0",
            "issuedAt": "2024-01-10T08:00:00.000Z",
            "features": ["basic_pos", "advanced_reports"],
        }
        data.update(overrides)
        data["signature"] = sign_payload(data, self.private_key)
        return data


class TestLicenseValidator(ValidatorTestCase):
    """Test cases for LicenseValidator class"""

    def setUp(self):
        self.validator = LicenseValidator(public_key=self.public_key)
        self.now = datetime(2025, 1, 1, 12, 0, 0)

    def test_valid_license(self):
        data = self.make_license()
        result = self.validator.validate(json.dumps(data), expected_hardware_id=HWID, now=self.now)

        self.assertTrue(result.valid)
        self.assertEqual(result.status, ValidationStatus.VALID)
        self.assertEqual(result.client, "Acme")
        self.assertEqual(result.license_type, LicenseType.PRO)
        self.assertEqual(result.expires_at, "2025-01-10")
        self.assertEqual(result.days_remaining, 10)
        self.assertEqual(result.features, ["basic_pos", "advanced_reports"])
        self.assertEqual(result.license_id, generate_license_id(data))
        self.assertEqual(result.stages, [])

    def test_accepts_bytes_and_dict(self):
        data = self.make_license()
        self.assertTrue(self.validator.validate(json.dumps(data).encode("utf-8"), now=self.now).valid)
        self.assertTrue(self.validator.validate(data, now=self.now).valid)

    def test_expiry_boundary(self):
        data = json.dumps(self.make_license(expires="2025-01-10"))

        last_moment = self.validator.validate(data, now=datetime(2025, 1, 10, 23, 59, 59))
        self.assertEqual(last_moment.status, ValidationStatus.VALID)
        self.assertEqual(last_moment.days_remaining, 1)

        next_day = self.validator.validate(data, now=datetime(2025, 1, 11, 0, 0, 0))
        self.assertEqual(next_day.status, ValidationStatus.EXPIRED)
        self.assertEqual(next_day.days_remaining, 0)

    def test_aware_now(self):
        data = self.make_license(expires="2030-01-01")
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.assertTrue(self.validator.validate(data, now=now).valid)

    def test_clock_is_used_without_now(self):
        validator = LicenseValidator(public_key=self.public_key,
                                     clock=lambda: datetime(2025, 2, 1))
        result = validator.validate(self.make_license())
        self.assertEqual(result.status, ValidationStatus.EXPIRED)

    def test_corrupted_inputs(self):
        valid = self.make_license()
        cases = [
            "not json",
            b"\xff\xfe",
            "[1, 2, 3]",
            json.dumps({k: v for k, v in valid.items() if k != "issuedAt"}),
            json.dumps(dict(valid, licenseType="GOLD")),
            json.dumps(dict(valid, expires="2025-02-30")),
            json.dumps(dict(valid, expires="10/01/2025")),
            json.dumps(dict(valid, version="2.0")),
            json.dumps(dict(valid, client=None)),
            json.dumps(dict(valid, features="basic_pos")),
            json.dumps(dict(valid, maxUsers="ten")),
        ]
        for content in cases:
            result = self.validator.validate(content, now=self.now)
            self.assertEqual(result.status, ValidationStatus.CORRUPTED, content)
            self.assertFalse(result.valid)

    def test_tampered_license(self):
        data = self.make_license()
        data["expires"] = "2099-12-31"
        result = self.validator.validate(data, now=self.now)
        self.assertEqual(result.status, ValidationStatus.INVALID_SIGNATURE)

    def test_missing_public_key_fails_closed(self):
        result = LicenseValidator(public_key=None).validate(self.make_license(), now=self.now)
        self.assertEqual(result.status, ValidationStatus.INVALID_SIGNATURE)

    def test_unloadable_public_key_fails_closed(self):
        validator = LicenseValidator(public_key="not a pem key")
        self.assertFalse(validator.has_public_key)
        result = validator.validate(self.make_license(), now=self.now)
        self.assertEqual(result.status, ValidationStatus.INVALID_SIGNATURE)

    def test_signature_checked_before_expiry(self):
        data = self.make_license()
        data["client"] = "Mallory"
        result = self.validator.validate(data, now=datetime(2030, 1, 1))
        self.assertEqual(result.status, ValidationStatus.INVALID_SIGNATURE)

    def test_hardware_mismatch(self):
        result = self.validator.validate(self.make_license(), expected_hardware_id=OTHER_HWID,
                                         now=self.now)
        self.assertEqual(result.status, ValidationStatus.HARDWARE_MISMATCH)

    def test_hardware_check_skipped_without_expected_id(self):
        result = self.validator.validate(self.make_license(hardwareId=OTHER_HWID), now=self.now)
        self.assertTrue(result.valid)

    def test_revoked(self):
        data = self.make_license()
        validator = LicenseValidator(public_key=self.public_key,
                                     blacklist=[generate_license_id(data)])
        result = validator.validate(data, expected_hardware_id=HWID, now=self.now)
        self.assertEqual(result.status, ValidationStatus.REVOKED)

    def test_hardware_mismatch_precedes_blacklist(self):
        data = self.make_license()
        validator = LicenseValidator(public_key=self.public_key,
                                     blacklist=[generate_license_id(data)])
        result = validator.validate(data, expected_hardware_id=OTHER_HWID, now=self.now)
        self.assertEqual(result.status, ValidationStatus.HARDWARE_MISMATCH)

    def test_registry_lookup_is_informational(self):
        data = self.make_license()
        registry = MagicMock()
        registry.get_by_id.return_value = None
        result = LicenseValidator(public_key=self.public_key, registry=registry).validate(
            data, now=self.now)

        self.assertTrue(result.valid)
        self.assertFalse(result.registry_record_found)
        registry.get_by_id.assert_called_once_with(generate_license_id(data))

        registry.get_by_id.side_effect = RuntimeError("registry offline")
        result = LicenseValidator(public_key=self.public_key, registry=registry).validate(
            data, now=self.now)
        self.assertTrue(result.valid)
        self.assertIsNone(result.registry_record_found)

    def test_features_default_to_tier_table(self):
        data = self.make_license()
        del data["features"]
        data["signature"] = sign_payload(data, self.private_key)
        result = self.validator.validate(data, now=self.now)
        self.assertTrue(result.valid)
        self.assertIn("stock_management", result.features)


class TestVerboseValidation(ValidatorTestCase):
    """Test cases for verbose stage reporting"""

    def setUp(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0)

    def stage_map(self, result):
        return {stage.stage: stage.passed for stage in result.stages}

    def test_all_stages_reported_on_success(self):
        validator = LicenseValidator(public_key=self.public_key, registry=MagicMock())
        result = validator.validate(self.make_license(), expected_hardware_id=HWID,
                                    verbose=True, now=self.now)

        self.assertTrue(result.valid)
        self.assertEqual([s.stage for s in result.stages], list(STAGES))
        self.assertTrue(all(s.passed for s in result.stages))

    def test_verbose_does_not_change_status(self):
        data = self.make_license()
        data["client"] = "Tampered"
        validator = LicenseValidator(public_key=self.public_key,
                                     blacklist=[generate_license_id(data)])
        now = datetime(2026, 1, 1)

        quiet = validator.validate(data, expected_hardware_id=OTHER_HWID, now=now)
        verbose = validator.validate(data, expected_hardware_id=OTHER_HWID, verbose=True, now=now)

        self.assertEqual(quiet.status, ValidationStatus.INVALID_SIGNATURE)
        self.assertEqual(verbose.status, quiet.status)
        self.assertEqual(self.stage_map(verbose), {
            "ParseFile": True,
            "VerifySignature": False,
            "CheckExpiry": False,
            "CheckHardwareMatch": False,
            "CheckBlacklist": False,
            "CheckRegistry": None,
        })

    def test_skipped_stages_after_parse_failure(self):
        validator = LicenseValidator(public_key=self.public_key)
        result = validator.validate("{broken", verbose=True, now=self.now)

        self.assertEqual(result.status, ValidationStatus.CORRUPTED)
        self.assertEqual(len(result.stages), len(STAGES))
        self.assertFalse(result.stages[0].passed)
        self.assertTrue(all(s.passed is None for s in result.stages[1:]))

    def test_skipped_hardware_stage(self):
        validator = LicenseValidator(public_key=self.public_key)
        result = validator.validate(self.make_license(), verbose=True, now=self.now)
        self.assertIsNone(self.stage_map(result)["CheckHardwareMatch"])
        self.assertTrue(result.valid)

    def test_to_dict(self):
        validator = LicenseValidator(public_key=self.public_key)
        summary = validator.validate(self.make_license(), verbose=True, now=self.now).to_dict()
        self.assertTrue(summary["valid"])
        self.assertEqual(summary["status"], "valid")
        self.assertEqual(summary["licenseType"], "PRO")
        self.assertEqual(len(summary["stages"]), len(STAGES))


class TestFilesAndBlacklist(ValidatorTestCase):
    """Test cases for file based validation helpers"""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_validate_file(self):
        path = self.test_dir / "license.lic"
        path.write_text(json.dumps(self.make_license(expires="2030-01-01"), indent=2))
        validator = LicenseValidator(public_key=self.public_key)

        self.assertTrue(validator.validate_file(path, expected_hardware_id=HWID).valid)
        self.assertEqual(validator.validate_file(self.test_dir / "missing.lic").status,
                         ValidationStatus.NOT_FOUND)

    def test_validate_unreadable_file(self):
        validator = LicenseValidator(public_key=self.public_key)
        result = validator.validate_file(self.test_dir)
        self.assertEqual(result.status, ValidationStatus.CORRUPTED)

    def test_load_blacklist(self):
        self.assertEqual(load_blacklist(self.test_dir / "none.json"), [])

        good = self.test_dir / "good.json"
        good.write_text(json.dumps(["aaaa", "bbbb"]))
        self.assertEqual(load_blacklist(good), ["aaaa", "bbbb"])

        for content in ("{oops", json.dumps({"ids": []}), json.dumps([1, 2])):
            bad = self.test_dir / "bad.json"
            bad.write_text(content)
            with self.assertLogs("licensing.security.license_validator", level="WARNING"):
                self.assertEqual(load_blacklist(bad), [])


class TestEndToEnd(unittest.TestCase):
    """Issue, validate and revoke a license"""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.key_manager = KeyManager(keys_dir=self.test_dir / "keys")
        self.key_manager.generate_key_pair()
        self.registry = LicenseRegistry(data_dir=self.test_dir / "data")
        self.issue_time = datetime.now(timezone.utc)
        self.signer = LicenseSigner(self.key_manager, registry=self.registry,
                                    output_dir=self.test_dir / "out",
                                    clock=lambda: self.issue_time)
        self.machine = StaticFingerprint(HWID)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_issue_validate_revoke(self):
        generated = self.signer.generate("Acme", "PRO", self.machine.get_hardware_id())
        public_pem = self.key_manager.get_public_key_pem()

        validator = LicenseValidator(public_key=public_pem, registry=self.registry)
        result = validator.validate_file(generated.file_path,
                                         expected_hardware_id=self.machine.get_hardware_id())
        self.assertEqual(result.status, ValidationStatus.VALID)
        self.assertIn(result.days_remaining, (365, 366))
        self.assertTrue(result.registry_record_found)
        self.assertEqual(result.license_id, generated.record.id)

        revocation = self.registry.revoke(generated.record.id, reason="refund")
        self.assertTrue(revocation.success)

        blacklist_path = self.registry.write_blacklist(self.test_dir / "blacklist.json")
        revoked_validator = LicenseValidator(public_key=public_pem,
                                             blacklist=load_blacklist(blacklist_path))
        result = revoked_validator.validate_file(generated.file_path,
                                                 expected_hardware_id=self.machine.get_hardware_id())
        self.assertEqual(result.status, ValidationStatus.REVOKED)

    def test_license_for_other_machine(self):
        generated = self.signer.generate("Acme", "BASIC", OTHER_HWID)
        validator = LicenseValidator(public_key=self.key_manager.get_public_key())
        result = validator.validate_file(generated.file_path,
                                         expected_hardware_id=self.machine.get_hardware_id(),
                                         now=datetime.now() + timedelta(days=1))
        self.assertEqual(result.status, ValidationStatus.HARDWARE_MISMATCH)


class TestCalendarEdges(ValidatorTestCase):
    """Expiry dates at the ends of the calendar, west of UTC"""

    def setUp(self):
        if not hasattr(time, "tzset"):
            self.skipTest("time.tzset is not available on this platform")
        env = patch.dict(os.environ, {"TZ": "America/New_York"})
        env.start()
        time.tzset()

        def restore():
            env.stop()
            time.tzset()
        self.addCleanup(restore)

        self.test_dir = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.test_dir, True)

    def test_perpetual_license(self):
        key_manager = KeyManager(keys_dir=self.test_dir / "keys")
        key_manager.generate_key_pair()
        registry = LicenseRegistry(data_dir=self.test_dir / "data")
        signer = LicenseSigner(key_manager, registry=registry, output_dir=self.test_dir / "out")

        generated = signer.generate("Acme", "PRO", HWID, expires="9999-12-31")
        validator = LicenseValidator(public_key=key_manager.get_public_key_pem(), registry=registry)

        for verbose in (False, True):
            result = validator.validate_file(generated.file_path, expected_hardware_id=HWID,
                                             verbose=verbose)
            self.assertEqual(result.status, ValidationStatus.VALID)
            self.assertGreater(result.days_remaining, 2900000)

        stats = registry.stats()
        self.assertEqual(stats.active, 1)
        self.assertEqual(len(registry.query(active=True)), 1)

    def test_first_day_of_calendar(self):
        validator = LicenseValidator(public_key=self.public_key)
        data = self.make_license(expires="0001-01-01")

        result = validator.validate(data, expected_hardware_id=HWID, verbose=True)
        self.assertEqual(result.status, ValidationStatus.EXPIRED)
        self.assertEqual(result.days_remaining, 0)

        data["client"] = "Forged"
        result = validator.validate(data, verbose=True)
        self.assertEqual(result.status, ValidationStatus.INVALID_SIGNATURE)
        self.assertFalse({s.stage: s.passed for s in result.stages}["CheckExpiry"])

    def test_aware_now_is_converted_to_local_time(self):
        validator = LicenseValidator(public_key=self.public_key)
        data = self.make_license(expires="2025-01-10")

        # 2025-01-11 03:00 UTC is still 2025-01-10 in New York
        result = validator.validate(data, now=datetime(2025, 1, 11, 3, 0, tzinfo=timezone.utc))
        self.assertEqual(result.status, ValidationStatus.VALID)
        result = validator.validate(data, now=datetime(2025, 1, 11, 5, 0, tzinfo=timezone.utc))
        self.assertEqual(result.status, ValidationStatus.EXPIRED)


if __name__ == '__main__':
    unittest.main()
