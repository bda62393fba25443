"""
Unit tests for license signing primitives

Tests cover:
- Canonical message construction
- Sign/verify round trip and tamper detection
- Deterministic license identifiers
"""

import base64
import hashlib
import unittest

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from licensing.error_handling import UnsupportedSchemaVersion
from licensing.security.crypto_layer import (
    CANONICALIZERS, canonical_message, generate_license_id, sign_payload, verify_signature
)

HWID = "ab" * 32


def make_payload(**overrides):
    payload = {
        "client": "Acme",
        "licenseType": "PRO",
        "hardwareId": HWID,
        "expires": "2026-01-10",
        "version": "1.0",
        "issuedAt": "2025-01-10T12:34:56.789Z",
    }
    payload.update(overrides)
    return payload


class TestCanonicalMessage(unittest.TestCase):
    """Test cases for canonical payload serialization"""

    def test_exact_bytes(self):
        expected = (
            '{"client":"Acme","expires":"2026-01-10","hardwareId":"' + HWID + '",'
            '"issuedAt":"2025-01-10T12:34:56.789Z","licenseType":"PRO","version":"1.0"}'
        ).encode("utf-8")
        self.assertEqual(canonical_message(make_payload()), expected)

    def test_key_order_does_not_matter(self):
        payload = make_payload(features=["basic_pos", "thermal_printing"], maxUsers=5)
        reordered = dict(reversed(list(payload.items())))
        self.assertEqual(canonical_message(payload), canonical_message(reordered))

    def test_absent_fields_are_dropped(self):
        self.assertEqual(canonical_message(make_payload(maxUsers=None)),
                         canonical_message(make_payload()))

    def test_signature_and_unknown_fields_are_ignored(self):
        self.assertEqual(canonical_message(make_payload(signature="abc", extra="x")),
                         canonical_message(make_payload()))

    def test_feature_order_is_preserved(self):
        message = canonical_message(make_payload(features=["b", "a"]))
        self.assertIn(b'"features":["b","a"]', message)

    def test_non_ascii_emitted_literally(self):
        message = canonical_message(make_payload(client="Café Müller"))
        self.assertIn("Café Müller".encode("utf-8"), message)

    def test_unsupported_version_raises(self):
        with self.assertRaises(UnsupportedSchemaVersion) as ctx:
            canonical_message(make_payload(version="2.0"))
        self.assertEqual(ctx.exception.version, "2.0")

    def test_version_registry(self):
        self.assertIn("1.0", CANONICALIZERS)


class TestSignatures(unittest.TestCase):
    """Test cases for signing and verification"""

    @classmethod
    def setUpClass(cls):
        cls.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048,
                                                   backend=default_backend())
        cls.public_key = cls.private_key.public_key()
        cls.other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048,
                                                 backend=default_backend())

    def signed(self, **overrides):
        payload = make_payload(features=["basic_pos"], **overrides)
        payload["signature"] = sign_payload(payload, self.private_key)
        return payload

    def test_round_trip(self):
        license_data = self.signed()
        self.assertTrue(verify_signature(license_data, self.public_key))

    def test_signature_is_base64(self):
        signature = self.signed()["signature"]
        self.assertEqual(len(base64.b64decode(signature)), 256)

    def test_round_trip_with_pem_key(self):
        pem = self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        self.assertTrue(verify_signature(self.signed(), pem))

    def test_tampered_fields_fail(self):
        for field, value in (("expires", "2099-12-31"), ("client", "Other"),
                             ("licenseType", "ENTERPRISE"), ("hardwareId", "cd" * 32)):
            license_data = self.signed()
            license_data[field] = value
            self.assertFalse(verify_signature(license_data, self.public_key), field)

    def test_added_field_fails(self):
        license_data = self.signed()
        license_data["maxUsers"] = 100
        self.assertFalse(verify_signature(license_data, self.public_key))

    def test_wrong_key_fails(self):
        self.assertFalse(verify_signature(self.signed(), self.other_key.public_key()))

    def test_missing_key_fails_closed(self):
        self.assertFalse(verify_signature(self.signed(), None))

    def test_garbage_signature_fails(self):
        license_data = self.signed()
        license_data["signature"] = "not base64 !!"
        self.assertFalse(verify_signature(license_data, self.public_key))

    def test_missing_signature_fails(self):
        license_data = self.signed()
        del license_data["signature"]
        self.assertFalse(verify_signature(license_data, self.public_key))

    def test_unsupported_version_fails(self):
        license_data = self.signed()
        license_data["version"] = "9.9"
        self.assertFalse(verify_signature(license_data, self.public_key))

    def test_invalid_pem_fails(self):
        self.assertFalse(verify_signature(self.signed(), "-----BEGIN PUBLIC KEY-----\nxx\n"))


class TestLicenseId(unittest.TestCase):

    def test_id_derivation(self):
        payload = make_payload()
        expected = hashlib.sha256(
            ("Acme" + HWID + "2025-01-10T12:34:56.789Z").encode("utf-8")
        ).hexdigest()[:16]
        self.assertEqual(generate_license_id(payload), expected)
        self.assertEqual(len(generate_license_id(payload)), 16)

    def test_id_depends_on_issue_time(self):
        self.assertNotEqual(generate_license_id(make_payload()),
                            generate_license_id(make_payload(issuedAt="2025-01-11T00:00:00.000Z")))


if __name__ == '__main__':
    unittest.main()
