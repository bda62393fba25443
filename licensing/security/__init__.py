"""
Security module for POSPlus Licensing

This package contains the license signing primitives, hardware fingerprinting
and offline license validation.
"""

from licensing.security.crypto_layer import (
    canonical_message, sign_payload, verify_signature, generate_license_id
)
from licensing.security.hardware_fingerprint import (
    HardwareFingerprint, StaticFingerprint, derive_fingerprint, get_platform_probe
)
from licensing.security.license_validator import LicenseValidator, load_blacklist

__all__ = [
    'canonical_message', 'sign_payload', 'verify_signature', 'generate_license_id',
    'HardwareFingerprint', 'StaticFingerprint', 'derive_fingerprint', 'get_platform_probe',
    'LicenseValidator', 'load_blacklist'
]
