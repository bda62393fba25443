"""
Cryptographic Layer for POSPlus License Signing

This module holds the signing primitives shared by the issuer and the client so
that both sides build exactly the same signed message.

Features:
- Versioned canonical payload serialization
- RSA PKCS#1 v1.5 / SHA-256 signing with base64 encoded signatures
- Fail-closed signature verification
- Deterministic license identifiers
"""

import base64
import hashlib
import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from licensing.error_handling import UnsupportedSchemaVersion
from licensing.license_models import LICENSE_ID_LENGTH

logger = logging.getLogger(__name__)

SIGNATURE_ALGORITHM = "RSA-SHA256"

# Signed fields of the 1.0 schema, in declaration order
CANONICAL_FIELDS_V1 = (
    "client",
    "licenseType",
    "hardwareId",
    "expires",
    "version",
    "issuedAt",
    "features",
    "maxUsers",
)

PublicKeyLike = Union[str, bytes, rsa.RSAPublicKey]
PrivateKeyLike = Union[str, bytes, rsa.RSAPrivateKey]


def _canonicalize_v1(payload: Mapping[str, Any]) -> bytes:
    fields = {
        name: payload[name]
        for name in CANONICAL_FIELDS_V1
        if payload.get(name) is not None
    }
    text = json.dumps(fields, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8")


# Canonicalizer per schema version marker
CANONICALIZERS: Dict[str, Callable[[Mapping[str, Any]], bytes]] = {
    "1.0": _canonicalize_v1,
}


def is_supported_version(version: Any) -> bool:
    return isinstance(version, str) and version in CANONICALIZERS


def canonical_message(payload: Mapping[str, Any]) -> bytes:
    """
    Build the exact bytes that are signed for a license payload.

    Extra keys (e.g. ``signature``) are ignored. The serializer is chosen by the
    payload's ``version`` marker.

    Args:
        payload: License payload in wire form (camelCase keys)

    Returns:
        Canonical UTF-8 encoded message

    Raises:
        UnsupportedSchemaVersion: if no canonicalizer exists for the version
    """
    version = payload.get("version")
    if not is_supported_version(version):
        raise UnsupportedSchemaVersion(version)
    return CANONICALIZERS[version](payload)


def load_private_key(key: PrivateKeyLike, password: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    if isinstance(key, rsa.RSAPrivateKey):
        return key
    if isinstance(key, str):
        key = key.encode("utf-8")
    return serialization.load_pem_private_key(key, password=password, backend=default_backend())


def load_public_key(key: PublicKeyLike) -> rsa.RSAPublicKey:
    if isinstance(key, rsa.RSAPublicKey):
        return key
    if isinstance(key, str):
        key = key.encode("utf-8")
    public_key = serialization.load_pem_public_key(key, backend=default_backend())
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ValueError("Public key is not an RSA key")
    return public_key


def sign_payload(payload: Mapping[str, Any], private_key: PrivateKeyLike) -> str:
    """
    Sign a license payload.

    Args:
        payload: License payload in wire form
        private_key: RSA private key object or PEM text

    Returns:
        Base64 encoded RSA-SHA256 signature
    """
    key = load_private_key(private_key)
    message = canonical_message(payload)
    signature = key.sign(message, padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def verify_signature(license_data: Mapping[str, Any],
                     public_key: Optional[PublicKeyLike]) -> bool:
    """
    Verify the signature of a license artifact.

    Never raises: a missing key, a malformed signature or an unsupported
    schema version all count as a failed verification.

    Args:
        license_data: License artifact including the ``signature`` field
        public_key: RSA public key object or PEM text

    Returns:
        True if the signature matches the canonical payload
    """
    if public_key is None:
        logger.error("Signature verification failed: no public key available")
        return False

    try:
        key = load_public_key(public_key)
        signature = license_data.get("signature")
        if not isinstance(signature, str) or not signature:
            logger.warning("Signature verification failed: signature missing")
            return False

        raw_signature = base64.b64decode(signature.encode("ascii"), validate=True)
        key.verify(raw_signature, canonical_message(license_data),
                   padding.PKCS1v15(), hashes.SHA256())
        return True

    except InvalidSignature:
        logger.warning("Signature verification failed: signature does not match payload")
        return False
    except Exception as e:
        logger.error(f"Signature verification error: {e}")
        return False


def generate_license_id(payload: Mapping[str, Any]) -> str:
    """Deterministic license id: sha256(client + hardwareId + issuedAt), truncated"""
    material = f"{payload['client']}{payload['hardwareId']}{payload['issuedAt']}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:LICENSE_ID_LENGTH]
