"""
Signing Key Management

This module manages the issuer's RSA key pair:
- Key pair generation with restrictive file permissions
- Loading of the private key for signing and the public key for client builds
- Key metadata (keyinfo.json)
- Optional passphrase protection of the private key

Regenerating a key pair invalidates every license signed with the old key, so
an existing pair is only replaced when explicitly forced.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from licensing.error_handling import ErrorCode, KeyNotFoundError, KeyOverwriteError, LicensingError
from licensing.license_models import utc_timestamp
from licensing.security.crypto_layer import SIGNATURE_ALGORITHM

logger = logging.getLogger(__name__)

PRIVATE_KEY_FILE = "private.pem"
PUBLIC_KEY_FILE = "public.pem"
KEY_INFO_FILE = "keyinfo.json"


@dataclass
class KeyPair:
    """Loaded RSA key pair with its creation time"""
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    created_at: str

    def public_key_pem(self) -> str:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")


class KeyManager:
    """
    Issuer key pair management

    Files live in one directory created with mode 0o700: the private key as
    PKCS#8 PEM (0o600), the public key as SubjectPublicKeyInfo PEM (0o644)
    and keyinfo.json with creation metadata.
    """

    PUBLIC_EXPONENT = 65537
    DEFAULT_KEY_SIZE = 2048

    def __init__(self, keys_dir: Union[str, Path] = "keys", key_size: int = DEFAULT_KEY_SIZE,
                 passphrase: Optional[str] = None):
        """
        Initialize key manager

        Args:
            keys_dir: Directory holding the key files
            key_size: RSA modulus size in bits
            passphrase: Optional passphrase encrypting the private key file
        """
        self.keys_dir = Path(keys_dir)
        self.key_size = key_size
        self._passphrase = passphrase.encode("utf-8") if passphrase else None

        self.private_key_path = self.keys_dir / PRIVATE_KEY_FILE
        self.public_key_path = self.keys_dir / PUBLIC_KEY_FILE
        self.key_info_path = self.keys_dir / KEY_INFO_FILE

        logger.debug(f"KeyManager initialized with keys directory: {self.keys_dir}")

    @classmethod
    def from_config(cls, config, passphrase: Optional[str] = None) -> "KeyManager":
        """Create from a LicensingConfig (keys directory and key size)"""
        return cls(keys_dir=config.paths.keys_dir, key_size=config.security.key_size,
                   passphrase=passphrase)

    def keys_exist(self) -> bool:
        """True when both key files are present"""
        return self.private_key_path.exists() and self.public_key_path.exists()

    def generate_key_pair(self, force: bool = False) -> KeyPair:
        """
        Generate and persist a new RSA key pair

        Args:
            force: Replace an existing key pair

        Returns:
            The generated key pair

        Raises:
            KeyOverwriteError: if keys exist and force is False
            LicensingError: if the key files cannot be written
        """
        if not force and (self.private_key_path.exists() or self.public_key_path.exists()):
            raise KeyOverwriteError(
                f"Key pair already exists in {self.keys_dir}; regenerating invalidates "
                f"all issued licenses (use force=True)",
                details={"keys_dir": str(self.keys_dir)},
            )

        if force and self.keys_exist():
            logger.warning(f"Replacing existing key pair in {self.keys_dir}")

        private_key = rsa.generate_private_key(
            public_exponent=self.PUBLIC_EXPONENT,
            key_size=self.key_size,
            backend=default_backend(),
        )
        public_key = private_key.public_key()
        created_at = utc_timestamp()

        if self._passphrase:
            encryption = serialization.BestAvailableEncryption(self._passphrase)
        else:
            encryption = serialization.NoEncryption()

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        public_pem = public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        key_info = {
            "createdAt": created_at,
            "algorithm": f"RSA-{self.key_size}",
            "signatureAlgorithm": SIGNATURE_ALGORITHM,
        }

        try:
            self.keys_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.keys_dir, 0o700)

            self._write_file(self.private_key_path, private_pem, 0o600)
            self._write_file(self.public_key_path, public_pem, 0o644)
            self._write_file(self.key_info_path,
                             json.dumps(key_info, indent=2).encode("utf-8"), 0o644)
        except OSError as e:
            logger.error(f"Failed to write key pair: {e}", exc_info=True)
            raise LicensingError(f"Failed to write key pair to {self.keys_dir}: {e}",
                                 error_code=ErrorCode.ENCRYPTION_KEY_GENERATION_FAILED)

        logger.info(f"Generated RSA-{self.key_size} key pair in {self.keys_dir}")
        return KeyPair(private_key=private_key, public_key=public_key, created_at=created_at)

    def load_or_generate(self) -> KeyPair:
        """Load the existing key pair, generating one on first use"""
        if not self.keys_exist():
            logger.info("No key pair found, generating a new one")
            return self.generate_key_pair()

        info = self.get_key_info() or {}
        return KeyPair(
            private_key=self.get_private_key(),
            public_key=self.get_public_key(),
            created_at=info.get("createdAt") or utc_timestamp(),
        )

    def get_private_key(self) -> rsa.RSAPrivateKey:
        """Load the private key. Raises KeyNotFoundError if absent."""
        pem = self._read_file(self.private_key_path, "Private key")
        return serialization.load_pem_private_key(pem, password=self._passphrase,
                                                  backend=default_backend())

    def get_public_key(self) -> rsa.RSAPublicKey:
        """Load the public key. Raises KeyNotFoundError if absent."""
        pem = self._read_file(self.public_key_path, "Public key")
        return serialization.load_pem_public_key(pem, backend=default_backend())

    def get_private_key_pem(self) -> str:
        return self._read_file(self.private_key_path, "Private key").decode("ascii")

    def get_public_key_pem(self) -> str:
        """Public key PEM text, as embedded into client builds"""
        return self._read_file(self.public_key_path, "Public key").decode("ascii")

    def get_key_info(self) -> Optional[Dict[str, Any]]:
        """Key metadata, or None when keyinfo.json is missing or unreadable"""
        if not self.key_info_path.exists():
            return None
        try:
            with open(self.key_info_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read key info: {e}")
            return None

    def _read_file(self, path: Path, label: str) -> bytes:
        if not path.exists():
            raise KeyNotFoundError(f"{label} not found: {path}", details={"path": str(path)})
        with open(path, "rb") as f:
            return f.read()

    @staticmethod
    def _write_file(path: Path, data: bytes, mode: int) -> None:
        # Create with the final mode so the private key is never world readable
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(path, mode)
