"""
License Enforcement Module for POSPlus
Manages the license installed on this machine and answers license questions
for the rest of the application
"""

import hashlib
import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from licensing.error_handling import StorageError, get_user_message
from licensing.license_models import ValidationResult, ValidationStatus
from licensing.security.crypto_layer import PublicKeyLike
from licensing.security.hardware_fingerprint import HardwareFingerprint
from licensing.security.license_validator import LicenseValidator, load_blacklist

logger = logging.getLogger(__name__)

LICENSE_FILE = "license.lic"
INTEGRITY_FILE = ".integrity"
BLACKLIST_FILE = "blacklist.json"

# Statuses that block an import before the file is copied
IMPORT_REJECT_STATUSES = (
    ValidationStatus.CORRUPTED,
    ValidationStatus.INVALID_SIGNATURE,
    ValidationStatus.HARDWARE_MISMATCH,
)


class LicenseEnforcer:
    """
    Installed license manager

    Keeps the license file, its integrity hash and the revocation snapshot in
    one directory and validates them against the current machine.
    """

    def __init__(self, license_dir: Union[str, Path], public_key: Optional[PublicKeyLike],
                 fingerprint: Optional[Any] = None,
                 integrity_salt: str = "posplus-license-integrity",
                 validation_cache_seconds: int = 60,
                 expiry_warning_days: int = 30,
                 clock: Optional[Callable[[], datetime]] = None,
                 monotonic: Callable[[], float] = time.monotonic):
        """
        Initialize license enforcer

        Args:
            license_dir: Directory holding the installed license
            public_key: Issuer public key embedded in the application
            fingerprint: Hardware fingerprint provider (defaults to this machine)
            integrity_salt: Salt mixed into the integrity hash
            validation_cache_seconds: How long a validation result is reused
            expiry_warning_days: Warn when this many days or fewer remain
            clock: Returns the current time for expiry checks
            monotonic: Time source for the result cache
        """
        self.license_dir = Path(license_dir)
        self.license_path = self.license_dir / LICENSE_FILE
        self.integrity_path = self.license_dir / INTEGRITY_FILE
        self.blacklist_path = self.license_dir / BLACKLIST_FILE

        self.public_key = public_key
        self.fingerprint = fingerprint or HardwareFingerprint()
        self.integrity_salt = integrity_salt
        self.validation_cache_seconds = validation_cache_seconds
        self.expiry_warning_days = expiry_warning_days
        self._clock = clock or datetime.now
        self._monotonic = monotonic

        self._cached: Optional[Tuple[float, ValidationResult]] = None

        logger.info(f"LicenseEnforcer initialized with license directory: {self.license_dir}")

    @classmethod
    def from_config(cls, config, public_key: Optional[PublicKeyLike],
                    fingerprint: Optional[Any] = None) -> "LicenseEnforcer":
        """Create from a LicensingConfig"""
        security = config.security
        return cls(
            license_dir=config.paths.license_dir,
            public_key=public_key,
            fingerprint=fingerprint or HardwareFingerprint(timeout=security.probe_timeout_seconds),
            integrity_salt=security.integrity_salt,
            validation_cache_seconds=security.validation_cache_seconds,
            expiry_warning_days=security.expiry_warning_days,
        )

    def _ensure_license_dir(self) -> None:
        self.license_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.license_dir, 0o700)

    def _integrity_hash(self, content: str) -> str:
        hardware_id = self.fingerprint.get_hardware_id()
        material = content + hardware_id + self.integrity_salt
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def _validator(self) -> LicenseValidator:
        return LicenseValidator(public_key=self.public_key,
                                blacklist=load_blacklist(self.blacklist_path),
                                clock=self._clock)

    def import_license(self, source_path: Union[str, Path]) -> ValidationResult:
        """
        Install a license file for this machine

        The file must parse, carry a valid signature and be bound to this
        machine before it is copied. The installed license is then validated
        in full (expiry, revocation).

        Args:
            source_path: License file received from the issuer

        Returns:
            ValidationResult of the installed license, or of the rejected file
        """
        source = Path(source_path)
        if not source.exists():
            logger.warning(f"License import failed, file not found: {source}")
            return ValidationResult(status=ValidationStatus.NOT_FOUND,
                                    message=f"License file not found: {source}")

        try:
            content = source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read license file {source}: {e}")
            return ValidationResult(status=ValidationStatus.CORRUPTED,
                                    message=f"License file could not be read: {e}")

        hardware_id = self.fingerprint.get_hardware_id()
        precheck = LicenseValidator(public_key=self.public_key).validate(
            content, expected_hardware_id=hardware_id, now=self._clock()
        )
        if precheck.status in IMPORT_REJECT_STATUSES:
            logger.warning(f"License import rejected: {precheck.status.value}")
            return precheck

        try:
            self._ensure_license_dir()
            self._write_private(self.license_path, content)
            self._write_private(self.integrity_path, self._integrity_hash(content))
        except OSError as e:
            logger.error(f"Failed to install license file: {e}", exc_info=True)
            raise StorageError(f"Failed to install license into {self.license_dir}: {e}")

        logger.info(f"License imported: {precheck.license_id} ({precheck.client}, "
                    f"hardware {hardware_id[:16]}...)")
        return self.refresh()

    def validate(self) -> ValidationResult:
        """
        Validate the installed license against this machine

        Results are reused for ``validation_cache_seconds``.
        """
        now = self._monotonic()
        if self._cached is not None:
            cached_at, cached_result = self._cached
            if now - cached_at < self.validation_cache_seconds:
                return cached_result

        result = self._validate_installed()
        self._cached = (now, result)
        return result

    def refresh(self) -> ValidationResult:
        """Drop the cached result and validate again"""
        self._cached = None
        return self.validate()

    def _validate_installed(self) -> ValidationResult:
        if not self.license_path.exists():
            return ValidationResult(status=ValidationStatus.NOT_FOUND,
                                    message=get_user_message(ValidationStatus.NOT_FOUND))

        try:
            content = self.license_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read installed license: {e}")
            return ValidationResult(status=ValidationStatus.CORRUPTED,
                                    message=f"Installed license could not be read: {e}")

        stored_hash = None
        if self.integrity_path.exists():
            try:
                stored_hash = self.integrity_path.read_text(encoding="utf-8").strip()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Integrity file unreadable, continuing with validation: {e}")

        if stored_hash is not None:
            if stored_hash != self._integrity_hash(content):
                logger.error("License file integrity check failed")
                return ValidationResult(
                    status=ValidationStatus.CORRUPTED,
                    message="License file was modified or copied from another machine",
                )

        result = self._validator().validate(
            content, expected_hardware_id=self.fingerprint.get_hardware_id()
        )

        warning = self._expiry_warning_for(result)
        if warning:
            result.message = warning
        return result

    def _expiry_warning_for(self, result: ValidationResult) -> Optional[str]:
        if result.valid and result.days_remaining is not None \
                and result.days_remaining <= self.expiry_warning_days:
            return f"License valid. Warning: expires in {result.days_remaining} day(s)."
        return None

    @property
    def expiry_warning(self) -> Optional[str]:
        """Warning text when the installed license expires soon, else None"""
        return self._expiry_warning_for(self.validate())

    def remove_license(self) -> bool:
        """Delete the installed license and its integrity hash"""
        removed = False
        for path in (self.license_path, self.integrity_path):
            if path.exists():
                path.unlink()
                removed = True
        self._cached = None
        if removed:
            logger.info("Installed license removed")
        return removed

    def install_blacklist(self, source: Union[str, Path, Iterable[str]]) -> int:
        """
        Install a revocation snapshot

        Args:
            source: Path to a blacklist export, or the revoked ids themselves

        Returns:
            Number of revoked ids installed
        """
        if isinstance(source, (str, Path)):
            ids = load_blacklist(source)
        else:
            ids = [str(item) for item in source]

        try:
            self._ensure_license_dir()
            self._write_private(self.blacklist_path, json.dumps(ids, indent=2))
        except OSError as e:
            logger.error(f"Failed to install blacklist: {e}")
            raise StorageError(f"Failed to install blacklist into {self.license_dir}: {e}")

        self._cached = None
        logger.info(f"Installed blacklist with {len(ids)} revoked license(s)")
        return len(ids)

    def get_license_info(self) -> Dict[str, Any]:
        """License summary for display"""
        result = self.validate()
        return {
            "is_licensed": result.valid,
            "status": result.status.value,
            "message": result.message,
            "license_id": result.license_id,
            "client": result.client,
            "license_type": result.license_type.value if result.license_type else None,
            "expires_at": result.expires_at,
            "days_remaining": result.days_remaining,
            "features": result.features or [],
            "max_users": result.max_users,
            "hardware_id": self.fingerprint.get_display_id(),
        }

    def has_feature(self, feature: str) -> bool:
        result = self.validate()
        return result.valid and feature in (result.features or [])

    @staticmethod
    def _write_private(path: Path, text: str) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.chmod(path, 0o600)
