"""
POSPlus License Generation

Builds, signs and writes license artifacts on the issuer side and records
them in the license registry.

All issuer input is checked before anything is signed or written. The
registry update is best-effort: once the artifact is on disk a registry
failure is reported as a warning instead of failing the generation.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional, Union

from licensing.error_handling import (
    ErrorCode, InvalidExpirationError, InvalidHardwareIdError, InvalidLicenseTypeError,
    InvalidMaxUsersError, LicenseInputError, StorageError
)
from licensing.key_manager import KeyManager
from licensing.license_models import (
    LICENSE_DURATION, LICENSE_FEATURES, LICENSE_SCHEMA_VERSION, MAX_USERS_TIERS,
    GenerationResult, LicensePayload, LicenseRecord, LicenseType, parse_expiry_date,
    utc_timestamp
)
from licensing.license_storage import LicenseRegistry
from licensing.security.crypto_layer import generate_license_id, sign_payload

logger = logging.getLogger(__name__)

HARDWARE_ID_PATTERN = re.compile(r"^[a-fA-F0-9]{64}$")
LICENSE_FILE_EXTENSION = ".lic"


def safe_client_name(client: str) -> str:
    """Client name reduced to lowercase alphanumerics and underscores"""
    return re.sub(r"[^a-zA-Z0-9]", "_", client).lower()


def default_license_filename(client: str, issued_on: str) -> str:
    return f"license_{safe_client_name(client)}_{issued_on}{LICENSE_FILE_EXTENSION}"


class LicenseSigner:
    """
    License generator

    Signs payloads with the issuer's private key, writes the artifact and
    reports it to the registry.
    """

    def __init__(self, key_manager: KeyManager, registry: Optional[LicenseRegistry] = None,
                 output_dir: Union[str, Path] = ".",
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize license signer

        Args:
            key_manager: Source of the private signing key
            registry: Registry receiving generated licenses (optional)
            output_dir: Directory for artifacts without an explicit output path
            clock: Returns the current UTC time (defaults to the system clock)
        """
        self.key_manager = key_manager
        self.registry = registry
        self.output_dir = Path(output_dir)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls, config, key_manager: Optional[KeyManager] = None,
                    registry: Optional[LicenseRegistry] = None) -> "LicenseSigner":
        """
        Create from a LicensingConfig

        Key manager and registry default to the configured keys and data
        directories; artifacts go to the configured output directory.
        """
        return cls(
            key_manager=key_manager or KeyManager.from_config(config),
            registry=registry or LicenseRegistry.from_config(config),
            output_dir=config.paths.output_dir,
        )

    def build_payload(self, client: str, license_type: Union[str, LicenseType], hardware_id: str,
                      expires: Optional[str] = None, max_users: Optional[int] = None,
                      now: Optional[datetime] = None) -> LicensePayload:
        """
        Validate issuer input and build the payload to sign

        Raises:
            LicenseInputError: on any invalid input
        """
        now = now or self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        now = now.astimezone(timezone.utc)

        client = (client or "").strip()
        if not client:
            raise LicenseInputError("Client name must not be empty",
                                    error_code=ErrorCode.INPUT_INVALID_CLIENT)

        if not isinstance(hardware_id, str) or not HARDWARE_ID_PATTERN.match(hardware_id):
            raise InvalidHardwareIdError(
                "Invalid Hardware ID format: expected 64 hexadecimal characters (SHA-256)",
                details={"hardware_id": hardware_id},
            )

        try:
            tier = LicenseType.parse(license_type)
        except ValueError:
            valid = ", ".join(t.value for t in LicenseType)
            raise InvalidLicenseTypeError(f"Invalid license type: {license_type!r} (valid: {valid})",
                                          details={"license_type": str(license_type)})

        if expires is None:
            expires = (now.date() + timedelta(days=LICENSE_DURATION[tier])).isoformat()
        else:
            try:
                expiry_date = parse_expiry_date(expires)
            except ValueError:
                raise InvalidExpirationError(f"Invalid expiration date {expires!r}: expected YYYY-MM-DD",
                                             details={"expires": expires})
            if expiry_date < now.date():
                raise InvalidExpirationError(f"Expiration date {expires} is in the past",
                                             details={"expires": expires})

        if max_users is not None:
            if tier not in MAX_USERS_TIERS:
                raise InvalidMaxUsersError(f"License type {tier.value} does not accept max_users",
                                           details={"license_type": tier.value})
            if isinstance(max_users, bool) or not isinstance(max_users, int) or max_users <= 0:
                raise InvalidMaxUsersError(f"max_users must be a positive integer, got {max_users!r}",
                                           details={"max_users": max_users})

        return LicensePayload(
            client=client,
            license_type=tier,
            hardware_id=hardware_id,
            expires=expires,
            version=LICENSE_SCHEMA_VERSION,
            issued_at=utc_timestamp(now),
            features=tuple(LICENSE_FEATURES[tier]),
            max_users=max_users,
        )

    def sign(self, payload: LicensePayload, notes: Optional[str] = None) -> LicenseRecord:
        """
        Sign a payload

        Raises:
            KeyNotFoundError: if the private key is missing
        """
        private_key = self.key_manager.get_private_key()
        payload_dict = payload.to_dict()
        signature = sign_payload(payload_dict, private_key)

        return LicenseRecord(
            id=generate_license_id(payload_dict),
            payload=payload,
            signature=signature,
            created_at=utc_timestamp(self._clock()),
            notes=notes,
        )

    def generate(self, client: str, license_type: Union[str, LicenseType], hardware_id: str,
                 expires: Optional[str] = None, max_users: Optional[int] = None,
                 notes: Optional[str] = None,
                 output_path: Optional[Union[str, Path]] = None) -> GenerationResult:
        """
        Generate, sign and write a license

        Args:
            client: Client name
            license_type: Tier name (case-insensitive) or LicenseType
            hardware_id: 64 hex character hardware fingerprint of the target machine
            expires: Expiration date YYYY-MM-DD (defaults to the tier duration)
            max_users: Seat count, ENTERPRISE only
            notes: Issuer notes stored in the registry
            output_path: Artifact path (defaults to output_dir/license_<client>_<date>.lic)

        Returns:
            GenerationResult with the signed record

        Raises:
            LicenseInputError: on invalid input, before anything is written
            KeyNotFoundError: if the private key is missing
            StorageError: if the artifact cannot be written
        """
        now = self._clock()
        payload = self.build_payload(client, license_type, hardware_id, expires, max_users, now)
        record = self.sign(payload, notes)

        if output_path is None:
            issued_on = payload.issued_at[:10]
            target = self.output_dir / default_license_filename(payload.client, issued_on)
        else:
            target = Path(output_path)

        artifact = record.to_artifact()
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps(artifact, indent=2, ensure_ascii=False), encoding="utf-8")
            target.chmod(0o644)
        except OSError as e:
            logger.error(f"Failed to write license file {target}: {e}", exc_info=True)
            raise StorageError(f"Failed to write license file {target}: {e}",
                               details={"path": str(target)})

        record.file_path = str(target.resolve())
        logger.info(
            f"License generated: {record.id} for {payload.client} ({payload.license_type.value}), "
            f"hardware {payload.hardware_id[:16]}..., expires {payload.expires}"
        )

        warnings: List[str] = []
        recorded = False
        if self.registry is not None:
            try:
                self.registry.add(record)
                recorded = True
            except StorageError as e:
                logger.warning(f"Failed to record license {record.id} in registry: {e}")
                warnings.append(f"License was written but not recorded in the registry: {e}")

        return GenerationResult(record=record, file_path=record.file_path,
                                recorded=recorded, warnings=warnings)
