"""
POSPlus Offline License Validation

This module validates license artifacts locally, without network access.

Validation runs a fixed sequence of stages:
- ParseFile: JSON structure, required fields, known tier, real expiry date, supported version
- VerifySignature: RSA-SHA256 signature over the canonical payload (fails closed)
- CheckExpiry: expiry at 23:59:59.999 local time on the expiry date
- CheckHardwareMatch: exact match against the expected hardware id, when one is given
- CheckBlacklist: license id against the installed revocation snapshot
- CheckRegistry: informational lookup in a registry mirror, never changes the outcome

In normal mode validation stops at the first failing stage. In verbose mode
every stage runs and is reported, but the status is still the first failure.
Validation never raises for malformed input or cryptographic failures.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from licensing.license_models import (
    LICENSE_FEATURES, LicenseType, StageResult, ValidationResult, ValidationStatus,
    days_until, expiry_deadline, local_now, parse_expiry_date
)
from licensing.security.crypto_layer import (
    PublicKeyLike, generate_license_id, is_supported_version, load_public_key, verify_signature
)

logger = logging.getLogger(__name__)

STAGE_PARSE = "ParseFile"
STAGE_SIGNATURE = "VerifySignature"
STAGE_EXPIRY = "CheckExpiry"
STAGE_HARDWARE = "CheckHardwareMatch"
STAGE_BLACKLIST = "CheckBlacklist"
STAGE_REGISTRY = "CheckRegistry"

STAGES = (STAGE_PARSE, STAGE_SIGNATURE, STAGE_EXPIRY, STAGE_HARDWARE, STAGE_BLACKLIST, STAGE_REGISTRY)

REQUIRED_FIELDS = ("client", "licenseType", "hardwareId", "expires", "version", "issuedAt", "signature")


def load_blacklist(path: Union[str, Path]) -> List[str]:
    """
    Read a blacklist export

    A missing file is an empty blacklist. A malformed file is also treated as
    empty (with a warning): the file is only a cached copy of a snapshot
    distributed out of band.
    """
    blacklist_path = Path(path)
    if not blacklist_path.exists():
        return []

    try:
        with open(blacklist_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable blacklist {blacklist_path}: {e}")
        return []

    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        logger.warning(f"Ignoring malformed blacklist {blacklist_path}: expected a JSON array of ids")
        return []

    return data


class LicenseValidator:
    """
    Offline license validator

    Holds no mutable state after construction, so one instance can serve
    concurrent callers.
    """

    def __init__(self, public_key: Optional[PublicKeyLike] = None,
                 blacklist: Optional[Iterable[str]] = None,
                 registry: Optional[Any] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize license validator

        Args:
            public_key: Issuer public key (PEM text/bytes or loaded key)
            blacklist: Revoked license ids
            registry: Optional registry mirror providing get_by_id()
            clock: Returns the current time (defaults to the system clock)
        """
        self._public_key = None
        if public_key is not None:
            try:
                self._public_key = load_public_key(public_key)
            except Exception as e:
                logger.error(f"Failed to load license public key, all signatures will be rejected: {e}")

        self._blacklist = frozenset(blacklist or ())
        self._registry = registry
        self._clock = clock or datetime.now

    @property
    def has_public_key(self) -> bool:
        return self._public_key is not None

    @property
    def blacklist(self) -> frozenset:
        return self._blacklist

    def validate_file(self, path: Union[str, Path], expected_hardware_id: Optional[str] = None,
                      verbose: bool = False, now: Optional[datetime] = None) -> ValidationResult:
        """
        Validate a license file

        A missing file yields ``not_found``; an unreadable one ``corrupted``.
        """
        license_path = Path(path)
        if not license_path.exists():
            logger.info(f"License file not found: {license_path}")
            return ValidationResult(status=ValidationStatus.NOT_FOUND,
                                    message=f"License file not found: {license_path}")

        try:
            content = license_path.read_bytes()
        except OSError as e:
            logger.warning(f"Failed to read license file {license_path}: {e}")
            return ValidationResult(status=ValidationStatus.CORRUPTED,
                                    message=f"License file could not be read: {e}")

        return self.validate(content, expected_hardware_id=expected_hardware_id,
                             verbose=verbose, now=now)

    def validate(self, content: Union[str, bytes, Mapping[str, Any]],
                 expected_hardware_id: Optional[str] = None,
                 verbose: bool = False, now: Optional[datetime] = None) -> ValidationResult:
        """
        Validate license content

        Args:
            content: License file content (JSON text/bytes) or an already parsed artifact
            expected_hardware_id: Hardware id of the current machine; the
                hardware stage is skipped when None
            verbose: Run and report every stage
            now: Validation time (naive values are local time)

        Returns:
            ValidationResult
        """
        current = local_now(now or self._clock())
        stages: List[StageResult] = []
        result = ValidationResult(status=ValidationStatus.VALID, message="", stages=stages)
        failure: Optional[Tuple[ValidationStatus, str]] = None

        def record(stage: str, passed: Optional[bool], detail: str) -> None:
            if verbose:
                stages.append(StageResult(stage=stage, passed=passed, detail=detail))

        def finish() -> ValidationResult:
            if failure is not None:
                result.status, result.message = failure
                logger.warning(f"License validation failed: {result.status.value} - {result.message}"
                               + (f" (license {result.license_id})" if result.license_id else ""))
            else:
                result.status = ValidationStatus.VALID
                result.message = f"License is valid ({result.days_remaining} days remaining)"
                logger.info(f"License {result.license_id} valid for {result.client}, "
                            f"{result.days_remaining} days remaining")
            return result

        # 1. ParseFile
        data, parse_error = self._parse(content)
        if data is None:
            failure = (ValidationStatus.CORRUPTED, parse_error)
            record(STAGE_PARSE, False, parse_error)
            for stage in STAGES[1:]:
                record(stage, None, "not run: license could not be parsed")
            return finish()

        record(STAGE_PARSE, True, f"schema version {data['version']}")
        tier = LicenseType.parse(data["licenseType"])
        features = data.get("features")
        result.license_id = generate_license_id(data)
        result.client = data["client"]
        result.license_type = tier
        result.expires_at = data["expires"]
        result.features = list(features) if features is not None else list(LICENSE_FEATURES[tier])
        result.max_users = data.get("maxUsers")

        # 2. VerifySignature
        if verify_signature(data, self._public_key):
            record(STAGE_SIGNATURE, True, "signature matches payload")
        else:
            detail = "no public key available" if self._public_key is None else "signature does not match payload"
            record(STAGE_SIGNATURE, False, detail)
            failure = (ValidationStatus.INVALID_SIGNATURE, f"Invalid license signature: {detail}")
            if not verbose:
                return finish()

        # 3. CheckExpiry
        deadline = expiry_deadline(parse_expiry_date(data["expires"]))
        if current > deadline:
            result.days_remaining = 0
            record(STAGE_EXPIRY, False, f"expired on {data['expires']}")
            if failure is None:
                failure = (ValidationStatus.EXPIRED, f"License expired on {data['expires']}")
            if not verbose:
                return finish()
        else:
            result.days_remaining = days_until(deadline, current)
            record(STAGE_EXPIRY, True, f"{result.days_remaining} days remaining")

        # 4. CheckHardwareMatch
        if expected_hardware_id is None:
            record(STAGE_HARDWARE, None, "skipped: no expected hardware id")
        elif data["hardwareId"] == expected_hardware_id:
            record(STAGE_HARDWARE, True, "hardware id matches")
        else:
            record(STAGE_HARDWARE, False,
                   f"license bound to {data['hardwareId'][:16]}..., "
                   f"machine is {expected_hardware_id[:16]}...")
            if failure is None:
                failure = (ValidationStatus.HARDWARE_MISMATCH,
                           "License is bound to a different machine")
            if not verbose:
                return finish()

        # 5. CheckBlacklist
        if result.license_id in self._blacklist:
            record(STAGE_BLACKLIST, False, f"license {result.license_id} is revoked")
            if failure is None:
                failure = (ValidationStatus.REVOKED, f"License {result.license_id} has been revoked")
            if not verbose:
                return finish()
        else:
            record(STAGE_BLACKLIST, True, "not revoked")

        # 6. CheckRegistry
        if self._registry is None:
            record(STAGE_REGISTRY, None, "skipped: no registry available")
        else:
            try:
                result.registry_record_found = self._registry.get_by_id(result.license_id) is not None
                record(STAGE_REGISTRY, True,
                       "record found" if result.registry_record_found else "no record in registry")
            except Exception as e:
                logger.warning(f"Registry lookup failed for license {result.license_id}: {e}")
                record(STAGE_REGISTRY, None, f"lookup failed: {e}")

        return finish()

    @staticmethod
    def _parse(content: Union[str, bytes, Mapping[str, Any]]) -> Tuple[Optional[Dict[str, Any]], str]:
        """Parse and check license structure. Returns (data, "") or (None, reason)."""
        if isinstance(content, Mapping):
            data = dict(content)
        else:
            try:
                if isinstance(content, bytes):
                    content = content.decode("utf-8")
                data = json.loads(content)
            except (UnicodeDecodeError, ValueError, TypeError) as e:
                return None, f"License file is not valid JSON: {e}"

        if not isinstance(data, dict):
            return None, "License file must contain a JSON object"

        missing = [name for name in REQUIRED_FIELDS if name not in data or data[name] is None]
        if missing:
            return None, f"Missing required fields: {', '.join(missing)}"

        for name in REQUIRED_FIELDS:
            if not isinstance(data[name], str):
                return None, f"Field {name} must be a string"

        try:
            LicenseType.parse(data["licenseType"])
        except ValueError:
            return None, f"Unknown license type: {data['licenseType']}"

        try:
            parse_expiry_date(data["expires"])
        except ValueError:
            return None, f"Invalid expiration date: {data['expires']}"

        if not is_supported_version(data["version"]):
            return None, f"Unsupported license version: {data['version']}"

        features = data.get("features")
        if features is not None and (not isinstance(features, list)
                                     or not all(isinstance(f, str) for f in features)):
            return None, "Field features must be a list of strings"

        max_users = data.get("maxUsers")
        if max_users is not None and (isinstance(max_users, bool) or not isinstance(max_users, int)):
            return None, "Field maxUsers must be an integer"

        return data, ""
