"""
POSPlus Licensing Data Models

This module contains the shared data models for license issuance and validation
so that the issuer side (signer, registry) and the client side (validator,
enforcer) agree on one representation.

Wire names in license files and in the registry document are camelCase; the
dataclasses below use snake_case attributes and convert at the edges.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# Current license schema tag. It is part of the signed payload.
LICENSE_SCHEMA_VERSION = "1.0"

LICENSE_ID_LENGTH = 16


class LicenseType(Enum):
    """License tier enumeration"""
    DEMO = "DEMO"
    BASIC = "BASIC"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"

    @classmethod
    def parse(cls, value: Any) -> "LicenseType":
        """Parse a tier name case-insensitively. Raises ValueError on unknown tiers."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid license type: {value!r}")
        return cls(value.strip().upper())


class ValidationStatus(Enum):
    """License validation status enumeration"""
    VALID = "valid"
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    HARDWARE_MISMATCH = "hardware_mismatch"
    REVOKED = "revoked"
    NOT_FOUND = "not_found"
    CORRUPTED = "corrupted"


_PRO_FEATURES = [
    "basic_pos",
    "products_unlimited",
    "users_unlimited",
    "thermal_printing",
    "advanced_reports",
    "customer_display",
    "stock_management",
    "backup_restore",
    "csv_import_export",
]

LICENSE_FEATURES: Dict[LicenseType, List[str]] = {
    LicenseType.DEMO: [
        "basic_pos",
        "max_100_products",
        "max_1_user",
        "watermark",
    ],
    LicenseType.BASIC: [
        "basic_pos",
        "products_unlimited",
        "max_3_users",
        "thermal_printing",
        "basic_reports",
    ],
    LicenseType.PRO: list(_PRO_FEATURES),
    LicenseType.ENTERPRISE: _PRO_FEATURES + [
        "p2p_sync",
        "multi_store",
        "api_access",
        "priority_support",
    ],
}

# Default license duration per tier (in days)
LICENSE_DURATION: Dict[LicenseType, int] = {
    LicenseType.DEMO: 30,
    LicenseType.BASIC: 365,
    LicenseType.PRO: 365,
    LicenseType.ENTERPRISE: 365,
}

# Tiers that accept an explicit maxUsers value
MAX_USERS_TIERS = frozenset({LicenseType.ENTERPRISE})


def parse_expiry_date(value: Any) -> date:
    """Parse a YYYY-MM-DD expiry date. Raises ValueError on anything else."""
    if not isinstance(value, str) or len(value) != 10:
        raise ValueError(f"Invalid expiration date: {value!r}")
    return datetime.strptime(value, "%Y-%m-%d").date()


def expiry_deadline(expires: date) -> datetime:
    """
    Last instant a license is valid: 23:59:59.999 local time on its expiry date

    Returned as naive local wall-clock time. No timezone conversion is done,
    so every date from 0001-01-01 to 9999-12-31 has a deadline.
    """
    return datetime.combine(expires, time(23, 59, 59, 999000))


def local_now(now: Optional[datetime] = None) -> datetime:
    """Current local wall-clock time, naive. Naive inputs are already local time."""
    now = now or datetime.now()
    if now.tzinfo is not None:
        now = now.astimezone().replace(tzinfo=None)
    return now


def days_until(deadline: datetime, now: datetime) -> int:
    """Whole days left before the deadline, rounded up"""
    remaining = deadline - now
    return math.ceil(remaining / timedelta(days=1))


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO 8601 UTC timestamp with millisecond precision and a Z suffix"""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class LicensePayload:
    """Signed part of a license artifact"""
    client: str
    license_type: LicenseType
    hardware_id: str
    expires: str  # YYYY-MM-DD
    version: str
    issued_at: str  # ISO 8601
    features: Optional[Tuple[str, ...]] = None
    max_users: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire form with absent optional fields omitted"""
        data: Dict[str, Any] = {
            "client": self.client,
            "licenseType": self.license_type.value,
            "hardwareId": self.hardware_id,
            "expires": self.expires,
            "version": self.version,
            "issuedAt": self.issued_at,
        }
        if self.features is not None:
            data["features"] = list(self.features)
        if self.max_users is not None:
            data["maxUsers"] = self.max_users
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LicensePayload":
        """Create from the wire form"""
        features = data.get("features")
        return cls(
            client=data["client"],
            license_type=LicenseType.parse(data["licenseType"]),
            hardware_id=data["hardwareId"],
            expires=data["expires"],
            version=data["version"],
            issued_at=data["issuedAt"],
            features=tuple(features) if features is not None else None,
            max_users=data.get("maxUsers"),
        )


@dataclass
class LicenseRecord:
    """Issuer-side record of one issued license"""
    id: str
    payload: LicensePayload
    signature: str
    created_at: str
    notes: Optional[str] = None
    file_path: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[str] = None
    revoke_reason: Optional[str] = None

    def to_artifact(self) -> Dict[str, Any]:
        """License file content (payload plus signature)"""
        artifact = self.payload.to_dict()
        artifact["signature"] = self.signature
        return artifact

    def to_dict(self) -> Dict[str, Any]:
        """Registry document form"""
        data: Dict[str, Any] = {
            "id": self.id,
            "licenseData": self.to_artifact(),
            "createdAt": self.created_at,
            "revoked": self.revoked,
        }
        if self.notes is not None:
            data["notes"] = self.notes
        if self.file_path is not None:
            data["filePath"] = self.file_path
        if self.revoked_at is not None:
            data["revokedAt"] = self.revoked_at
        if self.revoke_reason is not None:
            data["revokeReason"] = self.revoke_reason
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LicenseRecord":
        """Create from the registry document form"""
        license_data = data["licenseData"]
        return cls(
            id=data["id"],
            payload=LicensePayload.from_dict(license_data),
            signature=license_data["signature"],
            created_at=data["createdAt"],
            notes=data.get("notes"),
            file_path=data.get("filePath"),
            revoked=bool(data.get("revoked", False)),
            revoked_at=data.get("revokedAt"),
            revoke_reason=data.get("revokeReason"),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        deadline = expiry_deadline(parse_expiry_date(self.payload.expires))
        return local_now(now) > deadline

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)

    def mark_revoked(self, reason: Optional[str] = None, when: Optional[datetime] = None) -> "LicenseRecord":
        """Return a copy with the revocation fields set"""
        return replace(self, revoked=True, revoked_at=utc_timestamp(when), revoke_reason=reason)


@dataclass
class HardwareInfo:
    """Hardware identifiers collected for the current machine"""
    hardware_id: str
    platform: str
    hostname: str
    machine_uuid: Optional[str] = None
    cpu_id: Optional[str] = None
    disk_serial: Optional[str] = None
    mac_address: Optional[str] = None
    components_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hardwareId": self.hardware_id,
            "machineUUID": self.machine_uuid,
            "cpuId": self.cpu_id,
            "diskSerial": self.disk_serial,
            "macAddress": self.mac_address,
            "platform": self.platform,
            "hostname": self.hostname,
            "componentsCount": self.components_count,
        }


@dataclass
class StageResult:
    """Outcome of one validation stage. passed is None when the stage was skipped."""
    stage: str
    passed: Optional[bool]
    detail: str = ""


@dataclass
class ValidationResult:
    """License validation result"""
    status: ValidationStatus
    message: str
    license_id: Optional[str] = None
    client: Optional[str] = None
    license_type: Optional[LicenseType] = None
    expires_at: Optional[str] = None
    days_remaining: Optional[int] = None
    features: Optional[List[str]] = None
    max_users: Optional[int] = None
    registry_record_found: Optional[bool] = None
    stages: List[StageResult] = field(default_factory=list)
    validated_at: str = field(default_factory=utc_timestamp)

    @property
    def valid(self) -> bool:
        return self.status == ValidationStatus.VALID

    def to_dict(self) -> Dict[str, Any]:
        """Plain dictionary for UI display"""
        return {
            "valid": self.valid,
            "status": self.status.value,
            "message": self.message,
            "licenseId": self.license_id,
            "client": self.client,
            "licenseType": self.license_type.value if self.license_type else None,
            "expiresAt": self.expires_at,
            "daysRemaining": self.days_remaining,
            "features": self.features,
            "maxUsers": self.max_users,
            "registryRecordFound": self.registry_record_found,
            "stages": [
                {"stage": s.stage, "passed": s.passed, "detail": s.detail}
                for s in self.stages
            ],
            "validatedAt": self.validated_at,
        }


@dataclass
class RevocationResult:
    """License revocation result"""
    success: bool
    license_id: str
    message: str
    already_revoked: bool = False
    record: Optional[LicenseRecord] = None


@dataclass
class RegistryStats:
    """Aggregated registry statistics"""
    total: int = 0
    active: int = 0
    expired: int = 0
    revoked: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)


@dataclass
class GenerationResult:
    """License generation result"""
    record: LicenseRecord
    file_path: Optional[str]
    recorded: bool
    warnings: List[str] = field(default_factory=list)
