"""
Error Taxonomy for POSPlus Licensing

This module defines the exception hierarchy used by the issuer tools and the
client-side validator, together with the standardized error codes and
categories they carry.

Features:
- Standardized numeric error codes grouped by concern
- Error categories for routing and reporting
- User-friendly messages for every validation status

Classes:
    ErrorCategory: Enum for error categories
    ErrorCode: Enum for standardized error codes
    LicensingError: Base class for all licensing errors
"""

from enum import Enum
from typing import Any, Dict, Optional

from licensing.license_models import ValidationStatus


class ErrorCategory(Enum):
    """Error category classifications"""
    LICENSE = "license"
    ENCRYPTION = "encryption"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    HARDWARE = "hardware"
    USER_INPUT = "user_input"


class ErrorCode(Enum):
    """Standardized error codes"""
    # License errors (1200-1299)
    LICENSE_EXPIRED = 1201
    LICENSE_INVALID = 1202
    LICENSE_HARDWARE_MISMATCH = 1203
    LICENSE_REVOKED = 1206
    LICENSE_SCHEMA_UNSUPPORTED = 1207

    # Encryption errors (1300-1399)
    ENCRYPTION_KEY_GENERATION_FAILED = 1301
    ENCRYPTION_KEY_NOT_FOUND = 1303
    ENCRYPTION_INTEGRITY_CHECK_FAILED = 1304
    ENCRYPTION_KEY_OVERWRITE_REFUSED = 1306

    # Storage errors (1600-1699)
    STORAGE_FILE_NOT_FOUND = 1601
    STORAGE_PERMISSION_DENIED = 1602
    STORAGE_CORRUPTION_DETECTED = 1604
    STORAGE_IO_ERROR = 1605

    # Configuration errors (1700-1799)
    CONFIG_FILE_NOT_FOUND = 1701
    CONFIG_INVALID_FORMAT = 1702
    CONFIG_VALIDATION_FAILED = 1703
    CONFIG_MISSING_REQUIRED_FIELD = 1704
    CONFIG_VALUE_OUT_OF_RANGE = 1705

    # Issuer input errors (2000-2099)
    INPUT_INVALID_HARDWARE_ID = 2001
    INPUT_INVALID_LICENSE_TYPE = 2002
    INPUT_INVALID_EXPIRATION = 2003
    INPUT_INVALID_MAX_USERS = 2004
    INPUT_INVALID_CLIENT = 2005

    # Generic errors (9000-9999)
    UNKNOWN_ERROR = 9000
    INTERNAL_ERROR = 9001


class LicensingError(Exception):
    """Base class for licensing errors"""

    default_code = ErrorCode.UNKNOWN_ERROR
    default_category = ErrorCategory.LICENSE

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None,
                 category: Optional[ErrorCategory] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.category = category or self.default_category
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and display"""
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code.value,
            "error_name": self.error_code.name,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


class LicenseInputError(LicensingError):
    """Rejected issuer input. Nothing is written when this is raised."""
    default_category = ErrorCategory.USER_INPUT
    default_code = ErrorCode.INPUT_INVALID_CLIENT


class InvalidHardwareIdError(LicenseInputError):
    default_code = ErrorCode.INPUT_INVALID_HARDWARE_ID


class InvalidLicenseTypeError(LicenseInputError):
    default_code = ErrorCode.INPUT_INVALID_LICENSE_TYPE


class InvalidExpirationError(LicenseInputError):
    default_code = ErrorCode.INPUT_INVALID_EXPIRATION


class InvalidMaxUsersError(LicenseInputError):
    default_code = ErrorCode.INPUT_INVALID_MAX_USERS


class KeyNotFoundError(LicensingError):
    """Signing key file is missing"""
    default_category = ErrorCategory.ENCRYPTION
    default_code = ErrorCode.ENCRYPTION_KEY_NOT_FOUND


class KeyOverwriteError(LicensingError):
    """Refused to replace an existing key pair without force"""
    default_category = ErrorCategory.ENCRYPTION
    default_code = ErrorCode.ENCRYPTION_KEY_OVERWRITE_REFUSED


class StorageError(LicensingError):
    """Registry or artifact I/O failure"""
    default_category = ErrorCategory.STORAGE
    default_code = ErrorCode.STORAGE_IO_ERROR


class RegistryCorruptedError(StorageError):
    default_code = ErrorCode.STORAGE_CORRUPTION_DETECTED


class UnsupportedSchemaVersion(LicensingError):
    """No canonicalizer is registered for the payload's version marker"""
    default_code = ErrorCode.LICENSE_SCHEMA_UNSUPPORTED

    def __init__(self, version: Any):
        super().__init__(f"Unsupported license schema version: {version!r}",
                         details={"version": version})
        self.version = version


class ConfigurationError(LicensingError):
    """Invalid or unreadable configuration"""
    default_category = ErrorCategory.CONFIGURATION
    default_code = ErrorCode.CONFIG_VALIDATION_FAILED


# Status to error code mapping for reporting validation failures
STATUS_ERROR_CODES: Dict[ValidationStatus, ErrorCode] = {
    ValidationStatus.EXPIRED: ErrorCode.LICENSE_EXPIRED,
    ValidationStatus.INVALID_SIGNATURE: ErrorCode.ENCRYPTION_INTEGRITY_CHECK_FAILED,
    ValidationStatus.HARDWARE_MISMATCH: ErrorCode.LICENSE_HARDWARE_MISMATCH,
    ValidationStatus.REVOKED: ErrorCode.LICENSE_REVOKED,
    ValidationStatus.NOT_FOUND: ErrorCode.STORAGE_FILE_NOT_FOUND,
    ValidationStatus.CORRUPTED: ErrorCode.LICENSE_INVALID,
}

USER_MESSAGES: Dict[ValidationStatus, str] = {
    ValidationStatus.VALID: "License is valid.",
    ValidationStatus.EXPIRED: "Your license has expired. Please renew your subscription.",
    ValidationStatus.INVALID_SIGNATURE: "License signature is invalid. The file may have been modified.",
    ValidationStatus.HARDWARE_MISMATCH: "License is not valid for this device. Please contact support.",
    ValidationStatus.REVOKED: "This license has been revoked. Please contact support.",
    ValidationStatus.NOT_FOUND: "No license file found. Please import a license.",
    ValidationStatus.CORRUPTED: "License file is damaged or in an unknown format.",
}


def get_user_message(status: ValidationStatus) -> str:
    """Get user-friendly message for a validation status"""
    return USER_MESSAGES.get(status, "An unexpected license error occurred.")


def get_status_error_code(status: ValidationStatus) -> Optional[ErrorCode]:
    """Error code reported for a failed validation status (None for valid)"""
    return STATUS_ERROR_CODES.get(status)
