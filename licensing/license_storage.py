"""
POSPlus License Registry

Issuer-side record of every generated license, used for traceability and
revocation. The registry is one JSON document ``{licenses, blacklist,
lastUpdated}`` that is loaded, mutated and written back whole on every
change.

Writes go to a temporary file in the same directory which is then moved
into place with ``os.replace``, so a crash never leaves a half-written
document. Only one issuer process may write at a time; run concurrent
issuers behind an external lock.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from licensing.error_handling import ErrorCode, RegistryCorruptedError, StorageError
from licensing.license_models import (
    LicenseRecord, LicenseType, RegistryStats, RevocationResult, utc_timestamp
)
from licensing.security.crypto_layer import generate_license_id

logger = logging.getLogger(__name__)

REGISTRY_FILE = "licenses.json"


class LicenseRegistry:
    """
    Registry of issued licenses and the revocation blacklist

    Every blacklist entry is the id of a record in the registry.
    """

    def __init__(self, data_dir: Union[str, Path] = "data", filename: str = REGISTRY_FILE):
        """
        Initialize license registry

        Args:
            data_dir: Directory holding the registry document
            filename: Registry document file name
        """
        self.data_dir = Path(data_dir)
        self.registry_path = self.data_dir / filename

    @classmethod
    def from_config(cls, config) -> "LicenseRegistry":
        """Create from a LicensingConfig"""
        return cls(data_dir=config.paths.data_dir)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _empty_document(self) -> Dict[str, Any]:
        return {"licenses": [], "blacklist": [], "lastUpdated": utc_timestamp()}

    def _load(self) -> Dict[str, Any]:
        """
        Load the registry document

        Raises:
            RegistryCorruptedError: if the document exists but cannot be parsed
        """
        if not self.registry_path.exists():
            return self._empty_document()

        try:
            with open(self.registry_path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read license registry {self.registry_path}: {e}")
            raise RegistryCorruptedError(f"License registry is unreadable: {e}",
                                         details={"path": str(self.registry_path)})

        if (not isinstance(document, dict)
                or not isinstance(document.get("licenses"), list)
                or not isinstance(document.get("blacklist"), list)):
            logger.error(f"License registry {self.registry_path} has an invalid structure")
            raise RegistryCorruptedError("License registry has an invalid structure",
                                         details={"path": str(self.registry_path)})

        return document

    def _records(self, document: Dict[str, Any]) -> List[LicenseRecord]:
        try:
            return [LicenseRecord.from_dict(entry) for entry in document["licenses"]]
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Invalid license record in registry: {e}")
            raise RegistryCorruptedError(f"License registry contains an invalid record: {e}",
                                         details={"path": str(self.registry_path)})

    def _save(self, document: Dict[str, Any]) -> None:
        """Atomically replace the registry document"""
        document["lastUpdated"] = utc_timestamp()
        temp_path = None
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.data_dir, 0o700)

            fd, temp_path = tempfile.mkstemp(prefix=".licenses-", suffix=".tmp",
                                             dir=str(self.data_dir))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.registry_path)
            temp_path = None
        except OSError as e:
            logger.error(f"Failed to write license registry: {e}", exc_info=True)
            raise StorageError(f"Failed to write license registry: {e}",
                               error_code=ErrorCode.STORAGE_IO_ERROR,
                               details={"path": str(self.registry_path)})
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                os.unlink(temp_path)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def add(self, record: LicenseRecord) -> LicenseRecord:
        """
        Append a record and persist

        Ids are unique: when a record with the same id is already stored it is
        returned unchanged and nothing is written.
        """
        document = self._load()
        for existing in self._records(document):
            if existing.id == record.id:
                logger.warning(f"License {record.id} is already recorded, keeping the existing record")
                return existing

        document["licenses"].append(record.to_dict())
        self._save(document)
        logger.info(f"License recorded: {record.id} ({record.payload.client}, "
                    f"{record.payload.license_type.value})")
        return record

    def add_license(self, license_data: Dict[str, Any], file_path: Optional[str] = None,
                    notes: Optional[str] = None) -> LicenseRecord:
        """
        Build a record for a signed license artifact and add it

        Args:
            license_data: License artifact (payload plus signature)
            file_path: Where the artifact was written
            notes: Free-form issuer notes

        Returns:
            The stored record
        """
        record = LicenseRecord.from_dict({
            "id": generate_license_id(license_data),
            "licenseData": license_data,
            "createdAt": utc_timestamp(),
            "notes": notes,
            "filePath": file_path,
            "revoked": False,
        })
        return self.add(record)

    def get_all(self) -> List[LicenseRecord]:
        return self._records(self._load())

    def query(self, client: Optional[str] = None, license_type: Optional[Union[str, LicenseType]] = None,
              active: Optional[bool] = None, revoked: Optional[bool] = None,
              now: Optional[datetime] = None) -> List[LicenseRecord]:
        """
        Filter records

        Args:
            client: Case-insensitive substring of the client name
            license_type: Tier name or LicenseType
            active: Not revoked and not expired (True) or the opposite (False)
            revoked: Revocation flag

        Returns:
            Matching records in registry order
        """
        records = self.get_all()

        if client:
            needle = client.lower()
            records = [r for r in records if needle in r.payload.client.lower()]

        if license_type is not None:
            tier = LicenseType.parse(license_type)
            records = [r for r in records if r.payload.license_type == tier]

        if revoked is not None:
            records = [r for r in records if r.revoked == revoked]

        if active is not None:
            records = [r for r in records if r.is_active(now) == active]

        return records

    def get_by_id(self, license_id: str) -> Optional[LicenseRecord]:
        for record in self.get_all():
            if record.id == license_id:
                return record
        return None

    def get_by_hardware_id(self, hardware_id: str) -> Optional[LicenseRecord]:
        """First non-revoked record bound to the hardware id"""
        for record in self.get_all():
            if record.payload.hardware_id == hardware_id and not record.revoked:
                return record
        return None

    def update_notes(self, license_id: str, notes: str) -> bool:
        document = self._load()
        for entry in document["licenses"]:
            if entry.get("id") == license_id:
                entry["notes"] = notes
                self._save(document)
                return True
        return False

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, license_id: str, reason: Optional[str] = None) -> RevocationResult:
        """
        Revoke a license and add it to the blacklist

        Revoking an already revoked license changes nothing and reports
        ``already_revoked``.
        """
        document = self._load()
        records = self._records(document)

        for index, record in enumerate(records):
            if record.id != license_id:
                continue

            if record.revoked:
                logger.info(f"License already revoked: {license_id}")
                return RevocationResult(success=True, license_id=license_id,
                                        message="License was already revoked",
                                        already_revoked=True, record=record)

            revoked = record.mark_revoked(reason)
            document["licenses"][index] = revoked.to_dict()
            if license_id not in document["blacklist"]:
                document["blacklist"].append(license_id)
            self._save(document)

            logger.warning(f"License revoked: {license_id} (reason: {reason or 'none'})")
            return RevocationResult(success=True, license_id=license_id,
                                    message="License revoked", record=revoked)

        logger.warning(f"Revocation requested for unknown license: {license_id}")
        return RevocationResult(success=False, license_id=license_id,
                                message="License not found")

    def is_blacklisted(self, license_id: str) -> bool:
        return license_id in self._load()["blacklist"]

    def export_blacklist(self) -> List[str]:
        """Snapshot of the blacklist in revocation order"""
        return list(self._load()["blacklist"])

    def export_blacklist_json(self) -> str:
        return json.dumps(self.export_blacklist(), indent=2)

    def write_blacklist(self, path: Union[str, Path]) -> Path:
        """Write the blacklist export for distribution to clients"""
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(self.export_blacklist_json(), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to write blacklist export: {e}")
            raise StorageError(f"Failed to write blacklist export to {target}: {e}")
        logger.info(f"Blacklist exported to {target}")
        return target

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self, now: Optional[datetime] = None) -> RegistryStats:
        """Counts by status (revoked before expired before active) and by tier"""
        stats = RegistryStats()
        for record in self.get_all():
            stats.total += 1
            tier = record.payload.license_type.value
            stats.by_type[tier] = stats.by_type.get(tier, 0) + 1

            if record.revoked:
                stats.revoked += 1
            elif record.is_expired(now):
                stats.expired += 1
            else:
                stats.active += 1
        return stats
