"""
POSPlus Hardware Fingerprinting

This module derives a stable machine identifier used to bind licenses to one
installation.

Features:
- Per-platform hardware probes (Linux, Windows, macOS), native sources first
- Command probes with bounded timeouts, failures treated as unavailable sources
- Degraded fingerprint from host attributes when fewer than two sources answer
- Cached provider object passed explicitly to the validator

Classes:
    HardwareProbe: Base probe with command and file helpers
    LinuxProbe, WindowsProbe, MacProbe: Platform probes
    HardwareFingerprint: Fingerprint provider for the current machine
    StaticFingerprint: Provider returning a fixed identifier

Functions:
    derive_fingerprint: Pure fingerprint derivation from collected components
    get_platform_probe: Select the probe for the running platform
"""

import hashlib
import logging
import os
import re
import socket
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import psutil

from licensing.license_models import HardwareInfo

logger = logging.getLogger(__name__)

COMPONENT_SEPARATOR = "|POSPLUS|"
MIN_COMPONENTS = 2
DEFAULT_PROBE_TIMEOUT = 5.0

# Interface name fragments tried first when picking a MAC address
PREFERRED_INTERFACES = ("eth0", "en0", "Ethernet", "Wi-Fi", "wlan0", "enp0s")
NULL_MAC = "00:00:00:00:00:00"
NULL_UUID = "FFFFFFFF-FFFF-FFFF-FFFF-FFFFFFFFFFFF"


def fingerprint_components(machine_uuid: Optional[str], cpu_id: Optional[str],
                           disk_serial: Optional[str], mac_address: Optional[str],
                           hostname: str, platform_name: str, cpu_count: int) -> List[str]:
    """
    Ordered components that go into the fingerprint.

    Empty hardware sources are dropped. With fewer than two hardware sources
    the host name, platform name and logical core count are appended.
    """
    components = [c for c in (machine_uuid, cpu_id, disk_serial, mac_address) if c]
    if len(components) < MIN_COMPONENTS:
        components.extend([hostname, platform_name, str(cpu_count)])
    return components


def derive_fingerprint(machine_uuid: Optional[str], cpu_id: Optional[str],
                       disk_serial: Optional[str], mac_address: Optional[str],
                       hostname: str, platform_name: str, cpu_count: int) -> str:
    """
    Derive the hardware id from collected components

    Returns:
        64 lowercase hex characters (SHA-256 of the joined components)
    """
    components = fingerprint_components(machine_uuid, cpu_id, disk_serial, mac_address,
                                        hostname, platform_name, cpu_count)
    combined = COMPONENT_SEPARATOR.join(components)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


def format_display_id(hardware_id: str) -> str:
    """Grouped XXXX-XXXX-XXXX-XXXX form of the first 16 characters"""
    head = hardware_id[:16].upper()
    return "-".join(head[i:i + 4] for i in range(0, len(head), 4))


class HardwareProbe:
    """
    Hardware source probe

    Every source method returns a string or None and never raises. Subclasses
    override the platform-specific sources; the MAC address lookup is shared.
    """

    name = "generic"

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.timeout = timeout

    def machine_id(self) -> Optional[str]:
        return None

    def cpu_id(self) -> Optional[str]:
        return None

    def disk_serial(self) -> Optional[str]:
        return None

    def mac_address(self) -> Optional[str]:
        """First usable MAC address, preferred interfaces first"""
        try:
            interfaces = psutil.net_if_addrs()
        except Exception as e:
            logger.warning(f"Network interface enumeration failed: {e}")
            return None

        candidates = []
        for if_name, addresses in interfaces.items():
            lowered = if_name.lower()
            if lowered in ("lo", "lo0") or lowered.startswith("loopback"):
                continue
            for addr in addresses:
                if addr.family != psutil.AF_LINK or not addr.address:
                    continue
                mac = addr.address.replace("-", ":").upper()
                if mac == NULL_MAC or len(mac) != 17:
                    continue
                candidates.append((if_name, mac))

        for preferred in PREFERRED_INTERFACES:
            for if_name, mac in candidates:
                if preferred.lower() in if_name.lower():
                    return mac

        return candidates[0][1] if candidates else None

    def run_command(self, command: Sequence[str]) -> Optional[str]:
        """
        Run a probe command with the probe timeout

        Returns:
            Stripped stdout, or None on timeout, missing binary, non-zero exit
            or empty output
        """
        try:
            result = subprocess.run(
                list(command),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError) as e:
            logger.debug(f"Probe command failed: {' '.join(command)} - {e}")
            return None

        if result.returncode != 0:
            logger.debug(f"Probe command exited with {result.returncode}: {' '.join(command)}")
            return None
        output = (result.stdout or "").strip()
        return output or None

    @staticmethod
    def read_file(path) -> Optional[str]:
        try:
            content = Path(path).read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            return None
        return content or None

    @staticmethod
    def first_value_line(output: Optional[str], header: str) -> Optional[str]:
        """First non-empty line of tabular command output that is not the header"""
        if not output:
            return None
        for line in output.splitlines():
            line = line.strip()
            if line and header.lower() not in line.lower():
                return line
        return None


class LinuxProbe(HardwareProbe):
    name = "linux"

    MACHINE_ID_FILES = (
        "/etc/machine-id",
        "/sys/class/dmi/id/product_uuid",
        "/var/lib/dbus/machine-id",
    )
    CPUINFO_FILE = "/proc/cpuinfo"
    BLOCK_DIR = "/sys/block"

    def machine_id(self) -> Optional[str]:
        for path in self.MACHINE_ID_FILES:
            value = self.read_file(path)
            if value:
                return value
        return None

    def cpu_id(self) -> Optional[str]:
        cpuinfo = self.read_file(self.CPUINFO_FILE)
        if not cpuinfo:
            return None
        for line in cpuinfo.splitlines():
            key, sep, value = line.partition(":")
            if sep and key.strip() in ("Serial", "model name") and value.strip():
                return value.strip()
        return None

    def disk_serial(self) -> Optional[str]:
        block_dir = Path(self.BLOCK_DIR)
        try:
            devices = sorted(p.name for p in block_dir.iterdir())
        except OSError:
            devices = []

        for device in devices:
            if device.startswith(("loop", "ram", "dm-", "zram", "sr")):
                continue
            serial = self.read_file(block_dir / device / "device" / "serial")
            if serial:
                return serial

        output = self.run_command(["lsblk", "-o", "SERIAL", "-dn"])
        if output:
            for line in output.splitlines():
                if line.strip():
                    return line.strip()
        return None


class WindowsProbe(HardwareProbe):
    name = "windows"

    def machine_id(self) -> Optional[str]:
        guid = self._registry_machine_guid()
        if guid:
            return guid

        uuid = self.run_command([
            "powershell", "-NoProfile", "-Command",
            "(Get-CimInstance Win32_ComputerSystemProduct).UUID",
        ])
        if not uuid or uuid.upper() == NULL_UUID:
            uuid = self.first_value_line(self.run_command(["wmic", "csproduct", "get", "uuid"]), "UUID")
        if uuid and uuid.upper() == NULL_UUID:
            return None
        return uuid

    def cpu_id(self) -> Optional[str]:
        output = self.run_command(["wmic", "cpu", "get", "processorid"])
        return self.first_value_line(output, "ProcessorId")

    def disk_serial(self) -> Optional[str]:
        serial = self.run_command([
            "powershell", "-NoProfile", "-Command",
            "(Get-PhysicalDisk | Select-Object -First 1).SerialNumber",
        ])
        if serial:
            return serial
        output = self.run_command(["wmic", "diskdrive", "get", "serialnumber"])
        return self.first_value_line(output, "SerialNumber")

    @staticmethod
    def _registry_machine_guid() -> Optional[str]:
        try:
            import winreg
        except ImportError:
            return None
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE,
                                r"SOFTWARE\Microsoft\Cryptography",
                                0, winreg.KEY_READ | winreg.KEY_WOW64_64KEY) as key:
                value, _ = winreg.QueryValueEx(key, "MachineGuid")
        except OSError as e:
            logger.debug(f"MachineGuid lookup failed: {e}")
            return None
        return str(value).strip() or None


class MacProbe(HardwareProbe):
    name = "darwin"

    UUID_PATTERN = re.compile(r'"IOPlatformUUID"\s*=\s*"([^"]+)"')

    def machine_id(self) -> Optional[str]:
        output = self.run_command(["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"])
        if not output:
            return None
        match = self.UUID_PATTERN.search(output)
        return match.group(1) if match else None

    def cpu_id(self) -> Optional[str]:
        return self.run_command(["sysctl", "-n", "machdep.cpu.brand_string"])

    def disk_serial(self) -> Optional[str]:
        output = self.run_command(["diskutil", "info", "disk0"])
        if not output:
            return None
        for line in output.splitlines():
            key, sep, value = line.partition(":")
            if sep and key.strip() == "Device / Media Name" and value.strip():
                return value.strip()
        return None


def get_platform_probe(timeout: float = DEFAULT_PROBE_TIMEOUT,
                       platform_name: Optional[str] = None) -> HardwareProbe:
    """Select the hardware probe for the running platform"""
    platform_name = platform_name or sys.platform
    if platform_name.startswith("win"):
        return WindowsProbe(timeout)
    if platform_name == "darwin":
        return MacProbe(timeout)
    if platform_name.startswith("linux"):
        return LinuxProbe(timeout)
    logger.warning(f"No dedicated hardware probe for platform {platform_name}, using generic probe")
    return HardwareProbe(timeout)


class HardwareFingerprint:
    """
    Hardware fingerprint provider for the current machine

    The identifier is derived once and cached for the lifetime of the
    provider. It is never written to disk.
    """

    def __init__(self, probe: Optional[HardwareProbe] = None,
                 timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.probe = probe or get_platform_probe(timeout)
        self._cached_info: Optional[HardwareInfo] = None

    def get_hardware_id(self) -> str:
        return self.get_hardware_info().hardware_id

    def get_hardware_info(self) -> HardwareInfo:
        """Collected hardware sources plus the derived identifier"""
        if self._cached_info is None:
            self._cached_info = self._collect()
        return self._cached_info

    def refresh(self) -> str:
        """Drop the cached identifier and derive it again"""
        self._cached_info = None
        return self.get_hardware_id()

    def verify_hardware_id(self, expected: str) -> bool:
        return self.get_hardware_id() == expected

    def get_display_id(self) -> str:
        return format_display_id(self.get_hardware_id())

    def _source(self, name: str) -> Optional[str]:
        try:
            value = getattr(self.probe, name)()
        except Exception as e:
            logger.warning(f"Hardware source {name} failed: {e}")
            return None
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def _collect(self) -> HardwareInfo:
        machine_uuid = self._source("machine_id")
        cpu_id = self._source("cpu_id")
        disk_serial = self._source("disk_serial")
        mac_address = self._source("mac_address")

        hostname = socket.gethostname()
        platform_name = sys.platform
        cpu_count = psutil.cpu_count(logical=True) or os.cpu_count() or 1

        components = fingerprint_components(machine_uuid, cpu_id, disk_serial, mac_address,
                                            hostname, platform_name, cpu_count)
        hardware_id = derive_fingerprint(machine_uuid, cpu_id, disk_serial, mac_address,
                                         hostname, platform_name, cpu_count)

        logger.info(
            "Hardware ID generated from components",
            extra={
                "has_machine_uuid": bool(machine_uuid),
                "has_cpu_id": bool(cpu_id),
                "has_disk_serial": bool(disk_serial),
                "has_mac_address": bool(mac_address),
                "components_count": len(components),
                "hardware_id": hardware_id[:16],
            },
        )

        return HardwareInfo(
            hardware_id=hardware_id,
            platform=platform_name,
            hostname=hostname,
            machine_uuid=machine_uuid,
            cpu_id=cpu_id,
            disk_serial=disk_serial,
            mac_address=mac_address,
            components_count=len(components),
        )


class StaticFingerprint:
    """Fingerprint provider with a fixed identifier"""

    def __init__(self, hardware_id: str, platform: str = "static", hostname: str = "localhost"):
        self._info = HardwareInfo(hardware_id=hardware_id, platform=platform,
                                  hostname=hostname, components_count=0)

    def get_hardware_id(self) -> str:
        return self._info.hardware_id

    def get_hardware_info(self) -> HardwareInfo:
        return self._info

    def refresh(self) -> str:
        return self._info.hardware_id

    def verify_hardware_id(self, expected: str) -> bool:
        return self._info.hardware_id == expected

    def get_display_id(self) -> str:
        return format_display_id(self._info.hardware_id)
