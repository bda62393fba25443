"""
POSPlus Licensing Configuration Management

This module provides configuration for the issuer tools and the client-side
license manager, with schema validation, dynamic path resolution and support
for development, production and portable modes.
"""

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from licensing.error_handling import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "licensing_config.json"
ENV_DEPLOYMENT_MODE = "LICENSING_DEPLOYMENT_MODE"
ENV_CONFIG_FILE = "LICENSING_CONFIG_FILE"


class DeploymentMode(Enum):
    """Deployment mode enumeration"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    PORTABLE = "portable"


@dataclass
class PathConfig:
    """Path configuration for different deployment modes"""
    keys_dir: str
    data_dir: str
    output_dir: str
    license_dir: str
    logs_dir: str


@dataclass
class SecurityConfig:
    """Security configuration settings"""
    key_size: int = 2048
    probe_timeout_seconds: float = 5.0
    validation_cache_seconds: int = 60
    expiry_warning_days: int = 30
    integrity_salt: str = "posplus-license-integrity"


@dataclass
class LoggingConfig:
    """Logging configuration settings"""
    level: str = "INFO"
    json_logs: bool = True


@dataclass
class LicensingConfig:
    """Main licensing configuration"""
    deployment_mode: str
    paths: PathConfig
    security: SecurityConfig = field(default_factory=SecurityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    version: str = "1.0.0"
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


class ConfigManager:
    """
    Configuration management with schema validation and dynamic path
    resolution for different deployment modes.
    """

    REQUIRED_SECTIONS = ("deployment_mode", "paths", "security", "version")
    LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration manager

        Args:
            config_file: Optional path to configuration file
        """
        self._config: Optional[LicensingConfig] = None
        self._deployment_mode = self._detect_deployment_mode()
        self._config_file = config_file or self._detect_config_file()

        logger.debug(f"ConfigManager initialized with mode: {self._deployment_mode.value}")

    def _detect_deployment_mode(self) -> DeploymentMode:
        """Detect deployment mode from environment and executable state"""
        env_mode = os.getenv(ENV_DEPLOYMENT_MODE)
        if env_mode:
            try:
                return DeploymentMode(env_mode.lower())
            except ValueError:
                logger.warning(f"Invalid deployment mode in environment: {env_mode}")

        if getattr(sys, 'frozen', False):
            portable_config = Path(sys.executable).parent / DEFAULT_CONFIG_FILE
            if portable_config.exists():
                return DeploymentMode.PORTABLE
            return DeploymentMode.PRODUCTION

        return DeploymentMode.DEVELOPMENT

    def _detect_config_file(self) -> str:
        env_file = os.getenv(ENV_CONFIG_FILE)
        if env_file:
            return env_file

        if self._deployment_mode == DeploymentMode.PORTABLE:
            return str(self._base_dir() / DEFAULT_CONFIG_FILE)
        if self._deployment_mode == DeploymentMode.PRODUCTION:
            return str(self._app_data_dir() / DEFAULT_CONFIG_FILE)
        return DEFAULT_CONFIG_FILE

    @staticmethod
    def _base_dir() -> Path:
        return Path(sys.executable).parent if getattr(sys, 'frozen', False) else Path.cwd()

    @staticmethod
    def _app_data_dir() -> Path:
        if os.name == 'nt':
            return Path(os.getenv('APPDATA', str(Path.home()))) / "POSPlus"
        return Path.home() / ".posplus"

    def _get_default_paths(self, mode: DeploymentMode) -> PathConfig:
        """Generate default paths based on deployment mode"""
        if mode == DeploymentMode.DEVELOPMENT:
            return PathConfig(
                keys_dir="keys",
                data_dir="data",
                output_dir="licenses",
                license_dir="license",
                logs_dir="logs",
            )

        base_dir = self._base_dir() if mode == DeploymentMode.PORTABLE else self._app_data_dir()
        return PathConfig(
            keys_dir=str(base_dir / "keys"),
            data_dir=str(base_dir / "data"),
            output_dir=str(base_dir / "licenses"),
            license_dir=str(base_dir / "license"),
            logs_dir=str(base_dir / "logs"),
        )

    def _create_default_config(self) -> LicensingConfig:
        return LicensingConfig(
            deployment_mode=self._deployment_mode.value,
            paths=self._get_default_paths(self._deployment_mode),
        )

    def _validate_config_schema(self, config_data: Dict[str, Any]) -> None:
        """
        Validate configuration data

        Raises:
            ConfigurationError: if a section is missing or a value is out of range
        """
        if not isinstance(config_data, dict):
            raise ConfigurationError("Configuration must be a JSON object",
                                     error_code=ErrorCode.CONFIG_INVALID_FORMAT)

        for key in self.REQUIRED_SECTIONS:
            if key not in config_data:
                raise ConfigurationError(f"Missing required configuration key: {key}",
                                         error_code=ErrorCode.CONFIG_MISSING_REQUIRED_FIELD)

        if config_data["deployment_mode"] not in [m.value for m in DeploymentMode]:
            raise ConfigurationError(f"Invalid deployment mode: {config_data['deployment_mode']}")

        paths = config_data["paths"]
        if not isinstance(paths, dict):
            raise ConfigurationError("paths must be an object",
                                     error_code=ErrorCode.CONFIG_INVALID_FORMAT)
        for path_field in fields(PathConfig):
            value = paths.get(path_field.name)
            if not isinstance(value, str) or not value:
                raise ConfigurationError(f"Invalid paths.{path_field.name}: {value!r}",
                                         error_code=ErrorCode.CONFIG_MISSING_REQUIRED_FIELD)

        security = config_data["security"]
        if not isinstance(security, dict):
            raise ConfigurationError("security must be an object",
                                     error_code=ErrorCode.CONFIG_INVALID_FORMAT)
        self._check_range(security, "key_size", 2048, 8192, int)
        self._check_range(security, "probe_timeout_seconds", 1, 30, (int, float))
        self._check_range(security, "validation_cache_seconds", 0, 86400, int)
        self._check_range(security, "expiry_warning_days", 0, 365, int)

        log_config = config_data.get("logging", {})
        level = log_config.get("level", "INFO")
        if not isinstance(level, str) or level.upper() not in self.LOG_LEVELS:
            raise ConfigurationError(f"Invalid logging.level: {level!r}",
                                     error_code=ErrorCode.CONFIG_VALUE_OUT_OF_RANGE)

    @staticmethod
    def _check_range(section: Dict[str, Any], key: str, low, high, types) -> None:
        if key not in section:
            return
        value = section[key]
        if isinstance(value, bool) or not isinstance(value, types) or value < low or value > high:
            raise ConfigurationError(f"Invalid security.{key}: {value!r} (expected {low}-{high})",
                                     error_code=ErrorCode.CONFIG_VALUE_OUT_OF_RANGE)

    def _from_dict(self, config_data: Dict[str, Any]) -> LicensingConfig:
        try:
            return LicensingConfig(
                deployment_mode=config_data["deployment_mode"],
                paths=PathConfig(**config_data["paths"]),
                security=SecurityConfig(**config_data["security"]),
                logging=LoggingConfig(**config_data.get("logging", {})),
                version=config_data["version"],
                created_at=config_data.get("created_at", datetime.now().isoformat()),
            )
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration field: {e}",
                                     error_code=ErrorCode.CONFIG_INVALID_FORMAT)

    def load_config(self) -> LicensingConfig:
        """
        Load configuration from file or create default

        Returns:
            LicensingConfig object

        Raises:
            ConfigurationError: if the file is unreadable or invalid
        """
        config_path = Path(self._config_file)

        if not config_path.exists():
            logger.info("Configuration file not found, creating default configuration")
            self._config = self._create_default_config()
            self.save_config()
            return self._config

        logger.info(f"Loading configuration from: {config_path}")
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}",
                                     error_code=ErrorCode.CONFIG_INVALID_FORMAT)

        self._validate_config_schema(config_data)
        self._config = self._from_dict(config_data)
        logger.info("Configuration loaded successfully")
        return self._config

    def save_config(self) -> None:
        """Save current configuration to file"""
        if not self._config:
            raise ConfigurationError("No configuration to save")

        config_path = Path(self._config_file)
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, 'w', encoding='utf-8') as f:
                json.dump(asdict(self._config), f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            raise ConfigurationError(f"Configuration saving failed: {e}",
                                     error_code=ErrorCode.CONFIG_FILE_NOT_FOUND)

        logger.info(f"Configuration saved to: {config_path}")

    def get_config(self) -> LicensingConfig:
        """Get current configuration, loading if necessary"""
        if not self._config:
            return self.load_config()
        return self._config

    def update_config(self, **kwargs) -> LicensingConfig:
        """
        Update configuration values and save

        Section names take a dict of field updates, e.g.
        ``update_config(security={"probe_timeout_seconds": 10})``.

        Raises:
            ConfigurationError: if a key is unknown or the result is invalid
        """
        config = self.get_config()
        data = asdict(config)

        for key, value in kwargs.items():
            if key not in data:
                raise ConfigurationError(f"Unknown configuration key: {key}",
                                         error_code=ErrorCode.CONFIG_VALIDATION_FAILED)
            if isinstance(data[key], dict):
                if not isinstance(value, dict):
                    raise ConfigurationError(f"Configuration section {key} expects an object")
                data[key].update(value)
            else:
                data[key] = value
            logger.info(f"Updated configuration: {key}")

        self._validate_config_schema(data)
        self._config = self._from_dict(data)
        self.save_config()
        return self._config

    def resolve_path(self, relative_path: str) -> str:
        """
        Resolve relative path based on current deployment mode

        Args:
            relative_path: Relative path to resolve

        Returns:
            Absolute path string
        """
        path = Path(relative_path).expanduser()
        if path.is_absolute():
            return str(path)

        if self._deployment_mode == DeploymentMode.PRODUCTION:
            base_dir = self._app_data_dir()
        elif self._deployment_mode == DeploymentMode.PORTABLE:
            base_dir = self._base_dir()
        else:
            base_dir = Path.cwd()

        return str((base_dir / path).resolve())

    @property
    def config_file(self) -> str:
        return self._config_file

    @property
    def deployment_mode(self) -> DeploymentMode:
        """Get current deployment mode"""
        return self._deployment_mode

    @property
    def is_portable(self) -> bool:
        return self._deployment_mode == DeploymentMode.PORTABLE

    @property
    def is_production(self) -> bool:
        return self._deployment_mode == DeploymentMode.PRODUCTION
