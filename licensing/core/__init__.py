"""
Core module for POSPlus Licensing

This package contains the configuration layer shared by the issuer tools and
the client-side license manager.
"""

from licensing.core.config_manager import ConfigManager, DeploymentMode, LicensingConfig

__all__ = ['ConfigManager', 'DeploymentMode', 'LicensingConfig']
