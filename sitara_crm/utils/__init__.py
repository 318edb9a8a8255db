"""
Sitara CRM Utilities Package

Shared utilities:
- Configuration management
- Logging setup
"""

from sitara_crm.utils.config import PersistenceConfig, load_config
from sitara_crm.utils.logging import setup_logging, setup_logging_from_config

__all__ = ["PersistenceConfig", "load_config", "setup_logging", "setup_logging_from_config"]
