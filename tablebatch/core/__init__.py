"""Core module initialization."""

from .config_manager import ConfigManager, TableBatchConfig
from .logging_config import setup_logging, get_logger

__all__ = [
    "ConfigManager",
    "TableBatchConfig",
    "setup_logging",
    "get_logger",
]
