"""Utilities package initialization."""
from .config import (
    GlobalSettings,
    ServiceConfiguration,
    ensure_runtime_configuration,
    get_service_configuration,
    get_settings,
    load_yaml_config,
)
from .logging import log_batch_outcome, setup_logger

__all__ = [
    "GlobalSettings",
    "ServiceConfiguration",
    "ensure_runtime_configuration",
    "get_settings",
    "get_service_configuration",
    "load_yaml_config",
    "log_batch_outcome",
    "setup_logger",
]
