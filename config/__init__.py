"""Configuration module for loading and managing indexer settings"""
from typing import Dict, Any, Optional
from .lib.load_settings_conf import (
    load_settings_conf,
    validate_settings,
    SettingsError,
    DEFAULTS,
)

__all__ = ['load_config', 'load_settings_conf', 'validate_settings', 'SettingsError', 'DEFAULTS']

_settings: Optional[Dict[str, Any]] = None


def load_config(settings_path: Optional[str] = None, reload: bool = False) -> Dict[str, Any]:
    """Load configuration from settings.conf.

    Args:
        settings_path: Optional directory holding settings.conf. If not provided,
                       will look in the current directory.
        reload: Discard any previously loaded settings

    Returns:
        Dictionary with validated settings
    """
    global _settings

    if _settings is None or reload or settings_path is not None:
        try:
            _settings = load_settings_conf(settings_path or ".")
        except SettingsError as e:
            # Re-raise the error but provide more context
            raise SettingsError(
                f"Configuration Error\n"
                "=================\n\n"
                f"{str(e)}\n\n"
                "Please ensure settings.conf is properly configured.\n"
                "See settings.conf.example for the available keys."
            ) from e

    return _settings
