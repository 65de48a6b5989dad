"""
Configuration loader for loading and validating config.json.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import AppConfig, default_devices


logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


def _create_default_config(config: AppConfig, config_path: Path) -> None:
    """
    Create a default config.json file.

    Args:
        config: Default AppConfig to save.
        config_path: Path where to create the config file.
    """
    try:
        save_data = {
            "_comment": "Alpaca Hub configuration (auto-generated, simulated devices only).",
            **config.model_dump(mode="json")
        }

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(save_data, f, indent=2)

        logger.info(f"Created default config file: {config_path}")

    except IOError as e:
        logger.warning(f"Failed to create default config file: {e}")


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from JSON file.

    Args:
        path: Path to config.json file. If None, looks for config.json in current directory.

    Returns:
        Validated AppConfig instance.

    Raises:
        ConfigurationError: If config file is unreadable or invalid.
    """
    if path is None:
        path = "config.json"

    config_path = Path(path)

    if not config_path.exists():
        logger.info(
            f"Config file not found: {config_path}. Creating with default configuration."
        )
        config = AppConfig(devices=default_devices())
        _create_default_config(config, config_path)
        return config

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config_dict = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Invalid JSON in {config_path}: {e}"
        ) from e
    except IOError as e:
        raise ConfigurationError(
            f"Failed to read {config_path}: {e}"
        ) from e

    # Keys starting with '_' are comments
    config_dict = {k: v for k, v in config_dict.items() if not k.startswith("_")}

    try:
        config = AppConfig(**config_dict)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            field = " -> ".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {field}: {msg}")

        error_message = "Configuration validation failed:\n" + "\n".join(errors)
        raise ConfigurationError(error_message) from e

    logger.info(f"Configuration loaded from {config_path} ({len(config.devices)} devices)")
    return config
