"""
Configuration loading and management for Nextcloud Provisioning.

This module handles loading configuration from YAML files, environment variables
and command line values, with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'nextcloud_config.yaml'

STRATEGY_DISPLAY_NAME = 'display_name'
STRATEGY_EXTERNAL_ID = 'external_id'


class ConfigError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of provisioning configuration."""

    # Connection keys that may also come from the environment
    ENV_OVERRIDES = ['NC_URL', 'NC_USER', 'NC_PASS', 'NC_GROUP', 'NC_USERID_SUFFIX']

    REQUIRED_KEYS = {
        'NC_URL': 'Nextcloud URL',
        'NC_USER': 'Nextcloud username',
        'NC_PASS': 'Nextcloud password',
        'NC_GROUP': 'Nextcloud group',
    }

    DEFAULTS = {
        'NC_USERID_STRATEGY': STRATEGY_DISPLAY_NAME,
        'NC_USERID_SUFFIX': '',
        'NC_RETRY_COUNT': 3,
        'NC_RETRY_INTERVAL': 5,
        'NC_VERIFY_SSL': True,
        'NC_TIMEOUT': 30,
        'NC_RATE_LIMIT_STATUS_CODES': [429],
        'NC_RATE_LIMIT_PATTERNS': ['too many requests', 'rate limit'],
        'NC_TRACK_CREATED': False,
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses NC_CONFIG_PATH env var
                or 'nextcloud_config.yaml'
        """
        self.config_path = config_path or os.getenv('NC_CONFIG_PATH', DEFAULT_CONFIG_PATH)
        self.config = {}
        self.file_loaded = False

    def load(self, overrides: Optional[Dict[str, Any]] = None,
             require_file: bool = False) -> Dict[str, Any]:
        """
        Load configuration from file, environment and command line overrides.

        Precedence is command line, then environment, then the config file.
        A missing config file is tolerated unless ``require_file`` is set.

        Args:
            overrides: Values given on the command line; None or empty values
                are treated as unset
            require_file: Fail if the config file does not exist

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigError: If config file is missing or invalid, or validation fails
        """
        self.config = self._read_file(require_file)

        self._apply_env_overrides()
        self._apply_overrides(overrides or {})
        self._apply_defaults()
        self._validate()

        if self.file_loaded:
            logger.info(f"Configuration loaded from {self.config_path}")
        return self.config

    def _read_file(self, require_file: bool) -> Dict[str, Any]:
        """Read the YAML config file, if present."""
        if not os.path.isfile(self.config_path):
            if require_file:
                raise ConfigError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using arguments only")
            return {}

        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read config file {self.config_path}: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.config_path} must contain a mapping of NC_* keys")

        self.file_loaded = True
        return data

    def _apply_env_overrides(self):
        """Apply environment variable overrides for connection settings."""
        for key in self.ENV_OVERRIDES:
            env_value = os.getenv(key)
            if env_value:
                self.config[key] = env_value
                logger.debug(f"Applied environment override for {key}")

    def _apply_overrides(self, overrides: Dict[str, Any]):
        """Apply command line values; unset values leave the loaded ones in place."""
        for key, value in overrides.items():
            if value is None or value == '':
                continue
            self.config[key] = value

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for key, value in self.DEFAULTS.items():
            if self.config.get(key) is None:
                self.config[key] = list(value) if isinstance(value, list) else value

        logging_defaults = {
            'level': 'INFO',
            'log_dir': None,
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO'
        }
        logging_config = self.config.get('logging') or {}
        if not isinstance(logging_config, dict):
            raise ConfigError("logging section must be a mapping")
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)
        self.config['logging'] = logging_config

    def _validate(self):
        """Validate required configuration fields and coerce numeric values."""
        errors = []

        for key, label in self.REQUIRED_KEYS.items():
            if not self.config.get(key):
                errors.append(f"{label} is required ({key})")

        strategy = str(self.config['NC_USERID_STRATEGY']).lower()
        if strategy not in (STRATEGY_DISPLAY_NAME, STRATEGY_EXTERNAL_ID):
            errors.append(f"NC_USERID_STRATEGY must be '{STRATEGY_DISPLAY_NAME}' or "
                          f"'{STRATEGY_EXTERNAL_ID}', got '{strategy}'")
        self.config['NC_USERID_STRATEGY'] = strategy

        if strategy == STRATEGY_EXTERNAL_ID and not self.config.get('NC_USERID_SUFFIX'):
            errors.append("User ID suffix is required in external ID mode (NC_USERID_SUFFIX)")

        for key, cast in (('NC_RETRY_COUNT', int), ('NC_RETRY_INTERVAL', float), ('NC_TIMEOUT', float)):
            try:
                value = cast(self.config[key])
            except (TypeError, ValueError):
                errors.append(f"{key} must be a number, got '{self.config[key]}'")
                continue
            if value < 0:
                errors.append(f"{key} must not be negative")
            self.config[key] = value

        for key in ('NC_VERIFY_SSL', 'NC_TRACK_CREATED'):
            self.config[key] = _parse_bool(self.config[key])

        codes = self.config['NC_RATE_LIMIT_STATUS_CODES']
        if not isinstance(codes, list):
            codes = [codes]
        try:
            self.config['NC_RATE_LIMIT_STATUS_CODES'] = [int(code) for code in codes]
        except (TypeError, ValueError):
            errors.append(f"NC_RATE_LIMIT_STATUS_CODES must be a list of integers, got {codes}")

        patterns = self.config['NC_RATE_LIMIT_PATTERNS']
        if not isinstance(patterns, list):
            patterns = [patterns]
        self.config['NC_RATE_LIMIT_PATTERNS'] = [str(p).lower() for p in patterns if p]

        if errors:
            raise ConfigError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def load_config(config_path: Optional[str] = None,
                overrides: Optional[Dict[str, Any]] = None,
                require_file: bool = False) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        overrides: Command line values taking precedence over the file
        require_file: Fail if the config file does not exist

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load(overrides=overrides, require_file=require_file)


def describe_config(config: Dict[str, Any]) -> List[str]:
    """Return human readable lines describing the effective settings, without secrets."""
    lines = [
        f"  URL: {config.get('NC_URL')}",
        f"  User: {config.get('NC_USER')}",
        f"  Group: {config.get('NC_GROUP')}",
        f"  User ID strategy: {config.get('NC_USERID_STRATEGY')}",
    ]
    if config.get('NC_USERID_STRATEGY') == STRATEGY_EXTERNAL_ID:
        lines.append(f"  User ID suffix: {config.get('NC_USERID_SUFFIX')}")
    lines.append(f"  Retries: {config.get('NC_RETRY_COUNT')} every {config.get('NC_RETRY_INTERVAL')}s")
    return lines
