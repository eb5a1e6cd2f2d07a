"""
Configuration Management for the Session Sync Client.

This module handles client configuration including the identity provider
domain, revalidation timing, credential storage and logging, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List
from configparser import ConfigParser
from urllib.parse import urlparse

from session_shared.exceptions import ConfigurationError
from session_shared.models import GrantType

logger = logging.getLogger(__name__)


DEFAULTS: Dict[str, Dict[str, Any]] = {
    'auth': {
        'domain': None,
        'grant_type': 'pkce',
        'access_token': None
    },
    'revalidation': {
        'interval_ms': 60_000,
        'countdown_ms': 1_000,
        'auto_start': True,
        'token_tail_length': 30
    },
    'storage': {
        'service_name': 'session-sync-client',
        'path': None,
        'use_keyring': True,
        'namespace': 'default'
    },
    'server': {
        'timeout': 30.0,
        'retry_attempts': 3,
        'retry_delay': 1.0
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'format': 'standard',
        'audit': False
    }
}

ENV_MAPPINGS = {
    'SESSION_SYNC_DOMAIN': ('auth', 'domain'),
    'SESSION_SYNC_GRANT_TYPE': ('auth', 'grant_type'),
    'SESSION_SYNC_ACCESS_TOKEN': ('auth', 'access_token'),
    'SESSION_SYNC_INTERVAL_MS': ('revalidation', 'interval_ms'),
    'SESSION_SYNC_COUNTDOWN_MS': ('revalidation', 'countdown_ms'),
    'SESSION_SYNC_STORAGE_PATH': ('storage', 'path'),
    'SESSION_SYNC_USE_KEYRING': ('storage', 'use_keyring'),
    'SESSION_SYNC_LOG_LEVEL': ('logging', 'level'),
    'SESSION_SYNC_LOG_FILE': ('logging', 'file'),
}


class ClientConfiguration:
    """
    Configuration manager for the Session Sync Client.

    Supports configuration from:
    1. Overrides set by the command line (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None, load_environment: bool = True):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}
        self._load_environment = load_environment

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path: ~/.session-sync/client.conf"""
        return str(Path.home() / '.session-sync' / 'client.conf')

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        if self._load_environment:
            self._load_from_environment()

        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # JSON for numbers, booleans and lists; plain strings otherwise
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            self._config_data.setdefault(section, {})
            if value.lower() in ('true', 'false'):
                self._config_data[section][key] = value.lower() == 'true'
            elif value.isdigit():
                self._config_data[section][key] = int(value)
            else:
                self._config_data[section][key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        for section, section_defaults in DEFAULTS.items():
            self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if key not in self._config_data[section]:
                    self._config_data[section][key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        value = self._config_data.get(section, {}).get(config_key, default)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation ('section.key')."""
        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Save current configuration to file."""
        config = ConfigParser()

        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, str):
                    config.set(section_name, key, value)
                else:
                    config.set(section_name, key, json.dumps(value))

        config_path = Path(self._config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(self._config_file, 'w') as f:
                config.write(f)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            raise

        logger.info(f"Configuration saved to: {self._config_file}")

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def validate(self) -> List[str]:
        """
        Validate configuration settings.

        Returns:
            List of human-readable problems (empty if valid)
        """
        errors = []

        if self.get_interval_ms() <= 0:
            errors.append('revalidation.interval_ms must be positive')
        if self.get_countdown_ms() <= 0:
            errors.append('revalidation.countdown_ms must be positive')

        domain = self.get_domain()
        if domain:
            parsed = urlparse(domain)
            if parsed.scheme not in ('http', 'https') or not parsed.netloc:
                errors.append(f'auth.domain is not a valid URL: {domain}')

        try:
            self.get_grant_type()
        except ConfigurationError as e:
            errors.append(e.message)

        if self.get_log_format() not in ('standard', 'json', 'detailed'):
            errors.append(f'logging.format is not supported: {self.get_log_format()}')

        return errors

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data."""
        return {section: dict(values) for section, values in self._config_data.items()}

    def get_config_file_path(self) -> str:
        return self._config_file

    # Convenience accessors

    def get_domain(self) -> Optional[str]:
        return self.get_config('auth.domain')

    def get_grant_type(self) -> GrantType:
        """
        Grant type used for interactive logins.

        Raises:
            ConfigurationError: If the configured value is not a known grant type
        """
        value = str(self.get_config('auth.grant_type', 'pkce')).lower()
        try:
            return GrantType(value)
        except ValueError:
            raise ConfigurationError(
                f'auth.grant_type is not supported: {value}',
                config_key='auth.grant_type'
            )

    def get_access_token(self) -> Optional[str]:
        return self.get_config('auth.access_token')

    def get_interval_ms(self) -> int:
        return int(self.get_config('revalidation.interval_ms', 60_000))

    def get_countdown_ms(self) -> int:
        return int(self.get_config('revalidation.countdown_ms', 1_000))

    def is_auto_start_enabled(self) -> bool:
        return bool(self.get_config('revalidation.auto_start', True))

    def get_token_tail_length(self) -> int:
        return int(self.get_config('revalidation.token_tail_length', 30))

    def get_service_name(self) -> str:
        return self.get_config('storage.service_name', 'session-sync-client')

    def get_storage_path(self) -> Optional[str]:
        return self.get_config('storage.path')

    def use_keyring(self) -> bool:
        return bool(self.get_config('storage.use_keyring', True))

    def get_storage_namespace(self) -> str:
        return self.get_config('storage.namespace', 'default')

    def get_server_timeout(self) -> float:
        return float(self.get_config('server.timeout', 30.0))

    def get_retry_attempts(self) -> int:
        return int(self.get_config('server.retry_attempts', 3))

    def get_retry_delay(self) -> float:
        return float(self.get_config('server.retry_delay', 1.0))

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def is_audit_enabled(self) -> bool:
        return bool(self.get_config('logging.audit', False))
