"""
Configuration loading and management for the SSO admin client.

This module loads server definitions and logging settings from a YAML file,
applies environment variable overrides for passwords, validates required
fields and fills in defaults.
"""

import os
import re
import yaml
import logging
from typing import Any, Dict, Optional, Tuple

from sso_admin.transport import Credentials, TlsPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of client configuration."""

    DEFAULT_PASSWORD_ENV = 'SSO_ADMIN_PASSWORD'

    SERVER_DEFAULTS = {
        'port': 636,
        'use_ssl': True,
        'start_tls': False,
        'skip_certificate_check': False,
        'ca_cert_file': None,
        'tenant': None,
        'connection_timeout': 10,
        'receive_timeout': 30,
        'page_size': 1000,
    }

    LOGGING_DEFAULTS = {
        'level': 'INFO',
        'log_dir': 'logs',
        'rotation': 'daily',
        'retention_days': 7,
        'console_output': True,
        'console_level': 'WARNING',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Path to config file. If None, uses SSO_ADMIN_CONFIG env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('SSO_ADMIN_CONFIG', DEFAULT_CONFIG_PATH)
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded from {self.config_path} "
                    f"({len(self.config['servers'])} server(s))")
        return self.config

    @staticmethod
    def password_env_var(server_name: str) -> str:
        """Per-server password variable, e.g. 'vc-01' -> 'VC_01_PASSWORD'."""
        return re.sub(r'[^A-Z0-9]', '_', server_name.upper()) + '_PASSWORD'

    def _apply_env_overrides(self):
        """Fill passwords from environment variables."""
        default_password = os.getenv(self.DEFAULT_PASSWORD_ENV)
        for i, server in enumerate(self.config.get('servers') or []):
            if not isinstance(server, dict):
                continue
            name = server.get('name') or server.get('host') or f'server_{i}'
            env_value = os.getenv(self.password_env_var(name))
            if env_value:
                server['password'] = env_value
                logger.debug(f"Applied environment override for {name} password")
            elif default_password and not server.get('password'):
                server['password'] = default_password
                logger.debug(f"Applied {self.DEFAULT_PASSWORD_ENV} for {name}")

    def _validate(self):
        """Validate required configuration fields, collecting every problem."""
        errors = []

        servers = self.config.get('servers')
        if not servers:
            errors.append("At least one server must be configured")
        elif not isinstance(servers, list):
            errors.append("'servers' must be a list")
            servers = []

        seen_names = set()
        for i, server in enumerate(servers or []):
            prefix = f"servers[{i}]"
            if not isinstance(server, dict):
                errors.append(f"{prefix} must be a mapping")
                continue
            name = server.get('name') or server.get('host')
            if name in seen_names:
                errors.append(f"Duplicate server name for {prefix}: {name}")
            elif name:
                seen_names.add(name)
            for field in ('host', 'user', 'password'):
                if not server.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")
            port = server.get('port')
            if port is not None and (not isinstance(port, int) or not 0 < port < 65536):
                errors.append(f"Invalid port for {prefix}: {port}")
            if server.get('use_ssl') and server.get('start_tls'):
                errors.append(f"{prefix}: use_ssl and start_tls are mutually exclusive")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        for server in self.config['servers']:
            for key, value in self.SERVER_DEFAULTS.items():
                server.setdefault(key, value)
            server.setdefault('name', server['host'])
            if not server['use_ssl'] and server['port'] == 636:
                server['port'] = 389

        logging_config = self.config.setdefault('logging', {})
        for key, value in self.LOGGING_DEFAULTS.items():
            logging_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def server_settings(server_config: Dict[str, Any]) -> Tuple[str, Credentials, TlsPolicy]:
    """Split one server entry into (host, Credentials, TlsPolicy)."""
    credentials = Credentials(server_config['user'], server_config['password'])
    tls_policy = TlsPolicy(
        use_ssl=server_config.get('use_ssl', True),
        start_tls=server_config.get('start_tls', False),
        skip_certificate_check=server_config.get('skip_certificate_check', False),
        ca_cert_file=server_config.get('ca_cert_file'),
        port=server_config.get('port'),
    )
    return server_config['host'], credentials, tls_policy


def transport_options(server_config: Dict[str, Any]) -> Dict[str, Any]:
    """LdapAdminTransport keyword options for one server entry."""
    return {
        'tenant': server_config.get('tenant'),
        'connection_timeout': server_config.get('connection_timeout', 10),
        'receive_timeout': server_config.get('receive_timeout', 30),
        'page_size': server_config.get('page_size', 1000),
    }
