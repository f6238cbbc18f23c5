#!/usr/bin/env python3
"""
Cloudy Kangaroo - Service Configuration

All settings come from environment variables. Secrets (cookie secret,
directory and ticketing credentials, Redis passwords) are resolved separately
by kangaroo.vault_secrets so they never live on this object.

Author: Cloudy Kangaroo Team
License: MIT
"""

import os
import logging

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a configuration value is missing or invalid."""
    pass


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ('true', '1', 'yes', 'on')


def testing_mode() -> bool:
    """True under pytest or when KANGAROO_TESTING=true."""
    return bool(os.environ.get('PYTEST_CURRENT_TEST')) or _env_bool('KANGAROO_TESTING', 'false')


class Config:
    """Dashboard configuration loaded from environment variables."""

    def __init__(self):
        # Service identity
        self.TITLE = os.environ.get('DASHBOARD_TITLE', 'Cloudy Kangaroo')
        self.PORT = int(os.environ.get('SERVER_PORT_WEBUI', 3000))
        self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
        self.ACCESS_LOG_PATH = os.environ.get('ACCESS_LOG_PATH')
        self.AUDIT_LOG_PATH = os.environ.get('AUDIT_LOG_PATH')
        self.TRUST_PROXY = _env_bool('TRUST_PROXY', 'true')

        # Redis (sessions, device list cache)
        self.REDIS_HOST = os.environ.get('REDIS_HOST', 'localhost')
        self.REDIS_PORT = int(os.environ.get('REDIS_PORT', 6379))
        self.REDIS_DB = int(os.environ.get('REDIS_DB', 0))
        self.REDIS_TLS_ENABLED = _env_bool('REDIS_TLS_ENABLED', 'false')
        self.REDIS_CA_CERT_PATH = os.environ.get('REDIS_CA_CERT_PATH')
        self.REDIS_MAX_CONNECTIONS = int(os.environ.get('REDIS_MAX_CONNECTIONS', 10))
        self.SESSION_TTL = int(os.environ.get('SESSION_TTL', 0))

        # Upstream services
        self.SENSU_HOST = os.environ.get('SENSU_HOST', 'localhost')
        self.SENSU_PORT = int(os.environ.get('SENSU_PORT', 4567))
        self.SENSU_TIMEOUT = float(os.environ.get('SENSU_TIMEOUT', 10))
        self.PUPPETDB_HOST = os.environ.get('PUPPETDB_HOST', 'localhost')
        self.PUPPETDB_PORT = int(os.environ.get('PUPPETDB_PORT', 8080))
        self.PUPPETDB_TIMEOUT = float(os.environ.get('PUPPETDB_TIMEOUT', 10))
        self.UBERSMITH_URL = os.environ.get('UBERSMITH_URL', 'http://localhost:8000/api')
        self.UBERSMITH_TIMEOUT = float(os.environ.get('UBERSMITH_TIMEOUT', 10))
        self.UBERSMITH_SYNC_INTERVAL = int(os.environ.get('UBERSMITH_SYNC_INTERVAL', 300))
        self.FANOUT_MAX_WORKERS = int(os.environ.get('FANOUT_MAX_WORKERS', 0))

        # Directory service
        self.CROWD_SERVER = os.environ.get('CROWD_SERVER', 'http://localhost:8095/crowd')
        self.CROWD_APPLICATION = os.environ.get('CROWD_APPLICATION', 'kangaroo')
        self.CROWD_TIMEOUT = float(os.environ.get('CROWD_TIMEOUT', 10))
        self.OPERATIONS_GROUP = os.environ.get('OPERATIONS_GROUP', 'operations')

        # Metrics
        self.METRICS_INTERVAL_MS = int(os.environ.get('METRICS_INTERVAL_MS', 15000))

        # Vault (optional)
        self.VAULT_ADDR = os.environ.get('VAULT_ADDR')
        self.VAULT_ROLE_ID = os.environ.get('VAULT_ROLE_ID')
        self.VAULT_SECRET_ID_FILE = os.environ.get(
            'VAULT_SECRET_ID_FILE', '/etc/kangaroo/secrets/vault_secret_id'
        )
        self.VAULT_SECRETS_PATH = os.environ.get('VAULT_SECRETS_PATH', 'secret/kangaroo')
        self.VAULT_TOKEN_RENEW_THRESHOLD = int(os.environ.get('VAULT_TOKEN_RENEW_THRESHOLD', 3600))
        self.VAULT_RENEW_CHECK_INTERVAL = int(os.environ.get('VAULT_RENEW_CHECK_INTERVAL', 300))

        self._validate()

    @property
    def SENSU_URI(self) -> str:
        return f"http://{self.SENSU_HOST}:{self.SENSU_PORT}"

    @property
    def PUPPETDB_URI(self) -> str:
        return f"http://{self.PUPPETDB_HOST}:{self.PUPPETDB_PORT}/v3"

    def _validate(self):
        """Validate critical configuration values."""
        if self.PORT < 1 or self.PORT > 65535:
            raise ConfigError(f"SERVER_PORT_WEBUI invalid: {self.PORT}")
        if self.METRICS_INTERVAL_MS <= 0:
            raise ConfigError(f"METRICS_INTERVAL_MS must be positive: {self.METRICS_INTERVAL_MS}")
        for name in ('SENSU_TIMEOUT', 'PUPPETDB_TIMEOUT', 'UBERSMITH_TIMEOUT', 'CROWD_TIMEOUT'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.SESSION_TTL < 0:
            raise ConfigError("SESSION_TTL cannot be negative")

        if testing_mode():
            logger.warning("Testing mode detected: skipping strict config validation")
            return

        if self.VAULT_ADDR and not self.VAULT_ROLE_ID:
            raise ConfigError("VAULT_ROLE_ID is required when VAULT_ADDR is set")
        if self.REDIS_TLS_ENABLED and not self.REDIS_CA_CERT_PATH:
            logger.warning("REDIS_TLS_ENABLED but no CA cert specified. Using system defaults.")

        logger.info("Configuration loaded and validated successfully")
