#!/usr/bin/env python3
"""
Secret resolution for the dashboard.

When VAULT_ADDR is configured, secrets are read from a Vault KV v2 path using
AppRole login and a background thread keeps the token renewed. Without Vault
the same keys are read from the environment, which is what local development
and the test suite use.
"""

import os
import logging
import threading
from typing import Any, Dict, Optional, Tuple

import hvac

from kangaroo.config import testing_mode

logger = logging.getLogger(__name__)

SECRET_KEYS = (
    'COOKIE_SECRET',
    'CROWD_PASSWORD',
    'UBERSMITH_USER',
    'UBERSMITH_PASS',
    'REDIS_PASS_CURRENT',
    'REDIS_PASS_NEXT',
)


class SecretsError(RuntimeError):
    """Raised when secrets cannot be loaded."""
    pass


def _normalize(data: Dict[str, Any]) -> Dict[str, Optional[str]]:
    secrets = {key: data.get(key) for key in SECRET_KEYS}
    # Single-password deployments store REDIS_PASS only
    secrets['REDIS_PASS_CURRENT'] = secrets['REDIS_PASS_CURRENT'] or data.get('REDIS_PASS')
    return secrets


def secrets_from_env() -> Dict[str, Optional[str]]:
    """Read the secret keys from environment variables."""
    data = {key: os.environ.get(key) for key in SECRET_KEYS}
    data['REDIS_PASS'] = os.environ.get('REDIS_PASS')
    return _normalize(data)


def secrets_from_vault(config) -> Tuple[Dict[str, Optional[str]], hvac.Client]:
    """Authenticate with AppRole and read the dashboard secrets."""
    logger.info(f"Connecting to Vault at {config.VAULT_ADDR}...")
    vault_client = hvac.Client(url=config.VAULT_ADDR)

    if not os.path.exists(config.VAULT_SECRET_ID_FILE):
        raise SecretsError(f"Vault secret ID file not found: {config.VAULT_SECRET_ID_FILE}")

    with open(config.VAULT_SECRET_ID_FILE, 'r') as f:
        secret_id = f.read().strip()
    if not secret_id:
        raise SecretsError("Vault secret ID file is empty")

    auth_response = vault_client.auth.approle.login(
        role_id=config.VAULT_ROLE_ID,
        secret_id=secret_id
    )
    if not vault_client.is_authenticated():
        raise SecretsError("Vault authentication failed.")

    logger.info(f"Authenticated to Vault, token TTL: {auth_response['auth']['lease_duration']}s")

    response = vault_client.secrets.kv.v2.read_secret_version(path=config.VAULT_SECRETS_PATH)
    return _normalize(response['data']['data']), vault_client


def load_secrets(config) -> Tuple[Dict[str, Optional[str]], Optional[hvac.Client]]:
    """
    Resolve secrets from Vault or the environment.

    Returns the secrets mapping and the Vault client (None without Vault).
    A cookie secret is mandatory outside testing mode.
    """
    vault_client = None
    if config.VAULT_ADDR:
        secrets, vault_client = secrets_from_vault(config)
        logger.info("Loaded secrets from Vault")
    else:
        secrets = secrets_from_env()
        logger.info("VAULT_ADDR not set; loaded secrets from environment")

    if not secrets.get('COOKIE_SECRET'):
        if not testing_mode():
            raise SecretsError("COOKIE_SECRET not found (Vault or environment)")
        secrets['COOKIE_SECRET'] = 'testing-cookie-secret'
        logger.warning("Using a fixed cookie secret in testing mode")

    return secrets, vault_client


def start_vault_token_renewal(config, vault_client: hvac.Client) -> Tuple[threading.Thread, threading.Event]:
    """Start a daemon thread that renews the Vault token before it expires."""
    stop_event = threading.Event()

    def renewal_loop():
        logger.info("Vault token renewal thread started")
        while not stop_event.is_set():
            try:
                stop_event.wait(config.VAULT_RENEW_CHECK_INTERVAL)
                if stop_event.is_set():
                    break

                token_info = vault_client.auth.token.lookup_self()['data']
                ttl = token_info['ttl']
                renewable = token_info.get('renewable', False)
                logger.debug(f"Vault token TTL: {ttl}s, Renewable: {renewable}")

                if ttl >= config.VAULT_TOKEN_RENEW_THRESHOLD:
                    continue
                if renewable:
                    renew_response = vault_client.auth.token.renew_self()
                    logger.info(f"Vault token renewed. New TTL: {renew_response['auth']['lease_duration']}s")
                else:
                    logger.warning(
                        f"Vault token is not renewable and has {ttl}s remaining! "
                        "Service restart needed."
                    )
            except Exception as e:
                logger.error(f"Error in Vault token renewal: {e}")

        logger.info("Vault token renewal thread stopped")

    thread = threading.Thread(target=renewal_loop, daemon=True, name="VaultTokenRenewal")
    thread.start()
    return thread, stop_event
