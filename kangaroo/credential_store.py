#!/usr/bin/env python3
"""
Redis-backed credential store.

The dashboard keeps two kinds of records in Redis: per-user identity records
written at login (``user:<short id>``) and the cached ticketing device list
(``device.list``). Everything goes through single-key operations.

The connection pool is validated with a PING and supports the CURRENT/NEXT
password pair used during password rotation.
"""

import uuid
import logging
from typing import Optional

import redis

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when the store cannot be reached or returns garbage."""
    pass


def get_redis_pool(
    *,
    host: str,
    port: int,
    db: int = 0,
    tls_enabled: bool = False,
    ca_cert_path: Optional[str] = None,
    password_current: Optional[str] = None,
    password_next: Optional[str] = None,
    max_connections: int = 10,
    logger: Optional[logging.Logger] = None,
) -> redis.ConnectionPool:
    """
    Build a ConnectionPool and PING it.

    Tries CURRENT, then NEXT. With no password at all an unauthenticated pool
    is attempted, which is how local Redis instances usually run.
    """
    log = logger or logging.getLogger(__name__)

    def _build_pool(password: Optional[str]) -> redis.ConnectionPool:
        kwargs = {
            'host': host,
            'port': port,
            'db': db,
            'password': password,
            'decode_responses': True,
            'socket_connect_timeout': 5,
            'socket_keepalive': True,
            'max_connections': max_connections,
        }
        if tls_enabled:
            kwargs['connection_class'] = redis.SSLConnection
            kwargs['ssl_cert_reqs'] = 'required'
            if ca_cert_path:
                kwargs['ssl_ca_certs'] = ca_cert_path
        pool = redis.ConnectionPool(**kwargs)
        redis.Redis(connection_pool=pool).ping()
        return pool

    candidates = [('CURRENT', password_current), ('NEXT', password_next)]
    candidates = [(label, pw) for label, pw in candidates if pw]
    if not candidates:
        candidates = [('NO', None)]

    last_error: Optional[Exception] = None
    for label, password in candidates:
        try:
            log.info(f"Attempting Redis pool with {label} password...")
            return _build_pool(password)
        except Exception as e:
            last_error = e
            log.warning(f"Redis connection with {label} password failed: {e}")

    raise StoreError(f"Failed to create Redis pool: {last_error}")


class CredentialStore:
    """
    Thin key-value capability over a Redis client.

    Redis errors are re-raised as StoreError so callers handle one exception
    type whatever the client library does underneath.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_pool(cls, pool: redis.ConnectionPool) -> "CredentialStore":
        return cls(redis.Redis(connection_pool=pool))

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"GET {key} failed: {e}") from e

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            if ttl:
                self.client.setex(key, ttl, value)
            else:
                self.client.set(key, value)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"SET {key} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"DEL {key} failed: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.exceptions.RedisError as e:
            raise StoreError(f"PING failed: {e}") from e

    def self_test(self) -> bool:
        """
        Write a random value, read it back and compare.

        Failures are logged, never raised; the dashboard still starts so the
        health check can report the problem.
        """
        token = str(uuid.uuid4())
        key = f"test_{token}"
        try:
            self.set(key, token, ttl=60)
            response = self.get(key)
        except StoreError as e:
            logger.error("Error retrieving value from Redis during startup test", extra={"error": str(e)})
            return False

        if response != token:
            logger.error(
                "Redis returned the incorrect value for the startup test",
                extra={"expected": token, "response": response},
            )
            return False

        logger.debug("Redis startup self-test passed")
        return True
