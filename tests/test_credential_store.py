# =====================================================================
# Cloudy Kangaroo Credential Store Unit Tests
# =====================================================================

from unittest.mock import MagicMock, patch

import pytest
import redis

from kangaroo.credential_store import CredentialStore, StoreError, get_redis_pool

pytestmark = pytest.mark.unit


class TestCredentialStore:

    def test_set_and_get(self, store):
        store.set("device.list", "[]")
        assert store.get("device.list") == "[]"

    def test_missing_key_is_none(self, store):
        assert store.get("nope") is None

    def test_redis_errors_become_store_errors(self, store, fake_redis):
        fake_redis.fail = True
        with pytest.raises(StoreError):
            store.get("user:alice")
        with pytest.raises(StoreError):
            store.set("user:alice", "{}")
        with pytest.raises(StoreError):
            store.ping()

    def test_self_test_passes_and_expires_probe(self, store, fake_redis):
        assert store.self_test() is True

        probes = [key for key in fake_redis.data if key.startswith("test_")]
        assert len(probes) == 1
        assert fake_redis.ttls[probes[0]] == 60

    def test_self_test_reports_wrong_value(self):
        client = MagicMock()
        client.get.return_value = "something else"
        assert CredentialStore(client).self_test() is False

    def test_self_test_never_raises(self, store, fake_redis):
        fake_redis.fail = True
        assert store.self_test() is False


class TestRedisPool:

    def test_falls_back_to_next_password(self):
        attempts = []

        def fake_redis(connection_pool):
            attempts.append(connection_pool.connection_kwargs["password"])
            client = MagicMock()
            if connection_pool.connection_kwargs["password"] == "old":
                client.ping.side_effect = redis.exceptions.AuthenticationError("bad password")
            return client

        with patch("kangaroo.credential_store.redis.Redis", side_effect=fake_redis):
            pool = get_redis_pool(host="localhost", port=6379, password_current="old", password_next="new")

        assert attempts == ["old", "new"]
        assert pool.connection_kwargs["password"] == "new"

    def test_all_passwords_failing_raises(self):
        client = MagicMock()
        client.ping.side_effect = redis.exceptions.ConnectionError("refused")

        with patch("kangaroo.credential_store.redis.Redis", return_value=client):
            with pytest.raises(StoreError):
                get_redis_pool(host="localhost", port=6379, password_current="pw")

    def test_no_password_attempts_unauthenticated_pool(self):
        with patch("kangaroo.credential_store.redis.Redis", return_value=MagicMock()):
            pool = get_redis_pool(host="localhost", port=6379)
        assert pool.connection_kwargs["password"] is None
