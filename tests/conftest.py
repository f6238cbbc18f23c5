# =====================================================================
# Cloudy Kangaroo Pytest Configuration and Fixtures
# =====================================================================
# Shared fakes (Redis, upstream HTTP, directory) and a Flask app wired
# to them, so no test needs a real service.
# =====================================================================

import json
import logging

import pytest
import redis
import requests

from kangaroo.credential_store import CredentialStore
from kangaroo.directory import DirectoryVerifier
from kangaroo.logging_utils import ACCESS_LOGGER_NAME
from kangaroo.session_manager import Identity

SENSU = "http://localhost:4567"
PUPPETDB = "http://localhost:8080/v3"
UBERSMITH = "http://localhost:8000/api"
CROWD_USER_BASE = "http://localhost:8095/crowd/rest/usermanagement/1/user"


# --- Fake Redis ---

class FakeRedis:
    """Dict-backed stand-in for redis.Redis (get/set/setex/delete/ping)."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.exceptions.ConnectionError("Connection refused")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value):
        self._check()
        self.data[key] = value
        return True

    def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    def ping(self):
        self._check()
        return True


# --- Fake HTTP ---

class FakeResponse:
    """Minimal requests.Response lookalike."""

    def __init__(self, status_code=200, body=None, text=None, url="", headers=None):
        self.status_code = status_code
        self.url = url
        self.headers = headers or {}
        if text is not None:
            self.text = text
        elif body is not None:
            self.text = json.dumps(body)
        else:
            self.text = ""
        self.content = self.text.encode("utf-8")

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}")


class FakeHTTP:
    """
    Stand-in for requests.Session.

    ``routes`` maps (METHOD, url) to a FakeResponse, an exception instance
    (raised), or a callable ``(method, url, **kwargs) -> FakeResponse``.
    Unknown routes answer 404 with an empty body. Every call is recorded.
    """

    def __init__(self, routes=None, fallback=None):
        self.routes = dict(routes or {})
        self.fallback = fallback
        self.calls = []
        self.headers = {}
        self.auth = None

    def add(self, method, url, status_code=200, body=None, **kwargs):
        self.routes[(method.upper(), url)] = FakeResponse(status_code, body, url=url, **kwargs)

    def request(self, method, url, **kwargs):
        method = method.upper()
        self.calls.append((method, url, kwargs))
        target = self.routes.get((method, url))
        if target is None and self.fallback is not None:
            target = self.fallback
        if target is None:
            return FakeResponse(404, url=url)
        if isinstance(target, Exception):
            raise target
        if callable(target):
            return target(method, url, **kwargs)
        target.url = url
        return target

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url, **kwargs):
        return self.request("DELETE", url, **kwargs)


class FakeSensuStashes:
    """Stateful /stashes endpoint, for silence round trips."""

    def __init__(self, base=SENSU):
        self.base = base
        self.stashes = {}

    def __call__(self, method, url, **kwargs):
        path = url[len(self.base):]
        if method == "POST" and path == "/stashes":
            payload = kwargs["json"]
            self.stashes[payload["path"]] = payload
            return FakeResponse(201, {"path": payload["path"]}, url=url)
        if path == "/stashes" and method == "GET":
            return FakeResponse(200, list(self.stashes.values()), url=url)
        if path.startswith("/stashes/"):
            key = path[len("/stashes/"):]
            if key not in self.stashes:
                return FakeResponse(404, url=url)
            if method == "DELETE":
                del self.stashes[key]
                return FakeResponse(204, url=url)
            return FakeResponse(200, self.stashes[key]["content"], url=url)
        return FakeResponse(404, url=url)


# --- Fake directory ---

class FakeVerifier(DirectoryVerifier):
    """Directory with fixed users: username -> (password, groups)."""

    def __init__(self, users=None):
        self.users = users or {}
        self.calls = 0

    def verify(self, credentials):
        self.calls += 1
        entry = self.users.get(credentials.get("username"))
        if entry is None or entry[0] != credentials.get("password"):
            return None
        username = credentials["username"]
        return Identity(
            id=f"{CROWD_USER_BASE}/{username}",
            username=username,
            groups=entry[1],
            display_name=username.title(),
        )


class ListHandler(logging.Handler):
    """Collects records emitted on one logger."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


# --- Fixtures ---

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return CredentialStore(fake_redis)


@pytest.fixture
def upstreams():
    """One FakeHTTP per upstream service, keyed by service name."""
    return {
        "sensu": FakeHTTP(),
        "puppetdb": FakeHTTP(),
        "ubersmith": FakeHTTP(),
        "crowd": FakeHTTP(),
    }


@pytest.fixture
def verifier():
    return FakeVerifier({
        "alice": ("wonderland", ["operations", "staff"]),
        "bob": ("builder", ["staff"]),
    })


@pytest.fixture
def alice():
    return Identity(
        id=f"{CROWD_USER_BASE}/alice",
        username="alice",
        groups=["operations", "staff"],
        display_name="Alice",
    )


@pytest.fixture
def bob():
    return Identity(id=f"{CROWD_USER_BASE}/bob", username="bob", groups=["staff"], display_name="Bob")


@pytest.fixture
def app(monkeypatch, store, upstreams, verifier):
    """Dashboard app with Vault, Redis, Crowd and all upstreams faked."""
    from kangaroo import web_ui_service as w

    def fake_fetch_secrets(app):
        app.config["SECRETS"] = {
            "COOKIE_SECRET": "test-cookie-secret",
            "CROWD_PASSWORD": "crowd",
            "UBERSMITH_USER": "api",
            "UBERSMITH_PASS": "api-pass",
        }

    monkeypatch.setattr(w, "fetch_secrets", fake_fetch_secrets)
    monkeypatch.setattr(w, "create_store", lambda app: store)
    monkeypatch.setattr(w, "http_session", lambda service: upstreams[service])
    monkeypatch.setattr(w, "create_verifier", lambda config, secrets: verifier)

    return w.create_app(start_background=False)


@pytest.fixture
def ctx(app):
    from kangaroo.context import get_context
    return get_context(app)


@pytest.fixture
def client(app):
    return app.test_client()


def login_as(client, ctx, identity, csrf="test-csrf-token"):
    """Store the identity and bind it to the test client's session."""
    session_id = ctx.sessions.create(identity)
    with client.session_transaction() as sess:
        sess["user_id"] = session_id
        sess["csrf_token"] = csrf
    return csrf


@pytest.fixture
def ops_client(client, ctx, alice):
    """
    Test client logged in as a member of the operations group.

    Upstreams are not stubbed; silence tests also need sensu_stashes.
    """
    login_as(client, ctx, alice)
    return client


@pytest.fixture
def sensu_stashes(upstreams):
    """
    Stateful Sensu /stashes behind the app's Sensu client.

    The silence routes talk to /stashes; without this fixture the default
    FakeHTTP answers 404 and a silence POST comes back as a 502.
    """
    stashes = FakeSensuStashes()
    upstreams["sensu"].fallback = stashes
    return stashes


@pytest.fixture
def access_log():
    """Records written to the access logger during the test."""
    handler = ListHandler()
    access = logging.getLogger(ACCESS_LOGGER_NAME)
    access.addHandler(handler)
    yield handler.records
    access.removeHandler(handler)


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (requires real services)"
    )
