"""
Unit tests for kangaroo-cli
"""

import io
import json

import pytest

from conftest import FakeHTTP
from kangaroo.cli import main as cli
from kangaroo.cli.commands.cmd_status import summarize_events
from kangaroo.silence_helper import DashboardClient

pytestmark = pytest.mark.unit

BASE = "http://dashboard.local"
META = '<meta name="csrf-token" content="tok">'


@pytest.fixture
def http(monkeypatch):
    monkeypatch.delenv("KANGAROO_USER", raising=False)
    monkeypatch.delenv("KANGAROO_PASSWORD", raising=False)
    fake = FakeHTTP()
    fake.add("GET", f"{BASE}/account/login", 200, text=META)
    fake.add("POST", f"{BASE}/account/login", 302, text="", headers={"Location": "/"})
    fake.add("GET", f"{BASE}/account", 200, text=META)
    monkeypatch.setattr(cli, "DashboardClient",
                        lambda url, timeout=10: DashboardClient(url, session=fake, timeout=timeout))
    return fake


def run(*argv):
    return cli.main(["--url", BASE, "--username", "alice", "--password", "wonderland", *argv])


class TestSilenceCommand:

    def test_bad_duration_exits_before_network(self, http, capsys):
        assert run("silence", "web01", "--hours", "73") == 2
        assert http.calls == []
        assert "cannot exceed 72 hours" in capsys.readouterr().out

    def test_silence_check(self, http, capsys):
        http.add("POST", f"{BASE}/api/v1/sensu/silence/client/web01/check/disk", 201,
                 {"path": "silence/web01/disk"})

        assert run("silence", "web01", "--check", "disk", "--hours", "2") == 0
        assert http.calls[-1][2]["data"] == {"expires": 7200}
        assert "silence/web01/disk for 2h" in capsys.readouterr().out

    def test_missing_credentials(self, http, capsys):
        assert cli.main(["--url", BASE, "--username", "", "silence", "web01"]) == 1
        assert "required" in capsys.readouterr().err


class TestUnsilenceCommand:

    def test_unsilence(self, http, capsys):
        http.add("DELETE", f"{BASE}/api/v1/sensu/silence/client/web01", 200,
                 {"path": "silence/web01", "deleted": True})

        assert run("unsilence", "web01") == 0
        assert "Removed silence/web01" in capsys.readouterr().out

    def test_unknown_silence_is_error(self, http, capsys):
        assert run("unsilence", "web01/disk") == 1
        assert "HTTP 404" in capsys.readouterr().err


class TestEscalateCommand:

    def test_escalate_from_stdin(self, http, monkeypatch, capsys):
        http.add("POST", f"{BASE}/api/v1/ubersmith/tickets/ticketid/77/posts", 200,
                 {"status": True, "error_message": ""})
        monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"client": {"name": "web01"}})))

        assert run("escalate", "77", "--note", "see runbook") == 0
        assert http.calls[-1][2]["data"]["documentation"] == "see runbook"
        assert "Event added to ticket 77" in capsys.readouterr().out

    def test_refused_post(self, http, tmp_path, capsys):
        http.add("POST", f"{BASE}/api/v1/ubersmith/tickets/ticketid/77/posts", 200,
                 {"status": False, "error_message": "ticket closed"})
        event_file = tmp_path / "event.json"
        event_file.write_text("{}")

        assert run("escalate", "77", "--event-file", str(event_file)) == 1
        assert "ticket closed" in capsys.readouterr().out

    def test_unreadable_event(self, http, tmp_path):
        event_file = tmp_path / "event.json"
        event_file.write_text("not json")

        assert run("escalate", "77", "--event-file", str(event_file)) == 2
        assert http.calls == []


class TestStatusCommand:

    def test_healthy_anonymous(self, http, capsys):
        http.add("GET", f"{BASE}/health", 200, {"status": "healthy", "version": "1.4.0"})

        assert cli.main(["--url", BASE, "--username", "", "status"]) == 0
        assert "healthy (version 1.4.0)" in capsys.readouterr().out

    def test_unhealthy(self, http):
        http.add("GET", f"{BASE}/health", 503, {"status": "unhealthy", "error": "PING failed"})
        assert cli.main(["--url", BASE, "--username", "", "status"]) == 1

    def test_summarize_events(self):
        events = [
            {"check": {"status": 2}, "silenced": "web01/disk"},
            {"check": {"status": 2}, "silenced": False},
            {"check": {"status": 1}},
            {"check": {"status": 7}},
        ]

        lines = summarize_events(events)

        assert lines[0].split() == ["critical", "2"]
        assert lines[1].split() == ["warning", "1"]
        assert lines[2].split() == ["unknown", "1"]
        assert lines[-2].split() == ["silenced", "1"]
        assert lines[-1].split() == ["total", "4"]
