# =====================================================================
# Cloudy Kangaroo Upstream Client Unit Tests (Sensu, PuppetDB)
# =====================================================================

import json

import pytest
import requests
from prometheus_client import CollectorRegistry

from conftest import PUPPETDB, SENSU, FakeHTTP, FakeSensuStashes
from kangaroo.puppetdb_client import LINUX_NODES_QUERY, PuppetDBClient
from kangaroo.sensu_client import SensuClient, silence_path
from kangaroo.upstream import UpstreamError, upstream_latency_histogram

pytestmark = pytest.mark.unit


class TestUpstreamClient:

    def test_transport_error_wrapped(self):
        http = FakeHTTP({("GET", f"{SENSU}/events"): requests.exceptions.ConnectTimeout("slow")})
        with pytest.raises(UpstreamError):
            SensuClient(SENSU, session=http).list_events()

    def test_server_error_wrapped_with_status(self):
        http = FakeHTTP()
        http.add("GET", f"{SENSU}/events", 500, {"error": "boom"})

        with pytest.raises(UpstreamError) as exc:
            SensuClient(SENSU, session=http).list_events()
        assert exc.value.status_code == 500

    def test_timeout_passed_on_every_call(self):
        http = FakeHTTP()
        http.add("GET", f"{SENSU}/clients/", 200, [])

        SensuClient(SENSU, timeout=3, session=http).list_clients()
        assert http.calls[0][2]["timeout"] == 3

    def test_latency_observed_per_service(self):
        registry = CollectorRegistry()
        http = FakeHTTP()
        http.add("GET", f"{SENSU}/events", 200, [])

        SensuClient(SENSU, session=http, latency=upstream_latency_histogram(registry)).list_events()

        count = registry.get_sample_value("kangaroo_upstream_latency_seconds_count", {"service": "sensu"})
        assert count == 1.0


class TestSensuDevice:

    def test_node_and_events(self):
        http = FakeHTTP()
        http.add("GET", f"{SENSU}/client/web01", 200, {"name": "web01", "address": "10.0.0.1"})
        http.add("GET", f"{SENSU}/events/web01", 200, [{"check": {"name": "disk", "status": 2}}])

        device = SensuClient(SENSU, session=http).get_device("web01")

        assert device["node"]["address"] == "10.0.0.1"
        assert device["events"][0]["check"]["name"] == "disk"
        assert "error" not in device

    def test_unknown_host(self):
        http = FakeHTTP()
        http.add("GET", f"{SENSU}/events/ghost", 200, [])

        device = SensuClient(SENSU, session=http).get_device("ghost")

        assert device == {"error": "No information is known about ghost", "events": {}, "node": {}}

    def test_events_failure_embedded(self):
        http = FakeHTTP({("GET", f"{SENSU}/events/web01"): requests.exceptions.ConnectionError("reset")})
        http.add("GET", f"{SENSU}/client/web01", 200, {"name": "web01"})

        device = SensuClient(SENSU, session=http).get_device("web01")

        assert device["node"] == {"name": "web01"}
        assert "reset" in device["error"]


class TestSensuSilence:

    def test_silence_round_trip(self):
        stashes = FakeSensuStashes()
        sensu = SensuClient(SENSU, session=FakeHTTP(fallback=stashes))

        payload = sensu.silence("web01", "disk", expires=28800, user="alice")

        assert payload["path"] == "silence/web01/disk"
        assert payload["expire"] == 28800
        assert payload["content"]["source"] == "dashboard"
        assert payload["content"]["user"] == "alice"
        assert sensu.is_silenced("web01", "disk") is True
        assert sensu.silenced_paths() == {"silence/web01/disk"}

        assert sensu.unsilence("web01", "disk") is True
        assert sensu.is_silenced("web01", "disk") is False
        assert sensu.unsilence("web01", "disk") is False

    def test_client_silence_path(self):
        assert silence_path("web01") == "silence/web01"
        assert silence_path("web01", "disk") == "silence/web01/disk"

    def test_refused_silence_raises(self):
        http = FakeHTTP()
        http.add("POST", f"{SENSU}/stashes", 500)

        with pytest.raises(UpstreamError):
            SensuClient(SENSU, session=http).silence("web01")


class TestPuppetDevice:

    def test_node_and_facts(self):
        http = FakeHTTP()
        http.add("GET", f"{PUPPETDB}/nodes/web01", 200, {"name": "web01"})
        http.add("GET", f"{PUPPETDB}/nodes/web01/facts", 200, [{"name": "kernel", "value": "Linux"}])

        device = PuppetDBClient(PUPPETDB, session=http).get_device("web01")

        assert device == {"node": {"name": "web01"}, "facts": [{"name": "kernel", "value": "Linux"}]}

    def test_facts_failure_still_resolves_with_node(self):
        http = FakeHTTP({("GET", f"{PUPPETDB}/nodes/web01/facts"): requests.exceptions.ReadTimeout("slow")})
        http.add("GET", f"{PUPPETDB}/nodes/web01", 200, {"name": "web01"})

        device = PuppetDBClient(PUPPETDB, session=http).get_device("web01")

        assert device["node"] == {"name": "web01"}
        assert device["facts"] == {}
        assert device["error"]

    def test_puppetdb_miss_reports_error(self):
        http = FakeHTTP()
        http.add("GET", f"{PUPPETDB}/nodes/ghost", 404, {"error": "No information is known about ghost"})

        device = PuppetDBClient(PUPPETDB, session=http).get_device("ghost")

        assert device == {"error": "No information is known about ghost", "node": {}, "facts": {}}

    def test_linux_node_query(self):
        http = FakeHTTP()
        http.add("GET", f"{PUPPETDB}/nodes", 200, [{"name": "web01"}])

        nodes = PuppetDBClient(PUPPETDB, session=http).list_nodes(LINUX_NODES_QUERY)

        assert nodes == [{"name": "web01"}]
        assert json.loads(http.calls[0][2]["params"]["query"]) == ["=", ["fact", "kernel"], "Linux"]
