# =====================================================================
# Cloudy Kangaroo Fleet Aggregation Unit Tests
# =====================================================================

import json

import pytest
import requests

from conftest import PUPPETDB, SENSU, FakeHTTP
from kangaroo.fanout import AggregationError
from kangaroo.fleet import FleetAggregator, facts_by_name
from kangaroo.puppetdb_client import PuppetDBClient
from kangaroo.sensu_client import SensuClient
from kangaroo.ubersmith_client import DEVICE_LIST_KEY

pytestmark = pytest.mark.unit


@pytest.fixture
def puppet_http():
    http = FakeHTTP()
    http.add("GET", f"{PUPPETDB}/nodes", 200, [
        {"name": "web01", "report_timestamp": "2024-01-01T00:00:00Z"},
        {"name": "db01", "report_timestamp": "2024-01-02T00:00:00Z"},
    ])
    http.add("GET", f"{PUPPETDB}/nodes/web01/facts", 200, [
        {"certname": "web01", "name": "operatingsystem", "value": "Ubuntu"},
        {"certname": "web01", "name": "ipaddress", "value": "10.0.0.1"},
    ])
    http.add("GET", f"{PUPPETDB}/nodes/db01/facts", 200, [
        {"certname": "db01", "name": "operatingsystem", "value": "CentOS"},
    ])
    return http


@pytest.fixture
def sensu_http():
    http = FakeHTTP()
    http.add("GET", f"{SENSU}/clients/", 200, [{"name": "web01"}])
    return http


def aggregator(puppet_http, sensu_http, store):
    return FleetAggregator(
        PuppetDBClient(PUPPETDB, session=puppet_http),
        SensuClient(SENSU, session=sensu_http),
        store,
        timeout=5,
    )


class TestFleetAggregator:

    def test_joins_nodes_clients_and_billing(self, puppet_http, sensu_http, store):
        store.set(DEVICE_LIST_KEY, json.dumps([{"hostname": "db01"}]))

        fleet = aggregator(puppet_http, sensu_http, store).list_devices()

        assert fleet["clients"] == [{"name": "web01"}]
        assert fleet["billing_devices"] == [{"hostname": "db01"}]
        assert [n["hostname"] for n in fleet["nodes"]] == ["web01", "db01"]
        assert fleet["nodes"][1]["facts"][0]["value"] == "CentOS"

    def test_summary_rows(self, puppet_http, sensu_http, store):
        store.set(DEVICE_LIST_KEY, json.dumps([{"hostname": "db01"}]))
        agg = aggregator(puppet_http, sensu_http, store)

        rows = agg.summarize(agg.list_devices())

        assert [r["hostname"] for r in rows] == ["db01", "web01"]
        db01, web01 = rows
        assert db01["billed"] is True and db01["monitored"] is False
        assert web01["monitored"] is True and web01["ipaddress"] == "10.0.0.1"
        assert web01["operatingsystem"] == "Ubuntu"

    def test_missing_device_cache_is_empty_list(self, puppet_http, sensu_http, store):
        fleet = aggregator(puppet_http, sensu_http, store).list_devices()
        assert fleet["billing_devices"] == []

    def test_any_failed_call_fails_the_listing(self, puppet_http, sensu_http, store):
        puppet_http.routes[("GET", f"{PUPPETDB}/nodes/db01/facts")] = requests.exceptions.ConnectionError("down")

        with pytest.raises(AggregationError):
            aggregator(puppet_http, sensu_http, store).list_devices()

    def test_store_failure_fails_the_listing(self, puppet_http, sensu_http, store, fake_redis):
        fake_redis.fail = True

        with pytest.raises(AggregationError):
            aggregator(puppet_http, sensu_http, store).list_devices()

    def test_node_without_name_fails_the_listing(self, puppet_http, sensu_http, store):
        puppet_http.add("GET", f"{PUPPETDB}/nodes", 200, [{"name": "web01"}, {"report_timestamp": "2024-01-01"}])

        with pytest.raises(AggregationError, match="without a name"):
            aggregator(puppet_http, sensu_http, store).list_devices()
        assert sensu_http.calls == []


class TestFactsByName:

    def test_list_form(self):
        assert facts_by_name([{"name": "kernel", "value": "Linux"}]) == {"kernel": "Linux"}

    def test_dict_form_passes_through(self):
        assert facts_by_name({"kernel": "Linux"}) == {"kernel": "Linux"}

    def test_garbage_is_empty(self):
        assert facts_by_name(None) == {}
