#!/usr/bin/env python3
"""
Combined fleet view: PuppetDB nodes joined with Sensu clients and the cached
Ubersmith device list.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from kangaroo.credential_store import CredentialStore
from kangaroo.fanout import AggregationError, first_error, gather
from kangaroo.puppetdb_client import LINUX_NODES_QUERY, PuppetDBClient
from kangaroo.sensu_client import SensuClient
from kangaroo.ubersmith_client import DEVICE_LIST_KEY

logger = logging.getLogger(__name__)


def facts_by_name(facts: Any) -> Dict[str, Any]:
    # PuppetDB v3 returns facts as [{"certname", "name", "value"}, ...]
    if isinstance(facts, list):
        return {fact.get('name'): fact.get('value') for fact in facts if isinstance(fact, dict)}
    return facts if isinstance(facts, dict) else {}


class FleetAggregator:
    """
    Lists every Linux node with its facts, monitoring clients and billing
    devices.

    Unlike the single-device lookups, one failed call fails the whole
    listing: a fleet view with holes in it is misleading.
    """

    def __init__(
        self,
        puppetdb: PuppetDBClient,
        sensu: SensuClient,
        store: CredentialStore,
        max_workers: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.puppetdb = puppetdb
        self.sensu = sensu
        self.store = store
        self.max_workers = max_workers or None
        self.timeout = timeout

    def _facts_call(self, node: Dict[str, Any]):
        name = node.get('name') if isinstance(node, dict) else None
        if not name:
            raise AggregationError(f"PuppetDB node without a name: {node!r}")

        def call():
            return {"hostname": name, "node": node, "facts": self.puppetdb.get_facts(name)}
        return call

    def list_devices(self) -> Dict[str, Any]:
        """
        Raises:
            UpstreamError: if the node list cannot be fetched
            AggregationError: if any call in the fan-out fails
        """
        nodes = self.puppetdb.list_nodes(LINUX_NODES_QUERY)

        calls = [self.sensu.list_clients, lambda: self.store.get(DEVICE_LIST_KEY)]
        calls.extend(self._facts_call(node) for node in nodes)

        results = gather(calls, timeout=self.timeout, max_workers=self.max_workers)
        error = first_error(results)
        if error is not None:
            logger.error(f"Fleet aggregation failed: {error}")
            raise AggregationError(f"fleet aggregation failed: {error}") from error
        if len(results) != len(calls):
            raise AggregationError(f"expected {len(calls)} results, got {len(results)}")

        clients, cached_devices = results[0].data, results[1].data
        return {
            "clients": clients or [],
            "billing_devices": self._decode_devices(cached_devices),
            "nodes": [r.data for r in results[2:]],
        }

    @staticmethod
    def _decode_devices(raw: Optional[str]) -> List[Dict[str, Any]]:
        if not raw:
            return []
        try:
            devices = json.loads(raw)
        except ValueError:
            logger.warning("Cached Ubersmith device list is not valid JSON; ignoring it")
            return []
        return devices if isinstance(devices, list) else []

    def summarize(self, fleet: Dict[str, Any]) -> List[Dict[str, Any]]:
        """One row per node: hostname, monitored flag, billed flag, OS facts."""
        monitored = {client.get('name') for client in fleet['clients']}
        billed = {
            device.get('hostname') or device.get('dev_desc')
            for device in fleet['billing_devices']
        }
        rows = []
        for entry in fleet['nodes']:
            facts = facts_by_name(entry.get('facts'))
            rows.append({
                "hostname": entry['hostname'],
                "monitored": entry['hostname'] in monitored,
                "billed": entry['hostname'] in billed,
                "operatingsystem": facts.get('operatingsystem'),
                "ipaddress": facts.get('ipaddress'),
                "report_timestamp": entry['node'].get('report_timestamp'),
            })
        return sorted(rows, key=lambda row: row['hostname'])
