#!/usr/bin/env python3
"""PuppetDB (v3 API) inventory client."""

import json
import logging
from typing import Any, Dict, List, Optional

from kangaroo.fanout import AggregationError, gather
from kangaroo.upstream import UpstreamClient

logger = logging.getLogger(__name__)

LINUX_NODES_QUERY = ["=", ["fact", "kernel"], "Linux"]


class PuppetDBClient(UpstreamClient):
    """Node and fact lookups against PuppetDB."""

    service = "puppetdb"

    def list_nodes(self, query: Optional[list] = None) -> List[Dict[str, Any]]:
        params = {'query': json.dumps(query)} if query is not None else None
        return self.get_json('/nodes', params=params) or []

    def get_node(self, hostname: str) -> Any:
        return self.get_json(f'/nodes/{hostname}')

    def get_facts(self, hostname: str) -> Any:
        return self.get_json(f'/nodes/{hostname}/facts')

    def get_device(self, hostname: str) -> Dict[str, Any]:
        """
        Node record and facts for one host, fetched in parallel.

        Always resolves when both calls ran: a PuppetDB miss or a failed
        call is reported in "error" next to whatever data did arrive.

        Raises:
            AggregationError: if the join does not produce two results
        """
        results = gather(
            [lambda: self.get_node(hostname), lambda: self.get_facts(hostname)],
            timeout=self.timeout * 2,
        )
        if len(results) != 2:
            raise AggregationError('could not retrieve host and facts from Puppet')

        node, facts = results
        if node.ok and isinstance(node.data, dict) and node.data.get('error'):
            return {"error": node.data['error'], "node": {}, "facts": {}}

        device = {
            "node": (node.data or {}) if node.ok else {},
            "facts": (facts.data or {}) if facts.ok else {},
        }
        failed = [r.error for r in results if not r.ok]
        if failed:
            logger.warning(f"Partial PuppetDB data for {hostname}: {failed[0]}")
            device["error"] = str(failed[0])
        return device
