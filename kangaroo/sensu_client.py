#!/usr/bin/env python3
"""
=====================================================================
Sensu Monitoring Client
=====================================================================
Wraps the Sensu API (clients, events, stashes).

Silencing uses Sensu stashes: a silenced client or check is a stash
at "silence/<client>" or "silence/<client>/<check>". The dashboard
reads the stash list to decide which event rows show an unsilence
button.
=====================================================================
"""

import time
import logging
from typing import Any, Dict, List, Optional

from kangaroo.fanout import AggregationError, gather
from kangaroo.upstream import UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

SILENCE_PREFIX = "silence"


def silence_path(client: str, check: Optional[str] = None) -> str:
    """Stash path for a client or a client/check pair."""
    if check:
        return f"{SILENCE_PREFIX}/{client}/{check}"
    return f"{SILENCE_PREFIX}/{client}"


class SensuClient(UpstreamClient):
    """Client for the Sensu API."""

    service = "sensu"

    def list_clients(self) -> List[Dict[str, Any]]:
        return self.get_json('/clients/') or []

    def list_events(self) -> List[Dict[str, Any]]:
        return self.get_json('/events') or []

    def list_stashes(self) -> List[Dict[str, Any]]:
        return self.get_json('/stashes') or []

    def silenced_paths(self) -> set:
        """Paths of every silence stash currently stored."""
        return {
            stash.get('path') for stash in self.list_stashes()
            if str(stash.get('path', '')).startswith(SILENCE_PREFIX + '/')
        }

    def get_device(self, hostname: str) -> Dict[str, Any]:
        """
        Client record and current events for one host, fetched in parallel.

        A host Sensu knows nothing about yields an "error" payload rather than
        an empty record. A failed call is embedded as "error" so the device
        page can still render whatever did load.

        Raises:
            AggregationError: if the join does not produce two results
        """
        results = gather(
            [
                lambda: self.get_json(f'/client/{hostname}'),
                lambda: self.get_json(f'/events/{hostname}'),
            ],
            timeout=self.timeout * 2,
        )
        if len(results) != 2:
            logger.error(
                "could not retrieve events and node from Sensu",
                extra={"results": repr(results)},
            )
            raise AggregationError('could not retrieve events and node from Sensu')

        node, events = results
        if node.ok and not node.data:
            return {"error": f"No information is known about {hostname}", "events": {}, "node": {}}

        device = {
            "node": node.data if node.ok else {},
            "events": (events.data or []) if events.ok else {},
        }
        failed = [r.error for r in results if not r.ok]
        if failed:
            logger.warning(f"Partial Sensu data for {hostname}: {failed[0]}")
            device["error"] = str(failed[0])
        return device

    def silence(
        self,
        client: str,
        check: Optional[str] = None,
        expires: Optional[int] = None,
        user: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a silence stash; ``expires`` is in seconds."""
        payload: Dict[str, Any] = {
            "path": silence_path(client, check),
            "content": {
                "timestamp": int(time.time()),
                "source": "dashboard",
                "user": user or "unknown",
            },
        }
        if expires:
            payload["expire"] = int(expires)

        resp = self._request('POST', '/stashes', json=payload)
        if resp.status_code not in (200, 201):
            raise UpstreamError(
                f"Sensu refused silence of {payload['path']} (HTTP {resp.status_code})",
                resp.status_code,
            )
        return payload

    def unsilence(self, client: str, check: Optional[str] = None) -> bool:
        """Delete a silence stash. Returns False if it did not exist."""
        path = silence_path(client, check)
        resp = self._request('DELETE', f'/stashes/{path}')
        if resp.status_code == 404:
            return False
        if resp.status_code not in (200, 202, 204):
            raise UpstreamError(f"Sensu refused unsilence of {path} (HTTP {resp.status_code})", resp.status_code)
        return True

    def is_silenced(self, client: str, check: Optional[str] = None) -> bool:
        resp = self._request('GET', f'/stashes/{silence_path(client, check)}')
        if resp.status_code == 404:
            return False
        if resp.status_code != 200:
            raise UpstreamError(f"Sensu stash lookup returned HTTP {resp.status_code}", resp.status_code)
        return True
