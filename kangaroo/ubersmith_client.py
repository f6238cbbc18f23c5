#!/usr/bin/env python3
"""
=====================================================================
Ubersmith Ticketing Client and Device Sync
=====================================================================
- UbersmithClient: posts escalated events to support tickets and
  lists billed devices
- UbersmithSync: background thread that copies the device list into
  Redis ("device.list") so the fleet view never waits on Ubersmith
=====================================================================
"""

import json
import logging
import threading
from typing import Any, Dict, List, Optional

import requests

from kangaroo.credential_store import CredentialStore, StoreError
from kangaroo.upstream import UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

DEVICE_LIST_KEY = "device.list"

TICKET_POST_FIELDS = ('subject', 'body', 'sensuEvent', 'documentation', 'visible', 'time_spent')


class UbersmithClient(UpstreamClient):
    """Ticket posts and device inventory from Ubersmith."""

    service = "ubersmith"

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
        latency=None,
    ):
        super().__init__(base_url, timeout=timeout, session=session, latency=latency)
        if username:
            self.http.auth = (username, password or '')

    def post_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Add a post to an existing ticket.

        Returns Ubersmith's reply, normally {"status": bool, "error_message": str}.
        """
        data = {key: fields[key] for key in TICKET_POST_FIELDS if fields.get(key) is not None}
        if 'body' not in data:
            data['body'] = self._compose_body(fields)

        resp = self._request('POST', f'/tickets/ticketid/{ticket_id}/posts', data=data)
        if not 200 <= resp.status_code < 300:
            raise UpstreamError(
                f"Ubersmith rejected post to ticket {ticket_id} (HTTP {resp.status_code})",
                resp.status_code,
            )
        reply = self._decode(resp)
        if not isinstance(reply, dict):
            raise UpstreamError(f"Unexpected Ubersmith reply for ticket {ticket_id}")
        return reply

    @staticmethod
    def _compose_body(fields: Dict[str, Any]) -> str:
        parts = []
        if fields.get('documentation'):
            parts.append(str(fields['documentation']))
        if fields.get('sensuEvent'):
            parts.append(f"Escalated event:\n{fields['sensuEvent']}")
        return "\n\n".join(parts)

    def list_devices(self) -> List[Dict[str, Any]]:
        devices = self.get_json('/devices')
        if devices is None:
            return []
        if isinstance(devices, dict):
            devices = devices.get('data', [])
        return devices


class UbersmithSync:
    """Periodically caches the Ubersmith device list in the credential store."""

    def __init__(self, client: UbersmithClient, store: CredentialStore, interval: int = 300):
        self.client = client
        self.store = store
        self.interval = interval
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def sync_once(self) -> bool:
        try:
            devices = self.client.list_devices()
            self.store.set(DEVICE_LIST_KEY, json.dumps(devices))
        except (UpstreamError, StoreError) as e:
            logger.error(f"Ubersmith device sync failed: {e}")
            return False
        logger.info(f"Cached {len(devices)} Ubersmith devices")
        return True

    def _run(self):
        logger.info("Ubersmith sync thread started")
        while not self.stop_event.is_set():
            self.sync_once()
            self.stop_event.wait(self.interval)
        logger.info("Ubersmith sync thread stopped")

    def start(self) -> None:
        if self.thread is not None:
            return
        self.thread = threading.Thread(target=self._run, daemon=True, name="UbersmithSync")
        self.thread.start()

    def stop(self, timeout: float = 5) -> None:
        self.stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout=timeout)
