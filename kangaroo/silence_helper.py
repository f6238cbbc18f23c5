#!/usr/bin/env python3
"""
=====================================================================
Dashboard Client Helper
=====================================================================
Client side of the silence and escalation actions. The browser runs
the same checks in the dashboard's inline script; this module is
what the CLI and scripted clients use.

- validate_silence_hours: rejects anything outside 1..72 hours before
  a request is built
- silence_uri / split_stash: dashboard API paths for a client/check
- DashboardClient: logs in through the form (picking up the CSRF
  token) and calls the silence, unsilence and ticket APIs
=====================================================================
"""

import re
import json
import logging
from typing import Any, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

MAX_SILENCE_HOURS = 72
DEFAULT_SILENCE_HOURS = 8
ESCALATION_SUBJECT = "Monitoring System Escalated Event"

_META_CSRF = re.compile(r'<meta name="csrf-token" content="([^"]*)"')


class SilenceError(ValueError):
    """Raised for a silence duration the dashboard would refuse."""
    pass


class DashboardClientError(RuntimeError):
    """Raised when the dashboard rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def validate_silence_hours(hours: Any) -> int:
    """
    Parse a silence duration in whole hours.

    Returns the hours as an int. Raises SilenceError when the value is not
    an integer, not positive, or over MAX_SILENCE_HOURS.
    """
    if isinstance(hours, bool):
        raise SilenceError(f"Silence duration must be a number of hours, got {hours!r}")
    try:
        parsed = int(str(hours).strip())
    except (TypeError, ValueError):
        raise SilenceError(f"Silence duration must be a number of hours, got {hours!r}")
    if parsed <= 0:
        raise SilenceError("Silence duration must be at least one hour")
    if parsed > MAX_SILENCE_HOURS:
        raise SilenceError(f"Silence duration cannot exceed {MAX_SILENCE_HOURS} hours")
    return parsed


def silence_uri(client: str, check: Optional[str] = None) -> str:
    """API path for silencing a client, or one check on it."""
    uri = f"/api/v1/sensu/silence/client/{client}"
    if check and check != "false":
        uri += f"/check/{check}"
    return uri


def split_stash(stash: str) -> Tuple[str, Optional[str]]:
    """'client/check' (optionally 'silence/'-prefixed) -> (client, check)."""
    if stash.startswith("silence/"):
        stash = stash[len("silence/"):]
    client, _, check = stash.partition("/")
    return client, check or None


class DashboardClient:
    """Scripted access to the dashboard's JSON API."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.http = session or requests.Session()
        self.timeout = timeout
        self.csrf_token: Optional[str] = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _fetch_csrf(self, path: str = "/account/login") -> str:
        resp = self.http.get(self._url(path), timeout=self.timeout)
        match = _META_CSRF.search(resp.text or "")
        if not match:
            raise DashboardClientError(f"No CSRF token found at {path}", resp.status_code)
        self.csrf_token = match.group(1)
        return self.csrf_token

    def login(self, username: str, password: str) -> None:
        token = self._fetch_csrf()
        resp = self.http.post(
            self._url("/account/login"),
            data={"username": username, "password": password, "_csrf": token},
            allow_redirects=False,
            timeout=self.timeout,
        )
        location = resp.headers.get("Location", "")
        if resp.status_code not in (301, 302, 303) or location.rstrip("/").endswith("/account/login"):
            raise DashboardClientError(f"Login failed for {username}", resp.status_code)
        # The token is bound to the session; fetch it again for the logged-in session
        self._fetch_csrf("/account")
        logger.info(f"Logged in to {self.base_url} as {username}")

    def _send(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> requests.Response:
        if self.csrf_token is None:
            self._fetch_csrf()
        resp = self.http.request(
            method,
            self._url(path),
            data=data,
            headers={"X-CSRF-Token": self.csrf_token},
            timeout=self.timeout,
        )
        if not 200 <= resp.status_code < 300:
            raise DashboardClientError(f"{method} {path} returned HTTP {resp.status_code}", resp.status_code)
        return resp

    def silence(self, client: str, check: Optional[str] = None, hours: Any = DEFAULT_SILENCE_HOURS) -> Dict[str, Any]:
        """Silence a client or check. The duration is validated before any request."""
        hours = validate_silence_hours(hours)
        return self._send("POST", silence_uri(client, check), {"expires": hours * 3600}).json()

    def unsilence(self, stash: str) -> Dict[str, Any]:
        client, check = split_stash(stash)
        return self._send("DELETE", silence_uri(client, check)).json()

    def is_silenced(self, client: str, check: Optional[str] = None) -> bool:
        resp = self.http.get(self._url(silence_uri(client, check)), timeout=self.timeout)
        if resp.status_code != 200:
            raise DashboardClientError(f"Silence lookup returned HTTP {resp.status_code}", resp.status_code)
        return bool(resp.json().get("silenced"))

    def escalate(self, ticket_id: str, event: Any, documentation: str = "") -> Dict[str, Any]:
        """
        Post an event to an Ubersmith ticket.

        Returns Ubersmith's reply; ``status`` false means the post was refused
        and ``error_message`` says why.
        """
        data = {
            "ticketID": ticket_id,
            "subject": ESCALATION_SUBJECT,
            "sensuEvent": event if isinstance(event, str) else json.dumps(event, indent=2),
            "documentation": documentation,
            "visible": 1,
            "time_spent": 1,
        }
        return self._send("POST", f"/api/v1/ubersmith/tickets/ticketid/{ticket_id}/posts", data).json()

    def events(self) -> Any:
        resp = self.http.get(self._url("/api/v1/sensu/events"), timeout=self.timeout)
        if resp.status_code != 200:
            raise DashboardClientError(f"Event listing returned HTTP {resp.status_code}", resp.status_code)
        return resp.json()

    def health(self) -> Dict[str, Any]:
        resp = self.http.get(self._url("/health"), timeout=self.timeout)
        return resp.json()
