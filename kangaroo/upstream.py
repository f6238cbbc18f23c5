#!/usr/bin/env python3
"""
Shared HTTP plumbing for the Sensu, PuppetDB and Ubersmith clients.

Each client owns a requests.Session and a per-call timeout. Transport errors,
unexpected status codes and undecodable bodies all surface as UpstreamError
so the aggregators only ever catch one exception type.
"""

import time
import logging
from typing import Any, Dict, Optional

import requests
from prometheus_client import CollectorRegistry, Histogram

logger = logging.getLogger(__name__)


class UpstreamError(RuntimeError):
    """An upstream HTTP call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamClient:
    """Base class: JSON over HTTP against one upstream service."""

    service = "upstream"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
        latency: Optional[Histogram] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.http = session or requests.Session()
        self.latency = latency

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self.url(path)
        kwargs.setdefault('timeout', self.timeout)
        start = time.time()
        try:
            return self.http.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise UpstreamError(f"{self.service} {method} {url} timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f"{self.service} {method} {url} failed: {e}") from e
        finally:
            if self.latency is not None:
                self.latency.labels(service=self.service).observe(time.time() - start)

    @staticmethod
    def _decode(resp: requests.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON from {resp.url}", resp.status_code) from e

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET and decode a JSON body.

        A 404 is not an error: its body is returned when it is JSON (PuppetDB
        explains misses in an "error" field), otherwise None.
        """
        resp = self._request('GET', path, params=params)
        if resp.status_code == 404:
            try:
                return self._decode(resp)
            except UpstreamError:
                return None
        if not 200 <= resp.status_code < 300:
            raise UpstreamError(
                f"{self.service} GET {resp.url} returned HTTP {resp.status_code}",
                resp.status_code,
            )
        return self._decode(resp)


def upstream_latency_histogram(registry: CollectorRegistry) -> Histogram:
    """Per-service latency of upstream calls, registered on ``registry``."""
    return Histogram(
        'kangaroo_upstream_latency_seconds',
        'Latency of calls to upstream services',
        ['service'],
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        registry=registry,
    )
