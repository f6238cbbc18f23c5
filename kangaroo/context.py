#!/usr/bin/env python3
"""Process-scoped collaborators shared by the pipeline and the views."""

from typing import Optional

from flask import Flask, current_app

from kangaroo.config import Config
from kangaroo.credential_store import CredentialStore
from kangaroo.directory import Authenticator
from kangaroo.fleet import FleetAggregator
from kangaroo.puppetdb_client import PuppetDBClient
from kangaroo.request_metrics import MetricsReporter, RequestMetrics
from kangaroo.sensu_client import SensuClient
from kangaroo.session_manager import IdentityRoster, SessionManager
from kangaroo.ubersmith_client import UbersmithClient, UbersmithSync

CONTEXT_KEY = "DASHBOARD"


class DashboardContext:
    """
    Everything a request may touch beyond its own state.

    Built once by create_app() and never reassigned; the objects it holds
    are responsible for their own thread safety.
    """

    def __init__(
        self,
        config: Config,
        store: CredentialStore,
        sessions: SessionManager,
        roster: IdentityRoster,
        authenticator: Authenticator,
        sensu: SensuClient,
        puppetdb: PuppetDBClient,
        ubersmith: UbersmithClient,
        fleet: FleetAggregator,
        metrics: RequestMetrics,
        reporter: Optional[MetricsReporter] = None,
        ubersmith_sync: Optional[UbersmithSync] = None,
    ):
        self.config = config
        self.store = store
        self.sessions = sessions
        self.roster = roster
        self.authenticator = authenticator
        self.sensu = sensu
        self.puppetdb = puppetdb
        self.ubersmith = ubersmith
        self.fleet = fleet
        self.metrics = metrics
        self.reporter = reporter
        self.ubersmith_sync = ubersmith_sync

    def start_background(self) -> None:
        if self.reporter is not None:
            self.reporter.start()
        if self.ubersmith_sync is not None:
            self.ubersmith_sync.start()

    def stop_background(self) -> None:
        if self.reporter is not None:
            self.reporter.stop()
        if self.ubersmith_sync is not None:
            self.ubersmith_sync.stop()


def get_context(app: Optional[Flask] = None) -> DashboardContext:
    return (app or current_app).config[CONTEXT_KEY]
