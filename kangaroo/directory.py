#!/usr/bin/env python3
"""
Directory-service authentication.

Authenticator wraps a pluggable DirectoryVerifier. The production verifier
talks to Atlassian Crowd's usermanagement REST API with the application's
own credentials; any object with a ``verify(credentials)`` method returning
an Identity (or None) can stand in for it.
"""

import logging
from typing import Any, Dict, Optional

import requests

from kangaroo.session_manager import Identity, IdentityRoster

logger = logging.getLogger(__name__)


class DirectoryError(RuntimeError):
    """Raised when the directory service cannot be queried."""
    pass


class DirectoryVerifier:
    """Interface for directory backends."""

    def verify(self, credentials: Dict[str, str]) -> Optional[Identity]:
        """
        Check a username/password pair.

        Returns the identity on success, None when the credentials are
        rejected. Raises DirectoryError when the directory is unreachable.
        """
        raise NotImplementedError


class CrowdDirectory(DirectoryVerifier):
    """Atlassian Crowd backend with group membership lookup."""

    def __init__(
        self,
        server: str,
        application: str,
        password: str,
        timeout: float = 10,
        retrieve_groups: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.base = server.rstrip('/') + '/rest/usermanagement/1'
        self.timeout = timeout
        self.retrieve_groups = retrieve_groups
        self.http = session or requests.Session()
        self.http.auth = (application, password)
        self.http.headers.update({'Accept': 'application/json'})

    def _user_url(self, username: str) -> str:
        return f"{self.base}/user/{username}"

    def verify(self, credentials: Dict[str, str]) -> Optional[Identity]:
        username = (credentials.get('username') or '').strip()
        password = credentials.get('password') or ''
        if not username or not password:
            return None

        try:
            resp = self.http.post(
                f"{self.base}/authentication",
                params={'username': username},
                json={'value': password},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DirectoryError(f"Crowd authentication request failed: {e}") from e

        if resp.status_code in (400, 401, 403, 404):
            logger.info(f"Crowd rejected credentials for {username} (HTTP {resp.status_code})")
            return None
        if resp.status_code != 200:
            raise DirectoryError(f"Crowd authentication returned HTTP {resp.status_code}")

        try:
            user = resp.json()
        except ValueError as e:
            raise DirectoryError(f"Crowd authentication returned a non-JSON body for {username}") from e
        if not isinstance(user, dict):
            raise DirectoryError(f"Unexpected Crowd authentication reply for {username}")
        if user.get('active') is False:
            logger.info(f"Crowd user {username} is inactive")
            return None

        name = user.get('name', username)
        return Identity(
            id=self._user_url(name),
            username=name,
            groups=self._groups(name) if self.retrieve_groups else (),
            display_name=user.get('display-name'),
            email=user.get('email'),
        )

    def _groups(self, username: str):
        try:
            resp = self.http.get(
                f"{self.base}/user/group/direct",
                params={'username': username},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise DirectoryError(f"Crowd group lookup failed for {username}: {e}") from e
        try:
            groups = resp.json().get('groups', [])
        except (ValueError, AttributeError) as e:
            raise DirectoryError(f"Crowd group lookup for {username} returned an unreadable body") from e
        return [group['name'] for group in groups if isinstance(group, dict) and 'name' in group]


class Authenticator:
    """Verifies logins and remembers every identity seen by this process."""

    def __init__(self, verifier: DirectoryVerifier, roster: IdentityRoster):
        self.verifier = verifier
        self.roster = roster

    def verify(self, credentials: Dict[str, Any]) -> Optional[Identity]:
        """
        Verify credentials; None means unauthenticated.

        Directory outages are logged and treated as a failed login.
        """
        try:
            identity = self.verifier.verify(credentials)
        except DirectoryError as e:
            logger.error(f"Directory verification failed: {e}")
            return None

        if identity is None:
            return None

        if self.roster.add(identity):
            logger.debug(f"Added {identity.username} to the identity roster")
        return identity

    @staticmethod
    def has_group(identity: Optional[Identity], group: str) -> bool:
        return identity is not None and group in identity.groups
