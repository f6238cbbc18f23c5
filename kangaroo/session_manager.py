#!/usr/bin/env python3
"""
=====================================================================
Cloudy Kangaroo Session Manager
=====================================================================
Maps the session-bound user id to the identity record stored in Redis.

- Identity: verified user (id, username, groups)
- IdentityRoster: process-wide, append-only list of identities seen
  since start, deduplicated by id
- SessionManager: create/resolve/destroy identity records under
  "user:<short id>"

Only the short id travels in the signed session cookie; the identity
itself lives in the credential store.
=====================================================================
"""

import re
import json
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from kangaroo.credential_store import CredentialStore, StoreError

logger = logging.getLogger(__name__)

USER_KEY_PREFIX = "user:"
_TRAILING_SEGMENT = re.compile(r'[^/]*$')


class SessionError(Exception):
    """Base class for session resolution failures."""
    pass


class SessionNotFound(SessionError):
    """No identity record exists for the session id."""
    pass


class SessionCorrupt(SessionError):
    """The stored identity record could not be deserialized."""
    pass


class Identity:
    """A verified directory user."""

    __slots__ = ('id', 'username', 'groups', 'display_name', 'email')

    def __init__(
        self,
        id: str,
        username: str,
        groups: Optional[Iterable[str]] = None,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
    ):
        self.id = id
        self.username = username
        self.groups = set(groups or ())
        self.display_name = display_name
        self.email = email

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "groups": sorted(self.groups),
            "display_name": self.display_name,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        if not isinstance(data, dict) or 'id' not in data or 'username' not in data:
            raise ValueError("identity record requires 'id' and 'username'")
        groups = data.get('groups') or []
        if not isinstance(groups, list):
            raise ValueError("identity 'groups' must be a list")
        return cls(
            id=data['id'],
            username=data['username'],
            groups=groups,
            display_name=data.get('display_name'),
            email=data.get('email'),
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, Identity):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"Identity(id={self.id!r}, username={self.username!r}, groups={sorted(self.groups)!r})"


def short_id(identity_id: str) -> str:
    """Trailing path segment of a directory-assigned id."""
    return _TRAILING_SEGMENT.search(identity_id).group(0) or identity_id


class IdentityRoster:
    """Append-only record of identities verified by this process."""

    def __init__(self):
        self._identities: List[Identity] = []
        self._ids = set()
        self._lock = threading.Lock()

    def add(self, identity: Identity) -> bool:
        """Add the identity unless its id is already known. Returns True if added."""
        with self._lock:
            if identity.id in self._ids:
                return False
            self._ids.add(identity.id)
            self._identities.append(identity)
            return True

    def __contains__(self, identity_id: str) -> bool:
        with self._lock:
            return identity_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._identities)

    def snapshot(self) -> List[Identity]:
        with self._lock:
            return list(self._identities)


class SessionManager:
    """Persists identities for logged-in sessions in the credential store."""

    def __init__(self, store: CredentialStore, ttl: Optional[int] = None):
        self.store = store
        self.ttl = ttl or None

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{USER_KEY_PREFIX}{session_id}"

    def create(self, identity: Identity) -> str:
        """
        Store the identity and return the session-bound id.

        Raises:
            StoreError: if the record could not be written
        """
        session_id = short_id(identity.id)
        self.store.set(self._key(session_id), json.dumps(identity.to_dict()), ttl=self.ttl)
        logger.debug(f"Stored identity for {identity.username} under {self._key(session_id)}")
        return session_id

    def resolve(self, session_id: str) -> Optional[Identity]:
        """
        Look up the identity for a session id.

        Returns None when the store is unreachable (logged, fail closed).

        Raises:
            SessionNotFound: no record for the id
            SessionCorrupt: the record is not a valid identity
        """
        try:
            data = self.store.get(self._key(session_id))
        except StoreError as e:
            logger.error(f"Session store unavailable, treating session as anonymous: {e}")
            return None

        if data is None:
            raise SessionNotFound(session_id)

        try:
            return Identity.from_dict(json.loads(data))
        except (ValueError, TypeError) as e:
            raise SessionCorrupt(f"{session_id}: {e}") from e

    def destroy(self, session_id: str) -> None:
        """Remove the stored identity, ending every session of that user."""
        try:
            self.store.delete(self._key(session_id))
        except StoreError as e:
            logger.error(f"Failed to remove identity record {session_id}: {e}")
