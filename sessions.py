from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from docstore import DocumentStore, doc_path
from identity import IdentityProvider, Principal
from schemas import User

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "user"


class SessionState(str, Enum):
    anonymous = "anonymous"
    pending = "pending"
    verified_unprovisioned = "verified-unprovisioned"
    ready = "ready"


def user_path(uid: str) -> str:
    return doc_path("users", uid)


class SessionContext:
    """Maps the identity provider's principal to the application user.

    One context lives for one request or one socket connection and is handed
    to whatever needs the signed-in user. ``user`` stays ``None`` until the
    state reaches ``ready``; an unverified principal is signed out instead.
    """

    def __init__(self, store: DocumentStore, identity: IdentityProvider) -> None:
        self.store = store
        self.identity = identity
        self.state = SessionState.anonymous
        self.principal: Optional[Principal] = None
        self.user: Optional[User] = None

    @property
    def is_loading(self) -> bool:
        return self.state in (
            SessionState.pending,
            SessionState.verified_unprovisioned,
        )

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.role == "admin"

    def begin(self) -> None:
        self.state = SessionState.pending

    def on_auth_state_changed(self, principal: Optional[Principal]) -> SessionState:
        self.begin()
        self.principal = principal
        self.user = None

        if principal is None:
            self.state = SessionState.anonymous
            return self.state

        if not principal.email_verified:
            logger.warning(f"session_unverified: uid={principal.uid}")
            self.identity.sign_out(principal.uid)
            self.principal = None
            self.state = SessionState.anonymous
            return self.state

        snapshot = self.store.get(user_path(principal.uid))
        if snapshot is None:
            self.state = SessionState.verified_unprovisioned
            self.user = self._provision(principal)
        else:
            self.user = User(**{**snapshot.data, "id": principal.uid})
        self.state = SessionState.ready
        return self.state

    def _provision(self, principal: Principal) -> User:
        record = {
            "id": principal.uid,
            "email": principal.email or "",
            "name": principal.display_name or "",
            "role": DEFAULT_ROLE,
            "provider": principal.provider_id,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        self.store.set(user_path(principal.uid), record)
        logger.info(f"user_provisioned: uid={principal.uid}")
        return User(
            id=principal.uid,
            email=record["email"],
            name=record["name"],
            role=DEFAULT_ROLE,
        )

    def sign_out(self) -> None:
        if self.principal is not None:
            self.identity.sign_out(self.principal.uid)
        self.principal = None
        self.user = None
        self.state = SessionState.anonymous

    def refresh_user(self) -> Optional[User]:
        if self.principal is None or self.state != SessionState.ready:
            return None
        snapshot = self.store.get(user_path(self.principal.uid))
        if snapshot is not None:
            self.user = User(**{**snapshot.data, "id": self.principal.uid})
        return self.user
