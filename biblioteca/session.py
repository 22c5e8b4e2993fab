"""Session store: the process-wide owner of the authenticated identity."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from config import Settings, settings as default_settings
from biblioteca.database import CURRENT_USER_KEY, LocalStore
from biblioteca.errors import NotAuthenticated
from biblioteca.models import Identity, Role
from biblioteca.services.users import UserGateway

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[Identity]], None]


def bootstrap_identity(settings: Settings = default_settings) -> Identity:
    """The operator account that is always available, backend or not."""
    return Identity(
        id=settings.bootstrap_admin_id,
        name=settings.bootstrap_admin_name,
        email=settings.bootstrap_admin_email,
        role=Role.ADMIN.value,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


class SessionStore:
    """Holds the active identity and mirrors it into the local store.

    Mutated only by ``login``, ``logout`` and ``update_identity``; every
    mutation is announced to the subscribed listeners.
    """

    def __init__(self, store: LocalStore, users: UserGateway, settings: Settings = default_settings):
        self.store = store
        self.users = users
        self.settings = settings
        self._identity: Optional[Identity] = None
        self._listeners: List[SessionListener] = []

    @property
    def current(self) -> Optional[Identity]:
        return self._identity

    @property
    def is_authenticated(self) -> bool:
        return self._identity is not None

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a change listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._identity)
            except Exception as e:
                logger.error(f"Session listener failed: {e}")

    def initialize(self) -> Optional[Identity]:
        """Restore the persisted identity, or materialize the bootstrap admin."""
        identity = None
        try:
            saved = self.store.get(CURRENT_USER_KEY)
        except Exception as e:
            logger.error(f"Could not read persisted session: {e}")
            saved = None

        if saved is not None:
            try:
                identity = Identity.model_validate(saved)
            except ValidationError as e:
                logger.error(f"Error parsing user data: {e}")
                self._forget()

        if identity is None and self.settings.bootstrap_session:
            identity = bootstrap_identity(self.settings)
            try:
                self.store.set(CURRENT_USER_KEY, identity.to_wire())
            except Exception as e:
                logger.error(f"Could not persist bootstrap session: {e}")
            logger.info("Default admin user created")

        self._identity = identity
        self._notify()
        return identity

    def login(self, identity: Any) -> bool:
        """Activate and persist a validated identity; anything else is ignored."""
        if isinstance(identity, Identity):
            candidate = identity
        elif isinstance(identity, dict):
            try:
                candidate = Identity.model_validate(identity)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed identity: {e}")
                return False
        else:
            logger.warning(f"Ignoring login with {type(identity).__name__}")
            return False

        self.store.set(CURRENT_USER_KEY, candidate.to_wire())
        self._identity = candidate
        self._notify()
        return True

    def logout(self) -> None:
        self._identity = None
        self._forget()
        self._notify()

    async def update_identity(self, fields: Dict[str, Any]) -> Identity:
        """Persist profile changes remotely, then adopt the remote result locally."""
        if self._identity is None or not self._identity.id:
            raise NotAuthenticated()

        try:
            remote = await self.users.update(self._identity.id, fields)
        except Exception as e:
            logger.error(f"Error updating user: {e}")
            raise

        updated = Identity.model_validate(remote)
        self.store.set(CURRENT_USER_KEY, updated.to_wire())
        self._identity = updated
        self._notify()
        return updated

    def _forget(self) -> None:
        try:
            self.store.remove(CURRENT_USER_KEY)
        except Exception as e:
            logger.error(f"Could not clear persisted session: {e}")
