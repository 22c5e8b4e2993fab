"""Authentication and authorization helpers.

``CredentialVerifier`` checks a login in a fixed order: the bootstrap
operator pair first (no network involved), then the remote
``/usuarios/login`` endpoint, then the accounts registered locally while the
API was unreachable. A successful check always goes through
``SessionStore.login``.

The authorization predicates are plain functions of the session's current
identity; callers re-evaluate them whenever they need an answer.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from config import Settings, settings as default_settings
from biblioteca.errors import InvalidCredentials, LibraryError
from biblioteca.models import Identity, Role
from biblioteca.services.users import PASSWORD_FIELD, UserGateway
from biblioteca.session import SessionStore, bootstrap_identity
from biblioteca.validators import AccountValidator

logger = logging.getLogger(__name__)


class CredentialVerifier:
    """Turns an email/password pair into an active session."""

    def __init__(self, session: SessionStore, users: UserGateway, settings: Settings = default_settings):
        self.session = session
        self.users = users
        self.settings = settings

    def _is_bootstrap(self, email: str, password: str) -> bool:
        return (email == self.settings.bootstrap_admin_email
                and password == self.settings.bootstrap_admin_password)

    async def authenticate(self, email: str, password: str) -> Identity:
        if self._is_bootstrap(email, password):
            identity = bootstrap_identity(self.settings)
            self.session.login(identity)
            return identity

        identity = await self._remote_identity(email, password)

        if identity is None:
            local = self.users.local.verify(email, password)
            if local is not None:
                try:
                    identity = Identity.model_validate(local)
                except ValidationError as e:
                    logger.error(f"Local account for {email} is malformed: {e}")

        if identity is None:
            raise InvalidCredentials()

        self.session.login(identity)
        return identity

    async def _remote_identity(self, email: str, password: str) -> Optional[Identity]:
        try:
            response = await self.users.login(email, password)
        except LibraryError as e:
            logger.info(f"Remote login unavailable ({e}), checking local users")
            return None

        usuario = response.get("usuario") if isinstance(response, dict) else None
        if not usuario:
            return None
        try:
            return Identity.model_validate(usuario)
        except ValidationError as e:
            logger.error(f"Remote login returned a malformed user: {e}")
            return None

    async def register(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create a self-service account; stored locally when the API is down."""
        email = (fields.get("correo") or "").strip()
        password = fields.get(PASSWORD_FIELD) or ""
        if not fields.get("nombre"):
            raise ValueError("Name is required")
        if not AccountValidator.validate_email(email):
            raise ValueError("Invalid email address")
        if not AccountValidator.validate_password(password, self.settings.min_password_length):
            raise ValueError(f"Password must be at least {self.settings.min_password_length} characters")

        payload = {k: v for k, v in fields.items() if v not in (None, "")}
        payload["correo"] = email
        payload["rol"] = Role.USER.value
        return await self.users.create(payload)


def has_role(session: Optional[SessionStore], role: str) -> bool:
    identity = getattr(session, "current", None)
    return identity is not None and identity.role == role


def is_admin(session: Optional[SessionStore]) -> bool:
    return has_role(session, Role.ADMIN.value)


def is_user(session: Optional[SessionStore]) -> bool:
    return has_role(session, Role.USER.value)
