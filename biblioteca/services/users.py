import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from biblioteca.database import APP_USERS_KEY, LocalStore
from biblioteca.errors import RequestFailed, TransportError
from biblioteca.models import Role
from biblioteca.services.gateways import ResourceGateway
from biblioteca.services.http_client import ApiClient

logger = logging.getLogger(__name__)

PASSWORD_FIELD = "contrasena"
PASSWORD_HASH_FIELD = "contrasenaHash"


def _public(record: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a local record without credential material."""
    return {k: v for k, v in record.items() if k not in (PASSWORD_FIELD, PASSWORD_HASH_FIELD)}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalUserRegistry:
    """Accounts kept on this device while the API is unreachable.

    Passwords are stored salted and hashed; the plaintext never reaches the
    local store.
    """

    def __init__(self, store: LocalStore):
        self.store = store

    def _load(self) -> List[Dict[str, Any]]:
        return [u for u in self.store.get_list(APP_USERS_KEY) if isinstance(u, dict)]

    def _save(self, users: List[Dict[str, Any]]) -> None:
        self.store.set(APP_USERS_KEY, users)

    @staticmethod
    def _hash_into(record: Dict[str, Any], fields: Dict[str, Any]) -> None:
        password = fields.pop(PASSWORD_FIELD, None)
        if password:
            record[PASSWORD_HASH_FIELD] = generate_password_hash(password)

    def all(self) -> List[Dict[str, Any]]:
        return [_public(u) for u in self._load()]

    def find(self, user_id: str) -> Optional[Dict[str, Any]]:
        for user in self._load():
            if user.get("_id") == user_id:
                return _public(user)
        return None

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        for user in self._load():
            if user.get("correo") == email:
                return _public(user)
        return None

    def add(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        users = self._load()
        email = fields.get("correo")
        if email and any(u.get("correo") == email for u in users):
            raise ValueError("An account with this email already exists")

        fields = dict(fields)
        record: Dict[str, Any] = {}
        self._hash_into(record, fields)
        record.update(fields)
        record["_id"] = f"user_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        record["rol"] = fields.get("rol") or Role.USER.value
        record["createdAt"] = _now_iso()

        users.append(record)
        self._save(users)
        logger.info(f"Stored user {record['_id']} locally")
        return _public(record)

    def update(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        users = self._load()
        email = fields.get("correo")
        if email and any(u.get("correo") == email and u.get("_id") != user_id for u in users):
            raise ValueError("An account with this email already exists")
        for index, user in enumerate(users):
            if user.get("_id") == user_id:
                fields = dict(fields)
                self._hash_into(user, fields)
                user.update(fields)
                users[index] = user
                self._save(users)
                return _public(user)
        raise RequestFailed("Usuario no encontrado", status_code=404)

    def remove(self, user_id: str) -> bool:
        users = self._load()
        remaining = [u for u in users if u.get("_id") != user_id]
        self._save(remaining)
        return len(remaining) != len(users)

    def verify(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        """Return the public record whose email and password both match."""
        for user in self._load():
            if user.get("correo") != email:
                continue
            stored = user.get(PASSWORD_HASH_FIELD)
            if stored and check_password_hash(stored, password):
                return _public(user)
        return None


class UserGateway(ResourceGateway):
    """``/usuarios`` gateway; degrades to the local registry when offline.

    Only transport failures trigger the fallback. An error answered by the
    API itself is propagated to the caller.
    """

    def __init__(self, client: ApiClient, store: LocalStore):
        super().__init__(client, "usuarios", record_field="usuario")
        self.local = LocalUserRegistry(store)

    async def list(self, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        try:
            return await super().list(params)
        except TransportError:
            logger.info("API unavailable, listing local users")
            return self.local.all()

    async def get(self, item_id: str) -> Any:
        try:
            return await super().get(item_id)
        except TransportError:
            logger.info("API unavailable, reading local user")
            return self.local.find(item_id)

    async def create(self, payload: Dict[str, Any]) -> Any:
        payload = {**payload, "rol": payload.get("rol") or Role.USER.value}
        try:
            return await super().create(payload)
        except TransportError:
            logger.info("API unavailable, storing user locally")
            return self.local.add(payload)

    async def update(self, item_id: str, payload: Dict[str, Any]) -> Any:
        try:
            return await super().update(item_id, payload)
        except TransportError:
            logger.info("API unavailable, updating local user")
            return self.local.update(item_id, payload)

    async def delete(self, item_id: str) -> Any:
        try:
            return await super().delete(item_id)
        except TransportError:
            logger.info("API unavailable, deleting local user")
            self.local.remove(item_id)
            return {"message": "Usuario eliminado"}

    async def login(self, email: str, password: str) -> Any:
        """Remote credential check; answers ``{"usuario": {...}}`` on success."""
        return await self.client.post(f"{self.path}/login", {"correo": email, PASSWORD_FIELD: password})
