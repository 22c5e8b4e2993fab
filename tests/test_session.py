import asyncio
import sqlite3
from dataclasses import replace

import pytest

from biblioteca.database import CURRENT_USER_KEY
from biblioteca.errors import NotAuthenticated, RequestFailed
from biblioteca.models import Identity


READER = {
    "_id": "u1",
    "nombre": "Ana",
    "correo": "ana@example.com",
    "rol": "user",
    "createdAt": "2024-03-01T10:00:00+00:00",
    "telefono": "555-0101",
}


def test_initialize_materializes_bootstrap_admin(make_context, store):
    ctx = make_context()
    identity = ctx.session.initialize()

    assert identity.id == "admin-default-123"
    assert identity.role == "admin"
    assert store.get(CURRENT_USER_KEY)["correo"] == "admin@biblioteca.com"


def test_initialize_without_bootstrap_returns_none(make_context, test_settings):
    ctx = make_context(settings=replace(test_settings, bootstrap_session=False))
    assert ctx.session.initialize() is None
    assert ctx.session.current is None


def test_login_survives_restart(make_context):
    first = make_context()
    first.session.initialize()
    assert first.session.login(READER) is True

    # A new context over the same store behaves like a new process
    second = make_context()
    restored = second.session.initialize()

    assert restored.model_dump() == Identity.model_validate(READER).model_dump()
    assert restored.to_wire()["telefono"] == "555-0101"


@pytest.mark.parametrize("bad", [None, "ana@example.com", 42, ["u1"], {"nombre": "sin id"}])
def test_login_ignores_malformed_identity(make_context, bad):
    ctx = make_context()
    before = ctx.session.initialize()

    assert ctx.session.login(bad) is False
    assert ctx.session.current == before


def test_corrupt_persisted_session_is_discarded(make_context, store, test_settings):
    conn = sqlite3.connect(store.db_file)
    conn.execute("INSERT OR REPLACE INTO local_store (key, value) VALUES (?, ?)", (CURRENT_USER_KEY, "{not json"))
    conn.commit()
    conn.close()

    ctx = make_context(settings=replace(test_settings, bootstrap_session=False))
    assert ctx.session.initialize() is None
    assert store.get(CURRENT_USER_KEY) is None


def test_invalid_persisted_identity_falls_back_to_bootstrap(make_context, store):
    store.set(CURRENT_USER_KEY, {"nombre": "no id, no email"})
    identity = make_context().session.initialize()
    assert identity.id == "admin-default-123"


def test_logout_clears_session_and_storage(make_context, store):
    ctx = make_context()
    ctx.session.initialize()
    ctx.session.logout()

    assert ctx.session.current is None
    assert store.get(CURRENT_USER_KEY) is None


def test_listeners_see_every_change(make_context):
    ctx = make_context()
    seen = []
    unsubscribe = ctx.session.subscribe(lambda identity: seen.append(identity.id if identity else None))

    ctx.session.initialize()
    ctx.session.login(READER)
    ctx.session.logout()
    unsubscribe()
    ctx.session.login(READER)

    assert seen == ["admin-default-123", "u1", None]


def test_update_identity_requires_session(make_context):
    ctx = make_context()
    ctx.session.logout()

    with pytest.raises(NotAuthenticated):
        asyncio.run(ctx.session.update_identity({"nombre": "Otra"}))


def test_update_identity_adopts_remote_result(make_context, backend, store):
    backend.seed("usuarios", dict(READER))

    async def scenario():
        async with make_context() as ctx:
            ctx.session.login(READER)
            return await ctx.session.update_identity({"nombre": "Ana María", "telefono": "555-0199"})

    updated = asyncio.run(scenario())
    assert updated.name == "Ana María"
    assert store.get(CURRENT_USER_KEY)["nombre"] == "Ana María"
    assert backend.data["usuarios"]["u1"]["telefono"] == "555-0199"


def test_update_identity_failure_leaves_local_state(make_context, backend, store):
    backend.seed("usuarios", dict(READER))
    backend.fail("PUT", "usuarios")
    ctx = make_context()
    ctx.session.login(READER)

    async def scenario():
        async with ctx:
            await ctx.session.update_identity({"nombre": "Cambio"})

    with pytest.raises(RequestFailed):
        asyncio.run(scenario())
    assert ctx.session.current.name == "Ana"
    assert store.get(CURRENT_USER_KEY)["nombre"] == "Ana"


def test_update_identity_offline_uses_local_registry(make_context):
    async def scenario():
        async with make_context(online=False) as ctx:
            user = await ctx.users.create({"nombre": "Luis", "correo": "luis@example.com", "contrasena": "secret1"})
            ctx.session.login(user)
            return await ctx.session.update_identity({"telefono": "555-0000"})

    updated = asyncio.run(scenario())
    assert updated.to_wire()["telefono"] == "555-0000"


def test_update_identity_offline_unknown_user_surfaces_error(make_context):
    async def scenario():
        async with make_context(online=False) as ctx:
            ctx.session.initialize()
            await ctx.session.update_identity({"nombre": "Root"})

    with pytest.raises(RequestFailed, match="Usuario no encontrado"):
        asyncio.run(scenario())
