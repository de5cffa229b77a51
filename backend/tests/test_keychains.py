from __future__ import annotations

import pytest

from keygate.core.errors import NotFound, ValidationError
from keygate.db import models
from keygate.ids import new_id
from keygate.services.keychains import KeychainService


@pytest.fixture
def keychains(session_maker, sink) -> KeychainService:
    return KeychainService(session_maker, sink)


async def _other_owner(session_maker) -> str:
    async with session_maker() as session:
        owner = models.Owner(id=new_id(), email="other@example.com", password_hash="x")
        session.add(owner)
        await session.commit()
        return owner.id


@pytest.mark.anyio
async def test_owner_keychain_membership(
    keychains: KeychainService, manager, owner_id: str, sink
) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue"])
    child = await manager.mint_use(root.key_id, [])
    keychain = await keychains.create_keychain(owner_id, " devices ")
    assert keychain.name == "devices"
    assert not keychain.is_external

    assert await keychains.add_member(owner_id, keychain.id, root.key_id)
    assert await keychains.add_member(owner_id, keychain.id, child.key_id.upper())
    assert not await keychains.add_member(owner_id, keychain.id, root.key_id)
    assert set(await keychains.members(owner_id, keychain.id)) == {root.key_id, child.key_id}

    assert await keychains.remove_member(owner_id, keychain.id, root.key_id)
    assert not await keychains.remove_member(owner_id, keychain.id, root.key_id)
    assert await keychains.members(owner_id, keychain.id) == [child.key_id]

    assert sink.actions()[-4:] == [
        "keychains:create",
        "keychains:member:add",
        "keychains:member:add",
        "keychains:member:remove",
    ]
    assert sink.events[-1]["metadata"] == {"key_id": root.key_id}


@pytest.mark.anyio
async def test_owner_keychains_hide_foreign_keys_and_keychains(
    keychains: KeychainService, manager, owner_id: str, session_maker
) -> None:
    other_id = await _other_owner(session_maker)
    mine = await keychains.create_keychain(owner_id, "mine")
    theirs = await keychains.create_keychain(other_id, "theirs")
    foreign_key = await manager.mint_primary(other_id, ["keys:issue"])
    external = await keychains.create_external(foreign_key.key_id, "external")

    with pytest.raises(NotFound):
        await keychains.members(owner_id, theirs.id)
    with pytest.raises(NotFound):
        await keychains.members(owner_id, external.id)
    with pytest.raises(NotFound):
        await keychains.add_member(owner_id, mine.id, foreign_key.key_id)
    with pytest.raises(NotFound):
        await keychains.add_member(owner_id, mine.id, "not-a-key")
    assert [k.id for k in await keychains.list_keychains(owner_id)] == [mine.id]


@pytest.mark.anyio
async def test_external_keychains(keychains: KeychainService, manager, owner_id: str, sink) -> None:
    actor = await manager.mint_primary(owner_id, ["keys:issue", "keychains:manage"])
    member = await manager.mint_use(actor.key_id, [])
    owned = await keychains.create_keychain(owner_id, "owned")

    external = await keychains.create_external(actor.key_id, "partners")
    assert external.is_external
    assert sink.events[-1]["metadata"] == {"name": "partners", "external": True}
    assert sink.events[-1]["actor_type"] == "key"

    assert await keychains.add_external_member(actor.key_id, external.id, member.key_id)
    assert not await keychains.add_external_member(actor.key_id, external.id, member.key_id)
    assert await keychains.external_members(external.id) == [member.key_id]
    assert sink.events[-1]["metadata"] == {"key_id": member.key_id, "external": True}

    with pytest.raises(NotFound):
        await keychains.add_external_member(actor.key_id, owned.id, member.key_id)
    with pytest.raises(NotFound):
        await keychains.add_external_member(actor.key_id, external.id, new_id())

    assert await keychains.remove_external_member(actor.key_id, external.id, member.key_id)
    assert await keychains.external_members(external.id) == []
    assert sink.actions()[-1] == "keychains:member:remove"


@pytest.mark.anyio
async def test_external_keychain_needs_existing_actor(keychains: KeychainService) -> None:
    with pytest.raises(NotFound):
        await keychains.create_external(new_id(), "orphan")


@pytest.mark.anyio
async def test_keychain_name_validation(keychains: KeychainService, manager, owner_id: str) -> None:
    actor = await manager.mint_primary(owner_id, ["keys:issue"])
    with pytest.raises(ValidationError):
        await keychains.create_keychain(owner_id, "   ")
    with pytest.raises(ValidationError):
        await keychains.create_external(actor.key_id, "x" * 256)
