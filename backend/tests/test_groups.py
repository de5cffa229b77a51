from __future__ import annotations

import pytest

from keygate.core.errors import NotFound, ValidationError
from keygate.db import models
from keygate.ids import new_id
from keygate.services.groups import GroupService


@pytest.fixture
def groups(session_maker, sink) -> GroupService:
    return GroupService(session_maker, sink)


async def _other_owner(session_maker) -> str:
    async with session_maker() as session:
        owner = models.Owner(id=new_id(), email="other@example.com", password_hash="x")
        session.add(owner)
        await session.commit()
        return owner.id


@pytest.mark.anyio
async def test_membership_lifecycle(groups: GroupService, manager, owner_id: str, sink) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue"])
    group = await groups.create_group(owner_id, " editors ")
    assert group.name == "editors"

    assert await groups.add_member(owner_id, group.id, root.key_id)
    assert not await groups.add_member(owner_id, group.id, root.key_id)
    assert await groups.members(owner_id, group.id) == [root.key_id]
    assert await groups.groups_for_key(root.key_id) == [group.id]

    await groups.remove_member(owner_id, group.id, root.key_id)
    assert await groups.groups_for_key(root.key_id) == []
    with pytest.raises(NotFound):
        await groups.remove_member(owner_id, group.id, root.key_id)

    assert sink.actions()[-3:] == ["groups:create", "groups:member:add", "groups:member:remove"]


@pytest.mark.anyio
async def test_other_owners_groups_and_keys_are_hidden(
    groups: GroupService, manager, owner_id: str, session_maker
) -> None:
    other_id = await _other_owner(session_maker)
    mine = await groups.create_group(owner_id, "mine")
    theirs = await groups.create_group(other_id, "theirs")
    foreign_key = await manager.mint_primary(other_id, ["keys:issue"])

    with pytest.raises(NotFound):
        await groups.members(owner_id, theirs.id)
    with pytest.raises(NotFound):
        await groups.add_member(owner_id, mine.id, foreign_key.key_id)
    assert [g.id for g in await groups.list_groups(owner_id)] == [mine.id]


@pytest.mark.anyio
async def test_group_name_validation(groups: GroupService, owner_id: str) -> None:
    with pytest.raises(ValidationError):
        await groups.create_group(owner_id, "   ")
    with pytest.raises(ValidationError):
        await groups.create_group(owner_id, "x" * 256)
