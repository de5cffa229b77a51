"""Tests for key minting, lineage, rotation and activation state."""
from __future__ import annotations

import pytest
from sqlalchemy import func, select

from keygate.core.errors import (
    AuditEmissionError,
    EnvelopeViolation,
    Forbidden,
    Inconsistency,
    KeyRetired,
    NotFound,
    ValidationError,
)
from keygate.db import models
from keygate.services import bitmask
from keygate.services.key_lifecycle import KeyLifecycleManager
from keygate.services.key_store import KeySQLStore
from keygate.services.post_access import PostAccessResolver, PostAccessSQLStore


async def _key_count(session_maker) -> int:
    async with session_maker() as session:
        return int((await session.execute(select(func.count()).select_from(models.Key))).scalar_one())


@pytest.mark.anyio
async def test_mint_primary_is_its_own_root(manager: KeyLifecycleManager, owner_id: str, sink) -> None:
    minted = await manager.mint_primary(owner_id, ["keys:issue", "posts:create"], label=" main ")

    key = minted.key
    assert key.type == "primary"
    assert key.initial_author_key_id == key.id
    assert key.owner_id == owner_id
    assert key.parent_key_id is None
    assert key.label == "main"
    assert minted.public_id.startswith("apub_")
    assert minted.secret.startswith("sec_")
    assert minted.secret not in repr(minted)
    assert sink.actions() == ["keys:mint"]
    assert sink.events[0]["actor_type"] == "owner"


@pytest.mark.anyio
async def test_mint_primary_unknown_owner(manager: KeyLifecycleManager) -> None:
    with pytest.raises(NotFound):
        await manager.mint_primary("0" * 32, ["keys:issue"])
    with pytest.raises(NotFound):
        await manager.mint_primary("not-hex", ["keys:issue"])


@pytest.mark.anyio
async def test_secret_is_stored_hashed(manager: KeyLifecycleManager, owner_id: str, hasher, session_maker) -> None:
    minted = await manager.mint_primary(owner_id, ["keys:issue"])
    async with session_maker() as session:
        stored = await KeySQLStore(session).find_secret_hash(minted.key_id)
    assert stored != minted.secret
    assert stored.startswith("scrypt$")
    assert hasher.verify(minted.secret, stored)


@pytest.mark.anyio
async def test_lineage_root_invariant(manager: KeyLifecycleManager, owner_id: str) -> None:
    primary = await manager.mint_primary(owner_id, ["keys:issue", "posts:read", "comments:write"])
    secondary = await manager.mint_secondary(primary.key_id, ["keys:issue", "comments:write"])
    use = await manager.mint_use(secondary.key_id, ["comments:write"])

    chain = await manager.lineage(use.key_id)

    assert [k.id for k in chain] == [primary.key_id, secondary.key_id, use.key_id]
    assert chain[0].is_root
    assert all(k.initial_author_key_id == primary.key_id for k in chain)
    assert use.key.issued_by_key_id == secondary.key_id


@pytest.mark.anyio
async def test_envelope_violation_creates_no_key(
    manager: KeyLifecycleManager, owner_id: str, session_maker
) -> None:
    primary = await manager.mint_primary(owner_id, ["keys:issue", "posts:read"])
    before = await _key_count(session_maker)

    with pytest.raises(EnvelopeViolation) as exc:
        await manager.mint_secondary(primary.key_id, ["posts:read", "posts:create"])

    assert exc.value.excess == ("posts:create",)
    assert await _key_count(session_maker) == before


@pytest.mark.anyio
async def test_malformed_permission_creates_no_key(
    manager: KeyLifecycleManager, owner_id: str, session_maker
) -> None:
    primary = await manager.mint_primary(owner_id, ["keys:issue"])
    before = await _key_count(session_maker)
    with pytest.raises(ValidationError):
        await manager.mint_secondary(primary.key_id, ["Keys:Issue"])
    assert await _key_count(session_maker) == before


@pytest.mark.anyio
async def test_parent_preconditions(manager: KeyLifecycleManager, owner_id: str) -> None:
    with pytest.raises(NotFound):
        await manager.mint_secondary("f" * 32, [])

    no_issue = await manager.mint_primary(owner_id, ["posts:read"])
    with pytest.raises(Forbidden) as exc:
        await manager.mint_secondary(no_issue.key_id, ["posts:read"])
    assert exc.value.required_permissions == ["keys:issue"]

    primary = await manager.mint_primary(owner_id, ["keys:issue", "comments:write"])
    use = await manager.mint_use(primary.key_id, ["comments:write"])
    with pytest.raises(Forbidden):
        await manager.mint_use(use.key_id, ["comments:write"])

    await manager.deactivate(primary.key_id)
    with pytest.raises(Forbidden):
        await manager.mint_secondary(primary.key_id, [])


@pytest.mark.anyio
async def test_use_limits_only_on_use_keys(manager: KeyLifecycleManager, owner_id: str) -> None:
    primary = await manager.mint_primary(owner_id, ["keys:issue", "comments:write"])
    use = await manager.mint_use(
        primary.key_id, ["comments:write"], use_count_limit=3, device_limit=1
    )
    assert use.key.use_count_limit == 3
    assert use.key.device_limit == 1
    with pytest.raises(ValidationError):
        await manager.mint_use(primary.key_id, ["comments:write"], use_count_limit=0)


@pytest.mark.anyio
async def test_example_delegation_scenario(
    manager: KeyLifecycleManager, owner_id: str, posts, session_maker
) -> None:
    p = await manager.mint_primary(owner_id, ["posts:create", "keys:issue", "comments:write"])
    # S needs keys:issue to mint U2 below
    s = await manager.mint_secondary(p.key_id, ["posts:create", "comments:write", "keys:issue"])

    with pytest.raises(EnvelopeViolation) as exc:
        await manager.mint_use(p.key_id, ["comments:write", "posts:create"])
    assert exc.value.offending == ("posts:create",)

    u2 = await manager.mint_use(s.key_id, ["comments:write"])
    assert u2.key.initial_author_key_id == p.key_id

    post = await posts.create_post(p.key_id, "hello")
    async with session_maker() as session:
        await PostAccessSQLStore(session).upsert(post.id, "key", u2.key_id, bitmask.INTERACT)
        await session.commit()
        mask = await PostAccessResolver(PostAccessSQLStore(session)).resolve(post.id, u2.key_id, [])
    assert mask == 3

    affected = await manager.deactivate(p.key_id, cascade=True)
    assert affected == 3
    for key_id in (p.key_id, s.key_id, u2.key_id):
        assert not (await manager.get(key_id)).active


@pytest.mark.anyio
async def test_cascade_touches_only_the_subtree(manager: KeyLifecycleManager, owner_id: str) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue", "posts:read"])
    left = await manager.mint_secondary(root.key_id, ["keys:issue", "posts:read"])
    right = await manager.mint_secondary(root.key_id, ["keys:issue", "posts:read"])
    left_child = await manager.mint_use(left.key_id, ["posts:read"])
    right_child = await manager.mint_use(right.key_id, ["posts:read"])
    other = await manager.mint_primary(owner_id, ["keys:issue"])

    affected = await manager.deactivate(left.key_id, cascade=True)

    assert affected == 2
    assert not (await manager.get(left.key_id)).active
    assert not (await manager.get(left_child.key_id)).active
    for untouched in (root, right, right_child, other):
        assert (await manager.get(untouched.key_id)).active


@pytest.mark.anyio
async def test_deactivate_without_cascade(manager: KeyLifecycleManager, owner_id: str) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue"])
    child = await manager.mint_secondary(root.key_id, ["keys:issue"])

    assert await manager.deactivate(root.key_id) == 1
    assert (await manager.get(child.key_id)).active

    reactivated = await manager.activate(root.key_id)
    assert reactivated.active


@pytest.mark.anyio
async def test_descendants(manager: KeyLifecycleManager, owner_id: str) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue"])
    child = await manager.mint_secondary(root.key_id, ["keys:issue"])
    grandchild = await manager.mint_secondary(child.key_id, [])

    found = await manager.descendants(root.key_id)
    assert {k.id for k in found} == {child.key_id, grandchild.key_id}


@pytest.mark.anyio
async def test_rotation_retires_old_and_copies_lineage(
    manager: KeyLifecycleManager, owner_id: str, sink
) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue", "posts:read"])
    child = await manager.mint_use(root.key_id, ["posts:read"], use_count_limit=5)

    successor = await manager.rotate(child.key_id)

    old = await manager.get(child.key_id)
    assert old.is_retired
    assert not old.active
    assert old.rotated_to_id == successor.key_id
    new = successor.key
    assert new.rotated_from_id == child.key_id
    assert new.parent_key_id == root.key_id
    assert new.initial_author_key_id == root.key_id
    assert new.permissions == child.key.permissions
    assert new.use_count_limit == 5
    assert successor.public_id != child.public_id
    assert successor.secret != child.secret
    assert sink.actions()[-1] == "keys:rotate"

    with pytest.raises(KeyRetired):
        await manager.rotate(child.key_id)
    with pytest.raises(KeyRetired):
        await manager.activate(child.key_id)


@pytest.mark.anyio
async def test_rotated_primary_keeps_original_anchor(manager: KeyLifecycleManager, owner_id: str) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue"])
    rotated = await manager.rotate(root.key_id)
    child = await manager.mint_secondary(rotated.key_id, ["keys:issue"])

    chain = await manager.lineage(child.key_id)

    assert [k.id for k in chain] == [rotated.key_id, child.key_id]
    assert chain[0].initial_author_key_id == root.key_id
    assert child.key.initial_author_key_id == root.key_id
    assert await manager.owns(owner_id, child.key_id)


@pytest.mark.anyio
async def test_lineage_cycle_is_inconsistency(
    manager: KeyLifecycleManager, owner_id: str, session_maker
) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue"])
    a = await manager.mint_secondary(root.key_id, ["keys:issue"])
    b = await manager.mint_secondary(a.key_id, ["keys:issue"])
    async with session_maker() as session:
        row = await session.get(models.Key, a.key_id)
        row.parent_key_id = b.key_id
        await session.commit()

    with pytest.raises(Inconsistency):
        await manager.lineage(b.key_id)
    with pytest.raises(Inconsistency):
        await manager.deactivate(a.key_id, cascade=True)


@pytest.mark.anyio
async def test_depth_cap(session_maker, sink, hasher, owner_id: str) -> None:
    shallow = KeyLifecycleManager(session_maker, sink, hasher, max_depth=2)
    root = await shallow.mint_primary(owner_id, ["keys:issue"])
    parent = root
    for _ in range(3):
        parent = await shallow.mint_secondary(parent.key_id, ["keys:issue"])

    with pytest.raises(Inconsistency):
        await shallow.lineage(parent.key_id)
    with pytest.raises(Inconsistency):
        await shallow.deactivate(root.key_id, cascade=True)


@pytest.mark.anyio
async def test_audit_failure_carries_committed_result(
    session_maker, failing_sink, hasher, owner_id: str
) -> None:
    manager = KeyLifecycleManager(session_maker, failing_sink, hasher)

    with pytest.raises(AuditEmissionError) as exc:
        await manager.mint_primary(owner_id, ["keys:issue"])

    minted = exc.value.result
    assert exc.value.action == "keys:mint"
    assert (await manager.get(minted.key_id)).active


@pytest.mark.anyio
async def test_audit_metadata_has_no_secret(manager: KeyLifecycleManager, owner_id: str, sink) -> None:
    minted = await manager.mint_primary(owner_id, ["keys:issue"])
    await manager.rotate(minted.key_id)
    for event in sink.events:
        assert minted.secret not in repr(event)


@pytest.mark.anyio
async def test_list_for_owner_and_store_lookups(
    manager: KeyLifecycleManager, owner_id: str, session_maker
) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue"])
    child = await manager.mint_secondary(root.key_id, [])

    listed = await manager.list_for_owner(owner_id)
    assert {k.id for k in listed} == {root.key_id, child.key_id}

    async with session_maker() as session:
        store = KeySQLStore(session)
        by_author = await store.find_by_initial_author(root.key_id)
        children = await store.find_children(root.key_id)
        assert await store.find_by_id("xyz") is None
    assert {k.id for k in by_author} == {root.key_id, child.key_id}
    assert [k.id for k in children] == [child.key_id]


@pytest.mark.anyio
async def test_rotation_losing_the_retire_race_rolls_back(
    manager: KeyLifecycleManager, owner_id: str, session_maker, sink, monkeypatch
) -> None:
    root = await manager.mint_primary(owner_id, ["keys:issue"])
    sink.events.clear()

    async def _already_retired(self, old_key_id, new_key_id, retired_at):  # type: ignore[no-untyped-def]
        return False

    monkeypatch.setattr(KeySQLStore, "mark_rotated", _already_retired)

    with pytest.raises(KeyRetired):
        await manager.rotate(root.key_id)

    # neither the successor nor its public id survived
    assert await _key_count(session_maker) == 1
    async with session_maker() as session:
        public_ids = (
            await session.execute(select(func.count()).select_from(models.KeyPublicId))
        ).scalar_one()
    assert public_ids == 1
    old = await manager.get(root.key_id)
    assert old.active
    assert not old.is_retired
    assert sink.events == []
