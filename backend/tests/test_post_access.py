"""Tests for post grants, the access resolver and visibility policy."""
from __future__ import annotations

import itertools

import pytest

from keygate.core.errors import Forbidden, NotFound, ValidationError
from keygate.services import bitmask
from keygate.services.groups import GroupService
from keygate.services.post_access import PostAccessResolver


class _MemoryStore:
    def __init__(self, direct: dict[tuple[str, str], int], groups: dict[tuple[str, str], int]) -> None:
        self._direct = direct
        self._groups = groups

    async def find_direct(self, post_id: str, key_id: str) -> int | None:
        return self._direct.get((post_id, key_id))

    async def find_for_groups(self, post_id, group_ids):  # type: ignore[no-untyped-def]
        return [self._groups[(post_id, g)] for g in group_ids if (post_id, g) in self._groups]


@pytest.mark.anyio
async def test_resolver_ors_direct_and_group_grants() -> None:
    store = _MemoryStore(
        {("p", "k"): bitmask.VIEW},
        {("p", "g1"): bitmask.COMMENT, ("p", "g2"): bitmask.MANAGE_ACCESS},
    )
    resolver = PostAccessResolver(store)
    assert await resolver.resolve("p", "k", ["g1", "g2"]) == bitmask.ADMIN
    assert await resolver.resolve("p", "k", []) == bitmask.VIEW
    assert await resolver.resolve("p", "other", []) == 0


@pytest.mark.anyio
async def test_resolver_ignores_group_order_and_duplicates() -> None:
    store = _MemoryStore({}, {("p", "a"): 1, ("p", "b"): 2, ("p", "c"): 8})
    resolver = PostAccessResolver(store)
    results = {
        await resolver.resolve("p", "k", list(order) + list(order[:1]))
        for order in itertools.permutations(["a", "b", "c"])
    }
    assert results == {11}


async def _setup(manager, posts, owner_id: str):
    author = await manager.mint_primary(
        owner_id, ["keys:issue", "posts:create", "posts:read", "posts:access:manage"]
    )
    reader = await manager.mint_use(author.key_id, ["posts:read", "posts:access:manage"])
    post = await posts.create_post(author.key_id, "content", title="Title")
    return author, reader, post


@pytest.mark.anyio
async def test_create_post_gives_author_admin(manager, posts, owner_id: str, sink) -> None:
    author, _, post = await _setup(manager, posts, owner_id)

    assert post.initial_author_key_id == author.key_id
    assert await posts.resolve_for_key(post.id, author.key_id) == bitmask.ADMIN
    assert "posts:create" in sink.actions()


@pytest.mark.anyio
async def test_create_post_rules(manager, posts, owner_id: str) -> None:
    author, reader, _ = await _setup(manager, posts, owner_id)
    with pytest.raises(ValidationError):
        await posts.create_post(author.key_id, "   ")
    with pytest.raises(ValidationError):
        await posts.create_post(author.key_id, "x" * 10_001)
    with pytest.raises(Forbidden):
        await posts.create_post(reader.key_id, "from a use key")
    with pytest.raises(NotFound):
        await posts.create_post("a" * 32, "ghost")


@pytest.mark.anyio
async def test_grant_revoke_round_trip(manager, posts, owner_id: str) -> None:
    author, reader, post = await _setup(manager, posts, owner_id)
    permissions = ["posts:access:manage"]

    assert await posts.resolve_for_key(post.id, reader.key_id) == 0
    grant = await posts.grant(post.id, author.key_id, permissions, "key", reader.key_id, bitmask.INTERACT)
    assert grant.permission_mask == bitmask.INTERACT
    assert await posts.resolve_for_key(post.id, reader.key_id) == bitmask.INTERACT

    # upsert overwrites
    await posts.grant(post.id, author.key_id, permissions, "key", reader.key_id, bitmask.READ_ONLY)
    assert await posts.resolve_for_key(post.id, reader.key_id) == bitmask.READ_ONLY

    await posts.revoke(post.id, author.key_id, permissions, "key", reader.key_id)
    assert await posts.resolve_for_key(post.id, reader.key_id) == 0
    with pytest.raises(NotFound):
        await posts.revoke(post.id, author.key_id, permissions, "key", reader.key_id)


@pytest.mark.anyio
async def test_zero_or_undefined_mask_rejected(manager, posts, owner_id: str) -> None:
    author, reader, post = await _setup(manager, posts, owner_id)
    for mask in (0, 0x04):
        with pytest.raises(ValidationError):
            await posts.grant(post.id, author.key_id, ["posts:access:manage"], "key", reader.key_id, mask)


@pytest.mark.anyio
async def test_invisible_post_is_not_found_visible_is_forbidden(manager, posts, owner_id: str) -> None:
    author, reader, post = await _setup(manager, posts, owner_id)
    permissions = ["posts:access:manage"]

    # no VIEW: the post does not exist for the reader
    with pytest.raises(NotFound):
        await posts.get_post(post.id, reader.key_id)
    with pytest.raises(NotFound):
        await posts.grant(post.id, reader.key_id, permissions, "key", reader.key_id, bitmask.ADMIN)

    await posts.grant(post.id, author.key_id, permissions, "key", reader.key_id, bitmask.READ_ONLY)
    assert (await posts.get_post(post.id, reader.key_id)).content == "content"

    # VIEW but no MANAGE_ACCESS
    with pytest.raises(Forbidden) as exc:
        await posts.grant(post.id, reader.key_id, permissions, "key", reader.key_id, bitmask.ADMIN)
    assert exc.value.required_mask == "MANAGE_ACCESS"
    with pytest.raises(Forbidden) as exc:
        await posts.require(post.id, reader.key_id, bitmask.COMMENT)
    assert exc.value.required_mask == "COMMENT"

    # permission string missing on the requester
    with pytest.raises(Forbidden) as exc:
        await posts.grant(post.id, author.key_id, ["posts:read"], "key", reader.key_id, bitmask.ADMIN)
    assert exc.value.required_permissions == ["posts:access:manage"]


@pytest.mark.anyio
async def test_grant_target_validation(manager, posts, owner_id: str) -> None:
    author, _, post = await _setup(manager, posts, owner_id)
    permissions = ["posts:access:manage"]
    with pytest.raises(ValidationError):
        await posts.grant(post.id, author.key_id, permissions, "team", "a" * 32, bitmask.VIEW)
    with pytest.raises(ValidationError):
        await posts.grant(post.id, author.key_id, permissions, "key", "nothex", bitmask.VIEW)
    with pytest.raises(NotFound):
        await posts.grant(post.id, author.key_id, permissions, "key", "b" * 32, bitmask.VIEW)
    with pytest.raises(NotFound):
        await posts.grant("c" * 32, author.key_id, permissions, "key", author.key_id, bitmask.VIEW)


@pytest.mark.anyio
async def test_group_grant_reaches_members(manager, posts, owner_id: str, session_maker, sink) -> None:
    author, reader, post = await _setup(manager, posts, owner_id)
    groups = GroupService(session_maker, sink)
    group = await groups.create_group(owner_id, "readers")
    await groups.add_member(owner_id, group.id, reader.key_id)

    await posts.grant(
        post.id, author.key_id, ["posts:access:manage"], "group", group.id, bitmask.INTERACT
    )
    await posts.grant(
        post.id, author.key_id, ["posts:access:manage"], "key", reader.key_id, bitmask.READ_ONLY
    )
    assert await posts.resolve_for_key(post.id, reader.key_id) == bitmask.INTERACT

    grants = await posts.list_grants(post.id, author.key_id)
    assert {(g.target_type, g.target_id) for g in grants} == {
        ("key", author.key_id),
        ("group", group.id),
        ("key", reader.key_id),
    }


@pytest.mark.anyio
async def test_inactive_requester_cannot_manage(manager, posts, owner_id: str) -> None:
    author, reader, post = await _setup(manager, posts, owner_id)
    await manager.deactivate(author.key_id)
    with pytest.raises(Forbidden):
        await posts.grant(
            post.id, author.key_id, ["posts:access:manage"], "key", reader.key_id, bitmask.VIEW
        )
