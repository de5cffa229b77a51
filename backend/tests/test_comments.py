"""Tests for comment creation and listing under post masks."""
from __future__ import annotations

import pytest

from keygate.core.errors import AuditEmissionError, Forbidden, NotFound, ValidationError
from keygate.ids import new_id
from keygate.services import bitmask
from keygate.services.comments import CommentService

AUTHOR_PERMISSIONS = ["keys:issue", "posts:create", "posts:read", "posts:access:manage", "comments:write"]


@pytest.fixture
def comments(session_maker, sink) -> CommentService:
    return CommentService(session_maker, sink)


async def _setup(manager, posts, owner_id: str, reader_permissions=("posts:read", "comments:write")):
    author = await manager.mint_primary(owner_id, AUTHOR_PERMISSIONS)
    reader = await manager.mint_use(author.key_id, list(reader_permissions))
    post = await posts.create_post(author.key_id, "content")
    return author, reader, post


@pytest.mark.anyio
async def test_comment_requires_view_then_permission_then_bit(
    comments: CommentService, manager, posts, owner_id: str, sink
) -> None:
    author, reader, post = await _setup(manager, posts, owner_id)

    with pytest.raises(NotFound):
        await comments.create_comment(post.id, reader.key_id, reader.key.permissions, "hello")

    await posts.grant(post.id, author.key_id, AUTHOR_PERMISSIONS, "key", reader.key_id, bitmask.VIEW)
    with pytest.raises(Forbidden) as no_bit:
        await comments.create_comment(post.id, reader.key_id, reader.key.permissions, "hello")
    assert no_bit.value.required_mask == "COMMENT"

    with pytest.raises(Forbidden) as no_permission:
        await comments.create_comment(post.id, reader.key_id, ["posts:read"], "hello")
    assert no_permission.value.required_permissions == ["comments:write"]

    await posts.grant(
        post.id, author.key_id, AUTHOR_PERMISSIONS, "key", reader.key_id, bitmask.INTERACT
    )
    sink.events.clear()
    comment = await comments.create_comment(post.id, reader.key_id, reader.key.permissions, "hello")

    assert comment.post_id == post.id
    assert comment.created_by_key_id == reader.key_id
    assert comment.body == "hello"
    assert sink.events == [
        {
            "actor_type": "key",
            "actor_id": reader.key_id,
            "action": "comments:create",
            "subject_type": "comment",
            "subject_id": comment.id,
            "metadata": {"post_id": post.id},
        }
    ]


@pytest.mark.anyio
async def test_comment_on_missing_post_is_not_found(
    comments: CommentService, manager, posts, owner_id: str
) -> None:
    author, _, _ = await _setup(manager, posts, owner_id)
    for post_id in (new_id(), "not-an-id"):
        with pytest.raises(NotFound):
            await comments.create_comment(post_id, author.key_id, AUTHOR_PERMISSIONS, "hello")


@pytest.mark.anyio
@pytest.mark.parametrize("body", ["", "x" * 5001])
async def test_comment_body_length(
    comments: CommentService, manager, posts, owner_id: str, body: str
) -> None:
    author, _, post = await _setup(manager, posts, owner_id)
    with pytest.raises(ValidationError):
        await comments.create_comment(post.id, author.key_id, AUTHOR_PERMISSIONS, body)


@pytest.mark.anyio
async def test_comment_body_at_limit_is_accepted(
    comments: CommentService, manager, posts, owner_id: str
) -> None:
    author, _, post = await _setup(manager, posts, owner_id)
    comment = await comments.create_comment(post.id, author.key_id, AUTHOR_PERMISSIONS, "x" * 5000)
    assert len(comment.body) == 5000


@pytest.mark.anyio
async def test_listing_pages_through_every_comment_once(
    comments: CommentService, manager, posts, owner_id: str
) -> None:
    author, _, post = await _setup(manager, posts, owner_id)
    created = [
        await comments.create_comment(post.id, author.key_id, AUTHOR_PERMISSIONS, f"c{i}")
        for i in range(5)
    ]

    seen: list[str] = []
    cursor = None
    while True:
        page = await comments.list_comments(
            post.id, author.key_id, AUTHOR_PERMISSIONS, limit=2, before_id=cursor
        )
        assert page.before_id == cursor
        seen.extend(c.id for c in page.comments)
        if page.next_cursor is None:
            break
        assert page.next_cursor == page.comments[-1].id
        cursor = page.next_cursor

    assert len(seen) == len(set(seen)) == 5
    assert set(seen) == {c.id for c in created}


@pytest.mark.anyio
async def test_listing_requires_view_and_read_permission(
    comments: CommentService, manager, posts, owner_id: str
) -> None:
    author, reader, post = await _setup(manager, posts, owner_id)
    await comments.create_comment(post.id, author.key_id, AUTHOR_PERMISSIONS, "hello")

    with pytest.raises(NotFound):
        await comments.list_comments(post.id, reader.key_id, ["posts:read"])

    await posts.grant(post.id, author.key_id, AUTHOR_PERMISSIONS, "key", reader.key_id, bitmask.VIEW)
    with pytest.raises(Forbidden) as exc:
        await comments.list_comments(post.id, reader.key_id, ["comments:write"])
    assert exc.value.required_permissions == ["posts:read"]

    page = await comments.list_comments(post.id, reader.key_id, ["posts:read"])
    assert [c.body for c in page.comments] == ["hello"]
    assert page.next_cursor is None


@pytest.mark.anyio
@pytest.mark.parametrize("limit", [0, 101])
async def test_listing_limit_bounds(
    comments: CommentService, manager, posts, owner_id: str, limit: int
) -> None:
    author, _, post = await _setup(manager, posts, owner_id)
    with pytest.raises(ValidationError):
        await comments.list_comments(post.id, author.key_id, AUTHOR_PERMISSIONS, limit=limit)


@pytest.mark.anyio
async def test_listing_rejects_malformed_cursor(
    comments: CommentService, manager, posts, owner_id: str
) -> None:
    author, _, post = await _setup(manager, posts, owner_id)
    with pytest.raises(ValidationError):
        await comments.list_comments(post.id, author.key_id, AUTHOR_PERMISSIONS, before_id="zz")


@pytest.mark.anyio
async def test_unknown_cursor_yields_empty_page(
    comments: CommentService, manager, posts, owner_id: str
) -> None:
    author, _, post = await _setup(manager, posts, owner_id)
    await comments.create_comment(post.id, author.key_id, AUTHOR_PERMISSIONS, "hello")
    page = await comments.list_comments(
        post.id, author.key_id, AUTHOR_PERMISSIONS, before_id=new_id()
    )
    assert page.comments == []


@pytest.mark.anyio
async def test_comment_survives_audit_failure(
    session_maker, failing_sink, manager, posts, owner_id: str
) -> None:
    author, _, post = await _setup(manager, posts, owner_id)
    service = CommentService(session_maker, failing_sink)

    with pytest.raises(AuditEmissionError) as exc:
        await service.create_comment(post.id, author.key_id, AUTHOR_PERMISSIONS, "kept")

    page = await CommentService(session_maker, failing_sink).list_comments(
        post.id, author.key_id, AUTHOR_PERMISSIONS
    )
    assert [c.id for c in page.comments] == [exc.value.result.id]
