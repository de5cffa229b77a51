"""Key-authenticated gateway: delegated minting, posts, comments, feeds and keychains."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from keygate.core.errors import InvalidCredential, NotFound
from keygate.deps import (
    get_comment_service,
    get_feed_service,
    get_key_manager,
    get_keychain_service,
    get_post_access_service,
)
from keygate.schemas.keychains import (
    KeychainCreateRequest,
    KeychainItem,
    KeychainMemberRequest,
    KeychainMembersResponse,
)
from keygate.schemas.keys import KeyItem, MintedKeyResponse, MintSecondaryRequest, MintUseRequest
from keygate.schemas.posts import (
    AccessResponse,
    CommentCreateRequest,
    CommentItem,
    CommentPageResponse,
    CommentPaging,
    FeedPaging,
    FeedResponse,
    GrantItem,
    GrantRequest,
    PostCreateRequest,
    PostResponse,
)
from keygate.security import KeyPrincipal, require_key
from keygate.services import bitmask
from keygate.services.comments import CommentRecord, CommentService
from keygate.services.feed import FeedPage, FeedService
from keygate.services.key_lifecycle import KeyLifecycleManager, MintedKey
from keygate.services.keychains import KeychainRecord, KeychainService
from keygate.services.post_access import AccessGrant, PostAccessService, PostRecord


router = APIRouter(prefix="/gateway", tags=["gateway"])


async def require_active_key(
    principal: KeyPrincipal = Depends(require_key),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> KeyPrincipal:
    """Reject tokens whose key was deactivated or rotated after issue."""

    try:
        key = await manager.get(principal.key_id)
    except NotFound as exc:
        raise InvalidCredential("key missing") from exc
    if not key.active or key.is_retired:
        raise InvalidCredential("key inactive")
    return principal


def _minted(minted: MintedKey) -> MintedKeyResponse:
    return MintedKeyResponse(key=KeyItem.from_record(minted.key, minted.public_id), secret=minted.secret)


def _post(post: PostRecord) -> PostResponse:
    return PostResponse(
        post_id=post.id,
        author_key_id=post.author_key_id,
        initial_author_key_id=post.initial_author_key_id,
        title=post.title,
        content=post.content,
        created_at=post.created_at,
    )


def _grant(grant: AccessGrant) -> GrantItem:
    return GrantItem(
        post_id=grant.post_id,
        target_type=grant.target_type,
        target_id=grant.target_id,
        permission_mask=grant.permission_mask,
        created_at=grant.created_at,
    )


@router.post(
    "/keys/secondary",
    response_model=MintedKeyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Mint a secondary key under the calling key",
)
async def mint_secondary(
    payload: MintSecondaryRequest,
    principal: KeyPrincipal = Depends(require_active_key),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> MintedKeyResponse:
    principal.require("keys:issue")
    minted = await manager.mint_secondary(principal.key_id, payload.permissions, label=payload.label)
    return _minted(minted)


@router.post(
    "/keys/use",
    response_model=MintedKeyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Mint a use key under the calling key",
)
async def mint_use(
    payload: MintUseRequest,
    principal: KeyPrincipal = Depends(require_active_key),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> MintedKeyResponse:
    principal.require("keys:issue")
    minted = await manager.mint_use(
        principal.key_id,
        payload.permissions,
        use_count_limit=payload.use_count_limit,
        device_limit=payload.device_limit,
        label=payload.label,
    )
    return _minted(minted)


@router.post(
    "/posts",
    response_model=PostResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a post",
)
async def create_post(
    payload: PostCreateRequest,
    principal: KeyPrincipal = Depends(require_active_key),
    posts: PostAccessService = Depends(get_post_access_service),
) -> PostResponse:
    principal.require("posts:create")
    post = await posts.create_post(principal.key_id, payload.content, title=payload.title)
    return _post(post)


@router.get("/posts/{post_id}", response_model=PostResponse, summary="Read a post")
async def get_post(
    post_id: str,
    principal: KeyPrincipal = Depends(require_active_key),
    posts: PostAccessService = Depends(get_post_access_service),
) -> PostResponse:
    principal.require("posts:read")
    return _post(await posts.get_post(post_id, principal.key_id))


@router.get(
    "/posts/{post_id}/access", response_model=AccessResponse, summary="Calling key's mask"
)
async def get_access(
    post_id: str,
    principal: KeyPrincipal = Depends(require_active_key),
    posts: PostAccessService = Depends(get_post_access_service),
) -> AccessResponse:
    mask = await posts.require(post_id, principal.key_id, bitmask.VIEW)
    return AccessResponse(
        post_id=post_id.lower(), key_id=principal.key_id, mask=mask, bits=bitmask.to_names(mask)
    )


@router.get("/posts/{post_id}/grants", response_model=list[GrantItem], summary="List grants")
async def list_grants(
    post_id: str,
    principal: KeyPrincipal = Depends(require_active_key),
    posts: PostAccessService = Depends(get_post_access_service),
) -> list[GrantItem]:
    principal.require("posts:access:manage")
    return [_grant(g) for g in await posts.list_grants(post_id, principal.key_id)]


@router.post("/posts/{post_id}/grants", response_model=GrantItem, summary="Grant post access")
async def grant_access(
    post_id: str,
    payload: GrantRequest,
    principal: KeyPrincipal = Depends(require_active_key),
    posts: PostAccessService = Depends(get_post_access_service),
) -> GrantItem:
    grant = await posts.grant(
        post_id,
        principal.key_id,
        principal.permissions,
        payload.target_type,
        payload.target_id,
        payload.permission_mask,
    )
    return _grant(grant)


@router.delete(
    "/posts/{post_id}/grants/{target_type}/{target_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Revoke post access",
)
async def revoke_access(
    post_id: str,
    target_type: str,
    target_id: str,
    principal: KeyPrincipal = Depends(require_active_key),
    posts: PostAccessService = Depends(get_post_access_service),
) -> Response:
    await posts.revoke(post_id, principal.key_id, principal.permissions, target_type, target_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _comment(comment: CommentRecord) -> CommentItem:
    return CommentItem(
        comment_id=comment.id,
        post_id=comment.post_id,
        created_by_key_id=comment.created_by_key_id,
        body=comment.body,
        created_at=comment.created_at,
    )


def _feed(page: FeedPage) -> FeedResponse:
    return FeedResponse(
        data=[_post(p) for p in page.posts],
        paging=FeedPaging(limit=page.limit, cursor=page.cursor),
    )


@router.post(
    "/posts/{post_id}/comments",
    response_model=CommentItem,
    status_code=status.HTTP_201_CREATED,
    summary="Comment on a post",
)
async def create_comment(
    post_id: str,
    payload: CommentCreateRequest,
    principal: KeyPrincipal = Depends(require_active_key),
    comments: CommentService = Depends(get_comment_service),
) -> CommentItem:
    comment = await comments.create_comment(
        post_id, principal.key_id, principal.permissions, payload.body
    )
    return _comment(comment)


@router.get(
    "/posts/{post_id}/comments", response_model=CommentPageResponse, summary="List comments"
)
async def list_comments(
    post_id: str,
    limit: int = 20,
    before_id: str | None = None,
    principal: KeyPrincipal = Depends(require_active_key),
    comments: CommentService = Depends(get_comment_service),
) -> CommentPageResponse:
    page = await comments.list_comments(
        post_id, principal.key_id, principal.permissions, limit=limit, before_id=before_id
    )
    return CommentPageResponse(
        comments=[_comment(c) for c in page.comments],
        paging=CommentPaging(
            limit=page.limit, before_id=page.before_id, next_cursor=page.next_cursor
        ),
    )


@router.get("/feed/use/{use_key_id}", response_model=FeedResponse, summary="Feed of the calling key")
async def use_key_feed(
    use_key_id: str,
    limit: int = 20,
    before_id: str | None = None,
    since_id: str | None = None,
    principal: KeyPrincipal = Depends(require_active_key),
    feed: FeedService = Depends(get_feed_service),
) -> FeedResponse:
    page = await feed.use_key_feed(
        use_key_id,
        principal.key_id,
        principal.permissions,
        limit=limit,
        before_id=before_id,
        since_id=since_id,
    )
    return _feed(page)


@router.get("/feed/author", response_model=FeedResponse, summary="Feed of an author key")
async def author_feed(
    limit: int = 20,
    before_id: str | None = None,
    since_id: str | None = None,
    principal: KeyPrincipal = Depends(require_active_key),
    feed: FeedService = Depends(get_feed_service),
) -> FeedResponse:
    page = await feed.author_feed(
        principal.key_id,
        principal.permissions,
        limit=limit,
        before_id=before_id,
        since_id=since_id,
    )
    return _feed(page)


def _keychain(keychain: KeychainRecord) -> KeychainItem:
    return KeychainItem(
        keychain_id=keychain.id,
        name=keychain.name,
        external=keychain.is_external,
        created_at=keychain.created_at,
    )


@router.post(
    "/keychains",
    response_model=KeychainItem,
    status_code=status.HTTP_201_CREATED,
    summary="Create an external keychain",
)
async def create_keychain(
    payload: KeychainCreateRequest,
    principal: KeyPrincipal = Depends(require_active_key),
    keychains: KeychainService = Depends(get_keychain_service),
) -> KeychainItem:
    principal.require("keychains:manage")
    return _keychain(await keychains.create_external(principal.key_id, payload.name))


@router.get(
    "/keychains/{keychain_id}/members",
    response_model=KeychainMembersResponse,
    summary="List external keychain members",
)
async def list_keychain_members(
    keychain_id: str,
    principal: KeyPrincipal = Depends(require_active_key),
    keychains: KeychainService = Depends(get_keychain_service),
) -> KeychainMembersResponse:
    principal.require("keychains:manage")
    key_ids = await keychains.external_members(keychain_id)
    return KeychainMembersResponse(keychain_id=keychain_id.lower(), key_ids=key_ids)


@router.post("/keychains/{keychain_id}/members", summary="Add a key to an external keychain")
async def add_keychain_member(
    keychain_id: str,
    payload: KeychainMemberRequest,
    principal: KeyPrincipal = Depends(require_active_key),
    keychains: KeychainService = Depends(get_keychain_service),
) -> dict:
    principal.require("keychains:manage")
    added = await keychains.add_external_member(principal.key_id, keychain_id, payload.key_id)
    return {"added": added}


@router.delete(
    "/keychains/{keychain_id}/members/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Remove a key from an external keychain",
)
async def remove_keychain_member(
    keychain_id: str,
    key_id: str,
    principal: KeyPrincipal = Depends(require_active_key),
    keychains: KeychainService = Depends(get_keychain_service),
) -> Response:
    principal.require("keychains:manage")
    await keychains.remove_external_member(principal.key_id, keychain_id, key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
