"""Owner console: primary keys, lineage management, groups and keychains.

Keys outside the caller's own delegation tree are reported as missing.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from keygate.core.errors import NotFound
from keygate.deps import get_group_service, get_key_manager, get_keychain_service
from keygate.schemas.keychains import (
    KeychainCreateRequest,
    KeychainItem,
    KeychainMemberRequest,
    KeychainMembersResponse,
)
from keygate.schemas.keys import (
    DeactivateRequest,
    DeactivateResponse,
    KeyItem,
    KeyListResponse,
    MintedKeyResponse,
    MintPrimaryRequest,
)
from keygate.schemas.posts import GroupCreateRequest, GroupItem, GroupMemberRequest, GroupMembersResponse
from keygate.security import OwnerPrincipal, require_owner
from keygate.services.groups import GroupService
from keygate.services.key_lifecycle import Actor, KeyLifecycleManager
from keygate.services.key_store import KeyRecord
from keygate.services.keychains import KeychainRecord, KeychainService


router = APIRouter(prefix="/console", tags=["console"])


async def _owned_key(manager: KeyLifecycleManager, owner: OwnerPrincipal, key_id: str) -> KeyRecord:
    if not await manager.owns(owner.owner_id, key_id):
        raise NotFound("Key not found")
    return await manager.get(key_id)


async def _key_list(manager: KeyLifecycleManager, records: list[KeyRecord]) -> KeyListResponse:
    public_ids = await manager.public_ids([r.id for r in records])
    return KeyListResponse(keys=[KeyItem.from_record(r, public_ids.get(r.id)) for r in records])


@router.post(
    "/keys",
    response_model=MintedKeyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Mint a primary key",
)
async def mint_primary(
    payload: MintPrimaryRequest,
    owner: OwnerPrincipal = Depends(require_owner),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> MintedKeyResponse:
    owner.require("keys:issue")
    minted = await manager.mint_primary(owner.owner_id, payload.permissions, label=payload.label)
    return MintedKeyResponse(
        key=KeyItem.from_record(minted.key, minted.public_id), secret=minted.secret
    )


@router.get("/keys", response_model=KeyListResponse, summary="List keys in the owner's trees")
async def list_keys(
    owner: OwnerPrincipal = Depends(require_owner),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> KeyListResponse:
    owner.require("keys:read")
    return await _key_list(manager, await manager.list_for_owner(owner.owner_id))


@router.get("/keys/{key_id}", response_model=KeyItem, summary="Get a key")
async def get_key(
    key_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> KeyItem:
    owner.require("keys:read")
    record = await _owned_key(manager, owner, key_id)
    public_ids = await manager.public_ids([record.id])
    return KeyItem.from_record(record, public_ids.get(record.id))


@router.get("/keys/{key_id}/lineage", response_model=KeyListResponse, summary="Root-to-key chain")
async def get_lineage(
    key_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> KeyListResponse:
    owner.require("keys:read")
    await _owned_key(manager, owner, key_id)
    return await _key_list(manager, await manager.lineage(key_id))


@router.get(
    "/keys/{key_id}/descendants", response_model=KeyListResponse, summary="All descendant keys"
)
async def get_descendants(
    key_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> KeyListResponse:
    owner.require("keys:read")
    await _owned_key(manager, owner, key_id)
    return await _key_list(manager, await manager.descendants(key_id))


@router.post("/keys/{key_id}/rotate", response_model=MintedKeyResponse, summary="Rotate a key")
async def rotate_key(
    key_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> MintedKeyResponse:
    owner.require("keys:rotate")
    await _owned_key(manager, owner, key_id)
    minted = await manager.rotate(key_id, actor=Actor("owner", owner.owner_id))
    return MintedKeyResponse(
        key=KeyItem.from_record(minted.key, minted.public_id), secret=minted.secret
    )


@router.post("/keys/{key_id}/activate", response_model=KeyItem, summary="Activate a key")
async def activate_key(
    key_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> KeyItem:
    owner.require("keys:state:update")
    await _owned_key(manager, owner, key_id)
    record = await manager.activate(key_id, actor=Actor("owner", owner.owner_id))
    return KeyItem.from_record(record)


@router.post(
    "/keys/{key_id}/deactivate", response_model=DeactivateResponse, summary="Deactivate a key"
)
async def deactivate_key(
    key_id: str,
    payload: DeactivateRequest,
    owner: OwnerPrincipal = Depends(require_owner),
    manager: KeyLifecycleManager = Depends(get_key_manager),
) -> DeactivateResponse:
    owner.require("keys:state:update")
    await _owned_key(manager, owner, key_id)
    affected = await manager.deactivate(
        key_id, cascade=payload.cascade, actor=Actor("owner", owner.owner_id)
    )
    return DeactivateResponse(key_id=key_id.lower(), cascade=payload.cascade, affected=affected)


@router.post(
    "/groups",
    response_model=GroupItem,
    status_code=status.HTTP_201_CREATED,
    summary="Create a group",
)
async def create_group(
    payload: GroupCreateRequest,
    owner: OwnerPrincipal = Depends(require_owner),
    groups: GroupService = Depends(get_group_service),
) -> GroupItem:
    owner.require("groups:manage")
    group = await groups.create_group(owner.owner_id, payload.name)
    return GroupItem(group_id=group.id, name=group.name, created_at=group.created_at)


@router.get("/groups", response_model=list[GroupItem], summary="List groups")
async def list_groups(
    owner: OwnerPrincipal = Depends(require_owner),
    groups: GroupService = Depends(get_group_service),
) -> list[GroupItem]:
    owner.require("groups:manage")
    return [
        GroupItem(group_id=g.id, name=g.name, created_at=g.created_at)
        for g in await groups.list_groups(owner.owner_id)
    ]


@router.get(
    "/groups/{group_id}/members", response_model=GroupMembersResponse, summary="List members"
)
async def list_members(
    group_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    groups: GroupService = Depends(get_group_service),
) -> GroupMembersResponse:
    owner.require("groups:manage")
    key_ids = await groups.members(owner.owner_id, group_id)
    return GroupMembersResponse(group_id=group_id.lower(), key_ids=key_ids)


@router.post("/groups/{group_id}/members", summary="Add a key to a group")
async def add_member(
    group_id: str,
    payload: GroupMemberRequest,
    owner: OwnerPrincipal = Depends(require_owner),
    groups: GroupService = Depends(get_group_service),
) -> dict:
    owner.require("groups:manage")
    added = await groups.add_member(owner.owner_id, group_id, payload.key_id)
    return {"added": added}


@router.delete(
    "/groups/{group_id}/members/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Remove a key from a group",
)
async def remove_member(
    group_id: str,
    key_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    groups: GroupService = Depends(get_group_service),
) -> Response:
    owner.require("groups:manage")
    await groups.remove_member(owner.owner_id, group_id, key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


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
    summary="Create a keychain",
)
async def create_keychain(
    payload: KeychainCreateRequest,
    owner: OwnerPrincipal = Depends(require_owner),
    keychains: KeychainService = Depends(get_keychain_service),
) -> KeychainItem:
    owner.require("keychains:manage")
    return _keychain(await keychains.create_keychain(owner.owner_id, payload.name))


@router.get("/keychains", response_model=list[KeychainItem], summary="List keychains")
async def list_keychains(
    owner: OwnerPrincipal = Depends(require_owner),
    keychains: KeychainService = Depends(get_keychain_service),
) -> list[KeychainItem]:
    owner.require("keychains:manage")
    return [_keychain(k) for k in await keychains.list_keychains(owner.owner_id)]


@router.get(
    "/keychains/{keychain_id}/members",
    response_model=KeychainMembersResponse,
    summary="List keychain members",
)
async def list_keychain_members(
    keychain_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    keychains: KeychainService = Depends(get_keychain_service),
) -> KeychainMembersResponse:
    owner.require("keychains:manage")
    key_ids = await keychains.members(owner.owner_id, keychain_id)
    return KeychainMembersResponse(keychain_id=keychain_id.lower(), key_ids=key_ids)


@router.post("/keychains/{keychain_id}/members", summary="Add a key to a keychain")
async def add_keychain_member(
    keychain_id: str,
    payload: KeychainMemberRequest,
    owner: OwnerPrincipal = Depends(require_owner),
    keychains: KeychainService = Depends(get_keychain_service),
) -> dict:
    owner.require("keychains:manage")
    added = await keychains.add_member(owner.owner_id, keychain_id, payload.key_id)
    return {"added": added}


@router.delete(
    "/keychains/{keychain_id}/members/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Remove a key from a keychain",
)
async def remove_keychain_member(
    keychain_id: str,
    key_id: str,
    owner: OwnerPrincipal = Depends(require_owner),
    keychains: KeychainService = Depends(get_keychain_service),
) -> Response:
    owner.require("keychains:manage")
    await keychains.remove_member(owner.owner_id, keychain_id, key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
