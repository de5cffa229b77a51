"""Schemas for posts, comments, feeds, access grants and groups."""
from __future__ import annotations

from datetime import datetime
from typing import List, Literal

from pydantic import BaseModel, Field


class PostCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=10_000)
    title: str | None = Field(default=None, max_length=255)


class PostResponse(BaseModel):
    post_id: str
    author_key_id: str
    initial_author_key_id: str
    title: str | None = None
    content: str
    created_at: datetime | None = None


class GrantRequest(BaseModel):
    target_type: Literal["key", "group"]
    target_id: str = Field(..., description="32-character hex id of the key or group")
    permission_mask: int = Field(..., description="OR of VIEW=1, COMMENT=2, MANAGE_ACCESS=8")


class GrantItem(BaseModel):
    post_id: str
    target_type: str
    target_id: str
    permission_mask: int
    created_at: datetime | None = None


class AccessResponse(BaseModel):
    post_id: str
    key_id: str
    mask: int
    bits: List[str]


class GroupCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class GroupItem(BaseModel):
    group_id: str
    name: str
    created_at: datetime | None = None


class GroupMembersResponse(BaseModel):
    group_id: str
    key_ids: List[str]


class GroupMemberRequest(BaseModel):
    key_id: str


class CommentCreateRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=5000)


class CommentItem(BaseModel):
    comment_id: str
    post_id: str
    created_by_key_id: str
    body: str
    created_at: datetime | None = None


class CommentPaging(BaseModel):
    limit: int
    before_id: str | None = None
    next_cursor: str | None = None


class CommentPageResponse(BaseModel):
    comments: List[CommentItem]
    paging: CommentPaging


class FeedPaging(BaseModel):
    limit: int
    cursor: str | None = None


class FeedResponse(BaseModel):
    data: List[PostResponse]
    paging: FeedPaging
