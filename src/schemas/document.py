"""Pydantic schemas for document endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class DocumentCreateRequest(BaseModel):
    workspace_id: str = Field(min_length=1, max_length=36)
    title: Optional[str] = Field(default=None, max_length=255)
    content: Any = None
    slug: Optional[str] = Field(default=None, max_length=128)
    type: Optional[str] = Field(default=None, max_length=32)
    status: Optional[str] = Field(default=None, max_length=16)


class DocumentUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)
    content: Any = None
    status: Optional[str] = Field(default=None, max_length=16)
    published: Optional[bool] = None


class DocumentPublicationRequest(BaseModel):
    published: bool


class DocumentResponse(BaseModel):
    id: str
    workspace_id: str
    slug: str
    title: str
    type: str
    status: str
    published: bool
    content: Any = None
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DocumentListResponse(BaseModel):
    workspace_id: str
    items: List[DocumentResponse]


class PublicDocumentResponse(BaseModel):
    workspace_name: str
    workspace_slug: str
    workspace_logo: Optional[str] = None
    slug: str
    title: str
    type: str
    content: Any = None
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PublicDocumentListResponse(BaseModel):
    workspace_slug: str
    items: List[PublicDocumentResponse]
