"""Pydantic schemas for workspace management API."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field


class SlugAvailabilityResponse(BaseModel):
    slug: str
    available: bool


class PendingWorkspaceCreateRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=120)
    plan: Optional[str] = Field(default=None, max_length=128)
    slug: Optional[str] = Field(default=None, max_length=64)
    customer_id: Optional[str] = Field(default=None, max_length=128)
    customer_email: Optional[EmailStr] = None
    customer_external_id: Optional[str] = Field(default=None, max_length=128)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PendingWorkspaceResponse(BaseModel):
    id: str
    owner_id: str
    name: str
    plan: Optional[str]
    slug: Optional[str]


class WorkspaceResponse(BaseModel):
    id: str
    owner_id: str
    name: str
    slug: str
    plan: Optional[str]
    subscription_status: Optional[str]
    subscription_state: str
    subscription_message: Optional[str] = None
    custom_domain: Optional[str] = None
    logo: Optional[str] = None
    created_at: str


class LatestWorkspaceResponse(BaseModel):
    workspace: Optional[WorkspaceResponse] = None


class CustomDomainRequest(BaseModel):
    domain: Optional[str] = Field(default=None, max_length=255)


class DomainVerificationRequest(BaseModel):
    domain: Optional[str] = Field(default=None, max_length=255)


class DomainVerificationResponse(BaseModel):
    valid: bool
    message: str


class RepublishResponse(BaseModel):
    triggered: bool


class QuotaResponse(BaseModel):
    tier: str
    document_count: int
    document_limit: int
    storage_used_bytes: int
    storage_limit_bytes: int
    documents_at_limit: bool
    storage_at_limit: bool
    storage_warning: bool
    ai_used: int
    ai_limit: int
    ai_remaining: int
    ai_period: str
