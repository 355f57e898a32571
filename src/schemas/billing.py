"""Pydantic schemas for billing endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class BillingWebhookResponse(BaseModel):
    status: str
    duplicate: bool
    event_id: str
    event_type: str
    message: Optional[str] = None


class CheckoutRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=128)
    pending_workspace_id: Optional[str] = Field(default=None, max_length=36)
    success_url: Optional[str] = Field(default=None, max_length=2048)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CheckoutResponse(BaseModel):
    checkout_url: str
    checkout_id: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    success: bool
    subscription_id: Optional[str] = None


class CustomerResponse(BaseModel):
    id: Optional[str] = None
    email: Optional[str] = None
    external_id: Optional[str] = None
