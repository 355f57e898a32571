"""Schemas for upload endpoints."""

from __future__ import annotations

from pydantic import BaseModel


class UploadResponse(BaseModel):
    workspace_id: str
    key: str
    url: str
    size_bytes: int
    storage_used_bytes: int


class LogoResponse(BaseModel):
    workspace_id: str
    logo: str
