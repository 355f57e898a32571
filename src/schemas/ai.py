"""Schemas for AI writing assistant endpoints."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class CopilotRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=20000)
    system: Optional[str] = Field(default=None, max_length=4000)


class ChatMessage(BaseModel):
    role: str = Field(min_length=1, max_length=16)
    content: str = Field(max_length=20000)


class CommandRequest(BaseModel):
    messages: List[ChatMessage] = Field(min_length=1)
    system: Optional[str] = Field(default=None, max_length=4000)


class CompletionResponse(BaseModel):
    text: str
    provider: str
    usage_remaining: int
