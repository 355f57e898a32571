"""AI writing assistant routes gated by the workspace AI quota."""

from __future__ import annotations

import asyncio
from typing import Awaitable

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from src.ai.providers import CompletionOutput, CompletionProviderError, get_completion_provider
from src.app.usage_service import UsageDecision, consume_ai_usage, track_ai_usage
from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.core.config import get_settings
from src.core.logger import bind_workspace, get_logger
from src.core.metrics import record_upstream_error
from src.schemas.ai import CommandRequest, CompletionResponse, CopilotRequest
from src.storage.db import get_session


router = APIRouter(prefix="/ai", tags=["ai"])

logger = get_logger("openpolicy.ai")

COPILOT_SYSTEM_PROMPT = (
    "You are an assistant completing legal policy documents. "
    "Continue the text concisely in the same tone."
)
COMMAND_SYSTEM_PROMPT = "You are a helpful writing assistant."
DISCONNECT_POLL_SECONDS = 0.25


class GenerationAbortedError(RuntimeError):
    """Raised when the caller disconnected or the generation timed out."""


async def _watch_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def run_cancellable(
    request: Request,
    completion: Awaitable[CompletionOutput],
    *,
    timeout_seconds: float,
) -> CompletionOutput:
    generation = asyncio.ensure_future(completion)
    watcher = asyncio.ensure_future(_watch_disconnect(request))
    try:
        done, _ = await asyncio.wait(
            {generation, watcher},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if generation in done:
            return generation.result()
        raise GenerationAbortedError("client_disconnected" if watcher in done else "generation_timeout")
    finally:
        for task in (generation, watcher):
            if not task.done():
                task.cancel()


async def _ensure_allowed(session: Session, auth: AuthContext) -> UsageDecision:
    # Quota reads hit the database and the Polar catalog synchronously.
    decision = await asyncio.to_thread(consume_ai_usage, session, auth.user_id)
    if decision.workspace_id:
        bind_workspace(decision.workspace_id)
    if decision.allowed:
        return decision
    if decision.reason == "contention":
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="AI usage is busy, retry shortly")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": "AI usage limit reached",
            "message": "Upgrade to Pro to keep using the AI assistant.",
            "limit": decision.limit,
            "used": decision.used_before,
        },
    )


async def _generate(
    request: Request,
    background_tasks: BackgroundTasks,
    *,
    auth: AuthContext,
    decision: UsageDecision,
    event_kind: str,
    system_prompt: str,
    prompt: str,
) -> CompletionResponse:
    provider = get_completion_provider()
    try:
        output = await run_cancellable(
            request,
            provider.complete(system_prompt=system_prompt, prompt=prompt),
            timeout_seconds=get_settings().ai_timeout_seconds,
        )
    except GenerationAbortedError as exc:
        logger.info("ai_generation_aborted", reason=str(exc), event_kind=event_kind)
        raise HTTPException(status_code=status.HTTP_408_REQUEST_TIMEOUT, detail="Generation aborted") from exc
    except CompletionProviderError as exc:
        record_upstream_error(dependency="ai_provider")
        logger.warning("ai_generation_failed", error=str(exc)[:200], event_kind=event_kind)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="AI generation failed") from exc

    background_tasks.add_task(track_ai_usage, auth.user_id, event_kind, output.total_tokens)
    return CompletionResponse(text=output.text, provider=output.provider, usage_remaining=decision.remaining)


@router.post("/copilot", response_model=CompletionResponse)
async def copilot(
    payload: CopilotRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> CompletionResponse:
    decision = await _ensure_allowed(session, auth)
    return await _generate(
        request,
        background_tasks,
        auth=auth,
        decision=decision,
        event_kind="copilot_usage",
        system_prompt=payload.system or COPILOT_SYSTEM_PROMPT,
        prompt=payload.prompt,
    )


def _flatten_messages(payload: CommandRequest) -> str:
    return "\n".join(f"{message.role}: {message.content}" for message in payload.messages)


@router.post("/command", response_model=CompletionResponse)
async def command(
    payload: CommandRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> CompletionResponse:
    decision = await _ensure_allowed(session, auth)
    return await _generate(
        request,
        background_tasks,
        auth=auth,
        decision=decision,
        event_kind="command_usage",
        system_prompt=payload.system or COMMAND_SYSTEM_PROMPT,
        prompt=_flatten_messages(payload),
    )
