"""URL slug normalization shared by workspaces and documents."""

from __future__ import annotations

import re


MAX_SLUG_LENGTH = 64

_SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9-]")
_DASH_RUNS = re.compile(r"-+")


def normalize_slug(raw: str) -> str:
    candidate = _WHITESPACE.sub("-", raw.lower().strip())
    candidate = _DISALLOWED.sub("", candidate)
    candidate = _DASH_RUNS.sub("-", candidate)
    return candidate.strip("-")[:MAX_SLUG_LENGTH].rstrip("-")


def is_valid_slug(value: str) -> bool:
    return bool(_SLUG_PATTERN.match(value))


def suffixed_slug(base: str, attempt: int) -> str:
    suffix = f"-{attempt}"
    return f"{base[: MAX_SLUG_LENGTH - len(suffix)].rstrip('-')}{suffix}"
