"""CNAME lookups used to confirm a custom domain points at the platform."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Protocol

import dns.exception
import dns.resolver

from src.core.config import get_settings
from src.core.logger import get_logger


logger = get_logger("openpolicy.dns")


class CnameResolver(Protocol):
    def resolve_cname(self, hostname: str) -> List[str]:
        """Return CNAME targets without trailing dots; raise on lookup failure."""


@dataclass(frozen=True)
class DomainVerificationResult:
    valid: bool
    message: str
    targets: tuple[str, ...] = ()


class DnsPythonCnameResolver:
    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        self._timeout_seconds = timeout_seconds

    def resolve_cname(self, hostname: str) -> List[str]:
        answers = dns.resolver.resolve(hostname, "CNAME", lifetime=self._timeout_seconds)
        return [str(answer.target).rstrip(".").lower() for answer in answers]


@lru_cache(maxsize=1)
def get_cname_resolver() -> CnameResolver:
    return DnsPythonCnameResolver(timeout_seconds=get_settings().dns_timeout_seconds)


def verify_cname_target(
    domain: str,
    *,
    expected_target: Optional[str] = None,
    resolver: Optional[CnameResolver] = None,
) -> DomainVerificationResult:
    target = (expected_target or get_settings().domain_cname_target).strip().rstrip(".").lower()
    hostname = domain.strip().rstrip(".").lower()
    active_resolver = resolver if resolver is not None else get_cname_resolver()

    try:
        targets = active_resolver.resolve_cname(hostname)
    except (dns.exception.DNSException, OSError) as exc:
        # Missing records and unresolvable hosts are an invalid configuration, not a failure.
        logger.info("domain_cname_lookup_failed", domain=hostname, error_type=type(exc).__name__)
        return DomainVerificationResult(
            valid=False,
            message="Could not verify domain configuration. Please check your DNS settings.",
        )

    normalized = tuple(item.rstrip(".").lower() for item in targets)
    if target in normalized:
        return DomainVerificationResult(valid=True, message="Domain is valid", targets=normalized)
    return DomainVerificationResult(
        valid=False,
        message=f"Domain CNAME does not point to {target}",
        targets=normalized,
    )
