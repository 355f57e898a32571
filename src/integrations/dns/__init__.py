"""DNS verification for custom domains."""

from src.integrations.dns.cname_verifier import (
    CnameResolver,
    DnsPythonCnameResolver,
    DomainVerificationResult,
    get_cname_resolver,
    verify_cname_target,
)

__all__ = [
    "CnameResolver",
    "DnsPythonCnameResolver",
    "DomainVerificationResult",
    "get_cname_resolver",
    "verify_cname_target",
]
