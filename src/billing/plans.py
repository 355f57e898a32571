"""Plan loading and entitlement resolution against the Polar catalog."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import yaml

from src.billing.polar_client import get_polar_client
from src.core.config import PROJECT_ROOT, get_settings
from src.core.logger import get_logger


FREE_TIER = "free"
PAID_TIER = "pro"
UNLIMITED = -1

# Entitlement lookups that cannot be resolved are treated as this tier so an
# outage never grants paid limits.
UNRESOLVED_ENTITLEMENT_TIER = FREE_TIER

REQUIRED_LIMIT_KEYS = ("documents", "storage_bytes", "ai_requests")

logger = get_logger("openpolicy.billing.plans")


class ProductCatalog(Protocol):
    def get_product(self, product_id: str) -> Dict[str, Any]:
        """Return the product payload including its prices."""


@dataclass(frozen=True)
class PlanLimits:
    tier: str
    documents: int
    storage_bytes: int
    ai_requests: int

    @property
    def is_free(self) -> bool:
        return self.tier == FREE_TIER


def _resolve_plan_path() -> Path:
    settings = get_settings()
    configured = Path(settings.plans_file_path)
    if configured.is_absolute():
        return configured
    return PROJECT_ROOT / configured


@lru_cache(maxsize=1)
def load_plans() -> Dict[str, Dict[str, int]]:
    plan_path = _resolve_plan_path()
    with plan_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid plans file format")

    plans: Dict[str, Dict[str, int]] = {}
    for tier, tier_limits in content.items():
        if not isinstance(tier, str) or not isinstance(tier_limits, dict):
            continue
        normalized_limits: Dict[str, int] = {}
        for key, value in tier_limits.items():
            if isinstance(key, str) and isinstance(value, int):
                normalized_limits[key] = value
        plans[tier] = normalized_limits

    for tier in (FREE_TIER, PAID_TIER):
        if tier not in plans:
            raise ValueError(f"Plan tier is not configured: {tier}")
        missing = [key for key in REQUIRED_LIMIT_KEYS if key not in plans[tier]]
        if missing:
            raise ValueError(f"Plan tier '{tier}' is missing limits: {', '.join(missing)}")
    return plans


def get_tier_limits(tier: str) -> PlanLimits:
    plans = load_plans()
    tier_limits = plans.get(tier)
    if tier_limits is None:
        raise ValueError(f"Plan tier is not configured: {tier}")
    return PlanLimits(
        tier=tier,
        documents=int(tier_limits["documents"]),
        storage_bytes=int(tier_limits["storage_bytes"]),
        ai_requests=int(tier_limits["ai_requests"]),
    )


def _product_has_free_price(product: Dict[str, Any]) -> bool:
    prices = product.get("prices")
    if not isinstance(prices, list):
        raise ValueError("Product payload has no price list")
    for price in prices:
        if not isinstance(price, dict):
            continue
        amount_type = price.get("amount_type", price.get("amountType"))
        if amount_type == "free":
            return True
    return False


def is_free_plan(plan_id: Optional[str], *, catalog: Optional[ProductCatalog] = None) -> bool:
    """Classify a billing product as free or paid.

    A missing plan id is free. Products are free when any of their prices has
    amount type ``free``. Lookup failures of any kind fall back to
    ``UNRESOLVED_ENTITLEMENT_TIER``.
    """

    if not plan_id:
        return True

    resolved_catalog = catalog if catalog is not None else get_polar_client()
    try:
        product = resolved_catalog.get_product(plan_id)
        return _product_has_free_price(product)
    except Exception as exc:
        logger.warning(
            "entitlement_lookup_failed",
            plan_id=plan_id,
            error_type=type(exc).__name__,
            error=str(exc)[:200],
            default_tier=UNRESOLVED_ENTITLEMENT_TIER,
        )
        return UNRESOLVED_ENTITLEMENT_TIER == FREE_TIER


def resolve_plan_limits(plan_id: Optional[str], *, catalog: Optional[ProductCatalog] = None) -> PlanLimits:
    tier = FREE_TIER if is_free_plan(plan_id, catalog=catalog) else PAID_TIER
    return get_tier_limits(tier)
