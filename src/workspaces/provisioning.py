"""Bounded polling for a workspace created asynchronously by billing webhooks."""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable, Optional

from src.core.logger import get_logger


POLL_FOUND = "found"
POLL_TIMEOUT = "timeout"

logger = get_logger("openpolicy.provisioning")


@dataclass(frozen=True)
class ProvisioningPollResult:
    status: str
    workspace_id: Optional[str] = None
    attempts: int = 0

    @property
    def found(self) -> bool:
        return self.status == POLL_FOUND


def wait_for_provisioned_workspace(
    fetch_latest: Callable[[], Optional[str]],
    *,
    attempts: int = 10,
    interval_seconds: float = 1.0,
    initial_delay_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ProvisioningPollResult:
    """Poll ``fetch_latest`` until it returns a workspace id or attempts run out.

    Lookup errors count as a miss for that attempt. Total wait is bounded by
    ``initial_delay_seconds + (attempts - 1) * interval_seconds`` plus lookup time.
    """

    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    if initial_delay_seconds > 0:
        sleep(initial_delay_seconds)

    for attempt in range(1, attempts + 1):
        try:
            workspace_id = fetch_latest()
        except Exception as exc:
            logger.warning(
                "provisioning_poll_lookup_failed",
                attempt=attempt,
                error_type=type(exc).__name__,
            )
            workspace_id = None

        if workspace_id:
            logger.info("provisioning_poll_found", attempt=attempt, workspace_id=workspace_id)
            return ProvisioningPollResult(status=POLL_FOUND, workspace_id=workspace_id, attempts=attempt)

        if attempt < attempts:
            sleep(interval_seconds)

    logger.warning("provisioning_poll_timeout", attempts=attempts)
    return ProvisioningPollResult(status=POLL_TIMEOUT, attempts=attempts)
