"""Back-off for control-plane mutations.

The platform rejects mutations on a service that was "updated too recently",
rate-limits bursts, and now and then answers a well-formed request with a
bare 400 ("Problem processing request") that succeeds when repeated.

Only wrap calls that are safe to repeat. Service and domain creation are not.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Literal, TypeVar

from clawfleet.config import get_settings
from clawfleet.errors import ControlPlaneError, CooldownBlockedError
from clawfleet.logger import logger

T = TypeVar("T")

ErrorClass = Literal["cooldown", "transient"]

# Message signatures. Kept here and nowhere else.
_COOLDOWN_PATTERNS = ("too recently updated", "rate limit", "rate limited")
_TRANSIENT_PATTERNS = ("http 400", "problem processing request")


def classify_error(exc: BaseException) -> ErrorClass | None:
    """Decide whether a control-plane failure is worth retrying.

    The HTTP status wins when the transport provides one; GraphQL-level
    errors arrive with a 200 and only a message, so fall back to matching it.
    """
    if not isinstance(exc, ControlPlaneError):
        return None
    if exc.status == 429:
        return "cooldown"
    message = str(exc).lower()
    if any(p in message for p in _COOLDOWN_PATTERNS):
        return "cooldown"
    if exc.status == 400 or any(p in message for p in _TRANSIENT_PATTERNS):
        return "transient"
    return None


async def retry_control_plane(
    fn: Callable[[], Awaitable[T]],
    label: str,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Run ``fn`` and retry it on cooldown/transient failures.

    - cooldown: wait ``min(base * n, max)`` seconds before attempt n+1 until
      ``cooldown_budget`` seconds have passed, then raise CooldownBlockedError.
    - transient: up to ``transient_retries`` retries, ``transient_delay`` apart,
      then the original error propagates.
    """
    cfg = get_settings().remote
    started = clock()
    cooldown_attempts = 0
    transient_attempts = 0

    while True:
        try:
            return await fn()
        except ControlPlaneError as exc:
            kind = classify_error(exc)
            if kind == "transient":
                if transient_attempts >= cfg.transient_retries:
                    raise
                transient_attempts += 1
                logger.warning(
                    "Control plane request rejected, retrying",
                    label=label,
                    attempt=transient_attempts,
                    max_attempts=cfg.transient_retries,
                    delay=cfg.transient_delay,
                )
                await sleep(cfg.transient_delay)
                continue

            if kind != "cooldown":
                raise

            if clock() - started >= cfg.cooldown_budget:
                raise CooldownBlockedError(label, cfg.cooldown_budget, exc) from exc
            cooldown_attempts += 1
            delay = min(cfg.cooldown_base_delay * cooldown_attempts, cfg.cooldown_max_delay)
            logger.warning(
                "Control plane cooldown, backing off",
                label=label,
                attempt=cooldown_attempts,
                delay=delay,
            )
            await sleep(delay)
