"""Retry helpers for lock contention and flaky outbound calls."""

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from src.core.exceptions import Busy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    on_retry: Callable[[BaseException], None] | None = None,
    name: str | None = None,
) -> T:
    """Call ``func`` until it succeeds, retrying ``exceptions`` with exponential backoff.

    ``on_retry`` runs after each failed attempt that will be retried, e.g. to
    roll back the session before the next attempt. The final failure is
    re-raised unchanged.
    """
    label = name or getattr(func, "__name__", "operation")
    wait = delay
    attempt = 1
    while True:
        try:
            return func()
        except exceptions as e:
            if attempt >= max_attempts:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"{label} attempt {attempt}/{max_attempts} failed ({e}); retrying in {wait}s")
            if on_retry is not None:
                on_retry(e)
            time.sleep(wait)
            wait *= backoff_factor
            attempt += 1


def retry_busy(
    func: Callable[[], T],
    on_retry: Callable[[BaseException], None] | None = None,
    name: str | None = None,
) -> T:
    """Retry ``func`` on lock contention using the configured attempts and backoff."""
    from src.core.config import get_inventory_config

    config = get_inventory_config()
    return call_with_retry(
        func,
        max_attempts=config.busy_retry_attempts,
        delay=config.busy_retry_delay_seconds,
        exceptions=(Busy,),
        on_retry=on_retry,
        name=name,
    )
