"""Retry helpers for analytical store calls."""

from __future__ import annotations

import functools
import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS = (OperationalError, TimeoutError)

T = TypeVar("T")


def retry(func: Callable[..., T], *, attempts: int = 3, base_delay: float = 0.5) -> Callable[..., T]:
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> T:
        delay = base_delay
        for attempt in range(attempts):
            try:
                return func(*args, **kwargs)
            except RETRY_EXCEPTIONS as exc:
                if attempt == attempts - 1:
                    raise
                logger.warning("Store call %s failed (%s); retrying", func.__name__, exc)
                time.sleep(delay + random.random() * delay)
                delay *= 2
        raise AssertionError("unreachable")  # pragma: no cover
    return wrapper
