# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Bounded retry for transient conditions (mount-point assignment, a busy
vmrest service). Intermediate failures are logged at debug only; the last
one is re-raised unchanged.
"""

from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar, Union

T = TypeVar("T")

ExcTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


def backoff_delays(attempts: int, base_s: float, cap_s: float):
    """Delays slept between `attempts` tries: base, 2*base, 4*base, ... capped."""
    return [min(base_s * 2 ** i, cap_s) for i in range(max(0, attempts - 1))]


def retry_operation(
    operation: Callable[[int], T],
    *,
    max_attempts: int = 3,
    base_backoff_s: float = 0.5,
    max_backoff_s: float = 10.0,
    exceptions: ExcTypes = Exception,
    operation_name: str = "operation",
    logger: Optional[logging.Logger] = None,
) -> T:
    """
    Call `operation(attempt)` (attempt is 1-based) until it returns.

    Passing the attempt lets the operation change tactics between tries,
    e.g. ask for the next free drive letter.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delays = backoff_delays(max_attempts, base_backoff_s, max_backoff_s)
    attempt = 1
    while True:
        try:
            return operation(attempt)
        except exceptions as e:
            if attempt == max_attempts:
                if logger:
                    logger.debug("%s: giving up after %d attempt(s): %s", operation_name, attempt, e)
                raise
            delay = delays[attempt - 1]
            if logger:
                logger.debug("%s: attempt %d/%d failed (%s); next try in %.2fs", operation_name, attempt, max_attempts, e, delay)
        time.sleep(delay)
        attempt += 1


def retry_with_backoff(
    max_attempts: int = 3,
    base_backoff_s: float = 0.5,
    max_backoff_s: float = 10.0,
    exceptions: ExcTypes = Exception,
    logger: Optional[logging.Logger] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form for calls that ignore the attempt number."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return retry_operation(
                lambda _attempt: func(*args, **kwargs),
                max_attempts=max_attempts,
                base_backoff_s=base_backoff_s,
                max_backoff_s=max_backoff_s,
                exceptions=exceptions,
                operation_name=func.__name__,
                logger=logger,
            )

        return wrapper

    return decorator
