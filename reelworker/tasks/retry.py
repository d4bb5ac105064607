"""
Retry with exponential backoff and jitter.

Used for calls to unreliable collaborators: the remote clip service,
clip downloads, and publishing the final artifact.
"""

import logging
import random
import threading
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    factor: float = 2.0,
    jitter: float = 0.2,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds or the attempts are exhausted.

    Args:
        fn: Zero-argument callable
        attempts: Total number of calls, including the first
        base_delay: Delay before the second call, in seconds
        factor: Multiplier applied to the delay after each failure
        jitter: Upper bound of the random delay added to each sleep
        retry_on: Exception types that trigger a retry; others propagate
        description: Label used in log messages
        cancel_event: When set, no further attempts are made
        sleep: Sleep function (injectable for tests)

    Returns:
        The value returned by ``fn``

    Raises:
        The last exception raised by ``fn``
    """
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts or (cancel_event is not None and cancel_event.is_set()):
                raise
            sleep_t = delay + random.uniform(0, jitter)
            logger.warning(
                f"{description} attempt {attempt}/{attempts} failed: {e!r}; "
                f"retrying in {sleep_t:.2f}s"
            )
            sleep(sleep_t)
            delay *= factor
    raise ValueError("attempts must be at least 1")
