"""
Bounded polling for external jobs

One combinator for every "wait until the outside world settles" loop:
transaction confirmation on the RPC node and relay job status. Each call
site supplies its own interval, attempt budget and a classifier that maps a
fetched value to PENDING / DONE / FAILED. Nothing here retries forever.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

from cloak.api.errors import ServiceError
from cloak.api.logging_config import get_logger

logger = get_logger("polling")

T = TypeVar("T")


class Poll(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class PollTimeoutError(Exception):
    """Raised when the attempt budget runs out before a terminal status"""

    def __init__(self, description: str, attempts: int, last_value: Any = None, last_error: Optional[BaseException] = None):
        self.description = description
        self.attempts = attempts
        self.last_value = last_value
        self.last_error = last_error
        msg = f"{description} did not reach a terminal status after {attempts} attempts"
        if last_error is not None:
            msg += f" (last error: {last_error})"
        super().__init__(msg)


@dataclass
class PollOutcome(Generic[T]):
    decision: Poll
    value: T
    attempts: int


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    classify: Callable[[T], Poll],
    interval: float,
    max_attempts: int,
    description: str = "Poll",
    on_value: Optional[Callable[[T], None]] = None,
    transient: Tuple[Type[BaseException], ...] = (ServiceError,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollOutcome[T]:
    """
    Call `fetch` until `classify` says DONE or FAILED.

    Features:
    - Fixed interval between attempts (no sleep after the last one)
    - Transient errors (by default ServiceError) use up an attempt and polling continues
    - Optional callback on every fetched value, e.g. to advance a state machine

    Args:
        fetch: Coroutine function returning the current status payload
        classify: Maps a payload to Poll.PENDING / Poll.DONE / Poll.FAILED
        interval: Seconds between attempts
        max_attempts: Attempt budget (>= 1)
        description: Human-readable description for logging
        on_value: Optional callback called with every successfully fetched payload
        transient: Exception types treated as "try again"
        sleep: Awaitable sleeper, injectable for tests

    Returns:
        PollOutcome with the terminal decision, the payload that produced it
        and the number of attempts used

    Raises:
        PollTimeoutError: If no terminal status was seen within max_attempts

    Example:
        outcome = await poll_until(
            lambda: relay.get_status(request_id),
            classify_relay_status,
            interval=5,
            max_attempts=120,
            description="Relay job",
        )
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_value: Any = None
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            value = await fetch()
        except transient as e:
            last_error = e
            logger.warning(f"{description} (attempt {attempt}/{max_attempts}) failed: {e}")
        else:
            last_value = value
            if on_value:
                on_value(value)
            decision = classify(value)
            if decision is not Poll.PENDING:
                logger.debug(f"{description} terminal after {attempt} attempt(s): {decision.value}")
                return PollOutcome(decision=decision, value=value, attempts=attempt)
            logger.debug(f"{description} (attempt {attempt}/{max_attempts}) pending")

        if attempt < max_attempts:
            await sleep(interval)

    raise PollTimeoutError(description, max_attempts, last_value=last_value, last_error=last_error)
