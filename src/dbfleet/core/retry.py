"""Attempt-bounded retry policy for readiness polling."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class RetryOutcome:
    """Result of running an operation under a retry policy."""

    succeeded: bool
    attempts: int
    value: object | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def last_error(self) -> str | None:
        return self.errors[-1] if self.errors else None


@dataclass(slots=True)
class RetryPolicy:
    """Run an async operation until it succeeds or the attempt budget is spent.

    The delay between attempts is ``delay_seconds * backoff ** (attempt - 1)``,
    capped at ``max_delay_seconds``. ``backoff=1.0`` gives a fixed delay.
    """

    max_attempts: int = 10
    delay_seconds: float = 3.0
    backoff: float = 1.0
    max_delay_seconds: float = 30.0
    sleep: SleepFn = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if self.delay_seconds < 0:
            msg = "delay_seconds must not be negative"
            raise ValueError(msg)

    def delay_for(self, attempt: int) -> float:
        delay = self.delay_seconds * (self.backoff ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        on_failure: Callable[[int, BaseException], None] | None = None,
    ) -> RetryOutcome:
        errors: list[str] = []
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await operation()
            except retry_on as exc:
                errors.append(str(exc) or exc.__class__.__name__)
                if on_failure is not None:
                    on_failure(attempt, exc)
                if attempt < self.max_attempts:
                    await self.sleep(self.delay_for(attempt))
                continue
            return RetryOutcome(succeeded=True, attempts=attempt, value=value, errors=errors)
        return RetryOutcome(succeeded=False, attempts=self.max_attempts, errors=errors)
