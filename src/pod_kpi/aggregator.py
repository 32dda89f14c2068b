"""
Concurrent per-pod fan-out with single-retry semantics.

All pods are fetched at once; pods that failed are retried exactly once as a
second concurrent batch after a fixed delay. Pods still failing are reported
with their error so siblings are never blocked.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .config import DEFAULT_RETRY_DELAY_SECONDS, Pod

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PodOutcome(Generic[T]):
    pod: Pod
    value: T | None = None
    error: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class CrossPodAggregator:
    def __init__(
        self,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    @staticmethod
    async def _attempt(pod: Pod, fetch: Callable[[Pod], Awaitable[T]], outcome: PodOutcome[T]) -> None:
        outcome.attempts += 1
        try:
            outcome.value = await fetch(pod)
            outcome.error = None
        except Exception as exc:
            outcome.error = f"{exc.__class__.__name__}: {exc}"
            logger.warning(
                "Fetch for pod %s failed (attempt %d): %s", pod.name, outcome.attempts, outcome.error
            )

    async def gather(
        self, pods: Iterable[Pod], fetch: Callable[[Pod], Awaitable[T]]
    ) -> dict[str, PodOutcome[T]]:
        """Run ``fetch`` for every pod. Result preserves the input pod order."""
        outcomes: dict[str, PodOutcome[T]] = {pod.name: PodOutcome(pod=pod) for pod in pods}
        await asyncio.gather(*(self._attempt(o.pod, fetch, o) for o in outcomes.values()))

        failed = [o for o in outcomes.values() if not o.ok]
        if failed:
            logger.info(
                "Retrying %d pod(s) after %.1fs: %s",
                len(failed),
                self._retry_delay_seconds,
                ", ".join(o.pod.name for o in failed),
            )
            await self._sleep(self._retry_delay_seconds)
            await asyncio.gather(*(self._attempt(o.pod, fetch, o) for o in failed))

        return outcomes
