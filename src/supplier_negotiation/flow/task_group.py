"""Task-group primitive for fan-out / fan-in steps.

Spawns one task per coroutine, waits for all of them to settle and
returns a Result-typed :class:`Outcome` per task, in input order. One
task failing never cancels or fails its siblings.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Generic, TypeVar

R = TypeVar("R")


@dataclass(frozen=True)
class Outcome(Generic[R]):
    """Settled result of one task: either ``value`` or ``error`` is set."""

    key: str
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_all(tasks: dict[str, Awaitable[R]]) -> list[Outcome[R]]:
    """Run *tasks* concurrently and collect every outcome.

    Args:
        tasks: Key -> awaitable. Keys identify outcomes (e.g. a pillar
            name or counterparty id).

    Returns:
        One :class:`Outcome` per key, in the order of *tasks*.
    """
    keys = list(tasks)
    results = await asyncio.gather(*tasks.values(), return_exceptions=True)
    outcomes: list[Outcome[R]] = []
    for key, result in zip(keys, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            outcomes.append(Outcome(key=key, error=result))
        else:
            outcomes.append(Outcome(key=key, value=result))
    return outcomes
