"""Ordered provider attempts: first success wins, every failure is kept."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

from chainledger.errors import DualSourceFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Attempt(Generic[T]):
    name: str
    run: Callable[[], Awaitable[T]]


async def first_success(attempts: Sequence[Attempt[T]], label: str = "Provider chain") -> tuple[str, T]:
    """Run attempts in order and return (name, value) of the first that succeeds.

    Raises DualSourceFailure carrying every (name, message) pair when all fail.
    """
    failures: list[tuple[str, str]] = []
    for attempt in attempts:
        try:
            return attempt.name, await attempt.run()
        except Exception as e:
            logger.warning(f"{label}: {attempt.name} failed: {e}")
            failures.append((attempt.name, str(e) or type(e).__name__))
    raise DualSourceFailure(failures, label=label)
