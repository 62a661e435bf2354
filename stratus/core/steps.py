"""Sequential step runner shared by every provider adapter.

A task operation is a fixed list of named steps, each one an action
against a single resource or data source. Steps run one after the other;
the first failure aborts the sequence and surfaces with the description of
the step that failed.

Example:
    steps = [
        Step("Creating Bucket...", bucket.create),
        Step("Creating SecurityGroup...", security_group.create),
    ]
    await run_steps(steps, log=log, timeout=timedelta(minutes=15))
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from .exceptions import OperationTimeoutError, ProviderError, StratusError

if TYPE_CHECKING:
    from loguru import Logger

type Action = Callable[[], Awaitable[object]]


@dataclass(frozen=True, slots=True)
class Step:
    """One named action in an orchestrated sequence."""

    description: str
    action: Action


async def run_steps(
    steps: Sequence[Step],
    *,
    log: Logger,
    timeout: timedelta | float | None = None,
) -> None:
    """Run steps in order under a single deadline.

    Args:
        steps: Steps to execute, in order.
        log: Logger receiving one line per step.
        timeout: Deadline for the whole sequence. None disables it.

    Raises:
        StratusError: The first failure, with ``step`` set to the failing
            step's description. Errors that are not StratusError are
            wrapped in ProviderError and chained.
        OperationTimeoutError: The deadline expired while a step was running.
    """
    if isinstance(timeout, timedelta):
        timeout = timeout.total_seconds()

    current: Step | None = None
    try:
        async with asyncio.timeout(timeout):
            for step in steps:
                current = step
                log.info(step.description)
                try:
                    await step.action()
                except StratusError as e:
                    if e.step is None:
                        e.step = step.description
                    raise
                except Exception as e:
                    raise ProviderError(str(e) or type(e).__name__, step=step.description) from e
    except TimeoutError as e:
        description = current.description if current else None
        raise OperationTimeoutError("deadline exceeded", step=description) from e
