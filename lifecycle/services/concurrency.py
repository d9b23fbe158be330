"""
Bounded fan-out for analytics sections.

Named coroutine factories run as tasks under a semaphore. The first failure
cancels everything still running and is raised as AnalyticsQueryError. On
timeout the unfinished sections are cancelled and reported as missing, so
callers can mark their result incomplete instead of returning it as whole.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from lifecycle.exceptions import AnalyticsQueryError

logger = logging.getLogger(__name__)

SectionFactory = Callable[[], Awaitable[Any]]


@dataclass
class BoundedResult:
    results: Dict[str, Any] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


async def run_bounded(
    sections: Mapping[str, SectionFactory],
    limit: int,
    timeout: Optional[float] = None,
) -> BoundedResult:
    """Run every section with at most ``limit`` in flight."""
    if not sections:
        return BoundedResult()

    semaphore = asyncio.Semaphore(max(limit, 1))

    async def guarded(factory: SectionFactory) -> Any:
        async with semaphore:
            return await factory()

    tasks = {
        asyncio.create_task(guarded(factory), name=f"analytics:{name}"): name
        for name, factory in sections.items()
    }

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout else None
    results: Dict[str, Any] = {}
    pending = set(tasks)

    try:
        while pending:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, pending = await asyncio.wait(
                pending,
                timeout=remaining,
                return_when=asyncio.FIRST_EXCEPTION,
            )
            for task in done:
                name = tasks[task]
                error = task.exception()
                if error is not None:
                    if isinstance(error, AnalyticsQueryError):
                        raise error
                    raise AnalyticsQueryError(name, error) from error
                results[name] = task.result()
            if not done:
                break
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    missing = [name for name in sections if name not in results]
    if missing:
        logger.warning(f"Analytics sections timed out after {timeout}s: {missing}")
    return BoundedResult(results=results, missing=missing)
