"""Test helpers shared across modules."""

import asyncio
from datetime import UTC, datetime, timedelta


async def wait_until(predicate, timeout: float = 2.0, step: float = 0.01):
    """Poll an async *predicate* until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = await predicate()
        if value:
            return value
        if loop.time() >= deadline:
            msg = "condition not met in time"
            raise AssertionError(msg)
        await asyncio.sleep(step)


def seconds_ago(seconds: float) -> str:
    """ISO timestamp *seconds* in the past, in the queue's format."""
    return (datetime.now(UTC) - timedelta(seconds=seconds)).isoformat(timespec="microseconds")
