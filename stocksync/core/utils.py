"""
Utility functions for the application.
"""
import asyncio
import random
import string
import time
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Optional, Sequence, TypeVar

T = TypeVar('T')


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalise a datetime to aware UTC.

    Some backends (SQLite) hand back naive values even for timezone-aware
    columns; those are assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def later_of(current: datetime | None, candidate: datetime) -> datetime:
    """Return whichever timestamp is later, so sync timestamps never move backwards."""
    current = as_utc(current)
    candidate = as_utc(candidate)
    if current is None or candidate > current:
        return candidate
    return current


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """
    Split a sequence into consecutive lists of at most `size` items.

    Args:
        items: Sequence to split
        size: Maximum chunk length, must be positive

    Yields:
        Lists of items in their original order
    """
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def unique_in_order(values: Iterable[T]) -> List[T]:
    seen = set()
    result = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def generate_job_id(prefix: str = "job") -> str:
    """Generate an externally addressable job id, e.g. job_1718000000000_k3j9x0a1b."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


# A cancel token is a plain asyncio.Event: set() requests a stop
CancelToken = asyncio.Event


def is_cancelled(token: Optional[asyncio.Event]) -> bool:
    return token is not None and token.is_set()


async def cancellable_sleep(delay: float, token: Optional[asyncio.Event] = None) -> bool:
    """
    Sleep for `delay` seconds, waking early if the token is set.

    Returns True when the sleep was cut short by cancellation.
    """
    if delay <= 0:
        return is_cancelled(token)
    if token is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(token.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
