"""Two-phase optimistic mutation: apply locally, then confirm or revert.

The local change is applied synchronously before the first suspension point so
observers see the intent immediately. Whatever the remote call produces is
applied when it arrives: a result is confirmed, any exception reverts the local
change and is re-raised unchanged for the caller to translate.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


async def run_optimistic(
    *,
    apply: Callable[[], None],
    commit: Callable[[], Awaitable[T]],
    confirm: Callable[[T], None],
    revert: Callable[[], None],
) -> T:
    apply()
    try:
        result = await commit()
    except Exception:
        revert()
        raise
    confirm(result)
    return result
