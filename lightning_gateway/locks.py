"""
Per-key asyncio locks.

Used to serialize concurrent proxy calls that spend the same session, so the
losers of a race see the updated balance before anything is forwarded.

This map lives in one process. With several gateway instances the ledger's
conditional debit is what keeps balances correct; the lock only avoids
forwarding calls that would then fail to settle.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List


class KeyedLock:
    """One asyncio.Lock per key, dropped when nobody holds or waits on it."""

    def __init__(self) -> None:
        # key -> [lock, holders + waiters]
        self._entries: Dict[str, List] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
