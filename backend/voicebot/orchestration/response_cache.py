"""
Bounded response cache for repeated questions.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class CachedResponse:
    bot_text: str
    audio_bytes: Optional[bytes] = None
    audio_locator: Optional[str] = None


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return " ".join(text.lower().split())


class ResponseCache:
    """
    FIFO cache of bot replies keyed by (agent id, normalized user text).

    Eviction is by insertion order, not recency: a hit does not refresh
    an entry's position.
    """

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._entries: "OrderedDict[Tuple[str, str], CachedResponse]" = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def make_key(agent_id: str, text: str) -> Tuple[str, str]:
        return (str(agent_id), normalize_text(text))

    async def get(self, agent_id: str, text: str) -> Optional[CachedResponse]:
        key = self.make_key(agent_id, text)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1

        logger.info(f"💾 Cache hit for agent {agent_id}: '{key[1][:50]}'")
        return entry

    async def put(self, agent_id: str, text: str, response: CachedResponse) -> None:
        if self.capacity <= 0:
            return

        key = self.make_key(agent_id, text)
        async with self._lock:
            if key in self._entries:
                self._entries[key] = response
                return

            while len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Cache evicted: {evicted}")
            self._entries[key] = response

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
