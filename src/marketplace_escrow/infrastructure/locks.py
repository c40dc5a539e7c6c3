"""Per-entity locks.

At most one transition may be in flight per order (and per offer). Each
entity id gets an asyncio.Lock on first use; the lock is dropped once no
task holds or waits for it, so the registry does not grow with the number
of entities ever touched. Different ids never contend.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from marketplace_escrow.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class _Slot:
    lock: asyncio.Lock
    users: int = 0


class EntityLockRegistry:
    """Registry of per-entity asyncio locks."""

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}

    @asynccontextmanager
    async def hold(self, entity_id: object) -> AsyncIterator[None]:
        """Serialize the enclosed block against other holders of entity_id."""
        key = str(entity_id)
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot(lock=asyncio.Lock())
        slot.users += 1
        try:
            if slot.lock.locked():
                logger.debug("lock.waiting", entity_id=key)
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._slots.pop(key, None)

    def is_locked(self, entity_id: object) -> bool:
        slot = self._slots.get(str(entity_id))
        return slot is not None and slot.lock.locked()

    def __len__(self) -> int:
        return len(self._slots)


_default_registry: EntityLockRegistry | None = None


def get_lock_registry() -> EntityLockRegistry:
    """Process-wide registry shared by every service instance."""
    global _default_registry
    if _default_registry is None:
        _default_registry = EntityLockRegistry()
    return _default_registry
