"""
Redis inventory repository.

Persists inventory snapshots so a restarted driver can restore the last
known bin contents.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisClientConnectionError

from .exceptions import RedisConnectionError, RepositoryError


logger = logging.getLogger(__name__)


# =============================================================================
# Base Repository
# =============================================================================


class RedisStateRepository:
    """
    Base repository for Redis state operations.

    Provides common Redis operations with error handling.
    """

    def __init__(self, redis: Redis) -> None:
        """
        Initialize the repository.

        Args:
            redis: Redis client instance.
        """
        self._redis = redis

    async def get(self, key: str) -> Optional[str]:
        """Get a string value by key."""
        try:
            return await self._redis.get(key)
        except (ConnectionError, RedisClientConnectionError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}")

    async def set(self, key: str, value: Any) -> None:
        """Set a key-value pair."""
        try:
            await self._redis.set(key, value)
        except (ConnectionError, RedisClientConnectionError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}")

    async def delete(self, key: str) -> None:
        """Delete a key."""
        try:
            await self._redis.delete(key)
        except (ConnectionError, RedisClientConnectionError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}")


# =============================================================================
# Inventory Repository
# =============================================================================


class InventoryRepository(RedisStateRepository):
    """
    Repository for inventory snapshots.

    Keys:
    - flexicart:{cart_id}:inventory: JSON export of the inventory
    """

    KEY_TEMPLATE = "flexicart:{cart_id}:inventory"

    def __init__(self, redis: Redis, cart_id: str = "FC01") -> None:
        super().__init__(redis)
        self.cart_id = cart_id

    @property
    def key(self) -> str:
        return self.KEY_TEMPLATE.format(cart_id=self.cart_id)

    async def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        """Store an inventory snapshot."""
        await self.set(self.key, json.dumps(snapshot))
        logger.debug(
            f"Saved inventory snapshot for {self.cart_id} "
            f"({snapshot.get('metadata', {}).get('totalEntries', 0)} entries)"
        )

    async def load_snapshot(self) -> Optional[dict[str, Any]]:
        """
        Load the stored snapshot.

        Returns:
            Snapshot dictionary or None if nothing is stored.

        Raises:
            RepositoryError: If the stored value is not valid JSON.
        """
        value = await self.get(self.key)
        if not value:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError) as e:
            raise RepositoryError(f"Stored inventory for {self.cart_id} is corrupt: {e}")

    async def clear_snapshot(self) -> None:
        await self.delete(self.key)
