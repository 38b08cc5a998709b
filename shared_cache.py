# shared_cache.py — Redis-backed balance cache shared by every client of a user
#
# Keys:
#   balance_sync:cache:{user}:{address}:{network}          live snapshot, EX=ttl
#   balance_sync:last_observed:{user}:{address}:{network}  detector baseline
#   balance_sync:history:{user}:{address}:{network}        newest-first list, 100 max

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from snapshots import BalanceSnapshot, Network

logger = logging.getLogger("balance_guard")

REDIS_PREFIX = "balance_sync"
HISTORY_LIMIT = 100
BASELINE_TTL_SECONDS = 7 * 24 * 3600


class SharedBalanceCache:
    """
    Read helpers return None on any Redis or decoding failure; write helpers
    return False. Callers treat both as "cache unusable".
    """

    def __init__(self, client: Redis, ttl_seconds: int = 86400, prefix: str = REDIS_PREFIX) -> None:
        self.client = client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    def _suffix(self, user_id: str, address: str, network: Network) -> str:
        return f"{user_id}:{address.lower()}:{Network(network).value}"

    def cache_key(self, user_id: str, address: str, network: Network) -> str:
        return f"{self.prefix}:cache:{self._suffix(user_id, address, network)}"

    def baseline_key(self, user_id: str, address: str, network: Network) -> str:
        return f"{self.prefix}:last_observed:{self._suffix(user_id, address, network)}"

    def history_key(self, user_id: str, address: str, network: Network) -> str:
        return f"{self.prefix}:history:{self._suffix(user_id, address, network)}"

    # ---------- live snapshot ----------
    async def get(self, user_id: str, address: str, network: Network) -> Optional[BalanceSnapshot]:
        key = self.cache_key(user_id, address, network)
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Shared cache read failed for {key}: {e}")
            return None
        if not raw:
            return None
        try:
            return BalanceSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding corrupt shared cache entry {key}: {e}")
            return None

    async def set(self, user_id: str, address: str, network: Network, snapshot: BalanceSnapshot) -> bool:
        key = self.cache_key(user_id, address, network)
        try:
            await self.client.set(key, snapshot.model_dump_json(), ex=self.ttl_seconds)
        except RedisError as e:
            logger.warning(f"Shared cache write failed for {key}: {e}")
            return False
        return True

    # ---------- history ----------
    async def push_history(self, user_id: str, address: str, network: Network, snapshot: BalanceSnapshot) -> bool:
        key = self.history_key(user_id, address, network)
        entry = json.dumps({
            "timestamp": snapshot.captured_at.isoformat(),
            "source": snapshot.source.value,
            "balances": snapshot.balances,
        })
        try:
            await self.client.lpush(key, entry)
            await self.client.ltrim(key, 0, HISTORY_LIMIT - 1)
        except RedisError as e:
            logger.warning(f"Shared cache history write failed for {key}: {e}")
            return False
        return True

    async def history(self, user_id: str, address: str, network: Network, limit: int = 50) -> List[Dict[str, Any]]:
        key = self.history_key(user_id, address, network)
        limit = max(1, min(int(limit), HISTORY_LIMIT))
        try:
            rows = await self.client.lrange(key, 0, limit - 1)
        except RedisError as e:
            logger.warning(f"Shared cache history read failed for {key}: {e}")
            return []
        out: List[Dict[str, Any]] = []
        for row in rows or []:
            try:
                out.append(json.loads(row))
            except ValueError:
                continue
        return out

    # ---------- detector baseline ----------
    async def get_baseline(self, user_id: str, address: str, network: Network) -> Optional[Dict[str, Any]]:
        key = self.baseline_key(user_id, address, network)
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Baseline read failed for {key}: {e}")
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return {
                "snapshot": BalanceSnapshot.model_validate(data["snapshot"]),
                "observed_at": datetime.fromisoformat(data["observed_at"]),
            }
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding corrupt baseline {key}: {e}")
            return None

    async def set_baseline(
        self,
        user_id: str,
        address: str,
        network: Network,
        snapshot: BalanceSnapshot,
        observed_at: datetime,
    ) -> bool:
        key = self.baseline_key(user_id, address, network)
        payload = json.dumps({
            "snapshot": snapshot.model_dump(mode="json"),
            "observed_at": observed_at.isoformat(),
        })
        try:
            await self.client.set(key, payload, ex=BASELINE_TTL_SECONDS)
        except RedisError as e:
            logger.warning(f"Baseline write failed for {key}: {e}")
            return False
        return True

    # ---------- maintenance ----------
    async def clear(self, user_id: str, address: str, network: Network) -> int:
        keys = [
            self.cache_key(user_id, address, network),
            self.history_key(user_id, address, network),
            self.baseline_key(user_id, address, network),
        ]
        try:
            return int(await self.client.delete(*keys))
        except RedisError as e:
            logger.warning(f"Shared cache clear failed for user {user_id}: {e}")
            return 0

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False


class SharedBaselineStore:
    """Detector baseline store on top of SharedBalanceCache (last-write-wins)."""

    def __init__(self, cache: SharedBalanceCache) -> None:
        self.cache = cache

    async def load(self, user_id: str, address: str, network: Network) -> Optional[Dict[str, Any]]:
        return await self.cache.get_baseline(user_id, address, network)

    async def store(
        self,
        user_id: str,
        address: str,
        network: Network,
        snapshot: BalanceSnapshot,
        observed_at: datetime,
    ) -> bool:
        """Returns False when a newer cycle already wrote the baseline."""
        current = await self.cache.get_baseline(user_id, address, network)
        if current is not None and current["observed_at"] > observed_at:
            return False
        return await self.cache.set_baseline(user_id, address, network, snapshot, observed_at)
