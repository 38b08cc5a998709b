# backup_writer.py — fan-out of fresh snapshots to the shared cache and every backup tier

import asyncio
import logging
from typing import Dict, Optional, Set

from backup_tiers import BackupChain, BackupTier, TierKey
from shared_cache import SharedBalanceCache
from snapshots import BalanceSnapshot, Network, Source

logger = logging.getLogger("balance_guard")


class BackupWriter:
    def __init__(self, cache: Optional[SharedBalanceCache], backups: BackupChain) -> None:
        self.cache = cache
        self.backups = backups
        self._pending: Set[asyncio.Task] = set()

    def persist(self, user_id: str, address: str, network: Network, snapshot: BalanceSnapshot) -> None:
        """Schedule the fan-out and return immediately; failures are only logged."""
        task = asyncio.create_task(self.write_through(user_id, address, network, snapshot))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def write_through(
        self, user_id: str, address: str, network: Network, snapshot: BalanceSnapshot
    ) -> Dict[str, bool]:
        key = TierKey.of(user_id, address, network)
        names = []
        jobs = []
        if self.cache is not None:
            names.append("sharedCache")
            jobs.append(self._write_cache(key, snapshot))
        for tier in self.backups.tiers:
            if not tier.accepts(snapshot):
                continue
            names.append(tier.name)
            jobs.append(self._write_tier(tier, key, snapshot))
        results = await asyncio.gather(*jobs)
        outcome = dict(zip(names, results))
        failed = [n for n, ok in outcome.items() if not ok]
        if failed:
            logger.warning(f"Backup fan-out for {key.slug()} partially failed: {failed}")
        return outcome

    async def _write_cache(self, key: TierKey, snapshot: BalanceSnapshot) -> bool:
        try:
            ok = await self.cache.set(key.user_id, key.address, key.network, snapshot)
            if ok and snapshot.source == Source.CHAIN:
                await self.cache.push_history(key.user_id, key.address, key.network, snapshot)
            return ok
        except Exception as e:
            logger.warning(f"Shared cache write raised for {key.slug()}: {e}")
            return False

    async def _write_tier(self, tier: BackupTier, key: TierKey, snapshot: BalanceSnapshot) -> bool:
        try:
            return bool(await asyncio.to_thread(tier.set, key, snapshot))
        except Exception as e:
            logger.warning(f"Backup tier {tier.name} write failed for {key.slug()}: {e}")
            return False

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
