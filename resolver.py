# resolver.py — layered balance resolution
# chain -> shared cache -> session -> local -> durable -> lastKnown -> emergency

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from backup_tiers import BackupChain, TierKey
from backup_writer import BackupWriter
from emergency import ProvenanceTracker, emergency_snapshot
from shared_cache import SharedBalanceCache
from snapshots import BalanceSnapshot, Network, Source, snapshot_from_explorer

logger = logging.getLogger("balance_guard")


class ChainClient(Protocol):
    async def fetch_balances(self, address: str, network: Network) -> Dict[str, Any]:
        ...


class BalanceResolver:
    """
    resolve() always returns a non-empty snapshot tagged with where it came
    from. Upstream, cache and tier failures are logged and skipped; only task
    cancellation propagates.
    """

    def __init__(
        self,
        chain: ChainClient,
        cache: Optional[SharedBalanceCache],
        backups: BackupChain,
        writer: Optional[BackupWriter] = None,
        timeout: float = 10.0,
        max_staleness: Optional[float] = 3600.0,
        provenance: Optional[ProvenanceTracker] = None,
    ) -> None:
        self.chain = chain
        self.cache = cache
        self.backups = backups
        self.writer = writer
        self.timeout = timeout
        self.max_staleness = max_staleness
        self.provenance = provenance or ProvenanceTracker()

    async def resolve(self, user_id: str, address: str, network: Network) -> BalanceSnapshot:
        network = Network(network)
        snapshot = await self._from_chain(user_id, address, network)
        if snapshot is None:
            snapshot = await self._from_cache(user_id, address, network)
        if snapshot is None:
            snapshot = await self._from_backups(user_id, address, network)
        if snapshot is None:
            logger.error(f"All balance sources failed for user {user_id} ({address}, {network.value}); serving emergency floor")
            snapshot = emergency_snapshot(address, network)
        self.provenance.record(user_id, address, network, snapshot)
        return snapshot

    async def _from_chain(self, user_id: str, address: str, network: Network) -> Optional[BalanceSnapshot]:
        try:
            payload = await asyncio.wait_for(self.chain.fetch_balances(address, network), timeout=self.timeout)
            snapshot = snapshot_from_explorer(payload, address, network)
        except asyncio.TimeoutError:
            logger.warning(f"Chain fetch timed out after {self.timeout}s for {address} ({network.value})")
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Chain fetch failed for {address} ({network.value}): {e}")
            return None
        if not snapshot.is_usable():
            logger.warning(f"Chain returned no balances for {address} ({network.value})")
            return None
        if self.writer is not None:
            self.writer.persist(user_id, address, network, snapshot)
        return snapshot

    async def _from_cache(self, user_id: str, address: str, network: Network) -> Optional[BalanceSnapshot]:
        if self.cache is None:
            return None
        try:
            cached = await self.cache.get(user_id, address, network)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Shared cache lookup raised for user {user_id}: {e}")
            return None
        if cached is None or not cached.is_usable():
            return None
        if self.max_staleness is not None and cached.age_seconds() > self.max_staleness:
            logger.info(f"Shared cache entry for user {user_id} is stale ({cached.age_seconds():.0f}s)")
            return None
        return cached.tagged(Source.SHARED_CACHE)

    async def _from_backups(self, user_id: str, address: str, network: Network) -> Optional[BalanceSnapshot]:
        key = TierKey.of(user_id, address, network)
        try:
            return await asyncio.to_thread(self.backups.first_available, key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Backup chain lookup raised for {key.slug()}: {e}")
            return None
