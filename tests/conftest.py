import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional

import fakeredis
import pytest

from backup_tiers import BackupChain, DurableTier, LastKnownTier, OriginTier, SessionTier
from backup_writer import BackupWriter
from emergency import ProvenanceTracker
from explorer import ExplorerError
from resolver import BalanceResolver
from shared_cache import SharedBalanceCache

ADDRESS = "0x" + "ab" * 20
OTHER_ADDRESS = "0x" + "cd" * 20


def chain_payload(native: str = "0.5", **tokens: str) -> Dict[str, Any]:
    """Explorer-shaped payload; token amounts are given in units with 6 decimals."""
    return {
        "native": native,
        "tokens": [
            {"symbol": symbol, "decimals": 6, "balanceRaw": str(int(Decimal(amount) * 10 ** 6))}
            for symbol, amount in tokens.items()
        ],
    }


class FakeChain:
    def __init__(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self.payload = payload if payload is not None else chain_payload(cBRL="10")
        self.fail = False
        self.delay = 0.0
        self.calls = 0

    async def fetch_balances(self, address, network):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ExplorerError("explorer unavailable")
        return self.payload


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def cache(redis_client):
    return SharedBalanceCache(redis_client, ttl_seconds=600)


@pytest.fixture
def tiers(tmp_path):
    return [
        SessionTier(capacity=16),
        OriginTier(tmp_path / "local"),
        DurableTier(f"sqlite:///{tmp_path / 'durable.db'}"),
        LastKnownTier(tmp_path / "last_known"),
    ]


@pytest.fixture
def backups(tiers):
    return BackupChain(tiers)


@pytest.fixture
async def writer(cache, backups):
    writer = BackupWriter(cache, backups)
    yield writer
    await writer.drain()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def resolver(chain, cache, backups, writer):
    return BalanceResolver(
        chain,
        cache,
        backups,
        writer,
        timeout=0.5,
        max_staleness=3600,
        provenance=ProvenanceTracker(),
    )
