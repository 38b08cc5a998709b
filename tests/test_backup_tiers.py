from concurrent.futures import ThreadPoolExecutor

import pytest

from backup_tiers import (
    BackupChain,
    DurableTier,
    LastKnownTier,
    OriginTier,
    SessionTier,
    TierKey,
    TierQuotaExceeded,
)
from snapshots import BalanceSnapshot, Network, Source

ADDRESS = "0x" + "ab" * 20


def snap(source=Source.CHAIN, **balances):
    return BalanceSnapshot(
        address=ADDRESS,
        network=Network.TESTNET,
        balances=balances or {"cBRL": "1"},
        source=source,
    )


def key(user="u1"):
    return TierKey.of(user, ADDRESS, Network.TESTNET)


class BrokenTier(SessionTier):
    name = "broken"

    def get(self, key):
        raise OSError("disk gone")

    def delete(self, key):
        raise OSError("disk gone")


def test_session_tier_evicts_least_recently_used():
    tier = SessionTier(capacity=2)
    tier.set(key("a"), snap())
    tier.set(key("b"), snap())
    tier.get(key("a"))
    tier.set(key("c"), snap())
    assert tier.get(key("b")) is None
    assert tier.get(key("a")) is not None
    assert len(tier) == 2


def test_origin_tier_round_trip_and_corrupt_file(tmp_path):
    tier = OriginTier(tmp_path)
    assert tier.get(key()) is None
    tier.set(key(), snap(cBRL="2.5"))
    assert tier.get(key()).balances == {"cBRL": "2.500000"}

    (tmp_path / f"{key().slug()}.json").write_text("{not json", encoding="utf-8")
    assert tier.get(key()) is None
    assert tier.delete(key()) is True
    assert tier.delete(key()) is False


def test_durable_tier_quota(tmp_path):
    tier = DurableTier(f"sqlite:///{tmp_path / 'd.db'}", max_entries=1)
    assert tier.set(key("a"), snap(cBRL="1"))
    assert tier.set(key("a"), snap(cBRL="2"))
    with pytest.raises(TierQuotaExceeded):
        tier.set(key("b"), snap())
    assert tier.get(key("a")).balances == {"cBRL": "2.000000"}
    assert tier.count() == 1
    tier.dispose()


def test_durable_tier_parallel_sets_share_one_row(tmp_path):
    tier = DurableTier(f"sqlite:///{tmp_path / 'd.db'}")
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda n: tier.set(key(), snap(cBRL=str(n))), range(1, 33)))
    assert all(results)
    assert tier.count() == 1
    assert tier.delete(key()) is True
    assert tier.get(key()) is None
    assert tier.delete(key()) is False
    tier.dispose()


def test_last_known_tier_only_takes_chain_snapshots(tmp_path):
    tier = LastKnownTier(tmp_path)
    assert tier.set(key(), snap(source=Source.LOCAL)) is False
    assert tier.get(key()) is None
    assert tier.set(key(), snap(source=Source.CHAIN)) is True
    assert tier.get(key()) is not None


def test_chain_skips_failing_tiers_and_retags(tmp_path):
    local = OriginTier(tmp_path)
    local.set(key(), snap(cBRL="7"))
    chain = BackupChain([BrokenTier(), SessionTier(), local])
    found = chain.first_available(key())
    assert found.source == Source.LOCAL
    assert found.balances == {"cBRL": "7.000000"}


def test_chain_ignores_empty_snapshots(tmp_path):
    session = SessionTier()
    session.set(key(), BalanceSnapshot(address=ADDRESS, network=Network.TESTNET, balances={}, source=Source.CHAIN))
    assert BackupChain([session]).first_available(key()) is None


def test_chain_diagnostic_and_clear(tmp_path):
    session = SessionTier()
    local = OriginTier(tmp_path)
    session.set(key(), snap())
    chain = BackupChain([session, local, BrokenTier()])

    diag = chain.diagnostic(key())
    assert diag["session"]["available"] is True
    assert diag["local"] == {"available": False}
    assert diag["broken"]["available"] is False

    assert chain.clear(key()) == {"session": True, "local": False, "broken": False}
    assert chain.first_available(key()) is None
