from emergency import ProvenanceTracker, emergency_snapshot
from registry import TrackedWallet, TrackedWalletRegistry
from settings import load_settings
from snapshots import Network, Source

from conftest import ADDRESS, OTHER_ADDRESS


def test_tracked_wallet_upsert_and_remove(tmp_path):
    registry = TrackedWalletRegistry(tmp_path / "r.db")
    registry.upsert("u1", ADDRESS.upper().replace("0X", "0x"), Network.TESTNET, "main")
    registry.upsert("u1", ADDRESS, Network.TESTNET, "renamed")
    registry.upsert("u2", OTHER_ADDRESS, "mainnet")

    assert registry.list_tracked() == [
        TrackedWallet("u1", ADDRESS, Network.TESTNET, "renamed"),
        TrackedWallet("u2", OTHER_ADDRESS, Network.MAINNET, None),
    ]
    assert [w.address for w in registry.list_for_user("u2")] == [OTHER_ADDRESS]
    assert registry.remove("u2", OTHER_ADDRESS, Network.MAINNET) is True
    assert registry.remove("u2", OTHER_ADDRESS, Network.MAINNET) is False


def test_device_tokens_follow_latest_user(tmp_path):
    registry = TrackedWalletRegistry(tmp_path / "r.db")
    assert registry.register_tokens("u1", ["tok-a", " ", "tok-b"]) == 2
    registry.register_tokens("u2", ["tok-b"])
    assert registry.tokens_for("u1") == ["tok-a"]
    assert registry.tokens_for("u2") == ["tok-b"]


def test_emergency_floor_per_network():
    assert emergency_snapshot(ADDRESS, Network.MAINNET).balances == {
        "AZE": "0.000000",
        "cBRL": "0.000000",
        "STT": "0.000000",
    }
    assert emergency_snapshot(ADDRESS, Network.TESTNET).source == Source.EMERGENCY


def test_emergency_flag_expires():
    tracker = ProvenanceTracker(emergency_window_seconds=0)
    tracker.record("u1", ADDRESS, Network.TESTNET, emergency_snapshot(ADDRESS, Network.TESTNET))
    assert tracker.is_using_emergency("u1") is False
    assert tracker.counts()["emergency"] == 1


def test_load_settings_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("CHANGE_THRESHOLD_PERCENT", "2.5")
    monkeypatch.setenv("DURABLE_MAX_ENTRIES", "unlimited")
    monkeypatch.setenv("DETECTOR_CYCLE_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("ENABLE_DETECTOR", "false")
    monkeypatch.setenv("CHAIN_TIMEOUT_SECONDS", "not-a-number")
    settings = load_settings()
    assert settings.change_threshold_percent == 2.5
    assert settings.durable_max_entries is None
    assert settings.detector_cycle_timeout_seconds is None
    assert settings.enable_detector is False
    assert settings.chain_timeout_seconds == 10.0
    assert settings.registry_path == tmp_path / "balance_guard.db"
