# emergency.py — hardcoded balance floor and provenance bookkeeping

import threading
import time
from typing import Any, Dict, Optional, Tuple

from snapshots import BalanceSnapshot, Network, Source, ZERO_AMOUNT

# Zeroed so a brand new user is never shown someone else's funds.
EMERGENCY_BALANCES: Dict[Network, Dict[str, str]] = {
    Network.TESTNET: {"AZE-t": ZERO_AMOUNT, "cBRL": ZERO_AMOUNT, "STT": ZERO_AMOUNT},
    Network.MAINNET: {"AZE": ZERO_AMOUNT, "cBRL": ZERO_AMOUNT, "STT": ZERO_AMOUNT},
}


def emergency_snapshot(address: str, network: Network) -> BalanceSnapshot:
    network = Network(network)
    return BalanceSnapshot(
        address=address,
        network=network,
        balances=dict(EMERGENCY_BALANCES[network]),
        source=Source.EMERGENCY,
    )


class ProvenanceTracker:
    """
    Remembers where the last resolution for each key came from, and when the
    emergency floor was last served. Backs the diagnostic endpoint.
    """

    def __init__(self, emergency_window_seconds: float = 3600.0) -> None:
        self.emergency_window_seconds = float(emergency_window_seconds)
        self._lock = threading.Lock()
        self._last: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._emergency: Dict[str, float] = {}
        self._counts: Dict[str, int] = {s.value: 0 for s in Source}

    def record(self, user_id: str, address: str, network: Network, snapshot: BalanceSnapshot) -> None:
        now = time.time()
        key = (str(user_id), address.lower(), Network(network).value)
        with self._lock:
            self._last[key] = {
                "source": snapshot.source.value,
                "resolved_at": now,
                "captured_at": snapshot.captured_at.isoformat(),
            }
            self._counts[snapshot.source.value] += 1
            if snapshot.source == Source.EMERGENCY:
                self._emergency[str(user_id)] = now

    def last(self, user_id: str, address: str, network: Network) -> Optional[Dict[str, Any]]:
        key = (str(user_id), address.lower(), Network(network).value)
        with self._lock:
            entry = self._last.get(key)
            return dict(entry) if entry else None

    def is_using_emergency(self, user_id: str) -> bool:
        with self._lock:
            ts = self._emergency.get(str(user_id))
        if ts is None:
            return False
        return (time.time() - ts) < self.emergency_window_seconds

    def forget(self, user_id: str) -> None:
        with self._lock:
            self._emergency.pop(str(user_id), None)
            for key in [k for k in self._last if k[0] == str(user_id)]:
                self._last.pop(key, None)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)
