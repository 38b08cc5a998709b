# registry.py — SQLite registry of tracked wallets and push device tokens

import sqlite3
import time
from pathlib import Path
from typing import List, NamedTuple, Optional

from snapshots import Network


class TrackedWallet(NamedTuple):
    user_id: str
    address: str
    network: Network
    label: Optional[str] = None


class TrackedWalletRegistry:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    def get_db(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        with self.get_db() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tracked_wallets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    address TEXT NOT NULL,
                    network TEXT NOT NULL,
                    label TEXT,
                    created_at INTEGER NOT NULL,
                    UNIQUE(user_id, address, network)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    token TEXT UNIQUE NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.commit()

    # ---------- wallets ----------
    def upsert(self, user_id: str, address: str, network: Network, label: Optional[str] = None) -> TrackedWallet:
        wallet = TrackedWallet(str(user_id), address.strip().lower(), Network(network), label)
        with self.get_db() as conn:
            conn.execute(
                """
                INSERT INTO tracked_wallets (user_id, address, network, label, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, address, network) DO UPDATE SET label = excluded.label
                """,
                (wallet.user_id, wallet.address, wallet.network.value, label, int(time.time())),
            )
            conn.commit()
        return wallet

    def remove(self, user_id: str, address: str, network: Network) -> bool:
        with self.get_db() as conn:
            cur = conn.execute(
                "DELETE FROM tracked_wallets WHERE user_id = ? AND address = ? AND network = ?",
                (str(user_id), address.strip().lower(), Network(network).value),
            )
            conn.commit()
            return cur.rowcount > 0

    def _rows(self, where: str = "", params: tuple = ()) -> List[TrackedWallet]:
        with self.get_db() as conn:
            rows = conn.execute(
                f"SELECT user_id, address, network, label FROM tracked_wallets {where} ORDER BY id ASC",
                params,
            ).fetchall()
        return [TrackedWallet(r["user_id"], r["address"], Network(r["network"]), r["label"]) for r in rows]

    def list_tracked(self) -> List[TrackedWallet]:
        return self._rows()

    def list_for_user(self, user_id: str) -> List[TrackedWallet]:
        return self._rows("WHERE user_id = ?", (str(user_id),))

    # ---------- device tokens ----------
    def register_tokens(self, user_id: str, tokens: List[str]) -> int:
        """INSERT OR REPLACE so a token that moved to another user follows them."""
        tokens = [t.strip() for t in tokens if t and t.strip()]
        if not tokens:
            return 0
        now = int(time.time())
        with self.get_db() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO devices (user_id, token, created_at) VALUES (?, ?, ?)",
                [(str(user_id), t, now) for t in tokens],
            )
            conn.commit()
        return len(tokens)

    def tokens_for(self, user_id: str) -> List[str]:
        with self.get_db() as conn:
            rows = conn.execute("SELECT token FROM devices WHERE user_id = ? ORDER BY id ASC", (str(user_id),)).fetchall()
        return [r["token"] for r in rows]

    def remove_token(self, token: str) -> None:
        with self.get_db() as conn:
            conn.execute("DELETE FROM devices WHERE token = ?", (token,))
            conn.commit()
