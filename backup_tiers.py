# backup_tiers.py — local backup tiers behind the shared cache
# - session:   in-process LRU (lost on restart)
# - local:     one JSON file per key under DATA_DIR/backups (atomic replace)
# - durable:   SQLAlchemy table balance_backups (optional entry quota)
# - lastKnown: JSON slot per key, only ever written from live chain data

import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import ValidationError
from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, create_engine, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker

from snapshots import BalanceSnapshot, Network, Source

logger = logging.getLogger("balance_guard")


class TierKey(NamedTuple):
    user_id: str
    address: str
    network: Network

    @classmethod
    def of(cls, user_id: str, address: str, network: Network) -> "TierKey":
        return cls(str(user_id), address.strip().lower(), Network(network))

    def slug(self) -> str:
        raw = f"{self.user_id}_{self.address}_{self.network.value}"
        return re.sub(r"[^A-Za-z0-9_.-]", "_", raw)


class TierQuotaExceeded(Exception):
    """A tier refused a write because it is full."""


class BackupTier(ABC):
    name: str = ""
    source: Source = Source.SESSION

    @abstractmethod
    def get(self, key: TierKey) -> Optional[BalanceSnapshot]:
        ...

    @abstractmethod
    def set(self, key: TierKey, snapshot: BalanceSnapshot) -> bool:
        ...

    @abstractmethod
    def delete(self, key: TierKey) -> bool:
        ...

    def accepts(self, snapshot: BalanceSnapshot) -> bool:
        return snapshot.is_usable()


# ---------------------------------
# Session tier
# ---------------------------------
class SessionTier(BackupTier):
    name = "session"
    source = Source.SESSION

    def __init__(self, capacity: int = 512) -> None:
        self.capacity = max(1, int(capacity))
        self._data: "OrderedDict[TierKey, BalanceSnapshot]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: TierKey) -> Optional[BalanceSnapshot]:
        with self._lock:
            snap = self._data.get(key)
            if snap is not None:
                self._data.move_to_end(key)
            return snap

    def set(self, key: TierKey, snapshot: BalanceSnapshot) -> bool:
        with self._lock:
            self._data[key] = snapshot
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                self._data.popitem(last=False)
        return True

    def delete(self, key: TierKey) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._data)


# ---------------------------------
# JSON file tiers
# ---------------------------------
class JsonFileTier(BackupTier):
    """One JSON document per key; writes go through a temp file + os.replace."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, key: TierKey) -> Path:
        return self.directory / f"{key.slug()}.json"

    def get(self, key: TierKey) -> Optional[BalanceSnapshot]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return BalanceSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as e:
            logger.warning(f"Corrupt {self.name} backup {path.name}: {e}")
            return None

    def set(self, key: TierKey, snapshot: BalanceSnapshot) -> bool:
        path = self._path(key)
        # unique temp file per write so concurrent writers never share one
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.directory, prefix=f"{path.stem}.", suffix=".tmp", delete=False
        ) as f:
            f.write(snapshot.model_dump_json())
            tmp = f.name
        try:
            with self._lock:
                os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise
        return True

    def delete(self, key: TierKey) -> bool:
        with self._lock:
            try:
                self._path(key).unlink()
            except FileNotFoundError:
                return False
        return True


class OriginTier(JsonFileTier):
    name = "local"
    source = Source.LOCAL


class LastKnownTier(JsonFileTier):
    name = "lastKnown"
    source = Source.LAST_KNOWN

    def accepts(self, snapshot: BalanceSnapshot) -> bool:
        return snapshot.source == Source.CHAIN and snapshot.is_usable()

    def set(self, key: TierKey, snapshot: BalanceSnapshot) -> bool:
        if not self.accepts(snapshot):
            return False
        return super().set(key, snapshot)


# ---------------------------------
# Durable tier (SQLAlchemy)
# ---------------------------------
Base = declarative_base()


class BalanceBackupRecord(Base):
    __tablename__ = "balance_backups"
    __table_args__ = (UniqueConstraint("user_id", "address", "network", name="uq_balance_backup_key"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    address = Column(String, index=True, nullable=False)
    network = Column(String, nullable=False)
    snapshot_json = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DurableTier(BackupTier):
    name = "durable"
    source = Source.DURABLE

    def __init__(self, database_url: str, max_entries: Optional[int] = None) -> None:
        if database_url.startswith("sqlite:///"):
            db_path = database_url[len("sqlite:///"):]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self.max_entries = max_entries
        self._lock = threading.Lock()
        Base.metadata.create_all(bind=self.engine)

    def _find(self, db, key: TierKey) -> Optional[BalanceBackupRecord]:
        return (
            db.query(BalanceBackupRecord)
            .filter(
                BalanceBackupRecord.user_id == key.user_id,
                BalanceBackupRecord.address == key.address,
                BalanceBackupRecord.network == key.network.value,
            )
            .first()
        )

    def get(self, key: TierKey) -> Optional[BalanceSnapshot]:
        db = self.SessionLocal()
        try:
            rec = self._find(db, key)
            if rec is None:
                return None
            snapshot_json = rec.snapshot_json
        finally:
            db.close()
        try:
            return BalanceSnapshot.model_validate_json(snapshot_json)
        except ValidationError as e:
            logger.warning(f"Corrupt durable backup for {key.slug()}: {e}")
            return None

    def set(self, key: TierKey, snapshot: BalanceSnapshot) -> bool:
        payload = snapshot.model_dump_json()
        with self._lock:
            db = self.SessionLocal()
            try:
                rec = self._find(db, key)
                if rec is not None:
                    rec.snapshot_json = payload
                    db.commit()
                    return True
                if self.max_entries is not None and db.query(BalanceBackupRecord).count() >= self.max_entries:
                    raise TierQuotaExceeded(f"durable tier full ({self.max_entries} entries)")
                db.add(BalanceBackupRecord(
                    user_id=key.user_id,
                    address=key.address,
                    network=key.network.value,
                    snapshot_json=payload,
                ))
                try:
                    db.commit()
                except IntegrityError:
                    # another process inserted the row first
                    db.rollback()
                    rec = self._find(db, key)
                    if rec is None:
                        raise
                    rec.snapshot_json = payload
                    db.commit()
                return True
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def delete(self, key: TierKey) -> bool:
        with self._lock:
            db = self.SessionLocal()
            try:
                removed = (
                    db.query(BalanceBackupRecord)
                    .filter(
                        BalanceBackupRecord.user_id == key.user_id,
                        BalanceBackupRecord.address == key.address,
                        BalanceBackupRecord.network == key.network.value,
                    )
                    .delete(synchronize_session=False)
                )
                db.commit()
                return removed > 0
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def count(self) -> int:
        db = self.SessionLocal()
        try:
            return db.query(BalanceBackupRecord).count()
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()


# ---------------------------------
# Chain of tiers
# ---------------------------------
class BackupChain:
    """Tiers in priority order. Reads stop at the first usable snapshot."""

    def __init__(self, tiers: List[BackupTier]) -> None:
        self.tiers = list(tiers)

    def first_available(self, key: TierKey) -> Optional[BalanceSnapshot]:
        for tier in self.tiers:
            try:
                snap = tier.get(key)
            except Exception as e:
                logger.warning(f"Backup tier {tier.name} read failed for {key.slug()}: {e}")
                continue
            if snap is not None and snap.is_usable():
                logger.info(f"Serving {key.slug()} from {tier.name} backup (captured {snap.captured_at.isoformat()})")
                return snap.tagged(tier.source)
        return None

    def diagnostic(self, key: TierKey) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for tier in self.tiers:
            try:
                snap = tier.get(key)
            except Exception as e:
                out[tier.name] = {"available": False, "error": str(e)}
                continue
            if snap is None:
                out[tier.name] = {"available": False}
            else:
                out[tier.name] = {
                    "available": snap.is_usable(),
                    "captured_at": snap.captured_at.isoformat(),
                    "tokens": len(snap.balances),
                }
        return out

    def clear(self, key: TierKey) -> Dict[str, bool]:
        out: Dict[str, bool] = {}
        for tier in self.tiers:
            try:
                out[tier.name] = tier.delete(key)
            except Exception as e:
                logger.warning(f"Backup tier {tier.name} clear failed for {key.slug()}: {e}")
                out[tier.name] = False
        return out
