# detector.py — balance change detection
# - ThresholdConfig: process-wide significance threshold (percent, optional absolute)
# - diff_snapshots: per-token deltas between a baseline and a fresh snapshot
# - ChangeDetector: per-user serialized cycles, bounded sweep over tracked wallets,
#   events handed to the notification dispatcher through an asyncio.Queue

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict

from registry import TrackedWallet
from resolver import BalanceResolver
from snapshots import BalanceSnapshot, Network, Source, QUANTUM, WORKING_PRECISION, format_amount, utcnow

logger = logging.getLogger("balance_guard")

EPSILON = QUANTUM  # 0.000001


class InvalidThreshold(ValueError):
    pass


# =========================================================
# Threshold configuration
# =========================================================
@dataclass(frozen=True)
class ThresholdSettings:
    percent: float
    absolute: Optional[Decimal] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "percent_change_threshold": self.percent,
            "absolute_change_threshold": format_amount(self.absolute) if self.absolute is not None else None,
        }


def _validate_percent(value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidThreshold("threshold must be a number")
    try:
        percent = float(value)
    except (TypeError, ValueError):
        raise InvalidThreshold(f"threshold must be a number, got {value!r}")
    if math.isnan(percent) or math.isinf(percent):
        raise InvalidThreshold("threshold must be finite")
    if percent < 0:
        raise InvalidThreshold("threshold must be >= 0")
    return percent


def _validate_absolute(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise InvalidThreshold("absolute threshold must be a decimal amount")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidThreshold(f"absolute threshold must be a decimal amount, got {value!r}")
    if not amount.is_finite() or amount < 0:
        raise InvalidThreshold("absolute threshold must be finite and >= 0")
    return amount


class ThresholdConfig:
    """
    Holds one immutable ThresholdSettings. set()/set_absolute() swap the whole
    object, so a detection cycle that captured current() keeps a consistent view.
    """

    def __init__(self, percent: float = 0.01, absolute: Any = None) -> None:
        self._settings = ThresholdSettings(
            percent=_validate_percent(percent),
            absolute=_validate_absolute(absolute) if absolute is not None else None,
        )

    def get(self) -> float:
        return self._settings.percent

    def set(self, percent: Any) -> None:
        new_percent = _validate_percent(percent)
        old = self._settings
        self._settings = ThresholdSettings(percent=new_percent, absolute=old.absolute)
        logger.info(f"Change threshold updated: {old.percent}% -> {new_percent}%")

    def set_absolute(self, amount: Any) -> None:
        new_absolute = _validate_absolute(amount) if amount is not None else None
        old = self._settings
        self._settings = ThresholdSettings(percent=old.percent, absolute=new_absolute)
        logger.info(f"Absolute change threshold updated: {old.absolute} -> {new_absolute}")

    def current(self) -> ThresholdSettings:
        return self._settings


# =========================================================
# Diffing
# =========================================================
class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    address: str
    network: Network
    token: str
    previous_amount: str
    current_amount: str
    delta: str
    direction: str
    kind: str
    source: Source
    detected_at: datetime


def is_significant(previous: Decimal, current: Decimal, settings: ThresholdSettings) -> bool:
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        delta = current - previous
        if delta == 0:
            return False
        if previous == 0 and current > 0:
            return True
        change_percent = abs(delta) / max(previous, EPSILON) * 100
        if change_percent >= Decimal(str(settings.percent)):
            return True
        if settings.absolute is not None and abs(delta) >= settings.absolute:
            return True
        return False


def _change_event(
    base: Dict[str, Any], before: Decimal, after: Decimal, source: Source, detected_at: datetime
) -> ChangeEvent:
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        delta = after - before
    return ChangeEvent(
        **base,
        previous_amount=format_amount(before),
        current_amount=format_amount(after),
        delta=format_amount(delta),
        direction="increase" if delta > 0 else "decrease",
        kind="new_token" if before == 0 and after > 0 else "change",
        source=source,
        detected_at=detected_at,
    )


def diff_snapshots(
    user_id: str,
    previous: BalanceSnapshot,
    current: BalanceSnapshot,
    settings: ThresholdSettings,
    detected_at: Optional[datetime] = None,
) -> List[ChangeEvent]:
    """One event per token whose move is significant; tokens are visited once each."""
    detected_at = detected_at or utcnow()
    events: List[ChangeEvent] = []
    for token in sorted(set(previous.balances) | set(current.balances)):
        before = previous.amount(token)
        after = current.amount(token)
        if not is_significant(before, after, settings):
            continue
        base = {"user_id": str(user_id), "address": current.address, "network": current.network, "token": token}
        events.append(_change_event(base, before, after, current.source, detected_at))
    return events


def merge_user_events(events: List[ChangeEvent]) -> List[ChangeEvent]:
    """
    Collapse a user's per-wallet events to one per token. Amounts are summed
    over the wallets that moved; a net-zero move (between the user's own
    wallets) produces no event. The first wallet's address and network are kept.
    """
    by_token: Dict[str, List[ChangeEvent]] = {}
    for event in events:
        by_token.setdefault(event.token, []).append(event)
    merged: List[ChangeEvent] = []
    for token, group in by_token.items():
        if len(group) == 1:
            merged.append(group[0])
            continue
        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            before = sum((Decimal(e.previous_amount) for e in group), Decimal(0))
            after = sum((Decimal(e.current_amount) for e in group), Decimal(0))
        if before == after:
            continue
        first = group[0]
        base = {"user_id": first.user_id, "address": first.address, "network": first.network, "token": token}
        merged.append(_change_event(base, before, after, first.source, first.detected_at))
    return merged


# =========================================================
# Baseline stores
# =========================================================
class BaselineStore(Protocol):
    async def load(self, user_id: str, address: str, network: Network) -> Optional[Dict[str, Any]]:
        ...

    async def store(
        self, user_id: str, address: str, network: Network, snapshot: BalanceSnapshot, observed_at: datetime
    ) -> bool:
        ...


class MemoryBaselineStore:
    def __init__(self) -> None:
        self._data: Dict[Tuple[str, str, str], Dict[str, Any]] = {}

    def _key(self, user_id: str, address: str, network: Network) -> Tuple[str, str, str]:
        return (str(user_id), address.lower(), Network(network).value)

    async def load(self, user_id: str, address: str, network: Network) -> Optional[Dict[str, Any]]:
        entry = self._data.get(self._key(user_id, address, network))
        return dict(entry) if entry else None

    async def store(
        self, user_id: str, address: str, network: Network, snapshot: BalanceSnapshot, observed_at: datetime
    ) -> bool:
        key = self._key(user_id, address, network)
        current = self._data.get(key)
        if current is not None and current["observed_at"] > observed_at:
            return False
        self._data[key] = {"snapshot": snapshot, "observed_at": observed_at}
        return True


# =========================================================
# Detector
# =========================================================
class DetectorState:
    IDLE = "idle"
    RESOLVING = "resolving"
    DIFFING = "diffing"
    EMITTING = "emitting"


class WalletRegistry(Protocol):
    def list_tracked(self) -> List[TrackedWallet]:
        ...

    def list_for_user(self, user_id: str) -> List[TrackedWallet]:
        ...


class ChangeDetector:
    def __init__(
        self,
        resolver: BalanceResolver,
        baselines: BaselineStore,
        thresholds: ThresholdConfig,
        registry: Optional[WalletRegistry] = None,
        outbox: Optional[asyncio.Queue] = None,
        concurrency: int = 8,
        cycle_timeout: Optional[float] = 30.0,
    ) -> None:
        self.resolver = resolver
        self.baselines = baselines
        self.thresholds = thresholds
        self.registry = registry
        self.outbox: asyncio.Queue = outbox if outbox is not None else asyncio.Queue()
        self.concurrency = max(1, int(concurrency))
        self.cycle_timeout = cycle_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._states: Dict[str, str] = {}
        self.last_sweep: Optional[Dict[str, Any]] = None

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def state(self, user_id: str) -> str:
        return self._states.get(str(user_id), DetectorState.IDLE)

    def states(self) -> Dict[str, str]:
        return {u: s for u, s in self._states.items() if s != DetectorState.IDLE}

    # ---------- one cycle ----------
    async def check(self, user_id: str, address: str, network: Network) -> List[ChangeEvent]:
        """Run one detection cycle for a single wallet of a user."""
        user_id = str(user_id)
        async with self._lock_for(user_id):
            try:
                events = await self._cycle(user_id, address, Network(network), self.thresholds.current())
                await self._emit(user_id, events)
                return events
            finally:
                self._states[user_id] = DetectorState.IDLE

    async def check_user(self, user_id: str, wallets: List[TrackedWallet]) -> List[ChangeEvent]:
        """Run one cycle over every wallet of a user, threshold read once, one event per token."""
        user_id = str(user_id)
        events: List[ChangeEvent] = []
        async with self._lock_for(user_id):
            settings = self.thresholds.current()
            try:
                for wallet in wallets:
                    events.extend(await self._cycle(user_id, wallet.address, wallet.network, settings))
                events = merge_user_events(events)
                await self._emit(user_id, events)
            finally:
                self._states[user_id] = DetectorState.IDLE
        return events

    async def _emit(self, user_id: str, events: List[ChangeEvent]) -> None:
        if not events:
            return
        self._states[user_id] = DetectorState.EMITTING
        for event in events:
            await self.outbox.put(event)
        logger.info(f"User {user_id}: {len(events)} balance change(s) queued")

    async def _cycle(
        self, user_id: str, address: str, network: Network, settings: ThresholdSettings
    ) -> List[ChangeEvent]:
        started = utcnow()
        self._states[user_id] = DetectorState.RESOLVING
        current = await self.resolver.resolve(user_id, address, network)
        previous = await self.baselines.load(user_id, address, network)

        self._states[user_id] = DetectorState.DIFFING
        if previous is not None and previous["observed_at"] > started:
            logger.info(f"Detector cycle for user {user_id} superseded by a newer baseline; discarding")
            return []
        events: List[ChangeEvent] = []
        if previous is None:
            logger.info(f"First observation for user {user_id} ({address}, {network.value}); baseline stored")
        else:
            events = diff_snapshots(user_id, previous["snapshot"], current, settings, detected_at=started)

        if not await self.baselines.store(user_id, address, network, current, started):
            logger.info(f"Detector cycle for user {user_id} lost the baseline race; discarding {len(events)} event(s)")
            return []
        if events:
            logger.info(f"User {user_id}: {len(events)} balance change(s) on {address} ({network.value})")
        return events

    # ---------- sweeps ----------
    async def _guarded(self, sem: asyncio.Semaphore, user_id: str, wallets: List[TrackedWallet]) -> List[ChangeEvent]:
        async with sem:
            if self.cycle_timeout:
                return await asyncio.wait_for(self.check_user(user_id, wallets), timeout=self.cycle_timeout)
            return await self.check_user(user_id, wallets)

    async def _run_users(self, by_user: Dict[str, List[TrackedWallet]]) -> Dict[str, Any]:
        started = time.time()
        sem = asyncio.Semaphore(self.concurrency)
        users = list(by_user)
        results = await asyncio.gather(
            *(self._guarded(sem, u, by_user[u]) for u in users),
            return_exceptions=True,
        )
        events = 0
        failures: Dict[str, str] = {}
        for user_id, result in zip(users, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                reason = "timeout" if isinstance(result, asyncio.TimeoutError) else str(result) or type(result).__name__
                logger.error(f"Detector cycle failed for user {user_id}: {reason}")
                failures[user_id] = reason
                continue
            events += len(result)
        report = {
            "checked": len(users) - len(failures),
            "events": events,
            "failures": failures,
            "duration_seconds": round(time.time() - started, 3),
        }
        return report

    async def _tracked(self, user_id: Optional[str] = None) -> List[TrackedWallet]:
        if self.registry is None:
            return []
        if user_id is None:
            return await asyncio.to_thread(self.registry.list_tracked)
        return await asyncio.to_thread(self.registry.list_for_user, str(user_id))

    async def sweep(self) -> Dict[str, Any]:
        wallets = await self._tracked()
        by_user: Dict[str, List[TrackedWallet]] = {}
        for wallet in wallets:
            by_user.setdefault(wallet.user_id, []).append(wallet)
        report = await self._run_users(by_user)
        self.last_sweep = dict(report, finished_at=utcnow().isoformat())
        return report

    async def force_check(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Immediate cycle, outside the schedule, for one user or every tracked user."""
        if user_id is None:
            logger.info("Forced detector sweep requested")
            return await self.sweep()
        wallets = await self._tracked(user_id)
        logger.info(f"Forced detector check for user {user_id} ({len(wallets)} wallet(s))")
        if not wallets:
            return {"checked": 0, "events": 0, "failures": {}, "duration_seconds": 0.0}
        return await self._run_users({str(user_id): wallets})

    async def run_forever(self, interval: float = 60.0) -> None:
        logger.info(f"Change detector started (interval {interval}s)")
        while True:
            try:
                report = await self.sweep()
                if report["events"] or report["failures"]:
                    logger.info(f"Detector sweep: {report}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Detector sweep error: {e}")
            await asyncio.sleep(interval)
