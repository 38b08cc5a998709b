# snapshots.py — balance snapshot model and fixed-point amount helpers
#
# Amounts are never floats: every balance is a non-negative decimal string
# with six fractional digits, truncated (not rounded) from the raw value.

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from settings import NATIVE_DECIMALS, NATIVE_SYMBOLS

logger = logging.getLogger("balance_guard")

DISPLAY_PLACES = 6
QUANTUM = Decimal(1).scaleb(-DISPLAY_PLACES)  # 0.000001
ZERO_AMOUNT = "0.000000"
WORKING_PRECISION = 80


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


class Source(str, Enum):
    CHAIN = "chain"
    SHARED_CACHE = "sharedCache"
    SESSION = "session"
    LOCAL = "local"
    DURABLE = "durable"
    LAST_KNOWN = "lastKnown"
    EMERGENCY = "emergency"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_amount(value: Any) -> Decimal:
    """Parse a balance value into a finite, non-negative Decimal."""
    if isinstance(value, float):
        raise ValueError("float amounts are not accepted")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"not a decimal amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"amount is not finite: {value!r}")
    if amount < 0:
        raise ValueError(f"amount is negative: {value!r}")
    return amount


def format_amount(amount: Decimal) -> str:
    """Truncate to six fractional digits. Sign is preserved (deltas)."""
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        quantized = amount.quantize(QUANTUM, rounding=ROUND_DOWN)
    if quantized == 0:
        quantized = abs(quantized)
    return f"{quantized:f}"


def scale_raw(raw: Any, decimals: int) -> Decimal:
    """Convert an integer minor-unit balance (e.g. wei) to token units."""
    raw_str = str(raw).strip()
    if not raw_str.isdigit():
        raise ValueError(f"raw balance must be a non-negative integer: {raw!r}")
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        return Decimal(raw_str).scaleb(-int(decimals))


class BalanceSnapshot(BaseModel):
    """Immutable point-in-time balance table for one address on one network."""

    model_config = ConfigDict(frozen=True)

    address: str
    network: Network
    balances: Dict[str, str]
    captured_at: datetime = Field(default_factory=utcnow)
    source: Source

    @field_validator("address")
    @classmethod
    def _lower_address(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("balances")
    @classmethod
    def _canonical_balances(cls, value: Dict[str, str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for symbol, amount in value.items():
            symbol = str(symbol).strip()
            if not symbol:
                raise ValueError("token symbol must not be empty")
            out[symbol] = format_amount(parse_amount(amount))
        return out

    @field_validator("captured_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_usable(self) -> bool:
        return bool(self.balances)

    def amount(self, symbol: str) -> Decimal:
        return Decimal(self.balances.get(symbol, ZERO_AMOUNT))

    def tagged(self, source: Source) -> "BalanceSnapshot":
        if self.source == source:
            return self
        return self.model_copy(update={"source": source})

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.captured_at).total_seconds()


def snapshot_from_explorer(payload: Dict[str, Any], address: str, network: Network) -> BalanceSnapshot:
    """
    Build a chain-sourced snapshot from a ChainClient payload:
      {"native": "<decimal>", "tokens": [{"symbol", "decimals", "balanceRaw"}, ...]}
    Missing/invalid decimals default to 18, empty symbols are skipped and the
    first entry wins when a symbol repeats.
    """
    network = Network(network)
    balances: Dict[str, str] = {}
    native = payload.get("native")
    if native is not None:
        balances[NATIVE_SYMBOLS[network.value]] = format_amount(parse_amount(native))

    tokens: List[Dict[str, Any]] = payload.get("tokens") or []
    for token in tokens:
        symbol = str(token.get("symbol") or "").strip()
        if not symbol or symbol in balances:
            continue
        try:
            decimals = int(token.get("decimals"))
        except (TypeError, ValueError):
            decimals = NATIVE_DECIMALS
        if decimals < 0:
            decimals = NATIVE_DECIMALS
        try:
            amount = scale_raw(token.get("balanceRaw", "0"), decimals)
        except ValueError as e:
            logger.warning(f"Skipping token {symbol} for {address}: {e}")
            continue
        balances[symbol] = format_amount(amount)

    return BalanceSnapshot(address=address, network=network, balances=balances, source=Source.CHAIN)
