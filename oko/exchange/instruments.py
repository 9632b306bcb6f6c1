"""
Instrument trading rules (step sizes, minimums) and a TTL cache around them.

Quantities and prices must be rounded to these rules before submission or the
venue rejects the order.
"""
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Callable, Dict, Optional, Tuple

from oko.constants import INSTRUMENT_CACHE_SECONDS


def _quantize_to_step(value: Decimal, step: Decimal, rounding: str) -> Decimal:
    if step <= 0:
        return value
    units = (value / step).quantize(Decimal("1"), rounding=rounding)
    return (units * step).quantize(step)


@dataclass(frozen=True)
class InstrumentRules:
    symbol: str
    qty_step: Decimal
    min_qty: Decimal
    tick_size: Decimal
    min_notional: Decimal = Decimal("0")
    max_leverage: Decimal = Decimal("100")

    def round_qty(self, qty: Decimal) -> Decimal:
        """Round down to the quantity step (never rounds a close above what is held)."""
        return _quantize_to_step(Decimal(qty), self.qty_step, ROUND_DOWN)

    def round_price(self, price: Decimal) -> Decimal:
        return _quantize_to_step(Decimal(price), self.tick_size, ROUND_HALF_UP)

    def is_valid_qty(self, qty: Decimal, price: Optional[Decimal] = None) -> bool:
        if qty < self.min_qty:
            return False
        if price is not None and self.min_notional > 0 and qty * price < self.min_notional:
            return False
        return True


class InstrumentCache:
    """Per-symbol rules cache with a fixed time-to-live."""

    def __init__(self, ttl_seconds: float = INSTRUMENT_CACHE_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, InstrumentRules]] = {}

    def get(self, symbol: str) -> Optional[InstrumentRules]:
        entry = self._entries.get(symbol)
        if entry is None:
            return None
        stored_at, rules = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[symbol]
            return None
        return rules

    def put(self, rules: InstrumentRules) -> None:
        self._entries[rules.symbol] = (self._clock(), rules)

    def clear(self) -> None:
        self._entries.clear()
