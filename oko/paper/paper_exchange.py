"""
Paper exchange: an in-memory ExchangeAdapter.

Used for dry-run mode and tests. Keeps positions, mark prices and instrument
rules in memory, records every call, and supports scripted per-method fault
injection plus venue quirks seen in production:

- partial closes that silently drop attached protection
- close orders that are acknowledged but never take effect
- (opt-in) stop losses rejected when the mark already crossed them
"""
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import itertools

from oko.domain.models import Side
from oko.exchange.base import ExchangeAdapter, OrderAck, RemotePosition
from oko.exchange.error_classifier import ClassifiedError, ErrorType
from oko.exchange.instruments import InstrumentRules
from oko.monitoring.logger import get_logger
from oko.utils.retry import CallResult

logger = get_logger(__name__)

DEFAULT_RULES = dict(
    qty_step=Decimal("0.001"),
    min_qty=Decimal("0.001"),
    tick_size=Decimal("0.01"),
    min_notional=Decimal("0"),
)


@dataclass
class _PaperPosition:
    symbol: str
    side: Side
    size: Decimal
    entry_price: Decimal
    leverage: Decimal
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None


class PaperExchange(ExchangeAdapter):
    """In-memory venue."""

    name = "paper"

    def __init__(self, drop_protection_on_partial_close: bool = False):
        self.drop_protection_on_partial_close = drop_protection_on_partial_close
        self.ignore_closes = False
        # Reject a stop loss already on the losing side of the mark, as Bybit does
        self.reject_crossed_stops = False
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._positions: Dict[str, _PaperPosition] = {}
        self._prices: Dict[str, Decimal] = {}
        self._rules: Dict[str, InstrumentRules] = {}
        self._faults: Dict[str, List[ClassifiedError]] = {}
        self._sticky_faults: Dict[str, ClassifiedError] = {}
        self._order_ids = itertools.count(1)

    # ---------- scenario setup ----------

    def seed_position(
        self,
        symbol: str,
        side: Side,
        size: Decimal,
        entry_price: Decimal,
        *,
        leverage: Decimal = Decimal("10"),
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
        mark_price: Optional[Decimal] = None,
    ) -> None:
        self._positions[symbol] = _PaperPosition(
            symbol, Side.parse(side), Decimal(size), Decimal(entry_price), Decimal(leverage), stop_loss, take_profit
        )
        self._prices[symbol] = Decimal(mark_price if mark_price is not None else entry_price)

    def remove_position(self, symbol: str) -> None:
        """Simulate a position closed outside the engine (liquidation, manual close)."""
        self._positions.pop(symbol, None)

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol] = Decimal(price)

    def set_rules(self, rules: InstrumentRules) -> None:
        self._rules[rules.symbol] = rules

    def clear_protection(self, symbol: str, stop_loss: bool = True, take_profit: bool = True) -> None:
        pos = self._positions.get(symbol)
        if pos is None:
            return
        if stop_loss:
            pos.stop_loss = None
        if take_profit:
            pos.take_profit = None

    def inject_fault(self, method: str, error: ClassifiedError, times: int = 1) -> None:
        """Fail the next `times` calls of method with error."""
        self._faults.setdefault(method, []).extend([error] * times)

    def fail_always(self, method: str, error: Optional[ClassifiedError]) -> None:
        """Fail every call of method until called again with None."""
        if error is None:
            self._sticky_faults.pop(method, None)
        else:
            self._sticky_faults[method] = error

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    # ---------- internals ----------

    def _record(self, method: str, **kwargs: Any) -> Optional[ClassifiedError]:
        self.calls.append((method, kwargs))
        if method in self._sticky_faults:
            return self._sticky_faults[method]
        queue = self._faults.get(method)
        if queue:
            return queue.pop(0)
        return None

    def _rules_for(self, symbol: str) -> InstrumentRules:
        return self._rules.get(symbol) or InstrumentRules(symbol=symbol, **DEFAULT_RULES)

    def _snapshot(self, pos: _PaperPosition) -> RemotePosition:
        mark = self._prices.get(pos.symbol, pos.entry_price)
        direction = Decimal("1") if pos.side == Side.LONG else Decimal("-1")
        pnl = (mark - pos.entry_price) * pos.size * direction
        margin = pos.entry_price * pos.size / pos.leverage if pos.leverage else Decimal("0")
        return RemotePosition(
            symbol=pos.symbol,
            side=pos.side,
            size=pos.size,
            entry_price=pos.entry_price,
            mark_price=mark,
            unrealized_pnl=pnl,
            initial_margin=margin,
            leverage=pos.leverage,
            stop_loss=pos.stop_loss,
            take_profit=pos.take_profit,
        )

    # ---------- adapter surface ----------

    async def get_positions(self) -> CallResult[List[RemotePosition]]:
        fault = self._record("get_positions")
        if fault:
            return CallResult.failure(fault)
        return CallResult.success([self._snapshot(p) for p in self._positions.values() if p.size > 0])

    async def get_mark_price(self, symbol: str) -> CallResult[Decimal]:
        fault = self._record("get_mark_price", symbol=symbol)
        if fault:
            return CallResult.failure(fault)
        price = self._prices.get(symbol)
        if price is None:
            return CallResult.failure(ClassifiedError(ErrorType.TRADE_FAULT, f"No mark price for {symbol}"))
        return CallResult.success(price)

    async def get_instrument(self, symbol: str) -> CallResult[InstrumentRules]:
        fault = self._record("get_instrument", symbol=symbol)
        if fault:
            return CallResult.failure(fault)
        return CallResult.success(self._rules_for(symbol))

    async def place_market_order(
        self,
        symbol: str,
        side: Side,
        qty: Decimal,
        reduce_only: bool = False,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
    ) -> CallResult[OrderAck]:
        fault = self._record(
            "place_market_order",
            symbol=symbol, side=side, qty=qty, reduce_only=reduce_only,
            stop_loss=stop_loss, take_profit=take_profit,
        )
        if fault:
            return CallResult.failure(fault)

        rules = self._rules_for(symbol)
        qty = rules.round_qty(Decimal(qty))
        if qty <= 0:
            return CallResult.failure(ClassifiedError(ErrorType.TRADE_FAULT, f"order size below minimum for {symbol}"))

        ack = OrderAck(order_id=f"paper-{next(self._order_ids)}", symbol=symbol, side=side, qty=qty, reduce_only=reduce_only)
        pos = self._positions.get(symbol)

        if reduce_only:
            if pos is None or pos.side != side:
                return CallResult.failure(ClassifiedError(ErrorType.TRADE_FAULT, f"position not found: {symbol}"))
            if self.ignore_closes:
                logger.debug("PAPER_CLOSE_IGNORED", symbol=symbol, qty=str(qty))
                return CallResult.success(ack)
            remaining = pos.size - min(qty, pos.size)
            if remaining <= 0:
                del self._positions[symbol]
            else:
                pos.size = remaining
                if self.drop_protection_on_partial_close:
                    pos.stop_loss = None
                    pos.take_profit = None
            logger.debug("PAPER_REDUCE", symbol=symbol, qty=str(qty), remaining=str(max(remaining, Decimal("0"))))
            return CallResult.success(ack)

        price = self._prices.get(symbol)
        if price is None:
            return CallResult.failure(ClassifiedError(ErrorType.TRADE_FAULT, f"No mark price for {symbol}"))
        if pos is None:
            self._positions[symbol] = _PaperPosition(symbol, side, qty, price, Decimal("10"), stop_loss, take_profit)
        elif pos.side == side:
            total = pos.size + qty
            pos.entry_price = (pos.entry_price * pos.size + price * qty) / total
            pos.size = total
        else:
            return CallResult.failure(ClassifiedError(ErrorType.TRADE_FAULT, f"position side conflict on {symbol}"))
        logger.debug("PAPER_FILL", symbol=symbol, side=side.value, qty=str(qty), price=str(price))
        return CallResult.success(ack)

    async def set_protection(
        self,
        symbol: str,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
    ) -> CallResult[Dict[str, Any]]:
        fault = self._record("set_protection", symbol=symbol, stop_loss=stop_loss, take_profit=take_profit)
        if fault:
            return CallResult.failure(fault)
        pos = self._positions.get(symbol)
        if pos is None:
            return CallResult.failure(ClassifiedError(ErrorType.TRADE_FAULT, f"position not found: {symbol}"))
        mark = self._prices.get(symbol, pos.entry_price)
        if self.reject_crossed_stops and stop_loss is not None:
            crossed = stop_loss >= mark if pos.side == Side.LONG else stop_loss <= mark
            if crossed:
                side = "Buy" if pos.side == Side.LONG else "Sell"
                relation = "lower" if pos.side == Side.LONG else "higher"
                return CallResult.failure(ClassifiedError(
                    ErrorType.TRADE_FAULT,
                    f"StopLoss:{stop_loss} set for {side} position should be {relation} than base_price:{mark}",
                    "10001",
                ))
        rules = self._rules_for(symbol)
        if stop_loss is not None:
            pos.stop_loss = rules.round_price(stop_loss)
        if take_profit is not None:
            pos.take_profit = rules.round_price(take_profit)
        return CallResult.success({})

    async def set_leverage(self, symbol: str, leverage: int) -> CallResult[Dict[str, Any]]:
        fault = self._record("set_leverage", symbol=symbol, leverage=leverage)
        if fault:
            return CallResult.failure(fault)
        pos = self._positions.get(symbol)
        if pos is not None:
            self._positions[symbol] = replace(pos, leverage=Decimal(leverage))
        return CallResult.success({})
