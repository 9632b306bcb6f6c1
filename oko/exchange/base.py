"""
Exchange adapter interface.

The guard engine, ladder and position opener are written once against this
interface. Every method returns a CallResult so callers see a classified error
instead of an exception for venue failures.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from oko.domain.models import Side
from oko.exchange.instruments import InstrumentRules
from oko.utils.retry import CallResult


@dataclass(frozen=True)
class RemotePosition:
    """Position as reported by the exchange."""
    symbol: str
    side: Side
    size: Decimal
    entry_price: Decimal
    mark_price: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    initial_margin: Decimal = Decimal("0")
    leverage: Decimal = Decimal("1")
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None

    @property
    def has_stop_loss(self) -> bool:
        return self.stop_loss is not None and self.stop_loss > 0

    @property
    def has_take_profit(self) -> bool:
        return self.take_profit is not None and self.take_profit > 0

    @property
    def is_open(self) -> bool:
        return self.size > 0


@dataclass(frozen=True)
class OrderAck:
    order_id: str
    symbol: str
    side: Side
    qty: Decimal
    reduce_only: bool = False
    client_order_id: Optional[str] = None


class ExchangeAdapter(ABC):
    """Minimal venue surface the guard engine needs."""

    name: str = "exchange"

    @abstractmethod
    async def get_positions(self) -> CallResult[List[RemotePosition]]:
        """All open positions (size > 0)."""

    async def get_position(self, symbol: str, side: Optional[Side] = None) -> CallResult[Optional[RemotePosition]]:
        """Single open position for a symbol, or None when flat."""
        result = await self.get_positions()
        if not result.ok:
            return CallResult.failure(result.error, result.attempts)
        for remote in result.value:
            if remote.symbol == symbol and (side is None or remote.side == side):
                return CallResult.success(remote, result.attempts)
        return CallResult.success(None, result.attempts)

    @abstractmethod
    async def get_mark_price(self, symbol: str) -> CallResult[Decimal]:
        ...

    @abstractmethod
    async def get_instrument(self, symbol: str) -> CallResult[InstrumentRules]:
        ...

    @abstractmethod
    async def place_market_order(
        self,
        symbol: str,
        side: Side,
        qty: Decimal,
        reduce_only: bool = False,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
    ) -> CallResult[OrderAck]:
        """Market order. side is the position side being opened, or the side being reduced when reduce_only."""

    @abstractmethod
    async def set_protection(
        self,
        symbol: str,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
    ) -> CallResult[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> CallResult[Dict[str, Any]]:
        ...

    async def close_position(self, symbol: str, side: Side, qty: Decimal) -> CallResult[OrderAck]:
        """Reduce-only market close of qty on a position of the given side."""
        return await self.place_market_order(symbol, side, qty, reduce_only=True)

    async def close(self) -> None:
        """Release network resources."""
        return None
