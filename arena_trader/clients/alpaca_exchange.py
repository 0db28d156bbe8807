"""
AlpacaExchangeClient - paper/live venue adapter over alpaca-py.

Alpaca has no per-order leverage, so orders are sized by quantity and the
leverage carried on the order is an accounting figure on our side only.
Protective levels become resting GTC stop and limit orders.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from alpaca.data.historical import StockHistoricalDataClient
from alpaca.data.requests import StockBarsRequest, StockLatestQuoteRequest, StockSnapshotRequest
from alpaca.data.timeframe import TimeFrame, TimeFrameUnit
from alpaca.trading.client import TradingClient
from alpaca.trading.enums import OrderSide, OrderStatus, PositionSide, TimeInForce
from alpaca.trading.requests import LimitOrderRequest, MarketOrderRequest, StopOrderRequest

from ..errors import ExecutionFailure
from ..schemas import (
    AccountState,
    Candle,
    Direction,
    ExchangePosition,
    ExecutableOrder,
    InstrumentClass,
    MarketQuote,
    OrderFill,
    Position,
)
from .base import ExchangeClient, interval_seconds

logger = logging.getLogger("arena_trader.clients.alpaca")

DEFAULT_UNIVERSE = [
    "SPY", "QQQ", "IWM", "AAPL", "MSFT", "NVDA", "AMZN", "META", "GOOGL", "TSLA",
    "AMD", "NFLX", "AVGO", "JPM", "XOM", "COIN", "PLTR", "SMCI", "MU", "INTC",
]

_FAILED_STATUSES = {OrderStatus.CANCELED, OrderStatus.EXPIRED, OrderStatus.REJECTED}


class AlpacaExchangeClient(ExchangeClient):
    """One Alpaca account per agent."""

    provider_name = "alpaca"

    def __init__(
        self,
        key_id: str,
        secret_key: str,
        paper: bool = True,
        universe: Optional[Sequence[str]] = None,
        fill_poll_attempts: int = 20,
        fill_poll_interval: float = 0.5,
    ):
        self.client = TradingClient(api_key=key_id, secret_key=secret_key, paper=paper)
        self.data_client = StockHistoricalDataClient(api_key=key_id, secret_key=secret_key)
        self.universe = list(universe or DEFAULT_UNIVERSE)
        self.fill_poll_attempts = fill_poll_attempts
        self.fill_poll_interval = fill_poll_interval

    def get_quote(self, instrument: str) -> MarketQuote:
        request = StockLatestQuoteRequest(symbol_or_symbols=instrument)
        quotes = self.data_client.get_stock_latest_quote(request)
        if instrument not in quotes:
            raise ValueError(f"No quote for '{instrument}'")
        quote = quotes[instrument]
        bid, ask = float(quote.bid_price or 0), float(quote.ask_price or 0)
        price = (bid + ask) / 2 if bid and ask else (ask or bid)
        if price <= 0:
            raise ValueError(f"No usable price for '{instrument}'")
        return MarketQuote(
            instrument=instrument,
            instrument_class=InstrumentClass.PERPETUAL,
            price=price,
            quantity_precision=3,
        )

    def get_markets(self, limit: int) -> List[MarketQuote]:
        request = StockSnapshotRequest(symbol_or_symbols=self.universe)
        snapshots = self.data_client.get_stock_snapshot(request)

        quotes = []
        for symbol, snap in snapshots.items():
            if snap is None or snap.latest_trade is None:
                continue
            price = float(snap.latest_trade.price)
            volume = float(snap.daily_bar.volume) * price if snap.daily_bar else 0.0
            change = 0.0
            if snap.previous_daily_bar and snap.previous_daily_bar.close:
                prev_close = float(snap.previous_daily_bar.close)
                change = (price - prev_close) / prev_close * 100
            quotes.append(MarketQuote(
                instrument=symbol,
                price=price,
                volume=volume,
                change_24h=round(change, 2),
                quantity_precision=3,
            ))

        quotes.sort(key=lambda q: q.volume, reverse=True)
        return quotes[:limit]

    def _wait_for_fill(self, order_id: str, operation: str) -> OrderFill:
        for _ in range(self.fill_poll_attempts):
            order = self.client.get_order_by_id(order_id)
            if order.status == OrderStatus.FILLED and order.filled_avg_price is not None:
                return OrderFill(
                    order_id=str(order.id),
                    filled_quantity=float(order.filled_qty),
                    avg_price=float(order.filled_avg_price),
                    fee=0.0,
                )
            if order.status in _FAILED_STATUSES:
                raise ExecutionFailure(f"Order {order_id} {order.status.value}", operation=operation)
            time.sleep(self.fill_poll_interval)
        raise ExecutionFailure(f"Order {order_id} not filled in time", operation=operation)

    def place_order(self, order: ExecutableOrder) -> OrderFill:
        side = OrderSide.BUY if order.direction == Direction.LONG else OrderSide.SELL
        request = MarketOrderRequest(
            symbol=order.instrument,
            qty=order.quantity,
            side=side,
            time_in_force=TimeInForce.DAY,
        )
        submitted = self.client.submit_order(request)
        logger.info(f"ORDER PLACED: {order.instrument} {side.value} {order.quantity} -> {submitted.id}")
        return self._wait_for_fill(str(submitted.id), "place_order")

    def close_position(self, position: Position) -> OrderFill:
        side = OrderSide.SELL if position.direction == Direction.LONG else OrderSide.BUY
        request = MarketOrderRequest(
            symbol=position.instrument,
            qty=position.quantity,
            side=side,
            time_in_force=TimeInForce.DAY,
        )
        submitted = self.client.submit_order(request)
        logger.info(f"CLOSE PLACED: {position.instrument} {side.value} {position.quantity} -> {submitted.id}")
        return self._wait_for_fill(str(submitted.id), "close_position")

    def place_protective_order(self, position: Position, kind: str, trigger_price: float) -> str:
        side = OrderSide.SELL if position.direction == Direction.LONG else OrderSide.BUY
        if kind == "stop_loss":
            request = StopOrderRequest(
                symbol=position.instrument,
                qty=position.quantity,
                side=side,
                time_in_force=TimeInForce.GTC,
                stop_price=round(trigger_price, 2),
            )
        else:
            request = LimitOrderRequest(
                symbol=position.instrument,
                qty=position.quantity,
                side=side,
                time_in_force=TimeInForce.GTC,
                limit_price=round(trigger_price, 2),
            )
        order = self.client.submit_order(request)
        return str(order.id)

    def cancel_order(self, order_id: str) -> None:
        self.client.cancel_order_by_id(order_id)

    def get_account_state(self) -> AccountState:
        # equity includes the full market value of open positions; the
        # orchestrator converts it with the ledger's committed collateral
        account = self.client.get_account()
        equity = float(account.equity)
        cash = float(account.cash)
        unrealized = sum(float(p.unrealized_pl or 0) for p in self.client.get_all_positions())
        return AccountState(equity=equity, cash=cash, unrealized_pnl=unrealized)

    def get_open_positions(self) -> List[ExchangePosition]:
        positions = []
        for held in self.client.get_all_positions():
            quantity = abs(float(held.qty))
            if quantity <= 0:
                continue
            positions.append(ExchangePosition(
                instrument=held.symbol,
                direction=Direction.SHORT if held.side == PositionSide.SHORT else Direction.LONG,
                quantity=quantity,
                entry_price=float(held.avg_entry_price),
                unrealized_pnl=float(held.unrealized_pl or 0),
            ))
        return positions

    def get_klines(self, instrument: str, interval: str, limit: int) -> List[Candle]:
        amount, unit = _timeframe(interval)
        # markets close overnight and at weekends, so look back well past `limit` bars
        span = timedelta(seconds=interval_seconds(interval) * limit * 4 + 7 * 86400)
        request = StockBarsRequest(
            symbol_or_symbols=instrument,
            timeframe=TimeFrame(amount, unit),
            start=datetime.now(timezone.utc) - span,
        )
        bars = self.data_client.get_stock_bars(request).data.get(instrument, [])
        return [
            Candle(
                timestamp=bar.timestamp,
                open=float(bar.open),
                high=float(bar.high),
                low=float(bar.low),
                close=float(bar.close),
                volume=float(bar.volume),
            )
            for bar in bars[-limit:]
        ]


def _timeframe(interval: str):
    seconds = interval_seconds(interval)
    if seconds % 86400 == 0:
        return seconds // 86400, TimeFrameUnit.Day
    if seconds % 3600 == 0:
        return seconds // 3600, TimeFrameUnit.Hour
    return seconds // 60, TimeFrameUnit.Minute
