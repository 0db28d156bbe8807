"""
MarketDataCache - TTL-refreshed snapshot of tradable instruments.

Purpose: Hold the top-N instruments by volume for decision context, and serve
per-instrument quotes for sizing, refetching any quote older than the TTL.
Indicator snapshots for the decision context are cached the same way.
Reads go through the provider's call gate with bounded retry.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..clients.base import ExchangeClient
from ..config import TradingConfig
from ..resilience import CallGate, RetryConfig, gated_call, with_retry
from ..schemas import MarketQuote, TechnicalSnapshot, utc_now
from ..store import Store
from .indicators import analyze

logger = logging.getLogger("arena_trader.engine.market_data")


class MarketDataCache:
    """Shared quote cache; entries are replaced wholesale, never merged."""

    def __init__(self, config: TradingConfig, store: Store, clock: Callable[[], datetime] = utc_now):
        self.config = config
        self.store = store
        self.clock = clock
        self.retry = RetryConfig(
            max_attempts=config.read_retry_attempts,
            base_delay_sec=config.read_retry_base_delay,
        )
        self._quotes: Dict[str, MarketQuote] = {}
        self._ranked: List[str] = []
        self.refreshed_at: Optional[datetime] = None
        self._technical: Dict[str, TechnicalSnapshot] = {}

        persisted = store.get_market()
        if persisted:
            self._replace(persisted)
            self.refreshed_at = max(q.refreshed_at for q in persisted)

    def _replace(self, quotes: List[MarketQuote]) -> None:
        self._quotes = {q.instrument: q for q in quotes}
        self._ranked = [q.instrument for q in quotes]

    def _is_fresh(self, quote: MarketQuote) -> bool:
        return self.clock() - quote.refreshed_at < timedelta(seconds=self.config.market_ttl_seconds)

    def is_stale(self) -> bool:
        """True when the ranked snapshot is older than the market refresh cadence."""
        if self.refreshed_at is None:
            return True
        age = self.clock() - self.refreshed_at
        return age >= timedelta(seconds=self.config.market_refresh_seconds)

    async def refresh(self, exchange: ExchangeClient, gate: CallGate) -> List[MarketQuote]:
        """Replace the snapshot with the exchange's top instruments by volume."""
        quotes = await with_retry(
            lambda: gated_call(
                gate,
                exchange.get_markets,
                self.config.market_top_n,
                timeout=self.config.call_timeout_seconds,
                operation="get_markets",
            ),
            operation="get_markets",
            config=self.retry,
        )
        now = self.clock()
        quotes = [q.model_copy(update={"refreshed_at": now}) for q in quotes if q.price > 0]
        quotes.sort(key=lambda q: q.volume, reverse=True)
        quotes = quotes[: self.config.market_top_n]

        self._replace(quotes)
        self.refreshed_at = now
        self.store.save_market(quotes)
        logger.info(f"Market refreshed: {len(quotes)} instruments")
        return quotes

    async def quote(self, exchange: ExchangeClient, gate: CallGate, instrument: str) -> Optional[MarketQuote]:
        """
        Fresh quote for one instrument.

        Returns None when the venue does not know the instrument; transport
        failures propagate after retries.
        """
        instrument = instrument.upper()
        cached = self._quotes.get(instrument)
        if cached is not None and self._is_fresh(cached):
            return cached

        try:
            fetched = await with_retry(
                lambda: gated_call(
                    gate,
                    exchange.get_quote,
                    instrument,
                    timeout=self.config.call_timeout_seconds,
                    operation="get_quote",
                ),
                operation=f"get_quote {instrument}",
                config=self.retry,
            )
        except ValueError as e:
            logger.info(f"No quote for {instrument}: {e}")
            return None

        fetched = fetched.model_copy(update={"refreshed_at": self.clock()})
        if cached is not None:
            fetched = fetched.model_copy(update={
                "volume": fetched.volume or cached.volume,
                "change_24h": fetched.change_24h or cached.change_24h,
            })
        self._quotes[instrument] = fetched
        return fetched

    async def technical(
        self,
        exchange: ExchangeClient,
        gate: CallGate,
        instruments: List[str],
    ) -> Dict[str, TechnicalSnapshot]:
        """
        Indicator snapshots for `instruments`, refetching candles older than
        `technical_ttl_seconds`. Instruments whose candles cannot be read are
        left out; one bad symbol never blocks the others.
        """
        ttl = timedelta(seconds=self.config.technical_ttl_seconds)
        result: Dict[str, TechnicalSnapshot] = {}
        for instrument in instruments:
            cached = self._technical.get(instrument)
            if cached is not None and self.clock() - cached.computed_at < ttl:
                result[instrument] = cached
                continue
            try:
                intraday = await self._klines(exchange, gate, instrument, self.config.intraday_interval,
                                              self.config.intraday_candles)
                long_term = await self._klines(exchange, gate, instrument, self.config.long_term_interval,
                                               self.config.long_term_candles)
            except Exception as e:
                logger.warning(f"No technical analysis for {instrument}: {e}")
                continue

            snapshot = analyze(
                instrument,
                intraday,
                long_term,
                intraday_interval=self.config.intraday_interval,
                long_term_interval=self.config.long_term_interval,
            )
            if snapshot is None:
                continue
            snapshot = snapshot.model_copy(update={"computed_at": self.clock()})
            self._technical[instrument] = snapshot
            result[instrument] = snapshot
        return result

    async def _klines(self, exchange: ExchangeClient, gate: CallGate, instrument: str, interval: str, limit: int):
        return await with_retry(
            lambda: gated_call(
                gate,
                exchange.get_klines,
                instrument,
                interval,
                limit,
                timeout=self.config.call_timeout_seconds,
                operation="get_klines",
            ),
            operation=f"get_klines {instrument} {interval}",
            config=self.retry,
        )

    def get(self, instrument: str) -> Optional[MarketQuote]:
        """Cached quote regardless of age."""
        return self._quotes.get(instrument.upper())

    def snapshot(self) -> List[MarketQuote]:
        """Ranked instruments, highest volume first."""
        return [self._quotes[i] for i in self._ranked if i in self._quotes]

    @property
    def instruments(self) -> List[str]:
        return list(self._ranked)
