"""
MarketDataCache tests.
"""
import pytest

from arena_trader.engine.market_data import MarketDataCache

pytestmark = pytest.mark.asyncio


@pytest.fixture
def alpha(registry):
    return registry.get("alpha")


@pytest.fixture
def cache(config, store, clock):
    return MarketDataCache(config, store, clock=clock)


async def test_refresh_keeps_top_n_by_volume(cache, alpha, store):
    quotes = await cache.refresh(alpha.exchange, alpha.exchange_gate)

    assert [q.instrument for q in quotes] == ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
    assert cache.instruments == ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
    assert [q.instrument for q in store.get_market()] == cache.instruments


async def test_staleness_follows_refresh_cadence(cache, alpha, clock, config):
    assert cache.is_stale()
    await cache.refresh(alpha.exchange, alpha.exchange_gate)
    assert not cache.is_stale()

    clock.advance(seconds=config.market_refresh_seconds)
    assert cache.is_stale()


async def test_fresh_quote_served_from_cache(cache, alpha):
    await cache.refresh(alpha.exchange, alpha.exchange_gate)

    quote = await cache.quote(alpha.exchange, alpha.exchange_gate, "btcusdt")

    assert quote.price == 50000.0
    assert "get_quote" not in alpha.exchange.calls


async def test_expired_quote_refetched(cache, alpha, clock, config):
    await cache.refresh(alpha.exchange, alpha.exchange_gate)
    alpha.exchange.set_price("BTCUSDT", 48000.0)
    clock.advance(seconds=config.market_ttl_seconds)

    quote = await cache.quote(alpha.exchange, alpha.exchange_gate, "BTCUSDT")

    assert quote.price == 48000.0
    assert quote.refreshed_at == clock()
    assert cache.get("BTCUSDT").price == 48000.0


async def test_unknown_instrument_is_none(cache, alpha):
    assert await cache.quote(alpha.exchange, alpha.exchange_gate, "NOPEUSDT") is None


async def test_persisted_market_loaded(cache, alpha, config, store, clock):
    await cache.refresh(alpha.exchange, alpha.exchange_gate)

    reloaded = MarketDataCache(config, store, clock=clock)

    assert reloaded.instruments == cache.instruments
    assert not reloaded.is_stale()


async def test_technical_snapshot_cached_until_ttl(cache, alpha, clock, config):
    technical = await cache.technical(alpha.exchange, alpha.exchange_gate, ["BTCUSDT", "ETHUSDT"])

    assert list(technical) == ["BTCUSDT", "ETHUSDT"]
    btc = technical["BTCUSDT"]
    assert btc.current_price == pytest.approx(50000.0)
    assert btc.intraday.interval == config.intraday_interval
    assert btc.intraday.candles == config.intraday_candles
    assert btc.long_term.candles == config.long_term_candles
    assert btc.intraday.rsi14 is not None
    assert alpha.exchange.calls.count("get_klines") == 4

    await cache.technical(alpha.exchange, alpha.exchange_gate, ["BTCUSDT"])
    assert alpha.exchange.calls.count("get_klines") == 4

    clock.advance(seconds=config.technical_ttl_seconds)
    await cache.technical(alpha.exchange, alpha.exchange_gate, ["BTCUSDT"])
    assert alpha.exchange.calls.count("get_klines") == 6


async def test_technical_skips_unreadable_instrument(cache, alpha):
    alpha.exchange.fail_on("get_klines", times=2)

    technical = await cache.technical(alpha.exchange, alpha.exchange_gate, ["BTCUSDT", "ETHUSDT"])

    assert list(technical) == ["ETHUSDT"]
