"""
Technical indicators - EMA, MACD, RSI and ATR over candle closes.

Purpose: Give the decision provider the same per-instrument readings a human
trader would look at: a short intraday timeframe and a longer trend timeframe.

All smoothing follows the common charting conventions: EMA and the MACD lines
are seeded with a simple average of the first `period` values, RSI and ATR use
Wilder's smoothing. Every function returns None when there is not enough
history instead of a misleading number.
"""
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..schemas import Candle, IntervalIndicators, TechnicalSnapshot

logger = logging.getLogger("arena_trader.engine.indicators")

MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
RECENT_CLOSES = 10


def ema_series(values: Sequence[float], period: int) -> np.ndarray:
    """EMA for every point from index `period - 1` on; empty when too short."""
    data = np.asarray(values, dtype=float)
    if period < 1 or len(data) < period:
        return np.empty(0)
    k = 2.0 / (period + 1)
    out = np.empty(len(data) - period + 1)
    out[0] = data[:period].mean()
    for i, value in enumerate(data[period:], start=1):
        out[i] = value * k + out[i - 1] * (1 - k)
    return out


def ema(values: Sequence[float], period: int) -> Optional[float]:
    series = ema_series(values, period)
    return float(series[-1]) if len(series) else None


def macd(
    closes: Sequence[float],
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> Optional[Tuple[float, Optional[float], Optional[float]]]:
    """
    Latest (macd, signal, histogram).

    Signal and histogram are None until there are `signal` MACD values to
    average.
    """
    slow_ema = ema_series(closes, slow)
    if not len(slow_ema):
        return None
    fast_ema = ema_series(closes, fast)[slow - fast:]
    line = fast_ema - slow_ema
    signal_line = ema_series(line, signal)
    if not len(signal_line):
        return float(line[-1]), None, None
    return float(line[-1]), float(signal_line[-1]), float(line[-1] - signal_line[-1])


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Wilder RSI; 100 when there were no losses over the window."""
    data = np.asarray(closes, dtype=float)
    if period < 1 or len(data) <= period:
        return None
    changes = np.diff(data)
    gains = np.clip(changes, 0, None)
    losses = np.clip(-changes, 0, None)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    return float(100 - 100 / (1 + avg_gain / avg_loss))


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Wilder Average True Range over high/low/close."""
    if period < 1 or len(candles) < period + 1:
        return None
    highs = np.array([c.high for c in candles], dtype=float)
    lows = np.array([c.low for c in candles], dtype=float)
    closes = np.array([c.close for c in candles], dtype=float)

    prev_close = closes[:-1]
    true_range = np.maximum.reduce([
        highs[1:] - lows[1:],
        np.abs(highs[1:] - prev_close),
        np.abs(lows[1:] - prev_close),
    ])

    value = true_range[:period].mean()
    for tr in true_range[period:]:
        value = (value * (period - 1) + tr) / period
    return float(value)


def interval_indicators(interval: str, candles: List[Candle]) -> IntervalIndicators:
    """All readings for one timeframe. Missing history leaves fields as None."""
    closes = [c.close for c in candles]
    volumes = np.array([c.volume for c in candles], dtype=float)
    macd_values = macd(closes)
    return IntervalIndicators(
        interval=interval,
        candles=len(candles),
        ema20=ema(closes, 20),
        ema50=ema(closes, 50),
        macd=macd_values[0] if macd_values else None,
        macd_signal=macd_values[1] if macd_values else None,
        macd_histogram=macd_values[2] if macd_values else None,
        rsi7=rsi(closes, 7),
        rsi14=rsi(closes, 14),
        atr3=atr(candles[-4:], 3),
        atr14=atr(candles, 14),
        current_volume=float(volumes[-1]) if len(volumes) else 0.0,
        avg_volume=float(volumes.mean()) if len(volumes) else 0.0,
        recent_closes=[round(c, 8) for c in closes[-RECENT_CLOSES:]],
    )


def analyze(
    instrument: str,
    intraday: List[Candle],
    long_term: List[Candle],
    intraday_interval: str = "3m",
    long_term_interval: str = "4h",
) -> Optional[TechnicalSnapshot]:
    """Combine both timeframes. None when there is no intraday history at all."""
    if not intraday:
        return None
    return TechnicalSnapshot(
        instrument=instrument,
        current_price=intraday[-1].close,
        intraday=interval_indicators(intraday_interval, intraday),
        long_term=interval_indicators(long_term_interval, long_term) if long_term else None,
    )
