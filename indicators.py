"""
indicators.py -- Trend/momentum/volatility indicators for the grid gate.

All inputs and outputs are Decimal so price comparisons never pick up
binary floating point drift.  The only float step is the square root
inside the Bollinger standard deviation, which is converted back to
Decimal before it is used.

Series are ordered oldest first (the most recent close is last).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Sequence

import numpy as np

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class BollingerBands:
    lower: Decimal
    middle: Decimal
    upper: Decimal
    std_dev: Decimal


def ema(values: Sequence[Decimal], period: int) -> list[Decimal]:
    """
    Exponential moving average.

    Seeded with the simple mean of the first ``period`` values, then
    ``ema = (value - prev) * 2/(period+1) + prev``.  Returns
    ``len(values) - period + 1`` points, or an empty list when there is
    not enough history.
    """
    if period < 1:
        raise ValueError("period must be >= 1")
    if len(values) < period:
        return []

    seed = sum((Decimal(v) for v in values[:period]), _ZERO) / period
    mult = Decimal(2) / Decimal(period + 1)
    out = [seed]
    prev = seed
    for v in values[period:]:
        prev = (Decimal(v) - prev) * mult + prev
        out.append(prev)
    return out


def _rsi_point(avg_gain: Decimal, avg_loss: Decimal) -> Decimal:
    if avg_loss == 0:
        return _HUNDRED
    return _HUNDRED - _HUNDRED / (Decimal(1) + avg_gain / avg_loss)


def rsi(values: Sequence[Decimal], period: int) -> list[Decimal]:
    """
    Relative strength index with Wilder smoothing.

    The first point averages the first ``period`` deltas; every later
    point uses ``avg = (avg * (period - 1) + current) / period`` for gains
    and losses separately.  Returns ``len(values) - period`` points.
    """
    if period < 1:
        raise ValueError("period must be >= 1")
    if len(values) <= period:
        return []

    gain = _ZERO
    loss = _ZERO
    for i in range(1, period + 1):
        change = Decimal(values[i]) - Decimal(values[i - 1])
        if change > 0:
            gain += change
        else:
            loss -= change
    avg_gain = gain / period
    avg_loss = loss / period
    out = [_rsi_point(avg_gain, avg_loss)]

    for i in range(period + 1, len(values)):
        change = Decimal(values[i]) - Decimal(values[i - 1])
        g = change if change > 0 else _ZERO
        l = -change if change < 0 else _ZERO
        avg_gain = (avg_gain * (period - 1) + g) / period
        avg_loss = (avg_loss * (period - 1) + l) / period
        out.append(_rsi_point(avg_gain, avg_loss))
    return out


def bollinger(values: Sequence[Decimal], multiplier: Decimal,
              period: int | None = None,
              quantum: Decimal | None = None) -> BollingerBands | None:
    """
    Bollinger bands over the trailing ``period`` values (all values when
    ``period`` is None): mean +/- multiplier * population std dev.

    ``quantum`` (usually the instrument tick size) rounds every band back
    into the price domain.  Returns None for an empty window.
    """
    window = list(values[-period:]) if period else list(values)
    if not window or (period and len(window) < period):
        return None

    dec = [Decimal(v) for v in window]
    mean = sum(dec, _ZERO) / len(dec)
    std = Decimal(repr(float(np.std(np.array([float(v) for v in dec]), ddof=0))))
    width = Decimal(multiplier) * std
    lower, upper = mean - width, mean + width
    if quantum is not None:
        lower = lower.quantize(quantum, rounding=ROUND_HALF_UP)
        mean = mean.quantize(quantum, rounding=ROUND_HALF_UP)
        upper = upper.quantize(quantum, rounding=ROUND_HALF_UP)
        std = std.quantize(quantum, rounding=ROUND_HALF_UP)
    return BollingerBands(lower=lower, middle=mean, upper=upper, std_dev=std)


def trend_ok(closes: Sequence[Decimal], *, fast: int = 10, slow: int = 30,
             rsi_period: int = 14, rsi_max: Decimal = Decimal("70"),
             fallback: Decimal = _ZERO) -> tuple[bool, dict]:
    """
    Trend gate: EMA(fast) > EMA(slow) and RSI < rsi_max.

    With too little history the EMAs fall back to ``fallback`` (the
    reference price) and RSI to 50, which keeps the gate closed.
    Returns (ok, readings) so callers can log what they saw.
    """
    fast_ema = ema(closes, fast)
    slow_ema = ema(closes, slow)
    rsis = rsi(closes, rsi_period)
    readings = {
        "ema_fast": fast_ema[-1] if fast_ema else Decimal(fallback),
        "ema_slow": slow_ema[-1] if slow_ema else Decimal(fallback),
        "rsi": rsis[-1] if rsis else Decimal(50),
    }
    ok = readings["ema_fast"] > readings["ema_slow"] and readings["rsi"] < Decimal(rsi_max)
    return ok, readings
