"""
grid_machine.py

Grid engine for the KuCoin spot bot.

Design goals:
- Pure reducer: step(state, inputs, cfg) -> (next_state, actions)
- All I/O (ticker, candles, order polling, placement) stays in the runtime
- Decimal prices quantized to the instrument tick, never floats
- Deterministic client order ids (session id + sequence) so a replayed
  cycle re-issues the same idempotency tokens
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import Literal

import indicators
from kucoin_client import InstrumentSpec, TickerSnapshot

logger = logging.getLogger(__name__)


Side = Literal["buy", "sell"]
GridMode = Literal["ladder", "rotate"]
Phase = Literal["UNINITIALIZED", "GRID_ACTIVE", "MONITORING", "REBALANCING", "RESET"]

_ZERO = Decimal("0")


class GridConfigError(Exception):
    """The configured geometry cannot produce a usable ladder."""


@dataclass(frozen=True)
class EngineConfig:
    levels: int = 5
    range_pct: Decimal = Decimal("0.005")
    profit_pct: Decimal = Decimal("0.005")
    mode: GridMode = "ladder"
    total_risk: Decimal = Decimal("5")
    fee_rate: Decimal = Decimal("0.001")
    stop_loss_pct: Decimal = Decimal("0.015")
    max_idle_seconds: float = 7200.0
    trend_filter: bool = True
    ema_fast: int = 10
    ema_slow: int = 30
    rsi_period: int = 14
    rsi_max: Decimal = Decimal("70")
    bollinger_gate: bool = False
    bollinger_period: int = 20
    bollinger_mult: Decimal = Decimal("2")


@dataclass(frozen=True)
class GridLevel:
    price: Decimal
    side: Side
    order_id: str = ""
    client_oid: str = ""
    # Set on sells that close a grid buy; None for unpaired sells.
    entry_price: Decimal | None = None
    entry_fee: Decimal = _ZERO
    placed_at: float = 0.0


@dataclass(frozen=True)
class GridState:
    phase: Phase = "UNINITIALIZED"
    levels: tuple[GridLevel, ...] = ()
    reference_price: Decimal = _ZERO
    step: Decimal = _ZERO
    quantity: Decimal = _ZERO
    worst_buy_price: Decimal = _ZERO
    total_realized_pnl: Decimal = _ZERO
    total_fees_paid: Decimal = _ZERO
    round_trips: int = 0
    start_time: float = 0.0
    last_activity: float = 0.0
    session_id: str = ""
    next_seq: int = 1


# --------------------------- Inputs ---------------------------


@dataclass(frozen=True)
class FillEvent:
    level_price: Decimal
    order_id: str
    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class CycleInputs:
    now: float
    ticker: TickerSnapshot
    instrument: InstrumentSpec
    closes: tuple[Decimal, ...] = ()
    fills: tuple[FillEvent, ...] = ()
    # Level prices whose resting order was cancelled or failed on the exchange.
    cancelled: tuple[Decimal, ...] = ()
    session_id: str = ""


# --------------------------- Actions ---------------------------


@dataclass(frozen=True)
class CancelAllAction:
    reason: str = ""


@dataclass(frozen=True)
class PlaceOrderAction:
    price: Decimal
    side: Side
    size: Decimal
    client_oid: str
    reason: str = ""


@dataclass(frozen=True)
class BookFillAction:
    price: Decimal
    side: Side
    size: Decimal
    fee: Decimal
    realized_pnl: Decimal | None = None


@dataclass(frozen=True)
class ResetAction:
    reason: str


@dataclass(frozen=True)
class SkipAction:
    reason: str
    readings: dict = field(default_factory=dict)


Action = CancelAllAction | PlaceOrderAction | BookFillAction | ResetAction | SkipAction


# --------------------------- Helpers ---------------------------


def quantize_price(price: Decimal, tick: Decimal) -> Decimal:
    """Nearest multiple of tick, halves rounded away from zero."""
    if tick <= 0:
        raise GridConfigError(f"tick size must be positive (got {tick})")
    return (Decimal(price) / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP) * tick


def quantize_size(size: Decimal, lot_precision: int) -> Decimal:
    return Decimal(size).quantize(Decimal(1).scaleb(-lot_precision), rounding=ROUND_HALF_UP)


def grid_prices(reference: Decimal, range_pct: Decimal, levels: int,
                tick: Decimal) -> list[Decimal]:
    """
    levels + 1 evenly spaced prices across reference * (1 -/+ range_pct),
    tick-quantized, de-duplicated and ascending.
    """
    if levels < 1:
        raise GridConfigError(f"levels must be >= 1 (got {levels})")
    lower = reference * (1 - range_pct)
    upper = reference * (1 + range_pct)
    step = (upper - lower) / levels
    prices = sorted({quantize_price(lower + step * i, tick) for i in range(levels + 1)})
    prices = [p for p in prices if p > 0]
    if len(prices) < 2:
        raise GridConfigError(
            f"grid around {reference} with range {range_pct} collapses to "
            f"{len(prices)} distinct price(s) at tick {tick}")
    return prices


def order_quantity(reference: Decimal, cfg: EngineConfig, instrument: InstrumentSpec) -> Decimal:
    raw = cfg.total_risk / cfg.levels / reference
    return max(quantize_size(raw, instrument.lot_precision), instrument.min_size)


def derive_phase(state: GridState) -> Phase:
    if not state.levels:
        return "UNINITIALIZED"
    if any(not lv.order_id for lv in state.levels):
        return "REBALANCING"
    if state.last_activity <= state.start_time:
        return "GRID_ACTIVE"
    return "MONITORING"


def _find_level(state: GridState, price: Decimal) -> GridLevel | None:
    for lv in state.levels:
        if lv.price == price:
            return lv
    return None


def _without(levels: tuple[GridLevel, ...], price: Decimal) -> tuple[GridLevel, ...]:
    return tuple(lv for lv in levels if lv.price != price)


def _with(levels: tuple[GridLevel, ...], level: GridLevel) -> tuple[GridLevel, ...]:
    return tuple(sorted(levels + (level,), key=lambda lv: lv.price))


def _client_oid(session_id: str, seq: int) -> str:
    return f"{session_id}-{seq}"


def check_invariants(state: GridState, instrument: InstrumentSpec | None = None) -> list[str]:
    """
    Structural checks on a grid snapshot.  Empty list means healthy.
    """
    violations: list[str] = []
    prices = [lv.price for lv in state.levels]
    if len(prices) != len(set(prices)):
        violations.append("more than one level per price")
    if prices != sorted(prices):
        violations.append("levels must be ordered by price")
    for lv in state.levels:
        if lv.side not in ("buy", "sell"):
            violations.append(f"level {lv.price} has bad side {lv.side!r}")
        if lv.price <= 0:
            violations.append(f"level price must be > 0 (got {lv.price})")
        if lv.entry_price is not None and lv.side != "sell":
            violations.append(f"only sells carry an entry price ({lv.price})")
    if state.levels and state.quantity <= 0:
        violations.append("quantity must be > 0 while levels exist")

    if instrument is not None:
        for lv in state.levels:
            if lv.price % instrument.tick_size != 0:
                violations.append(f"level {lv.price} is not a multiple of tick {instrument.tick_size}")
        if state.levels:
            if state.quantity < instrument.min_size:
                violations.append(f"quantity {state.quantity} below min size {instrument.min_size}")
            exp = state.quantity.normalize().as_tuple().exponent
            if -int(exp) > instrument.lot_precision:
                violations.append(f"quantity {state.quantity} exceeds lot precision {instrument.lot_precision}")
    return violations


def _dec(value) -> Decimal:
    return Decimal(str(value))


def _opt_dec(value) -> Decimal | None:
    return None if value is None or value == "" else Decimal(str(value))


def to_dict(state: GridState) -> dict:
    return {
        "phase": state.phase,
        "grid_map": {
            str(lv.price): {
                "side": lv.side,
                "order_id": lv.order_id,
                "client_oid": lv.client_oid,
                "entry_price": None if lv.entry_price is None else str(lv.entry_price),
                "entry_fee": str(lv.entry_fee),
                "placed_at": lv.placed_at,
            }
            for lv in state.levels
        },
        "reference_price": str(state.reference_price),
        "step": str(state.step),
        "quantity": str(state.quantity),
        "worst_buy_price": str(state.worst_buy_price),
        "total_realized_pnl": str(state.total_realized_pnl),
        "total_fees_paid": str(state.total_fees_paid),
        "round_trips": state.round_trips,
        "start_time": state.start_time,
        "last_activity": state.last_activity,
        "session_id": state.session_id,
        "next_seq": state.next_seq,
    }


def from_dict(data: dict) -> GridState:
    levels = tuple(sorted(
        (
            GridLevel(
                price=_dec(price),
                side=lv["side"],
                order_id=str(lv.get("order_id") or ""),
                client_oid=str(lv.get("client_oid") or ""),
                entry_price=_opt_dec(lv.get("entry_price")),
                entry_fee=_dec(lv.get("entry_fee", "0")),
                placed_at=float(lv.get("placed_at", 0.0)),
            )
            for price, lv in (data.get("grid_map") or {}).items()
        ),
        key=lambda lv: lv.price,
    ))
    st = GridState(
        levels=levels,
        reference_price=_dec(data.get("reference_price", "0")),
        step=_dec(data.get("step", "0")),
        quantity=_dec(data.get("quantity", "0")),
        worst_buy_price=_dec(data.get("worst_buy_price", "0")),
        total_realized_pnl=_dec(data.get("total_realized_pnl", "0")),
        total_fees_paid=_dec(data.get("total_fees_paid", "0")),
        round_trips=int(data.get("round_trips", 0)),
        start_time=float(data.get("start_time", 0.0)),
        last_activity=float(data.get("last_activity", 0.0)),
        session_id=str(data.get("session_id", "")),
        next_seq=int(data.get("next_seq", 1)),
    )
    return replace(st, phase=derive_phase(st))


def reset_state(state: GridState) -> GridState:
    """Empty grid that keeps lifetime accounting and the order sequence."""
    return GridState(
        total_realized_pnl=state.total_realized_pnl,
        total_fees_paid=state.total_fees_paid,
        round_trips=state.round_trips,
        session_id=state.session_id,
        next_seq=state.next_seq,
    )


# --------------------------- Transition internals ---------------------------


def _gate(inputs: CycleInputs, cfg: EngineConfig, reference: Decimal) -> tuple[bool, str, dict]:
    readings: dict = {}
    if cfg.trend_filter:
        ok, readings = indicators.trend_ok(
            inputs.closes, fast=cfg.ema_fast, slow=cfg.ema_slow,
            rsi_period=cfg.rsi_period, rsi_max=cfg.rsi_max, fallback=reference,
        )
        if not ok:
            return False, "trend_filter", readings
    if cfg.bollinger_gate:
        bands = indicators.bollinger(inputs.closes, cfg.bollinger_mult,
                                     period=cfg.bollinger_period,
                                     quantum=inputs.instrument.tick_size)
        if bands is None:
            return False, "bollinger_insufficient_history", readings
        readings = dict(readings, bb_upper=bands.upper, bb_lower=bands.lower)
        if reference > bands.upper:
            return False, "bollinger_overextended", readings
    return True, "", readings


def _setup(state: GridState, inputs: CycleInputs, cfg: EngineConfig) -> tuple[GridState, list[Action]]:
    reference = inputs.ticker.mid
    ok, reason, readings = _gate(inputs, cfg, reference)
    if not ok:
        return state, [SkipAction(reason, readings)]

    tick = inputs.instrument.tick_size
    prices = grid_prices(reference, cfg.range_pct, cfg.levels, tick)
    step = max(quantize_price(reference * cfg.range_pct * 2 / cfg.levels, tick), tick)
    qty = order_quantity(reference, cfg, inputs.instrument)

    session = inputs.session_id or state.session_id
    seq = state.next_seq
    levels: list[GridLevel] = []
    actions: list[Action] = [CancelAllAction("grid_setup")]
    for price in prices:
        side: Side = "buy" if price < reference else "sell"
        oid = _client_oid(session, seq)
        seq += 1
        levels.append(GridLevel(price=price, side=side, client_oid=oid, placed_at=inputs.now))
        actions.append(PlaceOrderAction(price, side, qty, oid, reason="grid_setup"))

    buys = [lv.price for lv in levels if lv.side == "buy"]
    st = replace(
        state,
        levels=tuple(levels),
        reference_price=reference,
        step=step,
        quantity=qty,
        worst_buy_price=min(buys) if buys else prices[0],
        start_time=inputs.now,
        last_activity=inputs.now,
        session_id=session,
        next_seq=seq,
    )
    st = replace(st, phase=derive_phase(st))
    logger.info("Grid setup: ref=%s step=%s qty=%s levels=%s",
                reference, step, qty, ",".join(f"{lv.side}@{lv.price}" for lv in levels))
    return st, actions


def _mirror_target(level: GridLevel, cfg: EngineConfig, state: GridState,
                   tick: Decimal) -> tuple[Side, Decimal, Decimal] | None:
    """(side, first candidate price, walk increment) for the order that follows a fill."""
    if cfg.mode == "rotate":
        if level.side == "buy":
            return "sell", level.price + state.step, state.step
        return "buy", level.price - state.step, -state.step
    if level.side == "buy":
        return "sell", quantize_price(level.price * (1 + cfg.profit_pct), tick), tick
    return None


def _free_price(state: GridState, price: Decimal, walk: Decimal) -> Decimal | None:
    while _find_level(state, price) is not None:
        price += walk
    if price <= 0:
        return None
    return price


def _book_fill(st: GridState, fill: FillEvent, cfg: EngineConfig, inputs: CycleInputs
               ) -> tuple[GridState, BookFillAction | None, GridLevel | None]:
    """Remove the filled level and book its fee (and PnL for a paired sell)."""
    level = _find_level(st, fill.level_price)
    if level is None or (level.order_id and fill.order_id and level.order_id != fill.order_id):
        logger.debug("Ignoring fill for unknown level %s (%s)", fill.level_price, fill.order_id)
        return st, None, None

    size = fill.size if fill.size > 0 else st.quantity
    price = fill.price if fill.price > 0 else level.price
    fee = size * price * cfg.fee_rate
    pnl = None
    st = replace(st, levels=_without(st.levels, level.price),
                 total_fees_paid=st.total_fees_paid + fee,
                 last_activity=inputs.now)
    if level.side == "sell" and level.entry_price is not None:
        pnl = (price - level.entry_price) * size - (fee + level.entry_fee)
        st = replace(st, total_realized_pnl=st.total_realized_pnl + pnl,
                     round_trips=st.round_trips + 1)
        logger.info("Round trip closed: buy %s -> sell %s size %s pnl %s",
                    level.entry_price, price, size, pnl)
    # Carry the actual fill price/fee forward for pairing the mirror.
    filled = replace(level, entry_price=price, entry_fee=fee)
    return st, BookFillAction(level.price, level.side, size, fee, pnl), filled


def _place_mirror(st: GridState, filled: GridLevel, cfg: EngineConfig, inputs: CycleInputs
                  ) -> tuple[GridState, PlaceOrderAction | None]:
    target = _mirror_target(filled, cfg, st, inputs.instrument.tick_size)
    if target is None:
        return st, None
    side, candidate, walk = target
    mirror_price = _free_price(st, candidate, walk)
    if mirror_price is None:
        logger.warning("No free price for %s mirror of %s fill at %s",
                       side, filled.side, filled.price)
        return st, None

    paired = side == "sell" and filled.side == "buy"
    oid = _client_oid(st.session_id, st.next_seq)
    mirror = GridLevel(
        price=mirror_price,
        side=side,
        client_oid=oid,
        entry_price=filled.entry_price if paired else None,
        entry_fee=filled.entry_fee if paired else _ZERO,
        placed_at=inputs.now,
    )
    st = replace(st, levels=_with(st.levels, mirror), next_seq=st.next_seq + 1)
    if side == "buy" and (st.worst_buy_price <= 0 or mirror_price < st.worst_buy_price):
        st = replace(st, worst_buy_price=mirror_price)
    return st, PlaceOrderAction(mirror_price, side, st.quantity, oid,
                                reason=f"mirror_{filled.side}_{filled.price}")


def _risk_reason(st: GridState, inputs: CycleInputs, cfg: EngineConfig) -> str:
    if st.worst_buy_price > 0 and inputs.ticker.bid <= st.worst_buy_price * (1 - cfg.stop_loss_pct):
        return "stop_loss"
    if inputs.now - st.last_activity > cfg.max_idle_seconds:
        return "idle_timeout"
    return ""


def _monitor(state: GridState, inputs: CycleInputs, cfg: EngineConfig) -> tuple[GridState, list[Action]]:
    st = state
    booked: list[Action] = []
    pending: list[Action] = []

    # Levels left without an exchange id by an interrupted batch are sent
    # again under their original client oid.
    for lv in st.levels:
        if not lv.order_id:
            pending.append(PlaceOrderAction(lv.price, lv.side, st.quantity, lv.client_oid,
                                            reason="reissue_unplaced"))

    for price in sorted(inputs.cancelled):
        if _find_level(st, price) is not None:
            logger.warning("Order at %s was cancelled on the exchange, dropping level", price)
            st = replace(st, levels=_without(st.levels, price))

    # Every filled level leaves the ladder before any mirror is placed, so a
    # buy and a sell filling together can swap into each other's price.
    filled: list[GridLevel] = []
    for fill in sorted(inputs.fills, key=lambda f: f.level_price):
        st, book, level = _book_fill(st, fill, cfg, inputs)
        if book is not None:
            booked.append(book)
            filled.append(level)

    for level in filled:
        st, place = _place_mirror(st, level, cfg, inputs)
        if place is not None:
            pending.append(place)

    reason = _risk_reason(st, inputs, cfg)
    if reason:
        logger.warning("Grid reset (%s): bid=%s worst_buy=%s idle=%.0fs",
                       reason, inputs.ticker.bid, st.worst_buy_price,
                       inputs.now - st.last_activity)
        return reset_state(st), booked + [CancelAllAction(reason), ResetAction(reason)]

    if not st.levels:
        logger.info("Grid exhausted, resetting")
        return reset_state(st), booked + [ResetAction("grid_exhausted")]

    st = replace(st, phase=derive_phase(st))
    return st, booked + pending


def step(state: GridState, inputs: CycleInputs, cfg: EngineConfig) -> tuple[GridState, list[Action]]:
    """
    Pure reducer for one cycle.

    With no levels the engine tries to lay down a fresh grid (behind the
    trend gate); otherwise it books fills, queues mirror orders, and runs
    the stop-loss / idle / exhaustion checks.
    """
    if not state.levels:
        return _setup(state, inputs, cfg)
    return _monitor(state, inputs, cfg)


def apply_order_id(state: GridState, price: Decimal, order_id: str) -> GridState:
    """Bind the exchange order id returned for the level at price."""
    levels = tuple(replace(lv, order_id=order_id) if lv.price == price else lv
                   for lv in state.levels)
    st = replace(state, levels=levels)
    return replace(st, phase=derive_phase(st))
