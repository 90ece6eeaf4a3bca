"""
KuCoin spot grid bot runtime.

One thread, one cycle at a time:
- gather exchange reads (ticker, candles, order polls)
- grid_machine.step() decides what to do (pure)
- execute the returned actions through the gateway
- persist the snapshot after every accepted order and at cycle end
"""

from __future__ import annotations

import logging
import signal
import threading
import time
import uuid
from typing import Callable

import config
import grid_machine as gm
import kucoin_client
from state_store import StateStore


logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


class CycleCancelled(Exception):
    """The stop signal was raised while a cycle was gathering reads."""


class CancelAllError(kucoin_client.KucoinError):
    """Orders were still resting after a cancel-all."""


def build_engine_config() -> gm.EngineConfig:
    return gm.EngineConfig(
        levels=config.GRID_LEVELS,
        range_pct=config.GRID_RANGE_PCT,
        profit_pct=config.PROFIT_PCT,
        mode=config.GRID_MODE,
        total_risk=config.TOTAL_RISK_USD,
        fee_rate=config.FEE_RATE,
        stop_loss_pct=config.STOP_LOSS_PCT,
        max_idle_seconds=config.MAX_IDLE_SECONDS,
        trend_filter=config.TREND_FILTER_ENABLED,
        ema_fast=config.TREND_EMA_FAST,
        ema_slow=config.TREND_EMA_SLOW,
        rsi_period=config.TREND_RSI_PERIOD,
        rsi_max=config.TREND_RSI_MAX,
        bollinger_gate=config.BOLLINGER_GATE_ENABLED,
        bollinger_period=config.BOLLINGER_PERIOD,
        bollinger_mult=config.BOLLINGER_STD_MULT,
    )


class GridBot:
    """Owns the grid state and drives it against one client and one store."""

    def __init__(self, client, store: StateStore, cfg: gm.EngineConfig,
                 stop_event: threading.Event = None,
                 session_id: str = None,
                 candle_limit: int = None,
                 poll_interval: float = None,
                 error_delay: float = None,
                 clock: Callable[[], float] = time.time):
        self.client = client
        self.store = store
        self.cfg = cfg
        self.stop_event = stop_event or threading.Event()
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.candle_limit = config.CANDLE_LIMIT if candle_limit is None else candle_limit
        self.poll_interval = config.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.error_delay = config.ERROR_RETRY_SECONDS if error_delay is None else error_delay
        self._clock = clock

        self.instrument: kucoin_client.InstrumentSpec | None = None
        self.state: gm.GridState = store.load()
        self._dirty = False
        self.cycles = 0

    # ------------------ Reads ------------------

    def _check_stop(self) -> None:
        if self.stop_event.is_set():
            raise CycleCancelled()

    def _poll_levels(self) -> tuple[list[gm.FillEvent], list]:
        fills: list[gm.FillEvent] = []
        cancelled = []
        for lv in self.state.levels:
            if not lv.order_id:
                continue
            self._check_stop()
            try:
                rec = self.client.check_fill(lv.order_id)
            except kucoin_client.OrderLifecycleError as e:
                logger.warning("Level %s %s: %s", lv.side, lv.price, e)
                cancelled.append(lv.price)
                continue
            if rec is not None:
                logger.info("Fill: %s %s @ %s (order %s)",
                            lv.side.upper(), rec.deal_size, rec.price, lv.order_id)
                fills.append(gm.FillEvent(level_price=lv.price, order_id=lv.order_id,
                                          price=rec.price, size=rec.deal_size))
        return fills, cancelled

    def _gather(self) -> gm.CycleInputs:
        self._check_stop()
        if self.instrument is None:
            self.instrument = self.client.fetch_instrument_spec()
            logger.info("Instrument %s: tick=%s lot_precision=%d min_size=%s",
                        self.client.symbol, self.instrument.tick_size,
                        self.instrument.lot_precision, self.instrument.min_size)
        self._check_stop()
        ticker = self.client.fetch_ticker()

        closes = ()
        if not self.state.levels and (self.cfg.trend_filter or self.cfg.bollinger_gate):
            self._check_stop()
            closes = tuple(self.client.fetch_recent_closes(self.candle_limit))

        fills, cancelled = self._poll_levels()
        return gm.CycleInputs(
            now=self._clock(),
            ticker=ticker,
            instrument=self.instrument,
            closes=closes,
            fills=tuple(fills),
            cancelled=tuple(cancelled),
            session_id=self.session_id,
        )

    # ------------------ Effects ------------------

    def _cancel_all(self, reason: str) -> None:
        n = self.client.cancel_all_open_orders()
        remaining = self.client.list_open_orders()
        if remaining:
            raise CancelAllError(
                f"{len(remaining)} order(s) still open after cancel-all ({reason})")
        logger.info("Cancel-all (%s): %d order(s) cancelled", reason, n)

    def _commit(self, state: gm.GridState) -> None:
        """Adopt state and persist it if anything changed since the last save."""
        if state != self.state:
            self.state = state
            self._dirty = True
        if self._dirty:
            self.store.save(self.state)
            self._dirty = False

    def _execute(self, state: gm.GridState, actions: list) -> gm.GridState:
        committed = False
        for action in actions:
            if isinstance(action, gm.CancelAllAction):
                self._cancel_all(action.reason)
            elif isinstance(action, gm.PlaceOrderAction):
                # Fills and the cycle's intent are durable before the first
                # order leaves; every accepted order is bound and saved at once.
                if not committed:
                    self._commit(state)
                    committed = True
                order_id = self.client.place_limit_order(
                    action.side, action.price, action.size, client_oid=action.client_oid)
                state = gm.apply_order_id(state, action.price, order_id)
                self._commit(state)
            elif isinstance(action, gm.BookFillAction):
                if action.realized_pnl is None:
                    logger.info("Booked %s %s @ %s fee=%s",
                                action.side, action.size, action.price, action.fee)
                else:
                    logger.info("Booked %s %s @ %s fee=%s pnl=%s",
                                action.side, action.size, action.price,
                                action.fee, action.realized_pnl)
            elif isinstance(action, gm.ResetAction):
                logger.warning("Grid reset: %s", action.reason)
            elif isinstance(action, gm.SkipAction):
                logger.info("Setup skipped (%s) %s", action.reason,
                            " ".join(f"{k}={v}" for k, v in action.readings.items()))
        return state

    # ------------------ Cycle ------------------

    def run_cycle(self) -> list:
        """
        One full cycle.  Returns the actions that were executed.

        Nothing is adopted until any cancel-all has succeeded.  From the
        first placement on, the grid is saved after every accepted order,
        so a failure part-way leaves the unplaced levels without an order
        id; the next cycle re-sends exactly those.
        """
        inputs = self._gather()
        next_state, actions = gm.step(self.state, inputs, self.cfg)
        self._check_stop()
        next_state = self._execute(next_state, actions)
        self._commit(next_state)
        self.cycles += 1
        return actions

    def run_forever(self) -> None:
        logger.info("Entering main loop for %s (every %ss, session %s)",
                    self.client.symbol, self.poll_interval, self.session_id)
        while not self.stop_event.is_set():
            try:
                self.run_cycle()
                delay = self.poll_interval
            except CycleCancelled:
                break
            except Exception as e:
                logger.exception("Cycle error: %s", e)
                delay = self.error_delay
            self.stop_event.wait(delay)

        logger.info("Run loop stopped after %d cycles: %d levels resting, pnl=%s fees=%s round trips=%d",
                    self.cycles, len(self.state.levels), self.state.total_realized_pnl,
                    self.state.total_fees_paid, self.state.round_trips)

    def stop(self, reason: str = "") -> None:
        if reason:
            logger.info("Stopping: %s", reason)
        self.stop_event.set()


def run() -> None:
    setup_logging()
    config.validate_config()

    client = kucoin_client.KucoinClient()
    bot = GridBot(client, StateStore(), build_engine_config())

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        bot.stop(f"signal {signum}")

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGBREAK"):
        signal.signal(signal.SIGBREAK, _handle_signal)

    bot.run_forever()


if __name__ == "__main__":
    run()
