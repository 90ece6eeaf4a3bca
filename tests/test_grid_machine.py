import unittest
from dataclasses import replace
from decimal import Decimal

import grid_machine as gm
from kucoin_client import InstrumentSpec, TickerSnapshot


INSTR = InstrumentSpec(tick_size=Decimal("0.01"), lot_precision=4, min_size=Decimal("0.0001"))
CFG = gm.EngineConfig(
    levels=4,
    range_pct=Decimal("0.10"),
    profit_pct=Decimal("0.005"),
    total_risk=Decimal("5"),
    fee_rate=Decimal("0.001"),
    stop_loss_pct=Decimal("0.015"),
    max_idle_seconds=7200.0,
    trend_filter=False,
)
T0 = 1_700_000_000.0


def ticker(bid="99.99", ask="100.01"):
    return TickerSnapshot(bid=Decimal(bid), ask=Decimal(ask))


def inputs(now=T0, tk=None, fills=(), cancelled=(), closes=(), session_id="s1"):
    return gm.CycleInputs(now=now, ticker=tk or ticker(), instrument=INSTR,
                          closes=tuple(closes), fills=tuple(fills),
                          cancelled=tuple(cancelled), session_id=session_id)


def bind_all(state):
    for lv in state.levels:
        if not lv.order_id:
            state = gm.apply_order_id(state, lv.price, f"o-{lv.price}")
    return state


def active_grid(cfg=CFG):
    st, _ = gm.step(gm.GridState(), inputs(), cfg)
    return bind_all(st)


def fill(state, price, size="0.0125"):
    lv = next(lv for lv in state.levels if lv.price == Decimal(price))
    return gm.FillEvent(level_price=lv.price, order_id=lv.order_id,
                        price=lv.price, size=Decimal(size))


def rising_zigzag(n=40):
    closes = [Decimal(10)]
    for i in range(n - 1):
        closes.append(closes[-1] + (Decimal(2) if i % 2 == 0 else Decimal(-1)))
    return closes


class GridSetupTests(unittest.TestCase):
    def test_reference_100_four_levels(self):
        st, actions = gm.step(gm.GridState(), inputs(), CFG)

        self.assertIsInstance(actions[0], gm.CancelAllAction)
        places = actions[1:]
        self.assertEqual([a.price for a in places],
                         [Decimal(p) for p in ("90", "95", "100", "105", "110")])
        self.assertEqual([a.side for a in places], ["buy", "buy", "sell", "sell", "sell"])
        self.assertTrue(all(a.size == Decimal("0.0125") for a in places))
        self.assertEqual([a.client_oid for a in places], ["s1-1", "s1-2", "s1-3", "s1-4", "s1-5"])

        self.assertEqual(st.reference_price, Decimal("100"))
        self.assertEqual(st.step, Decimal("5"))
        self.assertEqual(st.quantity, Decimal("0.0125"))
        self.assertEqual(st.worst_buy_price, Decimal("90"))
        self.assertEqual(st.next_seq, 6)
        self.assertEqual(st.session_id, "s1")
        self.assertEqual(st.start_time, T0)
        self.assertEqual(st.phase, "REBALANCING")
        self.assertEqual(gm.check_invariants(st, INSTR), [])

    def test_binding_ids_activates_grid(self):
        st = active_grid()
        self.assertEqual(st.phase, "GRID_ACTIVE")
        self.assertEqual(st.levels[1].order_id, "o-95.00")

    def test_quantity_floors_at_min_size(self):
        cfg = replace(CFG, total_risk=Decimal("0.001"))
        st, _ = gm.step(gm.GridState(), inputs(), cfg)
        self.assertEqual(st.quantity, INSTR.min_size)

    def test_quantity_rounds_to_lot_precision(self):
        cfg = replace(CFG, levels=3)
        st, _ = gm.step(gm.GridState(), inputs(), cfg)
        # 5 / 3 / 100 = 0.016666...
        self.assertEqual(st.quantity, Decimal("0.0167"))

    def test_ladder_notional_is_one_level_over_budget(self):
        _, actions = gm.step(gm.GridState(), inputs(), CFG)
        places = [a for a in actions if isinstance(a, gm.PlaceOrderAction)]
        self.assertEqual(len(places), CFG.levels + 1)
        notional = sum(a.size for a in places) * Decimal("100")
        self.assertEqual(notional, CFG.total_risk * (CFG.levels + 1) / CFG.levels)

    def test_collapsed_grid_raises(self):
        coarse = InstrumentSpec(tick_size=Decimal("10"), lot_precision=4, min_size=Decimal("0.0001"))
        cfg = replace(CFG, range_pct=Decimal("0.001"))
        with self.assertRaises(gm.GridConfigError):
            gm.step(gm.GridState(), replace(inputs(), instrument=coarse), cfg)

    def test_prices_are_tick_multiples_and_deduplicated(self):
        prices = gm.grid_prices(Decimal("100"), Decimal("0.0001"), 10, Decimal("0.01"))
        self.assertEqual(prices, sorted(set(prices)))
        self.assertTrue(all(p % Decimal("0.01") == 0 for p in prices))
        self.assertLess(len(prices), 11)

    def test_quantize_rounds_half_away_from_zero(self):
        self.assertEqual(gm.quantize_price(Decimal("95.475"), Decimal("0.01")), Decimal("95.48"))
        self.assertEqual(gm.quantize_price(Decimal("95.474"), Decimal("0.01")), Decimal("95.47"))
        self.assertEqual(gm.quantize_price(Decimal("12.5"), Decimal("5")), Decimal("15"))

    def test_replayed_setup_reuses_client_ids(self):
        _, first = gm.step(gm.GridState(), inputs(), CFG)
        _, second = gm.step(gm.GridState(), inputs(), CFG)
        self.assertEqual(first, second)


class TrendGateTests(unittest.TestCase):
    def test_short_history_skips_and_leaves_state(self):
        cfg = replace(CFG, trend_filter=True)
        state = gm.GridState(total_realized_pnl=Decimal("1.5"))
        st, actions = gm.step(state, inputs(closes=[Decimal("100")] * 5), cfg)
        self.assertIs(st, state)
        self.assertEqual(len(actions), 1)
        self.assertIsInstance(actions[0], gm.SkipAction)
        self.assertEqual(actions[0].reason, "trend_filter")

    def test_uptrend_allows_setup(self):
        cfg = replace(CFG, trend_filter=True)
        st, actions = gm.step(gm.GridState(), inputs(closes=rising_zigzag()), cfg)
        self.assertEqual(len(st.levels), 5)
        self.assertIsInstance(actions[0], gm.CancelAllAction)

    def test_bollinger_gate(self):
        cfg = replace(CFG, bollinger_gate=True, bollinger_period=20)
        st, actions = gm.step(gm.GridState(), inputs(closes=[Decimal("100")] * 20), cfg)
        self.assertEqual(len(st.levels), 5)

        _, actions = gm.step(gm.GridState(), inputs(closes=[Decimal("90")] * 20), cfg)
        self.assertEqual(actions[0].reason, "bollinger_overextended")

        _, actions = gm.step(gm.GridState(), inputs(closes=[]), cfg)
        self.assertEqual(actions[0].reason, "bollinger_insufficient_history")


class LadderModeTests(unittest.TestCase):
    def test_buy_fill_places_profit_target_sell(self):
        st = active_grid()
        nxt, actions = gm.step(st, inputs(now=T0 + 10, fills=[fill(st, "95")]), CFG)

        book, place = actions
        self.assertEqual(book, gm.BookFillAction(Decimal("95"), "buy", Decimal("0.0125"),
                                                 Decimal("0.0011875"), None))
        self.assertEqual(place.side, "sell")
        self.assertEqual(place.price, Decimal("95.48"))
        self.assertEqual(place.size, Decimal("0.0125"))
        self.assertEqual(place.client_oid, "s1-6")

        prices = [lv.price for lv in nxt.levels]
        self.assertNotIn(Decimal("95"), prices)
        mirror = next(lv for lv in nxt.levels if lv.price == Decimal("95.48"))
        self.assertEqual(mirror.entry_price, Decimal("95"))
        self.assertEqual(mirror.entry_fee, Decimal("0.0011875"))
        self.assertEqual(nxt.total_fees_paid, Decimal("0.0011875"))
        self.assertEqual(nxt.last_activity, T0 + 10)
        self.assertEqual(nxt.next_seq, 7)
        self.assertEqual(nxt.phase, "REBALANCING")
        self.assertEqual(gm.check_invariants(nxt, INSTR), [])

    def test_paired_sell_books_pnl(self):
        st = active_grid()
        st, _ = gm.step(st, inputs(now=T0 + 10, fills=[fill(st, "95")]), CFG)
        st = bind_all(st)
        self.assertEqual(st.phase, "MONITORING")

        st, actions = gm.step(st, inputs(now=T0 + 20, fills=[fill(st, "95.48")]), CFG)
        self.assertEqual(len(actions), 1)
        book = actions[0]
        # (95.48 - 95) * 0.0125 - (0.0011935 + 0.0011875)
        self.assertEqual(book.realized_pnl, Decimal("0.003619"))
        self.assertEqual(st.total_realized_pnl, Decimal("0.003619"))
        self.assertEqual(st.total_fees_paid, Decimal("0.002381"))
        self.assertEqual(st.round_trips, 1)

    def test_unpaired_sell_books_fee_only(self):
        st = active_grid()
        st, actions = gm.step(st, inputs(now=T0 + 5, fills=[fill(st, "105")]), CFG)
        self.assertEqual(len(actions), 1)
        self.assertIsNone(actions[0].realized_pnl)
        self.assertEqual(st.round_trips, 0)
        self.assertEqual(st.total_fees_paid, Decimal("0.0013125"))

    def test_occupied_mirror_walks_up_one_tick(self):
        st = gm.GridState(
            levels=(
                gm.GridLevel(Decimal("95"), "buy", order_id="b"),
                gm.GridLevel(Decimal("95.48"), "sell", order_id="s", entry_price=Decimal("95")),
            ),
            quantity=Decimal("0.0125"), step=Decimal("5"), worst_buy_price=Decimal("95"),
            start_time=T0, last_activity=T0, session_id="s1", next_seq=3,
        )
        _, actions = gm.step(st, inputs(now=T0 + 1, fills=[fill(st, "95")]), CFG)
        self.assertEqual(actions[-1].price, Decimal("95.49"))

    def test_fills_processed_in_ascending_price(self):
        st = active_grid()
        fills = [fill(st, "95"), fill(st, "90")]
        _, actions = gm.step(st, inputs(now=T0 + 1, fills=fills), CFG)
        books = [a.price for a in actions if isinstance(a, gm.BookFillAction)]
        places = [a for a in actions if isinstance(a, gm.PlaceOrderAction)]
        self.assertEqual(books, [Decimal("90"), Decimal("95")])
        self.assertEqual([p.price for p in places], [Decimal("90.45"), Decimal("95.48")])
        self.assertEqual([p.client_oid for p in places], ["s1-6", "s1-7"])

    def test_stale_fill_for_other_order_is_ignored(self):
        st = active_grid()
        ghost = gm.FillEvent(Decimal("95"), "someone-else", Decimal("95"), Decimal("1"))
        nxt, actions = gm.step(st, inputs(now=T0 + 1, fills=[ghost]), CFG)
        self.assertEqual(actions, [])
        self.assertEqual(nxt, st)

    def test_cancelled_order_drops_level(self):
        st = active_grid()
        nxt, actions = gm.step(st, inputs(now=T0 + 1, cancelled=[Decimal("110")]), CFG)
        self.assertEqual(actions, [])
        self.assertEqual(len(nxt.levels), 4)
        self.assertNotIn(Decimal("110"), [lv.price for lv in nxt.levels])


class UnplacedLevelTests(unittest.TestCase):
    def _partly_bound(self):
        st, _ = gm.step(gm.GridState(), inputs(), CFG)
        for lv in st.levels[:3]:
            st = gm.apply_order_id(st, lv.price, f"o-{lv.price}")
        return st

    def test_unbound_levels_are_resent_with_same_client_oid(self):
        st = self._partly_bound()
        self.assertEqual(st.phase, "REBALANCING")

        nxt, actions = gm.step(st, inputs(now=T0 + 1), CFG)

        self.assertEqual([(a.price, a.side, a.client_oid, a.reason) for a in actions],
                         [(Decimal("105"), "sell", "s1-4", "reissue_unplaced"),
                          (Decimal("110"), "sell", "s1-5", "reissue_unplaced")])
        self.assertTrue(all(a.size == Decimal("0.0125") for a in actions))
        self.assertEqual(nxt, st)

    def test_resend_follows_booked_fills(self):
        st = self._partly_bound()
        nxt, actions = gm.step(st, inputs(now=T0 + 1, fills=[fill(st, "95")]), CFG)
        self.assertIsInstance(actions[0], gm.BookFillAction)
        self.assertEqual([a.client_oid for a in actions[1:]], ["s1-4", "s1-5", "s1-6"])
        self.assertEqual(nxt.next_seq, 7)

    def test_reset_drops_resend(self):
        st = self._partly_bound()
        _, actions = gm.step(st, inputs(now=T0 + 1, tk=ticker("88.6", "88.7")), CFG)
        self.assertEqual(actions, [gm.CancelAllAction("stop_loss"), gm.ResetAction("stop_loss")])


class RotateModeTests(unittest.TestCase):
    CFG = replace(CFG, mode="rotate")

    def test_buy_and_sell_swap_on_simultaneous_fill(self):
        st = active_grid(self.CFG)
        nxt, actions = gm.step(st, inputs(now=T0 + 1, fills=[fill(st, "100"), fill(st, "95")]),
                               self.CFG)
        places = [a for a in actions if isinstance(a, gm.PlaceOrderAction)]
        self.assertEqual([(p.side, p.price) for p in places],
                         [("sell", Decimal("100")), ("buy", Decimal("95"))])
        sell = next(lv for lv in nxt.levels if lv.price == Decimal("100"))
        self.assertEqual(sell.side, "sell")
        self.assertEqual(sell.entry_price, Decimal("95"))
        buy = next(lv for lv in nxt.levels if lv.price == Decimal("95"))
        self.assertIsNone(buy.entry_price)

    def test_sell_fill_walks_down_by_step(self):
        st = active_grid(self.CFG)
        nxt, actions = gm.step(st, inputs(now=T0 + 1, fills=[fill(st, "110")]), self.CFG)
        self.assertEqual((actions[-1].side, actions[-1].price), ("buy", Decimal("85")))
        self.assertEqual(nxt.worst_buy_price, Decimal("85"))

    def test_buy_fill_mirrors_one_step_up(self):
        st = gm.GridState(
            levels=(gm.GridLevel(Decimal("95"), "buy", order_id="b"),
                    gm.GridLevel(Decimal("110"), "sell", order_id="s")),
            quantity=Decimal("0.0125"), step=Decimal("5"), worst_buy_price=Decimal("95"),
            start_time=T0, last_activity=T0, session_id="s1", next_seq=3,
        )
        _, actions = gm.step(st, inputs(now=T0 + 1, fills=[fill(st, "95")]), self.CFG)
        self.assertEqual((actions[-1].side, actions[-1].price), ("sell", Decimal("100")))


class RiskTests(unittest.TestCase):
    def test_stop_loss_fires_at_or_below_threshold(self):
        st = replace(active_grid(), total_realized_pnl=Decimal("1.25"), round_trips=4,
                     total_fees_paid=Decimal("0.5"))
        nxt, actions = gm.step(st, inputs(now=T0 + 1, tk=ticker("88.6", "88.7")), CFG)
        self.assertEqual(actions, [gm.CancelAllAction("stop_loss"), gm.ResetAction("stop_loss")])
        self.assertEqual(nxt.levels, ())
        self.assertEqual(nxt.phase, "UNINITIALIZED")
        self.assertEqual(nxt.total_realized_pnl, Decimal("1.25"))
        self.assertEqual(nxt.total_fees_paid, Decimal("0.5"))
        self.assertEqual(nxt.round_trips, 4)
        self.assertEqual(nxt.next_seq, st.next_seq)

    def test_stop_loss_holds_above_threshold(self):
        st = active_grid()
        nxt, actions = gm.step(st, inputs(now=T0 + 1, tk=ticker("88.7", "88.8")), CFG)
        self.assertEqual(actions, [])
        self.assertEqual(nxt, st)

    def test_stop_loss_drops_pending_mirror(self):
        st = active_grid()
        _, actions = gm.step(st, inputs(now=T0 + 1, tk=ticker("88.6", "88.7"),
                                        fills=[fill(st, "90")]), CFG)
        self.assertIsInstance(actions[0], gm.BookFillAction)
        self.assertFalse(any(isinstance(a, gm.PlaceOrderAction) for a in actions))
        self.assertEqual(actions[-1], gm.ResetAction("stop_loss"))

    def test_idle_timeout(self):
        st = active_grid()
        _, actions = gm.step(st, inputs(now=T0 + 7200), CFG)
        self.assertEqual(actions, [])
        nxt, actions = gm.step(st, inputs(now=T0 + 7201), CFG)
        self.assertEqual(actions, [gm.CancelAllAction("idle_timeout"),
                                   gm.ResetAction("idle_timeout")])
        self.assertEqual(nxt.levels, ())

    def test_fill_resets_idle_clock(self):
        st = active_grid()
        st, _ = gm.step(st, inputs(now=T0 + 7000, fills=[fill(st, "105")]), CFG)
        _, actions = gm.step(bind_all(st), inputs(now=T0 + 7300), CFG)
        self.assertEqual(actions, [])

    def test_exhausted_grid_resets_without_cancel(self):
        st = gm.GridState(
            levels=(gm.GridLevel(Decimal("105"), "sell", order_id="s"),),
            quantity=Decimal("0.0125"), worst_buy_price=Decimal("90"),
            start_time=T0, last_activity=T0, session_id="s1", next_seq=9,
        )
        nxt, actions = gm.step(st, inputs(now=T0 + 1, fills=[fill(st, "105")]), CFG)
        self.assertEqual(len(actions), 2)
        self.assertIsInstance(actions[0], gm.BookFillAction)
        self.assertEqual(actions[1], gm.ResetAction("grid_exhausted"))
        self.assertEqual(nxt.levels, ())
        self.assertGreater(nxt.total_fees_paid, 0)

    def test_new_grid_after_reset_continues_sequence(self):
        st = active_grid()
        st, _ = gm.step(st, inputs(now=T0 + 1, tk=ticker("88.6", "88.7")), CFG)
        st, actions = gm.step(st, inputs(now=T0 + 2, tk=ticker("88.6", "88.7"),
                                         session_id="s2"), CFG)
        self.assertEqual(actions[1].client_oid, "s2-6")
        self.assertEqual(st.reference_price, Decimal("88.65"))


class SnapshotTests(unittest.TestCase):
    def test_dict_round_trip(self):
        st = active_grid()
        st, _ = gm.step(st, inputs(now=T0 + 10, fills=[fill(st, "95")]), CFG)
        st = bind_all(st)
        data = gm.to_dict(st)
        self.assertEqual(data["grid_map"]["95.48"]["entry_price"], "95.00")
        self.assertIsNone(data["grid_map"]["90.00"]["entry_price"])
        self.assertEqual(gm.from_dict(data), st)

    def test_invariant_violations(self):
        st = gm.GridState(
            levels=(gm.GridLevel(Decimal("95.005"), "buy"),
                    gm.GridLevel(Decimal("95.005"), "hold")),
            quantity=Decimal("0.00001"),
        )
        problems = gm.check_invariants(st, INSTR)
        self.assertTrue(any("more than one level" in p for p in problems))
        self.assertTrue(any("bad side" in p for p in problems))
        self.assertTrue(any("not a multiple of tick" in p for p in problems))
        self.assertTrue(any("below min size" in p for p in problems))

    def test_derive_phase(self):
        self.assertEqual(gm.derive_phase(gm.GridState()), "UNINITIALIZED")
        lv = gm.GridLevel(Decimal("1"), "buy", order_id="x")
        self.assertEqual(gm.derive_phase(gm.GridState(levels=(lv,), start_time=5, last_activity=5)),
                         "GRID_ACTIVE")
        self.assertEqual(gm.derive_phase(gm.GridState(levels=(lv,), start_time=5, last_activity=9)),
                         "MONITORING")
        self.assertEqual(gm.derive_phase(gm.GridState(levels=(replace(lv, order_id=""),))),
                         "REBALANCING")


if __name__ == "__main__":
    unittest.main()
