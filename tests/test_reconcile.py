import unittest

from rebalancer.portfolio.models import Holding, Position, TargetAllocation
from rebalancer.portfolio.reconcile import reconcile


def _pos(symbol, quantity, price, pid=None):
    return Position(id=pid or f"p-{symbol}", account_id="acc-1", symbol=symbol, quantity=quantity, current_price=price)


def _target(ticker, pct, holding_price=0.0, tid=None):
    return TargetAllocation(
        id=tid or f"t-{ticker}",
        account_id="acc-1",
        holding_id=f"h-{ticker}",
        target_percentage=pct,
        ticker=ticker,
        name=ticker,
        holding_price=holding_price,
    )


def _rows_by_ticker(result):
    return {row["ticker"]: row for row in result["comparison"]}


class ReconcileScenarioTests(unittest.TestCase):
    def test_single_overweight_holding_and_cash_target(self):
        result = reconcile([_pos("AAPL", 10, 100.0)], [_target("AAPL", 60), _target("CASH", 40)])
        self.assertTrue(result["has_target_allocations"])
        self.assertEqual(result["total_actual_value"], 1000.0)
        self.assertEqual(result["total_target_percentage"], 100.0)
        rows = _rows_by_ticker(result)

        aapl = rows["AAPL"]
        self.assertEqual(aapl["actual_percentage"], 100.0)
        self.assertEqual(aapl["variance"], 40.0)
        self.assertEqual(aapl["status"], "over")
        self.assertEqual(aapl["action_type"], "sell")
        self.assertEqual(aapl["action_dollar_amount"], -400.0)
        self.assertEqual(aapl["action_shares"], 4.0)

        cash = rows["CASH"]
        self.assertEqual(cash["status"], "under")
        self.assertEqual(cash["action_type"], "hold")
        self.assertEqual(cash["actual_value"], 0.0)
        self.assertEqual(cash["action_shares"], 0.0)
        self.assertEqual([(w["code"], w["symbol"]) for w in result["warnings"]], [("price_missing", "CASH")])

    def test_no_targets(self):
        result = reconcile([_pos("AAPL", 1, 10.0)], [])
        self.assertFalse(result["has_target_allocations"])
        self.assertEqual(result["comparison"], [])

    def test_zero_total_value(self):
        result = reconcile([], [_target("XIC", 50, holding_price=30.0)])
        row = result["comparison"][0]
        self.assertEqual(row["actual_percentage"], 0.0)
        self.assertEqual(row["target_value"], 0.0)
        self.assertEqual(row["action_type"], "hold")
        self.assertEqual(row["status"], "under")


class ReconcileBandTests(unittest.TestCase):
    def test_variance_exactly_two_points_is_on_target(self):
        result = reconcile(
            [_pos("XIC", 22, 10.0), _pos("VFV", 78, 10.0)],
            [_target("XIC", 20), _target("VFV", 80)],
        )
        rows = _rows_by_ticker(result)
        self.assertEqual(rows["XIC"]["variance"], 2.0)
        self.assertEqual(rows["XIC"]["status"], "on-target")
        self.assertEqual(rows["VFV"]["variance"], -2.0)
        self.assertEqual(rows["VFV"]["status"], "on-target")

    def test_variance_past_band_is_flagged(self):
        result = reconcile(
            [_pos("XIC", 221, 1.0), _pos("VFV", 779, 1.0)],
            [_target("XIC", 20), _target("VFV", 80)],
        )
        rows = _rows_by_ticker(result)
        self.assertEqual(rows["XIC"]["status"], "over")
        self.assertEqual(rows["VFV"]["status"], "under")

    def test_small_trade_is_hold(self):
        # 4% of 1000 is 40, inside the 50 noise threshold
        result = reconcile(
            [_pos("XIC", 24, 10.0), _pos("VFV", 76, 10.0)],
            [_target("XIC", 20), _target("VFV", 80)],
        )
        rows = _rows_by_ticker(result)
        self.assertEqual(rows["XIC"]["action_dollar_amount"], -40.0)
        self.assertEqual(rows["XIC"]["action_type"], "hold")
        self.assertEqual(rows["XIC"]["status"], "over")

    def test_band_and_threshold_are_configurable(self):
        result = reconcile(
            [_pos("XIC", 24, 10.0), _pos("VFV", 76, 10.0)],
            [_target("XIC", 20), _target("VFV", 80)],
            band_pct=5.0,
            noise_threshold=10.0,
        )
        rows = _rows_by_ticker(result)
        self.assertEqual(rows["XIC"]["status"], "on-target")
        self.assertEqual(rows["XIC"]["action_type"], "sell")


class ReconcileRowTests(unittest.TestCase):
    def test_unexpected_holding_is_sold_in_full(self):
        result = reconcile(
            [_pos("XIC", 50, 10.0), _pos("ZZZ", 5, 100.0)],
            [_target("XIC", 100)],
        )
        row = _rows_by_ticker(result)["ZZZ"]
        self.assertEqual(row["status"], "unexpected")
        self.assertEqual(row["target_percentage"], 0.0)
        self.assertEqual(row["action_type"], "sell")
        self.assertEqual(row["action_dollar_amount"], -500.0)
        self.assertEqual(row["action_shares"], -5.0)
        self.assertIsNone(row["allocation_id"])

    def test_untargeted_cash_is_held(self):
        result = reconcile([_pos("XIC", 50, 10.0), _pos("CASH", 500, 1.0)], [_target("XIC", 100)])
        row = _rows_by_ticker(result)["CASH"]
        self.assertEqual(row["status"], "unexpected")
        self.assertEqual(row["action_type"], "hold")

    def test_cash_over_target_can_deploy(self):
        result = reconcile(
            [_pos("XIC", 70, 10.0), _pos("CASH", 300, 1.0)],
            [_target("XIC", 90), _target("CASH", 10)],
        )
        row = _rows_by_ticker(result)["CASH"]
        self.assertEqual(row["status"], "can-deploy")
        self.assertEqual(row["action_type"], "hold")

    def test_zero_target_not_held_is_zero_balance(self):
        result = reconcile([_pos("XIC", 10, 10.0)], [_target("XIC", 100), _target("VFV", 0)])
        self.assertEqual(_rows_by_ticker(result)["VFV"]["status"], "zero-balance")

    def test_suffix_variants_match(self):
        result = reconcile([_pos("XIC.TO", 10, 10.0)], [_target("XIC", 100)])
        self.assertEqual(len(result["comparison"]), 1)
        row = result["comparison"][0]
        self.assertEqual(row["actual_percentage"], 100.0)
        self.assertEqual(row["status"], "on-target")

    def test_duplicate_targets_are_merged(self):
        result = reconcile([_pos("XIC", 10, 10.0)], [_target("XIC.TO", 30, tid="a"), _target("XIC", 70, tid="b")])
        self.assertEqual(len(result["comparison"]), 1)
        self.assertEqual(result["comparison"][0]["target_percentage"], 100.0)

    def test_missing_price_warns_and_sizes_zero_shares(self):
        result = reconcile([_pos("XIC", 100, 10.0)], [_target("XIC", 50), _target("VFV", 50)])
        row = _rows_by_ticker(result)["VFV"]
        self.assertEqual(row["action_type"], "buy")
        self.assertEqual(row["action_shares"], 0.0)
        codes = [w["code"] for w in result["warnings"]]
        self.assertIn("price_missing", codes)

    def test_missing_price_warns_on_hold_rows_too(self):
        result = reconcile([_pos("XIC", 100, 10.0)], [_target("XIC", 99), _target("VFV", 1)])
        row = _rows_by_ticker(result)["VFV"]
        self.assertEqual(row["action_type"], "hold")
        self.assertEqual([w["symbol"] for w in result["warnings"]], ["VFV"])

    def test_registry_price_sizes_untargeted_buy(self):
        holdings = {"h-VFV": Holding(id="h-VFV", ticker="VFV", name="VFV", risk_level="medium", price=125.0)}
        result = reconcile([_pos("XIC", 100, 10.0)], [_target("XIC", 50), _target("VFV", 50)], holdings)
        row = _rows_by_ticker(result)["VFV"]
        self.assertEqual(row["current_price"], 125.0)
        self.assertEqual(row["action_shares"], 4.0)

    def test_invalid_positions_are_skipped(self):
        positions = [_pos("XIC", 10, 10.0), _pos("VFV", -3, 10.0, pid="bad1"), _pos("ZSP", "abc", 10.0, pid="bad2")]
        result = reconcile(positions, [_target("XIC", 100)])
        self.assertEqual(result["total_actual_value"], 100.0)
        self.assertEqual(len(result["comparison"]), 1)
        codes = [w["code"] for w in result["warnings"]]
        self.assertEqual(codes.count("position_data_quality"), 2)

    def test_actual_values_sum_to_total(self):
        positions = [_pos("XIC", 13, 31.7), _pos("VFV", 7, 112.4), _pos("ZZZ", 3, 9.99), _pos("CASH", 250, 1.0)]
        result = reconcile(positions, [_target("XIC", 40), _target("VFV", 50), _target("CASH", 10)])
        total = sum(row["actual_value"] for row in result["comparison"])
        self.assertAlmostEqual(total, result["total_actual_value"], places=1)
        for row in result["comparison"]:
            if row["ticker"] == "CASH":
                self.assertEqual(row["action_type"], "hold")

    def test_rows_sorted_by_absolute_variance(self):
        result = reconcile(
            [_pos("XIC", 10, 10.0), _pos("VFV", 90, 10.0)],
            [_target("XIC", 50), _target("VFV", 45), _target("ZSP", 5)],
        )
        variances = [abs(row["variance"]) for row in result["comparison"]]
        self.assertEqual(variances, sorted(variances, reverse=True))


if __name__ == "__main__":
    unittest.main()
