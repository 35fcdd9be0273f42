import unittest
from unittest import mock

from rebalancer.db import get_conn, migrate
from rebalancer.portfolio.models import SignalValidationError
from rebalancer.portfolio.risk import RiskAllocation
from rebalancer.portfolio.storage import (
    SqliteHoldingRegistry,
    add_position,
    create_account,
    replace_target_allocations,
)
from rebalancer.signals import processor
from rebalancer.signals.processor import dismiss_all_pending, dismiss_signal, process_signal
from rebalancer.signals.storage import complete_task, list_signals, list_tasks


class FakeSink:
    def __init__(self, fail_for=()):
        self.sent = []
        self.signal_ids = []
        self.fail_for = set(fail_for)

    def send_reconciliation_report(self, account, reconciliation, recipient, signal_id=None):
        if account.id in self.fail_for:
            raise RuntimeError("smtp down")
        self.sent.append((account.id, recipient, reconciliation))
        self.signal_ids.append(signal_id)
        return True


class SignalTestCase(unittest.TestCase):
    def setUp(self):
        self.conn = get_conn(":memory:")
        migrate(self.conn)
        self.registry = SqliteHoldingRegistry(self.conn)
        self.registry.create("MSFT", "medium", name="Microsoft", category="security")
        self.registry.create("XIC", "medium", name="TSX Composite")
        # under target: 10% held vs 20% target
        self._account("acc-x", "Smith", {"MSFT": (10, 10.0), "XIC": (90, 10.0)}, {"MSFT": 20, "XIC": 80})
        # over target: 30% held vs 20% target
        self._account("acc-y", "Jones", {"MSFT": (30, 10.0), "XIC": (70, 10.0)}, {"MSFT": 20, "XIC": 80})
        # targets MSFT but has not bought it yet
        self._account("acc-z", "Brown", {"XIC": (100, 10.0)}, {"MSFT": 25, "XIC": 75})
        # targets MSFT with an empty account
        self._account("acc-empty", "Green", {}, {"MSFT": 100})

    def tearDown(self):
        self.conn.close()

    def _account(self, account_id, household, positions, targets):
        create_account(
            self.conn,
            "individual",
            account_id=account_id,
            household_name=household,
            owner_name=f"{household} Owner",
            account_label="TFSA",
            risk_allocation=RiskAllocation(medium=100),
        )
        for symbol, (qty, price) in positions.items():
            add_position(self.conn, account_id, symbol, qty, price)
        replace_target_allocations(
            self.conn,
            account_id,
            [{"ticker": t, "target_percentage": pct} for t, pct in targets.items()],
            self.registry,
        )

    def _open_tasks(self, account_id=None):
        return list_tasks(self.conn, account_id=account_id)


class ProcessSignalTests(SignalTestCase):
    def test_buy_creates_tasks_only_where_underweight(self):
        result = process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        self.assertTrue(result["accepted"])
        self.assertEqual(result["tasks_created"], 2)
        self.assertCountEqual(
            result["tasks"],
            ["Smith / Smith Owner / TFSA — BUY — MSFT", "Brown / Brown Owner / TFSA — BUY — MSFT"],
        )
        by_account = {t["account_id"]: t for t in self._open_tasks()}
        self.assertEqual(set(by_account), {"acc-x", "acc-z"})
        self.assertEqual(self._open_tasks("acc-y"), [])
        self.assertEqual(self._open_tasks("acc-empty"), [])

        task = by_account["acc-x"]
        self.assertEqual(task["title"], "Signal BUY Alert: MSFT")
        self.assertEqual(task["status"], "pending")
        self.assertIn("Signal price: $10.00", task["description"])
        self.assertIn("Current allocation: 10.00%", task["description"])
        self.assertIn("Target allocation: 20.00%", task["description"])
        self.assertIn("Buy 10.0000 shares (~$100.00)", task["description"])
        self.assertEqual(result["accounts"], [])

    def test_not_yet_deployed_account_is_sized_from_target(self):
        process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 25})
        task = self._open_tasks("acc-z")[0]
        self.assertIn("Current allocation: 0.00%", task["description"])
        self.assertIn("Buy 10.0000 shares (~$250.00)", task["description"])

    def test_sell_creates_task_only_where_overweight(self):
        result = process_signal(self.conn, {"symbol": "msft", "signal": "sell", "price": 10})
        self.assertEqual(result["tasks"], ["Jones / Jones Owner / TFSA — SELL — MSFT"])
        task = self._open_tasks("acc-y")[0]
        self.assertEqual(task["title"], "Signal SELL Alert: MSFT")
        self.assertIn("Sell 10.0000 shares", task["description"])

    def test_suffixed_signal_symbol_matches_positions(self):
        result = process_signal(self.conn, {"symbol": "MSFT.NASDAQ", "direction": "BUY", "price": 10})
        self.assertEqual(result["tasks_created"], 2)

    def test_no_match_still_returns_summary(self):
        result = process_signal(self.conn, {"symbol": "AAPL", "direction": "BUY", "price": 150})
        self.assertEqual(result, {"accepted": True, "tasks_created": 0, "tasks": [], "reports_sent": 0, "accounts": []})
        self.assertEqual(len(list_signals(self.conn)), 1)

    def test_holder_with_only_invalid_rows_and_no_target_is_skipped(self):
        self._account("acc-w", "White", {"XIC": (100, 10.0), "MSFT": (5, 10.0)}, {"XIC": 100})
        self.conn.execute("UPDATE positions SET quantity=-5 WHERE account_id='acc-w' AND symbol='MSFT'")
        result = process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        self.assertEqual(result["tasks_created"], 2)
        self.assertEqual(self._open_tasks("acc-w"), [])

    def test_zero_target_without_holding_is_skipped(self):
        self._account("acc-v", "Violet", {"XIC": (100, 10.0)}, {"MSFT": 0, "XIC": 100})
        process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        self.assertEqual(self._open_tasks("acc-v"), [])

    def test_invalid_signal_is_rejected_before_any_work(self):
        for payload in (
            {"symbol": "", "direction": "BUY", "price": 10},
            {"symbol": "MSFT", "direction": "HOLD", "price": 10},
            {"symbol": "MSFT", "direction": "BUY", "price": 0},
            {"symbol": "MSFT", "direction": "BUY", "price": "abc"},
        ):
            with self.assertRaises(SignalValidationError):
                process_signal(self.conn, payload)
        self.assertEqual(list_signals(self.conn), [])
        self.assertEqual(self._open_tasks(), [])


class IdempotencyTests(SignalTestCase):
    def test_repeated_signal_creates_no_second_task(self):
        first = process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        second = process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 11})
        self.assertEqual(first["tasks_created"], 2)
        self.assertEqual(second["tasks_created"], 0)
        self.assertEqual(second["tasks"], [])
        self.assertEqual(second["accounts"], [])
        self.assertEqual(len(self._open_tasks()), 2)
        self.assertEqual(len(list_signals(self.conn)), 2)

    def test_suffix_variant_shares_the_open_task(self):
        process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        again = process_signal(self.conn, {"symbol": "msft.us", "direction": "BUY", "price": 10})
        self.assertEqual(again["tasks_created"], 0)

    def test_completed_task_frees_the_slot(self):
        process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        task = self._open_tasks("acc-x")[0]
        self.assertTrue(complete_task(self.conn, task["id"]))
        again = process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        self.assertEqual(again["tasks"], ["Smith / Smith Owner / TFSA — BUY — MSFT"])

    def test_dismiss_archives_matching_tasks(self):
        process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        signal_id = self._open_tasks()[0]["signal_id"]
        self.assertEqual(dismiss_signal(self.conn, signal_id), 2)
        self.assertEqual(self._open_tasks(), [])
        self.assertEqual(list_signals(self.conn, "dismissed")[0]["id"], signal_id)
        again = process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        self.assertEqual(again["tasks_created"], 2)

    def test_dismiss_unknown_signal(self):
        self.assertIsNone(dismiss_signal(self.conn, "nope"))

    def test_dismiss_all_pending(self):
        process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        process_signal(self.conn, {"symbol": "MSFT", "direction": "SELL", "price": 10})
        result = dismiss_all_pending(self.conn)
        self.assertEqual(result, {"signals_dismissed": 3, "tasks_archived": 3})
        self.assertEqual(list_signals(self.conn, "pending"), [])
        self.assertEqual(len(list_tasks(self.conn, include_archived=True)), 3)


class ReportAndFailureTests(SignalTestCase):
    def test_reports_sent_to_signal_recipient(self):
        sink = FakeSink()
        result = process_signal(
            self.conn,
            {"symbol": "MSFT", "direction": "BUY", "price": 10, "reportRecipient": "chat-42"},
            report_sink=sink,
        )
        self.assertEqual(result["reports_sent"], 2)
        self.assertEqual({(a, r) for a, r, _ in sink.sent}, {("acc-x", "chat-42"), ("acc-z", "chat-42")})
        reconciliation = sink.sent[0][2]
        self.assertTrue(reconciliation["has_target_allocations"])
        self.assertCountEqual(
            result["accounts"],
            ["Smith / Smith Owner / TFSA — BUY — MSFT", "Brown / Brown Owner / TFSA — BUY — MSFT"],
        )
        signal_id = list_signals(self.conn)[0]["id"]
        self.assertEqual(sink.signal_ids, [signal_id, signal_id])

    def test_replayed_signal_sends_no_second_report(self):
        payload = {"symbol": "MSFT", "direction": "BUY", "price": 10, "reportRecipient": "chat-42"}
        sink = FakeSink()
        process_signal(self.conn, payload, report_sink=sink)
        again = process_signal(self.conn, payload, report_sink=sink)
        self.assertEqual(again["reports_sent"], 0)
        self.assertEqual(len(sink.sent), 2)

    def test_report_failure_does_not_drop_task(self):
        sink = FakeSink(fail_for={"acc-x"})
        result = process_signal(
            self.conn,
            {"symbol": "MSFT", "direction": "BUY", "price": 10, "reportRecipient": "chat-42"},
            report_sink=sink,
        )
        self.assertEqual(result["tasks_created"], 2)
        self.assertEqual(result["reports_sent"], 1)
        self.assertEqual(result["accounts"], ["Brown / Brown Owner / TFSA — BUY — MSFT"])

    def test_account_failure_is_isolated(self):
        real = processor.create_task_once

        def flaky(conn, task):
            if task["account_id"] == "acc-x":
                raise RuntimeError("db locked")
            return real(conn, task)

        with mock.patch.object(processor, "create_task_once", side_effect=flaky):
            result = process_signal(self.conn, {"symbol": "MSFT", "direction": "BUY", "price": 10})
        self.assertEqual(result["tasks"], ["Brown / Brown Owner / TFSA — BUY — MSFT"])
        self.assertEqual([t["account_id"] for t in self._open_tasks()], ["acc-z"])


if __name__ == "__main__":
    unittest.main()
