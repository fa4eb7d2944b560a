from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest import mock

from django.db import DatabaseError
from django.test import TestCase, TransactionTestCase
from django.utils import timezone

from payouts.models import DriverPayout, DriverWallet, PayoutAlert, PayoutReservation
from payouts.services import transfers
from payouts.services.fanout import BatchFanOut
from payouts.services.gateway import TerminalGatewayError, TransientGatewayError
from payouts.services.transfers import (
    FAILED,
    SETTLED,
    SKIPPED,
    DriverTransferProcessor,
    idempotency_key,
)
from payouts.tests.factories import make_driver, wallet_of
from payouts.tests.fakes import FakeGateway, RecordingBroker, RendezvousGateway
from payouts.utils.retry import RetryPolicy
from payouts.utils.weeks import week_for

NOW = datetime(2026, 10, 14, 12, 0, tzinfo=dt_timezone.utc)
WEEK = week_for(NOW)


class TransferTestCase(TestCase):
    def setUp(self):
        self.sleeps = []

    def processor(self, gateway, **overrides):
        options = dict(
            min_amount=Decimal("10.00"),
            currency="CAD",
            concurrency=1,
            retry_policy=RetryPolicy(retries=4, base_delay=2.0, backoff_factor=2),
            sleep=self.sleeps.append,
        )
        options.update(overrides)
        return DriverTransferProcessor(gateway, **options)

    def assertUntouched(self, driver, pending, available="0.00"):
        w = wallet_of(driver)
        self.assertEqual(w.pending_balance, Decimal(pending))
        self.assertEqual(w.available_balance, Decimal(available))
        self.assertFalse(DriverPayout.objects.filter(driver=driver).exists())
        self.assertFalse(PayoutReservation.objects.filter(driver=driver).exists())


class WeeklyTransferScenarioTests(TransferTestCase):
    def test_successful_transfer_settles_wallet_and_records_payout(self):
        driver = make_driver(pending="25.00")
        gateway = FakeGateway()

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK, batch_id="b-1")

        self.assertEqual(outcome.status, SETTLED)
        w = wallet_of(driver)
        self.assertEqual(w.pending_balance, Decimal("0.00"))
        self.assertEqual(w.available_balance, Decimal("25.00"))

        payout = DriverPayout.objects.get(driver=driver)
        self.assertEqual(payout.status, "paid")
        self.assertEqual(payout.total_paid, Decimal("25.00"))
        self.assertEqual(payout.total_earnings, Decimal("25.00"))
        self.assertEqual(payout.payout_method, "automatic")
        self.assertEqual(payout.week_start, date(2026, 10, 12))
        self.assertEqual(payout.week_end, date(2026, 10, 18))
        self.assertEqual(payout.batch_id, "b-1")
        self.assertEqual(payout.external_transfer_id, outcome.transfer_id)
        self.assertFalse(PayoutReservation.objects.exists())

        request = gateway.calls[0]
        self.assertEqual(request.amount_minor_units, 2500)
        self.assertEqual(request.currency, "CAD")
        self.assertEqual(request.destination_account, "acct_test")
        self.assertEqual(request.idempotency_key, f"transfer:{driver.id}:2026-10-12")

    def test_below_threshold_is_skipped_without_gateway_call(self):
        driver = make_driver(pending="5.00")
        gateway = FakeGateway()

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK)

        self.assertEqual((outcome.status, outcome.reason), (SKIPPED, "below_threshold"))
        self.assertEqual(gateway.calls, [])
        self.assertUntouched(driver, pending="5.00")

    def test_terminal_error_rolls_back_without_retry(self):
        driver = make_driver(pending="25.00")
        gateway = FakeGateway(script=[TerminalGatewayError("No such destination: account closed")])

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK, batch_id="b-3")

        self.assertEqual((outcome.status, outcome.reason), (FAILED, "terminal_gateway_error"))
        self.assertEqual(len(gateway.calls), 1)
        self.assertEqual(self.sleeps, [])
        self.assertUntouched(driver, pending="25.00")

        alert = PayoutAlert.objects.get(driver=driver)
        self.assertEqual(alert.metadata["batchId"], "b-3")
        self.assertEqual(alert.metadata["reason"], "terminal_gateway_error")

    def test_transient_errors_then_success_settles_once(self):
        driver = make_driver(pending="25.00")
        gateway = FakeGateway(script=[TransientGatewayError("rate limited")] * 3)

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK)

        self.assertEqual(outcome.status, SETTLED)
        self.assertEqual(len(gateway.calls), 4)
        self.assertEqual(gateway.charges, 1)
        self.assertEqual(self.sleeps, [2.0, 4.0, 8.0])
        self.assertEqual({c.idempotency_key for c in gateway.calls}, {idempotency_key(driver.id, WEEK)})

        w = wallet_of(driver)
        self.assertEqual(w.pending_balance, Decimal("0.00"))
        self.assertEqual(w.available_balance, Decimal("25.00"))
        self.assertEqual(DriverPayout.objects.filter(driver=driver, status="paid").count(), 1)


class TransferFailureTests(TransferTestCase):
    def test_exhausted_retries_roll_back(self):
        driver = make_driver(pending="40.00", available="1.00")
        gateway = FakeGateway(script=[TransientGatewayError("timeout")] * 5)

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK)

        self.assertEqual((outcome.status, outcome.reason), (FAILED, "retries_exhausted"))
        self.assertEqual(len(gateway.calls), 5)
        self.assertUntouched(driver, pending="40.00", available="1.00")
        self.assertTrue(PayoutAlert.objects.filter(driver=driver).exists())

    def test_pending_status_is_retried(self):
        driver = make_driver(pending="12.00")
        gateway = FakeGateway(script=["pending"])

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK)

        self.assertEqual(outcome.status, SETTLED)
        self.assertEqual(len(gateway.calls), 2)

    def test_unexpected_gateway_exception_is_transient(self):
        driver = make_driver(pending="12.00")
        gateway = FakeGateway(script=[ConnectionResetError("reset by peer")])

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK)

        self.assertEqual(outcome.status, SETTLED)

    def test_missing_payout_destination_is_skipped(self):
        driver = make_driver(pending="50.00", stripe_account_id="")
        gateway = FakeGateway()

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK)

        self.assertEqual((outcome.status, outcome.reason), (SKIPPED, "no_payout_destination"))
        self.assertEqual(gateway.calls, [])
        self.assertUntouched(driver, pending="50.00")

    def test_unknown_driver_is_skipped(self):
        outcome = self.processor(FakeGateway()).transfer_driver(424242, week=WEEK)
        self.assertEqual((outcome.status, outcome.reason), (SKIPPED, "driver_not_found"))

    def test_settlement_commit_failure_after_paid_transfer_is_escalated(self):
        driver = make_driver(pending="30.00")
        gateway = FakeGateway()

        with mock.patch.object(transfers, "credit_available", side_effect=DatabaseError("disk full")):
            outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK, batch_id="b-9")

        self.assertEqual((outcome.status, outcome.reason), (FAILED, "settlement_commit_failed"))
        # paid money stays reserved, never back in pending
        w = wallet_of(driver)
        self.assertEqual(w.pending_balance, Decimal("0.00"))
        self.assertEqual(w.available_balance, Decimal("0.00"))
        self.assertFalse(DriverPayout.objects.filter(driver=driver).exists())
        self.assertEqual(PayoutReservation.objects.get(driver=driver).amount, Decimal("30.00"))
        alert = PayoutAlert.objects.get(driver=driver)
        self.assertEqual(alert.metadata["transferId"], outcome.transfer_id)
        self.assertEqual(alert.title, "Payout needs reconciliation")

    def test_terminal_failure_releases_reservation_for_a_later_run(self):
        driver = make_driver(pending="25.00")
        gateway = FakeGateway(script=[TerminalGatewayError("account closed")])
        processor = self.processor(gateway)

        failed = processor.transfer_driver(driver.id, week=WEEK)
        retried = processor.transfer_driver(driver.id, week=WEEK)

        self.assertEqual(failed.status, FAILED)
        self.assertEqual(retried.status, SETTLED)
        self.assertEqual(wallet_of(driver).available_balance, Decimal("25.00"))

    def test_inactive_driver_is_skipped(self):
        driver = make_driver(pending="50.00", is_active=False)
        gateway = FakeGateway()

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK)

        self.assertEqual((outcome.status, outcome.reason), (SKIPPED, "driver_inactive"))
        self.assertEqual(gateway.calls, [])
        self.assertUntouched(driver, pending="50.00")

    def test_zero_decimal_currency_never_transfers_more_than_reserved(self):
        driver = make_driver(pending="10.50")
        gateway = FakeGateway()

        outcome = self.processor(gateway, currency="JPY").transfer_driver(driver.id, week=WEEK)

        self.assertEqual(outcome.status, SETTLED)
        self.assertEqual(gateway.calls[0].amount_minor_units, 10)
        w = wallet_of(driver)
        self.assertEqual(w.pending_balance, Decimal("0.50"))
        self.assertEqual(w.available_balance, Decimal("10.00"))


class IdempotencyTests(TransferTestCase):
    def test_repeat_attempt_for_same_week_charges_once(self):
        driver = make_driver(pending="25.00")
        gateway = FakeGateway()
        processor = self.processor(gateway)

        first = processor.transfer_driver(driver.id, week=WEEK)
        second = processor.transfer_driver(driver.id, week=WEEK)

        self.assertEqual(first.status, SETTLED)
        self.assertEqual(second.status, SKIPPED)
        self.assertEqual(gateway.charges, 1)
        self.assertEqual(DriverPayout.objects.filter(driver=driver).count(), 1)

    def test_retry_after_lost_commit_reuses_the_original_charge(self):
        driver = make_driver(pending="25.00")
        gateway = FakeGateway()
        processor = self.processor(gateway)

        with mock.patch.object(transfers, "credit_available", side_effect=DatabaseError("connection lost")):
            lost = processor.transfer_driver(driver.id, week=WEEK)
        retried = processor.transfer_driver(driver.id, week=WEEK)

        self.assertEqual(lost.status, FAILED)
        self.assertEqual(retried.status, SETTLED)
        self.assertEqual(retried.transfer_id, lost.transfer_id)
        self.assertEqual(gateway.charges, 1)
        self.assertEqual(DriverPayout.objects.filter(driver=driver, status="paid").count(), 1)
        self.assertEqual(wallet_of(driver).available_balance, Decimal("25.00"))

    def test_key_is_stable_per_driver_week(self):
        other_week = week_for(datetime(2026, 10, 19, tzinfo=dt_timezone.utc))
        self.assertEqual(idempotency_key(7, WEEK), idempotency_key(7, week_for(datetime(2026, 10, 18, 23, 59, tzinfo=dt_timezone.utc))))
        self.assertNotEqual(idempotency_key(7, WEEK), idempotency_key(7, other_week))
        self.assertNotEqual(idempotency_key(7, WEEK), idempotency_key(8, WEEK))

    def test_batches_straddling_sunday_midnight_settle_their_own_weeks(self):
        driver = make_driver(pending="25.00")
        # every call is a new charge, as once Stripe has dropped the key
        gateway = FakeGateway(remember_keys=False)
        processor = self.processor(gateway)
        broker = RecordingBroker()
        fanout = BatchFanOut(broker, min_amount=Decimal("10.00"))

        fanout.run(now=datetime(2026, 10, 18, 23, 59, 0, tzinfo=dt_timezone.utc))
        late = processor.process_batch(
            broker.jobs[-1]["payload"], now=datetime(2026, 10, 19, 0, 0, 30, tzinfo=dt_timezone.utc)
        )

        DriverWallet.objects.filter(driver=driver).update(pending_balance=Decimal("40.00"))
        fanout.run(now=datetime(2026, 10, 25, 23, 59, 0, tzinfo=dt_timezone.utc))
        early = processor.process_batch(
            broker.jobs[-1]["payload"], now=datetime(2026, 10, 25, 23, 59, 40, tzinfo=dt_timezone.utc)
        )

        self.assertEqual((late.count(SETTLED), early.count(SETTLED)), (1, 1))
        self.assertEqual(
            list(DriverPayout.objects.filter(driver=driver).order_by("week_start").values_list("week_start", "total_paid")),
            [(date(2026, 10, 12), Decimal("25.00")), (date(2026, 10, 19), Decimal("40.00"))],
        )
        w = wallet_of(driver)
        self.assertEqual(w.pending_balance, Decimal("0.00"))
        self.assertEqual(w.available_balance, Decimal("65.00"))
        self.assertEqual(gateway.charges, 2)

    def test_settled_week_is_never_charged_again(self):
        driver = make_driver(pending="40.00")
        DriverPayout.objects.create(
            driver=driver,
            week_start=WEEK.start,
            week_end=WEEK.end,
            total_earnings=Decimal("25.00"),
            total_paid=Decimal("25.00"),
            status="paid",
            payout_method="automatic",
            external_transfer_id="tr_earlier",
        )
        gateway = FakeGateway(remember_keys=False)

        result = self.processor(gateway).process_batch(
            {"drivers": [str(driver.id)], "batchId": "b-2", "weekStart": WEEK.key}, now=NOW
        )

        outcome = result.outcomes[0]
        self.assertEqual((outcome.status, outcome.reason), (SKIPPED, "already_settled"))
        self.assertEqual(outcome.transfer_id, "tr_earlier")
        self.assertEqual(gateway.calls, [])
        self.assertEqual(wallet_of(driver).pending_balance, Decimal("40.00"))

    def test_reservation_older_than_key_window_is_not_resent(self):
        driver = make_driver(pending="0.00")
        reservation = PayoutReservation.objects.create(
            driver=driver,
            week_start=WEEK.start,
            week_end=WEEK.end,
            amount=Decimal("25.00"),
        )
        PayoutReservation.objects.filter(pk=reservation.pk).update(created_at=timezone.now() - timedelta(days=2))
        gateway = FakeGateway()

        outcome = self.processor(gateway).transfer_driver(driver.id, week=WEEK)

        self.assertEqual((outcome.status, outcome.reason), (SKIPPED, "awaiting_reconciliation"))
        self.assertEqual(gateway.calls, [])
        self.assertEqual(PayoutAlert.objects.get(driver=driver).metadata["reservationId"], reservation.pk)

    def test_batch_week_comes_from_payload_not_clock(self):
        driver = make_driver(pending="25.00")

        self.processor(FakeGateway()).process_batch(
            {"drivers": [driver.id], "batchId": "b-5", "weekStart": "2026-10-05"}, now=NOW
        )

        self.assertEqual(DriverPayout.objects.get(driver=driver).week_start, date(2026, 10, 5))


class BatchTests(TransferTestCase):
    def test_one_driver_failing_does_not_stop_the_batch(self):
        broken = make_driver(pending="20.00", name="Broken")
        healthy = make_driver(pending="30.00", name="Healthy")
        gateway = FakeGateway()
        real_reserve = transfers.reserve_pending

        def reserve(driver_id, amount):
            if driver_id == broken.id:
                raise DatabaseError("deadlock detected")
            return real_reserve(driver_id, amount)

        with mock.patch.object(transfers, "reserve_pending", side_effect=reserve):
            result = self.processor(gateway).process_batch(
                {"drivers": [str(broken.id), str(healthy.id)], "batchId": "b-42"}, now=NOW
            )

        self.assertEqual(result.as_dict(), {"ok": True, "batchId": "b-42", "settled": 1, "skipped": 0, "failed": 1})
        self.assertUntouched(broken, pending="20.00")
        w = wallet_of(healthy)
        self.assertEqual(w.pending_balance, Decimal("0.00"))
        self.assertEqual(w.available_balance, Decimal("30.00"))
        self.assertEqual(DriverPayout.objects.get(driver=healthy).batch_id, "b-42")

    def test_mixed_batch_outcomes(self):
        paid = make_driver(pending="25.00")
        small = make_driver(pending="5.00")
        no_dest = make_driver(pending="25.00", stripe_account_id=None)

        result = self.processor(FakeGateway()).process_batch(
            {"drivers": [paid.id, small.id, no_dest.id], "batchId": "b-7"}, now=NOW
        )

        self.assertEqual([o.status for o in result.outcomes], [SETTLED, SKIPPED, SKIPPED])

    def test_malformed_payload_fails_the_job(self):
        with self.assertRaises(ValueError):
            self.processor(FakeGateway()).process_batch({"batchId": "b-0"}, now=NOW)


class ConcurrentBatchTests(TransactionTestCase):
    def test_batch_settles_with_transfers_in_flight_together(self):
        drivers = [make_driver(pending=f"{20 + i}.00", name=f"Driver {i}") for i in range(3)]
        # each transfer blocks until all three are inside the gateway at once
        gateway = RendezvousGateway(parties=3)
        processor = DriverTransferProcessor(
            gateway,
            min_amount=Decimal("10.00"),
            concurrency=3,
            retry_policy=RetryPolicy(retries=1, base_delay=0),
            sleep=lambda delay: None,
        )

        result = processor.process_batch(
            {"drivers": [str(d.id) for d in drivers], "batchId": "b-c", "weekStart": WEEK.key}
        )

        self.assertEqual(result.as_dict(), {"ok": True, "batchId": "b-c", "settled": 3, "skipped": 0, "failed": 0})
        for i, driver in enumerate(drivers):
            w = wallet_of(driver)
            self.assertEqual(w.pending_balance, Decimal("0.00"))
            self.assertEqual(w.available_balance, Decimal(f"{20 + i}.00"))
        self.assertEqual(DriverPayout.objects.filter(status="paid", batch_id="b-c").count(), 3)
