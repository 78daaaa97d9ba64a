import random
import re
import unittest
from datetime import timedelta

import payment_ledger
from errors import InputValidationError, PaymentDeclinedError, PaymentGatewayError
from payment_ledger import GatewayOutcome, GatewayResult, SimulatedGateway
from testing_support import FIXED_NOW, make_account


class TransientGateway:
    def __init__(self):
        self.requests = []

    async def charge(self, request):
        self.requests.append(request)
        return GatewayResult(outcome=GatewayOutcome.TRANSIENT_ERROR, message="timeout")


class TestPlanLabels(unittest.TestCase):
    def test_labels_map_to_plans(self):
        for label in ("Pro Student", "Mwanafunzi Pro", "pro", " PRO "):
            self.assertEqual(payment_ledger.resolve_plan(label), "pro")
        for label in ("School Plan", "Mpango wa Shule", "school"):
            self.assertEqual(payment_ledger.resolve_plan(label), "school")

    def test_unknown_label_is_rejected(self):
        with self.assertRaises(InputValidationError) as ctx:
            payment_ledger.resolve_plan("Premium Gold")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_catalogue_prices(self):
        plans = {plan.plan_id: plan for plan in payment_ledger.get_subscription_plans()}
        self.assertEqual(plans["pro"].amount_kes, 199)
        self.assertEqual(plans["school"].amount_kes, 3999)


class TestReferences(unittest.TestCase):
    def test_reference_format_and_uniqueness(self):
        account = make_account()
        first = payment_ledger.generate_reference(account, FIXED_NOW)
        self.assertRegex(first, rf"^SHULE_\d+_{re.escape(account.id)}$")
        self.assertEqual(payment_ledger.parse_reference(first), account.id)

        account.subscription.payment_history.append(
            payment_ledger.PaymentRecord(amount=199, method="mpesa", transaction_id=first, status="failed")
        )
        second = payment_ledger.generate_reference(account, FIXED_NOW)
        self.assertNotEqual(first, second)

    def test_parse_rejects_foreign_references(self):
        self.assertIsNone(payment_ledger.parse_reference("INV_123"))
        self.assertIsNone(payment_ledger.parse_reference("SHULE_abc_user"))


class TestProcessPayment(unittest.IsolatedAsyncioTestCase):
    async def test_success_activates_plan_for_thirty_days(self):
        account = make_account()
        record = await payment_ledger.process_payment(
            account,
            amount=199,
            method="mpesa",
            plan_label="Pro Student",
            gateway=SimulatedGateway(success_rate=1.0),
            now=FIXED_NOW,
        )
        subscription = account.subscription
        self.assertEqual(subscription.plan, "pro")
        self.assertEqual(subscription.status, "active")
        self.assertEqual(subscription.start_date, FIXED_NOW)
        self.assertEqual(subscription.end_date, FIXED_NOW + timedelta(days=30))
        self.assertEqual(len(subscription.payment_history), 1)
        self.assertEqual(record.status, "completed")
        self.assertTrue(record.transaction_id.startswith("SHULE_"))
        self.assertTrue(payment_ledger.is_subscription_active(subscription, FIXED_NOW))

    async def test_decline_records_failure_and_keeps_plan(self):
        account = make_account()
        with self.assertRaises(PaymentDeclinedError) as ctx:
            await payment_ledger.process_payment(
                account,
                amount=3999,
                method="card",
                plan_label="School Plan",
                gateway=SimulatedGateway(success_rate=0.0),
                now=FIXED_NOW,
            )
        self.assertFalse(ctx.exception.to_response()["retryable"])
        self.assertEqual(account.subscription.plan, "free")
        self.assertEqual([p.status for p in account.subscription.payment_history], ["failed"])

    async def test_transient_error_records_nothing(self):
        account = make_account()
        gateway = TransientGateway()
        with self.assertRaises(PaymentGatewayError) as ctx:
            await payment_ledger.process_payment(
                account, amount=199, method="mpesa", plan_label="pro", gateway=gateway, now=FIXED_NOW
            )
        self.assertTrue(ctx.exception.to_response()["retryable"])
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(len(gateway.requests), 1)
        self.assertEqual(account.subscription.payment_history, [])

    async def test_simulated_gateway_follows_its_rng(self):
        gateway = SimulatedGateway(success_rate=0.9, rng=random.Random(7))
        outcomes = []
        for _ in range(200):
            account = make_account()
            try:
                await payment_ledger.process_payment(
                    account, amount=199, method="mpesa", plan_label="pro", gateway=gateway, now=FIXED_NOW
                )
                outcomes.append(True)
            except PaymentDeclinedError:
                outcomes.append(False)
        self.assertIn(True, outcomes)
        self.assertIn(False, outcomes)

    async def test_amount_below_plan_price_is_rejected_before_charging(self):
        account = make_account()
        gateway = TransientGateway()
        with self.assertRaises(InputValidationError) as ctx:
            await payment_ledger.process_payment(
                account, amount=1, method="mpesa", plan_label="School Plan", gateway=gateway, now=FIXED_NOW
            )
        self.assertEqual(ctx.exception.to_response()["details"][0]["field"], "amount")
        self.assertEqual(gateway.requests, [])
        self.assertEqual(account.subscription.payment_history, [])

    def test_invalid_success_rate(self):
        with self.assertRaises(ValueError):
            SimulatedGateway(success_rate=1.5)


class PendingGateway:
    async def charge(self, request):
        return GatewayResult(outcome=GatewayOutcome.PENDING, message="STK push sent")


class TestCallbacks(unittest.IsolatedAsyncioTestCase):
    async def _pending_payment(self, account):
        return await payment_ledger.process_payment(
            account,
            amount=199,
            method="mpesa",
            plan_label="Mwanafunzi Pro",
            gateway=PendingGateway(),
            now=FIXED_NOW,
        )

    async def test_pending_payment_leaves_plan_until_confirmed(self):
        account = make_account()
        record = await self._pending_payment(account)
        self.assertEqual(record.status, "pending")
        self.assertEqual(account.subscription.plan, "free")

        later = FIXED_NOW + timedelta(minutes=5)
        self.assertTrue(payment_ledger.apply_callback(account, record.transaction_id, "completed", "ISL-42", later))
        payment = payment_ledger.find_payment(account, record.transaction_id)
        self.assertEqual(payment.status, "completed")
        self.assertEqual(payment.gateway_reference, "ISL-42")
        self.assertEqual(account.subscription.plan, "pro")
        self.assertEqual(account.subscription.end_date, later + timedelta(days=30))

    async def test_pending_payment_can_fail(self):
        account = make_account()
        record = await self._pending_payment(account)
        self.assertTrue(payment_ledger.apply_callback(account, record.transaction_id, "failed", None, FIXED_NOW))
        self.assertEqual(payment_ledger.find_payment(account, record.transaction_id).status, "failed")
        self.assertEqual(account.subscription.plan, "free")

    async def test_declined_payment_cannot_be_completed_by_callback(self):
        account = make_account()
        with self.assertRaises(PaymentDeclinedError) as ctx:
            await payment_ledger.process_payment(
                account,
                amount=3999,
                method="mpesa",
                plan_label="School Plan",
                gateway=SimulatedGateway(success_rate=0.0),
                now=FIXED_NOW,
            )
        reference = ctx.exception.transaction_id
        self.assertFalse(payment_ledger.apply_callback(account, reference, "completed", "ISL-42", FIXED_NOW))
        self.assertEqual(payment_ledger.find_payment(account, reference).status, "failed")
        self.assertEqual(account.subscription.plan, "free")

    async def test_completed_payment_is_not_reversed_by_callback(self):
        account = make_account()
        record = await payment_ledger.process_payment(
            account, amount=199, method="mpesa", plan_label="pro", gateway=SimulatedGateway(1.0), now=FIXED_NOW
        )
        self.assertFalse(payment_ledger.apply_callback(account, record.transaction_id, "failed", None, FIXED_NOW))
        self.assertEqual(payment_ledger.find_payment(account, record.transaction_id).status, "completed")
        self.assertEqual(account.subscription.plan, "pro")

    def test_unknown_reference_is_ignored(self):
        account = make_account()
        self.assertFalse(payment_ledger.apply_callback(account, f"SHULE_1_{account.id}", "completed"))
        self.assertEqual(account.subscription.plan, "free")


if __name__ == "__main__":
    unittest.main()
