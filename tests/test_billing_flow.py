import copy
import unittest
import uuid
from datetime import datetime, timedelta

from core.billing_service import (
    BillingService,
    ensure_user,
    get_subscription_by_payment_id,
    sweep_expired_subscriptions,
)
from core.config import cfg
from core.db import DB
from core.errors import (
    AlreadySubscribed,
    GatewayUnavailable,
    InvalidAmount,
    InvalidPlan,
    InvalidRequest,
    NotFound,
    PaymentVerificationFailed,
    TrialNotEligible,
)
from core.models.billing_order import BillingOrder
from core.models.payment_event import PaymentEvent
from core.models.subscription import Subscription
from core.models.user import User
from jobs.billing import run_sweep_once, sweep_interval


class FakePaymentsClient:
    def __init__(self, can_use_trial=False):
        self.package_id = "com.test.app"
        self.base_url = "http://payments.test"
        self.can_use_trial = can_use_trial
        self.verified = True
        self.error = None
        self.list_error = None
        self.calls = []
        self.last_context = None

    def _call(self, name):
        self.calls.append(name)
        if self.error:
            raise self.error

    def create_order(self, user_id, amount, currency, payment_context=None):
        self._call("create_order")
        self.last_context = payment_context
        pid = f"po_{uuid.uuid4().hex[:12]}"
        return {"payment_order_id": pid, "gateway_order_id": f"order_{pid}", "gateway_key": "rzp_test", "raw": {}}

    def create_subscription(self, user_id, plan_id, payment_context=None):
        self._call("create_subscription")
        self.last_context = payment_context
        pid = f"ps_{uuid.uuid4().hex[:12]}"
        return {
            "payment_subscription_id": pid,
            "gateway_subscription_id": f"sub_{pid}",
            "short_url": f"https://pay.test/{pid}",
            "gateway_key": "rzp_test",
            "raw": {},
        }

    def cancel_subscription(self, user_id, payment_subscription_id, gateway_subscription_id="", reason=""):
        self._call("cancel_subscription")
        return {"subscriptionId": payment_subscription_id, "status": "cancelled"}

    def list_orders(self, user_id, page=1, limit=10):
        self._call("list_orders")
        return {"orders": [], "pagination": {"page": page, "limit": limit, "total": 0}}

    def list_subscriptions(self, user_id, page=1, limit=10):
        self.calls.append("list_subscriptions")
        if self.list_error:
            raise self.list_error
        return {"subscriptions": [{"id": "remote_1", "status": "active"}]}

    def verify_success(self, user_id, gateway_order_id, gateway_payment_id, gateway_signature):
        self._call("verify_success")
        return self.verified

    def trial_eligibility(self, user_id, package_id=""):
        self._call("trial_eligibility")
        return {"can_use_trial": self.can_use_trial, "has_existing_subscription": False}


class BillingFlowTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self.session = DB.get_session()
        self.user_id = f"u_{uuid.uuid4().hex[:10]}"
        self.user = ensure_user(
            self.session,
            {
                "id": self.user_id,
                "username": self.user_id,
                "name": "Asha",
                "email": f"{self.user_id}@example.com",
                "phone": "9876543210",
            },
        )
        self.client = FakePaymentsClient()
        self.service = BillingService(self.client)

    def tearDown(self):
        self.session.rollback()
        self.session.query(PaymentEvent).filter(PaymentEvent.user_id == self.user_id).delete()
        self.session.query(BillingOrder).filter(BillingOrder.user_id == self.user_id).delete()
        self.session.query(Subscription).filter(Subscription.user_id == self.user_id).delete()
        self.session.query(User).filter(User.id == self.user_id).delete()
        self.session.commit()
        self.session.close()

    def _user(self):
        self.session.expire_all()
        return self.session.query(User).filter(User.id == self.user_id).first()

    # ─── Orders ───────────────────────────────────────────────────────────────

    def test_create_order_persists_after_remote_success(self):
        result = self.service.create_order(self.session, self.user_id, 9900, "inr", order_type="content_purchase")
        order = result["order"]
        self.assertEqual(order["status"], "created")
        self.assertEqual(order["amount"], 9900)
        self.assertEqual(order["currency"], "INR")
        self.assertTrue(order["payment_order_id"].startswith("po_"))
        self.assertEqual(result["checkout"]["gateway_key"], "rzp_test")
        self.assertEqual(self.client.last_context["orderType"], "content_purchase")
        self.assertEqual(self.client.last_context["userId"], self.user_id)

    def test_invalid_amount_never_calls_gateway(self):
        for amount in (0, -5, True, "9900", 9.5):
            with self.assertRaises(InvalidAmount):
                self.service.create_order(self.session, self.user_id, amount, "INR")
        self.assertEqual(self.client.calls, [])

    def test_invalid_currency_and_order_type(self):
        with self.assertRaises(InvalidRequest):
            self.service.create_order(self.session, self.user_id, 100, "RUPEES")
        with self.assertRaises(InvalidRequest):
            self.service.create_order(self.session, self.user_id, 100, "INR", order_type="gift")

    def test_gateway_failure_leaves_no_local_order(self):
        self.client.error = GatewayUnavailable()
        with self.assertRaises(GatewayUnavailable) as ctx:
            self.service.create_order(self.session, self.user_id, 9900, "INR")
        self.assertEqual(ctx.exception.message, "payment service unavailable")
        count = self.session.query(BillingOrder).filter(BillingOrder.user_id == self.user_id).count()
        self.assertEqual(count, 0)

    def test_list_orders_paginates(self):
        for _ in range(3):
            self.service.create_order(self.session, self.user_id, 500, "INR")
        page = self.service.list_orders(self.session, self.user_id, page=1, limit=2)
        self.assertEqual(len(page["orders"]), 2)
        self.assertEqual(page["pagination"]["total"], 3)
        self.assertEqual(page["pagination"]["pages"], 2)

    def test_verify_payment_marks_order_paid(self):
        created = self.service.create_order(self.session, self.user_id, 9900, "INR")["order"]
        result = self.service.verify_payment(
            self.session, self.user_id, created["gateway_order_id"], "pay_1", "sig_1"
        )
        self.assertTrue(result["verified"])
        self.assertEqual(result["order"]["status"], "paid")
        self.assertEqual(result["order"]["gateway_payment_id"], "pay_1")

        again = self.service.verify_payment(self.session, self.user_id, created["gateway_order_id"], "pay_1", "sig_1")
        self.assertEqual(again["order"]["status"], "paid")

    def test_verify_payment_rejected_by_gateway(self):
        created = self.service.create_order(self.session, self.user_id, 9900, "INR")["order"]
        self.client.verified = False
        with self.assertRaises(PaymentVerificationFailed):
            self.service.verify_payment(self.session, self.user_id, created["gateway_order_id"], "pay_1", "bad")
        order = self.session.query(BillingOrder).filter(BillingOrder.id == created["id"]).first()
        self.assertEqual(order.status, "created")

    def test_verify_payment_requires_fields(self):
        with self.assertRaises(InvalidRequest):
            self.service.verify_payment(self.session, self.user_id, "order_1", "", "sig")

    # ─── Subscriptions ────────────────────────────────────────────────────────

    def test_create_subscription_enriches_context(self):
        result = self.service.create_subscription(
            self.session, self.user, "monthly", context={"metadata": {"userName": "Custom"}}
        )
        sub = result["subscription"]
        self.assertEqual(sub["status"], "created")
        self.assertEqual(sub["plan_type"], "monthly")
        self.assertEqual(sub["plan_id"], "plan_kids_story_monthly")
        self.assertEqual(sub["amount"], 9900)
        self.assertTrue(result["checkout"]["short_url"].startswith("https://pay.test/"))
        metadata = self.client.last_context["metadata"]
        self.assertEqual(metadata["userName"], "Custom")
        self.assertEqual(metadata["userEmail"], f"{self.user_id}@example.com")
        self.assertEqual(metadata["packageId"], "com.test.app")

    def test_unknown_plan_is_rejected(self):
        with self.assertRaises(InvalidPlan):
            self.service.create_subscription(self.session, self.user, "weekly")
        self.assertEqual(self.client.calls, [])

    def test_second_subscription_rejected_while_active(self):
        first = self.service.create_subscription(self.session, self.user, "monthly")["subscription"]
        sub = get_subscription_by_payment_id(self.session, first["payment_subscription_id"])
        sub.status = "active"
        self.session.commit()

        with self.assertRaises(AlreadySubscribed) as ctx:
            self.service.create_subscription(self.session, self.user, "yearly")
        self.assertEqual(ctx.exception.message, "already subscribed")
        self.assertEqual(self.client.calls.count("create_subscription"), 1)

    def test_trial_requires_eligibility(self):
        self.client.can_use_trial = False
        with self.assertRaises(TrialNotEligible):
            self.service.create_subscription(self.session, self.user, "trial")
        self.assertNotIn("create_subscription", self.client.calls)

    def test_trial_used_blocks_trial_without_gateway(self):
        self.client.can_use_trial = True
        user = self._user()
        user.trial_used = True
        self.session.commit()
        with self.assertRaises(TrialNotEligible):
            self.service.create_subscription(self.session, user, "trial")
        self.assertEqual(self.client.calls, [])

    def test_eligible_trial_subscription(self):
        self.client.can_use_trial = True
        sub = self.service.create_subscription(self.session, self.user, "trial")["subscription"]
        self.assertEqual(sub["plan_type"], "trial")
        self.assertEqual(sub["amount"], 3)

    def test_resolve_plans_respects_trial_used(self):
        self.client.can_use_trial = True
        self.assertTrue(self.service.resolve_plans(self.session, self.user_id)["trial_eligible"])
        user = self._user()
        user.trial_used = True
        self.session.commit()
        result = self.service.resolve_plans(self.session, self.user_id)
        self.assertFalse(result["trial_eligible"])
        self.assertEqual(len(result["plans"]), 2)

    def test_overview_degrades_when_gateway_down(self):
        self.service.create_subscription(self.session, self.user, "monthly")
        self.client.list_error = GatewayUnavailable()
        overview = self.service.get_subscription_overview(self.session, self.user_id)
        self.assertEqual(overview["source"], "local")
        self.assertIsNone(overview["remote"])
        self.assertEqual(overview["subscription"]["status"], "created")

        self.client.list_error = None
        overview = self.service.get_subscription_overview(self.session, self.user_id)
        self.assertEqual(overview["source"], "local+remote")
        self.assertEqual(overview["remote"]["id"], "remote_1")

    def _active_subscription(self, plan_type="monthly"):
        created = self.service.create_subscription(self.session, self.user, plan_type)["subscription"]
        sub = get_subscription_by_payment_id(self.session, created["payment_subscription_id"])
        sub.status = "active"
        sub.end_date = datetime.now() + timedelta(days=20)
        user = self._user()
        user.is_premium = True
        user.premium_plan_type = plan_type
        self.session.commit()
        return created["payment_subscription_id"]

    def test_user_cancel_records_actor_and_drops_premium(self):
        pid = self._active_subscription()
        result = self.service.cancel_subscription(self.session, self.user_id, reason="too expensive")

        self.assertEqual(result["subscription"]["status"], "cancelled")
        self.assertEqual(result["subscription"]["cancelled_by"], self.user_id)
        self.assertEqual(result["subscription"]["cancellation_reason"], "too expensive")
        self.assertIsNotNone(result["cancelled_at"])
        self.assertIn("cancel_subscription", self.client.calls)

        self.session.expire_all()
        sub = get_subscription_by_payment_id(self.session, pid)
        self.assertFalse(sub.auto_renewal)
        self.assertIsNone(sub.next_billing_date)
        self.assertFalse(self._user().is_premium)

    def test_user_cancel_without_subscription_is_not_found(self):
        with self.assertRaises(NotFound):
            self.service.cancel_subscription(self.session, self.user_id)
        # created 订阅尚未支付，不可取消
        self.service.create_subscription(self.session, self.user, "monthly")
        with self.assertRaises(NotFound):
            self.service.cancel_subscription(self.session, self.user_id)
        self.assertNotIn("cancel_subscription", self.client.calls)

    def test_user_cancel_keeps_local_state_when_gateway_fails(self):
        pid = self._active_subscription()
        self.client.error = GatewayUnavailable()
        with self.assertRaises(GatewayUnavailable):
            self.service.cancel_subscription(self.session, self.user_id)
        self.session.expire_all()
        self.assertEqual(get_subscription_by_payment_id(self.session, pid).status, "active")
        self.assertTrue(self._user().is_premium)

    def test_premium_status_for_new_user(self):
        status = self.service.get_premium_status(self.session, self.user_id)
        self.assertFalse(status["is_premium"])
        self.assertEqual(status["status"], "inactive")
        self.assertFalse(status["trial_used"])

    def test_sweep_expires_lapsed_subscription(self):
        created = self.service.create_subscription(self.session, self.user, "monthly")["subscription"]
        sub = get_subscription_by_payment_id(self.session, created["payment_subscription_id"])
        sub.status = "active"
        sub.end_date = datetime.now() - timedelta(days=1)
        user = self._user()
        user.is_premium = True
        user.premium_plan_type = "monthly"
        self.session.commit()

        # 读取时不做隐式过期
        self.assertEqual(self.service.get_premium_status(self.session, self.user_id)["status"], "active")

        result = sweep_expired_subscriptions(self.session, limit=100)
        self.assertIn(created["payment_subscription_id"], result["subscriptions"])
        self.session.expire_all()
        sub = get_subscription_by_payment_id(self.session, created["payment_subscription_id"])
        self.assertEqual(sub.status, "expired")
        self.assertFalse(self._user().is_premium)

    def test_ensure_user_is_idempotent(self):
        again = ensure_user(self.session, {"id": self.user_id, "username": "other"})
        self.assertEqual(again.username, self.user_id)
        with self.assertRaises(InvalidRequest):
            ensure_user(self.session, {"id": ""})


class SweepJobTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self._origin_billing = copy.deepcopy(cfg.config.get("billing", {}))

    def tearDown(self):
        cfg.config["billing"] = self._origin_billing

    def test_interval_has_floor(self):
        cfg.set("billing.subscription_sweep_interval_seconds", 10)
        self.assertEqual(sweep_interval(), 300)
        cfg.set("billing.subscription_sweep_interval_seconds", 7200)
        self.assertEqual(sweep_interval(), 7200)

    def test_run_sweep_once_reports_both_passes(self):
        session = DB.get_session()
        try:
            result = run_sweep_once(session)
        finally:
            session.close()
        self.assertIn("total", result)
        self.assertIn("pruned_events", result)


if __name__ == "__main__":
    unittest.main()
