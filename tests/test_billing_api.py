import copy
import unittest
import uuid

from fastapi.testclient import TestClient

from apis.billing import get_payments_client
from core import m2m
from core.auth import get_current_user
from core.config import API_BASE, cfg
from core.db import DB
from core.errors import GatewayUnavailable
from core.models.billing_order import BillingOrder
from core.models.payment_event import PaymentEvent
from core.models.subscription import Subscription
from core.models.user import User
from web import app

SECRET = "test-m2m-secret-0123456789abcdef-xyz"


class FakePaymentsClient:
    def __init__(self):
        self.package_id = "com.test.app"
        self.base_url = "http://payments.test"
        self.can_use_trial = True
        self.error = None

    def create_order(self, user_id, amount, currency, payment_context=None):
        if self.error:
            raise self.error
        pid = f"po_{uuid.uuid4().hex[:12]}"
        return {"payment_order_id": pid, "gateway_order_id": f"order_{pid}", "gateway_key": "rzp_test", "raw": {}}

    def create_subscription(self, user_id, plan_id, payment_context=None):
        if self.error:
            raise self.error
        pid = f"ps_{uuid.uuid4().hex[:12]}"
        return {"payment_subscription_id": pid, "gateway_subscription_id": f"sub_{pid}", "short_url": "", "gateway_key": "", "raw": {}}

    def cancel_subscription(self, user_id, payment_subscription_id, gateway_subscription_id="", reason=""):
        if self.error:
            raise self.error
        return {"subscriptionId": payment_subscription_id, "status": "cancelled"}

    def list_subscriptions(self, user_id, page=1, limit=10):
        return {"subscriptions": []}

    def trial_eligibility(self, user_id, package_id=""):
        return {"can_use_trial": self.can_use_trial, "has_existing_subscription": False}


class BillingApiTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self._origin_payments = copy.deepcopy(cfg.config.get("payments", {}))
        cfg.set("payments.m2m.secret", SECRET)
        cfg.set("payments.callback_require_m2m", True)
        cfg.set("payments.package_id", "com.test.app")

        self.user_id = f"u_{uuid.uuid4().hex[:10]}"
        self.fake = FakePaymentsClient()
        app.state.payments_client = self.fake
        app.dependency_overrides[get_current_user] = lambda: {
            "id": self.user_id,
            "username": self.user_id,
            "name": "Asha",
            "email": f"{self.user_id}@example.com",
            "phone": "",
            "role": "user",
        }
        app.dependency_overrides[get_payments_client] = lambda: self.fake
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        app.state.payments_client = None
        cfg.config["payments"] = self._origin_payments
        session = DB.get_session()
        try:
            session.query(PaymentEvent).filter(PaymentEvent.user_id == self.user_id).delete()
            session.query(BillingOrder).filter(BillingOrder.user_id == self.user_id).delete()
            session.query(Subscription).filter(Subscription.user_id == self.user_id).delete()
            session.query(User).filter(User.id == self.user_id).delete()
            session.commit()
        finally:
            session.close()

    def _m2m_headers(self, issuer="payments", audience="core"):
        return {"Authorization": f"Bearer {m2m.mint(issuer, audience, secret=SECRET)}"}

    def test_create_order(self):
        resp = self.client.post(f"{API_BASE}/payment/order", json={"amount": 9900, "currency": "INR", "orderType": "content_purchase"})
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["error"], [])
        self.assertEqual(body["data"]["order"]["status"], "created")
        self.assertEqual(body["data"]["order"]["order_type"], "content_purchase")

    def test_invalid_amount_is_insufficient_data(self):
        resp = self.client.post(f"{API_BASE}/payment/order", json={"amount": 0})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])
        self.assertIn("insufficient data", resp.json()["message"])

        resp = self.client.post(f"{API_BASE}/payment/order", json={"currency": "INR"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "insufficient data")

    def test_gateway_down_is_503_without_detail(self):
        self.fake.error = GatewayUnavailable(detail="connect to 10.0.0.5 refused")
        resp = self.client.post(f"{API_BASE}/payment/order", json={"amount": 9900})
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["message"], "payment service unavailable")
        self.assertNotIn("10.0.0.5", resp.text)

    def test_missing_payments_client_is_503(self):
        app.dependency_overrides.pop(get_payments_client)
        app.state.payments_client = None
        resp = self.client.get(f"{API_BASE}/payment/plans")
        self.assertEqual(resp.status_code, 503)

    def test_second_subscription_is_409(self):
        resp = self.client.post(f"{API_BASE}/payment/subscription", json={"planType": "monthly"})
        self.assertEqual(resp.status_code, 201)
        payment_subscription_id = resp.json()["data"]["subscription"]["payment_subscription_id"]

        callback = {
            "event": "subscription.activated",
            "userId": self.user_id,
            "data": {"subscriptionId": payment_subscription_id},
            "deliveryId": "dlv-activate",
        }
        resp = self.client.post(f"{API_BASE}/payment/callback", json=callback, headers=self._m2m_headers())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["outcome"], "applied")

        resp = self.client.post(f"{API_BASE}/payment/subscription", json={"planType": "yearly"})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["message"], "already subscribed")

        status = self.client.get(f"{API_BASE}/payment/premium-status").json()["data"]
        self.assertTrue(status["is_premium"])
        self.assertEqual(status["plan_type"], "monthly")

    def test_cancel_current_subscription(self):
        resp = self.client.post(f"{API_BASE}/payment/subscriptions/current/cancel", json={"reason": "moving"})
        self.assertEqual(resp.status_code, 404)
        self.assertFalse(resp.json()["success"])

        created = self.client.post(f"{API_BASE}/payment/subscription", json={"planType": "monthly"})
        payment_subscription_id = created.json()["data"]["subscription"]["payment_subscription_id"]
        callback = {
            "event": "subscription.activated",
            "userId": self.user_id,
            "data": {"subscriptionId": payment_subscription_id},
            "deliveryId": "dlv-activate",
        }
        self.client.post(f"{API_BASE}/payment/callback", json=callback, headers=self._m2m_headers())

        resp = self.client.post(f"{API_BASE}/payment/subscriptions/current/cancel", json={"reason": "moving"})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]["subscription"]
        self.assertEqual(data["status"], "cancelled")
        self.assertEqual(data["cancelled_by"], self.user_id)
        self.assertEqual(data["cancellation_reason"], "moving")
        self.assertFalse(self.client.get(f"{API_BASE}/payment/premium-status").json()["data"]["is_premium"])

        # 远端随后推送的取消回调不再改变状态
        callback = dict(callback, event="subscription.cancelled", deliveryId="dlv-cancel")
        resp = self.client.post(f"{API_BASE}/payment/callback", json=callback, headers=self._m2m_headers())
        self.assertEqual(resp.json()["data"]["outcome"], "noop")

    def test_plans_and_catalog(self):
        data = self.client.get(f"{API_BASE}/payment/plans").json()["data"]
        self.assertTrue(data["trial_eligible"])
        self.assertEqual(len(data["plans"]), 1)
        self.assertEqual(data["plans"][0]["trial_price"], 3)

        catalog = self.client.get(f"{API_BASE}/payment/plans/catalog").json()["data"]
        self.assertEqual(len(catalog), 3)

    def test_callback_requires_m2m(self):
        body = {"orderId": "po_missing", "status": "paid", "gatewayPaymentId": "pay_1"}
        resp = self.client.post(f"{API_BASE}/payment/callback", json=body)
        self.assertEqual(resp.status_code, 401)

        resp = self.client.post(f"{API_BASE}/payment/callback", json=body, headers=self._m2m_headers(audience="payments"))
        self.assertEqual(resp.status_code, 401)

        resp = self.client.post(f"{API_BASE}/payment/callback", json=body, headers=self._m2m_headers())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["outcome"], "unknown_entity")

    def test_callback_guard_can_be_disabled(self):
        cfg.set("payments.callback_require_m2m", False)
        resp = self.client.post(f"{API_BASE}/payment/callback", json={"orderId": "po_missing", "status": "paid"})
        self.assertEqual(resp.status_code, 200)

    def test_callback_malformed_and_unknown_event(self):
        headers = self._m2m_headers()
        resp = self.client.post(f"{API_BASE}/payment/callback", json={"userId": self.user_id}, headers=headers)
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            f"{API_BASE}/payment/callback",
            json={"event": "order.teleported", "data": {"orderId": "po_1"}},
            headers=headers,
        )
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])

    def test_order_callback_flow_and_replay(self):
        order = self.client.post(f"{API_BASE}/payment/order", json={"amount": 9900, "currency": "INR"}).json()["data"]["order"]
        body = {"userId": self.user_id, "orderId": order["payment_order_id"], "status": "paid", "gatewayPaymentId": "pay_1"}
        headers = self._m2m_headers()
        first = self.client.post(f"{API_BASE}/payment/callback", json=body, headers=headers)
        replay = self.client.post(f"{API_BASE}/payment/callback", json=body, headers=self._m2m_headers())
        self.assertEqual(first.status_code, 200)
        self.assertEqual(replay.status_code, 200)
        self.assertEqual(replay.json()["data"]["outcome"], "duplicate")

        orders = self.client.get(f"{API_BASE}/payment/orders", params={"status": "paid"}).json()["data"]["orders"]
        self.assertEqual(len(orders), 1)
        self.assertEqual(orders[0]["gateway_payment_id"], "pay_1")

    def test_internal_events_route(self):
        resp = self.client.post(f"{API_BASE}/internal/payments/events", json={"event": "order.paid", "data": {"orderId": "po_x"}})
        self.assertEqual(resp.status_code, 401)
        resp = self.client.post(
            f"{API_BASE}/internal/payments/events",
            json={"event": "order.paid", "data": {"orderId": "po_x"}},
            headers=self._m2m_headers(),
        )
        self.assertEqual(resp.status_code, 200)

    def test_status_and_current_subscription(self):
        status = self.client.get(f"{API_BASE}/payment/status").json()["data"]
        self.assertTrue(status["enabled"])
        self.assertEqual(status["package_id"], "com.test.app")

        current = self.client.get(f"{API_BASE}/payment/subscriptions/current").json()["data"]
        self.assertIsNone(current["subscription"])
        self.assertEqual(current["source"], "local+remote")

    def test_requires_user_token(self):
        app.dependency_overrides.pop(get_current_user)
        resp = self.client.get(f"{API_BASE}/payment/orders")
        self.assertEqual(resp.status_code, 401)
        self.assertFalse(resp.json()["success"])


if __name__ == "__main__":
    unittest.main()
