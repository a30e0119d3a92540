import copy
import unittest
from datetime import datetime

from core.config import cfg
from core.errors import GatewayTimeout, InvalidPlan
from core.plan_service import (
    TRIAL_PRICE,
    check_trial_eligibility,
    get_plan_catalog,
    get_remote_plan_id,
    normalize_plan_type,
    plan_period_end,
    plan_type_for_remote_id,
    resolve_plans,
)


class FakeEligibilityClient:
    def __init__(self, can_use_trial=False, error=None):
        self.can_use_trial = can_use_trial
        self.error = error
        self.calls = 0

    def trial_eligibility(self, user_id, package_id=""):
        self.calls += 1
        if self.error:
            raise self.error
        return {"can_use_trial": self.can_use_trial, "has_existing_subscription": False}


class PlanServiceTestCase(unittest.TestCase):
    def setUp(self):
        self._origin_payments = copy.deepcopy(cfg.config.get("payments", {}))

    def tearDown(self):
        cfg.config["payments"] = self._origin_payments

    def test_eligible_user_gets_single_trial_plan(self):
        result = resolve_plans(FakeEligibilityClient(can_use_trial=True), "u1", "com.test.app")
        self.assertTrue(result["trial_eligible"])
        self.assertEqual(len(result["plans"]), 1)
        plan = result["plans"][0]
        self.assertEqual(plan["plan"], "monthly")
        self.assertTrue(plan["free_trial"])
        self.assertEqual(plan["trial_price"], TRIAL_PRICE)
        self.assertEqual(TRIAL_PRICE, 3)

    def test_ineligible_user_gets_full_price_plans(self):
        result = resolve_plans(FakeEligibilityClient(can_use_trial=False), "u1")
        self.assertFalse(result["trial_eligible"])
        self.assertGreaterEqual(len(result["plans"]), 2)
        self.assertEqual([p["plan"] for p in result["plans"]], ["monthly", "yearly"])
        for plan in result["plans"]:
            self.assertFalse(plan["free_trial"])
            self.assertNotIn("trial_price", plan)

    def test_gateway_failure_fails_safe(self):
        client = FakeEligibilityClient(can_use_trial=True, error=GatewayTimeout())
        self.assertFalse(check_trial_eligibility(client, "u1"))
        result = resolve_plans(client, "u1")
        self.assertFalse(result["trial_eligible"])
        self.assertEqual(len(result["plans"]), 2)

    def test_trial_used_skips_gateway(self):
        client = FakeEligibilityClient(can_use_trial=True)
        result = resolve_plans(client, "u1", trial_used=True)
        self.assertFalse(result["trial_eligible"])
        self.assertEqual(client.calls, 0)

    def test_catalog_lists_all_plans(self):
        catalog = get_plan_catalog()
        self.assertEqual([p["plan"] for p in catalog], ["trial", "monthly", "yearly"])
        yearly = catalog[2]
        self.assertEqual(yearly["price"], 49900)
        self.assertIn("savings", yearly)

    def test_normalize_plan_type(self):
        self.assertEqual(normalize_plan_type(" Monthly "), "monthly")
        with self.assertRaises(InvalidPlan):
            normalize_plan_type("weekly")
        with self.assertRaises(InvalidPlan):
            normalize_plan_type(None)

    def test_remote_plan_id_can_be_configured(self):
        self.assertEqual(get_remote_plan_id("yearly"), "plan_kids_story_yearly")
        cfg.set("payments.plans.yearly.remote_id", "plan_custom_yearly")
        self.assertEqual(get_remote_plan_id("yearly"), "plan_custom_yearly")
        self.assertEqual(plan_type_for_remote_id("plan_custom_yearly"), "yearly")
        self.assertEqual(plan_type_for_remote_id("plan_unknown"), "")

    def test_period_end(self):
        start = datetime(2024, 1, 31, 8, 0, 0)
        self.assertEqual(plan_period_end("monthly", start), datetime(2024, 2, 29, 8, 0, 0))
        self.assertEqual(plan_period_end("yearly", datetime(2024, 2, 29)), datetime(2025, 2, 28))
        self.assertEqual(plan_period_end("trial", start), datetime(2024, 2, 7, 8, 0, 0))


if __name__ == "__main__":
    unittest.main()
