from datetime import datetime, timedelta
from typing import Dict, List

from core.config import cfg
from core.errors import GatewayError, InvalidPlan
from core.events import E, log_event
from core.log import get_logger

logger = get_logger(__name__)


PLAN_TRIAL = "trial"
PLAN_MONTHLY = "monthly"
PLAN_YEARLY = "yearly"

# 试用价为固定业务规则，单位为货币最小单位
TRIAL_PRICE = 3
DEFAULT_CURRENCY = "INR"

PLAN_DEFINITIONS: Dict[str, Dict] = {
    PLAN_TRIAL: {
        "plan_type": PLAN_TRIAL,
        "name": "Trial Plan",
        "remote_id": "plan_kids_story_trial",
        "amount": TRIAL_PRICE,
        "interval": "week",
        "billing_cycle": "weekly",
        "validity_in_days": 7,
        "features": [
            "Access to all stories",
            "Full content library",
            "High-quality audio",
            "7-day trial period",
        ],
    },
    PLAN_MONTHLY: {
        "plan_type": PLAN_MONTHLY,
        "name": "Monthly Plan",
        "remote_id": "plan_kids_story_monthly",
        "amount": 9900,
        "interval": "month",
        "billing_cycle": "monthly",
        "validity_in_days": 30,
        "features": [
            "Access to all stories",
            "Full content library",
            "High-quality audio",
            "Offline downloads",
            "Ad-free experience",
            "New content weekly",
        ],
    },
    PLAN_YEARLY: {
        "plan_type": PLAN_YEARLY,
        "name": "Yearly Plan",
        "remote_id": "plan_kids_story_yearly",
        "amount": 49900,
        "interval": "year",
        "billing_cycle": "yearly",
        "validity_in_days": 365,
        "features": [
            "Access to all stories",
            "Full content library",
            "High-quality audio",
            "Offline downloads",
            "Ad-free experience",
            "New content weekly",
        ],
        "savings": "58% off monthly price",
    },
}

# 可直接购买的全价套餐（试用只能通过资格判定获得）
PURCHASABLE_PLAN_TYPES = [PLAN_MONTHLY, PLAN_YEARLY]


def normalize_plan_type(plan_type: str) -> str:
    value = str(plan_type or "").strip().lower()
    if value not in PLAN_DEFINITIONS:
        raise InvalidPlan()
    return value


def get_plan_definition(plan_type: str) -> Dict:
    return PLAN_DEFINITIONS[normalize_plan_type(plan_type)]


def get_remote_plan_id(plan_type: str) -> str:
    key = normalize_plan_type(plan_type)
    return str(cfg.get(f"payments.plans.{key}.remote_id", PLAN_DEFINITIONS[key]["remote_id"]))


def plan_type_for_remote_id(remote_id: str) -> str:
    text = str(remote_id or "").strip()
    for key in PLAN_DEFINITIONS:
        if get_remote_plan_id(key) == text:
            return key
    return ""


def _add_months(dt: datetime, months: int) -> datetime:
    month = int(dt.month - 1 + months)
    year = int(dt.year + month // 12)
    month = int(month % 12 + 1)
    day = min(
        dt.day,
        [31, 29 if year % 4 == 0 and (year % 100 != 0 or year % 400 == 0) else 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31][month - 1],
    )
    return dt.replace(year=year, month=month, day=day)


def plan_period_end(plan_type: str, start: datetime) -> datetime:
    key = normalize_plan_type(plan_type)
    if key == PLAN_TRIAL:
        return start + timedelta(days=7)
    if key == PLAN_YEARLY:
        return _add_months(start, 12)
    return _add_months(start, 1)


def _plan_view(plan_type: str, free_trial: bool = False) -> Dict:
    plan = get_plan_definition(plan_type)
    data = {
        "id": get_remote_plan_id(plan_type),
        "plan": plan["plan_type"],
        "name": plan["name"],
        "price": int(plan["amount"]),
        "currency": DEFAULT_CURRENCY,
        "interval": plan["interval"],
        "validity_in_days": int(plan["validity_in_days"]),
        "features": list(plan["features"]),
        "free_trial": bool(free_trial),
    }
    if free_trial:
        data["trial_price"] = TRIAL_PRICE
    if plan.get("savings"):
        data["savings"] = plan["savings"]
    return data


def get_plan_catalog() -> List[Dict]:
    return [_plan_view(key) for key in [PLAN_TRIAL, PLAN_MONTHLY, PLAN_YEARLY]]


def check_trial_eligibility(client, user_id: str, package_id: str = "") -> bool:
    """网关不可达时按不具备资格处理，绝不因降级而多发试用。"""
    try:
        result = client.trial_eligibility(user_id, package_id)
    except GatewayError as e:
        log_event(
            logger,
            E.PLAN_ELIGIBILITY_DEGRADED,
            level="warning",
            user_id=user_id,
            package_id=package_id,
            reason=e.code,
        )
        return False
    return bool(result.get("can_use_trial"))


def resolve_plans(client, user_id: str, package_id: str = "", trial_used: bool = False) -> Dict:
    trial_eligible = False
    if not trial_used:
        trial_eligible = check_trial_eligibility(client, user_id, package_id)

    if trial_eligible:
        plans = [_plan_view(PLAN_MONTHLY, free_trial=True)]
    else:
        plans = [_plan_view(key) for key in PURCHASABLE_PLAN_TYPES]

    log_event(
        logger,
        E.PLAN_RESOLVE,
        user_id=user_id,
        trial_eligible=trial_eligible,
        plans=",".join(p["plan"] for p in plans),
    )
    return {"plans": plans, "trial_eligible": trial_eligible}
